import logging
from typing import Any, Dict, Optional, Tuple

from celery import shared_task
from django.conf import settings
from pottery import Redlock

from config.redis_client import get_redis_client
from sandboxes.exceptions import GracePeriodExceedsTimeLimit, SandboxReconcileError
from sandboxes.services.kubernetes_api import KubernetesApiError
from sandboxes.services.reconciler import reconcile_sandbox

logger = logging.getLogger(__name__)


def _lock_key(namespace: str, name: str) -> str:
    return f"sandbox-reconcile:{namespace}/{name}"


def _pending_key(namespace: str, name: str) -> str:
    return f"sandbox-reconcile:pending:{namespace}/{name}"


def _time_limit_margin() -> int:
    return int(getattr(settings, "SANDBOX_FINALIZE_TIME_MARGIN_SECONDS", 60))


def _hard_time_limit(request) -> int:
    hard, _soft = getattr(request, "timelimit", None) or (None, None)
    return int(hard or settings.CELERY_TASK_TIME_LIMIT)


def grace_wait_budget(request) -> Optional[int]:
    """Seconds a deletion grace period may block under this invocation's soft time limit.

    Eager and direct calls run without time limits, so they get no budget.
    """
    if getattr(request, "called_directly", False) or getattr(request, "is_eager", False):
        return None
    _hard, soft = getattr(request, "timelimit", None) or (None, None)
    soft = int(soft or settings.CELERY_TASK_SOFT_TIME_LIMIT)
    return max(soft - _time_limit_margin(), 0)


def extended_time_limits(grace_period_seconds: int) -> Tuple[int, int]:
    """Return (soft, hard) time limits that leave room for the whole grace period."""
    margin = _time_limit_margin()
    soft = grace_period_seconds + margin
    return soft, soft + margin


@shared_task(
    bind=True,
    ignore_result=True,
    acks_late=True,
    name="sandboxes.tasks.reconcile_sandbox",
    autoretry_for=(KubernetesApiError, SandboxReconcileError),
    retry_backoff=True,
    retry_backoff_max=getattr(settings, "SANDBOX_RECONCILE_RETRY_BACKOFF_MAX", 300),
    retry_jitter=True,
    max_retries=getattr(settings, "SANDBOX_RECONCILE_MAX_RETRIES", 10),
)
def reconcile_sandbox_task(self, namespace: str, name: str) -> Dict[str, Any]:
    """Run one reconcile pass, at most one per sandbox at a time.

    A trigger that arrives while another worker holds the sandbox's lock only
    flags the sandbox as pending; the lock holder enqueues a single follow-up
    pass when it finishes, so the latest state is always observed.
    """
    outcome: Dict[str, Any] = {"namespace": namespace, "name": name}

    lock_ttl = _hard_time_limit(self.request) + _time_limit_margin()
    redis_client = get_redis_client()
    lock = Redlock(key=_lock_key(namespace, name), masters={redis_client}, auto_release_time=lock_ttl)

    if not lock.acquire(blocking=True, timeout=1):
        redis_client.set(_pending_key(namespace, name), "1", ex=lock_ttl)
        logger.info(
            "Skipping reconcile for sandbox %s/%s; another worker holds it (flagged pending)",
            namespace,
            name,
        )
        outcome["skipped"] = True
        return outcome

    extension: Optional[GracePeriodExceedsTimeLimit] = None
    follow_up = False
    try:
        result = reconcile_sandbox(namespace, name, max_grace_wait_seconds=grace_wait_budget(self.request))
    except GracePeriodExceedsTimeLimit as exc:
        extension = exc
    finally:
        try:
            lock.release()
        except Exception as e:
            logger.warning("Failed to release reconcile lock for sandbox %s/%s: %s", namespace, name, e)
        deleted_count = redis_client.delete(_pending_key(namespace, name))
        follow_up = isinstance(deleted_count, int) and deleted_count > 0

    if extension is not None:
        soft_limit, hard_limit = extended_time_limits(extension.grace_period_seconds)
        logger.info(
            "Re-enqueuing finalization of sandbox %s/%s with soft_time_limit=%ss for its %ss grace period",
            namespace,
            name,
            soft_limit,
            extension.grace_period_seconds,
        )
        reconcile_sandbox_task.apply_async(
            args=(namespace, name),
            soft_time_limit=soft_limit,
            time_limit=hard_limit,
        )
        outcome["extended_time_limit"] = soft_limit
        return outcome

    if follow_up:
        logger.info("Scheduling follow-up reconcile for sandbox %s/%s due to pending flag", namespace, name)
        reconcile_sandbox_task.apply_async(
            args=(namespace, name),
            countdown=getattr(settings, "SANDBOX_RECONCILE_DEBOUNCE_SEC", 2),
        )

    outcome.update(
        credentials=result.credentials,
        workload=result.workload,
        status_updated=result.status_updated,
        finalized=result.finalized,
    )
    return outcome
