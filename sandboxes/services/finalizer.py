import logging
import threading
import time
from typing import Optional

from sandboxes.constants import sandbox_pod_name, ssh_public_key_configmap_name
from sandboxes.exceptions import GracePeriodExceedsTimeLimit, ReconcileCancelled
from sandboxes.resources import Sandbox
from sandboxes.services.kubernetes_api import KubernetesApiClient, configmap_path, pod_path
from sandboxes.services.workloads import resolve_termination_grace_period

logger = logging.getLogger(__name__)


def wait_for_grace_period(seconds: int, cancel_event: Optional[threading.Event] = None) -> None:
    """Block for ``seconds``; raise ReconcileCancelled if ``cancel_event`` fires first."""
    event = cancel_event if cancel_event is not None else threading.Event()
    if seconds <= 0:
        if event.is_set():
            raise ReconcileCancelled("Reconciliation cancelled before finalization")
        return
    if event.wait(timeout=seconds):
        raise ReconcileCancelled(f"Reconciliation cancelled during {seconds}s termination grace period")


def finalize_sandbox(
    client: KubernetesApiClient,
    sandbox: Sandbox,
    *,
    cancel_event: Optional[threading.Event] = None,
    max_wait_seconds: Optional[int] = None,
) -> None:
    """Tear down the sandbox's children once its grace period has elapsed.

    Absent children are fine. Any other failure propagates and the caller keeps
    the finalizer, so the whole sequence, wait included, runs again next time.

    A grace period longer than ``max_wait_seconds`` fails before waiting, so the
    caller can rerun the finalization with a time budget that covers it.
    """
    grace_period = resolve_termination_grace_period(sandbox.spec)
    if max_wait_seconds is not None and grace_period > max_wait_seconds:
        raise GracePeriodExceedsTimeLimit(grace_period, max_wait_seconds)
    logger.info("Finalizing sandbox=%s; waiting %ss termination grace period", sandbox.key, grace_period)
    started_at = time.monotonic()
    wait_for_grace_period(grace_period, cancel_event)

    pod_name = sandbox_pod_name(sandbox.name)
    if client.request_json("DELETE", pod_path(sandbox.namespace, pod_name), allow_404=True) is None:
        logger.info("Sandbox pod %s already absent", pod_name)

    configmap_name = ssh_public_key_configmap_name(sandbox.name)
    if client.request_json("DELETE", configmap_path(sandbox.namespace, configmap_name), allow_404=True) is None:
        logger.info("SSH public key ConfigMap %s already absent", configmap_name)

    logger.info(
        "Finalized sandbox=%s elapsed_s=%.1f",
        sandbox.key,
        time.monotonic() - started_at,
    )
