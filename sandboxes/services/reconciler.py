"""The Sandbox reconcile loop.

Every invocation starts again from a fresh read of the Sandbox, so it is safe
to re-run after a failure at any step or on a duplicated watch event.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from django.utils import timezone

from observability import traced
from sandboxes.constants import SANDBOX_FINALIZER
from sandboxes.resources import Sandbox
from sandboxes.services.credentials import reconcile_ssh_public_key_configmap
from sandboxes.services.finalizer import finalize_sandbox
from sandboxes.services.kubernetes_api import (
    KubernetesApiClient,
    get_kubernetes_client,
    sandbox_path,
    sandbox_status_path,
)
from sandboxes.services.status import project_status
from sandboxes.services.templates import resolve_sandbox_template
from sandboxes.services.workloads import get_sandbox_pod, reconcile_sandbox_pod

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    # Watches retrigger on every relevant change, so nothing asks for a requeue today.
    requeue: bool = False
    credentials: Optional[str] = None
    workload: Optional[str] = None
    status_updated: bool = False
    finalized: bool = False


@contextmanager
def _step(description: str, sandbox: Sandbox):
    try:
        yield
    except Exception as exc:
        logger.warning("Failed to %s sandbox=%s: %s", description, sandbox.key, exc)
        raise


class SandboxReconciler:
    def __init__(
        self,
        client: Optional[KubernetesApiClient] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
        max_grace_wait_seconds: Optional[int] = None,
    ) -> None:
        self._client = client or get_kubernetes_client()
        self._cancel_event = cancel_event
        self._max_grace_wait_seconds = max_grace_wait_seconds

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        with traced("RECONCILE Sandbox", **{"sandbox.namespace": namespace, "sandbox.name": name}) as span:
            result = self._reconcile(namespace, name)
            span.set_attribute("sandbox.finalized", result.finalized)
            return result

    def _reconcile(self, namespace: str, name: str) -> ReconcileResult:
        logger.info("Reconciling Sandbox namespace=%s name=%s", namespace, name)

        obj = self._client.request_json("GET", sandbox_path(namespace, name), allow_404=True)
        if obj is None:
            logger.info("Sandbox %s/%s not found; ignoring since it must have been deleted", namespace, name)
            return ReconcileResult()
        sandbox = Sandbox.from_dict(obj)

        if sandbox.is_being_deleted:
            if not sandbox.has_finalizer(SANDBOX_FINALIZER):
                return ReconcileResult()
            with _step("finalize", sandbox):
                finalize_sandbox(
                    self._client,
                    sandbox,
                    cancel_event=self._cancel_event,
                    max_wait_seconds=self._max_grace_wait_seconds,
                )
                sandbox.remove_finalizer(SANDBOX_FINALIZER)
                self._update_sandbox(sandbox)
            logger.info("Removed finalizer from sandbox=%s", sandbox.key)
            return ReconcileResult(finalized=True)

        if not sandbox.has_finalizer(SANDBOX_FINALIZER):
            with _step("add finalizer to", sandbox):
                sandbox.add_finalizer(SANDBOX_FINALIZER)
                self._update_sandbox(sandbox)

        with _step("apply SandboxTemplate to", sandbox):
            resolve_sandbox_template(self._client, sandbox)

        with _step("reconcile SSH public key ConfigMap for", sandbox):
            credentials = reconcile_ssh_public_key_configmap(self._client, sandbox)

        with _step("reconcile pod for", sandbox):
            workload = reconcile_sandbox_pod(self._client, sandbox)

        with _step("update status of", sandbox):
            status_updated = self._update_status(sandbox)

        return ReconcileResult(credentials=credentials, workload=workload, status_updated=status_updated)

    def _update_sandbox(self, sandbox: Sandbox) -> None:
        updated = self._client.request_json("PUT", sandbox_path(sandbox.namespace, sandbox.name), json_body=sandbox.to_dict())
        self._refresh_metadata(sandbox, updated)

    def _update_status(self, sandbox: Sandbox) -> bool:
        pod = get_sandbox_pod(self._client, sandbox)
        projected = project_status(sandbox.status, pod, timezone.now().replace(microsecond=0))
        if projected == sandbox.status:
            return False

        logger.info(
            "Updating Sandbox status sandbox=%s phase=%s->%s",
            sandbox.key,
            sandbox.status.phase or "-",
            projected.phase,
        )
        sandbox.status = projected
        updated = self._client.request_json(
            "PUT",
            sandbox_status_path(sandbox.namespace, sandbox.name),
            json_body=sandbox.to_dict(),
        )
        self._refresh_metadata(sandbox, updated)
        return True

    @staticmethod
    def _refresh_metadata(sandbox: Sandbox, updated: Optional[Dict[str, Any]]) -> None:
        # Later writes in the same pass must carry the new resourceVersion
        if not updated:
            return
        metadata = updated.get("metadata") or {}
        sandbox.resource_version = metadata.get("resourceVersion", sandbox.resource_version)
        sandbox.raw = updated


def reconcile_sandbox(
    namespace: str,
    name: str,
    *,
    client: Optional[KubernetesApiClient] = None,
    cancel_event: Optional[threading.Event] = None,
    max_grace_wait_seconds: Optional[int] = None,
) -> ReconcileResult:
    return SandboxReconciler(
        client,
        cancel_event=cancel_event,
        max_grace_wait_seconds=max_grace_wait_seconds,
    ).reconcile(namespace, name)
