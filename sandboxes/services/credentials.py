import logging
from typing import Any, Dict

from sandboxes.constants import (
    APP_LABEL,
    AUTHORIZED_KEYS_KEY,
    SANDBOX_LABEL,
    ssh_public_key_configmap_name,
)
from sandboxes.exceptions import SandboxValidationError
from sandboxes.resources import Sandbox
from sandboxes.services.kubernetes_api import (
    KubernetesApiClient,
    KubernetesApiError,
    configmap_collection_path,
    configmap_path,
)

logger = logging.getLogger(__name__)


def build_ssh_public_key_configmap(sandbox: Sandbox) -> Dict[str, Any]:
    public_key = sandbox.spec.ssh_public_key
    if not public_key:
        raise SandboxValidationError("SSH public key is required")

    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": ssh_public_key_configmap_name(sandbox.name),
            "namespace": sandbox.namespace,
            "labels": {
                "app": APP_LABEL,
                SANDBOX_LABEL: sandbox.name,
            },
            "ownerReferences": [sandbox.owner_reference()],
        },
        "data": {AUTHORIZED_KEYS_KEY: public_key},
    }


def reconcile_ssh_public_key_configmap(client: KubernetesApiClient, sandbox: Sandbox) -> str:
    """Create or update the ConfigMap holding the sandbox's authorized key.

    Returns ``"created"``, ``"updated"`` or ``"unchanged"``.
    """
    desired = build_ssh_public_key_configmap(sandbox)
    name = desired["metadata"]["name"]
    path = configmap_path(sandbox.namespace, name)

    existing = client.request_json("GET", path, allow_404=True)
    if existing is None:
        try:
            client.request_json("POST", configmap_collection_path(sandbox.namespace), json_body=desired)
        except KubernetesApiError as exc:
            if not exc.is_conflict:
                raise
            logger.info("SSH public key ConfigMap %s already created concurrently", name)
            return "unchanged"
        logger.info("Created SSH public key ConfigMap configmap=%s sandbox=%s", name, sandbox.key)
        return "created"

    if (existing.get("data") or {}) == desired["data"]:
        return "unchanged"

    # PUT the fetched object so the write carries its resourceVersion
    existing["data"] = desired["data"]
    client.request_json("PUT", path, json_body=existing)
    logger.info("Updated SSH public key ConfigMap configmap=%s sandbox=%s", name, sandbox.key)
    return "updated"
