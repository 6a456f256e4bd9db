import copy
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from django.conf import settings

from sandboxes.constants import (
    APP_LABEL,
    AUTHORIZED_KEYS_KEY,
    DEFAULT_SANDBOX_IMAGE,
    DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
    SANDBOX_CONTAINER_NAME,
    SANDBOX_LABEL,
    SPEC_HASH_ANNOTATION,
    SSH_CONFIG_MOUNT_PATH,
    SSH_CONFIG_VOLUME_NAME,
    SSH_PORT,
    SSH_PORT_NAME,
    SSH_USERNAME_ENV_VAR,
    sandbox_pod_name,
    ssh_public_key_configmap_name,
)
from sandboxes.resources import Sandbox, SandboxSpec
from sandboxes.services.kubernetes_api import (
    KubernetesApiClient,
    KubernetesApiError,
    pod_collection_path,
    pod_path,
)

logger = logging.getLogger(__name__)


def resolve_image(spec: SandboxSpec) -> str:
    if spec.image:
        return spec.image
    container_image = (spec.container or {}).get("image")
    if container_image:
        return container_image
    return getattr(settings, "SANDBOX_DEFAULT_IMAGE", "") or DEFAULT_SANDBOX_IMAGE


def infer_image_pull_policy(image: str) -> str:
    """Mirror the kubelet default: floating tags are always pulled."""
    if "@" in image:
        return "IfNotPresent"
    last_segment = image.rsplit("/", 1)[-1]
    tag = last_segment.rsplit(":", 1)[1] if ":" in last_segment else ""
    if tag in ("", "latest"):
        return "Always"
    return "IfNotPresent"


def resolve_termination_grace_period(spec: SandboxSpec) -> int:
    if spec.termination_grace_period_seconds is not None:
        return int(spec.termination_grace_period_seconds)
    return int(
        getattr(
            settings,
            "SANDBOX_DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS",
            DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
        )
    )


def _build_container(sandbox: Sandbox) -> Dict[str, Any]:
    spec = sandbox.spec
    overrides = spec.container or {}
    image = resolve_image(spec)

    env: List[Dict[str, Any]] = []
    env_from: List[Dict[str, Any]] = []
    volume_mounts: List[Dict[str, Any]] = [
        {"name": SSH_CONFIG_VOLUME_NAME, "mountPath": SSH_CONFIG_MOUNT_PATH},
    ]
    container: Dict[str, Any] = {
        "name": SANDBOX_CONTAINER_NAME,
        "image": image,
        "imagePullPolicy": overrides.get("imagePullPolicy") or infer_image_pull_policy(image),
        "ports": [{"name": SSH_PORT_NAME, "containerPort": SSH_PORT, "protocol": "TCP"}],
    }

    resources = overrides.get("resources") or {}
    if resources.get("limits") is not None:
        container.setdefault("resources", {})["limits"] = copy.deepcopy(resources["limits"])
    if resources.get("requests") is not None:
        container.setdefault("resources", {})["requests"] = copy.deepcopy(resources["requests"])
    env.extend(copy.deepcopy(overrides.get("env") or []))
    env_from.extend(copy.deepcopy(overrides.get("envFrom") or []))
    volume_mounts.extend(copy.deepcopy(overrides.get("volumeMounts") or []))
    if overrides.get("securityContext") is not None:
        container["securityContext"] = copy.deepcopy(overrides["securityContext"])

    # Passed through verbatim, whitespace included
    if spec.ssh_username:
        env.append({"name": SSH_USERNAME_ENV_VAR, "value": spec.ssh_username})

    if env:
        container["env"] = env
    if env_from:
        container["envFrom"] = env_from
    container["volumeMounts"] = volume_mounts
    return container


def build_sandbox_pod_manifest(sandbox: Sandbox) -> Dict[str, Any]:
    spec = sandbox.spec
    pod_spec: Dict[str, Any] = {
        "terminationGracePeriodSeconds": resolve_termination_grace_period(spec),
        "containers": [_build_container(sandbox)],
        "volumes": [
            {
                "name": SSH_CONFIG_VOLUME_NAME,
                "configMap": {
                    "name": ssh_public_key_configmap_name(sandbox.name),
                    "items": [{"key": AUTHORIZED_KEYS_KEY, "path": AUTHORIZED_KEYS_KEY}],
                },
            }
        ],
    }
    if spec.service_account_name:
        pod_spec["serviceAccountName"] = spec.service_account_name
    if spec.node_selector:
        pod_spec["nodeSelector"] = copy.deepcopy(spec.node_selector)
    if spec.affinity is not None:
        pod_spec["affinity"] = copy.deepcopy(spec.affinity)
    if spec.tolerations:
        pod_spec["tolerations"] = copy.deepcopy(spec.tolerations)
    if spec.image_pull_secrets:
        pod_spec["imagePullSecrets"] = copy.deepcopy(spec.image_pull_secrets)
    if spec.host_network is not None:
        pod_spec["hostNetwork"] = bool(spec.host_network)

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": sandbox_pod_name(sandbox.name),
            "namespace": sandbox.namespace,
            "labels": {
                "app": APP_LABEL,
                SANDBOX_LABEL: sandbox.name,
            },
            "annotations": {SPEC_HASH_ANNOTATION: pod_spec_hash(pod_spec)},
            "ownerReferences": [sandbox.owner_reference()],
        },
        "spec": pod_spec,
    }


def pod_spec_hash(pod_spec: Dict[str, Any]) -> str:
    canonical = json.dumps(pod_spec, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _existing_spec_hash(pod: Dict[str, Any]) -> Optional[str]:
    annotations = (pod.get("metadata") or {}).get("annotations") or {}
    return annotations.get(SPEC_HASH_ANNOTATION)


def get_sandbox_pod(client: KubernetesApiClient, sandbox: Sandbox) -> Optional[Dict[str, Any]]:
    return client.request_json("GET", pod_path(sandbox.namespace, sandbox_pod_name(sandbox.name)), allow_404=True)


def reconcile_sandbox_pod(client: KubernetesApiClient, sandbox: Sandbox) -> str:
    """Create the sandbox pod, or replace it when its derived spec changed.

    Pods are immutable once scheduled, so any difference in the derived spec
    (tracked through the spec-hash annotation) means delete and recreate.
    Returns ``"created"``, ``"replaced"`` or ``"unchanged"``.
    """
    desired = build_sandbox_pod_manifest(sandbox)
    pod_name = desired["metadata"]["name"]
    desired_hash = desired["metadata"]["annotations"][SPEC_HASH_ANNOTATION]

    existing = get_sandbox_pod(client, sandbox)
    if existing is None:
        try:
            client.request_json("POST", pod_collection_path(sandbox.namespace), json_body=desired)
        except KubernetesApiError as exc:
            if not exc.is_conflict:
                raise
            logger.info("Sandbox pod %s already created concurrently", pod_name)
            return "unchanged"
        logger.info("Created sandbox pod pod=%s sandbox=%s", pod_name, sandbox.key)
        return "created"

    existing_hash = _existing_spec_hash(existing)
    if existing_hash == desired_hash:
        return "unchanged"

    logger.info(
        "Replacing sandbox pod pod=%s sandbox=%s old_hash=%s new_hash=%s",
        pod_name,
        sandbox.key,
        existing_hash,
        desired_hash,
    )
    client.request_json("DELETE", pod_path(sandbox.namespace, pod_name), allow_404=True)
    # A 409 here means the old pod is still terminating; the deletion event retriggers us.
    client.request_json("POST", pod_collection_path(sandbox.namespace), json_body=desired)
    return "replaced"
