"""SandboxTemplate lookup and the "sandbox wins, template fills the gap" merge."""

import copy
import logging
from typing import Any, Callable, Tuple

from sandboxes.exceptions import SandboxTemplateNotFound
from sandboxes.resources import Sandbox, SandboxTemplate, SSHConfig
from sandboxes.services.kubernetes_api import KubernetesApiClient, sandbox_template_path

logger = logging.getLogger(__name__)


def _unset_string(value: Any) -> bool:
    return value is None or value == ""


def _unset_optional(value: Any) -> bool:
    return value is None


def _unset_collection(value: Any) -> bool:
    return value is None or len(value) == 0


# Each overridable spec field with the predicate that decides whether it is unset.
SPEC_MERGE_FIELDS: Tuple[Tuple[str, Callable[[Any], bool]], ...] = (
    ("service_account_name", _unset_string),
    ("node_selector", _unset_collection),
    ("affinity", _unset_optional),
    ("tolerations", _unset_collection),
    ("image_pull_secrets", _unset_collection),
    ("host_network", _unset_optional),
    ("container", _unset_optional),
    ("image", _unset_string),
    ("termination_grace_period_seconds", _unset_optional),
)

SSH_MERGE_FIELDS: Tuple[Tuple[str, Callable[[Any], bool]], ...] = (
    ("public_key", _unset_string),
    ("username", _unset_string),
)


def get_sandbox_template(client: KubernetesApiClient, namespace: str, name: str) -> SandboxTemplate:
    obj = client.request_json("GET", sandbox_template_path(namespace, name), allow_404=True)
    if obj is None:
        raise SandboxTemplateNotFound(namespace, name)
    return SandboxTemplate.from_dict(obj)


def apply_sandbox_template(sandbox: Sandbox, template: SandboxTemplate) -> None:
    """Fill unset fields of ``sandbox.spec`` from ``template.spec`` in place.

    Fields already set on the sandbox are never touched, so running the merge
    again after it has filled everything is a no-op.
    """
    spec = sandbox.spec
    filled = []
    for field_name, is_unset in SPEC_MERGE_FIELDS:
        template_value = getattr(template.spec, field_name)
        if is_unset(getattr(spec, field_name)) and not is_unset(template_value):
            setattr(spec, field_name, copy.deepcopy(template_value))
            filled.append(field_name)

    if template.spec.ssh is not None:
        if spec.ssh is None:
            spec.ssh = SSHConfig()
        for field_name, is_unset in SSH_MERGE_FIELDS:
            template_value = getattr(template.spec.ssh, field_name)
            if is_unset(getattr(spec.ssh, field_name)) and not is_unset(template_value):
                setattr(spec.ssh, field_name, template_value)
                filled.append(f"ssh.{field_name}")

    if filled:
        logger.debug(
            "Applied SandboxTemplate template=%s sandbox=%s fields=%s",
            template.name,
            sandbox.key,
            ",".join(filled),
        )


def resolve_sandbox_template(client: KubernetesApiClient, sandbox: Sandbox) -> None:
    if not sandbox.spec.template_ref:
        return
    logger.info("Applying SandboxTemplate template=%s sandbox=%s", sandbox.spec.template_ref, sandbox.key)
    template = get_sandbox_template(client, sandbox.namespace, sandbox.spec.template_ref)
    apply_sandbox_template(sandbox, template)
