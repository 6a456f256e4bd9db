"""Typed views over the Sandbox and SandboxTemplate custom resources.

The API server speaks camelCase JSON; the controller works on these dataclasses
and writes back through ``Sandbox.to_dict()``, which starts from the document
that was fetched. Template defaults merged into ``Sandbox.spec`` are therefore
never persisted.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, List, Optional

from django.utils.dateparse import parse_datetime

from sandboxes.constants import SANDBOX_KIND


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(dt_timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return parse_datetime(str(value))


@dataclass
class SSHConfig:
    public_key: str = ""
    username: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SSHConfig":
        data = data or {}
        return cls(
            public_key=data.get("publicKey") or "",
            username=data.get("username") or "",
        )


@dataclass
class SandboxSpec:
    service_account_name: str = ""
    node_selector: Optional[Dict[str, str]] = None
    affinity: Optional[Dict[str, Any]] = None
    tolerations: Optional[List[Dict[str, Any]]] = None
    image_pull_secrets: Optional[List[Dict[str, Any]]] = None
    host_network: Optional[bool] = None
    container: Optional[Dict[str, Any]] = None
    template_ref: Optional[str] = None
    image: str = ""
    ssh: Optional[SSHConfig] = None
    termination_grace_period_seconds: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SandboxSpec":
        data = copy.deepcopy(data or {})
        template_ref = (data.get("sandboxTemplateRef") or {}).get("name") or None
        grace = data.get("terminationGracePeriodSeconds")
        return cls(
            service_account_name=data.get("serviceAccountName") or "",
            node_selector=data.get("nodeSelector"),
            affinity=data.get("affinity"),
            tolerations=data.get("tolerations"),
            image_pull_secrets=data.get("imagePullSecrets"),
            host_network=data.get("hostNetwork"),
            container=data.get("container"),
            template_ref=template_ref,
            image=data.get("image") or "",
            ssh=SSHConfig.from_dict(data["ssh"]) if data.get("ssh") is not None else None,
            termination_grace_period_seconds=int(grace) if grace is not None else None,
        )

    @property
    def ssh_public_key(self) -> str:
        return self.ssh.public_key if self.ssh is not None else ""

    @property
    def ssh_username(self) -> str:
        return self.ssh.username if self.ssh is not None else ""


@dataclass
class SandboxStatus:
    phase: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    message: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SandboxStatus":
        data = data or {}
        return cls(
            phase=data.get("phase") or "",
            started_at=_parse_timestamp(data.get("startedAt")),
            finished_at=_parse_timestamp(data.get("finishedAt")),
            message=data.get("message") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.phase:
            payload["phase"] = self.phase
        if self.started_at is not None:
            payload["startedAt"] = format_timestamp(self.started_at)
        if self.finished_at is not None:
            payload["finishedAt"] = format_timestamp(self.finished_at)
        if self.message:
            payload["message"] = self.message
        return payload


@dataclass
class Sandbox:
    name: str
    namespace: str
    spec: SandboxSpec = field(default_factory=SandboxSpec)
    status: SandboxStatus = field(default_factory=SandboxStatus)
    uid: str = ""
    resource_version: str = ""
    deletion_timestamp: Optional[str] = None
    finalizers: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Sandbox":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            spec=SandboxSpec.from_dict(obj.get("spec")),
            status=SandboxStatus.from_dict(obj.get("status")),
            uid=metadata.get("uid", ""),
            resource_version=metadata.get("resourceVersion", ""),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            finalizers=list(metadata.get("finalizers") or []),
            raw=copy.deepcopy(obj),
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_being_deleted(self) -> bool:
        return bool(self.deletion_timestamp)

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.finalizers:
            self.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str) -> None:
        self.finalizers = [item for item in self.finalizers if item != finalizer]

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.raw.get("apiVersion", ""),
            "kind": self.raw.get("kind") or SANDBOX_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Return the fetched document with this object's finalizers and status applied."""
        body = copy.deepcopy(self.raw)
        metadata = body.setdefault("metadata", {})
        metadata["finalizers"] = list(self.finalizers)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        body["status"] = self.status.to_dict()
        return body


@dataclass
class SandboxTemplate:
    name: str
    namespace: str
    spec: SandboxSpec = field(default_factory=SandboxSpec)

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "SandboxTemplate":
        metadata = obj.get("metadata") or {}
        spec = SandboxSpec.from_dict(obj.get("spec"))
        # Templates cannot chain to other templates
        spec.template_ref = None
        return cls(name=metadata.get("name", ""), namespace=metadata.get("namespace", ""), spec=spec)
