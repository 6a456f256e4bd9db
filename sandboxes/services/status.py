from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Optional

from sandboxes.constants import PodPhase, SandboxPhase
from sandboxes.resources import SandboxStatus


def project_status(current: SandboxStatus, pod: Optional[Dict[str, Any]], now: datetime) -> SandboxStatus:
    """Map the observed pod phase onto a new Sandbox status.

    ``startedAt`` and ``finishedAt`` are written once and then left alone.
    """
    if pod is None:
        return replace(current, phase=SandboxPhase.PENDING, message="Sandbox pod not found")

    pod_phase = (pod.get("status") or {}).get("phase") or ""

    if pod_phase == PodPhase.PENDING:
        return replace(current, phase=SandboxPhase.PENDING, message="Sandbox pod is pending")
    if pod_phase == PodPhase.RUNNING:
        return replace(
            current,
            phase=SandboxPhase.RUNNING,
            message="Sandbox pod is running",
            started_at=current.started_at or now,
        )
    if pod_phase == PodPhase.SUCCEEDED:
        return replace(
            current,
            phase=SandboxPhase.COMPLETED,
            message="Sandbox pod completed successfully",
            finished_at=current.finished_at or now,
        )
    if pod_phase == PodPhase.FAILED:
        return replace(
            current,
            phase=SandboxPhase.FAILED,
            message="Sandbox pod failed",
            finished_at=current.finished_at or now,
        )
    return replace(current, phase=SandboxPhase.UNKNOWN, message=f"Unknown pod phase: {pod_phase}")
