class SandboxControllerUnavailable(RuntimeError):
    """The controller cannot reach or authenticate against the Kubernetes API."""


class SandboxReconcileError(RuntimeError):
    pass


class SandboxValidationError(SandboxReconcileError):
    pass


class SandboxTemplateNotFound(SandboxReconcileError):
    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"SandboxTemplate {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name


class ReconcileCancelled(SandboxReconcileError):
    pass


class GracePeriodExceedsTimeLimit(RuntimeError):
    """The deletion grace period cannot elapse within the current task's time limit."""

    def __init__(self, grace_period_seconds: int, max_wait_seconds: int) -> None:
        super().__init__(
            f"Termination grace period of {grace_period_seconds}s exceeds the {max_wait_seconds}s available"
        )
        self.grace_period_seconds = grace_period_seconds
        self.max_wait_seconds = max_wait_seconds
