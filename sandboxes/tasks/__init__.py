from .sandbox_reconcile import reconcile_sandbox_task  # noqa: F401
