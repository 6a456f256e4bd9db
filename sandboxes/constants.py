"""Wire-level names shared by the sandbox controller and its child resources."""

SANDBOX_FINALIZER = "kubepark.sinoa.jp/sandbox-finalizer"

SANDBOX_KIND = "Sandbox"
SANDBOX_PLURAL = "sandboxes"
SANDBOX_TEMPLATE_PLURAL = "sandboxtemplates"

# Labels and annotations stamped on child resources
APP_LABEL = "kubepark"
SANDBOX_LABEL = "kubepark.sinoa.jp/sandbox"
SPEC_HASH_ANNOTATION = "kubepark.sinoa.jp/spec-hash"

# Child resource names are derived from the sandbox name
POD_NAME_PREFIX = "sandbox-"
SSH_PUBLIC_KEY_CONFIGMAP_PREFIX = "ssh-public-key-"

SANDBOX_CONTAINER_NAME = "sandbox"
SSH_PORT = 22
SSH_PORT_NAME = "ssh"
SSH_CONFIG_VOLUME_NAME = "ssh-config"
SSH_CONFIG_MOUNT_PATH = "/etc/ssh"
AUTHORIZED_KEYS_KEY = "authorized_keys"
SSH_USERNAME_ENV_VAR = "SSH_USERNAME"

DEFAULT_SANDBOX_IMAGE = "kubepark/sandbox-ssh:latest"
DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS = 30


class SandboxPhase:
    UNKNOWN = "Unknown"
    PENDING = "Pending"
    RUNNING = "Running"
    FAILED = "Failed"
    ERROR = "Error"
    COMPLETED = "Completed"


class PodPhase:
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


def sandbox_pod_name(sandbox_name: str) -> str:
    return f"{POD_NAME_PREFIX}{sandbox_name}"


def ssh_public_key_configmap_name(sandbox_name: str) -> str:
    return f"{SSH_PUBLIC_KEY_CONFIGMAP_PREFIX}{sandbox_name}"
