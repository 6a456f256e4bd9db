"""
Sandbox controller settings
"""

from pathlib import Path
import environ, os

LOG_LEVEL = os.getenv("DJANGO_LOG_LEVEL", "INFO")

BASE_DIR = Path(__file__).resolve().parent.parent
env = environ.Env(
    DEBUG=(bool, False),
)
# loads .env next to the project when running locally
env_file = BASE_DIR / ".env"
if env_file.exists():
    environ.Env.read_env(env_file)

os.environ.setdefault("KUBEPARK_RELEASE_ENV", "local")

IN_DOCKER = os.path.exists("/.dockerenv") or env.bool("IN_DOCKER", default=False)
RELEASE_ENV = os.getenv("KUBEPARK_RELEASE_ENV", "local")

if RELEASE_ENV == "local" and not IN_DOCKER:
    # Non-secret dev defaults; deployments pass explicit values
    os.environ.setdefault("DEBUG", "1")
    os.environ.setdefault("DJANGO_SECRET_KEY", "dev-insecure")
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

# ────────── Core ──────────
DEBUG = env.bool("DEBUG", default=False)
SECRET_KEY = env("DJANGO_SECRET_KEY")
ALLOWED_HOSTS = []

INSTALLED_APPS = [
    # first-party
    "sandboxes",

    "config.apps.TracingInitialization",
]

# The controller keeps no state of its own; the Kubernetes API is the only store.
DATABASES = {}

# ────────── Redis / Celery ──────────
REDIS_URL = env("REDIS_URL", default="redis://localhost:6379/0")

CELERY_BROKER_URL = env("CELERY_BROKER_URL", default=REDIS_URL)
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", default=REDIS_URL)
# Deletions block for the sandbox's grace period, so the limits must exceed it
CELERY_TASK_TIME_LIMIT = env.int("CELERY_TASK_TIME_LIMIT", default=900)
CELERY_TASK_SOFT_TIME_LIMIT = env.int("CELERY_TASK_SOFT_TIME_LIMIT", default=840)
CELERY_TASK_ACKS_LATE = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TIMEZONE       = "UTC"
CELERY_ENABLE_UTC     = True

# ────────── Misc ──────────
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = USE_TZ = True

# ────────── Logging ──────────
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,

    # ---------------- Handlers ----------------
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
            "stream": "ext://sys.stdout",
        },
    },

    # --------------- Formatters ---------------
    "formatters": {
        "verbose": {
            "format": "{asctime} [{levelname}] {name}: {message}",
            "style": "{",
        },
    },

    # --------------- Root logger --------------
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },

    # --------------- Other loggers -----------
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "sandboxes": {
            "handlers": ["console"],
            "level": env("SANDBOX_LOG_LEVEL", default=LOG_LEVEL),
            "propagate": False,
        },
        # urllib3 logs every API call at DEBUG
        "urllib3": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}

# ────────── OpenTelemetry ──────────
OTEL_EXPORTER_OTLP_PROTOCOL = env("OTEL_EXPORTER_OTLP_PROTOCOL", default="http/protobuf")
OTEL_EXPORTER_OTLP_ENDPOINT = env("OTEL_EXPORTER_OTLP_ENDPOINT", default="http://localhost:4317")
OTEL_EXPORTER_OTLP_INSECURE = env.bool("OTEL_EXPORTER_OTLP_INSECURE", default=False)
OTEL_EXPORTER_OTLP_LOG_ENDPOINT = env("OTEL_EXPORTER_OTLP_LOG_ENDPOINT", default="http://localhost:4318/v1/logs")

KUBEPARK_RELEASE_ENV = env("KUBEPARK_RELEASE_ENV", default="local")

# ────────── Sandbox controller ──────────
# API group/version of the Sandbox and SandboxTemplate custom resources
SANDBOX_API_GROUP = env("SANDBOX_API_GROUP", default="kubepark.sinoa.jp")
SANDBOX_API_VERSION = env("SANDBOX_API_VERSION", default="v1alpha1")
SANDBOX_DEFAULT_IMAGE = env("SANDBOX_DEFAULT_IMAGE", default="kubepark/sandbox-ssh:latest")
SANDBOX_DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS = env.int(
    "SANDBOX_DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS", default=30
)

# Kubernetes API access. Empty values fall back to the in-cluster service account.
SANDBOX_K8S_API_URL = env("SANDBOX_K8S_API_URL", default="")
SANDBOX_K8S_TOKEN = env("SANDBOX_K8S_TOKEN", default="")
SANDBOX_K8S_CA_PATH = env("SANDBOX_K8S_CA_PATH", default="")
SANDBOX_K8S_TIMEOUT_SECONDS = env.int("SANDBOX_K8S_TIMEOUT_SECONDS", default=30)

# Watch runner. Empty namespace watches the whole cluster.
SANDBOX_WATCH_NAMESPACE = env("SANDBOX_WATCH_NAMESPACE", default="")
SANDBOX_WATCH_TIMEOUT_SECONDS = env.int("SANDBOX_WATCH_TIMEOUT_SECONDS", default=300)
# Debounce window to avoid enqueuing duplicate reconciles on bursty watch events (seconds)
SANDBOX_RECONCILE_DEBOUNCE_SEC = env.int("SANDBOX_RECONCILE_DEBOUNCE_SEC", default=2)
SANDBOX_RECONCILE_MAX_RETRIES = env.int("SANDBOX_RECONCILE_MAX_RETRIES", default=10)
SANDBOX_RECONCILE_RETRY_BACKOFF_MAX = env.int("SANDBOX_RECONCILE_RETRY_BACKOFF_MAX", default=300)
# Headroom above a deletion grace period when sizing a task's time limits (seconds)
SANDBOX_FINALIZE_TIME_MARGIN_SECONDS = env.int("SANDBOX_FINALIZE_TIME_MARGIN_SECONDS", default=60)
