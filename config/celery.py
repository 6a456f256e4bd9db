import pathlib, sys, os
from pathlib import Path
from celery import Celery
from celery.signals import worker_ready, worker_shutdown, worker_process_init

ROOT_DIR = pathlib.Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT_DIR))
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# File for validating worker readiness
READINESS_FILE = Path('/tmp/celery_ready')


app = Celery('kubepark_controller')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django app configs.
app.autodiscover_tasks()


@worker_ready.connect
def worker_ready_handler(**_):
    print(f"Worker ready signal received, creating readiness file: {READINESS_FILE}")
    READINESS_FILE.touch()


@worker_process_init.connect
def worker_process_init_handler(**_):
    """
    Initialize OpenTelemetry for each worker process after forking.
    This ensures each worker child has its own BatchSpanProcessor thread.
    """
    print(f"Worker process init signal received, initializing OpenTelemetry for PID {os.getpid()}")

    from observability import init_tracing, ControllerService
    from opentelemetry.instrumentation.celery import CeleryInstrumentor
    from opentelemetry.instrumentation.logging import LoggingInstrumentor

    init_tracing(ControllerService.WORKER)
    CeleryInstrumentor().instrument()
    LoggingInstrumentor().instrument(set_logging_format=True)


@worker_shutdown.connect
def worker_shutdown_handler(**_):
    print(f"Worker shutdown signal received, removing readiness file: {READINESS_FILE}")
    READINESS_FILE.unlink(missing_ok=True)

    # Shutdown OpenTelemetry to prevent hanging during worker termination
    try:
        from observability import shutdown_tracing
        shutdown_tracing()
    except Exception as e:
        print(f"Error during OpenTelemetry shutdown: {e}")
