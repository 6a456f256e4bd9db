# observability.py
import os
from enum import Enum
from functools import lru_cache
import logging
import threading

from django.conf import settings

logger = logging.getLogger(__name__)

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider, Span, Status, StatusCode
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry._logs import set_logger_provider
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from typing import Optional
from opentelemetry import trace
from contextlib import contextmanager

tracer = trace.get_tracer("kubepark.controller")

# Global reference to the tracer provider for cleanup
_tracer_provider: Optional[TracerProvider] = None

# Flag indicating whether tracing was actually initialised (provider installed).
# Local tests disable tracing; in that case we suppress noisy INFO logs.
_TRACING_ACTIVE: bool = False


class DaemonBatchSpanProcessor(BatchSpanProcessor):
    """
    BatchSpanProcessor that sets its worker thread as daemon
    to prevent blocking sys.exit() during Celery worker shutdown.
    """
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if hasattr(self, '_worker_thread') and self._worker_thread:
            self._worker_thread.daemon = True
        elif hasattr(self, 'worker_thread') and self.worker_thread:
            self.worker_thread.daemon = True
        else:
            logger.warning("Could not find BatchSpanProcessor worker thread to set as daemon")


class ControllerService(str, Enum):
    """
    The processes that make up the sandbox controller.
    Used for identifying service names in tracing and observability.
    """
    WATCHER = "kubepark-watcher"
    WORKER = "kubepark-worker"


@lru_cache(maxsize=1)                    # make sure we initialize only once
def init_tracing(service_name: ControllerService) -> None:
    """
    Initialize the OTEL tracer provider exactly once per process.
    Pass a `service_name` that distinguishes the watcher from workers.

    Tracing stays off in local/build environments unless
    KUBEPARK_ENABLE_TRACING is truthy, and is always off when it is falsy.
    """
    global _tracer_provider, _TRACING_ACTIVE

    release_env = os.getenv("KUBEPARK_RELEASE_ENV", "local").lower()

    truthy  = ("1", "true", "yes", "on")
    falsy   = ("0", "false", "no", "off")

    user_flag = os.getenv("KUBEPARK_ENABLE_TRACING", "").lower()

    if user_flag in falsy:
        logger.debug("OpenTelemetry: Tracing explicitly disabled via KUBEPARK_ENABLE_TRACING env var – skipping initialization")
        return

    if release_env in {"local", "build"} and user_flag not in truthy:
        logger.debug(
            "OpenTelemetry: %s environment detected with no explicit opt-in – tracing disabled",
            release_env,
        )
        return

    res = Resource.create(
        {
            "service.name": service_name.value,
            "service.version": os.getenv("KUBEPARK_VERSION", "dev"),
            "deployment.environment.name": release_env,
        }
    )

    try:
        provider = TracerProvider(resource=res)

        # SimpleSpanProcessor = synchronous, no threads -- can be useful for debugging
        # BatchSpanProcessor = asynchronous, with daemon threads -- generally recommended
        processor_type = os.getenv("OTEL_SPAN_PROCESSOR", "batch").lower()
        exporter = OTLPSpanExporter(
            endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
            insecure=settings.OTEL_EXPORTER_OTLP_INSECURE,
        )
        if processor_type == "simple":
            span_processor = SimpleSpanProcessor(exporter)
        else:
            span_processor = DaemonBatchSpanProcessor(
                exporter,
                schedule_delay_millis=int(os.getenv("OTEL_BSP_SCHEDULE_DELAY", "500")),
                export_timeout_millis=int(os.getenv("OTEL_BSP_EXPORT_TIMEOUT", "5000")),
            )
        provider.add_span_processor(span_processor)

        logger_provider = LoggerProvider(resource=res)
        set_logger_provider(logger_provider)
        logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=settings.OTEL_EXPORTER_OTLP_LOG_ENDPOINT))
        )

        # Create and attach an OpenTelemetry handler to the Python root logger
        handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
        logging.getLogger().addHandler(handler)

        trace.set_tracer_provider(provider)
        _tracer_provider = provider
        _TRACING_ACTIVE = True
        logger.debug("OpenTelemetry: %s processor installed for %s", processor_type, service_name.value)

    except Exception as e:
        logger.error(f"Failed to initialize OTEL tracer: {e}")
        raise


def shutdown_tracing() -> None:
    """
    Shutdown the tracer provider with timeout to prevent hanging.
    This should be called during worker shutdown.
    """
    global _tracer_provider

    if _tracer_provider is None:
        logger.debug("OpenTelemetry: No tracer provider to shutdown")
        return

    provider = _tracer_provider
    shutdown_complete = threading.Event()

    def shutdown_worker():
        try:
            provider.force_flush(timeout_millis=3000)
            provider.shutdown()
        except Exception as e:
            logger.error(f"OpenTelemetry: Error during tracer provider shutdown: {e}")
        finally:
            shutdown_complete.set()

    shutdown_thread = threading.Thread(target=shutdown_worker, daemon=True)
    shutdown_thread.start()

    timeout_seconds = 10
    if not shutdown_complete.wait(timeout=timeout_seconds):
        logger.warning(f"OpenTelemetry: Shutdown timed out after {timeout_seconds} seconds")

    # Clean up reference regardless of success/failure
    _tracer_provider = None


@contextmanager
def traced(name: str, **attrs):
    # For local/dev runs where tracing is inactive, keep silent (DEBUG at most).
    if _TRACING_ACTIVE:
        logger.debug(f"OpenTelemetry: Tracing {name} with attributes: {attrs}")

    with tracer.start_as_current_span(name) as span:
        for key, value in attrs.items():
            span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            mark_span_failed_with_exception(span, e)
            raise


def mark_span_failed_with_exception(span: Span, exc: Exception, message: Optional[str] = None) -> None:
    """
    Mark a span as failed with an exception.

    This sets the span status to ERROR and records the exception.
    """
    try:
        if span.is_recording():
            if message is None:
                message = str(exc)
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, message))
            span.set_attribute("kubepark.error", True)
            span.set_attribute("error.type", type(exc).__name__)
            span.set_attribute("error.message", message)
    except Exception:  # best-effort, never fail caller due to telemetry
        pass
