from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from django.conf import settings
from django.core.management.base import BaseCommand

from kubernetes import client, config, watch

from sandboxes.constants import SANDBOX_LABEL, SANDBOX_PLURAL
from sandboxes.exceptions import SandboxControllerUnavailable
from sandboxes.tasks import reconcile_sandbox_task


logger = logging.getLogger(__name__)

SandboxKey = Tuple[str, str]


def _load_k8s_config() -> None:
    try:
        config.load_incluster_config()
        return
    except Exception:
        pass

    try:
        config.load_kube_config()
    except Exception as exc:
        raise SandboxControllerUnavailable("Failed to load Kubernetes configuration") from exc


def sandbox_key_from_event(event: Dict[str, Any]) -> Optional[SandboxKey]:
    """Map a watch event to the (namespace, name) of the Sandbox it concerns.

    Sandbox events arrive as plain dicts; pod and configmap events arrive as
    client models and point at their sandbox through the sandbox label.
    """
    obj = event.get("object")
    if obj is None:
        return None

    if isinstance(obj, dict):
        if obj.get("kind") == "Status":
            return None
        metadata = obj.get("metadata") or {}
        namespace, name = metadata.get("namespace"), metadata.get("name")
    else:
        metadata = getattr(obj, "metadata", None)
        if metadata is None:
            return None
        labels = metadata.labels or {}
        namespace, name = metadata.namespace, labels.get(SANDBOX_LABEL)

    if not namespace or not name:
        return None
    return namespace, name


class ReconcileDispatcher:
    """Enqueue one delayed reconcile per sandbox per debounce window.

    The task runs after the window closes and reads fresh state, so events
    folded into an already-queued reconcile are not lost.
    """

    def __init__(self, debounce_sec: int, enqueue: Optional[Callable[[str, str, int], None]] = None) -> None:
        self.debounce_sec = debounce_sec
        self._enqueue = enqueue or self._enqueue_task
        self._last_enqueued: Dict[SandboxKey, float] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _enqueue_task(namespace: str, name: str, countdown: int) -> None:
        reconcile_sandbox_task.apply_async(args=(namespace, name), countdown=countdown)

    def dispatch(self, key: SandboxKey) -> bool:
        now = time.monotonic()
        with self._lock:
            # Entries outside the window no longer suppress anything
            for stale in [k for k, ts in self._last_enqueued.items() if now - ts >= self.debounce_sec]:
                del self._last_enqueued[stale]
            last = self._last_enqueued.get(key)
            if last is not None and now - last < self.debounce_sec:
                return False
            self._last_enqueued[key] = now
        namespace, name = key
        self._enqueue(namespace, name, self.debounce_sec)
        logger.debug("Enqueued reconcile for sandbox %s/%s", namespace, name)
        return True


class Command(BaseCommand):
    help = "Watch Sandboxes and their pods/configmaps and enqueue reconcile tasks."

    def add_arguments(self, parser):
        parser.add_argument(
            "--namespace",
            default=getattr(settings, "SANDBOX_WATCH_NAMESPACE", ""),
            help="Namespace to watch (default: all namespaces).",
        )
        parser.add_argument(
            "--debounce",
            type=int,
            default=getattr(settings, "SANDBOX_RECONCILE_DEBOUNCE_SEC", 2),
            help="Debounce window for watch-triggered reconcile enqueues (seconds).",
        )
        parser.add_argument(
            "--watch-timeout",
            type=int,
            default=getattr(settings, "SANDBOX_WATCH_TIMEOUT_SECONDS", 300),
            help="Server-side timeout before each watch stream is re-opened (seconds).",
        )

    def handle(self, *args, **options):
        namespace: str = options["namespace"] or ""
        debounce_sec: int = int(options["debounce"])
        watch_timeout: int = int(options["watch_timeout"])

        _load_k8s_config()
        dispatcher = ReconcileDispatcher(debounce_sec)
        stop_main = threading.Event()

        def _sig_handler(signum, frame):
            logger.info("Received signal %s; shutting down sandbox controller…", signum)
            stop_main.set()

        # Graceful shutdown on SIGINT/SIGTERM (K8s)
        signal.signal(signal.SIGINT, _sig_handler)
        signal.signal(signal.SIGTERM, _sig_handler)

        logger.info(
            "Starting sandbox controller namespace=%s debounce=%ds watch_timeout=%ds",
            namespace or "*", debounce_sec, watch_timeout,
        )

        threads = [
            threading.Thread(
                target=self._watch_loop,
                name=f"watch-{kind}",
                args=(kind, list_func, list_kwargs, dispatcher, stop_main, watch_timeout),
                daemon=True,
            )
            for kind, list_func, list_kwargs in self._watch_sources(namespace)
        ]
        for thread in threads:
            thread.start()

        while not stop_main.is_set():
            stop_main.wait(timeout=1)
            if not any(thread.is_alive() for thread in threads):
                logger.error("All watch threads exited; stopping sandbox controller")
                break

        for thread in threads:
            thread.join(timeout=5)
        logger.info("Sandbox controller stopped")

    @staticmethod
    def _watch_sources(namespace: str):
        custom = client.CustomObjectsApi()
        core = client.CoreV1Api()
        group = getattr(settings, "SANDBOX_API_GROUP", "kubepark.sinoa.jp")
        version = getattr(settings, "SANDBOX_API_VERSION", "v1alpha1")

        if namespace:
            return [
                ("sandboxes", custom.list_namespaced_custom_object,
                 {"group": group, "version": version, "namespace": namespace, "plural": SANDBOX_PLURAL}),
                ("pods", core.list_namespaced_pod, {"namespace": namespace, "label_selector": SANDBOX_LABEL}),
                ("configmaps", core.list_namespaced_config_map, {"namespace": namespace, "label_selector": SANDBOX_LABEL}),
            ]
        return [
            ("sandboxes", custom.list_cluster_custom_object,
             {"group": group, "version": version, "plural": SANDBOX_PLURAL}),
            ("pods", core.list_pod_for_all_namespaces, {"label_selector": SANDBOX_LABEL}),
            ("configmaps", core.list_config_map_for_all_namespaces, {"label_selector": SANDBOX_LABEL}),
        ]

    @staticmethod
    def _watch_loop(kind, list_func, list_kwargs, dispatcher, stop, watch_timeout):
        while not stop.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(list_func, timeout_seconds=watch_timeout, **list_kwargs):
                    if stop.is_set():
                        w.stop()
                        break
                    key = sandbox_key_from_event(event)
                    if key is not None:
                        dispatcher.dispatch(key)
            except Exception:
                logger.exception("Watch on %s failed; re-opening", kind)
                stop.wait(timeout=5)
