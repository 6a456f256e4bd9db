import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from django.conf import settings

from sandboxes.constants import SANDBOX_PLURAL, SANDBOX_TEMPLATE_PLURAL
from sandboxes.exceptions import SandboxControllerUnavailable

logger = logging.getLogger(__name__)

_SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")


class KubernetesApiError(RuntimeError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class KubernetesApiClient:
    def __init__(self, *, base_url: str, token: str, ca_path: Optional[str], timeout: int) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.ca_path = ca_path
        self.timeout = timeout

    def request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        timeout: Optional[int] = None,
        allow_404: bool = False,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            response = requests.request(
                method,
                url,
                json=json_body,
                headers=headers,
                timeout=timeout or self.timeout,
                verify=self.ca_path or True,
            )
        except requests.RequestException as exc:
            raise KubernetesApiError(0, f"Kubernetes API request failed: {exc}") from exc

        if response.status_code == 404 and allow_404:
            return None
        if response.status_code >= 400:
            raise KubernetesApiError(response.status_code, response.text)
        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise KubernetesApiError(response.status_code, "Invalid JSON from Kubernetes API") from exc


@lru_cache(maxsize=1)
def get_kubernetes_client() -> KubernetesApiClient:
    base_url = _k8s_api_url()
    token = getattr(settings, "SANDBOX_K8S_TOKEN", "") or _read_service_account_token()
    if not token:
        raise SandboxControllerUnavailable("Kubernetes service account token not available.")
    ca_path = getattr(settings, "SANDBOX_K8S_CA_PATH", "") or _service_account_path("ca.crt")
    timeout = int(getattr(settings, "SANDBOX_K8S_TIMEOUT_SECONDS", 30))
    logger.info("Using Kubernetes API at %s (timeout=%ss)", base_url, timeout)
    return KubernetesApiClient(base_url=base_url, token=token, ca_path=ca_path, timeout=timeout)


def _read_service_account_token() -> str:
    path = _service_account_path("token")
    if not path:
        return ""
    try:
        return Path(path).read_text().strip()
    except OSError:
        return ""


def _service_account_path(filename: str) -> Optional[str]:
    candidate = _SERVICE_ACCOUNT_DIR / filename
    if candidate.exists():
        return str(candidate)
    return None


def _k8s_api_url() -> str:
    explicit = getattr(settings, "SANDBOX_K8S_API_URL", "") or os.environ.get("SANDBOX_K8S_API_URL")
    if explicit:
        return explicit.rstrip("/")
    host = os.environ.get("KUBERNETES_SERVICE_HOST")
    port = os.environ.get("KUBERNETES_SERVICE_PORT", "443")
    if not host:
        raise SandboxControllerUnavailable("Kubernetes service host not configured.")
    return f"https://{host}:{port}"


def _custom_api_prefix() -> str:
    group = getattr(settings, "SANDBOX_API_GROUP", "kubepark.sinoa.jp")
    version = getattr(settings, "SANDBOX_API_VERSION", "v1alpha1")
    return f"/apis/{group}/{version}"


def pod_collection_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/pods"


def pod_path(namespace: str, pod_name: str) -> str:
    return f"/api/v1/namespaces/{namespace}/pods/{pod_name}"


def configmap_collection_path(namespace: str) -> str:
    return f"/api/v1/namespaces/{namespace}/configmaps"


def configmap_path(namespace: str, name: str) -> str:
    return f"/api/v1/namespaces/{namespace}/configmaps/{name}"


def sandbox_path(namespace: str, name: str) -> str:
    return f"{_custom_api_prefix()}/namespaces/{namespace}/{SANDBOX_PLURAL}/{name}"


def sandbox_status_path(namespace: str, name: str) -> str:
    return f"{sandbox_path(namespace, name)}/status"


def sandbox_template_path(namespace: str, name: str) -> str:
    return f"{_custom_api_prefix()}/namespaces/{namespace}/{SANDBOX_TEMPLATE_PLURAL}/{name}"
