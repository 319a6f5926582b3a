"""
Backend clients for the remote classifier.

Each client makes exactly one HTTP attempt per call and translates transport
failures into BackendUnavailable, BackendTimeout or BackendError. A backend
variant is a client paired with the normalizer for its payload shape; adding a
variant means adding a pair to ``BACKENDS``.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from inference.config import HUGGINGFACE, ML_SERVICE, PipelineConfig
from inference.errors import BackendError, BackendTimeout, BackendUnavailable
from inference.normalizer import HuggingFaceNormalizer, MLServiceNormalizer, ResponseNormalizer

logger = logging.getLogger(__name__)


@dataclass
class CallOptions:
    explain: bool = True
    bias: bool = True


@dataclass
class BackendResponse:
    source: str
    payload: Any
    model_version: str


def _is_connection_refused(exc: BaseException) -> bool:
    """Look for ConnectionRefusedError in the chain requests/urllib3 build."""
    seen = set()
    stack = [exc]
    while stack:
        error = stack.pop()
        if error is None or id(error) in seen:
            continue
        seen.add(id(error))
        if isinstance(error, ConnectionRefusedError):
            return True
        stack.extend([error.__cause__, error.__context__, getattr(error, "reason", None)])
        stack.extend(arg for arg in error.args if isinstance(arg, BaseException))
    return False


class BackendClient:
    name = None

    def __init__(self, config: PipelineConfig):
        self.config = config

    def call(self, text: str, language: str, options: CallOptions) -> BackendResponse:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        return headers

    def _post(self, url: str, body: Dict) -> Any:
        # Single attempt, no retry. timeout=None waits indefinitely.
        try:
            response = requests.post(url, json=body, headers=self._headers(),
                                     timeout=self.config.request_timeout)
        except requests.exceptions.Timeout as e:
            logger.error(f"{self.name} timed out after {self.config.timeout}s: {e}")
            raise BackendTimeout()
        except requests.exceptions.ConnectionError as e:
            if _is_connection_refused(e):
                logger.error(f"{self.name} refused the connection at {url}: {e}")
                raise BackendUnavailable()
            logger.error(f"{self.name} connection failed at {url}: {e}")
            raise BackendError(backend_status=None, raw_body=str(e))
        except requests.exceptions.RequestException as e:
            logger.error(f"{self.name} request failed: {e}")
            raise BackendError(backend_status=None, raw_body=str(e))

        if not response.ok:
            logger.error(f"{self.name} returned HTTP {response.status_code}: {response.text[:1000]}")
            raise BackendError(backend_status=response.status_code, raw_body=response.text)
        try:
            return response.json()
        except ValueError:
            logger.error(f"{self.name} returned a non-JSON body: {response.text[:1000]}")
            raise BackendError(backend_status=response.status_code, raw_body=response.text)


class MLServiceClient(BackendClient):
    """Dedicated inference service: label, explanation and bias in one call."""

    name = ML_SERVICE

    def call(self, text: str, language: str, options: CallOptions) -> BackendResponse:
        url = f"{self.config.url.rstrip('/')}/predict"
        payload = self._post(url, {
            "text": text,
            "language": language,
            "explain": options.explain,
            "compute_bias": options.bias,
        })
        model_version = self.config.model_version
        if isinstance(payload, dict) and payload.get("model_version"):
            model_version = str(payload["model_version"])
        return BackendResponse(source=self.name, payload=payload, model_version=model_version)


class HuggingFaceClient(BackendClient):
    """Hosted text-classification endpoint returning label scores only."""

    name = HUGGINGFACE

    def call(self, text: str, language: str, options: CallOptions) -> BackendResponse:
        # the endpoint cannot explain or score bias, options are not forwarded
        payload = self._post(self.config.url, {
            "inputs": text,
            "options": {"wait_for_model": True},
        })
        return BackendResponse(source=self.name, payload=payload, model_version=self.config.model_version)


@dataclass
class BackendVariant:
    client: BackendClient
    normalizer: ResponseNormalizer

    @property
    def name(self) -> str:
        return self.client.name


def _ml_service(config: PipelineConfig) -> BackendVariant:
    return BackendVariant(MLServiceClient(config), MLServiceNormalizer())


def _huggingface(config: PipelineConfig) -> BackendVariant:
    return BackendVariant(HuggingFaceClient(config), HuggingFaceNormalizer(config.label_map))


BACKENDS = {
    ML_SERVICE: _ml_service,
    HUGGINGFACE: _huggingface,
}


def build_backend(config: PipelineConfig, name: Optional[str] = None) -> BackendVariant:
    name = name or config.backend
    if name not in BACKENDS:
        raise ValueError(f"Unknown backend {name!r}, expected one of {sorted(BACKENDS)}")
    return BACKENDS[name](config)
