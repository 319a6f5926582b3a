"""
Pipeline configuration.

Build it from the environment:
```
config = PipelineConfig.from_env()
```
or from a YAML file whose keys are the PipelineConfig fields:
```
config = PipelineConfig.from_yaml("pipeline.yml")
```
The app reads the YAML file named by `PIPELINE_CONFIG` when it is set.
The config is handed to the PredictionOrchestrator at construction time.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

import yaml
from dotenv import load_dotenv

ML_SERVICE = "ml-service"
HUGGINGFACE = "huggingface"

SUPPORTED_BACKENDS = (ML_SERVICE, HUGGINGFACE)

# Explicit label vocabulary of the hosted classification endpoint.
# 0 = human-written, 1 = machine-generated
DEFAULT_HF_LABEL_MAP = {
    "LABEL_0": 0,
    "LABEL_1": 1,
    "human": 0,
    "Human": 0,
    "machine": 1,
    "AI": 1,
}


def parse_label_map(raw: str) -> Dict[str, int]:
    """Parse ``"LABEL_0:0,LABEL_1:1"`` into a label map."""
    label_map = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        name, _, value = pair.rpartition(":")
        if not name or value.strip() not in ("0", "1"):
            raise ValueError(f"Invalid label map entry: {pair!r}")
        label_map[name.strip()] = int(value)
    return label_map


@dataclass
class PipelineConfig:
    backend: str = ML_SERVICE
    url: str = "http://localhost:5000"
    timeout: float = 30.0  # seconds, 0 = wait indefinitely
    api_token: Optional[str] = None
    model_version: str = "v1.0"
    label_map: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_HF_LABEL_MAP))
    explain: bool = True
    bias: bool = True

    def __post_init__(self):
        if self.backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unknown backend {self.backend!r}, expected one of {SUPPORTED_BACKENDS}")
        if not self.url or not self.url.strip():
            raise ValueError(f"No endpoint URL configured for backend {self.backend!r}")
        if self.timeout < 0:
            raise ValueError("timeout must be >= 0 (0 means no timeout)")
        for name, value in self.label_map.items():
            if value not in (0, 1):
                raise ValueError(f"Label {name!r} must map to 0 or 1, got {value!r}")

    @property
    def request_timeout(self) -> Optional[float]:
        """Timeout in the form ``requests`` expects: ``None`` waits forever."""
        return None if self.timeout == 0 else self.timeout

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        load_dotenv()
        backend = os.getenv("ML_BACKEND", ML_SERVICE).strip().lower()
        if backend == HUGGINGFACE:
            url = os.getenv("HF_API_URL", "")
            api_token = os.getenv("HF_API_TOKEN")
        else:
            # Several URLs may be configured, the first one is used
            url = os.getenv("ML_SERVICE_URL", "http://localhost:5000").split(",")[0].strip()
            api_token = os.getenv("ML_SERVICE_TOKEN")
        label_map = dict(DEFAULT_HF_LABEL_MAP)
        if os.getenv("HF_LABEL_MAP"):
            label_map = parse_label_map(os.environ["HF_LABEL_MAP"])
        return cls(
            backend=backend,
            url=url,
            timeout=float(os.getenv("ML_TIMEOUT_SECONDS", "30")),
            api_token=api_token or None,
            model_version=os.getenv("MODEL_VERSION", "v1.0"),
            label_map=label_map,
        )

    @classmethod
    def from_yaml(cls, path: str) -> "PipelineConfig":
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path} must hold a mapping of pipeline settings")
        return cls(**data)

    @classmethod
    def load(cls) -> "PipelineConfig":
        path = os.getenv("PIPELINE_CONFIG")
        if path:
            return cls.from_yaml(path)
        return cls.from_env()
