from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from irsa_check.helm import CHART_NAME, load_document
from irsa_check.probe import DEFAULT_NETWORK_PROBE_IMAGE, DEFAULT_PROBE_IMAGE, DEFAULT_TIMEOUT
from irsa_check.values import split_list


@dataclass
class RunConfig:
    namespace: str
    exclude: List[str] = field(default_factory=list)
    pg_components: Optional[str] = None
    opensearch_components: Optional[str] = None
    disable_live_probe: bool = False
    region: Optional[str] = None
    profile: Optional[str] = None
    eks_cluster_name: Optional[str] = None
    release: Optional[str] = None
    chart_name: str = CHART_NAME
    values_file: Optional[str] = None
    defaults_file: Optional[str] = None
    probe_timeout: float = DEFAULT_TIMEOUT
    probe_image: str = DEFAULT_PROBE_IMAGE
    network_probe_image: str = DEFAULT_NETWORK_PROBE_IMAGE
    workers: int = 1
    output_json: Optional[str] = None
    kubeconfig: Optional[str] = None
    context: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.namespace:
            raise ValueError("namespace is required")
        if isinstance(self.exclude, str):
            self.exclude = split_list(self.exclude)
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.probe_timeout <= 0:
            raise ValueError("probe_timeout must be positive")


def load_settings(path: Optional[str]) -> Dict[str, Any]:
    """Settings file keys use the RunConfig field names, dashes allowed."""
    if not path:
        return {}
    doc = load_document(path)
    known = {f.name for f in fields(RunConfig)}
    settings = {}
    for key, value in doc.items():
        name = key.replace("-", "_")
        if name not in known:
            raise ValueError(f"Unknown setting '{key}' in {path}")
        settings[name] = value
    return settings


def build_config(settings: Dict[str, Any], overrides: Dict[str, Any]) -> RunConfig:
    """Command-line values that were actually given win over the settings file."""
    merged = dict(settings)
    for key, value in overrides.items():
        if value is not None:
            merged[key] = value
    return RunConfig(**merged)
