import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from irsa_check.values import split_list

logger = logging.getLogger(__name__)


class Family(Enum):
    DOCUMENT_STORE = "opensearch"
    RELATIONAL = "postgresql"


DEFAULT_COMPONENTS = {
    Family.DOCUMENT_STORE: "zeebe,operate,tasklist,optimize",
    Family.RELATIONAL: "identityKeycloak,identity,webModeler",
}

CANONICAL_NAMES = [
    "zeebe",
    "zeebeGateway",
    "operate",
    "tasklist",
    "optimize",
    "identity",
    "identityKeycloak",
    "webModeler",
    "connectors",
    "console",
]
_CANONICAL_BY_LOWER = {name.lower(): name for name in CANONICAL_NAMES}

OPENSEARCH_HOST_PATH = "global.opensearch.url.host"
OPENSEARCH_PORT_PATH = "global.opensearch.url.port"


@dataclass(frozen=True)
class ValueRef:
    """Where a setting lives: a dotted path, optionally a name/value list entry."""

    path: str
    env_name: Optional[str] = None

    def __str__(self) -> str:
        if self.env_name:
            return f"{self.path}[name={self.env_name}]"
        return self.path


@dataclass(frozen=True)
class ComponentSpec:
    name: str
    family: Family
    enabled_path: str
    service_account_name_path: str
    service_account_enabled_path: str
    endpoint: Optional[ValueRef] = None
    port: Optional[ValueRef] = None
    username: Optional[ValueRef] = None
    known: bool = True


def _spec(name: str, family: Family, endpoint: Optional[ValueRef] = None, port: Optional[ValueRef] = None,
          username: Optional[ValueRef] = None, known: bool = True) -> ComponentSpec:
    return ComponentSpec(
        name=name,
        family=family,
        enabled_path=f"{name}.enabled",
        service_account_name_path=f"{name}.serviceAccount.name",
        service_account_enabled_path=f"{name}.serviceAccount.enabled",
        endpoint=endpoint,
        port=port,
        username=username,
        known=known,
    )


_OPENSEARCH_ENDPOINT = ValueRef(OPENSEARCH_HOST_PATH)
_OPENSEARCH_PORT = ValueRef(OPENSEARCH_PORT_PATH)

CATALOG: Dict[Family, Dict[str, ComponentSpec]] = {
    Family.DOCUMENT_STORE: {
        name: _spec(name, Family.DOCUMENT_STORE, _OPENSEARCH_ENDPOINT, _OPENSEARCH_PORT)
        for name in ("zeebe", "operate", "tasklist", "optimize")
    },
    Family.RELATIONAL: {
        "identityKeycloak": _spec(
            "identityKeycloak", Family.RELATIONAL,
            endpoint=ValueRef("identityKeycloak.extraEnvVars", "KC_DB_URL"),
            username=ValueRef("identityKeycloak.extraEnvVars", "KC_DB_USERNAME"),
        ),
        "identity": _spec(
            "identity", Family.RELATIONAL,
            endpoint=ValueRef("identity.env", "SPRING_DATASOURCE_URL"),
            username=ValueRef("identity.externalDatabase.username"),
        ),
        "webModeler": _spec(
            "webModeler", Family.RELATIONAL,
            endpoint=ValueRef("webModeler.restapi.externalDatabase.url"),
            username=ValueRef("webModeler.restapi.externalDatabase.user"),
        ),
    },
}


def normalize_name(name: str) -> str:
    """Map a user-typed component name onto its canonical chart key."""
    cleaned = name.strip()
    canonical = _CANONICAL_BY_LOWER.get(cleaned.lower())
    if canonical is None:
        return cleaned
    return canonical


def _as_names(value: Union[None, str, Iterable[str]]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return split_list(value)
    return [v.strip() for v in value if v and v.strip()]


def components_for(family: Family, override: Union[None, str, Iterable[str]] = None,
                   exclude: Union[None, str, Iterable[str]] = None) -> List[ComponentSpec]:
    """Ordered, de-duplicated component specs of a family, minus exclusions."""
    raw = _as_names(override) if override is not None else split_list(DEFAULT_COMPONENTS[family])
    excluded = {normalize_name(n).lower() for n in _as_names(exclude)}
    specs: List[ComponentSpec] = []
    seen = set()
    for item in raw:
        name = normalize_name(item)
        key = name.lower()
        if key in seen or key in excluded:
            continue
        seen.add(key)
        spec = CATALOG[family].get(name)
        if spec is None:
            logger.warning(f"Component '{name}' has no {family.value} IRSA checks defined; it will be reported as skipped")
            spec = _spec(name, family, known=False)
        specs.append(spec)
    return specs
