import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from irsa_check.errors import AddressParseError

DEFAULT_SEARCH_PORT = 443
DEFAULT_POSTGRES_PORT = 5432
RELATIONAL_SCHEME = "jdbc:aws-wrapper:postgresql://"
IAM_PLUGIN = "iam"

REGION_RE = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-[0-9]+$")
RDS_HOST_RE = re.compile(
    r"^(?P<identifier>[a-zA-Z][a-zA-Z0-9-]*)\.(cluster-(ro-)?)?[a-z0-9]+\.(?P<region>[a-z0-9-]+)\.rds\.amazonaws\.com$"
)


@dataclass(frozen=True)
class EndpointInfo:
    host: str
    port: int
    identifier: Optional[str] = None
    region: Optional[str] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


def _split_host_port(netloc: str, default_port: int, raw: str) -> tuple:
    host, sep, port_text = netloc.rpartition(":")
    if not sep:
        return netloc, default_port
    if not port_text.isdigit():
        raise AddressParseError(f"Invalid port in endpoint '{raw}'", {"endpoint": raw})
    port = int(port_text)
    if not 0 < port < 65536:
        raise AddressParseError(f"Port out of range in endpoint '{raw}'", {"endpoint": raw})
    return host, port


def parse_search_endpoint(url: str) -> EndpointInfo:
    """
    Decompose an OpenSearch VPC endpoint, e.g.
    ``vpc-mydomain-ab12cd3ef.us-east-1.es.amazonaws.com`` gives domain
    ``mydomain`` in region ``us-east-1``.
    """
    if not isinstance(url, str) or not url.strip():
        raise AddressParseError("Search endpoint is empty", {"endpoint": url})
    raw = url.strip()
    rest = re.sub(r"^https?://", "", raw)
    rest = rest.split("/", 1)[0]
    host, port = _split_host_port(rest, DEFAULT_SEARCH_PORT, raw)

    labels = host.split(".")
    if len(labels) < 5 or labels[-2:] != ["amazonaws", "com"]:
        raise AddressParseError(f"Search endpoint '{raw}' is not an amazonaws.com domain endpoint",
                                {"endpoint": raw})
    region = labels[-4]
    if not REGION_RE.match(region):
        raise AddressParseError(f"Cannot extract region from search endpoint '{raw}'", {"endpoint": raw})

    first = labels[0]
    for prefix in ("vpc-", "search-"):
        if first.startswith(prefix):
            first = first[len(prefix):]
            break
    domain, sep, suffix = first.rpartition("-")
    if not sep or not domain or not suffix:
        raise AddressParseError(f"Cannot extract domain name from search endpoint '{raw}'", {"endpoint": raw})
    return EndpointInfo(host=host, port=port, identifier=domain, region=region)


def parse_relational_endpoint(url: str) -> EndpointInfo:
    """
    Decompose a JDBC URL of the AWS advanced wrapper driver. Only URLs that
    request IAM authentication through ``wrapperPlugins=iam`` are accepted.
    """
    if not isinstance(url, str) or not url.strip():
        raise AddressParseError("Database URL is empty", {"url": url})
    raw = url.strip()
    if not raw.startswith(RELATIONAL_SCHEME):
        raise AddressParseError(f"Database URL '{raw}' must start with '{RELATIONAL_SCHEME}'", {"url": raw})

    parts = urlsplit("postgresql://" + raw[len(RELATIONAL_SCHEME):])
    if not parts.netloc or "@" in parts.netloc:
        raise AddressParseError(f"Database URL '{raw}' has no usable host", {"url": raw})
    host, port = _split_host_port(parts.netloc, DEFAULT_POSTGRES_PORT, raw)
    if not host:
        raise AddressParseError(f"Database URL '{raw}' has no host", {"url": raw})
    if not parts.path.strip("/"):
        raise AddressParseError(f"Database URL '{raw}' has no database name", {"url": raw})

    plugins = []
    for value in parse_qs(parts.query).get("wrapperPlugins", []):
        plugins.extend(p.strip() for p in value.split(","))
    if IAM_PLUGIN not in plugins:
        raise AddressParseError(
            f"Database URL '{raw}' does not request IAM authentication (missing wrapperPlugins={IAM_PLUGIN})",
            {"url": raw},
        )

    match = RDS_HOST_RE.match(host)
    if match:
        return EndpointInfo(host=host, port=port, identifier=match.group("identifier"),
                            region=match.group("region"))
    return EndpointInfo(host=host, port=port, identifier=host.split(".")[0], region=None)
