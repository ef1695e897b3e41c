import logging
from typing import Any, Optional

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from irsa_check.catalog import ComponentSpec
from irsa_check.errors import DiscoveryError
from irsa_check.values import ABSENT, ValueResolver

ROLE_ARN_ANNOTATION = "eks.amazonaws.com/role-arn"

logger = logging.getLogger(__name__)


class ServiceAccountBinder:
    """Expected and live service-account bindings of the release's components."""

    def __init__(self, core_api: Any, namespace: str, release: str, values: ValueResolver):
        self.core = core_api
        self.namespace = namespace
        self.release = release
        self.values = values

    def expected_service_account(self, component: ComponentSpec) -> str:
        name = self.values.get(component.service_account_name_path)
        if isinstance(name, str) and name.strip():
            return name.strip()
        fallback = f"{self.release}-{component.name}"
        logger.info(f"Component {component.name} has no custom service account name "
                    f"({component.service_account_name_path}), falling back on default: {fallback}")
        return fallback

    def enabled(self, component: ComponentSpec) -> bool:
        value = self.values.get_bool(component.service_account_enabled_path)
        if value is ABSENT:
            logger.warning(f"{component.service_account_enabled_path} is set neither in the release values "
                           f"nor in the chart defaults, assuming the service account is enabled")
            return True
        return value is not False

    def read_service_account(self, name: str) -> Any:
        try:
            return self.core.read_namespaced_service_account(name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status == 404:
                raise DiscoveryError(f"Service account {name} not found in namespace {self.namespace}",
                                     {"service_account": name, "namespace": self.namespace})
            raise DiscoveryError(f"Cannot read service account {name}: {e.status} {e.reason}",
                                 {"service_account": name, "namespace": self.namespace, "status": e.status})
        except (HTTPError, OSError) as e:
            raise DiscoveryError(f"Cannot reach the Kubernetes API to read service account {name}: {e}",
                                 {"service_account": name, "namespace": self.namespace})

    def discover_binding(self, service_account_name: str) -> Any:
        """Role ARN bound through the IRSA annotation, or ABSENT."""
        sa = self.read_service_account(service_account_name)
        metadata = getattr(sa, "metadata", None)
        annotations: Optional[dict] = getattr(metadata, "annotations", None) or {}
        role_arn = (annotations.get(ROLE_ARN_ANNOTATION) or "").strip()
        if not role_arn:
            return ABSENT
        return role_arn

    def cluster_runs_on_aws(self) -> bool:
        try:
            nodes = self.core.list_node()
        except ApiException as e:
            raise DiscoveryError(f"Cannot list cluster nodes: {e.status} {e.reason}", {"status": e.status})
        except (HTTPError, OSError) as e:
            raise DiscoveryError(f"Cannot reach the Kubernetes API to list cluster nodes: {e}")
        provider_ids = [getattr(n.spec, "provider_id", None) or "" for n in nodes.items]
        logger.debug(f"Node provider IDs: {provider_ids}")
        return bool(provider_ids) and all(p.startswith("aws://") for p in provider_ids)
