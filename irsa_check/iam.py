import json
import logging
import re
import threading
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import unquote

from botocore.exceptions import BotoCoreError, ClientError

from irsa_check.catalog import Family
from irsa_check.endpoints import EndpointInfo
from irsa_check.errors import DiscoveryError, IrsaCheckError, PolicyValidationFailure

WEB_IDENTITY_ACTION = "sts:AssumeRoleWithWebIdentity"

REQUIRED_ACTIONS = {
    Family.DOCUMENT_STORE: "es:ESHttpGet",
    Family.RELATIONAL: "rds-db:connect",
}

EKS_OIDC_PROVIDER_RE = re.compile(
    r"^arn:aws[a-z-]*:iam::\d{12}:oidc-provider/oidc\.eks\.[a-z0-9-]+\.amazonaws\.com(\.cn)?/id/[A-Za-z0-9]+$"
)

logger = logging.getLogger(__name__)


def get_role_name_from_arn(arn_or_name: str) -> str:
    if arn_or_name.startswith("arn:"):
        return arn_or_name.split("/")[-1]
    return arn_or_name


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def load_policy_document(doc: Any) -> Dict[str, Any]:
    if isinstance(doc, dict):
        return doc
    if isinstance(doc, str) and doc.strip():
        return json.loads(unquote(doc))
    return {}


def allow_statements(policy_doc: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [st for st in _as_list(policy_doc.get("Statement")) if isinstance(st, dict) and st.get("Effect") == "Allow"]


def action_allows(pattern: str, action: str) -> bool:
    """IAM action matching: case-insensitive, with ``*`` and ``?`` wildcards."""
    return isinstance(pattern, str) and fnmatchcase(action.lower(), pattern.lower())


def statement_allows(statement: Dict[str, Any], action: str) -> bool:
    return any(action_allows(a, action) for a in _as_list(statement.get("Action")))


def _client_error(e: Exception) -> Tuple[str, str]:
    if isinstance(e, ClientError):
        err = e.response.get("Error", {})
        return err.get("Code", "Unknown"), err.get("Message", str(e))
    return type(e).__name__, str(e)


@dataclass
class TrustResult:
    role_arn: str
    statement_found: bool = False
    principal_matches: bool = False
    subject_matches: Optional[bool] = None
    federated: List[str] = field(default_factory=list)
    subjects: List[str] = field(default_factory=list)
    expected_provider: Optional[str] = None
    expected_subject: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.statement_found and self.principal_matches and self.subject_matches is not False


class AwsClients:
    """Caches one boto3 client per (service, region) of a session."""

    def __init__(self, session: Any):
        self.session = session
        self._clients: Dict[Tuple[str, Optional[str]], Any] = {}
        self._lock = threading.Lock()

    def get(self, service: str, region: Optional[str] = None) -> Any:
        region = region or getattr(self.session, "region_name", None)
        key = (service, region)
        with self._lock:
            if key not in self._clients:
                if region:
                    self._clients[key] = self.session.client(service, region_name=region)
                else:
                    self._clients[key] = self.session.client(service)
            return self._clients[key]


class CloudIdentityVerifier:
    def __init__(self, clients: AwsClients, namespace: str, eks_cluster_name: Optional[str] = None):
        self.clients = clients
        self.namespace = namespace
        self.eks_cluster_name = eks_cluster_name
        self._issuer: Optional[str] = None
        self._cache: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    @property
    def iam(self) -> Any:
        return self.clients.get("iam")

    def _cached(self, key: Tuple[str, str], fetch) -> Any:
        with self._lock:
            if key in self._cache:
                cached = self._cache[key]
                if isinstance(cached, IrsaCheckError):
                    raise cached
                return cached
        try:
            value = fetch()
        except IrsaCheckError as e:
            with self._lock:
                self._cache[key] = e
            raise
        with self._lock:
            self._cache[key] = value
        return value

    def get_role(self, role_arn: str) -> Dict[str, Any]:
        role_name = get_role_name_from_arn(role_arn)
        try:
            return self.iam.get_role(RoleName=role_name)["Role"]
        except (ClientError, BotoCoreError) as e:
            code, message = _client_error(e)
            if code == "NoSuchEntity":
                raise DiscoveryError(f"IAM role {role_name} does not exist", {"role_arn": role_arn})
            raise DiscoveryError(f"Cannot read IAM role {role_name}: {code} {message}",
                                 {"role_arn": role_arn, "error": code})

    def oidc_issuer(self) -> Optional[str]:
        """OIDC issuer of the EKS cluster, when its name is known."""
        if not self.eks_cluster_name:
            return None
        if self._issuer is None:
            try:
                cluster = self.clients.get("eks").describe_cluster(name=self.eks_cluster_name)["cluster"]
            except (ClientError, BotoCoreError) as e:
                code, message = _client_error(e)
                raise DiscoveryError(f"Cannot describe EKS cluster {self.eks_cluster_name}: {code} {message}",
                                     {"cluster": self.eks_cluster_name, "error": code})
            issuer = cluster.get("identity", {}).get("oidc", {}).get("issuer")
            if not issuer:
                raise DiscoveryError(f"EKS cluster {self.eks_cluster_name} has no OIDC issuer",
                                     {"cluster": self.eks_cluster_name})
            self._issuer = issuer
        return self._issuer

    def _provider_matches(self, federated: str, issuer: Optional[str]) -> bool:
        if issuer:
            return federated.endswith(f":oidc-provider/{issuer.replace('https://', '')}")
        return bool(EKS_OIDC_PROVIDER_RE.match(federated))

    def verify_role_trust(self, role_arn: str, service_account: Optional[str] = None,
                          role: Optional[Dict[str, Any]] = None, issuer: Optional[str] = None) -> TrustResult:
        """
        Inspect the trust policy of a role for IRSA. Without an issuer any EKS
        OIDC provider ARN is accepted as the federated principal.
        """
        if role is None:
            role = self.get_role(role_arn)
        trust = load_policy_document(role.get("AssumeRolePolicyDocument"))
        result = TrustResult(role_arn=role_arn)
        result.expected_provider = f"oidc-provider/{issuer.replace('https://', '')}" if issuer else EKS_OIDC_PROVIDER_RE.pattern
        if service_account:
            result.expected_subject = f"system:serviceaccount:{self.namespace}:{service_account}"

        web_statements = [st for st in allow_statements(trust) if statement_allows(st, WEB_IDENTITY_ACTION)]
        if not web_statements:
            return result
        result.statement_found = True

        matching = []
        for st in web_statements:
            feds = [f for f in _as_list((st.get("Principal") or {}).get("Federated")) if isinstance(f, str)]
            result.federated.extend(feds)
            if any(self._provider_matches(f, issuer) for f in feds):
                matching.append(st)
        if not matching:
            return result
        result.principal_matches = True

        if result.expected_subject is None:
            return result
        constrained = False
        for st in matching:
            for operator, conditions in (st.get("Condition") or {}).items():
                if operator not in ("StringEquals", "StringLike") or not isinstance(conditions, dict):
                    continue
                for key, value in conditions.items():
                    if not key.endswith(":sub"):
                        continue
                    constrained = True
                    for subject in _as_list(value):
                        result.subjects.append(subject)
                        if operator == "StringLike" and fnmatchcase(result.expected_subject, subject):
                            result.subject_matches = True
                        elif subject == result.expected_subject:
                            result.subject_matches = True
        if constrained and result.subject_matches is None:
            result.subject_matches = False
        return result

    def iter_policy_documents(self, role_name: str) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Attached managed policies (default version) then inline policies, fetched lazily."""
        try:
            paginator = self.iam.get_paginator("list_attached_role_policies")
            for page in paginator.paginate(RoleName=role_name):
                for policy in page.get("AttachedPolicies", []):
                    policy_arn = policy["PolicyArn"]
                    pol = self.iam.get_policy(PolicyArn=policy_arn)["Policy"]
                    version = self.iam.get_policy_version(PolicyArn=policy_arn, VersionId=pol["DefaultVersionId"])
                    yield policy.get("PolicyName", policy_arn), load_policy_document(version["PolicyVersion"]["Document"])

            paginator = self.iam.get_paginator("list_role_policies")
            for page in paginator.paginate(RoleName=role_name):
                for policy_name in page.get("PolicyNames", []):
                    doc = self.iam.get_role_policy(RoleName=role_name, PolicyName=policy_name)["PolicyDocument"]
                    yield policy_name, load_policy_document(doc)
        except (ClientError, BotoCoreError) as e:
            code, message = _client_error(e)
            raise DiscoveryError(f"Cannot read policies of IAM role {role_name}: {code} {message}",
                                 {"role_name": role_name, "error": code})

    def verify_permissions(self, role_arn: str, family: Family) -> Dict[str, Any]:
        """Name of the first policy granting the backend's required action; fails when none does."""
        required = REQUIRED_ACTIONS[family]
        role_name = get_role_name_from_arn(role_arn)
        scanned = []
        for policy_name, doc in self.iter_policy_documents(role_name):
            scanned.append(policy_name)
            for st in allow_statements(doc):
                if statement_allows(st, required):
                    logger.debug(f"Policy {policy_name} of {role_name} grants {required}")
                    return {"policy_name": policy_name, "action": required}
        raise PolicyValidationFailure(
            f"No policy attached to IAM role {role_name} allows {required}",
            {"role_arn": role_arn, "required_action": required, "policies": scanned},
        )

    def _describe_search_domain(self, endpoint: EndpointInfo) -> Dict[str, Any]:
        client = self.clients.get("opensearch", endpoint.region)
        try:
            status = client.describe_domain(DomainName=endpoint.identifier)["DomainStatus"]
        except (ClientError, BotoCoreError) as e:
            code, message = _client_error(e)
            if code == "ResourceNotFoundException":
                raise DiscoveryError(f"OpenSearch domain {endpoint.identifier} not found in {endpoint.region}",
                                     {"domain": endpoint.identifier, "region": endpoint.region})
            raise DiscoveryError(f"Cannot describe OpenSearch domain {endpoint.identifier}: {code} {message}",
                                 {"domain": endpoint.identifier, "error": code})
        meta = {"domain": endpoint.identifier, "region": endpoint.region}
        if status.get("Deleted"):
            raise PolicyValidationFailure(f"OpenSearch domain {endpoint.identifier} is being deleted", meta)
        if not status.get("Created", True):
            raise PolicyValidationFailure(f"OpenSearch domain {endpoint.identifier} is not created yet", meta)
        hosts = [h for h in (status.get("Endpoints") or {}).values()] + [status.get("Endpoint")]
        hosts = [h for h in hosts if h]
        if hosts and endpoint.host not in hosts:
            raise PolicyValidationFailure(
                f"OpenSearch domain {endpoint.identifier} does not serve endpoint {endpoint.host}",
                dict(meta, endpoints=hosts),
            )
        if status.get("Processing"):
            logger.warning(f"OpenSearch domain {endpoint.identifier} is processing a configuration change")
        return status

    def verify_search_domain(self, endpoint: EndpointInfo) -> Dict[str, Any]:
        return self._cached(("opensearch", endpoint.identifier or ""), lambda: self._describe_search_domain(endpoint))

    def _describe_db_cluster(self, endpoint: EndpointInfo) -> Dict[str, Any]:
        client = self.clients.get("rds", endpoint.region)
        try:
            clusters = client.describe_db_clusters(DBClusterIdentifier=endpoint.identifier)["DBClusters"]
        except (ClientError, BotoCoreError) as e:
            code, message = _client_error(e)
            if code == "DBClusterNotFoundFault":
                raise DiscoveryError(f"Database cluster {endpoint.identifier} not found",
                                     {"cluster": endpoint.identifier, "region": endpoint.region})
            raise DiscoveryError(f"Cannot describe database cluster {endpoint.identifier}: {code} {message}",
                                 {"cluster": endpoint.identifier, "error": code})
        if not clusters:
            raise DiscoveryError(f"Database cluster {endpoint.identifier} not found", {"cluster": endpoint.identifier})
        cluster = clusters[0]
        meta = {"cluster": endpoint.identifier, "status": cluster.get("Status")}
        if cluster.get("Status") != "available":
            raise PolicyValidationFailure(
                f"Database cluster {endpoint.identifier} is not available (status: {cluster.get('Status')})", meta)
        if not cluster.get("IAMDatabaseAuthenticationEnabled"):
            raise PolicyValidationFailure(
                f"Database cluster {endpoint.identifier} does not have IAM database authentication enabled", meta)
        return cluster

    def verify_db_cluster(self, endpoint: EndpointInfo) -> Dict[str, Any]:
        return self._cached(("rds", endpoint.identifier or ""), lambda: self._describe_db_cluster(endpoint))
