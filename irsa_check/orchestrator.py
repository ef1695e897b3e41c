import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from irsa_check.catalog import (OPENSEARCH_HOST_PATH, OPENSEARCH_PORT_PATH, ComponentSpec, Family,
                                components_for)
from irsa_check.config import RunConfig
from irsa_check.endpoints import (EndpointInfo, parse_relational_endpoint, parse_search_endpoint)
from irsa_check.errors import (AddressParseError, ConfigurationAbsent, DiscoveryError, IdentityMismatch,
                               IrsaCheckError, PolicyValidationFailure)
from irsa_check.iam import CloudIdentityVerifier, TrustResult
from irsa_check.probe import LiveProbeRunner, normalize_identity_arn, role_to_assumed_role_arn
from irsa_check.reporter import Reporter
from irsa_check.service_accounts import ServiceAccountBinder
from irsa_check.values import ABSENT, ValueResolver

CLUSTER = "cluster"
OPENSEARCH = "opensearch"
POSTGRESQL = "postgresql"

CheckFn = Callable[[], Tuple[Any, str, Dict[str, Any]]]


@dataclass
class ResolvedBinding:
    component: str
    family: Family
    service_account: Optional[str] = None
    expected_role_arn: Optional[str] = None
    discovered_role_arn: Optional[str] = None
    endpoint: Optional[EndpointInfo] = None
    verified: bool = False


class _CheckRun:
    """Records the checks of one component; after a fatal failure the rest are skipped."""

    def __init__(self, reporter: Reporter, component: str, logger: logging.Logger, family: Optional[Family] = None):
        self.reporter = reporter
        self.component = component
        self.family = family.value if family else None
        self.logger = logger
        self.fatal: Optional[str] = None
        self.failures = 0

    def halt(self, reason: str) -> None:
        """Skip every remaining check of this run with ``reason``."""
        if self.fatal is None:
            self.fatal = reason

    def attempt(self, check: str, fn: CheckFn, unless: Optional[str] = None, fatal: bool = False) -> Tuple[bool, Any]:
        reason = self.fatal or unless
        if reason:
            self.reporter.skipped(self.component, check, f"Skipped: {reason}", family=self.family)
            return False, None
        try:
            value, details, meta = fn()
        except IrsaCheckError as e:
            self.reporter.failed(self.component, check, e, family=self.family)
            self.failures += 1
            self.logger.warning(f"{self.component}.{check}: {e.message}")
            if fatal:
                self.fatal = f"{check} check failed"
            return False, None
        self.reporter.passed(self.component, check, details, meta, family=self.family)
        self.logger.debug(f"{self.component}.{check}: {details}")
        return True, value


class VerificationOrchestrator:
    def __init__(self, config: RunConfig, values: ValueResolver, binder: ServiceAccountBinder,
                 verifier: CloudIdentityVerifier, prober: LiveProbeRunner, reporter: Optional[Reporter] = None):
        self.config = config
        self.values = values
        self.binder = binder
        self.verifier = verifier
        self.prober = prober
        self.reporter = reporter or Reporter()
        self.bindings: Dict[Tuple[Family, str], ResolvedBinding] = {}
        self.issuer: Optional[str] = None
        self._lock = threading.Lock()
        self._network: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)

        self._prerequisites = {
            Family.DOCUMENT_STORE: self.check_document_store_prerequisites,
            Family.RELATIONAL: self.check_relational_prerequisites,
        }
        self._overrides = {
            Family.DOCUMENT_STORE: config.opensearch_components,
            Family.RELATIONAL: config.pg_components,
        }

    def components(self, family: Family) -> List[ComponentSpec]:
        return components_for(family, self._overrides[family], self.config.exclude)

    def run(self) -> int:
        """Run every check and return the aggregate exit status."""
        planned = {family: self.components(family) for family in Family}
        for family, specs in planned.items():
            self.logger.info(f"Components to check for IRSA ({family.value}): {', '.join(s.name for s in specs) or '-'}")
        self.logger.info(f"Components excluded from IRSA checks: {', '.join(self.config.exclude) or '-'}")

        # the chart defaults are needed by every component; fail before the loop if they cannot be read
        self.values.load_defaults()

        self.check_cluster()
        for family, specs in planned.items():
            self.verify_family(family, specs)

        for (family, name), binding in self.bindings.items():
            if binding.verified:
                self.logger.info(f"IRSA binding of {name} ({family.value}) verified ({binding.service_account} -> {binding.expected_role_arn})")
        return self.reporter.exit_code()

    def check_cluster(self) -> None:
        run = _CheckRun(self.reporter, CLUSTER, self.logger)

        def aws_environment():
            if not self.binder.cluster_runs_on_aws():
                raise DiscoveryError("No AWS nodes detected in the cluster; IRSA requires EKS")
            return None, "AWS environment detected", {}

        run.attempt("aws-environment", aws_environment)
        if self.config.eks_cluster_name:
            ok, issuer = run.attempt("oidc-issuer", lambda: self._oidc_issuer())
            self.issuer = issuer if ok else None

    def _oidc_issuer(self) -> Tuple[str, str, Dict[str, Any]]:
        issuer = self.verifier.oidc_issuer()
        return issuer, f"EKS cluster {self.config.eks_cluster_name} uses OIDC issuer {issuer}", {"issuer": issuer}

    def verify_family(self, family: Family, specs: Optional[List[ComponentSpec]] = None) -> None:
        if specs is None:
            specs = self.components(family)
        enabled = []
        for spec in specs:
            if self.values.is_false(spec.enabled_path):
                self.logger.info(f"Component {spec.name} is disabled ({spec.enabled_path}: false), skipping verification")
                continue
            enabled.append(spec)
        if not enabled:
            self.logger.info(f"No enabled {family.value} components to check")
            return

        context = self._prerequisites[family](enabled)
        if context is None:
            for spec in enabled:
                self.reporter.skipped(spec.name, "prerequisites", f"Skipped: {family.value} prerequisites are not met",
                                      family=family.value)
            return

        if self.config.workers > 1 and len(enabled) > 1:
            executor = ThreadPoolExecutor(max_workers=self.config.workers)
            try:
                futures = [executor.submit(self.verify_component, spec, context) for spec in enabled]
                for future in futures:
                    future.result()
            except KeyboardInterrupt:
                executor.shutdown(wait=True, cancel_futures=True)
                raise
            executor.shutdown(wait=True)
        else:
            for spec in enabled:
                self.verify_component(spec, context)

    def check_document_store_prerequisites(self, specs: List[ComponentSpec]) -> Optional[Dict[str, Any]]:
        """OpenSearch with AWS authentication must be the only search backend."""
        run = _CheckRun(self.reporter, OPENSEARCH, self.logger, Family.DOCUMENT_STORE)
        results = []

        def elasticsearch_disabled():
            if self.values.is_true("global.elasticsearch.enabled"):
                raise PolicyValidationFailure("Elasticsearch must be disabled when OpenSearch is used with IRSA "
                                              "(global.elasticsearch.enabled: true)")
            return None, "Elasticsearch is disabled", {}

        def flag_enabled(path: str, what: str):
            def check():
                value = self.values.get_bool(path)
                if value is ABSENT:
                    raise ConfigurationAbsent(f"{path} is not set in the release values nor in the chart defaults",
                                              {"path": path})
                if value is not True:
                    raise PolicyValidationFailure(f"{what} must be enabled ({path}: {value})", {"path": path})
                return None, f"{what} is enabled", {"path": path}
            return check

        results.append(run.attempt("elasticsearch-disabled", elasticsearch_disabled)[0])
        results.append(run.attempt("opensearch-enabled", flag_enabled("global.opensearch.enabled", "OpenSearch"))[0])
        results.append(run.attempt("aws-auth-enabled",
                                   flag_enabled("global.opensearch.aws.enabled", "OpenSearch AWS authentication"))[0])

        ok, endpoint = run.attempt("endpoint", self._search_endpoint, fatal=True)
        results.append(ok)
        results.append(run.attempt("domain", lambda: self._search_domain(endpoint))[0])
        if self.config.disable_live_probe:
            run.attempt("network", None, unless="live probes are disabled")
        else:
            results.append(run.attempt("network", lambda: self._network_check(endpoint, OPENSEARCH))[0])

        if not all(results):
            return None
        return {"endpoint": endpoint}

    def check_relational_prerequisites(self, specs: List[ComponentSpec]) -> Optional[Dict[str, Any]]:
        """Each distinct database cluster named by the enabled components must accept IAM authentication."""
        run = _CheckRun(self.reporter, POSTGRESQL, self.logger, Family.RELATIONAL)
        clusters: Dict[str, EndpointInfo] = {}
        for spec in specs:
            if not spec.known:
                continue
            try:
                endpoint, _, _ = self._relational_endpoint(spec)
            except IrsaCheckError:
                # recorded by the component's own endpoint check
                continue
            clusters.setdefault(endpoint.identifier, endpoint)

        ready = {}
        for identifier, endpoint in clusters.items():
            ok, _ = run.attempt(f"db-cluster.{identifier}", lambda: self._db_cluster(endpoint))
            ready[identifier] = ok
        return {"clusters": ready}

    def _search_endpoint(self) -> Tuple[EndpointInfo, str, Dict[str, Any]]:
        host = self.values.get(OPENSEARCH_HOST_PATH)
        if host is ABSENT or not str(host).strip():
            raise ConfigurationAbsent(f"{OPENSEARCH_HOST_PATH} is not set", {"path": OPENSEARCH_HOST_PATH})
        endpoint = parse_search_endpoint(str(host))
        port = self.values.get(OPENSEARCH_PORT_PATH)
        if port is not ABSENT:
            endpoint = EndpointInfo(host=endpoint.host, port=self._port(port, OPENSEARCH_PORT_PATH),
                                    identifier=endpoint.identifier, region=endpoint.region)
        return endpoint, f"OpenSearch domain {endpoint.identifier} in {endpoint.region} at {endpoint.address}", {
            "domain": endpoint.identifier, "region": endpoint.region, "host": endpoint.host, "port": endpoint.port}

    def _port(self, value: Any, path: str) -> int:
        try:
            port = int(value)
        except (TypeError, ValueError):
            raise AddressParseError(f"{path} is not a valid port: {value}", {"path": path})
        if not 0 < port < 65536:
            raise AddressParseError(f"{path} is out of range: {value}", {"path": path})
        return port

    def _search_domain(self, endpoint: EndpointInfo):
        status = self.verifier.verify_search_domain(endpoint)
        return status, f"OpenSearch domain {endpoint.identifier} is healthy", {"arn": status.get("ARN")}

    def _network_check(self, endpoint: EndpointInfo, hint: str):
        with self._lock:
            cached = self._network.get(endpoint.address)
        if cached is None:
            try:
                cached = self.prober.check_network(endpoint.host, endpoint.port, hint)
            except IrsaCheckError as e:
                cached = e
            with self._lock:
                self._network[endpoint.address] = cached
        if isinstance(cached, IrsaCheckError):
            raise cached
        if not cached:
            raise DiscoveryError(f"{endpoint.address} is not reachable from namespace {self.config.namespace}",
                                 {"host": endpoint.host, "port": endpoint.port})
        return True, f"{endpoint.address} is reachable from namespace {self.config.namespace}", {}

    def _setting(self, spec: ComponentSpec, what: str, ref) -> Any:
        if ref is None:
            raise ConfigurationAbsent(f"No {what} setting is known for component {spec.name}")
        if ref.env_name:
            value = self.values.get_env(ref.path, ref.env_name)
        else:
            value = self.values.get(ref.path)
        if value is ABSENT or (isinstance(value, str) and not value.strip()):
            raise ConfigurationAbsent(f"{what.capitalize()} of {spec.name} is not set ({ref})", {"path": str(ref)})
        return value

    def _relational_endpoint(self, spec: ComponentSpec):
        url = self._setting(spec, "database URL", spec.endpoint)
        endpoint = parse_relational_endpoint(str(url))
        return endpoint, f"Database {endpoint.address} requested with IAM authentication", {
            "host": endpoint.host, "port": endpoint.port, "cluster": endpoint.identifier}

    def _username(self, spec: ComponentSpec):
        username = self._setting(spec, "database username", spec.username)
        return username, f"Database user is {username}", {"username": username}

    def _db_cluster(self, endpoint: EndpointInfo):
        cluster = self.verifier.verify_db_cluster(endpoint)
        return cluster, f"Database cluster {endpoint.identifier} is available with IAM authentication", {
            "cluster": endpoint.identifier}

    def _service_account_enabled(self, spec: ComponentSpec):
        if not self.binder.enabled(spec):
            raise PolicyValidationFailure(
                f"Cannot expect IRSA to work if the service account of {spec.name} is not enabled "
                f"({spec.service_account_enabled_path}: false); exclude the component to skip it",
                {"path": spec.service_account_enabled_path},
            )
        return True, f"Service account of {spec.name} is enabled", {}

    def _service_account(self, name: str):
        self.binder.read_service_account(name)
        return name, f"Service account {name} exists in namespace {self.config.namespace}", {"service_account": name}

    def _annotation(self, name: str):
        role_arn = self.binder.discover_binding(name)
        if role_arn is ABSENT:
            raise DiscoveryError(f"Service account {name} has no eks.amazonaws.com/role-arn annotation",
                                 {"service_account": name})
        return role_arn, f"Service account {name} is bound to {role_arn}", {"role_arn": role_arn}

    def _role(self, role_arn: str):
        role = self.verifier.get_role(role_arn)
        return role, f"IAM role {role.get('RoleName', role_arn)} exists", {"arn": role.get("Arn", role_arn)}

    def _trust_checks(self, run: _CheckRun, trust: Optional[TrustResult]) -> bool:
        def statement():
            if not trust.statement_found:
                raise PolicyValidationFailure(
                    f"Trust policy of {trust.role_arn} has no Allow statement for sts:AssumeRoleWithWebIdentity",
                    {"role_arn": trust.role_arn})
            return None, "Trust policy allows sts:AssumeRoleWithWebIdentity", {}

        def principal():
            if not trust.principal_matches:
                raise PolicyValidationFailure(
                    f"Federated principal of {trust.role_arn} does not match the cluster OIDC provider",
                    {"federated": trust.federated, "expected": trust.expected_provider})
            return None, "Trust policy federates the cluster OIDC provider", {"federated": trust.federated}

        def subject():
            if trust.subject_matches is False:
                raise PolicyValidationFailure(
                    f"Trust policy of {trust.role_arn} does not allow subject {trust.expected_subject}",
                    {"subjects": trust.subjects, "expected": trust.expected_subject})
            if trust.subject_matches is None:
                return None, "Trust policy does not restrict the service account subject", {}
            return None, f"Trust policy allows {trust.expected_subject}", {"subjects": trust.subjects}

        run.attempt("trust-statement", statement)
        run.attempt("trust-principal", principal,
                    unless=None if trust is None or trust.statement_found else "no web identity trust statement")
        run.attempt("trust-subject", subject,
                    unless=None if trust is None or trust.principal_matches else "trust principal does not match")
        return trust is not None and trust.ok

    def _permissions(self, role_arn: str, family: Family):
        grant = self.verifier.verify_permissions(role_arn, family)
        return grant, f"Policy {grant['policy_name']} allows {grant['action']}", grant

    def _identity_probe(self, spec: ComponentSpec, binding: ResolvedBinding):
        result = self.prober.probe(spec.name, binding.service_account, binding.expected_role_arn)
        binding.discovered_role_arn = result.assumed_arn
        meta = {"assumed": result.assumed_arn, "expected": binding.expected_role_arn,
                "service_account": binding.service_account}
        if not result.matches:
            raise IdentityMismatch(
                f"Pod with service account {binding.service_account} assumed {result.assumed_arn}, "
                f"expected {normalize_identity_arn(role_to_assumed_role_arn(binding.expected_role_arn))}",
                meta,
            )
        return result, f"Pod with service account {binding.service_account} assumed {result.assumed_arn}", meta

    def verify_component(self, spec: ComponentSpec, context: Dict[str, Any]) -> ResolvedBinding:
        name = spec.name
        binding = ResolvedBinding(component=name, family=spec.family)
        with self._lock:
            self.bindings[(spec.family, name)] = binding
        if not spec.known:
            self.reporter.skipped(name, "catalog", f"Skipped: no {spec.family.value} IRSA checks are defined for {name}",
                                  family=spec.family.value)
            return binding

        self.logger.info(f"Verifying IRSA configuration of {name} ({spec.family.value})")
        run = _CheckRun(self.reporter, name, self.logger, spec.family)
        live = not self.config.disable_live_probe
        network_ok = True

        if spec.family is Family.RELATIONAL:
            _, binding.endpoint = run.attempt("endpoint", lambda: self._relational_endpoint(spec), fatal=True)
            run.attempt("username", lambda: self._username(spec), fatal=True)
            if binding.endpoint is not None and not context.get("clusters", {}).get(binding.endpoint.identifier, True):
                run.halt(f"database cluster {binding.endpoint.identifier} failed its checks")
            if live:
                network_ok, _ = run.attempt("network", lambda: self._network_check(binding.endpoint, name))
            else:
                run.attempt("network", None, unless="live probes are disabled")
        else:
            binding.endpoint = context.get("endpoint")

        run.attempt("service-account-enabled", lambda: self._service_account_enabled(spec), fatal=True)
        if not run.fatal:
            binding.service_account = self.binder.expected_service_account(spec)
        run.attempt("service-account", lambda: self._service_account(binding.service_account), fatal=True)
        _, binding.expected_role_arn = run.attempt("role-annotation", lambda: self._annotation(binding.service_account),
                                                   fatal=True)
        _, role = run.attempt("role-exists", lambda: self._role(binding.expected_role_arn), fatal=True)

        trust = None
        if not run.fatal:
            trust = self.verifier.verify_role_trust(binding.expected_role_arn, binding.service_account,
                                                    role=role, issuer=self.issuer)
        trust_ok = self._trust_checks(run, trust)
        run.attempt("permissions", lambda: self._permissions(binding.expected_role_arn, spec.family))

        unless = None
        if not live:
            unless = "live probes are disabled"
        elif not trust_ok:
            unless = "trust policy does not allow this service account"
        elif not network_ok:
            unless = "database endpoint is not reachable"
        run.attempt("identity-probe", lambda: self._identity_probe(spec, binding), unless=unless)

        binding.verified = run.failures == 0 and run.fatal is None
        return binding
