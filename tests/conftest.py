import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError
from kubernetes.client.exceptions import ApiException

from irsa_check.config import RunConfig
from irsa_check.iam import AwsClients, CloudIdentityVerifier
from irsa_check.orchestrator import VerificationOrchestrator
from irsa_check.probe import LiveProbeRunner
from irsa_check.service_accounts import ServiceAccountBinder
from irsa_check.values import ValueResolver

ACCOUNT = "123456789012"
REGION = "us-east-1"
NAMESPACE = "camunda"
RELEASE = "camunda"
OIDC_ID = "ABCDEF0123456789ABCDEF0123456789"
ISSUER = f"https://oidc.eks.{REGION}.amazonaws.com/id/{OIDC_ID}"
OIDC_PROVIDER_ARN = f"arn:aws:iam::{ACCOUNT}:oidc-provider/oidc.eks.{REGION}.amazonaws.com/id/{OIDC_ID}"
OPENSEARCH_HOST = "vpc-camunda-os-ab12cd3ef.us-east-1.es.amazonaws.com"
DB_HOST = "camunda-db.cluster-abc123xyz.us-east-1.rds.amazonaws.com"
DB_URL = f"jdbc:aws-wrapper:postgresql://{DB_HOST}:5432/camunda?wrapperPlugins=iam"


def role_arn(name: str) -> str:
    return f"arn:aws:iam::{ACCOUNT}:role/{name}"


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised by test"}}, operation)


def trust_policy(service_account: Optional[str] = None, provider: str = OIDC_PROVIDER_ARN,
                 action: str = "sts:AssumeRoleWithWebIdentity") -> Dict[str, Any]:
    statement = {
        "Effect": "Allow",
        "Principal": {"Federated": provider},
        "Action": action,
    }
    if service_account:
        issuer_host = provider.split("oidc-provider/")[-1]
        statement["Condition"] = {
            "StringEquals": {
                f"{issuer_host}:sub": f"system:serviceaccount:{NAMESPACE}:{service_account}",
                f"{issuer_host}:aud": "sts.amazonaws.com",
            }
        }
    return {"Version": "2012-10-17", "Statement": [statement]}


def allow_policy(*actions: str) -> Dict[str, Any]:
    return {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": list(actions), "Resource": "*"}]}


class FakeIam:
    def __init__(self):
        self.roles: Dict[str, Dict[str, Any]] = {}
        self.attached: Dict[str, List[Dict[str, Any]]] = {}
        self.inline: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fetched_policies: List[str] = []

    def add_role(self, name: str, trust: Dict[str, Any], managed: Optional[Dict[str, Dict[str, Any]]] = None,
                 inline: Optional[Dict[str, Dict[str, Any]]] = None) -> str:
        arn = role_arn(name)
        self.roles[name] = {"RoleName": name, "Arn": arn, "AssumeRolePolicyDocument": trust}
        self.attached[name] = [
            {"PolicyName": pname, "PolicyArn": f"arn:aws:iam::{ACCOUNT}:policy/{name}-{pname}", "Document": doc}
            for pname, doc in (managed or {}).items()
        ]
        self.inline[name] = dict(inline or {})
        return arn

    def get_role(self, RoleName):
        if RoleName not in self.roles:
            raise client_error("NoSuchEntity", "GetRole")
        return {"Role": self.roles[RoleName]}

    def get_paginator(self, operation):
        if operation == "list_attached_role_policies":
            return _RolePaginator(lambda role: [{"AttachedPolicies": [
                {"PolicyName": p["PolicyName"], "PolicyArn": p["PolicyArn"]} for p in self.attached.get(role, [])
            ]}])
        if operation == "list_role_policies":
            return _RolePaginator(lambda role: [{"PolicyNames": list(self.inline.get(role, {}))}])
        raise AssertionError(f"unexpected paginator {operation}")

    def _managed(self, policy_arn):
        for policies in self.attached.values():
            for p in policies:
                if p["PolicyArn"] == policy_arn:
                    return p
        raise client_error("NoSuchEntity", "GetPolicy")

    def get_policy(self, PolicyArn):
        self._managed(PolicyArn)
        return {"Policy": {"Arn": PolicyArn, "DefaultVersionId": "v1"}}

    def get_policy_version(self, PolicyArn, VersionId):
        self.fetched_policies.append(PolicyArn)
        return {"PolicyVersion": {"Document": self._managed(PolicyArn)["Document"], "VersionId": VersionId}}

    def get_role_policy(self, RoleName, PolicyName):
        self.fetched_policies.append(PolicyName)
        return {"PolicyDocument": self.inline[RoleName][PolicyName]}


class _RolePaginator:
    def __init__(self, pages_for):
        self.pages_for = pages_for

    def paginate(self, RoleName):
        return iter(self.pages_for(RoleName))


class FakeRds:
    def __init__(self):
        self.clusters: Dict[str, Dict[str, Any]] = {}
        self.calls = 0

    def describe_db_clusters(self, DBClusterIdentifier):
        self.calls += 1
        if DBClusterIdentifier not in self.clusters:
            raise client_error("DBClusterNotFoundFault", "DescribeDBClusters")
        return {"DBClusters": [self.clusters[DBClusterIdentifier]]}


class FakeOpenSearch:
    def __init__(self):
        self.domains: Dict[str, Dict[str, Any]] = {}

    def describe_domain(self, DomainName):
        if DomainName not in self.domains:
            raise client_error("ResourceNotFoundException", "DescribeDomain")
        return {"DomainStatus": self.domains[DomainName]}


class FakeEks:
    def __init__(self, issuer: str = ISSUER):
        self.issuer = issuer

    def describe_cluster(self, name):
        return {"cluster": {"name": name, "identity": {"oidc": {"issuer": self.issuer}}}}


class FakeSts:
    def get_caller_identity(self):
        return {"Account": ACCOUNT, "Arn": f"arn:aws:iam::{ACCOUNT}:user/operator"}


class FakeSession:
    region_name = REGION

    def __init__(self):
        self.sts = FakeSts()
        self.iam = FakeIam()
        self.rds = FakeRds()
        self.opensearch = FakeOpenSearch()
        self.eks = FakeEks()

    def client(self, service, region_name=None):
        return getattr(self, service)


class FakeCore:
    """Just enough of CoreV1Api for service accounts, nodes and probe pods."""

    def __init__(self):
        self.service_accounts: Dict[str, Dict[str, str]] = {}
        self.provider_ids = [f"aws:///{REGION}a/i-0123456789abcdef0"]
        self.identities: Dict[str, str] = {}
        self.unreachable: set = set()
        self.pods: Dict[str, Any] = {}
        self.created: List[str] = []
        self.deleted: List[str] = []
        self.phase: Optional[str] = None
        self.logs: Optional[str] = None

    def add_service_account(self, name: str, role: Optional[str] = None) -> None:
        self.service_accounts[name] = {"eks.amazonaws.com/role-arn": role} if role else {}

    def read_namespaced_service_account(self, name, namespace):
        if name not in self.service_accounts:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(metadata=SimpleNamespace(name=name, annotations=self.service_accounts[name]))

    def list_node(self):
        return SimpleNamespace(items=[SimpleNamespace(spec=SimpleNamespace(provider_id=p)) for p in self.provider_ids])

    def create_namespaced_pod(self, namespace, body):
        name = body.metadata.name
        self.pods[name] = body
        self.created.append(name)
        return body

    def read_namespaced_pod(self, name, namespace):
        body = self.pods[name]
        phase = self.phase
        if phase is None:
            command = body.spec.containers[0].command
            if command[0] == "nc":
                phase = "Failed" if f"{command[-2]}:{command[-1]}" in self.unreachable else "Succeeded"
            else:
                phase = "Succeeded"
        return SimpleNamespace(status=SimpleNamespace(phase=phase))

    def read_namespaced_pod_log(self, name, namespace):
        if self.logs is not None:
            return self.logs
        body = self.pods[name]
        sa = body.spec.service_account_name
        if sa is None:
            return ""
        arn = self.identities.get(sa, f"arn:aws:sts::{ACCOUNT}:assumed-role/unknown/botocore-session-1")
        return json.dumps({"UserId": "AROAEXAMPLE:botocore-session-1", "Account": ACCOUNT, "Arn": arn})

    def delete_namespaced_pod(self, name, namespace, grace_period_seconds=None):
        self.deleted.append(name)
        self.pods.pop(name, None)


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def core():
    return FakeCore()


@pytest.fixture
def defaults():
    return {
        "global": {
            "elasticsearch": {"enabled": True},
            "opensearch": {"enabled": False, "aws": {"enabled": False}, "url": {"protocol": "https", "host": "", "port": 443}},
        },
        "zeebe": {"enabled": True, "serviceAccount": {"enabled": True, "name": ""}},
        "operate": {"enabled": True, "serviceAccount": {"enabled": True, "name": ""}},
        "tasklist": {"enabled": True, "serviceAccount": {"enabled": True, "name": ""}},
        "optimize": {"enabled": True, "serviceAccount": {"enabled": True, "name": ""}},
        "identity": {"enabled": True, "serviceAccount": {"enabled": True, "name": ""}, "env": []},
        "identityKeycloak": {"enabled": True, "serviceAccount": {"enabled": True}},
        "webModeler": {"enabled": False, "serviceAccount": {"enabled": True, "name": ""}},
    }


def make_orchestrator(session, core, merged, defaults, **config) -> VerificationOrchestrator:
    cfg = RunConfig(namespace=NAMESPACE, **config)
    values = ValueResolver(merged, lambda: defaults)
    prober = LiveProbeRunner(core, NAMESPACE, timeout=10, poll_interval=0, sleep=lambda s: None)
    return VerificationOrchestrator(
        cfg,
        values,
        ServiceAccountBinder(core, NAMESPACE, RELEASE, values),
        CloudIdentityVerifier(AwsClients(session), NAMESPACE, cfg.eks_cluster_name),
        prober,
    )
