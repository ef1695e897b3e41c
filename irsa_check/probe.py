"""
Short-lived pods that observe what a service account can actually do.

The identity probe runs ``aws sts get-caller-identity`` under the component's
service account and compares the assumed identity with the role bound by the
IRSA annotation. The network probe checks that a host:port answers from
inside the cluster. Both pods are deleted on every exit path.
"""

import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from irsa_check.errors import ProbeInfrastructureError

DEFAULT_PROBE_IMAGE = "amazon/aws-cli:latest"
DEFAULT_NETWORK_PROBE_IMAGE = "busybox:stable"
DEFAULT_TIMEOUT = 120
DEFAULT_POLL_INTERVAL = 2.0
PROBE_LABEL = "irsa-check/probe"

logger = logging.getLogger(__name__)


def _split_arn(arn: str) -> Optional[List[str]]:
    parts = arn.strip().split(":", 5)
    if len(parts) != 6 or parts[0] != "arn":
        return None
    return parts


def normalize_identity_arn(arn: str) -> str:
    """
    Comparable form of an IAM or STS identity ARN.

    ``arn:aws:sts::123:assumed-role/MyRole/session`` becomes
    ``arn:aws:sts::123:assumed-role/MyRole``; ``iam`` and ``sts`` service
    segments are both written ``sts``. Normalizing twice changes nothing.
    """
    parts = _split_arn(arn)
    if parts is None:
        return arn.strip()
    if parts[2] in ("iam", "sts"):
        parts[2] = "sts"
    resource = parts[5].split("/")
    if resource[0] == "assumed-role" and len(resource) > 2:
        resource = resource[:2]
    parts[5] = "/".join(resource)
    return ":".join(parts)


def role_to_assumed_role_arn(role_arn: str) -> str:
    """``arn:aws:iam::123:role/path/MyRole`` -> ``arn:aws:iam::123:assumed-role/MyRole``."""
    parts = _split_arn(role_arn)
    if parts is None:
        return role_arn.strip()
    resource = parts[5].split("/")
    if resource[0] == "role" and len(resource) > 1:
        parts[5] = f"assumed-role/{resource[-1]}"
    return ":".join(parts)


def identities_match(assumed_arn: str, expected_role_arn: str) -> bool:
    return normalize_identity_arn(assumed_arn) == normalize_identity_arn(role_to_assumed_role_arn(expected_role_arn))


def probe_pod_name(kind: str, hint: str) -> str:
    """Unique, DNS-1123 compliant pod name."""
    slug = re.sub(r"[^a-z0-9-]+", "-", hint.lower()).strip("-")[:30] or "probe"
    return f"irsa-{kind}-{slug}-{secrets.token_hex(3)}"


@dataclass
class ProbeResult:
    component: str
    service_account: str
    expected_role_arn: str
    assumed_arn: str
    matches: bool
    output: Dict[str, Any]


class LiveProbeRunner:
    def __init__(self, core_api: Any, namespace: str, timeout: float = DEFAULT_TIMEOUT,
                 image: str = DEFAULT_PROBE_IMAGE, network_image: str = DEFAULT_NETWORK_PROBE_IMAGE,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        self.core = core_api
        self.namespace = namespace
        self.timeout = timeout
        self.image = image
        self.network_image = network_image
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.clock = clock

    def _pod_manifest(self, name: str, image: str, command: List[str],
                      service_account: Optional[str], env: Optional[Dict[str, str]] = None) -> Any:
        container = client.V1Container(
            name="probe",
            image=image,
            command=command,
            env=[client.V1EnvVar(name=k, value=v) for k, v in (env or {}).items()] or None,
        )
        return client.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=client.V1ObjectMeta(name=name, labels={PROBE_LABEL: "true"}),
            spec=client.V1PodSpec(
                restart_policy="Never",
                service_account_name=service_account,
                automount_service_account_token=True,
                containers=[container],
            ),
        )

    def _wait_for_completion(self, name: str) -> str:
        deadline = self.clock() + self.timeout
        while True:
            try:
                pod = self.core.read_namespaced_pod(name=name, namespace=self.namespace)
            except ApiException as e:
                raise ProbeInfrastructureError(f"Cannot read probe pod {name}: {e.status} {e.reason}",
                                               {"pod": name})
            except (HTTPError, OSError) as e:
                raise ProbeInfrastructureError(f"Cannot read probe pod {name}: {e}", {"pod": name})
            phase = getattr(pod.status, "phase", None)
            if phase in ("Succeeded", "Failed"):
                return phase
            if self.clock() >= deadline:
                raise ProbeInfrastructureError(
                    f"Probe pod {name} did not complete within {self.timeout}s (phase: {phase})",
                    {"pod": name, "phase": phase, "timeout": self.timeout},
                )
            self.sleep(self.poll_interval)

    def _read_logs(self, name: str) -> str:
        try:
            return self.core.read_namespaced_pod_log(name=name, namespace=self.namespace) or ""
        except ApiException as e:
            raise ProbeInfrastructureError(f"Cannot read logs of probe pod {name}: {e.status} {e.reason}",
                                           {"pod": name})
        except (HTTPError, OSError) as e:
            raise ProbeInfrastructureError(f"Cannot read logs of probe pod {name}: {e}", {"pod": name})

    def _delete(self, name: str) -> None:
        try:
            self.core.delete_namespaced_pod(name=name, namespace=self.namespace, grace_period_seconds=0)
            logger.debug(f"Deleted probe pod {name}")
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to delete probe pod {name} in {self.namespace}: {e.status} {e.reason}")
        except (HTTPError, OSError) as e:
            logger.error(f"Failed to delete probe pod {name} in {self.namespace}: {e}")

    def run_pod(self, name: str, image: str, command: List[str], service_account: Optional[str] = None,
                env: Optional[Dict[str, str]] = None) -> tuple:
        """Launch a pod, wait for it to finish, return (phase, logs). The pod never outlives this call."""
        manifest = self._pod_manifest(name, image, command, service_account, env)
        logger.info(f"Launching probe pod {name} in namespace {self.namespace}"
                    + (f" with service account {service_account}" if service_account else ""))
        try:
            self.core.create_namespaced_pod(namespace=self.namespace, body=manifest)
        except ApiException as e:
            raise ProbeInfrastructureError(f"Cannot create probe pod {name}: {e.status} {e.reason}",
                                           {"pod": name, "status": e.status})
        except (HTTPError, OSError) as e:
            raise ProbeInfrastructureError(f"Cannot create probe pod {name}: {e}", {"pod": name})
        try:
            phase = self._wait_for_completion(name)
            return phase, self._read_logs(name)
        finally:
            self._delete(name)

    def probe(self, component: str, service_account_name: str, expected_role_arn: str) -> ProbeResult:
        name = probe_pod_name("identity", component)
        phase, logs = self.run_pod(
            name, self.image, ["aws", "sts", "get-caller-identity", "--output", "json"],
            service_account=service_account_name, env={"AWS_PAGER": ""},
        )
        meta = {"pod": name, "service_account": service_account_name, "output": logs[-2000:]}
        if phase != "Succeeded":
            raise ProbeInfrastructureError(f"Identity probe pod {name} failed: {logs.strip()[-500:]}", meta)
        try:
            output = json.loads(logs)
        except ValueError:
            raise ProbeInfrastructureError(f"Identity probe pod {name} returned malformed output", meta)
        assumed = output.get("Arn") if isinstance(output, dict) else None
        if not isinstance(assumed, str) or not assumed:
            raise ProbeInfrastructureError(f"Identity probe pod {name} output has no Arn", meta)
        return ProbeResult(
            component=component,
            service_account=service_account_name,
            expected_role_arn=expected_role_arn,
            assumed_arn=assumed,
            matches=identities_match(assumed, expected_role_arn),
            output=output,
        )

    def check_network(self, host: str, port: int, name_hint: str) -> bool:
        """True when ``host:port`` accepts TCP connections from inside the namespace."""
        name = probe_pod_name("net", name_hint)
        phase, logs = self.run_pod(name, self.network_image, ["nc", "-z", "-w", "5", host, str(port)])
        logger.debug(f"Network probe {name} to {host}:{port} finished with phase {phase}: {logs.strip()}")
        return phase == "Succeeded"
