import json
import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from irsa_check.errors import ValuesUnavailableError

CHART_NAME = "camunda-platform"
CHART_REPO = "https://helm.camunda.io"

CHART_VERSION_RE = re.compile(r"^(?P<name>.+?)-(?P<version>\d+\.\d+\.\d+\S*)$")

logger = logging.getLogger(__name__)


@dataclass
class HelmRelease:
    name: str
    namespace: str
    chart: str
    chart_version: str


def load_document(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as f:
            if path.endswith(".json"):
                doc = json.load(f)
            else:
                doc = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ValuesUnavailableError(f"Cannot load values from {path}: {e}", {"path": path})
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ValuesUnavailableError(f"Values file {path} does not contain a mapping", {"path": path})
    return doc


def split_chart_version(chart: str) -> tuple:
    """``camunda-platform-10.0.5`` -> (``camunda-platform``, ``10.0.5``)."""
    match = CHART_VERSION_RE.match(chart)
    if not match:
        raise ValuesUnavailableError(f"Cannot extract chart version from '{chart}'", {"chart": chart})
    return match.group("name"), match.group("version")


def run_helm(args: List[str]) -> str:
    cmd = ["helm"] + args
    logger.info(f"Running command: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ValuesUnavailableError(f"Cannot run helm: {e}", {"command": cmd})
    if result.returncode != 0:
        raise ValuesUnavailableError(
            f"helm {args[0]} failed ({result.returncode}): {result.stderr.strip()}",
            {"command": cmd},
        )
    return result.stdout


class HelmValuesSource:
    """Merged and default values of the chart release deployed in a namespace."""

    def __init__(self, namespace: str, release: Optional[str] = None, chart_name: str = CHART_NAME,
                 chart_repo: str = CHART_REPO, runner=run_helm):
        self.namespace = namespace
        self.release_name = release
        self.chart_name = chart_name
        self.chart_repo = chart_repo
        self.run = runner
        self._release: Optional[HelmRelease] = None

    def find_release(self) -> HelmRelease:
        if self._release is not None:
            return self._release
        try:
            releases = json.loads(self.run(["list", "-n", self.namespace, "-o", "json"]) or "[]")
        except ValueError as e:
            raise ValuesUnavailableError(f"Cannot parse helm list output: {e}")
        for item in releases:
            chart = item.get("chart", "")
            if not chart.startswith(f"{self.chart_name}-"):
                continue
            if self.release_name and item.get("name") != self.release_name:
                continue
            name, version = split_chart_version(chart)
            self._release = HelmRelease(name=item["name"], namespace=self.namespace, chart=name, chart_version=version)
            logger.info(f"Chart {self.chart_name} is deployed in namespace {self.namespace} as release "
                        f"{self._release.name} (version {version})")
            return self._release
        raise ValuesUnavailableError(f"Chart {self.chart_name} is not found in namespace {self.namespace}",
                                     {"namespace": self.namespace})

    def merged_values(self) -> Dict[str, Any]:
        release = self.find_release()
        try:
            values = json.loads(self.run(["get", "values", release.name, "-n", self.namespace, "-o", "json"]) or "{}")
        except ValueError as e:
            raise ValuesUnavailableError(f"Cannot parse values of release {release.name}: {e}")
        return values or {}

    def default_values(self) -> Dict[str, Any]:
        release = self.find_release()
        output = self.run(["show", "values", release.chart, "--repo", self.chart_repo,
                           "--version", release.chart_version])
        try:
            values = yaml.safe_load(output)
        except yaml.YAMLError as e:
            raise ValuesUnavailableError(f"Cannot parse default values of {release.chart} {release.chart_version}: {e}")
        return values or {}
