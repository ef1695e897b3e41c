#!/usr/bin/env python3
"""
IRSA Verification Script for Camunda deployments on EKS

Checks that the components of a Camunda Helm release reach OpenSearch and
Aurora PostgreSQL through IAM Roles for Service Accounts: chart values,
service account annotations, IAM role trust and permissions, and the identity
a pod actually assumes.
"""

import argparse
import json
import logging
import sys
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from kubernetes import client, config as kube_config

from irsa_check.catalog import DEFAULT_COMPONENTS, Family
from irsa_check.config import RunConfig, build_config, load_settings
from irsa_check.errors import EXIT_INTERRUPTED, EXIT_USAGE, EXIT_VALUES_UNAVAILABLE, ValuesUnavailableError
from irsa_check.helm import HelmValuesSource, load_document
from irsa_check.iam import AwsClients, CloudIdentityVerifier
from irsa_check.orchestrator import VerificationOrchestrator
from irsa_check.probe import LiveProbeRunner
from irsa_check.reporter import Reporter
from irsa_check.service_accounts import ServiceAccountBinder
from irsa_check.values import ValueResolver

logger = logging.getLogger("irsa_check")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="irsa-check", description="Verify IRSA configuration of a Camunda deployment on EKS")
    parser.add_argument("-n", "--namespace", help="Namespace of the Helm release (required)")
    parser.add_argument("-e", "--exclude", help="Comma-separated components to exclude from the checks (root key of the component in the chart)")
    parser.add_argument("-p", "--pg-components", help=f"Comma-separated components to check for PostgreSQL (default: {DEFAULT_COMPONENTS[Family.RELATIONAL]})")
    parser.add_argument("-l", "--opensearch-components", help=f"Comma-separated components to check for OpenSearch (default: {DEFAULT_COMPONENTS[Family.DOCUMENT_STORE]})")
    parser.add_argument("-s", "--disable-live-probe", action="store_true", default=None, help="Do not launch probe pods")
    parser.add_argument("--config", default=None, help="YAML or JSON settings file")
    parser.add_argument("--region", default=None)
    parser.add_argument("--profile", default=None)
    parser.add_argument("--eks-cluster-name", default=None, help="EKS cluster name, used to match the exact OIDC issuer")
    parser.add_argument("--release", default=None, help="Helm release name (default: first camunda-platform release in the namespace)")
    parser.add_argument("--chart-name", default=None)
    parser.add_argument("--values-file", default=None, help="Read release values from a file instead of helm")
    parser.add_argument("--defaults-file", default=None, help="Read chart default values from a file instead of helm")
    parser.add_argument("--probe-timeout", type=float, default=None)
    parser.add_argument("--probe-image", default=None)
    parser.add_argument("--network-probe-image", default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--kubeconfig", default=None)
    parser.add_argument("--context", default=None)
    parser.add_argument("--output-json", default=None)
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> RunConfig:
    settings = load_settings(args.config)
    overrides = {k: v for k, v in vars(args).items() if k not in ("config", "debug")}
    return build_config(settings, overrides)


def kube_core_api(cfg: RunConfig) -> Any:
    if cfg.kubeconfig:
        kube_config.load_kube_config(config_file=cfg.kubeconfig, context=cfg.context)
    else:
        try:
            kube_config.load_kube_config(context=cfg.context)
        except kube_config.ConfigException:
            kube_config.load_incluster_config()
    return client.CoreV1Api()


def aws_session(cfg: RunConfig) -> Any:
    if cfg.profile:
        return boto3.Session(profile_name=cfg.profile, region_name=cfg.region)
    return boto3.Session(region_name=cfg.region)


def build_values(cfg: RunConfig) -> tuple:
    """Value resolver and release name, from files or from the deployed release."""
    source: Optional[HelmValuesSource] = None
    if not (cfg.values_file and cfg.defaults_file and cfg.release):
        source = HelmValuesSource(cfg.namespace, release=cfg.release, chart_name=cfg.chart_name)
    release = cfg.release or source.find_release().name
    merged = load_document(cfg.values_file) if cfg.values_file else source.merged_values()
    if cfg.defaults_file:
        return ValueResolver(merged, lambda: load_document(cfg.defaults_file)), release
    return ValueResolver(merged, source.default_values), release


def write_report(reporter: Reporter, path: Optional[str]) -> None:
    if path:
        with open(path, "w") as f:
            json.dump(reporter.to_json(), f, indent=2)
    reporter.print_text()


def main(argv=None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format='%(levelname)s: %(message)s')
    if not args.namespace and not args.config:
        print("Error: Missing one of the required options (list of all required options: NAMESPACE).", file=sys.stderr)
        sys.exit(EXIT_USAGE)
    try:
        cfg = config_from_args(args)
    except (ValueError, TypeError, ValuesUnavailableError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_USAGE)

    session = aws_session(cfg)
    try:
        ident = session.client("sts").get_caller_identity()
        logger.info(f"Using AWS identity {ident.get('Arn')} (account {ident.get('Account')})")
    except (NoCredentialsError, ClientError, BotoCoreError) as e:
        logger.error(f"AWS credentials are not configured or you are not logged in: {e}")
        sys.exit(EXIT_USAGE)

    try:
        values, release = build_values(cfg)
    except ValuesUnavailableError as e:
        logger.error(f"Cannot retrieve Helm chart values; unable to check service accounts: {e.message}")
        sys.exit(EXIT_VALUES_UNAVAILABLE)
    try:
        core = kube_core_api(cfg)
    except kube_config.ConfigException as e:
        logger.error(f"Cannot load a Kubernetes configuration (kubeconfig or in-cluster): {e}")
        sys.exit(EXIT_USAGE)

    reporter = Reporter()
    try:
        orchestrator = VerificationOrchestrator(
            cfg,
            values,
            ServiceAccountBinder(core, cfg.namespace, release, values),
            CloudIdentityVerifier(AwsClients(session), cfg.namespace, cfg.eks_cluster_name),
            LiveProbeRunner(core, cfg.namespace, timeout=cfg.probe_timeout, image=cfg.probe_image,
                            network_image=cfg.network_probe_image),
            reporter,
        )
        status = orchestrator.run()
    except ValuesUnavailableError as e:
        logger.error(f"Cannot retrieve Helm chart values; unable to check service accounts: {e.message}")
        sys.exit(EXIT_VALUES_UNAVAILABLE)
    except KeyboardInterrupt:
        logger.error("Interrupted; probe pods in flight were deleted")
        write_report(reporter, cfg.output_json)
        sys.exit(EXIT_INTERRUPTED)

    write_report(reporter, cfg.output_json)
    if status:
        logger.error(f"At least one of the checks failed (error code: {status})")
    else:
        logger.info("All checks passed")
    sys.exit(status)


if __name__ == "__main__":
    main()
