"""Verification of IAM Roles for Service Accounts (IRSA) for Camunda deployments on EKS."""

__version__ = "0.1.0"
