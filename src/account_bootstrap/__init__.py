"""
account_bootstrap — Multi-account identity-trust chain and state backend bootstrap.

Provisions, reports on, and tears down the GitHub Actions OIDC provider, the
tiered IAM role chain and the Terraform state backend (S3 + DynamoDB + KMS) of
every environment account.
"""

SERVICE_NAME = "account-bootstrap"

__version__ = "0.1.0"
