"""
account_bootstrap.policies — Trust documents and permission sets.

A trust document is generated from exactly one TrustPrincipal variant, so a
role can never carry both the federated path and the role-chain path. Live
documents read back from IAM are normalised before comparison so that
ordering and single-element-list differences are not reported as drift.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any
from urllib.parse import unquote

from account_bootstrap.errors import ConfigurationError
from account_bootstrap.models import (
    AccountRootPrincipal,
    FederatedPrincipal,
    PermissionSet,
    RolePrincipal,
    RoleTier,
    TrustPrincipal,
)

POLICY_VERSION = "2012-10-17"
READ_ONLY_POLICY_ARN = "arn:aws:iam::aws:policy/ReadOnlyAccess"

BOOTSTRAP_POLICY_NAME = "BootstrapPolicy"
ORCHESTRATION_POLICY_NAME = "OrchestrationPolicy"
DEPLOYMENT_POLICY_NAME = "DeploymentPolicy"

EXTERNAL_ID_CONDITION_KEY = "sts:ExternalId"
_WILDCARDS = ("*", "?")


# ---------------------------------------------------------------------------
# Trust documents
# ---------------------------------------------------------------------------


def validate_subject_pattern(subject_pattern: str, github_repo: str) -> str:
    """Reject subject scopes broader than the owning repository."""
    prefix = f"repo:{github_repo}:"
    if any(char in github_repo for char in _WILDCARDS):
        raise ConfigurationError(f"repository {github_repo!r} must not contain wildcards")
    if not subject_pattern.startswith(prefix):
        raise ConfigurationError(
            f"subject pattern {subject_pattern!r} must start with {prefix!r}"
        )
    if len(subject_pattern) == len(prefix):
        raise ConfigurationError(f"subject pattern {subject_pattern!r} has an empty ref scope")
    return subject_pattern


def _external_id_condition(external_id: str) -> dict[str, Any]:
    return {"StringEquals": {EXTERNAL_ID_CONDITION_KEY: external_id}}


def trust_document(principal: TrustPrincipal) -> dict[str, Any]:
    """Canonical assume-role policy for one principal variant."""
    match principal:
        case FederatedPrincipal(provider_arn=arn, provider_host=host, condition=condition):
            statement = {
                "Effect": "Allow",
                "Principal": {"Federated": arn},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {f"{host}:aud": condition.audience},
                    "StringLike": {f"{host}:sub": condition.subject_pattern},
                },
            }
        case AccountRootPrincipal(account_id=account_id, external_id=external_id):
            statement = {
                "Effect": "Allow",
                "Principal": {"AWS": f"arn:aws:iam::{account_id}:root"},
                "Action": "sts:AssumeRole",
                "Condition": _external_id_condition(external_id),
            }
        case RolePrincipal(role_arn=role_arn, external_id=external_id):
            statement = {
                "Effect": "Allow",
                "Principal": {"AWS": role_arn},
                "Action": "sts:AssumeRole",
                "Condition": _external_id_condition(external_id),
            }
        case _:
            raise TypeError(f"unsupported trust principal: {principal!r}")
    return {"Version": POLICY_VERSION, "Statement": [statement]}


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def parse_policy(document: str | Mapping[str, Any]) -> dict[str, Any]:
    """Accept the URL-encoded JSON IAM returns, plain JSON, or an already-parsed dict."""
    if isinstance(document, Mapping):
        return dict(document)
    text = document.strip()
    if not text.startswith("{"):
        text = unquote(text)
    return json.loads(text)


def _canonical(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _canonical(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        items = [_canonical(item) for item in value]
        if len(items) == 1:
            return items[0]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    return value


def normalize_policy(document: str | Mapping[str, Any]) -> dict[str, Any]:
    parsed = parse_policy(document)
    statements = parsed.get("Statement", [])
    if isinstance(statements, Mapping):
        statements = [statements]
    return {
        "Version": parsed.get("Version", POLICY_VERSION),
        "Statement": [_canonical(statement) for statement in statements],
    }


def policies_equal(left: str | Mapping[str, Any], right: str | Mapping[str, Any]) -> bool:
    return json.dumps(normalize_policy(left), sort_keys=True) == json.dumps(
        normalize_policy(right), sort_keys=True
    )


def _statements(document: str | Mapping[str, Any]) -> list[Mapping[str, Any]]:
    statements = parse_policy(document).get("Statement", [])
    return [statements] if isinstance(statements, Mapping) else list(statements)


def external_ids(document: str | Mapping[str, Any]) -> set[str]:
    """Every sts:ExternalId value a trust document accepts."""
    found: set[str] = set()
    for statement in _statements(document):
        for operator in ("StringEquals", "StringLike"):
            value = statement.get("Condition", {}).get(operator, {}).get(EXTERNAL_ID_CONDITION_KEY)
            if isinstance(value, str):
                found.add(value)
            elif isinstance(value, list):
                found.update(str(item) for item in value)
    return found


def federated_principals(document: str | Mapping[str, Any]) -> set[str]:
    """Federated provider ARNs referenced by a trust document."""
    found: set[str] = set()
    for statement in _statements(document):
        principal = statement.get("Principal", {})
        if not isinstance(principal, Mapping):
            continue
        value = principal.get("Federated")
        if isinstance(value, str):
            found.add(value)
        elif isinstance(value, list):
            found.update(str(item) for item in value)
    return found


def trust_kind(document: str | Mapping[str, Any]) -> str:
    """Classify a live trust document back onto the principal variants."""
    for statement in _statements(document):
        principal = statement.get("Principal", {})
        if isinstance(principal, Mapping) and "Federated" in principal:
            return FederatedPrincipal.kind
        aws = principal.get("AWS") if isinstance(principal, Mapping) else None
        if isinstance(aws, str) and aws.endswith(":root"):
            return AccountRootPrincipal.kind
        if aws:
            return RolePrincipal.kind
    return "unknown"


# ---------------------------------------------------------------------------
# Permission sets
# ---------------------------------------------------------------------------


def _policy(*statements: dict[str, Any]) -> dict[str, Any]:
    return {"Version": POLICY_VERSION, "Statement": list(statements)}


def bootstrap_policy(*, project_name: str, short_name: str, account_id: str) -> dict[str, Any]:
    """Manage exactly the resources the bootstrap itself creates."""
    return _policy(
        {
            "Sid": "StateBackendBuckets",
            "Effect": "Allow",
            "Action": ["s3:*"],
            "Resource": [
                f"arn:aws:s3:::{project_name}-state-*",
                f"arn:aws:s3:::{project_name}-state-*/*",
            ],
        },
        {
            "Sid": "StateLockTables",
            "Effect": "Allow",
            "Action": ["dynamodb:*"],
            "Resource": f"arn:aws:dynamodb:*:{account_id}:table/{project_name}-locks-*",
        },
        {
            "Sid": "StateKeys",
            "Effect": "Allow",
            "Action": [
                "kms:CreateKey",
                "kms:CreateAlias",
                "kms:DeleteAlias",
                "kms:UpdateAlias",
                "kms:DescribeKey",
                "kms:ListAliases",
                "kms:ListKeys",
                "kms:ListResourceTags",
                "kms:TagResource",
                "kms:EnableKey",
                "kms:EnableKeyRotation",
                "kms:ScheduleKeyDeletion",
                "kms:CancelKeyDeletion",
            ],
            "Resource": "*",
        },
        {
            "Sid": "TrustChain",
            "Effect": "Allow",
            "Action": [
                "iam:*OpenIDConnectProvider*",
                "iam:ListOpenIDConnectProviders",
                "iam:GetRole",
                "iam:ListRoles",
                "iam:ListRoleTags",
                "iam:CreateRole",
                "iam:DeleteRole",
                "iam:TagRole",
                "iam:UpdateRole",
                "iam:UpdateAssumeRolePolicy",
                "iam:PutRolePolicy",
                "iam:GetRolePolicy",
                "iam:DeleteRolePolicy",
                "iam:ListRolePolicies",
                "iam:AttachRolePolicy",
                "iam:DetachRolePolicy",
                "iam:ListAttachedRolePolicies",
            ],
            "Resource": "*",
        },
        {
            "Sid": "BootstrapLock",
            "Effect": "Allow",
            "Action": ["ssm:GetParameter", "ssm:PutParameter", "ssm:DeleteParameter"],
            "Resource": f"arn:aws:ssm:*:{account_id}:parameter/{short_name}/bootstrap/*",
        },
    )


def orchestration_policy(*, deployment_role_arn: str) -> dict[str, Any]:
    """The orchestration tier may only hop to its environment's deployment role."""
    return _policy(
        {
            "Sid": "AssumeDeploymentRole",
            "Effect": "Allow",
            "Action": ["sts:AssumeRole", "sts:TagSession"],
            "Resource": deployment_role_arn,
        }
    )


def deployment_policy(*, project_name: str, short_name: str) -> dict[str, Any]:
    """Permissions the CI deployment role needs for the workload templates."""
    return _policy(
        {
            "Sid": "S3StateBucketAccess",
            "Effect": "Allow",
            "Action": [
                "s3:ListBucket",
                "s3:GetObject",
                "s3:PutObject",
                "s3:DeleteObject",
                "s3:GetBucketVersioning",
                "s3:GetBucketLocation",
            ],
            "Resource": [
                f"arn:aws:s3:::{project_name}-state-*",
                f"arn:aws:s3:::{project_name}-state-*/*",
            ],
        },
        {
            "Sid": "DynamoDBLockTableAccess",
            "Effect": "Allow",
            "Action": [
                "dynamodb:DescribeTable",
                "dynamodb:GetItem",
                "dynamodb:PutItem",
                "dynamodb:DeleteItem",
            ],
            "Resource": f"arn:aws:dynamodb:*:*:table/{project_name}-locks-*",
        },
        {
            "Sid": "S3WebsiteBucketManagement",
            "Effect": "Allow",
            "Action": [
                "s3:CreateBucket",
                "s3:DeleteBucket",
                "s3:GetBucket*",
                "s3:PutBucket*",
                "s3:ListBucket",
                "s3:GetObject",
                "s3:PutObject",
                "s3:DeleteObject",
            ],
            "Resource": [f"arn:aws:s3:::{project_name}-*", f"arn:aws:s3:::{project_name}-*/*"],
        },
        {
            "Sid": "EdgeAndCertificates",
            "Effect": "Allow",
            "Action": ["cloudfront:*", "acm:*", "route53:*", "wafv2:*"],
            "Resource": "*",
        },
        {
            "Sid": "StateKeyUsage",
            "Effect": "Allow",
            "Action": [
                "kms:DescribeKey",
                "kms:Decrypt",
                "kms:Encrypt",
                "kms:GenerateDataKey",
                "kms:ListAliases",
            ],
            "Resource": "*",
        },
        {
            "Sid": "ObservabilityManagement",
            "Effect": "Allow",
            "Action": ["logs:*", "cloudwatch:*", "sns:*", "budgets:*"],
            "Resource": "*",
        },
        {
            "Sid": "WorkloadRoleManagement",
            "Effect": "Allow",
            "Action": [
                "iam:GetRole",
                "iam:CreateRole",
                "iam:DeleteRole",
                "iam:PutRolePolicy",
                "iam:DeleteRolePolicy",
                "iam:AttachRolePolicy",
                "iam:DetachRolePolicy",
                "iam:PassRole",
                "iam:TagRole",
                "iam:UntagRole",
            ],
            "Resource": f"arn:aws:iam::*:role/{short_name}-*",
        },
    )


def permission_set(
    tier: RoleTier,
    *,
    project_name: str,
    short_name: str,
    account_id: str,
    deployment_role_arn: str = "",
) -> PermissionSet:
    match tier:
        case RoleTier.BOOTSTRAP:
            document = bootstrap_policy(
                project_name=project_name, short_name=short_name, account_id=account_id
            )
            return PermissionSet(inline_policies={BOOTSTRAP_POLICY_NAME: document})
        case RoleTier.ORCHESTRATION:
            if not deployment_role_arn:
                raise ValueError("orchestration permissions need the deployment role ARN")
            document = orchestration_policy(deployment_role_arn=deployment_role_arn)
            return PermissionSet(inline_policies={ORCHESTRATION_POLICY_NAME: document})
        case RoleTier.DEPLOYMENT:
            document = deployment_policy(project_name=project_name, short_name=short_name)
            return PermissionSet(inline_policies={DEPLOYMENT_POLICY_NAME: document})
        case RoleTier.READ_ONLY:
            return PermissionSet(managed_policy_arns=(READ_ONLY_POLICY_ARN,))
    raise ValueError(f"unknown role tier: {tier}")
