"""Unit tests for trust-document generation, normalisation and permission sets."""

from __future__ import annotations

import json
from urllib.parse import quote

import pytest

from account_bootstrap import policies
from account_bootstrap.errors import ConfigurationError
from account_bootstrap.models import (
    AccountRootPrincipal,
    FederatedPrincipal,
    RolePrincipal,
    RoleTier,
    TrustCondition,
)

_PROVIDER_ARN = (
    "arn:aws:iam::111111111111:oidc-provider/token.actions.githubusercontent.com"
)
_HOST = "token.actions.githubusercontent.com"


def _federated() -> FederatedPrincipal:
    return FederatedPrincipal(
        provider_arn=_PROVIDER_ARN,
        provider_host=_HOST,
        condition=TrustCondition(
            audience="sts.amazonaws.com", subject_pattern="repo:example-org/infra-live:*"
        ),
    )


def test_federated_trust_scopes_audience_and_subject() -> None:
    document = policies.trust_document(_federated())

    [statement] = document["Statement"]
    assert statement["Principal"] == {"Federated": _PROVIDER_ARN}
    assert statement["Action"] == "sts:AssumeRoleWithWebIdentity"
    assert statement["Condition"]["StringEquals"] == {f"{_HOST}:aud": "sts.amazonaws.com"}
    assert statement["Condition"]["StringLike"] == {
        f"{_HOST}:sub": "repo:example-org/infra-live:*"
    }
    assert policies.external_ids(document) == set()
    assert policies.trust_kind(document) == "federated-provider"


def test_account_root_trust_requires_external_token() -> None:
    document = policies.trust_document(
        AccountRootPrincipal(account_id="999999999999", external_id="ext-1")
    )

    [statement] = document["Statement"]
    assert statement["Principal"] == {"AWS": "arn:aws:iam::999999999999:root"}
    assert statement["Action"] == "sts:AssumeRole"
    assert policies.external_ids(document) == {"ext-1"}
    assert policies.trust_kind(document) == "account-root"

    with pytest.raises(ValueError, match="external token"):
        AccountRootPrincipal(account_id="999999999999", external_id="")


def test_role_arn_trust_names_the_upstream_role() -> None:
    upstream = "arn:aws:iam::111111111111:role/GitHubActions-Acme-Dev-Orchestrator"
    document = policies.trust_document(RolePrincipal(role_arn=upstream, external_id="ext-1"))

    assert document["Statement"][0]["Principal"] == {"AWS": upstream}
    assert policies.federated_principals(document) == set()
    assert policies.trust_kind(document) == "role-arn"


def test_each_document_carries_exactly_one_principal_kind() -> None:
    for principal in (
        _federated(),
        AccountRootPrincipal(account_id="999999999999", external_id="ext-1"),
        RolePrincipal(role_arn="arn:aws:iam::111111111111:role/x", external_id="ext-1"),
    ):
        document = policies.trust_document(principal)
        assert len(document["Statement"]) == 1
        assert len(document["Statement"][0]["Principal"]) == 1


@pytest.mark.parametrize(
    "pattern",
    [
        "repo:other-org/infra-live:*",
        "repo:example-org/infra-live:",
        "repo:*",
    ],
)
def test_subject_pattern_must_stay_inside_the_repository(pattern: str) -> None:
    with pytest.raises(ConfigurationError):
        policies.validate_subject_pattern(pattern, "example-org/infra-live")


def test_subject_pattern_accepts_ref_scopes() -> None:
    for pattern in (
        "repo:example-org/infra-live:*",
        "repo:example-org/infra-live:ref:refs/heads/main",
    ):
        assert policies.validate_subject_pattern(pattern, "example-org/infra-live") == pattern


def test_normalisation_ignores_ordering_and_encoding() -> None:
    generated = {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["s3:PutObject", "s3:GetObject"],
                "Resource": ["arn:aws:s3:::b"],
            }
        ],
    }
    live = {
        "Version": "2012-10-17",
        "Statement": {
            "Effect": "Allow",
            "Action": ["s3:GetObject", "s3:PutObject"],
            "Resource": "arn:aws:s3:::b",
        },
    }

    assert policies.policies_equal(generated, live)
    assert policies.policies_equal(quote(json.dumps(generated)), json.dumps(live))


def test_normalisation_detects_real_drift() -> None:
    current = policies.trust_document(
        AccountRootPrincipal(account_id="999999999999", external_id="ext-1")
    )
    rotated = policies.trust_document(
        AccountRootPrincipal(account_id="999999999999", external_id="ext-2")
    )
    assert not policies.policies_equal(current, rotated)


def test_permission_sets_per_tier() -> None:
    deployment_arn = "arn:aws:iam::111111111111:role/GitHubActions-Acme-Dev-Role"
    sets = {
        tier: policies.permission_set(
            tier,
            project_name="acme-platform",
            short_name="acme",
            account_id="111111111111",
            deployment_role_arn=deployment_arn,
        )
        for tier in RoleTier
    }

    assert sets[RoleTier.READ_ONLY].managed_policy_arns == (policies.READ_ONLY_POLICY_ARN,)
    assert not sets[RoleTier.READ_ONLY].inline_policies
    orchestration = sets[RoleTier.ORCHESTRATION].inline_policies[
        policies.ORCHESTRATION_POLICY_NAME
    ]
    assert orchestration["Statement"][0]["Resource"] == deployment_arn
    bootstrap = sets[RoleTier.BOOTSTRAP].inline_policies[policies.BOOTSTRAP_POLICY_NAME]
    sids = {statement["Sid"] for statement in bootstrap["Statement"]}
    assert {"StateBackendBuckets", "StateLockTables", "StateKeys", "TrustChain"} <= sids
    assert policies.DEPLOYMENT_POLICY_NAME in sets[RoleTier.DEPLOYMENT].inline_policies


def test_orchestration_permissions_need_deployment_arn() -> None:
    with pytest.raises(ValueError):
        policies.permission_set(
            RoleTier.ORCHESTRATION,
            project_name="acme-platform",
            short_name="acme",
            account_id="111111111111",
        )
