"""Unit tests for the tiered role chain: creation, convergence and rotation."""

from __future__ import annotations

import json
from collections.abc import Callable

import boto3
import pytest

from account_bootstrap.config import Settings
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import ControlPlaneError, ErrorKind, ExternalTokenMismatch
from account_bootstrap.identity import default_provider_spec, ensure_trust_provider
from account_bootstrap.models import (
    AccountRootPrincipal,
    Environment,
    OutcomeAction,
    PermissionSet,
    ProviderRef,
    RoleSpec,
    RoleTier,
)
from account_bootstrap.policies import (
    DEPLOYMENT_POLICY_NAME,
    READ_ONLY_POLICY_ARN,
    external_ids,
    trust_document,
)
from account_bootstrap.prober import ownership_for
from account_bootstrap.roles import build_role_specs, ensure_role, ensure_role_chain

_ADMIN_POLICY_ARN = "arn:aws:iam::aws:policy/AdministratorAccess"


@pytest.fixture
def provider(
    session: AccountSession, environment: Environment, settings: Settings
) -> ProviderRef:
    return ensure_trust_provider(
        session, environment, default_provider_spec(), ownership_for(environment, settings)
    )


def _trust(role: str) -> dict:
    return boto3.client("iam").get_role(RoleName=role)["Role"]["AssumeRolePolicyDocument"]


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def test_tiered_chain_is_created_in_order(
    session: AccountSession, environment: Environment, settings: Settings, provider: ProviderRef
) -> None:
    refs = ensure_role_chain(session, environment, provider, settings)

    assert [(ref.tier, ref.trust_kind, ref.action) for ref in refs] == [
        (RoleTier.BOOTSTRAP, "account-root", OutcomeAction.CREATED),
        (RoleTier.ORCHESTRATION, "federated-provider", OutcomeAction.CREATED),
        (RoleTier.DEPLOYMENT, "role-arn", OutcomeAction.CREATED),
        (RoleTier.READ_ONLY, "account-root", OutcomeAction.CREATED),
    ]
    orchestration, deployment = refs[1], refs[2]
    [statement] = _trust(deployment.name)["Statement"]
    assert statement["Principal"] == {"AWS": orchestration.arn}
    assert external_ids(_trust(deployment.name)) == {settings.external_id}

    iam = boto3.client("iam")
    attached = iam.list_attached_role_policies(RoleName=refs[3].name)["AttachedPolicies"]
    assert [policy["PolicyArn"] for policy in attached] == [READ_ONLY_POLICY_ARN]
    tags = {tag["Key"]: tag["Value"] for tag in iam.list_role_tags(RoleName=refs[0].name)["Tags"]}
    assert tags == {"ManagedBy": "bootstrap", "Project": "acme", "Environment": "dev"}


def test_single_hop_chain_trusts_the_provider_directly(
    session: AccountSession,
    environment: Environment,
    settings_factory: Callable[..., Settings],
    provider: ProviderRef,
) -> None:
    settings = settings_factory(BOOTSTRAP_TRUST_MODEL="single_hop")

    refs = ensure_role_chain(session, environment, provider, settings)

    assert [ref.tier for ref in refs] == [
        RoleTier.BOOTSTRAP,
        RoleTier.DEPLOYMENT,
        RoleTier.READ_ONLY,
    ]
    deployment = refs[1]
    assert deployment.trust_kind == "federated-provider"
    [statement] = _trust(deployment.name)["Statement"]
    assert statement["Principal"] == {"Federated": provider.arn}


def test_second_run_changes_nothing(
    session: AccountSession, environment: Environment, settings: Settings, provider: ProviderRef
) -> None:
    ensure_role_chain(session, environment, provider, settings)
    before = len(session.mutations)

    refs = ensure_role_chain(session, environment, provider, settings)

    assert {ref.action for ref in refs} == {OutcomeAction.UNCHANGED}
    assert session.mutations[before:] == []


def test_failed_attachment_deletes_the_new_role(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    spec = RoleSpec(
        name="Acme-Broken-Dev",
        tier=RoleTier.READ_ONLY,
        principal=AccountRootPrincipal(account_id="999999999999", external_id="ext-token-0001"),
        permission_set=PermissionSet(
            managed_policy_arns=("arn:aws:iam::aws:policy/DoesNotExist",)
        ),
    )

    with pytest.raises(ControlPlaneError) as excinfo:
        ensure_role(session, environment, spec, ownership_for(environment, settings))

    assert excinfo.value.kind is ErrorKind.NOT_FOUND
    assert excinfo.value.secondary == []
    operations = [mutation.operation for mutation in session.mutations]
    assert operations[0] == "create_role"
    assert operations[-1] == "delete_role"
    role_names = [role["RoleName"] for role in boto3.client("iam").list_roles()["Roles"]]
    assert "Acme-Broken-Dev" not in role_names


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


def test_drift_is_corrected_in_place(
    session: AccountSession, environment: Environment, settings: Settings, provider: ProviderRef
) -> None:
    refs = ensure_role_chain(session, environment, provider, settings)
    bootstrap, deployment = refs[0].name, refs[2].name
    iam = boto3.client("iam")
    iam.put_role_policy(
        RoleName=deployment,
        PolicyName=DEPLOYMENT_POLICY_NAME,
        PolicyDocument=json.dumps(
            {
                "Version": "2012-10-17",
                "Statement": [{"Effect": "Allow", "Action": "*", "Resource": "*"}],
            }
        ),
    )
    iam.put_role_policy(
        RoleName=deployment,
        PolicyName="HandAdded",
        PolicyDocument=json.dumps(
            {
                "Version": "2012-10-17",
                "Statement": [{"Effect": "Allow", "Action": "s3:*", "Resource": "*"}],
            }
        ),
    )
    iam.attach_role_policy(RoleName=bootstrap, PolicyArn=_ADMIN_POLICY_ARN)

    converged = ensure_role_chain(session, environment, provider, settings)

    actions = {ref.tier: ref.action for ref in converged}
    assert actions[RoleTier.BOOTSTRAP] is OutcomeAction.UPDATED
    assert actions[RoleTier.DEPLOYMENT] is OutcomeAction.UPDATED
    assert actions[RoleTier.ORCHESTRATION] is OutcomeAction.UNCHANGED
    assert iam.list_role_policies(RoleName=deployment)["PolicyNames"] == [DEPLOYMENT_POLICY_NAME]
    live = iam.get_role_policy(RoleName=deployment, PolicyName=DEPLOYMENT_POLICY_NAME)
    assert live["PolicyDocument"]["Statement"][0]["Action"] != "*"
    assert iam.list_attached_role_policies(RoleName=bootstrap)["AttachedPolicies"] == []


def test_trust_policy_drift_is_corrected(
    session: AccountSession, environment: Environment, settings: Settings, provider: ProviderRef
) -> None:
    refs = ensure_role_chain(session, environment, provider, settings)
    orchestration = refs[1]
    specs = build_role_specs(environment, provider, settings)
    loose = trust_document(specs[1].principal)
    loose["Statement"][0]["Condition"]["StringLike"] = {
        "token.actions.githubusercontent.com:sub": "repo:*"
    }
    boto3.client("iam").update_assume_role_policy(
        RoleName=orchestration.name, PolicyDocument=json.dumps(loose)
    )

    converged = ensure_role_chain(session, environment, provider, settings)

    assert converged[1].action is OutcomeAction.UPDATED
    [statement] = _trust(orchestration.name)["Statement"]
    assert statement["Condition"]["StringLike"] == {
        "token.actions.githubusercontent.com:sub": settings.subject_pattern
    }


def test_legacy_cased_role_is_adopted_without_rename(
    session: AccountSession, environment: Environment, settings: Settings, provider: ProviderRef
) -> None:
    read_only = build_role_specs(environment, provider, settings)[-1]
    boto3.client("iam").create_role(
        RoleName=read_only.name.lower(),
        AssumeRolePolicyDocument=json.dumps(trust_document(read_only.principal)),
        Tags=ownership_for(environment, settings).iam_tags(),
    )

    refs = ensure_role_chain(session, environment, provider, settings)

    assert refs[-1].name == "acme-dev"
    assert refs[-1].action is OutcomeAction.ADOPTED
    created = [m.resource for m in session.mutations if m.operation == "create_role"]
    assert "Acme-dev" not in created


# ---------------------------------------------------------------------------
# External token
# ---------------------------------------------------------------------------


def test_external_token_mismatch_stops_before_any_mutation(
    session: AccountSession,
    environment: Environment,
    settings_factory: Callable[..., Settings],
    provider: ProviderRef,
) -> None:
    ensure_role_chain(session, environment, provider, settings_factory())
    before = len(session.mutations)
    rotated = settings_factory(EXTERNAL_ID="ext-token-0002")

    with pytest.raises(ExternalTokenMismatch, match="--rotate-external-token"):
        ensure_role_chain(session, environment, provider, rotated)

    assert session.mutations[before:] == []


def test_rotation_repoints_every_external_token_role(
    session: AccountSession,
    environment: Environment,
    settings_factory: Callable[..., Settings],
    provider: ProviderRef,
) -> None:
    ensure_role_chain(session, environment, provider, settings_factory())
    rotated = settings_factory(EXTERNAL_ID="ext-token-0002")

    refs = ensure_role_chain(session, environment, provider, rotated, rotate=True)

    for ref in refs:
        live = external_ids(_trust(ref.name))
        if ref.trust_kind == "federated-provider":
            assert live == set()
            assert ref.action is OutcomeAction.UNCHANGED
        else:
            assert live == {"ext-token-0002"}
            assert ref.action is OutcomeAction.UPDATED
    again = ensure_role_chain(session, environment, provider, rotated)
    assert {ref.action for ref in again} == {OutcomeAction.UNCHANGED}
