"""Unit tests for the federated trust provider."""

from __future__ import annotations

import boto3
import pytest

from account_bootstrap import naming
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import ManualInterventionRequired
from account_bootstrap.identity import default_provider_spec, ensure_trust_provider
from account_bootstrap.models import Environment, OutcomeAction
from account_bootstrap.prober import ownership_for


def test_creates_provider_with_audience_and_thumbprints(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    ref = ensure_trust_provider(
        session, environment, default_provider_spec(), ownership_for(environment, settings)
    )

    assert ref.action is OutcomeAction.CREATED
    assert ref.arn == (
        f"arn:aws:iam::{environment.account_id}:oidc-provider/token.actions.githubusercontent.com"
    )
    live = boto3.client("iam").get_open_id_connect_provider(OpenIDConnectProviderArn=ref.arn)
    assert live["ClientIDList"] == ["sts.amazonaws.com"]
    assert sorted(live["ThumbprintList"]) == sorted(naming.OIDC_THUMBPRINTS)
    assert [(m.operation, m.resource) for m in session.mutations] == [
        ("create_open_id_connect_provider", ref.arn)
    ]


def test_second_run_is_a_no_op(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    ownership = ownership_for(environment, settings)
    ensure_trust_provider(session, environment, default_provider_spec(), ownership)
    before = len(session.mutations)

    ref = ensure_trust_provider(session, environment, default_provider_spec(), ownership)

    assert ref.action is OutcomeAction.UNCHANGED
    assert len(session.mutations) == before


def test_thumbprint_drift_is_corrected_in_place(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    ownership = ownership_for(environment, settings)
    ref = ensure_trust_provider(session, environment, default_provider_spec(), ownership)
    iam = boto3.client("iam")
    iam.update_open_id_connect_provider_thumbprint(
        OpenIDConnectProviderArn=ref.arn, ThumbprintList=["0" * 40]
    )

    updated = ensure_trust_provider(session, environment, default_provider_spec(), ownership)

    assert updated.action is OutcomeAction.UPDATED
    assert updated.arn == ref.arn
    live = iam.get_open_id_connect_provider(OpenIDConnectProviderArn=ref.arn)
    assert sorted(live["ThumbprintList"]) == sorted(naming.OIDC_THUMBPRINTS)


def test_foreign_provider_is_never_touched(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    boto3.client("iam").create_open_id_connect_provider(
        Url=naming.OIDC_PROVIDER_URL,
        ClientIDList=["sts.amazonaws.com"],
        ThumbprintList=["0" * 40],
    )

    with pytest.raises(ManualInterventionRequired) as excinfo:
        ensure_trust_provider(
            session, environment, default_provider_spec(), ownership_for(environment, settings)
        )

    assert excinfo.value.exit_code == 3
    assert "oidc-provider" in excinfo.value.resource
    assert session.mutations == []
