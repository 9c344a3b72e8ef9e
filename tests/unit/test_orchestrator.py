"""Unit tests for the orchestrator: idempotence, convergence, isolation and bulkheads."""

from __future__ import annotations

import re
from collections.abc import Callable

import boto3
import pytest

from account_bootstrap import naming
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import (
    AssumeRoleSessionFactory,
    CallEvent,
    CancellationToken,
    default_session_factory,
)
from account_bootstrap.errors import ErrorKind
from account_bootstrap.lock import acquire_lock
from account_bootstrap.models import (
    AccountRef,
    EnvironmentStatus,
    OutcomeAction,
    ResourceType,
)
from account_bootstrap.orchestrator import Orchestrator, exit_code_for
from account_bootstrap.registry import load_registry
from account_bootstrap.retry import no_wait_policy

_ACCOUNT = "123456789012"
_DEV_ACCOUNT = "111111111111"
_STAGING_ACCOUNT = "222222222222"
_ARN_ACCOUNT = re.compile(r"^arn:aws:[\w-]+:[\w-]*:(\d{12}):")


def _orchestrator(settings: Settings, **kwargs: object) -> Orchestrator:
    registry = load_registry(settings, environ={"AWS_ACCOUNT_ID_DEV": _ACCOUNT})
    kwargs.setdefault("session_factory", default_session_factory)
    kwargs.setdefault("retry_policy", no_wait_policy())
    return Orchestrator(settings, registry, owner="ops@test", **kwargs)  # type: ignore[arg-type]


def _multi_account(settings_factory: Callable[..., Settings], **kwargs: object) -> Orchestrator:
    settings = settings_factory(BOOTSTRAP_ENVIRONMENTS="dev,staging")
    registry = load_registry(
        settings,
        environ={"AWS_ACCOUNT_ID_DEV": _DEV_ACCOUNT, "AWS_ACCOUNT_ID_STAGING": _STAGING_ACCOUNT},
    )
    kwargs.setdefault(
        "session_factory", AssumeRoleSessionFactory(role_name="OrganizationAccountAccessRole")
    )
    kwargs.setdefault("retry_policy", no_wait_policy())
    return Orchestrator(settings, registry, owner="ops@test", **kwargs)  # type: ignore[arg-type]


def _customer_keys(session: boto3.Session) -> list[str]:
    kms = session.client("kms")
    return [
        entry["KeyId"]
        for entry in kms.list_keys()["Keys"]
        if kms.describe_key(KeyId=entry["KeyId"])["KeyMetadata"]["KeyManager"] == "CUSTOMER"
    ]


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def test_fresh_bootstrap_creates_the_full_chain(aws: None, settings: Settings) -> None:
    [result] = _orchestrator(settings).bootstrap(["dev"])

    assert result.ok, result.error and result.error.describe()
    assert result.environment.status is EnvironmentStatus.READY
    counts: dict[ResourceType, int] = {}
    for outcome in result.outcomes:
        assert outcome.action is OutcomeAction.CREATED
        counts[outcome.descriptor.type] = counts.get(outcome.descriptor.type, 0) + 1
    assert counts == {
        ResourceType.TRUST_PROVIDER: 1,
        ResourceType.ROLE: 4,
        ResourceType.KEY: 1,
        ResourceType.LOCK_TABLE: 1,
        ResourceType.BUCKET: 1,
    }
    assert result.manifest_path is not None and result.manifest_path.exists()
    assert result.manifest is not None and result.manifest["status"] == "ready"
    operations = {mutation.operation for mutation in result.mutations}
    assert "put_parameter" not in operations
    assert "delete_parameter" not in operations


def test_second_bootstrap_makes_zero_mutations(aws: None, settings: Settings) -> None:
    orchestrator = _orchestrator(settings)
    orchestrator.bootstrap(["dev"])

    [result] = orchestrator.bootstrap(["dev"])

    assert result.ok
    assert result.mutations == []
    assert {outcome.action for outcome in result.outcomes} == {OutcomeAction.UNCHANGED}


def test_deleted_lock_table_is_the_only_thing_recreated(aws: None, settings: Settings) -> None:
    orchestrator = _orchestrator(settings)
    [first] = orchestrator.bootstrap(["dev"])
    assert first.manifest is not None
    boto3.client("dynamodb").delete_table(TableName=first.manifest["backend"]["lockTable"])

    [result] = orchestrator.bootstrap(["dev"])

    assert result.ok
    assert [(m.service, m.operation) for m in result.mutations] == [("dynamodb", "create_table")]
    changed = [o for o in result.outcomes if o.action is not OutcomeAction.UNCHANGED]
    assert [(o.descriptor.type, o.action) for o in changed] == [
        (ResourceType.LOCK_TABLE, OutcomeAction.CREATED)
    ]


def test_failed_bootstrap_reports_what_it_already_did(aws: None, settings: Settings) -> None:
    orchestrator = _orchestrator(settings)
    environment = orchestrator.registry.get("dev")
    for bucket in naming.bucket_candidates("acme-platform", environment):
        boto3.client("s3").create_bucket(
            Bucket=bucket, CreateBucketConfiguration={"LocationConstraint": "eu-west-2"}
        )

    [result] = orchestrator.bootstrap(["dev"])

    assert result.error is not None
    assert result.error.kind is ErrorKind.CONFLICTING
    assert result.exit_code == 3
    assert result.environment.status is EnvironmentStatus.BOOTSTRAPPING
    assert [(o.descriptor.type, o.action) for o in result.outcomes] == [
        (ResourceType.TRUST_PROVIDER, OutcomeAction.CREATED),
        *[(ResourceType.ROLE, OutcomeAction.CREATED)] * 4,
    ]
    operations = [mutation.operation for mutation in result.mutations]
    assert "create_open_id_connect_provider" in operations
    assert "create_key" in operations
    payload = result.to_dict()
    assert len(payload["resources"]) == 5
    assert payload["error"]["errorType"] == "ManualInterventionRequired"


@pytest.mark.parametrize("checkpoints", [0, 1, 4, 7, 9])
def test_interrupted_bootstrap_converges_on_rerun(
    aws: None,
    settings: Settings,
    cancel_after: Callable[[int], CancellationToken],
    checkpoints: int,
) -> None:
    [interrupted] = _orchestrator(settings, cancel=cancel_after(checkpoints)).bootstrap(["dev"])

    assert interrupted.error is not None
    assert interrupted.error.kind is ErrorKind.CANCELLED
    assert interrupted.exit_code == 9

    [resumed] = _orchestrator(settings).bootstrap(["dev"])
    [settled] = _orchestrator(settings).bootstrap(["dev"])

    assert resumed.ok, resumed.error and resumed.error.describe()
    assert settled.mutations == []
    assert resumed.manifest == settled.manifest
    assert len(_customer_keys(boto3.Session())) == 1
    names = [role["name"] for role in settled.manifest["roles"]]
    assert names == [
        "Acme-Bootstrap-Dev",
        "GitHubActions-Acme-Dev-Orchestrator",
        "GitHubActions-Acme-Dev-Role",
        "Acme-dev",
    ]


def test_held_lock_stops_the_run_before_any_mutation(aws: None, settings: Settings) -> None:
    orchestrator = _orchestrator(settings)
    environment = orchestrator.registry.get("dev")
    acquire_lock(
        orchestrator.session_for(environment),
        environment,
        short_name="acme",
        owner="someone-else",
    )

    [result] = orchestrator.bootstrap(["dev"])

    assert result.error is not None
    assert result.error.kind is ErrorKind.LOCK_HELD
    assert result.exit_code == 8
    assert boto3.client("iam").list_open_id_connect_providers()["OpenIDConnectProviderList"] == []


# ---------------------------------------------------------------------------
# Multi-account
# ---------------------------------------------------------------------------


def test_environments_never_touch_each_other(
    aws: None, settings_factory: Callable[..., Settings]
) -> None:
    events: list[CallEvent] = []
    orchestrator = _multi_account(settings_factory, observers=[events.append])

    results = orchestrator.bootstrap(["dev", "staging"])

    assert [result.ok for result in results] == [True, True]
    assert exit_code_for(results) == 0
    assert {event.account.account_id for event in events} == {_DEV_ACCOUNT, _STAGING_ACCOUNT}
    for event in events:
        for value in event.params.values():
            match = _ARN_ACCOUNT.match(value) if isinstance(value, str) else None
            if match:
                assert match.group(1) == event.account.account_id

    factory = AssumeRoleSessionFactory(role_name="OrganizationAccountAccessRole")
    for account_id, title in ((_DEV_ACCOUNT, "Dev"), (_STAGING_ACCOUNT, "Staging")):
        session = factory(AccountRef(account_id=account_id, region="eu-west-2"))
        roles = [
            role["RoleName"]
            for role in session.client("iam").list_roles()["Roles"]
            if role["RoleName"].startswith(("Acme", "GitHubActions"))
        ]
        assert len(roles) == 4
        assert all(title in name or title.lower() in name for name in roles)
        assert len(_customer_keys(session)) == 1


def test_one_failing_environment_does_not_stop_the_others(
    aws: None, settings_factory: Callable[..., Settings]
) -> None:
    assume = AssumeRoleSessionFactory(role_name="OrganizationAccountAccessRole")

    def _factory(account: AccountRef) -> boto3.Session:
        if account.account_id == _STAGING_ACCOUNT:
            raise RuntimeError("credentials unavailable")
        return assume(account)

    results = _multi_account(settings_factory, session_factory=_factory).bootstrap(
        ["dev", "staging"], max_workers=2
    )

    dev, staging = results
    assert dev.ok
    assert staging.error is not None
    assert staging.error.kind is ErrorKind.UNKNOWN
    assert "credentials unavailable" in staging.error.describe()
    assert exit_code_for(results) == 1


# ---------------------------------------------------------------------------
# Destroy and report
# ---------------------------------------------------------------------------


def test_destroy_round_trip(aws: None, settings: Settings) -> None:
    orchestrator = _orchestrator(settings)
    orchestrator.bootstrap(["dev"])

    [plan] = orchestrator.destroy(["dev"], dry_run=True)
    assert plan.ok
    assert plan.mutations == []
    assert {outcome.action for outcome in plan.outcomes} == {OutcomeAction.WOULD_DELETE}

    [result] = orchestrator.destroy(["dev"])
    assert result.ok, result.error and result.error.describe()
    assert result.environment.status is EnvironmentStatus.UNBOOTSTRAPPED

    [report] = orchestrator.report(["dev"])
    assert report.environment.status is EnvironmentStatus.UNBOOTSTRAPPED
    assert {outcome.action for outcome in report.outcomes} == {OutcomeAction.ALREADY_ABSENT}


def test_destroy_with_a_conflicting_bucket_fails_and_leaves_it(
    aws: None, settings: Settings
) -> None:
    orchestrator = _orchestrator(settings)
    [bootstrap] = orchestrator.bootstrap(["dev"])
    assert bootstrap.manifest is not None
    bucket = bootstrap.manifest["backend"]["bucket"]
    boto3.client("s3").delete_bucket_tagging(Bucket=bucket)

    results = orchestrator.destroy(["dev"])

    [result] = results
    assert result.error is not None
    assert result.error.kind is ErrorKind.PARTIAL_FAILURE
    assert exit_code_for(results) == 7
    assert f"bucket:{bucket}" in str(result.error)
    assert "conflicting" in result.error.describe()
    boto3.client("s3").head_bucket(Bucket=bucket)
    assert result.environment.status is EnvironmentStatus.TEARING_DOWN


def test_dry_run_that_would_be_refused_fails(aws: None, settings: Settings) -> None:
    orchestrator = _orchestrator(settings)
    [bootstrap] = orchestrator.bootstrap(["dev"])
    assert bootstrap.manifest is not None
    bucket = bootstrap.manifest["backend"]["bucket"]
    boto3.client("s3").delete_bucket_tagging(Bucket=bucket)

    results = orchestrator.destroy(["dev"], dry_run=True)

    [result] = results
    assert result.mutations == []
    assert result.error is not None
    assert result.error.kind is ErrorKind.PARTIAL_FAILURE
    assert exit_code_for(results) == 7
    assert f"bucket:{bucket}" in str(result.error)
    actions = {outcome.descriptor.type: outcome.action for outcome in result.outcomes}
    assert actions[ResourceType.BUCKET] is OutcomeAction.CONFLICTING
    assert actions[ResourceType.KEY] is OutcomeAction.BLOCKED
    assert actions[ResourceType.LOCK_TABLE] is OutcomeAction.WOULD_DELETE


def test_protected_environment_requires_force(
    aws: None, settings_factory: Callable[..., Settings]
) -> None:
    settings = settings_factory(BOOTSTRAP_PROTECTED_ENVIRONMENTS="dev")
    orchestrator = _orchestrator(settings)
    orchestrator.bootstrap(["dev"])

    [refused] = orchestrator.destroy(["dev"])
    assert refused.error is not None
    assert refused.exit_code == 2
    assert "--force" in str(refused.error)

    [plan] = orchestrator.destroy(["dev"], dry_run=True)
    assert plan.ok

    [forced] = orchestrator.destroy(["dev"], force=True)
    assert forced.ok


def test_report_rebuilds_the_manifest_from_live_state(aws: None, settings: Settings) -> None:
    orchestrator = _orchestrator(settings)
    [bootstrap] = orchestrator.bootstrap(["dev"])
    assert bootstrap.manifest_path is not None
    bootstrap.manifest_path.unlink()

    [report] = orchestrator.report(["dev"])

    assert report.ok
    assert report.environment.status is EnvironmentStatus.READY
    assert report.manifest_path == bootstrap.manifest_path
    assert report.manifest_path.exists()
    assert report.manifest is not None and bootstrap.manifest is not None
    assert report.manifest["backend"] == bootstrap.manifest["backend"]
    assert report.manifest["ciVariables"] == bootstrap.manifest["ciVariables"]
    assert {entry["status"] for entry in report.manifest["resources"]} == {"exists"}
