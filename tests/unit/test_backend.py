"""Unit tests for the state backend: key, lock table and bucket."""

from __future__ import annotations

import boto3
import pytest

from account_bootstrap import naming
from account_bootstrap.backend import ensure_backend
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import ManualInterventionRequired
from account_bootstrap.models import Environment, OutcomeAction, ResourceType

_REGION = "eu-west-2"


def _create_foreign_bucket(name: str) -> None:
    boto3.client("s3").create_bucket(
        Bucket=name, CreateBucketConfiguration={"LocationConstraint": _REGION}
    )


def test_fresh_backend_is_fully_configured(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    ref = ensure_backend(session, environment, settings)

    assert ref.action is OutcomeAction.CREATED
    assert set(ref.resource_actions.values()) == {OutcomeAction.CREATED}
    assert ref.bucket == naming.bucket_name("acme-platform", environment)
    assert ref.lock_table == "acme-platform-locks-dev"
    assert ref.key_alias == f"alias/acme-platform-state-dev-{environment.account_id}"

    s3 = boto3.client("s3")
    assert s3.get_bucket_versioning(Bucket=ref.bucket)["Status"] == "Enabled"
    [rule] = s3.get_bucket_encryption(Bucket=ref.bucket)["ServerSideEncryptionConfiguration"][
        "Rules"
    ]
    assert rule["ApplyServerSideEncryptionByDefault"] == {
        "SSEAlgorithm": "aws:kms",
        "KMSMasterKeyID": ref.key_arn,
    }
    block = s3.get_public_access_block(Bucket=ref.bucket)["PublicAccessBlockConfiguration"]
    assert all(block.values())

    kms = boto3.client("kms")
    assert kms.get_key_rotation_status(KeyId=ref.key_id)["KeyRotationEnabled"] is True
    assert kms.describe_key(KeyId=ref.key_alias)["KeyMetadata"]["KeyId"] == ref.key_id

    table = boto3.client("dynamodb").describe_table(TableName=ref.lock_table)["Table"]
    assert table["KeySchema"] == [{"AttributeName": "LockID", "KeyType": "HASH"}]
    assert table["SSEDescription"]["Status"] == "ENABLED"

    assert 'dynamodb_table = "acme-platform-locks-dev"' in ref.terraform_backend_config("dev")


def test_second_run_changes_nothing(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    ensure_backend(session, environment, settings)
    before = len(session.mutations)

    ref = ensure_backend(session, environment, settings)

    assert ref.action is OutcomeAction.UNCHANGED
    assert session.mutations[before:] == []


def test_deleted_lock_table_is_recreated_alone(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    first = ensure_backend(session, environment, settings)
    boto3.client("dynamodb").delete_table(TableName=first.lock_table)
    before = len(session.mutations)

    ref = ensure_backend(session, environment, settings)

    assert dict(ref.resource_actions) == {
        ResourceType.KEY: OutcomeAction.UNCHANGED,
        ResourceType.LOCK_TABLE: OutcomeAction.CREATED,
        ResourceType.BUCKET: OutcomeAction.UNCHANGED,
    }
    assert [m.operation for m in session.mutations[before:]] == ["create_table"]
    assert ref.key_id == first.key_id
    assert ref.bucket == first.bucket


def test_bucket_drift_is_corrected(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    first = ensure_backend(session, environment, settings)
    s3 = boto3.client("s3")
    s3.put_bucket_versioning(Bucket=first.bucket, VersioningConfiguration={"Status": "Suspended"})
    s3.delete_public_access_block(Bucket=first.bucket)

    ref = ensure_backend(session, environment, settings)

    assert ref.resource_actions[ResourceType.BUCKET] is OutcomeAction.UPDATED
    assert s3.get_bucket_versioning(Bucket=first.bucket)["Status"] == "Enabled"
    block = s3.get_public_access_block(Bucket=first.bucket)["PublicAccessBlockConfiguration"]
    assert all(block.values())


def test_taken_canonical_bucket_falls_back_to_suffixed_name(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    canonical, suffixed = naming.bucket_candidates("acme-platform", environment)
    _create_foreign_bucket(canonical)

    ref = ensure_backend(session, environment, settings)

    assert ref.bucket == suffixed
    assert ref.resource_actions[ResourceType.BUCKET] is OutcomeAction.CREATED
    assert "Status" not in boto3.client("s3").get_bucket_versioning(Bucket=canonical)
    assert ensure_backend(session, environment, settings).bucket == suffixed


def test_failure_rolls_back_and_orphaned_key_is_adopted(
    session: AccountSession, environment: Environment, settings: Settings
) -> None:
    canonical, suffixed = naming.bucket_candidates("acme-platform", environment)
    _create_foreign_bucket(canonical)
    _create_foreign_bucket(suffixed)

    with pytest.raises(ManualInterventionRequired, match="both candidate bucket names"):
        ensure_backend(session, environment, settings)

    kms = boto3.client("kms")
    dynamodb = boto3.client("dynamodb")
    assert dynamodb.list_tables()["TableNames"] == []
    aliases = [alias["AliasName"] for alias in kms.list_aliases()["Aliases"]]
    assert naming.key_alias("acme-platform", environment) not in aliases
    keys = [
        kms.describe_key(KeyId=entry["KeyId"])["KeyMetadata"]
        for entry in kms.list_keys()["Keys"]
    ]
    [key] = [metadata for metadata in keys if metadata["KeyManager"] == "CUSTOMER"]
    assert key["KeyState"] == "PendingDeletion"

    s3 = boto3.client("s3")
    s3.delete_bucket(Bucket=canonical)
    s3.delete_bucket(Bucket=suffixed)

    ref = ensure_backend(session, environment, settings)

    assert ref.key_id == key["KeyId"]
    assert ref.resource_actions[ResourceType.KEY] is OutcomeAction.ADOPTED
    assert kms.describe_key(KeyId=ref.key_id)["KeyMetadata"]["KeyState"] == "Enabled"
