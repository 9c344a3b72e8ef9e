"""
account_bootstrap.backend — Terraform state backend (KMS key, lock table, bucket).

Creation order is key + alias, then lock table (encrypted with the key), then
bucket (versioning, SSE-KMS with the key, full public-access block, read back
and verified). Anything created in the current run is rolled back newest first
if a later step fails; cancellation between steps keeps completed resources.

Recovery paths:
  - alias missing but an owned key tagged for this environment exists: adopt it
  - key pending deletion: cancel the deletion and re-enable it
  - lock table DELETING: wait it out, then recreate
  - canonical bucket name conflicting: use the account-derived suffixed name
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, naming
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import (
    BootstrapError,
    ControlPlaneError,
    ErrorKind,
    ManualInterventionRequired,
    OperationCancelled,
)
from account_bootstrap.models import (
    BackendRef,
    Environment,
    OutcomeAction,
    Ownership,
    ProbeResult,
    ProbeStatus,
    ResourceDescriptor,
    ResourceType,
)
from account_bootstrap.prober import (
    bucket_descriptor,
    key_descriptor,
    lock_table_descriptor,
    ownership_for,
    probe,
    resolve_bucket,
)

logger = Logger(service=SERVICE_NAME, child=True)

KEY_PENDING_WINDOW_DAYS = 7
LOCK_TABLE_HASH_KEY = "LockID"

_PUBLIC_ACCESS_BLOCK = {
    "BlockPublicAcls": True,
    "IgnorePublicAcls": True,
    "BlockPublicPolicy": True,
    "RestrictPublicBuckets": True,
}


class _RollbackStack:
    """Compensating actions for resources created in the current run."""

    def __init__(self) -> None:
        self._steps: list[tuple[str, Callable[[], None]]] = []

    def push(self, label: str, undo: Callable[[], None]) -> None:
        self._steps.append((label, undo))

    def unwind(self) -> list[BootstrapError]:
        errors: list[BootstrapError] = []
        while self._steps:
            label, undo = self._steps.pop()
            try:
                undo()
            except BootstrapError as exc:
                logger.error("Rollback step failed", resource=label, kind=exc.kind.value)
                errors.append(exc)
            else:
                logger.info("Rolled back", resource=label)
        return errors


def _kms_tags(ownership: Ownership) -> list[dict[str, str]]:
    return [{"TagKey": key, "TagValue": value} for key, value in ownership.tags().items()]


def schedule_key_deletion(session: AccountSession, key_id: str, alias: str | None) -> None:
    """Delete the alias (if any), then schedule the key for deletion."""
    if alias:
        try:
            session.call("kms", "delete_alias", AliasName=alias, resource=alias)
        except ControlPlaneError as exc:
            if exc.kind is not ErrorKind.NOT_FOUND:
                raise
    session.call(
        "kms",
        "schedule_key_deletion",
        KeyId=key_id,
        PendingWindowInDays=KEY_PENDING_WINDOW_DAYS,
        resource=key_id,
    )


# ---------------------------------------------------------------------------
# Key
# ---------------------------------------------------------------------------


def find_owned_keys(
    session: AccountSession, ownership: Ownership, *, exclude: str = ""
) -> list[dict[str, Any]]:
    """Customer-managed keys tagged for exactly this project and environment."""
    owned = []
    for entry in session.paginate("kms", "list_keys", "Keys", resource="kms:keys"):
        key_id = str(entry["KeyId"])
        if key_id == exclude:
            continue
        metadata = session.call("kms", "describe_key", KeyId=key_id, resource=key_id)["KeyMetadata"]
        if metadata.get("KeyManager") == "AWS":
            continue
        tags = session.paginate("kms", "list_resource_tags", "Tags", KeyId=key_id, resource=key_id)
        values = {str(tag["TagKey"]): str(tag["TagValue"]) for tag in tags}
        if all(values.get(key) == value for key, value in ownership.tags().items()):
            owned.append(metadata)
    return owned


def _revive_key(session: AccountSession, key_id: str, state: str) -> bool:
    revived = False
    if state == "PendingDeletion":
        session.call("kms", "cancel_key_deletion", KeyId=key_id, resource=key_id)
        logger.info("Cancelled pending key deletion", resource=key_id)
        state = "Disabled"
        revived = True
    if state == "Disabled":
        session.call("kms", "enable_key", KeyId=key_id, resource=key_id)
        revived = True
    return revived


def _ensure_rotation(session: AccountSession, key_id: str) -> bool:
    status = session.call("kms", "get_key_rotation_status", KeyId=key_id, resource=key_id)
    if status.get("KeyRotationEnabled"):
        return False
    session.call("kms", "enable_key_rotation", KeyId=key_id, resource=key_id)
    return True


def _ensure_key(
    session: AccountSession,
    environment: Environment,
    settings: Settings,
    ownership: Ownership,
    rollback: _RollbackStack,
) -> tuple[str, str, OutcomeAction]:
    descriptor = key_descriptor(environment, settings)
    alias = descriptor.name
    session.checkpoint(descriptor.label())
    result = probe(session, descriptor, ownership)
    if result.conflicting:
        raise ManualInterventionRequired(
            f"key alias points at a key not managed by this bootstrap: {result.reason}",
            resource=alias,
        )

    if result.exists:
        key_id = str(result.config["key_id"])
        revived = _revive_key(session, key_id, str(result.config["key_state"]))
        rotated = _ensure_rotation(session, key_id)
        action = OutcomeAction.UPDATED if revived or rotated else OutcomeAction.UNCHANGED
        return key_id, str(result.config["arn"]), action

    orphans = find_owned_keys(session, ownership)
    if orphans:
        metadata = orphans[0]
        key_id = str(metadata["KeyId"])
        _revive_key(session, key_id, str(metadata.get("KeyState", "")))
        session.call("kms", "create_alias", AliasName=alias, TargetKeyId=key_id, resource=alias)
        _ensure_rotation(session, key_id)
        logger.info("Adopted orphaned state key", resource=key_id, alias=alias)
        return key_id, str(metadata["Arn"]), OutcomeAction.ADOPTED

    metadata = session.call(
        "kms",
        "create_key",
        Description=f"Terraform state encryption for {settings.project_name} {environment.name}",
        KeyUsage="ENCRYPT_DECRYPT",
        KeySpec="SYMMETRIC_DEFAULT",
        Tags=_kms_tags(ownership),
        resource=alias,
    )["KeyMetadata"]
    key_id = str(metadata["KeyId"])
    try:
        session.call("kms", "create_alias", AliasName=alias, TargetKeyId=key_id, resource=alias)
        session.call("kms", "enable_key_rotation", KeyId=key_id, resource=key_id)
    except BootstrapError as primary:
        try:
            schedule_key_deletion(session, key_id, alias)
        except BootstrapError as secondary:
            primary.secondary.append(secondary)
        raise
    rollback.push(alias, lambda: schedule_key_deletion(session, key_id, alias))
    logger.info(
        "Created state key",
        environment=environment.name,
        account_id=environment.account_id,
        resource=key_id,
        alias=alias,
    )
    return key_id, str(metadata["Arn"]), OutcomeAction.CREATED


# ---------------------------------------------------------------------------
# Lock table
# ---------------------------------------------------------------------------


def _wait_table_gone(session: AccountSession, table: str) -> None:
    session.wait("dynamodb", "table_not_exists", TableName=table, resource=table)


def _ensure_lock_table(
    session: AccountSession,
    environment: Environment,
    settings: Settings,
    ownership: Ownership,
    key_arn: str,
    rollback: _RollbackStack,
) -> OutcomeAction:
    descriptor = lock_table_descriptor(environment, settings)
    table = descriptor.name
    session.checkpoint(descriptor.label())
    result = probe(session, descriptor, ownership)
    if result.conflicting:
        raise ManualInterventionRequired(
            f"lock table exists but is not managed by this bootstrap: {result.reason}",
            resource=table,
        )

    if result.exists:
        status = str(result.config.get("status", ""))
        if status != "DELETING":
            if status != "ACTIVE":
                session.wait("dynamodb", "table_exists", TableName=table, resource=table)
            return OutcomeAction.UNCHANGED
        logger.info("Lock table is being deleted; waiting before recreating", resource=table)
        _wait_table_gone(session, table)

    session.call(
        "dynamodb",
        "create_table",
        TableName=table,
        AttributeDefinitions=[{"AttributeName": LOCK_TABLE_HASH_KEY, "AttributeType": "S"}],
        KeySchema=[{"AttributeName": LOCK_TABLE_HASH_KEY, "KeyType": "HASH"}],
        BillingMode="PAY_PER_REQUEST",
        SSESpecification={"Enabled": True, "SSEType": "KMS", "KMSMasterKeyId": key_arn},
        Tags=ownership.iam_tags(),
        resource=table,
    )
    rollback.push(table, lambda: _delete_table(session, table))
    session.wait("dynamodb", "table_exists", TableName=table, resource=table)
    logger.info(
        "Created lock table",
        environment=environment.name,
        account_id=environment.account_id,
        resource=table,
    )
    return OutcomeAction.CREATED


def _delete_table(session: AccountSession, table: str) -> None:
    session.call("dynamodb", "delete_table", TableName=table, resource=table)
    _wait_table_gone(session, table)


# ---------------------------------------------------------------------------
# Bucket
# ---------------------------------------------------------------------------


def _bucket_settings_ok(config: dict[str, Any], key_arn: str, key_id: str) -> list[str]:
    problems = []
    if config.get("versioning") != "Enabled":
        problems.append("versioning")
    if config.get("sse_algorithm") != "aws:kms" or config.get("sse_key_id") not in {
        key_arn,
        key_id,
    }:
        problems.append("encryption")
    if not config.get("public_access_blocked"):
        problems.append("public_access_block")
    return problems


def _apply_bucket_settings(
    session: AccountSession, bucket: str, key_arn: str, problems: list[str]
) -> None:
    if "public_access_block" in problems:
        session.call(
            "s3",
            "put_public_access_block",
            Bucket=bucket,
            PublicAccessBlockConfiguration=_PUBLIC_ACCESS_BLOCK,
            resource=bucket,
        )
    if "versioning" in problems:
        session.call(
            "s3",
            "put_bucket_versioning",
            Bucket=bucket,
            VersioningConfiguration={"Status": "Enabled"},
            resource=bucket,
        )
    if "encryption" in problems:
        session.call(
            "s3",
            "put_bucket_encryption",
            Bucket=bucket,
            ServerSideEncryptionConfiguration={
                "Rules": [
                    {
                        "ApplyServerSideEncryptionByDefault": {
                            "SSEAlgorithm": "aws:kms",
                            "KMSMasterKeyID": key_arn,
                        },
                        "BucketKeyEnabled": True,
                    }
                ]
            },
            resource=bucket,
        )


def _create_bucket(
    session: AccountSession,
    environment: Environment,
    descriptor: ResourceDescriptor,
    ownership: Ownership,
    key_arn: str,
    key_id: str,
) -> None:
    """Create and fully configure the bucket as one unit, then verify by read-back."""
    bucket = descriptor.name
    create_args: dict[str, Any] = {"Bucket": bucket}
    if environment.region != "us-east-1":
        create_args["CreateBucketConfiguration"] = {"LocationConstraint": environment.region}
    session.call("s3", "create_bucket", resource=bucket, **create_args)
    try:
        session.call(
            "s3",
            "put_bucket_tagging",
            Bucket=bucket,
            Tagging={"TagSet": ownership.iam_tags()},
            resource=bucket,
        )
        _apply_bucket_settings(
            session, bucket, key_arn, ["public_access_block", "versioning", "encryption"]
        )
        verified = probe(session, descriptor, ownership)
        problems = (
            _bucket_settings_ok(dict(verified.config), key_arn, key_id)
            if verified.exists
            else [f"bucket {verified.status.value}"]
        )
        if problems:
            raise ControlPlaneError(
                kind=ErrorKind.DEPENDENCY_NOT_READY,
                action="s3:VerifyBucketConfiguration",
                resource=bucket,
                code="VerificationFailed",
                message=f"settings not applied: {', '.join(problems)}",
            )
    except BootstrapError as primary:
        try:
            session.call("s3", "delete_bucket", Bucket=bucket, resource=bucket)
        except BootstrapError as secondary:
            primary.secondary.append(secondary)
        raise


def _ensure_bucket(
    session: AccountSession,
    environment: Environment,
    settings: Settings,
    ownership: Ownership,
    key_arn: str,
    key_id: str,
    rollback: _RollbackStack,
) -> tuple[str, OutcomeAction]:
    canonical = bucket_descriptor(environment, settings)
    session.checkpoint(canonical.label())
    result = resolve_bucket(session, environment, settings)

    if result.conflicting:
        if result.descriptor != canonical:
            raise ManualInterventionRequired(
                f"both candidate bucket names are taken: {result.reason}",
                resource=result.descriptor.name,
            )
        suffixed = bucket_descriptor(environment, settings, suffixed=True)
        logger.warning(
            "Canonical bucket name is taken; using account-derived name",
            resource=canonical.name,
            reason=result.reason,
            bucket=suffixed.name,
        )
        result = ProbeResult(descriptor=suffixed, status=ProbeStatus.ABSENT)

    bucket = result.descriptor.name
    if result.exists:
        problems = _bucket_settings_ok(dict(result.config), key_arn, key_id)
        if not problems:
            return bucket, OutcomeAction.UNCHANGED
        logger.info("Correcting bucket configuration drift", resource=bucket, drift=problems)
        _apply_bucket_settings(session, bucket, key_arn, problems)
        return bucket, OutcomeAction.UPDATED

    _create_bucket(session, environment, result.descriptor, ownership, key_arn, key_id)
    rollback.push(
        bucket, lambda: session.call("s3", "delete_bucket", Bucket=bucket, resource=bucket)
    )
    logger.info(
        "Created state bucket",
        environment=environment.name,
        account_id=environment.account_id,
        resource=bucket,
    )
    return bucket, OutcomeAction.CREATED


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------


def _aggregate(actions: dict[ResourceType, OutcomeAction]) -> OutcomeAction:
    values = set(actions.values())
    if values == {OutcomeAction.UNCHANGED}:
        return OutcomeAction.UNCHANGED
    if OutcomeAction.CREATED in values:
        return OutcomeAction.CREATED
    return OutcomeAction.UPDATED


def ensure_backend(
    session: AccountSession, environment: Environment, settings: Settings
) -> BackendRef:
    """Converge the state backend triplet; all three resources or a typed error.

    On failure every resource created in this run is rolled back, newest first,
    and rollback failures are attached to the primary error as secondaries.
    """
    ownership = ownership_for(environment, settings)
    rollback = _RollbackStack()
    actions: dict[ResourceType, OutcomeAction] = {}
    try:
        key_id, key_arn, actions[ResourceType.KEY] = _ensure_key(
            session, environment, settings, ownership, rollback
        )
        actions[ResourceType.LOCK_TABLE] = _ensure_lock_table(
            session, environment, settings, ownership, key_arn, rollback
        )
        bucket, actions[ResourceType.BUCKET] = _ensure_bucket(
            session, environment, settings, ownership, key_arn, key_id, rollback
        )
    except OperationCancelled:
        raise
    except BootstrapError as primary:
        primary.secondary.extend(rollback.unwind())
        raise

    return BackendRef(
        bucket=bucket,
        lock_table=naming.lock_table_name(settings.project_name, environment),
        key_id=key_id,
        key_arn=key_arn,
        key_alias=naming.key_alias(settings.project_name, environment),
        region=environment.region,
        versioning_enabled=True,
        encryption_enabled=True,
        action=_aggregate(actions),
        resource_actions=actions,
    )
