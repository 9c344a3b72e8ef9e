"""
account_bootstrap.prober — Read-only existence and ownership probes.

``probe`` answers absent / exists / conflicting for any descriptor by querying
the live control plane. It never mutates. A resource that exists without the
ownership marker is ``conflicting``: a hard stop for both bootstrap and
teardown.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, naming
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import ControlPlaneError, ErrorKind
from account_bootstrap.models import (
    Environment,
    Ownership,
    ProbeResult,
    ProbeStatus,
    ResourceDescriptor,
    ResourceType,
)
from account_bootstrap.policies import normalize_policy

logger = Logger(service=SERVICE_NAME, child=True)


def ownership_for(environment: Environment, settings: Settings) -> Ownership:
    return Ownership(project=settings.project_short_name, environment=environment.name)


def _absent(descriptor: ResourceDescriptor) -> ProbeResult:
    return ProbeResult(descriptor=descriptor, status=ProbeStatus.ABSENT)


def _found(
    descriptor: ResourceDescriptor,
    config: dict[str, Any],
    ownership: Ownership,
) -> ProbeResult:
    reason = ownership.conflict_reason(config.get("tags", {}))
    if reason is not None:
        logger.warning(
            "Resource exists without ownership marker",
            resource=descriptor.label(),
            account_id=descriptor.account.account_id,
            reason=reason,
        )
        return ProbeResult(
            descriptor=descriptor, status=ProbeStatus.CONFLICTING, config=config, reason=reason
        )
    return ProbeResult(descriptor=descriptor, status=ProbeStatus.EXISTS, config=config)


def _optional(session: AccountSession, service: str, operation: str, **params: Any) -> Any:
    """Call a read that legitimately 404s when a sub-configuration is unset."""
    try:
        return session.call(service, operation, **params)
    except ControlPlaneError as exc:
        if exc.kind is ErrorKind.NOT_FOUND:
            return None
        raise


def _key_value_tags(
    tags: Iterable[Mapping[str, Any]], key: str = "Key", value: str = "Value"
) -> dict[str, str]:
    return {str(tag[key]): str(tag[value]) for tag in tags}


# ---------------------------------------------------------------------------
# Per-type probes
# ---------------------------------------------------------------------------


def probe_trust_provider(
    session: AccountSession, descriptor: ResourceDescriptor, ownership: Ownership
) -> ProbeResult:
    arn = descriptor.arn or naming.provider_arn(descriptor.account)
    response = _optional(
        session, "iam", "get_open_id_connect_provider", OpenIDConnectProviderArn=arn, resource=arn
    )
    if response is None:
        return _absent(descriptor)
    url = str(response.get("Url", ""))
    tags = session.paginate(
        "iam",
        "list_open_id_connect_provider_tags",
        "Tags",
        OpenIDConnectProviderArn=arn,
        resource=arn,
    )
    config = {
        "arn": arn,
        "url": url if url.startswith("https://") else f"https://{url}",
        "client_ids": sorted(response.get("ClientIDList", [])),
        "thumbprints": sorted(response.get("ThumbprintList", [])),
        "tags": _key_value_tags(tags),
    }
    return _found(descriptor, config, ownership)


def _find_role(session: AccountSession, name: str) -> dict[str, Any] | None:
    """Exact lookup first, then a case-insensitive scan for legacy-cased names."""
    response = _optional(session, "iam", "get_role", RoleName=name, resource=name)
    if response is not None:
        return response["Role"]
    wanted = name.casefold()
    for role in session.paginate("iam", "list_roles", "Roles", resource=name):
        if str(role["RoleName"]).casefold() == wanted:
            live = session.call("iam", "get_role", RoleName=role["RoleName"], resource=name)
            return live["Role"]
    return None


def probe_role(
    session: AccountSession, descriptor: ResourceDescriptor, ownership: Ownership
) -> ProbeResult:
    role = _find_role(session, descriptor.name)
    if role is None:
        return _absent(descriptor)
    live_name = str(role["RoleName"])
    attached = session.paginate(
        "iam",
        "list_attached_role_policies",
        "AttachedPolicies",
        RoleName=live_name,
        resource=live_name,
    )
    inline = session.paginate(
        "iam", "list_role_policies", "PolicyNames", RoleName=live_name, resource=live_name
    )
    tags = session.paginate("iam", "list_role_tags", "Tags", RoleName=live_name, resource=live_name)
    config = {
        "name": live_name,
        "arn": str(role["Arn"]),
        "legacy_name": live_name != descriptor.name,
        "trust_policy": normalize_policy(role.get("AssumeRolePolicyDocument", {})),
        "max_session_seconds": int(role.get("MaxSessionDuration", 3600)),
        "managed_policy_arns": sorted(str(policy["PolicyArn"]) for policy in attached),
        "inline_policy_names": sorted(str(policy) for policy in inline),
        "tags": _key_value_tags(tags),
    }
    return _found(descriptor, config, ownership)


def probe_key(
    session: AccountSession, descriptor: ResourceDescriptor, ownership: Ownership
) -> ProbeResult:
    """``descriptor.name`` is the key alias; a key pending deletion still exists."""
    response = _optional(
        session, "kms", "describe_key", KeyId=descriptor.name, resource=descriptor.name
    )
    if response is None:
        return _absent(descriptor)
    metadata = response["KeyMetadata"]
    key_id = str(metadata["KeyId"])
    tags = session.paginate("kms", "list_resource_tags", "Tags", KeyId=key_id, resource=key_id)
    config = {
        "key_id": key_id,
        "arn": str(metadata["Arn"]),
        "key_state": str(metadata.get("KeyState", "")),
        "deletion_date": str(metadata.get("DeletionDate", "") or ""),
        "tags": _key_value_tags(tags, key="TagKey", value="TagValue"),
    }
    return _found(descriptor, config, ownership)


def probe_lock_table(
    session: AccountSession, descriptor: ResourceDescriptor, ownership: Ownership
) -> ProbeResult:
    response = _optional(
        session, "dynamodb", "describe_table", TableName=descriptor.name, resource=descriptor.name
    )
    if response is None:
        return _absent(descriptor)
    table = response["Table"]
    arn = str(table["TableArn"])
    tags = session.paginate(
        "dynamodb", "list_tags_of_resource", "Tags", ResourceArn=arn, resource=arn
    )
    sse = table.get("SSEDescription", {})
    config = {
        "arn": arn,
        "status": str(table.get("TableStatus", "")),
        "billing_mode": str(table.get("BillingModeSummary", {}).get("BillingMode", "")),
        "sse_status": str(sse.get("Status", "")),
        "sse_key_arn": str(sse.get("KMSMasterKeyArn", "")),
        "tags": _key_value_tags(tags),
    }
    return _found(descriptor, config, ownership)


def probe_bucket(
    session: AccountSession, descriptor: ResourceDescriptor, ownership: Ownership
) -> ProbeResult:
    name = descriptor.name
    try:
        session.call("s3", "head_bucket", Bucket=name, resource=name)
    except ControlPlaneError as exc:
        if exc.kind is ErrorKind.NOT_FOUND:
            return _absent(descriptor)
        if exc.kind is ErrorKind.ACCESS_DENIED:
            reason = "bucket name is owned by another account"
            return ProbeResult(descriptor=descriptor, status=ProbeStatus.CONFLICTING, reason=reason)
        raise

    tagging = _optional(session, "s3", "get_bucket_tagging", Bucket=name, resource=name) or {}
    versioning = session.call("s3", "get_bucket_versioning", Bucket=name, resource=name)
    encryption = _optional(session, "s3", "get_bucket_encryption", Bucket=name, resource=name)
    public_access = _optional(session, "s3", "get_public_access_block", Bucket=name, resource=name)

    rules = (encryption or {}).get("ServerSideEncryptionConfiguration", {}).get("Rules", [])
    default = rules[0].get("ApplyServerSideEncryptionByDefault", {}) if rules else {}
    block = (public_access or {}).get("PublicAccessBlockConfiguration", {})
    config = {
        "arn": f"arn:aws:s3:::{name}",
        "versioning": str(versioning.get("Status", "")),
        "sse_algorithm": str(default.get("SSEAlgorithm", "")),
        "sse_key_id": str(default.get("KMSMasterKeyID", "")),
        "bucket_key_enabled": bool(rules[0].get("BucketKeyEnabled", False)) if rules else False,
        "public_access_blocked": bool(block) and all(block.values()),
        "tags": _key_value_tags(tagging.get("TagSet", [])),
    }
    return _found(descriptor, config, ownership)


_PROBES = {
    ResourceType.TRUST_PROVIDER: probe_trust_provider,
    ResourceType.ROLE: probe_role,
    ResourceType.KEY: probe_key,
    ResourceType.LOCK_TABLE: probe_lock_table,
    ResourceType.BUCKET: probe_bucket,
}


def probe(
    session: AccountSession, descriptor: ResourceDescriptor, ownership: Ownership
) -> ProbeResult:
    """Classify one resource as absent, exists or conflicting. Never mutates."""
    if descriptor.account != session.account:
        raise ValueError(
            f"descriptor {descriptor.label()} belongs to {descriptor.account.account_id}, "
            f"session is bound to {session.account.account_id}"
        )
    return _PROBES[descriptor.type](session, descriptor, ownership)


# ---------------------------------------------------------------------------
# Descriptor sets
# ---------------------------------------------------------------------------


def provider_descriptor(environment: Environment) -> ResourceDescriptor:
    account = environment.account
    arn = naming.provider_arn(account)
    return ResourceDescriptor(ResourceType.TRUST_PROVIDER, arn.rsplit("/", 1)[-1], account, arn)


def role_descriptors(environment: Environment, settings: Settings) -> list[ResourceDescriptor]:
    account = environment.account
    descriptors = []
    for tier in naming.chain_tiers(settings.trust_model):
        name = naming.role_name(
            tier, short_name=settings.project_short_name, environment=environment
        )
        descriptors.append(
            ResourceDescriptor(ResourceType.ROLE, name, account, account.iam_arn(f"role/{name}"))
        )
    return descriptors


def key_descriptor(environment: Environment, settings: Settings) -> ResourceDescriptor:
    alias = naming.key_alias(settings.project_name, environment)
    return ResourceDescriptor(ResourceType.KEY, alias, environment.account)


def lock_table_descriptor(environment: Environment, settings: Settings) -> ResourceDescriptor:
    name = naming.lock_table_name(settings.project_name, environment)
    return ResourceDescriptor(ResourceType.LOCK_TABLE, name, environment.account)


def bucket_descriptor(
    environment: Environment, settings: Settings, *, suffixed: bool = False
) -> ResourceDescriptor:
    name = naming.bucket_name(settings.project_name, environment, suffixed=suffixed)
    arn = f"arn:aws:s3:::{name}"
    return ResourceDescriptor(ResourceType.BUCKET, name, environment.account, arn)


def resolve_bucket(
    session: AccountSession, environment: Environment, settings: Settings
) -> ProbeResult:
    """Probe the canonical bucket, falling back to the account-suffixed name.

    Returns the suffixed probe whenever the canonical name is conflicting,
    unless the suffixed bucket is also absent, in which case the canonical
    conflict is returned so callers can report it.
    """
    ownership = ownership_for(environment, settings)
    canonical = probe(session, bucket_descriptor(environment, settings), ownership)
    if not canonical.conflicting:
        return canonical
    suffixed = probe(session, bucket_descriptor(environment, settings, suffixed=True), ownership)
    if suffixed.absent:
        return canonical
    return suffixed


def probe_environment(
    session: AccountSession, environment: Environment, settings: Settings
) -> list[ProbeResult]:
    """Live state of every resource the environment's bootstrap owns."""
    ownership = ownership_for(environment, settings)
    results = [probe(session, provider_descriptor(environment), ownership)]
    results.extend(
        probe(session, descriptor, ownership)
        for descriptor in role_descriptors(environment, settings)
    )
    results.append(probe(session, key_descriptor(environment, settings), ownership))
    results.append(probe(session, lock_table_descriptor(environment, settings), ownership))
    results.append(resolve_bucket(session, environment, settings))
    return results
