"""
account_bootstrap.teardown — Dependency-ordered environment teardown.

The reverse-dependency graph is data: each resource type lists the types that
must be gone before it may be deleted. Teardown is a topological walk of that
graph. Adding a resource type means declaring its edges here.

Per type:
    bucket      suspend versioning -> purge versions and delete markers
                -> abort multipart uploads -> delete bucket
    lock_table  delete -> wait until gone
    key         delete alias -> schedule deletion (7-day window)
    role        detach managed policies -> delete inline policies -> delete role
    provider    delete only when no role in the account still trusts it

A failure never stops independent types; types that depend on a failed type
are reported ``blocked``. Conflicting resources are never touched.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from graphlib import TopologicalSorter
from typing import Any

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, naming
from account_bootstrap.backend import (
    KEY_PENDING_WINDOW_DAYS,
    find_owned_keys,
    schedule_key_deletion,
)
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
    ROLE_TIER_ORDER,
    Environment,
    OutcomeAction,
    ProbeResult,
    ProbeStatus,
    ResourceDescriptor,
    ResourceOutcome,
    ResourceState,
    ResourceType,
)
from account_bootstrap.policies import federated_principals
from account_bootstrap.prober import (
    key_descriptor,
    lock_table_descriptor,
    ownership_for,
    probe,
    provider_descriptor,
    resolve_bucket,
)
from account_bootstrap.roles import delete_role

logger = Logger(service=SERVICE_NAME, child=True)

# node -> types that must be fully torn down first
TEARDOWN_GRAPH: Mapping[ResourceType, frozenset[ResourceType]] = {
    ResourceType.BUCKET: frozenset(),
    ResourceType.LOCK_TABLE: frozenset(),
    ResourceType.ROLE: frozenset(),
    ResourceType.KEY: frozenset({ResourceType.BUCKET, ResourceType.LOCK_TABLE}),
    ResourceType.TRUST_PROVIDER: frozenset({ResourceType.ROLE}),
}

DRAIN_BATCH_SIZE = 1000


def teardown_order(rng: random.Random | None = None) -> list[ResourceType]:
    """A valid topological order of the graph; ``rng`` picks among ready types."""
    sorter = TopologicalSorter(TEARDOWN_GRAPH)
    sorter.prepare()
    order: list[ResourceType] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready(), key=lambda node: node.value)
        if rng is not None:
            rng.shuffle(ready)
        for node in ready:
            order.append(node)
            sorter.done(node)
    return order


@dataclass
class PlannedResource:
    descriptor: ResourceDescriptor
    probe: ProbeResult
    steps: list[str]
    # Resolved identifiers the executor needs (live role name, key id, alias).
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class TeardownReport:
    environment: str
    dry_run: bool
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    cancelled: OperationCancelled | None = None

    @property
    def remaining(self) -> list[ResourceOutcome]:
        if self.dry_run:
            return []
        return [outcome for outcome in self.outcomes if outcome.state is not ResourceState.ABSENT]

    @property
    def ok(self) -> bool:
        if self.cancelled is not None or self.remaining:
            return False
        return all(outcome.ok for outcome in self.outcomes)


# ---------------------------------------------------------------------------
# Planning (read-only)
# ---------------------------------------------------------------------------


def _bucket_drain_counts(session: AccountSession, bucket: str) -> tuple[int, int, int]:
    versions = session.paginate(
        "s3", "list_object_versions", "Versions", Bucket=bucket, resource=bucket
    )
    markers = session.paginate(
        "s3", "list_object_versions", "DeleteMarkers", Bucket=bucket, resource=bucket
    )
    uploads = session.paginate(
        "s3", "list_multipart_uploads", "Uploads", Bucket=bucket, resource=bucket
    )
    return len(versions), len(markers), len(uploads)


def _plan_bucket(
    session: AccountSession, environment: Environment, settings: Settings
) -> list[PlannedResource]:
    result = resolve_bucket(session, environment, settings)
    steps: list[str] = []
    if result.exists:
        versions, markers, uploads = _bucket_drain_counts(session, result.descriptor.name)
        steps = [
            "suspend versioning",
            f"purge {versions} object versions and {markers} delete markers",
            f"abort {uploads} multipart uploads",
            "delete bucket",
        ]
    return [PlannedResource(result.descriptor, result, steps)]


def _plan_lock_table(
    session: AccountSession, environment: Environment, settings: Settings
) -> list[PlannedResource]:
    descriptor = lock_table_descriptor(environment, settings)
    result = probe(session, descriptor, ownership_for(environment, settings))
    steps = ["delete table", "wait until deleted"] if result.exists else []
    return [PlannedResource(descriptor, result, steps)]


def _plan_key(
    session: AccountSession, environment: Environment, settings: Settings
) -> list[PlannedResource]:
    ownership = ownership_for(environment, settings)
    descriptor = key_descriptor(environment, settings)
    result = probe(session, descriptor, ownership)
    window = f"schedule deletion ({KEY_PENDING_WINDOW_DAYS}-day window)"
    planned = []
    aliased_key = ""
    if result.exists:
        aliased_key = str(result.config["key_id"])
        steps = [f"delete alias {descriptor.name}"]
        if result.config.get("key_state") != "PendingDeletion":
            steps.append(window)
        planned.append(
            PlannedResource(
                descriptor,
                result,
                steps,
                {
                    "key_id": aliased_key,
                    "alias": descriptor.name,
                    "state": result.config["key_state"],
                },
            )
        )
    else:
        planned.append(PlannedResource(descriptor, result, []))

    for metadata in find_owned_keys(session, ownership, exclude=aliased_key):
        if metadata.get("KeyState") == "PendingDeletion":
            continue
        key_id = str(metadata["KeyId"])
        orphan = ResourceDescriptor(
            ResourceType.KEY, key_id, environment.account, str(metadata["Arn"])
        )
        orphan_result = ProbeResult(descriptor=orphan, status=ProbeStatus.EXISTS)
        planned.append(
            PlannedResource(orphan, orphan_result, [window], {"key_id": key_id, "alias": None})
        )
    return planned


def _plan_roles(
    session: AccountSession, environment: Environment, settings: Settings
) -> list[PlannedResource]:
    """Every tier regardless of trust model, newest tier first."""
    ownership = ownership_for(environment, settings)
    account = environment.account
    planned = []
    for tier in reversed(ROLE_TIER_ORDER):
        name = naming.role_name(
            tier, short_name=settings.project_short_name, environment=environment
        )
        descriptor = ResourceDescriptor(
            ResourceType.ROLE, name, account, account.iam_arn(f"role/{name}")
        )
        result = probe(session, descriptor, ownership)
        steps: list[str] = []
        context: dict[str, Any] = {}
        if result.exists:
            live_name = str(result.config["name"])
            context["role_name"] = live_name
            steps = [f"detach {arn}" for arn in result.config.get("managed_policy_arns", [])]
            inline = result.config.get("inline_policy_names", [])
            steps += [f"delete inline {policy}" for policy in inline]
            steps.append(f"delete role {live_name}")
        planned.append(PlannedResource(descriptor, result, steps, context))
    return planned


def _plan_provider(
    session: AccountSession, environment: Environment, settings: Settings
) -> list[PlannedResource]:
    descriptor = provider_descriptor(environment)
    result = probe(session, descriptor, ownership_for(environment, settings))
    steps = ["verify no role trusts the provider", "delete provider"] if result.exists else []
    return [PlannedResource(descriptor, result, steps)]


_PLANNERS: Mapping[
    ResourceType, Callable[[AccountSession, Environment, Settings], list[PlannedResource]]
] = {
    ResourceType.BUCKET: _plan_bucket,
    ResourceType.LOCK_TABLE: _plan_lock_table,
    ResourceType.KEY: _plan_key,
    ResourceType.ROLE: _plan_roles,
    ResourceType.TRUST_PROVIDER: _plan_provider,
}


def _initial_outcome(item: PlannedResource) -> ResourceOutcome | None:
    """Outcome decided by the probe alone, or None when work is needed."""
    if item.probe.absent:
        return ResourceOutcome(
            item.descriptor, OutcomeAction.ALREADY_ABSENT, ResourceState.ABSENT
        )
    if item.probe.conflicting:
        error = ManualInterventionRequired(
            f"not managed by this bootstrap, left untouched: {item.probe.reason}",
            resource=item.descriptor.name,
        )
        return ResourceOutcome(
            item.descriptor,
            OutcomeAction.CONFLICTING,
            ResourceState.EXISTS,
            detail=item.probe.reason,
            error=error,
        )
    return None


def _blocked_cause(blockers: set[ResourceType] | frozenset[ResourceType]) -> str:
    return "blocked by failed " + ", ".join(sorted(t.value for t in blockers))


def _blocked(item: PlannedResource, cause: str) -> ResourceOutcome:
    return ResourceOutcome(
        item.descriptor,
        OutcomeAction.BLOCKED,
        ResourceState.EXISTS,
        detail=cause,
        steps=item.steps,
    )


def roles_trusting(session: AccountSession, provider_arn: str) -> list[str]:
    """Reverse-reference scan: every role in the account whose trust names the provider."""
    referencing = []
    for role in session.paginate("iam", "list_roles", "Roles", resource=provider_arn):
        document = role.get("AssumeRolePolicyDocument", {})
        if provider_arn in federated_principals(document):
            referencing.append(str(role["RoleName"]))
    return sorted(referencing)


def _mark_still_trusted(outcome: ResourceOutcome, arn: str, referencing: list[str]) -> None:
    outcome.action = OutcomeAction.BLOCKED
    outcome.detail = f"still trusted by: {', '.join(referencing)}"
    outcome.error = ControlPlaneError(
        kind=ErrorKind.DEPENDENCY_NOT_READY,
        action="iam:DeleteOpenIDConnectProvider",
        resource=arn,
        code="ProviderStillReferenced",
        message=outcome.detail,
    )


def plan_teardown(
    session: AccountSession, environment: Environment, settings: Settings
) -> TeardownReport:
    """Enumerate exactly what ``destroy`` would affect. Never mutates.

    Applies the same rules as the real walk: dependants of a conflicting type
    are ``blocked``, and the provider is ``blocked`` while a role the plan
    leaves in place still trusts it.
    """
    report = TeardownReport(environment=environment.name, dry_run=True)
    failed: set[ResourceType] = set()
    deleted_roles: set[str] = set()
    for resource_type in teardown_order():
        blockers = TEARDOWN_GRAPH[resource_type] & failed
        for item in _PLANNERS[resource_type](session, environment, settings):
            outcome = _initial_outcome(item)
            if outcome is None:
                outcome = ResourceOutcome(
                    item.descriptor,
                    OutcomeAction.WOULD_DELETE,
                    ResourceState.EXISTS,
                    steps=item.steps,
                )
                if blockers:
                    outcome = _blocked(item, _blocked_cause(blockers))
                elif resource_type is ResourceType.ROLE:
                    deleted_roles.add(str(item.context["role_name"]))
                elif resource_type is ResourceType.TRUST_PROVIDER:
                    arn = item.descriptor.arn
                    referencing = [
                        role for role in roles_trusting(session, arn) if role not in deleted_roles
                    ]
                    if referencing:
                        _mark_still_trusted(outcome, arn, referencing)
            report.outcomes.append(outcome)
            if not outcome.ok:
                failed.add(resource_type)
    return report


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def drain_bucket(session: AccountSession, bucket: str) -> list[str]:
    """Empty a versioned bucket completely; returns the steps performed."""
    steps = []
    session.call(
        "s3",
        "put_bucket_versioning",
        Bucket=bucket,
        VersioningConfiguration={"Status": "Suspended"},
        resource=bucket,
    )
    steps.append("suspended versioning")

    purged = 0
    while True:
        page = session.call(
            "s3", "list_object_versions", Bucket=bucket, MaxKeys=DRAIN_BATCH_SIZE, resource=bucket
        )
        objects = [
            {"Key": item["Key"], "VersionId": item["VersionId"]}
            for item in [*page.get("Versions", []), *page.get("DeleteMarkers", [])]
        ]
        if not objects:
            break
        for start in range(0, len(objects), DRAIN_BATCH_SIZE):
            batch = objects[start : start + DRAIN_BATCH_SIZE]
            response = session.call(
                "s3",
                "delete_objects",
                Bucket=bucket,
                Delete={"Objects": batch, "Quiet": True},
                resource=bucket,
            )
            errors = response.get("Errors", [])
            if errors:
                first = errors[0]
                raise ControlPlaneError(
                    kind=ErrorKind.DEPENDENCY_NOT_READY,
                    action="s3:DeleteObjects",
                    resource=bucket,
                    code=str(first.get("Code", "DeleteObjectsFailed")),
                    message=f"{len(errors)} objects not deleted, first: {first.get('Key')}",
                )
            purged += len(batch)
    steps.append(f"purged {purged} versions and delete markers")

    aborted = 0
    for upload in session.paginate(
        "s3", "list_multipart_uploads", "Uploads", Bucket=bucket, resource=bucket
    ):
        session.call(
            "s3",
            "abort_multipart_upload",
            Bucket=bucket,
            Key=upload["Key"],
            UploadId=upload["UploadId"],
            resource=bucket,
        )
        aborted += 1
    steps.append(f"aborted {aborted} multipart uploads")
    return steps


def _destroy_bucket(
    session: AccountSession, item: PlannedResource, outcome: ResourceOutcome
) -> None:
    bucket = item.descriptor.name
    outcome.state = ResourceState.DRAINING
    outcome.steps.extend(drain_bucket(session, bucket))
    outcome.state = ResourceState.DESTROYING
    session.call("s3", "delete_bucket", Bucket=bucket, resource=bucket)
    outcome.steps.append("deleted bucket")
    outcome.action = OutcomeAction.DELETED


def _destroy_lock_table(
    session: AccountSession, item: PlannedResource, outcome: ResourceOutcome
) -> None:
    table = item.descriptor.name
    outcome.state = ResourceState.DESTROYING
    session.call("dynamodb", "delete_table", TableName=table, resource=table)
    session.wait("dynamodb", "table_not_exists", TableName=table, resource=table)
    outcome.steps.append("deleted table")
    outcome.action = OutcomeAction.DELETED


def _destroy_key(session: AccountSession, item: PlannedResource, outcome: ResourceOutcome) -> None:
    key_id = str(item.context["key_id"])
    alias = item.context.get("alias")
    outcome.state = ResourceState.DRAINING
    if item.context.get("state") == "PendingDeletion":
        session.call("kms", "delete_alias", AliasName=alias, resource=alias)
        outcome.steps.append(f"deleted alias {alias}")
    else:
        schedule_key_deletion(session, key_id, alias)
        if alias:
            outcome.steps.append(f"deleted alias {alias}")
        outcome.steps.append(f"scheduled deletion in {KEY_PENDING_WINDOW_DAYS} days")
    outcome.detail = f"key {key_id} is unusable and deletes after the pending window"
    outcome.action = OutcomeAction.SCHEDULED_DELETION


def _destroy_role(session: AccountSession, item: PlannedResource, outcome: ResourceOutcome) -> None:
    outcome.state = ResourceState.DESTROYING
    outcome.steps.extend(delete_role(session, str(item.context["role_name"])))
    outcome.action = OutcomeAction.DELETED


def _destroy_provider(
    session: AccountSession, item: PlannedResource, outcome: ResourceOutcome
) -> None:
    arn = item.descriptor.arn
    referencing = roles_trusting(session, arn)
    if referencing:
        _mark_still_trusted(outcome, arn, referencing)
        return
    outcome.steps.append("verified no role trusts the provider")
    outcome.state = ResourceState.DESTROYING
    session.call(
        "iam", "delete_open_id_connect_provider", OpenIDConnectProviderArn=arn, resource=arn
    )
    outcome.steps.append("deleted provider")
    outcome.action = OutcomeAction.DELETED


_EXECUTORS: Mapping[
    ResourceType, Callable[[AccountSession, PlannedResource, ResourceOutcome], None]
] = {
    ResourceType.BUCKET: _destroy_bucket,
    ResourceType.LOCK_TABLE: _destroy_lock_table,
    ResourceType.KEY: _destroy_key,
    ResourceType.ROLE: _destroy_role,
    ResourceType.TRUST_PROVIDER: _destroy_provider,
}


def teardown_environment(
    session: AccountSession,
    environment: Environment,
    settings: Settings,
    *,
    rng: random.Random | None = None,
) -> TeardownReport:
    """Walk the graph, tearing down every owned resource of the environment.

    Resource types whose dependencies failed are reported ``blocked`` without
    being touched. Cancellation stops before the next resource operation and
    marks everything not yet started as ``blocked``.
    """
    report = TeardownReport(environment=environment.name, dry_run=False)
    failed: set[ResourceType] = set()

    for resource_type in teardown_order(rng):
        if report.cancelled is not None:
            break
        blockers = TEARDOWN_GRAPH[resource_type] & failed
        try:
            session.checkpoint(resource_type.value)
            items = _PLANNERS[resource_type](session, environment, settings)
        except OperationCancelled as exc:
            report.cancelled = exc
            break
        except BootstrapError as exc:
            failed.add(resource_type)
            report.outcomes.append(
                ResourceOutcome(
                    ResourceDescriptor(resource_type, "*", environment.account),
                    OutcomeAction.FAILED,
                    ResourceState.EXISTS,
                    detail="could not enumerate resources",
                    error=exc,
                )
            )
            continue

        for item in items:
            outcome = _initial_outcome(item)
            if outcome is not None:
                report.outcomes.append(outcome)
                if not outcome.ok:
                    failed.add(resource_type)
                continue
            if blockers:
                cause = _blocked_cause(blockers)
                report.outcomes.append(_blocked(item, cause))
                failed.add(resource_type)
                continue
            try:
                session.checkpoint(item.descriptor.label())
            except OperationCancelled as exc:
                report.cancelled = exc
                break
            outcome = ResourceOutcome(item.descriptor, OutcomeAction.FAILED, ResourceState.EXISTS)
            report.outcomes.append(outcome)
            try:
                _EXECUTORS[resource_type](session, item, outcome)
            except BootstrapError as exc:
                outcome.action = OutcomeAction.FAILED
                outcome.error = exc
                logger.error(
                    "Teardown step failed",
                    environment=environment.name,
                    account_id=environment.account_id,
                    resource=item.descriptor.label(),
                    kind=exc.kind.value,
                )
            if outcome.ok:
                outcome.state = ResourceState.ABSENT
                logger.info(
                    "Tore down resource",
                    environment=environment.name,
                    resource=item.descriptor.label(),
                    action=outcome.action.value,
                )
            else:
                failed.add(resource_type)

    if report.cancelled is not None:
        seen = {outcome.descriptor.type for outcome in report.outcomes}
        for resource_type in TEARDOWN_GRAPH:
            if resource_type not in seen:
                report.outcomes.append(
                    ResourceOutcome(
                        ResourceDescriptor(resource_type, "*", environment.account),
                        OutcomeAction.BLOCKED,
                        ResourceState.EXISTS,
                        detail="not started: cancelled",
                    )
                )
    return report
