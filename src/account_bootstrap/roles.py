"""
account_bootstrap.roles — Tiered IAM role chain.

Tiers, in creation order:

    bootstrap      trusts the management account root (external token)
    orchestration  trusts the OIDC provider; may only assume the deployment role
    deployment     trusts the orchestration role (tiered) or the provider (single hop)
    read_only      trusts the management account root (external token)

Creating a role and attaching its permission set is one unit: if attachment
fails the role is deleted again before the error surfaces. Existing roles are
converged in place; roles without the ownership marker are never touched.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, naming
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import (
    BootstrapError,
    ControlPlaneError,
    ErrorKind,
    ExternalTokenMismatch,
    ManualInterventionRequired,
)
from account_bootstrap.models import (
    AccountRootPrincipal,
    Environment,
    FederatedPrincipal,
    OutcomeAction,
    Ownership,
    PermissionSet,
    ProbeResult,
    ProviderRef,
    ResourceDescriptor,
    ResourceType,
    RolePrincipal,
    RoleRef,
    RoleSpec,
    RoleTier,
    TrustCondition,
    TrustModel,
    TrustPrincipal,
)
from account_bootstrap.policies import (
    external_ids,
    parse_policy,
    permission_set,
    policies_equal,
    trust_document,
    validate_subject_pattern,
)
from account_bootstrap.prober import ownership_for, probe

logger = Logger(service=SERVICE_NAME, child=True)

_DESCRIPTIONS = {
    RoleTier.BOOTSTRAP: "Bootstrap role for {env}; assumed from the management account",
    RoleTier.ORCHESTRATION: "GitHub Actions orchestration role for {env}",
    RoleTier.DEPLOYMENT: "GitHub Actions deployment role for {env} environment",
    RoleTier.READ_ONLY: "Read-only console access to {env}",
}


# ---------------------------------------------------------------------------
# Desired state
# ---------------------------------------------------------------------------


def build_role_specs(
    environment: Environment, provider: ProviderRef, settings: Settings
) -> list[RoleSpec]:
    """Desired roles for the environment's trust model, in creation order."""
    account = environment.account
    tiers = naming.chain_tiers(settings.trust_model)
    names = {
        tier: naming.role_name(
            tier, short_name=settings.project_short_name, environment=environment
        )
        for tier in tiers
    }
    deployment_arn = account.iam_arn(f"role/{names[RoleTier.DEPLOYMENT]}")

    subject = validate_subject_pattern(settings.subject_pattern, settings.github_repo)
    federated = FederatedPrincipal(
        provider_arn=provider.arn,
        provider_host=provider.url.removeprefix("https://").rstrip("/"),
        condition=TrustCondition(audience=provider.audiences[0], subject_pattern=subject),
    )
    management = AccountRootPrincipal(
        account_id=settings.management_account_id, external_id=settings.external_id
    )

    specs = []
    for tier in tiers:
        principal: TrustPrincipal
        match tier:
            case RoleTier.BOOTSTRAP | RoleTier.READ_ONLY:
                principal = management
            case RoleTier.ORCHESTRATION:
                principal = federated
            case RoleTier.DEPLOYMENT if settings.trust_model is TrustModel.TIERED:
                principal = RolePrincipal(
                    role_arn=account.iam_arn(f"role/{names[RoleTier.ORCHESTRATION]}"),
                    external_id=settings.external_id,
                )
            case RoleTier.DEPLOYMENT:
                principal = federated
        specs.append(
            RoleSpec(
                name=names[tier],
                tier=tier,
                principal=principal,
                permission_set=permission_set(
                    tier,
                    project_name=settings.project_name,
                    short_name=settings.project_short_name,
                    account_id=environment.account_id,
                    deployment_role_arn=deployment_arn,
                ),
                description=_DESCRIPTIONS[tier].format(env=environment.name),
            )
        )
    return specs


def role_descriptor(environment: Environment, spec: RoleSpec) -> ResourceDescriptor:
    account = environment.account
    return ResourceDescriptor(
        ResourceType.ROLE, spec.name, account, account.iam_arn(f"role/{spec.name}")
    )


def expected_external_id(spec: RoleSpec) -> str | None:
    match spec.principal:
        case AccountRootPrincipal(external_id=value) | RolePrincipal(external_id=value):
            return value
        case FederatedPrincipal():
            return None
    return None


# ---------------------------------------------------------------------------
# Primitive operations
# ---------------------------------------------------------------------------


def _not_found(exc: ControlPlaneError) -> bool:
    return exc.kind is ErrorKind.NOT_FOUND


def _attach_permissions(session: AccountSession, role: str, permissions: PermissionSet) -> None:
    for policy_name, document in permissions.inline_policies.items():
        session.call(
            "iam",
            "put_role_policy",
            RoleName=role,
            PolicyName=policy_name,
            PolicyDocument=json.dumps(document),
            resource=role,
        )
    for policy_arn in permissions.managed_policy_arns:
        session.call(
            "iam", "attach_role_policy", RoleName=role, PolicyArn=policy_arn, resource=role
        )


def delete_role(session: AccountSession, role: str) -> list[str]:
    """Detach managed policies, delete inline policies, then delete the role.

    Returns the steps performed. Missing pieces are skipped, so the function is
    safe to call on a half-deleted role.
    """
    steps: list[str] = []
    try:
        attached = session.paginate(
            "iam", "list_attached_role_policies", "AttachedPolicies", RoleName=role, resource=role
        )
        inline = session.paginate(
            "iam", "list_role_policies", "PolicyNames", RoleName=role, resource=role
        )
    except ControlPlaneError as exc:
        if _not_found(exc):
            return steps
        raise
    for policy in attached:
        try:
            session.call(
                "iam",
                "detach_role_policy",
                RoleName=role,
                PolicyArn=policy["PolicyArn"],
                resource=role,
            )
        except ControlPlaneError as exc:
            if not _not_found(exc):
                raise
        steps.append(f"detach {policy['PolicyArn']}")
    for policy_name in inline:
        try:
            session.call(
                "iam", "delete_role_policy", RoleName=role, PolicyName=policy_name, resource=role
            )
        except ControlPlaneError as exc:
            if not _not_found(exc):
                raise
        steps.append(f"delete inline {policy_name}")
    try:
        session.call("iam", "delete_role", RoleName=role, resource=role)
    except ControlPlaneError as exc:
        if not _not_found(exc):
            raise
    steps.append("delete role")
    return steps


def _create_with_permissions(
    session: AccountSession, spec: RoleSpec, ownership: Ownership
) -> dict[str, Any]:
    """Create the role and attach its permission set as one unit."""
    response = session.call(
        "iam",
        "create_role",
        RoleName=spec.name,
        AssumeRolePolicyDocument=json.dumps(trust_document(spec.principal)),
        Description=spec.description,
        MaxSessionDuration=spec.max_session_seconds,
        Tags=ownership.iam_tags(),
        resource=spec.name,
    )
    try:
        _attach_permissions(session, spec.name, spec.permission_set)
    except BootstrapError as primary:
        logger.error(
            "Permission attachment failed; deleting role",
            resource=spec.name,
            kind=primary.kind.value,
        )
        try:
            delete_role(session, spec.name)
        except BootstrapError as secondary:
            primary.secondary.append(secondary)
        raise
    return response["Role"]


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


def _check_external_token(spec: RoleSpec, result: ProbeResult) -> None:
    expected = expected_external_id(spec)
    if expected is None:
        return
    live = external_ids(result.config.get("trust_policy", {}))
    if live and expected not in live:
        raise ExternalTokenMismatch(
            f"role {result.config.get('name', spec.name)} trusts a different external token; "
            "rerun with --rotate-external-token to re-point every role of the environment",
            resource=str(result.config.get("arn", spec.name)),
        )


def _converge(
    session: AccountSession, spec: RoleSpec, result: ProbeResult, ownership: Ownership
) -> bool:
    """Correct drift on an owned role; return True when anything changed."""
    role = str(result.config["name"])
    config = result.config
    changed = False

    canonical = trust_document(spec.principal)
    if not policies_equal(config.get("trust_policy", {}), canonical):
        session.call(
            "iam",
            "update_assume_role_policy",
            RoleName=role,
            PolicyDocument=json.dumps(canonical),
            resource=role,
        )
        logger.info("Corrected trust policy drift", resource=role)
        changed = True

    if int(config.get("max_session_seconds", 0)) != spec.max_session_seconds:
        session.call(
            "iam",
            "update_role",
            RoleName=role,
            MaxSessionDuration=spec.max_session_seconds,
            resource=role,
        )
        changed = True

    live_inline = set(config.get("inline_policy_names", []))
    for policy_name, document in spec.permission_set.inline_policies.items():
        if policy_name in live_inline:
            live = session.call(
                "iam", "get_role_policy", RoleName=role, PolicyName=policy_name, resource=role
            )
            if policies_equal(live.get("PolicyDocument", {}), document):
                continue
        session.call(
            "iam",
            "put_role_policy",
            RoleName=role,
            PolicyName=policy_name,
            PolicyDocument=json.dumps(document),
            resource=role,
        )
        logger.info("Corrected inline policy drift", resource=role, policy_name=policy_name)
        changed = True
    for policy_name in sorted(live_inline - set(spec.permission_set.inline_policies)):
        session.call(
            "iam", "delete_role_policy", RoleName=role, PolicyName=policy_name, resource=role
        )
        changed = True

    live_managed = set(config.get("managed_policy_arns", []))
    wanted_managed = set(spec.permission_set.managed_policy_arns)
    for policy_arn in sorted(wanted_managed - live_managed):
        session.call(
            "iam", "attach_role_policy", RoleName=role, PolicyArn=policy_arn, resource=role
        )
        changed = True
    for policy_arn in sorted(live_managed - wanted_managed):
        session.call(
            "iam", "detach_role_policy", RoleName=role, PolicyArn=policy_arn, resource=role
        )
        changed = True

    live_tags = config.get("tags", {})
    if any(live_tags.get(key) != value for key, value in ownership.tags().items()):
        session.call("iam", "tag_role", RoleName=role, Tags=ownership.iam_tags(), resource=role)
        changed = True
    return changed


def ensure_role(
    session: AccountSession,
    environment: Environment,
    spec: RoleSpec,
    ownership: Ownership,
    *,
    rotate: bool = False,
    probed: ProbeResult | None = None,
) -> RoleRef:
    """Create the role or converge the live one onto ``spec``; idempotent."""
    descriptor = role_descriptor(environment, spec)
    session.checkpoint(descriptor.label())
    result = probed if probed is not None else probe(session, descriptor, ownership)

    if result.conflicting:
        raise ManualInterventionRequired(
            f"role exists but is not managed by this bootstrap: {result.reason}",
            resource=descriptor.arn,
        )

    if result.absent:
        try:
            role = _create_with_permissions(session, spec, ownership)
        except ControlPlaneError as exc:
            if exc.kind is not ErrorKind.ALREADY_EXISTS:
                raise
            logger.info("Role appeared concurrently; reconciling", resource=spec.name)
            return ensure_role(session, environment, spec, ownership, rotate=rotate)
        logger.info(
            "Created role",
            environment=environment.name,
            account_id=environment.account_id,
            resource=spec.name,
            tier=spec.tier.value,
        )
        return RoleRef(
            name=spec.name,
            tier=spec.tier,
            arn=str(role["Arn"]),
            trust_kind=spec.principal.kind,
            action=OutcomeAction.CREATED,
        )

    if not rotate:
        _check_external_token(spec, result)
    changed = _converge(session, spec, result, ownership)
    if result.config.get("legacy_name"):
        logger.info(
            "Adopted legacy-cased role",
            resource=result.config["name"],
            canonical_name=spec.name,
        )
        action = OutcomeAction.ADOPTED
    else:
        action = OutcomeAction.UPDATED if changed else OutcomeAction.UNCHANGED
    return RoleRef(
        name=str(result.config["name"]),
        tier=spec.tier,
        arn=str(result.config["arn"]),
        trust_kind=spec.principal.kind,
        action=action,
    )


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


def _rotate_external_token(
    session: AccountSession,
    specs: Sequence[RoleSpec],
    results: Sequence[ProbeResult],
) -> set[str]:
    """Re-point every existing role's trust policy in one pass; return the roles updated.

    If any update fails, roles already updated are restored to the documents
    read before the pass; restore failures are attached as secondary errors.
    """
    updated: list[tuple[str, dict[str, Any]]] = []
    try:
        for spec, result in zip(specs, results, strict=True):
            if not result.exists:
                continue
            role = str(result.config["name"])
            live = parse_policy(result.config.get("trust_policy", {}))
            canonical = trust_document(spec.principal)
            if policies_equal(live, canonical):
                continue
            session.call(
                "iam",
                "update_assume_role_policy",
                RoleName=role,
                PolicyDocument=json.dumps(canonical),
                resource=role,
            )
            updated.append((role, live))
    except BootstrapError as primary:
        logger.error(
            "External token rotation failed; restoring previous trust policies",
            resource=primary.resource,
            restored=len(updated),
        )
        for role, previous in reversed(updated):
            try:
                session.call(
                    "iam",
                    "update_assume_role_policy",
                    RoleName=role,
                    PolicyDocument=json.dumps(previous),
                    resource=role,
                )
            except BootstrapError as secondary:
                primary.secondary.append(secondary)
        raise
    logger.info("Rotated external token", roles=[role for role, _ in updated])
    return {role for role, _ in updated}


def ensure_role_chain(
    session: AccountSession,
    environment: Environment,
    provider: ProviderRef,
    settings: Settings,
    *,
    rotate: bool = False,
) -> list[RoleRef]:
    """Ensure every tier of the chain, in order.

    All live roles are probed before anything is mutated so an external-token
    mismatch stops the run without touching any role.
    """
    specs = build_role_specs(environment, provider, settings)
    ownership = ownership_for(environment, settings)

    results = []
    for spec in specs:
        session.checkpoint(role_descriptor(environment, spec).label())
        result = probe(session, role_descriptor(environment, spec), ownership)
        if result.conflicting:
            raise ManualInterventionRequired(
                f"role exists but is not managed by this bootstrap: {result.reason}",
                resource=result.descriptor.arn,
            )
        if not rotate and result.exists:
            _check_external_token(spec, result)
        results.append(result)

    if rotate:
        rotated = _rotate_external_token(session, specs, results)
        refs = [ensure_role(session, environment, spec, ownership, rotate=True) for spec in specs]
        return [
            replace(ref, action=OutcomeAction.UPDATED)
            if ref.name in rotated and ref.action is OutcomeAction.UNCHANGED
            else ref
            for ref in refs
        ]

    return [
        ensure_role(session, environment, spec, ownership, probed=result)
        for spec, result in zip(specs, results, strict=True)
    ]
