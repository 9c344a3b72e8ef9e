"""
account_bootstrap.manifest — Machine-readable record of an environment's bootstrap.

The manifest is a projection of live state, never a source of truth: it can be
regenerated at any time by re-probing (``collect_state``). It is the only
artifact this tool persists.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, __version__, naming
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.models import (
    BackendRef,
    Environment,
    EnvironmentStatus,
    OutcomeAction,
    ProbeResult,
    ProviderRef,
    ResourceType,
    RoleRef,
    RoleTier,
)
from account_bootstrap.policies import trust_kind
from account_bootstrap.prober import probe_environment

logger = Logger(service=SERVICE_NAME, child=True)

MANIFEST_VERSION = "1"


def _ci_variables(environment: Environment, roles: Sequence[RoleRef]) -> dict[str, str]:
    suffix = environment.name.upper().replace("-", "_")
    by_tier = {role.tier: role for role in roles}
    variables = {f"AWS_ACCOUNT_ID_{suffix}": environment.account_id}
    # The pipeline's first hop: the orchestration role when tiered, else deployment.
    entry = by_tier.get(RoleTier.ORCHESTRATION) or by_tier.get(RoleTier.DEPLOYMENT)
    if entry is not None:
        variables[f"AWS_ASSUME_ROLE_{suffix}"] = entry.arn
    deployment = by_tier.get(RoleTier.DEPLOYMENT)
    if deployment is not None:
        variables[f"AWS_DEPLOYMENT_ROLE_{suffix}"] = deployment.arn
    return variables


def _access_links(
    environment: Environment, roles: Sequence[RoleRef], settings: Settings
) -> list[dict[str, str]]:
    links = []
    for role in roles:
        if role.tier is not RoleTier.READ_ONLY:
            continue
        display_name = f"{settings.project_short_name}-{environment.name}-readonly"
        links.append(
            {
                "label": f"{environment.title} read-only console",
                "roleName": role.name,
                "url": naming.console_switch_role_url(
                    role.name, account_id=environment.account_id, display_name=display_name
                ),
            }
        )
    return links


def build_manifest(
    environment: Environment,
    provider: ProviderRef | None,
    roles: Sequence[RoleRef],
    backend: BackendRef | None,
    settings: Settings,
    *,
    resources: Sequence[ProbeResult] = (),
) -> dict[str, Any]:
    """Pure projection of bootstrap results onto the manifest record."""
    manifest: dict[str, Any] = {
        "manifestVersion": MANIFEST_VERSION,
        "generator": f"{SERVICE_NAME}/{__version__}",
        "project": settings.project_name,
        "environment": environment.name,
        "accountId": environment.account_id,
        "region": environment.region,
        "status": environment.status.value,
        "trustModel": settings.trust_model.value,
        "trustProvider": None,
        "roles": [],
        "backend": None,
        "accessLinks": _access_links(environment, roles, settings),
        "ciVariables": _ci_variables(environment, roles),
    }
    if provider is not None:
        manifest["trustProvider"] = {
            "arn": provider.arn,
            "url": provider.url,
            "audiences": list(provider.audiences),
            "thumbprints": list(provider.thumbprints),
            "subject": settings.subject_pattern,
        }
    manifest["roles"] = [
        {"tier": role.tier.value, "name": role.name, "arn": role.arn, "trustKind": role.trust_kind}
        for role in roles
    ]
    if backend is not None:
        manifest["backend"] = {
            "bucket": backend.bucket,
            "lockTable": backend.lock_table,
            "keyId": backend.key_id,
            "keyArn": backend.key_arn,
            "keyAlias": backend.key_alias,
            "region": backend.region,
            "versioningEnabled": backend.versioning_enabled,
            "encryptionEnabled": backend.encryption_enabled,
            "backendConfig": backend.terraform_backend_config(environment.name),
        }
    if resources:
        manifest["resources"] = [
            {
                "type": result.descriptor.type.value,
                "name": result.descriptor.name,
                "status": result.status.value,
                "arn": str(result.config.get("arn", result.descriptor.arn)),
            }
            for result in resources
        ]
    return manifest


# ---------------------------------------------------------------------------
# Live re-probe
# ---------------------------------------------------------------------------


@dataclass
class LiveState:
    results: list[ProbeResult]
    provider: ProviderRef | None = None
    roles: list[RoleRef] = field(default_factory=list)
    backend: BackendRef | None = None

    @property
    def status(self) -> EnvironmentStatus:
        present = [result.exists for result in self.results]
        if present and all(present):
            return EnvironmentStatus.READY
        if not any(present):
            return EnvironmentStatus.UNBOOTSTRAPPED
        return EnvironmentStatus.BOOTSTRAPPING


def _tier_for(name: str, environment: Environment, settings: Settings) -> RoleTier:
    for tier in RoleTier:
        expected = naming.role_name(
            tier, short_name=settings.project_short_name, environment=environment
        )
        if expected.casefold() == name.casefold():
            return tier
    raise ValueError(f"role {name} does not match any tier name")


def collect_state(
    session: AccountSession, environment: Environment, settings: Settings
) -> LiveState:
    """Re-probe the environment and rebuild the references from live config."""
    results = probe_environment(session, environment, settings)
    state = LiveState(results=results)
    by_type: dict[ResourceType, list[ProbeResult]] = {}
    for result in results:
        by_type.setdefault(result.descriptor.type, []).append(result)

    for result in by_type.get(ResourceType.TRUST_PROVIDER, []):
        if result.exists:
            state.provider = ProviderRef(
                arn=str(result.config["arn"]),
                url=str(result.config["url"]),
                audiences=tuple(result.config.get("client_ids", ())),
                thumbprints=tuple(result.config.get("thumbprints", ())),
                action=OutcomeAction.UNCHANGED,
            )

    for result in by_type.get(ResourceType.ROLE, []):
        if result.exists:
            state.roles.append(
                RoleRef(
                    name=str(result.config["name"]),
                    tier=_tier_for(result.descriptor.name, environment, settings),
                    arn=str(result.config["arn"]),
                    trust_kind=trust_kind(result.config.get("trust_policy", {})),
                    action=OutcomeAction.UNCHANGED,
                )
            )

    [key] = by_type[ResourceType.KEY]
    [table] = by_type[ResourceType.LOCK_TABLE]
    [bucket] = by_type[ResourceType.BUCKET]
    if key.exists and table.exists and bucket.exists:
        state.backend = BackendRef(
            bucket=bucket.descriptor.name,
            lock_table=table.descriptor.name,
            key_id=str(key.config["key_id"]),
            key_arn=str(key.config["arn"]),
            key_alias=key.descriptor.name,
            region=environment.region,
            versioning_enabled=bucket.config.get("versioning") == "Enabled",
            encryption_enabled=bucket.config.get("sse_algorithm") == "aws:kms",
        )
    return state


def manifest_path(output_dir: Path, environment: Environment) -> Path:
    return output_dir / f"bootstrap-{environment.name}.json"


def write_manifest(
    manifest: dict[str, Any], environment: Environment, output_dir: Path
) -> Path:
    path = manifest_path(output_dir, environment)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(manifest, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.info("Wrote manifest", environment=environment.name, path=str(path))
    return path
