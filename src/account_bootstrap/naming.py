"""
account_bootstrap.naming — Canonical names for every bootstrapped resource.

Names are pure functions of (project, environment, account) so reruns address
the same resources and teardown can find them without any stored state.
"""

from __future__ import annotations

import hashlib
from urllib.parse import urlencode

from account_bootstrap.errors import ConfigurationError
from account_bootstrap.models import (
    ROLE_TIER_ORDER,
    AccountRef,
    Environment,
    RoleTier,
    TrustModel,
)

OIDC_PROVIDER_URL = "https://token.actions.githubusercontent.com"
OIDC_AUDIENCE = "sts.amazonaws.com"
OIDC_THUMBPRINTS: tuple[str, ...] = (
    "6938fd4d98bab03faadb97b34396831e3780aea1",
    "1c58a3a8518e8759bf075b76b750d4f2df264fcd",
)
CONSOLE_SWITCH_ROLE_URL = "https://signin.aws.amazon.com/switchrole"

_BUCKET_MAX_LENGTH = 63
_ROLE_MAX_LENGTH = 64
_TABLE_MAX_LENGTH = 255
_ALIAS_MAX_LENGTH = 256
_SUFFIX_LENGTH = 8


def title_case(value: str) -> str:
    """``static-site`` -> ``Static-Site``."""
    return "-".join(part[:1].upper() + part[1:] for part in value.split("-"))


def role_name(tier: RoleTier, *, short_name: str, environment: Environment) -> str:
    project = title_case(short_name)
    match tier:
        case RoleTier.BOOTSTRAP:
            return f"{project}-Bootstrap-{environment.title}"
        case RoleTier.ORCHESTRATION:
            return f"GitHubActions-{project}-{environment.title}-Orchestrator"
        case RoleTier.DEPLOYMENT:
            return f"GitHubActions-{project}-{environment.title}-Role"
        case RoleTier.READ_ONLY:
            return f"{project}-{environment.name}"
    raise ValueError(f"unknown role tier: {tier}")


def provider_arn(account: AccountRef, url: str = OIDC_PROVIDER_URL) -> str:
    host = url.removeprefix("https://").rstrip("/")
    return account.iam_arn(f"oidc-provider/{host}")


def bucket_suffix(account_id: str) -> str:
    """Deterministic disambiguator derived from the account id."""
    return hashlib.sha256(account_id.encode("utf-8")).hexdigest()[:_SUFFIX_LENGTH]


def bucket_name(project: str, environment: Environment, *, suffixed: bool = False) -> str:
    name = f"{project}-state-{environment.name}-{environment.account_id}"
    if suffixed:
        name = f"{name}-{bucket_suffix(environment.account_id)}"
    if len(name) > _BUCKET_MAX_LENGTH:
        raise ConfigurationError(f"bucket name exceeds {_BUCKET_MAX_LENGTH} characters: {name}")
    return name


def bucket_candidates(project: str, environment: Environment) -> tuple[str, str]:
    """Canonical name first, then the account-derived fallback."""
    return (
        bucket_name(project, environment),
        bucket_name(project, environment, suffixed=True),
    )


def lock_table_name(project: str, environment: Environment) -> str:
    return f"{project}-locks-{environment.name}"


def key_alias(project: str, environment: Environment) -> str:
    return f"alias/{project}-state-{environment.name}-{environment.account_id}"


def lock_parameter_name(short_name: str, environment: Environment) -> str:
    return f"/{short_name}/bootstrap/{environment.name}/lock"


def check_names(*, project: str, short_name: str, environment: Environment) -> None:
    """Raise ConfigurationError if any derived name breaks its service limit.

    Runs before the first control-plane call, so an oversized project or
    environment name never leaves a half-built chain behind.
    """
    bucket_candidates(project, environment)
    limits = [
        (role_name(tier, short_name=short_name, environment=environment), _ROLE_MAX_LENGTH)
        for tier in ROLE_TIER_ORDER
    ]
    limits.append((lock_table_name(project, environment), _TABLE_MAX_LENGTH))
    limits.append((key_alias(project, environment), _ALIAS_MAX_LENGTH))
    for name, limit in limits:
        if len(name) > limit:
            raise ConfigurationError(
                f"name exceeds {limit} characters: {name}", resource=environment.name
            )


def console_switch_role_url(role: str, *, account_id: str, display_name: str) -> str:
    query = urlencode({"roleName": role, "account": account_id, "displayName": display_name})
    return f"{CONSOLE_SWITCH_ROLE_URL}?{query}"


def chain_tiers(trust_model: TrustModel) -> tuple[RoleTier, ...]:
    """Tiers provisioned for a trust model, in creation order."""
    if trust_model is TrustModel.SINGLE_HOP:
        return tuple(tier for tier in ROLE_TIER_ORDER if tier is not RoleTier.ORCHESTRATION)
    return ROLE_TIER_ORDER
