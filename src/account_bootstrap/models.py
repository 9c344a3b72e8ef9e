"""
account_bootstrap.models — Environments, roles, trust principals and resources.

Defines the canonical data model shared by every provisioner:

    Environment        — registry entry whose status moves through the phases
    AccountRef         — explicit {account_id, region} passed to every call
    Trust principals   — closed set: federated provider, account root, role ARN
    RoleSpec           — desired role: tier, principal, permission set
    ResourceDescriptor — addressable resource probed and torn down
    ResourceOutcome    — per-resource result reported by bootstrap and destroy
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from account_bootstrap.errors import BootstrapError

# ---------------------------------------------------------------------------
# Ownership marker — tags applied to every resource this tool creates
# ---------------------------------------------------------------------------
OWNERSHIP_TAG_KEY = "ManagedBy"
OWNERSHIP_TAG_VALUE = "bootstrap"
PROJECT_TAG_KEY = "Project"
ENVIRONMENT_TAG_KEY = "Environment"

DEFAULT_MAX_SESSION_SECONDS = 3600


# ---------------------------------------------------------------------------
# Enums — constrained vocabulary for status/type fields
# ---------------------------------------------------------------------------


class EnvironmentStatus(StrEnum):
    UNBOOTSTRAPPED = "unbootstrapped"
    BOOTSTRAPPING = "bootstrapping"
    READY = "ready"
    TEARING_DOWN = "tearing_down"


class ResourceType(StrEnum):
    TRUST_PROVIDER = "trust_provider"
    ROLE = "role"
    KEY = "key"
    LOCK_TABLE = "lock_table"
    BUCKET = "bucket"


class ResourceState(StrEnum):
    ABSENT = "absent"
    CREATING = "creating"
    EXISTS = "exists"
    DRAINING = "draining"
    DESTROYING = "destroying"


class ProbeStatus(StrEnum):
    ABSENT = "absent"
    EXISTS = "exists"
    CONFLICTING = "conflicting"


class RoleTier(StrEnum):
    BOOTSTRAP = "bootstrap"
    ORCHESTRATION = "orchestration"
    DEPLOYMENT = "deployment"
    READ_ONLY = "read_only"


# Creation order; teardown walks it backwards.
ROLE_TIER_ORDER: tuple[RoleTier, ...] = (
    RoleTier.BOOTSTRAP,
    RoleTier.ORCHESTRATION,
    RoleTier.DEPLOYMENT,
    RoleTier.READ_ONLY,
)


class TrustModel(StrEnum):
    TIERED = "tiered"
    SINGLE_HOP = "single_hop"


class OutcomeAction(StrEnum):
    CREATED = "created"
    ADOPTED = "adopted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    SCHEDULED_DELETION = "scheduled_deletion"
    ALREADY_ABSENT = "already_absent"
    WOULD_DELETE = "would_delete"
    CONFLICTING = "conflicting"
    BLOCKED = "blocked"
    FAILED = "failed"


_FAILED_ACTIONS = frozenset(
    {OutcomeAction.CONFLICTING, OutcomeAction.BLOCKED, OutcomeAction.FAILED}
)


# ---------------------------------------------------------------------------
# Accounts and environments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccountRef:
    account_id: str
    region: str

    def iam_arn(self, resource: str) -> str:
        return f"arn:aws:iam::{self.account_id}:{resource}"

    @property
    def root_arn(self) -> str:
        return self.iam_arn("root")


@dataclass
class Environment:
    """Registry entry. Only the orchestrator mutates ``status``."""

    name: str
    account_id: str
    region: str
    nickname: str = ""
    protected: bool = False
    status: EnvironmentStatus = EnvironmentStatus.UNBOOTSTRAPPED

    @property
    def account(self) -> AccountRef:
        return AccountRef(account_id=self.account_id, region=self.region)

    @property
    def title(self) -> str:
        """``dev`` -> ``Dev``; used by the canonical role names."""
        return "-".join(part[:1].upper() + part[1:] for part in self.name.split("-"))


@dataclass(frozen=True)
class Ownership:
    """Ownership marker for one environment of one project."""

    project: str
    environment: str

    def tags(self) -> dict[str, str]:
        return {
            OWNERSHIP_TAG_KEY: OWNERSHIP_TAG_VALUE,
            PROJECT_TAG_KEY: self.project,
            ENVIRONMENT_TAG_KEY: self.environment,
        }

    def iam_tags(self) -> list[dict[str, str]]:
        return [{"Key": key, "Value": value} for key, value in self.tags().items()]

    def conflict_reason(self, tags: Mapping[str, str]) -> str | None:
        """Return why ``tags`` fail the ownership check, or None when owned."""
        if tags.get(OWNERSHIP_TAG_KEY) != OWNERSHIP_TAG_VALUE:
            return f"missing ownership tag {OWNERSHIP_TAG_KEY}={OWNERSHIP_TAG_VALUE}"
        if tags.get(PROJECT_TAG_KEY) != self.project:
            return f"owned by project {tags.get(PROJECT_TAG_KEY)!r}, expected {self.project!r}"
        env_tag = tags.get(ENVIRONMENT_TAG_KEY)
        if env_tag is not None and env_tag != self.environment:
            return f"tagged for environment {env_tag!r}, expected {self.environment!r}"
        return None


# ---------------------------------------------------------------------------
# Trust principals — closed sum type, one variant per trust document
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrustCondition:
    audience: str
    subject_pattern: str
    external_id: str | None = None


@dataclass(frozen=True)
class FederatedPrincipal:
    provider_arn: str
    provider_host: str
    condition: TrustCondition

    kind = "federated-provider"


@dataclass(frozen=True)
class AccountRootPrincipal:
    account_id: str
    external_id: str

    kind = "account-root"

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError("account-root trust requires an external token")


@dataclass(frozen=True)
class RolePrincipal:
    role_arn: str
    external_id: str

    kind = "role-arn"

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError("role-arn trust requires an external token")


TrustPrincipal = FederatedPrincipal | AccountRootPrincipal | RolePrincipal


@dataclass(frozen=True)
class PermissionSet:
    managed_policy_arns: tuple[str, ...] = ()
    inline_policies: Mapping[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class RoleSpec:
    name: str
    tier: RoleTier
    principal: TrustPrincipal
    permission_set: PermissionSet
    max_session_seconds: int = DEFAULT_MAX_SESSION_SECONDS
    description: str = ""


@dataclass(frozen=True)
class ProviderSpec:
    url: str
    audiences: tuple[str, ...]
    thumbprints: tuple[str, ...]


# ---------------------------------------------------------------------------
# Resources, probe results and references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceDescriptor:
    type: ResourceType
    name: str
    account: AccountRef
    arn: str = ""

    def label(self) -> str:
        return f"{self.type.value}:{self.name}"


@dataclass(frozen=True)
class ProbeResult:
    descriptor: ResourceDescriptor
    status: ProbeStatus
    config: Mapping[str, Any] = field(default_factory=dict)
    reason: str = ""

    @property
    def exists(self) -> bool:
        return self.status is ProbeStatus.EXISTS

    @property
    def absent(self) -> bool:
        return self.status is ProbeStatus.ABSENT

    @property
    def conflicting(self) -> bool:
        return self.status is ProbeStatus.CONFLICTING


@dataclass(frozen=True)
class ProviderRef:
    arn: str
    url: str
    audiences: tuple[str, ...]
    thumbprints: tuple[str, ...]
    action: OutcomeAction


@dataclass(frozen=True)
class RoleRef:
    name: str
    tier: RoleTier
    arn: str
    trust_kind: str
    action: OutcomeAction


@dataclass(frozen=True)
class BackendRef:
    bucket: str
    lock_table: str
    key_id: str
    key_arn: str
    key_alias: str
    region: str
    versioning_enabled: bool
    encryption_enabled: bool
    action: OutcomeAction = OutcomeAction.UNCHANGED
    resource_actions: Mapping[ResourceType, OutcomeAction] = field(default_factory=dict)

    def terraform_backend_config(self, environment: str) -> str:
        """HCL snippet for ``terraform init -backend-config=...``."""
        return (
            f'bucket         = "{self.bucket}"\n'
            f'key            = "environments/{environment}/terraform.tfstate"\n'
            f'region         = "{self.region}"\n'
            f'dynamodb_table = "{self.lock_table}"\n'
            f'kms_key_id     = "{self.key_arn}"\n'
            "encrypt        = true\n"
        )


@dataclass
class ResourceOutcome:
    descriptor: ResourceDescriptor
    action: OutcomeAction
    state: ResourceState
    detail: str = ""
    error: BootstrapError | None = None
    steps: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.action not in _FAILED_ACTIONS

    def summary(self) -> str:
        text = f"{self.descriptor.label()} {self.action.value} ({self.state.value})"
        if self.detail:
            text += f": {self.detail}"
        if self.error is not None:
            text += f"; {self.error.describe()}"
        return text

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.descriptor.type.value,
            "name": self.descriptor.name,
            "accountId": self.descriptor.account.account_id,
            "action": self.action.value,
            "state": self.state.value,
        }
        if self.descriptor.arn:
            data["arn"] = self.descriptor.arn
        if self.detail:
            data["detail"] = self.detail
        if self.steps:
            data["steps"] = list(self.steps)
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


@dataclass(frozen=True)
class MutationRecord:
    service: str
    operation: str
    resource: str
