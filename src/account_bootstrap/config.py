"""
account_bootstrap.config — Environment-driven settings with fail-fast validation.

All required inputs (repository, project names, external token, management
account) are read once, validated, and frozen before any control-plane call is
made. Per-environment account ids and regions are resolved by the registry.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from account_bootstrap.errors import ConfigurationError
from account_bootstrap.models import TrustModel

DEFAULT_REGION = "us-east-1"
DEFAULT_ENVIRONMENTS = "dev,staging,prod"
DEFAULT_ACCESS_ROLE_NAME = "OrganizationAccountAccessRole"
DEFAULT_LOCK_TTL_SECONDS = 1800
DEFAULT_MAX_ATTEMPTS = 5

_GITHUB_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_PROJECT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,30}[a-z0-9]$")
_EXTERNAL_ID_RE = re.compile(r"^[\w+=,.@:/-]{2,1224}$")
_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
_ENV_NAME_RE = re.compile(r"^[a-z][a-z0-9-]{0,15}$")


class Settings(BaseSettings):
    """Bootstrap configuration read from the process environment."""

    github_repo: str = Field(alias="GITHUB_REPO")
    project_short_name: str = Field(alias="PROJECT_SHORT_NAME")
    project_name: str = Field(alias="PROJECT_NAME")
    external_id: str = Field(alias="EXTERNAL_ID", repr=False)
    management_account_id: str = Field(alias="MANAGEMENT_ACCOUNT_ID")
    default_region: str = Field(default=DEFAULT_REGION, alias="AWS_DEFAULT_REGION")
    environments: str = Field(default=DEFAULT_ENVIRONMENTS, alias="BOOTSTRAP_ENVIRONMENTS")
    protected_environments: str = Field(default="prod", alias="BOOTSTRAP_PROTECTED_ENVIRONMENTS")
    accounts_file: Path | None = Field(default=None, alias="ACCOUNTS_FILE")
    trust_model: TrustModel = Field(default=TrustModel.TIERED, alias="BOOTSTRAP_TRUST_MODEL")
    access_role_name: str = Field(
        default=DEFAULT_ACCESS_ROLE_NAME, alias="BOOTSTRAP_ACCESS_ROLE_NAME"
    )
    output_dir: Path = Field(default=Path("output"), alias="BOOTSTRAP_OUTPUT_DIR")
    lock_ttl_seconds: int = Field(
        default=DEFAULT_LOCK_TTL_SECONDS, ge=60, alias="BOOTSTRAP_LOCK_TTL_SECONDS"
    )
    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS, ge=1, le=10, alias="BOOTSTRAP_MAX_ATTEMPTS"
    )
    destroy_confirm: str = Field(default="", alias="BOOTSTRAP_DESTROY_CONFIRM", repr=False)

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    @field_validator("github_repo")
    @classmethod
    def _check_repo(cls, value: str) -> str:
        value = value.strip()
        if not _GITHUB_REPO_RE.match(value):
            raise ValueError("must be <owner>/<repo>")
        return value

    @field_validator("project_short_name", "project_name")
    @classmethod
    def _check_project(cls, value: str) -> str:
        value = value.strip()
        if not _PROJECT_NAME_RE.match(value):
            raise ValueError("must be 2-32 lowercase letters, digits or hyphens")
        return value

    @field_validator("external_id")
    @classmethod
    def _check_external_id(cls, value: str) -> str:
        if not _EXTERNAL_ID_RE.match(value):
            raise ValueError("must be 2-1224 characters of [A-Za-z0-9_+=,.@:/-]")
        return value

    @field_validator("management_account_id")
    @classmethod
    def _check_account(cls, value: str) -> str:
        value = value.strip()
        if not _ACCOUNT_ID_RE.match(value):
            raise ValueError("must be a 12-digit AWS account id")
        return value

    @field_validator("environments", "protected_environments")
    @classmethod
    def _check_environments(cls, value: str) -> str:
        for name in _split(value):
            if not _ENV_NAME_RE.match(name):
                raise ValueError(f"invalid environment name {name!r}")
        return value

    @property
    def environment_names(self) -> tuple[str, ...]:
        return _split(self.environments)

    @property
    def protected_names(self) -> frozenset[str]:
        return frozenset(_split(self.protected_environments))

    @property
    def subject_pattern(self) -> str:
        """Workflow identity scope accepted by federated trust."""
        return f"repo:{self.github_repo}:*"


def _split(value: str) -> tuple[str, ...]:
    return tuple(dict.fromkeys(part.strip() for part in value.split(",") if part.strip()))


def _describe_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or "settings"
        if error.get("type") == "missing":
            problems.append(f"{field} must be set")
        else:
            problems.append(f"{field}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def load_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Load settings from the environment, raising ConfigurationError on bad input.

    ``overrides`` are keyword values (alias or field name) that win over the
    environment, used by the CLI and tests.
    """
    try:
        return Settings(**dict(overrides or {}))
    except ValidationError as exc:
        raise ConfigurationError(_describe_validation_error(exc)) from exc


def validate_account_id(value: str, *, source: str) -> str:
    value = value.strip()
    if not _ACCOUNT_ID_RE.match(value):
        raise ConfigurationError(f"{source} must be a 12-digit AWS account id, got {value!r}")
    return value


def validate_environment_name(value: str) -> str:
    if not _ENV_NAME_RE.match(value):
        raise ConfigurationError(f"invalid environment name {value!r}")
    return value
