"""
account_bootstrap.registry — Static environment -> account mapping.

Sources, in priority order:
  1. ACCOUNTS_FILE — JSON object keyed by environment name. Values are either a
     bare account id or {"account_id", "region", "nickname", "protected"}.
     A "management" key is accepted and ignored (it lives in settings).
  2. AWS_ACCOUNT_ID_<ENV> / AWS_REGION_<ENV> environment variables.

Pure lookup: loading never calls AWS. Every name derived for an environment is
checked against its service limit here, before any run starts.
"""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from account_bootstrap import naming
from account_bootstrap.config import Settings, validate_account_id, validate_environment_name
from account_bootstrap.errors import ConfigurationError
from account_bootstrap.models import Environment

_IGNORED_FILE_KEYS = frozenset({"management"})


@dataclass(frozen=True)
class AccountRegistry:
    environments: tuple[Environment, ...]

    def __iter__(self) -> Iterator[Environment]:
        return iter(self.environments)

    def __len__(self) -> int:
        return len(self.environments)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(env.name for env in self.environments)

    def get(self, name: str) -> Environment:
        for env in self.environments:
            if env.name == name:
                return env
        known = ", ".join(self.names) or "none"
        raise ConfigurationError(f"unknown environment {name!r} (known: {known})")

    def select(self, names: Iterable[str]) -> list[Environment]:
        """Resolve ``names`` in order, dropping duplicates."""
        return [self.get(name) for name in dict.fromkeys(names)]


def _env_key(name: str) -> str:
    return name.upper().replace("-", "_")


def _read_accounts_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"ACCOUNTS_FILE not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"ACCOUNTS_FILE is not valid JSON: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"ACCOUNTS_FILE must hold a JSON object: {path}")
    return {key: value for key, value in data.items() if key not in _IGNORED_FILE_KEYS}


def _entry_from_file(
    name: str, raw: Any, *, default_region: str, protected: bool
) -> Environment:
    source = f"ACCOUNTS_FILE[{name}]"
    if isinstance(raw, str):
        return Environment(
            name=name,
            account_id=validate_account_id(raw, source=source),
            region=default_region,
            protected=protected,
        )
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source} must be an account id or an object")
    account_id = str(raw.get("account_id") or raw.get("accountId") or "")
    return Environment(
        name=name,
        account_id=validate_account_id(account_id, source=f"{source}.account_id"),
        region=str(raw.get("region") or default_region),
        nickname=str(raw.get("nickname") or ""),
        protected=bool(raw.get("protected", protected)),
    )


def _entry_from_environ(
    name: str, environ: Mapping[str, str], *, default_region: str, protected: bool
) -> Environment:
    key = f"AWS_ACCOUNT_ID_{_env_key(name)}"
    raw = environ.get(key, "").strip()
    if not raw:
        raise ConfigurationError(f"{key} must be set (or provide ACCOUNTS_FILE)")
    return Environment(
        name=name,
        account_id=validate_account_id(raw, source=key),
        region=environ.get(f"AWS_REGION_{_env_key(name)}", "").strip() or default_region,
        protected=protected,
    )


def load_registry(
    settings: Settings, environ: Mapping[str, str] | None = None
) -> AccountRegistry:
    """Build the registry for every configured environment; fail fast on gaps."""
    environ = os.environ if environ is None else environ
    file_entries = _read_accounts_file(settings.accounts_file) if settings.accounts_file else None

    names = settings.environment_names
    if file_entries is not None and not names:
        names = tuple(file_entries)

    environments: list[Environment] = []
    for name in names:
        validate_environment_name(name)
        protected = name in settings.protected_names
        if file_entries is not None:
            if name not in file_entries:
                raise ConfigurationError(f"ACCOUNTS_FILE has no entry for environment {name!r}")
            env = _entry_from_file(
                name,
                file_entries[name],
                default_region=settings.default_region,
                protected=protected,
            )
        else:
            env = _entry_from_environ(
                name, environ, default_region=settings.default_region, protected=protected
            )
        naming.check_names(
            project=settings.project_name,
            short_name=settings.project_short_name,
            environment=env,
        )
        environments.append(env)

    seen: dict[str, str] = {}
    for env in environments:
        if env.account_id == settings.management_account_id:
            raise ConfigurationError(
                f"environment {env.name!r} maps to the management account {env.account_id}"
            )
        if env.account_id in seen:
            raise ConfigurationError(
                f"environments {seen[env.account_id]!r} and {env.name!r} share account "
                f"{env.account_id}; each environment needs its own account"
            )
        seen[env.account_id] = env.name

    return AccountRegistry(environments=tuple(environments))
