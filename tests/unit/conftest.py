"""Shared fixtures: fake credentials, moto, settings and account-bound sessions."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import boto3
import pytest
from moto import mock_aws

from account_bootstrap.config import Settings, load_settings
from account_bootstrap.control_plane import AccountSession, CancellationToken
from account_bootstrap.models import Environment
from account_bootstrap.retry import no_wait_policy

REGION = "eu-west-2"
ACCOUNT_ID = "123456789012"  # moto's default account
MANAGEMENT_ACCOUNT_ID = "999999999999"
EXTERNAL_ID = "ext-token-0001"

_SETTINGS_VARS = (
    "GITHUB_REPO",
    "PROJECT_SHORT_NAME",
    "PROJECT_NAME",
    "EXTERNAL_ID",
    "MANAGEMENT_ACCOUNT_ID",
    "ACCOUNTS_FILE",
    "BOOTSTRAP_ENVIRONMENTS",
    "BOOTSTRAP_PROTECTED_ENVIRONMENTS",
    "BOOTSTRAP_TRUST_MODEL",
    "BOOTSTRAP_ACCESS_ROLE_NAME",
    "BOOTSTRAP_OUTPUT_DIR",
    "BOOTSTRAP_DESTROY_CONFIRM",
    "AWS_ACCOUNT_ID_DEV",
    "AWS_ACCOUNT_ID_STAGING",
    "AWS_ACCOUNT_ID_PROD",
)


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mocked AWS credentials for moto; no real settings leak into tests."""
    for name in _SETTINGS_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("MOTO_IAM_LOAD_MANAGED_POLICIES", "true")
    monkeypatch.setenv("POWERTOOLS_LOG_LEVEL", "WARNING")


@pytest.fixture
def aws() -> Iterator[None]:
    with mock_aws():
        yield


def make_settings(tmp_path: Path, **overrides: object) -> Settings:
    values: dict[str, object] = {
        "GITHUB_REPO": "example-org/infra-live",
        "PROJECT_SHORT_NAME": "acme",
        "PROJECT_NAME": "acme-platform",
        "EXTERNAL_ID": EXTERNAL_ID,
        "MANAGEMENT_ACCOUNT_ID": MANAGEMENT_ACCOUNT_ID,
        "AWS_DEFAULT_REGION": REGION,
        "BOOTSTRAP_ENVIRONMENTS": "dev",
        "BOOTSTRAP_OUTPUT_DIR": str(tmp_path / "output"),
    }
    values.update(overrides)
    return load_settings(values)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def environment() -> Environment:
    return Environment(name="dev", account_id=ACCOUNT_ID, region=REGION)


def make_session(environment: Environment, **kwargs: object) -> AccountSession:
    kwargs.setdefault("retry_policy", no_wait_policy())
    return AccountSession(
        environment.account,
        boto3.Session(region_name=environment.region),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture
def session(aws: None, environment: Environment) -> AccountSession:
    return make_session(environment)


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    def _factory(**overrides: object) -> Settings:
        return make_settings(tmp_path, **overrides)

    return _factory


@pytest.fixture
def new_session(aws: None) -> Callable[..., AccountSession]:
    return make_session


class CountdownToken(CancellationToken):
    """Cancels itself once ``remaining`` checkpoints have passed."""

    def __init__(self, remaining: int) -> None:
        super().__init__()
        self.remaining = remaining

    def raise_if_cancelled(self, where: str) -> None:
        if self.remaining <= 0 and not self.cancelled:
            self.cancel("simulated interrupt")
        self.remaining -= 1
        super().raise_if_cancelled(where)


@pytest.fixture
def cancel_after() -> Callable[[int], CancellationToken]:
    return CountdownToken
