"""
account_bootstrap.orchestrator — Per-environment bootstrap, destroy and report runs.

Environments run in parallel on a thread pool, one AccountSession each. A
failure (or crash) in one environment is captured in that environment's result
and never reaches another worker. Phases inside one environment are strictly
sequential: identity -> roles -> backend.
"""

from __future__ import annotations

import random
import signal
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME
from account_bootstrap.backend import ensure_backend
from account_bootstrap.config import Settings
from account_bootstrap.control_plane import (
    AccountSession,
    CallObserver,
    CancellationToken,
    SessionFactory,
    default_session_factory,
    open_session,
)
from account_bootstrap.errors import (
    EXIT_CODES,
    BootstrapError,
    ConfigurationError,
    ErrorKind,
    PartialFailure,
)
from account_bootstrap.identity import default_provider_spec, ensure_trust_provider
from account_bootstrap.lock import default_owner, held_lock
from account_bootstrap.manifest import build_manifest, collect_state, write_manifest
from account_bootstrap.models import (
    BackendRef,
    Environment,
    EnvironmentStatus,
    MutationRecord,
    OutcomeAction,
    ProbeStatus,
    ProviderRef,
    ResourceDescriptor,
    ResourceOutcome,
    ResourceState,
    ResourceType,
    RoleRef,
)
from account_bootstrap.prober import (
    bucket_descriptor,
    key_descriptor,
    lock_table_descriptor,
    ownership_for,
    provider_descriptor,
)
from account_bootstrap.registry import AccountRegistry
from account_bootstrap.retry import RetryPolicy
from account_bootstrap.roles import ensure_role_chain
from account_bootstrap.teardown import plan_teardown, teardown_environment

logger = Logger(service=SERVICE_NAME, child=True)

_REPORT_ACTIONS = {
    ProbeStatus.ABSENT: OutcomeAction.ALREADY_ABSENT,
    ProbeStatus.EXISTS: OutcomeAction.UNCHANGED,
    ProbeStatus.CONFLICTING: OutcomeAction.CONFLICTING,
}


class UnexpectedError(BootstrapError):
    """A non-typed exception escaped an environment worker."""

    kind = ErrorKind.UNKNOWN


@dataclass
class EnvironmentResult:
    environment: Environment
    command: str
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    manifest: dict[str, Any] | None = None
    manifest_path: Path | None = None
    mutations: list[MutationRecord] = field(default_factory=list)
    error: BootstrapError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else self.error.exit_code

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "command": self.command,
            "environment": self.environment.name,
            "accountId": self.environment.account_id,
            "region": self.environment.region,
            "status": self.environment.status.value,
            "ok": self.ok,
            "resources": [outcome.to_dict() for outcome in self.outcomes],
        }
        if self.manifest is not None:
            data["manifest"] = self.manifest
        if self.manifest_path is not None:
            data["manifestPath"] = str(self.manifest_path)
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


def exit_code_for(results: Sequence[EnvironmentResult]) -> int:
    """0 when every environment succeeded; one shared failure code; else partial failure."""
    codes = {result.exit_code for result in results if not result.ok}
    if not codes:
        return 0
    if len(codes) == 1:
        return codes.pop()
    return EXIT_CODES[ErrorKind.PARTIAL_FAILURE]


# ---------------------------------------------------------------------------
# Outcomes from provisioning references
# ---------------------------------------------------------------------------


def _provider_outcome(environment: Environment, provider: ProviderRef) -> ResourceOutcome:
    return ResourceOutcome(
        provider_descriptor(environment), provider.action, ResourceState.EXISTS
    )


def _role_outcomes(environment: Environment, roles: Sequence[RoleRef]) -> list[ResourceOutcome]:
    return [
        ResourceOutcome(
            ResourceDescriptor(ResourceType.ROLE, role.name, environment.account, role.arn),
            role.action,
            ResourceState.EXISTS,
        )
        for role in roles
    ]


def _backend_outcomes(
    environment: Environment, settings: Settings, backend: BackendRef
) -> list[ResourceOutcome]:
    account = environment.account
    outcomes: list[ResourceOutcome] = []
    key = key_descriptor(environment, settings)
    table = lock_table_descriptor(environment, settings)
    bucket = bucket_descriptor(environment, settings)
    backend_descriptors = {
        ResourceType.KEY: ResourceDescriptor(key.type, key.name, account, backend.key_arn),
        ResourceType.LOCK_TABLE: table,
        ResourceType.BUCKET: ResourceDescriptor(
            bucket.type, backend.bucket, account, f"arn:aws:s3:::{backend.bucket}"
        ),
    }
    for resource_type, descriptor in backend_descriptors.items():
        action = backend.resource_actions.get(resource_type, backend.action)
        outcomes.append(ResourceOutcome(descriptor, action, ResourceState.EXISTS))
    return outcomes


# ---------------------------------------------------------------------------
# Cancellation via signals
# ---------------------------------------------------------------------------


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT/SIGTERM into the token; main thread only."""

    def _handler(signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        logger.warning("Cancellation requested", signal=name)
        token.cancel(f"received {name}")

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        registry: AccountRegistry,
        *,
        session_factory: SessionFactory = default_session_factory,
        retry_policy: RetryPolicy | None = None,
        cancel: CancellationToken | None = None,
        observers: Sequence[CallObserver] = (),
        owner: str | None = None,
        verify_identity: bool = True,
        teardown_rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=settings.max_attempts)
        self.cancel = cancel or CancellationToken()
        self.observers = list(observers)
        self.owner = owner or default_owner()
        self.verify_identity = verify_identity
        self.teardown_rng = teardown_rng
        self.sessions: dict[str, AccountSession] = {}

    def session_for(self, environment: Environment) -> AccountSession:
        session = open_session(
            environment.account,
            self.session_factory,
            retry_policy=self.retry_policy,
            cancel=self.cancel,
            observers=self.observers,
            verify=self.verify_identity,
        )
        self.sessions[environment.name] = session
        return session

    @contextmanager
    def _locked(self, session: AccountSession, environment: Environment) -> Iterator[None]:
        with held_lock(
            session,
            environment,
            short_name=self.settings.project_short_name,
            owner=self.owner,
            ttl_seconds=self.settings.lock_ttl_seconds,
        ):
            yield

    # ---- single environment -------------------------------------------------

    def bootstrap_environment(
        self,
        environment: Environment,
        *,
        rotate: bool = False,
        result: EnvironmentResult | None = None,
    ) -> EnvironmentResult:
        """Provision identity, roles and backend; ``result`` fills in as phases finish."""
        if result is None:
            result = EnvironmentResult(environment=environment, command="bootstrap")
        session = self.session_for(environment)
        ownership = ownership_for(environment, self.settings)
        with self._locked(session, environment):
            start = len(session.mutations)
            environment.status = EnvironmentStatus.BOOTSTRAPPING
            logger.info(
                "Bootstrapping environment",
                environment=environment.name,
                account_id=environment.account_id,
                region=environment.region,
            )
            try:
                provider = ensure_trust_provider(
                    session, environment, default_provider_spec(), ownership
                )
                result.outcomes.append(_provider_outcome(environment, provider))
                roles = ensure_role_chain(
                    session, environment, provider, self.settings, rotate=rotate
                )
                result.outcomes.extend(_role_outcomes(environment, roles))
                backend = ensure_backend(session, environment, self.settings)
                result.outcomes.extend(_backend_outcomes(environment, self.settings, backend))
            finally:
                result.mutations = list(session.mutations[start:])
        environment.status = EnvironmentStatus.READY
        result.manifest = build_manifest(environment, provider, roles, backend, self.settings)
        result.manifest_path = write_manifest(
            result.manifest, environment, self.settings.output_dir
        )
        logger.info(
            "Environment ready",
            environment=environment.name,
            account_id=environment.account_id,
            mutations=len(result.mutations),
        )
        return result

    def destroy_environment(
        self,
        environment: Environment,
        *,
        dry_run: bool = False,
        force: bool = False,
        result: EnvironmentResult | None = None,
    ) -> EnvironmentResult:
        if environment.protected and not force and not dry_run:
            raise ConfigurationError(
                f"environment {environment.name} is protected; destroy requires --force",
                resource=environment.name,
            )
        if result is None:
            result = EnvironmentResult(environment=environment, command="destroy")
        session = self.session_for(environment)
        if dry_run:
            report = plan_teardown(session, environment, self.settings)
            result.outcomes = report.outcomes
            if not report.ok:
                refused = [outcome for outcome in report.outcomes if not outcome.ok]
                result.error = PartialFailure(
                    f"teardown of {environment.name} would be incomplete; refused: "
                    + ", ".join(outcome.descriptor.label() for outcome in refused),
                    outcomes=report.outcomes,
                )
            return result

        with self._locked(session, environment):
            start = len(session.mutations)
            environment.status = EnvironmentStatus.TEARING_DOWN
            logger.warning(
                "Tearing down environment",
                environment=environment.name,
                account_id=environment.account_id,
            )
            try:
                report = teardown_environment(
                    session, environment, self.settings, rng=self.teardown_rng
                )
            finally:
                result.mutations = list(session.mutations[start:])
        result.outcomes = report.outcomes
        if report.cancelled is not None:
            result.error = report.cancelled
        elif not report.ok:
            remaining = ", ".join(outcome.descriptor.label() for outcome in report.remaining)
            result.error = PartialFailure(
                f"teardown of {environment.name} incomplete; remaining: {remaining or 'none'}",
                outcomes=report.outcomes,
            )
        else:
            environment.status = EnvironmentStatus.UNBOOTSTRAPPED
        return result

    def report_environment(
        self, environment: Environment, *, result: EnvironmentResult | None = None
    ) -> EnvironmentResult:
        """Always probes live; never reads a previous manifest."""
        if result is None:
            result = EnvironmentResult(environment=environment, command="report")
        session = self.session_for(environment)
        state = collect_state(session, environment, self.settings)
        environment.status = state.status
        result.outcomes = [
            ResourceOutcome(
                probe.descriptor,
                action=_REPORT_ACTIONS[probe.status],
                state=ResourceState.ABSENT if probe.absent else ResourceState.EXISTS,
                detail=probe.reason,
            )
            for probe in state.results
        ]
        result.manifest = build_manifest(
            environment,
            state.provider,
            state.roles,
            state.backend,
            self.settings,
            resources=state.results,
        )
        result.manifest_path = write_manifest(
            result.manifest, environment, self.settings.output_dir
        )
        return result

    # ---- many environments --------------------------------------------------

    def _guarded(
        self,
        environment: Environment,
        command: str,
        fn: Callable[[EnvironmentResult], EnvironmentResult],
    ) -> EnvironmentResult:
        """Run one environment; a failure is attached to whatever the run already recorded."""
        result = EnvironmentResult(environment=environment, command=command)
        try:
            return fn(result)
        except BootstrapError as exc:
            logger.error(
                "Environment run failed",
                environment=environment.name,
                account_id=environment.account_id,
                command=command,
                kind=exc.kind.value,
                error=exc.describe(),
                mutations=len(result.mutations),
            )
            result.error = exc
        except Exception as exc:
            logger.exception(
                "Environment run crashed",
                environment=environment.name,
                account_id=environment.account_id,
                command=command,
            )
            result.error = UnexpectedError(
                f"{type(exc).__name__}: {exc}", resource=environment.name
            )
        return result

    def run_all(
        self,
        command: str,
        environments: Sequence[Environment],
        fn: Callable[[Environment, EnvironmentResult], EnvironmentResult],
        *,
        max_workers: int | None = None,
    ) -> list[EnvironmentResult]:
        if not environments:
            return []
        workers = max(1, min(len(environments), max_workers or len(environments)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=SERVICE_NAME) as pool:
            futures = [
                pool.submit(
                    self._guarded,
                    environment,
                    command,
                    lambda result, env=environment: fn(env, result),
                )
                for environment in environments
            ]
            return [future.result() for future in futures]

    def bootstrap(
        self, names: Sequence[str], *, rotate: bool = False, max_workers: int | None = None
    ) -> list[EnvironmentResult]:
        environments = self.registry.select(names)
        return self.run_all(
            "bootstrap",
            environments,
            lambda env, result: self.bootstrap_environment(env, rotate=rotate, result=result),
            max_workers=max_workers,
        )

    def destroy(
        self, names: Sequence[str], *, dry_run: bool = False, force: bool = False
    ) -> list[EnvironmentResult]:
        environments = self.registry.select(names)
        return self.run_all(
            "destroy",
            environments,
            lambda env, result: self.destroy_environment(
                env, dry_run=dry_run, force=force, result=result
            ),
        )

    def report(
        self, names: Sequence[str], *, max_workers: int | None = None
    ) -> list[EnvironmentResult]:
        environments = self.registry.select(names)
        return self.run_all(
            "report",
            environments,
            lambda env, result: self.report_environment(env, result=result),
            max_workers=max_workers,
        )
