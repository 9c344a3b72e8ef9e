"""
account_bootstrap.retry — Bounded exponential backoff keyed on error kind.

Only ``transient_unavailable`` and ``dependency_not_ready`` are retried;
access-denied, validation, conflicting and not-found errors surface on the
first attempt. Each kind has its own attempt budget.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from aws_lambda_powertools import Logger
from tenacity import RetryCallState, Retrying, retry_if_exception, wait_exponential

from account_bootstrap import SERVICE_NAME
from account_bootstrap.errors import ControlPlaneError, ErrorKind

logger = Logger(service=SERVICE_NAME, child=True)

T = TypeVar("T")

DEFAULT_TRANSIENT_ATTEMPTS = 5
DEFAULT_DEPENDENCY_ATTEMPTS = 3

_RETRIED_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.DEPENDENCY_NOT_READY})


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ControlPlaneError) and exc.kind in _RETRIED_KINDS


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budgets and backoff shape for control-plane calls.

    Attributes:
        max_attempts:        Total attempts for transient/throttling errors.
        dependency_attempts: Total attempts for dependency-not-ready errors.
        initial_wait:        First backoff interval in seconds (doubles each attempt).
        max_wait:            Upper bound for a single backoff interval.
        poll_delay:          Interval between waiter polls (table active/deleted).
        sleep:               Injected for tests.
    """

    max_attempts: int = DEFAULT_TRANSIENT_ATTEMPTS
    dependency_attempts: int = DEFAULT_DEPENDENCY_ATTEMPTS
    initial_wait: float = 0.5
    max_wait: float = 20.0
    poll_delay: int = 5
    sleep: Callable[[float], None] = time.sleep

    def attempts_for(self, kind: ErrorKind) -> int:
        if kind is ErrorKind.TRANSIENT:
            return self.max_attempts
        if kind is ErrorKind.DEPENDENCY_NOT_READY:
            return min(self.dependency_attempts, self.max_attempts)
        return 1

    def _should_stop(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if not isinstance(exc, ControlPlaneError):
            return True
        return retry_state.attempt_number >= self.attempts_for(exc.kind)

    def run(self, fn: Callable[[], T], *, action: str, resource: str = "") -> T:
        """Call ``fn`` until it succeeds, a non-retryable error occurs, or the budget runs out."""

        def _log_retry(retry_state: RetryCallState) -> None:
            outcome = retry_state.outcome
            exc = outcome.exception() if outcome is not None else None
            logger.warning(
                "Retrying control-plane call",
                action=action,
                resource=resource,
                attempt=retry_state.attempt_number,
                kind=getattr(exc, "kind", "unknown"),
                code=getattr(exc, "code", ""),
                next_wait_seconds=retry_state.next_action.sleep if retry_state.next_action else 0,
            )

        retrying = Retrying(
            stop=self._should_stop,
            wait=wait_exponential(multiplier=self.initial_wait, max=self.max_wait),
            retry=retry_if_exception(is_retryable),
            before_sleep=_log_retry,
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(fn)


def no_wait_policy(max_attempts: int = DEFAULT_TRANSIENT_ATTEMPTS) -> RetryPolicy:
    """Policy with the production attempt budgets but no sleeping."""
    return RetryPolicy(max_attempts=max_attempts, poll_delay=1, sleep=lambda _seconds: None)
