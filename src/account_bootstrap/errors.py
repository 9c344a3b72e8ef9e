"""
account_bootstrap.errors — Typed error taxonomy for control-plane operations.

Every wrapped control-plane call either returns its response or raises a
ControlPlaneError whose ``kind`` drives retry, rollback and exit-code decisions.
Nothing downstream inspects error text.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from account_bootstrap.models import ResourceOutcome


class ErrorKind(StrEnum):
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    CONFLICTING = "conflicting"
    ACCESS_DENIED = "access_denied"
    TRANSIENT = "transient_unavailable"
    DEPENDENCY_NOT_READY = "dependency_not_ready"
    VALIDATION = "validation"
    PARTIAL_FAILURE = "partial_failure"
    CONFIGURATION = "configuration"
    CANCELLED = "cancelled"
    LOCK_HELD = "lock_held"
    UNKNOWN = "unknown"


RETRY_SAFE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.TRANSIENT, ErrorKind.DEPENDENCY_NOT_READY, ErrorKind.LOCK_HELD, ErrorKind.CANCELLED}
)

EXIT_CODES: dict[ErrorKind, int] = {
    ErrorKind.UNKNOWN: 1,
    ErrorKind.CONFIGURATION: 2,
    ErrorKind.CONFLICTING: 3,
    ErrorKind.ALREADY_EXISTS: 3,
    ErrorKind.ACCESS_DENIED: 4,
    ErrorKind.TRANSIENT: 5,
    ErrorKind.DEPENDENCY_NOT_READY: 6,
    ErrorKind.NOT_FOUND: 6,
    ErrorKind.PARTIAL_FAILURE: 7,
    ErrorKind.LOCK_HELD: 8,
    ErrorKind.CANCELLED: 9,
    ErrorKind.VALIDATION: 10,
}


class BootstrapError(Exception):
    """Base class for every orchestrator failure.

    Attributes:
        kind:      Classified error kind.
        resource:  Resource name or ARN the failure relates to (may be empty).
        secondary: Errors raised by compensating actions attempted after this one.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        resource: str = "",
        secondary: Sequence[BootstrapError] = (),
    ) -> None:
        super().__init__(message)
        self.message = message
        self.resource = resource
        self.secondary: list[BootstrapError] = list(secondary)

    @property
    def retry_safe(self) -> bool:
        return self.kind in RETRY_SAFE_KINDS

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.kind, 1)

    def describe(self) -> str:
        """Operator-facing one-liner: what failed, where, and whether to retry."""
        target = f" [{self.resource}]" if self.resource else ""
        retry = "retry is safe" if self.retry_safe else "do not retry without operator action"
        text = f"{self.kind.value}{target}: {self.message} ({retry})"
        for error in self.secondary:
            text += f"; secondary: {error.describe()}"
        return text

    def to_dict(self) -> dict[str, object]:
        return {
            "errorKind": self.kind.value,
            "errorType": self.__class__.__name__,
            "errorMessage": self.message,
            "resource": self.resource,
            "retrySafe": self.retry_safe,
            "secondary": [error.to_dict() for error in self.secondary],
        }


class ControlPlaneError(BootstrapError):
    """Raised by the control-plane wrapper for a failed AWS API call."""

    def __init__(
        self,
        *,
        kind: ErrorKind,
        action: str,
        resource: str,
        code: str,
        message: str,
    ) -> None:
        super().__init__(f"{action} failed with {code}: {message}", resource=resource)
        self.kind = kind
        self.action = action
        self.code = code
        self.aws_message = message

    def to_dict(self) -> dict[str, object]:
        data = super().to_dict()
        data["action"] = self.action
        data["code"] = self.code
        return data


class ConfigurationError(BootstrapError):
    """Required input missing or malformed; raised before any mutating call."""

    kind = ErrorKind.CONFIGURATION


class ManualInterventionRequired(BootstrapError):
    """A resource exists without this orchestrator's ownership marker."""

    kind = ErrorKind.CONFLICTING


class ExternalTokenMismatch(BootstrapError):
    """A live trust policy carries a different external id than configured."""

    kind = ErrorKind.CONFLICTING


class IsolationViolation(BootstrapError):
    """A call targeted a resource outside the session's own account."""

    kind = ErrorKind.ACCESS_DENIED


class OperationCancelled(BootstrapError):
    """Cancellation was requested before the next resource operation started."""

    kind = ErrorKind.CANCELLED


class LockAlreadyHeldError(BootstrapError):
    """Another bootstrap or destroy run holds the environment's advisory lock."""

    kind = ErrorKind.LOCK_HELD


class LockOwnershipError(BootstrapError):
    """Release refused because the lock is now held under another lock id."""

    kind = ErrorKind.LOCK_HELD


class PartialFailure(BootstrapError):
    """Some independent resources succeeded while others failed."""

    kind = ErrorKind.PARTIAL_FAILURE

    def __init__(self, message: str, *, outcomes: Sequence[ResourceOutcome]) -> None:
        super().__init__(message)
        self.outcomes = list(outcomes)

    def describe(self) -> str:
        failed = [outcome for outcome in self.outcomes if not outcome.ok]
        lines = [super().describe()]
        lines.extend(f"  - {outcome.summary()}" for outcome in failed)
        return "\n".join(lines)
