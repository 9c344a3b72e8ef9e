"""
account_bootstrap.control_plane — Account-scoped AWS call wrapper.

Every control-plane call made by the provisioners goes through an
AccountSession bound to exactly one {account_id, region}. The session:

  - classifies botocore failures into a typed ControlPlaneError (ErrorKind),
  - applies the retry policy (transient + dependency-not-ready only),
  - refuses any call whose ARN parameters name a different account,
  - journals every mutating call (used to prove idempotence),
  - notifies observers before each call (used by ordering tests),
  - checks the cancellation token at resource-operation boundaries.

There is no ambient "current account": sessions are built from an explicit
AccountRef by a SessionFactory.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    ParamValidationError,
    WaiterError,
)

from account_bootstrap import SERVICE_NAME
from account_bootstrap.errors import (
    ControlPlaneError,
    ErrorKind,
    IsolationViolation,
    OperationCancelled,
)
from account_bootstrap.models import AccountRef, MutationRecord
from account_bootstrap.retry import RetryPolicy

logger = Logger(service=SERVICE_NAME, child=True)

# ---------------------------------------------------------------------------
# Error classification — botocore error codes -> ErrorKind
# ---------------------------------------------------------------------------

_TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestThrottled",
        "RequestThrottledException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ProvisionedThroughputExceededException",
        "SlowDown",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "ServiceFailure",
        "InternalError",
        "InternalFailure",
        "InternalServerError",
        "KMSInternalException",
        "DependencyTimeoutException",
        "RequestTimeout",
        "RequestTimeoutException",
        "PriorRequestNotComplete",
    }
)
_DEPENDENCY_CODES = frozenset(
    {
        "DeleteConflict",
        "ConcurrentModification",
        "ConcurrentModificationException",
        "OperationAborted",
        "ResourceInUseException",
        "BucketNotEmpty",
        "DependencyViolation",
    }
)
_NOT_FOUND_CODES = frozenset(
    {
        "404",
        "NotFound",
        "NoSuchEntity",
        "NoSuchBucket",
        "NoSuchKey",
        "NoSuchTagSet",
        "NoSuchTagSetError",
        "NoSuchPublicAccessBlockConfiguration",
        "ServerSideEncryptionConfigurationNotFoundError",
        "ResourceNotFoundException",
        "NotFoundException",
        "ParameterNotFound",
    }
)
_ALREADY_EXISTS_CODES = frozenset(
    {
        "EntityAlreadyExists",
        "BucketAlreadyOwnedByYou",
        "AlreadyExistsException",
        "ParameterAlreadyExists",
        "TableAlreadyExistsException",
    }
)
_CONFLICTING_CODES = frozenset({"BucketAlreadyExists", "KMSInvalidStateException"})
_ACCESS_DENIED_CODES = frozenset(
    {
        "403",
        "Forbidden",
        "AccessDenied",
        "AccessDeniedException",
        "AuthorizationError",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
        "InvalidClientTokenId",
        "ExpiredToken",
        "ExpiredTokenException",
        "SignatureDoesNotMatch",
    }
)
_VALIDATION_CODES = frozenset(
    {
        "ValidationError",
        "ValidationException",
        "MalformedPolicyDocument",
        "InvalidInput",
        "InvalidRequest",
        "InvalidArgument",
        "InvalidParameterValue",
        "InvalidParameterException",
        "InvalidBucketName",
        "MalformedXML",
        "IllegalLocationConstraintException",
        "LimitExceeded",
        "NotImplemented",
    }
)

_CODE_KINDS: tuple[tuple[frozenset[str], ErrorKind], ...] = (
    (_TRANSIENT_CODES, ErrorKind.TRANSIENT),
    (_DEPENDENCY_CODES, ErrorKind.DEPENDENCY_NOT_READY),
    (_NOT_FOUND_CODES, ErrorKind.NOT_FOUND),
    (_ALREADY_EXISTS_CODES, ErrorKind.ALREADY_EXISTS),
    (_CONFLICTING_CODES, ErrorKind.CONFLICTING),
    (_ACCESS_DENIED_CODES, ErrorKind.ACCESS_DENIED),
    (_VALIDATION_CODES, ErrorKind.VALIDATION),
)

_MUTATING_PREFIXES = (
    "abort_",
    "add_",
    "attach_",
    "cancel_",
    "create_",
    "delete_",
    "detach_",
    "disable_",
    "enable_",
    "put_",
    "remove_",
    "schedule_",
    "tag_",
    "untag_",
    "update_",
)

_ARN_ACCOUNT_RE = re.compile(r"^arn:aws[\w-]*:[\w-]+:[\w-]*:(\d{12}):")


def error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def classify_client_error(error: ClientError) -> ErrorKind:
    code = error_code(error)
    for codes, kind in _CODE_KINDS:
        if code in codes:
            return kind
    status = int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
    if status == 429 or status >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.UNKNOWN


def classify_exception(exc: Exception) -> tuple[ErrorKind, str, str]:
    """Return (kind, code, message) for any botocore failure."""
    if isinstance(exc, ClientError):
        message = str(exc.response.get("Error", {}).get("Message", "")) or str(exc)
        return classify_client_error(exc), error_code(exc) or "Unknown", message
    if isinstance(exc, NoCredentialsError):
        return ErrorKind.ACCESS_DENIED, type(exc).__name__, str(exc)
    if isinstance(exc, ParamValidationError):
        return ErrorKind.VALIDATION, type(exc).__name__, str(exc)
    if isinstance(exc, BotoConnectionError | HTTPClientError):
        return ErrorKind.TRANSIENT, type(exc).__name__, str(exc)
    return ErrorKind.UNKNOWN, type(exc).__name__, str(exc)


def is_mutating(operation: str) -> bool:
    return operation.startswith(_MUTATING_PREFIXES)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Cooperative cancellation shared by every environment worker.

    Checked before each resource operation; an atomic unit that has already
    started runs to completion (or full rollback) regardless.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancellation requested") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str) -> None:
        if self.cancelled:
            raise OperationCancelled(f"{self.reason}; stopped before {where}", resource=where)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallEvent:
    account: AccountRef
    service: str
    operation: str
    params: Mapping[str, Any]


CallObserver = Callable[[CallEvent], None]
SessionFactory = Callable[[AccountRef], boto3.Session]


class AccountSession:
    """All control-plane access for one account, and nothing else."""

    def __init__(
        self,
        account: AccountRef,
        boto_session: boto3.Session,
        *,
        retry_policy: RetryPolicy | None = None,
        cancel: CancellationToken | None = None,
        observers: Sequence[CallObserver] = (),
    ) -> None:
        self.account = account
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel = cancel or CancellationToken()
        self.mutations: list[MutationRecord] = []
        self._boto_session = boto_session
        self._observers: list[CallObserver] = list(observers)
        self._clients: dict[str, Any] = {}
        self._lock = threading.Lock()

    def add_observer(self, observer: CallObserver) -> None:
        self._observers.append(observer)

    def client(self, service: str) -> Any:
        with self._lock:
            if service not in self._clients:
                self._clients[service] = self._boto_session.client(
                    service, region_name=self.account.region
                )
            return self._clients[service]

    def checkpoint(self, where: str) -> None:
        """Cancellation point; call only between resource operations."""
        self.cancel.raise_if_cancelled(where)

    def _guard(self, service: str, operation: str, params: Mapping[str, Any]) -> None:
        for key, value in params.items():
            if not isinstance(value, str):
                continue
            match = _ARN_ACCOUNT_RE.match(value)
            if match and match.group(1) != self.account.account_id:
                logger.error(
                    "Refusing cross-account call",
                    account_id=self.account.account_id,
                    action=f"{service}:{operation}",
                    target=value,
                    parameter=key,
                )
                raise IsolationViolation(
                    f"{service}:{operation} targets account {match.group(1)} from a session "
                    f"bound to {self.account.account_id}",
                    resource=value,
                )

    def _api_name(self, service: str, operation: str) -> str:
        mapping = getattr(self.client(service).meta, "method_to_api_mapping", {})
        return f"{service}:{mapping.get(operation, operation)}"

    def _run(
        self,
        service: str,
        operation: str,
        resource: str,
        params: Mapping[str, Any],
        fn: Callable[[], Any],
    ) -> Any:
        self._guard(service, operation, params)
        event = CallEvent(self.account, service, operation, params)
        for observer in self._observers:
            observer(event)
        if is_mutating(operation):
            self.mutations.append(MutationRecord(service, operation, resource))

        action = self._api_name(service, operation)

        def _attempt() -> Any:
            try:
                return fn()
            except (ClientError, BotoCoreError) as exc:
                kind, code, message = classify_exception(exc)
                raise ControlPlaneError(
                    kind=kind, action=action, resource=resource, code=code, message=message
                ) from exc

        return self.retry_policy.run(_attempt, action=action, resource=resource)

    def call(self, service: str, operation: str, *, resource: str = "", **params: Any) -> Any:
        """Invoke ``client(service).<operation>(**params)`` with classification and retry."""
        method = getattr(self.client(service), operation)
        return self._run(service, operation, resource, params, lambda: method(**params))

    def paginate(
        self,
        service: str,
        operation: str,
        result_key: str,
        *,
        resource: str = "",
        **params: Any,
    ) -> list[Any]:
        """Collect every item under ``result_key`` across all pages.

        A retry restarts the listing from the first page; only read operations
        are paginated.
        """
        client = self.client(service)
        if not client.can_paginate(operation):
            method = getattr(client, operation)
            return self._run(
                service,
                operation,
                resource,
                params,
                lambda: list(method(**params).get(result_key, [])),
            )
        paginator = client.get_paginator(operation)

        def _collect() -> list[Any]:
            items: list[Any] = []
            for page in paginator.paginate(**params):
                items.extend(page.get(result_key, []))
            return items

        return self._run(service, operation, resource, params, _collect)

    def wait(
        self,
        service: str,
        waiter_name: str,
        *,
        resource: str,
        max_attempts: int = 40,
        **params: Any,
    ) -> None:
        """Block on a botocore waiter; a timeout is ``dependency_not_ready``."""
        self._guard(service, waiter_name, params)
        waiter = self.client(service).get_waiter(waiter_name)
        try:
            waiter.wait(
                **params,
                WaiterConfig={"Delay": self.retry_policy.poll_delay, "MaxAttempts": max_attempts},
            )
        except WaiterError as exc:
            raise ControlPlaneError(
                kind=ErrorKind.DEPENDENCY_NOT_READY,
                action=f"{service}:wait:{waiter_name}",
                resource=resource,
                code="WaiterTimeout",
                message=str(exc),
            ) from exc

    def verify_identity(self) -> str:
        """Confirm the credentials really belong to this account; return the caller ARN."""
        identity = self.call("sts", "get_caller_identity", resource=self.account.account_id)
        actual = str(identity.get("Account", ""))
        if actual != self.account.account_id:
            raise IsolationViolation(
                f"credentials resolve to account {actual}, expected {self.account.account_id}",
                resource=str(identity.get("Arn", "")),
            )
        return str(identity.get("Arn", ""))


# ---------------------------------------------------------------------------
# Session factories
# ---------------------------------------------------------------------------


class AssumeRoleSessionFactory:
    """Build per-account sessions by assuming the organization access role."""

    def __init__(
        self,
        *,
        role_name: str,
        base_session: boto3.Session | None = None,
        session_name: str = SERVICE_NAME,
        duration_seconds: int = 3600,
    ) -> None:
        self._role_name = role_name
        self._base_session = base_session or boto3.Session()
        self._session_name = session_name
        self._duration_seconds = duration_seconds

    def __call__(self, account: AccountRef) -> boto3.Session:
        role_arn = account.iam_arn(f"role/{self._role_name}")
        sts = self._base_session.client("sts", region_name=account.region)
        try:
            credentials = sts.assume_role(
                RoleArn=role_arn,
                RoleSessionName=self._session_name,
                DurationSeconds=self._duration_seconds,
            )["Credentials"]
        except (ClientError, BotoCoreError) as exc:
            kind, code, message = classify_exception(exc)
            raise ControlPlaneError(
                kind=kind, action="sts:AssumeRole", resource=role_arn, code=code, message=message
            ) from exc
        logger.info("Assumed access role", account_id=account.account_id, role_arn=role_arn)
        return boto3.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=account.region,
        )


def default_session_factory(account: AccountRef) -> boto3.Session:
    """Use ambient credentials as-is; only valid for single-account runs."""
    return boto3.Session(region_name=account.region)


def open_session(
    account: AccountRef,
    factory: SessionFactory,
    *,
    retry_policy: RetryPolicy | None = None,
    cancel: CancellationToken | None = None,
    observers: Sequence[CallObserver] = (),
    verify: bool = True,
) -> AccountSession:
    session = AccountSession(
        account,
        factory(account),
        retry_policy=retry_policy,
        cancel=cancel,
        observers=observers,
    )
    if verify:
        session.verify_identity()
    return session
