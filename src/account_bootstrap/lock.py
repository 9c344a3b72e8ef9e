"""
account_bootstrap.lock — Per-environment advisory lock for bootstrap/destroy.

Lock record:
  SSM parameter  /<short>/bootstrap/<env>/lock
  value          {"lockId", "owner", "acquiredAt", "expiresAt"}

Created with Overwrite=False so only one run wins. An expired lock (the holder
crashed or lost its session) is stolen. Release checks the lock id and refuses
to delete a lock that has since been taken over by another run.

The lock is best effort: probe-before-create in every provisioner remains the
real safety net.
"""

from __future__ import annotations

import json
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from aws_lambda_powertools import Logger

from account_bootstrap import SERVICE_NAME, naming
from account_bootstrap.control_plane import AccountSession
from account_bootstrap.errors import (
    ControlPlaneError,
    ErrorKind,
    LockAlreadyHeldError,
    LockOwnershipError,
)
from account_bootstrap.models import Environment, Ownership

logger = Logger(service=SERVICE_NAME, child=True)

DEFAULT_TTL_SECONDS = 1800


@dataclass(frozen=True)
class LockRecord:
    parameter: str
    lock_id: str
    owner: str
    acquired_at: str
    expires_at: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "lockId": self.lock_id,
                "owner": self.owner,
                "acquiredAt": self.acquired_at,
                "expiresAt": self.expires_at,
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, parameter: str, value: str) -> LockRecord:
        data = json.loads(value)
        return cls(
            parameter=parameter,
            lock_id=str(data.get("lockId", "")),
            owner=str(data.get("owner", "")),
            acquired_at=str(data.get("acquiredAt", "")),
            expires_at=str(data.get("expiresAt", "")),
        )

    def expired(self, now: datetime) -> bool:
        try:
            expires = datetime.fromisoformat(self.expires_at.replace("Z", "+00:00"))
        except ValueError:
            # Unreadable expiry: treat as stale rather than wedging the environment.
            return True
        return expires <= now


def now_utc() -> datetime:
    return datetime.now(UTC)


def iso8601_utc(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def default_owner() -> str:
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    host = socket.gethostname() or "unknown-host"
    return f"{SERVICE_NAME}:{user}@{host}"


def _read(session: AccountSession, parameter: str) -> LockRecord | None:
    try:
        response = session.call("ssm", "get_parameter", Name=parameter, resource=parameter)
    except ControlPlaneError as exc:
        if exc.kind is ErrorKind.NOT_FOUND:
            return None
        raise
    return LockRecord.from_json(parameter, response["Parameter"]["Value"])


def acquire_lock(
    session: AccountSession,
    environment: Environment,
    *,
    short_name: str,
    owner: str,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: datetime | None = None,
) -> LockRecord:
    current_time = now or now_utc()
    parameter = naming.lock_parameter_name(short_name, environment)
    record = LockRecord(
        parameter=parameter,
        lock_id=str(uuid4()),
        owner=owner,
        acquired_at=iso8601_utc(current_time),
        expires_at=iso8601_utc(current_time + timedelta(seconds=ttl_seconds)),
    )
    ownership = Ownership(project=short_name, environment=environment.name)
    try:
        session.call(
            "ssm",
            "put_parameter",
            Name=parameter,
            Value=record.to_json(),
            Type="String",
            Overwrite=False,
            Tags=[{"Key": key, "Value": value} for key, value in ownership.tags().items()],
            resource=parameter,
        )
    except ControlPlaneError as exc:
        if exc.kind is not ErrorKind.ALREADY_EXISTS:
            raise
        return _steal_if_expired(session, record, current_time)
    logger.info(
        "Acquired environment lock",
        environment=environment.name,
        account_id=environment.account_id,
        lock_id=record.lock_id,
        owner=owner,
    )
    return record


def _steal_if_expired(
    session: AccountSession, record: LockRecord, current_time: datetime
) -> LockRecord:
    existing = _read(session, record.parameter)
    if existing is not None and not existing.expired(current_time):
        raise LockAlreadyHeldError(
            f"lock held by {existing.owner} since {existing.acquired_at} "
            f"(expires {existing.expires_at})",
            resource=record.parameter,
        )
    session.call(
        "ssm",
        "put_parameter",
        Name=record.parameter,
        Value=record.to_json(),
        Type="String",
        Overwrite=True,
        resource=record.parameter,
    )
    # Two runs may steal at once; the last writer wins and the other backs off.
    winner = _read(session, record.parameter)
    if winner is None or winner.lock_id != record.lock_id:
        raise LockAlreadyHeldError(
            "lock taken over by a concurrent run while stealing an expired lock",
            resource=record.parameter,
        )
    logger.warning(
        "Stole expired environment lock",
        resource=record.parameter,
        previous_owner=existing.owner if existing else "",
        lock_id=record.lock_id,
    )
    return record


def release_lock(session: AccountSession, record: LockRecord) -> bool:
    """Delete the lock if it is still ours. Returns False when already gone."""
    current = _read(session, record.parameter)
    if current is None:
        return False
    if current.lock_id != record.lock_id:
        raise LockOwnershipError(
            f"lock now held by {current.owner} ({current.lock_id}); refusing to release",
            resource=record.parameter,
        )
    try:
        session.call("ssm", "delete_parameter", Name=record.parameter, resource=record.parameter)
    except ControlPlaneError as exc:
        if exc.kind is ErrorKind.NOT_FOUND:
            return False
        raise
    logger.info("Released environment lock", resource=record.parameter, lock_id=record.lock_id)
    return True


@contextmanager
def held_lock(
    session: AccountSession,
    environment: Environment,
    *,
    short_name: str,
    owner: str,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
) -> Iterator[LockRecord]:
    record = acquire_lock(
        session,
        environment,
        short_name=short_name,
        owner=owner,
        ttl_seconds=ttl_seconds,
    )
    try:
        yield record
    finally:
        try:
            release_lock(session, record)
        except LockOwnershipError:
            logger.warning(
                "Lock expired and was taken over before release",
                resource=record.parameter,
                lock_id=record.lock_id,
            )
