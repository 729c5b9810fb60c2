"""Versioned state storage with lease-based locking.

The state store persists the last successfully applied attributes and
provider-assigned identifiers of every resource in a scope (usually one
scope per environment).

DESIGN:
- Snapshots are versioned. save() is conditional on the caller holding the
  scope lock and on the snapshot's base version matching the stored version
  (optimistic concurrency). Anything else is a ConflictError.
- Locks are leases. A holder that crashes without releasing loses the lock
  once the lease expires, trading safety for liveness under partial failure.
- Saved versions are kept as history so a scope can be rolled back to an
  earlier snapshot (the rollback itself is a new, locked, versioned save).
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .models import ResourceAddress

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
LOCK_FILENAME = "lock.json"
HISTORY_DIRNAME = "history"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class StateError(Exception):
    """Base class for state store failures."""

    pass


class StateNotFound(StateError):
    """Raised when no snapshot has ever been saved for a scope."""

    pass


class ConflictError(StateError):
    """Raised when a save races with a concurrent modification.

    The caller must retry the whole plan-and-apply cycle.
    """

    pass


class LockNotHeld(ConflictError):
    """Raised when saving or releasing with a lock the caller no longer holds."""

    pass


class AlreadyLocked(StateError):
    """Raised when another holder has an unexpired lock on the scope."""

    def __init__(self, scope: str, holder: str, expires_at: datetime) -> None:
        self.scope = scope
        self.holder = holder
        self.expires_at = expires_at
        super().__init__(
            f"Scope '{scope}' is locked by '{holder}' until {expires_at.isoformat()}"
        )


# =============================================================================
# Models
# =============================================================================


class StateRecord(BaseModel):
    """Last successfully applied state of one resource."""

    kind: str
    name: str
    id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    # Used to order deletes once the resource has left the configuration
    dependencies: list[ResourceAddress] = Field(default_factory=list)
    applied_at: datetime = Field(default_factory=utc_now)

    @property
    def address(self) -> ResourceAddress:
        return ResourceAddress(self.kind, self.name)

    def values(self) -> dict[str, Any]:
        """Everything another resource may reference: inputs, outputs and id."""
        return {**self.attributes, **self.outputs, "id": self.id}


class StateSnapshot(BaseModel):
    """All state records of a scope at one version.

    `version` is the stored version this snapshot was loaded at (its base
    version); a successful save returns a copy at version + 1.
    """

    scope: str
    version: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    updated_at: datetime | None = None
    records: dict[str, StateRecord] = Field(default_factory=dict)

    @classmethod
    def empty(cls, scope: str) -> StateSnapshot:
        return cls(scope=scope)

    def __contains__(self, address: object) -> bool:
        return str(address) in self.records

    def __len__(self) -> int:
        return len(self.records)

    def get(self, address: ResourceAddress) -> StateRecord | None:
        return self.records.get(str(address))

    def addresses(self) -> list[ResourceAddress]:
        return sorted(record.address for record in self.records.values())

    def put(self, record: StateRecord) -> None:
        self.records[str(record.address)] = record

    def remove(self, address: ResourceAddress) -> None:
        self.records.pop(str(address), None)

    def dependents_of(self, address: ResourceAddress) -> list[ResourceAddress]:
        """Stored records that list the given address as a dependency."""
        return sorted(
            record.address
            for record in self.records.values()
            if address in record.dependencies
        )


class LockHandle(BaseModel):
    """Exclusive lease over a scope."""

    model_config = {"frozen": True}

    scope: str
    token: str
    holder: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# =============================================================================
# Store interface
# =============================================================================


class StateStore(ABC):
    """Persistence for state snapshots and scope locks."""

    @abstractmethod
    def load(self, scope: str) -> StateSnapshot:
        """Load the current snapshot.

        Raises:
            StateNotFound: If nothing has been saved for the scope.
        """

    @abstractmethod
    def save(self, scope: str, snapshot: StateSnapshot, lock: LockHandle) -> StateSnapshot:
        """Persist a snapshot and return it at its new version.

        Raises:
            LockNotHeld: If the lock is expired or was taken over.
            ConflictError: If the stored version differs from snapshot.version.
        """

    @abstractmethod
    def acquire_lock(self, scope: str, lease_seconds: int, holder: str) -> LockHandle:
        """Take the scope lock.

        Raises:
            AlreadyLocked: If another unexpired lease exists.
        """

    @abstractmethod
    def renew_lock(self, lock: LockHandle, lease_seconds: int) -> LockHandle:
        """Extend a held lease.

        Raises:
            LockNotHeld: If the lease expired or was taken over.
        """

    @abstractmethod
    def release_lock(self, lock: LockHandle) -> None:
        """Release a lock. Releasing an expired or taken-over lock is a no-op."""

    @abstractmethod
    def list_versions(self, scope: str) -> list[int]:
        """Saved versions still available for rollback, oldest first."""

    @abstractmethod
    def load_version(self, scope: str, version: int) -> StateSnapshot:
        """Load a historical snapshot.

        Raises:
            StateNotFound: If the version is not in history.
        """

    def rollback(self, scope: str, version: int, lock: LockHandle) -> StateSnapshot:
        """Restore a historical snapshot as the newest version."""
        previous = self.load_version(scope, version)
        try:
            current_version = self.load(scope).version
        except StateNotFound:
            current_version = 0
        restored = previous.model_copy(update={"version": current_version}, deep=True)
        saved = self.save(scope, restored, lock)
        logger.warning(
            "State rolled back",
            extra={"scope": scope, "restored_version": version, "new_version": saved.version},
        )
        return saved

    def load_or_empty(self, scope: str) -> StateSnapshot:
        try:
            return self.load(scope)
        except StateNotFound:
            logger.info("No stored state, starting empty", extra={"scope": scope})
            return StateSnapshot.empty(scope)


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryStateStore(StateStore):
    """Process-local store, safe for use from several threads."""

    def __init__(self, history: int = 10, clock: Clock = utc_now) -> None:
        self._history_limit = history
        self._clock = clock
        self._mutex = threading.Lock()
        self._snapshots: dict[str, StateSnapshot] = {}
        self._history: dict[str, dict[int, StateSnapshot]] = {}
        self._locks: dict[str, LockHandle] = {}

    def load(self, scope: str) -> StateSnapshot:
        with self._mutex:
            snapshot = self._snapshots.get(scope)
            if snapshot is None:
                raise StateNotFound(f"No state stored for scope '{scope}'")
            return snapshot.model_copy(deep=True)

    def save(self, scope: str, snapshot: StateSnapshot, lock: LockHandle) -> StateSnapshot:
        with self._mutex:
            self._check_lock(scope, lock)
            current = self._snapshots.get(scope)
            stored_version = current.version if current else 0
            if snapshot.version != stored_version:
                raise ConflictError(
                    f"State for scope '{scope}' is at version {stored_version}, "
                    f"snapshot is based on version {snapshot.version}"
                )
            saved = snapshot.model_copy(
                update={"scope": scope, "version": stored_version + 1, "updated_at": self._clock()},
                deep=True,
            )
            self._snapshots[scope] = saved
            if self._history_limit:
                history = self._history.setdefault(scope, {})
                history[saved.version] = saved
                for old in sorted(history)[: -self._history_limit]:
                    del history[old]
            return saved.model_copy(deep=True)

    def acquire_lock(self, scope: str, lease_seconds: int, holder: str) -> LockHandle:
        with self._mutex:
            now = self._clock()
            existing = self._locks.get(scope)
            if existing is not None and not existing.is_expired(now):
                raise AlreadyLocked(scope, existing.holder, existing.expires_at)
            if existing is not None:
                logger.warning(
                    "Taking over expired lock",
                    extra={"scope": scope, "previous_holder": existing.holder},
                )
            handle = _new_handle(scope, holder, now, lease_seconds)
            self._locks[scope] = handle
            return handle

    def renew_lock(self, lock: LockHandle, lease_seconds: int) -> LockHandle:
        with self._mutex:
            self._check_lock(lock.scope, lock)
            renewed = lock.model_copy(
                update={"expires_at": self._clock() + timedelta(seconds=lease_seconds)}
            )
            self._locks[lock.scope] = renewed
            return renewed

    def release_lock(self, lock: LockHandle) -> None:
        with self._mutex:
            existing = self._locks.get(lock.scope)
            if existing is not None and existing.token == lock.token:
                del self._locks[lock.scope]

    def list_versions(self, scope: str) -> list[int]:
        with self._mutex:
            return sorted(self._history.get(scope, {}))

    def load_version(self, scope: str, version: int) -> StateSnapshot:
        with self._mutex:
            snapshot = self._history.get(scope, {}).get(version)
            if snapshot is None:
                raise StateNotFound(f"Version {version} of scope '{scope}' is not in history")
            return snapshot.model_copy(deep=True)

    def _check_lock(self, scope: str, lock: LockHandle) -> None:
        existing = self._locks.get(scope)
        if existing is None or existing.token != lock.token:
            raise LockNotHeld(f"Lock on scope '{scope}' is not held by '{lock.holder}'")
        if existing.is_expired(self._clock()):
            raise LockNotHeld(f"Lock on scope '{scope}' held by '{lock.holder}' has expired")


# =============================================================================
# Local filesystem store
# =============================================================================


class LocalStateStore(StateStore):
    """JSON files under a state directory, one subdirectory per scope.

    Layout:
        <root>/<scope>/state.json             current snapshot
        <root>/<scope>/lock.json              current lease
        <root>/<scope>/history/<version>.json saved versions

    All writes go through a temporary file and os.replace() so a crash never
    leaves a truncated snapshot behind.
    """

    def __init__(self, root: Path, history: int = 10, clock: Clock = utc_now) -> None:
        self._root = root
        self._history_limit = history
        self._clock = clock
        self._mutex = threading.Lock()

    def _scope_dir(self, scope: str) -> Path:
        return self._root / scope

    def load(self, scope: str) -> StateSnapshot:
        path = self._scope_dir(scope) / STATE_FILENAME
        if not path.exists():
            raise StateNotFound(f"No state stored for scope '{scope}' at {path}")
        return self._read_snapshot(path)

    def save(self, scope: str, snapshot: StateSnapshot, lock: LockHandle) -> StateSnapshot:
        with self._mutex:
            self._check_lock(scope, lock)
            path = self._scope_dir(scope) / STATE_FILENAME
            stored_version = self._read_snapshot(path).version if path.exists() else 0
            if snapshot.version != stored_version:
                raise ConflictError(
                    f"State for scope '{scope}' is at version {stored_version}, "
                    f"snapshot is based on version {snapshot.version}"
                )
            saved = snapshot.model_copy(
                update={"scope": scope, "version": stored_version + 1, "updated_at": self._clock()},
                deep=True,
            )
            content = saved.model_dump_json(indent=2)
            _atomic_write(path, content)
            if self._history_limit:
                history_dir = self._scope_dir(scope) / HISTORY_DIRNAME
                _atomic_write(history_dir / f"{saved.version:08d}.json", content)
                self._prune_history(history_dir)
            logger.debug(
                "Saved state",
                extra={"scope": scope, "version": saved.version, "records": len(saved)},
            )
            return saved

    def acquire_lock(self, scope: str, lease_seconds: int, holder: str) -> LockHandle:
        with self._mutex:
            path = self._scope_dir(scope) / LOCK_FILENAME
            path.parent.mkdir(parents=True, exist_ok=True)
            now = self._clock()
            handle = _new_handle(scope, holder, now, lease_seconds)
            content = handle.model_dump_json(indent=2)

            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                existing = self._read_lock(path)
                if existing is not None and not existing.is_expired(now):
                    raise AlreadyLocked(scope, existing.holder, existing.expires_at) from None
                logger.warning(
                    "Taking over expired lock",
                    extra={
                        "scope": scope,
                        "previous_holder": existing.holder if existing else None,
                    },
                )
                _atomic_write(path, content)
                # Another process may have taken over the same expired lease
                confirmed = self._read_lock(path)
                if confirmed is None or confirmed.token != handle.token:
                    holder_name = confirmed.holder if confirmed else "unknown"
                    expires = confirmed.expires_at if confirmed else now
                    raise AlreadyLocked(scope, holder_name, expires) from None
                return handle

            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            return handle

    def renew_lock(self, lock: LockHandle, lease_seconds: int) -> LockHandle:
        with self._mutex:
            self._check_lock(lock.scope, lock)
            renewed = lock.model_copy(
                update={"expires_at": self._clock() + timedelta(seconds=lease_seconds)}
            )
            _atomic_write(
                self._scope_dir(lock.scope) / LOCK_FILENAME, renewed.model_dump_json(indent=2)
            )
            return renewed

    def release_lock(self, lock: LockHandle) -> None:
        with self._mutex:
            path = self._scope_dir(lock.scope) / LOCK_FILENAME
            existing = self._read_lock(path)
            if existing is None or existing.token != lock.token:
                logger.warning(
                    "Lock no longer held at release",
                    extra={"scope": lock.scope, "holder": lock.holder},
                )
                return
            path.unlink(missing_ok=True)

    def list_versions(self, scope: str) -> list[int]:
        history_dir = self._scope_dir(scope) / HISTORY_DIRNAME
        if not history_dir.exists():
            return []
        return sorted(int(p.stem) for p in history_dir.glob("*.json") if p.stem.isdigit())

    def load_version(self, scope: str, version: int) -> StateSnapshot:
        path = self._scope_dir(scope) / HISTORY_DIRNAME / f"{version:08d}.json"
        if not path.exists():
            raise StateNotFound(f"Version {version} of scope '{scope}' is not in history")
        return self._read_snapshot(path)

    def _prune_history(self, history_dir: Path) -> None:
        files = sorted(p for p in history_dir.glob("*.json") if p.stem.isdigit())
        for old in files[: -self._history_limit]:
            old.unlink(missing_ok=True)

    def _check_lock(self, scope: str, lock: LockHandle) -> None:
        existing = self._read_lock(self._scope_dir(scope) / LOCK_FILENAME)
        if existing is None or existing.token != lock.token:
            raise LockNotHeld(f"Lock on scope '{scope}' is not held by '{lock.holder}'")
        if existing.is_expired(self._clock()):
            raise LockNotHeld(f"Lock on scope '{scope}' held by '{lock.holder}' has expired")

    @staticmethod
    def _read_snapshot(path: Path) -> StateSnapshot:
        try:
            return StateSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateError(f"Failed to read state file {path}: {e}") from e
        except ValidationError as e:
            raise StateError(f"Corrupt state file {path}: {e}") from e

    @staticmethod
    def _read_lock(path: Path) -> LockHandle | None:
        try:
            return LockHandle.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError, json.JSONDecodeError) as e:
            # An unreadable lock file is treated as expired so it can be taken over
            logger.warning("Unreadable lock file", extra={"path": str(path), "error": str(e)})
            return None


def _new_handle(scope: str, holder: str, now: datetime, lease_seconds: int) -> LockHandle:
    return LockHandle(
        scope=scope,
        token=secrets.token_urlsafe(16),
        holder=holder,
        acquired_at=now,
        expires_at=now + timedelta(seconds=lease_seconds),
    )


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    finally:
        tmp.unlink(missing_ok=True)
