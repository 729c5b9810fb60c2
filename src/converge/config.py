"""Configuration management with validation.

All limits are enforced at configuration load time so that a bad
environment fails before any lock is taken or any provider is called.
"""

from __future__ import annotations

import os
import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ReconciliationMode(str, Enum):
    """What a reconciliation cycle is allowed to do with a computed plan."""

    OBSERVE = "observe"  # Plan and report, never apply
    ENFORCE = "enforce"  # Plan and apply
    PROTECT = "protect"  # Plan; any pending change is a violation


class FailurePolicy(str, Enum):
    """How the executor reacts to a per-resource failure."""

    FAIL_FAST = "fail_fast"  # Stop scheduling anything new
    BEST_EFFORT = "best_effort"  # Skip only the downstream of the failure


class PlanFormat(str, Enum):
    """Plan rendering formats."""

    TEXT = "text"
    JSON = "json"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONCURRENCY = 4
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 64

DEFAULT_LOCK_LEASE_SECONDS = 900
MIN_LOCK_LEASE_SECONDS = 30
MAX_LOCK_LEASE_SECONDS = 86400

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_LIMIT = 10
DEFAULT_RETRY_BACKOFF_SECONDS = 2.0
MAX_RETRY_BACKOFF_SECONDS = 60.0

# 0 disables the continuous loop (one-shot run)
DEFAULT_RECONCILE_INTERVAL_SECONDS = 0
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_STATE_HISTORY = 10
MAX_STATE_HISTORY = 1000

MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max declaration file
MAX_RESOURCES_PER_CONFIGURATION = 2000

VALID_SCOPE_PATTERN = r"^[a-z][a-z0-9-]{0,62}$"


def default_holder() -> str:
    """Identity recorded on locks taken by this process."""
    return f"{socket.gethostname()}:{os.getpid()}"


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Required
    scope: str

    # Paths
    config_path: Path = field(default_factory=lambda: Path("converge.yaml"))
    var_file: Path | None = None
    state_dir: Path = field(default_factory=lambda: Path(".converge"))

    # Behavior
    mode: ReconciliationMode = ReconciliationMode.OBSERVE
    failure_policy: FailurePolicy = FailurePolicy.BEST_EFFORT
    refresh: bool = True
    destroy: bool = False
    plan_format: PlanFormat = PlanFormat.TEXT

    # Execution
    concurrency: int = DEFAULT_CONCURRENCY
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS

    # State
    lock_lease_seconds: int = DEFAULT_LOCK_LEASE_SECONDS
    state_history: int = DEFAULT_STATE_HISTORY
    holder: str = field(default_factory=default_holder)

    # Loop
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.scope:
            errors.append("CONVERGE_SCOPE is required")
        elif not re.match(VALID_SCOPE_PATTERN, self.scope):
            errors.append(f"CONVERGE_SCOPE must match pattern {VALID_SCOPE_PATTERN}: {self.scope}")

        if not self.config_path.exists():
            errors.append(f"Configuration file does not exist: {self.config_path}")

        if self.var_file is not None and not self.var_file.exists():
            errors.append(f"Variable file does not exist: {self.var_file}")

        if not (MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY):
            errors.append(
                f"CONVERGE_CONCURRENCY must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )

        if not (MIN_LOCK_LEASE_SECONDS <= self.lock_lease_seconds <= MAX_LOCK_LEASE_SECONDS):
            errors.append(
                f"CONVERGE_LOCK_LEASE_SECONDS must be between {MIN_LOCK_LEASE_SECONDS} "
                f"and {MAX_LOCK_LEASE_SECONDS} seconds"
            )

        if not (1 <= self.max_retries <= MAX_RETRIES_LIMIT):
            errors.append(f"CONVERGE_MAX_RETRIES must be between 1 and {MAX_RETRIES_LIMIT}")

        if not (0 <= self.retry_backoff_seconds <= MAX_RETRY_BACKOFF_SECONDS):
            errors.append(
                f"CONVERGE_RETRY_BACKOFF_SECONDS must be between 0 and {MAX_RETRY_BACKOFF_SECONDS}"
            )

        if self.reconcile_interval_seconds != 0 and not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"CONVERGE_INTERVAL must be 0 or between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (0 <= self.state_history <= MAX_STATE_HISTORY):
            errors.append(f"CONVERGE_STATE_HISTORY must be between 0 and {MAX_STATE_HISTORY}")

        if not self.holder:
            errors.append("CONVERGE_HOLDER must not be empty")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def continuous(self) -> bool:
        """Whether the reconciler should loop instead of running once."""
        return self.reconcile_interval_seconds > 0

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_SCOPE: State and lock scope, usually the environment (dev, stage, prod)
            CONVERGE_CONFIG_PATH: YAML resource declarations (default: converge.yaml)
            CONVERGE_VAR_FILE: Optional per-environment variable overrides
            CONVERGE_STATE_DIR: Directory holding state, locks and history (default: .converge)
            CONVERGE_MODE: One of observe, enforce, protect (default: observe)
            CONVERGE_FAILURE_POLICY: One of fail_fast, best_effort (default: best_effort)
            CONVERGE_CONCURRENCY: Max resources applied in parallel (default: 4)
            CONVERGE_LOCK_LEASE_SECONDS: Lock lease duration (default: 900)
            CONVERGE_MAX_RETRIES: Attempts for transient provider errors (default: 3)
            CONVERGE_RETRY_BACKOFF_SECONDS: Base backoff between attempts (default: 2)
            CONVERGE_REFRESH: Read observed state before diffing (default: true)
            CONVERGE_DESTROY: Plan the deletion of every managed resource (default: false)
            CONVERGE_INTERVAL: Seconds between cycles, 0 for one-shot (default: 0)
            CONVERGE_HOLDER: Identity recorded on locks (default: hostname:pid)
            CONVERGE_PLAN_FORMAT: One of text, json (default: text)
            CONVERGE_STATE_HISTORY: Saved state versions kept per scope (default: 10)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        var_file = os.environ.get("CONVERGE_VAR_FILE")

        return cls(
            scope=os.environ.get("CONVERGE_SCOPE", ""),
            config_path=Path(os.environ.get("CONVERGE_CONFIG_PATH", "converge.yaml")),
            var_file=Path(var_file) if var_file else None,
            state_dir=Path(os.environ.get("CONVERGE_STATE_DIR", ".converge")),
            mode=get_enum("CONVERGE_MODE", ReconciliationMode, ReconciliationMode.OBSERVE),
            failure_policy=get_enum(
                "CONVERGE_FAILURE_POLICY", FailurePolicy, FailurePolicy.BEST_EFFORT
            ),
            refresh=get_bool("CONVERGE_REFRESH", True),
            destroy=get_bool("CONVERGE_DESTROY", False),
            plan_format=get_enum("CONVERGE_PLAN_FORMAT", PlanFormat, PlanFormat.TEXT),
            concurrency=get_int("CONVERGE_CONCURRENCY", DEFAULT_CONCURRENCY),
            max_retries=get_int("CONVERGE_MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_seconds=get_float(
                "CONVERGE_RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
            ),
            lock_lease_seconds=get_int("CONVERGE_LOCK_LEASE_SECONDS", DEFAULT_LOCK_LEASE_SECONDS),
            state_history=get_int("CONVERGE_STATE_HISTORY", DEFAULT_STATE_HISTORY),
            holder=os.environ.get("CONVERGE_HOLDER") or default_holder(),
            reconcile_interval_seconds=get_int(
                "CONVERGE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
        )
