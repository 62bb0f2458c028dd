"""Configuration management with validation.

Every tunable the lifecycle code depends on (poll bounds, the default
permission string) is an explicit value here rather than a module global, so
tests and deployments can override it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .permissions import PermissionFormatError, validate_permission_string


class ReconciliationMode(str, Enum):
    """How the reconciler reacts to drift."""

    OBSERVE = "observe"  # Report drift, never change the remote VM
    ENFORCE = "enforce"  # Create, update or replace to converge


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_ENDPOINT = "http://localhost:2633/RPC2"
DEFAULT_STATE_PATH = "onevm-state.json"
DEFAULT_PERMISSIONS = "640"

DEFAULT_POLL_TIMEOUT_SECONDS = 600  # 10 minutes
DEFAULT_POLL_INTERVAL_SECONDS = 10
DEFAULT_POLL_DELAY_SECONDS = 0
MAX_POLL_TIMEOUT_SECONDS = 7200

DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 30
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_RPC_TIMEOUT_SECONDS = 30
MAX_RPC_TIMEOUT_SECONDS = 600


@dataclass(frozen=True)
class PollSettings:
    """Bounds for waiting on an asynchronous lifecycle transition."""

    timeout_seconds: float = DEFAULT_POLL_TIMEOUT_SECONDS
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    initial_delay_seconds: float = DEFAULT_POLL_DELAY_SECONDS
    backoff_factor: float = 1.0
    max_interval_seconds: float | None = None

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not 0 < self.timeout_seconds <= MAX_POLL_TIMEOUT_SECONDS:
            errors.append(f"POLL_TIMEOUT must be between 1 and {MAX_POLL_TIMEOUT_SECONDS} seconds")
        if self.interval_seconds <= 0:
            errors.append("POLL_INTERVAL must be positive")
        if self.initial_delay_seconds < 0:
            errors.append("POLL_DELAY cannot be negative")
        if self.backoff_factor < 1.0:
            errors.append("poll backoff_factor must be at least 1.0")
        if self.max_interval_seconds is not None and self.max_interval_seconds < self.interval_seconds:
            errors.append("poll max_interval_seconds cannot be below interval_seconds")

        if errors:
            raise ConfigurationError(
                "Poll configuration validation failed:\n  - " + "\n  - ".join(errors)
            )


@dataclass(frozen=True)
class LifecycleSettings:
    """Values owned by the lifecycle controller."""

    # Applied after creation when no permissions were declared
    default_permissions: str = DEFAULT_PERMISSIONS

    create_poll: PollSettings = field(default_factory=PollSettings)
    delete_poll: PollSettings = field(default_factory=PollSettings)

    # Re-read the VM after in-place updates; resize and rename complete
    # asynchronously on the remote side
    refresh_after_update: bool = True

    def __post_init__(self) -> None:
        try:
            validate_permission_string(self.default_permissions)
        except PermissionFormatError as e:
            raise ConfigurationError(f"DEFAULT_PERMISSIONS is invalid: {e}") from e


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    endpoint: str = DEFAULT_ENDPOINT

    # Paths
    spec_path: Path | None = None
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))

    # Behavior
    mode: ReconciliationMode = ReconciliationMode.OBSERVE
    dry_run: bool = False
    allow_replace: bool = False

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    rpc_timeout_seconds: int = DEFAULT_RPC_TIMEOUT_SECONDS

    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.endpoint.startswith(("http://", "https://")):
            errors.append(f"ONE_XMLRPC must be an http(s) URL: {self.endpoint}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not 0 < self.rpc_timeout_seconds <= MAX_RPC_TIMEOUT_SECONDS:
            errors.append(f"RPC_TIMEOUT must be between 1 and {MAX_RPC_TIMEOUT_SECONDS} seconds")

        if self.spec_path is not None and not self.spec_path.exists():
            errors.append(f"Spec file does not exist: {self.spec_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            ONE_XMLRPC: OpenNebula XML-RPC endpoint (default: http://localhost:2633/RPC2)
            ONEVM_SPEC: Path to the desired-state YAML file
            ONEVM_STATE: Path to the local state file (default: onevm-state.json)
            RECONCILE_MODE: observe or enforce (default: observe)
            DRY_RUN: If "true", only detect drift without applying (default: false)
            ALLOW_REPLACE: If "true", replace the VM when an immutable field drifts
            RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 300)
            RPC_TIMEOUT: Timeout for a single remote call in seconds (default: 30)
            POLL_TIMEOUT: Bound for create/delete state waits in seconds (default: 600)
            POLL_INTERVAL: Seconds between state refreshes (default: 10)
            POLL_DELAY: Seconds to wait before the first refresh (default: 0)
            DEFAULT_PERMISSIONS: Applied when none are declared (default: 640)

        Credentials are not configured here; see security.resolve_session().
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_mode(value: str | None) -> ReconciliationMode:
            if not value:
                return ReconciliationMode.OBSERVE
            try:
                return ReconciliationMode(value.lower())
            except ValueError as e:
                valid = [m.value for m in ReconciliationMode]
                raise ConfigurationError(f"RECONCILE_MODE must be one of {valid}: {value}") from e

        spec = os.environ.get("ONEVM_SPEC")
        poll = PollSettings(
            timeout_seconds=get_int("POLL_TIMEOUT", DEFAULT_POLL_TIMEOUT_SECONDS),
            interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            initial_delay_seconds=get_int("POLL_DELAY", DEFAULT_POLL_DELAY_SECONDS),
        )

        return cls(
            endpoint=os.environ.get("ONE_XMLRPC", DEFAULT_ENDPOINT),
            spec_path=Path(spec) if spec else None,
            state_path=Path(os.environ.get("ONEVM_STATE", DEFAULT_STATE_PATH)),
            mode=get_mode(os.environ.get("RECONCILE_MODE")),
            dry_run=get_bool("DRY_RUN", False),
            allow_replace=get_bool("ALLOW_REPLACE", False),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            rpc_timeout_seconds=get_int("RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT_SECONDS),
            lifecycle=LifecycleSettings(
                default_permissions=os.environ.get("DEFAULT_PERMISSIONS", DEFAULT_PERMISSIONS),
                create_poll=poll,
                delete_poll=poll,
            ),
        )
