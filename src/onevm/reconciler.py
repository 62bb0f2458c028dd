"""Reconciliation loop for a single VM.

Each cycle:
1. Read the VM (by id, falling back to name)
2. Absent or terminated: create it
3. Immutable attribute drift: replace it (delete + create) if allowed
4. Mutable attribute drift: update it in place
5. Repeat on interval

OBSERVE mode and dry-run report drift without calling any mutating API.
A circuit breaker pauses the loop after repeated failures.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .config import Config, ReconciliationMode
from .drift import FieldChange, mutable_changes, replacement_changes
from .entity import is_nonexistent
from .lifecycle import VmLifecycleController, VmResource

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class ReconcileAction(str, Enum):
    """What a reconciliation cycle did (or would have done)."""

    NONE = "none"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    BLOCKED = "blocked"


class ReplacementRequiredError(Exception):
    """Raised when immutable attributes drifted and replacement is not allowed."""

    def __init__(self, vm_id: str, changes: list[FieldChange]) -> None:
        self.vm_id = vm_id
        self.changes = changes
        fields = ", ".join(c.field for c in changes)
        super().__init__(
            f"VM {vm_id} must be replaced to change {fields}; "
            "set ALLOW_REPLACE=true to permit delete and re-create"
        )


@dataclass
class ReconcileResult:
    """Result of a single reconciliation cycle."""

    vm_id: str = ""
    mode: ReconciliationMode = ReconciliationMode.OBSERVE
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    action: ReconcileAction = ReconcileAction.NONE
    drift_found: bool = False
    applied: bool = False
    changes: list[FieldChange] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "vm_id": self.vm_id,
            "mode": self.mode.value,
            "action": self.action.value,
            "drift_found": self.drift_found,
            "applied": self.applied,
            "changes": [c.to_dict() for c in self.changes],
            "duration_seconds": self.duration_seconds,
            "error": str(self.error) if self.error is not None else None,
        }


class Reconciler:
    """Drives one VM towards its declared state."""

    def __init__(self, controller: VmLifecycleController, config: Config) -> None:
        self._controller = controller
        self._config = config
        self._shutdown_event = threading.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        return self._config

    @property
    def _may_apply(self) -> bool:
        return self._config.mode == ReconciliationMode.ENFORCE and not self._config.dry_run

    def reconcile_once(self, resource: VmResource) -> ReconcileResult:
        """Execute a single reconciliation cycle.

        Errors are captured on the result rather than raised.
        """
        result = ReconcileResult(vm_id=resource.id, mode=self._config.mode)

        try:
            self._reconcile(resource, result)
        except Exception as e:
            result.error = e

        result.vm_id = resource.id
        result.end_time = datetime.now(UTC)
        return result

    def _reconcile(self, resource: VmResource, result: ReconcileResult) -> None:
        record = self._controller.read(resource)

        if is_nonexistent(record):
            result.drift_found = True
            result.action = ReconcileAction.CREATE
            if self._report_only("VM absent", resource):
                return
            self._controller.create(resource)
            result.applied = True
            return

        assert resource.observed is not None
        replace = replacement_changes(resource.desired, resource.observed)
        if replace:
            result.drift_found = True
            result.changes = replace
            if not self._config.allow_replace:
                result.action = ReconcileAction.BLOCKED
                raise ReplacementRequiredError(resource.id, replace)
            result.action = ReconcileAction.REPLACE
            if self._report_only("Immutable attributes drifted", resource, replace):
                return
            logger.warning(
                "Replacing VM",
                extra={"vm_id": resource.id, "fields": [c.field for c in replace]},
            )
            self._controller.delete(resource)
            self._controller.create(resource)
            result.applied = True
            return

        changes = mutable_changes(resource.desired, resource.observed)
        if not changes:
            logger.info("No drift detected", extra={"vm_id": resource.id})
            return

        result.drift_found = True
        result.action = ReconcileAction.UPDATE
        result.changes = changes
        if self._report_only("Drift detected", resource, changes):
            return
        result.changes = self._controller.update(resource)
        result.applied = True

    def _report_only(
        self,
        message: str,
        resource: VmResource,
        changes: list[FieldChange] | None = None,
    ) -> bool:
        """Log drift; True when the cycle must stop without applying."""
        extra = {
            "vm_id": resource.id,
            "mode": self._config.mode.value,
            "dry_run": self._config.dry_run,
            "changes": [c.to_dict() for c in changes or []],
        }
        if self._may_apply:
            logger.info(message, extra=extra)
            return False
        logger.warning(f"{message} (not remediated)", extra=extra)
        return True

    def run(
        self,
        load_resource: Callable[[], VmResource],
        save_resource: Callable[[VmResource], None],
    ) -> None:
        """Run reconciliation cycles until shutdown() is called.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES,
        the circuit opens and reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.

        Args:
            load_resource: Builds the handle for a cycle (spec + stored state).
            save_resource: Persists the handle after the cycle.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "mode": self._config.mode.value,
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    self._shutdown_event.wait(
                        min(remaining, self._config.reconcile_interval_seconds)
                    )
                    continue
                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            try:
                resource = load_resource()
            except Exception as e:
                result = ReconcileResult(mode=self._config.mode, error=e)
                result.end_time = datetime.now(UTC)
            else:
                result = self.reconcile_once(resource)
                try:
                    save_resource(resource)
                except Exception as e:
                    if result.error is None:
                        result.error = e
            self._log_result(result)

            if result.error is not None:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            self._shutdown_event.wait(self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete")

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "vm_id": result.vm_id,
            "mode": result.mode.value,
            "action": result.action.value,
            "duration_seconds": result.duration_seconds,
            "drift_found": result.drift_found,
            "applied": result.applied,
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.error("Reconciliation failed", extra=extra)
        elif result.drift_found and not result.applied:
            logger.warning("Reconciliation: drift not remediated", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
