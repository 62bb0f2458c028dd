"""Create, read, update and delete a single OpenNebula VM.

The controller drives one VM through its lifecycle:

    ABSENT -> PROVISIONING -> RUNNING -> DELETING -> DONE

CREATE: build the instantiate template, instantiate, record the new id at
once (a crash mid-provisioning leaves a recoverable reference), wait for
RUNNING, apply permissions, then Read.

READ: look the VM up by id; if that fails, fall back to the pool listing
matched by name. When neither finds it the local id is cleared, which is how
out-of-band deletion is detected. This is not an error.

UPDATE: apply permission, disk size and name changes one remote call each.
The first failure aborts the rest; earlier changes are not rolled back.

DELETE: Read first; an absent VM is a successful no-op. Otherwise
terminate-hard and wait for DONE.

Nothing here retries a failed remote call. Only the arrival of a lifecycle
state is polled for.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import LifecycleSettings, PollSettings
from .drift import FieldChange, mutable_changes
from .entity import VmRecord, decode_vm, decode_vm_pool, is_nonexistent
from .models import VmObservedState, VmSpec
from .permissions import encode_permissions
from .poller import PollTimeoutError, wait_for
from .states import LifecycleState, describe_codes
from .template import build_instantiate_template
from .transport import (
    METHOD_INSTANTIATE,
    METHOD_VM_ACTION,
    METHOD_VM_CHMOD,
    METHOD_VM_DISK_RESIZE,
    METHOD_VM_INFO,
    METHOD_VM_POOL_INFO,
    METHOD_VM_RENAME,
    OneClient,
    RemoteCallError,
)

logger = logging.getLogger(__name__)

# one.vmpool.info filter: all VMs the session user can see, full id range
POOL_FILTER_ALL = -3
POOL_RANGE_START = -1
POOL_RANGE_END = -1

TERMINATE_ACTION = "terminate-hard"
MANAGED_DISK_INDEX = 0


class LifecycleError(Exception):
    """Raised when a lifecycle operation cannot proceed."""

    pass


class VmStateTimeoutError(PollTimeoutError):
    """A VM did not reach the expected lifecycle state in time."""

    def __init__(self, vm_id: str, cause: PollTimeoutError) -> None:
        super().__init__(cause.target, cause.last_label, cause.elapsed_seconds)
        self.vm_id = vm_id
        self.args = (
            f"Error waiting for virtual machine ({vm_id}) to be in state "
            f"{cause.target.upper()}: {cause}",
        )


class PartialUpdateError(LifecycleError):
    """An in-place update failed part way.

    Attributes:
        vm_id: The VM being updated.
        applied: Changes that succeeded before the failure (not rolled back).
        failed: The change whose remote call failed.
        abandoned: Changes that were never attempted.
    """

    def __init__(
        self,
        vm_id: str,
        applied: list[FieldChange],
        failed: FieldChange,
        abandoned: list[FieldChange],
        cause: RemoteCallError,
    ) -> None:
        self.vm_id = vm_id
        self.applied = applied
        self.failed = failed
        self.abandoned = abandoned
        self.cause = cause
        super().__init__(
            f"Updating '{failed.field}' of VM {vm_id} failed: {cause}. "
            f"Applied: {[c.field for c in applied]}; "
            f"abandoned: {[c.field for c in abandoned]}"
        )


@dataclass
class VmResource:
    """Mutable handle holding the declared and observed state of one VM."""

    desired: VmSpec
    id: str = ""
    observed: VmObservedState | None = None
    stage: LifecycleState = LifecycleState.ABSENT

    @property
    def lookup_name(self) -> str:
        """Name used for pool lookups: declared name, else last seen instance name."""
        if self.desired.name:
            return self.desired.name
        return self.observed.name if self.observed else ""


def _numeric_id(vm_id: str) -> int:
    try:
        return int(vm_id)
    except ValueError as e:
        raise LifecycleError(f"VM id must be numeric: {vm_id!r}") from e


def _noop_checkpoint(resource: VmResource) -> None:
    pass


class VmLifecycleController:
    """Lifecycle operations for one VM at a time.

    Operations run synchronously; the only blocking wait is the state poll.
    Each instance is bound to one client session, and no state is shared
    between VMs.
    """

    def __init__(
        self,
        client: OneClient,
        settings: LifecycleSettings | None = None,
        *,
        checkpoint: Callable[[VmResource], None] = _noop_checkpoint,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the controller.

        Args:
            client: Remote-call capability bound to a session.
            settings: Default permissions and poll bounds.
            checkpoint: Called whenever the handle's identity or stage changes,
                so callers can persist it.
            sleep: Sleep function used while polling.
            clock: Monotonic clock used while polling.
        """
        self._client = client
        self._settings = settings or LifecycleSettings()
        self._checkpoint = checkpoint
        self._sleep = sleep
        self._clock = clock

    @property
    def settings(self) -> LifecycleSettings:
        return self._settings

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    def create(self, resource: VmResource) -> None:
        """Instantiate the VM, wait for RUNNING, apply permissions and Read.

        Partial creation is not rolled back: once instantiated, the VM and its
        recorded id remain for a later reconciliation pass.

        Raises:
            RemoteCallError: If a remote call fails.
            VmStateTimeoutError: If the VM does not reach RUNNING in time.
        """
        spec = resource.desired

        # Validated before any remote call
        template = build_instantiate_template(spec)
        permissions_str = spec.permissions or self._settings.default_permissions
        permissions = encode_permissions(permissions_str)

        logger.info(
            "Instantiating VM",
            extra={"template_id": spec.template_id, "vm_name": spec.name or ""},
        )
        logger.debug("Instantiate template", extra={"template": template})

        vm_id = str(
            self._client.call(
                METHOD_INSTANTIATE,
                spec.template_id,
                spec.name or "",
                False,  # on hold
                template,
                False,  # persistent
            )
        )

        resource.id = vm_id
        resource.stage = LifecycleState.PROVISIONING
        self._checkpoint(resource)
        logger.info("VM instantiated", extra={"vm_id": vm_id})

        self._wait_for_state(resource, LifecycleState.RUNNING, self._settings.create_poll)
        resource.stage = LifecycleState.RUNNING
        self._checkpoint(resource)

        self._change_permissions(vm_id, permissions_str)
        logger.info(
            "VM running",
            extra={"vm_id": vm_id, "permissions": permissions_str, "chmod": permissions.to_chmod_args()},
        )

        self.read(resource)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def read(self, resource: VmResource) -> VmRecord | None:
        """Refresh every tracked attribute from the remote record.

        Returns:
            The decoded record, or None when the VM was not found (in which
            case the handle's id is cleared).

        Raises:
            RemoteCallError: If the pool listing fails.
            EntityDecodeError: If a response cannot be decoded.
        """
        record: VmRecord | None = None

        if resource.id:
            try:
                record = self._info(_numeric_id(resource.id))
            except RemoteCallError as e:
                logger.warning(
                    "Could not find VM by ID, falling back to name lookup",
                    extra={"vm_id": resource.id, "error": str(e)},
                )

        if record is None:
            record = self._find_by_name(resource.lookup_name)

        if record is None:
            logger.info(
                "VM not found",
                extra={
                    "vm_id": resource.id,
                    "vm_name": resource.lookup_name,
                    "username": self._client.username,
                },
            )
            resource.id = ""
            resource.observed = None
            resource.stage = LifecycleState.ABSENT
            return None

        resource.id = record.id
        resource.observed = VmObservedState.from_record(record)
        if is_nonexistent(record):
            resource.stage = LifecycleState.DONE
        else:
            resource.stage = record.lifecycle_state(
                terminating=resource.stage == LifecycleState.DELETING
            )

        logger.debug(
            "VM read",
            extra={
                "vm_id": record.id,
                "vm_name": record.name,
                "state": describe_codes(record.state, record.lcm_state),
            },
        )
        return record

    def _info(self, numeric_id: int) -> VmRecord:
        return decode_vm(self._client.call(METHOD_VM_INFO, numeric_id))

    def _find_by_name(self, name: str) -> VmRecord | None:
        if not name:
            return None
        pool = decode_vm_pool(
            self._client.call(METHOD_VM_POOL_INFO, POOL_FILTER_ALL, POOL_RANGE_START, POOL_RANGE_END)
        )
        for vm in pool:
            if vm.name == name:
                # Pool entries omit PERMISSIONS; fetch the full record
                return self._info(_numeric_id(vm.id))
        return None

    # -------------------------------------------------------------------------
    # Exists
    # -------------------------------------------------------------------------

    def exists(self, resource: VmResource) -> bool:
        """Read, then report whether the VM still exists.

        A terminated (DONE) VM does not exist even while its record is still
        visible remotely.
        """
        return not is_nonexistent(self.read(resource))

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    def update(self, resource: VmResource) -> list[FieldChange]:
        """Apply in-place changes to permissions, disk size and name.

        Returns:
            The changes that were applied.

        Raises:
            LifecycleError: If the VM has no identity or cannot be found.
            PartialUpdateError: If one change fails; later ones are abandoned.
        """
        if not resource.id:
            raise LifecycleError("Cannot update a VM without an id; create it first")

        if resource.observed is None:
            self.read(resource)
            if resource.observed is None:
                raise LifecycleError("Cannot update a VM that no longer exists")

        vm_id = resource.id
        pending = mutable_changes(resource.desired, resource.observed)
        applied: list[FieldChange] = []

        for i, change in enumerate(pending):
            try:
                response = self._apply_change(vm_id, change)
            except RemoteCallError as e:
                logger.error(
                    "VM update failed",
                    extra={"vm_id": vm_id, "field": change.field, "error": str(e)},
                )
                raise PartialUpdateError(vm_id, applied, change, pending[i + 1 :], e) from e
            applied.append(change)
            logger.info(
                "Successfully updated VM",
                extra={"vm_id": vm_id, "field": change.field, "response": response},
            )

        if applied and self._settings.refresh_after_update:
            self.read(resource)

        return applied

    def _apply_change(self, vm_id: str, change: FieldChange) -> Any:
        match change.field:
            case "permissions":
                return self._change_permissions(vm_id, change.desired)
            case "size":
                return self._client.call(
                    METHOD_VM_DISK_RESIZE,
                    _numeric_id(vm_id),
                    MANAGED_DISK_INDEX,
                    str(change.desired),
                )
            case "name":
                return self._client.call(METHOD_VM_RENAME, _numeric_id(vm_id), change.desired)
            case _:
                raise LifecycleError(f"Field cannot be updated in place: {change.field}")

    def _change_permissions(self, vm_id: str, permissions: str) -> Any:
        args = encode_permissions(permissions).to_chmod_args()
        return self._client.call(METHOD_VM_CHMOD, _numeric_id(vm_id), *args)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    def delete(self, resource: VmResource) -> None:
        """Terminate the VM and wait for DONE; absent VMs are a no-op.

        Raises:
            RemoteCallError: If a remote call fails.
            VmStateTimeoutError: If the VM does not reach DONE in time.
        """
        record = self.read(resource)
        if is_nonexistent(record):
            logger.info(
                "VM already absent, nothing to delete",
                extra={"vm_id": resource.id, "vm_name": resource.lookup_name},
            )
            if record is not None:
                # Terminated out of band: forget it like a completed delete
                resource.id = ""
                resource.observed = None
                resource.stage = LifecycleState.DONE
                self._checkpoint(resource)
            return

        vm_id = resource.id
        response = self._client.call(METHOD_VM_ACTION, TERMINATE_ACTION, _numeric_id(vm_id))
        resource.stage = LifecycleState.DELETING
        self._checkpoint(resource)

        self._wait_for_state(
            resource, LifecycleState.DONE, self._settings.delete_poll, terminating=True
        )

        resource.id = ""
        resource.observed = None
        resource.stage = LifecycleState.DONE
        self._checkpoint(resource)
        logger.info("Successfully terminated VM", extra={"vm_id": vm_id, "response": response})

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _wait_for_state(
        self,
        resource: VmResource,
        target: LifecycleState,
        poll: PollSettings,
        *,
        terminating: bool = False,
    ) -> VmRecord:
        vm_id = resource.id
        numeric_id = _numeric_id(vm_id)

        def refresh() -> tuple[VmRecord, str]:
            record = self._info(numeric_id)
            logger.debug(
                "Refreshed VM state",
                extra={"vm_id": vm_id, "state": describe_codes(record.state, record.lcm_state)},
            )
            return record, record.lifecycle_state(terminating=terminating).value

        logger.info(
            "Waiting for VM state",
            extra={"vm_id": vm_id, "target": target.value, "timeout_seconds": poll.timeout_seconds},
        )

        try:
            return wait_for(
                refresh,
                target.value,
                timeout_seconds=poll.timeout_seconds,
                interval_seconds=poll.interval_seconds,
                initial_delay_seconds=poll.initial_delay_seconds,
                backoff_factor=poll.backoff_factor,
                max_interval_seconds=poll.max_interval_seconds,
                sleep=self._sleep,
                clock=self._clock,
            )
        except PollTimeoutError as e:
            raise VmStateTimeoutError(vm_id, e) from e
