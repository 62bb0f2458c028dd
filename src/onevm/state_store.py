"""Local state persistence between invocations.

The state file records the VM id and the last observed attributes. It is
written as soon as instantiate returns an id, so a crash while the VM is
still provisioning leaves a reference the next run can pick up.

Writes are atomic (temporary file + rename) and the file is private (0600).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .lifecycle import VmResource
from .models import VmObservedState, VmSpec
from .states import LifecycleState

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1
MAX_STATE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB


class StateStoreError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


@dataclass
class StoredState:
    """Serialized form of a VmResource handle."""

    id: str
    template_id: int
    stage: LifecycleState
    observed: VmObservedState | None
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "version": STATE_FORMAT_VERSION,
            "id": self.id,
            "template_id": self.template_id,
            "stage": self.stage.value,
            "observed": self.observed.model_dump() if self.observed else None,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredState:
        """Create from dictionary."""
        return cls(
            id=str(data.get("id", "")),
            template_id=int(data["template_id"]),
            stage=LifecycleState(data.get("stage", LifecycleState.ABSENT.value)),
            observed=(
                VmObservedState.model_validate(data["observed"]) if data.get("observed") else None
            ),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    @classmethod
    def from_resource(cls, resource: VmResource) -> StoredState:
        return cls(
            id=resource.id,
            template_id=resource.desired.template_id,
            stage=resource.stage,
            observed=resource.observed,
            updated_at=datetime.now(UTC),
        )


class StateStore:
    """JSON file holding one VM handle."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StoredState | None:
        """Read the stored state; None when no state file exists yet.

        Raises:
            StateStoreError: If the file is unreadable or corrupt.
        """
        if not self._path.exists():
            return None

        try:
            if self._path.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                raise StateStoreError(
                    f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                    f"{self._path}"
                )
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise StateStoreError(f"State file must contain a JSON object: {self._path}")

        version = data.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state format version {version!r} in {self._path}"
            )

        try:
            return StoredState.from_dict(data)
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise StateStoreError(f"Corrupt state file {self._path}: {e}") from e

    def load_resource(self, desired: VmSpec) -> VmResource:
        """Build a handle for desired, seeded with any stored identity."""
        stored = self.load()
        if stored is None:
            return VmResource(desired=desired)

        if stored.template_id != desired.template_id:
            # template_id is creation-time only; a change needs a new VM
            logger.warning(
                "Template id differs from the one the VM was created from",
                extra={
                    "stored_template_id": stored.template_id,
                    "desired_template_id": desired.template_id,
                    "vm_id": stored.id,
                },
            )

        return VmResource(
            desired=desired,
            id=stored.id,
            observed=stored.observed,
            stage=stored.stage,
        )

    def save(self, resource: VmResource) -> None:
        """Atomically write the handle to disk.

        Raises:
            StateStoreError: If the file cannot be written.
        """
        payload = json.dumps(StoredState.from_resource(resource).to_dict(), indent=2, sort_keys=True)
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.write("\n")
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug(
            "State saved",
            extra={"path": str(self._path), "vm_id": resource.id, "stage": resource.stage.value},
        )
