"""Drift between the declared and the observed VM attributes.

Only explicitly declared fields are compared: an attribute left out of the
desired state is computed by OpenNebula and whatever it reports is accepted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .models import VmObservedState, VmSpec


@dataclass(frozen=True)
class FieldChange:
    """One attribute whose observed value differs from the declared one."""

    field: str
    desired: Any
    observed: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "desired": self.desired, "observed": self.observed}


def mutable_changes(desired: VmSpec, observed: VmObservedState) -> list[FieldChange]:
    """Changes that can be applied in place, in the order they are applied."""
    changes: list[FieldChange] = []

    if desired.permissions is not None and desired.permissions != observed.permissions:
        changes.append(FieldChange("permissions", desired.permissions, observed.permissions))

    if desired.disk.size is not None and desired.disk.size != observed.size:
        changes.append(FieldChange("size", desired.disk.size, observed.size))

    if desired.name is not None and desired.name != observed.name:
        changes.append(FieldChange("name", desired.name, observed.name))

    return changes


def replacement_changes(desired: VmSpec, observed: VmObservedState) -> list[FieldChange]:
    """Changes to attributes that are immutable after creation."""
    changes: list[FieldChange] = []

    if desired.cpu is not None and float(desired.cpu) != observed.cpu:
        changes.append(FieldChange("cpu", desired.cpu, observed.cpu))

    if desired.vcpu is not None and desired.vcpu != observed.vcpu:
        changes.append(FieldChange("vcpu", desired.vcpu, observed.vcpu))

    if desired.memory is not None and desired.memory != observed.memory:
        changes.append(FieldChange("memory", desired.memory, observed.memory))

    if desired.network.ip is not None and desired.network.ip != observed.ip:
        changes.append(FieldChange("ip", desired.network.ip, observed.ip))

    return changes
