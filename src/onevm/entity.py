"""Typed decoding of OpenNebula VM records.

pyone parses one.vm.info and one.vmpool.info replies into binding objects:
top-level fields are attributes, while TEMPLATE is a nested dictionary. The
fields the lifecycle tracks are copied out and validated by pydantic models
whose aliases are the OpenNebula element names.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .permissions import Permissions
from .states import LifecycleState, classify

logger = logging.getLogger(__name__)

VM_FIELDS = ("ID", "NAME", "UID", "GID", "UNAME", "GNAME", "STATE", "LCM_STATE")

PERMISSION_FIELDS = (
    "OWNER_U",
    "OWNER_M",
    "OWNER_A",
    "GROUP_U",
    "GROUP_M",
    "GROUP_A",
    "OTHER_U",
    "OTHER_M",
    "OTHER_A",
)


class EntityDecodeError(Exception):
    """Raised when a remote VM record cannot be decoded."""

    pass


def _first(v: Any) -> Any:
    """OpenNebula repeats DISK/NIC elements; index 0 is the managed one."""
    if isinstance(v, list):
        return v[0] if v else {}
    return v


class ContextRecord(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    eth0_ip: str = Field("", alias="ETH0_IP")


class NicRecord(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    network: str = Field("", alias="NETWORK")
    network_uname: str = Field("", alias="NETWORK_UNAME")
    search_domain: str = Field("", alias="SEARCH_DOMAIN")
    security_groups: int = Field(0, alias="SECURITY_GROUPS")

    @field_validator("security_groups", mode="before")
    @classmethod
    def first_security_group(cls, v: Any) -> Any:
        # The remote lists every attached group as "0,100"
        if isinstance(v, str) and "," in v:
            return v.split(",", 1)[0]
        return v


class DiskRecord(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    image: str = Field("", alias="IMAGE")
    size: int = Field(0, alias="SIZE")
    driver: str = Field("", alias="DRIVER")
    image_uname: str = Field("", alias="IMAGE_UNAME")


class VmTemplateRecord(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    cpu: float = Field(0.0, alias="CPU")
    vcpu: int = Field(0, alias="VCPU")
    memory: int = Field(0, alias="MEMORY")
    disk: DiskRecord = Field(default_factory=DiskRecord, alias="DISK")
    nic: NicRecord = Field(default_factory=NicRecord, alias="NIC")
    context: ContextRecord = Field(default_factory=ContextRecord, alias="CONTEXT")

    @field_validator("disk", "nic", "context", mode="before")
    @classmethod
    def first_element(cls, v: Any) -> Any:
        return _first(v)


class VmRecord(BaseModel):
    """A VM as reported by OpenNebula."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = Field("", alias="ID")
    name: str = Field("", alias="NAME")
    uid: int = Field(0, alias="UID")
    gid: int = Field(0, alias="GID")
    uname: str = Field("", alias="UNAME")
    gname: str = Field("", alias="GNAME")
    permissions: Permissions = Field(default_factory=Permissions, alias="PERMISSIONS")
    state: int = Field(0, alias="STATE")
    lcm_state: int = Field(0, alias="LCM_STATE")
    template: VmTemplateRecord = Field(default_factory=VmTemplateRecord, alias="TEMPLATE")

    @field_validator("id", mode="before")
    @classmethod
    def id_as_text(cls, v: Any) -> Any:
        # pyone parses <ID> as an integer; ids are opaque strings here
        if isinstance(v, int):
            return str(v)
        return v

    def lifecycle_state(self, *, terminating: bool = False) -> LifecycleState:
        return classify(self.state, self.lcm_state, terminating=terminating)


def is_nonexistent(record: VmRecord | None) -> bool:
    """True when the VM is gone: not found, no identity, or terminated (DONE)."""
    if record is None or not record.id:
        return True
    return record.lifecycle_state() == LifecycleState.DONE


def _without_empty(template: Mapping[str, Any]) -> dict[str, Any]:
    """Drop empty leaves so model defaults apply.

    pyone renders empty template elements as "" and repeated ones as lists.
    """
    result: dict[str, Any] = {}
    for key, value in template.items():
        if isinstance(value, Mapping):
            value = _without_empty(value)
        elif isinstance(value, list):
            value = [_without_empty(v) if isinstance(v, Mapping) else v for v in value]
        elif value is None or value == "":
            continue
        result[key] = value
    return result


def _binding_fields(binding: Any, names: tuple[str, ...]) -> dict[str, Any]:
    return {name: value for name in names if (value := getattr(binding, name, None)) is not None}


def _validate_vm(data: dict[str, Any]) -> VmRecord:
    try:
        return VmRecord.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise EntityDecodeError(f"Couldn't decode VM record: {errors}") from e


def decode_vm(vm: Any) -> VmRecord:
    """Decode a pyone VM binding, as returned by one.vm.info.

    Pool entries decode too, but they carry no PERMISSIONS.
    """
    if not hasattr(vm, "ID"):
        raise EntityDecodeError(f"Expected a VM record, got {type(vm).__name__}")

    data = _binding_fields(vm, VM_FIELDS)
    permissions = getattr(vm, "PERMISSIONS", None)
    if permissions is not None:
        data["PERMISSIONS"] = _binding_fields(permissions, PERMISSION_FIELDS)
    template = getattr(vm, "TEMPLATE", None)
    if isinstance(template, Mapping):
        data["TEMPLATE"] = _without_empty(template)
    return _validate_vm(data)


def decode_vm_pool(pool: Any) -> list[VmRecord]:
    """Decode a pyone VM_POOL binding, as returned by one.vmpool.info."""
    if not hasattr(pool, "VM"):
        raise EntityDecodeError(f"Expected a VM pool, got {type(pool).__name__}")

    records = [decode_vm(vm) for vm in pool.VM]
    logger.debug("Decoded VM pool", extra={"vm_count": len(records)})
    return records
