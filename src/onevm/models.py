"""Pydantic models for the declared and observed VM state.

These models provide:
1. Type-safe parsing of desired-state files
2. Validation at the boundary (malformed permissions or addresses fail
   before any remote call)
3. A flat view of the observed remote attributes after each Read
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, ClassVar

from pydantic import BaseModel, Field, field_validator

from .permissions import (
    AttributeValidationError,
    decode_permissions,
    validate_permission_string,
)

if TYPE_CHECKING:
    from .entity import VmRecord

IPV4_OCTETS = 4
IPV4_OCTET_MAX = 255


class AddressFormatError(AttributeValidationError):
    """Raised when a static address is not a dotted quad."""


def validate_ip_address(value: str) -> str:
    """Check that value is four period-separated integers in [0, 255].

    Raises:
        AddressFormatError: If the address is malformed.
    """
    parts = value.split(".")
    if len(parts) != IPV4_OCTETS:
        raise AddressFormatError(f"ip doesn't consist of four octets: {value!r}")

    for part in parts:
        if not (part.isascii() and part.isdigit()):
            raise AddressFormatError(f"ip is not a valid dotted-quad address: {value!r}")
        if not 0 <= int(part) <= IPV4_OCTET_MAX:
            raise AddressFormatError(f"ip octets are not in a valid range: {value!r}")
    return value


# =============================================================================
# Desired state
# =============================================================================


class DiskSpec(BaseModel):
    """Disk attached at index 0 of the VM."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    image: str | None = None
    image_uname: str | None = Field(None, alias="imageUname")
    image_driver: str | None = Field(None, alias="imageDriver")
    size: Annotated[int, Field(ge=0)] | None = None


class NetworkSpec(BaseModel):
    """The VM's single network interface."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    network: Annotated[str, Field(min_length=1)]
    network_uname: str | None = Field(None, alias="networkUname")
    search_domain: str | None = Field(None, alias="searchDomain")
    security_group_id: Annotated[int, Field(ge=0)] | None = Field(
        None, alias="securityGroupId"
    )
    ip: str | None = None

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return validate_ip_address(v)


class VmSpec(BaseModel):
    """Declared desired state of one VM.

    template_id only selects the template at creation time. cpu, vcpu,
    memory and network.ip cannot change in place; name, permissions and
    disk.size can.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    IMMUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("cpu", "vcpu", "memory", "ip")
    MUTABLE_FIELDS: ClassVar[tuple[str, ...]] = ("permissions", "size", "name")

    template_id: Annotated[int, Field(ge=0, alias="templateId")]
    name: Annotated[str, Field(min_length=1, max_length=128)] | None = None
    cpu: Annotated[float, Field(ge=0)] | None = None
    vcpu: Annotated[int, Field(ge=0)] | None = None
    memory: Annotated[int, Field(ge=0)] | None = None
    disk: DiskSpec = Field(default_factory=DiskSpec)
    network: NetworkSpec
    permissions: str | None = None

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return validate_permission_string(v)

    @property
    def size(self) -> int | None:
        return self.disk.size

    @property
    def ip(self) -> str | None:
        return self.network.ip


# =============================================================================
# Observed state
# =============================================================================


class VmObservedState(BaseModel):
    """Every locally tracked attribute, as last read from OpenNebula."""

    model_config = {"extra": "ignore"}

    id: str
    name: str = ""
    uid: int = 0
    gid: int = 0
    uname: str = ""
    gname: str = ""
    state: int = 0
    lcm_state: int = 0
    cpu: float = 0.0
    vcpu: int = 0
    memory: int = 0
    image: str = ""
    size: int = 0
    image_driver: str = ""
    image_uname: str = ""
    network: str = ""
    network_uname: str = ""
    network_search_domain: str = ""
    security_group_id: int = 0
    ip: str = ""
    permissions: str = ""

    @classmethod
    def from_record(cls, record: VmRecord) -> VmObservedState:
        """Flatten a decoded VM record into the tracked attribute set."""
        template = record.template
        return cls(
            id=record.id,
            name=record.name,
            uid=record.uid,
            gid=record.gid,
            uname=record.uname,
            gname=record.gname,
            state=record.state,
            lcm_state=record.lcm_state,
            cpu=template.cpu,
            vcpu=template.vcpu,
            memory=template.memory,
            image=template.disk.image,
            size=template.disk.size,
            image_driver=template.disk.driver,
            image_uname=template.disk.image_uname,
            network=template.nic.network,
            network_uname=template.nic.network_uname,
            network_search_domain=template.nic.search_domain,
            security_group_id=template.nic.security_groups,
            ip=template.context.eth0_ip,
            permissions=decode_permissions(record.permissions),
        )
