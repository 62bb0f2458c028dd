"""OpenNebula permission codec.

OpenNebula stores object permissions as nine independent bits: use, manage
and admin for each of owner, group and other. Users write them as a Unix-like
octal triple (owner-group-other) where each digit combines use=4, manage=2,
admin=1. This module converts between the two forms.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

PERMISSION_CLASSES: tuple[str, ...] = ("owner", "group", "other")

USE_BIT = 4
MANAGE_BIT = 2
ADMIN_BIT = 1


class AttributeValidationError(ValueError):
    """Raised when a declared attribute is malformed.

    Always raised before any remote call is attempted.
    """


class PermissionFormatError(AttributeValidationError):
    """Raised when a permission string is not a valid octal triple."""


class Permissions(BaseModel):
    """The nine OpenNebula permission bits as found in <PERMISSIONS>."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    owner_u: int = Field(0, alias="OWNER_U", ge=0, le=1)
    owner_m: int = Field(0, alias="OWNER_M", ge=0, le=1)
    owner_a: int = Field(0, alias="OWNER_A", ge=0, le=1)
    group_u: int = Field(0, alias="GROUP_U", ge=0, le=1)
    group_m: int = Field(0, alias="GROUP_M", ge=0, le=1)
    group_a: int = Field(0, alias="GROUP_A", ge=0, le=1)
    other_u: int = Field(0, alias="OTHER_U", ge=0, le=1)
    other_m: int = Field(0, alias="OTHER_M", ge=0, le=1)
    other_a: int = Field(0, alias="OTHER_A", ge=0, le=1)

    def to_chmod_args(self) -> tuple[int, ...]:
        """Arguments for one.*.chmod, in the order the API expects them."""
        return (
            self.owner_u,
            self.owner_m,
            self.owner_a,
            self.group_u,
            self.group_m,
            self.group_a,
            self.other_u,
            self.other_m,
            self.other_a,
        )


def validate_permission_string(value: str) -> str:
    """Check that value is a 3-digit owner-group-other triple of 0..7.

    Raises:
        PermissionFormatError: If the string is malformed.
    """
    if not isinstance(value, str) or len(value) != 3:
        raise PermissionFormatError(
            f"permissions must specify 3 permission sets (owner-group-other): {value!r}"
        )
    if any(c < "0" or c > "7" for c in value):
        raise PermissionFormatError(
            "each character in permissions must be a Unix-like permission set "
            f"from 0 to 7: {value!r}"
        )
    return value


def encode_permissions(value: str) -> Permissions:
    """Convert an octal triple such as "640" into OpenNebula permission bits."""
    validate_permission_string(value)

    bits: dict[str, int] = {}
    for cls, digit in zip(PERMISSION_CLASSES, value, strict=True):
        n = int(digit)
        bits[f"{cls}_u"] = 1 if n & USE_BIT else 0
        bits[f"{cls}_m"] = 1 if n & MANAGE_BIT else 0
        bits[f"{cls}_a"] = 1 if n & ADMIN_BIT else 0
    return Permissions(**bits)


def decode_permissions(permissions: Permissions) -> str:
    """Convert OpenNebula permission bits back into an octal triple."""
    digits = []
    for cls in PERMISSION_CLASSES:
        n = 0
        if getattr(permissions, f"{cls}_u"):
            n |= USE_BIT
        if getattr(permissions, f"{cls}_m"):
            n |= MANAGE_BIT
        if getattr(permissions, f"{cls}_a"):
            n |= ADMIN_BIT
        digits.append(str(n))
    return "".join(digits)
