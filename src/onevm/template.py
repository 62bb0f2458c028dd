"""Build the extra template passed to one.template.instantiate.

The output is OpenNebula template syntax: a NIC block, a DISK block and
optional CPU/VCPU/MEMORY lines. A field is emitted when it was declared,
so an explicit zero is still sent.

Values are wrapped in double quotes. Backslashes and double quotes inside a
value are backslash-escaped so a declared value can never close its quotes
and inject further attributes; nothing else is altered.
"""

from __future__ import annotations

from .models import VmSpec

BLOCK_SEPARATOR = ",\n "


def quote(value: object) -> str:
    """Render a value as a quoted template string."""
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def _number(value: float) -> str:
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)


def _block(name: str, attributes: list[tuple[str, object]]) -> str:
    body = BLOCK_SEPARATOR.join(f"{key}={quote(value)}" for key, value in attributes)
    return f"{name} = [\n {body} ]\n"


def build_nic_block(spec: VmSpec) -> str:
    network = spec.network
    attributes: list[tuple[str, object]] = [("NETWORK", network.network)]
    if network.network_uname is not None:
        attributes.append(("NETWORK_UNAME", network.network_uname))
    if network.search_domain is not None:
        attributes.append(("SEARCH_DOMAIN", network.search_domain))
    if network.security_group_id is not None:
        attributes.append(("SECURITY_GROUPS", network.security_group_id))
    if network.ip is not None:
        attributes.append(("IP", network.ip))
    return _block("NIC", attributes)


def build_disk_block(spec: VmSpec) -> str:
    disk = spec.disk
    # SIZE is always sent; 0 leaves the image size untouched
    attributes: list[tuple[str, object]] = [("SIZE", disk.size if disk.size is not None else 0)]
    if disk.image is not None:
        attributes.append(("IMAGE", disk.image))
    if disk.image_uname is not None:
        attributes.append(("IMAGE_UNAME", disk.image_uname))
    if disk.image_driver is not None:
        attributes.append(("DRIVER", disk.image_driver))
    return _block("DISK", attributes)


def build_instantiate_template(spec: VmSpec) -> str:
    """Map a desired state onto the instantiate request payload.

    Pure and deterministic: the same spec always yields the same text.
    """
    template = build_nic_block(spec) + build_disk_block(spec)

    if spec.cpu is not None:
        template += f"CPU = {quote(_number(spec.cpu))}\n"
    if spec.vcpu is not None:
        template += f"VCPU = {quote(spec.vcpu)}\n"
    if spec.memory is not None:
        template += f"MEMORY = {quote(spec.memory)}\n"

    return template
