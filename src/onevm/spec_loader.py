"""Desired-state file loading with validation.

SECURITY: File reads enforce a size limit and YAML is parsed with
safe_load. Validation happens here, at the boundary, so malformed
permissions or addresses never reach a remote call.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import VmSpec

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as one "loc: msg" line each."""
    lines = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"])
        lines.append(f"  - {loc}: {err['msg']}")
    return "\n".join(lines)


def parse_spec(raw_data: Any, source: str = "<data>") -> VmSpec:
    """Validate already-parsed YAML data into a VmSpec.

    Accepts the flat format and the Kubernetes-style wrapper
    (apiVersion/kind/metadata/spec).

    Raises:
        SpecLoadError: If the data is not a valid desired state.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec must be a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        # metadata.name doubles as the VM name unless the spec sets one
        metadata = raw_data.get("metadata") or {}
        if isinstance(metadata, dict) and metadata.get("name") and "name" not in spec_data:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    try:
        return VmSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {source}:\n{format_validation_error(e)}"
        ) from e


def load_spec(spec_path: Path) -> VmSpec:
    """Load and validate a desired-state file.

    Args:
        spec_path: YAML file describing one VM.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    spec = parse_spec(raw_data, str(spec_path))
    logger.info(
        "Loaded VM spec from %s",
        spec_path,
        extra={"template_id": spec.template_id, "vm_name": spec.name or ""},
    )
    return spec
