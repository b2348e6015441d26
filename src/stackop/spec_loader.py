"""Stack spec loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import StackSpec

logger = logging.getLogger(__name__)

SUPPORTED_API_VERSIONS = ("stackop.io/v1",)
STACK_KIND = "Stack"


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def load_stack_spec(spec_path: Path, max_resources: int | None = None) -> StackSpec:
    """Load and validate a stack spec from YAML.

    Both a flat document and a Kubernetes-style wrapper are accepted:

    ```yaml
    apiVersion: stackop.io/v1
    kind: Stack
    metadata:
      name: livekit
    spec:
      resources: [...]
    ```

    Args:
        spec_path: Path to the YAML file.
        max_resources: Upper bound on declared resources.

    Returns:
        Validated StackSpec.

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

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        api_version = raw_data.get("apiVersion")
        if api_version not in SUPPORTED_API_VERSIONS:
            raise SpecLoadError(
                f"Unsupported apiVersion '{api_version}' in {spec_path}, "
                f"expected one of {list(SUPPORTED_API_VERSIONS)}"
            )
        kind = raw_data.get("kind", STACK_KIND)
        if kind != STACK_KIND:
            raise SpecLoadError(f"Unsupported kind '{kind}' in {spec_path}, expected {STACK_KIND}")
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = StackSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    if max_resources is not None and len(spec.resources) > max_resources:
        raise SpecLoadError(
            f"Spec declares {len(spec.resources)} resources, "
            f"maximum is {max_resources}: {spec_path}"
        )

    logger.info(
        "Loaded stack spec from %s",
        spec_path,
        extra={"resources": [r.name for r in spec.resources]},
    )
    return spec
