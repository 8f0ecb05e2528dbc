"""Manifest loading with validation.

A manifest declares the instances to manage and how they depend on each
other:

    apiVersion: lifecycle/v1
    resources:
      - name: rg
        kind: resource_group
        desired: {name: lcr-test-abc123, location: westeurope}
      - name: rg-lock
        kind: management_lock
        dependsOn: [rg]
        desired: {scope: /subscriptions/.../resourceGroups/lcr-test-abc123, name: no-delete}

SECURITY: File size and resource count are bounded. Desired state is
validated against the kind's typed model at the boundary.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_MANIFEST_RESOURCES
from .dependency import DependencyGraph
from .models import validate_desired
from .reconciler import ReconcileRequest

logger = logging.getLogger(__name__)

MANIFEST_API_VERSION = "lifecycle/v1"
VALID_ENTRY_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]{0,62}$"


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


class ManifestResource(BaseModel):
    """One declared instance."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: str
    kind: str
    id: str = ""
    desired: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_ENTRY_NAME_PATTERN, v):
            raise ValueError(f"name must match {VALID_ENTRY_NAME_PATTERN}: {v}")
        return v

    @model_validator(mode="after")
    def validate_desired_state(self) -> ManifestResource:
        self.desired = validate_desired(self.kind, self.desired)
        return self

    def to_request(self) -> ReconcileRequest:
        return ReconcileRequest(kind=self.kind, desired=self.desired, id=self.id, name=self.name)


class Manifest(BaseModel):
    """A validated manifest."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: str = Field(MANIFEST_API_VERSION, alias="apiVersion")
    resources: Annotated[list[ManifestResource], Field(max_length=MAX_MANIFEST_RESOURCES)] = (
        Field(default_factory=list)
    )

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v != MANIFEST_API_VERSION:
            raise ValueError(f"apiVersion must be '{MANIFEST_API_VERSION}'")
        return v

    @model_validator(mode="after")
    def validate_references(self) -> Manifest:
        names = [r.name for r in self.resources]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate resource names: {duplicates}")
        known = set(names)
        for resource in self.resources:
            missing = [d for d in resource.depends_on if d not in known]
            if missing:
                raise ValueError(f"Resource '{resource.name}' depends on unknown {missing}")
        return self

    def get(self, name: str) -> ManifestResource:
        for resource in self.resources:
            if resource.name == name:
                return resource
        raise KeyError(name)

    @property
    def has_dependencies(self) -> bool:
        return any(r.depends_on for r in self.resources)

    def graph(self) -> DependencyGraph:
        """Build the dependency graph keyed by entry name.

        Raises:
            DependencyError: The declared dependencies contain a cycle.
        """
        graph = DependencyGraph()
        for resource in self.resources:
            graph.add_node(resource.name, resource.depends_on)
        graph.validate()
        return graph


def parse_manifest(raw_data: Any, source: str = "<manifest>") -> Manifest:
    """Validate already-parsed manifest data.

    Raises:
        ManifestLoadError: If the data fails validation.
    """
    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest must contain a YAML mapping: {source}")

    try:
        manifest = Manifest.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {source}:\n{error_list}") from e

    return manifest


def load_manifest(path: Path) -> Manifest:
    """Load and validate a manifest from YAML.

    Args:
        path: Path to the manifest file.

    Returns:
        Validated manifest.

    Raises:
        ManifestLoadError: If the manifest cannot be loaded or fails validation.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    manifest = parse_manifest(raw_data, str(path))
    logger.info(
        "Loaded manifest",
        extra={"path": str(path), "resources": len(manifest.resources)},
    )
    return manifest
