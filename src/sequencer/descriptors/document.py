"""Target-state document loading.

The document is a single JSON object::

    {
      "project": "my-project",
      "region": "europe-west3",
      "resources": [
        {"id": "vpc", "kind": "Network", "spec": {"name": "gke-vpc"}},
        {"id": "subnet", "kind": "Subnet", "depends_on": ["vpc"],
         "spec": {"ip_cidr_range": "10.10.0.0/20"}}
      ]
    }

Validation happens with pydantic; any parse or schema problem surfaces as
``InvalidDescriptor`` so the CLI can exit with the fatal code.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..errors import InvalidDescriptor
from .model import ResourceDescriptor, ResourceKind, index_descriptors


# ── Request schemas ───────────────────────────────────────────────────


class ResourceDocument(BaseModel):
    id: str = Field(min_length=1)
    kind: ResourceKind
    spec: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)


class TargetDocument(BaseModel):
    project: str | None = None
    region: str | None = None
    resources: list[ResourceDocument] = Field(default_factory=list)


# ── Parsed target ─────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class TargetState:
    """Validated target state: optional project/region + descriptors."""

    project: str | None
    region: str | None
    descriptors: tuple[ResourceDescriptor, ...]


def parse_target_document(payload: Any) -> TargetState:
    """Validate an already-decoded document."""
    try:
        document = TargetDocument.model_validate(payload)
    except ValidationError as exc:
        raise InvalidDescriptor(f'invalid target document: {exc}') from exc

    try:
        descriptors = tuple(
            ResourceDescriptor(
                id=resource.id,
                kind=resource.kind,
                spec=resource.spec,
                depends_on=frozenset(resource.depends_on),
            )
            for resource in document.resources
        )
    except ValueError as exc:
        raise InvalidDescriptor(str(exc)) from exc

    index_descriptors(descriptors)
    return TargetState(
        project=document.project,
        region=document.region,
        descriptors=descriptors,
    )


def load_target_document(path: str | Path) -> TargetState:
    """Read and validate a target-state JSON file."""
    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding='utf-8'))
    except FileNotFoundError as exc:
        raise InvalidDescriptor(f'target document not found: {path}') from exc
    except json.JSONDecodeError as exc:
        raise InvalidDescriptor(f'{path}: {exc}') from exc
    return parse_target_document(payload)
