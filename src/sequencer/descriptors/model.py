"""Resource descriptor model.

A descriptor is the declared specification of one infrastructure unit plus
the ids of the descriptors it depends on. Descriptors are immutable once
built: ``spec`` is deep-copied and exposed read-only, and ``spec_hash`` is
the change-detection key stored in the ledger.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from ..errors import InvalidDescriptor


class ResourceKind(Enum):
    """Every infrastructure unit the sequencer knows how to provision."""

    NETWORK = 'Network'
    SUBNET = 'Subnet'
    CLUSTER = 'Cluster'
    NODE_POOL = 'NodePool'
    SERVICE_ACCOUNT = 'ServiceAccount'
    IAM_BINDING = 'IamBinding'
    BUCKET = 'Bucket'
    STATIC_ADDRESS = 'StaticAddress'
    NAMESPACE = 'Namespace'
    K8S_SERVICE_ACCOUNT = 'K8sServiceAccount'
    INGRESS = 'Ingress'
    MANAGED_CERTIFICATE = 'ManagedCertificate'
    DNS_RECORD = 'DnsRecord'
    MANIFEST = 'Manifest'


GCP_KINDS = frozenset(
    {
        ResourceKind.NETWORK,
        ResourceKind.SUBNET,
        ResourceKind.CLUSTER,
        ResourceKind.NODE_POOL,
        ResourceKind.SERVICE_ACCOUNT,
        ResourceKind.IAM_BINDING,
        ResourceKind.BUCKET,
        ResourceKind.STATIC_ADDRESS,
    }
)

KUBERNETES_KINDS = frozenset(
    {
        ResourceKind.NAMESPACE,
        ResourceKind.K8S_SERVICE_ACCOUNT,
        ResourceKind.INGRESS,
        ResourceKind.MANAGED_CERTIFICATE,
        ResourceKind.MANIFEST,
    }
)


@dataclass(frozen=True, slots=True)
class ResourceDescriptor:
    """Declared specification of one infrastructure resource."""

    id: str
    kind: ResourceKind
    spec: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}),
        hash=False,
        compare=False,
    )
    depends_on: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.id or not self.id.strip():
            raise ValueError('descriptor id must be non-empty')
        if not isinstance(self.kind, ResourceKind):
            object.__setattr__(self, 'kind', ResourceKind(self.kind))
        object.__setattr__(
            self, 'spec', MappingProxyType(copy.deepcopy(dict(self.spec)))
        )
        object.__setattr__(self, 'depends_on', frozenset(self.depends_on))
        if self.id in self.depends_on:
            raise ValueError(f'descriptor {self.id!r} depends on itself')

    @property
    def name(self) -> str:
        """External resource name: ``spec.name`` or the descriptor id."""
        return str(self.spec.get('name') or self.id)

    @property
    def spec_hash(self) -> str:
        return compute_spec_hash(self.spec)


def compute_spec_hash(spec: Mapping[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of ``spec``."""
    canonical = json.dumps(
        _thaw(spec), sort_keys=True, separators=(',', ':'), default=str,
    )
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def index_descriptors(
    descriptors: Iterable[ResourceDescriptor],
) -> dict[str, ResourceDescriptor]:
    """Map id -> descriptor, rejecting duplicate ids."""
    by_id: dict[str, ResourceDescriptor] = {}
    for descriptor in descriptors:
        if descriptor.id in by_id:
            raise InvalidDescriptor(f'duplicate descriptor id {descriptor.id!r}')
        by_id[descriptor.id] = descriptor
    return by_id


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_thaw(v) for v in value]
    return value
