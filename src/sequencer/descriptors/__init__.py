"""Resource descriptors and target-state documents."""

from .document import (
    TargetState,
    load_target_document,
    parse_target_document,
)
from .model import (
    GCP_KINDS,
    KUBERNETES_KINDS,
    ResourceDescriptor,
    ResourceKind,
    compute_spec_hash,
    index_descriptors,
)

__all__ = [
    'GCP_KINDS',
    'KUBERNETES_KINDS',
    'ResourceDescriptor',
    'ResourceKind',
    'TargetState',
    'compute_spec_hash',
    'index_descriptors',
    'load_target_document',
    'parse_target_document',
]
