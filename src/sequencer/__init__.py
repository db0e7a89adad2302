"""Dependency-ordered provisioning sequencer.

Takes a declared target state (resource descriptors with explicit
dependencies), plans it into topological batches, drives each resource to
readiness against its control plane, and records every transition in a
durable ledger so interrupted runs resume and teardown runs in reverse.
"""

from .descriptors import ResourceDescriptor, ResourceKind, TargetState, load_target_document
from .ledger import FileLedger, Ledger
from .planning import Plan, plan
from .service import Sequencer
from .settings import SequencerSettings
from .state_machine import ExecutionState

__all__ = [
    "ExecutionState",
    "FileLedger",
    "Ledger",
    "Plan",
    "ResourceDescriptor",
    "ResourceKind",
    "Sequencer",
    "SequencerSettings",
    "TargetState",
    "load_target_document",
    "plan",
]
