"""Dependency planner: descriptors -> ranked concurrent batches.

Algorithm: Kahn's topological sort. Each batch holds every node whose
remaining in-degree is zero once earlier batches are removed; nodes within
a batch are ordered by ascending id so plans (and logs) are reproducible.

Re-planning: given a ledger, descriptors that are already ``Ready`` with an
unchanged ``spec_hash`` are excluded and their dependents treat them as
satisfied. Cycle detection always runs over the full descriptor set first,
so a cycle is reported even when every member of it is unchanged.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Protocol

from ..descriptors.model import ResourceDescriptor, index_descriptors
from ..errors import CycleDetected, InvalidDescriptor
from ..ledger.ledger import LedgerRecord
from ..state_machine import ExecutionState


class LedgerView(Protocol):
    def get(self, resource_id: str) -> LedgerRecord | None: ...


class EntryAction(Enum):
    """What the executor will do for a plan entry."""

    CREATE = 'create'
    UPDATE = 'update'
    RESUME = 'resume'


@dataclass(frozen=True, slots=True)
class PlanEntry:
    """A descriptor scheduled at its topological rank."""

    descriptor: ResourceDescriptor
    rank: int
    action: EntryAction = EntryAction.CREATE

    @property
    def id(self) -> str:
        return self.descriptor.id


@dataclass(frozen=True, slots=True)
class Plan:
    """Ordered batches plus the ids excluded as already converged."""

    batches: tuple[tuple[PlanEntry, ...], ...]
    unchanged: tuple[str, ...] = ()

    @property
    def entries(self) -> list[PlanEntry]:
        return [entry for batch in self.batches for entry in batch]

    @property
    def is_empty(self) -> bool:
        return not self.batches

    def batch_ids(self) -> list[list[str]]:
        return [[entry.id for entry in batch] for batch in self.batches]

    def dependents_of(self, resource_id: str) -> set[str]:
        """Transitive dependents of ``resource_id`` within this plan."""
        children: dict[str, set[str]] = defaultdict(set)
        for entry in self.entries:
            for dep in entry.descriptor.depends_on:
                children[dep].add(entry.id)
        found: set[str] = set()
        stack = [resource_id]
        while stack:
            for child in children.get(stack.pop(), ()):
                if child not in found:
                    found.add(child)
                    stack.append(child)
        return found


def plan(
    descriptors: Iterable[ResourceDescriptor],
    ledger: LedgerView | None = None,
) -> Plan:
    """Compute the execution plan.

    Raises:
        InvalidDescriptor: Duplicate ids, unknown dependency ids, or a
            descriptor whose resource is mid-teardown.
        CycleDetected: The dependency graph is not acyclic.
    """
    by_id = index_descriptors(descriptors)

    for descriptor in by_id.values():
        unknown = sorted(descriptor.depends_on - by_id.keys())
        if unknown:
            raise InvalidDescriptor(
                f'{descriptor.id!r} depends on unknown id(s): '
                + ', '.join(unknown)
            )

    topological_batches(
        {d.id: set(d.depends_on) for d in by_id.values()}
    )

    actions: dict[str, EntryAction] = {}
    unchanged: list[str] = []
    for resource_id, descriptor in by_id.items():
        record = ledger.get(resource_id) if ledger is not None else None
        action = _action_for(descriptor, record)
        if action is None:
            unchanged.append(resource_id)
        else:
            actions[resource_id] = action

    edges = {
        resource_id: {
            dep for dep in by_id[resource_id].depends_on if dep in actions
        }
        for resource_id in actions
    }
    batches = tuple(
        tuple(
            PlanEntry(
                descriptor=by_id[resource_id],
                rank=rank,
                action=actions[resource_id],
            )
            for resource_id in batch
        )
        for rank, batch in enumerate(topological_batches(edges))
    )
    return Plan(batches=batches, unchanged=tuple(sorted(unchanged)))


def topological_batches(edges: Mapping[str, set[str]]) -> list[list[str]]:
    """Kahn's algorithm grouped by rank; raises ``CycleDetected``.

    ``edges`` maps each node to the set of nodes it depends on.
    """
    indegree = {node: len(deps) for node, deps in edges.items()}
    children: dict[str, list[str]] = defaultdict(list)
    for node, deps in edges.items():
        for dep in deps:
            children[dep].append(node)

    batches: list[list[str]] = []
    frontier = sorted(node for node, degree in indegree.items() if degree == 0)
    placed = 0
    while frontier:
        batches.append(frontier)
        placed += len(frontier)
        released: list[str] = []
        for node in frontier:
            for child in children[node]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    released.append(child)
        frontier = sorted(released)

    if placed != len(indegree):
        raise CycleDetected(
            node for node, degree in indegree.items() if degree > 0
        )
    return batches


def _action_for(
    descriptor: ResourceDescriptor, record: LedgerRecord | None,
) -> EntryAction | None:
    if record is None:
        return EntryAction.CREATE
    changed = record.spec_hash != descriptor.spec_hash
    if record.state is ExecutionState.READY:
        return EntryAction.UPDATE if changed else None
    if record.state is ExecutionState.IN_PROGRESS:
        return EntryAction.UPDATE if changed else EntryAction.RESUME
    if record.state in (ExecutionState.DESTROYING, ExecutionState.DESTROYED):
        raise InvalidDescriptor(
            f'{descriptor.id!r} is being destroyed; run destroy to '
            'completion before applying again'
        )
    return EntryAction.CREATE
