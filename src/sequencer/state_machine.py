"""Per-resource execution state machine.

Canonical flows:
  Pending -> InProgress -> Ready
  InProgress -> Failed
  Ready -> Destroying -> Destroyed

Re-run and teardown edges:
  Failed | Blocked -> InProgress      (next apply retries the entry)
  Ready -> InProgress                 (spec changed, re-apply)
  InProgress -> InProgress            (resume: re-poll, never re-create)
  Pending | Blocked -> Blocked        (a dependency failed)
  Failed -> Failed                    (a dependency failed; the resource may exist)
  InProgress | Failed -> Destroying   (teardown of partially created resources)
  Destroying -> Destroying            (retry of a failed delete)
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType


class ExecutionState(Enum):
    """Runtime status of one resource."""

    PENDING = 'Pending'
    IN_PROGRESS = 'InProgress'
    READY = 'Ready'
    FAILED = 'Failed'
    BLOCKED = 'Blocked'
    DESTROYING = 'Destroying'
    DESTROYED = 'Destroyed'


# States in which the external resource may exist and must be deleted on
# teardown. Pending and Blocked entries never issued a create call.
MAYBE_EXISTS_STATES = frozenset(
    {
        ExecutionState.IN_PROGRESS,
        ExecutionState.READY,
        ExecutionState.FAILED,
        ExecutionState.DESTROYING,
    }
)

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        None: frozenset({ExecutionState.PENDING, ExecutionState.BLOCKED}),
        ExecutionState.PENDING: frozenset(
            {ExecutionState.IN_PROGRESS, ExecutionState.BLOCKED}
        ),
        ExecutionState.IN_PROGRESS: frozenset(
            {
                ExecutionState.IN_PROGRESS,
                ExecutionState.READY,
                ExecutionState.FAILED,
                ExecutionState.DESTROYING,
            }
        ),
        ExecutionState.READY: frozenset(
            {ExecutionState.IN_PROGRESS, ExecutionState.DESTROYING}
        ),
        ExecutionState.FAILED: frozenset(
            {
                ExecutionState.IN_PROGRESS,
                ExecutionState.FAILED,
                ExecutionState.DESTROYING,
            }
        ),
        ExecutionState.BLOCKED: frozenset(
            {ExecutionState.IN_PROGRESS, ExecutionState.BLOCKED}
        ),
        ExecutionState.DESTROYING: frozenset(
            {ExecutionState.DESTROYING, ExecutionState.DESTROYED}
        ),
        ExecutionState.DESTROYED: frozenset(),
    }
)


class InvalidStateTransition(ValueError):
    """Raised for invalid execution state transitions."""

    def __init__(
        self,
        resource_id: str,
        from_state: ExecutionState | None,
        to_state: ExecutionState,
    ) -> None:
        self.resource_id = resource_id
        self.from_state = from_state
        self.to_state = to_state
        source = from_state.value if from_state is not None else '<new>'
        super().__init__(
            f'invalid state transition for {resource_id!r}: '
            f'{source!r} -> {to_state.value!r}'
        )


def check_transition(
    resource_id: str,
    from_state: ExecutionState | None,
    to_state: ExecutionState,
) -> None:
    """Raise ``InvalidStateTransition`` unless the edge is allowed."""
    if to_state not in ALLOWED_TRANSITIONS.get(from_state, frozenset()):
        raise InvalidStateTransition(resource_id, from_state, to_state)
