"""State ledger: durable last-known status per resource.

The ledger is the single source of truth for what the sequencer believes
already exists. Every transition goes through ``record()`` which validates
the edge against the execution state machine and persists the full ledger
before returning, so a crash between steps leaves the file consistent with
the last confirmed external state.

Concurrency: writes for one resource id are serialized with a per-id lock;
independent ids may be recorded concurrently. File flushes are serialized
with a single flush lock and written atomically (temp file + rename).

Implementations:
  - ``Ledger``: in-memory, used by tests and dry runs.
  - ``FileLedger``: JSON file on local disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, Field, ValidationError

from ..descriptors.model import ResourceDescriptor, ResourceKind
from ..errors import LedgerCorruption
from ..state_machine import ExecutionState, check_transition

logger = logging.getLogger(__name__)

LEDGER_FORMAT_VERSION = 1

_CLEARS_ERROR = frozenset(
    {
        ExecutionState.PENDING,
        ExecutionState.IN_PROGRESS,
        ExecutionState.READY,
        ExecutionState.DESTROYED,
    }
)


@dataclass(frozen=True, slots=True)
class LedgerRecord:
    """Last-known status of one resource."""

    id: str
    kind: str
    state: ExecutionState
    last_updated: datetime
    external_identity: str | None = None
    rank: int = 0
    spec_hash: str | None = None
    depends_on: tuple[str, ...] = ()
    last_error: str | None = None
    spec: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def to_descriptor(self) -> ResourceDescriptor:
        """Rebuild the descriptor this record was last applied with."""
        return ResourceDescriptor(
            id=self.id,
            kind=ResourceKind(self.kind),
            spec=self.spec,
            depends_on=frozenset(self.depends_on),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind,
            'state': self.state.value,
            'external_identity': self.external_identity,
            'last_updated': self.last_updated.isoformat(),
            'rank': self.rank,
            'spec_hash': self.spec_hash,
            'depends_on': list(self.depends_on),
            'last_error': self.last_error,
            'spec': dict(self.spec),
        }


class _RecordModel(BaseModel):
    id: str = Field(min_length=1)
    kind: str
    state: ExecutionState
    external_identity: str | None = None
    last_updated: datetime
    rank: int = 0
    spec_hash: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    last_error: str | None = None
    spec: dict[str, Any] = Field(default_factory=dict)


class _LedgerFileModel(BaseModel):
    version: int
    placement: dict[str, str] = Field(default_factory=dict)
    records: list[_RecordModel]


class Ledger:
    """In-memory ledger. Subclasses override ``_persist`` for durability.

    ``placement`` holds the provider location (GCP project and region) the
    recorded resources were created in, so teardown and status checks
    address the same location whatever the current environment says.
    """

    def __init__(
        self,
        records: Iterable[LedgerRecord] = (),
        placement: Mapping[str, str] | None = None,
    ) -> None:
        self._records: dict[str, LedgerRecord] = {r.id: r for r in records}
        self.placement: dict[str, str] = dict(placement or {})
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._flush_lock = asyncio.Lock()
        self.history: list[tuple[str, ExecutionState]] = []

    def get(self, resource_id: str) -> LedgerRecord | None:
        return self._records.get(resource_id)

    def snapshot(self) -> list[LedgerRecord]:
        """All records ordered by (rank, id)."""
        return sorted(self._records.values(), key=lambda r: (r.rank, r.id))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._records

    async def record(
        self,
        resource_id: str,
        state: ExecutionState,
        *,
        kind: str | None = None,
        external_identity: str | None = None,
        rank: int | None = None,
        spec_hash: str | None = None,
        depends_on: Iterable[str] | None = None,
        spec: Mapping[str, Any] | None = None,
        last_error: str | None = None,
        now: datetime | None = None,
    ) -> LedgerRecord:
        """Validate and persist one state transition.

        Fields left as ``None`` keep their previous value. ``last_error`` is
        cleared on transitions into non-failure states unless given.
        """
        async with self._locks[resource_id]:
            current = self._records.get(resource_id)
            check_transition(
                resource_id, current.state if current else None, state,
            )
            timestamp = now or datetime.now(timezone.utc)

            if current is None:
                if kind is None:
                    raise ValueError(
                        f'kind is required for new ledger record {resource_id!r}'
                    )
                updated = LedgerRecord(
                    id=resource_id,
                    kind=kind,
                    state=state,
                    last_updated=timestamp,
                    external_identity=external_identity,
                    rank=rank or 0,
                    spec_hash=spec_hash,
                    depends_on=tuple(sorted(depends_on or ())),
                    last_error=last_error,
                    spec=dict(spec or {}),
                )
            else:
                error = last_error
                if error is None and state not in _CLEARS_ERROR:
                    error = current.last_error
                updated = replace(
                    current,
                    state=state,
                    last_updated=timestamp,
                    kind=kind or current.kind,
                    external_identity=(
                        external_identity or current.external_identity
                    ),
                    rank=current.rank if rank is None else rank,
                    spec_hash=spec_hash or current.spec_hash,
                    depends_on=(
                        current.depends_on
                        if depends_on is None
                        else tuple(sorted(depends_on))
                    ),
                    last_error=error,
                    spec=current.spec if spec is None else dict(spec),
                )

            self._records[resource_id] = updated
            self.history.append((resource_id, state))
            await self._flush()

        logger.debug(
            'Ledger transition: id=%s %s -> %s',
            resource_id,
            current.state.value if current else '<new>',
            state.value,
            extra={'resource_id': resource_id, 'state': state.value},
        )
        return updated

    async def pin_placement(self, placement: Mapping[str, str]) -> None:
        """Persist the location subsequent records are created in."""
        if dict(placement) == self.placement:
            return
        async with self._flush_lock:
            self.placement = dict(placement)
            await self._persist(self.snapshot())
        logger.info(
            'Ledger placement pinned: %s',
            ', '.join(f'{k}={v}' for k, v in sorted(self.placement.items())),
            extra={'placement': dict(self.placement)},
        )

    async def remove(self, resource_id: str) -> None:
        """Drop a record. Only allowed once ``Destroyed`` is persisted,
        or for entries that never issued a create call."""
        async with self._locks[resource_id]:
            current = self._records.get(resource_id)
            if current is None:
                return
            if current.state not in (
                ExecutionState.DESTROYED,
                ExecutionState.PENDING,
                ExecutionState.BLOCKED,
            ):
                raise ValueError(
                    f'cannot remove {resource_id!r} in state '
                    f'{current.state.value!r}'
                )
            del self._records[resource_id]
            await self._flush()

    async def _flush(self) -> None:
        async with self._flush_lock:
            await self._persist(self.snapshot())

    async def _persist(self, records: list[LedgerRecord]) -> None:
        return None


class FileLedger(Ledger):
    """Ledger persisted as a JSON document on local disk."""

    def __init__(
        self,
        path: str | Path,
        records: Iterable[LedgerRecord] = (),
        placement: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(records, placement)
        self.path = Path(path)

    @classmethod
    def load(cls, path: str | Path) -> FileLedger:
        """Load the ledger at ``path``; a missing file is an empty ledger.

        Raises:
            LedgerCorruption: The file exists but cannot be parsed or
                validated. It is never silently discarded.
        """
        path = Path(path)
        if not path.exists():
            return cls(path)

        try:
            payload = json.loads(path.read_text(encoding='utf-8'))
            document = _LedgerFileModel.model_validate(payload)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise LedgerCorruption(str(path), str(exc)) from exc

        if document.version != LEDGER_FORMAT_VERSION:
            raise LedgerCorruption(
                str(path), f'unsupported ledger version {document.version}',
            )

        seen: set[str] = set()
        records: list[LedgerRecord] = []
        for row in document.records:
            if row.id in seen:
                raise LedgerCorruption(str(path), f'duplicate record {row.id!r}')
            seen.add(row.id)
            records.append(
                LedgerRecord(
                    id=row.id,
                    kind=row.kind,
                    state=row.state,
                    last_updated=row.last_updated,
                    external_identity=row.external_identity,
                    rank=row.rank,
                    spec_hash=row.spec_hash,
                    depends_on=tuple(row.depends_on),
                    last_error=row.last_error,
                    spec=row.spec,
                )
            )
        return cls(path, records, document.placement)

    async def _persist(self, records: list[LedgerRecord]) -> None:
        document = {
            'version': LEDGER_FORMAT_VERSION,
            'placement': dict(self.placement),
            'records': [r.to_dict() for r in records],
        }
        await asyncio.to_thread(_write_atomic, self.path, document)


def _write_atomic(path: Path, document: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent,
    )
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as fh:
            json.dump(document, fh, indent=2, sort_keys=False)
            fh.write('\n')
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
