"""Batch runner: executes a plan batch by batch.

Entries within a batch run concurrently, bounded by a semaphore so the
external APIs are not flooded. The next batch starts only once every entry
of the current one is Ready, Failed or Blocked.

Failure propagation: when an entry fails, every transitive dependent is
recorded ``Blocked`` and skipped (a dependent that already failed in an
earlier run stays ``Failed``); entries on independent branches keep going.
The run result lists ready, failed and blocked ids precisely.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Mapping

from ..descriptors.model import ResourceDescriptor
from ..ledger.ledger import Ledger
from ..planning.planner import Plan, PlanEntry
from ..providers.protocols import ClientRegistry
from ..state_machine import ExecutionState
from .executor import ExecutionResult, StepExecutor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


@dataclass(frozen=True, slots=True)
class RunResult:
    """Outcome of one apply run."""

    ready: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    blocked: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    results: Mapping[str, ExecutionResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.success else EXIT_PARTIAL


class PlanRunner:
    """Consumes a plan, one batch at a time."""

    def __init__(
        self,
        *,
        executor: StepExecutor,
        clients: ClientRegistry,
        max_concurrency: int = 4,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError('max_concurrency must be >= 1')
        self._executor = executor
        self._clients = clients
        self._max_concurrency = max_concurrency

    async def apply(self, plan: Plan, ledger: Ledger) -> RunResult:
        """Execute ``plan`` to convergence, recording every transition."""
        for entry in plan.entries:
            # Fail fast on configuration gaps before any external call.
            self._clients.for_kind(entry.descriptor.kind)

        for entry in plan.entries:
            if ledger.get(entry.id) is None:
                await ledger.record(
                    entry.id,
                    ExecutionState.PENDING,
                    kind=entry.descriptor.kind.value,
                    rank=entry.rank,
                    spec_hash=entry.descriptor.spec_hash,
                    depends_on=entry.descriptor.depends_on,
                    spec=entry.descriptor.spec,
                )

        semaphore = asyncio.Semaphore(self._max_concurrency)
        results: dict[str, ExecutionResult] = {}
        ready: list[str] = []
        failed: list[str] = []
        blocked: list[str] = []
        unusable: set[str] = set()

        for rank, batch in enumerate(plan.batches):
            runnable: list[PlanEntry] = []
            for entry in batch:
                waiting_on = self._unready_dependencies(
                    entry.descriptor, ledger, unusable,
                )
                if waiting_on:
                    unusable.add(entry.id)
                    still_failed = await self._block(entry, ledger, waiting_on)
                    if still_failed is None:
                        blocked.append(entry.id)
                    else:
                        results[entry.id] = still_failed
                        failed.append(entry.id)
                else:
                    runnable.append(entry)

            logger.info(
                'Executing batch %d/%d: %s',
                rank + 1,
                len(plan.batches),
                ', '.join(e.id for e in runnable) or '<all blocked>',
                extra={'batch': rank, 'resource_ids': [e.id for e in runnable]},
            )

            outcomes = await asyncio.gather(
                *(self._run_one(entry, ledger, semaphore) for entry in runnable)
            )
            for outcome in outcomes:
                results[outcome.resource_id] = outcome
                if outcome.success:
                    ready.append(outcome.resource_id)
                else:
                    failed.append(outcome.resource_id)
                    unusable.add(outcome.resource_id)

        result = RunResult(
            ready=tuple(ready),
            failed=tuple(failed),
            blocked=tuple(blocked),
            unchanged=plan.unchanged,
            results=results,
        )
        logger.info(
            'Apply finished: ready=%d failed=%d blocked=%d unchanged=%d',
            len(result.ready),
            len(result.failed),
            len(result.blocked),
            len(result.unchanged),
            extra={
                'failed_ids': list(result.failed),
                'blocked_ids': list(result.blocked),
            },
        )
        return result

    async def _run_one(
        self, entry: PlanEntry, ledger: Ledger, semaphore: asyncio.Semaphore,
    ) -> ExecutionResult:
        async with semaphore:
            return await self._executor.execute(entry, ledger)

    @staticmethod
    def _unready_dependencies(
        descriptor: ResourceDescriptor, ledger: Ledger, unusable: set[str],
    ) -> list[str]:
        waiting: list[str] = []
        for dep in sorted(descriptor.depends_on):
            record = ledger.get(dep)
            if dep in unusable or record is None or record.state is not ExecutionState.READY:
                waiting.append(dep)
        return waiting

    @staticmethod
    async def _block(
        entry: PlanEntry, ledger: Ledger, waiting_on: list[str],
    ) -> ExecutionResult | None:
        """Record ``entry`` as skipped; return a result if it stays Failed."""
        reason = 'blocked by: ' + ', '.join(waiting_on)
        record = ledger.get(entry.id)
        logger.warning(
            'Skipping %s: %s',
            entry.id,
            reason,
            extra={'resource_id': entry.id, 'action': 'block'},
        )
        if record is not None and record.state is ExecutionState.FAILED:
            # Failed entries may own a live resource; they stay Failed.
            await ledger.record(
                entry.id, ExecutionState.FAILED, last_error=reason,
            )
            return ExecutionResult(
                resource_id=entry.id, state=ExecutionState.FAILED, error=reason,
            )
        if record is None or record.state in (
            ExecutionState.PENDING, ExecutionState.BLOCKED,
        ):
            await ledger.record(
                entry.id,
                ExecutionState.BLOCKED,
                kind=entry.descriptor.kind.value,
                last_error=reason,
            )
        return None
