"""Teardown coordinator: reverse-order destruction driven by the ledger.

A record becomes eligible for deletion once every record that depends on
it has left the ledger. Each round deletes all eligible records
concurrently (bounded), so the walk naturally follows reverse rank order.

Per record:
  - ``Pending`` / ``Blocked``: no create was ever issued; the record is
    dropped without an external call.
  - otherwise: record ``Destroying``, issue the delete (absent counts as
    deleted), poll until the provider reports ``NotFound``, record
    ``Destroyed``, then drop the record.

A failed delete leaves the record ``Destroying`` with ``last_error`` and
halts its branch: nothing it depends on is deleted. Independent branches
continue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Mapping

from ..descriptors.model import ResourceKind
from ..errors import ProviderError, ResourceNotFound, TransientError
from ..execution.executor import Clock, RetryPolicy, Sleep
from ..ledger.ledger import Ledger, LedgerRecord
from ..providers.protocols import ClientRegistry, ControlPlaneClient
from ..readiness.oracle import DEFAULT_POLL_TIMEOUT_SECONDS
from ..state_machine import MAYBE_EXISTS_STATES, ExecutionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TeardownResult:
    """Outcome of one teardown run."""

    destroyed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    remaining: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.failed and not self.remaining

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


class _DeleteFailed(Exception):
    pass


class TeardownCoordinator:
    """Walks the ledger dependents-first, deleting and confirming absence."""

    def __init__(
        self,
        *,
        clients: ClientRegistry,
        retry: RetryPolicy | None = None,
        poll_interval: float = 10.0,
        timeouts: Mapping[ResourceKind, float] = DEFAULT_POLL_TIMEOUT_SECONDS,
        max_concurrency: int = 4,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._clients = clients
        self._retry = retry or RetryPolicy()
        self._poll_interval = poll_interval
        self._timeouts = timeouts
        self._max_concurrency = max_concurrency
        self._sleep = sleep
        self._clock = clock

    async def teardown(self, ledger: Ledger) -> TeardownResult:
        pending: dict[str, LedgerRecord] = {r.id: r for r in ledger.snapshot()}
        dependents: dict[str, set[str]] = defaultdict(set)
        for record in pending.values():
            for dep in record.depends_on:
                dependents[dep].add(record.id)

        semaphore = asyncio.Semaphore(self._max_concurrency)
        destroyed: list[str] = []
        failed: list[str] = []
        halted: set[str] = set()

        while True:
            eligible = sorted(
                resource_id
                for resource_id in pending
                if resource_id not in halted
                and not any(child in pending for child in dependents[resource_id])
            )
            if not eligible:
                break

            outcomes = await asyncio.gather(
                *(
                    self._destroy_one(pending[resource_id], ledger, semaphore)
                    for resource_id in eligible
                )
            )
            for resource_id, ok in zip(eligible, outcomes):
                if ok:
                    del pending[resource_id]
                    destroyed.append(resource_id)
                else:
                    halted.add(resource_id)
                    failed.append(resource_id)

        remaining = tuple(sorted(set(pending) - set(failed)))
        result = TeardownResult(
            destroyed=tuple(destroyed),
            failed=tuple(failed),
            remaining=remaining,
        )
        logger.info(
            'Teardown finished: destroyed=%d failed=%d remaining=%d',
            len(result.destroyed),
            len(result.failed),
            len(result.remaining),
            extra={
                'failed_ids': list(result.failed),
                'remaining_ids': list(result.remaining),
            },
        )
        return result

    async def _destroy_one(
        self, record: LedgerRecord, ledger: Ledger, semaphore: asyncio.Semaphore,
    ) -> bool:
        if record.state not in MAYBE_EXISTS_STATES:
            await ledger.remove(record.id)
            logger.info(
                'Dropped %s (%s, nothing to delete)',
                record.id,
                record.state.value,
                extra={'resource_id': record.id, 'action': 'delete'},
            )
            return True

        async with semaphore:
            descriptor = record.to_descriptor()
            client = self._clients.for_kind(descriptor.kind)
            await ledger.record(record.id, ExecutionState.DESTROYING)
            logger.info(
                'Deleting %s %s',
                record.kind,
                record.id,
                extra={
                    'resource_id': record.id,
                    'kind': record.kind,
                    'action': 'delete',
                    'external_identity': record.external_identity,
                },
            )
            try:
                absent = await self._delete_with_retry(client, record)
                if not absent:
                    await self._wait_for_absence(client, record)
            except _DeleteFailed as exc:
                await ledger.record(
                    record.id, ExecutionState.DESTROYING, last_error=str(exc),
                )
                logger.error(
                    'Delete failed: id=%s reason=%s',
                    record.id,
                    exc,
                    extra={'resource_id': record.id, 'action': 'delete'},
                )
                return False

            await ledger.record(record.id, ExecutionState.DESTROYED)
            await ledger.remove(record.id)
            logger.info(
                'Destroyed %s',
                record.id,
                extra={'resource_id': record.id, 'action': 'delete'},
            )
            return True

    async def _delete_with_retry(
        self, client: ControlPlaneClient, record: LedgerRecord,
    ) -> bool:
        """Issue the delete; return True when the resource is already gone."""
        descriptor = record.to_descriptor()
        for retry in range(self._retry.max_attempts):
            try:
                await client.delete(descriptor)
            except ResourceNotFound:
                logger.info(
                    'Already absent: id=%s',
                    record.id,
                    extra={'resource_id': record.id, 'action': 'delete'},
                )
                return True
            except TransientError as exc:
                if retry + 1 >= self._retry.max_attempts:
                    raise _DeleteFailed(
                        f'delete failed after {retry + 1} attempts: {exc}'
                    ) from exc
                delay = max(self._retry.delay(retry), exc.retry_after or 0.0)
                logger.warning(
                    'Transient delete failure for %s, retrying in %.1fs: %s',
                    record.id,
                    delay,
                    exc,
                    extra={
                        'resource_id': record.id,
                        'action': 'delete',
                        'error_payload': exc.payload,
                    },
                )
                await self._sleep(delay)
            except ProviderError as exc:
                raise _DeleteFailed(f'delete rejected: {exc}') from exc
            else:
                return False
        raise _DeleteFailed('delete retries exhausted')

    async def _wait_for_absence(
        self, client: ControlPlaneClient, record: LedgerRecord,
    ) -> None:
        descriptor = record.to_descriptor()
        timeout = float(self._timeouts.get(descriptor.kind, 600))
        started = self._clock()
        while True:
            try:
                await client.get_status(descriptor)
            except ResourceNotFound:
                return
            except TransientError as exc:
                logger.warning(
                    'Transient status error while deleting %s: %s',
                    record.id,
                    exc,
                    extra={'resource_id': record.id, 'action': 'delete'},
                )
            except ProviderError as exc:
                raise _DeleteFailed(f'status check rejected: {exc}') from exc

            if self._clock() - started >= timeout:
                raise _DeleteFailed(
                    f'{record.id!r} still present {timeout:.0f}s after delete'
                )
            await self._sleep(self._poll_interval)
