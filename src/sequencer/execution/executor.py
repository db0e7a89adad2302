"""Step executor: drives one plan entry to Ready or Failed.

For each entry the executor:
  1. Records ``InProgress`` in the ledger (persisted before any call).
  2. Submits the create call, retrying ``TransientError`` with exponential
     backoff up to ``RetryPolicy.max_attempts`` calls in total.
  3. Polls ``get_status`` at a fixed interval and hands each snapshot to
     the readiness oracle until Ready, Failed, or the kind's timeout.
  4. Records ``Ready`` or ``Failed`` with the error detail.

Resumed entries (ledger already ``InProgress`` with the same spec) skip
step 2 and go straight to polling. Only if the very first poll finds no
resource at all is the create call issued, since the previous run never
got it accepted.

Cancellation (``asyncio.CancelledError``) is never caught here: the ledger
keeps ``InProgress`` so the next run re-polls instead of re-creating.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from ..descriptors.model import ResourceDescriptor, ResourceKind
from ..errors import (
    ProviderError,
    ReadinessTimeout,
    ResourceAlreadyExists,
    ResourceNotFound,
    TransientError,
)
from ..ledger.ledger import Ledger
from ..planning.planner import EntryAction, PlanEntry
from ..providers.protocols import ClientRegistry, ControlPlaneClient
from ..readiness.oracle import (
    DEFAULT_POLL_TIMEOUT_SECONDS,
    Readiness,
    ReadinessOracle,
)
from ..state_machine import ExecutionState

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]
Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff for transient create failures."""

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')

    def delay(self, retry: int) -> float:
        """Delay before retry number ``retry`` (0-based)."""
        return min(self.base_delay * (2 ** retry), self.max_delay)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of executing one plan entry."""

    resource_id: str
    state: ExecutionState
    create_calls: int = 0
    polls: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.state is ExecutionState.READY


class _CreateFailed(Exception):
    def __init__(self, calls: int, reason: str) -> None:
        self.calls = calls
        self.reason = reason
        super().__init__(reason)


class StepExecutor:
    """Executes plan entries against their control-plane clients."""

    def __init__(
        self,
        *,
        clients: ClientRegistry,
        oracle: ReadinessOracle | None = None,
        retry: RetryPolicy | None = None,
        poll_interval: float = 10.0,
        timeouts: Mapping[ResourceKind, float] = DEFAULT_POLL_TIMEOUT_SECONDS,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._clients = clients
        self._oracle = oracle or ReadinessOracle()
        self._retry = retry or RetryPolicy()
        self._poll_interval = poll_interval
        self._timeouts = timeouts
        self._sleep = sleep
        self._clock = clock

    async def execute(self, entry: PlanEntry, ledger: Ledger) -> ExecutionResult:
        """Drive ``entry`` to a terminal state and record it."""
        descriptor = entry.descriptor
        client = self._clients.for_kind(descriptor.kind)
        invalid: ProviderError | None = None
        try:
            identity: str | None = client.external_identity(descriptor)
        except ProviderError as exc:
            identity, invalid = None, exc
        previous = ledger.get(descriptor.id)
        resume = (
            entry.action is EntryAction.RESUME
            and previous is not None
            and previous.state is ExecutionState.IN_PROGRESS
        )

        if previous is None:
            await ledger.record(
                descriptor.id, ExecutionState.PENDING, kind=descriptor.kind.value,
            )
        await ledger.record(
            descriptor.id,
            ExecutionState.IN_PROGRESS,
            kind=descriptor.kind.value,
            external_identity=identity,
            rank=entry.rank,
            spec_hash=descriptor.spec_hash,
            depends_on=descriptor.depends_on,
            spec=descriptor.spec,
        )
        logger.info(
            'Provisioning %s %s (%s)',
            descriptor.kind.value,
            descriptor.id,
            'resume' if resume else entry.action.value,
            extra=_log_fields(descriptor, entry.action.value, identity),
        )
        if invalid is not None:
            return await self._fail(
                ledger, descriptor, f'invalid spec: {invalid}',
                create_calls=0, polls=0,
            )

        create_calls = 0
        if not resume:
            try:
                create_calls = await self._create_with_retry(client, descriptor)
            except _CreateFailed as exc:
                return await self._fail(
                    ledger, descriptor, exc.reason,
                    create_calls=exc.calls, polls=0,
                )

        return await self._poll_until_ready(
            client, descriptor, ledger,
            create_calls=create_calls,
            may_create=resume,
        )

    # ── Create ────────────────────────────────────────────────────────

    async def _create_with_retry(
        self, client: ControlPlaneClient, descriptor: ResourceDescriptor,
    ) -> int:
        """Return the number of create calls made; raise ``_CreateFailed``."""
        calls = 0
        for retry in range(self._retry.max_attempts):
            calls += 1
            try:
                await client.create(descriptor)
            except ResourceAlreadyExists:
                logger.info(
                    'Resource already exists: id=%s',
                    descriptor.id,
                    extra=_log_fields(descriptor, 'create'),
                )
                return calls
            except TransientError as exc:
                if calls >= self._retry.max_attempts:
                    raise _CreateFailed(
                        calls,
                        f'create failed after {calls} attempts: {exc}',
                    ) from exc
                delay = max(self._retry.delay(retry), exc.retry_after or 0.0)
                logger.warning(
                    'Transient create failure for %s (attempt %d/%d), '
                    'retrying in %.1fs: %s',
                    descriptor.id,
                    calls,
                    self._retry.max_attempts,
                    delay,
                    exc,
                    extra=_log_fields(descriptor, 'create', payload=exc.payload),
                )
                await self._sleep(delay)
            except ProviderError as exc:
                raise _CreateFailed(calls, f'create rejected: {exc}') from exc
            except Exception as exc:
                logger.exception(
                    'Unexpected create error for %s',
                    descriptor.id,
                    extra=_log_fields(descriptor, 'create'),
                )
                raise _CreateFailed(calls, f'create error: {exc}') from exc
            else:
                return calls
        raise _CreateFailed(calls, 'create retries exhausted')

    # ── Poll ──────────────────────────────────────────────────────────

    async def _poll_until_ready(
        self,
        client: ControlPlaneClient,
        descriptor: ResourceDescriptor,
        ledger: Ledger,
        *,
        create_calls: int,
        may_create: bool,
    ) -> ExecutionResult:
        timeout = float(self._timeouts.get(descriptor.kind, 600))
        started = self._clock()
        polls = 0
        self._oracle.reset(descriptor.id)

        while True:
            polls += 1
            try:
                snapshot = await client.get_status(descriptor)
            except ResourceNotFound:
                if may_create and polls == 1:
                    # The interrupted run never got its create accepted.
                    try:
                        create_calls += await self._create_with_retry(
                            client, descriptor,
                        )
                    except _CreateFailed as exc:
                        return await self._fail(
                            ledger, descriptor, exc.reason,
                            create_calls=create_calls + exc.calls, polls=polls,
                        )
                readiness = Readiness.not_ready('resource not found yet')
            except TransientError as exc:
                logger.warning(
                    'Transient status error for %s (poll %d): %s',
                    descriptor.id,
                    polls,
                    exc,
                    extra=_log_fields(descriptor, 'poll', payload=exc.payload),
                )
                readiness = Readiness.not_ready(str(exc))
            except ProviderError as exc:
                return await self._fail(
                    ledger, descriptor, f'status check rejected: {exc}',
                    create_calls=create_calls, polls=polls, payload=exc.payload,
                )
            except Exception as exc:
                logger.exception(
                    'Unexpected status error for %s',
                    descriptor.id,
                    extra=_log_fields(descriptor, 'poll'),
                )
                return await self._fail(
                    ledger, descriptor, f'status check error: {exc}',
                    create_calls=create_calls, polls=polls,
                )
            else:
                try:
                    readiness = self._oracle.poll(descriptor, snapshot)
                except Exception as exc:
                    logger.exception(
                        'Unexpected readiness error for %s',
                        descriptor.id,
                        extra=_log_fields(descriptor, 'poll'),
                    )
                    return await self._fail(
                        ledger, descriptor, f'readiness check error: {exc}',
                        create_calls=create_calls, polls=polls,
                    )

            if readiness.is_ready:
                await ledger.record(descriptor.id, ExecutionState.READY)
                logger.info(
                    'Resource ready: id=%s polls=%d %s',
                    descriptor.id,
                    polls,
                    readiness.detail,
                    extra=_log_fields(descriptor, 'poll'),
                )
                return ExecutionResult(
                    resource_id=descriptor.id,
                    state=ExecutionState.READY,
                    create_calls=create_calls,
                    polls=polls,
                )
            if readiness.is_failed:
                return await self._fail(
                    ledger, descriptor, readiness.detail,
                    create_calls=create_calls, polls=polls,
                )

            if self._clock() - started >= timeout:
                exc = ReadinessTimeout(descriptor.id, timeout)
                return await self._fail(
                    ledger, descriptor, f'{exc} (last: {readiness.detail})',
                    create_calls=create_calls, polls=polls,
                )

            logger.debug(
                'Not ready: id=%s poll=%d %s',
                descriptor.id,
                polls,
                readiness.detail,
                extra=_log_fields(descriptor, 'poll'),
            )
            await self._sleep(self._poll_interval)

    async def _fail(
        self,
        ledger: Ledger,
        descriptor: ResourceDescriptor,
        reason: str,
        *,
        create_calls: int,
        polls: int,
        payload: Any = None,
    ) -> ExecutionResult:
        await ledger.record(
            descriptor.id, ExecutionState.FAILED, last_error=reason,
        )
        logger.error(
            'Resource failed: id=%s reason=%s',
            descriptor.id,
            reason,
            extra=_log_fields(descriptor, 'execute', payload=payload),
        )
        return ExecutionResult(
            resource_id=descriptor.id,
            state=ExecutionState.FAILED,
            create_calls=create_calls,
            polls=polls,
            error=reason,
        )


def _log_fields(
    descriptor: ResourceDescriptor,
    action: str,
    identity: str | None = None,
    *,
    payload: Any = None,
) -> dict[str, Any]:
    fields: dict[str, Any] = {
        'resource_id': descriptor.id,
        'kind': descriptor.kind.value,
        'action': action,
    }
    if identity is not None:
        fields['external_identity'] = identity
    if payload is not None:
        fields['error_payload'] = payload
    return fields
