"""Sequencer service: wires settings, clients, ledger and engine together.

Mirrors one CLI invocation. Every component receives its configuration
explicitly from ``SequencerSettings``; nothing reads process-wide state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

from .descriptors.model import ResourceDescriptor
from .errors import PlacementMismatch, ProviderError, ResourceNotFound
from .execution.executor import Clock, RetryPolicy, Sleep, StepExecutor
from .execution.runner import PlanRunner, RunResult
from .ledger.ledger import Ledger
from .planning.planner import Plan, plan
from .providers.protocols import ClientRegistry
from .readiness.oracle import ReadinessOracle
from .settings import SequencerSettings
from .state_machine import ExecutionState
from .teardown.coordinator import TeardownCoordinator, TeardownResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HealthCheck:
    """Result of re-polling one Ready resource."""

    resource_id: str
    kind: str
    passed: bool
    detail: str = ''


class Sequencer:
    """Plan, apply, verify and destroy one target state."""

    def __init__(
        self,
        settings: SequencerSettings,
        *,
        clients: ClientRegistry,
        ledger: Ledger,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self.settings = settings
        self.clients = clients
        self.ledger = ledger
        self._oracle = ReadinessOracle(
            failed_not_visible_polls=settings.failed_not_visible_polls,
        )
        retry = RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )
        timeouts = dict(settings.poll_timeouts)
        self._runner = PlanRunner(
            executor=StepExecutor(
                clients=clients,
                oracle=self._oracle,
                retry=retry,
                poll_interval=settings.poll_interval,
                timeouts=timeouts,
                sleep=sleep,
                clock=clock,
            ),
            clients=clients,
            max_concurrency=settings.max_concurrency,
        )
        self._teardown = TeardownCoordinator(
            clients=clients,
            retry=retry,
            poll_interval=settings.poll_interval,
            timeouts=timeouts,
            max_concurrency=settings.max_concurrency,
            sleep=sleep,
            clock=clock,
        )

    def plan(self, descriptors: Iterable[ResourceDescriptor]) -> Plan:
        self._check_placement()
        return plan(descriptors, self.ledger)

    async def apply(self, descriptors: Iterable[ResourceDescriptor]) -> RunResult:
        """Plan against the ledger and execute what changed."""
        current = self.plan(descriptors)
        if current.is_empty:
            logger.info(
                'Nothing to do: %d resource(s) unchanged', len(current.unchanged),
            )
            return RunResult(unchanged=current.unchanged)
        await self.ledger.pin_placement(self.settings.placement())
        return await self._runner.apply(current, self.ledger)

    async def destroy(self) -> TeardownResult:
        return await self._teardown.teardown(self.ledger)

    async def verify(self) -> list[HealthCheck]:
        """Poll every Ready record once and report whether it still holds."""
        checks: list[HealthCheck] = []
        for record in self.ledger.snapshot():
            if record.state is not ExecutionState.READY:
                continue
            descriptor = record.to_descriptor()
            try:
                client = self.clients.for_kind(descriptor.kind)
                snapshot = await client.get_status(descriptor)
            except ResourceNotFound:
                checks.append(HealthCheck(record.id, record.kind, False, 'not found'))
                continue
            except (ProviderError, LookupError) as exc:
                checks.append(HealthCheck(record.id, record.kind, False, str(exc)))
                continue
            readiness = self._oracle.poll(descriptor, snapshot)
            checks.append(
                HealthCheck(record.id, record.kind, readiness.is_ready, readiness.detail)
            )
        return checks

    def _check_placement(self) -> None:
        """Raise ``PlacementMismatch`` if live records sit elsewhere."""
        recorded = self.ledger.placement
        if not recorded or not len(self.ledger):
            return
        requested = self.settings.placement()
        if any(requested.get(key, '') != value for key, value in recorded.items()):
            raise PlacementMismatch(dict(recorded), requested)

    def outputs(self) -> dict[str, dict[str, Any]]:
        """Resource id -> kind, state and external identity."""
        return {
            record.id: {
                'kind': record.kind,
                'state': record.state.value,
                'external_identity': record.external_identity,
            }
            for record in self.ledger.snapshot()
        }
