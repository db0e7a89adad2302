"""Teardown coordinator: reverse order, absent resources, branch isolation."""

from __future__ import annotations

import pytest

from sequencer.descriptors import ResourceDescriptor, ResourceKind
from sequencer.errors import PermanentError, TransientError
from sequencer.execution import RetryPolicy
from sequencer.inmemory import InMemoryControlPlane
from sequencer.ledger import Ledger
from sequencer.providers.protocols import ClientRegistry
from sequencer.state_machine import ExecutionState
from sequencer.teardown import TeardownCoordinator


async def _ready(
    ledger: Ledger,
    fake: InMemoryControlPlane | None,
    resource_id: str,
    kind: ResourceKind,
    *deps: str,
    rank: int = 0,
) -> None:
    await ledger.record(
        resource_id,
        ExecutionState.PENDING,
        kind=kind.value,
        rank=rank,
        depends_on=deps,
    )
    await ledger.record(resource_id, ExecutionState.IN_PROGRESS)
    await ledger.record(resource_id, ExecutionState.READY)
    if fake is not None:
        fake.seed(ResourceDescriptor(id=resource_id, kind=kind))


def _make_coordinator(clock, fake: InMemoryControlPlane, **kwargs) -> TeardownCoordinator:
    registry = ClientRegistry()
    registry.register(tuple(ResourceKind), fake)
    return TeardownCoordinator(
        clients=registry,
        retry=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=1.0),
        poll_interval=5.0,
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


async def _chain(fake: InMemoryControlPlane) -> Ledger:
    ledger = Ledger()
    await _ready(ledger, fake, 'net', ResourceKind.NETWORK)
    await _ready(ledger, fake, 'subnet', ResourceKind.SUBNET, 'net', rank=1)
    await _ready(ledger, fake, 'gke', ResourceKind.CLUSTER, 'subnet', rank=2)
    return ledger


class TestOrdering:
    @pytest.mark.asyncio
    async def test_dependents_destroyed_before_dependencies(self, clock):
        fake = InMemoryControlPlane()
        ledger = await _chain(fake)

        result = await _make_coordinator(clock, fake).teardown(ledger)

        assert result.success is True
        assert result.destroyed == ('gke', 'subnet', 'net')
        deletes = [rid for method, rid in fake.calls if method == 'delete']
        assert deletes == ['gke', 'subnet', 'net']
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_dependent_destroyed_is_persisted_before_dependency_is_touched(self, clock):
        fake = InMemoryControlPlane()
        ledger = await _chain(fake)

        await _make_coordinator(clock, fake).teardown(ledger)

        history = ledger.history
        assert history.index(('gke', ExecutionState.DESTROYED)) < history.index(
            ('subnet', ExecutionState.DESTROYING)
        )
        assert history.index(('subnet', ExecutionState.DESTROYED)) < history.index(
            ('net', ExecutionState.DESTROYING)
        )

    @pytest.mark.asyncio
    async def test_waits_for_provider_to_report_absence(self, clock):
        fake = InMemoryControlPlane()
        ledger = Ledger()
        await _ready(ledger, fake, 'gke', ResourceKind.CLUSTER)
        fake.linger_after_delete('gke', 2)

        result = await _make_coordinator(clock, fake).teardown(ledger)

        assert result.destroyed == ('gke',)
        assert fake.count('get_status', 'gke') == 3
        assert clock.sleeps == [5.0, 5.0]


class TestDeleteOutcomes:
    @pytest.mark.asyncio
    async def test_already_absent_counts_as_destroyed(self, clock):
        fake = InMemoryControlPlane()
        ledger = Ledger()
        await _ready(ledger, None, 'bucket', ResourceKind.BUCKET)

        result = await _make_coordinator(clock, fake).teardown(ledger)

        assert result.destroyed == ('bucket',)
        assert fake.count('delete') == 1
        assert fake.count('get_status') == 0

    @pytest.mark.asyncio
    async def test_transient_delete_is_retried(self, clock):
        fake = InMemoryControlPlane()
        ledger = Ledger()
        await _ready(ledger, fake, 'net', ResourceKind.NETWORK)
        fake.fail_delete('net', TransientError('resource in use', retry_after=3.0))

        result = await _make_coordinator(clock, fake).teardown(ledger)

        assert result.success is True
        assert fake.count('delete', 'net') == 2
        assert clock.sleeps == [3.0]

    @pytest.mark.asyncio
    async def test_failed_delete_halts_its_branch_only(self, clock):
        fake = InMemoryControlPlane()
        ledger = await _chain(fake)
        await _ready(ledger, fake, 'ip', ResourceKind.STATIC_ADDRESS)
        await _ready(ledger, fake, 'dns', ResourceKind.DNS_RECORD, 'ip', rank=1)
        fake.fail_delete('subnet', PermanentError('subnet in use by instance'))

        result = await _make_coordinator(clock, fake).teardown(ledger)

        assert result.failed == ('subnet',)
        assert result.remaining == ('net',)
        assert set(result.destroyed) == {'gke', 'dns', 'ip'}
        assert result.exit_code == 1
        assert fake.count('delete', 'net') == 0
        subnet = ledger.get('subnet')
        assert subnet.state is ExecutionState.DESTROYING
        assert 'subnet in use' in subnet.last_error
        assert ledger.get('net').state is ExecutionState.READY

    @pytest.mark.asyncio
    async def test_rerun_after_failure_finishes_the_branch(self, clock):
        fake = InMemoryControlPlane()
        ledger = await _chain(fake)
        fake.fail_delete('subnet', PermanentError('subnet in use by instance'))
        coordinator = _make_coordinator(clock, fake)
        await coordinator.teardown(ledger)

        result = await coordinator.teardown(ledger)

        assert result.destroyed == ('subnet', 'net')
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_still_present_after_timeout_fails(self, clock):
        fake = InMemoryControlPlane()
        ledger = Ledger()
        await _ready(ledger, fake, 'gke', ResourceKind.CLUSTER)
        fake.linger_after_delete('gke', 100)

        result = await _make_coordinator(
            clock, fake, timeouts={ResourceKind.CLUSTER: 30},
        ).teardown(ledger)

        assert result.failed == ('gke',)
        assert 'still present' in ledger.get('gke').last_error


class TestNeverCreated:
    @pytest.mark.asyncio
    async def test_pending_and_blocked_records_dropped_without_calls(self, clock):
        fake = InMemoryControlPlane()
        ledger = Ledger()
        await ledger.record('gke', ExecutionState.PENDING, kind='Cluster')
        await ledger.record('pool', ExecutionState.PENDING, kind='NodePool', depends_on=['gke'])
        await ledger.record('pool', ExecutionState.BLOCKED, last_error='blocked by: gke')

        result = await _make_coordinator(clock, fake).teardown(ledger)

        assert result.destroyed == ('pool', 'gke')
        assert fake.calls == []
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_empty_ledger_is_a_no_op(self, clock):
        fake = InMemoryControlPlane()

        result = await _make_coordinator(clock, fake).teardown(Ledger())

        assert result.success is True
        assert result.destroyed == ()
