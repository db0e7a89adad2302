"""Batch runner: ordering, failure propagation, idempotent re-apply."""

from __future__ import annotations

import pytest

from sequencer.descriptors import ResourceDescriptor, ResourceKind
from sequencer.errors import PermanentError
from sequencer.execution import EXIT_OK, EXIT_PARTIAL, PlanRunner, RetryPolicy, StepExecutor
from sequencer.inmemory import InMemoryControlPlane
from sequencer.ledger import Ledger
from sequencer.planning import plan
from sequencer.providers.protocols import ClientRegistry
from sequencer.state_machine import ExecutionState


def _d(resource_id: str, kind: ResourceKind, *deps: str, **spec) -> ResourceDescriptor:
    return ResourceDescriptor(
        id=resource_id, kind=kind, spec=spec, depends_on=frozenset(deps),
    )


def _stack() -> list[ResourceDescriptor]:
    return [
        _d('net', ResourceKind.NETWORK),
        _d('subnet', ResourceKind.SUBNET, 'net'),
        _d('gke', ResourceKind.CLUSTER, 'subnet'),
        _d('pool', ResourceKind.NODE_POOL, 'gke', node_count=2),
        _d('ip', ResourceKind.STATIC_ADDRESS),
        _d('ns', ResourceKind.NAMESPACE, 'pool'),
        _d('ing', ResourceKind.INGRESS, 'ns', 'ip'),
    ]


def _make_runner(clock, fake: InMemoryControlPlane | None = None, *, max_concurrency: int = 4):
    fake = fake or InMemoryControlPlane()
    registry = ClientRegistry()
    registry.register(tuple(ResourceKind), fake)
    executor = StepExecutor(
        clients=registry,
        retry=RetryPolicy(max_attempts=2, base_delay=1.0, max_delay=1.0),
        poll_interval=1.0,
        sleep=clock.sleep,
        clock=clock,
    )
    runner = PlanRunner(executor=executor, clients=registry, max_concurrency=max_concurrency)
    return runner, fake


class TestApply:
    @pytest.mark.asyncio
    async def test_all_ready_in_dependency_order(self, clock):
        runner, fake = _make_runner(clock)
        ledger = Ledger()

        result = await runner.apply(plan(_stack()), ledger)

        assert result.success is True
        assert result.exit_code == EXIT_OK
        assert set(result.ready) == {d.id for d in _stack()}
        created = [rid for method, rid in fake.calls if method == 'create']
        position = {rid: i for i, rid in enumerate(created)}
        for descriptor in _stack():
            for dep in descriptor.depends_on:
                assert position[dep] < position[descriptor.id]

    @pytest.mark.asyncio
    async def test_every_entry_recorded_pending_before_execution(self, clock):
        runner, _ = _make_runner(clock)
        ledger = Ledger()

        await runner.apply(plan(_stack()), ledger)

        pending = [rid for rid, state in ledger.history if state is ExecutionState.PENDING]
        assert sorted(pending) == sorted(d.id for d in _stack())
        first_in_progress = next(
            i for i, (_, s) in enumerate(ledger.history) if s is ExecutionState.IN_PROGRESS
        )
        assert first_in_progress == len(_stack())

    @pytest.mark.asyncio
    async def test_failure_blocks_transitive_dependents_only(self, clock):
        fake = InMemoryControlPlane()
        fake.fail_create('gke', PermanentError('quota exceeded'))
        runner, _ = _make_runner(clock, fake)
        ledger = Ledger()

        result = await runner.apply(plan(_stack()), ledger)

        assert result.failed == ('gke',)
        assert set(result.blocked) == {'pool', 'ns', 'ing'}
        assert set(result.ready) == {'net', 'subnet', 'ip'}
        assert result.exit_code == EXIT_PARTIAL
        for blocked in ('pool', 'ns', 'ing'):
            assert ledger.get(blocked).state is ExecutionState.BLOCKED
            assert fake.count('create', blocked) == 0
        assert 'blocked by' in ledger.get('pool').last_error

    @pytest.mark.asyncio
    async def test_second_apply_on_unchanged_descriptors_creates_nothing(self, clock):
        runner, fake = _make_runner(clock)
        ledger = Ledger()
        await runner.apply(plan(_stack()), ledger)
        creates_before = fake.count('create')

        second = plan(_stack(), ledger)
        result = await runner.apply(second, ledger)

        assert second.is_empty
        assert fake.count('create') == creates_before
        assert set(result.unchanged) == {d.id for d in _stack()}

    @pytest.mark.asyncio
    async def test_rerun_after_failure_retries_failed_and_blocked(self, clock):
        fake = InMemoryControlPlane()
        fake.fail_create('gke', PermanentError('quota exceeded'))
        runner, _ = _make_runner(clock, fake)
        ledger = Ledger()
        await runner.apply(plan(_stack()), ledger)

        retry_plan = plan(_stack(), ledger)
        result = await runner.apply(retry_plan, ledger)

        assert retry_plan.batch_ids() == [['gke'], ['pool'], ['ns'], ['ing']]
        assert result.success is True
        assert fake.count('create', 'net') == 1

    @pytest.mark.asyncio
    async def test_previously_failed_dependent_stays_failed_when_blocked(self, clock):
        fake = InMemoryControlPlane()
        fake.fail_create('gke', PermanentError('quota exceeded'))
        runner, _ = _make_runner(clock, fake)
        ledger = Ledger()
        await runner.apply(
            plan([_d('net', ResourceKind.NETWORK), _d('gke', ResourceKind.CLUSTER, 'net')]),
            ledger,
        )
        fake.fail_create('net', PermanentError('invalid mtu'))

        changed = [
            _d('net', ResourceKind.NETWORK, mtu=9000),
            _d('gke', ResourceKind.CLUSTER, 'net'),
        ]
        result = await runner.apply(plan(changed, ledger), ledger)

        assert set(result.failed) == {'net', 'gke'}
        assert result.blocked == ()
        assert result.results['gke'].error == 'blocked by: net'
        assert ledger.get('gke').state is ExecutionState.FAILED
        assert ledger.get('gke').last_error == 'blocked by: net'
        assert fake.count('create', 'gke') == 1

    @pytest.mark.asyncio
    async def test_node_pool_with_non_integer_count_fails_and_run_completes(self, clock):
        runner, fake = _make_runner(clock)
        ledger = Ledger()

        result = await runner.apply(
            plan([
                _d('net', ResourceKind.NETWORK),
                _d('pool', ResourceKind.NODE_POOL, min_node_count='three'),
            ]),
            ledger,
        )

        assert result.ready == ('net',)
        assert result.failed == ('pool',)
        assert "'three'" in result.results['pool'].error
        assert ledger.get('pool').state is ExecutionState.FAILED

    @pytest.mark.asyncio
    async def test_interrupted_entry_is_resumed_without_create(self, clock):
        runner, fake = _make_runner(clock)
        gke = _d('gke', ResourceKind.CLUSTER)
        fake.seed(gke)
        ledger = Ledger()
        await ledger.record(
            'gke', ExecutionState.PENDING, kind='Cluster', spec_hash=gke.spec_hash,
        )
        await ledger.record('gke', ExecutionState.IN_PROGRESS)

        result = await runner.apply(plan([gke], ledger), ledger)

        assert result.ready == ('gke',)
        assert fake.count('create') == 0

    @pytest.mark.asyncio
    async def test_missing_client_fails_before_any_call(self, clock):
        registry = ClientRegistry()
        fake = InMemoryControlPlane()
        registry.register(ResourceKind.NETWORK, fake)
        executor = StepExecutor(clients=registry, sleep=clock.sleep, clock=clock)
        runner = PlanRunner(executor=executor, clients=registry)

        with pytest.raises(LookupError, match='DnsRecord'):
            await runner.apply(
                plan([_d('net', ResourceKind.NETWORK), _d('dns', ResourceKind.DNS_RECORD, 'net')]),
                Ledger(),
            )
        assert fake.calls == []

    def test_concurrency_must_be_positive(self, clock):
        registry = ClientRegistry()
        executor = StepExecutor(clients=registry)

        with pytest.raises(ValueError):
            PlanRunner(executor=executor, clients=registry, max_concurrency=0)
