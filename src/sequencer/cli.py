"""``sequencer`` command line.

Usage::

    # Show what an apply would do:
    sequencer plan --target target.json

    # Converge the target state (prompts unless --yes):
    sequencer apply --target target.json --yes

    # Rehearse against an in-memory control plane:
    sequencer apply --target target.json --simulate --yes

    # Re-check every Ready resource once:
    sequencer status

    # Export identities for downstream tooling:
    sequencer outputs --output outputs.json

    # Tear everything down (type 'destroy' to confirm):
    sequencer destroy

    # Serve the read-only ledger API:
    sequencer serve --port 8080

Exit codes: 0 success, 1 partial failure or interrupted (rerun to resume),
2 fatal (cycle, invalid descriptor, corrupt ledger, bad configuration,
or a target whose project or region differs from the ledger's).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable

from .descriptors import ResourceDescriptor, ResourceKind, TargetState, load_target_document
from .errors import CycleDetected, InvalidDescriptor, LedgerCorruption, PlacementMismatch
from .execution.runner import EXIT_FATAL, EXIT_OK, EXIT_PARTIAL
from .inmemory import InMemoryControlPlane
from .ledger import FileLedger, Ledger
from .observability.logging import bind_run_id, configure_logging
from .planning.planner import EntryAction, Plan
from .providers import build_registry
from .providers.protocols import ClientRegistry
from .service import Sequencer
from .settings import SequencerSettings
from .state_machine import MAYBE_EXISTS_STATES

logger = logging.getLogger(__name__)

_ACTION_MARKERS = {
    EntryAction.CREATE: '+',
    EntryAction.UPDATE: '~',
    EntryAction.RESUME: '>',
}


class ConfigurationError(Exception):
    """Settings are incomplete for the requested operation."""


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog='sequencer',
        description='Provision a declared target state in dependency order.',
    )
    parser.add_argument(
        '--ledger',
        help='Ledger file (default: $SEQUENCER_LEDGER or sequencer-ledger.json)',
    )
    parser.add_argument('--log-level', help='DEBUG, INFO, WARNING or ERROR')
    parser.add_argument(
        '--log-format',
        choices=('json', 'console'),
        help='Log renderer (default: $LOG_FORMAT or json)',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    plan_cmd = sub.add_parser('plan', help='Print the execution plan')
    plan_cmd.add_argument('--target', required=True, type=Path)
    plan_cmd.add_argument(
        '--json', action='store_true', dest='json_output',
        help='Output the plan as JSON',
    )

    apply_cmd = sub.add_parser('apply', help='Converge the target state')
    apply_cmd.add_argument('--target', required=True, type=Path)
    apply_cmd.add_argument('--yes', action='store_true', help='Skip confirmation')
    apply_cmd.add_argument(
        '--simulate', action='store_true',
        help='Run against an in-memory control plane; the ledger file is not written',
    )

    destroy_cmd = sub.add_parser('destroy', help='Delete everything in the ledger')
    destroy_cmd.add_argument('--yes', action='store_true', help='Skip confirmation')
    destroy_cmd.add_argument(
        '--simulate', action='store_true',
        help='Run against an in-memory control plane; the ledger file is not written',
    )

    status_cmd = sub.add_parser('status', help='Re-check every Ready resource')
    status_cmd.add_argument(
        '--json', action='store_true', dest='json_output',
        help='Output results as JSON',
    )

    outputs_cmd = sub.add_parser('outputs', help='Export resource identities')
    outputs_cmd.add_argument('--output', type=Path, help='Write to a file instead of stdout')

    serve_cmd = sub.add_parser('serve', help='Serve the read-only ledger API')
    serve_cmd.add_argument('--host', default='127.0.0.1')
    serve_cmd.add_argument('--port', type=int, default=8080)

    return parser.parse_args(argv)


# ── Rendering ─────────────────────────────────────────────────────────


def render_plan(current: Plan) -> str:
    """Human-readable plan with +/~/> markers per entry."""
    lines: list[str] = []
    for rank, batch in enumerate(current.batches):
        lines.append(f'Batch {rank + 1}:')
        for entry in batch:
            marker = _ACTION_MARKERS[entry.action]
            lines.append(f'  {marker} {entry.id} ({entry.descriptor.kind.value})')
    if current.unchanged:
        lines.append('Unchanged: ' + ', '.join(current.unchanged))

    counts = {action: 0 for action in EntryAction}
    for entry in current.entries:
        counts[entry.action] += 1
    lines.append(
        f'Plan: {counts[EntryAction.CREATE]} to create, '
        f'{counts[EntryAction.UPDATE]} to update, '
        f'{counts[EntryAction.RESUME]} to resume, '
        f'{len(current.unchanged)} unchanged.'
    )
    return '\n'.join(lines)


def plan_to_json(current: Plan) -> dict:
    return {
        'batches': [
            [
                {
                    'id': entry.id,
                    'kind': entry.descriptor.kind.value,
                    'action': entry.action.value,
                    'rank': entry.rank,
                }
                for entry in batch
            ]
            for batch in current.batches
        ],
        'unchanged': list(current.unchanged),
    }


# ── Wiring ────────────────────────────────────────────────────────────


def _load_settings(args: argparse.Namespace) -> SequencerSettings:
    settings = SequencerSettings.from_env()
    overrides = {}
    if args.ledger:
        overrides['ledger_path'] = args.ledger
    if args.log_level:
        overrides['log_level'] = args.log_level
    if args.log_format:
        overrides['log_format'] = args.log_format
    return replace(settings, **overrides) if overrides else settings


def _simulated(
    settings: SequencerSettings, ledger: Ledger,
) -> tuple[SequencerSettings, ClientRegistry, Ledger]:
    """In-memory control plane seeded with what the ledger says is live."""
    fake = InMemoryControlPlane()
    scratch = Ledger(ledger.snapshot(), ledger.placement)
    for record in scratch.snapshot():
        if record.state in MAYBE_EXISTS_STATES:
            fake.seed(record.to_descriptor())
    clients = ClientRegistry()
    clients.register(tuple(ResourceKind), fake)
    return replace(settings, poll_interval=0.01), clients, scratch


def _build(
    settings: SequencerSettings,
    descriptors: Iterable[ResourceDescriptor],
    *,
    simulate: bool = False,
) -> Sequencer:
    ledger = FileLedger.load(settings.ledger_path)
    descriptors = tuple(descriptors)
    if simulate:
        settings, clients, ledger = _simulated(settings, ledger)
        return Sequencer(settings, clients=clients, ledger=ledger)

    errors = settings.validate(descriptors)
    if errors:
        raise ConfigurationError(
            'Sequencer settings validation failed:\n'
            + '\n'.join(f'  - {e}' for e in errors)
        )
    clients = build_registry(settings, {d.kind for d in descriptors})
    return Sequencer(settings, clients=clients, ledger=ledger)


def _from_ledger(
    settings: SequencerSettings,
) -> tuple[tuple[ResourceDescriptor, ...], SequencerSettings]:
    """Recorded descriptors, with settings pointed at where they were created."""
    ledger = FileLedger.load(settings.ledger_path)
    descriptors = tuple(r.to_descriptor() for r in ledger.snapshot())
    return descriptors, settings.with_placement(ledger.placement)


def _confirm(prompt: str, expected: str, read: Callable[[str], str] = input) -> bool:
    try:
        answer = read(prompt)
    except EOFError:
        return False
    return answer.strip().lower() == expected


# ── Commands ──────────────────────────────────────────────────────────


def _target(args: argparse.Namespace, settings: SequencerSettings) -> tuple[TargetState, SequencerSettings]:
    target = load_target_document(args.target)
    overrides = {}
    if target.project and not settings.gcp_project:
        overrides['gcp_project'] = target.project
    if target.region:
        overrides['gcp_region'] = target.region
    return target, replace(settings, **overrides) if overrides else settings


def cmd_plan(args: argparse.Namespace, settings: SequencerSettings) -> int:
    target, settings = _target(args, settings)
    ledger = FileLedger.load(settings.ledger_path)
    current = Sequencer(settings, clients=ClientRegistry(), ledger=ledger).plan(
        target.descriptors,
    )
    if args.json_output:
        print(json.dumps(plan_to_json(current), indent=2))
    else:
        print(render_plan(current))
    return EXIT_OK


async def cmd_apply(args: argparse.Namespace, settings: SequencerSettings) -> int:
    target, settings = _target(args, settings)
    sequencer = _build(settings, target.descriptors, simulate=args.simulate)
    current = sequencer.plan(target.descriptors)
    print(render_plan(current))
    if current.is_empty:
        return EXIT_OK
    if not args.yes and not _confirm('Apply these changes? [y/N] ', 'y'):
        print('Apply cancelled.')
        return EXIT_PARTIAL

    bind_run_id()
    logger.info('Apply started', extra={'target': str(args.target)})
    result = await sequencer.apply(target.descriptors)

    print(
        f'Ready: {len(result.ready)}  Failed: {len(result.failed)}  '
        f'Blocked: {len(result.blocked)}  Unchanged: {len(result.unchanged)}'
    )
    for resource_id in result.failed:
        print(f'  FAILED  {resource_id}: {result.results[resource_id].error}')
    for resource_id in result.blocked:
        record = sequencer.ledger.get(resource_id)
        print(f'  BLOCKED {resource_id}: {record.last_error if record else ""}')
    return result.exit_code


async def cmd_destroy(args: argparse.Namespace, settings: SequencerSettings) -> int:
    descriptors, settings = _from_ledger(settings)
    if not descriptors:
        print('Ledger is empty; nothing to destroy.')
        return EXIT_OK
    sequencer = _build(settings, descriptors, simulate=args.simulate)
    print(f'{len(descriptors)} resource(s) will be destroyed:')
    for descriptor in reversed(descriptors):
        print(f'  - {descriptor.id} ({descriptor.kind.value})')
    if not args.yes and not _confirm("Type 'destroy' to confirm: ", 'destroy'):
        print('Destroy cancelled.')
        return EXIT_PARTIAL

    bind_run_id()
    result = await sequencer.destroy()
    print(
        f'Destroyed: {len(result.destroyed)}  Failed: {len(result.failed)}  '
        f'Remaining: {len(result.remaining)}'
    )
    for resource_id in result.failed:
        record = sequencer.ledger.get(resource_id)
        print(f'  FAILED  {resource_id}: {record.last_error if record else ""}')
    return result.exit_code


async def cmd_status(args: argparse.Namespace, settings: SequencerSettings) -> int:
    descriptors, settings = _from_ledger(settings)
    sequencer = _build(settings, descriptors)
    checks = await sequencer.verify()
    passed = sum(1 for c in checks if c.passed)
    if args.json_output:
        print(json.dumps(
            {
                'checks': [
                    {
                        'id': c.resource_id,
                        'kind': c.kind,
                        'passed': c.passed,
                        'detail': c.detail,
                    }
                    for c in checks
                ],
                'passed': passed,
                'failed': len(checks) - passed,
            },
            indent=2,
        ))
    else:
        for check in checks:
            verdict = 'PASS' if check.passed else 'FAIL'
            print(f'{verdict}  {check.resource_id} ({check.kind}) {check.detail}'.rstrip())
        print(f'{passed}/{len(checks)} checks passed')
    return EXIT_OK if passed == len(checks) else EXIT_PARTIAL


def cmd_outputs(args: argparse.Namespace, settings: SequencerSettings) -> int:
    ledger = FileLedger.load(settings.ledger_path)
    payload = json.dumps(
        Sequencer(settings, clients=ClientRegistry(), ledger=ledger).outputs(),
        indent=2,
    )
    if args.output:
        args.output.write_text(payload + '\n', encoding='utf-8')
    else:
        print(payload)
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, settings: SequencerSettings) -> int:
    import uvicorn

    from .api import create_app

    app = create_app(lambda: FileLedger.load(settings.ledger_path))
    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_OK


_ASYNC_COMMANDS = {
    'apply': cmd_apply,
    'destroy': cmd_destroy,
    'status': cmd_status,
}
_SYNC_COMMANDS = {
    'plan': cmd_plan,
    'outputs': cmd_outputs,
    'serve': cmd_serve,
}


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = _load_settings(args)
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_format == 'json',
    )

    try:
        if args.command in _ASYNC_COMMANDS:
            return asyncio.run(_ASYNC_COMMANDS[args.command](args, settings))
        return _SYNC_COMMANDS[args.command](args, settings)
    except (
        CycleDetected,
        InvalidDescriptor,
        LedgerCorruption,
        PlacementMismatch,
        ConfigurationError,
    ) as exc:
        logger.error('%s', exc, extra={'error_type': type(exc).__name__})
        print(f'ERROR: {exc}', file=sys.stderr)
        return EXIT_FATAL
    except KeyboardInterrupt:
        print(
            'Interrupted; in-flight resources stay InProgress. '
            'Rerun the same command to resume.',
            file=sys.stderr,
        )
        return EXIT_PARTIAL


if __name__ == '__main__':
    raise SystemExit(main())
