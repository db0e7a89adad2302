"""Command line: plan rendering, exit codes, simulated apply/destroy."""

from __future__ import annotations

import json

import httpx
import pytest

from sequencer import cli
from sequencer.descriptors import ResourceDescriptor, ResourceKind
from sequencer.planning import plan


_TARGET = {
    'project': 'acme-prod',
    'region': 'europe-west1',
    'resources': [
        {'id': 'net', 'kind': 'Network', 'spec': {'name': 'vpc'}},
        {
            'id': 'subnet',
            'kind': 'Subnet',
            'depends_on': ['net'],
            'spec': {'network': 'vpc', 'ip_cidr_range': '10.0.0.0/20'},
        },
        {'id': 'ip', 'kind': 'StaticAddress'},
    ],
}


@pytest.fixture(autouse=True)
def _isolated(monkeypatch, tmp_path):
    """Clean provider env, ledger under tmp_path, logging left alone."""
    for var in (
        'GCP_PROJECT',
        'GCP_REGION',
        'GCP_ACCESS_TOKEN',
        'KUBE_API_URL',
        'KUBE_TOKEN',
        'GKE_CLUSTER',
        'ROUTE53_HOSTED_ZONE_ID',
        'LOG_LEVEL',
        'LOG_FORMAT',
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('SEQUENCER_LEDGER', str(tmp_path / 'ledger.json'))
    monkeypatch.setattr(cli, 'configure_logging', lambda **kwargs: None)


def _write_target(tmp_path, document=None) -> str:
    path = tmp_path / 'target.json'
    path.write_text(json.dumps(document or _TARGET))
    return str(path)


def _write_ledger(tmp_path, *records: dict, placement: dict | None = None) -> None:
    rows = [
        {
            'kind': 'Network',
            'state': 'Ready',
            'last_updated': '2026-01-01T00:00:00+00:00',
            **record,
        }
        for record in records
    ]
    document = {'version': 1, 'records': rows}
    if placement is not None:
        document['placement'] = placement
    (tmp_path / 'ledger.json').write_text(json.dumps(document))


# ── plan ──────────────────────────────────────────────────────────────


class TestPlan:
    def test_renders_batches_in_order(self, tmp_path, capsys):
        code = cli.main(['plan', '--target', _write_target(tmp_path)])

        assert code == 0
        assert capsys.readouterr().out.splitlines() == [
            'Batch 1:',
            '  + ip (StaticAddress)',
            '  + net (Network)',
            'Batch 2:',
            '  + subnet (Subnet)',
            'Plan: 3 to create, 0 to update, 0 to resume, 0 unchanged.',
        ]

    def test_json_output(self, tmp_path, capsys):
        code = cli.main(['plan', '--target', _write_target(tmp_path), '--json'])

        assert code == 0
        document = json.loads(capsys.readouterr().out)
        assert [[e['id'] for e in batch] for batch in document['batches']] == [
            ['ip', 'net'],
            ['subnet'],
        ]
        assert document['batches'][1][0] == {
            'id': 'subnet', 'kind': 'Subnet', 'action': 'create', 'rank': 1,
        }

    def test_ready_records_are_reported_unchanged(self, tmp_path, capsys):
        net = ResourceDescriptor(id='net', kind=ResourceKind.NETWORK, spec={'name': 'vpc'})
        _write_ledger(tmp_path, {'id': 'net', 'spec_hash': net.spec_hash})

        cli.main(['plan', '--target', _write_target(tmp_path)])

        out = capsys.readouterr().out
        assert 'Unchanged: net' in out
        assert 'Plan: 2 to create, 0 to update, 0 to resume, 1 unchanged.' in out

    def test_cycle_is_fatal(self, tmp_path, capsys):
        document = {
            'resources': [
                {'id': 'a', 'kind': 'Network', 'depends_on': ['b']},
                {'id': 'b', 'kind': 'Network', 'depends_on': ['a']},
            ]
        }

        code = cli.main(['plan', '--target', _write_target(tmp_path, document)])

        assert code == 2
        assert 'dependency cycle among: a, b' in capsys.readouterr().err

    def test_unknown_dependency_is_fatal(self, tmp_path):
        document = {'resources': [{'id': 'a', 'kind': 'Network', 'depends_on': ['zzz']}]}

        assert cli.main(['plan', '--target', _write_target(tmp_path, document)]) == 2

    def test_missing_target_is_fatal(self, tmp_path):
        assert cli.main(['plan', '--target', str(tmp_path / 'nope.json')]) == 2

    def test_corrupt_ledger_is_fatal(self, tmp_path, capsys):
        (tmp_path / 'ledger.json').write_text('{oops')

        code = cli.main(['plan', '--target', _write_target(tmp_path)])

        assert code == 2
        assert 'unreadable' in capsys.readouterr().err


def test_render_plan_markers():
    descriptors = [
        ResourceDescriptor(id='net', kind=ResourceKind.NETWORK),
    ]

    assert cli.render_plan(plan(descriptors)).splitlines()[1] == '  + net (Network)'


# ── apply / destroy ───────────────────────────────────────────────────


class TestApply:
    def test_simulated_apply_reports_ready_and_leaves_ledger_untouched(self, tmp_path, capsys):
        code = cli.main(['apply', '--target', _write_target(tmp_path), '--simulate', '--yes'])

        assert code == 0
        assert 'Ready: 3  Failed: 0  Blocked: 0  Unchanged: 0' in capsys.readouterr().out
        assert not (tmp_path / 'ledger.json').exists()

    def test_missing_credentials_are_fatal(self, tmp_path, capsys):
        code = cli.main(['apply', '--target', _write_target(tmp_path), '--yes'])

        assert code == 2
        assert 'gcp_access_token is required' in capsys.readouterr().err

    def test_declined_confirmation_cancels(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(cli, '_confirm', lambda prompt, expected: False)

        code = cli.main(['apply', '--target', _write_target(tmp_path), '--simulate'])

        assert code == 1
        assert 'Apply cancelled.' in capsys.readouterr().out

    def test_nothing_to_do_exits_cleanly(self, tmp_path, capsys):
        document = {'resources': [{'id': 'net', 'kind': 'Network'}]}
        net = ResourceDescriptor(id='net', kind=ResourceKind.NETWORK)
        _write_ledger(tmp_path, {'id': 'net', 'spec_hash': net.spec_hash})

        code = cli.main(['apply', '--target', _write_target(tmp_path, document), '--simulate'])

        assert code == 0
        assert 'Plan: 0 to create' in capsys.readouterr().out


class TestDestroy:
    def test_empty_ledger_has_nothing_to_destroy(self, capsys):
        assert cli.main(['destroy', '--yes']) == 0
        assert 'nothing to destroy' in capsys.readouterr().out

    def test_simulated_destroy_lists_and_deletes(self, tmp_path, capsys):
        _write_ledger(
            tmp_path,
            {'id': 'net', 'rank': 0},
            {'id': 'subnet', 'kind': 'Subnet', 'rank': 1, 'depends_on': ['net']},
        )

        code = cli.main(['destroy', '--simulate', '--yes'])

        out = capsys.readouterr().out
        assert code == 0
        assert out.index('  - subnet (Subnet)') < out.index('  - net (Network)')
        assert 'Destroyed: 2  Failed: 0  Remaining: 0' in out
        assert json.loads((tmp_path / 'ledger.json').read_text())['records'][0]['state'] == 'Ready'

    def test_declined_confirmation_cancels(self, tmp_path, monkeypatch):
        _write_ledger(tmp_path, {'id': 'net'})
        monkeypatch.setattr(cli, '_confirm', lambda prompt, expected: False)

        assert cli.main(['destroy', '--simulate']) == 1


class TestConfirm:
    def test_expected_answer(self):
        assert cli._confirm('? ', 'destroy', read=lambda _: ' Destroy\n') is True
        assert cli._confirm('? ', 'y', read=lambda _: 'n') is False

    def test_eof_is_no(self):
        def closed(_prompt):
            raise EOFError

        assert cli._confirm('? ', 'y', read=closed) is False


# ── outputs / status ──────────────────────────────────────────────────


class TestOutputs:
    def test_writes_identities_to_file(self, tmp_path):
        _write_ledger(tmp_path, {'id': 'net', 'external_identity': 'projects/p/global/networks/vpc'})
        destination = tmp_path / 'outputs.json'

        assert cli.main(['outputs', '--output', str(destination)]) == 0
        assert json.loads(destination.read_text()) == {
            'net': {
                'kind': 'Network',
                'state': 'Ready',
                'external_identity': 'projects/p/global/networks/vpc',
            }
        }

    def test_prints_to_stdout(self, tmp_path, capsys):
        _write_ledger(tmp_path, {'id': 'net'})

        assert cli.main(['outputs']) == 0
        assert json.loads(capsys.readouterr().out)['net']['state'] == 'Ready'

    def test_ledger_flag_overrides_environment(self, tmp_path, capsys):
        other = tmp_path / 'other.json'
        other.write_text(json.dumps({'version': 1, 'records': []}))

        assert cli.main(['--ledger', str(other), 'outputs']) == 0
        assert json.loads(capsys.readouterr().out) == {}


def test_status_with_empty_ledger(capsys):
    assert cli.main(['status']) == 0
    assert '0/0 checks passed' in capsys.readouterr().out


# ── placement ─────────────────────────────────────────────────────────


class _FakeGcp:
    """MockTransport handler keeping GCP resources by REST path."""

    def __init__(self) -> None:
        self.live: set[str] = set()
        self.requests: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if request.method == 'POST':
            body = json.loads(request.content)
            self.live.add(f'{path}/{body["cluster"]["name"]}')
            return httpx.Response(200, json={'name': 'operation-1'})
        if path not in self.live:
            return httpx.Response(404, json={'error': {'message': 'not found'}})
        if request.method == 'DELETE':
            self.live.discard(path)
            return httpx.Response(200, json={'name': 'operation-2'})
        return httpx.Response(200, json={'status': 'RUNNING'})


_CLUSTER_TARGET = {
    'project': 'acme-prod',
    'region': 'asia-east1',
    'resources': [
        {
            'id': 'gke',
            'kind': 'Cluster',
            'spec': {'name': 'gke', 'network': 'vpc', 'subnetwork': 'nodes'},
        },
    ],
}
_ASIA_CLUSTER = '/v1/projects/acme-prod/locations/asia-east1/clusters/gke'


@pytest.fixture
def fake_gcp(monkeypatch):
    handler = _FakeGcp()
    monkeypatch.setattr(
        'sequencer.providers.http._shared_async_client',
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    monkeypatch.setenv('GCP_ACCESS_TOKEN', 'gcp-token')
    monkeypatch.setenv('GCP_REGION', 'us-central1')
    return handler


class TestPlacement:
    def test_destroy_deletes_in_the_region_apply_used(self, tmp_path, fake_gcp, capsys):
        target = _write_target(tmp_path, _CLUSTER_TARGET)

        assert cli.main(['apply', '--target', target, '--yes']) == 0
        assert fake_gcp.live == {_ASIA_CLUSTER}
        assert json.loads((tmp_path / 'ledger.json').read_text())['placement'] == {
            'gcp_project': 'acme-prod',
            'gcp_region': 'asia-east1',
        }

        assert cli.main(['destroy', '--yes']) == 0

        assert ('DELETE', _ASIA_CLUSTER) in fake_gcp.requests
        assert not any('us-central1' in path for _, path in fake_gcp.requests)
        assert fake_gcp.live == set()
        assert 'Destroyed: 1  Failed: 0  Remaining: 0' in capsys.readouterr().out

    def test_status_checks_the_region_apply_used(self, tmp_path, fake_gcp, capsys):
        fake_gcp.live.add(_ASIA_CLUSTER)
        _write_ledger(
            tmp_path,
            {'id': 'gke', 'kind': 'Cluster', 'spec': _CLUSTER_TARGET['resources'][0]['spec']},
            placement={'gcp_project': 'acme-prod', 'gcp_region': 'asia-east1'},
        )

        assert cli.main(['status']) == 0
        assert fake_gcp.requests == [('GET', _ASIA_CLUSTER)]
        assert '1/1 checks passed' in capsys.readouterr().out

    def test_apply_to_another_region_is_fatal(self, tmp_path, capsys):
        _write_ledger(
            tmp_path,
            {'id': 'net'},
            placement={'gcp_project': 'acme-prod', 'gcp_region': 'asia-east1'},
        )

        code = cli.main(['apply', '--target', _write_target(tmp_path), '--simulate', '--yes'])

        assert code == 2
        assert "gcp_region 'asia-east1'" in capsys.readouterr().err

    def test_simulated_apply_on_empty_ledger_ignores_old_placement(self, tmp_path, capsys):
        _write_ledger(tmp_path, placement={'gcp_region': 'asia-east1'})

        code = cli.main(['apply', '--target', _write_target(tmp_path), '--simulate', '--yes'])

        assert code == 0
