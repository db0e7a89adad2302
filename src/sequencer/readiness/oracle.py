"""Readiness oracle: per-kind predicates over external status snapshots.

A snapshot is the provider's own representation of the resource as
returned by ``ControlPlaneClient.get_status``:

  - GCP kinds: the REST resource body (``status``, ``address`` ...).
    NodePool snapshots carry an extra ``readyNodeCount`` observed from the
    Kubernetes API; IamBinding snapshots are the project IAM policy.
  - Kubernetes kinds: the object as returned by the API server.
    Manifest snapshots are ``{"deployments": [{"namespace", "name",
    "available"}]}`` for every deployment the manifest waits for.
  - DnsRecord: ``{"changeStatus": "PENDING" | "INSYNC", "values": [...]}``.

Predicates never raise on odd payloads; unknown shapes are ``NotReady`` so
the poll loop eventually turns them into a readiness timeout.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping

from ..descriptors.model import ResourceDescriptor, ResourceKind

DEFAULT_FAILED_NOT_VISIBLE_POLLS = 10

# Wall-clock budget per kind. Certificate provisioning routinely takes
# 15-60 minutes; namespace creation is near-instant.
DEFAULT_POLL_TIMEOUT_SECONDS: Mapping[ResourceKind, int] = MappingProxyType(
    {
        ResourceKind.NETWORK: 300,
        ResourceKind.SUBNET: 300,
        ResourceKind.CLUSTER: 1800,
        ResourceKind.NODE_POOL: 1200,
        ResourceKind.SERVICE_ACCOUNT: 120,
        ResourceKind.IAM_BINDING: 300,
        ResourceKind.BUCKET: 120,
        ResourceKind.STATIC_ADDRESS: 300,
        ResourceKind.NAMESPACE: 60,
        ResourceKind.K8S_SERVICE_ACCOUNT: 60,
        ResourceKind.INGRESS: 900,
        ResourceKind.MANAGED_CERTIFICATE: 3600,
        ResourceKind.DNS_RECORD: 600,
        ResourceKind.MANIFEST: 600,
    }
)

_CERT_HARD_FAILURES = frozenset(
    {'FailedCaaChecking', 'FailedCaaForbidden', 'FailedRateLimited'}
)


class ReadinessStatus(Enum):
    NOT_READY = 'NotReady'
    READY = 'Ready'
    FAILED = 'Failed'


@dataclass(frozen=True, slots=True)
class Readiness:
    """Boolean-plus-diagnostic poll result."""

    status: ReadinessStatus
    detail: str = ''

    @classmethod
    def ready(cls, detail: str = '') -> Readiness:
        return cls(ReadinessStatus.READY, detail)

    @classmethod
    def not_ready(cls, detail: str = '') -> Readiness:
        return cls(ReadinessStatus.NOT_READY, detail)

    @classmethod
    def failed(cls, reason: str) -> Readiness:
        return cls(ReadinessStatus.FAILED, reason)

    @property
    def is_ready(self) -> bool:
        return self.status is ReadinessStatus.READY

    @property
    def is_failed(self) -> bool:
        return self.status is ReadinessStatus.FAILED


Predicate = Callable[[ResourceDescriptor, Mapping[str, Any]], Readiness]


# ── Predicates ───────────────────────────────────────────────────────


def _present(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    if snapshot:
        return Readiness.ready()
    return Readiness.not_ready('resource not visible yet')


def _static_address(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    status = snapshot.get('status')
    if status in ('RESERVED', 'IN_USE') and snapshot.get('address'):
        return Readiness.ready(f'address {snapshot["address"]}')
    return Readiness.not_ready(f'address status {status!r}')


def _cluster(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    status = snapshot.get('status')
    if status == 'RUNNING':
        return Readiness.ready()
    if status in ('ERROR', 'DEGRADED'):
        return Readiness.failed(
            f'cluster status {status}: {snapshot.get("statusMessage", "")}'.strip()
        )
    return Readiness.not_ready(f'cluster status {status!r}')


def _node_pool(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    status = snapshot.get('status')
    if status == 'ERROR':
        return Readiness.failed(
            f'node pool status ERROR: {snapshot.get("statusMessage", "")}'.strip()
        )
    raw = descriptor.spec.get('min_node_count', descriptor.spec.get('node_count', 1))
    try:
        wanted = int(raw)
    except (TypeError, ValueError):
        return Readiness.failed(
            f'invalid spec: node count must be an integer, got {raw!r}'
        )
    try:
        observed = int(snapshot.get('readyNodeCount') or 0)
    except (TypeError, ValueError):
        observed = 0
    if observed >= wanted:
        return Readiness.ready(f'{observed}/{wanted} nodes ready')
    return Readiness.not_ready(f'{observed}/{wanted} nodes ready')


def _service_account(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    if not snapshot:
        return Readiness.not_ready('service account not visible yet')
    if snapshot.get('disabled'):
        return Readiness.failed('service account is disabled')
    return Readiness.ready(snapshot.get('email', ''))


def _iam_binding(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    role = descriptor.spec.get('role')
    member = descriptor.spec.get('member')
    for binding in snapshot.get('bindings') or ():
        if binding.get('role') == role and member in (binding.get('members') or ()):
            return Readiness.ready(f'{member} has {role}')
    return Readiness.not_ready(f'{member} not yet bound to {role}')


def _namespace(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    phase = (snapshot.get('status') or {}).get('phase')
    if phase == 'Active':
        return Readiness.ready()
    return Readiness.not_ready(f'namespace phase {phase!r}')


def _k8s_service_account(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    if not snapshot:
        return Readiness.not_ready('service account not visible yet')
    wanted = descriptor.spec.get('gcp_service_account')
    if wanted:
        annotations = (snapshot.get('metadata') or {}).get('annotations') or {}
        actual = annotations.get('iam.gke.io/gcp-service-account')
        if actual != wanted:
            return Readiness.not_ready(
                f'workload identity annotation is {actual!r}, want {wanted!r}'
            )
    return Readiness.ready()


def _ingress(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    lb = ((snapshot.get('status') or {}).get('loadBalancer') or {})
    entries = lb.get('ingress') or []
    ips = [e.get('ip') or e.get('hostname') for e in entries]
    ips = [ip for ip in ips if ip]
    if not ips:
        return Readiness.not_ready('load balancer not assigned yet')
    wanted = descriptor.spec.get('static_ip')
    if wanted and wanted not in ips:
        return Readiness.not_ready(f'ingress ips {ips}, want {wanted}')
    return Readiness.ready(', '.join(ips))


class _ManagedCertificate:
    """Certificate predicate with a per-entry FailedNotVisible streak.

    The streak counts consecutive FailedNotVisible polls of one resource
    id; any other status clears it.
    """

    def __init__(self, failed_not_visible_polls: int) -> None:
        self._limit = failed_not_visible_polls
        self._streaks: dict[str, int] = {}

    def reset(self, resource_id: str) -> None:
        self._streaks.pop(resource_id, None)

    def __call__(
        self, descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
    ) -> Readiness:
        status = (snapshot.get('status') or {}).get('certificateStatus')
        if status != 'FailedNotVisible':
            self.reset(descriptor.id)
        if status == 'Active':
            return Readiness.ready()
        if status in _CERT_HARD_FAILURES:
            return Readiness.failed(f'certificate status {status}')
        if status == 'FailedNotVisible':
            # DNS may simply not have propagated yet.
            streak = self._streaks.get(descriptor.id, 0) + 1
            self._streaks[descriptor.id] = streak
            if streak >= self._limit:
                return Readiness.failed(
                    'certificate status FailedNotVisible for '
                    f'{streak} consecutive polls: domain does not resolve '
                    'to the load balancer'
                )
            return Readiness.not_ready('certificate domain not visible yet')
        return Readiness.not_ready(f'certificate status {status!r}')


def _dns_record(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    status = snapshot.get('changeStatus')
    if status == 'INSYNC':
        return Readiness.ready(', '.join(snapshot.get('values') or ()))
    return Readiness.not_ready(f'change status {status!r}')


def _manifest(
    descriptor: ResourceDescriptor, snapshot: Mapping[str, Any],
) -> Readiness:
    deployments = snapshot.get('deployments') or []
    pending = [
        f'{d.get("namespace")}/{d.get("name")}'
        for d in deployments
        if not d.get('available')
    ]
    if pending:
        return Readiness.not_ready('waiting for ' + ', '.join(pending))
    return Readiness.ready(f'{len(deployments)} deployment(s) available')


# ── Oracle ───────────────────────────────────────────────────────────


class ReadinessOracle:
    """Dispatches a snapshot to the predicate registered for its kind."""

    def __init__(
        self,
        *,
        failed_not_visible_polls: int = DEFAULT_FAILED_NOT_VISIBLE_POLLS,
        predicates: Mapping[ResourceKind, Predicate] | None = None,
    ) -> None:
        if failed_not_visible_polls < 1:
            raise ValueError('failed_not_visible_polls must be >= 1')
        self._certificate = _ManagedCertificate(failed_not_visible_polls)
        self._predicates: dict[ResourceKind, Predicate] = {
            ResourceKind.NETWORK: _present,
            ResourceKind.SUBNET: _present,
            ResourceKind.CLUSTER: _cluster,
            ResourceKind.NODE_POOL: _node_pool,
            ResourceKind.SERVICE_ACCOUNT: _service_account,
            ResourceKind.IAM_BINDING: _iam_binding,
            ResourceKind.BUCKET: _present,
            ResourceKind.STATIC_ADDRESS: _static_address,
            ResourceKind.NAMESPACE: _namespace,
            ResourceKind.K8S_SERVICE_ACCOUNT: _k8s_service_account,
            ResourceKind.INGRESS: _ingress,
            ResourceKind.MANAGED_CERTIFICATE: self._certificate,
            ResourceKind.DNS_RECORD: _dns_record,
            ResourceKind.MANIFEST: _manifest,
        }
        if predicates:
            self._predicates.update(predicates)

    def reset(self, resource_id: str) -> None:
        """Forget per-entry poll history before a new poll sequence."""
        self._certificate.reset(resource_id)

    def poll(
        self,
        descriptor: ResourceDescriptor,
        snapshot: Mapping[str, Any] | None,
    ) -> Readiness:
        """Interpret one status snapshot."""
        predicate = self._predicates.get(descriptor.kind)
        if predicate is None:
            return Readiness.failed(f'no readiness predicate for {descriptor.kind.value}')
        return predicate(descriptor, snapshot or {})
