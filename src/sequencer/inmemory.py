"""In-memory control plane for tests and ``--simulate`` runs.

Serves every resource kind from a dict. Creates make the resource visible
with a snapshot that satisfies the readiness oracle; failures and
intermediate status sequences can be scripted per descriptor id.
"""

from __future__ import annotations

from typing import Any, Mapping

from .descriptors.model import ResourceDescriptor, ResourceKind
from .errors import ResourceNotFound


def ready_snapshot(descriptor: ResourceDescriptor) -> dict[str, Any]:
    """A status snapshot the oracle reports as Ready for ``descriptor``."""
    spec = descriptor.spec
    kind = descriptor.kind
    if kind is ResourceKind.STATIC_ADDRESS:
        return {"status": "RESERVED", "address": spec.get("address", "203.0.113.10")}
    if kind is ResourceKind.CLUSTER:
        return {"name": descriptor.name, "status": "RUNNING"}
    if kind is ResourceKind.NODE_POOL:
        wanted = spec.get("min_node_count", spec.get("node_count", 1))
        return {"name": descriptor.name, "status": "RUNNING", "readyNodeCount": wanted}
    if kind is ResourceKind.SERVICE_ACCOUNT:
        return {"email": f"{descriptor.name}@example.iam.gserviceaccount.com"}
    if kind is ResourceKind.IAM_BINDING:
        return {"bindings": [{"role": spec.get("role"), "members": [spec.get("member")]}]}
    if kind is ResourceKind.NAMESPACE:
        return {"metadata": {"name": descriptor.name}, "status": {"phase": "Active"}}
    if kind is ResourceKind.K8S_SERVICE_ACCOUNT:
        annotations = {}
        if spec.get("gcp_service_account"):
            annotations["iam.gke.io/gcp-service-account"] = spec["gcp_service_account"]
        return {"metadata": {"name": descriptor.name, "annotations": annotations}}
    if kind is ResourceKind.INGRESS:
        ip = spec.get("static_ip", "203.0.113.10")
        return {"status": {"loadBalancer": {"ingress": [{"ip": ip}]}}}
    if kind is ResourceKind.MANAGED_CERTIFICATE:
        return {"status": {"certificateStatus": "Active"}}
    if kind is ResourceKind.DNS_RECORD:
        return {"changeStatus": "INSYNC", "values": list(spec.get("values", ()))}
    if kind is ResourceKind.MANIFEST:
        return {
            "deployments": [
                {"namespace": t.get("namespace", "default"), "name": t["name"], "available": True}
                for t in spec.get("wait_for", ())
            ]
        }
    return {"name": descriptor.name}


class InMemoryControlPlane:
    """Fake ``ControlPlaneClient`` for every kind.

    ``calls`` records ``(method, resource_id)`` in call order.
    """

    def __init__(self) -> None:
        self.resources: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self._create_errors: dict[str, list[Exception]] = {}
        self._delete_errors: dict[str, list[Exception]] = {}
        self._status_errors: dict[str, list[Exception]] = {}
        self._statuses: dict[str, list[dict[str, Any]]] = {}
        self._linger: dict[str, int] = {}

    # ── Scripting ─────────────────────────────────────────────────

    def fail_create(self, resource_id: str, *errors: Exception) -> None:
        """Raise ``errors`` from the next create calls, in order."""
        self._create_errors.setdefault(resource_id, []).extend(errors)

    def fail_delete(self, resource_id: str, *errors: Exception) -> None:
        self._delete_errors.setdefault(resource_id, []).extend(errors)

    def fail_status(self, resource_id: str, *errors: Exception) -> None:
        self._status_errors.setdefault(resource_id, []).extend(errors)

    def script_status(self, resource_id: str, *snapshots: Mapping[str, Any]) -> None:
        """Return ``snapshots`` from successive polls; the last one repeats."""
        self._statuses[resource_id] = [dict(s) for s in snapshots]

    def linger_after_delete(self, resource_id: str, polls: int) -> None:
        """Keep reporting the resource for ``polls`` status calls after delete."""
        self._linger[resource_id] = polls

    def seed(self, descriptor: ResourceDescriptor, snapshot: Mapping[str, Any] | None = None) -> None:
        """Make a resource exist without a create call."""
        self.resources[descriptor.id] = dict(snapshot or ready_snapshot(descriptor))

    def count(self, method: str, resource_id: str | None = None) -> int:
        return sum(
            1 for m, rid in self.calls
            if m == method and (resource_id is None or rid == resource_id)
        )

    # ── ControlPlaneClient ────────────────────────────────────────

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        return f"inmemory/{descriptor.kind.value}/{descriptor.name}"

    async def create(self, descriptor: ResourceDescriptor) -> None:
        self.calls.append(("create", descriptor.id))
        errors = self._create_errors.get(descriptor.id)
        if errors:
            raise errors.pop(0)
        self.resources[descriptor.id] = ready_snapshot(descriptor)

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        self.calls.append(("get_status", descriptor.id))
        errors = self._status_errors.get(descriptor.id)
        if errors:
            raise errors.pop(0)
        if descriptor.id not in self.resources:
            lingering = self._linger.get(descriptor.id, 0)
            if lingering > 0:
                self._linger[descriptor.id] = lingering - 1
                return {"name": descriptor.name, "status": "STOPPING"}
            raise ResourceNotFound(f"{descriptor.id} not found", resource_id=descriptor.id)
        scripted = self._statuses.get(descriptor.id)
        if scripted:
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]
        return self.resources[descriptor.id]

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        self.calls.append(("delete", descriptor.id))
        errors = self._delete_errors.get(descriptor.id)
        if errors:
            raise errors.pop(0)
        if self.resources.pop(descriptor.id, None) is None:
            raise ResourceNotFound(f"{descriptor.id} not found", resource_id=descriptor.id)
