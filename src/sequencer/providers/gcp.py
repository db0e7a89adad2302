"""Google Cloud control-plane clients.

One client per resource kind, all speaking the public REST APIs through
``RestClient``. External identities are the resource paths the APIs use
themselves (``projects/{project}/global/networks/{name}`` ...), so they
are derivable from the descriptor alone and stable across restarts.

Creates return once the API has accepted the request (long-running
operations are not awaited); readiness is observed through ``get_status``.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from ..descriptors.model import ResourceDescriptor
from ..errors import PermanentError, ResourceAlreadyExists, ResourceNotFound, TransientError
from .http import RestClient

logger = logging.getLogger(__name__)

COMPUTE_API = "https://compute.googleapis.com/compute/v1"
CONTAINER_API = "https://container.googleapis.com/v1"
IAM_API = "https://iam.googleapis.com/v1"
RESOURCE_MANAGER_API = "https://cloudresourcemanager.googleapis.com/v1"
STORAGE_API = "https://storage.googleapis.com/storage/v1"

_NODE_POOL_LABEL = "cloud.google.com/gke-nodepool"


def require(descriptor: ResourceDescriptor, key: str) -> Any:
    """Return ``spec[key]`` or fail the entry with a permanent error."""
    value = descriptor.spec.get(key)
    if value in (None, "", [], {}):
        raise PermanentError(
            f"{descriptor.kind.value} {descriptor.id!r}: spec.{key} is required",
            resource_id=descriptor.id,
        )
    return value


def _compact(body: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in body.items() if v is not None}


# ── Base ─────────────────────────────────────────────────────────


class GcpResourceClient:
    """POST to a collection, GET/DELETE the resource path."""

    api = COMPUTE_API

    def __init__(
        self,
        *,
        project: str,
        region: str,
        bearer_token: str = "",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not project:
            raise ValueError("project is required")
        self._project = project
        self._region = region
        self._rest = RestClient(
            base_url=self.api,
            bearer_token=bearer_token,
            http_client=http_client,
        )

    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        raise NotImplementedError

    def collection_path(self, descriptor: ResourceDescriptor) -> str:
        return self.resource_path(descriptor).rsplit("/", 1)[0]

    def body(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        return {"name": descriptor.name}

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        return self.resource_path(descriptor)

    async def create(self, descriptor: ResourceDescriptor) -> None:
        await self._submit(
            descriptor, f"/{self.collection_path(descriptor)}", self.body(descriptor),
        )
        logger.info(
            "Create accepted: %s",
            self.external_identity(descriptor),
            extra={"resource_id": descriptor.id, "kind": descriptor.kind.value},
        )

    async def _submit(
        self,
        descriptor: ResourceDescriptor,
        path: str,
        body: Mapping[str, Any],
        *,
        params: dict[str, str] | None = None,
    ) -> None:
        """POST a create; a 409 is re-raised after a drift warning."""
        try:
            await self._rest.request(
                "POST", path, params=params, json=body, resource_id=descriptor.id,
            )
        except ResourceAlreadyExists:
            # Creates are not patches: a changed spec is not pushed here.
            logger.warning(
                "%s already exists; live resource not updated to the declared spec",
                self.external_identity(descriptor),
                extra={
                    "resource_id": descriptor.id,
                    "kind": descriptor.kind.value,
                    "spec_hash": descriptor.spec_hash,
                },
            )
            raise

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        result = await self._rest.request(
            "GET", f"/{self.resource_path(descriptor)}", resource_id=descriptor.id,
        )
        return result or {}

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        await self._rest.request(
            "DELETE", f"/{self.resource_path(descriptor)}", resource_id=descriptor.id,
        )


# ── Compute ──────────────────────────────────────────────────────


class NetworkClient(GcpResourceClient):
    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        return f"projects/{self._project}/global/networks/{descriptor.name}"

    def body(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        spec = descriptor.spec
        return {
            "name": descriptor.name,
            "autoCreateSubnetworks": bool(spec.get("auto_create_subnetworks", False)),
            "routingConfig": {"routingMode": spec.get("routing_mode", "REGIONAL")},
        }


class SubnetClient(GcpResourceClient):
    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        region = descriptor.spec.get("region", self._region)
        return f"projects/{self._project}/regions/{region}/subnetworks/{descriptor.name}"

    def body(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        spec = descriptor.spec
        secondary = spec.get("secondary_ranges") or {}
        return {
            "name": descriptor.name,
            "ipCidrRange": require(descriptor, "ip_cidr_range"),
            "network": (
                f"projects/{self._project}/global/networks/"
                f"{require(descriptor, 'network')}"
            ),
            "privateIpGoogleAccess": bool(spec.get("private_ip_google_access", True)),
            "secondaryIpRanges": [
                {"rangeName": name, "ipCidrRange": cidr}
                for name, cidr in sorted(secondary.items())
            ],
        }


class StaticAddressClient(GcpResourceClient):
    """Global address by default (what a GCE ingress needs)."""

    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        region = descriptor.spec.get("region")
        scope = f"regions/{region}" if region else "global"
        return f"projects/{self._project}/{scope}/addresses/{descriptor.name}"

    def body(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        return {
            "name": descriptor.name,
            "addressType": descriptor.spec.get("address_type", "EXTERNAL"),
            "ipVersion": descriptor.spec.get("ip_version", "IPV4"),
        }


# ── GKE ──────────────────────────────────────────────────────────


class ClusterClient(GcpResourceClient):
    api = CONTAINER_API

    def _location(self, descriptor: ResourceDescriptor) -> str:
        return descriptor.spec.get("location", self._region)

    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        return (
            f"projects/{self._project}/locations/{self._location(descriptor)}"
            f"/clusters/{descriptor.name}"
        )

    def body(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        spec = descriptor.spec
        cluster: dict[str, Any] = {
            "name": descriptor.name,
            "network": require(descriptor, "network"),
            "subnetwork": require(descriptor, "subnetwork"),
            "initialNodeCount": int(spec.get("initial_node_count", 1)),
            "releaseChannel": {"channel": spec.get("release_channel", "REGULAR")},
            "addonsConfig": {"httpLoadBalancing": {"disabled": False}},
            "ipAllocationPolicy": _compact(
                {
                    "useIpAliases": True,
                    "clusterSecondaryRangeName": spec.get("pods_range"),
                    "servicesSecondaryRangeName": spec.get("services_range"),
                }
            ),
        }
        if spec.get("workload_identity", True):
            cluster["workloadIdentityConfig"] = {
                "workloadPool": f"{self._project}.svc.id.goog",
            }
        return {"cluster": cluster}


class NodePoolClient(GcpResourceClient):
    """Node pools report ``readyNodeCount`` observed through the Kubernetes API."""

    api = CONTAINER_API

    def __init__(self, *, kube: Any = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._kube = kube

    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        location = descriptor.spec.get("location", self._region)
        cluster = require(descriptor, "cluster")
        return (
            f"projects/{self._project}/locations/{location}/clusters/{cluster}"
            f"/nodePools/{descriptor.name}"
        )

    def body(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        spec = descriptor.spec
        config = _compact(
            {
                "machineType": spec.get("machine_type", "e2-standard-4"),
                "diskSizeGb": int(spec.get("disk_size_gb", 100)),
                "serviceAccount": spec.get("service_account"),
                "oauthScopes": ["https://www.googleapis.com/auth/cloud-platform"],
                "workloadMetadataConfig": {"mode": "GKE_METADATA"},
            }
        )
        pool: dict[str, Any] = {
            "name": descriptor.name,
            "initialNodeCount": int(spec.get("node_count", 1)),
            "config": config,
        }
        autoscaling = spec.get("autoscaling")
        if autoscaling:
            pool["autoscaling"] = {
                "enabled": True,
                "minNodeCount": int(autoscaling.get("min", 1)),
                "maxNodeCount": int(autoscaling.get("max", 3)),
            }
        return {"nodePool": pool}

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        pool = dict(await super().get_status(descriptor))
        if self._kube is None or pool.get("status") != "RUNNING":
            pool.setdefault("readyNodeCount", 0)
            return pool
        pool["readyNodeCount"] = await self._kube.ready_node_count(
            f"{_NODE_POOL_LABEL}={descriptor.name}", resource_id=descriptor.id,
        )
        return pool


@dataclass(frozen=True, slots=True)
class GkeEndpoint:
    """API server coordinates discovered from a GKE cluster."""

    url: str
    ca_certificate: str


async def discover_gke_endpoint(
    *,
    project: str,
    location: str,
    cluster: str,
    bearer_token: str,
    http_client: httpx.AsyncClient | None = None,
) -> GkeEndpoint:
    """Read the API server endpoint and CA of a running cluster."""
    rest = RestClient(
        base_url=CONTAINER_API, bearer_token=bearer_token, http_client=http_client,
    )
    body = await rest.request(
        "GET", f"/projects/{project}/locations/{location}/clusters/{cluster}",
    )
    body = body or {}
    endpoint = body.get("endpoint")
    if not endpoint:
        raise TransientError(f"cluster {cluster!r} has no endpoint yet")
    ca = (body.get("masterAuth") or {}).get("clusterCaCertificate", "")
    return GkeEndpoint(
        url=f"https://{endpoint}",
        ca_certificate=base64.b64decode(ca).decode() if ca else "",
    )


# ── IAM ──────────────────────────────────────────────────────────


class ServiceAccountClient(GcpResourceClient):
    api = IAM_API

    def _email(self, descriptor: ResourceDescriptor) -> str:
        account_id = descriptor.spec.get("account_id", descriptor.name)
        return f"{account_id}@{self._project}.iam.gserviceaccount.com"

    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        return f"projects/{self._project}/serviceAccounts/{self._email(descriptor)}"

    def collection_path(self, descriptor: ResourceDescriptor) -> str:
        return f"projects/{self._project}/serviceAccounts"

    def body(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        account_id = descriptor.spec.get("account_id", descriptor.name)
        return {
            "accountId": account_id,
            "serviceAccount": _compact(
                {
                    "displayName": descriptor.spec.get("display_name", account_id),
                    "description": descriptor.spec.get("description"),
                }
            ),
        }


class IamBindingClient(GcpResourceClient):
    """Adds or removes one member on one role of an IAM policy.

    Project-level by default; with ``spec.service_account`` the binding is
    placed on that service account's policy (workload identity).
    Policy writes are read-modify-write guarded by the etag, so a
    concurrent writer surfaces as a 409 which is retried as transient.
    """

    api = RESOURCE_MANAGER_API

    def _policy_url(self, descriptor: ResourceDescriptor) -> str:
        account = descriptor.spec.get("service_account")
        if account:
            return f"{IAM_API}/projects/{self._project}/serviceAccounts/{account}"
        return f"{RESOURCE_MANAGER_API}/projects/{self._project}"

    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        return self._policy_url(descriptor).split("/v1/", 1)[1]

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        role = require(descriptor, "role")
        member = require(descriptor, "member")
        return f"{self.resource_path(descriptor)}#{role}#{member}"

    async def _get_policy(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        policy = await self._rest.request(
            "POST",
            f"{self._policy_url(descriptor)}:getIamPolicy",
            json={},
            resource_id=descriptor.id,
        )
        return policy or {}

    async def _set_policy(
        self, descriptor: ResourceDescriptor, policy: dict[str, Any],
    ) -> None:
        try:
            await self._rest.request(
                "POST",
                f"{self._policy_url(descriptor)}:setIamPolicy",
                json={"policy": policy},
                resource_id=descriptor.id,
            )
        except ResourceAlreadyExists as exc:
            raise TransientError(
                f"concurrent IAM policy update: {exc}",
                resource_id=descriptor.id,
                status_code=exc.status_code,
                payload=exc.payload,
            ) from exc

    @staticmethod
    def _is_bound(policy: Mapping[str, Any], role: str, member: str) -> bool:
        return any(
            b.get("role") == role and member in (b.get("members") or ())
            for b in policy.get("bindings") or ()
        )

    async def create(self, descriptor: ResourceDescriptor) -> None:
        role = require(descriptor, "role")
        member = require(descriptor, "member")
        policy = await self._get_policy(descriptor)
        if self._is_bound(policy, role, member):
            return
        bindings = list(policy.get("bindings") or [])
        for binding in bindings:
            if binding.get("role") == role and "condition" not in binding:
                binding["members"] = sorted({*binding.get("members", []), member})
                break
        else:
            bindings.append({"role": role, "members": [member]})
        policy["bindings"] = bindings
        await self._set_policy(descriptor, policy)
        logger.info(
            "IAM binding added: %s",
            self.external_identity(descriptor),
            extra={"resource_id": descriptor.id, "kind": descriptor.kind.value},
        )

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        policy = await self._get_policy(descriptor)
        if not self._is_bound(policy, descriptor.spec.get("role"), descriptor.spec.get("member")):
            raise ResourceNotFound(
                f"{descriptor.spec.get('member')} not bound to {descriptor.spec.get('role')}",
                resource_id=descriptor.id,
            )
        return policy

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        role = require(descriptor, "role")
        member = require(descriptor, "member")
        policy = await self._get_policy(descriptor)
        if not self._is_bound(policy, role, member):
            raise ResourceNotFound(
                f"{member} not bound to {role}", resource_id=descriptor.id,
            )
        bindings = []
        for binding in policy.get("bindings") or ():
            if binding.get("role") == role:
                binding = {
                    **binding,
                    "members": [m for m in binding.get("members", ()) if m != member],
                }
                if not binding["members"]:
                    continue
            bindings.append(binding)
        policy["bindings"] = bindings
        await self._set_policy(descriptor, policy)


# ── Storage ──────────────────────────────────────────────────────


class BucketClient(GcpResourceClient):
    api = STORAGE_API

    def resource_path(self, descriptor: ResourceDescriptor) -> str:
        return f"b/{descriptor.name}"

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        return f"gs://{descriptor.name}"

    async def create(self, descriptor: ResourceDescriptor) -> None:
        spec = descriptor.spec
        await self._submit(
            descriptor,
            "/b",
            {
                "name": descriptor.name,
                "location": spec.get("location", self._region),
                "storageClass": spec.get("storage_class", "STANDARD"),
                "iamConfiguration": {"uniformBucketLevelAccess": {"enabled": True}},
                "versioning": {"enabled": bool(spec.get("versioning", False))},
            },
            params={"project": self._project},
        )
