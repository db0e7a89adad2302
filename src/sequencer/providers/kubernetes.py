"""Kubernetes control-plane clients.

Objects are written with server-side apply (``PATCH`` with
``application/apply-patch+yaml`` and a fixed field manager), so ``create``
is create-or-update and re-running it with a changed spec converges the
live object instead of failing on a conflict.

The API server is either configured up front (``KUBE_API_URL``) or
discovered from the GKE cluster on first use, which lets one apply run
create the cluster and then the in-cluster objects.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import ssl
from typing import Any, Awaitable, Callable, Mapping

import httpx

from ..descriptors.model import ResourceDescriptor
from ..errors import PermanentError, ResourceNotFound
from .gcp import GkeEndpoint, require
from .http import RestClient

logger = logging.getLogger(__name__)

FIELD_MANAGER = "gitops-sequencer"
WORKLOAD_IDENTITY_ANNOTATION = "iam.gke.io/gcp-service-account"

_APPLY_HEADERS = {"Content-Type": "application/apply-patch+yaml"}

_CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "ClusterIssuer",
        "IngressClass",
        "PriorityClass",
        "StorageClass",
        "ValidatingWebhookConfiguration",
        "MutatingWebhookConfiguration",
        "APIService",
    }
)

EndpointDiscovery = Callable[[], Awaitable[GkeEndpoint]]


def _plural(kind: str) -> str:
    lower = kind.lower()
    if lower.endswith("s"):
        return f"{lower}es"
    if lower.endswith("y"):
        return f"{lower[:-1]}ies"
    return f"{lower}s"


def object_path(obj: Mapping[str, Any], *, default_namespace: str = "default") -> str:
    """REST path of a manifest object, derived from apiVersion/kind/metadata."""
    api_version = obj.get("apiVersion")
    kind = obj.get("kind")
    name = (obj.get("metadata") or {}).get("name")
    if not api_version or not kind or not name:
        raise ValueError("manifest objects need apiVersion, kind and metadata.name")
    prefix = "/api/v1" if api_version == "v1" else f"/apis/{api_version}"
    if kind in _CLUSTER_SCOPED_KINDS:
        return f"{prefix}/{_plural(kind)}/{name}"
    namespace = (obj.get("metadata") or {}).get("namespace") or default_namespace
    return f"{prefix}/namespaces/{namespace}/{_plural(kind)}/{name}"


# ── API access ───────────────────────────────────────────────────


class KubeApi:
    """Lazily connected REST access to one Kubernetes API server."""

    def __init__(
        self,
        *,
        api_url: str = "",
        bearer_token: str = "",
        ca_file: str = "",
        discover: EndpointDiscovery | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_url and discover is None:
            raise ValueError("api_url or an endpoint discovery callable is required")
        self._api_url = api_url
        self._bearer_token = bearer_token
        self._ca_file = ca_file
        self._discover = discover
        self._http_client = http_client
        self._rest: RestClient | None = None
        self._lock = asyncio.Lock()

    async def _connect(self) -> RestClient:
        if self._rest is not None:
            return self._rest
        async with self._lock:
            if self._rest is None:
                api_url = self._api_url
                verify: ssl.SSLContext | str | bool = self._ca_file or True
                if not api_url:
                    endpoint = await self._discover()
                    api_url = endpoint.url
                    if endpoint.ca_certificate:
                        verify = ssl.create_default_context(
                            cadata=endpoint.ca_certificate,
                        )
                    logger.info("Discovered Kubernetes API server at %s", api_url)
                client = self._http_client or httpx.AsyncClient(verify=verify)
                self._rest = RestClient(
                    base_url=api_url,
                    bearer_token=self._bearer_token,
                    http_client=client,
                )
        return self._rest

    async def request(self, method: str, path: str, **kwargs: Any) -> Any:
        rest = await self._connect()
        return await rest.request(method, path, **kwargs)

    async def apply(
        self, obj: Mapping[str, Any], *, resource_id: str | None = None,
    ) -> Any:
        """Server-side apply one object."""
        return await self.request(
            "PATCH",
            object_path(obj),
            params={"fieldManager": FIELD_MANAGER, "force": "true"},
            headers=_APPLY_HEADERS,
            content=json.dumps(obj).encode(),
            resource_id=resource_id,
        )

    async def ready_node_count(
        self, label_selector: str, *, resource_id: str | None = None,
    ) -> int:
        nodes = await self.request(
            "GET",
            "/api/v1/nodes",
            params={"labelSelector": label_selector},
            resource_id=resource_id,
        )
        count = 0
        for node in (nodes or {}).get("items") or ():
            conditions = (node.get("status") or {}).get("conditions") or ()
            if any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
                count += 1
        return count

    async def deployment_available(
        self, namespace: str, name: str, *, resource_id: str | None = None,
    ) -> bool:
        try:
            deployment = await self.request(
                "GET",
                f"/apis/apps/v1/namespaces/{namespace}/deployments/{name}",
                resource_id=resource_id,
            )
        except ResourceNotFound:
            return False
        conditions = ((deployment or {}).get("status") or {}).get("conditions") or ()
        return any(
            c.get("type") == "Available" and c.get("status") == "True"
            for c in conditions
        )


# ── Typed objects ────────────────────────────────────────────────


class KubeObjectClient:
    """Applies one object built from the descriptor; GET/DELETE its path."""

    def __init__(self, kube: KubeApi) -> None:
        self._kube = kube

    def manifest(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def _metadata(descriptor: ResourceDescriptor, **extra: Any) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "name": descriptor.name,
            "namespace": descriptor.spec.get("namespace", "default"),
        }
        labels = descriptor.spec.get("labels")
        if labels:
            metadata["labels"] = dict(labels)
        metadata.update({k: v for k, v in extra.items() if v})
        return metadata

    def _path(self, descriptor: ResourceDescriptor) -> str:
        return object_path(self.manifest(descriptor))

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        return self._path(descriptor)

    async def create(self, descriptor: ResourceDescriptor) -> None:
        await self._kube.apply(self.manifest(descriptor), resource_id=descriptor.id)
        logger.info(
            "Applied %s",
            self._path(descriptor),
            extra={"resource_id": descriptor.id, "kind": descriptor.kind.value},
        )

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        result = await self._kube.request(
            "GET", self._path(descriptor), resource_id=descriptor.id,
        )
        return result or {}

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        await self._kube.request(
            "DELETE", self._path(descriptor), resource_id=descriptor.id,
        )


class NamespaceClient(KubeObjectClient):
    def manifest(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        metadata = self._metadata(descriptor)
        metadata.pop("namespace")
        return {"apiVersion": "v1", "kind": "Namespace", "metadata": metadata}


class ServiceAccountObjectClient(KubeObjectClient):
    """Kubernetes service account, optionally bound to a GCP one."""

    def manifest(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        gsa = descriptor.spec.get("gcp_service_account")
        annotations = {WORKLOAD_IDENTITY_ANNOTATION: gsa} if gsa else None
        return {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": self._metadata(descriptor, annotations=annotations),
        }


class ManagedCertificateClient(KubeObjectClient):
    def manifest(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        return {
            "apiVersion": "networking.gke.io/v1",
            "kind": "ManagedCertificate",
            "metadata": self._metadata(descriptor),
            "spec": {"domains": list(require(descriptor, "domains"))},
        }


class IngressClient(KubeObjectClient):
    """GCE ingress wired to a reserved global address and managed certificates."""

    def manifest(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        spec = descriptor.spec
        annotations: dict[str, str] = {
            "kubernetes.io/ingress.class": spec.get("ingress_class", "gce"),
        }
        if spec.get("static_ip_name"):
            annotations["kubernetes.io/ingress.global-static-ip-name"] = spec["static_ip_name"]
        certificates = spec.get("managed_certificates")
        if certificates:
            annotations["networking.gke.io/managed-certificates"] = ",".join(certificates)
        annotations.update(spec.get("annotations") or {})

        if spec.get("rules"):
            rules = copy.deepcopy(list(spec["rules"]))
        else:
            backend = {
                "service": {
                    "name": require(descriptor, "service_name"),
                    "port": {"number": int(spec.get("service_port", 80))},
                }
            }
            rule: dict[str, Any] = {
                "http": {
                    "paths": [{"path": "/", "pathType": "Prefix", "backend": backend}],
                },
            }
            if spec.get("host"):
                rule["host"] = spec["host"]
            rules = [rule]

        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": self._metadata(descriptor, annotations=annotations),
            "spec": {"rules": rules},
        }


# ── Manifests ────────────────────────────────────────────────────


class ManifestClient:
    """A bundle of raw objects (controller install, config patch).

    ``spec.objects`` is applied in order and deleted in reverse order.
    ``spec.wait_for`` lists ``{namespace, name}`` deployments that must
    report ``Available`` before the manifest counts as ready.
    """

    def __init__(self, kube: KubeApi) -> None:
        self._kube = kube

    @staticmethod
    def _objects(descriptor: ResourceDescriptor) -> list[dict[str, Any]]:
        objects = copy.deepcopy(list(require(descriptor, "objects")))
        for obj in objects:
            try:
                object_path(obj)
            except ValueError as exc:
                raise PermanentError(
                    f"manifest {descriptor.id!r}: {exc}", resource_id=descriptor.id,
                ) from exc
        return objects

    @staticmethod
    def _wait_for(descriptor: ResourceDescriptor) -> list[tuple[str, str]]:
        """``(namespace, name)`` of every deployment the manifest waits for."""
        targets = []
        for target in descriptor.spec.get("wait_for") or ():
            name = target.get("name") if isinstance(target, Mapping) else None
            if not name:
                raise PermanentError(
                    f"manifest {descriptor.id!r}: every wait_for entry needs a name",
                    resource_id=descriptor.id,
                )
            targets.append((target.get("namespace", "default"), name))
        return targets

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        # Raises PermanentError for a malformed manifest.
        self._objects(descriptor)
        self._wait_for(descriptor)
        return f"manifest/{descriptor.name}"

    async def create(self, descriptor: ResourceDescriptor) -> None:
        for obj in self._objects(descriptor):
            await self._kube.apply(obj, resource_id=descriptor.id)
        logger.info(
            "Applied manifest %s",
            descriptor.name,
            extra={"resource_id": descriptor.id, "kind": descriptor.kind.value},
        )

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        objects = self._objects(descriptor)
        # Raises ResourceNotFound until the first object exists.
        await self._kube.request(
            "GET", object_path(objects[0]), resource_id=descriptor.id,
        )
        deployments = []
        for namespace, name in self._wait_for(descriptor):
            deployments.append(
                {
                    "namespace": namespace,
                    "name": name,
                    "available": await self._kube.deployment_available(
                        namespace, name, resource_id=descriptor.id,
                    ),
                }
            )
        return {"deployments": deployments}

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        deleted = 0
        for obj in reversed(self._objects(descriptor)):
            try:
                await self._kube.request(
                    "DELETE", object_path(obj), resource_id=descriptor.id,
                )
            except ResourceNotFound:
                continue
            deleted += 1
        if not deleted:
            raise ResourceNotFound(
                f"manifest {descriptor.name!r} has no live objects",
                resource_id=descriptor.id,
            )
