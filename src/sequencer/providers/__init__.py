"""Control-plane clients for GCP, Kubernetes and Route53."""

from __future__ import annotations

from functools import partial
from typing import Iterable

import httpx

from ..descriptors.model import GCP_KINDS, KUBERNETES_KINDS, ResourceKind
from ..settings import SequencerSettings
from .gcp import (
    BucketClient,
    ClusterClient,
    IamBindingClient,
    NetworkClient,
    NodePoolClient,
    ServiceAccountClient,
    StaticAddressClient,
    SubnetClient,
    discover_gke_endpoint,
)
from .http import RestClient
from .kubernetes import (
    IngressClient,
    KubeApi,
    ManagedCertificateClient,
    ManifestClient,
    NamespaceClient,
    ServiceAccountObjectClient,
)
from .protocols import ClientRegistry, ControlPlaneClient
from .route53 import Route53RecordClient


def build_registry(
    settings: SequencerSettings,
    kinds: Iterable[ResourceKind] | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> ClientRegistry:
    """Build clients for ``kinds`` (default: every kind) from settings.

    Only the providers actually needed are constructed, so a document
    without DNS records never touches boto3 credentials.
    """
    wanted = set(ResourceKind if kinds is None else kinds)
    registry = ClientRegistry()

    kube: KubeApi | None = None
    if wanted & (KUBERNETES_KINDS | {ResourceKind.NODE_POOL}) and (
        settings.kube_api_url or settings.gke_cluster
    ):
        discover = None
        if not settings.kube_api_url:
            discover = partial(
                discover_gke_endpoint,
                project=settings.gcp_project,
                location=settings.gke_location or settings.gcp_region,
                cluster=settings.gke_cluster,
                bearer_token=settings.gcp_access_token,
                http_client=http_client,
            )
        kube = KubeApi(
            api_url=settings.kube_api_url,
            bearer_token=settings.kube_token or settings.gcp_access_token,
            ca_file=settings.kube_ca_file,
            discover=discover,
            http_client=http_client,
        )

    if wanted & GCP_KINDS:
        common = dict(
            project=settings.gcp_project,
            region=settings.gcp_region,
            bearer_token=settings.gcp_access_token,
            http_client=http_client,
        )
        registry.register(ResourceKind.NETWORK, NetworkClient(**common))
        registry.register(ResourceKind.SUBNET, SubnetClient(**common))
        registry.register(ResourceKind.STATIC_ADDRESS, StaticAddressClient(**common))
        registry.register(ResourceKind.CLUSTER, ClusterClient(**common))
        registry.register(ResourceKind.NODE_POOL, NodePoolClient(kube=kube, **common))
        registry.register(ResourceKind.SERVICE_ACCOUNT, ServiceAccountClient(**common))
        registry.register(ResourceKind.IAM_BINDING, IamBindingClient(**common))
        registry.register(ResourceKind.BUCKET, BucketClient(**common))

    if kube is not None and wanted & KUBERNETES_KINDS:
        registry.register(ResourceKind.NAMESPACE, NamespaceClient(kube))
        registry.register(ResourceKind.K8S_SERVICE_ACCOUNT, ServiceAccountObjectClient(kube))
        registry.register(ResourceKind.INGRESS, IngressClient(kube))
        registry.register(ResourceKind.MANAGED_CERTIFICATE, ManagedCertificateClient(kube))
        registry.register(ResourceKind.MANIFEST, ManifestClient(kube))

    if ResourceKind.DNS_RECORD in wanted and settings.route53_hosted_zone_id:
        registry.register(
            ResourceKind.DNS_RECORD,
            Route53RecordClient(
                hosted_zone_id=settings.route53_hosted_zone_id,
                region=settings.aws_region,
            ),
        )
    return registry


__all__ = [
    "ClientRegistry",
    "ControlPlaneClient",
    "KubeApi",
    "RestClient",
    "Route53RecordClient",
    "build_registry",
]
