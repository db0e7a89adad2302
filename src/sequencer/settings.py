"""Sequencer configuration settings.

SequencerSettings is the single configuration object threaded through the
planner, executor, teardown coordinator and provider clients. It is a
plain dataclass (not env-coupled) so tests can inject config without
touching os.environ; ``from_env`` is the production factory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping

from .descriptors.model import GCP_KINDS, KUBERNETES_KINDS, ResourceDescriptor, ResourceKind
from .readiness.oracle import (
    DEFAULT_FAILED_NOT_VISIBLE_POLLS,
    DEFAULT_POLL_TIMEOUT_SECONDS,
)


@dataclass(frozen=True, slots=True)
class SequencerSettings:
    """Configuration for one sequencer process.

    Provider credentials are only required for the kinds that actually
    appear in a target document; see ``validate``.
    """

    # ── GCP ────────────────────────────────────────────────────────
    gcp_project: str = ""
    """Project that owns networks, clusters, buckets and service accounts."""

    gcp_region: str = "europe-west3"

    gcp_access_token: str = ""
    """OAuth2 bearer token for Google REST APIs. Never log this."""

    # ── Kubernetes ─────────────────────────────────────────────────
    kube_api_url: str = ""
    """API server base URL (e.g. https://34.107.1.2)."""

    kube_token: str = ""
    """Bearer token for the Kubernetes API. Never log this."""

    kube_ca_file: str = ""
    """CA bundle used to verify the API server certificate."""

    gke_cluster: str = ""
    """GKE cluster whose endpoint is discovered when kube_api_url is unset."""

    gke_location: str = ""

    # ── Route53 ────────────────────────────────────────────────────
    aws_region: str = "us-east-1"
    route53_hosted_zone_id: str = ""

    # ── Retry / polling ────────────────────────────────────────────
    max_attempts: int = 5
    """Create calls per entry, including the first one."""

    base_delay: float = 2.0
    max_delay: float = 60.0
    poll_interval: float = 10.0
    max_concurrency: int = 4
    failed_not_visible_polls: int = DEFAULT_FAILED_NOT_VISIBLE_POLLS
    poll_timeouts: Mapping[ResourceKind, float] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_POLL_TIMEOUT_SECONDS))
    )

    # ── Ledger / logging ───────────────────────────────────────────
    ledger_path: str = "sequencer-ledger.json"
    log_level: str = "INFO"
    log_format: str = "json"

    def timeout_for(self, kind: ResourceKind) -> float:
        return float(self.poll_timeouts.get(kind, DEFAULT_POLL_TIMEOUT_SECONDS[kind]))

    def placement(self) -> dict[str, str]:
        """Provider location recorded in the ledger by apply."""
        values = {"gcp_project": self.gcp_project, "gcp_region": self.gcp_region}
        return {key: value for key, value in values.items() if value}

    def with_placement(self, placement: Mapping[str, str]) -> SequencerSettings:
        """Copy with project and region taken from a ledger placement."""
        overrides = {
            key: value
            for key, value in placement.items()
            if key in ("gcp_project", "gcp_region") and value
        }
        return replace(self, **overrides) if overrides else self

    def validate(
        self, descriptors: tuple[ResourceDescriptor, ...] = (),
    ) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.max_attempts < 1:
            errors.append("max_attempts must be >= 1")
        if self.max_concurrency < 1:
            errors.append("max_concurrency must be >= 1")
        if self.poll_interval <= 0:
            errors.append("poll_interval must be > 0")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            errors.append("retry delays must satisfy 0 <= base_delay <= max_delay")

        kinds = {d.kind for d in descriptors}
        if kinds & GCP_KINDS:
            if not self.gcp_project:
                errors.append("gcp_project is required for GCP resources")
            if not self.gcp_access_token:
                errors.append("gcp_access_token is required for GCP resources")
        if kinds & (KUBERNETES_KINDS | {ResourceKind.NODE_POOL}):
            if not self.kube_api_url and not self.gke_cluster:
                errors.append(
                    "kube_api_url or gke_cluster is required for Kubernetes resources"
                )
            if self.gke_cluster and not self.kube_api_url and not self.gcp_access_token:
                errors.append("gcp_access_token is required to discover the GKE endpoint")
        if ResourceKind.DNS_RECORD in kinds and not self.route53_hosted_zone_id:
            errors.append("route53_hosted_zone_id is required for DNS records")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> SequencerSettings:
        """Build settings from environment variables.

        ``SEQUENCER_TIMEOUT_<KIND>`` (e.g. ``SEQUENCER_TIMEOUT_MANAGEDCERTIFICATE``)
        overrides the poll timeout for one kind, in seconds.
        """
        if env is None:
            env = dict(os.environ)

        timeouts: dict[ResourceKind, float] = dict(DEFAULT_POLL_TIMEOUT_SECONDS)
        for kind in ResourceKind:
            raw = env.get(f"SEQUENCER_TIMEOUT_{kind.value.upper()}")
            if raw:
                timeouts[kind] = float(raw)

        return cls(
            gcp_project=env.get("GCP_PROJECT", ""),
            gcp_region=env.get("GCP_REGION", "europe-west3"),
            gcp_access_token=env.get("GCP_ACCESS_TOKEN", ""),
            kube_api_url=env.get("KUBE_API_URL", "").rstrip("/"),
            kube_token=env.get("KUBE_TOKEN", ""),
            kube_ca_file=env.get("KUBE_CA_FILE", ""),
            gke_cluster=env.get("GKE_CLUSTER", ""),
            gke_location=env.get("GKE_LOCATION", ""),
            aws_region=env.get("AWS_REGION", "us-east-1"),
            route53_hosted_zone_id=env.get("ROUTE53_HOSTED_ZONE_ID", ""),
            max_attempts=int(env.get("SEQUENCER_MAX_ATTEMPTS", 5)),
            base_delay=float(env.get("SEQUENCER_BASE_DELAY", 2.0)),
            max_delay=float(env.get("SEQUENCER_MAX_DELAY", 60.0)),
            poll_interval=float(env.get("SEQUENCER_POLL_INTERVAL", 10.0)),
            max_concurrency=int(
                env.get("SEQUENCER_MAX_CONCURRENCY", 4)
            ),
            failed_not_visible_polls=int(
                env.get(
                    "SEQUENCER_FAILED_NOT_VISIBLE_POLLS",
                    DEFAULT_FAILED_NOT_VISIBLE_POLLS,
                )
            ),
            poll_timeouts=MappingProxyType(timeouts),
            ledger_path=env.get("SEQUENCER_LEDGER", "sequencer-ledger.json"),
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_format=env.get("LOG_FORMAT", "json"),
        )
