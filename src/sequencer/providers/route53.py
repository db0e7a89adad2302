"""Route53 DNS record client.

Records are written with ``UPSERT`` so re-applying an identical record is
a no-op at the API level. boto3 is synchronous; every call runs in a
worker thread so batches keep polling concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..descriptors.model import ResourceDescriptor
from ..errors import PermanentError, ProviderError, ResourceNotFound, TransientError
from .gcp import require

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "PriorRequestNotComplete",
        "ServiceUnavailable",
        "InternalFailure",
    }
)


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else f"{name}."


def _translate(exc: Exception, descriptor: ResourceDescriptor) -> ProviderError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "")
        message = f"{code}: {error.get('Message', '')}"
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        kwargs: dict[str, Any] = {
            "resource_id": descriptor.id,
            "status_code": status,
            "payload": error,
        }
        if code in _TRANSIENT_CODES or (status or 0) >= 500:
            return TransientError(message, **kwargs)
        if code == "InvalidChangeBatch" and "not found" in message:
            return ResourceNotFound(message, **kwargs)
        return PermanentError(message, **kwargs)
    return TransientError(f"route53 call failed: {exc}", resource_id=descriptor.id)


class Route53RecordClient:
    """One DNS record set in a fixed hosted zone."""

    def __init__(
        self,
        *,
        hosted_zone_id: str,
        region: str = "us-east-1",
        session: boto3.Session | None = None,
        client: Any = None,
    ) -> None:
        if not hosted_zone_id:
            raise ValueError("hosted_zone_id is required")
        self._zone = hosted_zone_id
        self._client = client or (session or boto3.Session()).client(
            "route53", region_name=region,
        )
        # descriptor id -> change id of the last accepted UPSERT
        self._changes: dict[str, str] = {}

    def external_identity(self, descriptor: ResourceDescriptor) -> str:
        record_type = descriptor.spec.get("type", "A")
        return f"{self._zone}/{_fqdn(require(descriptor, 'name'))}/{record_type}"

    def _record_set(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        return {
            "Name": _fqdn(require(descriptor, "name")),
            "Type": descriptor.spec.get("type", "A"),
            "TTL": int(descriptor.spec.get("ttl", 300)),
            "ResourceRecords": [
                {"Value": value} for value in require(descriptor, "values")
            ],
        }

    async def _call(self, descriptor: ResourceDescriptor, method: str, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(getattr(self._client, method), **kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise _translate(exc, descriptor) from exc

    async def _current(self, descriptor: ResourceDescriptor) -> dict[str, Any] | None:
        name = _fqdn(require(descriptor, "name"))
        record_type = descriptor.spec.get("type", "A")
        result = await self._call(
            descriptor,
            "list_resource_record_sets",
            HostedZoneId=self._zone,
            StartRecordName=name,
            StartRecordType=record_type,
            MaxItems="1",
        )
        for record in result.get("ResourceRecordSets", ()):
            if record.get("Name") == name and record.get("Type") == record_type:
                return record
        return None

    async def create(self, descriptor: ResourceDescriptor) -> None:
        result = await self._call(
            descriptor,
            "change_resource_record_sets",
            HostedZoneId=self._zone,
            ChangeBatch={
                "Comment": f"gitops-sequencer {descriptor.id}",
                "Changes": [
                    {"Action": "UPSERT", "ResourceRecordSet": self._record_set(descriptor)},
                ],
            },
        )
        change_id = result["ChangeInfo"]["Id"]
        self._changes[descriptor.id] = change_id
        logger.info(
            "DNS upsert accepted: %s change=%s",
            self.external_identity(descriptor),
            change_id,
            extra={"resource_id": descriptor.id, "kind": descriptor.kind.value},
        )

    async def get_status(self, descriptor: ResourceDescriptor) -> Mapping[str, Any]:
        record = await self._current(descriptor)
        if record is None:
            raise ResourceNotFound(
                f"no {descriptor.spec.get('type', 'A')} record for "
                f"{descriptor.spec.get('name')}",
                resource_id=descriptor.id,
            )
        values = [r["Value"] for r in record.get("ResourceRecords", ())]
        change_id = self._changes.get(descriptor.id)
        if change_id is None:
            # Written by an earlier run; Route53 only lists applied records.
            status = "INSYNC"
        else:
            change = await self._call(descriptor, "get_change", Id=change_id)
            status = change["ChangeInfo"]["Status"]
        return {"changeStatus": status, "values": values}

    async def delete(self, descriptor: ResourceDescriptor) -> None:
        record = await self._current(descriptor)
        if record is None:
            raise ResourceNotFound(
                f"record {descriptor.spec.get('name')} already absent",
                resource_id=descriptor.id,
            )
        await self._call(
            descriptor,
            "change_resource_record_sets",
            HostedZoneId=self._zone,
            ChangeBatch={"Changes": [{"Action": "DELETE", "ResourceRecordSet": record}]},
        )
        self._changes.pop(descriptor.id, None)
