from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from sequencer.descriptors import ResourceDescriptor, ResourceKind
from sequencer.errors import PermanentError, ResourceNotFound, TransientError
from sequencer.providers.route53 import Route53RecordClient


def _record(**spec) -> ResourceDescriptor:
    spec = {"name": "app.example.com", "values": ["34.1.2.3"], **spec}
    return ResourceDescriptor(id="dns", kind=ResourceKind.DNS_RECORD, spec=spec)


def _client_error(code: str, message: str = "", status: int = 400) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "ChangeResourceRecordSets",
    )


def _live(values=("34.1.2.3",)) -> dict:
    return {
        "ResourceRecordSets": [
            {
                "Name": "app.example.com.",
                "Type": "A",
                "TTL": 300,
                "ResourceRecords": [{"Value": v} for v in values],
            }
        ]
    }


def _make_client(boto: MagicMock) -> Route53RecordClient:
    return Route53RecordClient(hosted_zone_id="Z123", client=boto)


@pytest.mark.asyncio
async def test_create_upserts_record_set():
    boto = MagicMock()
    boto.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "/change/C1"}}

    await _make_client(boto).create(_record(ttl=60))

    kwargs = boto.change_resource_record_sets.call_args.kwargs
    assert kwargs["HostedZoneId"] == "Z123"
    change = kwargs["ChangeBatch"]["Changes"][0]
    assert change["Action"] == "UPSERT"
    assert change["ResourceRecordSet"] == {
        "Name": "app.example.com.",
        "Type": "A",
        "TTL": 60,
        "ResourceRecords": [{"Value": "34.1.2.3"}],
    }


@pytest.mark.asyncio
async def test_status_follows_change_until_insync():
    boto = MagicMock()
    boto.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "/change/C1"}}
    boto.list_resource_record_sets.return_value = _live()
    boto.get_change.side_effect = [
        {"ChangeInfo": {"Status": "PENDING"}},
        {"ChangeInfo": {"Status": "INSYNC"}},
    ]
    client = _make_client(boto)
    await client.create(_record())

    first = await client.get_status(_record())
    second = await client.get_status(_record())

    assert first == {"changeStatus": "PENDING", "values": ["34.1.2.3"]}
    assert second["changeStatus"] == "INSYNC"
    boto.get_change.assert_called_with(Id="/change/C1")


@pytest.mark.asyncio
async def test_status_of_record_from_earlier_run_is_insync():
    boto = MagicMock()
    boto.list_resource_record_sets.return_value = _live()

    status = await _make_client(boto).get_status(_record())

    assert status["changeStatus"] == "INSYNC"
    boto.get_change.assert_not_called()


@pytest.mark.asyncio
async def test_status_of_absent_record_is_not_found():
    boto = MagicMock()
    boto.list_resource_record_sets.return_value = {
        "ResourceRecordSets": [{"Name": "zzz.example.com.", "Type": "A"}],
    }

    with pytest.raises(ResourceNotFound):
        await _make_client(boto).get_status(_record())


@pytest.mark.asyncio
async def test_delete_sends_exact_live_record():
    boto = MagicMock()
    boto.list_resource_record_sets.return_value = _live(values=("34.9.9.9",))
    boto.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "/change/C2"}}

    await _make_client(boto).delete(_record())

    change = boto.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]
    assert change["Action"] == "DELETE"
    assert change["ResourceRecordSet"]["ResourceRecords"] == [{"Value": "34.9.9.9"}]


@pytest.mark.asyncio
async def test_delete_of_absent_record_is_not_found():
    boto = MagicMock()
    boto.list_resource_record_sets.return_value = {"ResourceRecordSets": []}

    with pytest.raises(ResourceNotFound):
        await _make_client(boto).delete(_record())
    boto.change_resource_record_sets.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,expected",
    [
        (_client_error("Throttling", "Rate exceeded"), TransientError),
        (_client_error("PriorRequestNotComplete"), TransientError),
        (_client_error("InternalError", status=500), TransientError),
        (_client_error("InvalidInput", "bad value"), PermanentError),
        (_client_error("AccessDenied", status=403), PermanentError),
        (EndpointConnectionError(endpoint_url="https://route53.amazonaws.com"), TransientError),
    ],
)
async def test_boto_errors_are_classified(error, expected):
    boto = MagicMock()
    boto.change_resource_record_sets.side_effect = error

    with pytest.raises(expected):
        await _make_client(boto).create(_record())


def test_identity_includes_zone_name_and_type():
    client = _make_client(MagicMock())

    assert client.external_identity(_record(type="CNAME")) == "Z123/app.example.com./CNAME"


def test_values_are_required():
    client = _make_client(MagicMock())
    descriptor = ResourceDescriptor(
        id="dns", kind=ResourceKind.DNS_RECORD, spec={"name": "app.example.com"},
    )

    with pytest.raises(PermanentError, match="values"):
        client._record_set(descriptor)


def test_hosted_zone_is_required():
    with pytest.raises(ValueError):
        Route53RecordClient(hosted_zone_id="", client=MagicMock())
