"""
Unit tests for the HTTP record store client.

Requests are answered by an httpx.MockTransport, so no network is involved.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from refdata_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    BulkOperationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from refdata_migration.client.store_client import (
    RecordStoreClient,
    decode_value,
    encode_value,
)
from refdata_migration.config import StoreInstanceConfig
from refdata_migration.migration.models import KeyMode, OperationOutcome, Record, Reference

pytestmark = pytest.mark.unit

BASE_URL = "https://store.example.com/api"


def make_client(handler) -> RecordStoreClient:
    config = StoreInstanceConfig(name="test", url=BASE_URL, token="secret-token")
    return RecordStoreClient(config, rate_limit=0, transport=httpx.MockTransport(handler))


class TestValueEncoding:
    """Tests for wire encoding of field values"""

    def test_reference(self):
        encoded = encode_value(Reference("region", "r1"))

        assert encoded == {"@ref": {"entity_type": "region", "id": "r1"}}
        assert decode_value(encoded) == Reference("region", "r1")

    def test_timestamp_and_decimal(self):
        moment = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

        assert decode_value(encode_value(moment)) == moment
        assert encode_value(Decimal("12.50")) == {"@decimal": "12.50"}
        assert decode_value({"@decimal": "12.50"}) == Decimal("12.50")

    @pytest.mark.parametrize("value", ["text", 3, 2.5, True, None])
    def test_json_native_values_pass_through(self, value):
        assert encode_value(value) == value
        assert decode_value(value) == value

    @pytest.mark.parametrize(
        "raw",
        [[1, 2], {"a": 1, "b": 2}, {"@unknown": 1}, {"@ref": {"id": "x"}}, {"@decimal": "abc"}],
    )
    def test_unsupported_values_raise(self, raw):
        with pytest.raises(APIError):
            decode_value(raw)


class TestRecordStoreClientQuery:
    """Tests for RecordStoreClient.query"""

    async def test_query_sends_projection_and_parses_page(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(
                200,
                json={
                    "records": [
                        {
                            "id": 17,
                            "fields": {
                                "name": "Los Angeles",
                                "region": {"@ref": {"entity_type": "region", "id": "r1"}},
                            },
                        }
                    ],
                    "next_cursor": "abc",
                },
            )

        client = make_client(handler)
        try:
            page = await client.query("city", ["name", "region"], 500, cursor="xyz")
        finally:
            await client.close()

        assert seen["url"].path == "/api/entities/city/records"
        assert seen["url"].params["fields"] == "name,region"
        assert seen["url"].params["page_size"] == "500"
        assert seen["url"].params["cursor"] == "xyz"
        assert seen["auth"] == "Bearer secret-token"
        assert page.next_cursor == "abc"
        assert page.records[0].surrogate_id == "17"
        assert page.records[0].fields["region"] == Reference("region", "r1")

    async def test_empty_projection_requests_ids_only(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"records": [{"id": "a"}], "next_cursor": None})

        client = make_client(handler)
        try:
            page = await client.query("region", [], 100)
        finally:
            await client.close()

        assert seen["params"]["fields"] == ""
        assert "cursor" not in seen["params"]
        assert not page.has_more
        assert page.records[0].fields == {}

    async def test_missing_records_list_is_an_error(self):
        client = make_client(lambda request: httpx.Response(200, json={"items": []}))
        try:
            with pytest.raises(APIError):
                await client.query("region", ["abbreviation"], 10)
        finally:
            await client.close()


class TestRecordStoreClientBatches:
    """Tests for batch upsert and delete"""

    async def test_natural_key_upsert_payload_and_results(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "results": [
                        {"index": 0, "status": "created", "id": "t-1"},
                        {"index": 1, "status": "failed", "error": "Field 'region' is invalid"},
                    ]
                },
            )

        records = [
            Record(
                "city",
                fields={"name": "Los Angeles", "region": Reference("region", "t-ca")},
                key_fields=("name", "region"),
            ),
            Record(
                "city",
                fields={"name": "Portland", "region": Reference("region", "t-xx")},
                key_fields=("name", "region"),
            ),
        ]

        client = make_client(handler)
        try:
            results = await client.batch_upsert("city", records)
        finally:
            await client.close()

        assert seen["path"] == "/api/entities/city/upsert"
        assert seen["body"]["key_mode"] == "natural_key"
        first = seen["body"]["records"][0]
        assert first["key"] == {
            "name": "Los Angeles",
            "region": {"@ref": {"entity_type": "region", "id": "t-ca"}},
        }
        assert "id" not in first
        assert results[0].outcome is OperationOutcome.CREATED
        assert results[0].surrogate_id == "t-1"
        assert results[1].outcome is OperationOutcome.FAILED
        assert results[1].error == "Field 'region' is invalid"

    async def test_surrogate_upsert_sends_ids(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"results": [{"index": 0, "status": "updated", "id": "t-1"}]})

        client = make_client(handler)
        try:
            results = await client.batch_upsert(
                "region", [Record("region", "t-1", {"name": "California"})], KeyMode.SURROGATE
            )
            with pytest.raises(ValueError):
                await client.batch_upsert("region", [Record("region")], KeyMode.SURROGATE)
        finally:
            await client.close()

        assert seen["body"]["records"] == [{"fields": {"name": "California"}, "id": "t-1"}]
        assert results[0].outcome is OperationOutcome.UPDATED

    async def test_unknown_status_becomes_failure(self):
        client = make_client(
            lambda request: httpx.Response(200, json={"results": [{"index": 0, "status": "weird"}]})
        )
        try:
            results = await client.batch_delete("region", ["t-1"])
        finally:
            await client.close()

        assert results[0].outcome is OperationOutcome.FAILED
        assert "weird" in results[0].error

    async def test_missing_results_list_raises_bulk_error(self):
        client = make_client(lambda request: httpx.Response(200, json={}))
        try:
            with pytest.raises(BulkOperationError):
                await client.batch_delete("region", ["t-1"])
        finally:
            await client.close()


class TestErrorMapping:
    """Tests for HTTP status to exception mapping"""

    @pytest.mark.parametrize(
        "status,exception",
        [
            (401, AuthenticationError),
            (404, NotFoundError),
            (409, ConflictError),
            (503, ServerError),
            (422, APIError),
        ],
    )
    async def test_status_codes(self, status, exception):
        client = make_client(
            lambda request: httpx.Response(status, json={"detail": "another operation in progress"})
        )
        try:
            with pytest.raises(exception) as exc_info:
                await client.query("region", ["abbreviation"], 10)
        finally:
            await client.close()

        assert exc_info.value.status_code == status

    async def test_rate_limit_carries_retry_after(self):
        client = make_client(
            lambda request: httpx.Response(429, headers={"Retry-After": "7"}, json={"detail": "slow down"})
        )
        try:
            with pytest.raises(RateLimitError) as exc_info:
                await client.query("region", ["abbreviation"], 10)
        finally:
            await client.close()

        assert exc_info.value.retry_after == 7

    async def test_timeout_becomes_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        client = make_client(handler)
        try:
            with pytest.raises(NetworkError, match="Request timeout"):
                await client.query("region", ["abbreviation"], 10)
        finally:
            await client.close()
