"""HTTP client for a remote record store.

Implements the RecordStore protocol over the store's JSON API:

    GET  entities/{type}/records?fields=a,b&page_size=N&cursor=C   ("fields=" for ids only)
    POST entities/{type}/upsert   {"key_mode": ..., "records": [{"id"?, "key", "fields"}]}
    POST entities/{type}/delete   {"ids": [...]}

Values that JSON cannot carry natively are wrapped in single-key objects:
``{"@ref": {"entity_type", "id"}}``, ``{"@timestamp": iso}`` and
``{"@decimal": "1.5"}``.
"""

from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Literal

from refdata_migration.client.base_client import BaseAPIClient
from refdata_migration.client.exceptions import APIError, BulkOperationError
from refdata_migration.config import MigrationConfig, StoreInstanceConfig
from refdata_migration.migration.models import (
    KeyMode,
    OperationOutcome,
    Record,
    Reference,
    Value,
)
from refdata_migration.migration.store import QueryPage, RecordResult
from refdata_migration.utils.logging import get_logger

logger = get_logger(__name__)

REF_TAG = "@ref"
TIMESTAMP_TAG = "@timestamp"
DECIMAL_TAG = "@decimal"


def encode_value(value: Value) -> Any:
    """Encode a field value for the wire."""
    if isinstance(value, Reference):
        return {REF_TAG: {"entity_type": value.entity_type, "id": value.surrogate_id}}
    if isinstance(value, datetime):
        return {TIMESTAMP_TAG: value.isoformat()}
    if isinstance(value, Decimal):
        return {DECIMAL_TAG: str(value)}
    return value


def decode_value(raw: Any) -> Value:
    """Decode a wire value into a field value.

    Raises:
        APIError: If the value is not one of the supported encodings
    """
    if raw is None or isinstance(raw, (str, bool, int, float)):
        return raw

    if isinstance(raw, dict) and len(raw) == 1:
        tag, payload = next(iter(raw.items()))
        try:
            if tag == REF_TAG:
                return Reference(str(payload["entity_type"]), str(payload["id"]))
            if tag == TIMESTAMP_TAG:
                return datetime.fromisoformat(payload)
            if tag == DECIMAL_TAG:
                return Decimal(payload)
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise APIError(f"Malformed {tag} value: {raw!r}") from e

    raise APIError(f"Unsupported field value in response: {raw!r}")


def encode_fields(fields: dict[str, Value]) -> dict[str, Any]:
    return {name: encode_value(value) for name, value in fields.items()}


class RecordStoreClient(BaseAPIClient):
    """Client for one record store instance (source or target)."""

    def __init__(
        self,
        config: StoreInstanceConfig,
        rate_limit: int = 20,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        max_connections: int | None = None,
        max_keepalive_connections: int | None = None,
        **kwargs: Any,
    ):
        """Initialize record store client.

        Args:
            config: Store instance configuration
            rate_limit: Maximum requests per second
            log_payloads: Enable request/response payload logging
            max_payload_size: Maximum payload size to log before truncation
            max_connections: Maximum number of connections in pool
            max_keepalive_connections: Maximum keep-alive connections
            **kwargs: Passed through to BaseAPIClient (e.g. transport)
        """
        super().__init__(
            base_url=config.url,
            token=config.token,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            rate_limit=rate_limit,
            log_payloads=log_payloads,
            max_payload_size=max_payload_size,
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
            **kwargs,
        )
        self.name = config.label
        logger.info("record_store_client_initialized", store=self.name, url=self.base_url)

    @classmethod
    def from_config(
        cls,
        config: MigrationConfig,
        env: Literal["source", "target"],
        **kwargs: Any,
    ) -> "RecordStoreClient":
        """Build the client for one side of a migration config."""
        instance = config.source if env == "source" else config.target
        perf = config.performance
        return cls(
            instance,
            rate_limit=perf.rate_limit,
            log_payloads=config.logging.log_payloads,
            max_payload_size=config.logging.max_payload_size,
            max_connections=perf.http_max_connections,
            max_keepalive_connections=perf.http_max_keepalive_connections,
            **kwargs,
        )

    async def query(
        self,
        entity_type: str,
        fields: Sequence[str],
        page_size: int,
        cursor: str | None = None,
    ) -> QueryPage:
        """Fetch one page of records.

        Args:
            entity_type: Entity type to query
            fields: Field projection; empty sends "fields=" and returns ids only
            page_size: Records per page
            cursor: Continuation cursor from the previous page

        Returns:
            QueryPage
        """
        # An empty "fields" value asks for ids only
        params: dict[str, Any] = {"page_size": page_size, "fields": ",".join(fields)}
        if cursor:
            params["cursor"] = cursor

        data = await self.get(f"entities/{entity_type}/records", params=params)

        raw_records = data.get("records")
        if not isinstance(raw_records, list):
            raise APIError(f"Query response for '{entity_type}' has no records list")

        records = []
        for raw in raw_records:
            raw_fields = raw.get("fields") or {}
            records.append(
                Record(
                    entity_type=entity_type,
                    surrogate_id=str(raw["id"]),
                    fields={name: decode_value(value) for name, value in raw_fields.items()},
                )
            )

        return QueryPage(records=records, next_cursor=data.get("next_cursor") or None)

    async def batch_upsert(
        self,
        entity_type: str,
        records: Sequence[Record],
        key_mode: KeyMode = KeyMode.NATURAL_KEY,
    ) -> list[RecordResult]:
        """Create or update records in one request.

        In natural-key mode each record is identified by its key attributes;
        in surrogate mode by its id.
        """
        payload_records = []
        for record in records:
            item: dict[str, Any] = {"fields": encode_fields(record.fields)}
            if key_mode is KeyMode.NATURAL_KEY:
                item["key"] = encode_fields(record.key_attributes)
            elif record.surrogate_id is None:
                raise ValueError("Surrogate upsert needs a surrogate_id on every record")
            if record.surrogate_id is not None:
                item["id"] = record.surrogate_id
            payload_records.append(item)

        data = await self.post(
            f"entities/{entity_type}/upsert",
            json_data={"key_mode": key_mode.value, "records": payload_records},
        )
        return self._parse_results(data, entity_type, "upsert")

    async def batch_delete(
        self,
        entity_type: str,
        surrogate_ids: Sequence[str],
    ) -> list[RecordResult]:
        """Delete records by surrogate id in one request."""
        data = await self.post(
            f"entities/{entity_type}/delete",
            json_data={"ids": list(surrogate_ids)},
        )
        return self._parse_results(data, entity_type, "delete")

    @staticmethod
    def _parse_results(data: dict[str, Any], entity_type: str, operation: str) -> list[RecordResult]:
        raw_results = data.get("results")
        if not isinstance(raw_results, list):
            raise BulkOperationError(
                f"Batch {operation} response for '{entity_type}' has no results list",
                response=data,
            )

        results = []
        for raw in raw_results:
            status = str(raw.get("status", "")).lower()
            try:
                outcome = OperationOutcome(status)
                error = raw.get("error")
            except ValueError:
                outcome = OperationOutcome.FAILED
                error = raw.get("error") or f"Unknown result status {status!r}"

            results.append(
                RecordResult(
                    index=int(raw["index"]),
                    outcome=outcome,
                    surrogate_id=str(raw["id"]) if raw.get("id") is not None else None,
                    error=error,
                )
            )
        return results
