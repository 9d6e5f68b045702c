"""
Unit tests for paginated extraction and key deduplication.
"""

import pytest

from refdata_migration.client.exceptions import ExtractionError, NetworkError, NotFoundError
from refdata_migration.migration.extractor import PaginatedExtractor, deduplicate_records
from refdata_migration.migration.models import Record

pytestmark = pytest.mark.unit


def _region(sid: str, abbreviation):
    return Record("region", sid, {"abbreviation": abbreviation, "name": f"Region {sid}"})


class TestDeduplicateRecords:
    """Tests for deduplicate_records"""

    def test_first_occurrence_wins(self):
        records = [_region("1", "CA"), _region("2", "OR"), _region("3", "CA")]

        kept, removed = deduplicate_records(records, "abbreviation")

        assert [r.surrogate_id for r in kept] == ["1", "2"]
        assert removed == ["CA"]

    def test_keys_are_trimmed_before_comparison(self):
        records = [_region("1", " CA "), _region("2", "CA")]

        kept, removed = deduplicate_records(records, "abbreviation")

        assert len(kept) == 1
        assert kept[0].get("abbreviation") == "CA"
        assert removed == ["CA"]

    def test_empty_and_missing_keys_are_dropped(self):
        records = [_region("1", ""), _region("2", "   "), _region("3", None), _region("4", "WA")]

        kept, removed = deduplicate_records(records, "abbreviation")

        assert [r.surrogate_id for r in kept] == ["4"]
        assert len(removed) == 3

    def test_removed_count_is_input_minus_output(self):
        records = [_region(str(i), ["CA", "OR", "CA", "", "WA", "OR"][i]) for i in range(6)]

        kept, removed = deduplicate_records(records, "abbreviation")

        assert len(removed) == len(records) - len(kept) == 3


class TestPaginatedExtractor:
    """Tests for PaginatedExtractor"""

    async def test_follows_cursor_across_pages(self, source_store):
        for i in range(7):
            source_store.insert("region", abbreviation=f"R{i}", name=f"Region {i}")

        result = await PaginatedExtractor(page_size=3).extract(
            source_store, "region", ["abbreviation", "name"]
        )

        assert result.count == 7
        assert result.pages == 3
        assert [r.get("abbreviation") for r in result.records] == [f"R{i}" for i in range(7)]

    async def test_exact_page_multiple_stops_on_last_cursor(self, source_store):
        for i in range(4):
            source_store.insert("region", abbreviation=f"R{i}")

        result = await PaginatedExtractor(page_size=2).extract(source_store, "region", ["abbreviation"])

        assert result.count == 4
        assert result.pages == 2

    async def test_empty_entity_type(self, source_store):
        result = await PaginatedExtractor().extract(source_store, "region", ["abbreviation"])

        assert result.count == 0
        assert result.pages == 1

    async def test_projection_limits_fields(self, source_store):
        source_store.insert("region", abbreviation="CA", name="California")

        result = await PaginatedExtractor().extract(source_store, "region", ["abbreviation"])

        assert result.records[0].fields == {"abbreviation": "CA"}

    async def test_dedup_on_key_field(self, source_store):
        source_store.insert("region", abbreviation="CA", name="California")
        source_store.insert("region", abbreviation="CA ", name="California again")
        source_store.insert("region", abbreviation="OR", name="Oregon")

        result = await PaginatedExtractor(page_size=2).extract(
            source_store, "region", ["abbreviation", "name"], key_field="abbreviation"
        )

        assert result.count == 2
        assert result.duplicates_removed == 1
        assert result.records[0].get("name") == "California"

    async def test_page_failure_raises_extraction_error_with_store_text(self, source_store):
        source_store.query_failures["region"] = NotFoundError("Entity 'region' does not exist", 404)

        with pytest.raises(ExtractionError) as exc_info:
            await PaginatedExtractor().extract(source_store, "region", ["abbreviation"])

        assert exc_info.value.entity_type == "region"
        assert "Entity 'region' does not exist" in str(exc_info.value)

    async def test_transient_page_failure_is_retried_by_policy(self, source_store, fast_retry):
        source_store.insert("region", abbreviation="CA")
        original_query = source_store.query
        attempts = []

        async def flaky_query(*args, **kwargs):
            attempts.append(1)
            if len(attempts) == 1:
                raise NetworkError("Request timeout")
            return await original_query(*args, **kwargs)

        source_store.query = flaky_query

        result = await PaginatedExtractor(retry_policy=fast_retry).extract(
            source_store, "region", ["abbreviation"]
        )

        assert result.count == 1
        assert len(attempts) == 2

    async def test_without_retry_policy_a_single_attempt_is_made(self, source_store):
        source_store.query_failures["region"] = NetworkError("Request timeout")

        with pytest.raises(ExtractionError):
            await PaginatedExtractor().extract(source_store, "region", ["abbreviation"])

        assert source_store.calls == [("query", "region")]

    async def test_count_pages_with_empty_projection(self, source_store):
        for i in range(5):
            source_store.insert("region", abbreviation=f"R{i}")

        assert await PaginatedExtractor(page_size=2).count(source_store, "region") == 5

    def test_rejects_non_positive_page_size(self):
        with pytest.raises(ValueError):
            PaginatedExtractor(page_size=0)
