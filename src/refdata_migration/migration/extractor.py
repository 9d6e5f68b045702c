"""Paginated extraction of one entity type from a record store.

The extractor follows the store's continuation cursor until the store says
there are no more pages, optionally deduplicates on a designated key field and
hands back the complete record set. A page that cannot be fetched, even after
the retry policy gave up, aborts extraction of the entity type.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

from refdata_migration.client.exceptions import ExtractionError
from refdata_migration.migration.models import Record
from refdata_migration.migration.store import RecordStore
from refdata_migration.utils.logging import get_logger
from refdata_migration.utils.retry import RetryPolicy

logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 5000

# Number of removed keys echoed into the log
DUPLICATE_SAMPLE_SIZE = 5


@dataclass
class ExtractionResult:
    """Records extracted for one entity type."""

    entity_type: str
    records: list[Record] = field(default_factory=list)
    duplicates_removed: int = 0
    pages: int = 0

    @property
    def count(self) -> int:
        return len(self.records)


def _normalize_key(value: object) -> object:
    if isinstance(value, str):
        return value.strip()
    return value


def deduplicate_records(
    records: Sequence[Record], key_field: str
) -> tuple[list[Record], list[object]]:
    """Drop records with an empty or repeated key, keeping the first occurrence.

    String keys are trimmed and the trimmed value is written back to the kept
    record, so " CA" and "CA" count as the same key.

    Args:
        records: Records in extraction order
        key_field: Field to normalize and deduplicate on

    Returns:
        Tuple of (kept records, removed key values)
    """
    kept: list[Record] = []
    removed: list[object] = []
    seen: set[object] = set()

    for record in records:
        key = _normalize_key(record.get(key_field))
        if key is None or key == "" or key in seen:
            removed.append(key)
            continue
        seen.add(key)
        record.fields[key_field] = key
        kept.append(record)

    return kept, removed


class PaginatedExtractor:
    """Streams every record of an entity type out of one store."""

    def __init__(
        self,
        page_size: int = DEFAULT_PAGE_SIZE,
        retry_policy: RetryPolicy | None = None,
    ):
        """Initialize extractor.

        Args:
            page_size: Records requested per page
            retry_policy: Retry applied to each page fetch (None = single attempt)
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=1, backoff_seconds=0)

    async def extract(
        self,
        store: RecordStore,
        entity_type: str,
        fields: Sequence[str],
        key_field: str | None = None,
    ) -> ExtractionResult:
        """Extract the complete record set of an entity type.

        Args:
            store: Store to read from
            entity_type: Entity type to extract
            fields: Field projection
            key_field: Optional field to normalize and deduplicate on

        Returns:
            ExtractionResult with deduplicated records

        Raises:
            ExtractionError: If any page fetch fails
        """
        records: list[Record] = []
        cursor: str | None = None
        pages = 0

        logger.info(
            "extraction_started",
            entity_type=entity_type,
            fields=list(fields),
            page_size=self.page_size,
        )

        while True:
            try:
                page = await self.retry_policy.call(
                    store.query,
                    entity_type,
                    list(fields),
                    self.page_size,
                    cursor,
                    operation="query_page",
                    log_context={"entity_type": entity_type, "page": pages + 1},
                )
            except Exception as e:
                logger.error(
                    "extraction_failed",
                    entity_type=entity_type,
                    page=pages + 1,
                    records_so_far=len(records),
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise ExtractionError(entity_type, str(e)) from e

            pages += 1
            records.extend(page.records)

            logger.debug(
                "page_fetched",
                entity_type=entity_type,
                page=pages,
                items_this_page=len(page.records),
                total_items_so_far=len(records),
            )

            if not page.has_more:
                break
            cursor = page.next_cursor

        duplicates_removed = 0
        if key_field:
            raw_count = len(records)
            records, removed = deduplicate_records(records, key_field)
            duplicates_removed = raw_count - len(records)
            if duplicates_removed:
                logger.warning(
                    "duplicate_keys_removed",
                    entity_type=entity_type,
                    key_field=key_field,
                    removed=duplicates_removed,
                    sample=[repr(key) for key in removed[:DUPLICATE_SAMPLE_SIZE]],
                )

        logger.info(
            "extraction_completed",
            entity_type=entity_type,
            pages=pages,
            records=len(records),
            duplicates_removed=duplicates_removed,
        )

        return ExtractionResult(
            entity_type=entity_type,
            records=records,
            duplicates_removed=duplicates_removed,
            pages=pages,
        )

    async def count(self, store: RecordStore, entity_type: str) -> int:
        """Count the records of an entity type by paging with an empty projection.

        Raises:
            ExtractionError: If any page fetch fails
        """
        result = await self.extract(store, entity_type, fields=[])
        return result.count
