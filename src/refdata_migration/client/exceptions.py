"""Exception hierarchy for refdata-bridge.

Store-facing failures derive from ``APIError`` and carry the HTTP status and
response body; failures of the migration pipeline itself derive from
``MigrationError``. Everything derives from ``RefDataMigrationError`` so the
CLI can catch the lot in one place.
"""

from typing import Any


class RefDataMigrationError(Exception):
    """Root of every error raised by refdata-bridge."""


# Record store errors


class APIError(RefDataMigrationError):
    """The record store rejected a request or answered with something unusable.

    Attributes:
        message: Store error text, kept verbatim for reports
        status_code: HTTP status, if a response was received
        response: Decoded response body, if any
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self._render())

    def _render(self) -> str:
        prefix = f"[{self.status_code}] " if self.status_code else ""
        suffix = f": {self.response}" if self.response else ""
        return f"{prefix}{self.message}{suffix}"


class AuthenticationError(APIError):
    """The store did not accept the token (401)."""


class AuthorizationError(APIError):
    """The token lacks permission for the entity type (403)."""


class NotFoundError(APIError):
    """Unknown entity type or record (404)."""


class ConflictError(APIError):
    """The store answered 409.

    Stores use 409 both for "another operation in progress", which is worth
    retrying, and for uniqueness violations, which are not; the retry
    classifier reads the message to tell them apart.
    """


class RateLimitError(APIError):
    """Too many requests (429); ``retry_after`` is the advertised wait in seconds."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response: dict[str, Any] | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(APIError):
    """The store failed internally (5xx)."""


class BulkOperationError(APIError):
    """A batch call returned a response without per-record results."""


class NetworkError(RefDataMigrationError):
    """No usable response: connection failure or timeout."""


class ConfigurationError(RefDataMigrationError):
    """The configuration file is missing, unreadable or invalid."""


# Pipeline errors


class MigrationError(RefDataMigrationError):
    """A migration run cannot continue."""


class ExtractionError(MigrationError):
    """An entity type could not be read completely from a store.

    Fatal for the run: natural-key maps built from a partial extraction
    would attach records to the wrong parents.
    """

    def __init__(self, entity_type: str, message: str):
        self.entity_type = entity_type
        super().__init__(f"Extraction of '{entity_type}' failed: {message}")


class AmbiguousNaturalKeyError(MigrationError):
    """Two records of one store share a natural key."""

    def __init__(self, entity_type: str, natural_key: tuple, surrogate_ids: list[str]):
        self.entity_type = entity_type
        self.natural_key = natural_key
        self.surrogate_ids = surrogate_ids
        rendered = "|".join(str(part) for part in natural_key)
        super().__init__(
            f"Natural key {rendered!r} of '{entity_type}' is shared by records "
            f"{', '.join(surrogate_ids)}"
        )


class DependencyError(MigrationError):
    """Entity types are declared in an order that breaks their references."""


class InputFileError(MigrationError):
    """A flat file to load is missing, lacks required columns or holds bad values."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{path}: {message}")
