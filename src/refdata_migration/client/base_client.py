"""Async HTTP plumbing shared by record store clients.

``BaseAPIClient`` owns the httpx connection pool, spaces requests to honour a
requests-per-second limit, logs every call and turns error responses into
the exception hierarchy of ``client.exceptions``. It never retries: callers
wrap whole units of work (a page, a batch) in a RetryPolicy.
"""

import asyncio
import time
from typing import Any

import httpx

from refdata_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from refdata_migration.utils.logging import (
    get_logger,
    log_api_request,
    payload_logging_enabled,
    sanitize_payload,
    truncate_payload,
)

logger = get_logger(__name__)

DEFAULT_MAX_CONNECTIONS = 50
DEFAULT_MAX_KEEPALIVE_CONNECTIONS = 20

# status -> (exception, message prefix)
STATUS_ERRORS: dict[int, tuple[type[APIError], str]] = {
    401: (AuthenticationError, "Authentication failed"),
    403: (AuthorizationError, "Authorization failed"),
    404: (NotFoundError, "Not found"),
    409: (ConflictError, "Conflict"),
}


def _error_detail(response: httpx.Response) -> tuple[str, dict[str, Any]]:
    """Pull a human readable detail out of an error body, whatever its shape."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase, {"detail": response.text}

    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        return str(detail or "Unknown error"), body
    if isinstance(body, list):
        detail = ", ".join(str(item) for item in body) or "Unknown error"
        return detail, {"detail": detail}
    return str(body), {"detail": str(body)}


class BaseAPIClient:
    """Rate-limited async JSON client with exception mapping."""

    def __init__(
        self,
        base_url: str,
        token: str,
        verify_ssl: bool = True,
        timeout: int = 120,
        rate_limit: int = 20,
        max_connections: int | None = None,
        max_keepalive_connections: int | None = None,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize client.

        Args:
            base_url: Root URL every endpoint is resolved against
            token: Bearer token
            verify_ssl: Verify TLS certificates
            timeout: Per-request timeout in seconds
            rate_limit: Requests per second (0 = unlimited)
            max_connections: Connection pool size
            max_keepalive_connections: Idle connections kept open
            log_payloads: Log redacted request/response bodies at DEBUG
            max_payload_size: Characters of a body that make it into the log
            transport: httpx transport override (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.log_payloads = log_payloads
        self.max_payload_size = max_payload_size

        self.rate_limit = rate_limit
        self._request_interval = 1.0 / rate_limit if rate_limit > 0 else 0.0
        self._next_slot = 0.0
        self._slot_lock = asyncio.Lock()

        self.client = httpx.AsyncClient(
            base_url=f"{self.base_url}/",
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(
                max_connections=max_connections or DEFAULT_MAX_CONNECTIONS,
                max_keepalive_connections=(
                    max_keepalive_connections or DEFAULT_MAX_KEEPALIVE_CONNECTIONS
                ),
            ),
            verify=verify_ssl,
            follow_redirects=True,
            transport=transport,
        )

        logger.debug("http_client_created", base_url=self.base_url, rate_limit=rate_limit)

    async def _wait_for_slot(self) -> None:
        """Space request starts ``1 / rate_limit`` seconds apart."""
        if not self._request_interval:
            return
        async with self._slot_lock:
            now = time.monotonic()
            delay = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self._request_interval
        if delay > 0:
            await asyncio.sleep(delay)

    def _log_payload(self, event: str, payload: Any, **context: Any) -> None:
        if not payload_logging_enabled(__name__, self.log_payloads):
            return
        logger.debug(
            event,
            payload=truncate_payload(sanitize_payload(payload), self.max_payload_size),
            **context,
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        """Raise the APIError subclass matching an error response."""
        status = response.status_code
        detail, body = _error_detail(response)

        if status in STATUS_ERRORS:
            error_class, prefix = STATUS_ERRORS[status]
            message = prefix if status in (401, 403) else f"{prefix}: {detail}"
            raise error_class(message, status_code=status, response=body)

        if status == 429:
            retry_after = response.headers.get("Retry-After", "")
            raise RateLimitError(
                "Rate limit exceeded",
                status_code=status,
                response=body,
                retry_after=int(retry_after) if retry_after.isdigit() else None,
            )

        if status >= 500:
            raise ServerError(f"Server error: {detail}", status_code=status, response=body)

        raise APIError(f"API error: {detail}", status_code=status, response=body)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request and return the decoded JSON body ({} when empty).

        Raises:
            NetworkError: On timeouts and connection failures
            APIError: On error statuses (subclass per status) and undecodable bodies
        """
        endpoint = endpoint.lstrip("/")
        await self._wait_for_slot()

        if json_data is not None:
            self._log_payload("api_request_payload", json_data, method=method, endpoint=endpoint)

        started = time.monotonic()
        try:
            response = await self.client.request(method, endpoint, params=params, json=json_data)
        except httpx.TimeoutException as e:
            logger.warning("api_request_timeout", method=method, endpoint=endpoint, error=str(e))
            raise NetworkError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            logger.warning("api_request_network_error", method=method, endpoint=endpoint, error=str(e))
            raise NetworkError(f"Network error: {e}") from e

        log_api_request(
            logger,
            method=method,
            url=str(response.request.url),
            status_code=response.status_code,
            duration_ms=(time.monotonic() - started) * 1000,
        )

        if response.is_error:
            self._raise_for_status(response)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise APIError(f"Invalid JSON in response: {e}", status_code=response.status_code) from e

        self._log_payload(
            "api_response_payload", data, method=method, endpoint=endpoint, status=response.status_code
        )
        return data

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.request("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return await self.request("POST", endpoint, params=params, json_data=json_data)

    async def close(self) -> None:
        """Release pooled connections."""
        await self.client.aclose()
        logger.debug("http_client_closed", base_url=self.base_url)

    async def __aenter__(self) -> "BaseAPIClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
