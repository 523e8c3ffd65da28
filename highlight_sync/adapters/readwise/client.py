"""Readwise API v2 client.

Transport and HTTP outcomes are translated into the domain error taxonomy
here; retries, rate limiting and the circuit breaker live in the sync engine
so the client itself makes exactly one request per call.
"""

from __future__ import annotations

import logging
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import httpx

from highlight_sync.adapters.readwise.models import (
    CreateBookRequest,
    CreateHighlightItem,
    CreateHighlightsRequest,
    ModifiedBook,
    ReadwiseBook,
    ReadwiseBookList,
)
from highlight_sync.config.integrations import DEFAULT_READWISE_API_URL
from highlight_sync.core.logging_utils import truncate_log_content
from highlight_sync.core.time_utils import ensure_datetime, utc_now
from highlight_sync.domain.exceptions import (
    AuthenticationError,
    ErrorType,
    NetworkError,
    RateLimitError,
    RemoteServiceError,
    RequestTimeoutError,
    ServerError,
    UnknownRemoteError,
    ValidationError,
)
from highlight_sync.sync.models import CreatedHighlight
from highlight_sync.utils.retry_utils import classify_status_code

if TYPE_CHECKING:
    from typing import Self

    from highlight_sync.adapters.readwise.book_cache import BookCache
    from highlight_sync.sync.models import HighlightPayload, ParentMetadata

logger = logging.getLogger(__name__)

_ERROR_CLASSES: dict[ErrorType, type[RemoteServiceError]] = {
    ErrorType.AUTH_ERROR: AuthenticationError,
    ErrorType.VALIDATION: ValidationError,
    ErrorType.SERVER_ERROR: ServerError,
}


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given either as seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = ensure_datetime(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (when - utc_now()).total_seconds())


def _error_detail(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return truncate_log_content(response.text)


class ReadwiseClient:
    """Async HTTP client for the Readwise v2 API."""

    def __init__(
        self,
        api_token: str,
        api_url: str = DEFAULT_READWISE_API_URL,
        timeout: float = 30.0,
        *,
        book_cache: BookCache | None = None,
        source_type: str = "highlight_sync",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Readwise client.

        Args:
            api_token: Readwise access token
            api_url: Base URL of the v2 API
            timeout: Request timeout in seconds
            book_cache: Optional cache of resolved book ids
            source_type: Value reported as ``source_type`` on created highlights
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
        """
        if not api_token:
            msg = "Readwise API token is required"
            raise ValueError(msg)
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.book_cache = book_cache
        self.source_type = source_type
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        """Enter async context."""
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Token {self.api_token}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        """Exit async context."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client."""
        if self._client is None:
            msg = "Client not initialized. Use async context manager."
            raise UnknownRemoteError(msg)
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        try:
            response = await self.client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            msg = f"{method} {path} timed out"
            raise RequestTimeoutError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"{method} {path} failed: {exc}"
            raise NetworkError(msg) from exc

        self._raise_for_status(response, method, path)
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            msg = f"{method} {path} returned invalid JSON"
            raise UnknownRemoteError(msg, status_code=response.status_code) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response, method: str, path: str) -> None:
        status = response.status_code
        if status < 400:
            return

        message = f"{method} {path} failed with HTTP {status}"
        details = {"body": _error_detail(response)}
        logger.debug(
            "readwise_request_failed",
            extra={"method": method, "path": path, "status_code": status},
        )

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitError(message, retry_after=retry_after, status_code=status, details=details)

        error_cls = _ERROR_CLASSES.get(classify_status_code(status), UnknownRemoteError)
        raise error_cls(message, status_code=status, details=details)

    async def test_connection(self) -> bool:
        """Check the token. Returns False when it is rejected."""
        try:
            await self._request("GET", "/auth/")
        except AuthenticationError:
            logger.error("readwise_invalid_token")
            return False
        return True

    async def get_books(
        self,
        *,
        title: str | None = None,
        author: str | None = None,
        source_url: str | None = None,
        category: str | None = None,
        page: int | None = None,
    ) -> ReadwiseBookList:
        params = {
            key: value
            for key, value in {
                "title": title,
                "author": author,
                "source_url": source_url,
                "category": category,
                "page": page,
            }.items()
            if value is not None
        }
        data = await self._request("GET", "/books/", params=params)
        return ReadwiseBookList.model_validate(data or {})

    async def create_book(self, metadata: ParentMetadata) -> ReadwiseBook:
        request = CreateBookRequest(
            title=metadata.title,
            author=metadata.author,
            category=metadata.category,
            source=metadata.source_type,
            unique_url=metadata.source_url,
        )
        data = await self._request("POST", "/books/", json=request.model_dump(exclude_none=True))
        return ReadwiseBook.model_validate(data)

    async def resolve_or_create_parent(self, metadata: ParentMetadata) -> str:
        """Find the book matching title, author and source URL, or create it."""
        if not metadata.title:
            msg = "Book title is required"
            raise ValidationError(msg)

        if self.book_cache is not None:
            cached = self.book_cache.get(metadata.title, metadata.author, metadata.source_url)
            if cached is not None:
                return cached

        existing = await self.get_books(
            title=metadata.title, author=metadata.author, source_url=metadata.source_url
        )
        if existing.results:
            book = existing.results[0]
            logger.debug(
                "readwise_book_found",
                extra={"book_id": book.id, "title": truncate_log_content(metadata.title, 80)},
            )
        else:
            book = await self.create_book(metadata)
            logger.info(
                "readwise_book_created",
                extra={"book_id": book.id, "title": truncate_log_content(metadata.title, 80)},
            )

        if self.book_cache is not None:
            self.book_cache.set(book.id, metadata.title, metadata.author, metadata.source_url)
        return book.id

    def _to_wire(self, highlight: HighlightPayload, parent: ParentMetadata) -> CreateHighlightItem:
        return CreateHighlightItem(
            text=highlight.text,
            title=parent.title,
            author=parent.author,
            source_url=parent.source_url,
            source_type=self.source_type,
            category=parent.category,
            note=highlight.note or None,
            location=highlight.location,
            location_type=highlight.location_type,
            highlighted_at=highlight.highlighted_at,
            highlight_url=highlight.highlight_url,
            tags=list(highlight.tags) or None,
            color=highlight.color,
        )

    async def bulk_create_highlights(
        self, highlights: list[HighlightPayload], parent: ParentMetadata
    ) -> list[CreatedHighlight]:
        """Create ``highlights`` in one request.

        The returned list is positionally aligned with ``highlights``; the
        remote may return fewer ids than highlights sent.
        """
        if not highlights:
            return []

        request = CreateHighlightsRequest(
            highlights=[self._to_wire(highlight, parent) for highlight in highlights]
        )
        data = await self._request(
            "POST", "/highlights/", json=request.model_dump(exclude_none=True)
        )
        created = self._parse_created(data, parent)
        logger.info(
            "readwise_highlights_created",
            extra={
                "book_id": parent.remote_id,
                "submitted": len(highlights),
                "confirmed": len(created),
            },
        )
        return created

    @staticmethod
    def _parse_created(data: Any, parent: ParentMetadata) -> list[CreatedHighlight]:
        """Flatten the response into highlight confirmations.

        The API answers with the books that received highlights, each listing
        ``modified_highlights`` ids; plain highlight objects are accepted too.
        """
        if not isinstance(data, list):
            return []

        created: list[CreatedHighlight] = []
        for entry in data:
            if not isinstance(entry, dict):
                continue
            if "modified_highlights" in entry:
                book = ModifiedBook.model_validate(entry)
                created.extend(
                    CreatedHighlight(id=highlight_id, parent_id=book.id)
                    for highlight_id in book.modified_highlights
                )
            elif entry.get("id") is not None:
                created.append(
                    CreatedHighlight.model_validate(
                        {
                            "id": entry["id"],
                            "parent_id": entry.get("book_id", parent.remote_id),
                            "text": entry.get("text"),
                        }
                    )
                )
        return created

    def clear_cache(self) -> None:
        if self.book_cache is not None:
            self.book_cache.clear()

    def get_cache_stats(self) -> dict[str, Any] | None:
        if self.book_cache is None:
            return None
        return self.book_cache.get_stats()
