from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Protocol

import httpx

from marginalia.constants import DEFAULT_SEARCH_LIMIT
from marginalia.errors import MarginaliaError
from marginalia.highlights.models import Highlight
from marginalia.logging import get_logger
from marginalia.search.types import SearchMode, SearchResponse

_logger = get_logger(__name__)


class SearchClientError(MarginaliaError):
    """A search request failed on the wire or on the server."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SearchBackend(Protocol):
    async def search(self, query: str, mode: SearchMode, limit: int) -> SearchResponse: ...


class SearchClient:
    """HTTP client for ``POST /search``."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        http: httpx.AsyncClient | None = None,
    ):
        self._http = http or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def __aenter__(self) -> "SearchClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def search(self, query: str, mode: SearchMode, limit: int = DEFAULT_SEARCH_LIMIT) -> SearchResponse:
        try:
            response = await self._http.post(
                "/search",
                json={"query": query, "mode": str(mode), "limit": limit},
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise SearchClientError(f"Search request failed: {e}") from e

        if response.is_error:
            raise SearchClientError(_error_message(response), status_code=response.status_code)

        try:
            return SearchResponse.from_dict(response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SearchClientError(f"Malformed search response: {e}", status_code=response.status_code) from e


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return "Failed to search highlights"
    if not isinstance(data, dict) or not isinstance(data.get("error"), str):
        return "Failed to search highlights"
    return data["error"] or "Failed to search highlights"


class SearchStatus(StrEnum):
    IDLE = "idle"
    SEARCHING = "searching"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ClientSearchState:
    query: str = ""
    mode: SearchMode = SearchMode.KEYWORD
    results: list[Highlight] = field(default_factory=list)
    is_loading: bool = False
    error: str | None = None
    request_epoch: int = 0
    status: SearchStatus = SearchStatus.IDLE


type StateListener = Callable[[ClientSearchState], None]


class SearchController:
    """Client-side search state with stale-response protection.

    Every search invocation takes a fresh epoch. A response is applied only if
    its epoch is still the latest when it resolves, so a slow answer to an old
    query can never overwrite the answer to a newer one. Clearing and blank
    queries also take an epoch, which invalidates whatever is in flight.

    With ``auto_search`` on, ``set_query`` and ``set_mode`` search immediately;
    ``search`` is the manual entry point and shares the same path.
    """

    def __init__(
        self,
        client: SearchBackend,
        query: str = "",
        mode: SearchMode | str = SearchMode.KEYWORD,
        limit: int = DEFAULT_SEARCH_LIMIT,
        auto_search: bool = True,
        on_change: StateListener | None = None,
    ):
        self.client = client
        self.limit = limit
        self.auto_search = auto_search
        self.on_change = on_change
        self._state = ClientSearchState(query=query, mode=SearchMode(mode))

    @property
    def state(self) -> ClientSearchState:
        return replace(self._state, results=list(self._state.results))

    async def set_query(self, query: str) -> None:
        self._update(query=query)
        if self.auto_search:
            await self._perform(self._state.query, self._state.mode)

    async def set_mode(self, mode: SearchMode | str) -> None:
        self._update(mode=SearchMode(mode))
        if self.auto_search:
            await self._perform(self._state.query, self._state.mode)

    async def search(self, query: str, mode: SearchMode | str | None = None) -> None:
        search_mode = SearchMode(mode) if mode else self._state.mode
        self._update(query=query, mode=search_mode)
        await self._perform(query, search_mode)

    def clear(self) -> None:
        self._update(
            query="",
            results=[],
            error=None,
            is_loading=False,
            status=SearchStatus.IDLE,
            request_epoch=self._state.request_epoch + 1,
        )

    def _update(self, **changes) -> None:
        for name, value in changes.items():
            setattr(self._state, name, value)
        if self.on_change:
            self.on_change(self.state)

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._state.request_epoch

    async def _perform(self, query: str, mode: SearchMode) -> None:
        epoch = self._state.request_epoch + 1

        if not query or not query.strip():
            self._update(request_epoch=epoch, results=[], error=None, is_loading=False, status=SearchStatus.IDLE)
            return

        self._update(request_epoch=epoch, error=None, is_loading=True, status=SearchStatus.SEARCHING)

        try:
            response = await self.client.search(query, mode, self.limit)
        except SearchClientError as e:
            if not self._is_current(epoch):
                _logger.debug("Discarding stale search error for %r (epoch %d)", query, epoch)
                return
            _logger.warning("Error searching highlights: %s", e)
            self._update(results=[], error=str(e), is_loading=False, status=SearchStatus.ERROR)
            return

        if not self._is_current(epoch):
            _logger.debug("Discarding stale search response for %r (epoch %d)", query, epoch)
            return
        self._update(results=response.results, error=None, is_loading=False, status=SearchStatus.SUCCESS)
