import asyncio

from marginalia.auth import SessionRepository
from marginalia.config import Config, get_config
from marginalia.embedder import Embedder
from marginalia.highlights.store import HighlightDatabase, HighlightRepository
from marginalia.logging import get_logger
from marginalia.search.service import SearchService

_logger = get_logger(__name__)


class Runtime:
    def __init__(self, config: Config | None = None, embedder: Embedder | None = None):
        self.config = config or get_config()
        self.embedder = embedder or Embedder(self.config.embedding, api_key=self.config.openai_api_key)
        self.db = HighlightDatabase(self.config.db_path)

        self.highlights: HighlightRepository | None = None
        self.sessions: SessionRepository | None = None
        self.search: SearchService | None = None
        self._connected = False

    async def connect(self) -> None:
        if self._connected:
            return

        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        await self.db.connect()

        self.highlights = HighlightRepository(self.db.conn)
        self.sessions = SessionRepository(self.db.conn)
        await self.sessions.init_schema()
        purged = await self.sessions.purge_expired()
        if purged:
            _logger.info("Purged %d expired sessions", purged)

        self.search = SearchService(self.highlights, self.embedder)
        self._connected = True

    async def close(self) -> None:
        await self.db.close()
        self._connected = False


_runtime: Runtime | None = None
_runtime_lock = asyncio.Lock()


async def get_runtime_async() -> Runtime:
    global _runtime
    async with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime()
            await _runtime.connect()
    return _runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Runtime not initialized. Call get_runtime_async() first.")
    if not _runtime._connected:
        raise RuntimeError("Runtime not connected. Call await runtime.connect() first.")
    return _runtime


async def reset_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.close()
        _runtime = None
