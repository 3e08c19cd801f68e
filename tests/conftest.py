import hashlib
from collections.abc import AsyncGenerator
from pathlib import Path

import litellm
import numpy as np
import pytest
import pytest_asyncio

from marginalia.embedder import Embedder, EmbeddingConfig
from marginalia.highlights.store import HighlightDatabase, HighlightRepository

TEST_EMBEDDING_DIM = 64
TEST_USER = "user-alice"
OTHER_USER = "user-bob"


def mock_embedding(text: str) -> np.ndarray:
    h = hashlib.md5(text.encode()).hexdigest()
    # MD5 is 32 chars, repeat to get TEST_EMBEDDING_DIM
    arr = np.array([int(c, 16) / 15.0 for c in h] * (TEST_EMBEDDING_DIM // 32))
    norm = np.linalg.norm(arr)
    return arr / norm if norm > 0 else arr


class FakeEmbeddingResponse:
    def __init__(self, data: list[dict]):
        self.data = data


async def fake_aembedding(model: str, input: list[str], **kwargs) -> FakeEmbeddingResponse:
    data = [{"index": i, "embedding": mock_embedding(text).tolist()} for i, text in enumerate(input)]
    # upstream may answer out of order
    return FakeEmbeddingResponse(list(reversed(data)))


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[HighlightDatabase]:
    db = HighlightDatabase(tmp_path / "test_highlights.db")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def repo(db: HighlightDatabase) -> HighlightRepository:
    return HighlightRepository(db.conn)


@pytest.fixture
def embedder(monkeypatch) -> Embedder:
    monkeypatch.setattr(litellm, "aembedding", fake_aembedding)
    return Embedder(EmbeddingConfig(model="text-embedding-3-small", dim=TEST_EMBEDDING_DIM))


async def add_highlight(
    repo: HighlightRepository,
    text: str,
    user_id: str = TEST_USER,
    embed_as: str | None = None,
    tags: tuple[str, ...] = (),
    categories: tuple[str, ...] = (),
    user_note: str | None = None,
    **fields,
) -> str:
    """Insert a highlight; ``embed_as`` stores mock_embedding(embed_as) as its vector."""
    highlight_id = await repo.upsert_highlight(user_id, text, **fields)
    if embed_as is not None:
        await repo.set_embedding(highlight_id, mock_embedding(embed_as))
    for name in tags:
        await repo.add_tag(user_id, highlight_id, name)
    for name in categories:
        await repo.add_category(user_id, highlight_id, name)
    if user_note:
        await repo.attach_note(user_id, highlight_id, user_note)
    return highlight_id
