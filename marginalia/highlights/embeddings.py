from typing import NamedTuple

from marginalia.constants import BACKFILL_BATCH_SIZE, BACKFILL_CHUNK_SIZE
from marginalia.embedder import Embedder
from marginalia.errors import EmbeddingError
from marginalia.highlights.store import HighlightRepository
from marginalia.logging import get_logger

_logger = get_logger(__name__)


class BackfillResult(NamedTuple):
    processed: int
    failed: int


async def generate_missing_embeddings(
    repo: HighlightRepository,
    embedder: Embedder,
    user_id: str,
    batch_size: int = BACKFILL_BATCH_SIZE,
    chunk_size: int = BACKFILL_CHUNK_SIZE,
) -> BackfillResult:
    """Embed up to ``batch_size`` of the user's highlights that need a vector.

    A highlight needs one when it has none, or when its vector was made by a
    model of another dimension. Most recently updated highlights go first.
    Texts are sent upstream in chunks of ``chunk_size``; a failing chunk is
    counted as failed and the run continues.
    """
    pending = await repo.list_missing_embeddings(user_id, batch_size, embedder.config.dim)
    if not pending:
        _logger.info("No highlights need embeddings for user %s", user_id)
        return BackfillResult(0, 0)

    total_chunks = (len(pending) + chunk_size - 1) // chunk_size
    _logger.info("Embedding %d highlights for user %s in %d chunks", len(pending), user_id, total_chunks)

    processed = failed = 0
    for chunk_start in range(0, len(pending), chunk_size):
        chunk = pending[chunk_start : chunk_start + chunk_size]
        chunk_number = chunk_start // chunk_size + 1

        try:
            embeddings = await embedder.embed([h.text for h in chunk])
        except EmbeddingError as e:
            _logger.error("Chunk %d/%d failed: %s", chunk_number, total_chunks, e)
            failed += len(chunk)
            continue

        for highlight, embedding in zip(chunk, embeddings):
            await repo.set_embedding(highlight.id, embedding)
            processed += 1

        _logger.info("Completed chunk %d/%d", chunk_number, total_chunks)

    return BackfillResult(processed, failed)
