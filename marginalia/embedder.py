from dataclasses import dataclass

import litellm
import numpy as np
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from marginalia.constants import EMBEDDING_BATCH_LIMIT, EMBEDDING_TEXT_LIMIT
from marginalia.errors import DimensionMismatchError, EmbeddingError
from marginalia.logging import get_logger

_logger = get_logger(__name__)

_RETRYABLE = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.InternalServerError,
    litellm.ServiceUnavailableError,
)


@dataclass
class EmbeddingConfig:
    model: str
    dim: int


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, _RETRYABLE)


def _log_retry(retry_state) -> None:
    _logger.warning(
        "Embedding call failed (attempt %d/3), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    )


def cosine_similarity(a: np.ndarray | list[float], b: np.ndarray | list[float]) -> float:
    """Normalized dot product of two vectors, 0.0 if either has zero magnitude."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatchError(a.size, b.size)

    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / denominator, -1.0, 1.0))


class Embedder:
    def __init__(self, config: EmbeddingConfig, api_key: str | None = None):
        self.config = config
        self.api_key = api_key

    def _normalize(self, embeddings: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / np.where(norms == 0, 1, norms)

    def _parse_response(self, response, expected: int) -> np.ndarray:
        data = list(response.data or [])
        if len(data) != expected:
            raise EmbeddingError(f"Embedding count mismatch: sent {expected}, got {len(data)}")

        # upstream does not guarantee input order
        sorted_data = sorted(data, key=lambda x: x["index"])
        embeddings = np.array([item["embedding"] for item in sorted_data], dtype=np.float32)

        if embeddings.ndim != 2 or embeddings.shape[1] != self.config.dim:
            raise EmbeddingError(f"Expected {self.config.dim}-dimensional embeddings, got shape {embeddings.shape}")
        return self._normalize(embeddings)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=0.5, max=8, jitter=2),
        reraise=True,
        before_sleep=_log_retry,
    )
    async def _request(self, texts: list[str]):
        kwargs = {"api_key": self.api_key} if self.api_key else {}
        return await litellm.aembedding(model=self.config.model, input=texts, **kwargs)

    async def embed(self, texts: list[str]) -> np.ndarray:
        """Embed up to EMBEDDING_BATCH_LIMIT texts; rows follow input order."""
        if not texts:
            return np.empty((0, self.config.dim), dtype=np.float32)
        if len(texts) > EMBEDDING_BATCH_LIMIT:
            raise EmbeddingError(f"Batch size {len(texts)} exceeds maximum of {EMBEDDING_BATCH_LIMIT}")
        if any(not t or not t.strip() for t in texts):
            raise EmbeddingError("Text cannot be empty")

        truncated = [t[:EMBEDDING_TEXT_LIMIT] for t in texts]
        try:
            response = await self._request(truncated)
        except Exception as e:
            _logger.warning("Embedding request failed: %s", e)
            raise EmbeddingError(f"Failed to generate embeddings: {e}") from e
        return self._parse_response(response, len(truncated))

    async def embed_one(self, text: str) -> np.ndarray:
        if not text or not text.strip():
            raise EmbeddingError("Text cannot be empty")
        return (await self.embed([text]))[0]
