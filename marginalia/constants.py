# --- Search ---

RRF_K = 60
RRF_OVERFETCH_FACTOR = 2  # hybrid legs each fetch limit * factor before fusion

DEFAULT_SEARCH_LIMIT = 10
MIN_SEARCH_LIMIT = 1
MAX_SEARCH_LIMIT = 100


# --- Embeddings ---

EMBEDDING_TEXT_LIMIT = 8000
EMBEDDING_BATCH_LIMIT = 100  # max inputs per upstream embedding call

# Embedding models (OpenAI): model -> dimension
EMBEDDING_MODELS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

# Backfill: highlights fetched per run, texts sent per upstream call
BACKFILL_BATCH_SIZE = 250
BACKFILL_CHUNK_SIZE = 50


# --- Sessions ---

SESSION_EXPIRY_HOURS = 24 * 30
SESSION_TOKEN_BYTES = 32


# --- Display Truncation ---

SNIPPET_TRUNCATE = 120
