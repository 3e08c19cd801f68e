import json
from datetime import UTC, datetime
from uuid import uuid4

import aiosqlite
import numpy as np

from marginalia.database import BaseRepository, VectorDatabase, serialize_embedding
from marginalia.errors import RetrievalError
from marginalia.highlights.models import Highlight, Label, MissingEmbedding
from marginalia.logging import get_logger

_logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS books (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    source_id INTEGER,
    title TEXT NOT NULL,
    author TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_books_user ON books(user_id);

CREATE TABLE IF NOT EXISTS highlights (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    book_id TEXT REFERENCES books(id) ON DELETE SET NULL,
    source_id INTEGER,
    text TEXT NOT NULL,
    note TEXT,
    location TEXT,
    location_type TEXT,
    highlighted_at TEXT,
    source_url TEXT,
    color TEXT,
    embedding BLOB,  -- float32, NULL until backfilled
    embedding_updated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_highlights_user ON highlights(user_id);
CREATE INDEX IF NOT EXISTS idx_highlights_updated ON highlights(user_id, updated_at DESC);

CREATE VIRTUAL TABLE IF NOT EXISTS highlights_fts USING fts5(
    text, note,
    content='highlights',
    content_rowid='rowid',
    tokenize='trigram'
);

CREATE TRIGGER IF NOT EXISTS highlights_ai AFTER INSERT ON highlights BEGIN
    INSERT INTO highlights_fts(rowid, text, note) VALUES (new.rowid, new.text, new.note);
END;

CREATE TRIGGER IF NOT EXISTS highlights_ad AFTER DELETE ON highlights BEGIN
    INSERT INTO highlights_fts(highlights_fts, rowid, text, note) VALUES ('delete', old.rowid, old.text, old.note);
END;

CREATE TRIGGER IF NOT EXISTS highlights_au AFTER UPDATE OF text, note ON highlights BEGIN
    INSERT INTO highlights_fts(highlights_fts, rowid, text, note) VALUES ('delete', old.rowid, old.text, old.note);
    INSERT INTO highlights_fts(rowid, text, note) VALUES (new.rowid, new.text, new.note);
END;

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    UNIQUE(user_id, name)
);

CREATE TABLE IF NOT EXISTS highlight_categories (
    highlight_id TEXT NOT NULL REFERENCES highlights(id) ON DELETE CASCADE,
    category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
    PRIMARY KEY (highlight_id, category_id)
);

CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    UNIQUE(user_id, name)
);

CREATE TABLE IF NOT EXISTS highlight_tags (
    highlight_id TEXT NOT NULL REFERENCES highlights(id) ON DELETE CASCADE,
    tag_id TEXT NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (highlight_id, tag_id)
);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS highlight_notes (
    highlight_id TEXT NOT NULL REFERENCES highlights(id) ON DELETE CASCADE,
    note_id TEXT NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    imported INTEGER NOT NULL DEFAULT 0,  -- owned by the JSON importer, replaced on re-import
    PRIMARY KEY (highlight_id, note_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_highlight_notes_imported
    ON highlight_notes(highlight_id) WHERE imported = 1;
"""

_SQL_KEYWORD_SEARCH = """
    SELECT h.id, bm25(highlights_fts) AS score
    FROM highlights_fts
    JOIN highlights h ON highlights_fts.rowid = h.rowid
    WHERE highlights_fts MATCH ? AND h.user_id = ?
    ORDER BY score, h.id
    LIMIT ?
"""

_SQL_SUBSTRING_SEARCH = """
    SELECT id, 0.0 AS score
    FROM highlights
    WHERE user_id = ? AND (text LIKE ? ESCAPE '!' OR note LIKE ? ESCAPE '!')
    ORDER BY updated_at DESC, id
    LIMIT ?
"""

_SQL_VECTOR_SEARCH = """
    SELECT id, vec_distance_cosine(embedding, ?) AS distance
    FROM highlights
    WHERE user_id = ? AND embedding IS NOT NULL AND vec_length(embedding) = ?
    ORDER BY distance, id
    LIMIT ?
"""

_SQL_GET_HIGHLIGHT = """
    SELECT
        h.*,
        (
            SELECT json_group_array(json_object('id', c.id, 'name', c.name))
            FROM highlight_categories hc
            JOIN categories c ON c.id = hc.category_id
            WHERE hc.highlight_id = h.id
        ) AS categories_json,
        (
            SELECT json_group_array(json_object('id', t.id, 'name', t.name))
            FROM highlight_tags ht
            JOIN tags t ON t.id = ht.tag_id
            WHERE ht.highlight_id = h.id
        ) AS tags_json,
        (
            SELECT n.content
            FROM highlight_notes hn
            JOIN notes n ON n.id = hn.note_id
            WHERE hn.highlight_id = h.id
            ORDER BY hn.created_at, hn.rowid
            LIMIT 1
        ) AS user_note
    FROM highlights h
    WHERE h.id = ? AND h.user_id = ?
"""

_SQL_UPSERT_BOOK = """
    INSERT INTO books (id, user_id, source_id, title, author, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        source_id = excluded.source_id,
        title = excluded.title,
        author = excluded.author,
        updated_at = excluded.updated_at
    WHERE books.user_id = excluded.user_id
"""

# A changed text invalidates the stored vector so the backfill picks it up again.
_SQL_UPSERT_HIGHLIGHT = """
    INSERT INTO highlights (
        id, user_id, book_id, source_id, text, note, location, location_type,
        highlighted_at, source_url, color, created_at, updated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        book_id = excluded.book_id,
        source_id = excluded.source_id,
        embedding = CASE WHEN highlights.text = excluded.text THEN highlights.embedding ELSE NULL END,
        embedding_updated_at = CASE
            WHEN highlights.text = excluded.text THEN highlights.embedding_updated_at ELSE NULL
        END,
        text = excluded.text,
        note = excluded.note,
        location = excluded.location,
        location_type = excluded.location_type,
        highlighted_at = excluded.highlighted_at,
        source_url = excluded.source_url,
        color = excluded.color,
        updated_at = excluded.updated_at
    WHERE highlights.user_id = excluded.user_id
"""

_SQL_DELETE_HIGHLIGHT = "DELETE FROM highlights WHERE id = ? AND user_id = ?"
_SQL_OWNS_HIGHLIGHT = "SELECT 1 FROM highlights WHERE id = ? AND user_id = ?"

_SQL_SET_EMBEDDING = "UPDATE highlights SET embedding = ?, embedding_updated_at = ? WHERE id = ?"

# Vectors of another dimension were made by a different model and are re-embedded.
_SQL_LIST_MISSING_EMBEDDINGS = """
    SELECT id, text FROM highlights
    WHERE user_id = ? AND trim(text) != '' AND (embedding IS NULL OR vec_length(embedding) != ?)
    ORDER BY updated_at DESC, id
    LIMIT ?
"""

_SQL_COUNT_MISSING_EMBEDDINGS = "SELECT COUNT(*) FROM highlights WHERE trim(text) != ''"
_SQL_COUNT_HIGHLIGHTS = "SELECT COUNT(*) FROM highlights"

_SQL_INSERT_NOTE = "INSERT INTO notes (id, user_id, content, created_at) VALUES (?, ?, ?, ?)"
_SQL_LINK_NOTE = "INSERT INTO highlight_notes (highlight_id, note_id, created_at, imported) VALUES (?, ?, ?, ?)"
_SQL_GET_IMPORTED_NOTE = "SELECT note_id FROM highlight_notes WHERE highlight_id = ? AND imported = 1"
_SQL_UPDATE_NOTE = "UPDATE notes SET content = ? WHERE id = ?"
_SQL_DELETE_NOTE = "DELETE FROM notes WHERE id = ?"

_LABEL_TABLES = {
    "categories": ("highlight_categories", "category_id"),
    "tags": ("highlight_tags", "tag_id"),
}


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return str(uuid4())


def fts_query(text: str) -> str:
    """Quote every term so FTS5 operators in user input are matched literally.

    The trigram index cannot match terms shorter than three characters, and
    terms with no word characters match nothing useful; both are dropped.
    """
    terms = [t for t in text.split() if len(t) >= 3 and any(c.isalnum() for c in t)]
    return " ".join(f'"{t.replace(chr(34), chr(34) + chr(34))}"' for t in terms)


def _escape_like(text: str) -> str:
    return text.replace("!", "!!").replace("%", "!%").replace("_", "!_")


def _labels(raw: str | None) -> list[Label]:
    if not raw:
        return []
    labels = [Label(id=item["id"], name=item["name"]) for item in json.loads(raw)]
    return sorted(labels, key=lambda label: label.name.lower())


def _row_to_highlight(row: aiosqlite.Row) -> Highlight:
    return Highlight(
        id=row["id"],
        book_id=row["book_id"],
        source_id=row["source_id"],
        text=row["text"] or "",
        note=row["note"],
        location=row["location"],
        location_type=row["location_type"],
        highlighted_at=row["highlighted_at"],
        source_url=row["source_url"],
        color=row["color"],
        categories=_labels(row["categories_json"]),
        tags=_labels(row["tags_json"]),
        user_note=row["user_note"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class HighlightDatabase(VectorDatabase):
    async def connect(self) -> None:
        await super().connect()
        await self.init_schema()

    async def init_schema(self) -> None:
        await self.conn.executescript(SCHEMA)
        await self.conn.commit()


class HighlightRepository(BaseRepository):
    # --- Retrieval ---

    async def keyword_search(self, text: str, user_id: str, limit: int) -> list[tuple[str, float]]:
        """Case-insensitive substring match on text and note, scoped to one user.

        Returns (id, score), best first. Queries with no term long enough for the
        trigram index fall back to a LIKE scan, where every hit scores 0.
        """
        text = text.strip()
        if not text:
            return []
        query = fts_query(text)
        if query:
            sql, params = _SQL_KEYWORD_SEARCH, (query, user_id, limit)
        else:
            pattern = f"%{_escape_like(text)}%"
            sql, params = _SQL_SUBSTRING_SEARCH, (user_id, pattern, pattern, limit)
        try:
            rows = await self.conn.execute_fetchall(sql, params)
        except aiosqlite.Error as e:
            _logger.warning("Keyword search failed for query %r: %s", text, e)
            raise RetrievalError(f"Keyword search failed: {e}") from e
        # bm25() is lower-is-better
        return [(row["id"], -row["score"]) for row in rows]

    async def vector_search(self, embedding: bytes, user_id: str, limit: int) -> list[tuple[str, float]]:
        """Cosine scan over the user's embedded highlights. Returns (id, similarity), best first.

        Only vectors with the query's dimension are compared; the rest await re-embedding.
        """
        dim = len(embedding) // 4
        try:
            rows = await self.conn.execute_fetchall(_SQL_VECTOR_SEARCH, (embedding, user_id, dim, limit))
        except aiosqlite.Error as e:
            _logger.warning("Vector search failed: %s", e)
            raise RetrievalError(f"Vector search failed: {e}") from e
        return [(row["id"], 1 - row["distance"]) for row in rows]

    async def get_highlight(self, highlight_id: str, user_id: str) -> Highlight | None:
        rows = await self.conn.execute_fetchall(_SQL_GET_HIGHLIGHT, (highlight_id, user_id))
        if not rows:
            return None
        return _row_to_highlight(rows[0])

    # --- Writes ---

    async def upsert_book(
        self,
        user_id: str,
        title: str,
        author: str | None = None,
        book_id: str | None = None,
        source_id: int | None = None,
    ) -> str:
        book_id = book_id or _new_id()
        now = _now()
        await self.conn.execute(_SQL_UPSERT_BOOK, (book_id, user_id, source_id, title, author, now, now))
        await self._commit()
        return book_id

    async def upsert_highlight(
        self,
        user_id: str,
        text: str,
        highlight_id: str | None = None,
        book_id: str | None = None,
        source_id: int | None = None,
        note: str | None = None,
        location: str | None = None,
        location_type: str | None = None,
        highlighted_at: str | None = None,
        source_url: str | None = None,
        color: str | None = None,
    ) -> str:
        highlight_id = highlight_id or _new_id()
        now = _now()
        cursor = await self.conn.execute(
            _SQL_UPSERT_HIGHLIGHT,
            (
                highlight_id,
                user_id,
                book_id,
                source_id,
                text,
                note,
                location,
                location_type,
                highlighted_at,
                source_url,
                color,
                now,
                now,
            ),
        )
        if cursor.rowcount == 0:
            raise KeyError(f"Highlight {highlight_id} belongs to another user")
        await self._commit()
        return highlight_id

    async def delete_highlight(self, highlight_id: str, user_id: str) -> bool:
        cursor = await self.conn.execute(_SQL_DELETE_HIGHLIGHT, (highlight_id, user_id))
        await self._commit()
        return cursor.rowcount > 0

    async def _require_owner(self, highlight_id: str, user_id: str) -> None:
        rows = await self.conn.execute_fetchall(_SQL_OWNS_HIGHLIGHT, (highlight_id, user_id))
        if not rows:
            raise KeyError(f"Highlight {highlight_id} not found")

    async def _add_label(self, table: str, user_id: str, highlight_id: str, name: str) -> Label:
        link_table, link_column = _LABEL_TABLES[table]
        await self._require_owner(highlight_id, user_id)

        await self.conn.execute(
            f"INSERT OR IGNORE INTO {table} (id, user_id, name) VALUES (?, ?, ?)",
            (_new_id(), user_id, name),
        )
        rows = await self.conn.execute_fetchall(
            f"SELECT id, name FROM {table} WHERE user_id = ? AND name = ?", (user_id, name)
        )
        label = Label(id=rows[0]["id"], name=rows[0]["name"])
        await self.conn.execute(
            f"INSERT OR IGNORE INTO {link_table} (highlight_id, {link_column}) VALUES (?, ?)",
            (highlight_id, label.id),
        )
        await self._commit()
        return label

    async def add_category(self, user_id: str, highlight_id: str, name: str) -> Label:
        return await self._add_label("categories", user_id, highlight_id, name)

    async def add_tag(self, user_id: str, highlight_id: str, name: str) -> Label:
        return await self._add_label("tags", user_id, highlight_id, name)

    async def attach_note(self, user_id: str, highlight_id: str, content: str) -> str:
        await self._require_owner(highlight_id, user_id)
        note_id = _new_id()
        now = _now()
        await self.conn.execute(_SQL_INSERT_NOTE, (note_id, user_id, content, now))
        await self.conn.execute(_SQL_LINK_NOTE, (highlight_id, note_id, now, 0))
        await self._commit()
        return note_id

    async def set_imported_note(self, user_id: str, highlight_id: str, content: str | None) -> str | None:
        """Keep at most one importer-owned note per highlight: create, update or remove it."""
        await self._require_owner(highlight_id, user_id)
        rows = await self.conn.execute_fetchall(_SQL_GET_IMPORTED_NOTE, (highlight_id,))
        note_id = rows[0]["note_id"] if rows else None

        if not content:
            if note_id:
                await self.conn.execute(_SQL_DELETE_NOTE, (note_id,))
                await self._commit()
            return None

        if note_id:
            await self.conn.execute(_SQL_UPDATE_NOTE, (content, note_id))
        else:
            note_id = _new_id()
            now = _now()
            await self.conn.execute(_SQL_INSERT_NOTE, (note_id, user_id, content, now))
            await self.conn.execute(_SQL_LINK_NOTE, (highlight_id, note_id, now, 1))
        await self._commit()
        return note_id

    # --- Embeddings ---

    async def set_embedding(self, highlight_id: str, embedding: np.ndarray) -> None:
        await self.conn.execute(_SQL_SET_EMBEDDING, (serialize_embedding(embedding), _now(), highlight_id))
        await self._commit()

    async def list_missing_embeddings(self, user_id: str, limit: int, dim: int) -> list[MissingEmbedding]:
        """Highlights with no vector, or a vector whose dimension is not ``dim``."""
        rows = await self.conn.execute_fetchall(_SQL_LIST_MISSING_EMBEDDINGS, (user_id, dim, limit))
        return [MissingEmbedding(id=row["id"], text=row["text"]) for row in rows]

    async def count_missing_embeddings(self, user_id: str | None = None, dim: int | None = None) -> int:
        sql, params = _SQL_COUNT_MISSING_EMBEDDINGS, ()
        if dim is None:
            sql = f"{sql} AND embedding IS NULL"
        else:
            sql, params = f"{sql} AND (embedding IS NULL OR vec_length(embedding) != ?)", (dim,)
        if user_id:
            sql, params = f"{sql} AND user_id = ?", (*params, user_id)
        rows = await self.conn.execute_fetchall(sql, params)
        return rows[0][0]

    async def count_highlights(self, user_id: str | None = None) -> int:
        sql, params = _SQL_COUNT_HIGHLIGHTS, ()
        if user_id:
            sql, params = f"{sql} WHERE user_id = ?", (user_id,)
        rows = await self.conn.execute_fetchall(sql, params)
        return rows[0][0]
