"""Load a JSON export of books and highlights into the store.

Expected shape::

    [
      {
        "title": "Meditations",
        "author": "Marcus Aurelius",
        "id": 123,                      # optional source id
        "highlights": [
          {
            "text": "...",
            "note": "...",              # optional, note captured at the source
            "id": 456,                  # optional source id
            "location": "12", "location_type": "page",
            "highlighted_at": "2024-01-01T00:00:00Z",
            "url": "...", "color": "yellow",
            "tags": ["stoicism"], "categories": ["philosophy"],
            "user_note": "..."          # optional, replaces the note from a previous import
          }
        ]
      }
    ]
"""

import json
from pathlib import Path
from typing import NamedTuple
from uuid import NAMESPACE_URL, uuid5

from pydantic import BaseModel, Field

from marginalia.highlights.store import HighlightRepository


class ImportedHighlight(BaseModel):
    text: str = Field(..., min_length=1)
    id: int | None = None
    note: str | None = None
    location: str | int | None = None
    location_type: str | None = None
    highlighted_at: str | None = None
    url: str | None = None
    color: str | None = None
    tags: list[str] = []
    categories: list[str] = []
    user_note: str | None = None


class ImportedBook(BaseModel):
    title: str
    author: str | None = None
    id: int | None = None
    highlights: list[ImportedHighlight] = []


class ImportResult(NamedTuple):
    books: int
    highlights: int


def _stable_id(user_id: str, kind: str, source_id: int | None) -> str | None:
    """Same source record, same id: re-importing an export updates rows in place."""
    if source_id is None:
        return None
    return str(uuid5(NAMESPACE_URL, f"marginalia:{user_id}:{kind}:{source_id}"))


def load_export(path: Path) -> list[ImportedBook]:
    data = json.loads(path.read_text())
    return [ImportedBook.model_validate(book) for book in data]


async def import_books(repo: HighlightRepository, user_id: str, books: list[ImportedBook]) -> ImportResult:
    highlight_count = 0
    for book in books:
        book_id = await repo.upsert_book(
            user_id,
            book.title,
            author=book.author,
            book_id=_stable_id(user_id, "book", book.id),
            source_id=book.id,
        )
        for item in book.highlights:
            highlight_id = await repo.upsert_highlight(
                user_id,
                item.text,
                highlight_id=_stable_id(user_id, "highlight", item.id),
                book_id=book_id,
                source_id=item.id,
                note=item.note,
                location=str(item.location) if item.location is not None else None,
                location_type=item.location_type,
                highlighted_at=item.highlighted_at,
                source_url=item.url,
                color=item.color,
            )
            for name in item.tags:
                await repo.add_tag(user_id, highlight_id, name)
            for name in item.categories:
                await repo.add_category(user_id, highlight_id, name)
            await repo.set_imported_note(user_id, highlight_id, item.user_note)
            highlight_count += 1
    return ImportResult(books=len(books), highlights=highlight_count)
