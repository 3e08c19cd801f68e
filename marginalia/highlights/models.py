from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class Label:
    """A category or tag attached to a highlight."""

    id: str
    name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class Highlight:
    """A hydrated highlight as returned by search.

    ``note`` is the note captured with the highlight at its source;
    ``user_note`` is the content of a note the user attached in marginalia.
    """

    id: str
    book_id: str | None
    source_id: int | None
    text: str
    note: str | None = None
    location: str | None = None
    location_type: str | None = None
    highlighted_at: str | None = None
    source_url: str | None = None
    color: str | None = None
    categories: list[Label] = field(default_factory=list)
    tags: list[Label] = field(default_factory=list)
    user_note: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    score: float | None = None

    def with_score(self, score: float) -> "Highlight":
        return replace(self, score=score)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "sourceId": self.source_id,
            "text": self.text,
            "note": self.note,
            "location": self.location,
            "locationType": self.location_type,
            "highlightedAt": self.highlighted_at,
            "sourceUrl": self.source_url,
            "color": self.color,
            "categories": [c.to_dict() for c in self.categories],
            "tags": [t.to_dict() for t in self.tags],
            "userNote": self.user_note,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Highlight":
        return cls(
            id=data["id"],
            book_id=data.get("bookId"),
            source_id=data.get("sourceId"),
            text=data.get("text") or "",
            note=data.get("note"),
            location=data.get("location"),
            location_type=data.get("locationType"),
            highlighted_at=data.get("highlightedAt"),
            source_url=data.get("sourceUrl"),
            color=data.get("color"),
            categories=[Label(id=c["id"], name=c["name"]) for c in data.get("categories") or []],
            tags=[Label(id=t["id"], name=t["name"]) for t in data.get("tags") or []],
            user_note=data.get("userNote"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            score=data.get("score"),
        )


@dataclass
class MissingEmbedding:
    """Highlight that still needs a vector."""

    id: str
    text: str
