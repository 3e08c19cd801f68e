from marginalia.highlights.models import Highlight, Label, MissingEmbedding
from marginalia.highlights.store import HighlightDatabase, HighlightRepository

__all__ = [
    "Highlight",
    "HighlightDatabase",
    "HighlightRepository",
    "Label",
    "MissingEmbedding",
]
