class MarginaliaError(Exception):
    """Base class for errors raised by marginalia."""


class ValidationError(MarginaliaError):
    """Bad input shape or range. Surfaces to HTTP clients as 400."""


class RetrievalError(MarginaliaError):
    """The store failed while producing a ranked candidate list."""


class EmbeddingError(MarginaliaError):
    """Vector generation failed, or returned something unusable."""


class DimensionMismatchError(EmbeddingError):
    """Two vectors of different length were compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vectors must have the same length, got {left} and {right}")
        self.left = left
        self.right = right


class SearchError(MarginaliaError):
    """A search request failed after validation."""

    def __init__(self, message: str, mode: str | None = None):
        super().__init__(message)
        self.mode = mode


class AuthenticationError(MarginaliaError):
    """No valid session could be resolved for the request."""
