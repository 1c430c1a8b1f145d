"""Exception taxonomy for query parsing, search execution and the embedding backend."""


class QuarryError(Exception):
    """Base exception for quarry."""

    pass


class AmbiguousQueryError(QuarryError):
    """Raised when a structured query has more than one line without a type prefix."""

    pass


class QuerySyntaxError(QuarryError):
    """Raised when a query cannot be compiled or uses an operator its mode forbids."""

    pass


class EmbeddingUnavailableError(QuarryError):
    """Raised when the embedding backend cannot produce a vector.

    Never downgraded to lexical-only search; callers see the failure.
    """

    pass


class EmbeddingBackendBusyError(QuarryError):
    """Raised when dispose is requested while searches still hold the backend."""

    pass


class DocumentNotFoundError(QuarryError):
    """Raised when a document id is not present in the store."""

    pass


class SearchTimeoutError(QuarryError):
    """Raised when a structured search does not finish within its timeout."""

    pass


__all__ = [
    "QuarryError",
    "AmbiguousQueryError",
    "QuerySyntaxError",
    "EmbeddingUnavailableError",
    "EmbeddingBackendBusyError",
    "DocumentNotFoundError",
    "SearchTimeoutError",
]
