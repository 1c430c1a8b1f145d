"""Embedding search shared by vec and hyde sub-searches."""

import logging
from typing import TYPE_CHECKING, FrozenSet, List

import numpy as np

from .embeddings import EmbeddingBackend
from .errors import QuerySyntaxError
from .models import RawHit
from .query_parser import validate_semantic_query

if TYPE_CHECKING:
    from .store import DocumentStore

logger = logging.getLogger(__name__)


def semantic_search(
    store: "DocumentStore",
    text: str,
    backend: EmbeddingBackend,
    collections: FrozenSet[str] = frozenset(),
    limit: int = 10,
) -> List[RawHit]:
    """
    Embed `text` and return the nearest documents by cosine similarity.

    The same mechanism serves questions (vec) and hypothetical answer
    passages (hyde); only the caller's input style differs.

    Args:
        store: Document store holding the vector index
        text: Natural-language query or hypothetical passage
        backend: Embedding backend used to embed `text`
        collections: Collections to search; empty means all
        limit: Maximum number of hits, applied after collection filtering

    Returns:
        Hits ordered by descending similarity, ties by doc id

    Raises:
        QuerySyntaxError: `text` uses lexical-only operators
        EmbeddingUnavailableError: The backend could not embed `text`
    """
    error = validate_semantic_query(text)
    if error:
        raise QuerySyntaxError(error)

    if len(store.vector_index) == 0:
        logger.debug("Vector index is empty; skipping embedding")
        return []

    vector = np.asarray(backend.embed(text), dtype=np.float32)
    matches = store.vector_index.query(vector, collections, limit)

    # Similarity can be negative for unrelated texts; hits carry non-negative scores.
    return [RawHit(doc_id, max(score, 0.0)) for doc_id, score in matches]


__all__ = ["semantic_search"]
