import zlib
from typing import List, Optional

import numpy as np
import pytest

from quarry.core.embeddings import EmbeddingBackend, dispose_default_backend
from quarry.core.lexical import tokenize
from quarry.core.store import DocumentStore

DIMENSION = 256

CORPUS = [
    (
        "notes",
        "distributed.md",
        "# CAP theorem\nThe CAP theorem says a distributed system cannot provide "
        "consistency, availability and partition tolerance at once.",
    ),
    (
        "notes",
        "errors.md",
        "# Error handling\nError handling in Python uses exceptions. "
        "Good error-handling code is explicit.",
    ),
    (
        "notes",
        "auth.md",
        "# Authentication\nAuthentication verifies identity. OAuth tokens are common for auth.",
    ),
    (
        "docs",
        "sports.md",
        "# Sports performance\nAthletes measure performance with heart rate and training load.",
    ),
    (
        "docs",
        "databases.md",
        "# Database performance\nIndexes improve query performance in databases.",
    ),
]


class HashingEmbedder:
    """Deterministic bag-of-words embedder for tests."""

    def __init__(self, dimension: int = DIMENSION):
        self._dimension = dimension
        self.calls = 0

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        vectors = []
        for text in texts:
            vector = np.zeros(self._dimension, dtype=np.float32)
            for token in tokenize(text):
                vector[zlib.crc32(token.encode("utf-8")) % self._dimension] += 1.0
            vectors.append(vector.tolist())
        return vectors


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def backend(embedder):
    backend = EmbeddingBackend(lambda: embedder, name="test")
    yield backend
    backend.dispose()


@pytest.fixture
def store(embedder):
    store = DocumentStore()
    for collection, path, content in CORPUS:
        vector = embedder.embed([content])[0]
        store.add_document(collection, path, content, vector=vector)
    return store


@pytest.fixture
def doc_ids(store):
    """Path -> doc id for the test corpus."""
    return {doc.path: doc.doc_id for doc in store.documents.values()}


@pytest.fixture(autouse=True)
def _reset_default_backend():
    yield
    dispose_default_backend()
