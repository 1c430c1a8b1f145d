"""FAISS index over document embeddings: cosine similarity, collection filtering, persistence."""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import faiss
import numpy as np

logger = logging.getLogger(__name__)

INDEX_FILE = "faiss.index"
METADATA_FILE = "metadata.txt"


class VectorIndexConfig:
    """Configuration for the FAISS index."""
    def __init__(self):
        self.index_type = os.getenv("QUARRY_FAISS_INDEX", "Flat")
        self.hnsw_m = 16  # Number of bidirectional links for HNSW
        self.hnsw_ef_construction = 200
        self.hnsw_ef_search = 100


def normalize(vectors: np.ndarray) -> np.ndarray:
    """L2-normalize rows so inner product equals cosine similarity."""
    vectors = np.atleast_2d(np.asarray(vectors, dtype=np.float32))
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return vectors / norms


class VectorIndex:
    """Inner-product FAISS index with a doc id / collection map beside it."""

    def __init__(self, config: Optional[VectorIndexConfig] = None):
        self.config = config or VectorIndexConfig()
        self.index: Optional[faiss.Index] = None
        self.dimensions: Optional[int] = None
        self._doc_ids: List[str] = []
        self._collections: List[str] = []
        self._vectors: List[np.ndarray] = []
        self._positions: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._doc_ids)

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._positions

    def create_index(self, dimensions: int) -> faiss.Index:
        """Create an empty FAISS index."""
        if self.config.index_type.upper() == "HNSW":
            index = faiss.IndexHNSWFlat(dimensions, self.config.hnsw_m, faiss.METRIC_INNER_PRODUCT)
            index.hnsw.efConstruction = self.config.hnsw_ef_construction
            index.hnsw.efSearch = self.config.hnsw_ef_search
            logger.info(f"Created HNSW index with dimensions={dimensions}, M={self.config.hnsw_m}")
        else:
            index = faiss.IndexFlatIP(dimensions)
            logger.info(f"Created flat index with dimensions={dimensions}")
        return index

    def add(self, doc_id: str, collection: str, vector) -> None:
        """Add or replace the vector for a document."""
        vector = normalize(vector)[0]
        with self._lock:
            if self.dimensions is None:
                self.dimensions = vector.shape[0]
            elif vector.shape[0] != self.dimensions:
                raise ValueError(
                    f"Vector has {vector.shape[0]} dimensions, index expects {self.dimensions}"
                )

            if doc_id in self._positions:
                pos = self._positions[doc_id]
                self._vectors[pos] = vector
                self._collections[pos] = collection
            else:
                self._positions[doc_id] = len(self._doc_ids)
                self._doc_ids.append(doc_id)
                self._collections.append(collection)
                self._vectors.append(vector)
            self.index = None

    def remove(self, doc_id: str) -> None:
        with self._lock:
            pos = self._positions.pop(doc_id, None)
            if pos is None:
                return
            for column in (self._doc_ids, self._collections, self._vectors):
                del column[pos]
            self._positions = {d: i for i, d in enumerate(self._doc_ids)}
            self.index = None

    def _ensure_built(self) -> Optional[faiss.Index]:
        with self._lock:
            if self.index is None and self._vectors:
                index = self.create_index(self.dimensions)
                index.add(np.vstack(self._vectors).astype(np.float32))
                self.index = index
            return self.index

    def query(
        self,
        query_vector,
        collections: FrozenSet[str] = frozenset(),
        k: int = 10,
    ) -> List[Tuple[str, float]]:
        """
        Nearest neighbours by cosine similarity.

        Args:
            query_vector: Query embedding
            collections: Restrict to these collections; empty means all
            k: Number of results, applied after collection filtering

        Returns:
            (doc_id, similarity) pairs, best first, ties by doc id
        """
        index = self._ensure_built()
        if index is None or k <= 0:
            return []

        query = normalize(query_vector)
        if query.shape[1] != self.dimensions:
            raise ValueError(
                f"Query has {query.shape[1]} dimensions, index expects {self.dimensions}"
            )

        # Filtering happens after the FAISS search, so filtered queries scan everything.
        if collections:
            k_search = index.ntotal
        else:
            k_search = min(index.ntotal, max(k * 2, k + 10))

        scores, indices = index.search(query, k_search)

        results = []
        for score, idx in zip(scores[0], indices[0]):
            if idx == -1:  # -1 means not found
                continue
            if collections and self._collections[idx] not in collections:
                continue
            results.append((self._doc_ids[idx], float(score)))

        results.sort(key=lambda item: (-item[1], item[0]))
        return results[:k]

    def save(self, index_path: Path) -> None:
        """Save the FAISS index and its id map to a directory."""
        index = self._ensure_built()
        index_path.mkdir(parents=True, exist_ok=True)
        metadata_file = index_path / METADATA_FILE
        index_file = index_path / INDEX_FILE

        if index is None:
            if index_file.exists():
                index_file.unlink()
            metadata_file.write_text("")
            return

        faiss.write_index(index, str(index_file))
        with open(metadata_file, "w") as f:
            for faiss_id, (doc_id, collection) in enumerate(zip(self._doc_ids, self._collections)):
                f.write(f"{faiss_id}\t{doc_id}\t{collection}\n")

        logger.info(f"Saved FAISS index with {index.ntotal} vectors to {index_path}")

    def load(self, index_path: Path) -> bool:
        """Load a previously saved index. Returns False if none exists."""
        index_file = index_path / INDEX_FILE
        metadata_file = index_path / METADATA_FILE

        if not index_file.exists() or not metadata_file.exists():
            logger.info("No existing FAISS index found")
            return False

        index = faiss.read_index(str(index_file))
        doc_ids, collections = [], []
        with open(metadata_file, "r") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line:
                    continue
                _, doc_id, collection = line.split("\t")
                doc_ids.append(doc_id)
                collections.append(collection)

        if len(doc_ids) != index.ntotal:
            raise ValueError(
                f"FAISS index has {index.ntotal} vectors but metadata lists {len(doc_ids)} documents"
            )

        vectors = index.reconstruct_n(0, index.ntotal)
        with self._lock:
            self.index = index
            self.dimensions = index.d
            self._doc_ids = doc_ids
            self._collections = collections
            self._vectors = [row for row in vectors]
            self._positions = {d: i for i, d in enumerate(doc_ids)}

        logger.info(f"Loaded FAISS index with {index.ntotal} vectors")
        return True

    def get_stats(self) -> Dict[str, Any]:
        """Get index statistics."""
        return {
            "total_vectors": len(self._doc_ids),
            "index_type": self.config.index_type,
            "dimensions": self.dimensions,
        }


__all__ = ["VectorIndexConfig", "VectorIndex", "normalize"]
