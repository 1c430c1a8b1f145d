"""Document store: documents by collection, their lexical and vector indexes, and on-disk persistence."""

import hashlib
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .embeddings import EmbeddingBackend
from .errors import DocumentNotFoundError
from .lexical import LexicalIndex
from .logging_config import get_audit_logger, log_indexing_event
from .models import Document, DocumentRef
from .vector_index import VectorIndex, VectorIndexConfig

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200
DOCUMENTS_FILE = "documents.json"
VECTORS_DIR = "vectors"
DEFAULT_PATTERNS = ("*.md", "*.txt")

_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)


def calculate_sha256(content: str) -> str:
    """SHA256 of document text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def make_doc_id(collection: str, path: str) -> str:
    """Stable document id for a path within a collection."""
    return hashlib.sha256(f"{collection}:{path}".encode("utf-8")).hexdigest()[:12]


def make_snippet(content: str, length: int = SNIPPET_LENGTH) -> str:
    text = " ".join(content.split())
    return text[:length] + "..." if len(text) > length else text


def extract_title(content: str, path: str) -> str:
    """First markdown heading, else the file name without extension."""
    match = _HEADING_RE.search(content)
    if match:
        return match.group(1)
    return Path(path).stem


class DocumentStore:
    """Read-mostly store queried by the search executors.

    Searches only read from the store, so any number of them may run at
    once; mutations should not overlap with searches.
    """

    def __init__(self, vector_config: Optional[VectorIndexConfig] = None):
        self.documents: Dict[str, Document] = {}
        self.lexical_index = LexicalIndex()
        self.vector_index = VectorIndex(vector_config)

    def __len__(self) -> int:
        return len(self.documents)

    def add_document(
        self,
        collection: str,
        path: str,
        content: str,
        vector: Optional[Iterable[float]] = None,
        doc_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Document:
        """Add or replace a document and index it."""
        doc_id = doc_id or make_doc_id(collection, path)
        document = Document(
            doc_id=doc_id,
            collection=collection,
            path=path,
            title=title if title is not None else extract_title(content, path),
            content=content,
            sha256=calculate_sha256(content),
        )
        self.documents[doc_id] = document
        self.lexical_index.add(doc_id, collection, f"{document.title}\n{content}")
        if vector is not None:
            self.vector_index.add(doc_id, collection, list(vector))
        else:
            self.vector_index.remove(doc_id)
        return document

    def remove_document(self, doc_id: str) -> None:
        if self.documents.pop(doc_id, None) is None:
            raise DocumentNotFoundError(f"Document not found: {doc_id}")
        self.lexical_index.remove(doc_id)
        self.vector_index.remove(doc_id)

    def remove_collection(self, name: str) -> int:
        """Remove every document in a collection. Returns how many were removed."""
        doc_ids = [d.doc_id for d in self.documents.values() if d.collection == name]
        for doc_id in doc_ids:
            self.remove_document(doc_id)
        logger.info(f"Removed collection '{name}' ({len(doc_ids)} documents)")
        return len(doc_ids)

    def get(self, doc_id: str) -> Document:
        try:
            return self.documents[doc_id]
        except KeyError:
            raise DocumentNotFoundError(f"Document not found: {doc_id}") from None

    def find(self, collection: str, path: str) -> Optional[Document]:
        """Look up a document by the path it was added under or by its stored path.

        Documents from `index_directory` are keyed by their path relative to
        the indexed directory but store the absolute path; both find them.
        """
        document = self.documents.get(make_doc_id(collection, path))
        if document is not None:
            return document
        for document in self.documents.values():
            if document.collection == collection and document.path == path:
                return document
        return None

    def resolve(self, doc_id: str) -> DocumentRef:
        """Resolve a doc id to its path, collection and snippet."""
        document = self.get(doc_id)
        return DocumentRef(
            path=document.path,
            collection=document.collection,
            snippet=make_snippet(document.content),
        )

    def list_collections(self) -> Dict[str, int]:
        """Collection name -> document count, sorted by name."""
        counts: Dict[str, int] = {}
        for document in self.documents.values():
            counts[document.collection] = counts.get(document.collection, 0) + 1
        return dict(sorted(counts.items()))

    def stats(self) -> Dict[str, Any]:
        return {
            "documents": len(self.documents),
            "collections": len(self.list_collections()),
            "embedded_documents": len(self.vector_index),
            "vector_index": self.vector_index.get_stats(),
        }

    def save(self, directory: Path) -> None:
        """Persist documents and the vector index to a directory."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        with open(directory / DOCUMENTS_FILE, "w", encoding="utf-8") as f:
            json.dump([d.model_dump() for d in self.documents.values()], f)

        self.vector_index.save(directory / VECTORS_DIR)
        logger.info(f"Saved {len(self.documents)} documents to {directory}")

    @classmethod
    def load(cls, directory: Path, vector_config: Optional[VectorIndexConfig] = None) -> "DocumentStore":
        """Load a store saved with `save`; a missing directory gives an empty store."""
        directory = Path(directory)
        store = cls(vector_config)
        documents_file = directory / DOCUMENTS_FILE
        if not documents_file.exists():
            logger.info(f"No document store found at {directory}")
            return store

        with open(documents_file, "r", encoding="utf-8") as f:
            for raw in json.load(f):
                document = Document(**raw)
                store.documents[document.doc_id] = document
                store.lexical_index.add(
                    document.doc_id, document.collection, f"{document.title}\n{document.content}"
                )

        store.vector_index.load(directory / VECTORS_DIR)
        logger.info(f"Loaded {len(store.documents)} documents from {directory}")
        return store


def index_directory(
    store: DocumentStore,
    directory: Path,
    collection: str,
    backend: Optional[EmbeddingBackend] = None,
    patterns: Iterable[str] = DEFAULT_PATTERNS,
    prune: bool = True,
) -> Dict[str, int]:
    """
    Index text files under a directory into a collection, one document per file.

    Args:
        store: Store to add documents to
        directory: Directory to scan recursively
        collection: Collection name for the documents
        backend: Embedding backend; when None, documents are indexed lexically only
        patterns: Glob patterns of files to index
        prune: Remove documents of the collection whose files are gone

    Returns:
        Counts of indexed, skipped (unchanged) and removed documents
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory}")

    audit_logger = get_audit_logger("indexing")
    start_time = time.time()

    files = sorted({p for pattern in patterns for p in directory.rglob(pattern) if p.is_file()})

    pending: List[Dict[str, str]] = []
    seen = set()
    skipped = 0
    for file_path in files:
        content = file_path.read_text(encoding="utf-8", errors="replace")
        relative = file_path.relative_to(directory).as_posix()
        doc_id = make_doc_id(collection, relative)
        seen.add(doc_id)

        existing = store.documents.get(doc_id)
        if existing and existing.sha256 == calculate_sha256(content):
            if backend is None or doc_id in store.vector_index:
                skipped += 1
                continue

        pending.append({"doc_id": doc_id, "path": str(file_path.resolve()), "content": content})

    vectors: List[Optional[List[float]]] = [None] * len(pending)
    if backend is not None and pending:
        logger.info(f"Embedding {len(pending)} documents")
        vectors = backend.embed_batch([item["content"] for item in pending])

    for item, vector in zip(pending, vectors):
        store.add_document(
            collection,
            item["path"],
            item["content"],
            vector=vector,
            doc_id=item["doc_id"],
        )

    removed = 0
    if prune:
        stale = [
            d.doc_id for d in store.documents.values()
            if d.collection == collection and d.doc_id not in seen
        ]
        for doc_id in stale:
            store.remove_document(doc_id)
        removed = len(stale)

    log_indexing_event(
        audit_logger,
        directory=str(directory),
        collection=collection,
        documents_indexed=len(pending),
        documents_skipped=skipped,
        embedded=backend is not None,
        processing_time_ms=(time.time() - start_time) * 1000,
    )

    return {"indexed": len(pending), "skipped": skipped, "removed": removed}


__all__ = [
    "DocumentStore",
    "index_directory",
    "calculate_sha256",
    "make_doc_id",
    "make_snippet",
    "extract_title",
]
