"""Embedding generation: local sentence-transformers or OpenAI, behind a shared process-wide backend."""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Protocol

import numpy as np
import openai
from tenacity import retry, stop_after_attempt, wait_exponential

from .errors import EmbeddingBackendBusyError, EmbeddingUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding generation."""
    backend: str = "local"
    local_model: str = "all-MiniLM-L6-v2"
    openai_model: str = "text-embedding-3-small"
    openai_dimensions: int = 1536
    batch_size: int = 32
    device: str = "cpu"
    max_tokens: int = 8191  # Max tokens for text-embedding-3-small
    openai_api_key: Optional[str] = None


class Embedder(Protocol):
    """Anything that turns texts into fixed-length vectors."""

    @property
    def dimension(self) -> Optional[int]:
        ...

    def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class LocalEmbedder:
    """sentence-transformers model, loaded once on construction."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", batch_size: int = 32, device: str = "cpu"):
        self.model_name = model_name
        self.batch_size = batch_size
        self.device = device
        self.model = None
        self._dimension: Optional[int] = None
        self._load_model()

    def _load_model(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingUnavailableError(
                "sentence-transformers not available. Install with: pip install sentence-transformers"
            ) from e

        logger.info(f"Loading local embedding model: {self.model_name}")
        self.model = SentenceTransformer(self.model_name, device=self.device)
        self._dimension = self.model.get_sentence_embedding_dimension()
        logger.info(f"Loaded model with dimension: {self._dimension}")

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def embed(self, texts: List[str]) -> List[List[float]]:
        embeddings = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            batch_embeddings = self.model.encode(batch, convert_to_tensor=False)
            embeddings.extend(np.asarray(emb, dtype=np.float32).tolist() for emb in batch_embeddings)
        return embeddings


class OpenAIEmbedder:
    """OpenAI embeddings API with retries."""

    def __init__(self, config: EmbeddingConfig):
        if not config.openai_api_key:
            raise EmbeddingUnavailableError("OpenAI API key not found (set OPENAI_API_KEY)")
        self.config = config
        self.client = openai.OpenAI(api_key=config.openai_api_key)

    @property
    def dimension(self) -> Optional[int]:
        return self.config.openai_dimensions

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True,
    )
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        truncated_texts = []
        for text in texts:
            # Simple token approximation: ~4 chars per token
            if len(text) > self.config.max_tokens * 4:
                logger.warning(f"Truncated text from {len(text)} to {self.config.max_tokens * 4} characters")
                text = text[:self.config.max_tokens * 4]
            truncated_texts.append(text)

        response = self.client.embeddings.create(
            model=self.config.openai_model,
            input=truncated_texts,
            dimensions=self.config.openai_dimensions,
        )
        return [item.embedding for item in response.data]

    def embed(self, texts: List[str]) -> List[List[float]]:
        embeddings = []
        for i in range(0, len(texts), self.config.batch_size):
            embeddings.extend(self._embed_batch(texts[i:i + self.config.batch_size]))
        logger.info(f"Generated {len(embeddings)} embeddings using {self.config.openai_model}")
        return embeddings


def create_embedder(config: EmbeddingConfig) -> Embedder:
    """Build the embedder named by `config.backend`."""
    if config.backend == "local":
        return LocalEmbedder(config.local_model, config.batch_size, config.device)
    if config.backend == "openai":
        return OpenAIEmbedder(config)
    raise EmbeddingUnavailableError(f"Unknown embedding backend: {config.backend!r}")


class EmbeddingBackend:
    """
    Owns one embedder, created on first use and shared by concurrent callers.

    Searches hold a lease while they embed; `dispose` refuses to tear the
    embedder down while any lease is outstanding. A disposed backend
    re-initializes on its next use.
    """

    def __init__(self, factory: Callable[[], Embedder], name: str = "default"):
        self.name = name
        self._factory = factory
        self._embedder: Optional[Embedder] = None
        self._leases = 0
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    @property
    def initialized(self) -> bool:
        return self._embedder is not None

    @property
    def active_leases(self) -> int:
        return self._leases

    def _get_embedder(self) -> Embedder:
        with self._lock:
            if self._embedder is None:
                try:
                    self._embedder = self._factory()
                except EmbeddingUnavailableError:
                    raise
                except Exception as e:
                    raise EmbeddingUnavailableError(
                        f"Failed to initialize embedding backend '{self.name}': {e}"
                    ) from e
                logger.info(f"Embedding backend '{self.name}' initialized")
            return self._embedder

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts; raises EmbeddingUnavailableError on any failure."""
        embedder = self._get_embedder()
        try:
            vectors = embedder.embed(texts)
        except EmbeddingUnavailableError:
            raise
        except Exception as e:
            raise EmbeddingUnavailableError(f"Embedding failed: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingUnavailableError(
                f"Embedding backend returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    @contextmanager
    def lease(self) -> Iterator["EmbeddingBackend"]:
        """Mark the backend as in use for the duration of a search."""
        with self._lock:
            self._leases += 1
        try:
            yield self
        finally:
            with self._lock:
                self._leases -= 1
                if not self._leases:
                    self._idle.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no lease is outstanding. Returns False if `timeout` elapsed first."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._leases, timeout)

    def dispose(self) -> None:
        """Release the embedder. Safe to call when never initialized."""
        with self._lock:
            if self._leases:
                raise EmbeddingBackendBusyError(
                    f"Cannot dispose embedding backend '{self.name}': {self._leases} search(es) in flight"
                )
            embedder, self._embedder = self._embedder, None

        if embedder is None:
            return
        close = getattr(embedder, "close", None)
        if callable(close):
            close()
        logger.info(f"Embedding backend '{self.name}' disposed")


_default_backend: Optional[EmbeddingBackend] = None
_default_lock = threading.Lock()


def get_default_backend(config: Optional[EmbeddingConfig] = None) -> EmbeddingBackend:
    """Get the process-wide backend, creating it from configuration on first call."""
    global _default_backend
    with _default_lock:
        if _default_backend is None:
            if config is None:
                from .config import get_config_manager
                config = get_config_manager().embedding_config()
            _default_backend = EmbeddingBackend(lambda: create_embedder(config), name=config.backend)
        return _default_backend


def dispose_default_backend(wait: Optional[float] = None) -> None:
    """
    Dispose the process-wide backend if one was created.

    Args:
        wait: Seconds to wait for in-flight searches to release the backend;
            None disposes immediately

    Raises:
        EmbeddingBackendBusyError: Searches still hold the backend; it stays
            registered as the default
    """
    global _default_backend
    with _default_lock:
        backend = _default_backend
        if backend is None:
            return
        if wait is not None:
            backend.wait_idle(wait)
        backend.dispose()
        _default_backend = None


__all__ = [
    "EmbeddingConfig",
    "Embedder",
    "LocalEmbedder",
    "OpenAIEmbedder",
    "create_embedder",
    "EmbeddingBackend",
    "get_default_backend",
    "dispose_default_backend",
]
