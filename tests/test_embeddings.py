"""Tests for the embedding backend lifecycle."""

import threading
import time

import pytest

from quarry.core import embeddings as embeddings_module
from quarry.core.embeddings import (
    EmbeddingBackend,
    EmbeddingConfig,
    create_embedder,
    dispose_default_backend,
    get_default_backend,
)
from quarry.core.errors import EmbeddingBackendBusyError, EmbeddingUnavailableError

from conftest import HashingEmbedder


class CountingFactory:
    def __init__(self, delay: float = 0.0):
        self.created = []
        self.delay = delay

    def __call__(self):
        time.sleep(self.delay)
        embedder = HashingEmbedder(dimension=8)
        self.created.append(embedder)
        return embedder


class ClosableEmbedder(HashingEmbedder):
    def __init__(self):
        super().__init__(dimension=8)
        self.closed = False

    def close(self):
        self.closed = True


class TestLazyInitialization:

    def test_not_initialized_until_first_embed(self):
        factory = CountingFactory()
        backend = EmbeddingBackend(factory)
        assert not backend.initialized
        assert factory.created == []

        vector = backend.embed("hello world")
        assert len(vector) == 8
        assert backend.initialized
        assert len(factory.created) == 1

    def test_concurrent_first_use_initializes_once(self):
        factory = CountingFactory(delay=0.05)
        backend = EmbeddingBackend(factory)
        errors = []

        def worker():
            try:
                backend.embed("concurrent")
            except Exception as e:  # pragma: no cover - surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len(factory.created) == 1

    def test_embed_batch(self):
        backend = EmbeddingBackend(CountingFactory())
        vectors = backend.embed_batch(["one", "two", "three"])
        assert len(vectors) == 3


class TestDispose:

    def test_dispose_never_initialized_is_a_no_op(self):
        factory = CountingFactory()
        backend = EmbeddingBackend(factory)
        backend.dispose()
        backend.dispose()
        assert factory.created == []
        assert not backend.initialized

    def test_dispose_twice_after_use(self):
        backend = EmbeddingBackend(CountingFactory())
        backend.embed("text")
        backend.dispose()
        backend.dispose()
        assert not backend.initialized

    def test_dispose_closes_embedder(self):
        embedder = ClosableEmbedder()
        backend = EmbeddingBackend(lambda: embedder)
        backend.embed("text")
        backend.dispose()
        assert embedder.closed

    def test_dispose_refused_while_leased(self):
        backend = EmbeddingBackend(CountingFactory())
        with backend.lease():
            backend.embed("in flight")
            assert backend.active_leases == 1
            with pytest.raises(EmbeddingBackendBusyError):
                backend.dispose()
            assert backend.initialized
        assert backend.active_leases == 0
        backend.dispose()
        assert not backend.initialized

    def test_wait_idle(self):
        backend = EmbeddingBackend(CountingFactory())
        assert backend.wait_idle(0)

        with backend.lease():
            assert not backend.wait_idle(0.01)

            released = threading.Event()

            def waiter():
                if backend.wait_idle(5):
                    released.set()

            thread = threading.Thread(target=waiter)
            thread.start()
        thread.join()
        assert released.is_set()

    def test_reinitializes_after_dispose(self):
        factory = CountingFactory()
        backend = EmbeddingBackend(factory)
        backend.embed("first")
        backend.dispose()
        backend.embed("second")
        assert len(factory.created) == 2


class TestFailures:

    def test_factory_error_is_wrapped(self):
        def factory():
            raise OSError("no such model")

        backend = EmbeddingBackend(factory, name="local")
        with pytest.raises(EmbeddingUnavailableError, match="no such model"):
            backend.embed("text")
        assert not backend.initialized

    def test_embed_error_is_wrapped(self):
        class Broken:
            dimension = 4

            def embed(self, texts):
                raise RuntimeError("device lost")

        backend = EmbeddingBackend(lambda: Broken())
        with pytest.raises(EmbeddingUnavailableError, match="device lost"):
            backend.embed("text")

    def test_vector_count_mismatch(self):
        class Short:
            dimension = 4

            def embed(self, texts):
                return [[0.0] * 4]

        backend = EmbeddingBackend(lambda: Short())
        with pytest.raises(EmbeddingUnavailableError, match="returned 1 vectors for 2 texts"):
            backend.embed_batch(["a", "b"])


class TestCreateEmbedder:

    def test_unknown_backend(self):
        with pytest.raises(EmbeddingUnavailableError, match="Unknown embedding backend"):
            create_embedder(EmbeddingConfig(backend="word2vec"))

    def test_openai_requires_key(self):
        with pytest.raises(EmbeddingUnavailableError, match="API key"):
            create_embedder(EmbeddingConfig(backend="openai", openai_api_key=None))


class TestDefaultBackend:

    def test_shared_and_lazy(self, monkeypatch):
        created = []

        def fake_create(config):
            created.append(config)
            return HashingEmbedder(dimension=8)

        monkeypatch.setattr(embeddings_module, "create_embedder", fake_create)

        backend = get_default_backend(EmbeddingConfig(backend="local"))
        assert get_default_backend() is backend
        assert created == []

        backend.embed("text")
        assert len(created) == 1

        dispose_default_backend()
        assert get_default_backend(EmbeddingConfig(backend="local")) is not backend

    def test_dispose_waits_for_lease_to_drain(self, monkeypatch):
        monkeypatch.setattr(embeddings_module, "create_embedder", lambda config: HashingEmbedder(dimension=8))
        backend = get_default_backend(EmbeddingConfig(backend="local"))
        backend.embed("text")

        def search():
            with backend.lease():
                time.sleep(0.1)

        thread = threading.Thread(target=search)
        thread.start()
        while backend.active_leases == 0 and thread.is_alive():
            time.sleep(0.001)

        dispose_default_backend(wait=5)
        thread.join()
        assert not backend.initialized
        assert get_default_backend(EmbeddingConfig(backend="local")) is not backend

    def test_busy_default_stays_registered(self, monkeypatch):
        monkeypatch.setattr(embeddings_module, "create_embedder", lambda config: HashingEmbedder(dimension=8))
        backend = get_default_backend(EmbeddingConfig(backend="local"))
        with backend.lease():
            with pytest.raises(EmbeddingBackendBusyError):
                dispose_default_backend(wait=0.01)
            assert get_default_backend() is backend

    def test_dispose_without_default_is_a_no_op(self):
        dispose_default_backend()
        dispose_default_backend()
