# tests/test_embeddings.py
import threading

import pytest
import requests

from lodestar import embeddings
from lodestar.embeddings import (
    EmbeddingCache,
    OllamaEmbedding,
    create_embedding_provider,
    pseudo_embedding,
)
from lodestar.exceptions import ConfigurationError, EmbeddingUnavailable


class FakeResponse:
    def __init__(self, body, status=200):
        self.body = body
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.body


def test_pseudo_embedding_is_deterministic_and_bounded():
    a = pseudo_embedding("hello", 16)
    b = pseudo_embedding("hello", 16)
    c = pseudo_embedding("world", 16)

    assert a == b
    assert a != c
    assert len(a) == 16
    assert all(-1.0 <= x < 1.0 for x in a)


def test_pseudo_embedding_rejects_bad_dimension():
    with pytest.raises(ValueError):
        pseudo_embedding("hello", 0)


def test_cache_evicts_least_recently_used():
    cache = EmbeddingCache(maxsize=2)
    cache.set("a", "m", [1.0])
    cache.set("b", "m", [2.0])
    assert cache.get("a", "m") == [1.0]
    cache.set("c", "m", [3.0])

    assert cache.get("b", "m") is None
    assert cache.get("a", "m") == [1.0]
    assert cache.stats()["size"] == 2


def test_cache_survives_concurrent_access():
    cache = EmbeddingCache(maxsize=8)
    errors = []

    def hammer(worker):
        try:
            for i in range(2000):
                text = f"text-{(i + worker) % 24}"
                if cache.get(text, "m") is None:
                    cache.set(text, "m", [float(i)])
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=hammer, args=(w,)) for w in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    stats = cache.stats()
    assert stats["size"] <= 8
    assert stats["hits"] + stats["misses"] == 8 * 2000


def test_ollama_embed_posts_batch(monkeypatch):
    calls = []

    def fake_post(url, headers=None, json=None, timeout=None):
        calls.append((url, json, timeout))
        return FakeResponse({"embeddings": [[0.1, 0.2] for _ in json["input"]]})

    monkeypatch.setattr(embeddings.requests, "post", fake_post)
    embedder = OllamaEmbedding("bge-m3", base_url="http://ollama:11434/", timeout=5)

    vectors = embedder.embed(["one", "two"])

    assert vectors == [[0.1, 0.2], [0.1, 0.2]]
    assert calls == [("http://ollama:11434/api/embed", {"model": "bge-m3", "input": ["one", "two"]}, 5)]


def test_cached_texts_are_not_embedded_twice(monkeypatch):
    inputs = []

    def fake_post(url, headers=None, json=None, timeout=None):
        inputs.append(list(json["input"]))
        return FakeResponse({"embeddings": [[float(len(t))] for t in json["input"]]})

    monkeypatch.setattr(embeddings.requests, "post", fake_post)
    embedder = OllamaEmbedding(base_url="http://ollama:11434")

    embedder.embed(["aa"])
    vectors = embedder.embed(["aa", "bbb"])

    assert vectors == [[2.0], [3.0]]
    assert inputs == [["aa"], ["bbb"]]


def test_ollama_unreachable_raises_embedding_unavailable(monkeypatch):
    def fake_post(url, headers=None, json=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(embeddings.requests, "post", fake_post)
    embedder = OllamaEmbedding(base_url="http://ollama:11434", max_retries=1)

    with pytest.raises(EmbeddingUnavailable):
        embedder.embed("hello")


def test_ollama_count_mismatch_raises_embedding_unavailable(monkeypatch):
    monkeypatch.setattr(
        embeddings.requests, "post",
        lambda url, headers=None, json=None, timeout=None: FakeResponse({"embeddings": []}),
    )
    embedder = OllamaEmbedding(base_url="http://ollama:11434", use_cache=False)

    with pytest.raises(EmbeddingUnavailable):
        embedder.embed(["hello"])


def test_http_error_raises_embedding_unavailable(monkeypatch):
    monkeypatch.setattr(
        embeddings.requests, "post",
        lambda url, headers=None, json=None, timeout=None: FakeResponse({}, status=500),
    )
    embedder = OllamaEmbedding(base_url="http://ollama:11434", max_retries=1)

    with pytest.raises(EmbeddingUnavailable):
        embedder.embed("hello")


def test_factory_defaults_and_unknown_provider(monkeypatch):
    monkeypatch.delenv("OLLAMA_ENDPOINT", raising=False)
    embedder = create_embedding_provider("ollama")

    assert isinstance(embedder, OllamaEmbedding)
    assert embedder.model == "bge-m3"
    assert embedder.dimension == 1024
    assert embedder.base_url == OllamaEmbedding.DEFAULT_URL

    with pytest.raises(ConfigurationError):
        create_embedding_provider("word2vec")


def test_openai_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        create_embedding_provider("openai")


def test_jina_requires_api_key(monkeypatch):
    monkeypatch.delenv("JINA_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        create_embedding_provider("jina")
