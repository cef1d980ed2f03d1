# tests/conftest.py
"""Hand-written collaborators so the pipeline can be tested without services."""

import threading
import time
from typing import Dict, List, Optional

import numpy as np
import pytest

from lodestar.config import ChunkingConfig, LodestarConfig
from lodestar.embeddings import pseudo_embedding
from lodestar.exceptions import (
    CollectionNotFound,
    DimensionMismatch,
    EmbeddingUnavailable,
    IndexTransportError,
    RerankFailure,
)
from lodestar.models import SearchResult
from lodestar.orchestrator import RetrievalOrchestrator
from lodestar.reranker import candidate_text

DIM = 8


class FakeEmbedder:
    """Deterministic embedder. Can fail, stall, or return the wrong dimension."""

    def __init__(self, dimension=DIM, fail=False, fail_on=None, delay=0.0, release=None,
                 error=None):
        self.dimension = dimension
        self.error = error
        self.fail = fail
        self.fail_on = fail_on
        self.delay = delay
        self.release = release
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def embed(self, texts):
        if isinstance(texts, str):
            texts = [texts]
        with self._lock:
            self.calls.extend(texts)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.release is not None:
                self.release.wait(5)
            if self.fail or (self.fail_on and any(self.fail_on in t for t in texts)):
                if self.error is not None:
                    raise self.error
                raise EmbeddingUnavailable("embedding backend down")
            return [pseudo_embedding(t, self.dimension) for t in texts]
        finally:
            with self._lock:
                self.active -= 1


class FakeIndex:
    """In-memory VectorIndex with brute-force cosine search."""

    def __init__(self, results: Optional[List[SearchResult]] = None, fail_upsert_on=None,
                 search_delay=0.0, upsert_delay=0.0):
        self.collections: Dict[str, Dict] = {}
        self.results = results
        self.fail_upsert_on = fail_upsert_on
        self.search_delay = search_delay
        self.upsert_delay = upsert_delay
        self.unreachable = False
        self.upserts = 0
        self.flushed = 0
        self.closed = False

    def ensure_collection(self, name, dimension):
        info = self.collections.get(name)
        if info is not None:
            if info["dimension"] != dimension:
                raise DimensionMismatch(name, info["dimension"], dimension)
            return
        self.collections[name] = {"dimension": dimension, "points": {}}

    def collection_dimension(self, name):
        info = self.collections.get(name)
        return info["dimension"] if info else None

    def upsert(self, name, points):
        if self.upsert_delay:
            time.sleep(self.upsert_delay)
        info = self.collections[name]
        if self.fail_upsert_on and any(self.fail_upsert_on in p.payload["text"] for p in points):
            raise IndexTransportError("upsert rejected")
        for p in points:
            if len(p.vector) != info["dimension"]:
                raise DimensionMismatch(name, info["dimension"], len(p.vector))
        for p in points:
            info["points"][p.id] = p
        self.upserts += 1

    def search(self, name, vector, k):
        if self.search_delay:
            time.sleep(self.search_delay)
        if self.results is not None:
            return list(self.results)[:k]
        if name not in self.collections:
            raise CollectionNotFound(name)
        q = np.asarray(vector, dtype=np.float32)
        hits = []
        for p in self.collections[name]["points"].values():
            v = np.asarray(p.vector, dtype=np.float32)
            score = float(q @ v / (np.linalg.norm(q) * np.linalg.norm(v)))
            payload = {key: val for key, val in p.payload.items() if key != "text"}
            hits.append(SearchResult(id=p.id, score=score, text=p.payload["text"], metadata=payload))
        hits.sort(key=lambda r: r.score, reverse=True)
        return hits[:k]

    def count(self, name):
        if name not in self.collections:
            raise CollectionNotFound(name)
        return len(self.collections[name]["points"])

    def delete_collection(self, name):
        if name not in self.collections:
            raise CollectionNotFound(name)
        return len(self.collections.pop(name)["points"])

    def list_collections(self):
        if self.unreachable:
            raise IndexTransportError("index unreachable")
        return [
            {"name": name, "dimension": info["dimension"], "metric": "cos", "points": len(info["points"])}
            for name, info in sorted(self.collections.items())
        ]

    def ping(self):
        return not self.unreachable

    def flush(self):
        self.flushed += 1

    def close(self):
        self.closed = True


class FakeReranker:
    """Scores by word overlap with the query unless fixed scores are given."""

    def __init__(self, scores=None, fail=False, release=None):
        self.scores = scores
        self.fail = fail
        self.release = release
        self.calls = 0

    def score(self, query, candidates):
        self.calls += 1
        if self.release is not None:
            self.release.wait(5)
        if self.fail:
            raise RerankFailure("rerank backend down")
        if self.scores is not None:
            return list(self.scores)[:len(candidates)]
        words = set(query.lower().split())
        return [
            float(len(words & set(candidate_text(c).lower().split())))
            for c in candidates
        ]


def make_config(**overrides) -> LodestarConfig:
    chunking = overrides.pop(
        "chunking", ChunkingConfig(chunk_size=60, overlap=10, min_chunk_size=1)
    )
    defaults = dict(
        embedding_dim=DIM,
        collection="test",
        top_k=5,
        top_m=3,
        embed_workers=2,
        embed_timeout=2.0,
        upsert_timeout=2.0,
        search_timeout=2.0,
        rerank_timeout=2.0,
        upsert_batch_size=4,
        chunking=chunking,
    )
    defaults.update(overrides)
    return LodestarConfig(**defaults)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def index():
    return FakeIndex()


@pytest.fixture
def reranker():
    return FakeReranker()


@pytest.fixture
def orchestrator(embedder, index, reranker):
    rag = RetrievalOrchestrator(make_config(), embedder, index, reranker)
    yield rag
    rag.close()
