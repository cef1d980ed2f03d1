# tests/test_orchestrator_ingest.py
import threading
import time

import pytest

from conftest import DIM, FakeEmbedder, FakeIndex, FakeReranker, make_config
from lodestar.config import ChunkingConfig
from lodestar.embeddings import pseudo_embedding
from lodestar.exceptions import ConfigurationError, DimensionMismatch
from lodestar.index import USearchVectorIndex
from lodestar.models import Document
from lodestar.orchestrator import RetrievalOrchestrator

TEXT = (
    "Vector search finds similar items. Rerankers refine the order. "
    "Chunking splits documents into pieces. Embeddings turn text into vectors."
)


def _docs():
    return [
        Document(content=TEXT, file_name="a.txt", metadata={"source": "a.txt"}),
        Document(content="Second document about HNSW graphs and recall.", file_name="b.txt",
                 metadata={"source": "b.txt"}),
    ]


def test_ingest_writes_every_chunk(orchestrator, index):
    summary = orchestrator.ingest(_docs())

    assert summary.collection == "test"
    assert summary.documents_total == 2
    assert summary.documents_skipped == 0
    assert summary.errors == []
    assert not summary.degraded
    assert summary.chunks_written == index.count("test") > 2
    assert index.flushed == 1


def test_ingest_payload_carries_chunk_position(orchestrator, index):
    orchestrator.ingest(_docs()[:1])

    payloads = [p.payload for p in index.collections["test"]["points"].values()]
    assert sorted(p["chunk_index"] for p in payloads) == list(range(len(payloads)))
    assert all(p["file_name"] == "a.txt" for p in payloads)
    assert all(TEXT[p["start_offset"]:p["end_offset"]].strip() == p["text"] for p in payloads)


def test_ingest_is_idempotent(orchestrator, index):
    first = orchestrator.ingest(_docs())
    second = orchestrator.ingest(_docs())

    assert first.chunks_written == second.chunks_written
    assert index.count("test") == first.chunks_written


def test_ingest_skips_empty_document(orchestrator, index):
    docs = [Document(content="   \n  ", file_name="empty.txt")] + _docs()
    summary = orchestrator.ingest(docs)

    assert summary.documents_skipped == 1
    assert summary.chunks_written == index.count("test") > 0
    assert any("empty.txt" in w for w in summary.warnings)


def test_ingest_degrades_to_synthetic_vectors():
    index = FakeIndex()
    rag = RetrievalOrchestrator(make_config(), FakeEmbedder(fail=True), index, FakeReranker())
    try:
        summary = rag.ingest(_docs())
    finally:
        rag.close()

    assert summary.degraded
    assert summary.degraded_embeddings == summary.chunks_written == index.count("test")
    assert any("synthetic vectors" in w for w in summary.warnings)
    point = next(iter(index.collections["test"]["points"].values()))
    assert point.vector == pseudo_embedding(point.payload["text"], DIM)


def test_ingest_degrades_only_failing_chunks():
    index = FakeIndex()
    rag = RetrievalOrchestrator(make_config(), FakeEmbedder(fail_on="HNSW"), index, FakeReranker())
    try:
        summary = rag.ingest(_docs())
    finally:
        rag.close()

    assert 0 < summary.degraded_embeddings < summary.chunks_written


def test_unexpected_embedder_error_degrades_only_that_chunk():
    index = FakeIndex()
    embedder = FakeEmbedder(fail_on="HNSW", error=RuntimeError("socket closed"))
    rag = RetrievalOrchestrator(make_config(), embedder, index, FakeReranker())
    try:
        summary = rag.ingest(_docs())
    finally:
        rag.close()

    assert summary.errors == []
    assert 0 < summary.degraded_embeddings < summary.chunks_written == index.count("test")


def test_hung_embedder_costs_one_batch_deadline():
    release = threading.Event()
    index = FakeIndex()
    config = make_config(
        embed_workers=4,
        embed_timeout=0.1,
        chunking=ChunkingConfig(chunk_size=20, overlap=0, min_chunk_size=1),
    )
    rag = RetrievalOrchestrator(config, FakeEmbedder(release=release), index, FakeReranker())
    started = time.monotonic()
    try:
        summary = rag.ingest([Document(content="x" * 400, file_name="long.txt")])
        elapsed = time.monotonic() - started
    finally:
        release.set()
        rag.close()

    # 20 chunks over 4 workers: a 0.5s budget, where 20 sequential waits would take 2s
    assert summary.chunks_written == 20
    assert summary.degraded_embeddings == 20
    assert elapsed < 1.5


def test_upsert_timeout_is_recorded_as_batch_error():
    index = FakeIndex(upsert_delay=0.5)
    rag = RetrievalOrchestrator(make_config(upsert_timeout=0.05), FakeEmbedder(), index, FakeReranker())
    try:
        summary = rag.ingest(_docs()[1:])
    finally:
        rag.close()

    assert summary.chunks_written == 0
    assert summary.errors
    assert all("timed out" in e for e in summary.errors)


def test_failed_batch_does_not_abort_ingest():
    index = FakeIndex(fail_upsert_on="HNSW")
    rag = RetrievalOrchestrator(make_config(), FakeEmbedder(), index, FakeReranker())
    try:
        summary = rag.ingest(_docs())
    finally:
        rag.close()

    assert len(summary.errors) == 1
    assert "b.txt" in summary.errors[0]
    assert summary.chunks_written == index.count("test") > 0


def test_dimension_mismatch_aborts_ingest():
    index = FakeIndex()
    index.ensure_collection("test", DIM * 2)
    rag = RetrievalOrchestrator(make_config(), FakeEmbedder(), index, FakeReranker())
    try:
        with pytest.raises(DimensionMismatch):
            rag.ingest(_docs())
    finally:
        rag.close()
    assert index.count("test") == 0


def test_wrong_length_embeddings_abort_ingest():
    index = FakeIndex()
    rag = RetrievalOrchestrator(make_config(), FakeEmbedder(dimension=DIM + 1), index, FakeReranker())
    try:
        with pytest.raises(DimensionMismatch):
            rag.ingest(_docs())
    finally:
        rag.close()


def test_embedding_concurrency_is_bounded():
    embedder = FakeEmbedder(delay=0.02)
    config = make_config(
        embed_workers=2,
        chunking=ChunkingConfig(chunk_size=20, overlap=0, min_chunk_size=1),
    )
    rag = RetrievalOrchestrator(config, embedder, FakeIndex(), FakeReranker())
    try:
        summary = rag.ingest(_docs())
    finally:
        rag.close()

    assert summary.chunks_written > 4
    assert 1 <= embedder.max_active <= 2


def test_ingest_into_named_collection(orchestrator, index):
    summary = orchestrator.ingest(_docs(), collection="other")

    assert summary.collection == "other"
    assert index.count("other") == summary.chunks_written
    assert "test" not in index.collections


def test_ingest_end_to_end_with_usearch():
    index = USearchVectorIndex()
    rag = RetrievalOrchestrator(make_config(), FakeEmbedder(), index, FakeReranker())
    try:
        summary = rag.ingest(_docs())
        again = rag.ingest(_docs())
        assert index.count("test") == summary.chunks_written == again.chunks_written
        assert rag.stats()["points"] == summary.chunks_written
    finally:
        rag.close()


def test_invalid_config_rejected_at_construction():
    with pytest.raises(ConfigurationError):
        RetrievalOrchestrator(make_config(top_k=0), FakeEmbedder(), FakeIndex(), FakeReranker())
