"""Retrieval orchestrator: the ingest and query pipelines."""

import logging
import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from tqdm import tqdm

from .chunking import Chunker
from .config import LodestarConfig
from .embeddings import BaseEmbeddingProvider, create_embedding_provider, pseudo_embedding
from .exceptions import (
    ConfigurationError,
    DimensionMismatch,
    EmbeddingUnavailable,
    IndexTransportError,
    MalformedResponse,
    OperationTimeout,
    QueryCancelled,
    RerankFailure,
    VectorIndexError,
)
from .index import VectorIndex, create_vector_index
from .models import Chunk, Document, IndexPoint, IngestSummary, QueryResult, RerankResult, SearchResult
from .reranker import BaseReranker, create_reranker

logger = logging.getLogger(__name__)

# How often a cancellable wait checks its cancel event (seconds)
CANCEL_POLL_INTERVAL = 0.05


class QueryStage(str, Enum):
    """Stages of a single query, in order."""
    EMBEDDING = "embedding"
    SEARCHING = "searching"
    RERANKING = "reranking"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"


class RetrievalOrchestrator:
    """
    Drives ingest (chunk -> embed -> upsert) and query
    (embed -> search -> rerank -> truncate) over pluggable collaborators.

    Every call to the embedder, index and reranker runs on a worker pool and
    is awaited under its configured timeout. Ingest degrades instead of
    failing where it can; query failures propagate to the caller.
    """

    def __init__(
        self,
        config: LodestarConfig,
        embedder: BaseEmbeddingProvider,
        index: VectorIndex,
        reranker: BaseReranker,
        chunker: Optional[Chunker] = None,
    ):
        config.validate()
        self.config = config
        self.embedder = embedder
        self.index = index
        self.reranker = reranker
        self.chunker = chunker or Chunker(config.chunking)

        self._embed_pool = ThreadPoolExecutor(
            max_workers=config.embed_workers, thread_name_prefix="lodestar-embed"
        )
        self._io_pool = ThreadPoolExecutor(
            max_workers=max(4, config.embed_workers), thread_name_prefix="lodestar-io"
        )
        self._closed = False
        self._lock = threading.Lock()

    # ============ Plumbing ============

    def _await(
        self,
        future: Future,
        timeout: float,
        what: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Any:
        """Wait for a future under a timeout, honouring an optional cancel event."""
        deadline = time.monotonic() + timeout
        while True:
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise QueryCancelled(f"Cancelled while waiting on {what}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise OperationTimeout(f"{what} timed out after {timeout:g}s")
            step = remaining if cancel_event is None else min(remaining, CANCEL_POLL_INTERVAL)
            done, _ = wait([future], timeout=step)
            if done:
                return future.result()

    def _embed_one(self, text: str) -> List[float]:
        vectors = self.embedder.embed(text)
        if not vectors:
            raise EmbeddingUnavailable("Embedder returned no vector")
        return list(vectors[0])

    def _ensure_collection(self, name: str, dimension: int) -> None:
        future = self._io_pool.submit(self.index.ensure_collection, name, dimension)
        try:
            self._await(future, self.config.upsert_timeout, f"ensure_collection('{name}')")
        except OperationTimeout as exc:
            raise IndexTransportError(str(exc)) from exc

    # ============ Ingest ============

    def ingest(
        self,
        documents: Iterable[Document],
        collection: Optional[str] = None,
        use_tqdm: bool = False,
    ) -> IngestSummary:
        """
        Chunk, embed and upsert documents into a collection.

        One bad document or failing batch never aborts the run: problems are
        recorded on the returned summary. Only a dimension mismatch with the
        target collection is fatal.

        Args:
            documents: Documents to ingest
            collection: Target collection (defaults to config.collection)
            use_tqdm: Show a tqdm progress bar over documents

        Returns:
            IngestSummary with counts, warnings and per-batch errors

        Raises:
            DimensionMismatch: the collection exists with another dimensionality
        """
        name = collection or self.config.collection
        documents = list(documents)
        dimension = self.config.embedding_dim
        summary = IngestSummary(collection=name, documents_total=len(documents))

        self._ensure_collection(name, dimension)
        logger.info("Ingesting %d documents into '%s'", len(documents), name)

        progress = tqdm(documents, desc="Ingesting", unit="doc") if use_tqdm else documents
        for document in progress:
            label = document.file_name or document.id
            try:
                result = self.chunker.chunk(document)
            except Exception as exc:
                logger.exception("Chunking failed for %s", label)
                summary.documents_skipped += 1
                summary.errors.append(f"{label}: chunking failed: {exc}")
                continue

            summary.warnings.extend(f"{label}: {w}" for w in result.warnings)
            if not result.success or not result.chunks:
                logger.warning("Skipping %s: chunking produced no chunks", label)
                summary.documents_skipped += 1
                summary.warnings.append(f"{label}: skipped, no chunks produced")
                continue

            vectors, degraded = self._embed_chunks(result.chunks, name, dimension)
            summary.degraded_embeddings += degraded

            points = [IndexPoint.from_chunk(c, v) for c, v in zip(result.chunks, vectors)]
            self._upsert_points(name, points, label, summary)

        if summary.degraded:
            message = (
                f"{summary.degraded_embeddings} chunks were stored with synthetic vectors; "
                f"semantic retrieval quality is degraded until they are re-ingested"
            )
            logger.warning(message)
            summary.warnings.append(message)

        try:
            self.index.flush()
        except VectorIndexError as exc:
            logger.error("Failed to persist index for '%s': %s", name, exc)
            summary.errors.append(f"flush failed: {exc}")

        logger.info(
            "Ingested %d chunks into '%s' (%d documents skipped, %d errors, %d degraded)",
            summary.chunks_written, name, summary.documents_skipped,
            len(summary.errors), summary.degraded_embeddings,
        )
        return summary

    def _embed_chunks(self, chunks: Sequence[Chunk], collection: str, dimension: int) -> Tuple[List[List[float]], int]:
        """
        Embed chunks concurrently. Failed or unfinished calls get a pseudo-vector.

        The whole batch shares one deadline of embed_timeout per round of
        embed_workers calls, so a hung backend costs at most that long.
        """
        rounds = math.ceil(len(chunks) / self.config.embed_workers)
        budget = self.config.embed_timeout * rounds
        futures = [self._embed_pool.submit(self._embed_one, chunk.content) for chunk in chunks]
        vectors: List[List[float]] = []
        degraded = 0
        try:
            done, pending = wait(futures, timeout=budget)
            if pending:
                logger.warning(
                    "%d of %d embeddings unfinished after %gs, using synthetic vectors",
                    len(pending), len(futures), budget,
                )
            for chunk, future in zip(chunks, futures):
                vector: Optional[List[float]] = None
                if future in done:
                    try:
                        vector = future.result()
                    except Exception as exc:
                        logger.warning(
                            "Embedding failed for chunk %s, using synthetic vector: %s: %s",
                            chunk.id, type(exc).__name__, exc,
                        )

                if vector is None:
                    vector = pseudo_embedding(chunk.content, dimension)
                    degraded += 1
                elif len(vector) != dimension:
                    raise DimensionMismatch(collection, dimension, len(vector))
                vectors.append(vector)
        finally:
            for future in futures:
                future.cancel()
        return vectors, degraded

    def _upsert_points(self, name: str, points: List[IndexPoint], label: str, summary: IngestSummary) -> None:
        size = self.config.upsert_batch_size
        for offset in range(0, len(points), size):
            batch = points[offset:offset + size]
            future = self._io_pool.submit(self.index.upsert, name, batch)
            try:
                self._await(future, self.config.upsert_timeout, f"upsert into '{name}'")
            except DimensionMismatch:
                raise
            except (VectorIndexError, OperationTimeout) as exc:
                logger.error("Upsert of %s batch %d failed: %s", label, offset // size, exc)
                summary.errors.append(f"{label}: batch {offset // size} ({len(batch)} points) failed: {exc}")
            else:
                summary.chunks_written += len(batch)

    # ============ Query ============

    def query(
        self,
        text: str,
        top_k: Optional[int] = None,
        top_m: Optional[int] = None,
        collection: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryResult:
        """
        Retrieve reranked context for a query.

        Args:
            text: Query text
            top_k: Candidates to fetch from vector search
            top_m: Results to keep after reranking (clamped to top_k)
            collection: Collection to search (defaults to config.collection)
            cancel_event: Set it from another thread to abandon the query

        Returns:
            QueryResult with at most min(top_m, top_k) results in rerank order

        Raises:
            RerankFailure: reranking failed or timed out
            VectorIndexError: search failed or timed out
            QueryCancelled: cancel_event was set
        """
        name = collection or self.config.collection
        top_k = self.config.top_k if top_k is None else top_k
        top_m = self.config.top_m if top_m is None else top_m
        if top_k <= 0 or top_m <= 0:
            raise ConfigurationError(f"top_k and top_m must be > 0, got {top_k} and {top_m}")

        stage = QueryStage.EMBEDDING
        try:
            vector, degraded = self._embed_query(name, text, cancel_event)

            stage = QueryStage.SEARCHING
            logger.debug("Query stage: %s", stage.value)
            candidates = self._search(name, vector, top_k, cancel_event)

            stage = QueryStage.RERANKING
            logger.debug("Query stage: %s (%d candidates)", stage.value, len(candidates))
            scores = self._rerank(text, candidates, cancel_event) if candidates else []

            stage = QueryStage.ASSEMBLING
            keep = min(top_m, top_k, len(candidates))
            # sorted() is stable: equal rerank scores keep similarity order
            order = sorted(range(len(candidates)), key=lambda i: -scores[i])[:keep]
            results = [
                RerankResult(
                    id=candidates[i].id,
                    text=candidates[i].text,
                    original_score=candidates[i].score,
                    rerank_score=scores[i],
                    metadata=dict(candidates[i].metadata),
                )
                for i in order
            ]
        except Exception:
            logger.warning("Query failed at stage '%s' (%s)", stage.value, QueryStage.FAILED.value)
            raise

        logger.debug("Query stage: %s (%d results)", QueryStage.DONE.value, len(results))
        return QueryResult(
            query=text,
            results=results,
            top_k=top_k,
            top_m=min(top_m, top_k),
            degraded_embedding=degraded,
            separator=self.config.context_separator,
        )

    def _embed_query(self, name: str, text: str, cancel_event: Optional[threading.Event]) -> Tuple[List[float], bool]:
        dimension = self.config.embedding_dim
        future = self._io_pool.submit(self._embed_one, text)
        try:
            vector = self._await(future, self.config.embed_timeout, "query embedding", cancel_event)
        except (EmbeddingUnavailable, OperationTimeout) as exc:
            if not self.config.query_embedding_fallback:
                if isinstance(exc, OperationTimeout):
                    raise EmbeddingUnavailable(str(exc)) from exc
                raise
            logger.warning("Query embedding unavailable, using synthetic vector: %s", exc)
            return pseudo_embedding(text, dimension), True

        if len(vector) != dimension:
            raise DimensionMismatch(name, dimension, len(vector))
        return vector, False

    def _search(
        self,
        name: str,
        vector: List[float],
        top_k: int,
        cancel_event: Optional[threading.Event],
    ) -> List[SearchResult]:
        future = self._io_pool.submit(self.index.search, name, vector, top_k)
        try:
            results = self._await(future, self.config.search_timeout, f"search in '{name}'", cancel_event)
        except OperationTimeout as exc:
            raise IndexTransportError(str(exc)) from exc
        return list(results)[:top_k]

    def _rerank(
        self,
        text: str,
        candidates: List[SearchResult],
        cancel_event: Optional[threading.Event],
    ) -> List[float]:
        future = self._io_pool.submit(self.reranker.score, text, candidates)
        try:
            scores = self._await(future, self.config.rerank_timeout, "rerank", cancel_event)
        except OperationTimeout as exc:
            raise RerankFailure(str(exc)) from exc
        scores = list(scores)
        if len(scores) != len(candidates):
            raise MalformedResponse(f"Reranker returned {len(scores)} scores for {len(candidates)} candidates")
        try:
            return [float(s) for s in scores]
        except (TypeError, ValueError) as exc:
            raise MalformedResponse(f"Reranker returned a non-numeric score: {exc}") from exc

    # ============ Management ============

    def stats(self, collection: Optional[str] = None) -> Dict[str, Any]:
        """Point count and dimensionality of a collection."""
        name = collection or self.config.collection
        return {
            "collection": name,
            "dimension": self.index.collection_dimension(name),
            "points": self.index.count(name),
            "embedding_provider": self.config.embedding_provider,
            "index_backend": self.config.index_backend,
        }

    def delete_collection(self, collection: Optional[str] = None) -> int:
        """Drop a collection and everything in it."""
        return self.index.delete_collection(collection or self.config.collection)

    def list_collections(self) -> List[Dict[str, Any]]:
        """Every collection in the index with its dimension and point count."""
        return self.index.list_collections()

    def health(self) -> Dict[str, Any]:
        """Whether the vector index answers, for readiness checks."""
        future = self._io_pool.submit(self.index.ping)
        try:
            reachable = bool(self._await(future, self.config.search_timeout, "index health check"))
        except OperationTimeout as exc:
            logger.warning("Vector index health check failed: %s", exc)
            reachable = False
        return {
            "status": "healthy" if reachable else "degraded",
            "index_backend": self.config.index_backend,
            "index_reachable": reachable,
        }

    def close(self) -> None:
        """Stop the worker pools and close the index."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._embed_pool.shutdown(wait=False, cancel_futures=True)
        self._io_pool.shutdown(wait=False, cancel_futures=True)
        self.index.close()

    def __enter__(self) -> "RetrievalOrchestrator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def _embedder_kwargs(config: LodestarConfig) -> Dict[str, Any]:
    provider = config.embedding_provider.lower()
    kwargs: Dict[str, Any] = {"timeout": config.embed_timeout}
    if provider == "ollama":
        kwargs["base_url"] = config.embedding_base_url
    elif provider in ("openai", "openai-embedding"):
        kwargs["openai_api_key"] = config.embedding_api_key
        kwargs["base_url"] = config.embedding_base_url
    elif provider in ("jina", "jina-ai"):
        kwargs["jina_api_key"] = config.embedding_api_key
    elif provider in ("huggingface", "hf", "sentence-transformers"):
        kwargs["hf_token"] = config.embedding_api_key
    return kwargs


def create_orchestrator(config: Optional[LodestarConfig] = None) -> RetrievalOrchestrator:
    """
    Build an orchestrator and its collaborators from configuration.

    Example:
        >>> config = LodestarConfig.from_env()
        >>> with create_orchestrator(config) as rag:
        ...     rag.ingest(load_sources(["./docs"]))
        ...     print(rag.query("How do I...?").context)
    """
    config = config or LodestarConfig.from_env()
    config.validate()

    embedder = create_embedding_provider(
        config.embedding_provider,
        config.embedding_model,
        **_embedder_kwargs(config),
    )

    if config.index_backend == "qdrant":
        index = create_vector_index(
            "qdrant",
            url=config.qdrant_url,
            api_key=config.qdrant_api_key,
            timeout=config.search_timeout,
        )
    else:
        index = create_vector_index(
            "usearch",
            index_dir=config.index_dir,
            metric=config.metric,
            dtype=config.dtype,
        )

    if config.rerank_provider == "llm":
        reranker = create_reranker(
            "llm",
            openai_api_key=config.rerank_api_key,
            base_url=config.rerank_base_url,
            timeout=config.rerank_timeout,
            **({"model": config.rerank_model} if config.rerank_model else {}),
        )
    else:
        reranker = create_reranker(
            "http",
            base_url=config.rerank_base_url,
            model=config.rerank_model,
            api_key=config.rerank_api_key,
            timeout=config.rerank_timeout,
        )

    return RetrievalOrchestrator(config, embedder, index, reranker)
