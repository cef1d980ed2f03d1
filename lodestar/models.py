"""Data models for the Lodestar retrieval pipeline."""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Document:
    """A loaded document. Immutable once handed to the chunker."""
    content: str
    file_name: str = ""
    id: Optional[str] = None
    size_bytes: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    modified_at: datetime = field(default_factory=_utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.id is None:
            # Stable id: the source path when known, else the content
            seed = str(self.metadata.get("source") or self.content)
            object.__setattr__(self, "id", hashlib.sha256(seed.encode()).hexdigest()[:16])
        if not self.size_bytes:
            object.__setattr__(self, "size_bytes", len(self.content.encode()))


@dataclass
class Chunk:
    """A bounded, offset-addressable piece of a document."""
    id: str
    document_id: str
    index: int
    content: str
    start_offset: int
    end_offset: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def char_count(self) -> int:
        return len(self.content)

    @property
    def text(self) -> str:
        return self.content


@dataclass
class ChunkingResult:
    """Outcome of chunking a single document."""
    document: Document
    chunks: List[Chunk] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    elapsed: float = 0.0  # seconds
    success: bool = False

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)


@dataclass
class IndexPoint:
    """A point written to a vector index collection."""
    id: str
    vector: List[float]
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_chunk(cls, chunk: Chunk, vector: List[float]) -> "IndexPoint":
        return cls(
            id=chunk.id,
            vector=vector,
            payload={
                "text": chunk.content,
                "chunk_index": chunk.index,
                "source_document_id": chunk.document_id,
                "start_offset": chunk.start_offset,
                "end_offset": chunk.end_offset,
                "file_name": chunk.metadata.get("file_name", ""),
            },
        )


@dataclass
class SearchResult:
    """A single vector search hit. Higher score means more similar."""
    id: str
    score: float
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RerankResult:
    """A search hit after second-stage relevance scoring."""
    id: str
    text: str
    original_score: float
    rerank_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Scorable(Protocol):
    """Anything a reranker can score: it only needs to expose its text."""

    @property
    def text(self) -> str:
        ...


@dataclass
class IngestSummary:
    """Outcome of one ingest run against a collection."""
    collection: str
    documents_total: int = 0
    chunks_written: int = 0
    documents_skipped: int = 0
    degraded_embeddings: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """True when synthetic vectors were written in place of real embeddings."""
        return self.degraded_embeddings > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "documents_total": self.documents_total,
            "chunks_written": self.chunks_written,
            "documents_skipped": self.documents_skipped,
            "degraded_embeddings": self.degraded_embeddings,
            "degraded": self.degraded,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class QueryResult:
    """Reranked context for one query."""
    query: str
    results: List[RerankResult] = field(default_factory=list)
    top_k: int = 0
    top_m: int = 0
    degraded_embedding: bool = False
    separator: str = "\n\n"

    @property
    def blocks(self) -> List[str]:
        return [r.text for r in self.results]

    @property
    def context(self) -> str:
        """Chunk texts in rerank order, joined into one context block."""
        return self.separator.join(self.blocks)
