"""
Lodestar: retrieval pipeline for RAG

Ingests documents into a vector index and retrieves reranked context:

- Chunking with fixed-size (separator-aware) and sentence strategies
- Embeddings via Ollama, OpenAI, HuggingFace or Jina AI, with an LRU cache
- Vector search over a local USearch HNSW index or Qdrant
- Second-stage reranking through a rerank API or an LLM
- Bounded-concurrency embedding with per-call timeouts
- Degraded ingest with synthetic vectors when the embedder is down
- REST API (FastAPI) and CLI

References:
- USearch: https://github.com/unum-cloud/usearch
- Qdrant: https://qdrant.tech/documentation/
"""

__version__ = "1.0.0"

from .config import ChunkingConfig, LodestarConfig
from .exceptions import (
    CollectionNotFound,
    ConfigurationError,
    DimensionMismatch,
    EmbeddingUnavailable,
    IndexTransportError,
    LodestarError,
    MalformedResponse,
    OperationTimeout,
    QueryCancelled,
    RerankFailure,
    VectorIndexError,
)
from .models import (
    Chunk,
    ChunkingResult,
    Document,
    IndexPoint,
    IngestSummary,
    QueryResult,
    RerankResult,
    Scorable,
    SearchResult,
)
from .chunking import Chunker, split_sentences
from .embeddings import (
    BaseEmbeddingProvider,
    EmbeddingProvider,
    HuggingFaceEmbedding,
    JinaEmbedding,
    OllamaEmbedding,
    create_embedding_provider,
    pseudo_embedding,
)
from .index import QdrantVectorIndex, USearchVectorIndex, VectorIndex, create_vector_index
from .reranker import BaseReranker, HTTPReranker, LLMReranker, create_reranker
from .orchestrator import QueryStage, RetrievalOrchestrator, create_orchestrator
from .loaders import clean_content, load_sources

__all__ = [
    # Core
    "LodestarConfig",
    "ChunkingConfig",
    "RetrievalOrchestrator",
    "QueryStage",
    "create_orchestrator",
    # Models
    "Document",
    "Chunk",
    "ChunkingResult",
    "IndexPoint",
    "SearchResult",
    "RerankResult",
    "Scorable",
    "IngestSummary",
    "QueryResult",
    # Loaders & Chunking
    "load_sources",
    "clean_content",
    "Chunker",
    "split_sentences",
    # Embeddings
    "BaseEmbeddingProvider",
    "EmbeddingProvider",
    "HuggingFaceEmbedding",
    "JinaEmbedding",
    "OllamaEmbedding",
    "create_embedding_provider",
    "pseudo_embedding",
    # Vector index
    "VectorIndex",
    "USearchVectorIndex",
    "QdrantVectorIndex",
    "create_vector_index",
    # Re-ranking
    "BaseReranker",
    "HTTPReranker",
    "LLMReranker",
    "create_reranker",
    # Errors
    "LodestarError",
    "ConfigurationError",
    "EmbeddingUnavailable",
    "VectorIndexError",
    "DimensionMismatch",
    "CollectionNotFound",
    "IndexTransportError",
    "RerankFailure",
    "MalformedResponse",
    "QueryCancelled",
    "OperationTimeout",
]
