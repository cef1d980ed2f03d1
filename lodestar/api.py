"""FastAPI REST API wrapper for the Lodestar retrieval pipeline."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import LodestarConfig
from .exceptions import (
    CollectionNotFound,
    ConfigurationError,
    DimensionMismatch,
    EmbeddingUnavailable,
    IndexTransportError,
    LodestarError,
    QueryCancelled,
    RerankFailure,
)
from .models import Document
from .orchestrator import RetrievalOrchestrator, create_orchestrator

logger = logging.getLogger(__name__)

# Most specific first; the first match wins
ERROR_STATUS = [
    (CollectionNotFound, 404),
    (DimensionMismatch, 409),
    (ConfigurationError, 400),
    (EmbeddingUnavailable, 503),
    (RerankFailure, 502),
    (IndexTransportError, 502),
    (QueryCancelled, 499),
]


def status_for(exc: LodestarError) -> int:
    """HTTP status code for a pipeline error."""
    for exc_type, status in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500


# ============ Request/Response Models ============

class DocumentIn(BaseModel):
    """A document submitted for ingestion."""
    content: str = Field(..., description="Document text")
    file_name: str = Field(default="", description="Original file name")
    id: Optional[str] = Field(default=None, description="Stable document id (derived if omitted)")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IngestRequest(BaseModel):
    """Request body for document ingestion."""
    documents: List[DocumentIn] = Field(..., min_length=1, description="Documents to ingest")
    collection: Optional[str] = Field(default=None, description="Target collection")


class IngestResponse(BaseModel):
    """Response from ingestion."""
    collection: str
    documents_total: int
    chunks_written: int
    documents_skipped: int
    degraded_embeddings: int
    degraded: bool
    errors: List[str]
    warnings: List[str]


class QueryRequest(BaseModel):
    """Request body for retrieval."""
    query: str = Field(..., min_length=1, description="Query text")
    top_k: Optional[int] = Field(default=None, ge=1, le=1000, description="Candidates from vector search")
    top_m: Optional[int] = Field(default=None, ge=1, le=1000, description="Results kept after reranking")
    collection: Optional[str] = Field(default=None, description="Collection to search")


class QueryResultItem(BaseModel):
    """Single reranked result."""
    id: str
    text: str
    original_score: float
    rerank_score: float
    metadata: Dict[str, Any]


class QueryResponse(BaseModel):
    """Response from retrieval."""
    query: str
    results: List[QueryResultItem]
    context: str
    count: int
    degraded_embedding: bool


class CollectionInfo(BaseModel):
    """Collection statistics."""
    collection: str
    dimension: Optional[int]
    points: int
    embedding_provider: str
    index_backend: str


class CollectionSummary(BaseModel):
    """One collection in a listing."""
    name: str
    dimension: int
    metric: str
    points: int


class CollectionList(BaseModel):
    """All collections in the index."""
    collections: List[CollectionSummary]
    count: int


class DeleteResponse(BaseModel):
    """Response from delete operations."""
    deleted: int
    collection: str


# ============ App Factory ============

def create_app(
    config: Optional[LodestarConfig] = None,
    orchestrator: Optional[RetrievalOrchestrator] = None,
) -> FastAPI:
    """
    Create a FastAPI app wrapping a RetrievalOrchestrator.

    Args:
        config: Pipeline configuration (read from the environment if omitted)
        orchestrator: Prebuilt orchestrator; the app does not close it

    Returns:
        FastAPI app instance
    """
    state: Dict[str, Optional[RetrievalOrchestrator]] = {"rag": orchestrator}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = state["rag"] is None
        if owned:
            state["rag"] = create_orchestrator(config)
        yield
        if owned and state["rag"] is not None:
            state["rag"].close()
            state["rag"] = None

    app = FastAPI(
        title="Lodestar RAG API",
        description="Chunking, embedding, vector search and reranking for retrieval-augmented generation",
        version=__version__,
        lifespan=lifespan,
    )

    def get_rag() -> RetrievalOrchestrator:
        rag = state["rag"]
        if rag is None:
            raise HTTPException(status_code=503, detail="Lodestar not initialized")
        return rag

    @app.exception_handler(LodestarError)
    async def lodestar_error_handler(request: Request, exc: LodestarError) -> JSONResponse:
        status = status_for(exc)
        logger.warning("%s %s failed with %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    # ============ Endpoints ============

    @app.post("/ingest", response_model=IngestResponse, tags=["Ingestion"])
    def ingest_documents(request: IngestRequest):
        """
        Ingest documents into a collection.

        Documents are chunked, embedded, and upserted. Per-document problems
        are reported in the response instead of failing the request.
        """
        rag = get_rag()
        docs = [
            Document(content=d.content, file_name=d.file_name, id=d.id, metadata=d.metadata)
            for d in request.documents
        ]
        summary = rag.ingest(docs, collection=request.collection)
        return IngestResponse(**summary.to_dict())

    @app.post("/query", response_model=QueryResponse, tags=["Retrieval"])
    def query(request: QueryRequest):
        """Retrieve reranked context for a query."""
        rag = get_rag()
        result = rag.query(
            request.query,
            top_k=request.top_k,
            top_m=request.top_m,
            collection=request.collection,
        )
        return QueryResponse(
            query=result.query,
            results=[
                QueryResultItem(
                    id=r.id,
                    text=r.text,
                    original_score=r.original_score,
                    rerank_score=r.rerank_score,
                    metadata=r.metadata,
                )
                for r in result.results
            ],
            context=result.context,
            count=len(result.results),
            degraded_embedding=result.degraded_embedding,
        )

    @app.get("/collections", response_model=CollectionList, tags=["Management"])
    def list_collections():
        """List every collection with its dimension and point count."""
        collections = [CollectionSummary(**c) for c in get_rag().list_collections()]
        return CollectionList(collections=collections, count=len(collections))

    @app.get("/collections/{name}", response_model=CollectionInfo, tags=["Management"])
    def get_collection(name: str):
        """Get point count and dimensionality of a collection."""
        return CollectionInfo(**get_rag().stats(name))

    @app.delete("/collections/{name}", response_model=DeleteResponse, tags=["Management"])
    def delete_collection(name: str):
        """Delete a collection and all its points."""
        deleted = get_rag().delete_collection(name)
        return DeleteResponse(deleted=deleted, collection=name)

    @app.get("/health", tags=["Health"])
    def health_check():
        """Health check endpoint. Returns 503 when the vector index does not answer."""
        report = {"service": "lodestar", "version": __version__, **get_rag().health()}
        if not report["index_reachable"]:
            return JSONResponse(status_code=503, content=report)
        return report

    return app


# Default app for `uvicorn lodestar.api:app`
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
