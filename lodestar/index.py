"""Vector index backends: local USearch HNSW and Qdrant."""

import logging
import math
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.http import models as rest
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from usearch.index import Index as USearchIndex

from .exceptions import (
    CollectionNotFound,
    ConfigurationError,
    DimensionMismatch,
    IndexTransportError,
    VectorIndexError,
)
from .models import IndexPoint, SearchResult
from .storage import PointStore

logger = logging.getLogger(__name__)


class VectorIndex(ABC):
    """
    Named collections of (id, vector, payload) points.

    Each collection has one fixed vector dimensionality. Upsert is
    idempotent by point id. Implementations must be safe to call from
    several threads at once.
    """

    @abstractmethod
    def ensure_collection(self, name: str, dimension: int) -> None:
        """Create the collection if missing; raise DimensionMismatch if it differs."""

    @abstractmethod
    def collection_dimension(self, name: str) -> Optional[int]:
        """Dimensionality of a collection, or None when it does not exist."""

    @abstractmethod
    def upsert(self, name: str, points: Sequence[IndexPoint]) -> None:
        """Insert or overwrite points by id."""

    @abstractmethod
    def search(self, name: str, vector: Sequence[float], k: int) -> List[SearchResult]:
        """Return up to k nearest points, most similar first."""

    @abstractmethod
    def count(self, name: str) -> int:
        """Number of points in a collection."""

    @abstractmethod
    def delete_collection(self, name: str) -> int:
        """Drop a collection. Returns the number of points removed when known."""

    @abstractmethod
    def list_collections(self) -> List[Dict[str, Any]]:
        """All collections as dicts with name, dimension, metric and points, sorted by name."""

    def ping(self) -> bool:
        """True when the backend answers. Used by health checks."""
        try:
            self.list_collections()
        except VectorIndexError as exc:
            logger.warning("Vector index health check failed: %s", exc)
            return False
        return True

    def flush(self) -> None:
        """Persist pending state, if the backend needs it."""

    def close(self) -> None:
        """Release connections and persist pending state."""
        self.flush()


def _split_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if k != "text"}


class USearchVectorIndex(VectorIndex):
    """
    Local HNSW index using USearch, with payloads and vectors in SQLite.

    With `index_dir` set, each collection is saved as `<name>.usearch` next to
    a `points.db` SQLite file; otherwise everything lives in memory.
    """

    METRICS = ("cos", "ip", "l2sq")

    def __init__(
        self,
        index_dir: Optional[str] = None,
        metric: str = "cos",
        dtype: str = "f32",
        connectivity: int = 32,
        expansion_add: int = 128,
        expansion_search: int = 64,
    ):
        if metric not in self.METRICS:
            raise ConfigurationError(f"Unknown metric: {metric}. Supported: {', '.join(self.METRICS)}")
        self.index_dir = Path(index_dir) if index_dir else None
        self.metric = metric
        self.dtype = dtype
        self.connectivity = connectivity
        self.expansion_add = expansion_add
        self.expansion_search = expansion_search

        if self.index_dir is not None:
            self.index_dir.mkdir(parents=True, exist_ok=True)
            self.store = PointStore(self.index_dir / "points.db")
        else:
            self.store = PointStore()

        self._indexes: Dict[str, USearchIndex] = {}
        self._dirty: set = set()
        self._lock = threading.RLock()

    def _index_path(self, name: str) -> Optional[Path]:
        return self.index_dir / f"{name}.usearch" if self.index_dir else None

    def _new_index(self, dimension: int) -> USearchIndex:
        return USearchIndex(
            ndim=dimension,
            metric=self.metric,
            dtype=self.dtype,
            connectivity=self.connectivity,
            expansion_add=self.expansion_add,
            expansion_search=self.expansion_search,
        )

    def _load(self, name: str) -> USearchIndex:
        """Open a collection's HNSW index, restoring or rebuilding it as needed."""
        index = self._indexes.get(name)
        if index is not None:
            return index

        info = self.store.get_collection(name)
        if info is None:
            raise CollectionNotFound(name)

        path = self._index_path(name)
        expected = self.store.count(name)
        if path is not None and path.exists():
            index = USearchIndex.restore(str(path))
            if index is not None and len(index) != expected:
                logger.warning("Index file for '%s' is stale, rebuilding from stored vectors", name)
                index = None

        if index is None:
            index = self._new_index(info["dimension"])
            for key, blob in self.store.iter_vectors(name):
                index.add(key, np.frombuffer(blob, dtype=np.float32))

        self._indexes[name] = index
        return index

    def ensure_collection(self, name: str, dimension: int) -> None:
        with self._lock:
            info = self.store.get_collection(name)
            if info is not None:
                if info["dimension"] != dimension:
                    raise DimensionMismatch(name, info["dimension"], dimension)
                return
            self.store.create_collection(name, dimension, self.metric)
            self._indexes[name] = self._new_index(dimension)
            logger.info("Created collection '%s' (dimension=%d, metric=%s)", name, dimension, self.metric)

    def collection_dimension(self, name: str) -> Optional[int]:
        with self._lock:
            info = self.store.get_collection(name)
            return info["dimension"] if info else None

    def upsert(self, name: str, points: Sequence[IndexPoint]) -> None:
        with self._lock:
            index = self._load(name)
            dimension = index.ndim
            for point in points:
                if len(point.vector) != dimension:
                    raise DimensionMismatch(name, dimension, len(point.vector))

            try:
                for point in points:
                    vector = np.asarray(point.vector, dtype=np.float32)
                    key = self.store.upsert_point(name, point.id, vector.tobytes(), point.payload)
                    if index.contains(key):
                        index.remove(key)
                    index.add(key, vector)
                self.store.commit()
            except Exception:
                self.store.rollback()
                # The in-memory graph may now disagree with SQLite; rebuild on next use
                self._indexes.pop(name, None)
                raise
            self._dirty.add(name)

    def search(self, name: str, vector: Sequence[float], k: int) -> List[SearchResult]:
        with self._lock:
            index = self._load(name)
            if len(vector) != index.ndim:
                raise DimensionMismatch(name, index.ndim, len(vector))
            if k <= 0 or len(index) == 0:
                return []

            matches = index.search(np.asarray(vector, dtype=np.float32), k)
            hits = [(int(match.key), float(match.distance)) for match in matches]
            points = self.store.get_points(name, [key for key, _ in hits])

        results = []
        for key, distance in hits:
            point = points.get(key)
            if point is None:
                continue
            results.append((key, SearchResult(
                id=point["point_id"],
                score=self._similarity(distance),
                text=point["payload"].get("text", ""),
                metadata=_split_payload(point["payload"]),
            )))

        # Keys grow with first insertion, so this breaks score ties by insertion order
        results.sort(key=lambda item: (-item[1].score, item[0]))
        return [result for _, result in results]

    def _similarity(self, distance: float) -> float:
        if self.metric == "l2sq":
            return -distance
        # usearch reports cos and ip as 1 - similarity
        return 1.0 - distance

    def count(self, name: str) -> int:
        with self._lock:
            if self.store.get_collection(name) is None:
                raise CollectionNotFound(name)
            return self.store.count(name)

    def list_collections(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self.store.list_collections()

    def delete_collection(self, name: str) -> int:
        with self._lock:
            if self.store.get_collection(name) is None:
                raise CollectionNotFound(name)
            self._indexes.pop(name, None)
            self._dirty.discard(name)
            path = self._index_path(name)
            if path is not None and path.exists():
                path.unlink()
            deleted = self.store.delete_collection(name)
            logger.info("Deleted collection '%s' (%d points)", name, deleted)
            return deleted

    def flush(self) -> None:
        """Persist modified indexes to disk."""
        if self.index_dir is None:
            return
        with self._lock:
            for name in sorted(self._dirty):
                index = self._indexes.get(name)
                if index is not None:
                    index.save(str(self._index_path(name)))
            self._dirty.clear()

    def close(self) -> None:
        with self._lock:
            self.flush()
            self.store.close()


class QdrantVectorIndex(VectorIndex):
    """
    Qdrant vector index through qdrant-client.

    Collections made here use one unnamed vector. Existing collections with a
    single named vector are accepted and addressed by that name.
    """

    def __init__(
        self,
        url: str = "http://localhost:6333",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        distance: str = "Cosine",
        client: Optional[QdrantClient] = None,
    ):
        try:
            self.distance = rest.Distance(distance)
        except ValueError:
            supported = ", ".join(d.value for d in rest.Distance)
            raise ConfigurationError(f"Unknown Qdrant distance: {distance}. Supported: {supported}") from None
        self.url = url
        logger.info("Connecting to Qdrant at %s (api_key=%s)", url, "***" if api_key else "<none>")
        self.client = client or QdrantClient(url=url, api_key=api_key, timeout=max(1, math.ceil(timeout)))
        # name -> (dimension, vector name or None for the unnamed vector)
        self._vectors: Dict[str, Tuple[int, Optional[str]]] = {}

    def _call(self, what: str, name: Optional[str], fn: Callable[..., Any], **kwargs: Any) -> Any:
        """Run a client call, mapping its errors onto the index taxonomy."""
        try:
            return fn(**kwargs)
        except UnexpectedResponse as exc:
            if exc.status_code == 404 and name is not None:
                raise CollectionNotFound(name) from exc
            raise IndexTransportError(f"Qdrant {what} returned {exc.status_code}: {exc}") from exc
        except ResponseHandlingException as exc:
            raise IndexTransportError(f"Qdrant {what} failed: {exc}") from exc

    def _describe(self, name: str) -> Tuple[int, Optional[str], str]:
        info = self._call("get_collection", name, self.client.get_collection, collection_name=name)
        vectors = info.config.params.vectors
        vector_name = None
        if isinstance(vectors, dict):
            if len(vectors) != 1:
                raise IndexTransportError(
                    f"Collection '{name}' has {len(vectors)} named vectors, expected exactly one"
                )
            vector_name, vectors = next(iter(vectors.items()))
        self._vectors[name] = (vectors.size, vector_name)
        distance = getattr(vectors.distance, "value", vectors.distance)
        return vectors.size, vector_name, str(distance)

    def _vector_params(self, name: str) -> Tuple[int, Optional[str]]:
        params = self._vectors.get(name)
        if params is None:
            size, vector_name, _ = self._describe(name)
            params = (size, vector_name)
        return params

    def collection_dimension(self, name: str) -> Optional[int]:
        try:
            return self._describe(name)[0]
        except CollectionNotFound:
            self._vectors.pop(name, None)
            return None

    def ensure_collection(self, name: str, dimension: int) -> None:
        existing = self.collection_dimension(name)
        if existing is not None:
            if existing != dimension:
                raise DimensionMismatch(name, existing, dimension)
            return

        self._call(
            "create_collection", None, self.client.create_collection,
            collection_name=name,
            vectors_config=rest.VectorParams(size=dimension, distance=self.distance),
        )
        self._vectors[name] = (dimension, None)
        logger.info("Created Qdrant collection '%s' (dimension=%d, distance=%s)", name, dimension, self.distance.value)

    def upsert(self, name: str, points: Sequence[IndexPoint]) -> None:
        dimension, vector_name = self._vector_params(name)
        for point in points:
            if len(point.vector) != dimension:
                raise DimensionMismatch(name, dimension, len(point.vector))

        structs = [
            rest.PointStruct(
                id=p.id,
                vector={vector_name: list(p.vector)} if vector_name else list(p.vector),
                payload=p.payload,
            )
            for p in points
        ]
        self._call("upsert", name, self.client.upsert, collection_name=name, points=structs, wait=True)
        logger.debug("Upserted %d points into Qdrant collection '%s'", len(structs), name)

    def search(self, name: str, vector: Sequence[float], k: int) -> List[SearchResult]:
        dimension, vector_name = self._vector_params(name)
        if len(vector) != dimension:
            raise DimensionMismatch(name, dimension, len(vector))
        if k <= 0:
            return []

        response = self._call(
            "query_points", name, self.client.query_points,
            collection_name=name,
            query=list(vector),
            using=vector_name,
            limit=k,
            with_payload=True,
        )
        results = []
        for hit in response.points:
            payload = hit.payload or {}
            results.append(SearchResult(
                id=str(hit.id),
                score=float(hit.score),
                text=payload.get("text", ""),
                metadata=_split_payload(payload),
            ))
        # Python's sort is stable, so equal scores keep Qdrant's order
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    def count(self, name: str) -> int:
        result = self._call("count", name, self.client.count, collection_name=name, exact=True)
        return int(result.count)

    def list_collections(self) -> List[Dict[str, Any]]:
        response = self._call("get_collections", None, self.client.get_collections)
        collections = []
        for description in sorted(response.collections, key=lambda c: c.name):
            dimension, _, distance = self._describe(description.name)
            collections.append({
                "name": description.name,
                "dimension": dimension,
                "metric": distance,
                "points": self.count(description.name),
            })
        return collections

    def ping(self) -> bool:
        try:
            self._call("get_collections", None, self.client.get_collections)
        except IndexTransportError as exc:
            logger.warning("Qdrant at %s is unreachable: %s", self.url, exc)
            return False
        return True

    def delete_collection(self, name: str) -> int:
        count = self.count(name)
        self._call("delete_collection", name, self.client.delete_collection, collection_name=name)
        self._vectors.pop(name, None)
        logger.info("Deleted Qdrant collection '%s' (%d points)", name, count)
        return count

    def close(self) -> None:
        self.client.close()


def create_vector_index(backend: str = "usearch", **kwargs: Any) -> VectorIndex:
    """
    Factory function to create a vector index backend.

    Args:
        backend: 'usearch' (local) or 'qdrant'
        **kwargs: Backend-specific arguments
    """
    backend = backend.lower()
    if backend == "usearch":
        return USearchVectorIndex(**kwargs)
    if backend == "qdrant":
        return QdrantVectorIndex(**kwargs)
    raise ConfigurationError(f"Unknown index backend: {backend}. Supported: 'usearch', 'qdrant'")
