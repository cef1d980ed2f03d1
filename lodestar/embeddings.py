"""Embedding generation with caching and multiple provider support."""

import hashlib
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

import numpy as np
import openai
import requests
from openai import OpenAI
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .exceptions import ConfigurationError, EmbeddingUnavailable

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """LRU cache for embeddings to avoid redundant API calls. Safe to share between threads."""

    def __init__(self, maxsize: int = 1000):
        self._cache: Dict[str, List[float]] = {}
        self._maxsize = maxsize
        self._access_order: List[str] = []
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    def _hash_text(self, text: str, model: str) -> str:
        """Create a hash key for text + model combination."""
        return hashlib.sha256(f"{model}:{text}".encode()).hexdigest()[:16]

    def get(self, text: str, model: str) -> Optional[List[float]]:
        """Get cached embedding if exists."""
        key = self._hash_text(text, model)
        with self._lock:
            if key in self._cache:
                self._hits += 1
                self._access_order.remove(key)
                self._access_order.append(key)
                return self._cache[key]
            self._misses += 1
            return None

    def set(self, text: str, model: str, embedding: List[float]) -> None:
        """Cache an embedding."""
        key = self._hash_text(text, model)
        with self._lock:
            if key not in self._cache:
                if len(self._cache) >= self._maxsize:
                    oldest = self._access_order.pop(0)
                    del self._cache[oldest]
                self._access_order.append(key)
            self._cache[key] = embedding

    def stats(self) -> Dict[str, Any]:
        """Return cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0,
                "size": len(self._cache),
                "maxsize": self._maxsize,
            }

    def clear(self) -> None:
        """Clear the cache."""
        with self._lock:
            self._cache.clear()
            self._access_order.clear()
            self._hits = 0
            self._misses = 0


def pseudo_embedding(text: str, dimension: int) -> List[float]:
    """
    Deterministic stand-in vector for when the embedding backend is down.

    Seeded from a hash of the text, so the same text always maps to the same
    vector. Values are uniform in [-1, 1). Carries no semantic meaning.
    """
    if dimension <= 0:
        raise ValueError(f"dimension must be > 0, got {dimension}")
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = np.random.default_rng(seed)
    return (rng.random(dimension) * 2 - 1).astype(np.float32).tolist()


class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    # Exceptions worth retrying before giving up
    RETRY_ON: Tuple[Type[BaseException], ...] = (
        requests.ConnectionError,
        requests.Timeout,
    )

    def __init__(
        self,
        model: str,
        use_cache: bool = True,
        timeout: float = 30.0,
        max_retries: int = 3,
    ):
        self.model = model
        self.use_cache = use_cache
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.cache = EmbeddingCache()

    @abstractmethod
    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings for a batch of texts (provider-specific)."""
        pass

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return embedding dimension for this model."""
        pass

    def _with_retries(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception_type(self.RETRY_ON),
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)

    def embed(self, texts: Union[str, List[str]]) -> List[List[float]]:
        """
        Generate embeddings with caching.

        Args:
            texts: Single text or list of texts

        Returns:
            List of embedding vectors

        Raises:
            EmbeddingUnavailable: the backing service could not be reached
        """
        if isinstance(texts, str):
            texts = [texts]

        if not self.use_cache:
            return self._embed_batch(texts)

        results: List[Optional[List[float]]] = [None] * len(texts)
        texts_to_embed: List[Tuple[int, str]] = []

        for i, text in enumerate(texts):
            cached = self.cache.get(text, self.model)
            if cached is not None:
                results[i] = cached
            else:
                texts_to_embed.append((i, text))

        if texts_to_embed:
            indices, uncached_texts = zip(*texts_to_embed)
            new_embeddings = self._embed_batch(list(uncached_texts))

            for idx, text, embedding in zip(indices, uncached_texts, new_embeddings):
                self.cache.set(text, self.model, embedding)
                results[idx] = embedding

        return results  # type: ignore


class EmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI embedding provider with retries and caching."""

    MODEL_DIMENSIONS = {
        "text-embedding-3-large": 3072,
        "text-embedding-3-small": 1536,
        "text-embedding-ada-002": 1536,
    }

    RETRY_ON = (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)

    def __init__(
        self,
        model: str = "text-embedding-3-large",
        openai_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(model, **kwargs)
        self.api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                "or pass openai_api_key parameter."
            )
        self.client = OpenAI(
            api_key=self.api_key,
            base_url=base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 3072)

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings via OpenAI API."""
        try:
            response = self._with_retries(
                self.client.embeddings.create,
                model=self.model,
                input=texts,
            )
        except openai.APIError as exc:
            raise EmbeddingUnavailable(f"OpenAI embeddings failed: {exc}") from exc

        # Sort by index to ensure correct order
        embeddings = sorted(response.data, key=lambda x: x.index)
        return [emb.embedding for emb in embeddings]


# Alias for backwards compatibility
OpenAIEmbedding = EmbeddingProvider


class HuggingFaceEmbedding(BaseEmbeddingProvider):
    """
    HuggingFace sentence-transformers embedding provider (local, free).

    Requires: pip install "lodestar-rag[huggingface]"

    Example:
        >>> embedder = HuggingFaceEmbedding("all-MiniLM-L6-v2")
        >>> embeddings = embedder.embed(["Hello world"])
    """

    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-MiniLM-L12-v2": 384,
        "all-mpnet-base-v2": 768,
        "multi-qa-mpnet-base-dot-v1": 768,
        "paraphrase-MiniLM-L6-v2": 384,
        "BAAI/bge-small-en-v1.5": 384,
        "BAAI/bge-base-en-v1.5": 768,
        "BAAI/bge-large-en-v1.5": 1024,
        "BAAI/bge-m3": 1024,
    }

    def __init__(
        self,
        model: str = "all-MiniLM-L6-v2",
        hf_token: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(model, **kwargs)
        self.hf_token = hf_token or os.environ.get("HF_TOKEN")
        self._model = None
        self._dimension: Optional[int] = None

    def _load_model(self):
        """Lazy-load the model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "sentence-transformers not installed. "
                    'Run: pip install "lodestar-rag[huggingface]"'
                )
            try:
                self._model = SentenceTransformer(self.model, token=self.hf_token)
            except OSError as exc:
                raise EmbeddingUnavailable(f"Could not load model {self.model}: {exc}") from exc
            self._dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is not None:
            return self._dimension
        if self.model in self.MODEL_DIMENSIONS:
            return self.MODEL_DIMENSIONS[self.model]
        self._load_model()
        return self._dimension or 384

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings using sentence-transformers."""
        model = self._load_model()
        embeddings = model.encode(texts, convert_to_numpy=True)
        return embeddings.tolist()


class _HTTPEmbedding(BaseEmbeddingProvider):
    """Shared plumbing for JSON-over-HTTP embedding APIs."""

    def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        def _request() -> Dict[str, Any]:
            response = requests.post(url, headers=headers, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

        try:
            return self._with_retries(_request)
        except (requests.RequestException, ValueError) as exc:
            raise EmbeddingUnavailable(f"{type(self).__name__} request to {url} failed: {exc}") from exc


class JinaEmbedding(_HTTPEmbedding):
    """
    Jina AI embedding provider (API-based).

    Requires: JINA_API_KEY environment variable

    Example:
        >>> embedder = JinaEmbedding("jina-embeddings-v3")
        >>> embeddings = embedder.embed(["Hello world"])
    """

    API_URL = "https://api.jina.ai/v1/embeddings"

    MODEL_DIMENSIONS = {
        "jina-embeddings-v3": 1024,
        "jina-embeddings-v2-base-en": 768,
        "jina-embeddings-v2-small-en": 512,
        "jina-clip-v2": 1024,
        "jina-embeddings-v4": 2048,
    }

    def __init__(
        self,
        model: str = "jina-embeddings-v3",
        jina_api_key: Optional[str] = None,
        task: Optional[str] = None,
        **kwargs: Any,
    ):
        """
        Initialize Jina embedding provider.

        Args:
            model: Jina model name
            jina_api_key: API key (or set JINA_API_KEY env var)
            task: Optional task type for optimization:
                  'retrieval.query', 'retrieval.passage', 'text-matching'
        """
        super().__init__(model, **kwargs)
        self.api_key = jina_api_key or os.environ.get("JINA_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "Jina API key required. Set JINA_API_KEY environment variable "
                "or pass jina_api_key parameter."
            )
        self.task = task

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model, 1024)

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings via Jina AI API."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        payload: Dict[str, Any] = {"model": self.model, "input": texts}
        if self.task:
            payload["task"] = self.task

        data = self._post(self.API_URL, payload, headers=headers)
        try:
            return [item["embedding"] for item in data["data"]]
        except (KeyError, TypeError) as exc:
            raise EmbeddingUnavailable(f"Unexpected Jina response: {exc}") from exc


class OllamaEmbedding(_HTTPEmbedding):
    """
    Ollama embedding provider (local server).

    Example:
        >>> embedder = OllamaEmbedding("bge-m3", base_url="http://localhost:11434")
        >>> embeddings = embedder.embed(["Hello world"])
    """

    DEFAULT_URL = "http://localhost:11434"

    MODEL_DIMENSIONS = {
        "bge-m3": 1024,
        "mxbai-embed-large": 1024,
        "nomic-embed-text": 768,
        "all-minilm": 384,
        "snowflake-arctic-embed": 1024,
    }

    def __init__(
        self,
        model: str = "bge-m3",
        base_url: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(model, **kwargs)
        self.base_url = (base_url or os.environ.get("OLLAMA_ENDPOINT") or self.DEFAULT_URL).rstrip("/")

    @property
    def dimension(self) -> int:
        return self.MODEL_DIMENSIONS.get(self.model.split(":")[0], 1024)

    def _embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Generate embeddings via the Ollama /api/embed endpoint."""
        data = self._post(f"{self.base_url}/api/embed", {"model": self.model, "input": texts})
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise EmbeddingUnavailable(
                f"Ollama returned {len(embeddings) if isinstance(embeddings, list) else 'no'} "
                f"embeddings for {len(texts)} texts"
            )
        return embeddings


# ============ Provider Factory ============

def create_embedding_provider(
    provider: str = "ollama",
    model: Optional[str] = None,
    **kwargs
) -> BaseEmbeddingProvider:
    """
    Factory function to create embedding providers.

    Args:
        provider: Provider name ('ollama', 'openai', 'huggingface', 'jina')
        model: Model name (uses provider default if not specified)
        **kwargs: Additional provider-specific arguments

    Returns:
        Configured embedding provider

    Example:
        >>> embedder = create_embedding_provider("ollama", "bge-m3")
        >>> embedder = create_embedding_provider("huggingface", "all-MiniLM-L6-v2")
    """
    provider = provider.lower()

    if provider == "ollama":
        return OllamaEmbedding(model or "bge-m3", **kwargs)

    elif provider in ("openai", "openai-embedding"):
        return EmbeddingProvider(model or "text-embedding-3-large", **kwargs)

    elif provider in ("huggingface", "hf", "sentence-transformers"):
        return HuggingFaceEmbedding(model or "all-MiniLM-L6-v2", **kwargs)

    elif provider in ("jina", "jina-ai"):
        return JinaEmbedding(model or "jina-embeddings-v3", **kwargs)

    else:
        raise ConfigurationError(
            f"Unknown provider: {provider}. "
            f"Supported: 'ollama', 'openai', 'huggingface', 'jina'"
        )
