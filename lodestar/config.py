"""Configuration models for the Lodestar retrieval pipeline."""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from .exceptions import ConfigurationError


STRATEGIES = ("fixed", "sentence")

# Paragraph break first, then line break, then sentence ends.
DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", "。", "！", "？"]


@dataclass
class ChunkingConfig:
    """How documents are cut into chunks. Sizes are in characters."""

    chunk_size: int = 800
    overlap: int = 200
    overlap_percent: Optional[float] = None  # overrides `overlap` when set
    strategy: str = "fixed"  # 'fixed' or 'sentence'
    separators: List[str] = field(default_factory=lambda: list(DEFAULT_SEPARATORS))
    preserve_whitespace: bool = False
    min_chunk_size: int = 100
    separator_window: int = 100  # how far back to look for a separator

    @property
    def overlap_chars(self) -> int:
        """Overlap in characters, resolving `overlap_percent` if given."""
        if self.overlap_percent is not None:
            return int(self.chunk_size * self.overlap_percent / 100)
        return self.overlap

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigurationError(f"chunk_size must be > 0, got {self.chunk_size}")
        if self.overlap_percent is not None and not 0 <= self.overlap_percent < 100:
            raise ConfigurationError(
                f"overlap_percent must be in [0, 100), got {self.overlap_percent}"
            )
        overlap = self.overlap_chars
        if not 0 <= overlap < self.chunk_size:
            raise ConfigurationError(
                f"overlap must satisfy 0 <= overlap < chunk_size ({self.chunk_size}), got {overlap}"
            )
        if not 0 <= self.min_chunk_size <= self.chunk_size:
            raise ConfigurationError(
                f"min_chunk_size must be in [0, chunk_size], got {self.min_chunk_size}"
            )
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Unknown chunking strategy: {self.strategy}. Supported: {', '.join(STRATEGIES)}"
            )
        if self.separator_window < 0:
            raise ConfigurationError("separator_window must be >= 0")
        if any(not sep for sep in self.separators):
            raise ConfigurationError("separators must be non-empty strings")


@dataclass
class LodestarConfig:
    """Configuration for the retrieval orchestrator and its collaborators."""

    # Embedding settings
    embedding_provider: str = "ollama"  # 'ollama', 'openai', 'huggingface', 'jina'
    embedding_model: Optional[str] = None  # provider default if None
    embedding_dim: int = 1024
    embedding_base_url: Optional[str] = None
    embedding_api_key: Optional[str] = None

    # Vector index settings
    index_backend: str = "usearch"  # 'usearch' or 'qdrant'
    index_dir: Optional[str] = None  # None keeps the usearch index in memory
    collection: str = "knowledge_base"
    metric: str = "cos"
    dtype: str = "f32"
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: Optional[str] = None

    # Rerank settings
    rerank_provider: str = "http"  # 'http' or 'llm'
    rerank_model: Optional[str] = None
    rerank_base_url: Optional[str] = None
    rerank_api_key: Optional[str] = None

    # Retrieval settings
    top_k: int = 5
    top_m: int = 5
    query_embedding_fallback: bool = True
    context_separator: str = "\n\n"

    # Concurrency and timeouts (seconds)
    embed_workers: int = 4
    embed_timeout: float = 30.0
    upsert_timeout: float = 30.0
    search_timeout: float = 10.0
    rerank_timeout: float = 30.0
    upsert_batch_size: int = 64

    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)

    def validate(self) -> None:
        """Validate once at startup. Raises ConfigurationError."""
        self.chunking.validate()
        if self.embedding_dim <= 0:
            raise ConfigurationError(f"embedding_dim must be > 0, got {self.embedding_dim}")
        if self.top_k <= 0:
            raise ConfigurationError(f"top_k must be > 0, got {self.top_k}")
        if self.top_m <= 0:
            raise ConfigurationError(f"top_m must be > 0, got {self.top_m}")
        if self.embed_workers <= 0:
            raise ConfigurationError(f"embed_workers must be > 0, got {self.embed_workers}")
        if self.upsert_batch_size <= 0:
            raise ConfigurationError("upsert_batch_size must be > 0")
        for name in ("embed_timeout", "upsert_timeout", "search_timeout", "rerank_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        if self.index_backend not in ("usearch", "qdrant"):
            raise ConfigurationError(f"Unknown index backend: {self.index_backend}")
        if self.rerank_provider not in ("http", "llm"):
            raise ConfigurationError(f"Unknown rerank provider: {self.rerank_provider}")
        if not self.collection:
            raise ConfigurationError("collection name must not be empty")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LodestarConfig":
        """
        Build a config from environment variables.

        Unset variables keep their defaults. The result is validated before
        it is returned.

        Args:
            environ: Mapping to read from (defaults to os.environ)
        """
        env = os.environ if environ is None else environ

        def _int(key: str, default: int) -> int:
            raw = env.get(key)
            if raw is None or not raw.strip():
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None

        def _float(key: str, default: Optional[float]) -> Optional[float]:
            raw = env.get(key)
            if raw is None or not raw.strip():
                return default
            try:
                return float(raw)
            except ValueError:
                raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None

        def _bool(key: str, default: bool) -> bool:
            raw = env.get(key)
            if raw is None or not raw.strip():
                return default
            value = raw.strip().lower()
            if value in ("1", "true", "yes", "on"):
                return True
            if value in ("0", "false", "no", "off"):
                return False
            raise ConfigurationError(f"{key} must be a boolean, got {raw!r}")

        chunking = ChunkingConfig(
            chunk_size=_int("CHUNKING_CHUNK_SIZE", 800),
            overlap=_int("CHUNKING_OVERLAP", 200),
            overlap_percent=_float("CHUNKING_OVERLAP_PERCENT", None),
            strategy=env.get("CHUNKING_STRATEGY", "fixed"),
            min_chunk_size=_int("CHUNKING_MIN_CHUNK_SIZE", 100),
            preserve_whitespace=_bool("CHUNKING_PRESERVE_WHITESPACE", False),
        )

        config = cls(
            embedding_provider=env.get("EMBEDDING_PROVIDER", "ollama"),
            embedding_model=env.get("OLLAMA_EMBEDDING_MODEL") or env.get("EMBEDDING_MODEL"),
            embedding_dim=_int("QDRANT_VECTOR_SIZE", 1024),
            embedding_base_url=env.get("OLLAMA_ENDPOINT"),
            index_backend=env.get("INDEX_BACKEND", "usearch"),
            index_dir=env.get("LODESTAR_INDEX_DIR"),
            collection=env.get("LODESTAR_COLLECTION", "knowledge_base"),
            qdrant_url=env.get("QDRANT_URL", "http://localhost:6333"),
            qdrant_api_key=env.get("QDRANT_CLOUD_API_KEY"),
            rerank_provider=env.get("RERANK_PROVIDER", "http"),
            rerank_model=env.get("RERANK_MODEL"),
            rerank_base_url=env.get("DEFAULT_BASE_URL"),
            rerank_api_key=env.get("API_KEY"),
            top_k=_int("SEARCH_TOP_K", 5),
            top_m=_int("SEARCH_RERANK_TOP_M", 5),
            query_embedding_fallback=_bool("QUERY_EMBEDDING_FALLBACK", True),
            embed_workers=_int("EMBED_WORKERS", 4),
            embed_timeout=_float("EMBED_TIMEOUT", 30.0),
            upsert_timeout=_float("UPSERT_TIMEOUT", 30.0),
            search_timeout=_float("SEARCH_TIMEOUT", 10.0),
            rerank_timeout=_float("RERANK_TIMEOUT", 30.0),
            upsert_batch_size=_int("UPSERT_BATCH_SIZE", 64),
            chunking=chunking,
        )
        config.validate()
        return config
