"""Exception hierarchy for the Lodestar retrieval pipeline."""


class LodestarError(Exception):
    """Base class for all Lodestar errors."""


class ConfigurationError(LodestarError, ValueError):
    """Invalid configuration. Raised before any processing starts."""


class EmbeddingUnavailable(LodestarError):
    """The embedding backend could not be reached or did not answer."""


class VectorIndexError(LodestarError):
    """A vector index operation failed."""


class DimensionMismatch(VectorIndexError):
    """Vector length does not match the collection's dimensionality.

    Never resolved automatically: recreating the collection would discard
    the data already stored in it.
    """

    def __init__(self, collection: str, expected: int, actual: int):
        self.collection = collection
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Collection '{collection}' expects vectors of dimension {expected}, got {actual}"
        )


class CollectionNotFound(VectorIndexError):
    """The requested collection does not exist."""

    def __init__(self, collection: str):
        self.collection = collection
        super().__init__(f"Collection '{collection}' not found")


class IndexTransportError(VectorIndexError):
    """Network, timeout or protocol failure talking to the vector index."""


class RerankFailure(LodestarError):
    """Reranking failed. Fatal to the current query only."""


class MalformedResponse(RerankFailure):
    """The reranker answered, but the scores could not be used."""


class QueryCancelled(LodestarError):
    """A query was cancelled while waiting on an external call."""


class OperationTimeout(LodestarError, TimeoutError):
    """An external call did not finish within its configured timeout."""
