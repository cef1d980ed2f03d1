"""Second-stage relevance scoring of search candidates."""

import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence, Union

import openai
import requests
from openai import OpenAI
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .exceptions import ConfigurationError, MalformedResponse, RerankFailure
from .models import Scorable

logger = logging.getLogger(__name__)

Candidate = Union[Scorable, str]


def candidate_text(candidate: Candidate) -> str:
    """Text of a candidate: plain strings as-is, anything else through `.text`."""
    if isinstance(candidate, str):
        return candidate
    if isinstance(candidate, Scorable):
        return candidate.text
    raise TypeError(f"Cannot rerank {type(candidate).__name__}: expected str or an object with .text")


class BaseReranker(ABC):
    """
    Scores candidates against a query in a single call.

    `score` returns one float per candidate, aligned with the input order.
    Failures raise RerankFailure; they are never replaced by a default order.
    """

    @abstractmethod
    def score(self, query: str, candidates: Sequence[Candidate]) -> List[float]:
        pass

    def _check_aligned(self, scores: List[float], candidates: Sequence[Candidate]) -> List[float]:
        if len(scores) != len(candidates):
            raise MalformedResponse(
                f"{type(self).__name__} returned {len(scores)} scores for {len(candidates)} candidates"
            )
        return scores


class HTTPReranker(BaseReranker):
    """
    Rerank API client (Jina / Cohere / SiliconFlow / Infini-AI style).

    POSTs `{model, query, documents}` to `<base_url>/rerank` and reads
    `results[*].relevance_score` (or `score`), placed by `index` when given.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        base_url = base_url or os.environ.get("DEFAULT_BASE_URL")
        if not base_url:
            raise ConfigurationError(
                "Rerank base URL required. Set DEFAULT_BASE_URL environment variable "
                "or pass base_url parameter."
            )
        self.endpoint = base_url.rstrip("/") + "/rerank"
        self.model = model or os.environ.get("RERANK_MODEL") or "bge-reranker-v2-m3"
        self.api_key = api_key or os.environ.get("API_KEY")
        self.timeout = timeout
        self.session = session or requests.Session()

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(requests.ConnectionError),
        reraise=True,
    )
    def _post(self, payload: dict) -> Any:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        response = self.session.post(self.endpoint, json=payload, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def score(self, query: str, candidates: Sequence[Candidate]) -> List[float]:
        if not candidates:
            return []

        payload = {
            "model": self.model,
            "query": query,
            "documents": [candidate_text(c) for c in candidates],
        }
        try:
            data = self._post(payload)
        except ValueError as exc:
            raise MalformedResponse(f"Rerank response is not JSON: {exc}") from exc
        except requests.RequestException as exc:
            raise RerankFailure(f"Rerank request to {self.endpoint} failed: {exc}") from exc

        return self._check_aligned(self._parse_scores(data, len(candidates)), candidates)

    @staticmethod
    def _parse_scores(data: Any, expected: int) -> List[float]:
        try:
            items = data["results"]
        except (KeyError, TypeError) as exc:
            raise MalformedResponse("Rerank response has no 'results' list") from exc
        if not isinstance(items, list):
            raise MalformedResponse("Rerank response 'results' is not a list")

        indexed = all(isinstance(item, dict) and "index" in item for item in items)
        scores: List[Optional[float]] = [None] * expected if indexed else []
        for position, item in enumerate(items):
            try:
                value = item.get("relevance_score", item.get("score"))
                value = float(value)
            except (AttributeError, TypeError, ValueError) as exc:
                raise MalformedResponse(f"Rerank result {position} has no usable score") from exc
            if indexed:
                idx = item["index"]
                if not isinstance(idx, int) or not 0 <= idx < expected or scores[idx] is not None:
                    raise MalformedResponse(f"Rerank result {position} has invalid index {idx!r}")
                scores[idx] = value
            else:
                scores.append(value)

        if any(s is None for s in scores):
            raise MalformedResponse("Rerank response did not score every candidate")
        return scores  # type: ignore


class LLMReranker(BaseReranker):
    """Re-rank candidates with one batched LLM prompt."""

    DEFAULT_MODEL = "gpt-4o-mini"

    BATCH_PROMPT = """You are a relevance scoring assistant. Given a query and multiple document chunks, rate each chunk's relevance to answering the query.

Query: {query}

Documents:
{documents}

For each document, provide a relevance score from 0.0 to 1.0 where:
- 0.0 = Completely irrelevant
- 0.5 = Somewhat relevant
- 1.0 = Highly relevant, directly answers the query

Respond with ONLY a comma-separated list of {count} decimal numbers, one for each document in order.
Example for 3 documents: 0.8, 0.3, 0.9"""

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        openai_api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_chars: int = 500,
        client: Optional[Any] = None,
    ):
        self.model = model
        self.max_chars = max_chars
        if client is not None:
            self.client = client
        else:
            api_key = openai_api_key or os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise ConfigurationError(
                    "OpenAI API key required. Set OPENAI_API_KEY environment variable "
                    "or pass openai_api_key parameter."
                )
            self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1)

    def score(self, query: str, candidates: Sequence[Candidate]) -> List[float]:
        if not candidates:
            return []

        documents = "\n\n".join(
            f"[Doc {i + 1}]: {candidate_text(c)[:self.max_chars]}"
            for i, c in enumerate(candidates)
        )
        prompt = self.BATCH_PROMPT.format(query=query, documents=documents, count=len(candidates))

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0.0,
                max_tokens=10 * len(candidates) + 20,
            )
        except openai.APIError as exc:
            raise RerankFailure(f"LLM rerank call failed: {exc}") from exc

        content = (response.choices[0].message.content or "").strip()
        numbers = re.findall(r"-?\d+(?:\.\d+)?", content)
        if not numbers:
            raise MalformedResponse(f"LLM rerank reply has no scores: {content[:100]!r}")
        scores = [max(0.0, min(1.0, float(n))) for n in numbers]
        return self._check_aligned(scores, candidates)


def create_reranker(provider: str = "http", **kwargs: Any) -> BaseReranker:
    """
    Factory function to create a reranker.

    Args:
        provider: 'http' (rerank API) or 'llm' (OpenAI chat model)
        **kwargs: Reranker-specific arguments
    """
    provider = provider.lower()
    if provider == "http":
        return HTTPReranker(**kwargs)
    if provider == "llm":
        return LLMReranker(**kwargs)
    raise ConfigurationError(f"Unknown rerank provider: {provider}. Supported: 'http', 'llm'")
