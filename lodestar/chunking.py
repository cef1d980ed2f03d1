"""Text chunking strategies for document processing."""

import logging
import re
import time
import uuid
from typing import List, Optional, Tuple

from .config import ChunkingConfig
from .models import Chunk, ChunkingResult, Document

logger = logging.getLogger(__name__)

# Fixed namespace so chunk ids are reproducible across processes
CHUNK_NAMESPACE = uuid.UUID("6f1c3b0e-8a52-4c1e-9d57-2b7c4f0a9e31")

SENTENCE_TERMINALS = ".!?。！？"
_SENTENCE_RE = re.compile(r"[^.!?。！？]+[.!?。！？]*|[.!?。！？]+")
_NON_SPACE = re.compile(r"\S")

Span = Tuple[int, int]


def chunk_id(document_id: str, index: int) -> str:
    """Stable chunk id derived from the owning document and chunk position."""
    return str(uuid.uuid5(CHUNK_NAMESPACE, f"{document_id}:{index}"))


def split_sentences(text: str) -> List[Span]:
    """
    Split text into sentence spans on terminal punctuation.

    Spans are contiguous and cover the whole text: each sentence keeps the
    whitespace that precedes it, and trailing whitespace is folded into the
    last sentence. Whitespace-only text yields no spans.
    """
    spans: List[Span] = []
    for match in _SENTENCE_RE.finditer(text):
        start, end = match.span()
        if not text[start:end].strip():
            if spans:
                spans[-1] = (spans[-1][0], end)
            continue
        spans.append((start, end))
    return spans


class Chunker:
    """
    Deterministic document chunker.

    The same document and config always produce the same boundaries and ids,
    so re-ingesting a document overwrites its points instead of duplicating
    them.
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()
        self.config.validate()
        self.overlap = self.config.overlap_chars

    def chunk(self, document: Document) -> ChunkingResult:
        """Split one document into ordered, overlapping chunks."""
        started = time.perf_counter()
        result = ChunkingResult(document=document)

        if not document.content.strip():
            result.warnings.append(f"Document '{document.file_name or document.id}' has no content")
            result.elapsed = time.perf_counter() - started
            return result

        if self.config.strategy == "sentence":
            spans = self._sentence_spans(document.content, result.warnings)
        else:
            spans = self._fixed_spans(document.content, result.warnings)

        last = len(spans) - 1
        for index, (start, end) in enumerate(spans):
            result.chunks.append(Chunk(
                id=chunk_id(document.id, index),
                document_id=document.id,
                index=index,
                content=self._clean(document.content[start:end]),
                start_offset=start,
                end_offset=end,
                metadata={
                    "file_name": document.file_name,
                    "strategy": self.config.strategy,
                    "chunk_size_config": self.config.chunk_size,
                    "overlap_size": self.overlap,
                    "is_last_chunk": index == last,
                },
            ))

        result.success = bool(result.chunks)
        result.elapsed = time.perf_counter() - started
        logger.debug(
            "Chunked %s into %d chunks in %.1fms",
            document.file_name or document.id, len(result.chunks), result.elapsed * 1000,
        )
        return result

    def _clean(self, text: str) -> str:
        return text if self.config.preserve_whitespace else text.strip()

    # ============ Fixed strategy ============

    def _find_break(self, content: str, start: int, end: int) -> int:
        """Move `end` back to just after the highest-priority separator in the window."""
        window_start = max(start + 1, end - self.config.separator_window)
        for sep in self.config.separators:
            idx = content.rfind(sep, window_start, end)
            if idx != -1:
                return idx + len(sep)
        return end

    def _extend_short_span(self, content: str, start: int, end: int) -> int:
        """Smallest end past `end` whose cleaned span reaches min_chunk_size, or the document end."""
        min_size = self.config.min_chunk_size
        if self.config.preserve_whitespace:
            return min(len(content), start + min_size)
        first = _NON_SPACE.search(content, start)
        if first is None:
            return len(content)
        # Stripped length only grows when a non-space char lands at or past this index
        match = _NON_SPACE.search(content, max(end, first.start() + min_size - 1))
        return match.end() if match else len(content)

    def _fixed_spans(self, content: str, warnings: List[str]) -> List[Span]:
        size = self.config.chunk_size
        min_size = self.config.min_chunk_size
        length = len(content)
        spans: List[Span] = []
        start = 0

        while start < length:
            hard_end = min(start + size, length)
            is_last = hard_end >= length
            end = hard_end if is_last else self._find_break(content, start, hard_end)
            text = self._clean(content[start:end])

            if not is_last and len(text) < min_size and end != hard_end:
                # Separator cut too early, fall back to the hard boundary
                end = hard_end
                text = self._clean(content[start:end])

            if text.strip() and not is_last and len(text) < min_size:
                # Short but not blank: merge forward into the following text
                end = self._extend_short_span(content, start, end)
                is_last = end >= length
                text = self._clean(content[start:end])
                warnings.append(
                    f"Extended short span at offset {start} to {end - start} chars "
                    f"to reach min_chunk_size={min_size}"
                )

            if not text.strip():
                if is_last and spans:
                    # Blank tail: stretch the previous chunk to the document end
                    spans[-1] = (spans[-1][0], length)
                elif not is_last:
                    warnings.append(f"Skipped blank span at offset {start}")
            else:
                if is_last and len(text) < min_size and spans:
                    warnings.append(
                        f"Final chunk is {len(text)} chars, below min_chunk_size={min_size}"
                    )
                spans.append((start, end))

            if is_last:
                break
            start = max(start + 1, end - self.overlap)

        return spans

    # ============ Sentence strategy ============

    def _measure(self, content: str, sentences: List[Span], first: int, last: int) -> int:
        return len(self._clean(content[sentences[first][0]:sentences[last][1]]))

    def _overlap_seed(self, content: str, sentences: List[Span], group: List[int]) -> List[int]:
        """Longest suffix of `group` whose sentences fit within the overlap."""
        seed: List[int] = []
        total = 0
        for idx in reversed(group):
            total += len(content[sentences[idx][0]:sentences[idx][1]].strip())
            if total > self.overlap:
                break
            seed.insert(0, idx)
        return seed

    def _sentence_spans(self, content: str, warnings: List[str]) -> List[Span]:
        sentences = split_sentences(content)
        size = self.config.chunk_size
        groups: List[List[int]] = []
        current: List[int] = []

        for i in range(len(sentences)):
            if current and self._measure(content, sentences, current[0], i) >= size:
                groups.append(current)
                seed = self._overlap_seed(content, sentences, current)
                while seed and self._measure(content, sentences, seed[0], i) >= size:
                    seed = seed[1:]
                current = seed
            current.append(i)
        if current:
            groups.append(current)

        spans = [(sentences[g[0]][0], sentences[g[-1]][1]) for g in groups]
        for index, (start, end) in enumerate(spans[:-1]):
            chars = len(self._clean(content[start:end]))
            if chars < self.config.min_chunk_size:
                warnings.append(
                    f"Chunk {index} is {chars} chars, below min_chunk_size={self.config.min_chunk_size}"
                )
            if chars > size:
                warnings.append(f"Chunk {index} holds a single sentence longer than chunk_size={size}")
        return spans
