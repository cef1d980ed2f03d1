# tests/test_chunking.py
import math
import random

import pytest

from lodestar.chunking import Chunker, chunk_id, split_sentences
from lodestar.config import ChunkingConfig
from lodestar.exceptions import ConfigurationError
from lodestar.models import Document


def _doc(content, **kwargs):
    return Document(content=content, file_name="doc.txt", **kwargs)


def test_fixed_chunks_on_text_without_separators():
    chunker = Chunker(ChunkingConfig(chunk_size=300, overlap=50, min_chunk_size=100))
    result = chunker.chunk(_doc("a" * 1000))

    assert result.success
    assert [c.start_offset for c in result.chunks] == [0, 250, 500, 750]
    assert result.chunks[-1].end_offset == 1000
    assert [c.index for c in result.chunks] == [0, 1, 2, 3]


def test_fixed_chunks_cover_document_without_gaps():
    text = "Lorem ipsum dolor sit amet. " * 40
    chunker = Chunker(ChunkingConfig(chunk_size=120, overlap=30, min_chunk_size=10))
    chunks = chunker.chunk(_doc(text)).chunks

    assert chunks[0].start_offset == 0
    assert chunks[-1].end_offset == len(text)
    for prev, cur in zip(chunks, chunks[1:]):
        assert cur.start_offset <= prev.end_offset
        assert cur.start_offset > prev.start_offset
    assert all(len(c.content) <= 120 for c in chunks)


def test_fixed_chunks_break_after_separator():
    text = "First paragraph here.\n\nSecond paragraph is somewhat longer than the first one."
    chunker = Chunker(ChunkingConfig(chunk_size=40, overlap=0, min_chunk_size=5))
    chunks = chunker.chunk(_doc(text)).chunks

    assert chunks[0].content == "First paragraph here."
    assert chunks[0].end_offset == text.index("Second")


def test_chunking_is_deterministic():
    text = "One sentence. Another one! And a question? " * 20
    config = ChunkingConfig(chunk_size=100, overlap=20, min_chunk_size=10)
    first = Chunker(config).chunk(_doc(text))
    second = Chunker(config).chunk(_doc(text))

    assert [(c.id, c.start_offset, c.end_offset) for c in first.chunks] == \
        [(c.id, c.start_offset, c.end_offset) for c in second.chunks]


def test_chunk_ids_depend_on_document_and_index():
    assert chunk_id("doc-1", 0) == chunk_id("doc-1", 0)
    assert chunk_id("doc-1", 0) != chunk_id("doc-1", 1)
    assert chunk_id("doc-1", 0) != chunk_id("doc-2", 0)


def test_sentence_strategy_splits_short_sentences():
    config = ChunkingConfig(chunk_size=5, overlap=0, min_chunk_size=1, strategy="sentence")
    result = Chunker(config).chunk(_doc("A. B. C."))

    assert [c.content for c in result.chunks] == ["A.", "B.", "C."]


def test_sentence_strategy_keeps_sentences_whole():
    text = "The cat sat. The dog ran off quickly. Birds sing! Is it raining? Yes."
    config = ChunkingConfig(chunk_size=30, overlap=0, min_chunk_size=1, strategy="sentence")
    chunks = Chunker(config).chunk(_doc(text)).chunks

    sentences = {text[s:e].strip() for s, e in split_sentences(text)}
    for chunk in chunks:
        assert chunk.content.endswith((".", "!", "?"))
        for part in chunk.content.replace("! ", "!|").replace("? ", "?|").replace(". ", ".|").split("|"):
            assert part in sentences


def test_sentence_strategy_overlap_repeats_trailing_sentence():
    text = "Aa. Bb. Cc. Dd. Ee. Ff."
    config = ChunkingConfig(chunk_size=12, overlap=4, min_chunk_size=1, strategy="sentence")
    chunks = Chunker(config).chunk(_doc(text)).chunks

    assert len(chunks) > 1
    for prev, cur in zip(chunks, chunks[1:]):
        assert cur.start_offset < prev.end_offset
        assert prev.content.split()[-1] == cur.content.split()[0]


def test_oversized_sentence_becomes_own_chunk_with_warning():
    text = "Short. " + "x" * 50 + ". Tail."
    config = ChunkingConfig(chunk_size=20, overlap=0, min_chunk_size=1, strategy="sentence")
    result = Chunker(config).chunk(_doc(text))

    assert any(len(c.content) > 20 for c in result.chunks)
    assert any("longer than chunk_size" in w for w in result.warnings)


def test_empty_document_is_not_an_error():
    result = Chunker().chunk(_doc("   \n\t "))

    assert not result.success
    assert result.chunks == []
    assert result.warnings


def test_short_final_chunk_is_kept_with_warning():
    config = ChunkingConfig(chunk_size=100, overlap=0, min_chunk_size=30)
    result = Chunker(config).chunk(_doc("b" * 110))

    assert result.chunks[-1].content == "b" * 10
    assert any("below min_chunk_size" in w for w in result.warnings)


def test_short_leading_text_is_merged_forward():
    text = "Header" + " " * 94 + "x" * 250
    config = ChunkingConfig(chunk_size=100, overlap=10, min_chunk_size=20)
    result = Chunker(config).chunk(_doc(text))

    assert result.chunks[0].start_offset == 0
    assert result.chunks[0].content.startswith("Header")
    assert len(result.chunks[0].content) >= 20
    assert any("Extended short span" in w for w in result.warnings)


def _whitespace_heavy_text(seed):
    rng = random.Random(seed)
    pieces = []
    while sum(len(p) for p in pieces) < 1500:
        pieces.append(rng.choice([
            "word",
            "Short line.",
            " " * rng.randint(1, 90),
            "\n\n",
            "z" * rng.randint(1, 40),
        ]))
    return "".join(pieces)


@pytest.mark.parametrize("seed", range(8))
@pytest.mark.parametrize("preserve", [False, True])
def test_every_non_space_char_lands_in_a_chunk(seed, preserve):
    text = _whitespace_heavy_text(seed)
    config = ChunkingConfig(
        chunk_size=80, overlap=10, min_chunk_size=25, preserve_whitespace=preserve
    )
    chunks = Chunker(config).chunk(_doc(text)).chunks

    covered = set()
    for c in chunks:
        covered.update(range(c.start_offset, c.end_offset))
    assert all(i in covered for i, ch in enumerate(text) if not ch.isspace())
    assert chunks[-1].end_offset == len(text)
    for prev, cur in zip(chunks, chunks[1:]):
        assert cur.start_offset > prev.start_offset
    for c in chunks[:-1]:
        assert c.content.strip()
        assert len(c.content) >= 25


@pytest.mark.parametrize("length,size,overlap", [
    (1000, 300, 50),
    (1001, 300, 50),
    (57, 10, 3),
    (5000, 128, 127),
    (10, 100, 20),
])
def test_chunk_count_is_bounded_by_stride(length, size, overlap):
    config = ChunkingConfig(chunk_size=size, overlap=overlap, min_chunk_size=1)
    chunks = Chunker(config).chunk(_doc("q" * length)).chunks

    assert 1 <= len(chunks) <= math.ceil(length / (size - overlap))
    assert chunks[-1].end_offset == length


def test_chunk_metadata():
    config = ChunkingConfig(chunk_size=50, overlap=10, min_chunk_size=1)
    chunks = Chunker(config).chunk(_doc("word " * 40)).chunks

    assert chunks[0].metadata["file_name"] == "doc.txt"
    assert chunks[0].metadata["chunk_size_config"] == 50
    assert chunks[0].metadata["overlap_size"] == 10
    assert [c.metadata["is_last_chunk"] for c in chunks].count(True) == 1
    assert chunks[-1].metadata["is_last_chunk"]


def test_overlap_percent_resolves_to_chars():
    chunker = Chunker(ChunkingConfig(chunk_size=200, overlap_percent=25))
    assert chunker.overlap == 50


def test_preserve_whitespace_keeps_raw_span():
    text = "  padded text  "
    config = ChunkingConfig(chunk_size=100, overlap=0, min_chunk_size=1, preserve_whitespace=True)
    chunks = Chunker(config).chunk(_doc(text)).chunks

    assert chunks[0].content == text


@pytest.mark.parametrize("kwargs", [
    {"chunk_size": 0},
    {"chunk_size": 100, "overlap": 100},
    {"chunk_size": 100, "overlap": -1},
    {"chunk_size": 100, "overlap": 10, "min_chunk_size": 200},
    {"strategy": "semantic"},
    {"separators": [""]},
])
def test_invalid_config_is_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        Chunker(ChunkingConfig(**kwargs))


def test_split_sentences_covers_text():
    text = "Hello there.  How are you?Fine!  "
    spans = split_sentences(text)

    assert spans[0][0] == 0
    assert spans[-1][1] == len(text)
    for prev, cur in zip(spans, spans[1:]):
        assert prev[1] == cur[0]
    assert split_sentences("   ") == []
