"""
Sentence-aligned text chunking for document indexing.

Chunking is designed to be:
- Deterministic: Same pages and options always produce the same chunks
- Sentence-aligned: A chunk never starts or ends in the middle of a sentence
- Overlap-aware: Consecutive chunks share trailing sentences for context continuity
- Page-aware: Every chunk records which source pages it was cut from
"""
import re
import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

logger = logging.getLogger(__name__)

# Default chunking parameters
DEFAULT_CHUNK_SIZE = 1200  # characters (roughly 300 tokens)
DEFAULT_CHUNK_OVERLAP = 150  # characters of overlap between chunks

# Whitespace that follows sentence-ending punctuation
SENTENCE_BOUNDARY = re.compile(r'(?<=[.!?])\s+')


class ChunkerConfigError(ValueError):
    """Raised when chunk size / overlap cannot produce a terminating split."""
    pass


@dataclass
class PageText:
    """Extracted text of a single (1-based) page."""
    page: int
    text: str


@dataclass
class TextChunk:
    """A chunk of text with its index and source span."""
    index: int
    text: str
    start_char: int
    end_char: int
    pages: List[int] = field(default_factory=list)

    @property
    def char_count(self) -> int:
        return len(self.text)

    @property
    def meta(self) -> dict:
        """Metadata stored alongside the chunk row."""
        return {
            'pages': list(self.pages),
            'charStart': self.start_char,
            'charEnd': self.end_char,
        }


@dataclass
class _PageRange:
    page: int
    start: int
    end: int


def validate_options(chunk_size: int, chunk_overlap: int) -> None:
    """
    Reject configurations the overlap rewind cannot terminate with.

    Raises:
        ChunkerConfigError: If chunk_size <= 0, overlap < 0 or overlap >= chunk_size
    """
    if chunk_size <= 0:
        raise ChunkerConfigError(f"chunk_size must be positive, got {chunk_size}")
    if chunk_overlap < 0:
        raise ChunkerConfigError(f"overlap must not be negative, got {chunk_overlap}")
    if chunk_overlap >= chunk_size:
        raise ChunkerConfigError(
            f"overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size})"
        )


def build_buffer(pages: Sequence[PageText]) -> Tuple[str, List[_PageRange]]:
    """
    Concatenate page texts with a single separating space.

    Whitespace-only pages are skipped.

    Returns:
        The flat buffer and the [start, end) range of every page within it
    """
    parts: List[str] = []
    ranges: List[_PageRange] = []
    cursor = 0

    for page in pages:
        if not page.text or not page.text.strip():
            continue
        if parts:
            parts.append(' ')
            cursor += 1
        start = cursor
        parts.append(page.text)
        cursor += len(page.text)
        ranges.append(_PageRange(page=page.page, start=start, end=cursor))

    return ''.join(parts), ranges


def split_sentences(text: str) -> List[Tuple[int, int]]:
    """
    Split text into sentence spans.

    A sentence ends after '.', '!' or '?' followed by whitespace. Trailing text
    without terminal punctuation is still a sentence. Spans are trimmed of
    surrounding whitespace and expressed as absolute [start, end) offsets.
    """
    spans = []
    position = 0

    boundaries = [m.span() for m in SENTENCE_BOUNDARY.finditer(text)]
    boundaries.append((len(text), len(text)))

    for gap_start, gap_end in boundaries:
        start, end = position, gap_start
        while start < end and text[start].isspace():
            start += 1
        while end > start and text[end - 1].isspace():
            end -= 1
        if end > start:
            spans.append((start, end))
        position = gap_end

    return spans


def pages_for_span(ranges: Sequence[_PageRange], start: int, end: int) -> List[int]:
    """Sorted, de-duplicated pages whose range intersects [start, end)."""
    return sorted({r.page for r in ranges if r.end > start and r.start < end})


def chunk_pages(
    pages: Sequence[PageText],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[TextChunk]:
    """
    Split page texts into overlapping, sentence-aligned chunks.

    Sentences are accumulated greedily until the chunk spans at least
    chunk_size characters. After each chunk the cursor rewinds over as many
    trailing sentences as needed to cover chunk_overlap characters, but never
    back to the chunk's first sentence, so every iteration makes progress.

    Args:
        pages: Extracted pages in reading order
        chunk_size: Target size for each chunk in characters
        chunk_overlap: Minimum number of characters repeated between chunks

    Returns:
        List of TextChunk objects with contiguous indices starting at 0

    Raises:
        ChunkerConfigError: If the options are invalid
    """
    validate_options(chunk_size, chunk_overlap)

    text, ranges = build_buffer(pages)
    if not text:
        logger.warning("Empty text provided for chunking")
        return []

    sentences = split_sentences(text)
    chunks: List[TextChunk] = []
    cursor = 0

    while cursor < len(sentences):
        first = cursor
        start_char = sentences[first][0]

        # Always take at least one sentence
        cursor = first + 1
        while cursor < len(sentences) and sentences[cursor - 1][1] - start_char < chunk_size:
            cursor += 1

        end_char = sentences[cursor - 1][1]
        content = text[start_char:end_char]

        if content.strip():
            chunks.append(TextChunk(
                index=len(chunks),
                text=content,
                start_char=start_char,
                end_char=end_char,
                pages=pages_for_span(ranges, start_char, end_char),
            ))

        if cursor >= len(sentences) or chunk_overlap == 0:
            continue

        # Rewind for overlap, keeping at least one new sentence per chunk
        rewind = 0
        while cursor - rewind - 1 > first:
            rewind += 1
            if end_char - sentences[cursor - rewind][0] >= chunk_overlap:
                break
        cursor -= rewind

    logger.info(f"Created {len(chunks)} chunks from {len(text)} characters")

    return chunks
