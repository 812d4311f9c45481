"""
Per-page text extraction from uploaded documents.

Supports:
- .pdf: Best-effort text extraction using PyMuPDF, one entry per page
- .txt / .md: UTF-8 text (with fallback for encoding errors) as a single page
"""
import re
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from apps.indexing.chunker import PageText

logger = logging.getLogger(__name__)

# Fewer extracted characters than this means an image-only (scanned) document
MIN_TEXT_CHARS = 50


class ExtractionError(Exception):
    """Raised when text extraction fails."""
    pass


@dataclass
class ExtractResult:
    """Extracted pages plus document-level metadata."""
    pages: List[PageText]
    page_count: int
    metadata: dict = field(default_factory=dict)

    @property
    def total_chars(self) -> int:
        return len(''.join(p.text for p in self.pages).strip())


def normalize_page_text(text: str) -> str:
    """Collapse all whitespace runs to single spaces."""
    return re.sub(r'\s+', ' ', text).strip()


def extract_pages_from_pdf(
    data: bytes,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> ExtractResult:
    """
    Extract text per page from PDF bytes using PyMuPDF.

    This is a best-effort extraction - scanned (image-based) PDFs yield
    little or no text. There is no OCR.

    Raises:
        ExtractionError: If the PDF cannot be opened or parsed
    """
    import fitz  # PyMuPDF

    try:
        pages = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            page_count = doc.page_count
            info = doc.metadata or {}
            for page_num, page in enumerate(doc, start=1):
                text = normalize_page_text(page.get_text())
                if text:
                    pages.append(PageText(page=page_num, text=text))
                if on_progress:
                    on_progress(page_num, page_count)
    except Exception as e:
        raise ExtractionError(f"Failed to extract text from PDF: {e}")

    if not pages:
        logger.warning("No text extracted from PDF (may be image-based)")

    return ExtractResult(
        pages=pages,
        page_count=page_count,
        metadata={
            'title': info.get('title') or None,
            'author': info.get('author') or None,
            'file_size': len(data),
        },
    )


def extract_pages_from_text(data: bytes) -> ExtractResult:
    """Treat a plain text or markdown file as a single page."""
    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError:
        logger.warning("UTF-8 decode failed, using errors='ignore'")
        text = data.decode('utf-8', errors='ignore')

    pages = [PageText(page=1, text=text)] if text.strip() else []
    return ExtractResult(pages=pages, page_count=1, metadata={'file_size': len(data)})


def extract_pages(
    data: bytes,
    filename: str,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> ExtractResult:
    """
    Extract per-page text from a document.

    Determines the extraction method from the file extension.

    Raises:
        ExtractionError: If extraction fails or the format is not supported
    """
    suffix = Path(filename).suffix.lower()

    logger.info(f"Extracting text from {filename} ({len(data)} bytes)")

    if suffix == '.pdf':
        return extract_pages_from_pdf(data, on_progress)

    if suffix in ('.txt', '.md', '.markdown'):
        result = extract_pages_from_text(data)
        if on_progress:
            on_progress(1, 1)
        return result

    raise ExtractionError(f"Unsupported file format: {suffix}")


def is_scanned(result: ExtractResult, min_chars: int = MIN_TEXT_CHARS) -> bool:
    """True if extraction yielded no meaningful text (scanned PDF)."""
    return result.total_chars < min_chars
