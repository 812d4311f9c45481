"""
Retrieval service for RAG queries.

Nearest-neighbour search over chunk embeddings with pgvector's cosine
distance operator. Only chunks of ready, enabled documents are searched.
"""
import json
import logging
import math
from dataclasses import dataclass, asdict
from typing import List, Optional

from django.conf import settings
from django.db import DatabaseError, connection

from apps.docs.models import DocumentStatus

logger = logging.getLogger(__name__)

DEFAULT_MATCH_COUNT = 6
MAX_MATCH_COUNT = 20
DEFAULT_THRESHOLD = 0.2


class RetrievalError(Exception):
    """Raised when the vector query cannot be run."""
    pass


@dataclass
class RetrievedChunk:
    """A chunk returned by vector search, with its document context."""
    chunk_id: str
    content: str
    document_id: str
    document_title: str
    document_url: Optional[str]
    page: Optional[int]
    section: Optional[str]
    similarity: float

    def to_dict(self) -> dict:
        return asdict(self)


SEARCH_SQL = """
    SELECT
        c.id AS chunk_id,
        c.content,
        c.meta,
        d.id AS document_id,
        d.name AS document_title,
        d.meta AS document_meta,
        1 - (e.vector <=> %s::vector) AS similarity
    FROM kb_embeddings e
    INNER JOIN kb_chunks c ON e.chunk_id = c.id
    INNER JOIN kb_documents d ON c.document_id = d.id
    WHERE d.status = %s
      AND d.enabled
      AND e.model = %s
      AND 1 - (e.vector <=> %s::vector) > %s
    ORDER BY e.vector <=> %s::vector
    LIMIT %s
"""


def vector_literal(vector: List[float]) -> str:
    """pgvector text form: [0.1,0.2,...]"""
    return '[' + ','.join(repr(float(x)) for x in vector) + ']'


def _json_field(value) -> dict:
    # psycopg decodes jsonb; other drivers may hand back the raw text
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        return json.loads(value)
    return {}


def _first_page(meta: dict) -> Optional[int]:
    pages = meta.get('pages') or []
    if pages:
        return pages[0]
    return meta.get('page')


def _row_to_chunk(row) -> RetrievedChunk:
    chunk_id, content, meta, doc_id, title, doc_meta, similarity = row
    meta = _json_field(meta)
    doc_meta = _json_field(doc_meta)
    return RetrievedChunk(
        chunk_id=str(chunk_id),
        content=content,
        document_id=str(doc_id),
        document_title=title,
        document_url=doc_meta.get('url'),
        page=_first_page(meta),
        section=meta.get('section'),
        similarity=float(similarity),
    )


def retrieve_chunks(
    query_vector: List[float],
    match_count: int = DEFAULT_MATCH_COUNT,
    threshold: float = DEFAULT_THRESHOLD,
    model: Optional[str] = None,
) -> List[RetrievedChunk]:
    """
    Retrieve the chunks most similar to a query vector.

    `threshold` prunes candidates inside the query; the evidence gate makes
    the final relevance decision.

    Args:
        query_vector: Embedding of the user's question (EMBEDDING_DIMENSION long)
        match_count: Maximum number of chunks (clamped to 1..20)
        threshold: Minimum cosine similarity passed to the query
        model: Embedding model whose vectors to search (EMBEDDING_MODEL_ID)

    Returns:
        Chunks ordered by descending similarity; possibly empty

    Raises:
        RetrievalError: On a dimension mismatch or a database error
    """
    dimension = settings.EMBEDDING_DIMENSION
    if len(query_vector) != dimension:
        raise RetrievalError(
            f"Query vector has {len(query_vector)} dimensions, expected {dimension}"
        )
    if not all(isinstance(x, (int, float)) and math.isfinite(x) for x in query_vector):
        raise RetrievalError("Query vector contains non-finite values")

    match_count = max(1, min(int(match_count), MAX_MATCH_COUNT))
    model = model or settings.EMBEDDING_MODEL_ID
    literal = vector_literal(query_vector)

    params = [
        literal,
        DocumentStatus.READY.value,
        model,
        literal,
        threshold,
        literal,
        match_count,
    ]

    try:
        with connection.cursor() as cursor:
            cursor.execute(SEARCH_SQL, params)
            rows = cursor.fetchall()
    except DatabaseError as e:
        logger.error(f"Vector search failed: {e}")
        raise RetrievalError("Vector search failed") from e

    chunks = [_row_to_chunk(row) for row in rows]
    chunks.sort(key=lambda c: c.similarity, reverse=True)

    logger.info(
        f"Retrieved {len(chunks)} chunks (match_count={match_count}, threshold={threshold}"
        + (f", top={chunks[0].similarity:.3f})" if chunks else ")")
    )

    return chunks
