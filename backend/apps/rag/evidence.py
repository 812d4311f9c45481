"""
Evidence gate.

Decides whether retrieved chunks are good enough to answer from. Generation
never runs on evidence this gate rejects.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from django.conf import settings

from apps.rag.retrieval import RetrievedChunk


NOTHING_FOUND_MESSAGE = (
    "I couldn't find any relevant information in the knowledge base to answer your question."
)
NOTHING_FOUND_SUGGESTIONS = [
    "Try rephrasing your question with different keywords.",
    "Check if the topic is covered in the documentation.",
    "Contact support for further assistance.",
]

NOT_RELEVANT_MESSAGE = (
    "I found some documents, but they don't seem closely related enough "
    "to confidently answer your question."
)
NOT_RELEVANT_SUGGESTIONS = [
    "Could you be more specific?",
    "Try asking about a different topic.",
    "The knowledge base might not have this information yet.",
]


@dataclass
class Refusal:
    message: str
    suggestions: List[str]

    def to_dict(self) -> dict:
        return {'message': self.message, 'suggestions': list(self.suggestions)}


@dataclass
class EvidenceResult:
    passed: bool
    chunks: List[RetrievedChunk] = field(default_factory=list)
    refusal: Optional[Refusal] = None


def check_evidence(
    chunks: List[RetrievedChunk],
    threshold: Optional[float] = None,
) -> EvidenceResult:
    """
    Rules, in order:
    1. No chunks: refuse, nothing found
    2. Best similarity below threshold: refuse, not relevant enough
    3. Otherwise pass every chunk through
    """
    if threshold is None:
        threshold = settings.CHAT_EVIDENCE_THRESHOLD

    if not chunks:
        return EvidenceResult(
            passed=False,
            refusal=Refusal(NOTHING_FOUND_MESSAGE, list(NOTHING_FOUND_SUGGESTIONS)),
        )

    if max(c.similarity for c in chunks) < threshold:
        return EvidenceResult(
            passed=False,
            refusal=Refusal(NOT_RELEVANT_MESSAGE, list(NOT_RELEVANT_SUGGESTIONS)),
        )

    return EvidenceResult(passed=True, chunks=list(chunks))
