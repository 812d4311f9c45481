"""
Streaming answer orchestrator.

Per request:
    validate -> authorize -> rate-limit -> dedup -> persist user message
    -> greeting shortcut
       | retrieve + evidence gate -> refusal
       | generate stream -> persist assistant message

Everything up to the stream runs inside handle(). The stream itself is a
generator of (event, payload) pairs so the transport decides how to send it.
Stream events are always, in order:
    answer_start, answer_delta*, sources, answer_end
with a terminal `error` event replacing the remainder on failure.
"""
import logging
import math
import uuid
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from django.conf import settings

from apps.authn.ratelimit import FixedWindowRateLimiter
from apps.chat.messages import DuplicateMessageError, get_message_by_id, save_message
from apps.chat.models import MessageRole
from apps.chat.sessions import get_or_create_session
from apps.rag.errors import InternalError, InvalidInput, RateLimited, Unauthorized
from apps.rag.evidence import EvidenceResult, check_evidence
from apps.rag.llm_client import BaseLLMClient, LLMError
from apps.rag.prompt import build_messages
from apps.rag.retrieval import RetrievalError, RetrievedChunk, retrieve_chunks
from apps.rag.sse import Event

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000

GREETINGS = (
    'hello', 'hi', 'hey', 'greetings', 'yo',
    'good morning', 'good afternoon', 'good evening',
)

DUPLICATE_MESSAGE = 'This message has already been processed.'


@dataclass
class ChatRequest:
    embedding: List[float]
    message: str
    message_id: str
    session_id: Optional[str] = None


@dataclass
class ChatOutcome:
    """
    What the view should send back.

    kind is one of:
    - 'duplicate' / 'answer' / 'refusal': `body` is the JSON response
    - 'stream': `events` yields (event, payload) pairs
    """
    kind: str
    body: Optional[dict] = None
    events: Optional[Iterator[Event]] = None
    session_id: Optional[str] = None
    chunk_count: int = 0


def _parse_uuid(value, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise InvalidInput(f"{field_name} is required")
    try:
        return str(uuid.UUID(value))
    except ValueError:
        raise InvalidInput(f"{field_name} must be a valid UUID")


def parse_chat_request(payload, dimension: int) -> ChatRequest:
    """
    Validate the request body before any side effect.

    Raises:
        InvalidInput: With a message naming the offending field
    """
    if not isinstance(payload, dict):
        raise InvalidInput("Request body must be a JSON object")

    embedding = payload.get('embedding')
    if (
        not isinstance(embedding, list)
        or len(embedding) != dimension
        or not all(
            isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)
            for x in embedding
        )
    ):
        raise InvalidInput("Invalid embedding format")

    message = payload.get('message')
    if not isinstance(message, str) or not message.strip():
        raise InvalidInput("Message is required")
    if len(message) > MAX_MESSAGE_LENGTH:
        raise InvalidInput(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")

    message_id = _parse_uuid(payload.get('message_id'), 'message_id')

    session_id = payload.get('session_id')
    if session_id in (None, ''):
        session_id = None
    else:
        session_id = _parse_uuid(session_id, 'session_id')

    return ChatRequest(
        embedding=[float(x) for x in embedding],
        message=message,
        message_id=message_id,
        session_id=session_id,
    )


def is_greeting(message: str) -> bool:
    """A fixed greeting, alone or followed by a space, '?' or '!'."""
    text = message.lower().strip()
    return any(
        text == g or text.startswith(g + ' ') or text.startswith(g + '?') or text.startswith(g + '!')
        for g in GREETINGS
    )


def greeting_answer() -> str:
    return (
        f"Hello! I'm your {settings.ASSISTANT_NAME}. I can help you find information "
        "in our knowledge base. What would you like to know?"
    )


def build_citations(chunks: List[RetrievedChunk]) -> List[dict]:
    """
    One citation per document, in first-seen order, with the pages of all
    its chunks merged into a sorted list.
    """
    by_document = {}
    for chunk in chunks:
        citation = by_document.get(chunk.document_id)
        if citation is None:
            citation = {
                'chunk_id': chunk.chunk_id,
                'document_title': chunk.document_title,
                'url': chunk.document_url,
                'page': None,
                'pages': [],
                'section': chunk.section,
            }
            by_document[chunk.document_id] = citation
        if chunk.page is not None and chunk.page not in citation['pages']:
            citation['pages'].append(chunk.page)

    citations = list(by_document.values())
    for citation in citations:
        citation['pages'].sort()
        citation['page'] = citation['pages'][0] if citation['pages'] else None
    return citations


def describe_stream_error(error: Exception) -> str:
    """User-facing text for a failed generation; never a stack trace."""
    status = getattr(error, 'status_code', None)
    if status == 404:
        return 'The answer model was not found (404). Check the API key and model name.'
    if status == 429:
        return 'The answer model quota was exceeded (429). Please try again later.'
    if isinstance(error, LLMError) and 'timed out' in str(error):
        return 'The answer model took too long to respond. Please try again.'
    message = str(error)
    if isinstance(error, LLMError) and message:
        return f"Answer generation failed: {message[:100]}"
    return 'Answer generation was interrupted.'


class ChatOrchestrator:
    """
    Coordinates one chat request. Collaborators are injected so tests can
    replace the limiter, retriever, gate and model.
    """

    def __init__(
        self,
        limiter: FixedWindowRateLimiter,
        llm_factory: Callable[[], BaseLLMClient],
        retriever: Callable[..., List[RetrievedChunk]] = retrieve_chunks,
        gate: Callable[..., EvidenceResult] = check_evidence,
        dimension: Optional[int] = None,
        match_count: Optional[int] = None,
        threshold: Optional[float] = None,
        evidence_threshold: Optional[float] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ):
        self.limiter = limiter
        self.llm_factory = llm_factory
        self.retriever = retriever
        self.gate = gate
        self.dimension = dimension or settings.EMBEDDING_DIMENSION
        self.match_count = match_count or settings.RETRIEVAL_MATCH_COUNT
        self.threshold = settings.RETRIEVAL_THRESHOLD if threshold is None else threshold
        self.evidence_threshold = (
            settings.CHAT_EVIDENCE_THRESHOLD if evidence_threshold is None else evidence_threshold
        )
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS

    def handle(self, user_id: Optional[str], payload) -> ChatOutcome:
        """
        Run the request up to (not including) generation.

        Raises:
            InvalidInput, Unauthorized, RateLimited, InternalError
        """
        request = parse_chat_request(payload, self.dimension)

        if not user_id:
            raise Unauthorized()

        limit = self.limiter.check(user_id)
        if not limit.allowed:
            logger.warning(f"Chat rate limit exceeded for user {user_id}")
            raise RateLimited(limit.retry_after_seconds)

        if get_message_by_id(request.message_id) is not None:
            return self._duplicate(user_id, request.message_id)

        session_id = get_or_create_session(user_id, request.session_id, request.message)

        try:
            save_message(request.message_id, session_id, MessageRole.USER, request.message)
        except DuplicateMessageError:
            # Lost a race with a concurrent retry of the same message
            return self._duplicate(user_id, request.message_id)

        if is_greeting(request.message):
            return self._greeting(session_id)

        try:
            chunks = self.retriever(
                request.embedding,
                match_count=self.match_count,
                threshold=self.threshold,
            )
        except RetrievalError as e:
            logger.error(f"Retrieval failed for session {session_id}: {e}")
            raise InternalError()

        evidence = self.gate(chunks, self.evidence_threshold)
        if not evidence.passed:
            logger.info(f"Evidence gate refused session {session_id} ({len(chunks)} chunks)")
            return ChatOutcome(
                kind='refusal',
                body={'type': 'refusal', **evidence.refusal.to_dict()},
                session_id=session_id,
                chunk_count=len(chunks),
            )

        return ChatOutcome(
            kind='stream',
            events=self.stream_events(session_id, request.message, evidence.chunks),
            session_id=session_id,
            chunk_count=len(evidence.chunks),
        )

    def _duplicate(self, user_id: str, message_id: str) -> ChatOutcome:
        logger.info(f"Duplicate message {message_id} from user {user_id}")
        # Retries of an already processed message are not charged
        self.limiter.refund(user_id)
        return ChatOutcome(
            kind='duplicate',
            body={'code': 'DUPLICATE_MESSAGE', 'message': DUPLICATE_MESSAGE},
        )

    def _greeting(self, session_id: str) -> ChatOutcome:
        answer = greeting_answer()
        assistant_id = str(uuid.uuid4())
        save_message(assistant_id, session_id, MessageRole.ASSISTANT, answer)
        return ChatOutcome(
            kind='answer',
            body={
                'type': 'answer',
                'text': answer,
                'session_id': session_id,
                'message_id': assistant_id,
            },
            session_id=session_id,
        )

    def stream_events(
        self,
        session_id: str,
        question: str,
        chunks: List[RetrievedChunk],
    ) -> Iterator[Event]:
        """
        Generate the answer stream.

        The assistant message is persisted only after the model stream ends.
        Closing this generator (client disconnect) closes the model stream
        and persists nothing.
        """
        assistant_id = str(uuid.uuid4())
        deltas = None

        yield 'answer_start', {'session_id': session_id}

        try:
            client = self.llm_factory()
            deltas = client.stream_chat(
                build_messages(chunks, question),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )

            parts = []
            for delta in deltas:
                parts.append(delta)
                yield 'answer_delta', {'text': delta}

            full_text = ''.join(parts)
            logger.info(f"Stream completed for session {session_id}: {len(full_text)} chars")

            citations = build_citations(chunks)
            yield 'sources', {'citations': citations}

            save_message(assistant_id, session_id, MessageRole.ASSISTANT, full_text, citations)

            yield 'answer_end', {'message_id': assistant_id}

        except Exception as e:
            logger.error(f"Answer stream failed for session {session_id}: {e}")
            yield 'error', {'message': describe_stream_error(e)}

        finally:
            close = getattr(deltas, 'close', None)
            if close is not None:
                close()


def build_orchestrator(services) -> ChatOrchestrator:
    """Orchestrator wired to the process-wide services."""
    return ChatOrchestrator(
        limiter=services.chat_limiter,
        llm_factory=services.llm_factory,
    )
