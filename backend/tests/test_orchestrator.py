"""
Tests for the streaming answer orchestrator.

Retrieval and the model are replaced; sessions, messages and the rate
limiter are real.
"""
import uuid

import pytest

from apps.authn.ratelimit import FixedWindowRateLimiter, InMemoryWindowStore
from apps.chat.models import ChatMessage, ChatSession, MessageRole
from apps.rag.errors import InternalError, InvalidInput, RateLimited, Unauthorized
from apps.rag.llm_client import LLMError
from apps.rag.orchestrator import (
    MAX_MESSAGE_LENGTH,
    ChatOrchestrator,
    build_citations,
    describe_stream_error,
    is_greeting,
    parse_chat_request,
)
from apps.rag.retrieval import RetrievalError


class FakeRetriever:
    def __init__(self, chunks=None, error=None):
        self.chunks = chunks or []
        self.error = error
        self.calls = []

    def __call__(self, embedding, match_count, threshold):
        self.calls.append((embedding, match_count, threshold))
        if self.error:
            raise self.error
        return list(self.chunks)


@pytest.fixture
def limiter(clock):
    return FixedWindowRateLimiter(InMemoryWindowStore(), limit=20, window_seconds=60, clock=clock)


@pytest.fixture
def retriever(make_chunk):
    return FakeRetriever([
        make_chunk(0.81, document_id='d1', title='guide.pdf', page=3, content='Open account settings.'),
        make_chunk(0.64, document_id='d1', title='guide.pdf', page=1, content='Security tab.'),
        make_chunk(0.42, document_id='d2', title='faq.md', page=None, content='Email support.'),
    ])


@pytest.fixture
def make_orchestrator(limiter, retriever, fake_llm):
    def _make(**overrides):
        options = dict(
            limiter=limiter,
            llm_factory=lambda: fake_llm,
            retriever=retriever,
            dimension=384,
            match_count=6,
            threshold=0.2,
            evidence_threshold=0.2,
            temperature=0.1,
            max_tokens=256,
        )
        options.update(overrides)
        return ChatOrchestrator(**options)
    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


# ============================================================================
# Request validation
# ============================================================================

class TestParseChatRequest:

    def test_valid_request(self, chat_payload):
        payload = chat_payload(session_id=str(uuid.uuid4()))

        request = parse_chat_request(payload, 384)

        assert request.message == payload['message']
        assert request.message_id == payload['message_id']
        assert request.session_id == payload['session_id']
        assert len(request.embedding) == 384

    def test_blank_session_id_means_new(self, chat_payload):
        assert parse_chat_request(chat_payload(session_id=''), 384).session_id is None

    @pytest.mark.parametrize('embedding', [
        None,
        'not a list',
        [0.1] * 383,
        [0.1] * 385,
        ['0.1'] * 384,
        [True] * 384,
        [float('nan')] + [0.1] * 383,
        [float('inf')] + [0.1] * 383,
    ])
    def test_invalid_embedding(self, chat_payload, embedding):
        with pytest.raises(InvalidInput, match='Invalid embedding format'):
            parse_chat_request(chat_payload(embedding=embedding), 384)

    def test_integer_components_are_accepted(self, chat_payload):
        request = parse_chat_request(chat_payload(embedding=[1] + [0] * 383), 384)

        assert request.embedding[0] == 1.0

    @pytest.mark.parametrize('message', [None, '', '   ', 42])
    def test_missing_message(self, chat_payload, message):
        with pytest.raises(InvalidInput, match='Message is required'):
            parse_chat_request(chat_payload(message=message), 384)

    def test_message_too_long(self, chat_payload):
        with pytest.raises(InvalidInput, match='too long'):
            parse_chat_request(chat_payload(message='x' * (MAX_MESSAGE_LENGTH + 1)), 384)

    def test_message_at_limit(self, chat_payload):
        parse_chat_request(chat_payload(message='x' * MAX_MESSAGE_LENGTH), 384)

    @pytest.mark.parametrize('message_id', [None, '', 'not-a-uuid', 123])
    def test_invalid_message_id(self, chat_payload, message_id):
        with pytest.raises(InvalidInput, match='message_id'):
            parse_chat_request(chat_payload(message_id=message_id), 384)

    def test_invalid_session_id(self, chat_payload):
        with pytest.raises(InvalidInput, match='session_id'):
            parse_chat_request(chat_payload(session_id='abc'), 384)

    def test_body_must_be_object(self):
        with pytest.raises(InvalidInput):
            parse_chat_request(['not', 'an', 'object'], 384)


class TestHelpers:

    @pytest.mark.parametrize('message', ['hello', 'Hi', 'hey!', 'Good morning', 'hi there', 'yo?'])
    def test_greetings(self, message):
        assert is_greeting(message)

    @pytest.mark.parametrize('message', ['history of the VPN', 'help me', 'hello-world config', 'say hello'])
    def test_not_greetings(self, message):
        assert not is_greeting(message)

    def test_citations_merge_pages_per_document(self, make_chunk):
        chunks = [
            make_chunk(0.9, document_id='d1', title='guide.pdf', page=3, section='Setup'),
            make_chunk(0.8, document_id='d2', title='faq.md', page=None),
            make_chunk(0.7, document_id='d1', title='guide.pdf', page=1),
            make_chunk(0.6, document_id='d1', title='guide.pdf', page=3),
        ]

        citations = build_citations(chunks)

        assert [c['document_title'] for c in citations] == ['guide.pdf', 'faq.md']
        assert citations[0]['pages'] == [1, 3]
        assert citations[0]['page'] == 1
        assert citations[0]['chunk_id'] == chunks[0].chunk_id
        assert citations[0]['section'] == 'Setup'
        assert citations[1]['pages'] == []
        assert citations[1]['page'] is None

    def test_describe_stream_error(self):
        assert '404' in describe_stream_error(LLMError('nope', status_code=404))
        assert '429' in describe_stream_error(LLMError('quota', status_code=429))
        assert 'too long' in describe_stream_error(LLMError('The model request timed out'))
        assert describe_stream_error(LLMError('bad gateway')) == 'Answer generation failed: bad gateway'
        assert describe_stream_error(RuntimeError('x')) == 'Answer generation was interrupted.'


# ============================================================================
# Request handling
# ============================================================================

@pytest.mark.django_db
class TestHandle:

    def test_validation_runs_before_authorization(self, orchestrator, chat_payload):
        with pytest.raises(InvalidInput):
            orchestrator.handle(None, chat_payload(message=''))

    def test_requires_user(self, orchestrator, chat_payload):
        with pytest.raises(Unauthorized):
            orchestrator.handle(None, chat_payload())

        assert ChatMessage.objects.count() == 0

    def test_rate_limited(self, make_orchestrator, chat_payload, clock):
        orchestrator = make_orchestrator(
            limiter=FixedWindowRateLimiter(InMemoryWindowStore(), limit=1, window_seconds=60, clock=clock)
        )
        orchestrator.handle('user-1', chat_payload())

        with pytest.raises(RateLimited) as exc_info:
            orchestrator.handle('user-1', chat_payload())

        assert exc_info.value.retry_after_seconds == 60
        assert exc_info.value.status == 429

    def test_duplicate_is_not_charged(self, make_orchestrator, chat_payload, clock):
        orchestrator = make_orchestrator(
            limiter=FixedWindowRateLimiter(InMemoryWindowStore(), limit=2, window_seconds=60, clock=clock)
        )
        payload = chat_payload()

        first = orchestrator.handle('user-1', payload)
        again = orchestrator.handle('user-1', payload)

        assert first.kind == 'stream'
        assert again.kind == 'duplicate'
        assert again.body['code'] == 'DUPLICATE_MESSAGE'
        assert ChatMessage.objects.filter(role=MessageRole.USER).count() == 1

        # The refunded unit is still available
        assert orchestrator.handle('user-1', chat_payload()).kind == 'stream'
        with pytest.raises(RateLimited):
            orchestrator.handle('user-1', chat_payload())

    def test_greeting_skips_retrieval(self, orchestrator, retriever, chat_payload, settings):
        settings.ASSISTANT_NAME = 'Support Assistant'

        outcome = orchestrator.handle('user-1', chat_payload(message='Hello!'))

        assert outcome.kind == 'answer'
        assert outcome.body['type'] == 'answer'
        assert 'Support Assistant' in outcome.body['text']
        assert outcome.body['session_id'] == outcome.session_id
        assert retriever.calls == []
        roles = list(ChatMessage.objects.order_by('created_at').values_list('role', flat=True))
        assert roles == [MessageRole.USER, MessageRole.ASSISTANT]

    def test_refusal_when_nothing_found(self, make_orchestrator, chat_payload):
        orchestrator = make_orchestrator(retriever=FakeRetriever([]))

        outcome = orchestrator.handle('user-1', chat_payload())

        assert outcome.kind == 'refusal'
        assert outcome.body['type'] == 'refusal'
        assert outcome.body['message'].startswith("I couldn't find")
        assert len(outcome.body['suggestions']) == 3
        assert ChatMessage.objects.filter(role=MessageRole.ASSISTANT).count() == 0
        assert ChatMessage.objects.filter(role=MessageRole.USER).count() == 1

    def test_refusal_when_evidence_weak(self, make_orchestrator, make_chunk, chat_payload, fake_llm):
        orchestrator = make_orchestrator(retriever=FakeRetriever([make_chunk(0.05), make_chunk(0.1)]))

        outcome = orchestrator.handle('user-1', chat_payload())

        assert outcome.kind == 'refusal'
        assert outcome.chunk_count == 2
        assert fake_llm.messages is None

    def test_retrieval_failure_is_internal_error(self, make_orchestrator, chat_payload):
        orchestrator = make_orchestrator(retriever=FakeRetriever(error=RetrievalError('db down')))

        with pytest.raises(InternalError):
            orchestrator.handle('user-1', chat_payload())

    def test_retriever_receives_embedding_and_limits(self, orchestrator, retriever, chat_payload):
        payload = chat_payload()

        orchestrator.handle('user-1', payload)

        embedding, match_count, threshold = retriever.calls[0]
        assert embedding == payload['embedding']
        assert (match_count, threshold) == (6, 0.2)

    def test_session_reused_across_turns(self, orchestrator, chat_payload):
        first = orchestrator.handle('user-1', chat_payload())
        second = orchestrator.handle('user-1', chat_payload(session_id=first.session_id))

        assert second.session_id == first.session_id
        assert ChatSession.objects.count() == 1

    def test_foreign_session_gets_new_session(self, orchestrator, chat_payload):
        theirs = orchestrator.handle('user-2', chat_payload())

        mine = orchestrator.handle('user-1', chat_payload(session_id=theirs.session_id))

        assert mine.session_id != theirs.session_id


# ============================================================================
# Streaming
# ============================================================================

@pytest.mark.django_db
class TestStream:

    def test_event_order(self, orchestrator, chat_payload):
        outcome = orchestrator.handle('user-1', chat_payload())

        events = list(outcome.events)

        assert [name for name, _ in events] == [
            'answer_start', 'answer_delta', 'answer_delta', 'sources', 'answer_end',
        ]
        assert events[0][1] == {'session_id': outcome.session_id}
        assert [payload['text'] for name, payload in events if name == 'answer_delta'] == [
            'The answer ', 'is 42.',
        ]

    def test_assistant_message_persisted_after_stream(self, orchestrator, chat_payload):
        outcome = orchestrator.handle('user-1', chat_payload())
        events = dict(outcome.events)

        message = ChatMessage.objects.get(id=events['answer_end']['message_id'])
        assert message.role == MessageRole.ASSISTANT
        assert message.content == 'The answer is 42.'
        assert message.citations == events['sources']['citations']
        assert str(message.session_id) == outcome.session_id

    def test_sources_group_by_document(self, orchestrator, chat_payload):
        events = dict(orchestrator.handle('user-1', chat_payload()).events)

        citations = events['sources']['citations']
        assert [c['document_title'] for c in citations] == ['guide.pdf', 'faq.md']
        assert citations[0]['pages'] == [1, 3]

    def test_prompt_contains_passed_chunks(self, orchestrator, chat_payload, fake_llm):
        list(orchestrator.handle('user-1', chat_payload(message='How do I reset?')).events)

        prompt = fake_llm.messages[0].content
        assert 'Open account settings.' in prompt
        assert 'How do I reset?' in prompt

    def test_model_error_ends_with_error_event(self, make_orchestrator, make_llm, chat_payload):
        llm = make_llm(['Partial '], error=LLMError('quota exceeded', status_code=429))
        orchestrator = make_orchestrator(llm_factory=lambda: llm)

        events = list(orchestrator.handle('user-1', chat_payload()).events)

        assert [name for name, _ in events] == ['answer_start', 'answer_delta', 'error']
        assert '429' in events[-1][1]['message']
        assert ChatMessage.objects.filter(role=MessageRole.ASSISTANT).count() == 0

    def test_client_factory_error(self, make_orchestrator, chat_payload):
        def no_client():
            raise LLMError('GEMINI_API_KEY not configured')

        orchestrator = make_orchestrator(llm_factory=no_client)

        events = list(orchestrator.handle('user-1', chat_payload()).events)

        assert [name for name, _ in events] == ['answer_start', 'error']
        assert 'GEMINI_API_KEY' in events[-1][1]['message']

    def test_disconnect_closes_model_stream(self, orchestrator, chat_payload, fake_llm):
        events = orchestrator.handle('user-1', chat_payload()).events

        assert next(events)[0] == 'answer_start'
        assert next(events)[0] == 'answer_delta'
        events.close()

        assert fake_llm.closed
        assert ChatMessage.objects.filter(role=MessageRole.ASSISTANT).count() == 0
