"""
Tests for the evidence gate and grounding prompt.
"""
from apps.rag.evidence import (
    NOT_RELEVANT_MESSAGE,
    NOT_RELEVANT_SUGGESTIONS,
    NOTHING_FOUND_MESSAGE,
    NOTHING_FOUND_SUGGESTIONS,
    check_evidence,
)
from apps.rag.prompt import NO_ANSWER_SENTENCE, build_messages, format_context


class TestCheckEvidence:

    def test_no_chunks_is_refused(self):
        result = check_evidence([], threshold=0.2)

        assert not result.passed
        assert result.chunks == []
        assert result.refusal.message == NOTHING_FOUND_MESSAGE
        assert result.refusal.suggestions == NOTHING_FOUND_SUGGESTIONS

    def test_weak_chunks_are_refused(self, make_chunk):
        result = check_evidence([make_chunk(0.05), make_chunk(0.1)], threshold=0.2)

        assert not result.passed
        assert result.refusal.message == NOT_RELEVANT_MESSAGE
        assert result.refusal.suggestions == NOT_RELEVANT_SUGGESTIONS

    def test_one_strong_chunk_passes_all(self, make_chunk):
        chunks = [make_chunk(0.05), make_chunk(0.25)]

        result = check_evidence(chunks, threshold=0.2)

        assert result.passed
        assert result.refusal is None
        assert result.chunks == chunks

    def test_threshold_is_inclusive(self, make_chunk):
        assert check_evidence([make_chunk(0.2)], threshold=0.2).passed

    def test_defaults_to_configured_threshold(self, make_chunk, settings):
        settings.CHAT_EVIDENCE_THRESHOLD = 0.5

        assert not check_evidence([make_chunk(0.3)]).passed
        assert check_evidence([make_chunk(0.6)]).passed

    def test_refusal_to_dict(self):
        refusal = check_evidence([], threshold=0.2).refusal

        assert refusal.to_dict() == {
            'message': NOTHING_FOUND_MESSAGE,
            'suggestions': NOTHING_FOUND_SUGGESTIONS,
        }


class TestPrompt:

    def test_format_context_numbers_sources(self, make_chunk):
        context = format_context([
            make_chunk(0.9, title='guide.pdf', page=4, content='Open settings.'),
            make_chunk(0.8, title='faq.md', page=None, content='Email support.'),
        ])

        assert context == (
            "[Source 1] (Document: guide.pdf, Page: 4)\nOpen settings."
            "\n\n---\n\n"
            "[Source 2] (Document: faq.md, Page: n/a)\nEmail support."
        )

    def test_messages_carry_question_and_context(self, make_chunk, settings):
        settings.ASSISTANT_NAME = 'Support Assistant'

        messages = build_messages([make_chunk(0.9, content='Open settings.')], 'How do I reset?')

        assert len(messages) == 1
        assert messages[0].role == 'user'
        prompt = messages[0].content
        assert 'Support Assistant' in prompt
        assert 'Open settings.' in prompt
        assert 'How do I reset?' in prompt
        assert NO_ANSWER_SENTENCE in prompt
