"""
Grounding prompt construction.

Only the content, title and page of chunks that passed the evidence gate
go into the prompt.
"""
from typing import List

from django.conf import settings

from apps.rag.llm_client import LLMMessage
from apps.rag.retrieval import RetrievedChunk

SOURCE_SEPARATOR = "\n\n---\n\n"

NO_ANSWER_SENTENCE = (
    "I'm sorry, I don't have enough information in my current documentation to answer that."
)


def format_context(chunks: List[RetrievedChunk]) -> str:
    """[Source i] (Document: title, Page: page) blocks separated by ---."""
    return SOURCE_SEPARATOR.join(
        f"[Source {i}] (Document: {c.document_title}, Page: {c.page if c.page is not None else 'n/a'})\n{c.content}"
        for i, c in enumerate(chunks, 1)
    )


def build_grounding_prompt(chunks: List[RetrievedChunk], question: str) -> str:
    return f"""
You are the {settings.ASSISTANT_NAME}.
Your goal is to provide accurate, helpful, and concise answers based ONLY on the provided context.

CONTEXT FROM KNOWLEDGE BASE:
{format_context(chunks)}

USER QUESTION:
{question}

INSTRUCTIONS:
1. Use ONLY the information in the CONTEXT above.
2. If the answer is not in the context, say: "{NO_ANSWER_SENTENCE}"
3. Use markdown formatting (bolding, lists) for readability.
4. Do NOT use inline citations like [Source 1], [1], or (Source 1) in your response text. The sources are displayed separately.
5. Keep your tone professional and helpful.

STRICT RULE: Do not use any outside knowledge. If the context is missing specific details, state that you don't know based on the documents.
""".strip()


def build_messages(chunks: List[RetrievedChunk], question: str) -> List[LLMMessage]:
    return [LLMMessage(role="user", content=build_grounding_prompt(chunks, question))]
