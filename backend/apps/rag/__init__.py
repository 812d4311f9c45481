"""
RAG (Retrieval Augmented Generation) app.

Provides:
- Vector retrieval over ready, enabled documents
- Evidence gate in front of generation
- Grounding prompt and streaming LLM clients
- The chat endpoint streaming answers with citations over SSE
"""
