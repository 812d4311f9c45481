"""
Shared fixtures.

Tests run against SQLite with an in-process embedding encoder, a scripted
LLM and an executor that runs ingestion jobs inline. Bearer tokens are
HS256 JWTs signed with AUTH_JWT_SECRET.
"""
import time
import uuid
from concurrent.futures import Executor, Future
from typing import List, Optional

import fitz
import jwt
import numpy as np
import pytest

from apps.authn import ratelimit
from apps.authn.ratelimit import FixedWindowRateLimiter, InMemoryWindowStore
from apps.docs.storage import FileStorage
from apps.indexing.embedder import EMBEDDING_DIMENSIONS, EmbeddingModel
from apps.rag.retrieval import RetrievedChunk
from apps.rag.services import Services, set_services

TEST_JWT_SECRET = 'kbchat-test-secret-0123456789abcdef0123456789'


class FakeEncoder:
    """Stands in for a SentenceTransformer; deterministic per text."""

    def __init__(self):
        self.calls = 0

    def encode(self, text, normalize_embeddings=True):
        self.calls += 1
        vector = np.zeros(EMBEDDING_DIMENSIONS, dtype=np.float32)
        for i, ch in enumerate(text[:64]):
            vector[(ord(ch) + i) % EMBEDDING_DIMENSIONS] += 1.0
        return vector


class FakeLLM:
    """Scripted streaming client that records what it was asked."""

    model_name = 'fake-llm'

    def __init__(self, deltas: List[str], error: Optional[Exception] = None):
        self.deltas = deltas
        self.error = error
        self.messages = None
        self.closed = False

    def stream_chat(self, messages, temperature=0.1, max_tokens=1024):
        self.messages = messages
        try:
            for delta in self.deltas:
                yield delta
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class InlineExecutor(Executor):
    """
    Runs submitted jobs immediately in the calling thread. With run_inline
    off, jobs are only recorded.
    """

    def __init__(self):
        self.submitted = []
        self.run_inline = True

    def submit(self, fn, *args, **kwargs):
        self.submitted.append((fn, args, kwargs))
        future = Future()
        if not self.run_inline:
            return future
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture(autouse=True)
def configure_settings(settings, tmp_path, monkeypatch):
    settings.AUTH_JWT_SECRET = TEST_JWT_SECRET
    settings.CHANNEL_LAYER_BACKEND = 'memory'
    settings.CHANNEL_LAYERS = {
        'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'},
    }
    settings.RATE_LIMIT_BACKEND = 'memory'
    settings.UPLOAD_ROOT = tmp_path / 'uploads'
    monkeypatch.delenv('DISABLE_RATE_LIMITING', raising=False)
    monkeypatch.setattr(ratelimit, '_upload_limiter', None)
    return settings


# ============================================================================
# Auth
# ============================================================================

@pytest.fixture
def make_token():
    def _make(sub='user-1', roles=(), expires_in=300, **claims):
        payload = {
            'sub': sub,
            'preferred_username': claims.pop('preferred_username', sub),
            'email': claims.pop('email', f'{sub}@example.com'),
            'realm_access': {'roles': list(roles)},
            'exp': int(time.time()) + expires_in,
            'iat': int(time.time()),
        }
        payload.update(claims)
        return jwt.encode(payload, TEST_JWT_SECRET, algorithm='HS256')
    return _make


@pytest.fixture
def user_headers(make_token):
    return {'HTTP_AUTHORIZATION': f"Bearer {make_token('user-1')}"}


@pytest.fixture
def admin_headers(make_token):
    return {'HTTP_AUTHORIZATION': f"Bearer {make_token('admin-1', roles=['admin'])}"}


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def embedding_model(encoder):
    model = EmbeddingModel(
        dimension=EMBEDDING_DIMENSIONS,
        batch_size=5,
        timeout=5,
        loader=lambda model_id, on_progress: encoder,
    )
    yield model
    model._executor.shutdown(wait=False)


@pytest.fixture
def fake_llm():
    return FakeLLM(['The answer ', 'is 42.'])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(embedding_model, fake_llm, clock, tmp_path):
    services = Services(
        embedding_model=embedding_model,
        storage=FileStorage(tmp_path / 'uploads'),
        chat_limiter=FixedWindowRateLimiter(
            InMemoryWindowStore(), limit=20, window_seconds=60, clock=clock
        ),
        llm_factory=lambda: fake_llm,
        ingestion_executor=InlineExecutor(),
    )
    set_services(services)
    yield services
    set_services(None)


# ============================================================================
# Data
# ============================================================================

@pytest.fixture
def sample_text():
    return (
        "To reset your password, open the account settings page. "
        "Choose the security tab and click reset password. "
        "A confirmation email is sent to your registered address. "
        "Follow the link in the email within 24 hours. "
        "If the link expires, request a new one from the same page. "
        "Contact support if you no longer have access to your email."
    )


@pytest.fixture
def make_chunk():
    def _make(similarity, document_id='doc-1', title='guide.pdf', page=1,
              content='Relevant passage.', section=None, url=None):
        return RetrievedChunk(
            chunk_id=str(uuid.uuid4()),
            content=content,
            document_id=document_id,
            document_title=title,
            document_url=url,
            page=page,
            section=section,
            similarity=similarity,
        )
    return _make


@pytest.fixture
def chat_payload():
    def _make(message='How do I reset my password?', **overrides):
        payload = {
            'embedding': [0.05] * EMBEDDING_DIMENSIONS,
            'message': message,
            'message_id': str(uuid.uuid4()),
        }
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
def make_llm():
    return FakeLLM


@pytest.fixture
def make_pdf():
    """Build PDF bytes with PyMuPDF; each argument is one page's lines, empty for a blank page."""
    def _make(*pages: List[str]) -> bytes:
        with fitz.open() as doc:
            for lines in pages:
                page = doc.new_page()
                if lines:
                    page.insert_text((72, 72), '\n'.join(lines), fontsize=11)
            return doc.tobytes()
    return _make
