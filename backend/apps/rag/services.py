"""
Process-wide service container.

Holds the shared resources that request handlers and the ingestion
pipeline use: the embedding model, file storage, the chat rate limiter,
the LLM client factory and the ingestion thread pool. Built once from
settings on first use; tests install their own with set_services().
"""
import functools
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional

from django.conf import settings

from apps.authn.ratelimit import FixedWindowRateLimiter, build_chat_limiter
from apps.docs.storage import FileStorage
from apps.indexing.embedder import EmbeddingModel, load_sentence_transformer
from apps.indexing.pipeline import IngestionPipeline
from apps.rag.llm_client import BaseLLMClient, create_llm_client

logger = logging.getLogger(__name__)


@dataclass
class Services:
    embedding_model: EmbeddingModel
    storage: FileStorage
    chat_limiter: FixedWindowRateLimiter
    llm_factory: Callable[[], BaseLLMClient]
    ingestion_executor: Executor
    _pipeline: Optional[IngestionPipeline] = field(default=None, repr=False)

    @property
    def pipeline(self) -> IngestionPipeline:
        if self._pipeline is None:
            self._pipeline = IngestionPipeline(self.storage, self.embedding_model)
        return self._pipeline

    def close(self) -> None:
        self.ingestion_executor.shutdown(wait=False)
        self.embedding_model.close()


def build_services() -> Services:
    """Construct every shared resource from settings."""
    embedding_model = EmbeddingModel(
        model_id=settings.EMBEDDING_MODEL_ID,
        dimension=settings.EMBEDDING_DIMENSION,
        batch_size=settings.EMBEDDING_BATCH_SIZE,
        timeout=settings.EMBEDDING_TIMEOUT,
        loader=functools.partial(load_sentence_transformer, device=settings.EMBEDDING_DEVICE),
    )
    logger.info(
        f"Services configured: embeddings={settings.EMBEDDING_MODEL_ID}, "
        f"llm={settings.LLM_PROVIDER}, rate_limit={settings.RATE_LIMIT_BACKEND}"
    )
    return Services(
        embedding_model=embedding_model,
        storage=FileStorage(settings.UPLOAD_ROOT),
        chat_limiter=build_chat_limiter(),
        llm_factory=create_llm_client,
        ingestion_executor=ThreadPoolExecutor(
            max_workers=settings.INGESTION_WORKERS,
            thread_name_prefix="ingest",
        ),
    )


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def set_services(services: Optional[Services]) -> None:
    """Install a container (tests) or clear it with None."""
    global _services
    with _services_lock:
        _services = services
