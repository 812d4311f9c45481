"""
Embedding generation with a shared, lazily loaded sentence-transformers model.

The model is an explicitly constructed resource (see apps.rag.services) shared
by the ingestion pipeline and the query embedding endpoint:
- Single-flight initialization: concurrent callers wait on the same load
- Batched embedding with per-item progress and cooperative cancellation
- Bounded waits for single embeddings (initialization included)
- Reference counting so the model can be unloaded once idle

all-MiniLM-L6-v2 produces 384-dimensional vectors.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

# Embedding model configuration
EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
EMBEDDING_DIMENSIONS = 384
DEFAULT_BATCH_SIZE = 5
DEFAULT_TIMEOUT = 60.0  # seconds

ProgressCallback = Callable[[int], None]
BatchProgressCallback = Callable[[int, int], None]


class EmbeddingError(Exception):
    """Raised when embedding generation fails."""
    pass


class EmbeddingTimeout(EmbeddingError):
    """Raised when the model could not load and embed within the allowed time."""
    code = "LOAD_TIMEOUT"


class EmbeddingCancelled(EmbeddingError):
    """Raised when a batch is cancelled between batches."""
    pass


def load_sentence_transformer(model_id: str, on_progress: ProgressCallback, device: str = ''):
    """
    Load a sentence-transformers model.

    Uses GPU if available, otherwise CPU. Model files are cached in the
    HuggingFace cache directory after the first download.
    """
    try:
        import torch
        from sentence_transformers import SentenceTransformer
    except ImportError as e:
        logger.error(f"Failed to import embedding dependencies: {e}")
        raise EmbeddingError(
            "sentence-transformers or torch not installed. "
            "Install with: pip install sentence-transformers torch"
        )

    on_progress(10)

    if not device:
        device = "cuda" if torch.cuda.is_available() else "cpu"

    logger.info(f"Loading embedding model {model_id} on {device}")
    start_time = time.time()
    model = SentenceTransformer(model_id, device=device)
    load_time_ms = (time.time() - start_time) * 1000
    logger.info(f"Embedding model loaded in {load_time_ms:.0f}ms")

    on_progress(90)
    return model


def l2_normalize(vector: Any, dimension: int) -> List[float]:
    """
    Convert a model output to a unit-length list of floats.

    Raises:
        EmbeddingError: If the vector has the wrong dimension or zero norm
    """
    array = np.asarray(vector, dtype=np.float32).reshape(-1)

    if array.shape[0] != dimension:
        raise EmbeddingError(
            f"Expected {dimension} dimensions, got {array.shape[0]}"
        )

    norm = float(np.linalg.norm(array))
    if not np.isfinite(norm) or norm == 0.0:
        raise EmbeddingError("Model returned a degenerate embedding")

    return (array / norm).tolist()


class EmbeddingModel:
    """
    Shared embedding model handle.

    Construct once per process and pass it to the components that need it.
    """

    def __init__(
        self,
        model_id: str = EMBEDDING_MODEL,
        dimension: int = EMBEDDING_DIMENSIONS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        loader: Optional[Callable[[str, ProgressCallback], Any]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.model_id = model_id
        self.dimension = dimension
        self.batch_size = batch_size
        self.timeout = timeout
        self._loader = loader or load_sentence_transformer

        self._lock = threading.Lock()
        self._handle = None
        self._loading: Optional[Future] = None
        self._listeners: List[ProgressCallback] = []
        self._refs = 0
        self._closing = False
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="embed")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._handle is not None

    def initialize(self, on_progress: Optional[ProgressCallback] = None):
        """
        Load the model once and return the handle.

        Concurrent callers join the in-flight load instead of starting another.
        Every caller's callback receives load progress (0-100).
        """
        with self._lock:
            if self._handle is not None:
                if on_progress:
                    on_progress(100)
                return self._handle

            if on_progress:
                self._listeners.append(on_progress)

            if self._loading is not None:
                future = self._loading
                owner = False
            else:
                future = Future()
                self._loading = future
                owner = True

        if not owner:
            return future.result()

        self._notify(0)
        try:
            handle = self._loader(self.model_id, self._notify)
        except BaseException as e:
            with self._lock:
                self._loading = None
                self._listeners = []
            logger.error(f"Embedding model load failed: {e}")
            future.set_exception(e)
            raise

        with self._lock:
            self._handle = handle
            self._loading = None
        self._notify(100)
        with self._lock:
            self._listeners = []
        future.set_result(handle)
        return handle

    def _notify(self, percent: int) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(percent)
            except Exception as e:
                logger.warning(f"Model load progress callback failed: {e}")

    def acquire(self) -> "EmbeddingModel":
        """Register a user of the shared model."""
        with self._lock:
            self._refs += 1
        return self

    def release(self) -> None:
        """Drop a user; unloads the model if close() was requested and no users remain."""
        with self._lock:
            self._refs = max(0, self._refs - 1)
            should_unload = self._closing and self._refs == 0
        if should_unload:
            self._unload()

    @contextmanager
    def lease(self):
        """Hold a reference for the duration of a with-block."""
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def close(self) -> None:
        """Unload the model now, or as soon as the last lease is released."""
        with self._lock:
            self._closing = True
            idle = self._refs == 0
        if idle:
            self._unload()

    def _unload(self) -> None:
        with self._lock:
            self._handle = None
            self._closing = False
        logger.info(f"Embedding model {self.model_id} unloaded")

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def _encode(self, handle, text: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingError("Cannot generate embedding for empty text")
        try:
            output = handle.encode(text, normalize_embeddings=True)
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding model failed: {e}")
        return l2_normalize(output, self.dimension)

    def embed_batch(
        self,
        texts: Sequence[str],
        on_progress: Optional[BatchProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[List[float]]:
        """
        Generate embeddings for multiple texts.

        Texts are processed in batches of batch_size. Progress is reported
        after every item; between batches the thread yields and the optional
        cancel_event is checked.

        Returns:
            List of embedding vectors (same order as input)

        Raises:
            EmbeddingError: If any embedding fails
            EmbeddingCancelled: If cancel_event is set between batches
        """
        handle = self.initialize()
        embeddings: List[List[float]] = []
        total = len(texts)

        for batch_start in range(0, total, self.batch_size):
            if cancel_event is not None and cancel_event.is_set():
                raise EmbeddingCancelled(
                    f"Embedding cancelled after {len(embeddings)}/{total} texts"
                )

            for text in texts[batch_start:batch_start + self.batch_size]:
                try:
                    embeddings.append(self._encode(handle, text))
                except EmbeddingError as e:
                    logger.error(f"Failed to embed text {len(embeddings) + 1}/{total}: {e}")
                    raise

                if on_progress:
                    on_progress(len(embeddings), total)

            # Let other threads run between batches
            time.sleep(0)

        logger.info(f"Generated {len(embeddings)} embeddings")
        return embeddings

    def embed_one(self, text: str, timeout: Optional[float] = None) -> List[float]:
        """
        Generate an embedding for a single text with a bounded wait.

        Initialization and embedding together must finish within timeout
        seconds. A timed-out load keeps running in the background and is
        only published once complete, so later calls are unaffected.

        Raises:
            EmbeddingTimeout: If the wait exceeds timeout
            EmbeddingError: If embedding fails
        """
        wait = self.timeout if timeout is None else timeout
        future = self._executor.submit(lambda: self._encode(self.initialize(), text))

        try:
            return future.result(timeout=wait)
        except FutureTimeout:
            future.cancel()
            logger.error(f"Embedding timed out after {wait}s")
            raise EmbeddingTimeout("ERR_LOAD_TIMEOUT")
