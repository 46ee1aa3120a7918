"""
Embedding engine for ctxsync.

Backends turn batches of text into fixed-dimension vectors: a local
sentence-transformers model (lazy loaded) or a remote OpenAI-compatible
/embeddings endpoint. The engine batches requests, rate-limits them and
retries transient failures per batch.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from sentence_transformers import SentenceTransformer

from .errors import CtxsyncError, EmbeddingExhausted, EmbeddingTransient
from .utils import RateLimiter, retry_on_failure

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (EmbeddingTransient, TimeoutError, ConnectionError)


class EmbeddingBackend(ABC):
    """An inference function addressed by a model identifier."""

    model_id: str

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Width of every vector this backend produces."""

    @abstractmethod
    def encode(self, texts: list[str]) -> list[list[float]]:
        """
        Embed a batch of texts, preserving order.

        Raises:
            EmbeddingTransient: For failures worth retrying
        """

    def close(self) -> None:
        pass


class SentenceTransformerBackend(EmbeddingBackend):
    """
    Local backend around sentence-transformers.

    Features:
    - Lazy model loading (only loads when first needed)
    - Automatic GPU detection with CPU fallback
    - Normalized embeddings
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: Optional[str] = None, batch_size: int = 32):
        """
        Initialize the embedding model.

        Args:
            model_name: Name of the sentence-transformers model to use
            device: Device to use ('cuda', 'cpu', or None for auto-detect)
            batch_size: Texts per forward pass inside one encode call
        """
        self.model_id = model_name
        self.device = device
        self.batch_size = batch_size
        self._model: Optional[SentenceTransformer] = None
        self._dimension: Optional[int] = None
        self._model_lock = threading.Lock()  # Thread safety for lazy loading

    @property
    def model(self) -> SentenceTransformer:
        """Lazy-load the model on first access (thread-safe)."""
        if self._model is None:
            with self._model_lock:
                # Double-check pattern: another thread might have loaded it
                if self._model is None:
                    logger.info(f"Loading embedding model: {self.model_id}")
                    self._model = SentenceTransformer(self.model_id, device=self.device)
                    logger.info(f"Model loaded on device: {self._model.device}")
        return self._model

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            test_embedding = self.model.encode("test", show_progress_bar=False)
            self._dimension = len(test_embedding)
            logger.info(f"Embedding dimension: {self._dimension}")
        return self._dimension

    def encode(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            embeddings = self.model.encode(
                texts,
                batch_size=self.batch_size,
                convert_to_numpy=True,
                show_progress_bar=False,
                normalize_embeddings=True,
            )
        except (RuntimeError, OSError) as e:
            # Device OOM and model file I/O errors usually clear on retry
            raise EmbeddingTransient(f"Local embedding failed: {e}") from e
        return [emb.tolist() for emb in embeddings]

    def __repr__(self) -> str:
        loaded = "loaded" if self._model is not None else "not loaded"
        return f"SentenceTransformerBackend(model={self.model_id}, {loaded})"


class HttpEmbeddingBackend(EmbeddingBackend):
    """
    Remote backend for OpenAI-compatible embedding endpoints.

    POSTs {"model", "input"} to {base_url}/embeddings. HTTP 429, 5xx,
    timeouts and transport errors are reported as EmbeddingTransient.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        dimension: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model_id = model
        self._dimension = dimension
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.Client(timeout=timeout, headers=headers, transport=transport)
        logger.info(f"HTTP embedding backend initialized: {self.base_url}, model={model}")

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.encode(["dimension probe"])[0])
            logger.info(f"Embedding dimension: {self._dimension}")
        return self._dimension

    def encode(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            response = self.client.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model_id, "input": texts},
            )
        except httpx.TimeoutException as e:
            raise EmbeddingTransient(f"Embedding request timed out: {e}") from e
        except httpx.TransportError as e:
            raise EmbeddingTransient(f"Embedding request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise EmbeddingTransient(f"Embedding endpoint returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise CtxsyncError(
                f"Embedding endpoint rejected request: HTTP {response.status_code} {response.text[:200]}"
            )

        data = response.json().get("data", [])
        data = sorted(data, key=lambda item: item.get("index", 0))
        return [[float(x) for x in item["embedding"]] for item in data]

    def close(self) -> None:
        self.client.close()

    def __repr__(self) -> str:
        return f"HttpEmbeddingBackend(url={self.base_url}, model={self.model_id})"


def create_backend(settings: dict[str, Any]) -> EmbeddingBackend:
    """Build the backend described by the [embeddings] config section."""
    backend = settings.get("backend", "sentence-transformers")
    model = settings.get("model", "all-MiniLM-L6-v2")

    if backend == "sentence-transformers":
        return SentenceTransformerBackend(
            model_name=model,
            device=settings.get("device"),
            batch_size=settings.get("batch_size", 32),
        )
    if backend == "http":
        api_key_env = settings.get("api_key_env")
        return HttpEmbeddingBackend(
            base_url=settings.get("base_url", "http://127.0.0.1:8000/v1"),
            model=model,
            api_key=os.environ.get(api_key_env) if api_key_env else None,
            timeout=settings.get("timeout", 60.0),
            dimension=settings.get("dimension"),
        )
    raise ValueError(f"Unknown embedding backend: {backend}")


class EmbeddingEngine:
    """
    Batched, rate-limited, retrying front end for an embedding backend.

    A batch that exhausts its retries fails on its own: sibling batches
    still run, and the resulting EmbeddingExhausted carries their vectors.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        batch_size: int = 32,
        max_batch_chars: int = 200_000,
        max_retries: int = 4,
        retry_delay: float = 0.5,
        max_retry_delay: float = 10.0,
        requests_per_second: float = 0.0,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.backend = backend
        self.batch_size = batch_size
        self.max_batch_chars = max_batch_chars
        self.retry_attempts = max_retries + 1
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._rate_limiter = RateLimiter(requests_per_second)

    @classmethod
    def from_config(cls, settings: dict[str, Any], backend: Optional[EmbeddingBackend] = None) -> "EmbeddingEngine":
        return cls(
            backend or create_backend(settings),
            batch_size=settings.get("batch_size", 32),
            max_batch_chars=settings.get("max_batch_chars", 200_000),
            max_retries=settings.get("max_retries", 4),
            retry_delay=settings.get("retry_delay", 0.5),
            max_retry_delay=settings.get("max_retry_delay", 10.0),
            requests_per_second=settings.get("requests_per_second", 0.0),
        )

    @property
    def model_id(self) -> str:
        return self.backend.model_id

    @property
    def dimension(self) -> int:
        return self.backend.dimension

    def batches(self, texts: list[str]) -> list[list[int]]:
        """
        Group text indices into batches bounded by count and total characters.

        A single text longer than max_batch_chars gets a batch of its own.
        """
        batches: list[list[int]] = []
        current: list[int] = []
        chars = 0
        for i, text in enumerate(texts):
            if current and (len(current) >= self.batch_size or chars + len(text) > self.max_batch_chars):
                batches.append(current)
                current, chars = [], 0
            current.append(i)
            chars += len(text)
        if current:
            batches.append(current)
        return batches

    def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed texts in order.

        Raises:
            EmbeddingExhausted: At least one batch failed after all retries
        """
        if not texts:
            return []

        results: list[Optional[list[float]]] = [None] * len(texts)
        failed: list[int] = []
        last_error: Optional[BaseException] = None

        for batch in self.batches(texts):
            try:
                vectors = self._embed_batch([texts[i] for i in batch])
            except Exception as e:
                if not isinstance(e, TRANSIENT_ERRORS):
                    logger.warning(f"Batch of {len(batch)} texts failed without retry: {e}")
                failed.extend(batch)
                last_error = e
                continue
            for i, vector in zip(batch, vectors):
                results[i] = vector

        if failed:
            raise EmbeddingExhausted(
                f"{len(failed)} of {len(texts)} texts could not be embedded: {last_error}",
                failed_indices=failed,
                partial=results,
            )
        return results

    def embed_query(self, text: str) -> list[float]:
        return self.embed([text])[0]

    @retry_on_failure(max_attempts=5, delay=0.5, max_delay=10.0, exceptions=TRANSIENT_ERRORS)
    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        self._rate_limiter.acquire()
        vectors = self.backend.encode(texts)
        if len(vectors) != len(texts):
            raise EmbeddingTransient(
                f"Backend returned {len(vectors)} vectors for {len(texts)} texts"
            )
        dimension = self.backend.dimension
        for vector in vectors:
            if len(vector) != dimension:
                raise CtxsyncError(
                    f"Backend {self.model_id} returned a {len(vector)}-dim vector, expected {dimension}"
                )
        return vectors

    def close(self) -> None:
        self.backend.close()

    def __repr__(self) -> str:
        return f"EmbeddingEngine(backend={self.backend!r}, batch_size={self.batch_size})"
