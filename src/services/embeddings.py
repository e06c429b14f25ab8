"""Query embedding via fastembed, with an LRU cache in front of the model.

The ONNX model is loaded lazily on the first call so that importing this
module (and running the test suite) never downloads model weights.
"""

from __future__ import annotations

import logging
import threading

from fastembed import TextEmbedding

from src.config import EMBEDDING_MODEL
from src.services.cache import VectorCache
from src.services.metrics import metrics

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Raised when the embedding model produces no usable vector."""


class FastEmbedder:
    """``Embedder`` implementation backed by ``fastembed.TextEmbedding``."""

    def __init__(
        self,
        model_name: str | None = None,
        *,
        cache: VectorCache | None = None,
    ) -> None:
        self._model_name = model_name or EMBEDDING_MODEL
        self._model: TextEmbedding | None = None
        self._model_lock = threading.Lock()
        self._cache = cache or VectorCache()

    def _get_model(self) -> TextEmbedding:
        """Load the embedding model on first use (double-checked locking)."""
        if self._model is None:
            with self._model_lock:
                if self._model is None:
                    logger.info("Loading embedding model %s…", self._model_name)
                    self._model = TextEmbedding(model_name=self._model_name)
        return self._model

    def embed(self, text: str) -> list[float]:
        cached = self._cache.get(text)
        if cached is not None:
            return cached

        with metrics.track("fastembed", "embed"):
            embeddings = list(self._get_model().embed([text]))
            if not embeddings:
                raise EmbeddingError(f"Model {self._model_name} returned no embedding")
            vector = embeddings[0]
            vector = vector.tolist() if hasattr(vector, "tolist") else list(vector)

        self._cache.put(text, vector)
        return vector
