"""Tests for the fastembed-backed embedder."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from src.services.cache import VectorCache
from src.services.embeddings import EmbeddingError, FastEmbedder


@pytest.fixture
def fake_model():
    model = MagicMock()
    model.embed.side_effect = lambda texts: iter([[0.5, 0.25]])
    return model


class TestFastEmbedder:
    def test_model_loaded_lazily(self, fake_model):
        with patch("src.services.embeddings.TextEmbedding", return_value=fake_model) as cls:
            embedder = FastEmbedder("BAAI/bge-small-en-v1.5")
            cls.assert_not_called()
            assert embedder.embed("offers") == [0.5, 0.25]
            embedder.embed("prices")
        cls.assert_called_once_with(model_name="BAAI/bge-small-en-v1.5")

    def test_repeated_query_served_from_cache(self, fake_model):
        cache = VectorCache()
        with patch("src.services.embeddings.TextEmbedding", return_value=fake_model):
            embedder = FastEmbedder(cache=cache)
            embedder.embed("Monday offers")
            embedder.embed("monday  offers")
        assert fake_model.embed.call_count == 1
        assert cache.hits == 1

    def test_no_embedding_raises(self, fake_model):
        fake_model.embed.side_effect = lambda texts: iter([])
        with patch("src.services.embeddings.TextEmbedding", return_value=fake_model):
            with pytest.raises(EmbeddingError):
                FastEmbedder().embed("offers")
