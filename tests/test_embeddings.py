"""Unit tests for the embedding generators.

The sentence-transformers model and the HTTP session are mocked so the
tests run offline.
"""

import numpy as np
import pytest
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from indexer.embeddings import OpenAIEmbedder, SentenceTransformerEmbedder
from services.shared.concurrency import TokenBucket


class TestSentenceTransformerEmbedder:
    """Test suite for the local model embedder."""

    @pytest.fixture
    def mock_model(self):
        model = Mock()
        model.get_sentence_embedding_dimension.return_value = 3
        model.encode.return_value = np.array([0.1, 0.2, 0.3])
        return model

    @pytest.fixture
    def embedder(self, mock_model):
        with patch('indexer.embeddings.SentenceTransformer', return_value=mock_model) as mock_st:
            embedder = SentenceTransformerEmbedder('test-model')
            mock_st.assert_called_once_with('test-model')
            return embedder

    def test_dimension_from_model(self, embedder):
        assert embedder.dimension == 3
        assert embedder.model_name == 'test-model'

    async def test_embed(self, embedder, mock_model):
        vector = await embedder.embed("  Hello world  ")
        assert vector.dtype == np.float32
        assert vector.shape == (3,)
        mock_model.encode.assert_called_once_with("Hello world", convert_to_numpy=True)

    async def test_empty_text_rejected(self, embedder):
        with pytest.raises(ValueError):
            await embedder.embed("   ")

    async def test_wrong_shape_rejected(self, embedder, mock_model):
        mock_model.encode.return_value = np.array([0.1, 0.2])
        with pytest.raises(ValueError):
            await embedder.embed("Hello")

    async def test_rate_limiter_is_used(self, embedder):
        limiter = Mock(spec=TokenBucket)
        limiter.acquire = AsyncMock()
        embedder.rate_limiter = limiter
        await embedder.embed("Hello")
        limiter.acquire.assert_awaited_once()

    def test_model_load_failure(self):
        with patch('indexer.embeddings.SentenceTransformer', side_effect=OSError("model not found")):
            with pytest.raises(OSError):
                SentenceTransformerEmbedder('missing-model')


def response_context(status, payload=None, body=""):
    response = MagicMock(status=status)
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value=body)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


class TestOpenAIEmbedder:
    """Test suite for the HTTP embedder."""

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            OpenAIEmbedder(api_key="")

    async def test_embed(self):
        embedder = OpenAIEmbedder(api_key="sk-test", dimension=2, base_url="https://llm.local/v1/")
        session = MagicMock(closed=False)
        session.post.return_value = response_context(200, {"data": [{"embedding": [0.5, 0.25]}]})
        embedder.session = session

        vector = await embedder.embed("Hello")
        assert vector.tolist() == [0.5, 0.25]
        args, kwargs = session.post.call_args
        assert args[0] == "https://llm.local/v1/embeddings"
        assert kwargs["json"] == {"model": "text-embedding-ada-002", "input": "Hello"}

    async def test_error_status(self):
        embedder = OpenAIEmbedder(api_key="sk-test", dimension=2)
        session = MagicMock(closed=False)
        session.post.return_value = response_context(429, body="rate limited")
        embedder.session = session

        with pytest.raises(RuntimeError, match="429"):
            await embedder.embed("Hello")
