# SiteFoundry Embeddings Module
# Text -> fixed-length vector generators used by the document store and search

import asyncio
import logging
from typing import Optional

import aiohttp
import numpy as np
from sentence_transformers import SentenceTransformer

from services.shared.concurrency import TokenBucket

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"
DEFAULT_OPENAI_MODEL = "text-embedding-ada-002"


class BaseEmbedder:
    """Common rate limiting and validation for embedding generators.

    Subclasses implement ``_encode``. Failures propagate to the caller;
    retry policy belongs to the caller, and the ingestion pipeline does
    not retry.
    """

    def __init__(self, dimension: int, rate_limiter: Optional[TokenBucket] = None):
        self.dimension = dimension
        self.rate_limiter = rate_limiter

    async def _encode(self, text: str) -> np.ndarray:
        raise NotImplementedError

    async def embed(self, text: str) -> np.ndarray:
        """Generate an embedding for a single text."""
        text = text.strip()
        if not text:
            raise ValueError("Cannot embed empty text")

        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        embedding = np.asarray(await self._encode(text), dtype=np.float32)
        if embedding.shape != (self.dimension,):
            raise ValueError(
                f"Embedding has shape {embedding.shape}, expected ({self.dimension},)"
            )
        return embedding


class SentenceTransformerEmbedder(BaseEmbedder):
    """Local sentence-transformers model."""

    def __init__(self, model_name: str = DEFAULT_MODEL, rate_limiter: Optional[TokenBucket] = None):
        """
        Initialize and load the model

        Args:
            model_name: Sentence transformer model name
            rate_limiter: Optional limiter applied to every embed call
        """
        self.model_name = model_name
        self.model = None
        self._load_model()
        super().__init__(self.model.get_sentence_embedding_dimension(), rate_limiter)

    def _load_model(self):
        """Load the sentence transformer model"""
        try:
            logger.info(f"Loading embedding model: {self.model_name}")
            self.model = SentenceTransformer(self.model_name)
            logger.info(f"Model loaded successfully. Embedding dimension: {self.model.get_sentence_embedding_dimension()}")
        except Exception as e:
            logger.error(f"Failed to load embedding model: {e}")
            raise

    async def _encode(self, text: str) -> np.ndarray:
        # encode() is CPU bound; keep it off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, lambda: self.model.encode(text, convert_to_numpy=True)
        )


class OpenAIEmbedder(BaseEmbedder):
    """OpenAI-compatible ``/embeddings`` HTTP endpoint."""

    def __init__(self,
                 api_key: str,
                 model_name: str = DEFAULT_OPENAI_MODEL,
                 dimension: int = 1536,
                 base_url: str = "https://api.openai.com/v1",
                 request_timeout: int = 30,
                 rate_limiter: Optional[TokenBucket] = None):
        if not api_key:
            raise ValueError("An API key is required for the OpenAI embedder")
        super().__init__(dimension, rate_limiter)
        self.api_key = api_key
        self.model_name = model_name
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={"Authorization": f"Bearer {self.api_key}"}
            )
        return self.session

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _encode(self, text: str) -> np.ndarray:
        session = await self._get_session()
        async with session.post(
            f"{self.base_url}/embeddings",
            json={"model": self.model_name, "input": text}
        ) as response:
            if response.status != 200:
                body = await response.text()
                raise RuntimeError(f"Embedding request failed with status {response.status}: {body[:200]}")
            payload = await response.json()
        return np.asarray(payload["data"][0]["embedding"], dtype=np.float32)

