"""Document store contract shared by the PostgreSQL and SQLite backends.

``store_document`` implements the ingestion write protocol once:

1. embed every chunk, best effort per chunk, with no database work in flight;
2. serialize writers of the same URL;
3. replace any existing document for the URL in one transaction
   (delegated to the backend's ``_replace_document``);
4. enforce that a stored document owns at least one chunk, deleting
   the URL's document when it does not.

Backends implement the abstract primitives below.
"""

import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple

import numpy as np

from observability.logging import get_structured_logger
from services.shared.concurrency import CancellationToken, KeyedLock
from services.shared.errors import ChunkIntegrityError, DocumentConflictError
from services.shared.interfaces import EmbeddingGenerator
from services.shared.models import ScrapedPage, StoredDocument

logger = logging.getLogger(__name__)
struct_logger = get_structured_logger(__name__, component="document_store")

# Document columns grouped by schema generation. Inserts try the widest
# tier first and fall back when the table predates a tier's migration.
CORE_COLUMNS = ("url", "title", "content")
SEO_COLUMNS = CORE_COLUMNS + (
    "meta_title", "meta_description", "meta_keywords", "meta_robots", "canonical_url",
    "og_title", "og_description", "og_image", "og_type",
    "twitter_title", "twitter_description", "twitter_image", "twitter_card",
    "schema_markup",
)
FULL_COLUMNS = SEO_COLUMNS + (
    "word_count", "sentence_count", "paragraph_count", "average_sentence_length",
    "average_words_per_paragraph", "reading_time_minutes",
)
COLUMN_TIERS = (FULL_COLUMNS, SEO_COLUMNS, CORE_COLUMNS)

EmbeddedChunk = Tuple[str, np.ndarray]


def document_values(page: ScrapedPage, columns: Tuple[str, ...]) -> List[Any]:
    """Column values for a document row, in ``columns`` order."""
    seo = page.seo
    quality = page.quality
    values = {
        "url": page.url,
        "title": page.title,
        "content": page.content,
        "meta_title": seo.meta_title,
        "meta_description": seo.meta_description,
        "meta_keywords": seo.meta_keywords,
        "meta_robots": seo.meta_robots,
        "canonical_url": seo.canonical_url,
        "og_title": seo.og_title,
        "og_description": seo.og_description,
        "og_image": seo.og_image,
        "og_type": seo.og_type,
        "twitter_title": seo.twitter_title,
        "twitter_description": seo.twitter_description,
        "twitter_image": seo.twitter_image,
        "twitter_card": seo.twitter_card,
        "schema_markup": json.dumps(seo.schema_markup or []),
    }
    for name in FULL_COLUMNS[len(SEO_COLUMNS):]:
        values[name] = getattr(quality, name) if quality is not None else None
    return [values[column] for column in columns]


class DocumentStore(ABC):
    """Persists documents with their chunks, vectors and SEO metadata."""

    def __init__(self, embedder: EmbeddingGenerator,
                 max_write_attempts: int = 3,
                 retry_delay: float = 0.2,
                 max_retry_delay: float = 5.0):
        self.embedder = embedder
        self.dimension = embedder.dimension
        self.max_write_attempts = max_write_attempts
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._url_locks = KeyedLock()

    # Lifecycle

    @abstractmethod
    async def initialize(self):
        """Open connections and ensure the schema exists."""

    @abstractmethod
    async def close(self):
        """Release connections."""

    # Write protocol

    async def store_document(self, page: ScrapedPage, chunks: List[str],
                             cancel_token: Optional[CancellationToken] = None) -> StoredDocument:
        """Replace the document stored for ``page.url`` with ``page`` and ``chunks``.

        Raises:
            ChunkIntegrityError: no chunk could be embedded or inserted; no
                document for the URL exists afterwards.
        """
        embedded = await self._embed_chunks(page.url, chunks, cancel_token)

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        async with self._url_locks.acquire(page.url):
            if not embedded:
                await self._delete_by_url(page.url)
                struct_logger.error("No chunks embedded, document removed",
                                    stage="embed", url=page.url, attempted=len(chunks))
                raise ChunkIntegrityError(page.url, len(chunks))

            try:
                stored = await self._write_with_retry(page, embedded)
            except ChunkIntegrityError:
                # Transaction rolled back; the URL must not keep a document
                await self._delete_by_url(page.url)
                struct_logger.error("No chunks inserted, document removed",
                                    stage="store", url=page.url, attempted=len(embedded))
                raise

        logger.info(f"Stored document {stored.id} for {stored.url} with {stored.chunks_created} chunks")
        return stored

    async def _embed_chunks(self, url: str, chunks: List[str],
                            cancel_token: Optional[CancellationToken]) -> List[EmbeddedChunk]:
        """Embed chunks concurrently; a failed chunk is logged and skipped."""

        async def embed_one(index: int, chunk: str) -> Optional[EmbeddedChunk]:
            if cancel_token is not None and cancel_token.cancelled:
                return None
            try:
                embedding = np.asarray(await self.embedder.embed(chunk), dtype=np.float32)
            except Exception as e:
                struct_logger.warning(f"Failed to embed chunk {index}: {e}",
                                      stage="embed", url=url, chunk_index=index)
                return None
            if embedding.shape != (self.dimension,):
                struct_logger.warning(
                    f"Chunk {index} embedding has shape {embedding.shape}, expected ({self.dimension},)",
                    stage="embed", url=url, chunk_index=index)
                return None
            return chunk, embedding

        tasks = [embed_one(i, chunk) for i, chunk in enumerate(chunks) if chunk.strip()]
        results = await asyncio.gather(*tasks)
        return [result for result in results if result is not None]

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    async def _write_with_retry(self, page: ScrapedPage, embedded: List[EmbeddedChunk]) -> StoredDocument:
        for attempt in range(self.max_write_attempts):
            try:
                return await self._replace_document(page, embedded)
            except DocumentConflictError:
                if attempt + 1 >= self.max_write_attempts:
                    raise
                delay = self._calculate_retry_delay(attempt)
                struct_logger.warning(
                    f"Write conflict, retrying in {delay:.2f}s (attempt {attempt + 1}/{self.max_write_attempts})",
                    stage="store", url=page.url)
                await asyncio.sleep(delay)
        raise DocumentConflictError(page.url)

    @abstractmethod
    async def _replace_document(self, page: ScrapedPage, embedded: List[EmbeddedChunk]) -> StoredDocument:
        """Atomically delete the URL's document and insert the new one.

        Must raise ChunkIntegrityError (rolling back) when no chunk row is
        inserted, and DocumentConflictError on a unique violation on url.
        """

    @abstractmethod
    async def _delete_by_url(self, url: str) -> int:
        """Delete the document stored for ``url``; returns rows deleted."""

    # Reads

    @abstractmethod
    async def get_document_by_id(self, document_id: int) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_document_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def get_all_documents(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Documents ordered newest first."""

    @abstractmethod
    async def get_document_chunks(self, document_id: int) -> List[Dict[str, Any]]:
        """Chunks of a document in insertion order."""

    @abstractmethod
    async def get_document_metadata(self, document_id: int) -> Dict[str, List[Dict[str, Any]]]:
        """Meta tags, headings, links and images of a document."""

    @abstractmethod
    async def delete_document(self, document_id: int) -> bool:
        ...

    @abstractmethod
    async def check_existing_urls(self, urls: List[str]) -> Tuple[List[str], List[str]]:
        """Split ``urls`` into (already stored, new), preserving input order."""

    @abstractmethod
    async def search_similar(self, embedding: np.ndarray, limit: int = 5,
                             threshold: float = 0.7) -> List[Dict[str, Any]]:
        """Chunks with similarity strictly above ``threshold``, best first.

        Rows carry chunk_id, document_id, content, similarity, url and title.
        """

    @abstractmethod
    async def find_document_by_url_pattern(self, pattern: str) -> Optional[Dict[str, Any]]:
        """Newest document whose URL matches the regular expression."""

    @abstractmethod
    async def find_shortest_url_containing(self, fragment: str) -> Optional[Dict[str, Any]]:
        """Document with the shortest URL containing ``fragment`` (newest on ties)."""

    @abstractmethod
    async def get_database_stats(self) -> Dict[str, Any]:
        ...
