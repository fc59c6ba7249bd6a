"""Semantic retrieval over stored chunks with homepage-intent override."""

import logging
import re
from typing import List, Optional

from services.shared.errors import InvalidInputError
from services.shared.interfaces import EmbeddingGenerator
from services.shared.models import SearchResult

from .document_store import DocumentStore
from .homepage import HomepageResolver

logger = logging.getLogger(__name__)

HOMEPAGE_INTENT = re.compile(r"\b(homepage|home\s*page|main\s*page|landing\s*page)\b", re.IGNORECASE)
HOMEPAGE_PREVIEW_LENGTH = 500


def is_homepage_query(query: str) -> bool:
    return HOMEPAGE_INTENT.search(query) is not None


class SimilaritySearch:
    """Ranks stored chunks by cosine similarity to a query."""

    def __init__(self, store: DocumentStore, embedder: EmbeddingGenerator,
                 homepage_resolver: Optional[HomepageResolver] = None,
                 threshold: float = 0.7):
        self.store = store
        self.embedder = embedder
        self.homepage_resolver = homepage_resolver
        self.threshold = threshold

    async def search(self, query: str, limit: int = 5,
                     threshold: Optional[float] = None) -> List[SearchResult]:
        """Return at most ``limit`` results with similarity above the threshold.

        A homepage-intent query puts the resolved homepage first with
        similarity 1.0; chunks of that document are not repeated.
        """
        if limit < 1:
            raise InvalidInputError("limit must be at least 1")
        if not query or not query.strip():
            return []

        threshold = self.threshold if threshold is None else threshold
        embedding = await self.embedder.embed(query)
        rows = await self.store.search_similar(embedding, limit=limit, threshold=threshold)
        results = [
            SearchResult(
                chunk_content=row["content"],
                similarity=float(row["similarity"]),
                document_id=row["document_id"],
                chunk_id=row["chunk_id"],
                url=row.get("url"),
                title=row.get("title"),
            )
            for row in rows
        ]

        if self.homepage_resolver is None or not is_homepage_query(query):
            return results

        try:
            homepage = await self.homepage_resolver.get_homepage()
        except Exception as e:
            logger.error(f"Homepage lookup failed, returning plain ranking: {e}")
            return results
        if homepage is None:
            return results

        logger.info(f"Homepage intent detected, prioritizing {homepage['url']}")
        homepage_result = SearchResult(
            chunk_content=(homepage.get("content") or "")[:HOMEPAGE_PREVIEW_LENGTH],
            similarity=1.0,
            document_id=homepage["id"],
            chunk_id=None,
            url=homepage["url"],
            title=homepage.get("title"),
        )
        others = [r for r in results if r.document_id != homepage["id"]]
        return [homepage_result] + others[:limit - 1]
