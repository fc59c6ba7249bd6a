"""PostgreSQL document store for SiteFoundry.

Production backend with pgvector. Vectors cross the wire in pgvector's
text form (``'[0.1,0.2,...]'``) so no client-side vector codec is needed.
Writers of one URL are serialized across processes with a transaction
scoped advisory lock.
"""

import json
import logging
from typing import List, Dict, Any, Optional, Tuple

import asyncpg
import numpy as np
from pydantic import BaseModel

from services.shared.errors import ChunkIntegrityError, DocumentConflictError
from services.shared.models import ScrapedPage, StoredDocument

from .document_store import COLUMN_TIERS, DocumentStore, EmbeddedChunk, document_values

logger = logging.getLogger(__name__)


class PostgresConfig(BaseModel):
    """PostgreSQL connection configuration."""
    host: str = "localhost"
    port: int = 5432
    database: str = "sitefoundry"
    user: str = "sitefoundry"
    password: str = ""
    min_connections: int = 5
    max_connections: int = 20
    command_timeout: int = 60


def schema_sql(dimension: int) -> str:
    return f"""
    CREATE EXTENSION IF NOT EXISTS vector;

    CREATE TABLE IF NOT EXISTS documents (
        id BIGSERIAL PRIMARY KEY,
        url TEXT NOT NULL UNIQUE,
        title TEXT,
        content TEXT NOT NULL,
        meta_title TEXT,
        meta_description TEXT,
        meta_keywords TEXT,
        meta_robots TEXT,
        canonical_url TEXT,
        og_title TEXT,
        og_description TEXT,
        og_image TEXT,
        og_type TEXT,
        twitter_title TEXT,
        twitter_description TEXT,
        twitter_image TEXT,
        twitter_card TEXT,
        schema_markup JSONB,
        word_count INTEGER,
        sentence_count INTEGER,
        paragraph_count INTEGER,
        average_sentence_length REAL,
        average_words_per_paragraph REAL,
        reading_time_minutes INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    );

    CREATE TABLE IF NOT EXISTS document_chunks (
        id BIGSERIAL PRIMARY KEY,
        document_id BIGINT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        embedding vector({dimension}) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    );

    CREATE TABLE IF NOT EXISTS meta_tags (
        id BIGSERIAL PRIMARY KEY,
        document_id BIGINT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        name TEXT,
        property TEXT,
        content TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS headings (
        id BIGSERIAL PRIMARY KEY,
        document_id BIGINT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        level SMALLINT NOT NULL CHECK (level BETWEEN 1 AND 6),
        text TEXT NOT NULL,
        heading_order INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS links (
        id BIGSERIAL PRIMARY KEY,
        document_id BIGINT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        url TEXT NOT NULL,
        anchor_text TEXT,
        is_internal BOOLEAN NOT NULL DEFAULT FALSE
    );

    CREATE TABLE IF NOT EXISTS images (
        id BIGSERIAL PRIMARY KEY,
        document_id BIGINT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
        src TEXT NOT NULL,
        alt TEXT,
        width INTEGER,
        height INTEGER
    );

    CREATE INDEX IF NOT EXISTS idx_document_chunks_document_id ON document_chunks(document_id);
    CREATE INDEX IF NOT EXISTS idx_document_chunks_embedding
        ON document_chunks USING hnsw (embedding vector_cosine_ops);
    CREATE INDEX IF NOT EXISTS idx_meta_tags_document_id ON meta_tags(document_id);
    CREATE INDEX IF NOT EXISTS idx_headings_document_id ON headings(document_id);
    CREATE INDEX IF NOT EXISTS idx_links_document_id ON links(document_id);
    CREATE INDEX IF NOT EXISTS idx_images_document_id ON images(document_id);
    """


def to_pgvector(embedding: np.ndarray) -> str:
    """Render a vector in pgvector's text input format."""
    return "[" + ",".join(repr(float(x)) for x in np.asarray(embedding).ravel()) + "]"


def _document_row(row: asyncpg.Record) -> Dict[str, Any]:
    document = dict(row)
    if isinstance(document.get("schema_markup"), str):
        document["schema_markup"] = json.loads(document["schema_markup"])
    return document


class PostgresAdapter(DocumentStore):
    """PostgreSQL database adapter with pgvector support."""

    def __init__(self, config: PostgresConfig, embedder, **kwargs):
        super().__init__(embedder, **kwargs)
        self.config = config
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize connection pool and ensure schema exists."""
        try:
            self.pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                min_size=self.config.min_connections,
                max_size=self.config.max_connections,
                command_timeout=self.config.command_timeout
            )
            logger.info("PostgreSQL connection pool initialized")

            async with self.pool.acquire() as conn:
                await conn.execute(schema_sql(self.dimension))
                logger.info(f"Schema ensured with vector({self.dimension})")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL: {e}")
            raise

    async def close(self):
        """Close connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("PostgreSQL connection pool closed")

    # Writes

    async def _insert_document_row(self, conn: asyncpg.Connection, page: ScrapedPage) -> int:
        for columns in COLUMN_TIERS:
            placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
            try:
                async with conn.transaction():
                    return await conn.fetchval(
                        f"INSERT INTO documents ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id",
                        *document_values(page, columns)
                    )
            except asyncpg.exceptions.UndefinedColumnError as e:
                logger.warning(f"documents table lacks columns for {len(columns)}-column insert, falling back: {e}")
            except asyncpg.exceptions.UniqueViolationError as e:
                raise DocumentConflictError(page.url) from e
        raise RuntimeError("documents table is missing required columns")

    async def _insert_optional(self, conn: asyncpg.Connection, kind: str, sql: str,
                               rows: List[tuple], url: str):
        """Insert non-critical rows, each in its own savepoint."""
        for params in rows:
            try:
                async with conn.transaction():
                    await conn.execute(sql, *params)
            except asyncpg.PostgresError as e:
                logger.warning(f"Skipping {kind} row for {url}: {e}")

    async def _insert_metadata(self, conn: asyncpg.Connection, document_id: int, page: ScrapedPage):
        await self._insert_optional(
            conn, "meta tag",
            "INSERT INTO meta_tags (document_id, name, property, content) VALUES ($1, $2, $3, $4)",
            [(document_id, tag.name, tag.property, tag.content) for tag in page.meta_tags],
            page.url
        )
        await self._insert_optional(
            conn, "heading",
            "INSERT INTO headings (document_id, level, text, heading_order) VALUES ($1, $2, $3, $4)",
            [(document_id, h.level, h.text, h.order) for h in page.headings],
            page.url
        )
        await self._insert_optional(
            conn, "link",
            "INSERT INTO links (document_id, url, anchor_text, is_internal) VALUES ($1, $2, $3, $4)",
            [(document_id, link.url, link.anchor_text, link.is_internal) for link in page.links],
            page.url
        )
        await self._insert_optional(
            conn, "image",
            "INSERT INTO images (document_id, src, alt, width, height) VALUES ($1, $2, $3, $4, $5)",
            [(document_id, img.src, img.alt, img.width, img.height) for img in page.images],
            page.url
        )

    async def _insert_chunks(self, conn: asyncpg.Connection, document_id: int,
                             embedded: List[EmbeddedChunk], url: str) -> int:
        inserted = 0
        for index, (content, embedding) in enumerate(embedded):
            try:
                async with conn.transaction():
                    await conn.execute(
                        "INSERT INTO document_chunks (document_id, content, embedding) VALUES ($1, $2, $3::text::vector)",
                        document_id, content, to_pgvector(embedding)
                    )
                inserted += 1
            except asyncpg.PostgresError as e:
                logger.warning(f"Failed to insert chunk {index} for {url}: {e}")
        return inserted

    async def _replace_document(self, page: ScrapedPage, embedded: List[EmbeddedChunk]) -> StoredDocument:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtextextended($1, 0))", page.url)
                await conn.execute("DELETE FROM documents WHERE url = $1", page.url)
                document_id = await self._insert_document_row(conn, page)
                await self._insert_metadata(conn, document_id, page)
                chunks_created = await self._insert_chunks(conn, document_id, embedded, page.url)
                if chunks_created == 0:
                    raise ChunkIntegrityError(page.url, len(embedded))

        return StoredDocument(id=document_id, url=page.url, title=page.title, chunks_created=chunks_created)

    async def _delete_by_url(self, url: str) -> int:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetch("DELETE FROM documents WHERE url = $1 RETURNING id", url)
        return len(deleted)

    async def delete_document(self, document_id: int) -> bool:
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval("DELETE FROM documents WHERE id = $1 RETURNING id", document_id)
        return deleted is not None

    # Reads

    async def get_document_by_id(self, document_id: int) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM documents WHERE id = $1", document_id)
        return _document_row(row) if row else None

    async def get_document_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM documents WHERE url = $1", url)
        return _document_row(row) if row else None

    async def get_all_documents(self, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM documents ORDER BY created_at DESC, id DESC LIMIT $1", limit
            )
        return [_document_row(row) for row in rows]

    async def get_document_chunks(self, document_id: int) -> List[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT id, document_id, content, created_at FROM document_chunks WHERE document_id = $1 ORDER BY id",
                document_id
            )
        return [dict(row) for row in rows]

    async def get_document_metadata(self, document_id: int) -> Dict[str, List[Dict[str, Any]]]:
        async with self.pool.acquire() as conn:
            meta_tags = await conn.fetch(
                "SELECT name, property, content FROM meta_tags WHERE document_id = $1 ORDER BY id", document_id
            )
            headings = await conn.fetch(
                'SELECT level, text, heading_order AS "order" FROM headings WHERE document_id = $1 ORDER BY heading_order',
                document_id
            )
            links = await conn.fetch(
                "SELECT url, anchor_text, is_internal FROM links WHERE document_id = $1 ORDER BY id", document_id
            )
            images = await conn.fetch(
                "SELECT src, alt, width, height FROM images WHERE document_id = $1 ORDER BY id", document_id
            )
        return {
            "meta_tags": [dict(row) for row in meta_tags],
            "headings": [dict(row) for row in headings],
            "links": [dict(row) for row in links],
            "images": [dict(row) for row in images],
        }

    async def check_existing_urls(self, urls: List[str]) -> Tuple[List[str], List[str]]:
        if not urls:
            return [], []
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT url FROM documents WHERE url = ANY($1::text[])", list(urls))
        stored = {row["url"] for row in rows}
        existing = [url for url in urls if url in stored]
        new = [url for url in urls if url not in stored]
        return existing, new

    async def search_similar(self, embedding: np.ndarray, limit: int = 5,
                             threshold: float = 0.7) -> List[Dict[str, Any]]:
        """Perform semantic search using vector similarity."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT c.id AS chunk_id, c.document_id, c.content, d.url, d.title,
                       1 - (c.embedding <=> $1::text::vector) AS similarity
                FROM document_chunks c
                JOIN documents d ON c.document_id = d.id
                WHERE 1 - (c.embedding <=> $1::text::vector) > $2
                ORDER BY c.embedding <=> $1::text::vector
                LIMIT $3
                """,
                to_pgvector(embedding), threshold, limit
            )
        return [dict(row) for row in rows]

    async def find_document_by_url_pattern(self, pattern: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM documents WHERE url ~ $1 ORDER BY created_at DESC, id DESC LIMIT 1", pattern
            )
        return _document_row(row) if row else None

    async def find_shortest_url_containing(self, fragment: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM documents WHERE strpos(url, $1) > 0
                ORDER BY LENGTH(url), created_at DESC, id DESC
                LIMIT 1
                """,
                fragment
            )
        return _document_row(row) if row else None

    async def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics for monitoring."""
        async with self.pool.acquire() as conn:
            stats = await conn.fetchrow(
                """
                SELECT
                    (SELECT COUNT(*) FROM documents) AS document_count,
                    (SELECT COUNT(*) FROM document_chunks) AS chunk_count
                """
            )
        result = dict(stats) if stats else {}
        result["backend"] = "postgresql"
        result["embedding_dimension"] = self.dimension
        return result
