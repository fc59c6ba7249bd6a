"""SQLite document store for SiteFoundry.

Local and test backend. Embeddings are stored as float32 BLOBs and
similarity is computed with numpy. All sqlite3 calls are synchronous and
short; a write transaction never awaits, so it cannot interleave with
another coroutine on the same connection.
"""

import json
import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple

import numpy as np

from services.shared.errors import ChunkIntegrityError, DocumentConflictError
from services.shared.models import ScrapedPage, StoredDocument

from .document_store import COLUMN_TIERS, DocumentStore, EmbeddedChunk, document_values

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
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
    schema_markup TEXT,
    word_count INTEGER,
    sentence_count INTEGER,
    paragraph_count INTEGER,
    average_sentence_length REAL,
    average_words_per_paragraph REAL,
    reading_time_minutes INTEGER,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS document_chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    embedding BLOB NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS meta_tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    name TEXT,
    property TEXT,
    content TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS headings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    level INTEGER NOT NULL CHECK (level BETWEEN 1 AND 6),
    text TEXT NOT NULL,
    heading_order INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS links (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    anchor_text TEXT,
    is_internal INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS images (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    src TEXT NOT NULL,
    alt TEXT,
    width INTEGER,
    height INTEGER
);

CREATE INDEX IF NOT EXISTS idx_document_chunks_document_id ON document_chunks(document_id);
CREATE INDEX IF NOT EXISTS idx_meta_tags_document_id ON meta_tags(document_id);
CREATE INDEX IF NOT EXISTS idx_headings_document_id ON headings(document_id);
CREATE INDEX IF NOT EXISTS idx_links_document_id ON links(document_id);
CREATE INDEX IF NOT EXISTS idx_images_document_id ON images(document_id);
"""


def _regexp(pattern: str, value: Optional[str]) -> bool:
    return value is not None and re.search(pattern, value) is not None


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def _document_row(row: sqlite3.Row) -> Dict[str, Any]:
    document = dict(row)
    if isinstance(document.get("schema_markup"), str):
        document["schema_markup"] = json.loads(document["schema_markup"])
    return document


class SQLiteAdapter(DocumentStore):
    """SQLite implementation of the document store."""

    def __init__(self, db_path: str, embedder, **kwargs):
        super().__init__(embedder, **kwargs)
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Initialize SQLite connection and ensure schema exists."""
        try:
            # Autocommit mode; transactions and savepoints are explicit
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            self.conn.create_function("REGEXP", 2, _regexp)
            self.conn.executescript(SCHEMA)
            logger.info(f"SQLite adapter initialized: {self.db_path}")
        except Exception as e:
            logger.error(f"Failed to initialize SQLite: {e}")
            raise

    async def close(self):
        """Close SQLite connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("SQLite connection closed")

    # Writes

    def _insert_document_row(self, cursor: sqlite3.Cursor, page: ScrapedPage) -> int:
        for columns in COLUMN_TIERS:
            values = document_values(page, columns) + [_now()]
            placeholders = ", ".join("?" for _ in values)
            cursor.execute("SAVEPOINT document_row")
            try:
                cursor.execute(
                    f"INSERT INTO documents ({', '.join(columns)}, created_at) VALUES ({placeholders})",
                    values
                )
            except sqlite3.OperationalError as e:
                cursor.execute("ROLLBACK TO document_row")
                cursor.execute("RELEASE document_row")
                if "no column" not in str(e):
                    raise
                logger.warning(f"documents table lacks columns for {len(columns)}-column insert, falling back: {e}")
                continue
            except sqlite3.IntegrityError as e:
                cursor.execute("ROLLBACK TO document_row")
                cursor.execute("RELEASE document_row")
                if "UNIQUE" in str(e):
                    raise DocumentConflictError(page.url) from e
                raise
            cursor.execute("RELEASE document_row")
            return cursor.lastrowid
        raise sqlite3.OperationalError("documents table is missing required columns")

    def _insert_optional(self, cursor: sqlite3.Cursor, kind: str, sql: str,
                         rows: List[tuple], url: str):
        """Insert non-critical rows, each in its own savepoint."""
        for params in rows:
            cursor.execute("SAVEPOINT optional_row")
            try:
                cursor.execute(sql, params)
            except sqlite3.Error as e:
                cursor.execute("ROLLBACK TO optional_row")
                logger.warning(f"Skipping {kind} row for {url}: {e}")
            cursor.execute("RELEASE optional_row")

    def _insert_metadata(self, cursor: sqlite3.Cursor, document_id: int, page: ScrapedPage):
        self._insert_optional(
            cursor, "meta tag",
            "INSERT INTO meta_tags (document_id, name, property, content) VALUES (?, ?, ?, ?)",
            [(document_id, tag.name, tag.property, tag.content) for tag in page.meta_tags],
            page.url
        )
        self._insert_optional(
            cursor, "heading",
            "INSERT INTO headings (document_id, level, text, heading_order) VALUES (?, ?, ?, ?)",
            [(document_id, h.level, h.text, h.order) for h in page.headings],
            page.url
        )
        self._insert_optional(
            cursor, "link",
            "INSERT INTO links (document_id, url, anchor_text, is_internal) VALUES (?, ?, ?, ?)",
            [(document_id, link.url, link.anchor_text, int(link.is_internal)) for link in page.links],
            page.url
        )
        self._insert_optional(
            cursor, "image",
            "INSERT INTO images (document_id, src, alt, width, height) VALUES (?, ?, ?, ?, ?)",
            [(document_id, img.src, img.alt, img.width, img.height) for img in page.images],
            page.url
        )

    def _insert_chunks(self, cursor: sqlite3.Cursor, document_id: int,
                       embedded: List[EmbeddedChunk], url: str) -> int:
        inserted = 0
        for index, (content, embedding) in enumerate(embedded):
            cursor.execute("SAVEPOINT chunk_row")
            try:
                cursor.execute(
                    "INSERT INTO document_chunks (document_id, content, embedding, created_at) VALUES (?, ?, ?, ?)",
                    (document_id, content, embedding.astype(np.float32).tobytes(), _now())
                )
                inserted += 1
            except sqlite3.Error as e:
                cursor.execute("ROLLBACK TO chunk_row")
                logger.warning(f"Failed to insert chunk {index} for {url}: {e}")
            cursor.execute("RELEASE chunk_row")
        return inserted

    async def _replace_document(self, page: ScrapedPage, embedded: List[EmbeddedChunk]) -> StoredDocument:
        cursor = self.conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            cursor.execute("DELETE FROM documents WHERE url = ?", (page.url,))
            document_id = self._insert_document_row(cursor, page)
            self._insert_metadata(cursor, document_id, page)
            chunks_created = self._insert_chunks(cursor, document_id, embedded, page.url)
            if chunks_created == 0:
                raise ChunkIntegrityError(page.url, len(embedded))
        except BaseException:
            cursor.execute("ROLLBACK")
            raise
        cursor.execute("COMMIT")
        return StoredDocument(id=document_id, url=page.url, title=page.title, chunks_created=chunks_created)

    async def _delete_by_url(self, url: str) -> int:
        cursor = self.conn.execute("DELETE FROM documents WHERE url = ?", (url,))
        return cursor.rowcount

    async def delete_document(self, document_id: int) -> bool:
        cursor = self.conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return cursor.rowcount > 0

    # Reads

    async def get_document_by_id(self, document_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return _document_row(row) if row else None

    async def get_document_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM documents WHERE url = ?", (url,)).fetchone()
        return _document_row(row) if row else None

    async def get_all_documents(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM documents ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [_document_row(row) for row in rows]

    async def get_document_chunks(self, document_id: int) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT id, document_id, content, created_at FROM document_chunks WHERE document_id = ? ORDER BY id",
            (document_id,)
        ).fetchall()
        return [dict(row) for row in rows]

    async def get_document_metadata(self, document_id: int) -> Dict[str, List[Dict[str, Any]]]:
        def fetch(sql: str) -> List[Dict[str, Any]]:
            return [dict(row) for row in self.conn.execute(sql, (document_id,)).fetchall()]

        links = fetch("SELECT url, anchor_text, is_internal FROM links WHERE document_id = ? ORDER BY id")
        for link in links:
            link["is_internal"] = bool(link["is_internal"])
        return {
            "meta_tags": fetch("SELECT name, property, content FROM meta_tags WHERE document_id = ? ORDER BY id"),
            "headings": fetch(
                "SELECT level, text, heading_order AS \"order\" FROM headings WHERE document_id = ? ORDER BY heading_order"
            ),
            "links": links,
            "images": fetch("SELECT src, alt, width, height FROM images WHERE document_id = ? ORDER BY id"),
        }

    async def check_existing_urls(self, urls: List[str]) -> Tuple[List[str], List[str]]:
        if not urls:
            return [], []
        placeholders = ", ".join("?" for _ in urls)
        rows = self.conn.execute(
            f"SELECT url FROM documents WHERE url IN ({placeholders})", list(urls)
        ).fetchall()
        stored = {row["url"] for row in rows}
        existing = [url for url in urls if url in stored]
        new = [url for url in urls if url not in stored]
        return existing, new

    async def search_similar(self, embedding: np.ndarray, limit: int = 5,
                             threshold: float = 0.7) -> List[Dict[str, Any]]:
        """Perform semantic search using vector similarity."""
        rows = self.conn.execute(
            """
            SELECT c.id AS chunk_id, c.document_id, c.content, c.embedding, d.url, d.title
            FROM document_chunks c
            JOIN documents d ON c.document_id = d.id
            """
        ).fetchall()
        if not rows:
            return []

        query = np.asarray(embedding, dtype=np.float32)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        matrix = np.vstack([np.frombuffer(row["embedding"], dtype=np.float32) for row in rows])
        norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / (norms * query_norm), 0.0)

        results = []
        for row, score in zip(rows, scores):
            similarity = float(score)
            if similarity > threshold:
                result = dict(row)
                result.pop("embedding")
                result["similarity"] = similarity
                results.append(result)

        results.sort(key=lambda x: x["similarity"], reverse=True)
        return results[:limit]

    async def find_document_by_url_pattern(self, pattern: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM documents WHERE url REGEXP ? ORDER BY created_at DESC, id DESC LIMIT 1",
            (pattern,)
        ).fetchone()
        return _document_row(row) if row else None

    async def find_shortest_url_containing(self, fragment: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM documents WHERE instr(url, ?) > 0 ORDER BY LENGTH(url), created_at DESC, id DESC LIMIT 1",
            (fragment,)
        ).fetchone()
        return _document_row(row) if row else None

    async def get_database_stats(self) -> Dict[str, Any]:
        """Get database statistics for monitoring."""
        document_count = self.conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
        chunk_count = self.conn.execute("SELECT COUNT(*) FROM document_chunks").fetchone()[0]
        return {
            "backend": "sqlite",
            "document_count": document_count,
            "chunk_count": chunk_count,
            "embedding_dimension": self.dimension,
        }
