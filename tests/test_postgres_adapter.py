"""Tests for the PostgreSQL adapter that need no running database."""

import asyncpg
import numpy as np
import pytest
from unittest.mock import AsyncMock, MagicMock

from fakes import MappingEmbedder, rich_page
from indexer.document_store import FULL_COLUMNS, SEO_COLUMNS
from indexer.postgres_adapter import PostgresAdapter, PostgresConfig, schema_sql, to_pgvector
from services.shared.errors import DocumentConflictError


def fake_connection(fetchval_effects):
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn = MagicMock()
    conn.transaction.return_value = transaction
    conn.fetchval = AsyncMock(side_effect=fetchval_effects)
    return conn


@pytest.fixture
def adapter():
    return PostgresAdapter(PostgresConfig(), MappingEmbedder())


class TestPostgresHelpers:
    def test_to_pgvector(self):
        assert to_pgvector(np.array([0.5, -1.0, 0.0], dtype=np.float32)) == "[0.5,-1.0,0.0]"

    def test_schema_uses_dimension(self):
        sql = schema_sql(384)
        assert "vector(384)" in sql
        assert "vector_cosine_ops" in sql
        assert "ON DELETE CASCADE" in sql


class TestDocumentInsert:
    """Test suite for the column tier fallback."""

    async def test_full_tier(self, adapter):
        conn = fake_connection([11])
        document_id = await adapter._insert_document_row(conn, rich_page("https://example.com/", "x"))

        assert document_id == 11
        sql, *values = conn.fetchval.call_args.args
        assert "reading_time_minutes" in sql
        assert len(values) == len(FULL_COLUMNS)

    async def test_falls_back_on_missing_column(self, adapter):
        conn = fake_connection([
            asyncpg.exceptions.UndefinedColumnError('column "word_count" does not exist'),
            7,
        ])
        document_id = await adapter._insert_document_row(conn, rich_page("https://example.com/", "x"))

        assert document_id == 7
        assert conn.fetchval.call_count == 2
        sql, *values = conn.fetchval.call_args.args
        assert "word_count" not in sql
        assert len(values) == len(SEO_COLUMNS)

    async def test_unique_violation_is_conflict(self, adapter):
        conn = fake_connection([asyncpg.exceptions.UniqueViolationError("duplicate key value")])
        with pytest.raises(DocumentConflictError):
            await adapter._insert_document_row(conn, rich_page("https://example.com/", "x"))
