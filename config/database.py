"""Database configuration and store factory for SiteFoundry.

Supports SQLite (development, tests) and PostgreSQL with pgvector
(production). Stores are constructed explicitly and handed to their
consumers; nothing here holds a global connection.
"""

import os
import logging
from enum import Enum
from pydantic import BaseModel, Field

from indexer.document_store import DocumentStore
from indexer.postgres_adapter import PostgresAdapter, PostgresConfig
from indexer.sqlite_adapter import SQLiteAdapter
from services.shared.interfaces import EmbeddingGenerator

logger = logging.getLogger(__name__)


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


class DatabaseConfig(BaseModel):
    """Database configuration."""
    type: DatabaseType = Field(default=DatabaseType.SQLITE, description="Database type")

    # SQLite configuration
    sqlite_path: str = Field(default="sitefoundry.db", description="SQLite database path")

    # PostgreSQL configuration
    postgres: PostgresConfig = Field(default_factory=PostgresConfig, description="PostgreSQL configuration")

    # Write retry on concurrent-insert conflicts
    max_write_attempts: int = Field(default=3, ge=1, description="Attempts per document write")
    retry_delay: float = Field(default=0.2, ge=0, description="Base backoff delay in seconds")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create configuration from environment variables."""
        db_type = os.getenv('SITEFOUNDRY_DB_TYPE', 'sqlite').lower()
        retry = dict(
            max_write_attempts=int(os.getenv('DB_MAX_WRITE_ATTEMPTS', '3')),
            retry_delay=float(os.getenv('DB_RETRY_DELAY', '0.2'))
        )

        if db_type == 'postgresql':
            postgres_config = PostgresConfig(
                host=os.getenv('POSTGRES_HOST', 'localhost'),
                port=int(os.getenv('POSTGRES_PORT', '5432')),
                database=os.getenv('POSTGRES_DB', 'sitefoundry'),
                user=os.getenv('POSTGRES_USER', 'sitefoundry'),
                password=os.getenv('POSTGRES_PASSWORD', ''),
                min_connections=int(os.getenv('POSTGRES_MIN_CONNECTIONS', '5')),
                max_connections=int(os.getenv('POSTGRES_MAX_CONNECTIONS', '20')),
                command_timeout=int(os.getenv('POSTGRES_COMMAND_TIMEOUT', '60'))
            )
            return cls(type=DatabaseType.POSTGRESQL, postgres=postgres_config, **retry)

        return cls(
            type=DatabaseType.SQLITE,
            sqlite_path=os.getenv('SQLITE_PATH', 'sitefoundry.db'),
            **retry
        )


async def create_document_store(config: DatabaseConfig, embedder: EmbeddingGenerator) -> DocumentStore:
    """Build and initialize the configured document store."""
    options = dict(max_write_attempts=config.max_write_attempts, retry_delay=config.retry_delay)

    if config.type == DatabaseType.POSTGRESQL:
        logger.info("Initializing PostgreSQL adapter")
        store = PostgresAdapter(config.postgres, embedder, **options)
    else:
        logger.info("Initializing SQLite adapter")
        store = SQLiteAdapter(config.sqlite_path, embedder, **options)

    await store.initialize()
    logger.info(f"Document store initialized: {config.type.value}")
    return store
