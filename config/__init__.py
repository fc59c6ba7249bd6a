"""Configuration module for SiteFoundry.

Provides configuration management for the database, embeddings,
ingestion and search.
"""

from .database import (
    DatabaseConfig,
    DatabaseType,
    create_document_store
)
from .settings import (
    AppConfig,
    EmbeddingConfig,
    IngestionConfig,
    SearchConfig
)

__all__ = [
    'AppConfig',
    'DatabaseConfig',
    'DatabaseType',
    'EmbeddingConfig',
    'IngestionConfig',
    'SearchConfig',
    'create_document_store'
]
