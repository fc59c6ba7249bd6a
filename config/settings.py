"""Application settings for SiteFoundry.

Each section is a pydantic model with a ``from_env()`` constructor so
deployments configure everything through environment variables.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from .database import DatabaseConfig


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None


class EmbeddingConfig(BaseModel):
    """Embedding provider configuration."""
    provider: str = Field(default="sentence-transformers", description="sentence-transformers or openai")
    model: str = Field(default="all-MiniLM-L6-v2", description="Model name")
    dimension: int = Field(default=384, description="Vector dimension (openai provider only)")
    requests_per_second: Optional[float] = Field(default=None, description="Rate limit for embed calls")
    burst: Optional[int] = Field(default=None, description="Token bucket capacity")
    api_key: Optional[str] = Field(default=None, description="API key for the openai provider")
    base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible endpoint")

    @classmethod
    def from_env(cls) -> 'EmbeddingConfig':
        provider = os.getenv('EMBEDDING_PROVIDER', 'sentence-transformers').lower()
        default_model = 'text-embedding-ada-002' if provider == 'openai' else 'all-MiniLM-L6-v2'
        default_dimension = '1536' if provider == 'openai' else '384'
        burst = os.getenv('EMBEDDING_BURST')
        return cls(
            provider=provider,
            model=os.getenv('EMBEDDING_MODEL', default_model),
            dimension=int(os.getenv('EMBEDDING_DIMENSION', default_dimension)),
            requests_per_second=_env_optional_float('EMBEDDING_RPS'),
            burst=int(burst) if burst else None,
            api_key=os.getenv('OPENAI_API_KEY'),
            base_url=os.getenv('OPENAI_BASE_URL', 'https://api.openai.com/v1')
        )


class IngestionConfig(BaseModel):
    """Chunking, batching and scraping settings."""
    chunk_max_length: int = 500
    chunk_overlap: int = 50
    chunk_min_length: int = 100
    batch_size: int = Field(default=5, ge=1)
    max_urls: int = Field(default=100, ge=1)
    skip_existing: bool = True
    batch_delay: float = Field(default=1.0, ge=0, description="Seconds between batches")
    scraper_timeout: int = 30
    scraper_max_concurrent: int = 10
    scraper_max_retries: int = 0
    user_agent: Optional[str] = None
    origin_requests_per_second: Optional[float] = Field(default=None, description="Per-origin scrape rate limit")

    @classmethod
    def from_env(cls) -> 'IngestionConfig':
        return cls(
            chunk_max_length=int(os.getenv('CHUNK_MAX_LENGTH', '500')),
            chunk_overlap=int(os.getenv('CHUNK_OVERLAP', '50')),
            chunk_min_length=int(os.getenv('CHUNK_MIN_LENGTH', '100')),
            batch_size=int(os.getenv('INGEST_BATCH_SIZE', '5')),
            max_urls=int(os.getenv('INGEST_MAX_URLS', '100')),
            skip_existing=_env_bool('INGEST_SKIP_EXISTING', True),
            batch_delay=float(os.getenv('INGEST_BATCH_DELAY', '1.0')),
            scraper_timeout=int(os.getenv('SCRAPER_TIMEOUT', '30')),
            scraper_max_concurrent=int(os.getenv('SCRAPER_MAX_CONCURRENT', '10')),
            scraper_max_retries=int(os.getenv('SCRAPER_MAX_RETRIES', '0')),
            user_agent=os.getenv('SCRAPER_USER_AGENT'),
            origin_requests_per_second=_env_optional_float('SCRAPER_ORIGIN_RPS')
        )


class SearchConfig(BaseModel):
    """Retrieval settings."""
    threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    default_limit: int = Field(default=5, ge=1)
    homepage_url: str = "https://www.example.com/"

    @classmethod
    def from_env(cls) -> 'SearchConfig':
        return cls(
            threshold=float(os.getenv('SEARCH_THRESHOLD', '0.7')),
            default_limit=int(os.getenv('SEARCH_DEFAULT_LIMIT', '5')),
            homepage_url=os.getenv('SEARCH_HOMEPAGE_URL', 'https://www.example.com/')
        )


class AppConfig(BaseModel):
    """Top-level configuration."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    log_level: str = "INFO"
    log_json: bool = False
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            embedding=EmbeddingConfig.from_env(),
            ingestion=IngestionConfig.from_env(),
            search=SearchConfig.from_env(),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_json=_env_bool('LOG_JSON', False),
            log_file=os.getenv('LOG_FILE') or None
        )
