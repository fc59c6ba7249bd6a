"""Service wiring for the API and CLI.

``build_services`` constructs every collaborator from configuration and
returns them in a ``ServiceContainer``. Tests build a container by hand
with fakes instead.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.database import create_document_store
from config.settings import AppConfig, EmbeddingConfig
from indexer.chunker import TextChunker
from indexer.document_store import DocumentStore
from indexer.embeddings import OpenAIEmbedder, SentenceTransformerEmbedder
from indexer.homepage import HomepageResolver
from indexer.retrieval import SimilaritySearch
from pipelines.batch_ingest import BatchIngestor
from pipelines.scraper import DEFAULT_USER_AGENT, WebScraper
from pipelines.sitemap import SitemapDiscovery
from services.shared.concurrency import CancellationToken, TokenBucket
from services.shared.interfaces import EmbeddingGenerator

from .jobs import JobManager, JobRecord

logger = logging.getLogger(__name__)

SITEMAP_JOB = "sitemap_ingest"


@dataclass
class ServiceContainer:
    """Everything a request handler needs."""
    config: AppConfig
    embedder: EmbeddingGenerator
    store: DocumentStore
    ingestor: BatchIngestor
    search: SimilaritySearch
    homepage: HomepageResolver
    jobs: JobManager
    scraper: Optional[Any] = None
    discovery: Optional[Any] = None

    def __post_init__(self):
        if SITEMAP_JOB not in self.jobs.job_handlers:
            self.jobs.register_handler(SITEMAP_JOB, self._sitemap_job)

    async def _sitemap_job(self, job: JobRecord, cancel_token: CancellationToken) -> Dict[str, Any]:
        params = job.parameters

        def progress(report):
            job.add_log(f"Batch {report.batches_completed}/{report.total_batches} done: "
                        f"{report.successful} succeeded, {report.failed} failed")

        report = await self.ingestor.ingest_sitemap(
            params["sitemap_url"],
            batch_size=params.get("batch_size", self.config.ingestion.batch_size),
            max_urls=params.get("max_urls", self.config.ingestion.max_urls),
            skip_existing=params.get("skip_existing", self.config.ingestion.skip_existing),
            cancel_token=cancel_token,
            progress_callback=progress,
        )
        return report.to_dict()

    async def close(self):
        """Stop jobs and release connections."""
        await self.jobs.shutdown()
        for component in (self.scraper, self.discovery, self.embedder):
            close = getattr(component, "close", None)
            if close is not None:
                await close()
        await self.store.close()
        logger.info("Services closed")


def create_embedder(config: EmbeddingConfig) -> EmbeddingGenerator:
    limiter = None
    if config.requests_per_second:
        limiter = TokenBucket(config.requests_per_second, config.burst)

    if config.provider == "openai":
        return OpenAIEmbedder(
            api_key=config.api_key,
            model_name=config.model,
            dimension=config.dimension,
            base_url=config.base_url,
            rate_limiter=limiter
        )
    if config.provider in ("sentence-transformers", "local"):
        return SentenceTransformerEmbedder(config.model, rate_limiter=limiter)
    raise ValueError(f"Unknown embedding provider: {config.provider}")


async def build_services(config: Optional[AppConfig] = None) -> ServiceContainer:
    """Construct and initialize all services from configuration."""
    config = config or AppConfig.from_env()
    ingestion = config.ingestion

    embedder = create_embedder(config.embedding)
    store = await create_document_store(config.database, embedder)

    user_agent = ingestion.user_agent or DEFAULT_USER_AGENT
    scraper = WebScraper(
        max_concurrent=ingestion.scraper_max_concurrent,
        request_timeout=ingestion.scraper_timeout,
        user_agent=user_agent,
        max_retries=ingestion.scraper_max_retries
    )
    discovery = SitemapDiscovery(request_timeout=ingestion.scraper_timeout, user_agent=user_agent)
    origin_limiter = None
    if ingestion.origin_requests_per_second:
        origin_limiter = TokenBucket(ingestion.origin_requests_per_second)

    ingestor = BatchIngestor(
        scraper=scraper,
        store=store,
        discovery=discovery,
        chunker=TextChunker(ingestion.chunk_max_length, ingestion.chunk_overlap, ingestion.chunk_min_length),
        batch_delay=ingestion.batch_delay,
        origin_limiter=origin_limiter
    )
    homepage = HomepageResolver(store, config.search.homepage_url)
    search = SimilaritySearch(store, embedder, homepage, threshold=config.search.threshold)

    return ServiceContainer(
        config=config,
        embedder=embedder,
        store=store,
        ingestor=ingestor,
        search=search,
        homepage=homepage,
        jobs=JobManager(),
        scraper=scraper,
        discovery=discovery,
    )
