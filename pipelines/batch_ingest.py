"""Batch ingestion pipeline for SiteFoundry.

Drives scrape -> chunk -> store for lists of URLs or for every page a
sitemap lists. Batches run one after another with a polite delay between
them; the URLs inside a batch run concurrently.
"""

import asyncio
import inspect
import json
import logging
import math
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from indexer.chunker import TextChunker
from indexer.document_store import DocumentStore
from observability.logging import get_structured_logger
from services.shared.concurrency import CancellationToken, TokenBucket
from services.shared.errors import IngestionCancelled, InvalidInputError
from services.shared.interfaces import Scraper, UrlDiscovery

logger = logging.getLogger(__name__)
struct_logger = get_structured_logger(__name__, component="batch_ingest")

STAGE_SCRAPE = "scrape"
STAGE_CHUNK = "chunk"
STAGE_STORE = "store"


@dataclass
class IngestionResult:
    """Outcome of ingesting one URL."""
    url: str
    success: bool
    document_id: Optional[int] = None
    chunks_created: int = 0
    title: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchReport:
    """Accounting for one batch ingestion run.

    ``total_urls`` counts the URLs planned after truncation and skipping;
    ``processed`` counts those actually attempted. They differ only when
    the run was cancelled.
    """
    total_urls: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_batches: int = 0
    batches_completed: int = 0
    cancelled: bool = False
    skip_existing: bool = True
    urls_discovered: Optional[int] = None
    duration_seconds: float = 0.0
    results: List[IngestionResult] = field(default_factory=list)

    @property
    def success_rate(self) -> int:
        """Percentage of attempted URLs that succeeded, rounded half up."""
        if self.processed == 0:
            return 0
        return math.floor(self.successful * 100 / self.processed + 0.5)

    def add(self, result: IngestionResult):
        self.results.append(result)
        self.processed += 1
        if result.success:
            self.successful += 1
        else:
            self.failed += 1

    def summary(self) -> Dict[str, Any]:
        summary = {
            "success_rate": self.success_rate,
            "processing_time_estimate": f"{self.batches_completed} batches processed",
            "urls_processed": self.processed,
            "existing_urls_skipped": self.skipped,
            "skip_existing_enabled": self.skip_existing,
        }
        if self.urls_discovered is not None:
            summary["urls_discovered"] = self.urls_discovered
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_urls": self.total_urls,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_batches": self.total_batches,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "results": [result.to_dict() for result in self.results],
            "summary": self.summary(),
        }


ProgressCallback = Callable[[BatchReport], Any]


def validate_http_url(url: str) -> str:
    if not isinstance(url, str) or not url.strip():
        raise InvalidInputError("A URL is required")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError(f"Invalid URL format: {url}")
    return url


class BatchIngestor:
    """Scrape, chunk and store URLs in sequential, internally parallel batches."""

    def __init__(self,
                 scraper: Scraper,
                 store: DocumentStore,
                 discovery: Optional[UrlDiscovery] = None,
                 chunker: Optional[TextChunker] = None,
                 batch_delay: float = 1.0,
                 origin_limiter: Optional[TokenBucket] = None):
        self.scraper = scraper
        self.store = store
        self.discovery = discovery
        self.chunker = chunker or TextChunker(max_length=500, overlap=50, min_chunk_length=100)
        self.batch_delay = batch_delay
        self.origin_limiter = origin_limiter

    async def ingest_url(self, url: str,
                         cancel_token: Optional[CancellationToken] = None) -> IngestionResult:
        """Scrape, chunk and store a single URL.

        Failures are returned as an unsuccessful result carrying the stage
        that failed. Only cancellation propagates.
        """
        log = struct_logger.bind(url=url)
        stage = STAGE_SCRAPE
        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            if self.origin_limiter is not None:
                await self.origin_limiter.acquire(cancel_token)
            page = await self.scraper.scrape(url, cancel_token=cancel_token)

            stage = STAGE_CHUNK
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            chunks = self.chunker.split(page.content)

            stage = STAGE_STORE
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            stored = await self.store.store_document(page, chunks, cancel_token=cancel_token)
        except IngestionCancelled:
            log.info("Ingestion cancelled", stage=stage)
            raise
        except Exception as e:
            log.error(f"Failed to ingest {url}: {e}", stage=stage, error_type=type(e).__name__)
            return IngestionResult(url=url, success=False, error=str(e),
                                   error_type=type(e).__name__, stage=stage)

        log.info(f"Ingested {url} ({stored.chunks_created}/{len(chunks)} chunks)", stage=stage)
        return IngestionResult(
            url=url,
            success=True,
            document_id=stored.id,
            chunks_created=stored.chunks_created,
            title=page.title,
        )

    async def _ingest_or_none(self, url: str,
                              cancel_token: Optional[CancellationToken]) -> Optional[IngestionResult]:
        try:
            return await self.ingest_url(url, cancel_token)
        except IngestionCancelled:
            return None

    async def _notify(self, progress_callback: Optional[ProgressCallback], report: BatchReport):
        if progress_callback is None:
            return
        outcome = progress_callback(report)
        if inspect.isawaitable(outcome):
            await outcome

    async def ingest_urls(self, urls: List[str],
                          batch_size: int = 5,
                          max_urls: int = 100,
                          skip_existing: bool = True,
                          cancel_token: Optional[CancellationToken] = None,
                          progress_callback: Optional[ProgressCallback] = None) -> BatchReport:
        """Ingest ``urls`` in batches and return the run's report."""
        if batch_size < 1:
            raise InvalidInputError("batch_size must be at least 1")
        if max_urls < 1:
            raise InvalidInputError("max_urls must be at least 1")

        started = time.monotonic()
        report = BatchReport(skip_existing=skip_existing)
        limited = list(urls[:max_urls])

        to_process = limited
        if skip_existing and limited:
            existing, to_process = await self.store.check_existing_urls(limited)
            report.skipped = len(existing)
            if existing:
                logger.info(f"Skipping {len(existing)} existing URLs, {len(to_process)} new URLs to process")

        batches = [to_process[i:i + batch_size] for i in range(0, len(to_process), batch_size)]
        report.total_urls = len(to_process)
        report.total_batches = len(batches)
        logger.info(f"Processing {len(to_process)} URLs in {len(batches)} batches")

        for index, batch in enumerate(batches):
            if cancel_token is not None and cancel_token.cancelled:
                report.cancelled = True
                break

            logger.info(f"Processing batch {index + 1}/{len(batches)} with {len(batch)} URLs")
            batch_results = await asyncio.gather(*(self._ingest_or_none(url, cancel_token) for url in batch))
            for result in batch_results:
                if result is not None:
                    report.add(result)
            report.batches_completed += 1

            succeeded = sum(1 for r in batch_results if r is not None and r.success)
            logger.info(f"Batch {index + 1} completed. Success: {succeeded}, "
                        f"Failed: {sum(1 for r in batch_results if r is not None) - succeeded}")
            await self._notify(progress_callback, report)

            if cancel_token is not None and cancel_token.cancelled:
                report.cancelled = True
                break

            if index < len(batches) - 1 and self.batch_delay > 0:
                if cancel_token is not None:
                    if await cancel_token.sleep(self.batch_delay):
                        report.cancelled = True
                        break
                else:
                    await asyncio.sleep(self.batch_delay)

        report.duration_seconds = time.monotonic() - started
        logger.info(f"Batch ingestion {'cancelled' if report.cancelled else 'completed'}. "
                    f"Total: {report.total_urls}, Successful: {report.successful}, "
                    f"Failed: {report.failed}, Skipped: {report.skipped}")
        return report

    async def ingest_sitemap(self, sitemap_url: str,
                             batch_size: int = 5,
                             max_urls: int = 100,
                             skip_existing: bool = True,
                             cancel_token: Optional[CancellationToken] = None,
                             progress_callback: Optional[ProgressCallback] = None) -> BatchReport:
        """Discover the pages of a sitemap and ingest them.

        Raises:
            InvalidInputError: ``sitemap_url`` is not an http(s) URL.
            DiscoveryError: the sitemap could not be fetched or parsed.
        """
        sitemap_url = validate_http_url(sitemap_url)
        if self.discovery is None:
            raise RuntimeError("No URL discovery configured")

        logger.info(f"Starting sitemap processing: {sitemap_url}")
        urls = await self.discovery.discover(sitemap_url)
        report = await self.ingest_urls(
            urls,
            batch_size=batch_size,
            max_urls=max_urls,
            skip_existing=skip_existing,
            cancel_token=cancel_token,
            progress_callback=progress_callback,
        )
        report.urls_discovered = len(urls)
        return report


def main():
    """CLI for sitemap ingestion and search."""
    import argparse

    from config.settings import AppConfig
    from observability.logging import setup_logging
    from server.dependencies import build_services

    parser = argparse.ArgumentParser(description="SiteFoundry ingestion CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sitemap_parser = subparsers.add_parser("sitemap", help="Ingest every page listed in a sitemap")
    sitemap_parser.add_argument("sitemap_url", help="Sitemap or sitemap index URL")
    sitemap_parser.add_argument("--batch-size", type=int, default=None, help="URLs per batch")
    sitemap_parser.add_argument("--max-urls", type=int, default=None, help="Maximum URLs to ingest")
    sitemap_parser.add_argument("--no-skip-existing", action="store_true", help="Re-ingest stored URLs")

    url_parser = subparsers.add_parser("url", help="Ingest a single page")
    url_parser.add_argument("url", help="Page URL")

    search_parser = subparsers.add_parser("search", help="Search stored chunks")
    search_parser.add_argument("query", help="Search query")
    search_parser.add_argument("--limit", type=int, default=None, help="Maximum results")
    search_parser.add_argument("--threshold", type=float, default=None, help="Similarity threshold")

    args = parser.parse_args()

    config = AppConfig.from_env()
    setup_logging(level=config.log_level, use_json=config.log_json, log_file=config.log_file)

    async def run() -> Dict[str, Any]:
        services = await build_services(config)
        try:
            if args.command == "sitemap":
                report = await services.ingestor.ingest_sitemap(
                    args.sitemap_url,
                    batch_size=args.batch_size or config.ingestion.batch_size,
                    max_urls=args.max_urls or config.ingestion.max_urls,
                    skip_existing=config.ingestion.skip_existing and not args.no_skip_existing,
                )
                return report.to_dict()
            if args.command == "url":
                return (await services.ingestor.ingest_url(validate_http_url(args.url))).to_dict()
            results = await services.search.search(
                args.query,
                limit=args.limit or config.search.default_limit,
                threshold=args.threshold,
            )
            return {"query": args.query, "results": [r.to_dict() for r in results]}
        finally:
            await services.close()

    print(json.dumps(asyncio.run(run()), indent=2, default=str))


if __name__ == "__main__":
    main()
