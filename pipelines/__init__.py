"""Pipelines package for SiteFoundry.

Provides page scraping, sitemap discovery and batch ingestion.
"""

from .batch_ingest import BatchIngestor, BatchReport, IngestionResult
from .scraper import WebScraper, parse_html
from .sitemap import SitemapDiscovery, is_default_language_url, parse_sitemap_xml

__all__ = [
    # Batch ingestion
    'BatchIngestor',
    'BatchReport',
    'IngestionResult',

    # Scraping
    'WebScraper',
    'parse_html',

    # Discovery
    'SitemapDiscovery',
    'is_default_language_url',
    'parse_sitemap_xml'
]
