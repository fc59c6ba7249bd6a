"""Models, errors, interfaces and concurrency primitives shared across packages."""

from .concurrency import CancellationToken, TokenBucket, KeyedLock
from .errors import (
    SiteFoundryError,
    InvalidInputError,
    DiscoveryError,
    ScrapeError,
    StoreError,
    ChunkIntegrityError,
    DocumentConflictError,
    IngestionCancelled
)
from .models import (
    MetaTag,
    Heading,
    Link,
    Image,
    SeoMetadata,
    ContentQuality,
    ScrapedPage,
    StoredDocument,
    SearchResult
)

__all__ = [
    'CancellationToken',
    'TokenBucket',
    'KeyedLock',
    'SiteFoundryError',
    'InvalidInputError',
    'DiscoveryError',
    'ScrapeError',
    'StoreError',
    'ChunkIntegrityError',
    'DocumentConflictError',
    'IngestionCancelled',
    'MetaTag',
    'Heading',
    'Link',
    'Image',
    'SeoMetadata',
    'ContentQuality',
    'ScrapedPage',
    'StoredDocument',
    'SearchResult'
]
