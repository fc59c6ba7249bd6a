"""Exception hierarchy for SiteFoundry ingestion and retrieval."""

from typing import Optional


class SiteFoundryError(Exception):
    """Base class for all SiteFoundry errors."""


class InvalidInputError(SiteFoundryError):
    """Malformed caller input (bad URL, bad option). Fails fast."""


class DiscoveryError(SiteFoundryError):
    """URL discovery (sitemap fetch or parse) failed before any batch started."""


class ScrapeError(SiteFoundryError):
    """Fetching or extracting a single page failed."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"Failed to scrape {url}: {message}")
        self.url = url
        self.status_code = status_code


class StoreError(SiteFoundryError):
    """Base class for document store failures."""


class ChunkIntegrityError(StoreError):
    """No chunk of a document could be persisted, so the document was removed."""

    def __init__(self, url: str, attempted: int):
        super().__init__(
            f"Failed to create any chunks for document {url} ({attempted} attempted)"
        )
        self.url = url
        self.attempted = attempted


class DocumentConflictError(StoreError):
    """A concurrent writer inserted the same URL first. Retryable."""

    def __init__(self, url: str):
        super().__init__(f"Concurrent write detected for {url}")
        self.url = url


class IngestionCancelled(SiteFoundryError):
    """The cancellation token of an ingestion run fired."""
