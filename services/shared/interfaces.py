"""Collaborator contracts consumed by the ingestion core."""

from typing import List, Optional, Protocol, runtime_checkable

import numpy as np

from .concurrency import CancellationToken
from .models import ScrapedPage


@runtime_checkable
class EmbeddingGenerator(Protocol):
    """Text to fixed-length vector. Any call may raise."""

    dimension: int

    async def embed(self, text: str) -> np.ndarray:
        ...


@runtime_checkable
class Scraper(Protocol):
    async def scrape(self, url: str,
                     cancel_token: Optional[CancellationToken] = None) -> ScrapedPage:
        ...


@runtime_checkable
class UrlDiscovery(Protocol):
    async def discover(self, entry_point: str) -> List[str]:
        ...
