"""Deterministic stand-ins for the embedding provider and the scraper."""

import asyncio
import hashlib
from typing import Dict, Iterable, List, Optional, Union

import numpy as np

from services.shared.errors import ScrapeError
from services.shared.models import ContentQuality, Heading, Image, Link, MetaTag, ScrapedPage, SeoMetadata

DIMENSION = 8


def unit(values: Iterable[float]) -> np.ndarray:
    vector = np.asarray(list(values), dtype=np.float32)
    return vector / np.linalg.norm(vector)


def axis(index: int, dimension: int = DIMENSION) -> np.ndarray:
    vector = np.zeros(dimension, dtype=np.float32)
    vector[index] = 1.0
    return vector


class MappingEmbedder:
    """Returns configured vectors for known texts, hash-seeded ones otherwise.

    Texts containing any ``fail_on`` marker raise, which simulates a
    provider failure for that chunk only.
    """

    def __init__(self, vectors: Optional[Dict[str, np.ndarray]] = None,
                 dimension: int = DIMENSION, fail_on: Iterable[str] = ()):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.fail_on = set(fail_on)
        self.calls: List[str] = []

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if any(marker in text for marker in self.fail_on):
            raise RuntimeError(f"embedding provider rejected: {text[:20]}")
        if text in self.vectors:
            return self.vectors[text]
        seed = int.from_bytes(hashlib.sha256(text.encode()).digest()[:8], "big")
        return np.random.default_rng(seed).standard_normal(self.dimension).astype(np.float32)


def make_page(url: str, content: str, title: str = "Test Page", **extra) -> ScrapedPage:
    return ScrapedPage(url=url, title=title, content=content, **extra)


def rich_page(url: str, content: str, title: str = "Rich Page") -> ScrapedPage:
    """A page carrying every kind of metadata row."""
    return ScrapedPage(
        url=url,
        title=title,
        content=content,
        seo=SeoMetadata(meta_description="A description", og_title="OG title",
                        schema_markup=['{"@type": "Organization"}']),
        quality=ContentQuality(word_count=len(content.split()), sentence_count=2, paragraph_count=1,
                               average_sentence_length=5.0, average_words_per_paragraph=10.0,
                               reading_time_minutes=1),
        meta_tags=[MetaTag(content="A description", name="description"),
                   MetaTag(content="OG title", property="og:title")],
        headings=[Heading(level=1, text="Welcome", order=0), Heading(level=2, text="Details", order=1)],
        links=[Link(url="https://example.com/about", anchor_text="About", is_internal=True),
               Link(url="https://other.org/", anchor_text="Elsewhere", is_internal=False)],
        images=[Image(src="https://example.com/logo.png", alt="Logo", width=120, height=40)],
    )


class FakeScraper:
    """Serves canned pages; a URL mapped to an exception raises it."""

    def __init__(self, pages: Dict[str, Union[ScrapedPage, Exception]], delay: float = 0.0):
        self.pages = pages
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0

    async def scrape(self, url: str, cancel_token=None) -> ScrapedPage:
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.pages.get(url)
            if outcome is None:
                raise ScrapeError(url, "HTTP error status 404", status_code=404)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1


class FakeDiscovery:
    def __init__(self, urls: List[str] = None, error: Exception = None):
        self.urls = urls or []
        self.error = error
        self.calls: List[str] = []

    async def discover(self, entry_point: str) -> List[str]:
        self.calls.append(entry_point)
        if self.error is not None:
            raise self.error
        return list(self.urls)
