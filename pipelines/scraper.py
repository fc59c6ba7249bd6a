"""Web page scraper for SiteFoundry.

Fetches a page with aiohttp and extracts a ``ScrapedPage``: title, SEO
fields, JSON-LD blocks, meta tags, headings, links, images and the main
body text, normalized to single-spaced plain text.
"""

import asyncio
import json
import logging
import math
import random
import re
from typing import List, Optional
from urllib.parse import urljoin, urlparse

import aiohttp
from bs4 import BeautifulSoup

from services.shared.concurrency import CancellationToken
from services.shared.errors import ScrapeError
from services.shared.models import (
    ContentQuality, Heading, Image, Link, MetaTag, ScrapedPage, SeoMetadata,
)

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "SiteFoundryBot/1.0 (+https://github.com/sitefoundry/sitefoundry)"

MAIN_CONTENT_SELECTOR = "article, main, .content, #content, .post, .entry"
BOILERPLATE_SELECTOR = "script, style, nav, footer, header, aside, .nav, .footer, .header, .sidebar"
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

_WORD = re.compile(r"\b\w+\b")
_SENTENCE_END = re.compile(r"[.!?]+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_LEADING_INT = re.compile(r"^\s*(\d+)")


def _meta_content(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag is None:
        return None
    return tag.get("content")


def _parse_dimension(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = _LEADING_INT.match(value)
    return int(match.group(1)) if match else None


def analyze_content_quality(text: str) -> ContentQuality:
    """Size metrics of extracted text. ``text`` may still contain line breaks."""
    words = _WORD.findall(text.lower())
    sentences = [s for s in _SENTENCE_END.split(text) if len(s.strip()) > 10]
    paragraphs = [p for p in _PARAGRAPH_BREAK.split(text) if p.strip()]

    word_count = len(words)
    sentence_count = len(sentences)
    paragraph_count = max(len(paragraphs), 1)

    average_sentence_length = word_count / sentence_count if sentence_count else 0.0
    return ContentQuality(
        word_count=word_count,
        sentence_count=sentence_count,
        paragraph_count=paragraph_count,
        average_sentence_length=round(average_sentence_length, 2),
        average_words_per_paragraph=round(word_count / paragraph_count, 2),
        reading_time_minutes=math.ceil(word_count / 200),
    )


def extract_seo(soup: BeautifulSoup) -> SeoMetadata:
    title_tag = soup.find("title")
    canonical = soup.find("link", rel="canonical")
    seo = SeoMetadata(
        meta_title=_meta_content(soup, name="title") or (title_tag.get_text() if title_tag else None),
        meta_description=_meta_content(soup, name="description"),
        meta_keywords=_meta_content(soup, name="keywords"),
        meta_robots=_meta_content(soup, name="robots"),
        canonical_url=canonical.get("href") if canonical else None,
        og_title=_meta_content(soup, property="og:title"),
        og_description=_meta_content(soup, property="og:description"),
        og_image=_meta_content(soup, property="og:image"),
        og_type=_meta_content(soup, property="og:type"),
        twitter_title=_meta_content(soup, name="twitter:title"),
        twitter_description=_meta_content(soup, name="twitter:description"),
        twitter_image=_meta_content(soup, name="twitter:image"),
        twitter_card=_meta_content(soup, name="twitter:card"),
    )

    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            json.loads(raw)
        except ValueError:
            logger.debug("Skipping invalid JSON-LD block")
            continue
        seo.schema_markup.append(raw.strip())
    return seo


def extract_title(soup: BeautifulSoup) -> str:
    title_tag = soup.find("title")
    h1 = soup.find("h1")
    for candidate in (
        title_tag.get_text() if title_tag else None,
        h1.get_text() if h1 else None,
        _meta_content(soup, property="og:title"),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return "Untitled"


def extract_meta_tags(soup: BeautifulSoup) -> List[MetaTag]:
    tags = []
    for meta in soup.find_all("meta"):
        name = meta.get("name")
        prop = meta.get("property")
        content = meta.get("content")
        if (name or prop) and content:
            tags.append(MetaTag(content=content, name=name, property=prop))
    return tags


def extract_headings(soup: BeautifulSoup) -> List[Heading]:
    headings = []
    for element in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6"]):
        text = element.get_text().strip()
        if text:
            headings.append(Heading(level=int(element.name[1]), text=text, order=len(headings)))
    return headings


def extract_links(soup: BeautifulSoup, base_url: str) -> List[Link]:
    base_host = urlparse(base_url).hostname
    links = []
    for anchor in soup.find_all("a", href=True):
        anchor_text = anchor.get_text().strip()
        if not anchor_text:
            continue
        try:
            absolute = urljoin(base_url, anchor["href"])
            parsed = urlparse(absolute)
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https"):
            continue
        links.append(Link(url=absolute, anchor_text=anchor_text, is_internal=parsed.hostname == base_host))
    return links


def extract_images(soup: BeautifulSoup, base_url: str) -> List[Image]:
    images = []
    for img in soup.find_all("img", src=True):
        try:
            src = urljoin(base_url, img["src"])
        except ValueError:
            continue
        images.append(Image(
            src=src,
            alt=img.get("alt") or "",
            width=_parse_dimension(img.get("width")),
            height=_parse_dimension(img.get("height")),
        ))
    return images


def extract_main_text(html: str) -> str:
    """Visible text of the main content region, boilerplate removed."""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup.select(BOILERPLATE_SELECTOR):
        element.decompose()

    region = soup.select_one(MAIN_CONTENT_SELECTOR) or soup.body or soup
    return region.get_text("\n")


def parse_html(html: str, url: str) -> ScrapedPage:
    """Extract a ``ScrapedPage`` from raw HTML.

    Raises:
        ScrapeError: the page has no visible main content.
    """
    soup = BeautifulSoup(html, "html.parser")
    raw_text = extract_main_text(html)
    content = re.sub(r"\s+", " ", raw_text).strip()
    if not content:
        raise ScrapeError(url, "No content found on the page")

    return ScrapedPage(
        url=url,
        title=extract_title(soup),
        content=content,
        seo=extract_seo(soup),
        quality=analyze_content_quality(raw_text.strip()),
        meta_tags=extract_meta_tags(soup),
        headings=extract_headings(soup),
        links=extract_links(soup, url),
        images=extract_images(soup, url),
    )


class WebScraper:
    """Asynchronous page scraper."""

    def __init__(self,
                 max_concurrent: int = 10,
                 request_timeout: int = 30,
                 user_agent: str = DEFAULT_USER_AGENT,
                 max_retries: int = 0,
                 retry_delay: float = 1.0,
                 max_retry_delay: float = 30.0):
        """Initialize scraper.

        Args:
            max_concurrent: Maximum concurrent requests
            request_timeout: Request timeout in seconds
            user_agent: User agent string
            max_retries: Retries of retryable failures (0 disables retry)
            retry_delay: Base delay between retries (seconds)
            max_retry_delay: Maximum delay between retries (seconds)
        """
        self.max_concurrent = max_concurrent
        self.request_timeout = request_timeout
        self.user_agent = user_agent
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.session: Optional[aiohttp.ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent)

    async def __aenter__(self):
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self.max_concurrent * 2),
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={"User-Agent": self.user_agent}
            )
        return self.session

    async def close(self):
        """Close the scraper session."""
        if self.session:
            await self.session.close()
            self.session = None

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self.retry_delay * (2 ** attempt)
        jitter = random.uniform(0.1, 0.3) * base_delay
        return min(base_delay + jitter, self.max_retry_delay)

    async def _backoff(self, attempt: int, cancel_token: Optional[CancellationToken]):
        delay = self._calculate_retry_delay(attempt)
        if cancel_token is not None:
            await cancel_token.sleep(delay)
            cancel_token.raise_if_cancelled()
        else:
            await asyncio.sleep(delay)

    async def fetch(self, url: str, cancel_token: Optional[CancellationToken] = None) -> str:
        """Fetch a page body, retrying retryable failures when enabled."""
        session = await self._get_session()

        for attempt in range(self.max_retries + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                async with self.semaphore:
                    logger.debug(f"Fetching {url} (attempt {attempt + 1}/{self.max_retries + 1})")
                    async with session.get(url, allow_redirects=True) as response:
                        if response.status in RETRYABLE_STATUS_CODES and attempt < self.max_retries:
                            logger.warning(f"Retryable status {response.status} for {url}, attempt {attempt + 1}/{self.max_retries + 1}")
                        elif response.status != 200:
                            raise ScrapeError(url, f"HTTP error status {response.status}", status_code=response.status)
                        else:
                            return await response.text()
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                if attempt >= self.max_retries:
                    raise ScrapeError(url, f"{type(e).__name__}: {e}") from e
                logger.warning(f"Error fetching {url}: {e}, retrying (attempt {attempt + 1}/{self.max_retries + 1})")

            await self._backoff(attempt, cancel_token)

        raise ScrapeError(url, "Retries exhausted")

    async def scrape(self, url: str, cancel_token: Optional[CancellationToken] = None) -> ScrapedPage:
        html = await self.fetch(url, cancel_token)
        page = parse_html(html, url)
        logger.info(f"Scraped {url}: {len(page.content)} chars, {len(page.headings)} headings, {len(page.links)} links")
        return page
