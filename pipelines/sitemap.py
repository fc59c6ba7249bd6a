"""Sitemap URL discovery.

Expands a sitemap (or sitemap index) into the list of default-language
page URLs to ingest.
"""

import asyncio
import logging
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
from bs4 import BeautifulSoup

from services.shared.errors import DiscoveryError

from .scraper import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

# First path segments that mark a translated copy of a page.
LOCALE_PREFIXES = frozenset("""
en en-us en-gb en-au en-ca en-nz en-ie en-za en-in
ar fr de es it pt ru ja ko zh zh-cn zh-hans zh-hant hi th vi
pl nl sv da no fi tr cs hu ro bg hr sk sl et lv lt mt
el cy ga eu ca gl ast an oc co sc rm fur lld vec lij pms
lmo eml rgn nap scn srd mg sw zu af xh st tn ts ss nr nd
ve he fa ur bn ta te kn ml gu pa or as mr ne si
my km lo ka am ti so ha ig yo id ms tl ceb haw mi sm to
pt-br pt-pt es-es es-mx es-ar es-co es-pe es-ve es-cl es-ec es-gt es-cu es-bo
es-do es-hn es-py es-sv es-ni es-cr es-pa es-uy fr-ca fr-ch fr-be de-at
de-ch it-ch nl-be zh-tw zh-hk ar-ae ar-sa ar-eg ar-ma fr-fr de-de it-it
ru-ru ja-jp ko-kr hi-in th-th vi-vn
""".split())


def is_default_language_url(url: str) -> bool:
    """True when the URL path has no locale prefix such as ``/fr/``."""
    try:
        path = urlparse(url).path
    except ValueError:
        return False
    segments = path.split("/")
    # "/fr/page" -> ["", "fr", "page"]; a prefix needs a following slash
    if len(segments) < 3:
        return True
    return segments[1].lower() not in LOCALE_PREFIXES


def parse_sitemap_xml(xml: str) -> Tuple[str, List[str]]:
    """Parse sitemap XML into ``(kind, locations)``.

    ``kind`` is ``"sitemapindex"`` (locations are child sitemaps) or
    ``"urlset"`` (locations are pages). Tags match by local name, so
    prefixed documents such as ``<sm:urlset>`` parse the same way.

    Raises:
        ValueError: the document is neither a urlset nor a sitemap index.
    """
    soup = BeautifulSoup(xml, "xml")
    index = soup.find("sitemapindex")
    if index is not None:
        entries = index.find_all("sitemap")
        kind = "sitemapindex"
    else:
        urlset = soup.find("urlset")
        if urlset is None:
            raise ValueError("Invalid sitemap format")
        entries = urlset.find_all("url")
        kind = "urlset"

    locations = []
    for entry in entries:
        loc = entry.find("loc", recursive=False)
        if loc is not None and loc.get_text().strip():
            locations.append(loc.get_text().strip())
    return kind, locations


def _dedupe(urls: List[str]) -> List[str]:
    seen = set()
    unique = []
    for url in urls:
        if url not in seen:
            seen.add(url)
            unique.append(url)
    return unique


class SitemapDiscovery:
    """URL discovery from XML sitemaps over aiohttp."""

    def __init__(self, request_timeout: int = 30, user_agent: str = DEFAULT_USER_AGENT,
                 session: Optional[aiohttp.ClientSession] = None):
        self.request_timeout = request_timeout
        self.user_agent = user_agent
        self.session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                headers={"User-Agent": self.user_agent}
            )
            self._owns_session = True
        return self.session

    async def close(self):
        if self.session and self._owns_session:
            await self.session.close()
            self.session = None

    async def fetch_sitemap(self, sitemap_url: str) -> str:
        session = await self._get_session()
        try:
            async with session.get(sitemap_url) as response:
                if response.status != 200:
                    raise DiscoveryError(f"Failed to fetch sitemap {sitemap_url}: HTTP status {response.status}")
                return await response.text()
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            raise DiscoveryError(f"Failed to fetch sitemap {sitemap_url}: {e}") from e

    async def _load(self, sitemap_url: str) -> Tuple[str, List[str]]:
        xml = await self.fetch_sitemap(sitemap_url)
        try:
            return parse_sitemap_xml(xml)
        except ValueError as e:
            raise DiscoveryError(f"Failed to parse sitemap {sitemap_url}: {e}") from e

    async def discover(self, entry_point: str) -> List[str]:
        """Default-language page URLs reachable from a sitemap, deduplicated in order.

        Raises:
            DiscoveryError: the entry sitemap cannot be fetched or parsed.
        """
        kind, locations = await self._load(entry_point)

        if kind == "urlset":
            pages = locations
        else:
            pages = []
            for child in locations:
                try:
                    child_kind, child_locations = await self._load(child)
                except DiscoveryError as e:
                    logger.warning(f"Skipping child sitemap {child}: {e}")
                    continue
                if child_kind == "urlset":
                    pages.extend(child_locations)
                else:
                    logger.warning(f"Skipping nested sitemap index {child}")

        urls = _dedupe([url for url in pages if is_default_language_url(url)])
        logger.info(f"Discovered {len(urls)} default-language URLs from {entry_point} "
                    f"({len(pages) - len(urls)} filtered or duplicate)")
        return urls
