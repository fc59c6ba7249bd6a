"""Locates the stored document that represents a site's homepage."""

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from services.shared.errors import InvalidInputError

from .document_store import DocumentStore

logger = logging.getLogger(__name__)

Stage = Tuple[str, Callable[[], Awaitable[Optional[Dict[str, Any]]]]]


def bare_domain(url: str) -> str:
    """Host of ``url`` without a leading ``www.``."""
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


class HomepageResolver:
    """Resolves the homepage through a fixed chain of lookups.

    Stages run in order and the first hit wins:

    1. the canonical URL itself;
    2. the other scheme/host variants (https www, https bare, http www,
       http bare), skipping the canonical URL;
    3. any root URL of the domain, matched by regular expression;
    4. the shortest stored URL containing the domain.
    """

    def __init__(self, store: DocumentStore, canonical_url: str):
        parsed = urlparse(canonical_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise InvalidInputError(f"Invalid homepage URL: {canonical_url}")
        self.store = store
        self.canonical_url = canonical_url
        self.domain = bare_domain(canonical_url)

    def url_variants(self) -> List[str]:
        """Exact-match candidates after the canonical URL, in lookup order."""
        variants = []
        for scheme in ("https", "http"):
            for host in (f"www.{self.domain}", self.domain):
                candidate = f"{scheme}://{host}/"
                if candidate != self.canonical_url and candidate not in variants:
                    variants.append(candidate)
        return variants

    def root_pattern(self) -> str:
        return rf"^https?://(www\.)?{re.escape(self.domain)}/?$"

    def _stages(self) -> List[Stage]:
        stages: List[Stage] = [("canonical", lambda: self.store.get_document_by_url(self.canonical_url))]
        for variant in self.url_variants():
            stages.append((f"variant {variant}", lambda v=variant: self.store.get_document_by_url(v)))
        stages.append(("root pattern", lambda: self.store.find_document_by_url_pattern(self.root_pattern())))
        stages.append(("shortest url", lambda: self.store.find_shortest_url_containing(self.domain)))
        return stages

    async def get_homepage(self) -> Optional[Dict[str, Any]]:
        for name, lookup in self._stages():
            document = await lookup()
            if document is not None:
                logger.info(f"Found homepage via {name}: {document['url']}")
                return document
        logger.info(f"No homepage found for {self.domain}")
        return None
