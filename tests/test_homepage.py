import pytest
from unittest.mock import AsyncMock

from fakes import make_page
from indexer.homepage import HomepageResolver, bare_domain
from services.shared.errors import InvalidInputError


async def ingest(store, *urls):
    for url in urls:
        await store.store_document(make_page(url, f"Content of {url}", title=url), [f"Content of {url}"])


class TestHomepageResolver:
    """Test suite for homepage resolution stages."""

    def test_bare_domain(self):
        assert bare_domain("https://www.Example.com/path") == "example.com"
        assert bare_domain("http://example.com") == "example.com"

    def test_invalid_canonical_url(self):
        """Test that a non-http canonical URL is rejected."""
        with pytest.raises(InvalidInputError):
            HomepageResolver(AsyncMock(), "ftp://example.com/")
        with pytest.raises(InvalidInputError):
            HomepageResolver(AsyncMock(), "not a url")

    def test_variants_order(self):
        """Test that variants follow the canonical URL in fixed order."""
        resolver = HomepageResolver(AsyncMock(), "https://www.example.com/")
        assert resolver.url_variants() == [
            "https://example.com/",
            "http://www.example.com/",
            "http://example.com/",
        ]

    def test_variants_for_bare_canonical(self):
        """Test that a bare-host canonical URL still tries the https www form."""
        resolver = HomepageResolver(AsyncMock(), "https://example.com/")
        assert resolver.url_variants() == [
            "https://www.example.com/",
            "http://www.example.com/",
            "http://example.com/",
        ]

    async def test_https_www_variant_for_bare_canonical(self, store):
        await ingest(store, "http://example.com/", "https://www.example.com/")
        resolver = HomepageResolver(store, "https://example.com/")
        assert (await resolver.get_homepage())["url"] == "https://www.example.com/"

    async def test_canonical_wins(self, store):
        """Test that the canonical URL is preferred over every variant."""
        await ingest(store, "http://example.com/", "https://www.example.com/")
        resolver = HomepageResolver(store, "https://www.example.com/")
        assert (await resolver.get_homepage())["url"] == "https://www.example.com/"

    async def test_variant_order(self, store):
        """Test that https bare beats http variants."""
        await ingest(store, "http://example.com/", "http://www.example.com/", "https://example.com/")
        resolver = HomepageResolver(store, "https://www.example.com/")
        assert (await resolver.get_homepage())["url"] == "https://example.com/"

    async def test_http_www_before_http_bare(self, store):
        await ingest(store, "http://example.com/", "http://www.example.com/")
        resolver = HomepageResolver(store, "https://www.example.com/")
        assert (await resolver.get_homepage())["url"] == "http://www.example.com/"

    async def test_root_pattern(self, store):
        """Test that a root URL without trailing slash is found by pattern."""
        await ingest(store, "https://example.com/about", "https://example.com")
        resolver = HomepageResolver(store, "https://www.example.com/")
        assert (await resolver.get_homepage())["url"] == "https://example.com"

    async def test_shortest_url_fallback(self, store):
        """Test that the shortest URL containing the domain is the last resort."""
        await ingest(store, "https://example.com/products/widgets", "https://example.com/about",
                     "https://other.org/example.com-review")
        resolver = HomepageResolver(store, "https://www.example.com/")
        assert (await resolver.get_homepage())["url"] == "https://example.com/about"

    async def test_not_found(self, store):
        await ingest(store, "https://other.org/")
        resolver = HomepageResolver(store, "https://www.example.com/")
        assert await resolver.get_homepage() is None

    async def test_store_errors_propagate(self):
        """Test that a failing lookup is not swallowed."""
        store = AsyncMock()
        store.get_document_by_url.side_effect = RuntimeError("database down")
        resolver = HomepageResolver(store, "https://www.example.com/")
        with pytest.raises(RuntimeError):
            await resolver.get_homepage()
