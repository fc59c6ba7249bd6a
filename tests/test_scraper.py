"""Tests for page extraction, fetching and sitemap discovery."""

import pytest
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from pipelines.scraper import WebScraper, analyze_content_quality, parse_html
from pipelines.sitemap import SitemapDiscovery, is_default_language_url, parse_sitemap_xml
from services.shared.errors import DiscoveryError, ScrapeError

PAGE = """<html>
<head>
  <title>Acme Widgets</title>
  <meta name="description" content="Best widgets">
  <meta property="og:title" content="Acme">
  <meta charset="utf-8">
  <link rel="canonical" href="https://acme.com/widgets">
  <script type="application/ld+json">{"@type": "Organization"}</script>
  <script type="application/ld+json">not json</script>
</head>
<body>
  <nav>Menu</nav>
  <header>Top banner</header>
  <main>
    <h1>Widgets</h1>
    <p>We make widgets.   They are great for everyone.</p>
    <h2>Pricing</h2>
    <p>Prices are low.</p>
    <a href="/about">About</a>
    <a href="https://other.org/x">Other</a>
    <a href="mailto:sales@acme.com">Mail</a>
    <a href="/empty"></a>
    <img src="/logo.png" alt="Logo" width="120px" height="abc">
  </main>
  <footer>Copyright Acme</footer>
</body>
</html>"""


class TestParseHtml:
    """Test suite for HTML extraction."""

    @pytest.fixture
    def page(self):
        return parse_html(PAGE, "https://acme.com/widgets")

    def test_main_content_without_boilerplate(self, page):
        assert "We make widgets. They are great for everyone." in page.content
        assert "Menu" not in page.content
        assert "Copyright" not in page.content
        assert "Top banner" not in page.content
        assert "  " not in page.content

    def test_title_and_seo(self, page):
        assert page.title == "Acme Widgets"
        assert page.seo.meta_title == "Acme Widgets"
        assert page.seo.meta_description == "Best widgets"
        assert page.seo.og_title == "Acme"
        assert page.seo.canonical_url == "https://acme.com/widgets"
        assert page.seo.schema_markup == ['{"@type": "Organization"}']

    def test_meta_tags(self, page):
        assert [(t.name, t.property) for t in page.meta_tags] == [("description", None), (None, "og:title")]

    def test_headings(self, page):
        assert [(h.level, h.text, h.order) for h in page.headings] == [(1, "Widgets", 0), (2, "Pricing", 1)]

    def test_links(self, page):
        """Test that only http(s) links with anchor text are kept."""
        assert [(link.url, link.is_internal) for link in page.links] == [
            ("https://acme.com/about", True),
            ("https://other.org/x", False),
        ]

    def test_images(self, page):
        image = page.images[0]
        assert image.src == "https://acme.com/logo.png"
        assert image.alt == "Logo"
        assert image.width == 120
        assert image.height is None

    def test_title_fallbacks(self):
        assert parse_html("<body><h1>Heading</h1><p>Text</p></body>", "https://a.com/").title == "Heading"
        assert parse_html("<body><p>Text</p></body>", "https://a.com/").title == "Untitled"

    def test_empty_content_raises(self):
        with pytest.raises(ScrapeError):
            parse_html("<html><body><nav>Only navigation</nav></body></html>", "https://a.com/")

    def test_content_quality(self):
        quality = analyze_content_quality("One two three four five six. Seven eight nine ten.\n\nShort.")
        assert quality.word_count == 11
        assert quality.sentence_count == 2
        assert quality.paragraph_count == 2
        assert quality.average_sentence_length == 5.5
        assert quality.reading_time_minutes == 1


def response_context(status, body=""):
    response = MagicMock(status=status)
    response.text = AsyncMock(return_value=body)
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def fake_session(*contexts):
    session = MagicMock(closed=False)
    session.get.side_effect = list(contexts)
    session.close = AsyncMock()
    return session


class TestWebScraper:
    """Test suite for page fetching."""

    async def test_fetch_success(self):
        scraper = WebScraper()
        scraper.session = fake_session(response_context(200, "<p>Hello</p>"))
        assert await scraper.fetch("https://a.com/") == "<p>Hello</p>"

    async def test_non_200_raises_without_retry(self):
        scraper = WebScraper()
        scraper.session = fake_session(response_context(503))
        with pytest.raises(ScrapeError) as exc_info:
            await scraper.fetch("https://a.com/")
        assert exc_info.value.status_code == 503

    async def test_retryable_status_is_retried(self):
        scraper = WebScraper(max_retries=2, retry_delay=0)
        scraper.session = fake_session(response_context(503), response_context(200, "ok"))
        assert await scraper.fetch("https://a.com/") == "ok"
        assert scraper.session.get.call_count == 2

    async def test_client_error_becomes_scrape_error(self):
        scraper = WebScraper()
        session = MagicMock(closed=False)
        session.get.side_effect = aiohttp.ClientConnectionError("refused")
        scraper.session = session
        with pytest.raises(ScrapeError):
            await scraper.fetch("https://a.com/")

    async def test_scrape_parses_page(self):
        scraper = WebScraper()
        scraper.session = fake_session(response_context(200, PAGE))
        page = await scraper.scrape("https://acme.com/widgets")
        assert page.title == "Acme Widgets"

    def test_retry_delay_is_capped(self):
        scraper = WebScraper(retry_delay=1.0, max_retry_delay=30.0)
        assert scraper._calculate_retry_delay(20) == 30.0


URLSET = """<?xml version="1.0" encoding="UTF-8"?>
<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <url><loc>https://acme.com/</loc><lastmod>2024-01-01</lastmod></url>
  <url><loc> https://acme.com/about </loc></url>
  <url><loc>https://acme.com/fr/about</loc></url>
  <url><loc>https://acme.com/about</loc></url>
</urlset>"""

INDEX = """<?xml version="1.0" encoding="UTF-8"?>
<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">
  <sitemap><loc>https://acme.com/sitemap-pages.xml</loc></sitemap>
  <sitemap><loc>https://acme.com/sitemap-broken.xml</loc></sitemap>
  <sitemap><loc>https://acme.com/sitemap-blog.xml</loc></sitemap>
</sitemapindex>"""

BLOG = """<urlset><url><loc>https://acme.com/blog/post</loc></url><url><loc>https://acme.com/</loc></url></urlset>"""


class TestSitemap:
    """Test suite for sitemap parsing and discovery."""

    def test_parse_urlset(self):
        kind, locations = parse_sitemap_xml(URLSET)
        assert kind == "urlset"
        assert locations == [
            "https://acme.com/", "https://acme.com/about", "https://acme.com/fr/about", "https://acme.com/about",
        ]

    def test_parse_index(self):
        kind, locations = parse_sitemap_xml(INDEX)
        assert kind == "sitemapindex"
        assert len(locations) == 3

    def test_parse_prefixed_urlset(self):
        """Test that a namespace-prefixed sitemap parses like an unprefixed one."""
        xml = ('<?xml version="1.0"?>'
               '<sm:urlset xmlns:sm="http://www.sitemaps.org/schemas/sitemap/0.9">'
               '<sm:url><sm:loc>https://acme.com/p</sm:loc></sm:url>'
               '<sm:url><sm:loc><![CDATA[https://acme.com/q?a=1&b=2]]></sm:loc></sm:url>'
               '</sm:urlset>')
        assert parse_sitemap_xml(xml) == ("urlset", ["https://acme.com/p", "https://acme.com/q?a=1&b=2"])

    def test_parse_escaped_loc(self):
        kind, locations = parse_sitemap_xml("<urlset><url><loc>https://acme.com/s?x=1&amp;y=2</loc></url></urlset>")
        assert locations == ["https://acme.com/s?x=1&y=2"]

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_sitemap_xml("<html><body>Not a sitemap</body></html>")

    @pytest.mark.parametrize("url,expected", [
        ("https://acme.com/", True),
        ("https://acme.com/about/team", True),
        ("https://acme.com/faq/", True),
        ("https://acme.com/fr", True),
        ("https://acme.com/fr/about", False),
        ("https://acme.com/pt-BR/about", False),
        ("https://acme.com/zh-hant/", False),
    ])
    def test_default_language_filter(self, url, expected):
        assert is_default_language_url(url) is expected

    async def test_discover_urlset(self, monkeypatch):
        discovery = SitemapDiscovery()
        monkeypatch.setattr(discovery, "fetch_sitemap", AsyncMock(return_value=URLSET))
        assert await discovery.discover("https://acme.com/sitemap.xml") == ["https://acme.com/", "https://acme.com/about"]

    async def test_discover_index_skips_broken_children(self, monkeypatch):
        """Test that a failing child sitemap is skipped and results are deduplicated."""
        documents = {
            "https://acme.com/sitemap.xml": INDEX,
            "https://acme.com/sitemap-pages.xml": URLSET,
            "https://acme.com/sitemap-blog.xml": BLOG,
        }

        async def fetch(url):
            if url not in documents:
                raise DiscoveryError(f"Failed to fetch sitemap {url}: HTTP status 404")
            return documents[url]

        discovery = SitemapDiscovery()
        monkeypatch.setattr(discovery, "fetch_sitemap", fetch)
        assert await discovery.discover("https://acme.com/sitemap.xml") == [
            "https://acme.com/", "https://acme.com/about", "https://acme.com/blog/post",
        ]

    async def test_entry_sitemap_failure(self, monkeypatch):
        discovery = SitemapDiscovery()
        monkeypatch.setattr(discovery, "fetch_sitemap", AsyncMock(return_value="<html></html>"))
        with pytest.raises(DiscoveryError):
            await discovery.discover("https://acme.com/sitemap.xml")
