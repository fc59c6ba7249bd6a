"""Shared data models for scraped pages, stored documents and search results."""
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List


@dataclass
class MetaTag:
    """A single <meta> tag carrying a name or property."""
    content: str
    name: Optional[str] = None
    property: Optional[str] = None


@dataclass
class Heading:
    level: int
    text: str
    order: int


@dataclass
class Link:
    url: str
    anchor_text: str
    is_internal: bool = False


@dataclass
class Image:
    src: str
    alt: str = ""
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class SeoMetadata:
    """SEO fields extracted from the page head."""
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[str] = None
    meta_robots: Optional[str] = None
    canonical_url: Optional[str] = None
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    og_image: Optional[str] = None
    og_type: Optional[str] = None
    twitter_title: Optional[str] = None
    twitter_description: Optional[str] = None
    twitter_image: Optional[str] = None
    twitter_card: Optional[str] = None
    schema_markup: List[str] = field(default_factory=list)


@dataclass
class ContentQuality:
    """Basic size metrics of the normalized page text."""
    word_count: int = 0
    sentence_count: int = 0
    paragraph_count: int = 0
    average_sentence_length: float = 0.0
    average_words_per_paragraph: float = 0.0
    reading_time_minutes: int = 0


@dataclass
class ScrapedPage:
    """Structured record produced by a scraper for one URL.

    ``content`` is already HTML-stripped and whitespace-normalized; the
    ingestion pipeline never parses markup.
    """
    url: str
    title: str
    content: str
    seo: SeoMetadata = None
    quality: Optional[ContentQuality] = None
    meta_tags: List[MetaTag] = None
    headings: List[Heading] = None
    links: List[Link] = None
    images: List[Image] = None

    def __post_init__(self):
        if self.seo is None:
            self.seo = SeoMetadata()
        if self.meta_tags is None:
            self.meta_tags = []
        if self.headings is None:
            self.headings = []
        if self.links is None:
            self.links = []
        if self.images is None:
            self.images = []

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StoredDocument:
    """Outcome of a successful store_document call."""
    id: int
    url: str
    title: Optional[str]
    chunks_created: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResult:
    """One ranked retrieval hit.

    ``chunk_id`` is None for a whole-document hit (the homepage override).
    """
    chunk_content: str
    similarity: float
    document_id: int
    chunk_id: Optional[int]
    url: Optional[str] = None
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
