"""
Web page parser for extracting metadata and links.
"""

import re
import logging
from typing import List, Optional
from urllib.parse import urljoin, urlparse, urlunparse
from dataclasses import dataclass, field
from bs4 import BeautifulSoup


SKIP_EXTENSIONS = (
    '.jpg', '.jpeg', '.png', '.gif', '.bmp', '.svg', '.webp',
    '.pdf', '.doc', '.docx', '.xls', '.xlsx', '.ppt', '.pptx',
    '.zip', '.rar', '.tar', '.gz', '.exe', '.dmg', '.iso',
    '.mp3', '.mp4', '.avi', '.mov', '.wmv', '.flv',
    '.css', '.js', '.ico', '.woff', '.woff2', '.ttf', '.eot'
)


@dataclass
class ParsedContent:
    """Container for parsed web page content."""
    url: str
    title: Optional[str] = None
    meta_description: Optional[str] = None
    meta_keywords: Optional[str] = None
    language: Optional[str] = None
    links: List[str] = field(default_factory=list)


class ContentParser:
    """
    Parses HTML content to extract metadata and crawlable links.
    """

    def __init__(self, allowed_domains: Optional[List[str]] = None,
                 blocked_domains: Optional[List[str]] = None):
        self.allowed_domains = set(allowed_domains) if allowed_domains else set()
        self.blocked_domains = set(blocked_domains) if blocked_domains else set()
        self.logger = logging.getLogger(__name__)

        self.whitespace_pattern = re.compile(r'\s+')

    def parse(self, url: str, html_content: str) -> ParsedContent:
        """
        Parse HTML content and extract structured data.

        Args:
            url: The URL of the page
            html_content: Raw HTML content

        Returns:
            ParsedContent object with extracted data
        """
        soup = BeautifulSoup(html_content, 'lxml')
        parsed_content = ParsedContent(url=url)

        self._extract_title(soup, parsed_content)
        self._extract_meta_tags(soup, parsed_content)
        self._extract_language(soup, parsed_content)
        parsed_content.links = self._extract_links(soup, url)

        self.logger.debug(f"Parsed content from {url}: {len(parsed_content.links)} links")
        return parsed_content

    def extract_links(self, url: str, html_content: str) -> List[str]:
        """Return the normalized, crawlable links found in a page."""
        return self._extract_links(BeautifulSoup(html_content, 'lxml'), url)

    def _extract_title(self, soup: BeautifulSoup, parsed_content: ParsedContent):
        title_tag = soup.find('title')
        if title_tag:
            parsed_content.title = self._clean_text(title_tag.get_text())

    def _extract_meta_tags(self, soup: BeautifulSoup, parsed_content: ParsedContent):
        """Extract meta tag information."""
        meta_desc = soup.find('meta', attrs={'name': 'description'}) or \
            soup.find('meta', attrs={'property': 'og:description'})
        if meta_desc:
            parsed_content.meta_description = self._clean_text(meta_desc.get('content', ''))

        meta_keywords = soup.find('meta', attrs={'name': 'keywords'})
        if meta_keywords:
            parsed_content.meta_keywords = self._clean_text(meta_keywords.get('content', ''))

    def _extract_language(self, soup: BeautifulSoup, parsed_content: ParsedContent):
        html_tag = soup.find('html')
        if html_tag:
            parsed_content.language = html_tag.get('lang') or html_tag.get('xml:lang')

    def _extract_links(self, soup: BeautifulSoup, base_url: str) -> List[str]:
        """Extract and normalize links, preserving document order."""
        links = []
        seen = set()

        for link in soup.find_all('a', href=True):
            href = link['href'].strip()
            if not href or href.startswith('#'):
                continue
            if href.lower().startswith(('javascript:', 'mailto:')):
                continue

            normalized_url = self.normalize_url(urljoin(base_url, href))
            if normalized_url not in seen and self.is_valid_url(normalized_url):
                seen.add(normalized_url)
                links.append(normalized_url)

        return links

    def normalize_url(self, url: str) -> str:
        """Lower-case the host, drop the fragment and any trailing slash."""
        parsed = urlparse(url)
        path = parsed.path.rstrip('/')
        return urlunparse((
            parsed.scheme,
            parsed.netloc.lower(),
            path,
            parsed.params,
            parsed.query,
            ''  # Remove fragment
        ))

    def is_valid_url(self, url: str) -> bool:
        """Check if URL is valid for crawling."""
        parsed = urlparse(url)

        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return False

        domain = parsed.netloc.lower()

        if any(blocked in domain for blocked in self.blocked_domains):
            return False

        if self.allowed_domains and not any(allowed in domain for allowed in self.allowed_domains):
            return False

        # Avoid common non-content file extensions
        return not parsed.path.lower().endswith(SKIP_EXTENSIONS)

    def _clean_text(self, text: str) -> str:
        if not text:
            return ""
        return self.whitespace_pattern.sub(' ', text.strip())
