"""
Body cleaner for email content.
Converts HTML to text and normalizes bodies before they are stored.
"""

import re

from bs4 import BeautifulSoup
from loguru import logger
from markdownify import markdownify as md

TRUNCATION_MARKER = "..."


class BodyCleaner:
    """
    Normalizes email bodies for storage and summarization.
    Handles HTML to text conversion, footer removal and truncation.
    """

    # Everything from the first occurrence onwards is dropped
    SIGNATURE_MARKERS = [
        "-- ",
        "Sent from my",
        "Get Outlook for",
        "This email was sent from",
        "CONFIDENTIALITY NOTICE",
        "This message and any attachments",
    ]

    # Removed wherever they occur
    NOISE_PATTERNS = [
        r"\[?view (?:this email )?in (?:your )?browser\]?",
        r"\[?view online\]?",
        r"forward to a friend",
        r"share this email",
        r"all rights reserved\.?",
        r"copyright\s*©?\s*\d{4}[^.]*\.?",
    ]

    _compiled_noise_patterns: list[re.Pattern] = []

    def __init__(self, max_length: int = 5000) -> None:
        """
        Initialize the body cleaner.

        Args:
            max_length: Maximum stored body length before truncation.
        """
        self.max_length = max_length

        if not BodyCleaner._compiled_noise_patterns:
            BodyCleaner._compiled_noise_patterns = [
                re.compile(pattern, re.IGNORECASE) for pattern in self.NOISE_PATTERNS
            ]

    def normalize(self, body: str, html_body: str = "") -> str:
        """
        Produce the canonical stored body.

        Args:
            body: Plain text body.
            html_body: HTML body, used only when the plain body is empty.

        Returns:
            Whitespace-collapsed body without signature/footer noise, bounded in length.
        """
        text = body or ""
        if not text.strip() and html_body:
            text = self.html_to_text(html_body)
        if not text:
            return ""

        text = re.sub(r"\s+", " ", text).strip()
        text = self._strip_signatures(text)
        text = self._remove_noise(text)
        return self._truncate(text)

    def html_to_text(self, html_content: str) -> str:
        """
        Convert an HTML body to readable text.
        Tracking pixels, hidden elements and non-content tags are dropped first.
        """
        if not html_content:
            return ""

        soup = self._parse_html(html_content)
        self._remove_tracking_elements(soup)
        self._remove_unwanted_tags(soup)

        try:
            text = md(
                str(soup),
                heading_style="atx",
                bullets="-",
                strip=["img", "a"],
                escape_asterisks=False,
                escape_underscores=False,
            )
            if text and len(text.strip()) > 10:
                return text.strip()
            logger.debug("Markdownify produced empty/short output, falling back to plain text")
        except (ValueError, TypeError) as e:
            logger.warning(f"Markdown conversion error: {e}, falling back to plain text")

        return soup.get_text(separator="\n", strip=True)

    def _parse_html(self, html: str) -> BeautifulSoup:
        # lxml is faster; html.parser is the forgiving fallback
        try:
            return BeautifulSoup(html, "lxml")
        except Exception:
            return BeautifulSoup(html, "html.parser")

    def _remove_tracking_elements(self, soup: BeautifulSoup) -> None:
        for img in soup.find_all("img"):
            if img.get("width", "") in ("0", "1") or img.get("height", "") in ("0", "1"):
                img.decompose()

        for tag in soup.find_all(style=re.compile(r"display:\s*none", re.I)):
            tag.decompose()

    def _remove_unwanted_tags(self, soup: BeautifulSoup) -> None:
        for tag_name in ("script", "style", "noscript", "iframe", "object", "embed", "head"):
            for tag in soup.find_all(tag_name):
                tag.decompose()

    def _strip_signatures(self, text: str) -> str:
        lowered = text.lower()
        for marker in self.SIGNATURE_MARKERS:
            index = lowered.find(marker.lower())
            # A marker at position 0 would erase the whole body
            if index > 0:
                text = text[:index].rstrip()
                lowered = text.lower()
        return text

    def _remove_noise(self, text: str) -> str:
        for pattern in self._compiled_noise_patterns:
            text = pattern.sub("", text)
        return re.sub(r" {2,}", " ", text).strip()

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_length:
            return text

        logger.debug(f"Body truncated: {len(text)} -> {self.max_length} chars")
        return text[: self.max_length] + TRUNCATION_MARKER
