"""
agent-shield content sanitizer

Prepares fetched material before any of it reaches the agent:

1. Size check on the raw payload (reject before doing any work)
2. Strip active content (scripts, embeds, event handlers, styles, comments)
3. Optional plain-text extraction
4. Sensitive-data pre-check in block mode (reject, never redact)
5. Length truncation with an explicit warning

Markup is parsed with BeautifulSoup, so attribute and entity tricks are
seen the way a browser would see them.
"""

import re
from typing import List, Optional, Tuple, Union
from urllib.parse import urlsplit

from bs4 import BeautifulSoup, Comment

from agent_shield.security.patterns import PatternCatalog
from agent_shield.security.policies import ContentRules, Policy, PolicyStore
from agent_shield.types import SanitizeResult
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = ["ContentSanitizer"]

TRUNCATION_MARKER = "\n\n[... content truncated ...]"

_ACTIVE_TAGS = ["script", "noscript", "iframe", "frame", "frameset", "object", "embed", "applet"]
_URL_ATTRS = ("href", "src", "action", "formaction", "data", "poster", "background", "xlink:href")
_SCRIPT_SCHEMES = ("javascript:", "vbscript:", "data:text/html")

_BLOCK_TAGS = ["p", "div", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6",
               "section", "article", "header", "footer", "ul", "ol", "table"]
_SPACES_RE = re.compile(r"[ \t\r\f\v]+")
_NEWLINES_RE = re.compile(r"\n\s*\n+")
# Browsers ignore control characters and whitespace inside a URL scheme
_URL_NOISE_RE = re.compile(r"[\x00-\x20]+")


def _parse(content: str) -> BeautifulSoup:
    return BeautifulSoup(content, "html.parser")


def _is_script_url(value) -> bool:
    if isinstance(value, list):
        value = " ".join(value)
    return _URL_NOISE_RE.sub("", str(value)).lower().startswith(_SCRIPT_SCHEMES)


def _strip_soup(soup: BeautifulSoup, rules: ContentRules) -> None:
    if rules.strip_scripts:
        for tag in soup(_ACTIVE_TAGS):
            # Nested matches go with their decomposed ancestor
            if not tag.decomposed:
                tag.decompose()
        for tag in soup.find_all(True):
            for name in list(tag.attrs):
                lowered = name.lower()
                if lowered.startswith("on") or lowered == "srcdoc":
                    del tag.attrs[name]
                elif lowered in _URL_ATTRS and _is_script_url(tag.attrs[name]):
                    tag.attrs[name] = "#"

    if rules.strip_styles:
        for tag in soup("style"):
            if not tag.decomposed:
                tag.decompose()
        for tag in soup.find_all(style=True):
            del tag.attrs["style"]

    if rules.strip_comments:
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()


def _soup_text(soup: BeautifulSoup, preserve_links: bool) -> str:
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    if preserve_links:
        for link in soup.find_all("a", href=True):
            label = " ".join(link.get_text(" ").split())
            href = str(link["href"]).strip()
            link.replace_with(f"[{label}]({href})" if label else href)

    for br in soup("br"):
        br.replace_with("\n")
    for tag in soup(_BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")

    text = soup.get_text()
    text = _SPACES_RE.sub(" ", text)
    text = _NEWLINES_RE.sub("\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


def _host(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None


class ContentSanitizer:
    """
    Sanitizes untrusted fetched content.

    Block mode combines the policy's `block_if_detected` regexes with the
    catalog patterns listed in `block_catalog_patterns`; a hit rejects the
    whole payload. Only rule labels are recorded, never the matched text.
    """

    def __init__(
        self,
        policy: Union[Policy, PolicyStore],
        catalog: Optional[PatternCatalog] = None,
    ):
        self._source = policy
        self.catalog = catalog if catalog is not None else PatternCatalog()

    @property
    def policy(self) -> Policy:
        if isinstance(self._source, PolicyStore):
            return self._source.policy
        return self._source

    def sanitize(self, raw_content: str, source_url: Optional[str] = None) -> SanitizeResult:
        policy = self.policy
        rules = policy.content_rules
        raw_content = raw_content or ""
        warnings: List[str] = []

        # 1. Size check
        raw_size = len(raw_content.encode("utf-8"))
        if raw_size > rules.max_page_size_bytes:
            logger.info(f"Content from {_host(source_url)} rejected: {raw_size} bytes")
            return SanitizeResult(
                allowed=False,
                reason=f"Content too large: {raw_size} bytes (max: {rules.max_page_size_bytes})",
                source_url=source_url,
                original_length=raw_size,
            )

        # 2. Active content
        soup = _parse(raw_content)
        _strip_soup(soup, rules)

        # 3. Text extraction
        if rules.extract_text_only:
            text = _soup_text(soup, rules.preserve_links)
        else:
            text = str(soup)

        # 4. Sensitive-data pre-check
        blocking, warning_labels = self._detect_sensitive(text, policy)
        if blocking:
            logger.warning(f"Content from {_host(source_url)} rejected: sensitive data ({', '.join(blocking)})")
            return SanitizeResult(
                allowed=False,
                reason="Content contains sensitive data",
                source_url=source_url,
                original_length=raw_size,
                sensitive_patterns=blocking + warning_labels,
            )
        if warning_labels:
            warnings.append(f"Content may contain sensitive data: {', '.join(warning_labels)}")

        # 5. Truncation
        truncated = False
        if len(text) > rules.max_text_length:
            text = text[:rules.max_text_length] + TRUNCATION_MARKER
            truncated = True
            warnings.append(f"Content truncated to {rules.max_text_length} characters")

        return SanitizeResult(
            allowed=True,
            text=text,
            warnings=warnings,
            source_url=source_url,
            original_length=raw_size,
            sanitized_length=len(text),
            sensitive_patterns=warning_labels,
            truncated=truncated,
        )

    @staticmethod
    def strip_active_content(content: str, rules: ContentRules) -> str:
        """Remove scripts, embeds, event handlers, script URLs, styles and comments"""
        soup = _parse(content)
        _strip_soup(soup, rules)
        return str(soup)

    @staticmethod
    def extract_text(content: str, preserve_links: bool = True) -> str:
        """
        Convert HTML to plain text.

        Links become `[text](url)` when preserve_links is set. Entities are
        decoded and whitespace collapsed.
        """
        return _soup_text(_parse(content), preserve_links)

    def _detect_sensitive(self, text: str, policy: Policy) -> Tuple[List[str], List[str]]:
        rules = policy.sensitive_data_patterns
        blocking: List[str] = []
        warning: List[str] = []

        for pattern in rules.block_if_detected:
            if re.search(pattern, text, re.IGNORECASE):
                blocking.append(f"block:{pattern}")

        for name in rules.block_catalog_patterns:
            entry = self.catalog.get(name)
            if entry is None:
                logger.debug(f"Catalog pattern '{name}' not found; skipped")
                continue
            if entry.enabled and entry.regex.search(text):
                blocking.append(f"catalog:{name}")

        for pattern in rules.warn_if_detected:
            if re.search(pattern, text, re.IGNORECASE):
                warning.append(f"warn:{pattern}")

        return blocking, warning
