"""
Unit tests for the content sanitizer.
"""

import logging
import time

import pytest

from agent_shield.security.policies import Policy, PolicyStore
from agent_shield.security.sanitizer import TRUNCATION_MARKER, ContentSanitizer


@pytest.fixture
def sanitizer(policy) -> ContentSanitizer:
    return ContentSanitizer(policy)


class TestActiveContent:
    """Scripts, handlers, styles and comments never survive sanitization."""

    def test_script_removed(self, sanitizer):
        """Script bodies are removed and the surrounding text kept."""
        result = sanitizer.sanitize("<p>Hello</p><script>alert(1)</script>")

        assert result.allowed is True
        assert result.text == "Hello"
        assert "alert" not in result.text

    def test_sample_page(self, sanitizer, sample_html):
        """A realistic page is reduced to readable text with links."""
        result = sanitizer.sanitize(sample_html, source_url="https://example.com/release")

        assert result.allowed is True
        assert "Release notes" in result.text
        assert "[full changelog](https://example.com/changelog)" in result.text
        assert "Fish & chips <3" in result.text
        for fragment in ("document.cookie", "tracker.js", "steal()", "internal note", "color: red"):
            assert fragment not in result.text
        assert result.source_url == "https://example.com/release"
        assert result.sanitized_length == len(result.text)

    def test_unterminated_script_drops_remainder(self):
        """An unclosed script tag takes the rest of the document with it."""
        policy = Policy()
        text = ContentSanitizer.strip_active_content("before<script>steal(); after", policy.content_rules)

        assert text.startswith("before")
        assert "steal" not in text
        assert "after" not in text

    def test_handlers_and_javascript_urls(self):
        """on* attributes and javascript: URLs are neutralized in HTML mode."""
        policy = Policy()
        html = '<a href="javascript:steal()" onclick="x()">go</a><img src=x onerror=alert(1)>'

        text = ContentSanitizer.strip_active_content(html, policy.content_rules)

        assert "javascript:" not in text
        assert "onclick" not in text
        assert "onerror" not in text
        assert 'href="#"' in text

    def test_slash_separated_handler(self):
        """A handler separated from the tag name by a slash is still dropped."""
        sanitizer = ContentSanitizer(Policy())

        result = sanitizer.sanitize("<img/onerror=alert(1) src=x><p>hi</p>")

        assert "onerror" not in result.text
        assert "alert" not in result.text
        assert "<p>hi</p>" in result.text

    @pytest.mark.parametrize("href", [
        "&#106;avascript:alert(1)",
        "&#x6A;&#x61;vascript:alert(1)",
        " JaVa&#09;ScRiPt:alert(1)",
        "vbscript:msgbox(1)",
        "data:text/html;base64,PHNjcmlwdD4=",
    ])
    def test_obfuscated_script_urls(self, href):
        """Entity-encoded and mixed-case script URLs are neutralized."""
        policy = Policy()

        text = ContentSanitizer.strip_active_content(f'<a href="{href}">go</a>', policy.content_rules)

        assert text == '<a href="#">go</a>'

    def test_nested_active_content(self):
        policy = Policy()
        text = ContentSanitizer.strip_active_content(
            "<noscript><script>a()</script><iframe src=x></iframe></noscript><p>kept</p>", policy.content_rules
        )

        assert text == "<p>kept</p>"

    def test_safe_urls_untouched(self):
        policy = Policy()
        text = ContentSanitizer.strip_active_content('<a href="https://example.com/js">x</a>', policy.content_rules)

        assert text == '<a href="https://example.com/js">x</a>'

    def test_embeds_removed(self):
        """iframes, objects and embeds are dropped."""
        policy = Policy()
        text = ContentSanitizer.strip_active_content(
            'a<iframe src="https://evil.example"></iframe>b<embed src="x.swf">c', policy.content_rules
        )

        assert text == "abc"

    def test_html_mode_keeps_markup(self):
        """With extract_text_only off, safe markup is returned as-is."""
        sanitizer = ContentSanitizer(Policy())
        result = sanitizer.sanitize("<p>Hi <b>there</b></p><script>x()</script>")

        assert result.text == "<p>Hi <b>there</b></p>"


class TestExtractText:
    """Plain-text extraction."""

    def test_links_preserved(self):
        text = ContentSanitizer.extract_text('<a href="https://a.example/x"><b>Docs</b></a>')
        assert text == "[Docs](https://a.example/x)"

    def test_links_dropped(self):
        text = ContentSanitizer.extract_text('<a href="https://a.example/x">Docs</a>', preserve_links=False)
        assert text == "Docs"

    def test_whitespace_collapsed(self):
        """Runs of spaces collapse and block tags become line breaks."""
        text = ContentSanitizer.extract_text("<h1>Title</h1>\n\n\n<p>one    two</p>")
        assert text == "Title\n\none two"


class TestLimits:
    """Size rejection and truncation."""

    def test_oversize_rejected_before_work(self):
        """Payloads over the byte limit are rejected without any output text."""
        sanitizer = ContentSanitizer(Policy(content_rules={"max_page_size_bytes": 100}))
        raw = "<script>x</script>" + "a" * 200

        result = sanitizer.sanitize(raw)

        assert result.allowed is False
        assert result.reason == f"Content too large: {len(raw)} bytes (max: 100)"
        assert result.text == ""

    def test_size_counts_utf8_bytes(self):
        """The limit applies to encoded bytes, not characters."""
        sanitizer = ContentSanitizer(Policy(content_rules={"max_page_size_bytes": 10}))

        assert sanitizer.sanitize("é" * 6).allowed is False
        assert sanitizer.sanitize("e" * 6).allowed is True

    def test_truncation_warns(self):
        """Text over max_text_length is cut and flagged."""
        sanitizer = ContentSanitizer(Policy(content_rules={"max_text_length": 10}))

        result = sanitizer.sanitize("x" * 50)

        assert result.allowed is True
        assert result.truncated is True
        assert result.text == "x" * 10 + TRUNCATION_MARKER
        assert "Content truncated to 10 characters" in result.warnings


class TestSensitiveContent:
    """Block-mode detection rejects; warn-mode only annotates."""

    def test_block_rule_rejects_without_leaking(self, sanitizer):
        """A block rule rejects the content and records only its label."""
        result = sanitizer.sanitize("<p>config: api_key = hunter2hunter2</p>")

        assert result.allowed is False
        assert result.reason == "Content contains sensitive data"
        assert result.text == ""
        assert any(label.startswith("block:") for label in result.sensitive_patterns)
        assert all("hunter2" not in label for label in result.sensitive_patterns)

    def test_catalog_rule_rejects(self, sanitizer):
        """Catalog patterns listed in the policy also reject."""
        result = sanitizer.sanitize("leaked sk-ABCDEFGHIJKLMNOPQRST1234 here")

        assert result.allowed is False
        assert "catalog:openai_api_key" in result.sensitive_patterns

    def test_warn_rule_allows(self, sanitizer):
        """Warn rules keep the content and add a warning."""
        result = sanitizer.sanitize("<p>Contact press@example.com</p>")

        assert result.allowed is True
        assert "press@example.com" in result.text
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith("Content may contain sensitive data")
        assert result.sensitive_patterns[0].startswith("warn:")

    def test_unknown_catalog_name_is_skipped(self):
        """A catalog name that does not exist never blocks."""
        sanitizer = ContentSanitizer(Policy(sensitive_data_patterns={"block_catalog_patterns": ["nope"]}))
        assert sanitizer.sanitize("anything").allowed is True

    def test_follows_store(self, policy):
        """A sanitizer on a store uses the latest policy."""
        store = PolicyStore(policy)
        sanitizer = ContentSanitizer(store)
        assert sanitizer.sanitize("x" * 20).truncated is False

        store.replace(Policy(content_rules={"max_text_length": 5}))

        assert sanitizer.sanitize("x" * 20).truncated is True


class TestLogging:
    def test_rejection_logs_host_only(self, sanitizer, caplog):
        """Query strings can carry secrets, so only the host is logged."""
        url = "https://example.com/page?key=sk-ABCDEFGHIJKLMNOPQRST1234"

        with caplog.at_level(logging.INFO, logger="agent_shield.security.sanitizer"):
            result = sanitizer.sanitize("<p>password: hunter2hunter2</p>", source_url=url)

        assert result.allowed is False
        assert result.source_url == url
        assert "example.com" in caplog.text
        assert "sk-ABCDEFGHIJKLMNOPQRST1234" not in caplog.text
        assert "key=" not in caplog.text


class TestLargeInput:
    @pytest.mark.slow
    def test_megabyte_page_is_fast(self, sanitizer):
        """Sanitizing a page near the size limit stays well under a second per megabyte."""
        raw = "<p>" + "x" * (1024 * 1024) + "</p>"

        start = time.monotonic()
        result = sanitizer.sanitize(raw)
        elapsed = time.monotonic() - start

        assert result.allowed is True
        assert result.truncated is True
        assert elapsed < 5
