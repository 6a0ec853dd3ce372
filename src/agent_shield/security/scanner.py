"""
agent-shield sensitive data scanner ("Censor")

Last gate before any text reaches a human or an external channel. Every
enabled catalog pattern runs over the text; all matches are collected with
their positions and the redacted text replaces each match span with a fixed
placeholder token.
"""

from threading import Lock
from typing import Callable, Iterable, List, Optional, Tuple

from agent_shield.security.patterns import PatternCatalog
from agent_shield.types import SEVERITY_ORDER, ScanResult, SensitiveMatch
from agent_shield.utils.logger import get_logger

logger = get_logger(__name__)

__all__ = ["SensitiveDataScanner", "Censor", "DEFAULT_REPLACEMENT", "redact_spans"]

DEFAULT_REPLACEMENT = "[REDACTED]"


def _merge_spans(spans: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Merge overlapping spans, ascending by start. Touching spans stay separate."""
    merged: List[Tuple[int, int]] = []
    for start, end in sorted(spans):
        if merged and start < merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def redact_spans(text: str, spans: Iterable[Tuple[int, int]], replacement: str = DEFAULT_REPLACEMENT) -> str:
    """
    Replace each span with `replacement`.

    Overlapping spans are merged into one placeholder, and replacement walks
    from the highest offset to the lowest so earlier offsets stay valid.
    """
    for start, end in reversed(_merge_spans(spans)):
        text = text[:start] + replacement + text[end:]
    return text


class SensitiveDataScanner:
    """
    Scans text against the sensitive pattern catalog.

    Example:
        >>> scanner = SensitiveDataScanner()
        >>> result = scanner.scan("my key is sk-ABCDEFGHIJKLMNOPQRST1234")
        >>> result.should_alert
        True
    """

    def __init__(
        self,
        catalog: Optional[PatternCatalog] = None,
        enabled: bool = True,
        replacement_text: str = DEFAULT_REPLACEMENT,
        categories: Optional[Iterable[str]] = None,
        on_detection: Optional[Callable[[ScanResult], None]] = None,
    ):
        """
        Initialize the scanner.

        Args:
            catalog: Pattern catalog (built-in catalog if None)
            enabled: When False, scan returns the text unchanged
            replacement_text: Placeholder written over each match
            categories: Restrict scanning to these categories (all if None)
            on_detection: Called with the ScanResult whenever a match is found
        """
        self.catalog = catalog if catalog is not None else PatternCatalog()
        self.enabled = enabled
        self.replacement_text = replacement_text
        self.categories = frozenset(categories) if categories is not None else None
        self.on_detection = on_detection

        self._lock = Lock()
        self._scan_count = 0
        self._redaction_count = 0

    def _active_patterns(self):
        for pattern in self.catalog.patterns:
            if not pattern.enabled:
                continue
            if self.categories is not None and pattern.category not in self.categories:
                continue
            yield pattern

    def find_matches(self, text: str) -> List[SensitiveMatch]:
        """Collect every match of every active pattern, ordered by position."""
        by_span = {}
        for pattern in self._active_patterns():
            for m in pattern.regex.finditer(text):
                if m.end() == m.start():
                    continue
                span = (m.start(), m.end())
                current = by_span.get(span)
                # Two patterns on the exact same span count once; most severe wins
                if current is None or SEVERITY_ORDER[pattern.severity] > SEVERITY_ORDER[current.severity]:
                    by_span[span] = SensitiveMatch(
                        pattern=pattern.name,
                        category=pattern.category,
                        severity=pattern.severity,
                        start=m.start(),
                        end=m.end(),
                    )

        return sorted(by_span.values(), key=lambda m: (m.start, m.end))

    def scan(self, text: str) -> ScanResult:
        """
        Scan text and return matches plus the redacted text.

        Once this returns, `redacted_text` is the only form of the content
        that may be transmitted.
        """
        if not self.enabled or not text:
            return ScanResult(redacted_text=text or "", original_length=len(text or ""))

        matches = self.find_matches(text)
        redacted = redact_spans(text, [(m.start, m.end) for m in matches], self.replacement_text)
        result = ScanResult(matches=matches, redacted_text=redacted, original_length=len(text))

        with self._lock:
            self._scan_count += 1
            self._redaction_count += len(matches)

        if matches:
            logger.debug(
                f"Redacted {len(matches)} match(es): "
                f"{sorted({m.pattern for m in matches})}"
            )
            if self.on_detection is not None:
                self.on_detection(result)

        return result

    def redact(self, text: str) -> str:
        return self.scan(text).redacted_text

    def contains_sensitive(self, text: str) -> bool:
        """Cheap check: True if any active pattern matches."""
        if not text:
            return False
        return any(p.regex.search(text) for p in self._active_patterns())

    def stats(self) -> dict:
        with self._lock:
            return {
                "enabled": self.enabled,
                "scan_count": self._scan_count,
                "redaction_count": self._redaction_count,
                "pattern_count": sum(1 for _ in self._active_patterns()),
                "catalog_version": self.catalog.version,
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._scan_count = 0
            self._redaction_count = 0


# Operator-facing name
Censor = SensitiveDataScanner
