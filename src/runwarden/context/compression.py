"""Semantic compression of oversized tool results.

Large tool outputs (HTML pages, verbose JSON) would otherwise dominate the
context window. They are condensed by a cheap summarizer and memoized in a
bounded, insertion-ordered cache shared across steps and phases.
"""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

from runwarden.observability.logging import get_logger

if TYPE_CHECKING:
    from runwarden.providers.base import CompressionCapability

log = get_logger(__name__)

DEFAULT_CACHE_CAPACITY = 200
FINGERPRINT_PREFIX_CHARS = 500
TRUNCATION_MARKER = "...[truncated]"


def fingerprint(text: str) -> str:
    """Cache key for a tool result: digest of the leading chars plus the length."""
    digest = hashlib.sha256(text[:FINGERPRINT_PREFIX_CHARS].encode("utf-8")).hexdigest()
    return f"{digest}_{len(text)}"


class CompressionCache:
    """Bounded mapping from tool-result fingerprint to compressed text.

    Entries are evicted oldest-first once the size exceeds ``capacity``.
    Concurrent phases may race on a miss; the worst case is summarizing the
    same output twice.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: dict[str, str] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> str | None:
        value = self._entries.get(key)
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def put(self, key: str, value: str) -> None:
        self._entries[key] = value
        if len(self._entries) > self.capacity:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0


async def compress_tool_result(
    tool_name: str,
    raw: str,
    max_chars: int,
    compressor: CompressionCapability,
    cache: CompressionCache,
) -> str:
    """Return a condensed form of ``raw``, consulting the cache first.

    A summarizer failure never propagates: the result falls back to a hard
    truncation with a marker. Fallbacks are not cached, so a later step can
    still get a real summary.

    Args:
        tool_name: Name of the tool that produced the output.
        raw: Raw tool output as text.
        max_chars: Target length for the summary.
        compressor: Summarization capability.
        cache: Shared compression cache.

    Returns:
        Compressed (or truncated) text.
    """
    key = fingerprint(raw)
    cached = cache.get(key)
    if cached is not None:
        log.debug("compression_cache_hit", tool=tool_name)
        return cached

    try:
        text = await compressor.summarize(tool_name, raw, max_chars)
    except Exception as e:
        log.warning(
            "compression_failed",
            tool=tool_name,
            raw_chars=len(raw),
            error=str(e),
        )
        return raw[:max_chars] + TRUNCATION_MARKER

    compressed = text or raw[:max_chars]
    cache.put(key, compressed)
    log.debug(
        "tool_result_compressed",
        tool=tool_name,
        raw_chars=len(raw),
        compressed_chars=len(compressed),
    )
    return compressed
