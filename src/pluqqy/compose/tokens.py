"""Token estimates for composed output."""

from __future__ import annotations

import functools

import tiktoken

__all__ = ["TOKEN_LIMITS", "count_tokens", "format_token_count", "token_limit_status"]

# Common model context sizes, smallest first.
TOKEN_LIMITS = (4096, 8192, 16384, 32768, 131072)


@functools.lru_cache(maxsize=1)
def _get_encoding() -> tiktoken.Encoding:
    """Get the tiktoken encoding, lazily initialized and thread-safe."""
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count tokens in text using cl100k_base encoding."""
    if not text:
        return 0
    return len(_get_encoding().encode(text))


def format_token_count(tokens: int) -> str:
    """Compact display form: ``~850 tokens``, ``~1.2K tokens``, ``~12K tokens``."""
    if tokens < 1000:
        return f"~{tokens} tokens"
    if tokens < 10000:
        return f"~{tokens / 1000:.1f}K tokens"
    return f"~{tokens / 1000:.0f}K tokens"


def token_limit_status(tokens: int) -> tuple[int, int, str]:
    """Return (percentage, limit, status) against the smallest limit that fits.

    Status is ``good`` below 50%, ``warning`` below 80%, else ``danger``.
    """
    limit = next((lim for lim in TOKEN_LIMITS if tokens <= lim), TOKEN_LIMITS[-1])
    percentage = tokens * 100 // limit
    if percentage < 50:
        status = "good"
    elif percentage < 80:
        status = "warning"
    else:
        status = "danger"
    return percentage, limit, status
