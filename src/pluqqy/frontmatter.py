"""YAML frontmatter handling for component files.

A component may begin with a ``---`` delimited YAML block whose only key of
interest is ``tags``. A block that does not parse is treated as ordinary body
text so a bad hand edit never makes a component unreadable.
"""

from __future__ import annotations

import logging

import yaml

__all__ = [
    "Frontmatter",
    "format_with_tags",
    "split_frontmatter",
    "tags_from_frontmatter",
]

logger = logging.getLogger(__name__)

_OPEN = "---\n"
_CLOSE = "\n---\n"

Frontmatter = dict[str, object]


def split_frontmatter(text: str) -> tuple[Frontmatter | None, str]:
    """Split ``text`` into (frontmatter, body).

    Frontmatter is recognized only when ``text`` starts with ``---\\n`` and a
    later ``\\n---\\n`` closes it. Returns ``(None, text)`` when there is no
    block or the block is not a YAML mapping.
    """
    if not text.startswith(_OPEN):
        return None, text

    end_idx = text.find(_CLOSE, len(_OPEN) - 1)
    if end_idx == -1:
        return None, text

    leader = text[len(_OPEN) : end_idx] if end_idx >= len(_OPEN) else ""
    body = text[end_idx + len(_CLOSE) :]

    try:
        data = yaml.safe_load(leader)
    except yaml.YAMLError:
        logger.debug("Invalid YAML frontmatter, treating as content")
        return None, text

    if data is None:
        return {}, body
    if not isinstance(data, dict):
        logger.debug("Frontmatter is not a mapping, treating as content")
        return None, text
    return data, body


def tags_from_frontmatter(frontmatter: Frontmatter | None) -> list[str]:
    """Return the ``tags`` list from parsed frontmatter, dropping non-scalars."""
    if not frontmatter:
        return []
    raw = frontmatter.get("tags")
    if isinstance(raw, str):
        return [raw]
    if not isinstance(raw, list):
        return []
    return [str(t) for t in raw if isinstance(t, (str, int, float)) and not isinstance(t, bool)]


def format_with_tags(content: str, tags: list[str] | None) -> str:
    """Re-emit ``content`` with a frontmatter block carrying ``tags``.

    ``tags=None`` keeps whatever tags the content already has. When the
    resulting tag list is empty and the content had no frontmatter, the
    content is returned untouched; otherwise the block is rebuilt with only
    the ``tags`` key (and dropped entirely when there are no tags).
    """
    frontmatter, body = split_frontmatter(content)
    effective = list(tags) if tags is not None else tags_from_frontmatter(frontmatter)

    if not effective and frontmatter is None:
        return content

    if not effective:
        return body

    block = yaml.safe_dump(
        {"tags": effective},
        default_flow_style=None,
        sort_keys=False,
        allow_unicode=True,
    )
    return f"{_OPEN}{block}---\n{body}"
