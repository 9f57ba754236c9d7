"""Display-name and filename derivation.

Entities are stored as ``<slug>.md`` / ``<slug>.yaml``; the slug is derived
from a human display name and a display name can be recovered from a slug.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from pluqqy.frontmatter import split_frontmatter

__all__ = [
    "extract_display_name",
    "extract_markdown_h1",
    "slugify",
    "update_markdown_h1",
]

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")

FALLBACK_SLUG = "unnamed"


def slugify(display_name: str) -> str:
    """Convert a display name to a filename stem.

    Examples::

        "Auth Context"    -> "auth-context"
        "User's Profile!" -> "user-s-profile"
        "My Component #1" -> "my-component-1"
        "!!!"             -> "unnamed"
    """
    slug = _NON_ALNUM_RE.sub("-", display_name.lower()).strip("-")
    return slug or FALLBACK_SLUG


def extract_display_name(filename: str) -> str:
    """Recover a display name from a filename: ``auth-context.md`` -> ``Auth Context``."""
    stem = PurePosixPath(filename).stem if "." in filename else filename
    parts = [p[:1].upper() + p[1:] for p in stem.split("-")]
    return " ".join(parts)


def _body_offset(content: str) -> int:
    """Index where the body starts, skipping a well-formed frontmatter block."""
    frontmatter, body = split_frontmatter(content)
    if frontmatter is None:
        return 0
    return len(content) - len(body)


def extract_markdown_h1(content: str) -> str:
    """Return the text of the first ``# `` heading after any frontmatter, or ``""``."""
    body = content[_body_offset(content) :]
    for line in body.split("\n"):
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip()
    return ""


def update_markdown_h1(content: str, new_title: str) -> str:
    """Replace the first ``# `` heading after frontmatter, inserting one if absent."""
    offset = _body_offset(content)
    head, body = content[:offset], content[offset:]

    lines = body.split("\n")
    for i, line in enumerate(lines):
        if line.strip().startswith("# "):
            lines[i] = f"# {new_title}"
            return head + "\n".join(lines)

    if head:
        return f"{head}\n# {new_title}\n\n{body}"
    return f"# {new_title}\n\n{body}"
