"""Data contracts for pluqqy.

Components and pipelines are two distinct records; a component's kind is a
tagged enumeration that also names its subdirectory and its section in a
composed document.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from pluqqy.slug import extract_display_name

if TYPE_CHECKING:
    from datetime import datetime

__all__ = [
    "LEGACY_KIND_ALIASES",
    "Component",
    "ComponentKind",
    "ComponentRef",
    "Pipeline",
    "Tag",
    "infer_kind",
    "normalize_kind",
]


class ComponentKind(StrEnum):
    """Component classification; the value doubles as the subdirectory name."""

    PROMPTS = "prompts"
    CONTEXTS = "contexts"
    RULES = "rules"

    @property
    def default_heading(self) -> str:
        return _DEFAULT_HEADINGS[self]


_DEFAULT_HEADINGS: dict[ComponentKind, str] = {
    ComponentKind.CONTEXTS: "## CONTEXT",
    ComponentKind.PROMPTS: "## PROMPTS",
    ComponentKind.RULES: "## IMPORTANT RULES",
}

# Singular forms written by older versions of pipeline files.
LEGACY_KIND_ALIASES: dict[str, str] = {
    "context": ComponentKind.CONTEXTS.value,
    "prompt": ComponentKind.PROMPTS.value,
    "rule": ComponentKind.RULES.value,
}


def normalize_kind(kind: str) -> str:
    """Map legacy singular kinds to their plural form; other values pass through."""
    return LEGACY_KIND_ALIASES.get(kind, kind)


def infer_kind(path: str) -> ComponentKind | None:
    """Infer a component's kind from the subdirectory named in its path."""
    parts = path.replace("\\", "/").split("/")
    for kind in (ComponentKind.PROMPTS, ComponentKind.CONTEXTS, ComponentKind.RULES):
        if kind.value in parts:
            return kind
    return None


@dataclass(frozen=True)
class Component:
    """A classified piece of Markdown text.

    ``content`` is the file exactly as stored, frontmatter included.
    ``path`` is relative to the project directory (``components/<kind>/<slug>.md``).
    """

    path: str
    kind: ComponentKind | None
    content: str
    tags: tuple[str, ...] = ()
    modified_at: datetime | None = None
    archived: bool = False

    @property
    def slug(self) -> str:
        return self.path.rsplit("/", 1)[-1].removesuffix(".md")

    @property
    def name(self) -> str:
        return extract_display_name(self.slug)


@dataclass(frozen=True)
class ComponentRef:
    """A pipeline's reference to a component.

    ``path`` is written relative to the pipelines directory, so live
    references conventionally start with ``../components/``.
    """

    kind: str
    path: str
    order: int


@dataclass
class Pipeline:
    """A named, ordered list of component references."""

    name: str
    components: list[ComponentRef] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    output_path: str = ""
    path: str = ""
    archived: bool = False

    @property
    def slug(self) -> str:
        return self.path.removesuffix(".yaml") if self.path else ""


@dataclass(frozen=True)
class Tag:
    """Tag registry entry. Empty strings mean "unset"."""

    name: str
    color: str = ""
    description: str = ""
    parent: str = ""
