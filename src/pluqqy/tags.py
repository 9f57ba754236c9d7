"""Tag registry for pluqqy.

Tags live in two places: on entities (component frontmatter, pipeline
``tags:``) and in ``.pluqqy/tags.yaml``, a side-index holding per-tag colour,
description and parent. The registry is kept consistent with the tags in use
on live entities: tags are registered when applied and swept when the last
live user is archived.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

import yaml

from pluqqy.exceptions import AlreadyExistsError, NotFoundError, ParseError, ValidationError
from pluqqy.safe_io import read_text_bounded, write_atomic
from pluqqy.types import Tag

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from pluqqy.store import EntityStore

__all__ = [
    "MAX_TAG_LENGTH",
    "PALETTE",
    "TagRegistry",
    "TagUsage",
    "color_of",
    "normalize_tag",
    "validate_tag_name",
]

logger = logging.getLogger(__name__)

MAX_TAG_LENGTH = 50

PALETTE: tuple[str, ...] = (
    "#e74c3c",
    "#3498db",
    "#2ecc71",
    "#f39c12",
    "#9b59b6",
    "#1abc9c",
    "#34495e",
    "#e67e22",
    "#16a085",
    "#8e44ad",
    "#f1c40f",
    "#d35400",
    "#27ae60",
    "#2980b9",
    "#c0392b",
)

_FNV32_OFFSET = 2166136261
_FNV32_PRIME = 16777619

_INVALID_TAG_CHARS_RE = re.compile(r"[^a-z0-9\-/]")
_VALID_TAG_NAME_RE = re.compile(r"^[A-Za-z0-9\-/ ]+$")


def normalize_tag(name: str) -> str:
    """Canonical tag form: lowercase, spaces to ``-``, only ``[a-z0-9-/]`` kept."""
    normalized = name.strip().lower().replace(" ", "-")
    return _INVALID_TAG_CHARS_RE.sub("", normalized)


def validate_tag_name(name: str) -> None:
    """Reject empty, overlong, or badly-charactered tag names.

    Raises:
        ValidationError: If the name is empty, longer than 50 characters, or
            contains anything other than letters, digits, ``-``, ``/`` and
            spaces.
    """
    if not name:
        raise ValidationError("Tag name cannot be empty")
    if len(name) > MAX_TAG_LENGTH:
        raise ValidationError(f"Tag name {name!r} exceeds {MAX_TAG_LENGTH} characters")
    if not _VALID_TAG_NAME_RE.match(name):
        raise ValidationError(
            f"Tag name {name!r} may only contain letters, digits, '-', '/' and spaces"
        )


def _fnv1a_32(data: bytes) -> int:
    h = _FNV32_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def color_of(name: str, explicit: str = "") -> str:
    """Palette colour for a tag; an explicit colour always wins."""
    if explicit:
        return explicit
    return PALETTE[_fnv1a_32(name.lower().encode("utf-8")) % len(PALETTE)]


@dataclass
class TagUsage:
    """Where a tag is used among live entities."""

    name: str
    components: list[str] = field(default_factory=list)
    pipelines: list[str] = field(default_factory=list)

    @property
    def component_count(self) -> int:
        return len(self.components)

    @property
    def pipeline_count(self) -> int:
        return len(self.pipelines)

    @property
    def total(self) -> int:
        return self.component_count + self.pipeline_count


def _tag_to_dict(tag: Tag) -> dict[str, str]:
    return {k: v for k, v in asdict(tag).items() if v}


def _tag_from_dict(data: Any) -> Tag | None:
    if not isinstance(data, dict) or not data.get("name"):
        logger.warning("Ignoring malformed tag registry entry: %r", data)
        return None
    return Tag(
        name=normalize_tag(str(data["name"])),
        color=str(data.get("color") or ""),
        description=str(data.get("description") or ""),
        parent=str(data.get("parent") or ""),
    )


class TagRegistry:
    """In-memory view of ``tags.yaml``, loaded lazily and saved after every mutation.

    Entries are keyed by normalized name and keep file order. Usage counting
    reads live entities through ``store``.
    """

    def __init__(self, path: Path, store: EntityStore) -> None:
        self.path = path
        self.store = store
        self._lock = threading.RLock()
        self._tags: list[Tag] | None = None

    # -- persistence -------------------------------------------------------

    def load(self) -> list[Tag]:
        """(Re)load the registry from disk; a missing file is an empty registry.

        Raises:
            ParseError: If the file is not valid YAML or not a mapping.
        """
        with self._lock:
            if not self.path.exists():
                self._tags = []
                return self._tags
            try:
                data = yaml.safe_load(read_text_bounded(self.path))
            except yaml.YAMLError as e:
                logger.error("Failed to parse tag registry %s: %s", self.path, e)
                raise ParseError(f"Failed to parse tag registry {self.path}: {e}") from e
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ParseError(f"Tag registry {self.path} must contain a mapping")

            raw = data.get("tags") or []
            tags: list[Tag] = []
            for entry in raw if isinstance(raw, list) else []:
                tag = _tag_from_dict(entry)
                if tag is not None and all(t.name != tag.name for t in tags):
                    tags.append(tag)
            self._tags = tags
            logger.info("Loaded %d tags from %s", len(tags), self.path)
            return tags

    def save(self, tags: list[Tag] | None = None) -> None:
        """Write ``tags`` (default: the current entries) and adopt them.

        The in-memory registry only changes once the file has been written.
        """
        with self._lock:
            if tags is None:
                tags = self._entries()
            text = yaml.safe_dump(
                {"tags": [_tag_to_dict(t) for t in tags]},
                sort_keys=False,
                allow_unicode=True,
            )
            write_atomic(self.path, text)
            self._tags = tags
            logger.info("Saved %d tags to %s", len(tags), self.path)

    def _entries(self) -> list[Tag]:
        if self._tags is None:
            return self.load()
        return self._tags

    def _index_of(self, normalized: str, entries: list[Tag] | None = None) -> int:
        for i, tag in enumerate(self._entries() if entries is None else entries):
            if tag.name == normalized:
                return i
        return -1

    # -- queries -----------------------------------------------------------

    def get(self, name: str) -> Tag | None:
        with self._lock:
            i = self._index_of(normalize_tag(name))
            return self._entries()[i] if i >= 0 else None

    def list_tags(self) -> list[Tag]:
        with self._lock:
            return list(self._entries())

    def color_for(self, name: str) -> str:
        """Registered colour for ``name``, else its derived palette colour."""
        tag = self.get(name)
        return color_of(normalize_tag(name), tag.color if tag else "")

    # -- mutations ---------------------------------------------------------
    # Each mutation edits a copy and hands it to save(), so a failed write
    # leaves the registry as it was.

    def get_or_create(self, name: str) -> Tag:
        """Return the entry for ``name``, registering it with a derived colour if new.

        Raises:
            ValidationError: If ``name`` normalizes to nothing.
            WriteError: If the registry file cannot be written.
        """
        normalized = normalize_tag(name)
        if not normalized:
            raise ValidationError(f"Tag name {name!r} has no valid characters")
        with self._lock:
            existing = self.get(normalized)
            if existing is not None:
                return existing
            tag = Tag(name=normalized, color=color_of(normalized))
            self.save([*self._entries(), tag])
            logger.debug("Registered tag %s", normalized)
            return tag

    def ensure(self, names: Iterable[str]) -> list[Tag]:
        """``get_or_create`` every non-empty name."""
        return [self.get_or_create(n) for n in names if normalize_tag(n)]

    def add(self, tag: Tag) -> Tag:
        """Validate and upsert ``tag`` by normalized name."""
        validate_tag_name(tag.name)
        stored = Tag(
            name=normalize_tag(tag.name),
            color=tag.color,
            description=tag.description,
            parent=normalize_tag(tag.parent) if tag.parent else "",
        )
        with self._lock:
            entries = list(self._entries())
            i = self._index_of(stored.name, entries)
            if i >= 0:
                entries[i] = stored
            else:
                entries.append(stored)
            self.save(entries)
        return stored

    def remove(self, name: str) -> None:
        """Drop a tag from the registry; entities keep it.

        Raises:
            NotFoundError: If the tag is not registered.
        """
        with self._lock:
            entries = list(self._entries())
            i = self._index_of(normalize_tag(name), entries)
            if i < 0:
                raise NotFoundError(f"Tag {name!r} not found in registry")
            del entries[i]
            self.save(entries)

    def rename(self, old: str, new: str) -> Tag:
        """Rename a registry entry, keeping its colour, description and parent.

        Entity files are not touched here; see
        :meth:`pluqqy.references.ReferenceIntegrity.rename_tag`.

        Raises:
            ValidationError: If ``new`` is not a valid tag name.
            NotFoundError: If ``old`` is not registered.
            AlreadyExistsError: If ``new`` is already registered.
        """
        validate_tag_name(new)
        old_normalized, new_normalized = normalize_tag(old), normalize_tag(new)
        with self._lock:
            entries = list(self._entries())
            i = self._index_of(old_normalized, entries)
            if i < 0:
                raise NotFoundError(f"Tag {old!r} not found in registry")
            if new_normalized != old_normalized and self._index_of(new_normalized, entries) >= 0:
                raise AlreadyExistsError(f"Tag {new_normalized!r} already exists")
            current = entries[i]
            entries[i] = Tag(
                name=new_normalized,
                color=current.color,
                description=current.description,
                parent=current.parent,
            )
            self.save(entries)
            return entries[i]

    # -- usage -------------------------------------------------------------

    def stats(self) -> dict[str, TagUsage]:
        """Usage of every tag found on live entities, keyed by normalized name.

        Each entity counts once per tag, however often it lists it.
        """
        usage: dict[str, TagUsage] = {}
        for entity in self.store.live_entity_tags():
            for name in {normalize_tag(t) for t in entity.tags} - {""}:
                entry = usage.setdefault(name, TagUsage(name=name))
                if entity.entity_type == "component":
                    entry.components.append(entity.path)
                else:
                    entry.pipelines.append(entity.path)
        return usage

    def usage(self, name: str) -> TagUsage:
        normalized = normalize_tag(name)
        return self.stats().get(normalized, TagUsage(name=normalized))

    def sweep_on_archive(self, candidates: Iterable[str]) -> list[str]:
        """Drop candidate tags that no live entity uses any more.

        Only ``candidates`` are considered, never the whole registry. Returns
        the normalized names that were removed.
        """
        wanted = [n for n in dict.fromkeys(normalize_tag(c) for c in candidates) if n]
        if not wanted:
            return []
        in_use = self.stats()
        removed: list[str] = []
        with self._lock:
            entries = list(self._entries())
            for name in wanted:
                if name in in_use:
                    continue
                i = self._index_of(name, entries)
                if i >= 0:
                    del entries[i]
                    removed.append(name)
            if removed:
                self.save(entries)
                logger.info("Swept orphaned tags: %s", ", ".join(removed))
        return removed

    def restore_on_unarchive(self, names: Iterable[str]) -> list[Tag]:
        return self.ensure(names)
