"""Pipeline composer.

Turns a pipeline into one Markdown document: a ``# <name>`` header, an
optional warning listing unresolvable references, then one section per
component kind in the order the settings list them.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pluqqy.exceptions import ComposeError, PluqqyError
from pluqqy.safe_io import read_text_bounded, validate_path
from pluqqy.store import PIPELINES_DIR
from pluqqy.types import ComponentKind, normalize_kind

if TYPE_CHECKING:
    from pluqqy.settings import Settings
    from pluqqy.store import EntityStore
    from pluqqy.types import Component, ComponentRef, Pipeline

__all__ = ["Composition", "PipelineComposer", "compose_component"]

logger = logging.getLogger(__name__)

_WARNING_HEADER = "⚠️ **Warning: Missing Components**\n\nThe following components could not be found:\n"
_WARNING_FOOTER = (
    "\nThese components may have been deleted or moved. Consider updating this pipeline.\n"
    "\n---\n\n"
)


@dataclass(frozen=True)
class Composition:
    """Result of composing one pipeline."""

    name: str
    markdown: str
    missing: tuple[str, ...] = ()
    resolved: int = 0


def _fallback_heading(kind: str) -> str:
    try:
        return ComponentKind(kind).default_heading
    except ValueError:
        return f"## {kind.upper()}"


class PipelineComposer:
    """Composes pipelines read through ``store`` using ``settings`` formatting.

    Output is a pure function of the pipeline, the referenced component files
    and the settings.
    """

    def __init__(self, store: EntityStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _read_ref(self, ref: ComponentRef) -> str | None:
        """Content of the referenced component, or None if it cannot be read.

        Reference paths are relative to the pipelines directory.
        """
        try:
            resolved = validate_path(posixpath.join(PIPELINES_DIR, ref.path))
            return read_text_bounded(self.store.base_dir / resolved)
        except (PluqqyError, UnicodeDecodeError) as e:
            logger.warning("Component %s could not be read: %s", ref.path, e)
            return None

    def compose(self, pipeline: Pipeline | None) -> Composition:
        """Compose ``pipeline`` to Markdown.

        Unresolvable references do not fail composition; they are listed in
        a warning block and in :attr:`Composition.missing`.

        Raises:
            ComposeError: If the pipeline is None or has no components.
        """
        if pipeline is None:
            raise ComposeError("Cannot compose pipeline: no pipeline provided")
        if not pipeline.components:
            raise ComposeError(f"Cannot compose pipeline {pipeline.name!r}: no components defined")

        groups: dict[str, list[str]] = {}
        missing: list[str] = []
        for ref in sorted(pipeline.components, key=lambda r: r.order):
            content = self._read_ref(ref)
            if content is None:
                missing.append(ref.path)
                continue
            groups.setdefault(normalize_kind(ref.kind.lower()), []).append(content)

        formatting = self.settings.output.formatting
        parts = [f"# {pipeline.name}\n\n"]

        if missing:
            parts.append(_WARNING_HEADER)
            parts.extend(f"- {path}\n" for path in missing)
            parts.append(_WARNING_FOOTER)

        def emit(heading: str, bodies: list[str]) -> None:
            if formatting.show_headings and heading:
                parts.append(f"{heading}\n\n")
            parts.extend(f"{body.strip()}\n\n" for body in bodies)
            parts.append("\n")

        emitted: set[str] = set()
        for section in formatting.sections:
            kind = normalize_kind(section.type.lower())
            if kind in emitted or kind not in groups:
                continue
            emit(section.heading, groups[kind])
            emitted.add(kind)

        for kind, bodies in groups.items():
            if kind not in emitted:
                emit(_fallback_heading(kind), bodies)

        if missing:
            logger.warning(
                "Pipeline %s composed with %d missing component(s)", pipeline.name, len(missing)
            )
        return Composition(
            name=pipeline.name,
            markdown="".join(parts),
            missing=tuple(missing),
            resolved=sum(len(b) for b in groups.values()),
        )


def compose_component(component: Component | None, settings: Settings) -> str:
    """Compose a single component under its section heading, if one applies.

    Raises:
        ComposeError: If ``component`` is None.
    """
    if component is None:
        raise ComposeError("Cannot compose component: no component provided")

    formatting = settings.output.formatting
    heading = ""
    if formatting.show_headings and component.kind is not None:
        heading = formatting.heading_for(component.kind.value)

    out = f"{heading}\n\n" if heading else ""
    out += component.content
    if not out.endswith("\n"):
        out += "\n"
    return out
