"""Entity store for pluqqy.

Typed read/write of components and pipelines, live and archived, under the
fixed .pluqqy/ directory layout::

    pipelines/<slug>.yaml
    components/{prompts|contexts|rules}/<slug>.md
    archive/pipelines/<slug>.yaml
    archive/components/{prompts|contexts|rules}/<slug>.md

Component paths are relative to the .pluqqy/ directory
(``components/contexts/auth.md``); pipeline paths are bare filenames inside
the pipelines directory (``my-pipeline.yaml``). The same relative path is used
for an entity whether it is live or archived.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import yaml

from pluqqy.exceptions import (
    AlreadyExistsError,
    NotFoundError,
    ParseError,
    PluqqyError,
    ValidationError,
    WriteError,
)
from pluqqy.frontmatter import format_with_tags, split_frontmatter, tags_from_frontmatter
from pluqqy.safe_io import clean_path, read_bounded, read_text_bounded, validate_path, write_atomic
from pluqqy.slug import slugify
from pluqqy.types import Component, ComponentKind, ComponentRef, Pipeline, infer_kind, normalize_kind
from pluqqy.validation import validate_pipeline

if TYPE_CHECKING:
    from pathlib import Path

__all__ = [
    "ARCHIVE_DIR",
    "COMPONENTS_DIR",
    "COMPONENT_SUFFIX",
    "PIPELINES_DIR",
    "PIPELINE_SUFFIX",
    "EntityStore",
    "EntityTags",
    "component_path_for",
    "pipeline_from_dict",
    "pipeline_to_yaml",
    "ref_path_for",
    "strip_ref_prefix",
]

logger = logging.getLogger(__name__)

PIPELINES_DIR = "pipelines"
COMPONENTS_DIR = "components"
ARCHIVE_DIR = "archive"
COMPONENT_SUFFIX = ".md"
PIPELINE_SUFFIX = ".yaml"

_REF_PREFIX = "../"


def component_path_for(kind: ComponentKind | str, slug: str) -> str:
    """``components/<kind>/<slug>.md`` for a kind and slug."""
    return f"{COMPONENTS_DIR}/{_coerce_kind(kind).value}/{slug}{COMPONENT_SUFFIX}"


def ref_path_for(component_path: str) -> str:
    """Reference path as written into a pipeline (relative to pipelines/)."""
    return _REF_PREFIX + clean_path(component_path)


def strip_ref_prefix(ref_path: str) -> str:
    """Normalize a reference path for equality checks: drop one leading ``../`` and clean."""
    return clean_path(ref_path.removeprefix(_REF_PREFIX))


def _coerce_kind(kind: ComponentKind | str) -> ComponentKind:
    try:
        return ComponentKind(normalize_kind(str(kind).lower()))
    except ValueError as e:
        raise ValidationError(
            f"Invalid component type {kind!r}: must be one of: "
            + ", ".join(k.value for k in ComponentKind)
        ) from e


def pipeline_to_dict(pipeline: Pipeline) -> dict[str, Any]:
    """Serialize a pipeline to the on-disk mapping (``path``/``archived`` are not stored)."""
    data: dict[str, Any] = {
        "name": pipeline.name,
        "components": [
            {"type": ref.kind, "path": ref.path, "order": ref.order} for ref in pipeline.components
        ],
    }
    if pipeline.tags:
        data["tags"] = list(pipeline.tags)
    if pipeline.output_path:
        data["output_path"] = pipeline.output_path
    return data


def pipeline_to_yaml(pipeline: Pipeline) -> str:
    return yaml.safe_dump(pipeline_to_dict(pipeline), sort_keys=False, allow_unicode=True)


def pipeline_from_dict(data: dict[str, Any], path: str = "", archived: bool = False) -> Pipeline:
    """Deserialize a pipeline mapping, normalizing legacy singular kinds."""
    raw_components = data.get("components") or []
    if not isinstance(raw_components, list):
        raise ParseError(f"Pipeline {path!r}: 'components' must be a list")

    refs: list[ComponentRef] = []
    for entry in raw_components:
        if not isinstance(entry, dict):
            raise ParseError(f"Pipeline {path!r}: component entry must be a mapping, got {entry!r}")
        try:
            order = int(entry.get("order", 0))
        except (TypeError, ValueError) as e:
            raise ParseError(f"Pipeline {path!r}: invalid order {entry.get('order')!r}") from e
        refs.append(
            ComponentRef(
                kind=normalize_kind(str(entry.get("type") or "")),
                path=str(entry.get("path") or ""),
                order=order,
            )
        )

    raw_tags = data.get("tags") or []
    tags = [str(t) for t in raw_tags] if isinstance(raw_tags, list) else [str(raw_tags)]

    return Pipeline(
        name=str(data.get("name") or ""),
        components=refs,
        tags=tags,
        output_path=str(data.get("output_path") or ""),
        path=path,
        archived=archived,
    )


@dataclass(frozen=True)
class EntityTags:
    """Tags carried by one live entity, as found on disk."""

    entity_type: str  # "component" or "pipeline"
    path: str
    tags: tuple[str, ...]


class EntityStore:
    """Persists components and pipelines under a .pluqqy/ directory.

    The store does no tag registry bookkeeping and no reference rewriting;
    those live in :mod:`pluqqy.tags` and :mod:`pluqqy.references`.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    # -- path resolution ---------------------------------------------------

    def _root(self, archived: bool) -> Path:
        return self.base_dir / ARCHIVE_DIR if archived else self.base_dir

    def component_file(self, path: str, archived: bool = False) -> Path:
        """Absolute location of a component given its project-relative path."""
        return self._root(archived) / validate_path(path)

    def pipeline_file(self, filename: str, archived: bool = False) -> Path:
        """Absolute location of a pipeline given its filename."""
        return self._root(archived) / PIPELINES_DIR / validate_path(filename)

    def pipelines_dir(self, archived: bool = False) -> Path:
        return self._root(archived) / PIPELINES_DIR

    def components_dir(self, kind: ComponentKind | str, archived: bool = False) -> Path:
        return self._root(archived) / COMPONENTS_DIR / _coerce_kind(kind).value

    # -- listing -----------------------------------------------------------

    @staticmethod
    def _list_dir(directory: Path, suffix: str) -> list[str]:
        try:
            entries = sorted(p.name for p in directory.iterdir() if p.is_file() and p.suffix == suffix)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise PluqqyError(f"Failed to read directory {directory}: {e}") from e
        return entries

    def list_components(self, kind: ComponentKind | str, archived: bool = False) -> list[str]:
        """Relative paths of the components of one kind, sorted by filename."""
        coerced = _coerce_kind(kind)
        names = self._list_dir(self.components_dir(coerced, archived), COMPONENT_SUFFIX)
        return [f"{COMPONENTS_DIR}/{coerced.value}/{name}" for name in names]

    def list_all_components(self, archived: bool = False) -> list[str]:
        paths: list[str] = []
        for kind in ComponentKind:
            paths.extend(self.list_components(kind, archived))
        return paths

    def list_pipelines(self, archived: bool = False) -> list[str]:
        """Pipeline filenames, sorted."""
        return self._list_dir(self.pipelines_dir(archived), PIPELINE_SUFFIX)

    def component_exists(self, path: str, archived: bool = False) -> bool:
        return self.component_file(path, archived).is_file()

    def pipeline_exists(self, filename: str, archived: bool = False) -> bool:
        return self.pipeline_file(filename, archived).is_file()

    # -- components --------------------------------------------------------

    def read_component(self, path: str, archived: bool = False) -> Component:
        """Read a component; ``content`` keeps its frontmatter verbatim.

        Raises:
            InvalidPathError: If ``path`` attempts traversal.
            NotFoundError: If no such component exists.
            FileTooLargeError: If the file exceeds the size limit.
            ParseError: If the file is not valid UTF-8.
        """
        cleaned = validate_path(path)
        file_path = self.component_file(cleaned, archived)
        try:
            content = read_text_bounded(file_path)
            mtime = file_path.stat().st_mtime
        except NotFoundError as e:
            where = "archived component" if archived else "component"
            raise NotFoundError(f"{where.capitalize()} not found at path {cleaned!r}") from e
        except UnicodeDecodeError as e:
            raise ParseError(f"Component {cleaned!r} is not valid UTF-8: {e}") from e
        except FileNotFoundError as e:
            raise NotFoundError(f"Component not found at path {cleaned!r}") from e

        frontmatter, _ = split_frontmatter(content)
        return Component(
            path=cleaned,
            kind=infer_kind(cleaned),
            content=content,
            tags=tuple(tags_from_frontmatter(frontmatter)),
            modified_at=datetime.fromtimestamp(mtime, tz=UTC),
            archived=archived,
        )

    def write_component(
        self,
        path: str,
        content: str,
        tags: list[str] | None = None,
        archived: bool = False,
    ) -> None:
        """Write a component, optionally (re)writing its ``tags`` frontmatter.

        ``tags=None`` writes ``content`` as given.
        """
        file_path = self.component_file(path, archived)
        if tags is not None:
            content = format_with_tags(content, tags)
        write_atomic(file_path, content)
        logger.debug("Wrote component %s", path)

    def update_component_tags(self, path: str, tags: list[str], archived: bool = False) -> None:
        """Replace a component's tags, leaving its body untouched."""
        component = self.read_component(path, archived)
        self.write_component(path, component.content, tags=tags, archived=archived)

    def delete_component(self, path: str, archived: bool = False) -> None:
        """Remove a component file. Pipelines referencing it are not touched."""
        file_path = self.component_file(path, archived)
        self._unlink(file_path, "component", path)

    # -- pipelines ---------------------------------------------------------

    def read_pipeline(self, filename: str, archived: bool = False) -> Pipeline:
        """Read and parse a pipeline file.

        Raises:
            InvalidPathError: If ``filename`` attempts traversal.
            NotFoundError: If no such pipeline exists.
            ParseError: If the YAML is malformed or not a pipeline mapping.
        """
        cleaned = validate_path(filename)
        file_path = self.pipeline_file(cleaned, archived)
        try:
            text = read_text_bounded(file_path)
        except NotFoundError as e:
            where = "archived pipeline" if archived else "pipeline"
            raise NotFoundError(f"{where.capitalize()} not found at path {cleaned!r}") from e
        except UnicodeDecodeError as e:
            raise ParseError(f"Pipeline {cleaned!r} is not valid UTF-8: {e}") from e

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ParseError(f"Failed to parse YAML in pipeline {cleaned!r}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ParseError(f"Pipeline {cleaned!r} must contain a mapping")

        return pipeline_from_dict(data, path=cleaned, archived=archived)

    def read_pipeline_bytes(self, filename: str, archived: bool = False) -> bytes:
        return read_bounded(self.pipeline_file(filename, archived))

    def write_pipeline(
        self,
        pipeline: Pipeline,
        archived: bool = False,
        validate: bool = True,
    ) -> str:
        """Persist a pipeline and return its filename.

        A pipeline without ``path`` is saved as ``<slug(name)>.yaml``.
        ``validate=False`` is reserved for reference-integrity rewrites, which
        may leave a pipeline with no components.

        Raises:
            ValidationError: If ``validate`` and the pipeline breaks a rule.
        """
        if validate:
            validate_pipeline(pipeline)
        if not pipeline.path:
            pipeline.path = slugify(pipeline.name) + PIPELINE_SUFFIX
        file_path = self.pipeline_file(pipeline.path, archived)
        write_atomic(file_path, pipeline_to_yaml(pipeline))
        pipeline.archived = archived
        logger.debug("Wrote pipeline %s", pipeline.path)
        return pipeline.path

    def delete_pipeline(self, filename: str, archived: bool = False) -> None:
        file_path = self.pipeline_file(filename, archived)
        self._unlink(file_path, "pipeline", filename)

    # -- archive moves -----------------------------------------------------

    def archive_component(self, path: str) -> None:
        self._move(self.component_file(path), self.component_file(path, archived=True), path)

    def unarchive_component(self, path: str) -> None:
        self._move(self.component_file(path, archived=True), self.component_file(path), path)

    def archive_pipeline(self, filename: str) -> None:
        self._move(self.pipeline_file(filename), self.pipeline_file(filename, archived=True), filename)

    def unarchive_pipeline(self, filename: str) -> None:
        self._move(self.pipeline_file(filename, archived=True), self.pipeline_file(filename), filename)

    @staticmethod
    def _move(source: Path, target: Path, label: str) -> None:
        if not source.is_file():
            raise NotFoundError(f"Not found: {label!r} ({source})")
        if target.exists():
            raise AlreadyExistsError(f"Cannot move {label!r}: {target} already exists")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.rename(source, target)
        except OSError as e:
            logger.error("Failed to move %s to %s: %s", source, target, e)
            raise WriteError(f"Failed to move {label!r}: {e}") from e
        logger.info("Moved %s -> %s", source, target)

    @staticmethod
    def _unlink(file_path: Path, what: str, label: str) -> None:
        if not file_path.is_file():
            raise NotFoundError(f"{what.capitalize()} not found at path {label!r}")
        try:
            file_path.unlink()
        except OSError as e:
            raise WriteError(f"Failed to delete {what} {label!r}: {e}") from e
        logger.info("Deleted %s %s", what, label)

    # -- tag scan ----------------------------------------------------------

    def live_entity_tags(self) -> list[EntityTags]:
        """Tags of every readable live component and pipeline.

        Unreadable entities are skipped with a warning.
        """
        found: list[EntityTags] = []
        for path in self.list_all_components():
            try:
                component = self.read_component(path)
            except PluqqyError as e:
                logger.warning("Skipping unreadable component %s: %s", path, e)
                continue
            found.append(EntityTags("component", path, component.tags))

        for filename in self.list_pipelines():
            try:
                pipeline = self.read_pipeline(filename)
            except PluqqyError as e:
                logger.warning("Skipping unreadable pipeline %s: %s", filename, e)
                continue
            found.append(EntityTags("pipeline", filename, tuple(pipeline.tags)))
        return found
