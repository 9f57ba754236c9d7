"""Reference integrity between pipelines and components.

Pipelines point at components by path. Renaming or deleting a component
rewrites every pipeline that references it, and archiving either kind of
entity keeps the tag registry in step with what is still live.

Multi-file rewrites snapshot the original bytes of every pipeline before it
is touched; if any write fails, all snapshots are restored before
:class:`~pluqqy.exceptions.ReferenceRewriteError` is raised.
"""

from __future__ import annotations

import logging
import posixpath
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from pluqqy.exceptions import (
    AlreadyExistsError,
    FileTooLargeError,
    NotFoundError,
    ParseError,
    PluqqyError,
    ReferenceRewriteError,
    ValidationError,
)
from pluqqy.frontmatter import format_with_tags, split_frontmatter, tags_from_frontmatter
from pluqqy.safe_io import read_bounded, validate_path, write_atomic
from pluqqy.slug import extract_markdown_h1, slugify, update_markdown_h1
from pluqqy.store import COMPONENT_SUFFIX, PIPELINE_SUFFIX, ref_path_for, strip_ref_prefix
from pluqqy.tags import normalize_tag, validate_tag_name

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from pluqqy.store import EntityStore
    from pluqqy.tags import TagRegistry
    from pluqqy.types import Pipeline

__all__ = ["AffectedPipelines", "ReferenceIntegrity", "TagRenameResult"]

logger = logging.getLogger(__name__)

_Snapshot = tuple["Path", bytes]


@dataclass(frozen=True)
class AffectedPipelines:
    """Display names of pipelines that reference a component."""

    active: list[str] = field(default_factory=list)
    archived: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.active) + len(self.archived)


@dataclass(frozen=True)
class TagRenameResult:
    old: str
    new: str
    components: list[str] = field(default_factory=list)
    pipelines: list[str] = field(default_factory=list)


def _retarget(pipeline: Pipeline, target: str, new_ref: str | None) -> Pipeline | None:
    """Copy of ``pipeline`` with refs to ``target`` rewritten (or dropped when
    ``new_ref`` is None); None if nothing matched."""
    changed = False
    refs = []
    for ref in pipeline.components:
        if strip_ref_prefix(ref.path) != target:
            refs.append(ref)
            continue
        changed = True
        if new_ref is not None:
            refs.append(replace(ref, path=new_ref))
    if not changed:
        return None
    return replace(pipeline, components=refs)


def _restore(snapshots: list[_Snapshot]) -> None:
    for file_path, original in reversed(snapshots):
        try:
            write_atomic(file_path, original)
        except PluqqyError as e:
            logger.error("Failed to restore %s during rollback: %s", file_path, e)


def _replace_tag(tags: list[str] | tuple[str, ...], old: str, new: str) -> list[str] | None:
    """Tags with every spelling of ``old`` replaced by ``new``, deduplicated; None if absent."""
    if not any(normalize_tag(t) == old for t in tags):
        return None
    result: list[str] = []
    for t in tags:
        name = new if normalize_tag(t) == old else t
        if normalize_tag(name) not in {normalize_tag(r) for r in result}:
            result.append(name)
    return result


class ReferenceIntegrity:
    """Rename, delete and archive operations that keep pipelines and tags consistent."""

    def __init__(self, store: EntityStore, registry: TagRegistry) -> None:
        self.store = store
        self.registry = registry

    # -- scanning ----------------------------------------------------------

    def _pipelines(self, archived: bool) -> list[Pipeline]:
        """Readable pipelines of one subtree.

        Unreadable files are skipped; an inaccessible archive directory yields
        nothing, while an inaccessible live directory raises.
        """
        try:
            filenames = self.store.list_pipelines(archived)
        except PluqqyError as e:
            if not archived:
                raise
            logger.warning("Archived pipelines unavailable, skipping: %s", e)
            return []

        pipelines = []
        for filename in filenames:
            try:
                pipelines.append(self.store.read_pipeline(filename, archived))
            except PluqqyError as e:
                logger.warning("Skipping unreadable pipeline %s: %s", filename, e)
        return pipelines

    def find_affected_pipelines(self, component_path: str) -> AffectedPipelines:
        """Display names of live and archived pipelines referencing ``component_path``."""
        target = strip_ref_prefix(validate_path(component_path))

        def referencing(archived: bool) -> list[str]:
            return [
                p.name
                for p in self._pipelines(archived)
                if any(strip_ref_prefix(r.path) == target for r in p.components)
            ]

        return AffectedPipelines(active=referencing(False), archived=referencing(True))

    def component_usage(self) -> Counter[str]:
        """How many live pipeline references point at each component path."""
        usage: Counter[str] = Counter()
        for pipeline in self._pipelines(archived=False):
            for ref in pipeline.components:
                usage[strip_ref_prefix(ref.path)] += 1
        return usage

    # -- rewriting ---------------------------------------------------------

    def _rewrite_pipelines(
        self,
        transform: Callable[[Pipeline], Pipeline | None],
        *,
        validate_live: bool = True,
    ) -> tuple[list[_Snapshot], list[str]]:
        """Apply ``transform`` to every live then archived pipeline.

        Live pipelines are validated on write unless the result has no
        components; archived ones are written directly. Returns the snapshots
        taken (so a caller's later failure can still roll back) and the
        filenames touched.

        Raises:
            ReferenceRewriteError: After restoring every snapshot, if any
                pipeline could not be written.
        """
        snapshots: list[_Snapshot] = []
        touched: list[str] = []
        for archived in (False, True):
            for pipeline in self._pipelines(archived):
                updated = transform(pipeline)
                if updated is None:
                    continue
                file_path = self.store.pipeline_file(pipeline.path, archived)
                try:
                    snapshots.append((file_path, read_bounded(file_path)))
                    self.store.write_pipeline(
                        updated,
                        archived=archived,
                        validate=validate_live and not archived and bool(updated.components),
                    )
                except PluqqyError as e:
                    logger.error("Rewrite of pipeline %s failed, rolling back: %s", pipeline.path, e)
                    _restore(snapshots)
                    raise ReferenceRewriteError(
                        f"Failed to update pipeline {pipeline.path!r}: {e}"
                    ) from e
                touched.append(pipeline.path)
        return snapshots, touched

    def update_references(self, old_path: str, new_path: str) -> list[str]:
        """Point every reference to ``old_path`` at ``new_path``; returns touched pipelines."""
        target = strip_ref_prefix(validate_path(old_path))
        new_ref = ref_path_for(validate_path(new_path))
        _, touched = self._rewrite_pipelines(lambda p: _retarget(p, target, new_ref))
        return touched

    def remove_references(self, component_path: str) -> list[str]:
        """Drop every reference to ``component_path``; returns touched pipelines."""
        target = strip_ref_prefix(validate_path(component_path))
        _, touched = self._rewrite_pipelines(lambda p: _retarget(p, target, None))
        return touched

    # -- components --------------------------------------------------------

    def _references_owned_by(self, path: str, archived: bool) -> bool:
        """Whether refs to ``path`` belong to this component.

        An archived component shares its path with any live component of the
        same slug; refs then belong to the live one.
        """
        return not archived or not self.store.component_exists(path)

    def rename_component(self, old_path: str, new_display_name: str, archived: bool = False) -> str:
        """Rename a component to the slug of ``new_display_name`` and retarget references.

        The component's ``# `` heading, if it has one, is updated to the new
        display name. Returns the new path.

        Raises:
            ValidationError: If the display name is blank.
            NotFoundError: If the component does not exist.
            AlreadyExistsError: If another component already has the new slug.
            ReferenceRewriteError: If pipelines could not be updated; the
                component and every pipeline are left as they were.
        """
        old_path = validate_path(old_path)
        if not new_display_name.strip():
            raise ValidationError("New display name cannot be empty")

        component = self.store.read_component(old_path, archived)
        new_path = posixpath.join(posixpath.dirname(old_path), slugify(new_display_name) + COMPONENT_SUFFIX)
        if new_path != old_path and self.store.component_exists(new_path, archived):
            raise AlreadyExistsError(f"Component with name {slugify(new_display_name)!r} already exists")

        content = component.content
        if extract_markdown_h1(content):
            content = update_markdown_h1(content, new_display_name.strip())

        old_file = self.store.component_file(old_path, archived)
        backup = read_bounded(old_file)
        self.store.write_component(new_path, content, archived=archived)
        if new_path == old_path:
            return new_path

        snapshots: list[_Snapshot] = []
        try:
            if self._references_owned_by(old_path, archived):
                target, new_ref = strip_ref_prefix(old_path), ref_path_for(new_path)
                snapshots, _ = self._rewrite_pipelines(lambda p: _retarget(p, target, new_ref))
            self.store.delete_component(old_path, archived)
        except PluqqyError:
            _restore(snapshots)
            write_atomic(old_file, backup)
            self.store.delete_component(new_path, archived)
            raise

        logger.info("Renamed component %s -> %s", old_path, new_path)
        return new_path

    def delete_component(self, path: str, archived: bool = False) -> list[str]:
        """Delete a component and drop pipeline references to it.

        Deleting a live component also sweeps its tags from the registry.
        Returns the pipelines whose references were removed.
        """
        path = validate_path(path)
        tags = self._component_tags(path, archived)

        touched: list[str] = []
        snapshots: list[_Snapshot] = []
        if self._references_owned_by(path, archived):
            target = strip_ref_prefix(path)
            snapshots, touched = self._rewrite_pipelines(lambda p: _retarget(p, target, None))
        try:
            self.store.delete_component(path, archived)
        except PluqqyError:
            _restore(snapshots)
            raise

        if not archived:
            self.registry.sweep_on_archive(tags)
        return touched

    def _component_tags(self, path: str, archived: bool) -> tuple[str, ...]:
        """Tags of a component about to move or disappear.

        Parse failures yield no tags; a missing file still raises NotFoundError.
        """
        try:
            return self.store.read_component(path, archived).tags
        except (ParseError, FileTooLargeError) as e:
            logger.warning("Ignoring tags of unreadable component %s: %s", path, e)
            return ()

    def archive_component(self, path: str) -> list[str]:
        """Move a component to the archive and sweep its now-unused tags.

        Pipeline references are left untouched so that unarchiving restores
        them; until then they compose as missing. Returns the swept tags.
        """
        tags = self._component_tags(path, archived=False)
        self.store.archive_component(path)
        return self.registry.sweep_on_archive(tags)

    def unarchive_component(self, path: str) -> None:
        tags = self._component_tags(path, archived=True)
        self.store.unarchive_component(path)
        self.registry.restore_on_unarchive(tags)

    # -- pipelines ---------------------------------------------------------

    def _pipeline_tags(self, filename: str, archived: bool) -> list[str]:
        try:
            return self.store.read_pipeline(filename, archived).tags
        except (ParseError, FileTooLargeError) as e:
            logger.warning("Ignoring tags of unreadable pipeline %s: %s", filename, e)
            return []

    def archive_pipeline(self, filename: str) -> list[str]:
        tags = self._pipeline_tags(filename, archived=False)
        self.store.archive_pipeline(filename)
        return self.registry.sweep_on_archive(tags)

    def unarchive_pipeline(self, filename: str) -> None:
        tags = self._pipeline_tags(filename, archived=True)
        self.store.unarchive_pipeline(filename)
        self.registry.restore_on_unarchive(tags)

    def delete_pipeline(self, filename: str, archived: bool = False) -> list[str]:
        tags = self._pipeline_tags(filename, archived)
        self.store.delete_pipeline(filename, archived)
        if archived:
            return []
        return self.registry.sweep_on_archive(tags)

    def rename_pipeline(self, filename: str, new_display_name: str, archived: bool = False) -> str:
        """Set a pipeline's display name and move it to the matching slug.

        Returns the new filename.

        Raises:
            ValidationError: If the display name is blank.
            AlreadyExistsError: If another pipeline already has the new slug.
        """
        filename = validate_path(filename)
        if not new_display_name.strip():
            raise ValidationError("New display name cannot be empty")

        pipeline = self.store.read_pipeline(filename, archived)
        new_filename = slugify(new_display_name) + PIPELINE_SUFFIX
        if new_filename != filename and self.store.pipeline_exists(new_filename, archived):
            raise AlreadyExistsError(f"Pipeline with name {slugify(new_display_name)!r} already exists")

        old_file = self.store.pipeline_file(filename, archived)
        backup = read_bounded(old_file)
        renamed = replace(pipeline, name=new_display_name.strip(), path=new_filename)
        self.store.write_pipeline(renamed, archived=archived, validate=not archived)
        if new_filename != filename:
            try:
                self.store.delete_pipeline(filename, archived)
            except PluqqyError:
                write_atomic(old_file, backup)
                self.store.delete_pipeline(new_filename, archived)
                raise
        logger.info("Renamed pipeline %s -> %s", filename, new_filename)
        return new_filename

    # -- tags --------------------------------------------------------------

    def rename_tag(self, old: str, new: str, propagate: bool = True) -> TagRenameResult:
        """Rename a tag in the registry and, with ``propagate``, on every entity.

        Entities are scanned live and archived. Every rewritten file is
        snapshotted first; a failure restores all of them and leaves the
        registry unchanged.

        Raises:
            ValidationError: If ``new`` is not a valid tag name.
            NotFoundError: If ``old`` is neither registered nor used by a live entity.
            ReferenceRewriteError: If any entity could not be rewritten.
        """
        validate_tag_name(new)
        old_name, new_name = normalize_tag(old), normalize_tag(new)
        registered = self.registry.get(old_name) is not None
        if not registered and not self.registry.usage(old_name).total:
            raise NotFoundError(f"Tag {old!r} not found")

        components: list[str] = []
        pipelines: list[str] = []
        snapshots: list[_Snapshot] = []
        if propagate and old_name != new_name:
            try:
                components = self._retag_components(old_name, new_name, snapshots)
            except PluqqyError as e:
                _restore(snapshots)
                raise ReferenceRewriteError(f"Failed to rename tag {old!r} on components: {e}") from e

            def retag(p: Pipeline) -> Pipeline | None:
                tags = _replace_tag(p.tags, old_name, new_name)
                return None if tags is None else replace(p, tags=tags)

            try:
                pipeline_snapshots, pipelines = self._rewrite_pipelines(retag, validate_live=False)
            except ReferenceRewriteError:
                _restore(snapshots)
                raise
            snapshots.extend(pipeline_snapshots)

        try:
            if registered:
                self.registry.rename(old_name, new_name)
            else:
                self.registry.get_or_create(new_name)
        except PluqqyError:
            _restore(snapshots)
            raise

        logger.info(
            "Renamed tag %s -> %s (%d components, %d pipelines)",
            old_name,
            new_name,
            len(components),
            len(pipelines),
        )
        return TagRenameResult(old_name, new_name, components, pipelines)

    def _retag_components(self, old: str, new: str, snapshots: list[_Snapshot]) -> list[str]:
        touched: list[str] = []
        for archived in (False, True):
            try:
                paths = self.store.list_all_components(archived)
            except PluqqyError as e:
                if not archived:
                    raise
                logger.warning("Archived components unavailable, skipping: %s", e)
                continue
            for path in paths:
                file_path = self.store.component_file(path, archived)
                try:
                    original = read_bounded(file_path)
                    content = original.decode("utf-8")
                except (PluqqyError, UnicodeDecodeError) as e:
                    logger.warning("Skipping unreadable component %s: %s", path, e)
                    continue
                frontmatter, _ = split_frontmatter(content)
                tags = _replace_tag(tags_from_frontmatter(frontmatter), old, new)
                if tags is None:
                    continue
                snapshots.append((file_path, original))
                write_atomic(file_path, format_with_tags(content, tags))
                touched.append(path)
        return touched
