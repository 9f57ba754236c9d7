"""High-level operations over one pluqqy project.

:class:`Library` wires the store, tag registry, reference integrity and
composer together for a single project root. The CLI talks only to this
class.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

from pluqqy.compose import Composition, PipelineComposer, compose_component, resolve_output_path, write_output
from pluqqy.exceptions import AlreadyExistsError, NotFoundError, PluqqyError, ValidationError
from pluqqy.project import ProjectManager
from pluqqy.references import AffectedPipelines, ReferenceIntegrity, TagRenameResult
from pluqqy.search import SearchResult
from pluqqy.search import search as run_search
from pluqqy.settings import Settings
from pluqqy.slug import slugify
from pluqqy.store import (
    COMPONENT_SUFFIX,
    PIPELINE_SUFFIX,
    EntityStore,
    component_path_for,
    ref_path_for,
)
from pluqqy.tags import TagRegistry, TagUsage, normalize_tag, validate_tag_name
from pluqqy.types import Component, ComponentKind, ComponentRef, Pipeline, Tag, infer_kind, normalize_kind

__all__ = ["EntityRef", "Library"]

logger = logging.getLogger(__name__)

COMPONENT = "component"
PIPELINE = "pipeline"


@dataclass(frozen=True)
class EntityRef:
    """A resolved entity: its type, store path and which subtree it lives in."""

    entity_type: str
    path: str
    archived: bool = False


def _parse_kind(kind: ComponentKind | str) -> ComponentKind:
    try:
        return ComponentKind(normalize_kind(str(kind).lower()))
    except ValueError as e:
        raise ValidationError(
            f"Invalid component type {kind!r}: must be one of: "
            + ", ".join(k.value for k in ComponentKind)
        ) from e


class Library:
    """Facade over a project's components, pipelines and tags."""

    def __init__(self, root: Path | None = None) -> None:
        self.project = ProjectManager(root)
        self.store = EntityStore(self.project.pluqqy_dir)
        self.registry = TagRegistry(self.project.tags_path, self.store)
        self.integrity = ReferenceIntegrity(self.store, self.registry)

    @classmethod
    def discover(cls, start: Path | None = None) -> Library:
        """Open the project containing ``start`` (default: cwd).

        Raises:
            NotFoundError: If no enclosing directory has a .pluqqy/ directory.
        """
        root = ProjectManager.find_project_root(start)
        if root is None:
            raise NotFoundError("No pluqqy project found. Run 'pluqqy init' first.")
        return cls(root)

    @property
    def root(self) -> Path:
        return self.project.root

    @cached_property
    def settings(self) -> Settings:
        return self.project.load_settings()

    # -- lookup ------------------------------------------------------------

    def find_component(self, ref: str, archived: bool = False) -> str:
        """Resolve a component reference to its store path.

        Accepts ``contexts/api-docs``, ``components/contexts/api-docs.md``,
        ``api-docs`` and ``api-docs.md``.

        Raises:
            NotFoundError: If nothing matches.
            ValidationError: If a bare name matches components of several kinds.
        """
        ref = ref.strip().removeprefix("../").removeprefix("components/")
        if "/" in ref:
            kind, name = ref.split("/", 1)
            path = component_path_for(_parse_kind(kind), name.removesuffix(COMPONENT_SUFFIX))
            if self.store.component_exists(path, archived):
                return path
            raise NotFoundError(f"Component not found: {ref}")

        stem = ref.removesuffix(COMPONENT_SUFFIX)
        matches = [
            component_path_for(kind, stem)
            for kind in ComponentKind
            if self.store.component_exists(component_path_for(kind, stem), archived)
        ]
        if not matches:
            raise NotFoundError(f"Component {ref!r} not found")
        if len(matches) > 1:
            raise ValidationError(
                f"Multiple components found with name {ref!r}. "
                f"Please specify the type (e.g., contexts/{stem})"
            )
        return matches[0]

    def find_pipeline(self, ref: str, archived: bool = False) -> str:
        """Resolve a pipeline by filename, slug or display name."""
        ref = ref.strip()
        for candidate in (ref, ref + PIPELINE_SUFFIX, slugify(ref) + PIPELINE_SUFFIX):
            if candidate.endswith(PIPELINE_SUFFIX) and self.store.pipeline_exists(candidate, archived):
                return candidate
        raise NotFoundError(f"Pipeline {ref!r} not found")

    def resolve(self, ref: str, archived: bool | None = None) -> EntityRef:
        """Resolve ``ref`` as a pipeline first, then as a component.

        ``archived=None`` searches the live tree, then the archive.
        """
        subtrees = (False, True) if archived is None else (archived,)
        for in_archive in subtrees:
            try:
                return EntityRef(PIPELINE, self.find_pipeline(ref, in_archive), in_archive)
            except NotFoundError:
                pass
            try:
                return EntityRef(COMPONENT, self.find_component(ref, in_archive), in_archive)
            except NotFoundError:
                pass
        raise NotFoundError(f"No pipeline or component found matching {ref!r}")

    # -- listing -----------------------------------------------------------

    def components(self, kind: ComponentKind | str | None = None, archived: bool = False) -> list[Component]:
        kinds = list(ComponentKind) if kind is None else [_parse_kind(kind)]
        found: list[Component] = []
        for k in kinds:
            for path in self.store.list_components(k, archived):
                try:
                    found.append(self.store.read_component(path, archived))
                except PluqqyError as e:
                    logger.warning("Skipping unreadable component %s: %s", path, e)
        return found

    def pipelines(self, archived: bool = False) -> list[Pipeline]:
        found: list[Pipeline] = []
        for filename in self.store.list_pipelines(archived):
            try:
                found.append(self.store.read_pipeline(filename, archived))
            except PluqqyError as e:
                logger.warning("Skipping unreadable pipeline %s: %s", filename, e)
        return found

    def component_usage(self) -> dict[str, int]:
        """Live pipeline reference counts per component path."""
        return dict(self.integrity.component_usage())

    def affected_pipelines(self, component_path: str) -> AffectedPipelines:
        return self.integrity.find_affected_pipelines(component_path)

    # -- creation ----------------------------------------------------------

    def _register_tags(self, tags: list[str] | None) -> list[str]:
        normalized: list[str] = []
        for tag in tags or []:
            validate_tag_name(tag.strip())
            name = normalize_tag(tag)
            if name not in normalized:
                normalized.append(name)
        self.registry.ensure(normalized)
        return normalized

    def create_component(
        self,
        kind: ComponentKind | str,
        display_name: str,
        content: str = "",
        tags: list[str] | None = None,
    ) -> str:
        """Create a component named ``display_name`` and return its path.

        Raises:
            ValidationError: If the name is blank, the kind or a tag invalid.
            AlreadyExistsError: If a live component of that kind has the slug.
        """
        if not display_name.strip():
            raise ValidationError("Component name cannot be empty")
        path = component_path_for(_parse_kind(kind), slugify(display_name))
        if self.store.component_exists(path):
            raise AlreadyExistsError(f"Component {path!r} already exists")

        normalized = self._register_tags(tags)
        body = content or f"# {display_name.strip()}\n\n"
        self.store.write_component(path, body, tags=normalized or None)
        logger.info("Created component %s", path)
        return path

    def create_pipeline(
        self,
        name: str,
        components: list[str],
        tags: list[str] | None = None,
        output_path: str = "",
    ) -> str:
        """Create a pipeline over existing components, in the order given.

        ``components`` are component references as accepted by
        :meth:`find_component`. Returns the pipeline filename.
        """
        filename = slugify(name) + PIPELINE_SUFFIX
        if self.store.pipeline_exists(filename):
            raise AlreadyExistsError(f"Pipeline {filename!r} already exists")

        refs: list[ComponentRef] = []
        for order, ref in enumerate(components, start=1):
            path = self.find_component(ref)
            kind = infer_kind(path)
            refs.append(ComponentRef(kind=kind.value if kind else "", path=ref_path_for(path), order=order))

        pipeline = Pipeline(name=name.strip(), components=refs, output_path=output_path)
        pipeline.tags = self._register_tags(tags)
        self.store.write_pipeline(pipeline)
        logger.info("Created pipeline %s", pipeline.path)
        return pipeline.path

    # -- lifecycle ---------------------------------------------------------

    def rename(self, entity: EntityRef, new_display_name: str) -> str:
        if entity.entity_type == PIPELINE:
            return self.integrity.rename_pipeline(entity.path, new_display_name, entity.archived)
        return self.integrity.rename_component(entity.path, new_display_name, entity.archived)

    def archive(self, entity: EntityRef) -> list[str]:
        """Archive a live entity; returns tags swept from the registry."""
        if entity.archived:
            raise ValidationError(f"{entity.path!r} is already archived")
        if entity.entity_type == PIPELINE:
            return self.integrity.archive_pipeline(entity.path)
        return self.integrity.archive_component(entity.path)

    def restore(self, entity: EntityRef) -> None:
        if not entity.archived:
            raise ValidationError(f"{entity.path!r} is not archived")
        if entity.entity_type == PIPELINE:
            self.integrity.unarchive_pipeline(entity.path)
        else:
            self.integrity.unarchive_component(entity.path)

    def delete(self, entity: EntityRef) -> list[str]:
        """Delete an entity; for components, returns pipelines whose refs were removed."""
        if entity.entity_type == PIPELINE:
            self.integrity.delete_pipeline(entity.path, entity.archived)
            return []
        return self.integrity.delete_component(entity.path, entity.archived)

    # -- search ------------------------------------------------------------

    def search(self, query: str) -> list[SearchResult]:
        """Components and pipelines matching ``query``; see :mod:`pluqqy.search`."""
        return run_search(self, query)

    # -- entity tags -------------------------------------------------------

    def entity_tags(self, entity: EntityRef) -> list[str]:
        if entity.entity_type == PIPELINE:
            return list(self.store.read_pipeline(entity.path, entity.archived).tags)
        return list(self.store.read_component(entity.path, entity.archived).tags)

    def set_tags(self, entity: EntityRef, tags: list[str]) -> list[str]:
        """Replace an entity's tags; tags on live entities are registered."""
        normalized = self._register_tags(tags) if not entity.archived else [normalize_tag(t) for t in tags]
        if entity.entity_type == PIPELINE:
            pipeline = self.store.read_pipeline(entity.path, entity.archived)
            pipeline.tags = normalized
            self.store.write_pipeline(pipeline, archived=entity.archived, validate=False)
        else:
            self.store.update_component_tags(entity.path, normalized, entity.archived)
        return normalized

    def add_tag(self, entity: EntityRef, tag: str) -> bool:
        """Add ``tag`` to an entity; False if it already had it."""
        validate_tag_name(tag.strip())
        current = self.entity_tags(entity)
        name = normalize_tag(tag)
        if name in {normalize_tag(t) for t in current}:
            return False
        self.set_tags(entity, [*current, name])
        return True

    def remove_tag(self, entity: EntityRef, tag: str) -> bool:
        """Remove ``tag`` from an entity; False if it did not have it.

        The registry entry is kept.
        """
        current = self.entity_tags(entity)
        name = normalize_tag(tag)
        remaining = [t for t in current if normalize_tag(t) != name]
        if len(remaining) == len(current):
            return False
        self.set_tags(entity, remaining)
        return True

    # -- registry ----------------------------------------------------------

    def tags(self) -> list[tuple[Tag, TagUsage]]:
        """Registered tags plus any unregistered tag in live use, with usage."""
        stats = self.registry.stats()
        rows = [(tag, stats.get(tag.name, TagUsage(name=tag.name))) for tag in self.registry.list_tags()]
        registered = {tag.name for tag, _ in rows}
        rows.extend((Tag(name=name), usage) for name, usage in sorted(stats.items()) if name not in registered)
        return rows

    def add_registry_tag(self, name: str, color: str = "", description: str = "", parent: str = "") -> Tag:
        return self.registry.add(Tag(name=name, color=color, description=description, parent=parent))

    def remove_registry_tag(self, name: str) -> None:
        self.registry.remove(name)

    def rename_tag(self, old: str, new: str, propagate: bool = True) -> TagRenameResult:
        return self.integrity.rename_tag(old, new, propagate)

    def tag_color(self, name: str) -> str:
        return self.registry.color_for(name)

    # -- composition -------------------------------------------------------

    def composer(self) -> PipelineComposer:
        return PipelineComposer(self.store, self.settings)

    def compose(self, pipeline_ref: str) -> Composition:
        pipeline = self.store.read_pipeline(self.find_pipeline(pipeline_ref))
        return self.composer().compose(pipeline)

    def export(self, pipeline_ref: str, output: str | Path | None = None) -> tuple[Composition, Path]:
        """Compose a pipeline and write it to its output path."""
        pipeline = self.store.read_pipeline(self.find_pipeline(pipeline_ref))
        composition = self.composer().compose(pipeline)
        path = resolve_output_path(self.root, self.settings, pipeline, output)
        return composition, write_output(composition.markdown, path)

    def render_component(self, component_ref: str, archived: bool = False) -> str:
        component = self.store.read_component(self.find_component(component_ref, archived), archived)
        return compose_component(component, self.settings)
