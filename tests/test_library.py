"""Tests for pluqqy.library module."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from pluqqy.exceptions import AlreadyExistsError, NotFoundError, ValidationError
from pluqqy.library import COMPONENT, PIPELINE, EntityRef, Library

if TYPE_CHECKING:
    from pathlib import Path


class TestDiscover:
    def test_from_subdirectory(self, initialized_project: Path):
        nested = initialized_project / "a" / "b"
        nested.mkdir(parents=True)
        assert Library.discover(nested).root == initialized_project.resolve()

    def test_no_project(self, tmp_path: Path):
        lonely = tmp_path / "lonely"
        lonely.mkdir()
        with pytest.raises(NotFoundError):
            Library.discover(lonely)


class TestLookup:
    def test_find_component_forms(self, library: Library, make_component):
        make_component("components/contexts/api-docs.md", "A")
        for ref in ("contexts/api-docs", "components/contexts/api-docs.md", "api-docs", "api-docs.md"):
            assert library.find_component(ref) == "components/contexts/api-docs.md", ref

    def test_find_component_legacy_kind(self, library: Library, make_component):
        make_component("components/rules/style.md", "S")
        assert library.find_component("rule/style") == "components/rules/style.md"

    def test_find_component_ambiguous(self, library: Library, make_component):
        make_component("components/contexts/x.md", "A")
        make_component("components/rules/x.md", "B")
        with pytest.raises(ValidationError, match="Multiple components"):
            library.find_component("x")

    def test_find_component_missing(self, library: Library):
        with pytest.raises(NotFoundError):
            library.find_component("ghost")

    def test_find_component_archived(self, library: Library, make_component):
        make_component("components/rules/old.md", "O", archived=True)
        with pytest.raises(NotFoundError):
            library.find_component("old")
        assert library.find_component("old", archived=True) == "components/rules/old.md"

    def test_find_pipeline_forms(self, library: Library, make_pipeline):
        make_pipeline("my-pipeline.yaml", "My Pipeline", [("contexts", "x", 1)])
        for ref in ("my-pipeline.yaml", "my-pipeline", "My Pipeline"):
            assert library.find_pipeline(ref) == "my-pipeline.yaml"

    def test_resolve_prefers_pipeline(self, library: Library, make_component, make_pipeline):
        make_component("components/contexts/both.md", "C")
        make_pipeline("both.yaml", "Both", [("contexts", "../components/contexts/both.md", 1)])
        assert library.resolve("both") == EntityRef(PIPELINE, "both.yaml", False)

    def test_resolve_falls_back_to_archive(self, library: Library, make_component):
        make_component("components/prompts/gone.md", "G", archived=True)
        assert library.resolve("gone") == EntityRef(COMPONENT, "components/prompts/gone.md", True)

    def test_resolve_missing(self, library: Library):
        with pytest.raises(NotFoundError):
            library.resolve("nothing")


class TestCreate:
    def test_create_component_default_body(self, library: Library, pluqqy_dir: Path):
        path = library.create_component("contexts", "API Docs")
        assert path == "components/contexts/api-docs.md"
        assert (pluqqy_dir / path).read_text(encoding="utf-8") == "# API Docs\n\n"

    def test_create_component_with_tags(self, library: Library):
        path = library.create_component("prompt", "Review", "Review this.\n", tags=["Code Review", "code review"])
        component = library.store.read_component(path)
        assert component.tags == ("code-review",)
        assert library.registry.get("code-review") is not None

    def test_create_component_invalid(self, library: Library):
        with pytest.raises(ValidationError):
            library.create_component("widgets", "X")
        with pytest.raises(ValidationError):
            library.create_component("rules", "   ")
        with pytest.raises(ValidationError):
            library.create_component("rules", "X", tags=["bad!"])

    def test_create_component_duplicate(self, library: Library):
        library.create_component("rules", "Style")
        with pytest.raises(AlreadyExistsError):
            library.create_component("rules", "style")

    def test_create_pipeline(self, library: Library):
        library.create_component("contexts", "System")
        library.create_component("rules", "Style")
        filename = library.create_pipeline("Daily Work", ["style", "contexts/system"], tags=["daily"])
        pipeline = library.store.read_pipeline(filename)
        assert filename == "daily-work.yaml"
        assert [(r.kind, r.path, r.order) for r in pipeline.components] == [
            ("rules", "../components/rules/style.md", 1),
            ("contexts", "../components/contexts/system.md", 2),
        ]
        assert pipeline.tags == ["daily"]

    def test_create_pipeline_missing_component(self, library: Library):
        with pytest.raises(NotFoundError):
            library.create_pipeline("P", ["ghost"])
        assert library.store.list_pipelines() == []

    def test_create_pipeline_duplicate(self, library: Library):
        library.create_component("contexts", "A")
        library.create_pipeline("P", ["a"])
        with pytest.raises(AlreadyExistsError):
            library.create_pipeline("p", ["a"])


class TestLifecycle:
    def test_archive_and_restore(self, library: Library):
        path = library.create_component("contexts", "A", tags=["solo"])
        swept = library.archive(EntityRef(COMPONENT, path))
        assert swept == ["solo"]
        archived = library.resolve("a")
        assert archived.archived is True
        library.restore(archived)
        assert library.store.component_exists(path)
        assert library.registry.get("solo") is not None

    def test_archive_twice_rejected(self, library: Library):
        path = library.create_component("contexts", "A")
        with pytest.raises(ValidationError):
            library.archive(EntityRef(COMPONENT, path, archived=True))

    def test_restore_live_rejected(self, library: Library):
        path = library.create_component("contexts", "A")
        with pytest.raises(ValidationError):
            library.restore(EntityRef(COMPONENT, path))

    def test_rename_component_updates_pipeline(self, library: Library):
        library.create_component("contexts", "Old Name")
        filename = library.create_pipeline("P", ["old-name"])
        new_path = library.rename(library.resolve("old-name"), "New Name")
        assert new_path == "components/contexts/new-name.md"
        assert library.store.read_pipeline(filename).components[0].path == "../components/contexts/new-name.md"

    def test_delete_component_reports_pipelines(self, library: Library):
        library.create_component("contexts", "A")
        library.create_component("contexts", "B")
        filename = library.create_pipeline("P", ["a", "b"])
        touched = library.delete(library.resolve("a"))
        assert touched == [filename]

    def test_delete_pipeline(self, library: Library):
        library.create_component("contexts", "A")
        library.create_pipeline("P", ["a"])
        assert library.delete(library.resolve("p")) == []
        assert library.store.list_pipelines() == []

    def test_archive_pipeline_with_broken_yaml(self, library: Library, pluqqy_dir: Path):
        (pluqqy_dir / "pipelines" / "broken.yaml").write_text("name: [unterminated\n", encoding="utf-8")
        assert library.archive(EntityRef(PIPELINE, "broken.yaml")) == []
        assert not (pluqqy_dir / "pipelines" / "broken.yaml").exists()
        assert (pluqqy_dir / "archive" / "pipelines" / "broken.yaml").is_file()

    def test_restore_pipeline_with_broken_yaml(self, library: Library, pluqqy_dir: Path):
        target = pluqqy_dir / "archive" / "pipelines" / "broken.yaml"
        target.write_text("name: [unterminated\n", encoding="utf-8")
        library.restore(EntityRef(PIPELINE, "broken.yaml", archived=True))
        assert (pluqqy_dir / "pipelines" / "broken.yaml").is_file()

    def test_delete_pipeline_that_is_not_a_mapping(self, library: Library, pluqqy_dir: Path):
        (pluqqy_dir / "pipelines" / "listy.yaml").write_text("- one\n- two\n", encoding="utf-8")
        assert library.delete(EntityRef(PIPELINE, "listy.yaml")) == []
        assert not (pluqqy_dir / "pipelines" / "listy.yaml").exists()

    def test_delete_component_with_invalid_utf8(self, library: Library, pluqqy_dir: Path):
        target = pluqqy_dir / "components" / "contexts" / "latin.md"
        target.write_bytes(b"caf\xe9")
        assert library.delete(EntityRef(COMPONENT, "components/contexts/latin.md")) == []
        assert not target.exists()

    def test_archive_component_with_invalid_utf8(self, library: Library, pluqqy_dir: Path):
        (pluqqy_dir / "components" / "rules" / "latin.md").write_bytes(b"caf\xe9")
        library.archive(EntityRef(COMPONENT, "components/rules/latin.md"))
        assert (pluqqy_dir / "archive" / "components" / "rules" / "latin.md").is_file()

    def test_unreadable_entity_logs_warning(
        self, library: Library, pluqqy_dir: Path, caplog: pytest.LogCaptureFixture
    ):
        (pluqqy_dir / "pipelines" / "broken.yaml").write_text("name: [unterminated\n", encoding="utf-8")
        with caplog.at_level("WARNING", logger="pluqqy.references"):
            library.delete(EntityRef(PIPELINE, "broken.yaml"))
        assert "broken.yaml" in caplog.text

    def test_delete_missing_still_raises(self, library: Library):
        with pytest.raises(NotFoundError):
            library.delete(EntityRef(PIPELINE, "ghost.yaml"))
        with pytest.raises(NotFoundError):
            library.archive(EntityRef(COMPONENT, "components/rules/ghost.md"))


class TestEntityTags:
    def test_add_and_remove(self, library: Library):
        path = library.create_component("rules", "R")
        entity = EntityRef(COMPONENT, path)
        assert library.add_tag(entity, "API") is True
        assert library.add_tag(entity, "api") is False
        assert library.entity_tags(entity) == ["api"]
        assert library.registry.get("api") is not None

        assert library.remove_tag(entity, "API") is True
        assert library.remove_tag(entity, "api") is False
        assert library.entity_tags(entity) == []
        assert library.registry.get("api") is not None

    def test_pipeline_tags(self, library: Library):
        library.create_component("rules", "R")
        filename = library.create_pipeline("P", ["r"])
        entity = EntityRef(PIPELINE, filename)
        library.set_tags(entity, ["One", "two"])
        assert library.store.read_pipeline(filename).tags == ["one", "two"]

    def test_archived_entity_tags_not_registered(self, library: Library, make_component):
        make_component("components/rules/old.md", "O", archived=True)
        entity = EntityRef(COMPONENT, "components/rules/old.md", archived=True)
        library.add_tag(entity, "history")
        assert library.entity_tags(entity) == ["history"]
        assert library.registry.get("history") is None


class TestRegistryView:
    def test_tags_includes_unregistered_in_use(self, library: Library, make_component):
        make_component("components/rules/r.md", "---\ntags: [stray]\n---\nR")
        library.add_registry_tag("known", description="registered")
        rows = {tag.name: usage.total for tag, usage in library.tags()}
        assert rows == {"known": 0, "stray": 1}

    def test_rename_tag(self, library: Library):
        path = library.create_component("rules", "R", tags=["old"])
        result = library.rename_tag("old", "new")
        assert result.components == [path]
        assert library.store.read_component(path).tags == ("new",)
        assert library.registry.get("old") is None

    def test_tag_color_stable(self, library: Library):
        assert library.tag_color("api") == library.tag_color("API")


class TestCompose:
    def test_export_default_path(self, library: Library, initialized_project: Path):
        library.create_component("contexts", "System", "The system.\n")
        library.create_pipeline("Debug", ["system"])
        composition, path = library.export("debug")
        assert path == initialized_project / "PLUQQY.md"
        assert path.read_text(encoding="utf-8") == composition.markdown
        assert composition.markdown.startswith("# Debug\n\n## CONTEXT\n\nThe system.")

    def test_export_pipeline_output_path(self, library: Library, initialized_project: Path):
        library.create_component("contexts", "System", "The system.\n")
        library.create_pipeline("Debug", ["system"], output_path="docs/DEBUG.md")
        _, path = library.export("debug")
        assert path == initialized_project / "docs" / "DEBUG.md"
        assert path.is_file()

    def test_export_explicit_output(self, library: Library, tmp_path: Path):
        library.create_component("contexts", "System", "The system.\n")
        library.create_pipeline("Debug", ["system"])
        target = tmp_path / "custom.md"
        _, path = library.export("debug", target)
        assert path == target

    def test_render_component(self, library: Library):
        library.create_component("rules", "Style", "Be brief.\n")
        assert library.render_component("style") == "## IMPORTANT RULES\n\nBe brief.\n"
