"""Tests for pluqqy.store module."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from pluqqy.exceptions import (
    AlreadyExistsError,
    InvalidPathError,
    NotFoundError,
    ParseError,
    ValidationError,
)
from pluqqy.store import EntityStore, ref_path_for, strip_ref_prefix
from pluqqy.types import ComponentKind, ComponentRef, Pipeline

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def store(pluqqy_dir: Path) -> EntityStore:
    return EntityStore(pluqqy_dir)


def _valid_pipeline(name: str = "Test Pipeline") -> Pipeline:
    return Pipeline(
        name=name,
        components=[ComponentRef("contexts", "../components/contexts/a.md", 1)],
    )


class TestRefPaths:
    def test_ref_path_for(self):
        assert ref_path_for("components/contexts/a.md") == "../components/contexts/a.md"

    def test_strip_ref_prefix(self):
        assert strip_ref_prefix("../components/contexts/a.md") == "components/contexts/a.md"
        assert strip_ref_prefix("components//contexts/a.md") == "components/contexts/a.md"


class TestComponents:
    def test_list_sorted(self, store: EntityStore, make_component):
        make_component("components/rules/b.md", "B")
        make_component("components/rules/a.md", "A")
        make_component("components/rules/notes.txt", "ignored")
        assert store.list_components("rules") == ["components/rules/a.md", "components/rules/b.md"]

    def test_list_accepts_legacy_kind(self, store: EntityStore, make_component):
        make_component("components/rules/a.md", "A")
        assert store.list_components("rule") == ["components/rules/a.md"]

    def test_list_invalid_kind(self, store: EntityStore):
        with pytest.raises(ValidationError):
            store.list_components("widgets")

    def test_list_missing_dir(self, tmp_path: Path):
        assert EntityStore(tmp_path / "nope").list_components(ComponentKind.PROMPTS) == []

    def test_read_keeps_frontmatter(self, store: EntityStore, make_component):
        make_component("components/contexts/api.md", "---\ntags: [api]\n---\n# API\n")
        component = store.read_component("components/contexts/api.md")
        assert component.content.startswith("---\n")
        assert component.tags == ("api",)
        assert component.kind is ComponentKind.CONTEXTS
        assert component.modified_at is not None

    def test_read_bad_frontmatter_is_not_fatal(self, store: EntityStore, make_component):
        make_component("components/contexts/bad.md", "---\ntags: [oops\n---\nBody")
        component = store.read_component("components/contexts/bad.md")
        assert component.tags == ()
        assert "Body" in component.content

    def test_read_missing(self, store: EntityStore):
        with pytest.raises(NotFoundError):
            store.read_component("components/contexts/missing.md")

    def test_write_with_tags(self, store: EntityStore, pluqqy_dir: Path):
        store.write_component("components/prompts/p.md", "Body\n", tags=["x"])
        text = (pluqqy_dir / "components/prompts/p.md").read_text(encoding="utf-8")
        assert text.startswith("---\ntags:")
        assert store.read_component("components/prompts/p.md").tags == ("x",)

    def test_update_tags_keeps_body(self, store: EntityStore, make_component):
        make_component("components/prompts/p.md", "---\ntags: [old]\n---\nBody\n")
        store.update_component_tags("components/prompts/p.md", ["new"])
        component = store.read_component("components/prompts/p.md")
        assert component.tags == ("new",)
        assert component.content.endswith("Body\n")

    def test_delete(self, store: EntityStore, make_component):
        path = make_component("components/rules/r.md", "R")
        store.delete_component("components/rules/r.md")
        assert not path.exists()
        with pytest.raises(NotFoundError):
            store.delete_component("components/rules/r.md")


class TestPipelines:
    def test_write_uses_slug_filename(self, store: EntityStore, pluqqy_dir: Path):
        filename = store.write_pipeline(_valid_pipeline("My Pipeline"))
        assert filename == "my-pipeline.yaml"
        assert (pluqqy_dir / "pipelines" / "my-pipeline.yaml").is_file()

    def test_round_trip(self, store: EntityStore):
        pipeline = _valid_pipeline()
        pipeline.tags = ["a"]
        pipeline.output_path = "out.md"
        filename = store.write_pipeline(pipeline)
        loaded = store.read_pipeline(filename)
        assert loaded.name == "Test Pipeline"
        assert loaded.components == pipeline.components
        assert loaded.tags == ["a"]
        assert loaded.output_path == "out.md"
        assert loaded.path == filename

    def test_write_validates(self, store: EntityStore):
        bad = Pipeline(
            name="dup",
            components=[
                ComponentRef("contexts", "../components/contexts/a.md", 1),
                ComponentRef("prompts", "../components/prompts/b.md", 1),
            ],
        )
        with pytest.raises(ValidationError):
            store.write_pipeline(bad)
        assert store.list_pipelines() == []

    def test_write_without_validation_allows_empty(self, store: EntityStore):
        filename = store.write_pipeline(Pipeline(name="empty", path="empty.yaml"), validate=False)
        assert store.read_pipeline(filename).components == []

    def test_read_normalizes_legacy_kinds(self, store: EntityStore, make_pipeline):
        make_pipeline("old.yaml", "Old", [("context", "../components/contexts/a.md", 1)])
        assert store.read_pipeline("old.yaml").components[0].kind == "contexts"

    def test_read_invalid_yaml(self, store: EntityStore, pluqqy_dir: Path):
        (pluqqy_dir / "pipelines" / "bad.yaml").write_text("name: [oops\n", encoding="utf-8")
        with pytest.raises(ParseError):
            store.read_pipeline("bad.yaml")

    def test_read_non_mapping(self, store: EntityStore, pluqqy_dir: Path):
        (pluqqy_dir / "pipelines" / "list.yaml").write_text("- a\n", encoding="utf-8")
        with pytest.raises(ParseError):
            store.read_pipeline("list.yaml")

    def test_list_archived(self, store: EntityStore, make_pipeline):
        make_pipeline("live.yaml", "Live", [("contexts", "../components/contexts/a.md", 1)])
        make_pipeline("old.yaml", "Old", [("contexts", "../components/contexts/a.md", 1)], archived=True)
        assert store.list_pipelines() == ["live.yaml"]
        assert store.list_pipelines(archived=True) == ["old.yaml"]


class TestArchiveMoves:
    def test_component_round_trip_preserves_bytes(self, store: EntityStore, make_component, pluqqy_dir: Path):
        original = "---\ntags: [x]\n---\n# Title\n\nBody with trailing space \n"
        make_component("components/contexts/c.md", original)
        store.archive_component("components/contexts/c.md")
        assert not (pluqqy_dir / "components/contexts/c.md").exists()
        assert (pluqqy_dir / "archive/components/contexts/c.md").is_file()

        store.unarchive_component("components/contexts/c.md")
        assert (pluqqy_dir / "components/contexts/c.md").read_text(encoding="utf-8") == original

    def test_pipeline_round_trip_preserves_bytes(self, store: EntityStore, make_pipeline):
        path = make_pipeline("p.yaml", "P", [("rules", "../components/rules/r.md", 1)])
        original = path.read_bytes()
        store.archive_pipeline("p.yaml")
        store.unarchive_pipeline("p.yaml")
        assert path.read_bytes() == original

    def test_unarchive_collision(self, store: EntityStore, make_component):
        make_component("components/rules/r.md", "live")
        make_component("components/rules/r.md", "archived", archived=True)
        with pytest.raises(AlreadyExistsError):
            store.unarchive_component("components/rules/r.md")

    def test_archive_missing(self, store: EntityStore):
        with pytest.raises(NotFoundError):
            store.archive_pipeline("nope.yaml")


class TestPathSafety:
    @pytest.mark.parametrize("bad", ["../outside.md", "components/../../x.md", "/etc/passwd"])
    def test_operations_reject_traversal(self, store: EntityStore, pluqqy_dir: Path, bad: str):
        before = sorted(p.relative_to(pluqqy_dir) for p in pluqqy_dir.rglob("*"))
        for op in (
            lambda: store.read_component(bad),
            lambda: store.write_component(bad, "x"),
            lambda: store.delete_component(bad),
            lambda: store.archive_component(bad),
            lambda: store.unarchive_component(bad),
            lambda: store.read_pipeline(bad),
            lambda: store.archive_pipeline(bad),
        ):
            with pytest.raises(InvalidPathError):
                op()
        assert sorted(p.relative_to(pluqqy_dir) for p in pluqqy_dir.rglob("*")) == before


class TestLiveEntityTags:
    def test_collects_components_and_pipelines(self, store: EntityStore, make_component, make_pipeline):
        make_component("components/contexts/a.md", "---\ntags: [one]\n---\nA")
        make_pipeline("p.yaml", "P", [("contexts", "../components/contexts/a.md", 1)], tags=["two"])
        make_pipeline("old.yaml", "Old", [("contexts", "x", 1)], tags=["three"], archived=True)
        found = {(e.entity_type, e.path): e.tags for e in store.live_entity_tags()}
        assert found == {
            ("component", "components/contexts/a.md"): ("one",),
            ("pipeline", "p.yaml"): ("two",),
        }

    def test_skips_unreadable(self, store: EntityStore, pluqqy_dir: Path):
        (pluqqy_dir / "pipelines" / "bad.yaml").write_text("name: [oops\n", encoding="utf-8")
        assert store.live_entity_tags() == []
