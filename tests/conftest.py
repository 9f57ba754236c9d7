"""Shared fixtures for pluqqy tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import yaml

from pluqqy.library import Library
from pluqqy.project import PLUQQY_DIR, ProjectManager

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A temporary directory simulating a project root."""
    return tmp_path


@pytest.fixture
def initialized_project(tmp_path: Path) -> Path:
    """A temporary project with .pluqqy/ already initialized."""
    ProjectManager(tmp_path).init()
    return tmp_path


@pytest.fixture
def pluqqy_dir(initialized_project: Path) -> Path:
    return initialized_project / PLUQQY_DIR


@pytest.fixture
def library(initialized_project: Path) -> Library:
    return Library(initialized_project)


def _write_component(pluqqy_dir: Path, rel: str, content: str, archived: bool = False) -> Path:
    """Write a component file directly, bypassing the store."""
    path = (pluqqy_dir / "archive" / rel) if archived else (pluqqy_dir / rel)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _write_pipeline(
    pluqqy_dir: Path,
    filename: str,
    name: str,
    refs: list[tuple[str, str, int]],
    tags: list[str] | None = None,
    archived: bool = False,
) -> Path:
    """Write a pipeline YAML file directly from (type, path, order) triples."""
    data: dict[str, object] = {
        "name": name,
        "components": [{"type": t, "path": p, "order": o} for t, p, o in refs],
    }
    if tags:
        data["tags"] = tags
    base = pluqqy_dir / "archive" if archived else pluqqy_dir
    path = base / "pipelines" / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path


def read_yaml(path: Path) -> dict:
    return yaml.safe_load(path.read_text(encoding="utf-8"))


@pytest.fixture
def make_component(pluqqy_dir: Path):
    """Factory writing component files straight to disk: (rel, content, archived=False)."""

    def make(rel: str, content: str, archived: bool = False) -> Path:
        return _write_component(pluqqy_dir, rel, content, archived)

    return make


@pytest.fixture
def make_pipeline(pluqqy_dir: Path):
    """Factory writing pipeline files straight to disk from (type, path, order) triples."""

    def make(
        filename: str,
        name: str,
        refs: list[tuple[str, str, int]],
        tags: list[str] | None = None,
        archived: bool = False,
    ) -> Path:
        return _write_pipeline(pluqqy_dir, filename, name, refs, tags, archived)

    return make


@pytest.fixture
def load_yaml():
    return read_yaml
