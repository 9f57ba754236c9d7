"""Project manager for pluqqy.

Handles project initialization, status reporting, and project root discovery.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pluqqy.exceptions import PluqqyError, WriteError
from pluqqy.safe_io import read_text_bounded, write_atomic
from pluqqy.settings import Settings, default_settings, load_settings, save_settings
from pluqqy.store import ARCHIVE_DIR, COMPONENTS_DIR, PIPELINES_DIR, EntityStore
from pluqqy.tags import TagRegistry
from pluqqy.types import ComponentKind

__all__ = [
    "GITIGNORE_ENTRY",
    "PLUQQY_DIR",
    "SETTINGS_FILE",
    "TAGS_FILE",
    "ProjectManager",
    "ProjectStatus",
]

logger = logging.getLogger(__name__)

PLUQQY_DIR = ".pluqqy"
SETTINGS_FILE = "settings.yaml"
TAGS_FILE = "tags.yaml"
TMP_DIR = "tmp"
GITIGNORE_ENTRY = "/tmp/"


def _subdirs() -> list[str]:
    kinds = [f"{COMPONENTS_DIR}/{kind.value}" for kind in ComponentKind]
    live = [PIPELINES_DIR, COMPONENTS_DIR, *kinds]
    return [*live, ARCHIVE_DIR, *(f"{ARCHIVE_DIR}/{d}" for d in live), TMP_DIR]


SUBDIRS = _subdirs()


@dataclass
class ProjectStatus:
    """Summary of the current project state."""

    initialized: bool
    root: Path
    components: dict[str, int] = field(default_factory=dict)
    archived_components: dict[str, int] = field(default_factory=dict)
    pipeline_count: int = 0
    archived_pipeline_count: int = 0
    tag_count: int = 0
    settings: Settings | None = None

    @property
    def component_count(self) -> int:
        return sum(self.components.values())

    @property
    def archived_component_count(self) -> int:
        return sum(self.archived_components.values())


class ProjectManager:
    """Manages pluqqy project lifecycle."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or Path.cwd()

    @property
    def pluqqy_dir(self) -> Path:
        return self.root / PLUQQY_DIR

    @property
    def settings_path(self) -> Path:
        return self.pluqqy_dir / SETTINGS_FILE

    @property
    def tags_path(self) -> Path:
        return self.pluqqy_dir / TAGS_FILE

    @property
    def gitignore_path(self) -> Path:
        return self.pluqqy_dir / ".gitignore"

    @property
    def is_initialized(self) -> bool:
        return (self.pluqqy_dir / PIPELINES_DIR).is_dir() and (self.pluqqy_dir / COMPONENTS_DIR).is_dir()

    def store(self) -> EntityStore:
        return EntityStore(self.pluqqy_dir)

    def load_settings(self) -> Settings:
        return load_settings(self.settings_path)

    def init(self) -> Path:
        """Initialize a new pluqqy project.

        Creates the .pluqqy/ tree (live and archive subtrees plus tmp/), a
        default settings file and a .gitignore excluding tmp/. Safe to call on
        an already-initialized project (idempotent).

        Returns the .pluqqy/ directory path.
        """
        try:
            for subdir in SUBDIRS:
                (self.pluqqy_dir / subdir).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Failed to create project directories under %s: %s", self.pluqqy_dir, e)
            raise WriteError(f"Failed to create project directories: {e}") from e

        if self.settings_path.exists():
            logger.info("Existing settings found at %s", self.settings_path)
        else:
            save_settings(default_settings(), self.settings_path)

        self._ensure_gitignore()

        logger.info("Initialized pluqqy project at %s", self.pluqqy_dir)
        return self.pluqqy_dir

    def _ensure_gitignore(self) -> None:
        existing = ""
        if self.gitignore_path.exists():
            existing = read_text_bounded(self.gitignore_path)
            if GITIGNORE_ENTRY in existing.splitlines():
                return
            if existing and not existing.endswith("\n"):
                existing += "\n"
        write_atomic(self.gitignore_path, existing + GITIGNORE_ENTRY + "\n")

    def status(self) -> ProjectStatus:
        """Get current project status."""
        if not self.is_initialized:
            return ProjectStatus(initialized=False, root=self.root)

        store = self.store()
        settings = self.load_settings()
        try:
            tag_count = len(TagRegistry(self.tags_path, store).list_tags())
        except PluqqyError as e:
            logger.warning("Tag registry unavailable: %s", e)
            tag_count = 0

        return ProjectStatus(
            initialized=True,
            root=self.root,
            components={k.value: len(store.list_components(k)) for k in ComponentKind},
            archived_components={
                k.value: len(store.list_components(k, archived=True)) for k in ComponentKind
            },
            pipeline_count=len(store.list_pipelines()),
            archived_pipeline_count=len(store.list_pipelines(archived=True)),
            tag_count=tag_count,
            settings=settings,
        )

    @staticmethod
    def find_project_root(start: Path | None = None) -> Path | None:
        """Walk up from start directory to find a .pluqqy/ directory.

        Returns the project root (parent of .pluqqy/) or None if not found.
        """
        current = (start or Path.cwd()).resolve()
        while True:
            if (current / PLUQQY_DIR).is_dir():
                return current
            parent = current.parent
            if parent == current:
                return None
            current = parent
