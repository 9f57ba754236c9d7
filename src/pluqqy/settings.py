"""Settings for pluqqy.

Manages project settings via .pluqqy/settings.yaml with typed dataclasses and
defaults for every recognized option. Blank or missing values in the file are
filled in from the defaults when loading.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

import yaml

from pluqqy.exceptions import ParseError, PluqqyError
from pluqqy.safe_io import read_text_bounded, write_atomic
from pluqqy.types import ComponentKind, normalize_kind

if TYPE_CHECKING:
    from pathlib import Path

_T = TypeVar("_T")

__all__ = [
    "DEFAULT_FILENAME",
    "EditorSettings",
    "FormattingSettings",
    "OutputSettings",
    "SectionSettings",
    "Settings",
    "UiSettings",
    "default_sections",
    "default_settings",
    "load_settings",
    "save_settings",
    "settings_from_dict",
]

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "PLUQQY.md"
DEFAULT_EXPORT_PATH = "./"

_KNOWN_KINDS = frozenset(k.value for k in ComponentKind)


@dataclass
class SectionSettings:
    """One entry of output.formatting.sections."""

    type: str
    heading: str


def default_sections() -> list[SectionSettings]:
    """Contexts, then prompts, then rules, with their stock headings."""
    return [
        SectionSettings(type=kind.value, heading=kind.default_heading)
        for kind in (ComponentKind.CONTEXTS, ComponentKind.PROMPTS, ComponentKind.RULES)
    ]


@dataclass
class FormattingSettings:
    """output.formatting section."""

    show_headings: bool = True
    sections: list[SectionSettings] = field(default_factory=default_sections)

    def heading_for(self, kind: str) -> str:
        """Configured heading for ``kind``, or ``""`` if the kind has no section."""
        wanted = normalize_kind(kind.lower())
        for section in self.sections:
            if normalize_kind(section.type.lower()) == wanted:
                return section.heading
        return ""


@dataclass
class OutputSettings:
    """output section."""

    default_filename: str = DEFAULT_FILENAME
    export_path: str = DEFAULT_EXPORT_PATH
    formatting: FormattingSettings = field(default_factory=FormattingSettings)


@dataclass
class UiSettings:
    """ui section."""

    show_preview: bool = True
    component_view: str = "list"


@dataclass
class EditorSettings:
    """editor section."""

    command: str = ""
    prefer_internal: bool = False


@dataclass
class Settings:
    """Root settings combining all sections."""

    output: OutputSettings = field(default_factory=OutputSettings)
    ui: UiSettings = field(default_factory=UiSettings)
    editor: EditorSettings = field(default_factory=EditorSettings)


def default_settings() -> Settings:
    """Return settings with all default values."""
    return Settings()


def _load_section(cls: type[_T], data: object) -> _T:
    """Load a flat dataclass section from a dict, ignoring unknown keys and nulls."""
    if not isinstance(data, dict):
        return cls()
    known_fields = {f for f in cls.__dataclass_fields__}  # type: ignore[attr-defined]
    filtered = {k: v for k, v in data.items() if k in known_fields and v is not None}
    return cls(**filtered)


def _load_sections(raw: object) -> list[SectionSettings]:
    if not isinstance(raw, list):
        return []
    sections: list[SectionSettings] = []
    for entry in raw:
        if not isinstance(entry, dict) or not entry.get("type"):
            logger.warning("Ignoring malformed section entry in settings: %r", entry)
            continue
        kind = normalize_kind(str(entry["type"]).strip().lower())
        heading = str(entry.get("heading") or "")
        if not heading and kind in _KNOWN_KINDS:
            heading = ComponentKind(kind).default_heading
        sections.append(SectionSettings(type=kind, heading=heading))
    return sections


def settings_from_dict(data: dict[str, Any]) -> Settings:
    """Build settings from a parsed document, filling blanks from defaults."""
    defaults = default_settings()
    output_raw = data.get("output")
    if not isinstance(output_raw, dict):
        output_raw = {}
    formatting_raw = output_raw.get("formatting")
    if not isinstance(formatting_raw, dict):
        formatting_raw = {}

    show_headings = formatting_raw.get("show_headings")
    if not isinstance(show_headings, bool):
        if show_headings is not None:
            logger.warning(
                "Ignoring non-boolean output.formatting.show_headings: %r", show_headings
            )
        show_headings = defaults.output.formatting.show_headings
    formatting = FormattingSettings(
        show_headings=show_headings,
        sections=_load_sections(formatting_raw.get("sections")) or default_sections(),
    )
    output = OutputSettings(
        default_filename=str(output_raw.get("default_filename") or defaults.output.default_filename),
        export_path=str(output_raw.get("export_path") or defaults.output.export_path),
        formatting=formatting,
    )
    return Settings(
        output=output,
        ui=_load_section(UiSettings, data.get("ui")),
        editor=_load_section(EditorSettings, data.get("editor")),
    )


def load_settings(path: Path) -> Settings:
    """Load settings from a YAML file.

    A missing file yields the defaults. Missing sections or keys get default
    values.
    """
    if not path.exists():
        logger.debug("No settings at %s, using defaults", path)
        return default_settings()

    try:
        data = yaml.safe_load(read_text_bounded(path))
    except yaml.YAMLError as e:
        logger.error("Failed to parse settings from %s: %s", path, e)
        raise ParseError(f"Failed to parse settings file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")

    settings = settings_from_dict(data)
    logger.info("Loaded settings from %s", path)
    return settings


def save_settings(settings: Settings, path: Path) -> None:
    """Save settings to a YAML file."""
    try:
        text = yaml.safe_dump(asdict(settings), sort_keys=False, allow_unicode=True)
        write_atomic(path, text)
    except PluqqyError:
        logger.error("Failed to save settings to %s", path)
        raise
    logger.info("Saved settings to %s", path)
