"""Composed output placement and writing."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pluqqy.safe_io import validate_path, write_atomic

if TYPE_CHECKING:
    from pluqqy.settings import Settings
    from pluqqy.types import Pipeline

__all__ = ["resolve_output_path", "write_output"]

logger = logging.getLogger(__name__)


def resolve_output_path(
    project_root: Path,
    settings: Settings,
    pipeline: Pipeline | None = None,
    explicit: str | Path | None = None,
) -> Path:
    """Where a composed document goes.

    Precedence: ``explicit``, then the pipeline's own
    ``output_path`` under the export directory, then the export directory
    joined with the default filename. Relative results are anchored at
    ``project_root``.

    Raises:
        InvalidPathError: If the chosen path contains ``..`` segments.
    """
    if explicit:
        chosen = validate_path(explicit, allow_absolute=True)
    elif pipeline is not None and pipeline.output_path:
        chosen = validate_path(
            Path(settings.output.export_path) / pipeline.output_path, allow_absolute=True
        )
    else:
        chosen = validate_path(
            Path(settings.output.export_path) / settings.output.default_filename,
            allow_absolute=True,
        )
    path = Path(chosen)
    return path if path.is_absolute() else project_root / path


def write_output(markdown: str, path: Path) -> Path:
    """Atomically write a composed document and return its path."""
    write_atomic(path, markdown)
    logger.info("Wrote composed output to %s", path)
    return path
