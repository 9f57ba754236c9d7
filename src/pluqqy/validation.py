"""Pipeline validation rules applied before a pipeline is persisted."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pluqqy.exceptions import ValidationError
from pluqqy.types import ComponentKind

if TYPE_CHECKING:
    from pluqqy.types import Pipeline

__all__ = ["pipeline_problems", "validate_pipeline"]

_VALID_KINDS = frozenset(k.value for k in ComponentKind)


def pipeline_problems(pipeline: Pipeline) -> list[str]:
    """Return every rule the pipeline breaks, in a stable order."""
    problems: list[str] = []

    if not pipeline.name.strip():
        problems.append("pipeline name cannot be empty")
    if not pipeline.components:
        problems.append("pipeline must have at least one component")

    seen_orders: dict[int, int] = {}
    for i, ref in enumerate(pipeline.components):
        label = f"component {i + 1}"
        if not ref.path.strip():
            problems.append(f"{label}: path cannot be empty")
        if ref.kind not in _VALID_KINDS:
            problems.append(
                f"{label}: invalid type {ref.kind!r} (must be one of: {', '.join(sorted(_VALID_KINDS))})"
            )
        if ref.order < 1:
            problems.append(f"{label}: order must be >= 1, got {ref.order}")
        elif ref.order in seen_orders:
            problems.append(
                f"{label}: duplicate order {ref.order} (also used by component {seen_orders[ref.order]})"
            )
        else:
            seen_orders[ref.order] = i + 1

    return problems


def validate_pipeline(pipeline: Pipeline) -> None:
    """Raise :class:`ValidationError` if the pipeline breaks any rule."""
    problems = pipeline_problems(pipeline)
    if problems:
        name = pipeline.name or "<unnamed>"
        raise ValidationError(f"Invalid pipeline {name!r}: " + "; ".join(problems))
