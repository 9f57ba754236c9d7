"""Tests for pluqqy.types and pluqqy.validation modules."""

from __future__ import annotations

import pytest

from pluqqy.exceptions import ValidationError
from pluqqy.types import Component, ComponentKind, ComponentRef, Pipeline, infer_kind, normalize_kind
from pluqqy.validation import pipeline_problems, validate_pipeline


def _pipeline(*refs: ComponentRef, name: str = "p") -> Pipeline:
    return Pipeline(name=name, components=list(refs))


class TestComponentKind:
    def test_values_are_directory_names(self):
        assert [k.value for k in ComponentKind] == ["prompts", "contexts", "rules"]

    def test_default_headings(self):
        assert ComponentKind.CONTEXTS.default_heading == "## CONTEXT"
        assert ComponentKind.PROMPTS.default_heading == "## PROMPTS"
        assert ComponentKind.RULES.default_heading == "## IMPORTANT RULES"

    @pytest.mark.parametrize(
        ("legacy", "plural"),
        [("context", "contexts"), ("prompt", "prompts"), ("rule", "rules"), ("rules", "rules")],
    )
    def test_normalize_legacy(self, legacy: str, plural: str):
        assert normalize_kind(legacy) == plural

    def test_infer_kind(self):
        assert infer_kind("components/rules/x.md") is ComponentKind.RULES
        assert infer_kind("elsewhere/x.md") is None


class TestComponent:
    def test_slug_and_name(self):
        c = Component(path="components/contexts/api-docs.md", kind=ComponentKind.CONTEXTS, content="")
        assert c.slug == "api-docs"
        assert c.name == "Api Docs"


class TestValidation:
    def test_valid(self):
        validate_pipeline(_pipeline(ComponentRef("contexts", "../components/contexts/a.md", 1)))

    def test_duplicate_order_rejected(self):
        p = _pipeline(
            ComponentRef("contexts", "../components/contexts/a.md", 1),
            ComponentRef("prompts", "../components/prompts/b.md", 1),
        )
        with pytest.raises(ValidationError, match="duplicate order"):
            validate_pipeline(p)

    def test_zero_order_rejected(self):
        with pytest.raises(ValidationError, match="order must be >= 1"):
            validate_pipeline(_pipeline(ComponentRef("contexts", "../components/contexts/a.md", 0)))

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError, match="invalid type"):
            validate_pipeline(_pipeline(ComponentRef("widget", "../components/contexts/a.md", 1)))

    def test_empty_name_and_components(self):
        problems = pipeline_problems(Pipeline(name="  "))
        assert len(problems) == 2

    def test_empty_path(self):
        assert pipeline_problems(_pipeline(ComponentRef("rules", "", 1))) == [
            "component 1: path cannot be empty"
        ]
