"""Query search over components and pipelines.

A query is a whitespace-separated list of terms joined by ``AND`` (the
default) or ``OR`` and evaluated left to right:

    tag:api                 tag equal to or starting with "api"
    type:prompt|pipeline    entity type; ``|`` separates alternatives
    name:auth               display name contains "auth"
    content:"error path"    body (or pipeline name and tags) contains the text
    status:archived         archived items; ``status:active`` for live ones
    modified:<7d            changed within 7 days; ``>30d`` for older (d/w/m/y)
    NOT tag:draft           negates the next term

A bare word is a content term. Archived items are only searched when the
query names ``status``.
"""

from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pluqqy.exceptions import PluqqyError, ValidationError
from pluqqy.tags import normalize_tag

if TYPE_CHECKING:
    from pluqqy.library import Library

__all__ = [
    "FIELDS",
    "Condition",
    "Query",
    "SearchItem",
    "SearchResult",
    "collect_items",
    "parse_query",
    "run_query",
    "search",
]

logger = logging.getLogger(__name__)

FIELDS = ("tag", "type", "name", "content", "status", "modified")
STATUSES = ("active", "archived")

_FIELD_RE = re.compile(r"^(\w+):(.*)$", re.DOTALL)
_MODIFIED_RE = re.compile(r"^([<>])(\d+)([dwmy])$")
_UNIT_DAYS = {"d": 1, "w": 7, "m": 30, "y": 365}

_EXCERPT_CONTEXT = 50


@dataclass(frozen=True)
class Condition:
    """One term of a query.

    ``values`` holds the ``|``-separated alternatives, lower-cased. For
    ``modified`` terms ``age`` is the threshold and ``older`` tells which
    side of it matches.
    """

    field: str
    values: tuple[str, ...]
    negate: bool = False
    age: timedelta | None = None
    older: bool = False


@dataclass
class Query:
    raw: str
    conditions: list[Condition] = field(default_factory=list)
    operators: list[str] = field(default_factory=list)

    @property
    def includes_archived(self) -> bool:
        return any(c.field == "status" for c in self.conditions)

    def terms(self, name: str) -> list[str]:
        """Non-negated values of every ``name`` condition."""
        return [v for c in self.conditions if c.field == name and not c.negate for v in c.values]


@dataclass(frozen=True)
class SearchItem:
    """A component or pipeline flattened for matching."""

    entity_type: str
    path: str
    name: str
    kind: str = ""
    tags: tuple[str, ...] = ()
    content: str = ""
    modified_at: datetime | None = None
    archived: bool = False

    @property
    def type_label(self) -> str:
        """``pipeline``, or the singular component kind (``prompt``, ``context``, ``rule``)."""
        if self.entity_type == "pipeline" or not self.kind:
            return self.entity_type
        return self.kind.removesuffix("s")


@dataclass(frozen=True)
class SearchResult:
    item: SearchItem
    score: float
    excerpt: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.item.name,
            "type": self.item.type_label,
            "tags": list(self.item.tags),
            "path": self.item.path,
            "archived": self.item.archived,
        }
        if self.excerpt:
            data["excerpt"] = self.excerpt
        return data


# -- parsing -------------------------------------------------------------


def _parse_modified(value: str) -> tuple[timedelta, bool]:
    match = _MODIFIED_RE.match(value)
    if match is None:
        raise ValidationError(
            f"Invalid modified value {value!r} (expected e.g. <7d or >30d; units d, w, m, y)"
        )
    op, count, unit = match.groups()
    return timedelta(days=int(count) * _UNIT_DAYS[unit]), op == ">"


def _parse_term(token: str, negate: bool) -> Condition:
    match = _FIELD_RE.match(token)
    if match is None:
        return Condition("content", (token.lower(),), negate)

    name, value = match.group(1).lower(), match.group(2)
    if name not in FIELDS:
        raise ValidationError(f"Unknown search field {name!r} (expected one of: {', '.join(FIELDS)})")
    if name == "modified":
        age, older = _parse_modified(value.strip())
        return Condition(name, (value,), negate, age=age, older=older)

    values = tuple(v.strip().lower() for v in value.split("|") if v.strip())
    if not values:
        raise ValidationError(f"Search field {name!r} needs a value")
    if name == "status":
        unknown = [v for v in values if v not in STATUSES]
        if unknown:
            raise ValidationError(f"Unknown status {unknown[0]!r} (expected active or archived)")
    return Condition(name, values, negate)


def parse_query(text: str) -> Query:
    """Parse query text into conditions and the operators between them.

    Raises:
        ValidationError: On unbalanced quotes, unknown fields, bad values or
            misplaced operators.
    """
    try:
        tokens = shlex.split(text)
    except ValueError as e:
        raise ValidationError(f"Cannot parse query {text!r}: {e}") from e

    query = Query(raw=text)
    negate = False
    pending: str | None = None
    for token in tokens:
        upper = token.upper()
        if upper in ("AND", "OR"):
            if not query.conditions or pending is not None or negate:
                raise ValidationError(f"Unexpected {upper} in query {text!r}")
            pending = upper
            continue
        if upper == "NOT":
            if negate:
                raise ValidationError(f"Unexpected NOT in query {text!r}")
            negate = True
            continue
        if query.conditions:
            query.operators.append(pending or "AND")
        query.conditions.append(_parse_term(token, negate))
        negate, pending = False, None

    if pending is not None or negate:
        raise ValidationError(f"Query {text!r} ends with an operator")
    return query


# -- collection ------------------------------------------------------------


def collect_items(library: Library, include_archived: bool = False) -> list[SearchItem]:
    """Flatten the readable components and pipelines of ``library``.

    Unreadable entries are skipped, as are archive trees that cannot be listed.
    """
    items: list[SearchItem] = []
    for archived in (False, True) if include_archived else (False,):
        try:
            components = library.components(None, archived)
            pipelines = library.pipelines(archived)
        except PluqqyError as e:
            if not archived:
                raise
            logger.warning("Archived items unavailable, skipping: %s", e)
            continue

        for component in components:
            items.append(
                SearchItem(
                    entity_type="component",
                    path=component.path,
                    name=component.name,
                    kind=component.kind.value if component.kind else "",
                    tags=component.tags,
                    content=component.content,
                    modified_at=component.modified_at,
                    archived=archived,
                )
            )
        for pipeline in pipelines:
            try:
                mtime = library.store.pipeline_file(pipeline.path, archived).stat().st_mtime
                modified_at: datetime | None = datetime.fromtimestamp(mtime, tz=UTC)
            except OSError:
                modified_at = None
            items.append(
                SearchItem(
                    entity_type="pipeline",
                    path=pipeline.path,
                    name=pipeline.name,
                    tags=tuple(pipeline.tags),
                    content=" ".join([pipeline.name, *pipeline.tags]),
                    modified_at=modified_at,
                    archived=archived,
                )
            )
    return items


# -- matching --------------------------------------------------------------


def _type_words(item: SearchItem) -> tuple[str, ...]:
    if item.entity_type == "pipeline":
        return ("pipeline", "pipelines")
    words = ["component", "components"]
    if item.kind:
        words += [item.kind, item.kind.removesuffix("s")]
    return tuple(words)


def _matches_type(item: SearchItem, value: str) -> bool:
    return any(word.startswith(value) for word in _type_words(item))


def _matches(item: SearchItem, condition: Condition, now: datetime) -> bool:
    name = condition.field
    if name == "tag":
        wanted = [w for w in (normalize_tag(v) for v in condition.values) if w]
        hit = any(normalize_tag(t).startswith(w) for w in wanted for t in item.tags)
    elif name == "type":
        hit = any(_matches_type(item, v) for v in condition.values)
    elif name == "name":
        hit = any(v in item.name.lower() for v in condition.values)
    elif name == "content":
        haystacks = (item.content.lower(), item.name.lower())
        hit = any(v in h for v in condition.values for h in haystacks)
    elif name == "status":
        hit = ("archived" if item.archived else "active") in condition.values
    elif name == "modified" and condition.age is not None:
        if item.modified_at is None:
            hit = False
        elif condition.older:
            hit = item.modified_at < now - condition.age
        else:
            hit = item.modified_at >= now - condition.age
    else:
        hit = False
    return hit != condition.negate


def _evaluate(item: SearchItem, query: Query, now: datetime) -> bool:
    if not query.conditions:
        return True
    result = _matches(item, query.conditions[0], now)
    for op, condition in zip(query.operators, query.conditions[1:], strict=True):
        if op == "AND":
            result = result and _matches(item, condition, now)
        else:
            result = result or _matches(item, condition, now)
    return result


def _score(item: SearchItem, query: Query, now: datetime) -> float:
    score = 1.0
    name = item.name.lower()
    for term in query.terms("name"):
        if name == term:
            score += 2.0
        elif name.startswith(term):
            score += 1.0
    tags = {normalize_tag(t) for t in item.tags}
    score += 0.5 * sum(1 for term in query.terms("tag") if normalize_tag(term) in tags)
    if item.modified_at is not None:
        age = now - item.modified_at
        if age < timedelta(days=1):
            score += 1.0
        elif age < timedelta(days=7):
            score += 0.5
    return score


def _excerpt(content: str, terms: list[str]) -> str:
    lowered = content.lower()
    for term in terms:
        pos = lowered.find(term)
        if pos < 0:
            continue
        start = max(0, pos - _EXCERPT_CONTEXT)
        end = min(len(content), pos + len(term) + _EXCERPT_CONTEXT)
        snippet = " ".join(content[start:end].split())
        return ("..." if start > 0 else "") + snippet + ("..." if end < len(content) else "")
    return ""


def run_query(items: list[SearchItem], query: Query, now: datetime | None = None) -> list[SearchResult]:
    """Filter ``items`` by ``query``, best score first.

    Ties keep pipelines before components and then sort by name.
    """
    now = now or datetime.now(tz=UTC)
    content_terms = query.terms("content")
    results = [
        SearchResult(item, _score(item, query, now), _excerpt(item.content, content_terms))
        for item in items
        if _evaluate(item, query, now)
    ]
    results.sort(key=lambda r: (-r.score, r.item.entity_type != "pipeline", r.item.name.lower(), r.item.path))
    return results


def search(library: Library, text: str, now: datetime | None = None) -> list[SearchResult]:
    """Parse ``text`` and run it against ``library``."""
    query = parse_query(text)
    items = collect_items(library, include_archived=query.includes_archived)
    results = run_query(items, query, now)
    logger.info("Search %r matched %d of %d items", text, len(results), len(items))
    return results
