"""
Resolve a user-typed task reference (a path or an approximate title) to exactly one task path.

Tiers, first non-empty wins:
  1. title field == reference
  2. file basename == reference
  3. title or basename contains reference (case-insensitive), deduplicated by path
More than one hit in a tier is an ambiguity error carrying the ranked candidates.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Iterable, Protocol

from collection import QueryError, QueryResult
from field_mapping import FieldMapping, resolve_field

logger = logging.getLogger("task_resolver")

DOCUMENT_EXT = ".md"
PREVIEW_LIMIT = 5


class TaskQuery(Protocol):
    def query(self, where: str | None = None, *, limit: int | None = None, **kwargs: Any) -> QueryResult: ...


@dataclass(frozen=True)
class Candidate:
    path: str
    title: str
    frontmatter: dict[str, Any] = field(default_factory=dict, compare=False)


class TaskNotFoundError(LookupError):
    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f'No task found matching "{reference}"')


class AmbiguousTaskError(LookupError):
    """Several tasks match; candidates are ranked best first."""

    def __init__(self, reference: str, candidates: list[Candidate]) -> None:
        self.reference = reference
        self.candidates = candidates
        super().__init__(format_ambiguous_message(reference, candidates))


def escape_expression_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def looks_like_path(reference: str) -> bool:
    return "/" in reference or reference.endswith(DOCUMENT_EXT)


def candidate_title(path: str, frontmatter: dict[str, Any] | None, title_field: str) -> str:
    """Title field value, else file name without extension, else the raw path."""
    if frontmatter and title_field:
        raw = frontmatter.get(title_field)
        if isinstance(raw, str) and raw.strip():
            return raw
    name = PurePosixPath(path).name
    if name.endswith(DOCUMENT_EXT):
        name = name[: -len(DOCUMENT_EXT)]
    name = name.strip()
    return name or path


def score_candidate(query: str, candidate: Candidate) -> int:
    """Higher is better. query must already be lower-cased."""
    title = candidate.title.lower()
    path = candidate.path.lower()
    score = 0
    if title == query:
        score += 100
    if title.startswith(query):
        score += 50
    if query in title:
        score += 25
    if query in path:
        score += 10
    score += max(0, 10 - abs(len(title) - len(query)))
    return score


def rank_candidates(query: str, candidates: Iterable[Candidate]) -> list[Candidate]:
    """Score descending, then title (case-insensitive) ascending, then path ascending."""
    q = query.lower()
    return sorted(candidates, key=lambda c: (-score_candidate(q, c), c.title.lower(), c.path))


def format_ambiguous_message(reference: str, candidates: list[Candidate]) -> str:
    preview = "\n".join(
        f"  {i}. {c.title} ({c.path})" for i, c in enumerate(candidates[:PREVIEW_LIMIT], start=1)
    )
    if len(candidates) > PREVIEW_LIMIT:
        preview += f"\n  ...and {len(candidates) - PREVIEW_LIMIT} more"
    example = candidates[0].path if candidates else "tasks/<task>.md"
    return "\n".join(
        [
            f'Ambiguous task reference "{reference}".',
            "Matches (best first):",
            preview,
            f"Use a full path to disambiguate (for example: {example}).",
        ]
    )


def _run_tier(collection: TaskQuery, where: str, title_field: str) -> list[Candidate]:
    # No limit: ranking and the "more" count need every hit in the tier
    try:
        result = collection.query(where)
    except QueryError:
        logger.warning("Resolver query failed: %s", where, exc_info=True)
        return []
    return [
        Candidate(path=doc.path, title=candidate_title(doc.path, doc.frontmatter, title_field), frontmatter=doc.frontmatter)
        for doc in result.results
    ]


def _dedupe(candidates: Iterable[Candidate]) -> list[Candidate]:
    seen: set[str] = set()
    out: list[Candidate] = []
    for c in candidates:
        if c.path in seen:
            continue
        seen.add(c.path)
        out.append(c)
    return out


def resolve_task_path(collection: TaskQuery, reference: str, mapping: FieldMapping) -> str:
    """
    Resolve reference to one task path.
    Raises TaskNotFoundError when nothing matches and AmbiguousTaskError when a tier matches several.
    """
    if looks_like_path(reference):
        return reference

    title_field = resolve_field(mapping, "title")
    query = reference.strip()
    escaped = escape_expression_string(query)

    tiers = (
        lambda: _run_tier(collection, f'{title_field} == "{escaped}"', title_field),
        lambda: _run_tier(collection, f'file.basename == "{escaped}"', title_field),
        lambda: _dedupe(
            _run_tier(collection, f'{title_field}.contains("{escaped}")', title_field)
            + _run_tier(collection, f'file.basename.contains("{escaped}")', title_field)
        ),
    )
    for tier in tiers:
        hits = tier()
        if len(hits) == 1:
            return hits[0].path
        if len(hits) > 1:
            ranked = rank_candidates(query, hits)
            logger.info("Ambiguous reference %r matched %s tasks", query, len(ranked))
            raise AmbiguousTaskError(query, ranked)

    raise TaskNotFoundError(query)
