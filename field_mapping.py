"""
Field role mapping: canonical task roles (title, status, due, ...) <-> actual frontmatter field names.

The task type definition may annotate fields with `tn_role: <role>`; roles without an annotation
map to a field of the same name. All task reads go through normalize_frontmatter and all writes
through denormalize_frontmatter so the rest of the code only ever sees role names.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger("field_mapping")

ALL_ROLES: tuple[str, ...] = (
    "title",
    "status",
    "priority",
    "due",
    "scheduled",
    "completedDate",
    "tags",
    "contexts",
    "projects",
    "timeEstimate",
    "dateCreated",
    "dateModified",
    "recurrence",
    "recurrenceAnchor",
    "completeInstances",
    "skippedInstances",
    "timeEntries",
)
_ROLES = frozenset(ALL_ROLES)

DEFAULT_COMPLETED_STATUSES: tuple[str, ...] = ("done", "cancelled")
_COMPLETED_HINTS = ("done", "complete", "cancel")


@dataclass(frozen=True)
class FieldMapping:
    role_to_field: Mapping[str, str]
    field_to_role: Mapping[str, str]
    display_name_key: str = "title"
    completed_statuses: tuple[str, ...] = field(default=DEFAULT_COMPLETED_STATUSES)


def _freeze(d: dict[str, str]) -> Mapping[str, str]:
    return MappingProxyType(dict(d))


def default_field_mapping() -> FieldMapping:
    """Identity mapping where every role maps to a field of the same name."""
    identity = {role: role for role in ALL_ROLES}
    return FieldMapping(
        role_to_field=_freeze(identity),
        field_to_role=_freeze(identity),
        display_name_key="title",
        completed_statuses=DEFAULT_COMPLETED_STATUSES,
    )


def build_field_mapping(fields: dict[str, Any], display_name_key: str | None = None) -> FieldMapping:
    """
    Scan type definition fields for `tn_role` annotations and build a bidirectional mapping.
    Duplicate annotations keep the first field and log the rest. Unassigned roles fall back to identity.
    """
    fields = fields or {}
    role_to_field: dict[str, str] = {}
    field_to_role: dict[str, str] = {}

    for field_name, definition in fields.items():
        if not isinstance(definition, dict):
            continue
        role = definition.get("tn_role")
        if not isinstance(role, str) or role not in _ROLES:
            continue
        if role in role_to_field:
            logger.warning('Duplicate tn_role "%s" on field "%s", ignoring.', role, field_name)
            continue
        role_to_field[role] = field_name
        field_to_role[field_name] = role

    for role in ALL_ROLES:
        if role in role_to_field:
            continue
        role_to_field[role] = role
        # Only claim the field name when no annotated field already did
        if role in fields and role not in field_to_role:
            field_to_role[role] = role

    completed = _infer_completed_statuses(fields, role_to_field["status"])
    key = display_name_key.strip() if isinstance(display_name_key, str) and display_name_key.strip() else role_to_field["title"]
    return FieldMapping(
        role_to_field=_freeze(role_to_field),
        field_to_role=_freeze(field_to_role),
        display_name_key=key,
        completed_statuses=completed,
    )


def load_field_mapping(collection: Any) -> FieldMapping:
    """Mapping from the collection's task type. Falls back to the identity mapping on failure."""
    try:
        return build_field_mapping(collection.fields, collection.display_name_key)
    except Exception:
        logger.warning("Could not build field mapping from task type; using defaults", exc_info=True)
        return default_field_mapping()


def _infer_completed_statuses(fields: dict[str, Any], status_field: str) -> tuple[str, ...]:
    definition = fields.get(status_field)
    if not isinstance(definition, dict):
        return DEFAULT_COMPLETED_STATUSES

    explicit = definition.get("tn_completed_values")
    if isinstance(explicit, list):
        values = tuple(v.strip() for v in explicit if isinstance(v, str) and v.strip())
        if values:
            return values

    enum_values = definition.get("values")
    if isinstance(enum_values, list):
        inferred = tuple(
            v for v in enum_values
            if isinstance(v, str) and any(hint in v.lower() for hint in _COMPLETED_HINTS)
        )
        if inferred:
            return inferred

    return DEFAULT_COMPLETED_STATUSES


def normalize_frontmatter(raw: Mapping[str, Any], mapping: FieldMapping) -> dict[str, Any]:
    """Translate actual frontmatter field names to role names. Unknown keys pass through unchanged."""
    return {mapping.field_to_role.get(key, key): value for key, value in (raw or {}).items()}


def denormalize_frontmatter(role_data: Mapping[str, Any], mapping: FieldMapping) -> dict[str, Any]:
    """Translate role-keyed data to actual field names. Unknown keys pass through unchanged."""
    out: dict[str, Any] = {}
    for key, value in (role_data or {}).items():
        if key in _ROLES:
            out[mapping.role_to_field[key]] = value
        else:
            out[key] = value
    return out


def resolve_field(mapping: FieldMapping, role: str) -> str:
    """Actual field name for a role."""
    if role not in _ROLES:
        raise KeyError(f"Unknown field role {role!r}")
    return mapping.role_to_field[role]


def is_completed_status(mapping: FieldMapping, status: Any) -> bool:
    if not isinstance(status, str) or not status:
        return False
    return status in mapping.completed_statuses


def default_completed_status(mapping: FieldMapping) -> str:
    return mapping.completed_statuses[0] if mapping.completed_statuses else "done"


def resolve_display_title(
    frontmatter: Mapping[str, Any],
    mapping: FieldMapping,
    path: str | None = None,
) -> str | None:
    """
    Display title of a normalized task: the type's display_name_key (or the title role),
    then the file name without extension, then the raw path.
    """
    key = "title" if mapping.field_to_role.get(mapping.display_name_key) == "title" else mapping.display_name_key
    for candidate in (key, "title"):
        value = frontmatter.get(candidate)
        if isinstance(value, str) and value.strip():
            return value
    if path:
        stem = PurePosixPath(path).stem.strip() if path.endswith(".md") else PurePosixPath(path).name.strip()
        return stem or path
    return None
