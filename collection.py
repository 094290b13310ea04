"""
Folder-backed task collection: Markdown documents with YAML frontmatter.

Layout:
  mdbase.yaml        collection settings (types folder, excludes)
  _types/task.md     task type definition (fields, roles, path pattern)
  tasks/*.md         one document per task

Self-bootstrapping via init_collection(). Every write rewrites the whole document.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterator

import yaml

from date_utils import local_iso_string, stringify_date_value

logger = logging.getLogger("collection")

CONFIG_FILE = "mdbase.yaml"
DEFAULT_TYPES_FOLDER = "_types"
DEFAULT_TASKS_FOLDER = "tasks"
DOCUMENT_EXT = ".md"

FRONTMATTER_RE = re.compile(r"^\s*---\s*\n(.*?)\n\s*---\s*\n?(.*)", re.DOTALL)
_UNSAFE_FILENAME = re.compile(r'[\\/:*?"<>|#^\[\]]')

DEFAULT_STATUSES = ["open", "in-progress", "done", "cancelled"]
DEFAULT_PRIORITIES = ["low", "normal", "high", "urgent"]


class CollectionError(Exception):
    """Collection could not be opened, read or written."""


class QueryError(CollectionError):
    """Malformed where-expression."""


@dataclass
class TaskDocument:
    path: str
    frontmatter: dict[str, Any]
    body: str | None = None


@dataclass
class QueryResult:
    results: list[TaskDocument] = field(default_factory=list)
    has_more: bool = False


def parse_frontmatter(content: str) -> tuple[dict, str]:
    """Return (frontmatter_dict, body_str). If no frontmatter, returns ({}, content)."""
    m = FRONTMATTER_RE.match(content)
    if not m:
        return {}, content.strip()
    yaml_str, body = m.group(1), m.group(2)
    try:
        data = yaml.safe_load(yaml_str)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML frontmatter: {e}") from e
    if data is not None and not isinstance(data, dict):
        raise ValueError("Frontmatter must be a YAML mapping")
    return stringify_date_value(data or {}), body.strip()


def render_document(frontmatter: dict[str, Any], body: str | None = None) -> str:
    dumped = yaml.safe_dump(frontmatter, sort_keys=False, allow_unicode=True, default_flow_style=False)
    text = f"---\n{dumped}---\n"
    if body and body.strip():
        text += f"\n{body.strip()}\n"
    return text


# --- where-expression evaluation ---

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>"(?:\\.|[^"\\])*")
      | (?P<op>==|!=|&&)
      | (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<ident>[A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)*)
    )""",
    re.VERBOSE,
)
_MISSING = object()

Predicate = Callable[[TaskDocument], bool]


def _tokenize(expr: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = expr.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise QueryError(f"Unexpected input at position {pos} in where expression: {expr!r}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


def _unquote(token: str) -> str:
    return re.sub(r"\\(.)", r"\1", token[1:-1])


def _literal(kind: str, value: str) -> Any:
    if kind == "string":
        return _unquote(value)
    if kind == "number":
        return float(value) if "." in value else int(value)
    if kind == "ident" and value in ("null", "true", "false"):
        return {"null": None, "true": True, "false": False}[value]
    raise QueryError(f"Expected a literal, got {value!r}")


def _field_value(doc: TaskDocument, name: str) -> Any:
    if name == "file.basename":
        return PurePosixPath(doc.path).stem
    if name == "file.name":
        return PurePosixPath(doc.path).name
    if name == "file.path":
        return doc.path
    if name == "file.folder":
        return str(PurePosixPath(doc.path).parent)
    return doc.frontmatter.get(name, _MISSING)


def _equals(actual: Any, expected: Any) -> bool:
    if expected is None:
        return actual is _MISSING or actual is None
    if actual is _MISSING or actual is None:
        return False
    if isinstance(expected, (int, float)) and not isinstance(expected, bool):
        try:
            return float(actual) == float(expected)
        except (TypeError, ValueError):
            return False
    return actual == expected


def _contains(actual: Any, needle: Any) -> bool:
    if actual is _MISSING or actual is None:
        return False
    n = str(needle).lower()
    if isinstance(actual, list):
        return any(str(item).lower() == n for item in actual)
    return n in str(actual).lower()


def compile_where(expr: str | None) -> Predicate:
    """
    Compile a where-expression into a predicate over documents.

    Supported: `a == "v"`, `a != "v"`, `a == null`, `a != null`, `a.contains("v")`,
    pseudo-fields file.basename / file.name / file.path, conjunction with `&&`.
    """
    if expr is None or not expr.strip():
        return lambda doc: True
    tokens = _tokenize(expr)
    predicates: list[Predicate] = []
    i = 0

    def take(expected_kind: str | None = None) -> tuple[str, str]:
        nonlocal i
        if i >= len(tokens):
            raise QueryError(f"Unexpected end of where expression: {expr!r}")
        tok = tokens[i]
        if expected_kind and tok[0] != expected_kind:
            raise QueryError(f"Expected {expected_kind}, got {tok[1]!r} in {expr!r}")
        i += 1
        return tok

    while True:
        _, name = take("ident")
        if name.endswith(".contains") and i < len(tokens) and tokens[i][0] == "lparen":
            take("lparen")
            needle = _literal(*take())
            take("rparen")
            field_name = name[: -len(".contains")]
            predicates.append(lambda doc, f=field_name, n=needle: _contains(_field_value(doc, f), n))
        else:
            _, op = take("op")
            if op == "&&":
                raise QueryError(f"Expected comparison after {name!r} in {expr!r}")
            value = _literal(*take())
            if op == "==":
                predicates.append(lambda doc, f=name, v=value: _equals(_field_value(doc, f), v))
            else:
                predicates.append(lambda doc, f=name, v=value: not _equals(_field_value(doc, f), v))
        if i >= len(tokens):
            break
        kind, op = take("op")
        if op != "&&":
            raise QueryError(f"Expected && between conditions, got {op!r} in {expr!r}")

    return lambda doc: all(p(doc) for p in predicates)


def _sort_key(value: Any) -> tuple[int, str]:
    if value is _MISSING or value is None or value == "":
        return (1, "")
    return (0, str(value))


# --- collection ---


class Collection:
    """A task collection rooted at a folder. Open with Collection.open()."""

    def __init__(self, root: Path, settings: dict[str, Any], task_type: dict[str, Any]) -> None:
        self.root = root
        self.settings = settings
        self.task_type = task_type

    @classmethod
    def open(cls, path: str | Path) -> "Collection":
        root = Path(path).expanduser().resolve()
        config_file = root / CONFIG_FILE
        if not config_file.is_file():
            raise CollectionError(f"Failed to open collection at {root}: {CONFIG_FILE} not found (run init first)")
        try:
            raw = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CollectionError(f"Failed to open collection at {root}: {e}") from e
        settings = raw.get("settings") or {} if isinstance(raw, dict) else {}
        collection = cls(root, settings, {})
        collection.task_type = collection._load_task_type()
        logger.debug("Collection opened root=%s", root)
        return collection

    def close(self) -> None:
        """Compatibility hook for shutdown (no open handles to release)."""
        return

    def __enter__(self) -> "Collection":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ---- type definition ----

    @property
    def types_folder(self) -> str:
        return str(self.settings.get("types_folder") or DEFAULT_TYPES_FOLDER)

    def _load_task_type(self) -> dict[str, Any]:
        type_file = self.root / self.types_folder / f"task{DOCUMENT_EXT}"
        if not type_file.is_file():
            logger.info("No task type definition at %s; using defaults", type_file)
            return {}
        try:
            fm, _ = parse_frontmatter(type_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CollectionError(f"Failed to load task type definition: {e}") from e
        return fm

    @property
    def fields(self) -> dict[str, Any]:
        f = self.task_type.get("fields")
        return f if isinstance(f, dict) else {}

    @property
    def display_name_key(self) -> str | None:
        for key in ("display_name_key", "displayNameKey"):
            value = self.task_type.get(key)
            if isinstance(value, str) and value.strip():
                return value
        return None

    @property
    def path_pattern(self) -> str:
        pattern = self.task_type.get("path_pattern")
        return pattern if isinstance(pattern, str) and pattern else f"{DEFAULT_TASKS_FOLDER}/{{title}}{DOCUMENT_EXT}"

    @property
    def path_glob(self) -> str:
        match = self.task_type.get("match")
        if isinstance(match, dict) and isinstance(match.get("path_glob"), str):
            return match["path_glob"]
        return f"**/*{DOCUMENT_EXT}"

    # ---- documents ----

    def _abs(self, rel_path: str) -> Path:
        target = (self.root / rel_path).resolve()
        if self.root != target and self.root not in target.parents:
            raise CollectionError(f"Path {rel_path!r} is outside the collection")
        return target

    def _excluded(self, rel: str) -> bool:
        excludes = [self.types_folder, *(self.settings.get("exclude") or [])]
        first = rel.split("/", 1)[0]
        return rel == CONFIG_FILE or first in excludes

    def _iter_documents(self) -> Iterator[str]:
        seen: set[str] = set()
        for p in self.root.glob(self.path_glob):
            if not p.is_file() or p.suffix != DOCUMENT_EXT:
                continue
            rel = p.relative_to(self.root).as_posix()
            if rel in seen or self._excluded(rel):
                continue
            seen.add(rel)
            yield rel

    def read(self, path: str) -> TaskDocument:
        target = self._abs(path)
        if not target.is_file():
            raise CollectionError(f"Task not found at {path}")
        try:
            fm, body = parse_frontmatter(target.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CollectionError(f"Failed to read {path}: {e}") from e
        return TaskDocument(path=target.relative_to(self.root).as_posix(), frontmatter=fm, body=body or None)

    def _write(self, path: str, frontmatter: dict[str, Any], body: str | None) -> None:
        target = self._abs(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(render_document(frontmatter, body), encoding="utf-8")
        except OSError as e:
            raise CollectionError(f"Failed to write {path}: {e}") from e

    def update(self, path: str, fields: dict[str, Any]) -> TaskDocument:
        """Merge fields into the document's frontmatter. A value of None removes the key."""
        doc = self.read(path)
        fm = dict(doc.frontmatter)
        for key, value in fields.items():
            if value is None:
                fm.pop(key, None)
            else:
                fm[key] = value
        self._write(doc.path, fm, doc.body)
        logger.debug("Task updated path=%s fields=%s", doc.path, sorted(fields))
        return TaskDocument(path=doc.path, frontmatter=fm, body=doc.body)

    def _apply_defaults(self, fields: dict[str, Any]) -> dict[str, Any]:
        out = dict(fields)
        for name, definition in self.fields.items():
            if name in out or not isinstance(definition, dict):
                continue
            if definition.get("generated") == "now":
                out[name] = local_iso_string()
            elif "default" in definition:
                out[name] = definition["default"]
        return out

    def _path_for(self, frontmatter: dict[str, Any]) -> str:
        def fill(m: re.Match) -> str:
            value = frontmatter.get(m.group(1))
            text = _UNSAFE_FILENAME.sub("", str(value or "")).strip()
            return text or "Untitled"

        rel = re.sub(r"\{(\w+)\}", fill, self.path_pattern)
        if not rel.endswith(DOCUMENT_EXT):
            rel += DOCUMENT_EXT
        candidate = rel
        n = 2
        while (self.root / candidate).exists():
            candidate = f"{rel[: -len(DOCUMENT_EXT)]} {n}{DOCUMENT_EXT}"
            n += 1
        return candidate

    def create(self, fields: dict[str, Any], body: str | None = None) -> TaskDocument:
        fm = self._apply_defaults(fields)
        path = self._path_for(fm)
        self._write(path, fm, body)
        logger.info("Task created path=%s", path)
        return TaskDocument(path=path, frontmatter=fm, body=body)

    def delete(self, path: str) -> None:
        target = self._abs(path)
        if not target.is_file():
            raise CollectionError(f"Task not found at {path}")
        try:
            target.unlink()
        except OSError as e:
            raise CollectionError(f"Failed to delete {path}: {e}") from e
        logger.info("Task deleted path=%s", path)

    def query(
        self,
        where: str | None = None,
        *,
        limit: int | None = None,
        order_by: list[tuple[str, str]] | None = None,
        include_body: bool = False,
    ) -> QueryResult:
        """
        Return documents matching the where-expression.
        Results are ordered by order_by [(field, 'asc'|'desc'), ...] with missing values last,
        then by path.
        """
        predicate = compile_where(where)
        matched: list[TaskDocument] = []
        for rel in self._iter_documents():
            try:
                doc = self.read(rel)
            except CollectionError:
                logger.warning("Skipping unreadable document %s", rel, exc_info=True)
                continue
            if predicate(doc):
                if not include_body:
                    doc.body = None
                matched.append(doc)

        matched.sort(key=lambda d: d.path)
        for field_name, direction in reversed(order_by or []):
            present = [d for d in matched if _sort_key(_field_value(d, field_name))[0] == 0]
            missing = [d for d in matched if _sort_key(_field_value(d, field_name))[0] == 1]
            present.sort(
                key=lambda d: _sort_key(_field_value(d, field_name)),
                reverse=str(direction).lower() == "desc",
            )
            matched = present + missing

        if limit is not None and limit >= 0 and len(matched) > limit:
            return QueryResult(results=matched[:limit], has_more=True)
        return QueryResult(results=matched, has_more=False)


def build_task_type(
    *,
    tasks_folder: str = DEFAULT_TASKS_FOLDER,
    statuses: list[str] | None = None,
    priorities: list[str] | None = None,
    default_status: str = "open",
    default_priority: str = "normal",
) -> dict[str, Any]:
    """Task type definition with a role annotation on every field."""
    statuses = statuses or list(DEFAULT_STATUSES)
    priorities = priorities or list(DEFAULT_PRIORITIES)
    completed = [s for s in statuses if any(h in s.lower() for h in ("done", "complete", "cancel"))]
    status_def: dict[str, Any] = {
        "type": "enum",
        "required": True,
        "values": statuses,
        "default": default_status,
        "tn_role": "status",
    }
    if completed:
        status_def["tn_completed_values"] = completed

    def string_list(role: str) -> dict[str, Any]:
        return {"type": "list", "items": {"type": "string"}, "tn_role": role}

    return {
        "name": "task",
        "description": "A task managed by mdtasks.",
        "display_name_key": "title",
        "strict": False,
        "path_pattern": f"{tasks_folder}/{{title}}{DOCUMENT_EXT}",
        "match": {"path_glob": f"{tasks_folder}/**/*{DOCUMENT_EXT}"},
        "fields": {
            "title": {"type": "string", "required": True, "tn_role": "title"},
            "status": status_def,
            "priority": {"type": "enum", "values": priorities, "default": default_priority, "tn_role": "priority"},
            "due": {"type": "date", "tn_role": "due"},
            "scheduled": {"type": "date", "tn_role": "scheduled"},
            "completedDate": {"type": "date", "tn_role": "completedDate"},
            "tags": string_list("tags"),
            "contexts": string_list("contexts"),
            "projects": {"type": "list", "items": {"type": "link"}, "tn_role": "projects"},
            "timeEstimate": {"type": "integer", "min": 0, "description": "Estimated time in minutes.", "tn_role": "timeEstimate"},
            "dateCreated": {"type": "datetime", "required": True, "generated": "now", "tn_role": "dateCreated"},
            "dateModified": {"type": "datetime", "tn_role": "dateModified"},
            "recurrence": {"type": "string", "tn_role": "recurrence"},
            "recurrenceAnchor": {
                "type": "enum",
                "values": ["scheduled", "completion"],
                "default": "scheduled",
                "tn_role": "recurrenceAnchor",
            },
            "completeInstances": string_list("completeInstances"),
            "skippedInstances": string_list("skippedInstances"),
            "timeEntries": {"type": "list", "items": {"type": "object"}, "tn_role": "timeEntries"},
        },
    }


def init_collection(
    path: str | Path,
    *,
    tasks_folder: str = DEFAULT_TASKS_FOLDER,
    statuses: list[str] | None = None,
    priorities: list[str] | None = None,
    force: bool = False,
) -> Path:
    """Create mdbase.yaml, the task type definition and the tasks folder. Returns the collection root."""
    root = Path(path).expanduser().resolve()
    config_file = root / CONFIG_FILE
    if config_file.exists() and not force:
        raise CollectionError(f"Collection already initialized at {root}")
    settings = {
        "spec_version": "0.2.0",
        "name": "Tasks",
        "description": "Task collection managed by mdtasks",
        "settings": {"types_folder": DEFAULT_TYPES_FOLDER, "default_strict": False, "exclude": [DEFAULT_TYPES_FOLDER]},
    }
    task_type = build_task_type(tasks_folder=tasks_folder, statuses=statuses, priorities=priorities)
    try:
        (root / DEFAULT_TYPES_FOLDER).mkdir(parents=True, exist_ok=True)
        (root / tasks_folder).mkdir(parents=True, exist_ok=True)
        config_file.write_text(yaml.safe_dump(settings, sort_keys=False), encoding="utf-8")
        (root / DEFAULT_TYPES_FOLDER / f"task{DOCUMENT_EXT}").write_text(render_document(task_type), encoding="utf-8")
    except OSError as e:
        raise CollectionError(f"Failed to initialize collection at {root}: {e}") from e
    logger.info("Collection initialized at %s", root)
    return root


def open_collection(flag_path: str | None = None) -> Collection:
    from config import resolve_collection_path

    return Collection.open(resolve_collection_path(flag_path))
