# tests/conftest.py

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from collection import init_collection, render_document


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point config at a per-test file so the user's real settings never leak in."""
    path = tmp_path / "config" / "config.json"
    monkeypatch.setenv("MDTASKS_CONFIG", str(path))
    monkeypatch.delenv("MDTASKS_PATH", raising=False)
    return path


@pytest.fixture()
def collection_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Freshly initialized collection, selected through MDTASKS_PATH."""
    root = init_collection(tmp_path / "notes")
    monkeypatch.setenv("MDTASKS_PATH", str(root))
    return root


@pytest.fixture()
def write_task(collection_root: Path) -> Callable[..., str]:
    """Write a task document directly to disk. Returns its collection-relative path."""

    def _write(rel_path: str, frontmatter: dict[str, Any], body: str | None = None) -> str:
        target = collection_root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(render_document(frontmatter, body), encoding="utf-8")
        return rel_path

    return _write
