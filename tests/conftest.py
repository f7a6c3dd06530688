from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from repo_snapshot.config import FileRecord
from repo_snapshot.task_limiter import reset_task_limiter


@pytest.fixture(autouse=True)
def _fresh_task_limiter() -> Iterator[None]:
    reset_task_limiter()
    yield
    reset_task_limiter()


@pytest.fixture
def make_file(tmp_path: Path):
    """Write a file under ``tmp_path`` and return its record."""

    def _make(rel: str, data: str | bytes = "", **fields) -> FileRecord:
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, bytes):
            path.write_bytes(data)
        else:
            path.write_text(data, encoding="utf-8")
        st = path.stat()
        return FileRecord(path=rel, absolute_path=path, size=st.st_size, mtime=st.st_mtime, **fields)

    return _make
