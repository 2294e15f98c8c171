from __future__ import annotations

import asyncio
import os
from pathlib import Path
from unittest.mock import patch

from refinery.refinement.context.search import SOURCE_INCLUDE, SearchOptions, WorkspaceFileSearch


def _write(root: Path, relative: str, content: str = "export const x = 1;\n") -> None:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_excluded_directories_are_never_walked(tmp_path):
    _write(tmp_path, "src/app.ts")
    _write(tmp_path, "node_modules/lib/index.js")
    _write(tmp_path, ".git/hooks/pre-commit.js")
    visited: list[str] = []
    real_walk = os.walk

    def recording_walk(top, *args, **kwargs):
        for entry in real_walk(top, *args, **kwargs):
            visited.append(Path(entry[0]).name)
            yield entry

    with patch("refinery.refinement.context.search.os.walk", recording_walk):
        files = asyncio.run(WorkspaceFileSearch(tmp_path).list_files(SOURCE_INCLUDE, 100))

    assert [path.name for path in files] == ["app.ts"]
    assert "node_modules" not in visited
    assert ".git" not in visited


def test_max_files_caps_the_scan(tmp_path):
    for index in range(5):
        _write(tmp_path, f"src/module_{index}.py", "def export():\n    pass\n")

    search = WorkspaceFileSearch(tmp_path)
    files = asyncio.run(search.list_files(SOURCE_INCLUDE, 2))
    matches = asyncio.run(search.search("export", SearchOptions(max_files=3)))

    assert [path.name for path in files] == ["module_0.py", "module_1.py"]
    assert len(matches) == 3
