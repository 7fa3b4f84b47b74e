# workspace.py
# Workspace file stores. The pipeline only ever talks to the WorkspaceStore
# protocol; last-write-wins at this layer, conflict detection lives above it.

import os
from pathlib import Path
from typing import Protocol

from edit_pipeline.paths import sanitize_path


class WorkspaceStore(Protocol):
    @property
    def root(self) -> Path | None:
        """Directory commands run in, or None when the store has no disk presence."""

    async def get(self, path: str) -> str | None: ...

    async def list(self) -> list[str]: ...

    async def insert(self, path: str, content: str) -> None: ...

    async def update(self, path: str, content: str) -> None: ...


class InMemoryWorkspace:
    """Dict-backed store. Useful for embedding and for tests."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self._files: dict[str, str] = dict(files or {})

    @property
    def root(self) -> Path | None:
        return None

    @property
    def files(self) -> dict[str, str]:
        return dict(self._files)

    async def get(self, path: str) -> str | None:
        return self._files.get(path)

    async def list(self) -> list[str]:
        return sorted(self._files)

    async def insert(self, path: str, content: str) -> None:
        self._files[path] = content

    async def update(self, path: str, content: str) -> None:
        self._files[path] = content


class DirectoryWorkspace:
    """
    A workspace backed by a directory on disk.

    list() skips version-control metadata, virtualenvs and dependency
    folders, plus anything that is not valid UTF-8 text.
    """

    IGNORED_DIRS = {".git", ".hg", "node_modules", "venv", ".venv", "__pycache__", ".pytest_cache"}

    def __init__(self, root: str | os.PathLike) -> None:
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        return self._root / sanitize_path(path)

    async def get(self, path: str) -> str | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        with open(target, encoding="utf-8", newline="") as fh:
            return fh.read()

    async def list(self) -> list[str]:
        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self._root):
            dirnames[:] = sorted(d for d in dirnames if d not in self.IGNORED_DIRS)
            for name in filenames:
                full = Path(dirpath) / name
                try:
                    full.read_text(encoding="utf-8")
                except (UnicodeDecodeError, OSError):
                    continue
                found.append(full.relative_to(self._root).as_posix())
        return sorted(found)

    async def insert(self, path: str, content: str) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as fh:
            fh.write(content)

    async def update(self, path: str, content: str) -> None:
        await self.insert(path, content)
