from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

from davsync.sync import paths
from davsync.sync.models import DIRECTORY, FILE, TreeEntry


class LocalStore:
    """Filesystem side of the sync, addressed by relative path keys."""

    def __init__(self, root: str | Path, exclude_dirs: Optional[Iterable[str]] = None):
        self.root = Path(root).expanduser()
        self.exclude_dirs = set(exclude_dirs or [])

    def _abs(self, path: str) -> Path:
        key = paths.normalize(path)
        return self.root / key if key else self.root

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def _entry(self, key: str, full: Path) -> Optional[TreeEntry]:
        try:
            st = full.stat()
        except FileNotFoundError:
            return None
        kind = DIRECTORY if full.is_dir() else FILE
        return TreeEntry(path=key, kind=kind, mtime_ms=int(st.st_mtime * 1000), size=st.st_size if kind == FILE else 0)

    def list_dir(self, path: str) -> List[TreeEntry]:
        base = paths.normalize(path)
        entries: List[TreeEntry] = []
        with os.scandir(self._abs(base)) as it:
            for item in it:
                if item.is_dir(follow_symlinks=False) and item.name in self.exclude_dirs:
                    continue
                if not item.is_dir() and not item.is_file():
                    continue
                entry = self._entry(paths.join(base, item.name), Path(item.path))
                if entry is not None:
                    entries.append(entry)
        entries.sort(key=lambda e: e.path)
        return entries

    def list_dirs(self) -> List[str]:
        """All directories below the root as path keys, excluding conflict-marked ones."""
        if not self.root.exists():
            return []
        out: List[str] = []
        for current, dirnames, _filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if d not in self.exclude_dirs]
            rel = paths.normalize(os.path.relpath(current, self.root))
            if rel and not paths.is_conflict_path(rel):
                out.append(rel)
        out.sort()
        return out

    def stat(self, path: str) -> Optional[TreeEntry]:
        key = paths.normalize(path)
        return self._entry(key, self._abs(key))

    def exists(self, path: str) -> bool:
        return self._abs(path).exists()

    def read(self, path: str) -> bytes:
        return self._abs(path).read_bytes()

    def write(self, path: str, data: bytes) -> None:
        target = self._abs(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".davsync-", dir=str(target.parent))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(data)
            os.replace(tmp_path, target)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

    def set_mtime(self, path: str, mtime_ms: int) -> None:
        seconds = mtime_ms / 1000.0
        os.utime(self._abs(path), (seconds, seconds))

    def mkdir(self, path: str) -> None:
        self._abs(path).mkdir(parents=True, exist_ok=True)

    def delete_file(self, path: str) -> None:
        self._abs(path).unlink(missing_ok=True)

    def delete_empty_dir(self, path: str) -> None:
        key = paths.normalize(path)
        if not key:
            raise ValueError("refusing_to_delete_sync_root")
        # rmdir raises OSError on a non-empty directory; callers treat that as a per-item failure.
        self._abs(key).rmdir()
