from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Iterator

from . import paths

logger = logging.getLogger("sync")


class Ledger:
    """Set of file paths known present on both replicas after the last cycle."""

    def __init__(self, entries: Iterable[str] = ()):
        self._files: Dict[str, bool] = {}
        for p in entries:
            self.add(p)

    def add(self, path: str) -> None:
        key = paths.normalize(path)
        if key and not paths.is_conflict_path(key):
            self._files[key] = True

    def discard(self, path: str) -> None:
        self._files.pop(paths.normalize(path), None)

    def paths(self) -> list[str]:
        return sorted(self._files)

    def to_document(self) -> dict:
        return {"files": {p: True for p in self.paths()}}

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and paths.normalize(path) in self._files

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths())

    def __len__(self) -> int:
        return len(self._files)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Ledger) and self._files == other._files

    def __repr__(self) -> str:
        return f"Ledger({self.paths()!r})"


def ledger_from_document(data: object) -> Ledger:
    if not isinstance(data, dict):
        return Ledger()
    files = data.get("files")
    if not isinstance(files, dict):
        return Ledger()
    return Ledger(k for k, v in files.items() if isinstance(k, str) and v)


class BaselineStore:
    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> Ledger:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Ledger()
        except OSError as e:
            logger.warning("baseline_unreadable path=%s error=%s", self.path, e)
            return Ledger()

        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning("baseline_corrupt path=%s error=%s", self.path, e)
            return Ledger()
        return ledger_from_document(data)

    def save(self, ledger: Ledger) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(ledger.to_document(), fp, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
