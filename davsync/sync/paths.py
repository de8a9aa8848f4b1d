from __future__ import annotations

import posixpath
from datetime import datetime
from typing import Callable, Iterable

CONFLICT_MARKER = ".conflict-"
CONFLICT_ORIGINS = ("local", "remote")


def normalize(path: str) -> str:
    """Turn any slash/backslash separated path into a relative path key."""
    parts = [p for p in str(path).replace("\\", "/").split("/") if p and p != "."]
    return "/".join(parts)


def join(parent: str, name: str) -> str:
    return normalize(f"{parent}/{name}") if parent else normalize(name)


def parent_of(path: str) -> str:
    return posixpath.dirname(normalize(path))


def depth(path: str) -> int:
    key = normalize(path)
    return len(key.split("/")) if key else 0


def ancestors(path: str) -> list[str]:
    """Proper ancestors of `path`, nearest first, excluding the root."""
    out: list[str] = []
    cur = parent_of(path)
    while cur:
        out.append(cur)
        cur = parent_of(cur)
    return out


def is_conflict_path(path: str) -> bool:
    return CONFLICT_MARKER in path


def syncable(paths: Iterable[str]) -> list[str]:
    return [p for p in paths if not is_conflict_path(p)]


def conflict_name(
    path: str,
    origin: str,
    when: datetime | None = None,
    exists: Callable[[str], bool] | None = None,
) -> str:
    """Return the artifact path for `path`, adjacent to the original.

    `exists` is consulted so an earlier artifact with the same timestamp is
    never overwritten; `-2`, `-3`, ... is appended until a free name is found.
    """
    if origin not in CONFLICT_ORIGINS:
        raise ValueError(f"invalid_conflict_origin: {origin}")
    key = normalize(path)
    directory, filename = posixpath.split(key)
    stem, ext = posixpath.splitext(filename)
    if not stem:
        # dotfiles such as ".env" have no stem according to splitext
        stem, ext = filename, ""
    stamp = (when or datetime.now()).strftime("%Y%m%d-%H%M%S")
    base = f"{stem}{CONFLICT_MARKER}{origin}-{stamp}"

    candidate = join(directory, f"{base}{ext}")
    n = 2
    while exists is not None and exists(candidate):
        candidate = join(directory, f"{base}-{n}{ext}")
        n += 1
    return candidate
