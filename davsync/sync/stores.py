"""Capabilities the sync engine needs from each replica.

The engine only talks to these methods; `WebDAVClient` and `LocalStore` are
the production implementations, tests use in-memory fakes.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from .models import RemoteSnapshot, TreeEntry


class RemoteStore(Protocol):
    def probe(self) -> None: ...

    def list_dir(self, path: str) -> List[TreeEntry]: ...

    def list_tree(self) -> RemoteSnapshot: ...

    def stat(self, path: str) -> Optional[TreeEntry]: ...

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes) -> None: ...

    def mkdir(self, path: str) -> None: ...

    def delete(self, path: str) -> None: ...

    def copy(self, src: str, dst: str) -> None: ...


class LocalStoreLike(Protocol):
    def list_dir(self, path: str) -> List[TreeEntry]: ...

    def list_dirs(self) -> List[str]: ...

    def stat(self, path: str) -> Optional[TreeEntry]: ...

    def exists(self, path: str) -> bool: ...

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes) -> None: ...

    def set_mtime(self, path: str, mtime_ms: int) -> None: ...

    def mkdir(self, path: str) -> None: ...

    def delete_file(self, path: str) -> None: ...

    def delete_empty_dir(self, path: str) -> None: ...
