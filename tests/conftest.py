from __future__ import annotations

from pathlib import Path

import pytest

from davsync.providers.local_store import LocalStore
from davsync.sync.baseline import BaselineStore
from davsync.sync.confirm import StaticGate
from davsync.sync.engine import SyncEngine

from .fakes import FakeRemote


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def local_root(tmp_path: Path) -> Path:
    root = tmp_path / "local"
    root.mkdir()
    return root


@pytest.fixture
def local(local_root: Path) -> LocalStore:
    return LocalStore(local_root, exclude_dirs=[".git"])


@pytest.fixture
def baseline(tmp_path: Path) -> BaselineStore:
    return BaselineStore(tmp_path / "state" / "baseline.json")


@pytest.fixture
def make_engine(remote, local, baseline):
    def _make(answer: bool = True) -> tuple[SyncEngine, StaticGate]:
        gate = StaticGate(answer)
        return SyncEngine(remote, local, baseline, gate, tolerance_ms=2000), gate

    return _make
