from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from .models import now_iso

logger = logging.getLogger("session")

PREVIEW_LIMIT = 10


class ConfirmationGate(Protocol):
    def confirm(self, title: str, count: int, preview: List[str]) -> bool: ...


class StaticGate:
    def __init__(self, answer: bool):
        self.answer = answer
        self.prompts: List[dict] = []

    def confirm(self, title: str, count: int, preview: List[str]) -> bool:
        self.prompts.append({"title": title, "count": count, "preview": list(preview)})
        return self.answer


class ConsoleGate:
    """Ask on the terminal; used by the CLI commands."""

    def confirm(self, title: str, count: int, preview: List[str]) -> bool:
        import typer
        from rich.console import Console
        from rich.table import Table

        table = Table(title=f"{title} ({count})")
        table.add_column("Path")
        for item in preview[:PREVIEW_LIMIT]:
            table.add_row(item)
        if count > len(preview):
            table.add_row(f"... and {count - len(preview)} more")
        Console().print(table)
        return typer.confirm("Proceed?", default=False)


@dataclass
class PendingPrompt:
    id: int
    title: str
    count: int
    preview: List[str]
    created_at: str = field(default_factory=now_iso)
    answer: Optional[bool] = None
    event: threading.Event = field(default_factory=threading.Event, repr=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "count": self.count,
            "preview": list(self.preview),
            "created_at": self.created_at,
        }


class PendingConfirmations:
    """Gate answered from the web API.

    `confirm` is called on the cycle's worker thread and blocks there until
    `answer()` or `cancel_all()` is called from the event loop side. After
    `close()` every prompt, current or future, is declined.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingPrompt] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def confirm(self, title: str, count: int, preview: List[str]) -> bool:
        prompt = PendingPrompt(id=next(self._ids), title=title, count=count, preview=list(preview[:PREVIEW_LIMIT]))
        with self._lock:
            if self._closed:
                logger.info("confirmation_declined_closed title=%s count=%s", title, count)
                return False
            self._pending[prompt.id] = prompt
        logger.info("confirmation_requested id=%s title=%s count=%s", prompt.id, title, count)
        try:
            prompt.event.wait()
        finally:
            with self._lock:
                self._pending.pop(prompt.id, None)
        logger.info("confirmation_answered id=%s proceed=%s", prompt.id, bool(prompt.answer))
        return bool(prompt.answer)

    def pending(self) -> List[dict]:
        with self._lock:
            return [p.to_dict() for p in sorted(self._pending.values(), key=lambda p: p.id)]

    def answer(self, prompt_id: int, proceed: bool) -> bool:
        with self._lock:
            prompt = self._pending.get(prompt_id)
        if prompt is None or prompt.event.is_set():
            return False
        prompt.answer = bool(proceed)
        prompt.event.set()
        return True

    def cancel_all(self) -> int:
        with self._lock:
            prompts = list(self._pending.values())
        for prompt in prompts:
            prompt.answer = False
            prompt.event.set()
        return len(prompts)

    def close(self) -> int:
        with self._lock:
            self._closed = True
        return self.cancel_all()
