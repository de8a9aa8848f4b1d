from __future__ import annotations

import requests


class SyncError(RuntimeError):
    """Base class for errors raised by stores and the sync engine."""

    transient = False


class TransientError(SyncError):
    """Connectivity failure, timeout or a busy/locked server."""

    transient = True


class NotFoundError(SyncError):
    pass


class AuthError(SyncError):
    pass


class RemoteError(SyncError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CycleCancelled(SyncError):
    """The session was stopped while a cycle was running."""

    def __init__(self, message: str = "cycle_cancelled"):
        super().__init__(message)


class WalkError(SyncError):
    """A directory listing failed; aborts the walk that issued it."""

    def __init__(self, side: str, path: str, cause: BaseException):
        super().__init__(f"{side}_list_failed path=/{path} error={cause}")
        self.side = side
        self.path = path
        self.cause = cause
        self.transient = classify(cause) == "transient"


def error_for_status(status_code: int, detail: str = "") -> SyncError:
    text = f"http_{status_code}"
    if detail:
        text = f"{text}: {detail}"
    if status_code == 501:
        # not implemented: permanent
        return RemoteError(text, status_code=status_code)
    if status_code >= 500 or status_code == 423:
        return TransientError(text)
    if status_code == 404:
        return NotFoundError(text)
    if status_code in (401, 403):
        return AuthError(text)
    return RemoteError(text, status_code=status_code)


def classify(exc: BaseException) -> str:
    """Map an exception onto the taxonomy used by the orchestrator."""
    if isinstance(exc, WalkError):
        return classify(exc.cause)
    if isinstance(exc, TransientError):
        return "transient"
    if isinstance(exc, (requests.ConnectionError, requests.Timeout, TimeoutError, ConnectionError)):
        return "transient"
    if isinstance(exc, (NotFoundError, FileNotFoundError)):
        return "not_found"
    if isinstance(exc, AuthError):
        return "auth"
    return "error"
