"""
Request Cancellation Utility
============================

Cooperative cancellation for pipeline requests. Task cancellation covers
callers that own the awaiting task; a token covers callers that do not
(another thread, a UI callback, a supervising coroutine).
"""

from __future__ import annotations

import threading

from echo_runtime.core.exceptions import RequestCancelled

class CancellationToken:
    """
    Token for cooperative cancellation of one request.

    Usage:
        token = CancellationToken()
        task = asyncio.create_task(runtime.process_request(request, token=token))
        ...
        token.cancel()   # remaining stages are skipped
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Mark as cancelled. Safe to call from any thread."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise RequestCancelled(stage)

__all__ = ["CancellationToken"]
