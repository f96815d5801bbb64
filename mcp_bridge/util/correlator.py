# mcp_bridge/util/correlator.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Optional

from ..errors import DuplicateRequestIdError, RequestTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


@dataclass
class PendingRequest:
    id: Hashable
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


class RequestCorrelator:
    """
    In-flight requests keyed by id. Every entry completes at most once:
    it is popped from the map before its future is touched, so a response
    arriving after a timeout (or after the child died) finds nothing.
    """

    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT):
        self.default_timeout = default_timeout
        self._pending: Dict[Hashable, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: Hashable) -> bool:
        return request_id in self._pending

    def register(self, request_id: Hashable, timeout: Optional[float] = None) -> asyncio.Future:
        if request_id in self._pending:
            raise DuplicateRequestIdError(f"Request id {request_id!r} is already pending")
        loop = asyncio.get_running_loop()
        entry = PendingRequest(request_id, loop.create_future())
        window = self.default_timeout if timeout is None else timeout
        if window is not None and window > 0:
            entry.timer = loop.call_later(window, self._expire, request_id, window)
        self._pending[request_id] = entry
        return entry.future

    def _pop(self, request_id: Hashable) -> Optional[PendingRequest]:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def resolve(self, request_id: Hashable, message: Any) -> bool:
        entry = self._pop(request_id)
        if entry is None:
            logger.warning("Dropping response for unknown request id %r", request_id)
            return False
        if not entry.future.done():
            entry.future.set_result(message)
        return True

    def reject(self, request_id: Hashable, error: BaseException) -> bool:
        entry = self._pop(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def discard(self, request_id: Hashable) -> None:
        """Forget a request whose caller went away; a late response is dropped."""
        self._pop(request_id)

    def _expire(self, request_id: Hashable, window: float) -> None:
        entry = self._pending.get(request_id)
        if entry is None:
            return
        # the timer handle is already spent; _pop would cancel a fired timer
        entry.timer = None
        logger.warning("Request %r timed out after %.1fs", request_id, window)
        self.reject(request_id, RequestTimeoutError(f"Request timeout ({window:g}s)"))

    def drain_all(self, error: BaseException) -> int:
        """Reject everything pending with ``error``; returns how many were rejected."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)
        if entries:
            logger.info("Rejected %d pending request(s): %s", len(entries), error)
        return len(entries)
