# mcp_bridge/util/events.py
# One JSON line per /mcp call, for auditing. Never read back by the bridge.
# Writes are blocking file I/O; the HTTP handler runs them in the default executor.
from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Optional

import orjson

logger = logging.getLogger(__name__)

MAX_STRING = 1000


def redact(value: Any) -> Any:
    """
    Shortens values before they hit the log:
    - long strings are cut at 1k chars
    - binary blobs become a size marker
    - the ``_auth`` credential envelope is removed entirely
    """
    if isinstance(value, (bytes, bytearray)):
        return f"<{type(value).__name__}:{len(value)} bytes>"
    if isinstance(value, str) and len(value) > MAX_STRING:
        return value[:MAX_STRING] + "…"
    if isinstance(value, dict):
        return {k: redact(v) for k, v in value.items() if k != "_auth"}
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


class EventLog:
    def __init__(self, path: str | Path, max_bytes: int = 5 * 1024 * 1024):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()

    def _rotate_if_needed(self) -> None:
        if self.path.exists() and self.path.stat().st_size > self.max_bytes:
            backup = self.path.with_suffix(self.path.suffix + ".1")
            backup.unlink(missing_ok=True)
            self.path.rename(backup)

    def write(self, event: dict) -> None:
        try:
            line = orjson.dumps(event, default=str) + b"\n"
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed()
                with self.path.open("ab") as f:
                    f.write(line)
        except (OSError, TypeError) as e:
            # a broken audit log must not fail the request
            logger.debug("Could not write event to %s: %s", self.path, e)

    def record(
        self,
        method: Optional[str],
        params: Any,
        ok: bool,
        duration_ms: float,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        event: dict = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "method": method or "<unknown>",
            "ok": ok,
            "duration_ms": round(duration_ms, 3),
        }
        if isinstance(params, dict):
            if method == "tools/call":
                event["tool"] = params.get("name")
                event["args"] = redact(params.get("arguments", params.get("args", {})))
            else:
                event["params"] = redact(params)
        if ok and result is not None:
            try:
                event["result_size"] = len(orjson.dumps(result))
            except TypeError:
                event["result_size"] = None
        if not ok and error:
            event["error"] = error
        self.write(event)
