# mcp_bridge/util/codec.py
from __future__ import annotations

import logging
from typing import Any, List

import orjson

logger = logging.getLogger(__name__)


class NdjsonCodec:
    """
    Newline-delimited JSON framing for the child's stdio.

    One instance per child process lifetime: a partial line left by a dead
    child is never handed to its replacement.
        codec = NdjsonCodec()
        for msg in codec.feed(chunk):
            ...
        proc.stdin.write(codec.encode({"jsonrpc": "2.0", "id": 1, "method": "tools/list"}))
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self.malformed_count = 0

    @staticmethod
    def encode(message: Any) -> bytes:
        return orjson.dumps(message) + b"\n"

    def feed(self, chunk: bytes) -> List[Any]:
        self._buffer += chunk
        messages: List[Any] = []
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                break
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            if not line.strip():
                continue
            try:
                messages.append(orjson.loads(line))
            except orjson.JSONDecodeError as e:
                # garbage from the child is never fatal
                self.malformed_count += 1
                logger.warning("Dropping malformed line from child (%s): %r", e, line[:200])
        return messages

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def reset(self) -> None:
        if self._buffer:
            logger.debug("Discarding %d unframed bytes", len(self._buffer))
        self._buffer.clear()
