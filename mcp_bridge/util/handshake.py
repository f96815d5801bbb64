# mcp_bridge/util/handshake.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from ..errors import BridgeError, HandshakeError
from .mcp_process import MCPSubprocess

logger = logging.getLogger(__name__)

NOT_STARTED = "not_started"
IN_PROGRESS = "in_progress"
COMPLETE = "complete"


def _retrieve_exception(task: asyncio.Task) -> None:
    # failures reach whoever awaited; an unawaited warm-up must not warn
    if not task.cancelled():
        task.exception()


class HandshakeManager:
    """
    Runs the MCP ``initialize`` exchange once per child process.

    Concurrent callers share one in-flight handshake. A failure puts the
    state back to NOT_STARTED so the next caller retries; a child restart
    does the same regardless of where the handshake was.
    """

    def __init__(
        self,
        process: MCPSubprocess,
        *,
        protocol_version: str = "2024-11-05",
        client_info: Optional[Dict[str, Any]] = None,
        capabilities: Optional[Dict[str, Any]] = None,
    ):
        self.process = process
        self.protocol_version = protocol_version
        self.client_info = client_info or {"name": "http-bridge", "version": "1.0.0"}
        self.capabilities = capabilities or {}
        self.state = NOT_STARTED
        self.server_info: Dict[str, Any] = {}
        self._task: asyncio.Task | None = None
        self._generation: Optional[int] = None
        process.add_exit_listener(self.reset)

    @property
    def complete(self) -> bool:
        return self.state == COMPLETE and self._generation == self.process.generation

    def reset(self) -> None:
        if self.state != NOT_STARTED:
            logger.info("Handshake state reset (was %s)", self.state)
        self.state = NOT_STARTED
        self._task = None
        self._generation = None
        self.server_info = {}

    def initialize_params(self) -> Dict[str, Any]:
        return {
            "protocolVersion": self.protocol_version,
            "clientInfo": dict(self.client_info),
            "capabilities": dict(self.capabilities),
        }

    async def ensure_ready(self) -> None:
        if self.complete:
            return
        if self.state != IN_PROGRESS or self._task is None:
            self.state = IN_PROGRESS
            self._generation = self.process.generation
            self._task = asyncio.create_task(self._run(self._generation))
            self._task.add_done_callback(_retrieve_exception)
        await asyncio.shield(self._task)

    async def _run(self, generation: int) -> None:
        try:
            response = await self.process.rpc_call("initialize", self.initialize_params())
            if "error" in response:
                err = response.get("error") or {}
                raise HandshakeError(f"MCP initialization failed: {err.get('message', 'unknown error')}")
            await self.process.notify({"jsonrpc": "2.0", "method": "notifications/initialized"})
        except BridgeError as e:
            self._fail(generation)
            if isinstance(e, HandshakeError):
                raise
            raise HandshakeError(f"MCP initialization failed: {e}") from e
        except BaseException:
            self._fail(generation)
            raise

        if self._generation != generation or self.process.generation != generation:
            # the child was replaced mid-handshake; its successor needs its own
            raise HandshakeError("Child process restarted during initialization")
        self.server_info = response.get("result") or {}
        self.state = COMPLETE
        logger.info(
            "MCP initialization completed (server=%s, protocol=%s)",
            (self.server_info.get("serverInfo") or {}).get("name"),
            self.server_info.get("protocolVersion"),
        )

    def _fail(self, generation: int) -> None:
        if self._generation == generation:
            self.state = NOT_STARTED
            self._task = None
            self._generation = None
