# mcp_bridge/util/mcp_process.py
from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..config import BridgeConfig
from ..errors import (
    METHOD_NOT_FOUND,
    BridgeStoppedError,
    ChildExitedError,
    ChildNotRunningError,
    ChildWriteError,
)
from .codec import NdjsonCodec
from .correlator import RequestCorrelator

logger = logging.getLogger(__name__)
child_logger = logging.getLogger("mcp_bridge.child")

READ_CHUNK = 64 * 1024
STOP_GRACE_SECONDS = 3

RUNNING = "running"
RESTART_SCHEDULED = "restart_scheduled"
STOPPED = "stopped"
PERMANENTLY_STOPPED = "permanently_stopped"


@dataclass
class ChildHandle:
    proc: asyncio.subprocess.Process
    generation: int
    codec: NdjsonCodec = field(default_factory=NdjsonCodec)
    alive: bool = True
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def live(self) -> bool:
        return self.alive and self.proc.returncode is None


class MCPSubprocess:
    """
    Supervises one MCP server speaking JSON-RPC over stdin/stdout.

    Many requests can be in flight at once; responses are matched by id, not
    by arrival order. When the child dies every pending request is rejected
    and a replacement is spawned after ``base_backoff * restart_count``
    seconds, until ``max_restarts`` is used up.
        proc = MCPSubprocess(["python", "-u", "server.py"])
        await proc.start()
        res = await proc.rpc_call("tools/list")
        await proc.stop()
    """

    def __init__(
        self,
        cmd: list[str],
        cwd: str | None = None,
        env: dict | None = None,
        *,
        max_restarts: int = 5,
        base_backoff: float = 1.0,
        request_timeout: float = 60.0,
    ):
        if not cmd:
            raise ValueError("A child command is required")
        self.cmd = list(cmd)
        self.cwd = cwd
        self.env = env
        self.max_restarts = max_restarts
        self.base_backoff = base_backoff
        self.correlator = RequestCorrelator(request_timeout)

        self.restart_count = 0
        self._restarting = False
        self._permanently_stopped = False
        self._stopping = False
        self._handle: ChildHandle | None = None
        self._generation = 0
        self._ids = itertools.count(1)
        self._restart_task: asyncio.Task | None = None
        self._spawn_listeners: List[Callable[[int], None]] = []
        self._exit_listeners: List[Callable[[], None]] = []

    @classmethod
    def from_config(cls, config: BridgeConfig, env: dict | None = None) -> "MCPSubprocess":
        return cls(
            config.child_cmd,
            cwd=config.child_cwd,
            env=env,
            max_restarts=config.max_restarts,
            base_backoff=config.base_backoff,
            request_timeout=config.request_timeout,
        )

    # ────────────────────────── state ──────────────────────────
    @property
    def running(self) -> bool:
        return self._handle is not None and self._handle.live

    @property
    def permanently_stopped(self) -> bool:
        return self._permanently_stopped

    @property
    def state(self) -> str:
        if self._permanently_stopped:
            return PERMANENTLY_STOPPED
        if self.running:
            return RUNNING
        if self._restarting:
            return RESTART_SCHEDULED
        return STOPPED

    @property
    def generation(self) -> int:
        """Increments on every spawn; a handshake is only valid for one generation."""
        return self._generation

    @property
    def inflight(self) -> int:
        return len(self.correlator)

    @property
    def pid(self) -> Optional[int]:
        return self._handle.proc.pid if self.running else None

    def backoff_delay(self, attempt: int) -> float:
        return self.base_backoff * max(attempt, 0)

    def next_id(self) -> int:
        return next(self._ids)

    def add_spawn_listener(self, callback: Callable[[int], None]) -> None:
        self._spawn_listeners.append(callback)

    def add_exit_listener(self, callback: Callable[[], None]) -> None:
        self._exit_listeners.append(callback)

    # ────────────────────────── lifecycle ──────────────────────────
    async def start(self) -> None:
        if self.running or self._restarting:
            return
        if self._permanently_stopped:
            raise BridgeStoppedError(self._stopped_message())
        self._stopping = False
        await self._spawn()

    async def _spawn(self) -> None:
        self._generation += 1
        generation = self._generation
        logger.info("Spawning STDIO child #%d: %s (cwd=%s)", generation, " ".join(self.cmd), self.cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                cwd=self.cwd,
                env={**os.environ, **(self.env or {})},
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Could not launch child process: %s", e)
            self._on_child_exit(None, f"spawn failed: {e}")
            return

        if self._stopping:
            # stop() ran while the exec was pending
            proc.kill()
            await proc.wait()
            return

        handle = ChildHandle(proc, generation)
        self._handle = handle
        handle.tasks.append(asyncio.create_task(self._read_stdout(handle)))
        handle.tasks.append(asyncio.create_task(self._read_stderr(handle)))
        logger.info("STDIO child #%d running (pid=%s)", generation, proc.pid)
        for listener in self._spawn_listeners:
            listener(generation)

    async def stop(self) -> None:
        self._stopping = True
        if self._restart_task is not None:
            self._restart_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._restart_task
            self._restart_task = None
        self._restarting = False

        handle = self._handle
        self._handle = None
        if handle is None:
            return
        if handle.alive:
            handle.alive = False
            self._notify_exit()
            self.correlator.drain_all(ChildExitedError("Bridge is shutting down"))

        proc = handle.proc
        if proc.returncode is None:
            logger.info("Terminating STDIO child (pid=%s)...", proc.pid)
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        for task in handle.tasks:
            task.cancel()
        await asyncio.gather(*handle.tasks, return_exceptions=True)

    # ────────────────────────── death / restart policy ──────────────────────────
    def _notify_exit(self) -> None:
        for listener in self._exit_listeners:
            listener()

    def _on_child_exit(self, handle: ChildHandle | None, reason: str) -> None:
        # No awaits in here: pending callers are rejected in the same tick the
        # death is noticed, before any replacement can exist.
        if handle is not None:
            if not handle.alive:
                return
            handle.alive = False
            handle.codec.reset()
            if handle is self._handle:
                self._handle = None
        logger.error("STDIO child exited (%s)", reason)
        self._notify_exit()
        self.correlator.drain_all(ChildExitedError("Child process exited"))
        if self._stopping:
            return
        self._schedule_restart()

    def _schedule_restart(self) -> None:
        if self._restarting:
            return
        if self.restart_count >= self.max_restarts:
            self._permanently_stopped = True
            logger.error("Child process restart limit reached (%d)", self.max_restarts)
            return
        self.restart_count += 1
        self._restarting = True
        delay = self.backoff_delay(self.restart_count)
        logger.warning(
            "Auto-restarting child process in %.2fs (attempt %d/%d)",
            delay,
            self.restart_count,
            self.max_restarts,
        )
        self._restart_task = asyncio.create_task(self._restart_after(delay))

    async def _restart_after(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            self._restarting = False
        if self._stopping:
            return
        await self._spawn()

    def _stopped_message(self) -> str:
        return f"Child process restart limit reached ({self.max_restarts}); bridge is permanently stopped"

    # ────────────────────────── readers ──────────────────────────
    async def _read_stdout(self, handle: ChildHandle) -> None:
        stream = handle.proc.stdout
        assert stream is not None
        reason = "stdout closed"
        try:
            while True:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    break
                for message in handle.codec.feed(chunk):
                    try:
                        self._dispatch(handle, message)
                    except Exception:  # pylint: disable=broad-except
                        logger.exception("Failed to dispatch message from child #%d", handle.generation)
        except (OSError, ValueError) as e:
            reason = f"stdout error: {e}"
        self._on_child_exit(handle, reason)
        await self._reap(handle)

    async def _reap(self, handle: ChildHandle) -> None:
        proc = handle.proc
        if proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), timeout=STOP_GRACE_SECONDS)
            except asyncio.TimeoutError:
                # stdout is gone; whatever is left is of no use to us
                proc.kill()
                await proc.wait()
        logger.info("STDIO child #%d (pid=%s) exited with code %s", handle.generation, proc.pid, proc.returncode)

    async def _read_stderr(self, handle: ChildHandle) -> None:
        stream = handle.proc.stderr
        assert stream is not None
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                child_logger.warning("[pid %s] overlong stderr line skipped", handle.proc.pid)
                continue
            if not line:
                return
            child_logger.info("[pid %s] %s", handle.proc.pid, line.decode("utf-8", "replace").rstrip())

    def _dispatch(self, handle: ChildHandle, message: Any) -> None:
        if not handle.alive:
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object message from child: %r", message)
            return
        if "method" in message:
            self._answer_child(handle, message)
            return
        request_id = message.get("id")
        if request_id is None:
            logger.warning("Ignoring child response without id: %r", message.get("error") or message)
            return
        if isinstance(request_id, bool) or not isinstance(request_id, (str, int, float)):
            logger.warning("Ignoring child response with invalid id: %r", request_id)
            return
        self.correlator.resolve(request_id, message)

    def _answer_child(self, handle: ChildHandle, message: Dict[str, Any]) -> None:
        method = message.get("method")
        request_id = message.get("id")
        if request_id is None:
            logger.debug("Child notification: %s", method)
            return
        if method == "ping":
            reply: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "result": {}}
        else:
            logger.debug("Child request %s not supported by the bridge", method)
            reply = {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            }
        try:
            handle.proc.stdin.write(handle.codec.encode(reply))
        except (OSError, RuntimeError) as e:
            logger.warning("Could not answer child request %s: %s", method, e)

    # ────────────────────────── send ──────────────────────────
    def _live_handle(self) -> ChildHandle:
        if self._permanently_stopped:
            raise BridgeStoppedError(self._stopped_message())
        handle = self._handle
        if handle is None or not handle.live:
            raise ChildNotRunningError("Child process is not running")
        return handle

    async def send(self, message: Dict[str, Any], timeout: float | None = None) -> Dict[str, Any]:
        """Write one request and wait for the response carrying the same id."""
        handle = self._live_handle()
        request_id = message.get("id")
        if request_id is None:
            raise ValueError("send() needs a request id; use notify() for notifications")
        data = handle.codec.encode(message)

        future = self.correlator.register(request_id, timeout)
        logger.debug("→ %s (id=%s)", message.get("method"), request_id)
        try:
            try:
                handle.proc.stdin.write(data)
                await handle.proc.stdin.drain()
            except (OSError, RuntimeError) as e:
                self.correlator.reject(request_id, ChildWriteError(f"Failed to write to child: {e}"))
            response = await future
        except asyncio.CancelledError:
            self.correlator.discard(request_id)
            raise
        logger.debug("← %s (id=%s)", "error" if "error" in response else "ok", request_id)
        return response

    async def notify(self, message: Dict[str, Any]) -> None:
        handle = self._live_handle()
        try:
            handle.proc.stdin.write(handle.codec.encode(message))
            await handle.proc.stdin.drain()
        except (OSError, RuntimeError) as e:
            raise ChildWriteError(f"Failed to write to child: {e}") from e

    async def rpc_call(
        self,
        method: str,
        params: Optional[Any] = None,
        timeout: float | None = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": self.next_id(), "method": method}
        if params is not None:
            payload["params"] = params
        return await self.send(payload, timeout=timeout)
