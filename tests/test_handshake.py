"""Unit tests for the initialize handshake state machine."""

from __future__ import annotations

import asyncio

import pytest

from helpers import run
from mcp_bridge.errors import ChildExitedError, HandshakeError
from mcp_bridge.util.handshake import COMPLETE, IN_PROGRESS, NOT_STARTED, HandshakeManager


class DummyProcess:
    """Stands in for MCPSubprocess: records what the handshake sends."""

    def __init__(self, delay: float = 0.05):
        self.delay = delay
        self.generation = 1
        self.sent: list = []
        self.notifications: list = []
        self.error_response = False
        self.raise_error: Exception | None = None
        self._exit_listeners = []

    def add_exit_listener(self, callback):
        self._exit_listeners.append(callback)

    async def rpc_call(self, method, params=None, timeout=None):
        self.sent.append((method, params))
        await asyncio.sleep(self.delay)
        if self.raise_error is not None:
            raise self.raise_error
        if self.error_response:
            return {"jsonrpc": "2.0", "id": len(self.sent), "error": {"code": -32000, "message": "init refused"}}
        return {
            "jsonrpc": "2.0",
            "id": len(self.sent),
            "result": {"protocolVersion": params["protocolVersion"], "serverInfo": {"name": "dummy"}},
        }

    async def notify(self, message):
        self.notifications.append(message)

    def die_and_respawn(self):
        for callback in self._exit_listeners:
            callback()
        self.generation += 1


@pytest.fixture()
def process():
    return DummyProcess()


def test_concurrent_callers_share_one_handshake(process):
    async def scenario():
        manager = HandshakeManager(process)
        await asyncio.gather(*(manager.ensure_ready() for _ in range(5)))
        assert [m for m, _ in process.sent] == ["initialize"]
        assert process.notifications == [{"jsonrpc": "2.0", "method": "notifications/initialized"}]
        assert manager.state == COMPLETE
        assert manager.complete
        assert manager.server_info["serverInfo"]["name"] == "dummy"

    run(scenario())


def test_complete_handshake_resolves_immediately(process):
    async def scenario():
        manager = HandshakeManager(process)
        await manager.ensure_ready()
        await manager.ensure_ready()
        assert len(process.sent) == 1

    run(scenario())


def test_initialize_params(process):
    async def scenario():
        manager = HandshakeManager(
            process,
            protocol_version="2025-06-18",
            client_info={"name": "bridge-test", "version": "9"},
        )
        await manager.ensure_ready()
        method, params = process.sent[0]
        assert method == "initialize"
        assert params == {
            "protocolVersion": "2025-06-18",
            "clientInfo": {"name": "bridge-test", "version": "9"},
            "capabilities": {},
        }

    run(scenario())


def test_error_response_fails_all_waiters_and_is_retryable(process):
    async def scenario():
        process.error_response = True
        manager = HandshakeManager(process)
        results = await asyncio.gather(*(manager.ensure_ready() for _ in range(3)), return_exceptions=True)
        assert all(isinstance(r, HandshakeError) for r in results)
        assert "init refused" in str(results[0])
        assert len(process.sent) == 1
        assert manager.state == NOT_STARTED
        assert process.notifications == []

        process.error_response = False
        await manager.ensure_ready()
        assert manager.state == COMPLETE
        assert len(process.sent) == 2

    run(scenario())


def test_transport_failure_becomes_handshake_error(process):
    async def scenario():
        process.raise_error = ChildExitedError("Child process exited")
        manager = HandshakeManager(process)
        with pytest.raises(HandshakeError, match="Child process exited"):
            await manager.ensure_ready()
        assert manager.state == NOT_STARTED

    run(scenario())


def test_in_progress_state_is_visible(process):
    async def scenario():
        manager = HandshakeManager(process)
        task = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0)
        assert manager.state == IN_PROGRESS
        await task
        assert manager.state == COMPLETE

    run(scenario())


def test_child_exit_resets_completed_handshake(process):
    async def scenario():
        manager = HandshakeManager(process)
        await manager.ensure_ready()
        process.die_and_respawn()
        assert manager.state == NOT_STARTED
        assert not manager.complete
        await manager.ensure_ready()
        assert len(process.sent) == 2
        assert manager.complete

    run(scenario())


def test_restart_during_handshake_does_not_mark_new_child_ready(process):
    async def scenario():
        manager = HandshakeManager(process)
        task = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0.01)
        process.die_and_respawn()
        with pytest.raises(HandshakeError, match="restarted"):
            await task
        assert manager.state == NOT_STARTED
        assert not manager.complete

    run(scenario())


def test_cancelled_caller_does_not_cancel_shared_handshake(process):
    async def scenario():
        manager = HandshakeManager(process)
        first = asyncio.create_task(manager.ensure_ready())
        second = asyncio.create_task(manager.ensure_ready())
        await asyncio.sleep(0.01)
        first.cancel()
        await second
        assert manager.complete
        assert len(process.sent) == 1

    run(scenario())
