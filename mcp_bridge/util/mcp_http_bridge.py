#!/usr/bin/env python3
# Exposes /mcp (HTTP JSON-RPC) and forwards to a supervised MCP child over stdin/stdout

from __future__ import annotations

import argparse
import asyncio
import hmac
import logging
import shlex
import time
from typing import Any, Dict, Optional

import orjson
from aiohttp import web
from aiohttp_cors import ResourceOptions
from aiohttp_cors import setup as cors_setup

from ..config import BridgeConfig
from ..errors import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    UNAUTHORIZED,
    BridgeError,
    BridgeStoppedError,
    ChildNotRunningError,
    HandshakeError,
)
from .events import EventLog
from .handshake import HandshakeManager
from .mcp_process import MCPSubprocess
from .methods import TOOLS_CALL, normalize_method

logger = logging.getLogger(__name__)


# ─────────────────────── JSON-RPC helpers ───────────────────────
def err(mid, code, message, data=None):
    e = {"code": code, "message": message}
    if data is not None:
        e["data"] = data
    return {"jsonrpc": "2.0", "id": mid, "error": e}


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_response(payload: Any, status: int = 200) -> web.Response:
    return web.json_response(payload, status=status, dumps=_dumps)


# ─────────────────────── bridge ───────────────────────
class StdioBridge:
    """The supervised child plus its handshake, as seen by the HTTP layer."""

    def __init__(self, config: BridgeConfig, process: MCPSubprocess | None = None):
        self.config = config
        self.process = process or MCPSubprocess.from_config(config)
        self.handshake = HandshakeManager(
            self.process,
            protocol_version=config.protocol_version,
            client_info={"name": config.client_name, "version": config.client_version},
        )
        self.events = EventLog(config.event_log_path, config.event_log_max_bytes) if config.event_log_path else None
        self._warmup: asyncio.Task | None = None
        self.process.add_spawn_listener(self._schedule_warmup)

    async def start(self) -> None:
        await self.process.start()

    async def stop(self) -> None:
        if self._warmup is not None:
            self._warmup.cancel()
            self._warmup = None
        await self.process.stop()

    # eager initialize shortly after every spawn, so the first caller rarely waits
    def _schedule_warmup(self, generation: int) -> None:
        if self.config.warmup_delay_ms < 0:
            return
        if self._warmup is not None and not self._warmup.done():
            self._warmup.cancel()
        self._warmup = asyncio.create_task(self._warm_up(generation))

    async def _warm_up(self, generation: int) -> None:
        await asyncio.sleep(self.config.warmup_delay_ms / 1000.0)
        if self.process.generation != generation or not self.process.running:
            return
        try:
            await self.handshake.ensure_ready()
            logger.info("STDIO child process ready")
        except BridgeError as e:
            logger.error("Initialize failed: %s", e)

    def authorized(self, header: Optional[str]) -> bool:
        token = self.config.auth_token
        if not token:
            return True
        return hmac.compare_digest((header or "").encode(), f"Bearer {token}".encode())

    def health(self) -> Dict[str, Any]:
        running = self.process.running
        initialized = self.handshake.complete
        return {
            "status": "ok",
            "transport": "http-bridge",
            "stdio_child": "running" if running else "stopped",
            "mcp_initialized": initialized,
            "inflight_requests": self.process.inflight,
            "restart_count": self.process.restart_count,
            "production_ready": initialized and running,
        }

    def _with_credentials(self, method: str, params: Any, credential: Optional[str]) -> Any:
        if not credential or method != TOOLS_CALL or not isinstance(params, dict):
            return params
        tools = self.config.credential_tools
        if tools and params.get("name") not in tools:
            return params
        return {**params, "_auth": {self.config.credential_field: credential}}

    async def request(
        self,
        method: str,
        params: Any = None,
        request_id: Any = None,
        credential: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Forward one JSON-RPC call to the child and return its response.

        The child sees a bridge-assigned id (callers may reuse ids freely);
        the caller's id, when given, is put back on the response.
        """
        if self.process.permanently_stopped:
            raise BridgeStoppedError(
                f"Child process restart limit reached ({self.process.max_restarts}); bridge is permanently stopped"
            )
        if not self.process.running:
            raise ChildNotRunningError("STDIO child process is not running")

        canonical, canonical_params = normalize_method(method, params)
        await self.handshake.ensure_ready()
        if not self.handshake.complete:
            raise HandshakeError("Child process restarted during initialization")

        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": self.process.next_id(), "method": canonical}
        canonical_params = self._with_credentials(canonical, canonical_params, credential)
        if canonical_params is not None:
            payload["params"] = canonical_params
        response = await self.process.send(payload)
        if request_id is not None:
            response = {**response, "id": request_id}
        return response

    async def record(self, method, params, ok, started, result=None, error=None) -> None:
        if self.events is None:
            return
        ms = (time.perf_counter() - started) * 1000
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.events.record, method, params, ok, ms, result, error)


BRIDGE_KEY = web.AppKey("bridge", StdioBridge)


# ─────────────────────── HTTP handlers ───────────────────────
async def health_handler(request: web.Request) -> web.Response:
    return json_response(request.app[BRIDGE_KEY].health())


async def mcp_handler(request: web.Request) -> web.Response:
    bridge = request.app[BRIDGE_KEY]
    config = bridge.config
    started = time.perf_counter()

    if not bridge.authorized(request.headers.get("Authorization")):
        return json_response(err(None, UNAUTHORIZED, "Unauthorized"), status=401)

    try:
        payload = orjson.loads(await request.read())
    except orjson.JSONDecodeError as e:
        return json_response(err(None, PARSE_ERROR, f"JSON parse error: {e}"), status=400)
    if not isinstance(payload, dict):
        return json_response(err(None, INVALID_REQUEST, "Invalid Request: expected a JSON object"), status=400)

    rid = payload.get("id")
    method = payload.get("method")
    if not isinstance(method, str) or not method:
        return json_response(err(rid, INVALID_REQUEST, "Invalid Request: method must be a string"), status=400)
    params = payload.get("params")
    canonical, _ = normalize_method(method, params)
    credential = request.headers.get(config.credential_header)

    try:
        response = await bridge.request(method, params, rid, credential)
    except BridgeError as e:
        message = str(e) or "Internal error"
        ms = (time.perf_counter() - started) * 1000
        logger.error("%s failed after %dms: %s", method, ms, message)
        await bridge.record(canonical, params, False, started, error=message)
        return json_response({"jsonrpc": "2.0", "id": rid, "error": e.to_dict()}, status=500)
    except Exception as e:  # pylint: disable=broad-except
        logger.exception("Unhandled error while forwarding %s", method)
        await bridge.record(canonical, params, False, started, error=str(e))
        return json_response(err(rid, INTERNAL_ERROR, str(e) or "Internal error"), status=500)

    ms = (time.perf_counter() - started) * 1000
    logger.info("%s completed in %dms", canonical, ms)
    if ms > config.slow_request_ms:
        logger.warning("SLO_WARNING: %s took %dms (>%dms)", canonical, ms, config.slow_request_ms)
    child_error = response.get("error")
    await bridge.record(
        canonical,
        params,
        child_error is None,
        started,
        result=response.get("result"),
        error=(child_error or {}).get("message") if isinstance(child_error, dict) else None,
    )
    return json_response(response)


def setup_cors(app: web.Application, origins) -> None:
    options = ResourceOptions(
        allow_credentials=True,
        expose_headers="*",
        allow_headers="*",
        allow_methods=["GET", "POST", "OPTIONS"],
    )
    cors = cors_setup(app, defaults={origin: options for origin in origins})
    for route in list(app.router.routes()):
        cors.add(route)


def make_app(bridge: StdioBridge, manage_child: bool = True) -> web.Application:
    app = web.Application(client_max_size=bridge.config.max_body_bytes)
    app[BRIDGE_KEY] = bridge
    app.add_routes([
        web.get("/health", health_handler),
        web.post("/mcp", mcp_handler),
    ])
    setup_cors(app, bridge.config.cors_origins)

    if manage_child:
        async def on_startup(_):
            await bridge.start()

        async def on_cleanup(_):
            logger.info("Shutting down...")
            await bridge.stop()

        app.on_startup.append(on_startup)
        app.on_cleanup.append(on_cleanup)
    return app


def parse_args(argv=None, config: BridgeConfig | None = None) -> BridgeConfig:
    config = config or BridgeConfig.from_env()
    ap = argparse.ArgumentParser(description="MCP HTTP bridge (supervises a stdio MCP server)")
    ap.add_argument("--cmd", default=None, help="MCP command (e.g. 'node src/stdio.js'); default: MCP_CHILD_CMD")
    ap.add_argument("--cwd", default=config.child_cwd, help="Working directory of the MCP child")
    ap.add_argument("--host", default=config.host)
    ap.add_argument("--port", type=int, default=config.port)
    ap.add_argument("--max-restarts", type=int, default=config.max_restarts)
    ap.add_argument("--timeout", type=float, default=config.request_timeout, help="Per-request timeout (seconds)")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    if args.cmd:
        config.child_cmd = shlex.split(args.cmd)
    if not config.child_cmd:
        ap.error("an MCP command is required (--cmd or MCP_CHILD_CMD)")
    config.child_cwd = args.cwd
    config.host = args.host
    config.port = args.port
    config.max_restarts = args.max_restarts
    config.request_timeout_ms = int(args.timeout * 1000)
    config.verbose = args.verbose
    return config


def main(argv=None):
    config = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    bridge = StdioBridge(config)
    logger.info("MCP HTTP bridge running on %s", config.base_url)
    # run_app handles SIGINT/SIGTERM and runs on_cleanup, which stops the child
    web.run_app(make_app(bridge), host=config.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
