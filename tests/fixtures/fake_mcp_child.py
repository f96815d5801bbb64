#!/usr/bin/env python3
# Scripted MCP server for the bridge tests: JSON-RPC over stdin/stdout.
#   FAKE_MCP_RECORD      append every received method (one per line) to this file
#   FAKE_MCP_FAIL_INIT   "1" -> initialize answers with an error
#   FAKE_MCP_EXIT_CODE   exit with this code right after start-up
#   FAKE_MCP_GARBAGE     "1" -> write non-JSON noise to stdout before each reply
import json
import os
import sys
import threading
import time

RECORD = os.getenv("FAKE_MCP_RECORD")
FAIL_INIT = os.getenv("FAKE_MCP_FAIL_INIT") == "1"
GARBAGE = os.getenv("FAKE_MCP_GARBAGE") == "1"
EXIT_CODE = os.getenv("FAKE_MCP_EXIT_CODE")

_write_lock = threading.Lock()


def record(entry):
    if not RECORD:
        return
    with open(RECORD, "a", encoding="utf-8") as f:
        f.write(entry + "\n")


def write_raw(data: bytes):
    with _write_lock:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()


def send(msg):
    if GARBAGE:
        write_raw(b"this is not json\n{\"broken\": \n")
    write_raw(json.dumps(msg).encode("utf-8") + b"\n")


def ok(mid, result):
    return {"jsonrpc": "2.0", "id": mid, "result": result}


def err(mid, code, message):
    return {"jsonrpc": "2.0", "id": mid, "error": {"code": code, "message": message}}


def handle(msg):
    mid = msg.get("id")
    method = msg.get("method")
    params = msg.get("params") or {}

    if method is None:
        record(f"reply:{mid}")
        return
    record(method)

    if method == "initialize":
        if FAIL_INIT:
            send(err(mid, -32000, "init refused"))
        else:
            send(ok(mid, {
                "protocolVersion": params.get("protocolVersion"),
                "serverInfo": {"name": "fake-mcp", "version": "0.1.0"},
                "capabilities": {"tools": {}, "resources": {}},
            }))
    elif method == "notifications/initialized":
        return
    elif method == "tools/list":
        send(ok(mid, {"tools": [{"name": "echo", "inputSchema": {"type": "object"}}]}))
    elif method == "tools/call":
        name = params.get("name")
        if name == "echo":
            send(ok(mid, {
                "content": [{"type": "text", "text": json.dumps(params.get("arguments") or {})}],
                "auth": params.get("_auth"),
            }))
        else:
            send(err(mid, -32602, f"Unknown tool: {name}"))
    elif method == "resources/list":
        send(ok(mid, {"resources": [{"uri": "mem://hello", "name": "hello"}]}))
    elif method == "resources/read":
        send(ok(mid, {"contents": [{"uri": params.get("uri"), "text": "hello"}]}))
    elif method == "hang":
        return
    elif method == "delay":
        threading.Timer(float(params.get("seconds", 0.2)), send, args=(ok(mid, {"delayed": True}),)).start()
    elif method == "split":
        data = json.dumps(ok(mid, {"split": True})).encode("utf-8") + b"\n"
        write_raw(data[:7])
        time.sleep(0.05)
        write_raw(data[7:])
    elif method == "stderr":
        print("diagnostic: {\"id\": %s, \"result\": \"not protocol\"}" % json.dumps(mid), file=sys.stderr, flush=True)
        send(ok(mid, {"stderr": True}))
    elif method == "bad_id":
        send(ok([mid], {"wrong": True}))
        send(ok({"id": mid}, {"wrong": True}))
        send(ok(True, {"wrong": True}))
        send(ok(mid, {"bad_id": True}))
    elif method == "ask_parent":
        send({"jsonrpc": "2.0", "id": "child-1", "method": "ping"})
        send(ok(mid, {"asked": True}))
    elif method == "crash":
        os._exit(1)
    elif mid is not None:
        send(err(mid, -32601, f"Method not found: {method}"))


def main():
    print("[fake-mcp] server ready", file=sys.stderr, flush=True)
    if EXIT_CODE:
        sys.exit(int(EXIT_CODE))
    for raw in sys.stdin.buffer:
        if not raw.strip():
            continue
        try:
            msg = json.loads(raw)
        except ValueError:
            send(err(None, -32700, "Parse error"))
            continue
        handle(msg)


if __name__ == "__main__":
    main()
