from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

DEFAULT_CORS_ORIGINS = (
    "http://localhost:8080",
    "http://127.0.0.1:8080",
    "http://localhost:4000",
    "http://127.0.0.1:4000",
)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass
class BridgeConfig:
    """Settings for one bridge process (HTTP side + supervised child)."""

    child_cmd: list[str] = field(default_factory=list)
    child_cwd: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 4000

    # restart policy / timeouts
    max_restarts: int = 5
    base_backoff_ms: int = 1000
    request_timeout_ms: int = 60_000

    # auth
    auth_token: Optional[str] = None
    credential_header: str = "X-Perplexity-Key"
    credential_field: str = "perplexityKey"
    credential_tools: tuple[str, ...] = ("fetch_perplexity_data",)

    # handshake
    protocol_version: str = "2024-11-05"
    client_name: str = "http-bridge"
    client_version: str = "1.0.0"
    warmup_delay_ms: int = 500

    # http surface
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS
    slow_request_ms: int = 5000
    max_body_bytes: int = 10 * 1024 * 1024

    # jsonl event log (disabled when None)
    event_log_path: Optional[str] = None
    event_log_max_bytes: int = 5 * 1024 * 1024

    verbose: bool = False

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def base_backoff(self) -> float:
        return self.base_backoff_ms / 1000.0

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "BridgeConfig":
        if dotenv:
            load_dotenv()
        defaults = cls()
        token = (os.getenv("MCP_HTTP_TOKEN") or "").strip()
        return cls(
            child_cmd=shlex.split(os.getenv("MCP_CHILD_CMD", "")),
            child_cwd=os.getenv("MCP_CHILD_CWD") or None,
            host=os.getenv("MCP_HTTP_HOST", defaults.host),
            port=_env_int("MCP_HTTP_PORT", defaults.port),
            max_restarts=_env_int("MCP_MAX_RESTARTS", defaults.max_restarts),
            base_backoff_ms=_env_int("MCP_RESTART_BACKOFF_MS", defaults.base_backoff_ms),
            request_timeout_ms=_env_int("MCP_REQUEST_TIMEOUT_MS", defaults.request_timeout_ms),
            auth_token=token or None,
            credential_header=os.getenv("MCP_CREDENTIAL_HEADER", defaults.credential_header),
            credential_field=os.getenv("MCP_CREDENTIAL_FIELD", defaults.credential_field),
            credential_tools=_env_list("MCP_CREDENTIAL_TOOLS", defaults.credential_tools),
            protocol_version=os.getenv("MCP_PROTOCOL_VERSION", defaults.protocol_version),
            warmup_delay_ms=_env_int("MCP_WARMUP_DELAY_MS", defaults.warmup_delay_ms),
            cors_origins=_env_list("MCP_CORS_ORIGINS", defaults.cors_origins),
            slow_request_ms=_env_int("MCP_SLOW_REQUEST_MS", defaults.slow_request_ms),
            event_log_path=os.getenv("MCP_LOG_PATH") or None,
            event_log_max_bytes=_env_int("MCP_LOG_MAX_BYTES", defaults.event_log_max_bytes),
        )
