# mcp_bridge/util/methods.py
# Maps the method spellings HTTP clients use onto the names the MCP child expects.
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"
RESOURCES_LIST = "resources/list"
RESOURCES_READ = "resources/read"

# alias -> (canonical method, keep params?)
_ALIASES: Dict[str, Tuple[str, bool]] = {
    "listTools": (TOOLS_LIST, False),
    "list_tools": (TOOLS_LIST, False),
    "tools.list": (TOOLS_LIST, False),
    TOOLS_LIST: (TOOLS_LIST, False),
    "callTool": (TOOLS_CALL, True),
    "call_tool": (TOOLS_CALL, True),
    "tools.call": (TOOLS_CALL, True),
    TOOLS_CALL: (TOOLS_CALL, True),
    "listResources": (RESOURCES_LIST, False),
    "list_resources": (RESOURCES_LIST, False),
    "resources.list": (RESOURCES_LIST, False),
    RESOURCES_LIST: (RESOURCES_LIST, False),
    "readResource": (RESOURCES_READ, True),
    "read_resource": (RESOURCES_READ, True),
    "resources.read": (RESOURCES_READ, True),
    RESOURCES_READ: (RESOURCES_READ, True),
}


def normalize_method(method: str, params: Optional[Any] = None) -> Tuple[str, Optional[Any]]:
    """Unknown methods pass through untouched; the child reports them if unsupported."""
    mapping = _ALIASES.get(method)
    if mapping is None:
        return method, params
    canonical, keep_params = mapping
    if keep_params:
        return canonical, params
    return canonical, {}
