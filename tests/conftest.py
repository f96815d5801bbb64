from __future__ import annotations

import sys
from pathlib import Path

import pytest

FAKE_CHILD = Path(__file__).parent / "fixtures" / "fake_mcp_child.py"


@pytest.fixture()
def child_cmd():
    return [sys.executable, "-u", str(FAKE_CHILD)]


@pytest.fixture()
def record_path(tmp_path):
    return tmp_path / "received.log"


@pytest.fixture()
def child_env(record_path):
    return {"FAKE_MCP_RECORD": str(record_path)}
