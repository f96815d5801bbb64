import pytest

from mcp_bridge.util.methods import normalize_method


@pytest.mark.parametrize("alias", ["listTools", "tools/list", "list_tools", "tools.list"])
def test_list_tools_aliases_drop_params(alias):
    assert normalize_method(alias, {"cursor": "x"}) == ("tools/list", {})


@pytest.mark.parametrize("alias", ["callTool", "tools/call", "call_tool"])
def test_call_tool_aliases_keep_params(alias):
    params = {"name": "fetch_ticket", "arguments": {"ticketKey": "SCRUM-8"}}
    method, out = normalize_method(alias, params)
    assert method == "tools/call"
    assert out is params


def test_resource_aliases():
    assert normalize_method("listResources", None) == ("resources/list", {})
    assert normalize_method("readResource", {"uri": "jira://x"}) == ("resources/read", {"uri": "jira://x"})
    assert normalize_method("resources/read", {"uri": "a"}) == ("resources/read", {"uri": "a"})


def test_equivalent_spellings_normalize_identically():
    assert normalize_method("listTools", {}) == normalize_method("tools/list", {})


def test_unknown_method_passes_through():
    params = {"level": "debug"}
    assert normalize_method("logging/setLevel", params) == ("logging/setLevel", params)
    assert normalize_method("prompts/list") == ("prompts/list", None)


def test_normalize_does_not_mutate_input():
    params = {"name": "echo"}
    normalize_method("callTool", params)
    normalize_method("listTools", params)
    assert params == {"name": "echo"}
