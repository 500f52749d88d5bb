"""Tests for MCP (Model Context Protocol) tool provisioning."""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from localagent.errors import ConfigError, ToolError
from localagent.mcp_client import (
    McpManager,
    _mcp_tool_to_openai,
    _normalize_result,
    _public_schema,
    _sanitize_tool_name,
    validate_server_name,
)


class _MockBlock:
    def __init__(self, **kwargs):
        for k, v in kwargs.items():
            setattr(self, k, v)


class _MockResult:
    def __init__(self, content, isError=False):
        self.content = content
        self.isError = isError


def _schema(server, name, original=None):
    return {
        "type": "function",
        "function": {
            "name": f"mcp__{server}__{name}",
            "description": name,
            "parameters": {"type": "object", "properties": {}},
            "_mcp_original_name": original or name,
        },
    }


def _running_manager():
    """A manager with a live loop thread but no servers."""
    mgr = McpManager({}, verbose=False)
    mgr._loop = asyncio.new_event_loop()
    loop_ready = threading.Event()
    mgr._loop.call_soon(loop_ready.set)
    mgr._thread = threading.Thread(target=mgr._loop.run_forever, daemon=True)
    mgr._thread.start()
    loop_ready.wait(timeout=5)
    return mgr


# ---------------------------------------------------------------------------
# Result normalization tests
# ---------------------------------------------------------------------------


class TestNormalizeResult:
    def test_single_text(self):
        result = _MockResult([_MockBlock(type="text", text="hello world")])
        assert _normalize_result(result) == ("hello world", False)

    def test_multiple_text_blocks(self):
        result = _MockResult(
            [
                _MockBlock(type="text", text="line 1"),
                _MockBlock(type="text", text="line 2"),
            ]
        )
        assert _normalize_result(result) == ("line 1\nline 2", False)

    def test_image_block(self):
        result = _MockResult([_MockBlock(type="image", mimeType="image/png", data="abc123")])
        assert _normalize_result(result) == ("[image: image/png, 6 bytes]", False)

    def test_resource_with_text(self):
        resource = _MockBlock(text="resource content", uri="file:///tmp/f.txt")
        result = _MockResult([_MockBlock(type="resource", resource=resource)])
        assert _normalize_result(result) == ("resource content", False)

    def test_resource_without_text(self):
        resource = _MockBlock(uri="file:///tmp/f.txt")
        result = _MockResult([_MockBlock(type="resource", resource=resource)])
        assert _normalize_result(result) == ("[resource: file:///tmp/f.txt]", False)

    def test_is_error(self):
        result = _MockResult(
            [_MockBlock(type="text", text="something went wrong")], isError=True
        )
        assert _normalize_result(result) == ("error: something went wrong", True)

    def test_is_error_empty(self):
        result = _MockResult([], isError=True)
        assert _normalize_result(result) == ("error: MCP tool returned an error", True)

    def test_empty_result(self):
        assert _normalize_result(_MockResult([])) == ("(empty result)", False)

    def test_unknown_block_type(self):
        result = _MockResult([_MockBlock(type="video")])
        assert _normalize_result(result) == ("[video: unsupported content type]", False)


# ---------------------------------------------------------------------------
# Names and schemas
# ---------------------------------------------------------------------------


class TestSanitizeToolName:
    def test_simple_name(self):
        assert _sanitize_tool_name("read_file") == "read_file"

    def test_collapses_double_underscores(self):
        assert _sanitize_tool_name("my__tool") == "my_tool"

    def test_replaces_special_chars(self):
        assert _sanitize_tool_name("get.data!now") == "get_data_now"

    def test_strips_leading_trailing(self):
        assert _sanitize_tool_name("-_name_-") == "name"


class TestValidateServerName:
    def test_valid_name(self):
        validate_server_name("basic-memory")
        validate_server_name("filesystem")
        validate_server_name("a1")

    def test_rejects_double_underscore(self):
        with pytest.raises(ConfigError, match="double underscores"):
            validate_server_name("my__server")

    @pytest.mark.parametrize("name", ["my.server", "my server", ""])
    def test_rejects_invalid(self, name):
        with pytest.raises(ConfigError, match="invalid"):
            validate_server_name(name)


class TestMcpToolToOpenai:
    def test_basic_conversion(self):
        tool = _MockBlock(
            name="create_directory",
            description="Create a directory",
            inputSchema={
                "$schema": "http://json-schema.org/draft-07/schema#",
                "type": "object",
                "properties": {"path": {"type": "string"}},
            },
        )
        result = _mcp_tool_to_openai("filesystem", tool)
        assert result["type"] == "function"
        assert result["function"]["name"] == "mcp__filesystem__create_directory"
        assert result["function"]["description"] == "Create a directory"
        assert "$schema" not in result["function"]["parameters"]
        assert tool.inputSchema["$schema"]

    def test_no_description_or_schema(self):
        tool = _MockBlock(name="ping", description=None, inputSchema=None)
        result = _mcp_tool_to_openai("server1", tool)
        assert "MCP tool from server1" in result["function"]["description"]
        assert result["function"]["parameters"] == {"type": "object", "properties": {}}

    def test_stores_original_name(self):
        tool = _MockBlock(name="get.data", description="Get data", inputSchema={})
        result = _mcp_tool_to_openai("srv", tool)
        assert result["function"]["_mcp_original_name"] == "get.data"
        assert result["function"]["name"] == "mcp__srv__get_data"

    def test_public_schema_drops_private_keys(self):
        public = _public_schema(_schema("srv", "get_data", "get.data"))
        assert "_mcp_original_name" not in public["function"]
        assert public["function"]["name"] == "mcp__srv__get_data"


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class TestMcpManager:
    def test_list_tools_empty(self):
        assert McpManager({}).list_tools() == []

    def test_list_tools_public(self):
        mgr = McpManager({})
        mgr._tool_schemas = {"fs": [_schema("fs", "read")]}
        (tool,) = mgr.list_tools()
        assert tool["function"]["name"] == "mcp__fs__read"
        assert "_mcp_original_name" not in tool["function"]

    def test_close_idempotent(self):
        mgr = McpManager({})
        mgr._closed = True
        mgr.close()

    def test_start_after_close_raises(self):
        mgr = McpManager({})
        mgr._closed = True
        with pytest.raises(ToolError):
            mgr.start()

    def test_call_tool_after_close(self):
        mgr = McpManager({})
        mgr._closed = True
        assert mgr.call_tool("mcp__s__t", {}) == ("error: MCP manager is closed", True)

    def test_call_tool_unknown_name(self):
        result, is_err = McpManager({}).call_tool("mcp__unknown__tool", {})
        assert is_err
        assert "unknown tool" in result

    def test_call_tool_degraded_server(self):
        mgr = McpManager({})
        mgr._tool_map = {"mcp__s__t": ("s", "t")}
        mgr._degraded = {"s"}
        result, is_err = mgr.call_tool("mcp__s__t", {})
        assert is_err
        assert "unavailable" in result

    def test_call_tool_success(self):
        mgr = _running_manager()
        mgr._tool_map = {"mcp__s__t": ("s", "t.orig")}
        seen = {}

        async def _fake_call_tool(name, args):
            seen["call"] = (name, args)
            return _MockResult([_MockBlock(type="text", text="success output")])

        session = MagicMock()
        session.call_tool = _fake_call_tool
        mgr._sessions = {"s": session}
        try:
            assert mgr.call_tool("mcp__s__t", {"key": "val"}) == ("success output", False)
            assert seen["call"] == ("t.orig", {"key": "val"})
        finally:
            mgr.close()

    def test_call_tool_failure_degrades_server(self):
        mgr = _running_manager()
        mgr._tool_map = {"mcp__s__t": ("s", "t")}

        async def _broken(name, args):
            raise RuntimeError("pipe closed")

        session = MagicMock()
        session.call_tool = _broken
        mgr._sessions = {"s": session}
        try:
            result, is_err = mgr.call_tool("mcp__s__t", {})
            assert is_err
            assert "pipe closed" in result
            assert "s" in mgr._degraded
        finally:
            mgr.close()

    def test_call_tool_timeout_keeps_server(self, monkeypatch):
        monkeypatch.setattr("localagent.mcp_client.CALL_TIMEOUT", 0.05)
        mgr = _running_manager()
        mgr._tool_map = {"mcp__s__t": ("s", "t")}

        async def _slow(name, args):
            await asyncio.sleep(5)

        session = MagicMock()
        session.call_tool = _slow
        mgr._sessions = {"s": session}
        try:
            result, is_err = mgr.call_tool("mcp__s__t", {})
            assert is_err
            assert "timed out" in result
            assert "s" not in mgr._degraded
        finally:
            mgr.close()

    def test_start_without_servers(self):
        mgr = McpManager({})
        mgr.start()
        try:
            assert mgr._loop.is_running()
            assert mgr._thread.is_alive()
            assert mgr.server_status() == []
        finally:
            mgr.close()
        assert not mgr._thread.is_alive()

    def test_start_records_status(self, monkeypatch):
        def fake_start(self, name, config):
            if name == "broken":
                raise FileNotFoundError("spawn uvx ENOENT")
            self._tool_schemas[name] = [_schema(name, "read"), _schema(name, "write")]

        monkeypatch.setattr(McpManager, "_start_server", fake_start)
        mgr = McpManager({"fs": {"command": "npx"}, "broken": {"command": "uvx"}})
        mgr.start()
        try:
            assert mgr.server_status() == [
                {"name": "fs", "status": "loaded", "tools": 2},
                {"name": "broken", "status": "failed", "error": "spawn uvx ENOENT"},
            ]
            assert mgr._tool_map["mcp__fs__read"] == ("fs", "read")
        finally:
            mgr.close()

    def test_status_before_start(self):
        mgr = McpManager({"fs": {"command": "npx"}})
        assert mgr.server_status() == [
            {"name": "fs", "status": "failed", "error": "not started"}
        ]


class TestCollisionDetection:
    def test_collision_fails_server(self):
        mgr = McpManager({"server1": {"command": "x"}})
        mgr._tool_schemas = {
            "server1": [
                _schema("server1", "tool", "tool.v1"),
                _schema("server1", "tool", "tool.v2"),
            ]
        }
        mgr._build_tool_map()
        assert mgr._tool_schemas["server1"] == []
        assert "mcp__server1__tool" not in mgr._tool_map
        (status,) = mgr.server_status()
        assert status["status"] == "failed"
        assert "collision" in status["error"]

    def test_collision_does_not_affect_other_servers(self):
        mgr = McpManager({})
        mgr._tool_schemas = {
            "good": [_schema("good", "tool_a")],
            "bad": [_schema("bad", "tool", "tool.v1"), _schema("bad", "tool", "tool.v2")],
        }
        mgr._build_tool_map()
        assert mgr._tool_map["mcp__good__tool_a"] == ("good", "tool_a")
        assert mgr._tool_schemas["bad"] == []
