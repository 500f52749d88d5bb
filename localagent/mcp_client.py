"""Tool provisioning over MCP (Model Context Protocol).

Every server in mcp-tools.json becomes a set of callable tools exposed to the
model in OpenAI function-calling format. A server that fails to start is
recorded as failed; the session still runs with whatever did load.
"""

import asyncio
import atexit
import concurrent.futures
import copy
import logging
import re
import threading
from typing import Any

from .errors import ConfigError, ToolError

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 30
CALL_TIMEOUT = 120

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_DOUBLE_UNDER_RE = re.compile(r"__+")


class McpManager:
    """Connections to every manifest server, driven from synchronous code.

    An asyncio loop runs on a daemon thread; public methods submit
    coroutines to it and block on the result. Each server is owned by one
    long-lived task that enters and exits its AsyncExitStack, since the MCP
    SDK's anyio cancel scopes must be closed by the task that opened them.
    """

    def __init__(self, server_configs: dict[str, dict], verbose: bool = False):
        self._server_configs = server_configs
        self._verbose = verbose

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

        self._sessions: dict[str, Any] = {}
        self._tool_schemas: dict[str, list[dict]] = {}
        # namespaced tool name -> (server name, original tool name)
        self._tool_map: dict[str, tuple[str, str]] = {}
        self._status: dict[str, dict] = {}
        self._degraded: set[str] = set()

        self._server_tasks: dict[str, asyncio.Task] = {}
        self._shutdown_events: dict[str, asyncio.Event] = {}
        self._closed = False

    def start(self) -> None:
        """Start the background loop and connect every server."""
        if self._closed:
            raise ToolError("MCP manager is already closed")

        loop_ready = threading.Event()
        self._loop = asyncio.new_event_loop()

        def _run_loop():
            self._loop.call_soon(loop_ready.set)
            self._loop.run_forever()

        self._thread = threading.Thread(
            target=_run_loop, name="localagent-mcp-loop", daemon=True
        )
        self._thread.start()
        if not loop_ready.wait(timeout=10):
            raise ToolError("MCP event loop failed to start")

        from . import fmt

        for name, config in self._server_configs.items():
            try:
                self._start_server(name, config)
            except Exception as e:
                self._status[name] = {"name": name, "status": "failed", "error": str(e)}
                if self._verbose:
                    fmt.mcp_server_error(name, str(e))
            else:
                count = len(self._tool_schemas.get(name, []))
                self._status[name] = {"name": name, "status": "loaded", "tools": count}
                if self._verbose:
                    fmt.mcp_server_start(name, count)

        self._build_tool_map()
        atexit.register(self.close)

    def server_status(self) -> list[dict]:
        """Per-server load status in manifest order."""
        return [
            self._status.get(name, {"name": name, "status": "failed", "error": "not started"})
            for name in self._server_configs
        ]

    def list_tools(self) -> list[dict]:
        tools = []
        for schemas in self._tool_schemas.values():
            tools.extend(_public_schema(s) for s in schemas)
        return tools

    def call_tool(self, namespaced_name: str, arguments: dict) -> tuple[str, bool]:
        """Run a tool and return (result_text, is_error)."""
        if self._closed:
            return ("error: MCP manager is closed", True)

        route = self._tool_map.get(namespaced_name)
        if route is None:
            return (f"error: unknown tool: {namespaced_name}", True)
        server_name, original_name = route

        if server_name in self._degraded:
            return (f"error: MCP server {server_name!r} is unavailable", True)
        session = self._sessions.get(server_name)
        if session is None:
            return (f"error: MCP server {server_name!r} has no active session", True)

        try:
            result = self._run_sync(
                session.call_tool(original_name, arguments), timeout=CALL_TIMEOUT
            )
        except concurrent.futures.TimeoutError:
            return (f"error: tool {namespaced_name} timed out after {CALL_TIMEOUT}s", True)
        except Exception as e:
            self._degraded.add(server_name)
            return (f"error: MCP server {server_name!r} failed: {e}", True)
        return _normalize_result(result)

    def close(self) -> None:
        """Idempotent shutdown of every server and the loop thread."""
        if self._closed:
            return
        self._closed = True

        if self._loop is not None and self._loop.is_running():
            try:
                self._run_sync(self._close_all(), timeout=10)
            except Exception as e:
                logger.warning("error while closing MCP servers: %s", e)
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning(
                    "MCP loop thread did not stop cleanly (servers: %s)",
                    list(self._sessions),
                )

    # --- Internal helpers ---

    def _run_sync(self, coro, timeout: float = 30):
        if self._loop is None or not self._loop.is_running():
            raise ToolError("MCP event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def _start_server(self, name: str, config: dict) -> None:
        """Launch the lifecycle task for one server and wait until it is connected."""
        ready = threading.Event()
        startup_error: list[BaseException | None] = [None]
        shutdown_event = asyncio.Event()
        self._shutdown_events[name] = shutdown_event

        async def _launch():
            self._server_tasks[name] = asyncio.create_task(
                self._server_lifecycle(name, config, ready, startup_error, shutdown_event),
                name=f"mcp-{name}",
            )

        self._run_sync(_launch(), timeout=5)

        if not ready.wait(timeout=STARTUP_TIMEOUT):
            task = self._server_tasks.pop(name, None)
            if task:
                self._loop.call_soon_threadsafe(task.cancel)
            self._shutdown_events.pop(name, None)
            raise TimeoutError(f"MCP server {name!r} startup timed out")

        if startup_error[0] is not None:
            self._server_tasks.pop(name, None)
            self._shutdown_events.pop(name, None)
            raise startup_error[0]

    async def _server_lifecycle(
        self,
        name: str,
        config: dict,
        ready: threading.Event,
        startup_error: list[BaseException | None],
        shutdown_event: asyncio.Event,
    ) -> None:
        from contextlib import AsyncExitStack

        import mcp

        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            if "url" in config:
                from mcp.client.sse import sse_client

                read_stream, write_stream = await stack.enter_async_context(
                    sse_client(url=config["url"], headers=config.get("headers"))
                )
            else:
                params = mcp.StdioServerParameters(
                    command=config["command"],
                    args=config.get("args", []),
                    env=config.get("env"),
                )
                read_stream, write_stream = await stack.enter_async_context(
                    mcp.stdio_client(params)
                )

            session = await stack.enter_async_context(
                mcp.ClientSession(read_stream, write_stream)
            )
            await session.initialize()
            listed = await session.list_tools()

            self._sessions[name] = session
            self._tool_schemas[name] = [
                _mcp_tool_to_openai(name, tool) for tool in listed.tools
            ]
            ready.set()

            await shutdown_event.wait()
        except Exception as exc:
            startup_error[0] = exc
            ready.set()
        finally:
            try:
                await asyncio.wait_for(stack.aclose(), timeout=5)
            except Exception as e:
                logger.warning("error closing MCP server %r: %s", name, e)
            self._sessions.pop(name, None)

    async def _close_all(self) -> None:
        for event in self._shutdown_events.values():
            event.set()
        tasks = list(self._server_tasks.values())
        if tasks:
            for r in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(r, Exception):
                    logger.warning("MCP server task error during shutdown: %s", r)
        self._server_tasks.clear()
        self._shutdown_events.clear()
        self._sessions.clear()

    def _build_tool_map(self) -> None:
        """Route namespaced names to servers; a server with a colliding name loses all its tools."""
        tool_map: dict[str, tuple[str, str]] = {}
        for server_name, schemas in self._tool_schemas.items():
            collisions = []
            for schema in schemas:
                namespaced = schema["function"]["name"]
                original = schema["function"]["_mcp_original_name"]
                if namespaced in tool_map:
                    collisions.append(namespaced)
                else:
                    tool_map[namespaced] = (server_name, original)
            if collisions:
                for schema in schemas:
                    n = schema["function"]["name"]
                    if tool_map.get(n, (None,))[0] == server_name:
                        del tool_map[n]
                self._tool_schemas[server_name] = []
                self._status[server_name] = {
                    "name": server_name,
                    "status": "failed",
                    "error": f"tool name collision: {', '.join(collisions)}",
                }
        self._tool_map = tool_map


def validate_server_name(name: str) -> None:
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )
    if "__" in name:
        raise ConfigError(f"MCP server name {name!r} must not contain double underscores")


def _sanitize_tool_name(name: str) -> str:
    name = _SANITIZE_RE.sub("_", name)
    name = _DOUBLE_UNDER_RE.sub("_", name)
    return name.strip("_-")


def _mcp_tool_to_openai(server_name: str, tool) -> dict:
    """Convert an MCP Tool into an OpenAI function schema named mcp__<server>__<tool>."""
    schema = copy.deepcopy(tool.inputSchema or {})
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.pop("$schema", None)
    schema.pop("$id", None)
    return {
        "type": "function",
        "function": {
            "name": f"mcp__{server_name}__{_sanitize_tool_name(tool.name)}",
            "description": tool.description or f"MCP tool from {server_name}",
            "parameters": schema,
            "_mcp_original_name": tool.name,
        },
    }


def _public_schema(schema: dict) -> dict:
    """Drop private routing keys before a schema is sent to the model."""
    function = {k: v for k, v in schema["function"].items() if not k.startswith("_")}
    return {"type": schema["type"], "function": function}


def _normalize_result(result) -> tuple[str, bool]:
    """Flatten a CallToolResult into (text, is_error)."""
    parts = []
    for block in result.content:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            parts.append(block.text)
        elif block_type in ("image", "audio"):
            mime = getattr(block, "mimeType", "unknown")
            data = getattr(block, "data", "")
            parts.append(f"[{block_type}: {mime}, {len(data)} bytes]")
        elif block_type == "resource":
            resource = getattr(block, "resource", None)
            if resource is not None and getattr(resource, "text", None):
                parts.append(resource.text)
            else:
                uri = getattr(resource, "uri", "unknown") if resource else "unknown"
                parts.append(f"[resource: {uri}]")
        else:
            parts.append(f"[{block_type or 'unknown'}: unsupported content type]")

    text = "\n".join(parts)
    if result.isError:
        return (f"error: {text}" if text else "error: MCP tool returned an error", True)
    return (text or "(empty result)", False)
