"""MCP (Model Context Protocol) client integration for tether.

Connects to the configured MCP servers once, before the first pass, and
exposes their tools to the model in OpenAI function-calling format. The
catalog is read-only during generation and closed exactly once afterwards.
"""

import asyncio
import atexit
import base64
import copy
import json
import logging
import re
import shlex
import threading
from typing import Any

from .report import ConfigError, ToolExecutionError

logger = logging.getLogger(__name__)

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

CALL_TIMEOUT = 120
STARTUP_TIMEOUT = 30


class McpShutdownError(Exception):
    """Raised when the catalog is used during or after shutdown."""


class RemoteToolCatalog:
    """Tools discovered from a set of MCP servers, plus their live sessions.

    Runs an asyncio event loop in a background daemon thread. All public
    methods are synchronous: they submit coroutines via
    run_coroutine_threadsafe() and block on the future.

    Each server gets a long-lived asyncio Task that owns its AsyncExitStack
    from connect through shutdown, so the cancel-scopes created by the MCP
    SDK's anyio transports are entered and exited inside the same Task.
    """

    def __init__(self, server_configs: dict[str, dict], verbose: bool = False):
        """
        server_configs: {
            "server-name": {
                "command": "npx",
                "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
                "env": {"KEY": "val"},
                # OR over HTTP:
                "url": "http://localhost:8080/mcp",
                "headers": {"Authorization": "Bearer ..."},
                "transport": "http",  # or "sse"
            }
        }
        """
        self._server_configs = server_configs
        self._verbose = verbose

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

        self._sessions: dict[str, Any] = {}  # server_name -> ClientSession
        self._server_tools: dict[str, list] = {}  # server_name -> [mcp Tool]
        self._tool_map: dict[str, tuple[str, Any]] = {}  # tool name -> (server, Tool)
        self._degraded: set[str] = set()

        self._server_tasks: dict[str, asyncio.Task] = {}
        self._shutdown_events: dict[str, asyncio.Event] = {}

        self._closing = False
        self._closed = False

    def start(self) -> None:
        """Start the background event loop and connect to all servers."""
        if self._closed:
            raise McpShutdownError("catalog is already closed")

        loop_ready = threading.Event()
        self._loop = asyncio.new_event_loop()

        def _run_loop():
            self._loop.call_soon(lambda: loop_ready.set())
            self._loop.run_forever()

        self._thread = threading.Thread(
            target=_run_loop,
            name="tether-mcp-loop",
            daemon=True,
        )
        self._thread.start()
        if not loop_ready.wait(timeout=10):
            raise McpShutdownError("MCP event loop failed to start")

        from . import fmt as _fmt

        for name, config in self._server_configs.items():
            try:
                self._start_server_task(name, config, timeout=STARTUP_TIMEOUT)
            except Exception as e:
                _fmt.mcp_server_error(name, str(e))

        self._build_tool_map()

        atexit.register(self.close)

    # --- Lookup ---

    def find(self, name: str) -> tuple[str, Any] | None:
        """Return ``(server_name, tool)`` for a tool name, or None."""
        return self._tool_map.get(name)

    def tool_names(self) -> list[str]:
        return sorted(self._tool_map)

    @staticmethod
    def requires_confirmation(tool) -> bool:
        """Tools annotated as destructive must be confirmed before running."""
        annotations = getattr(tool, "annotations", None)
        return bool(getattr(annotations, "destructiveHint", False))

    def input_schema(self, name: str) -> dict | None:
        found = self.find(name)
        if found is None:
            return None
        return _convert_schema(found[1].inputSchema or {})

    def declarations(self) -> list[dict]:
        """Return all routable tools in OpenAI function-calling format."""
        return [
            _mcp_tool_to_openai(server, tool)
            for server, tool in self._tool_map.values()
        ]

    # --- Invocation ---

    def call_tool(self, server_name: str, tool_name: str, arguments: dict):
        """Invoke a tool on its owning server and return the raw CallToolResult.

        Transport failures mark the server as degraded and raise
        ToolExecutionError.
        """
        if self._closing or self._closed:
            raise McpShutdownError("catalog is shutting down")

        if server_name in self._degraded:
            raise ToolExecutionError(
                f"MCP server {server_name!r} is unavailable (crashed or disconnected)"
            )

        session = self._sessions.get(server_name)
        if session is None:
            raise ToolExecutionError(
                f"MCP server {server_name!r} has no active session"
            )

        try:
            return self._run_sync(
                session.call_tool(tool_name, arguments),
                timeout=CALL_TIMEOUT,
            )
        except McpShutdownError:
            raise
        except Exception as e:
            self._degraded.add(server_name)
            raise ToolExecutionError(
                f"tool call failed: MCP server {server_name!r}: {e}"
            ) from e

    def close(self) -> None:
        """Idempotent shutdown."""
        if self._closed:
            return
        self._closing = True

        if self._loop is not None and self._loop.is_running():
            try:
                self._run_sync(self._close_all_sessions(), timeout=10)
            except Exception as e:
                logger.warning(f"MCP shutdown did not complete cleanly: {e}")

            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning(
                    "MCP event loop thread did not stop cleanly. "
                    f"Residual thread: {self._thread.name}, "
                    f"servers: {list(self._sessions)}"
                )

        self._closed = True
        self._closing = False

    # --- Internal helpers ---

    def _run_sync(self, coro, timeout: float = 30):
        """Submit a coroutine to the background loop and wait for its result."""
        if self._loop is None or not self._loop.is_running():
            raise McpShutdownError("event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except asyncio.CancelledError:
            raise McpShutdownError("operation cancelled during shutdown")
        except TimeoutError:
            future.cancel()
            raise

    def _start_server_task(self, name: str, config: dict, timeout: float = 30) -> None:
        """Launch a long-lived task for one server; block until connected."""
        ready = threading.Event()
        startup_error: list[BaseException | None] = [None]
        shutdown_event = asyncio.Event()
        self._shutdown_events[name] = shutdown_event

        async def _launch():
            self._server_tasks[name] = asyncio.create_task(
                self._server_lifecycle(
                    name, config, ready, startup_error, shutdown_event
                ),
                name=f"mcp-{name}",
            )

        self._run_sync(_launch(), timeout=5)

        if not ready.wait(timeout=timeout):
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
        """Connect, wait for the shutdown signal, clean up; all in one Task."""
        from contextlib import AsyncExitStack
        import mcp

        stack = AsyncExitStack()
        await stack.__aenter__()

        try:
            if "url" in config and config.get("transport") == "sse":
                from mcp.client.sse import sse_client

                read_stream, write_stream = await stack.enter_async_context(
                    sse_client(
                        url=config["url"],
                        headers=config.get("headers"),
                        timeout=10,
                        sse_read_timeout=300,
                    )
                )
            elif "url" in config:
                from mcp.client.streamable_http import streamablehttp_client

                read_stream, write_stream, _ = await stack.enter_async_context(
                    streamablehttp_client(
                        url=config["url"],
                        headers=config.get("headers"),
                    )
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

            tools_result = await session.list_tools()

            self._sessions[name] = session
            self._server_tools[name] = list(tools_result.tools)

            from . import fmt

            fmt.mcp_server_start(name, len(tools_result.tools))

            ready.set()

            await shutdown_event.wait()
        except Exception as exc:
            startup_error[0] = exc
            ready.set()  # unblock the caller even on error
        finally:
            try:
                await asyncio.wait_for(stack.aclose(), timeout=5)
            except TimeoutError:
                logger.warning(f"MCP server {name!r}: graceful close timed out")
            except Exception as e:
                logger.warning(f"Error closing MCP server {name!r}: {e}")
            self._sessions.pop(name, None)

    async def _close_all_sessions(self) -> None:
        """Signal every lifecycle task to shut down and wait for them."""
        for event in self._shutdown_events.values():
            event.set()

        tasks = list(self._server_tasks.values())
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for r in results:
                if isinstance(r, Exception) and not isinstance(
                    r, asyncio.CancelledError
                ):
                    logger.warning(f"MCP server task error during shutdown: {r}")

        self._server_tasks.clear()
        self._shutdown_events.clear()
        self._sessions.clear()

    def _build_tool_map(self) -> None:
        """Build the name -> (server, tool) routing table.

        A server whose tool names collide with an earlier server's is
        skipped entirely with an error; other servers continue.
        """
        tool_map: dict[str, tuple[str, Any]] = {}

        for server_name, tools in self._server_tools.items():
            collisions = [
                f"  {tool.name!r}: {tool_map[tool.name][0]} vs {server_name}"
                for tool in tools
                if tool.name in tool_map
            ]
            if collisions:
                from . import fmt

                self._server_tools[server_name] = []
                detail = "\n".join(collisions)
                fmt.mcp_server_error(
                    server_name,
                    f"tool name collision, skipping all its tools:\n{detail}",
                )
                continue
            for tool in tools:
                tool_map[tool.name] = (server_name, tool)

        self._tool_map = tool_map


def validate_server_name(name: str) -> None:
    """Validate an MCP server name. Raises ConfigError if invalid."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )


def servers_from_cli(commands: list[str], urls: list[str]) -> dict[str, dict]:
    """Build server configs from repeated --mcp-command / --mcp-url flags."""
    servers: dict[str, dict] = {}
    for i, command in enumerate(commands, 1):
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise ConfigError(f"malformed --mcp-command {command!r}: {e}")
        if not argv:
            raise ConfigError("--mcp-command must not be empty")
        servers[f"stdio-{i}"] = {"command": argv[0], "args": argv[1:]}
    for i, url in enumerate(urls, 1):
        servers[f"http-{i}"] = {"url": url}
    return servers


def _mcp_tool_to_openai(server_name: str, tool) -> dict:
    """Convert an MCP Tool object to OpenAI function-calling format."""
    schema = _convert_schema(tool.inputSchema if tool.inputSchema else {})
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or f"MCP tool from {server_name}",
            "parameters": schema,
        },
    }


def _convert_schema(input_schema: dict) -> dict:
    """Convert an MCP inputSchema to OpenAI-compatible parameters.

    Keep everything, only strip keys known to cause provider rejections.
    """
    schema = copy.deepcopy(input_schema)

    if "type" not in schema:
        schema["type"] = "object"
    if "properties" not in schema:
        schema["properties"] = {}

    schema.pop("$schema", None)
    schema.pop("$id", None)

    return schema


def convert_result(result) -> list[dict]:
    """Convert an MCP CallToolResult into result items.

    Items are ``{"type": "text", "text": ...}`` or
    ``{"type": "image"|"audio"|"blob", "mime_type": ..., "data": bytes}``.
    Structured content wins over content blocks. Raises ToolExecutionError
    for error results and for content it cannot represent.
    """
    texts = [
        block.text
        for block in (result.content or [])
        if getattr(block, "type", None) == "text"
    ]
    if result.isError:
        detail = "\n".join(texts) if texts else "MCP tool returned an error"
        raise ToolExecutionError(f"tool call failed: {detail}")

    structured = getattr(result, "structuredContent", None)
    if structured is not None:
        try:
            encoded = json.dumps(structured, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise ToolExecutionError(
                "failed to read tool call result: could not marshal "
                f"structured content ({type(structured).__name__}): {e}"
            ) from e
        return [{"type": "text", "text": encoded}]

    items: list[dict] = []
    for block in result.content or []:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            items.append({"type": "text", "text": block.text})
        elif block_type in ("image", "audio"):
            items.append(
                {
                    "type": block_type,
                    "mime_type": block.mimeType,
                    "data": _b64decode(block.data),
                }
            )
        elif block_type == "resource":
            resource = block.resource
            text = getattr(resource, "text", None)
            if text is not None:
                items.append({"type": "text", "text": text})
            else:
                items.append(
                    {
                        "type": "blob",
                        "mime_type": getattr(resource, "mimeType", None)
                        or "application/octet-stream",
                        "data": _b64decode(getattr(resource, "blob", "")),
                    }
                )
        elif block_type == "resource_link":
            items.append({"type": "text", "text": str(block.uri)})
        else:
            raise ToolExecutionError(
                f"failed to read tool call result: unsupported content type "
                f"{block_type or 'unknown'!r}"
            )
    return items


def _b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data)
    except ValueError as e:
        raise ToolExecutionError(
            f"failed to read tool call result: invalid base64 payload: {e}"
        ) from e
