# remote.py
# Client for remote tool servers speaking the Model Context Protocol.
#
# One RemoteToolClient per configured source: a spawned process reached
# over stdio, initialized once, then listed and called for the rest of the
# run. Calls are serialized per client because the session is a stateful
# request/response exchange.

import asyncio
import json
import logging
from contextlib import AsyncExitStack
from typing import Any

import anyio
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED

from steploop.errors import ToolExecutionError, ToolTimeout, ToolUnavailable
from steploop.models import RemoteSourceConfig, ToolDescriptor
from steploop.tools import Tool

logger = logging.getLogger(__name__)

_CONNECTION_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    ConnectionError,
    OSError,
)


def format_result(result) -> str:
    """Text parts joined by newlines; structured content only when there is no text."""
    contents = getattr(result, "content", None) or []
    texts = [item.text for item in contents if getattr(item, "text", None)]
    if texts:
        return "\n".join(texts)
    structured = getattr(result, "structuredContent", None)
    if structured:
        return json.dumps(structured, ensure_ascii=False)
    return "\n".join(str(item) for item in contents)


class RemoteToolClient:
    """
    initialize → list_tools → call_tool against one tool server.

    A session may be injected (tests, or callers managing their own
    transport); otherwise connect() spawns the configured command.
    """

    def __init__(
        self,
        name: str,
        config: RemoteSourceConfig,
        timeout: float = 30.0,
        session: ClientSession | None = None,
    ) -> None:
        self.name = name
        self.config = config
        self.timeout = timeout
        self._session = session
        self._stack: AsyncExitStack | None = None
        self._lock = asyncio.Lock()
        self._connected = session is not None

    @property
    def connected(self) -> bool:
        return self._connected

    async def __aenter__(self) -> "RemoteToolClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """
        Spawn the server and run the initialize handshake.
        Raises ToolUnavailable if the process cannot be started or answered.
        """
        if self._session is not None:
            self._connected = True
            return

        env = {**(self.config.env or {}), **self.config.credentials}
        params = StdioServerParameters(
            command=self.config.command,
            args=list(self.config.args),
            env=env or None,
        )
        stack = AsyncExitStack()
        try:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await asyncio.wait_for(session.initialize(), self.timeout)
        except (TimeoutError, McpError, *_CONNECTION_ERRORS) as exc:
            await stack.aclose()
            raise ToolUnavailable(f"Could not start remote tool source '{self.name}': {exc}") from exc

        self._stack = stack
        self._session = session
        self._connected = True
        logger.info("Connected to remote tool source '%s' (%s).", self.name, self.config.command)

    async def close(self) -> None:
        self._connected = False
        if self._stack is None:
            return
        stack, self._stack = self._stack, None
        self._session = None
        try:
            await stack.aclose()
        except Exception as exc:
            logger.warning("Error while closing remote tool source '%s': %s", self.name, exc)
        logger.info("Disconnected from remote tool source '%s'.", self.name)

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------

    def _require_session(self) -> ClientSession:
        if not self._connected or self._session is None:
            raise ToolUnavailable(f"Remote tool source '{self.name}' is not connected.")
        return self._session

    def _lost(self, exc: BaseException) -> ToolUnavailable:
        self._connected = False
        logger.warning("Lost connection to remote tool source '%s': %s", self.name, exc)
        return ToolUnavailable(f"Remote tool source '{self.name}' is unavailable: {exc or type(exc).__name__}")

    async def list_tools(self) -> list[ToolDescriptor]:
        session = self._require_session()
        async with self._lock:
            try:
                result = await asyncio.wait_for(session.list_tools(), self.timeout)
            except TimeoutError as exc:
                raise ToolUnavailable(f"Remote tool source '{self.name}' did not list its tools in time.") from exc
            except McpError as exc:
                if exc.error.code == CONNECTION_CLOSED:
                    raise self._lost(exc) from exc
                raise ToolUnavailable(f"Remote tool source '{self.name}' refused list_tools: {exc.error.message}") from exc
            except _CONNECTION_ERRORS as exc:
                raise self._lost(exc) from exc
        return [
            ToolDescriptor.from_json_schema(tool.name, tool.description or "", tool.inputSchema)
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        """
        Invoke one remote tool and return its text result.

        Raises ToolUnavailable when the connection is gone (and keeps failing
        fast afterwards), ToolTimeout on expiry, ToolExecutionError when the
        server reports an error.
        """
        session = self._require_session()

        async def on_progress(progress: float, total: float | None, message: str | None) -> None:
            logger.info(
                "[%s:%s] progress %s%s%s",
                self.name,
                name,
                progress,
                f"/{total}" if total is not None else "",
                f": {message}" if message else "",
            )

        async with self._lock:
            try:
                result = await asyncio.wait_for(
                    session.call_tool(name, arguments, progress_callback=on_progress),
                    self.timeout,
                )
            except TimeoutError as exc:
                raise ToolTimeout(f"Remote tool '{name}' did not answer within {self.timeout:g}s.") from exc
            except McpError as exc:
                if exc.error.code == CONNECTION_CLOSED:
                    raise self._lost(exc) from exc
                raise ToolExecutionError(f"Remote tool '{name}' failed: {exc.error.message}") from exc
            except _CONNECTION_ERRORS as exc:
                raise self._lost(exc) from exc

        text = format_result(result)
        if getattr(result, "isError", False):
            raise ToolExecutionError(text or f"Remote tool '{name}' reported an error.")
        return text


class RemoteToolProxy(Tool):
    """Exposes one remote tool, possibly under a namespaced name."""

    def __init__(self, client: RemoteToolClient, descriptor: ToolDescriptor, remote_name: str | None = None) -> None:
        super().__init__(descriptor)
        self._client = client
        self._remote_name = remote_name or descriptor.name

    async def execute(self, arguments: dict[str, Any]) -> str:
        return await self._client.call_tool(self._remote_name, arguments)
