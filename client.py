import sys
import json
import time
import asyncio
import logging
import shutil
import argparse
from typing import Any, Awaitable, Callable, Dict, Iterable, List, NoReturn, Optional, Set, Tuple
from dataclasses import dataclass, field
from contextlib import AsyncExitStack

import anyio
import httpx
import litellm
import openai
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import CONNECTION_CLOSED

from config import (
    AppConfig,
    ConfigurationError,
    DEFAULT_MCP_PORT,
    Metrics,
    parse_port,
)
from conversation import Conversation, Message, ToolCallRequest, generate_tool_call_id

QUIT_COMMAND = "quit"

logger = logging.getLogger(__name__)


class AgentError(Exception):
    pass


class MCPConnectionError(AgentError):
    """Handshake with the MCP server failed; fatal to startup."""


class CatalogUnavailable(MCPConnectionError):
    """The tool catalog could not be resolved; no partial catalog is kept."""


class TransportError(AgentError):
    """The connection to the MCP server broke mid-session."""


class RemoteToolError(AgentError):
    """The tool ran on the server and reported an error."""


class UnknownToolError(AgentError):
    pass


class ArgumentDecodeError(AgentError):
    pass


class ModelProviderError(AgentError):
    pass


TRANSPORT_EXCEPTIONS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    httpx.HTTPError,
    OSError,
)


ANSI_CODES = {
    'reset': 0, 'bold': 1, 'red': 31, 'green': 32, 'yellow': 33,
    'blue': 34, 'magenta': 35, 'cyan': 36, 'gray': 90,
}

QUIET_LOGGERS = ('httpx', 'httpcore', 'anyio', 'mcp', 'openai', 'LiteLLM', 'litellm')


class AnsiTheme:
    """Console styling; a disabled theme hands text back untouched."""

    def __init__(self, enabled: bool = True, width: Optional[int] = None):
        self.enabled = enabled
        self.width = width

    def style(self, text: str, *styles: str) -> str:
        codes = ';'.join(str(ANSI_CODES[s]) for s in styles if s in ANSI_CODES)
        if not self.enabled or not text or not codes:
            return text
        return f"\x1b[{codes}m{text}\x1b[0m"

    def label(self, text: str, color: str = 'cyan') -> str:
        return self.style(text, 'bold', color)

    def sep(self, title: Optional[str] = None, char: str = "─") -> str:
        width = self.width or shutil.get_terminal_size(fallback=(80, 20)).columns
        width = max(20, min(width, 120))
        line = f" {title} ".center(width, char) if title else char * width
        return self.style(line, 'gray')


def format_exception(exc: BaseException, limit: int = 1024) -> str:
    name = type(exc).__name__
    text = str(exc)[:limit]
    return f"{name}: {text}" if text else name


def pretty_json(obj: Any) -> str:
    try:
        return json.dumps(obj, indent=2, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(obj)


def configure_logging(config: AppConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(levelname)s %(message)s",
        force=True
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    litellm.suppress_debug_info = True


async def cancel_pending(*tasks: "asyncio.Future[Any]") -> None:
    pending = [t for t in tasks if not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def create_theme(config: AppConfig) -> AnsiTheme:
    enabled = config.use_color and sys.stdout.isatty()
    return AnsiTheme(enabled=enabled)


# ---------------------------
# Tool catalog
# ---------------------------
@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_function_spec(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def to_tool_declaration(tool: Any) -> ToolDeclaration:
    """Map one MCP tool description onto an OpenAI function declaration.

    The name and description are copied verbatim. The input schema becomes the
    ``parameters`` object; a missing schema means "no arguments". Schemas the
    provider cannot accept raise :class:`CatalogUnavailable`.
    """
    name = getattr(tool, "name", None)
    if not isinstance(name, str) or not name:
        raise CatalogUnavailable(f"Tool without a usable name: {tool!r}")

    schema = getattr(tool, "inputSchema", None) or getattr(tool, "input_schema", None)
    if schema is None:
        parameters: Dict[str, Any] = {"type": "object", "properties": {}}
    elif not isinstance(schema, dict):
        raise CatalogUnavailable(f"Tool '{name}' schema must be an object")
    else:
        parameters = dict(schema)
        if parameters.get("type", "object") != "object":
            raise CatalogUnavailable(f"Tool '{name}' schema must describe an object, got {parameters['type']!r}")
        parameters["type"] = "object"
        if "properties" not in parameters:
            parameters["properties"] = {}
        elif not isinstance(parameters["properties"], dict):
            raise CatalogUnavailable(f"Tool '{name}' properties must be an object")

    return ToolDeclaration(
        name=name,
        description=getattr(tool, "description", None) or "",
        parameters=parameters,
    )


def build_catalog(tools: Iterable[Any]) -> List[ToolDeclaration]:
    catalog: List[ToolDeclaration] = []
    seen: Set[str] = set()
    for tool in tools:
        declaration = to_tool_declaration(tool)
        if declaration.name in seen:
            raise CatalogUnavailable(f"Duplicate tool name in catalog: '{declaration.name}'")
        seen.add(declaration.name)
        catalog.append(declaration)
    return catalog


def format_tool_result(result: Any, max_chars: int = 8000) -> Tuple[str, bool]:
    """Flatten an MCP tool result into text for the model; returns (text, truncated)."""
    content = getattr(result, "content", None)
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if getattr(item, "type", None) == "text" and hasattr(item, "text"):
                parts.append(item.text)
            else:
                dump = getattr(item, "model_dump", None)
                parts.append(pretty_json(dump(mode="json") if callable(dump) else item))
        text = "\n".join(parts).strip()
    else:
        text = pretty_json(result)

    if not text:
        return "[tool returned empty content]", False
    if len(text) > max_chars:
        return text[:max_chars] + "\n… [truncated]", True
    return text, False


# ---------------------------
# MCP session
# ---------------------------
class MCPSession:
    """One streamable-HTTP connection to an MCP server and its tool catalog.

    Transport failures reported by the MCP client (through the session's
    message handler) or observed on a failed request set the ``closed``
    channel. Requests still in flight when that happens fail with
    :class:`TransportError`.
    """

    def __init__(self, url: str):
        self.url = url
        self.exit_stack = AsyncExitStack()
        self.session: Optional[ClientSession] = None
        self.catalog: List[ToolDeclaration] = []
        self.close_reason: Optional[str] = None
        self._closed = asyncio.Event()
        self._cleaned_up = False
        self._cleanup_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def tool_names(self) -> Set[str]:
        return {d.name for d in self.catalog}

    async def connect(self) -> List[ToolDeclaration]:
        try:
            read, write, _ = await self.exit_stack.enter_async_context(
                streamablehttp_client(self.url)
            )
            session = await self.exit_stack.enter_async_context(
                ClientSession(read, write, message_handler=self._handle_message)
            )
            self.session = session
            await self._until_closed(session.initialize())
            logger.info("Connected to MCP server at %s", self.url)
        except Exception as e:
            logger.error("Error connecting to MCP server at %s: %r", self.url, e)
            await self.cleanup()
            raise MCPConnectionError(f"Failed to connect to MCP server at {self.url}: {format_exception(e)}") from e

        try:
            self.catalog = await self.resolve_catalog()
        except CatalogUnavailable:
            await self.cleanup()
            raise
        logger.info("Loaded %d tools from %s", len(self.catalog), self.url)
        return self.catalog

    async def resolve_catalog(self) -> List[ToolDeclaration]:
        if self.session is None or self.closed:
            raise CatalogUnavailable("Cannot list tools: not connected to an MCP server")
        try:
            response = await self._until_closed(self.session.list_tools())
        except Exception as e:
            raise CatalogUnavailable(f"Failed to list tools: {format_exception(e)}") from e
        return build_catalog(response.tools)

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        if self.session is None or self.closed:
            raise TransportError("MCP session is not connected")
        try:
            result = await self._until_closed(self.session.call_tool(name, arguments=arguments))
        except McpError as e:
            if e.error.code == CONNECTION_CLOSED:
                self._signal_closed(e)
                raise TransportError(f"MCP connection closed: {e.error.message}") from e
            raise RemoteToolError(e.error.message) from e
        except TRANSPORT_EXCEPTIONS as e:
            self._signal_closed(e)
            raise TransportError(f"MCP transport failed: {format_exception(e)}") from e
        except TransportError:
            raise
        except Exception as e:
            # e.g. structured content that fails the tool's declared output schema
            raise RemoteToolError(format_exception(e)) from e

        if getattr(result, "isError", False):
            raise RemoteToolError(format_tool_result(result)[0])
        return result

    async def wait_closed(self) -> Optional[str]:
        await self._closed.wait()
        return self.close_reason

    async def cleanup(self) -> None:
        async with self._cleanup_lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True
            try:
                await self.exit_stack.aclose()
            except Exception as e:
                msg = str(e)
                benign = any(s in msg for s in (
                    "cancel scope", "Event loop is closed", "already closed",
                    "attached to a different loop", "cannot schedule new futures",
                ))
                if not benign:
                    logger.warning("Cleanup warning for '%s': %r", self.url, e)
            finally:
                self.session = None
                self._signal_closed("session closed")

    async def _handle_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            logger.warning("MCP transport error: %r", message)
            self._signal_closed(message)

    def _signal_closed(self, reason: Any) -> None:
        if self._closed.is_set():
            return
        self.close_reason = format_exception(reason) if isinstance(reason, BaseException) else str(reason)
        self._closed.set()

    async def _until_closed(self, coro: Awaitable[Any]) -> Any:
        request = asyncio.ensure_future(coro)
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({request, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await cancel_pending(request, closed)
        if request in done:
            return request.result()
        raise TransportError(f"MCP transport closed: {self.close_reason}")


# ---------------------------
# Tool invocation
# ---------------------------
@dataclass
class ToolCallResult:
    tool_call_id: str
    name: str
    content: str
    error: Optional[str] = None
    duration: float = 0.0
    truncated: bool = False

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def failure(cls, tool_call_id: str, name: str, error: str, duration: float = 0.0) -> "ToolCallResult":
        return cls(
            tool_call_id=tool_call_id,
            name=name,
            content=f"ERROR: {error}",
            error=error,
            duration=duration,
        )


class ToolInvoker:
    def __init__(self, session: MCPSession, max_chars: int = 8000):
        self.session = session
        self.max_chars = max_chars

    @staticmethod
    def decode_arguments(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, dict):
            return raw
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return {}
        try:
            arguments = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ArgumentDecodeError(f"Invalid JSON arguments: {str(e)[:100]}") from e
        if not isinstance(arguments, dict):
            raise ArgumentDecodeError(f"Arguments must be a JSON object, got {type(arguments).__name__}")
        return arguments

    async def invoke(self, tool_call_id: str, name: str, arguments: Dict[str, Any]) -> ToolCallResult:
        """Run one tool call. Tool-level failures come back as error results;
        :class:`TransportError` propagates."""
        start = time.monotonic()
        try:
            if name not in self.session.tool_names:
                raise UnknownToolError(f"Tool '{name}' is not in the server catalog")
            result = await self.session.call_tool(name, arguments)
        except (UnknownToolError, RemoteToolError) as e:
            duration = time.monotonic() - start
            logger.warning("Tool '%s' failed: %s", name, e)
            return ToolCallResult.failure(tool_call_id, name, str(e), duration)

        duration = time.monotonic() - start
        content, truncated = format_tool_result(result, self.max_chars)
        logger.info("Tool '%s' finished in %.2fs", name, duration)
        return ToolCallResult(
            tool_call_id=tool_call_id,
            name=name,
            content=content,
            duration=duration,
            truncated=truncated,
        )


# ---------------------------
# Orchestration
# ---------------------------
def parse_assistant_message(response: Any) -> Message:
    message = response.choices[0].message
    tool_calls = []
    for i, tc in enumerate(getattr(message, "tool_calls", None) or []):
        func = tc.function
        tool_calls.append(ToolCallRequest(
            id=getattr(tc, "id", None) or generate_tool_call_id(i),
            name=getattr(func, "name", None) or "",
            arguments=getattr(func, "arguments", None) or "",
        ))
    return Message.assistant(getattr(message, "content", None), tuple(tool_calls))


class LLMOrchestrator:
    """Drives one user query through the model and at most ``max_tool_depth``
    rounds of tool calls, and returns the assembled answer text."""

    def __init__(self, config: AppConfig, session: MCPSession, metrics: Optional[Metrics] = None,
                 invoker: Optional[ToolInvoker] = None):
        self.config = config
        self.session = session
        self.metrics = metrics or Metrics()
        self.invoker = invoker or ToolInvoker(session, config.tool_result_max_chars)
        self.conversation = Conversation()

    async def process_query(self, user_text: str) -> str:
        self.conversation.append(Message.user(user_text))
        fragments: List[str] = []

        reply = await self._complete(allow_tools=True)
        await self._handle_reply(reply, fragments, depth=1)

        return "\n".join(fragments)

    async def _handle_reply(self, reply: Message, fragments: List[str], depth: int) -> None:
        if reply.content:
            fragments.append(reply.content)

        if not reply.tool_calls or depth > self.config.max_tool_depth:
            if reply.tool_calls:
                logger.debug("Ignoring %d tool call(s) past depth %d", len(reply.tool_calls), self.config.max_tool_depth)
            self.conversation.append(Message.assistant(reply.content or ""))
            return

        for index, call in enumerate(reply.tool_calls):
            result = await self._dispatch(call, fragments)

            # one assistant turn per call keeps each request directly followed by its result
            self.conversation.append(Message.assistant(reply.content if index == 0 else None, (call,)))
            self.conversation.append(Message.tool(call.id, result.content))

            follow_up = await self._complete(allow_tools=depth < self.config.max_tool_depth)
            await self._handle_reply(follow_up, fragments, depth + 1)

    async def _dispatch(self, call: ToolCallRequest, fragments: List[str]) -> ToolCallResult:
        try:
            arguments = self.invoker.decode_arguments(call.arguments)
        except ArgumentDecodeError as e:
            logger.warning("Skipping tool '%s': %s", call.name, e)
            fragments.append(f"[Skipped tool {call.name}: {e}]")
            return ToolCallResult.failure(call.id, call.name, str(e))

        fragments.append(f"[Calling tool {call.name} with args {json.dumps(arguments, ensure_ascii=False)}]")
        result = await self.invoker.invoke(call.id, call.name, arguments)
        if result.is_error:
            fragments.append(f"[Tool {call.name} failed: {result.error}]")
        return result

    async def _complete(self, allow_tools: bool) -> Message:
        messages: List[Dict[str, Any]] = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.extend(self.conversation.to_dicts(self.config.history_max_messages))

        kwargs: Dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            **self.config.provider_kwargs(),
        }
        if allow_tools and self.session.catalog:
            kwargs["tools"] = [d.to_function_spec() for d in self.session.catalog]
            kwargs["tool_choice"] = "auto"

        try:
            response = await litellm.acompletion(**kwargs)
        except openai.APIError as e:
            raise ModelProviderError(format_exception(e)) from e

        usage = getattr(response, "usage", None)
        self.metrics.update(
            getattr(usage, "prompt_tokens", 0) or 0,
            getattr(usage, "completion_tokens", 0) or 0,
        )
        return parse_assistant_message(response)


# ---------------------------
# Session lifecycle & CLI
# ---------------------------
async def prompt_line(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


class SessionManager:
    def __init__(self, config: AppConfig, theme: AnsiTheme, metrics: Optional[Metrics] = None,
                 read_line: Optional[Callable[[str], Awaitable[str]]] = None,
                 session_factory: Callable[[str], MCPSession] = MCPSession):
        self.config = config
        self.theme = theme
        self.metrics = metrics or Metrics()
        self.read_line = read_line or prompt_line
        self.session_factory = session_factory
        self.session: Optional[MCPSession] = None
        self.orchestrator: Optional[LLMOrchestrator] = None

    async def connect(self, endpoint: str) -> None:
        self.session = self.session_factory(endpoint)
        catalog = await self.session.connect()
        self.orchestrator = LLMOrchestrator(self.config, self.session, self.metrics)
        print(f"{self.theme.style('✅ Connected', 'green')} to {endpoint} with tools: {[d.name for d in catalog]}")

    async def interactive_loop(self) -> None:
        if self.orchestrator is None:
            raise MCPConnectionError("Not connected to an MCP server")

        print(self.theme.style(f"Type your queries or '{QUIT_COMMAND}' to exit.", 'gray'))
        while True:
            try:
                line = await self.read_line("\n" + self.theme.label("[You]", "green") + " ")
            except EOFError:
                print("\n👋 Bye.")
                break

            query = line.strip()
            if query.lower() == QUIT_COMMAND:
                print("👋 Bye.")
                break
            if not query:
                continue

            try:
                answer = await self.orchestrator.process_query(query)
            except ModelProviderError as e:
                logger.debug("Model request failed", exc_info=True)
                print(self.theme.style(f"[Error] {e}", 'red'))
                continue
            print("\n" + self.theme.label("[Assistant]", "cyan") + " " + answer)

    async def run(self) -> None:
        """Run the interactive loop until quit, or until the transport closes."""
        if self.session is None:
            raise MCPConnectionError("Not connected to an MCP server")

        loop_task = asyncio.ensure_future(self.interactive_loop())
        closed_task = asyncio.ensure_future(self.session.wait_closed())
        try:
            done, _ = await asyncio.wait({loop_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await cancel_pending(loop_task, closed_task)

        if loop_task in done:
            loop_task.result()
            return

        print(self.theme.style("[Info] MCP transport closed.", 'yellow'))
        await self.cleanup()
        raise TransportError(f"MCP transport closed: {self.session.close_reason}")

    async def cleanup(self) -> None:
        if self.session is not None:
            await self.session.cleanup()


async def amain(config: AppConfig, theme: AnsiTheme) -> None:
    metrics = Metrics()
    manager = SessionManager(config, theme, metrics)

    print(theme.sep("Azure OpenAI MCP Chat"))
    print(f"{theme.label('[Model]', 'magenta')} {config.model}")
    print(f"{theme.label('[Server]', 'magenta')} {config.mcp_url}")

    try:
        await manager.connect(config.mcp_url)
        await manager.run()
    finally:
        print("\n" + theme.label("[Info]", "blue") + " Cleaning up MCP connections...")
        await manager.cleanup()
        print(f"{theme.label('[Metrics]', 'magenta')} {metrics.summary()}")


class CLIArgumentParser(argparse.ArgumentParser):
    """Reports bad arguments with exit status 1."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = CLIArgumentParser(description="Interactive Azure OpenAI chat with MCP tools")
    parser.add_argument("--mcp-localhost-port", default=str(DEFAULT_MCP_PORT),
                        help=f"Port of the MCP server on localhost (default {DEFAULT_MCP_PORT})")
    parser.add_argument("--max-tokens", type=int, help="Max response tokens per model call")
    parser.add_argument("--max-tool-depth", type=int, help="Rounds of tool calls per query (default 1)")
    parser.add_argument("--history-max-messages", type=int, help="Send only the newest N messages (0=all)")
    parser.add_argument("--tool-result-max-chars", type=int, help="Truncate tool results to N characters")
    parser.add_argument("--system-prompt", help="System prompt text")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Logging level")
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI colors")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        port = parse_port(args.mcp_localhost_port)
    except ValueError:
        print("Invalid value for --mcp-localhost-port", file=sys.stderr)
        sys.exit(1)

    cli_args = {
        'mcp_port': port,
        'max_tokens': args.max_tokens,
        'max_tool_depth': args.max_tool_depth,
        'history_max_messages': args.history_max_messages,
        'tool_result_max_chars': args.tool_result_max_chars,
        'system_prompt': args.system_prompt,
        'log_level': args.log_level,
        'use_color': False if args.no_color else None,
    }
    config = AppConfig.load(cli_args=cli_args)
    configure_logging(config)
    theme = create_theme(config)

    try:
        config.validate()
        asyncio.run(amain(config, theme))
    except (ConfigurationError, MCPConnectionError, TransportError) as e:
        logger.debug("Fatal error", exc_info=True)
        print(f"[Fatal] {e}", file=sys.stderr)
        sys.exit(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\n[Info] Terminated")


if __name__ == "__main__":
    main()
