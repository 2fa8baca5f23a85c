"""
Adapters for the external agent services.

The turn controller only needs two things from an agent: a stream of normalized
events for one prompt against an optional context, and a way to interrupt it. Claude
Code is driven through the Claude Agent SDK, whose typed messages are normalized here.
Codex is driven as a command line tool in its JSON streaming mode; each JSON line
becomes one ``AgentEvent``.
"""

import asyncio
import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKError,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolUseBlock,
    UserMessage,
    query,
)

from agentbridge.agents.cancellation import CancellationToken
from agentbridge.config.constants import CLAUDE_MAX_TURNS, LOGGER_NAME
from agentbridge.exceptions import AgentBackendError
from agentbridge.models.agent_events import AgentEvent, AgentEventKind

logger = logging.getLogger(LOGGER_NAME)

# JSON lines from the agents can carry whole file contents
STREAM_LINE_LIMIT = 16 * 1024 * 1024
STDERR_TAIL = 500

_STREAM_END = object()

_MESSAGE_TYPES = {
    SystemMessage: "system",
    AssistantMessage: "assistant",
    UserMessage: "user",
    ResultMessage: "result",
}


class AgentBackend(ABC):
    """Interface to one external agent service."""

    name: str = "agent"

    @abstractmethod
    def stream(
        self, prompt: str, context_id: Optional[str], token: CancellationToken
    ) -> AsyncIterator[AgentEvent]:
        """
        Stream the events of one turn.

        Args:
            prompt: Text sent to the agent
            context_id: Context to resume, or None to start a new one
            token: Cancellation token; the backend must stop promptly once it fires

        Yields:
            AgentEvent: Normalized chunks in the order the agent produced them
        """

    def interrupt(self) -> None:
        """Stop whatever the agent is currently doing."""


class SubprocessAgentBackend(AgentBackend):
    """Runs an agent CLI per turn and parses its JSON-lines output."""

    def __init__(self, command: str, workspace_dir: Optional[Path] = None):
        self.command = command
        self.workspace_dir = workspace_dir
        self._process: Optional[asyncio.subprocess.Process] = None

    @abstractmethod
    def build_command(self, prompt: str, context_id: Optional[str]) -> List[str]:
        """Return the argv for one turn."""

    @abstractmethod
    def parse_event(self, raw: Dict[str, Any]) -> AgentEvent:
        """Normalize one decoded JSON line."""

    async def stream(
        self, prompt: str, context_id: Optional[str], token: CancellationToken
    ) -> AsyncIterator[AgentEvent]:
        argv = self.build_command(prompt, context_id)
        logger.info(f"[{self.name}] Starting agent process (context: {context_id or 'new'})")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.workspace_dir) if self.workspace_dir else None,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            raise AgentBackendError(f"Could not start {self.command}: {e}") from e

        self._process = process
        token.add_callback(lambda: self._terminate(process))
        stderr_task = asyncio.ensure_future(process.stderr.read())

        try:
            async for line in process.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"[{self.name}] Skipping non-JSON output: {line[:200]!r}")
                    continue
                if isinstance(raw, dict):
                    yield self.parse_event(raw)

            return_code = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            if return_code != 0 and not token.cancelled:
                raise AgentBackendError(
                    f"{self.name} exited with code {return_code}: {stderr[-STDERR_TAIL:]}"
                )
        finally:
            if process.returncode is None:
                self._terminate(process, kill=True)
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()
            if self._process is process:
                self._process = None

    def interrupt(self) -> None:
        if self._process is not None:
            self._terminate(self._process)

    def _terminate(self, process: asyncio.subprocess.Process, kill: bool = False) -> None:
        if process.returncode is not None:
            return
        try:
            if kill:
                process.kill()
            else:
                logger.info(f"[{self.name}] Interrupting agent process {process.pid}")
                process.terminate()
        except ProcessLookupError:
            pass


class ClaudeAgentBackend(AgentBackend):
    """
    Claude Code through the Claude Agent SDK.

    The SDK stream is consumed by a single pump task that owns it from start to finish,
    since the SDK's task groups must be entered and exited by the same task. The pump
    forwards messages through a queue; cancelling the token cancels the pump, which
    shuts the SDK's CLI process down.
    """

    name = "claude"

    def __init__(self, workspace_dir: Optional[Path] = None, model: Optional[str] = None,
                 max_turns: int = CLAUDE_MAX_TURNS, cli_path: Optional[str] = None):
        self.workspace_dir = workspace_dir
        self.model = model
        self.max_turns = max_turns
        self.cli_path = cli_path
        self._pump_task: Optional[asyncio.Task] = None

    def build_options(self, context_id: Optional[str]) -> ClaudeAgentOptions:
        options = ClaudeAgentOptions(
            cwd=str(self.workspace_dir) if self.workspace_dir else None,
            max_turns=self.max_turns,
            resume=context_id,
            model=self.model,
        )
        if self.cli_path:
            options.cli_path = self.cli_path
        return options

    def parse_message(self, message: Any) -> AgentEvent:
        raw = _message_record(message)

        if isinstance(message, SystemMessage):
            session_id = (message.data or {}).get("session_id")
            if message.subtype == "init":
                return AgentEvent(kind=AgentEventKind.CONTEXT_STARTED, context_id=session_id, raw=raw)
            return AgentEvent(kind=AgentEventKind.UNKNOWN, context_id=session_id, raw=raw)

        if isinstance(message, AssistantMessage):
            text = None
            has_tool_use = False
            for block in message.content:
                if isinstance(block, TextBlock) and block.text:
                    text = block.text
                elif isinstance(block, ToolUseBlock):
                    has_tool_use = True
            kind = AgentEventKind.TOOL_USE if has_tool_use and text is None else AgentEventKind.ASSISTANT
            return AgentEvent(kind=kind, text=text, raw=raw)

        if isinstance(message, UserMessage):
            return AgentEvent(kind=AgentEventKind.USER, raw=raw)

        if isinstance(message, ResultMessage):
            text = message.result if isinstance(message.result, str) and message.result else None
            if message.is_error:
                return AgentEvent(kind=AgentEventKind.ERROR, text=text or message.subtype,
                                  context_id=message.session_id, raw=raw)
            return AgentEvent(kind=AgentEventKind.RESULT, text=text, context_id=message.session_id, raw=raw)

        return AgentEvent(kind=AgentEventKind.UNKNOWN, raw=raw)

    async def stream(
        self, prompt: str, context_id: Optional[str], token: CancellationToken
    ) -> AsyncIterator[AgentEvent]:
        logger.info(f"[{self.name}] Starting agent query (context: {context_id or 'new'})")
        messages: "asyncio.Queue[Any]" = asyncio.Queue()
        pump = asyncio.ensure_future(self._pump(prompt, context_id, messages))
        self._pump_task = pump
        token.add_callback(pump.cancel)

        try:
            while True:
                item = await messages.get()
                if item is _STREAM_END:
                    return
                if isinstance(item, Exception):
                    raise item
                yield self.parse_message(item)
        finally:
            if not pump.done():
                pump.cancel()
                await asyncio.wait({pump})
            if self._pump_task is pump:
                self._pump_task = None

    async def _pump(self, prompt: str, context_id: Optional[str], messages: "asyncio.Queue[Any]") -> None:
        try:
            async for message in query(prompt=prompt, options=self.build_options(context_id)):
                messages.put_nowait(message)
        except ClaudeSDKError as e:
            messages.put_nowait(AgentBackendError(f"{self.name} failed: {e}"))
        except Exception as e:
            logger.error(f"[{self.name}] Unexpected error from agent query: {e}", exc_info=True)
            messages.put_nowait(e)
        finally:
            messages.put_nowait(_STREAM_END)

    def interrupt(self) -> None:
        if self._pump_task is not None and not self._pump_task.done():
            logger.info(f"[{self.name}] Interrupting agent query")
            self._pump_task.cancel()


def _message_record(message: Any) -> Dict[str, Any]:
    """JSON-ready record of an SDK message, tagged with a ``type`` like the CLI's stream-json."""
    record = dataclasses.asdict(message) if dataclasses.is_dataclass(message) else {}
    record["type"] = _MESSAGE_TYPES.get(type(message), type(message).__name__)
    return record


class CodexBackend(SubprocessAgentBackend):
    """Codex ``exec`` with JSON event output."""

    name = "codex"

    def __init__(self, command: str = "codex", workspace_dir: Optional[Path] = None,
                 sandbox: str = "workspace-write"):
        super().__init__(command, workspace_dir)
        self.sandbox = sandbox

    def build_command(self, prompt: str, context_id: Optional[str]) -> List[str]:
        argv = [self.command, "exec", "--json", "--skip-git-repo-check", "--sandbox", self.sandbox]
        if context_id:
            argv += ["resume", context_id]
        argv.append(prompt)
        return argv

    def parse_event(self, raw: Dict[str, Any]) -> AgentEvent:
        event_type = raw.get("type") or ""

        if event_type == "thread.started":
            return AgentEvent(kind=AgentEventKind.CONTEXT_STARTED, context_id=raw.get("thread_id"), raw=raw)

        if event_type.startswith("item."):
            item = raw.get("item") or {}
            if item.get("type") == "agent_message":
                text = item.get("text") if event_type == "item.completed" else None
                return AgentEvent(kind=AgentEventKind.ASSISTANT, text=text or None, raw=raw)
            return AgentEvent(kind=AgentEventKind.TOOL_USE, raw=raw)

        if event_type == "turn.completed":
            return AgentEvent(kind=AgentEventKind.RESULT, raw=raw)

        if event_type == "turn.failed":
            message = (raw.get("error") or {}).get("message")
            return AgentEvent(kind=AgentEventKind.ERROR, text=message or "Codex turn failed", raw=raw)

        if event_type == "error":
            return AgentEvent(kind=AgentEventKind.ERROR, text=raw.get("message") or "Codex error", raw=raw)

        return AgentEvent(kind=AgentEventKind.UNKNOWN, raw=raw)
