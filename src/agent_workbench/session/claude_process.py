"""Agent process backed by a long-lived Claude CLI subprocess.

The CLI runs with stream-json on both stdin and stdout. User messages are
written as JSON lines; the CLI answers with assistant/user/result events
and, because permission prompts are routed to stdio, with
``control_request`` events that must be answered before the tool runs.
"""

import asyncio
import json
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Deque, Dict, List, Optional

from ..core.config import AgentDefinition, SessionConfig
from ..errors import AgentProcessError
from ..permissions.models import ToolKind, classify_tool_call
from .backend import (
    AgentProcess,
    PermissionAsk,
    ProcessFactory,
    ProcessUpdate,
    TextDelta,
    ThinkingDelta,
    TodoUpdate,
    ToolCallUpdate,
    TurnResult,
)
from .models import TodoItem, ToolCall, map_tool_status

logger = logging.getLogger(__name__)

# Tool results can carry whole files; the default 64KiB line limit is too small
STREAM_LIMIT = 16 * 1024 * 1024
STDERR_TAIL_LINES = 50
CLOSE_TIMEOUT = 5


@dataclass
class TurnState:
    """Accumulated state of one turn while parsing the stream."""
    session_token: Optional[str] = None
    text_chunks: List[str] = field(default_factory=list)
    tool_calls: Dict[str, ToolCall] = field(default_factory=dict)
    written_files: List[str] = field(default_factory=list)


def parse_stream_event(event: Dict[str, Any], state: TurnState) -> List[ProcessUpdate]:
    """
    Translate one stream-json event into process updates.

    Args:
        event: Decoded JSON event
        state: Turn accumulator, updated in place

    Returns:
        Updates to hand to the session manager, possibly empty
    """
    event_type = event.get("type")
    updates: List[ProcessUpdate] = []

    if event_type == "system":
        if event.get("subtype") == "init" and event.get("session_id"):
            state.session_token = event["session_id"]

    elif event_type == "assistant":
        for block in event.get("message", {}).get("content", []):
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text", "")
                state.text_chunks.append(text)
                updates.append(TextDelta(text))
            elif block_type == "thinking":
                updates.append(ThinkingDelta(block.get("thinking", "")))
            elif block_type == "tool_use":
                tool_name = block.get("name", "unknown")
                tool_input = block.get("input") or {}
                kind, locations = classify_tool_call(tool_name, tool_input)
                call = ToolCall(
                    id=block.get("id", ""),
                    name=tool_name,
                    kind=kind.value,
                    status=map_tool_status("pending"),
                    title=tool_input.get("description") if isinstance(tool_input, dict) else None,
                    raw_input=tool_input if isinstance(tool_input, dict) else {},
                    locations=[loc.path for loc in locations],
                )
                state.tool_calls[call.id] = call
                updates.append(ToolCallUpdate(call))
                if tool_name == "TodoWrite":
                    todos = tool_input.get("todos", []) if isinstance(tool_input, dict) else []
                    updates.append(TodoUpdate([TodoItem.from_dict(t) for t in todos]))

    elif event_type == "user":
        content = event.get("message", {}).get("content", [])
        if isinstance(content, list):
            for block in content:
                if block.get("type") != "tool_result":
                    continue
                call = state.tool_calls.get(block.get("tool_use_id", ""))
                if call is None:
                    continue
                call.status = map_tool_status("failed" if block.get("is_error") else "completed")
                if call.status.value == "success" and call.kind == ToolKind.EDIT.value:
                    for path in call.locations:
                        if path not in state.written_files:
                            state.written_files.append(path)
                updates.append(ToolCallUpdate(call))

    elif event_type == "control_request":
        request = event.get("request", {})
        if request.get("subtype") == "can_use_tool":
            updates.append(PermissionAsk(
                request_id=event.get("request_id", ""),
                tool_name=request.get("tool_name", "unknown"),
                tool_input=request.get("input") or {},
                tool_use_id=request.get("tool_use_id"),
            ))
        else:
            logger.debug(f"Ignoring control request subtype {request.get('subtype')}")

    elif event_type == "result":
        result_text = event.get("result")
        if not isinstance(result_text, str) or not result_text:
            result_text = "".join(state.text_chunks)
        updates.append(TurnResult(
            content=result_text,
            is_error=bool(event.get("is_error")),
            session_token=event.get("session_id") or state.session_token,
            written_files=list(state.written_files),
        ))

    else:
        logger.debug(f"Unknown stream-json event type: {event_type}")

    return updates


class ClaudeCLIProcess(AgentProcess):
    """One ``claude`` subprocess per agent session."""

    def __init__(
        self,
        agent: AgentDefinition,
        executable: str = "claude",
        model: Optional[str] = None,
        extra_args: Optional[List[str]] = None,
        startup_timeout: int = 60,
    ):
        self.agent = agent
        self.executable = executable
        self.model = model
        self.extra_args = extra_args or []
        self.startup_timeout = startup_timeout
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._closing = False

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def build_command(self, resume_token: Optional[str] = None) -> List[str]:
        cmd = [
            self.executable,
            "--print",
            "--output-format", "stream-json",
            "--input-format", "stream-json",
            "--verbose",
            "--permission-prompt-tool", "stdio",
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        if self.agent.prompt:
            cmd.extend(["--append-system-prompt", self.agent.prompt])
        if self.agent.mcp_servers:
            servers = {}
            for server in self.agent.mcp_servers:
                spec = dict(server)
                name = spec.pop("name", None) or f"server{len(servers)}"
                servers[name] = spec
            cmd.extend(["--mcp-config", json.dumps({"mcpServers": servers})])
        if resume_token:
            cmd.extend(["--resume", resume_token])
        cmd.extend(self.extra_args)
        return cmd

    async def start(
        self,
        working_directory: Path,
        resume_token: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        cmd = self.build_command(resume_token)
        process_env = os.environ.copy()
        if env:
            process_env.update(env)
        logger.debug(f"Starting agent {self.agent.id}: {' '.join(cmd[:3])} ... in {working_directory}")
        try:
            self._process = await asyncio.wait_for(
                asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(working_directory),
                    env=process_env,
                    limit=STREAM_LIMIT,
                ),
                timeout=self.startup_timeout,
            )
        except FileNotFoundError as e:
            raise AgentProcessError(f"{self.executable} not found on PATH") from e
        except (OSError, asyncio.TimeoutError) as e:
            raise AgentProcessError(f"Failed to start {self.executable}: {e!r}") from e

        self._cancelled = False
        self._closing = False
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._process.stderr))

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.debug(f"[{self.agent.id} stderr] {text}")

    async def _write(self, payload: Dict[str, Any]) -> None:
        if not self.is_running or self._process.stdin is None:
            raise AgentProcessError(f"Agent {self.agent.id} is not running")
        try:
            self._process.stdin.write((json.dumps(payload) + "\n").encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise AgentProcessError(f"Agent {self.agent.id} closed its input: {e}") from e

    async def prompt(self, content: str) -> AsyncIterator[ProcessUpdate]:
        await self._write({
            "type": "user",
            "message": {"role": "user", "content": [{"type": "text", "text": content}]},
        })

        state = TurnState()
        stdout = self._process.stdout
        while True:
            line = await stdout.readline()
            if not line:
                if self._cancelled or self._closing:
                    return
                await self._process.wait()
                tail = "\n".join(self._stderr_tail)
                raise AgentProcessError(
                    f"Agent process exited with code {self._process.returncode}"
                    + (f": {tail}" if tail else "")
                )

            text = line.decode(errors="replace").strip()
            if not text:
                continue
            try:
                event = json.loads(text)
            except (json.JSONDecodeError, ValueError):
                # Not JSON; CLI version mismatch or stray output, treat as raw text
                state.text_chunks.append(text + "\n")
                yield TextDelta(text + "\n")
                continue

            for update in parse_stream_event(event, state):
                yield update
                if isinstance(update, TurnResult):
                    return

    async def respond_permission(self, request_id, allow, tool_input=None, message=None):
        if not self.is_running:
            logger.debug(f"Dropping permission response {request_id}: agent {self.agent.id} not running")
            return
        if allow:
            decision = {"behavior": "allow", "updatedInput": tool_input or {}}
        else:
            decision = {"behavior": "deny", "message": message or "Permission denied by operator"}
        await self._write({
            "type": "control_response",
            "response": {
                "subtype": "success",
                "request_id": request_id,
                "response": decision,
            },
        })

    async def cancel(self) -> None:
        """Kill the in-flight claude CLI subprocess if one is running."""
        self._cancelled = True
        proc = self._process
        if proc and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        self._closing = True
        proc = self._process
        if proc is None:
            return
        if proc.returncode is None:
            if proc.stdin and not proc.stdin.is_closing():
                proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if self._stderr_task:
            await self._stderr_task


def claude_process_factory(config: SessionConfig) -> ProcessFactory:
    """Factory building a ClaudeCLIProcess per agent from session settings."""

    def factory(agent: AgentDefinition) -> AgentProcess:
        return ClaudeCLIProcess(
            agent,
            executable=agent.executable or config.executable,
            model=agent.model or config.default_model,
            extra_args=config.extra_args,
            startup_timeout=config.startup_timeout,
        )

    return factory
