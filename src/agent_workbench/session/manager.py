"""Agent session lifecycle.

At most one active session exists per agent. Each session owns two
channels: an inbound queue of prompts consumed by a worker task, and an
outbound queue of events pumped to the broadcaster, so prompts run one at
a time and a session's events are published in the order they happened.
Tool calls are authorized against stored grants; when no grant matches,
the turn waits (without timeout) for the operator's answer.
"""

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..core.events import (
    CancelledEvent,
    ChunkEvent,
    CompletionEvent,
    ErrorEvent,
    Event,
    EventBroadcaster,
    PermissionRequestEvent,
)
from ..core.registry import Registry
from ..errors import (
    AgentProcessError,
    InvalidInputError,
    NoWorkspaceSelectedError,
    SessionNotFoundError,
    SessionNotReadyError,
)
from ..permissions.grant_store import GrantStore
from ..permissions.matcher import PermissionMatcher
from ..permissions.models import ScopeOption, ToolCallRequest, classify_tool_call
from ..storage.base import Persistence
from .backend import (
    AgentProcess,
    PermissionAsk,
    ProcessFactory,
    TextDelta,
    ThinkingDelta,
    TodoUpdate,
    ToolCallUpdate,
    TurnResult,
)
from .models import AgentSession, PromptResult, SessionStatus, TodoItem, ToolCall

logger = logging.getLogger(__name__)

ALLOW_ONCE = "allow_once"
ALLOW_ALWAYS = "allow_always"
REJECT_ONCE = "reject_once"
REJECT_ALWAYS = "reject_always"

PERMISSION_OPTIONS = [
    {"option_id": ALLOW_ONCE, "label": "Allow once", "kind": "allow"},
    {"option_id": ALLOW_ALWAYS, "label": "Always allow", "kind": "allow"},
    {"option_id": REJECT_ONCE, "label": "Reject once", "kind": "reject"},
    {"option_id": REJECT_ALWAYS, "label": "Always reject", "kind": "reject"},
]
_OPTION_IDS = {option["option_id"] for option in PERMISSION_OPTIONS}


def _resolve(future: asyncio.Future, result: Any = None, error: Optional[BaseException] = None) -> None:
    # The caller may have stopped waiting (timeout or cancellation) mid-turn
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


@dataclass
class _PendingPermission:
    request: ToolCallRequest
    scopes: List[ScopeOption]
    future: asyncio.Future


@dataclass
class _PromptRequest:
    content: str
    future: asyncio.Future


@dataclass
class _SessionHandle:
    """A session plus its process, channels and in-flight bookkeeping."""
    session: AgentSession
    process: AgentProcess
    inbound: asyncio.Queue = field(default_factory=asyncio.Queue)
    outbound: asyncio.Queue = field(default_factory=asyncio.Queue)
    pending_permissions: Dict[str, _PendingPermission] = field(default_factory=dict)
    worker: Optional[asyncio.Task] = None
    pump: Optional[asyncio.Task] = None
    cancelled: bool = False


class AgentSessionManager:
    """Owns one long-running agent process per agent identity."""

    def __init__(
        self,
        registry: Registry,
        persistence: Persistence,
        grant_store: GrantStore,
        broadcaster: EventBroadcaster,
        process_factory: ProcessFactory,
        matcher: Optional[PermissionMatcher] = None,
    ):
        self.registry = registry
        self.persistence = persistence
        self.grant_store = grant_store
        self.broadcaster = broadcaster
        self.process_factory = process_factory
        self.matcher = matcher or PermissionMatcher()
        self._handles: Dict[str, _SessionHandle] = {}

    # Lifecycle

    async def start_session(
        self,
        agent_id: str,
        working_directory: Union[str, Path],
        resume_token: Optional[str] = None,
        project_path: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> AgentSession:
        """
        Return the agent's session for ``working_directory``, starting one if needed.

        An active session in the same directory is returned unchanged. One in
        a different directory is stopped first. Concurrent calls for the same
        agent are serialized, so only one process is ever spawned.

        Args:
            agent_id: Registered agent identity
            working_directory: Directory the agent process runs in
            resume_token: Protocol session to resume; defaults to the latest recorded one
            project_path: Project whose permission grants apply; defaults to working_directory
            env: Extra environment for a newly started process

        Raises:
            UnknownAgentError: agent_id is not registered
            AgentProcessError: The process failed to start; no session is kept
        """
        agent = self.registry.require_agent(agent_id)
        directory = str(Path(working_directory).resolve())
        project = str(Path(project_path).resolve()) if project_path else directory

        async with self.registry.lock_for(f"session:{agent_id}"):
            handle = self._handles.get(agent_id)
            if handle is not None:
                if handle.session.is_active and handle.session.working_directory == directory:
                    handle.session.project_path = project
                    return handle.session
                if handle.session.is_active:
                    logger.info(
                        f"Agent {agent_id} moving from {handle.session.working_directory} "
                        f"to {directory}; stopping old session"
                    )
                await self._teardown(handle)
                self._handles.pop(agent_id, None)

            token = resume_token or self.persistence.latest_session_token(agent_id)
            session = AgentSession(
                id=uuid.uuid4().hex,
                agent_id=agent_id,
                working_directory=directory,
                project_path=project,
                session_token=token,
            )
            handle = _SessionHandle(session=session, process=self.process_factory(agent))
            handle.pump = asyncio.create_task(self._pump(handle))

            try:
                await handle.process.start(Path(directory), token, env=env)
            except AgentProcessError as e:
                session.status = SessionStatus.ERROR
                logger.error(f"Failed to start session for agent {agent_id}: {e}")
                await self._emit(handle, ErrorEvent(agent_id=agent_id, error=str(e)))
                await handle.outbound.put(None)
                await handle.pump
                raise

            session.status = SessionStatus.READY
            handle.worker = asyncio.create_task(self._worker(handle))
            self._handles[agent_id] = handle
            self.registry.bind_conversation(agent_id, session.id)
            logger.info(
                f"Started session {session.id[:8]} for agent {agent_id} in {directory}"
                + (" (resuming)" if token else "")
            )
            return session

    async def stop_session(self, agent_id: str) -> None:
        """Stop the agent's session; a no-op when there is none."""
        async with self.registry.lock_for(f"session:{agent_id}"):
            handle = self._handles.pop(agent_id, None)
            if handle is None:
                return
            await self._teardown(handle)
            self.registry.bind_conversation(agent_id, None)
            logger.info(f"Stopped session {handle.session.id[:8]} for agent {agent_id}")

    async def stop_all(self) -> None:
        for agent_id in list(self._handles):
            await self.stop_session(agent_id)

    async def _teardown(self, handle: _SessionHandle) -> None:
        session = handle.session
        if session.is_active:
            session.status = SessionStatus.STOPPED
        handle.cancelled = True
        self._deny_pending(handle)
        await handle.process.close()

        await handle.inbound.put(None)
        if handle.worker is not None:
            await handle.worker
        await handle.outbound.put(None)
        if handle.pump is not None:
            await handle.pump

    # Queries

    def get_session(self, agent_id: str) -> Optional[AgentSession]:
        handle = self._handles.get(agent_id)
        return handle.session if handle else None

    def pending_permission_requests(self, agent_id: str) -> List[ToolCallRequest]:
        handle = self._handles.get(agent_id)
        if handle is None:
            return []
        return [pending.request for pending in handle.pending_permissions.values()]

    async def flush_events(self, agent_id: str) -> None:
        """Wait until every event queued so far for the agent has been published."""
        handle = self._handles.get(agent_id)
        if handle is not None and handle.pump is not None and not handle.pump.done():
            await handle.outbound.join()

    # Prompts

    async def send_message(
        self,
        agent_id: str,
        content: str,
        working_directory: Optional[Union[str, Path]] = None,
    ) -> PromptResult:
        """
        Send a prompt and wait for its completion.

        Chunk events stream while the agent works, followed by exactly one
        completion event. A cancelled prompt returns with ``cancelled`` set
        and emits no completion.

        Args:
            agent_id: Agent to prompt
            content: Prompt text
            working_directory: Used to start a session when the agent has none;
                defaults to the registry's current directory

        Raises:
            UnknownAgentError: agent_id is not registered
            NoWorkspaceSelectedError: No session and no directory to start one in
            AgentProcessError: The agent process failed during the turn
        """
        self.registry.require_agent(agent_id)
        handle = self._handles.get(agent_id)
        if handle is None or not handle.session.is_active:
            directory = working_directory or self.registry.current_directory
            if directory is None:
                raise NoWorkspaceSelectedError()
            await self.start_session(agent_id, directory)
            handle = self._handles[agent_id]

        future = asyncio.get_running_loop().create_future()
        await handle.inbound.put(_PromptRequest(content, future))
        return await future

    async def _worker(self, handle: _SessionHandle) -> None:
        while True:
            request = await handle.inbound.get()
            if request is None:
                return
            if request.future.done():
                continue
            if not handle.session.is_active:
                _resolve(request.future, error=SessionNotReadyError(
                    f"Session for agent {handle.session.agent_id} is {handle.session.status.value}"
                ))
                continue
            try:
                result = await self._run_prompt(handle, request.content)
            except AgentProcessError as e:
                handle.session.status = SessionStatus.ERROR
                self._deny_pending(handle)
                logger.error(f"Agent {handle.session.agent_id} failed: {e}")
                await self._emit(handle, ErrorEvent(agent_id=handle.session.agent_id, error=str(e)))
                _resolve(request.future, error=e)
            except Exception as e:
                handle.session.status = SessionStatus.ERROR
                self._deny_pending(handle)
                logger.exception(f"Unexpected failure in session for agent {handle.session.agent_id}")
                await self._emit(handle, ErrorEvent(agent_id=handle.session.agent_id, error=str(e)))
                _resolve(request.future, error=e)
            else:
                _resolve(request.future, result=result)

    async def _run_prompt(self, handle: _SessionHandle, content: str) -> PromptResult:
        session = handle.session
        agent_id = session.agent_id
        message_id = uuid.uuid4().hex
        session.status = SessionStatus.BUSY
        session.touch()

        text: List[str] = []
        thinking: List[str] = []
        tool_calls: Dict[str, ToolCall] = {}
        todos: List[TodoItem] = []
        final: Optional[TurnResult] = None

        async with aclosing(handle.process.prompt(content)) as updates:
            async for update in updates:
                if handle.cancelled:
                    break
                session.touch()

                if isinstance(update, PermissionAsk):
                    await self._authorize(handle, update)
                    continue
                if isinstance(update, TurnResult):
                    final = update
                    break

                if isinstance(update, TextDelta):
                    text.append(update.text)
                elif isinstance(update, ThinkingDelta):
                    thinking.append(update.text)
                elif isinstance(update, ToolCallUpdate):
                    tool_calls[update.tool_call.id] = update.tool_call
                elif isinstance(update, TodoUpdate):
                    todos = update.items
                await self._emit(handle, ChunkEvent(
                    session_id=session.id,
                    agent_id=agent_id,
                    content="".join(text),
                    thinking="".join(thinking),
                    tool_calls=[c.to_dict() for c in tool_calls.values()] or None,
                    todo_items=[t.to_dict() for t in todos] or None,
                ))

        if handle.cancelled:
            return PromptResult(
                message_id=message_id,
                content="".join(text),
                cancelled=True,
                tool_calls=list(tool_calls.values()),
            )
        if final is None:
            raise AgentProcessError(f"Agent {agent_id} ended the turn without a result")

        if final.session_token and final.session_token != session.session_token:
            session.session_token = final.session_token
            self.persistence.record_session_token(agent_id, final.session_token)

        session.status = SessionStatus.READY
        session.touch()
        await self._emit(handle, CompletionEvent(id=message_id, agent_id=agent_id, content=final.content))
        if final.is_error:
            logger.warning(f"Agent {agent_id} reported an error result")

        return PromptResult(
            message_id=message_id,
            content=final.content,
            written_files=final.written_files,
            tool_calls=list(tool_calls.values()),
        )

    async def cancel_message(self, agent_id: str) -> None:
        """Abort the in-flight prompt. Cancelling a session that isn't busy is a no-op."""
        handle = self._handles.get(agent_id)
        if handle is None or handle.session.status != SessionStatus.BUSY:
            return

        handle.cancelled = True
        handle.session.status = SessionStatus.STOPPED
        self._deny_pending(handle)
        await handle.process.cancel()
        await self._emit(handle, CancelledEvent(agent_id=agent_id))
        logger.info(f"Cancelled in-flight prompt for agent {agent_id}")

    # Permissions

    async def _authorize(self, handle: _SessionHandle, ask: PermissionAsk) -> None:
        session = handle.session
        project = session.project_path or session.working_directory
        kind, locations = classify_tool_call(ask.tool_name, ask.tool_input)

        grants = self.grant_store.list_grants(project)
        grant = self.matcher.match(grants, kind, locations, ask.tool_input, project)
        if grant is not None:
            logger.debug(
                f"{'Allowed' if grant.granted else 'Rejected'} {ask.tool_name} for {session.agent_id} "
                f"via {grant.scope_type} grant {grant.id[:8]}"
            )
            await handle.process.respond_permission(
                ask.request_id,
                allow=grant.granted,
                tool_input=ask.tool_input,
                message=None if grant.granted else "Rejected by a saved permission rule",
            )
            return

        request = ToolCallRequest(
            request_id=ask.request_id,
            agent_id=session.agent_id,
            tool_name=ask.tool_name,
            tool_kind=kind,
            locations=locations,
            raw_input=ask.tool_input,
        )
        scopes = self.matcher.scope_options(kind, locations, ask.tool_input)
        future = asyncio.get_running_loop().create_future()
        handle.pending_permissions[ask.request_id] = _PendingPermission(request, scopes, future)

        await self._emit(handle, PermissionRequestEvent(
            request_id=ask.request_id,
            agent_id=session.agent_id,
            tool_call={
                "id": ask.tool_use_id or ask.request_id,
                "name": ask.tool_name,
                "kind": kind.value,
                "locations": [loc.path for loc in locations],
                "raw_input": ask.tool_input,
            },
            options=PERMISSION_OPTIONS,
            scopes=[
                {"scope_type": s.scope_type.value, "scope_value": s.scope_value, "label": s.label}
                for s in scopes
            ],
        ))

        try:
            allowed = await future
        finally:
            handle.pending_permissions.pop(ask.request_id, None)

        await handle.process.respond_permission(
            ask.request_id,
            allow=allowed,
            tool_input=ask.tool_input,
            message=None if allowed else "Permission denied by operator",
        )

    def respond_to_permission(
        self,
        agent_id: str,
        request_id: str,
        option_id: str,
        scope: Optional[Union[ScopeOption, Dict[str, Any]]] = None,
    ) -> bool:
        """
        Resolve a pending permission request.

        "always" options store a grant before the tool call is unblocked;
        ``scope`` picks which one, defaulting to the most specific offered.

        Returns:
            False when the request is no longer pending

        Raises:
            SessionNotFoundError: The agent has no session
            InvalidInputError: Unknown option id
        """
        if option_id not in _OPTION_IDS:
            raise InvalidInputError(f"Unknown permission option: {option_id}")
        handle = self._handles.get(agent_id)
        if handle is None:
            raise SessionNotFoundError(f"No session for agent {agent_id}")

        pending = handle.pending_permissions.get(request_id)
        if pending is None or pending.future.done():
            logger.warning(f"Permission request {request_id} for agent {agent_id} is not pending")
            return False

        allowed = option_id in (ALLOW_ONCE, ALLOW_ALWAYS)
        if option_id in (ALLOW_ALWAYS, REJECT_ALWAYS):
            chosen = scope if scope is not None else (pending.scopes[0] if pending.scopes else None)
            if chosen is not None:
                if isinstance(chosen, dict):
                    scope_type, scope_value = chosen["scope_type"], chosen.get("scope_value", "")
                else:
                    scope_type, scope_value = chosen.scope_type, chosen.scope_value
                self.grant_store.add_grant(
                    handle.session.project_path or handle.session.working_directory,
                    pending.request.tool_kind,
                    scope_type,
                    scope_value,
                    granted=allowed,
                )

        pending.future.set_result(allowed)
        return True

    def _deny_pending(self, handle: _SessionHandle) -> None:
        for pending in list(handle.pending_permissions.values()):
            if not pending.future.done():
                pending.future.set_result(False)

    # Outbound channel

    async def _emit(self, handle: _SessionHandle, event: Event) -> None:
        await handle.outbound.put(event)

    async def _pump(self, handle: _SessionHandle) -> None:
        while True:
            event = await handle.outbound.get()
            try:
                if event is None:
                    return
                await self.broadcaster.publish(event)
            finally:
                handle.outbound.task_done()
