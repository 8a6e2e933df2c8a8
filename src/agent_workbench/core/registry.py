"""Shared in-process state: discovered agents, the selected project and
conversation bindings. One instance is created at startup and handed to
every component that needs it.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..errors import NoWorkspaceSelectedError, UnknownAgentError
from .config import AgentDefinition

logger = logging.getLogger(__name__)


class Registry:
    """Agent identities and per-agent bindings.

    All mutation happens on the event loop thread, so plain dict updates are
    atomic. Multi-step critical sections take the per-key lock from
    ``lock_for``.
    """

    def __init__(
        self,
        agents: Optional[Iterable[AgentDefinition]] = None,
        current_directory: Optional[Path] = None,
    ):
        self._agents: Dict[str, AgentDefinition] = {}
        self._conversations: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._current_directory: Optional[Path] = None

        for agent in agents or ():
            self.register_agent(agent)
        if current_directory is not None:
            self.set_current_directory(current_directory)

    # Agents

    def register_agent(self, agent: AgentDefinition) -> None:
        if agent.id in self._agents:
            logger.debug(f"Replacing agent definition {agent.id}")
        self._agents[agent.id] = agent

    def get_agent(self, agent_id: str) -> Optional[AgentDefinition]:
        return self._agents.get(agent_id)

    def require_agent(self, agent_id: str) -> AgentDefinition:
        """Return the agent or raise UnknownAgentError."""
        agent = self._agents.get(agent_id)
        if agent is None:
            raise UnknownAgentError(agent_id)
        return agent

    def list_agents(self) -> List[AgentDefinition]:
        return list(self._agents.values())

    # Project directory

    def set_current_directory(self, path: Optional[Path]) -> None:
        self._current_directory = Path(path).resolve() if path is not None else None

    @property
    def current_directory(self) -> Optional[Path]:
        return self._current_directory

    def require_current_directory(self) -> Path:
        if self._current_directory is None:
            raise NoWorkspaceSelectedError()
        return self._current_directory

    # Conversation bindings

    def bind_conversation(self, agent_id: str, conversation_id: Optional[str]) -> None:
        if conversation_id:
            self._conversations[agent_id] = conversation_id
        else:
            self._conversations.pop(agent_id, None)

    def active_conversation(self, agent_id: str) -> Optional[str]:
        return self._conversations.get(agent_id)

    # Locks

    def lock_for(self, key: str) -> asyncio.Lock:
        """Lock dedicated to ``key``, created on first use."""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock
