"""Core models and configuration."""

from .config import (
    AgentDefinition,
    ExecutionSettings,
    WorkbenchConfig,
    load_agents,
    load_config,
)
from .task import CloseReason, Task, TaskKind, TaskState

__all__ = [
    "AgentDefinition",
    "ExecutionSettings",
    "WorkbenchConfig",
    "load_agents",
    "load_config",
    "CloseReason",
    "Task",
    "TaskKind",
    "TaskState",
]
