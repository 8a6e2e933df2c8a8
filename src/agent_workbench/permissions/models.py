"""Permission grant and tool-call request models."""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ToolKind(str, Enum):
    """Coarse category of a tool call, used to bucket grants."""
    READ = "read"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    EXECUTE = "execute"
    FETCH = "fetch"
    OTHER = "other"


class ScopeType(str, Enum):
    """How a grant's scope_value is compared against a request."""
    COMMAND = "command"
    COMMAND_PREFIX = "command_prefix"
    PATH = "path"
    PATH_PREFIX = "path_prefix"
    GLOB = "glob"
    DOMAIN = "domain"
    URL_PREFIX = "url_prefix"
    ANY = "any"


class PermissionGrant(BaseModel):
    """A remembered allow/reject decision for one project and tool kind."""

    model_config = ConfigDict(use_enum_values=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    project_path: str
    tool_kind: ToolKind
    scope_type: ScopeType
    scope_value: str = ""
    granted: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ToolLocation(BaseModel):
    """A file a tool call touches."""
    path: str
    line: Optional[int] = None


class ToolCallRequest(BaseModel):
    """One pending authorization decision."""

    model_config = ConfigDict(use_enum_values=True)

    request_id: str
    agent_id: str
    tool_name: str
    tool_kind: ToolKind
    locations: List[ToolLocation] = Field(default_factory=list)
    raw_input: Any = None


@dataclass
class ScopeOption:
    """A grant the operator can choose to remember for a request."""
    scope_type: ScopeType
    scope_value: str
    label: str


_TOOL_KINDS = {
    "Read": ToolKind.READ,
    "Glob": ToolKind.READ,
    "Grep": ToolKind.READ,
    "LS": ToolKind.READ,
    "NotebookRead": ToolKind.READ,
    "Edit": ToolKind.EDIT,
    "MultiEdit": ToolKind.EDIT,
    "Write": ToolKind.EDIT,
    "NotebookEdit": ToolKind.EDIT,
    "Bash": ToolKind.EXECUTE,
    "WebFetch": ToolKind.FETCH,
    "WebSearch": ToolKind.FETCH,
}

_LOCATION_KEYS = ("file_path", "notebook_path", "path")


def classify_tool_call(
    tool_name: str,
    tool_input: Optional[Dict[str, Any]],
) -> Tuple[ToolKind, List[ToolLocation]]:
    """Map an agent tool invocation onto a tool kind and its file locations."""
    kind = _TOOL_KINDS.get(tool_name, ToolKind.OTHER)
    locations: List[ToolLocation] = []
    if isinstance(tool_input, dict):
        for key in _LOCATION_KEYS:
            value = tool_input.get(key)
            if isinstance(value, str) and value:
                locations.append(ToolLocation(path=value))
                break
    return kind, locations
