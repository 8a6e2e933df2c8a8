"""Permission grants and the matcher that authorizes agent tool calls."""

from .models import (
    PermissionGrant,
    ScopeOption,
    ScopeType,
    ToolCallRequest,
    ToolKind,
    ToolLocation,
    classify_tool_call,
)
from .matcher import PermissionMatcher, derive_scope_options
from .grant_store import GrantStore

__all__ = [
    "PermissionGrant",
    "ScopeOption",
    "ScopeType",
    "ToolCallRequest",
    "ToolKind",
    "ToolLocation",
    "classify_tool_call",
    "PermissionMatcher",
    "derive_scope_options",
    "GrantStore",
]
