"""Durable permission grants keyed by project, tool kind and scope."""

import logging
from typing import List, Optional

from ..storage.base import Persistence
from .matcher import normalize_path
from .models import PermissionGrant, ScopeType, ToolKind

logger = logging.getLogger(__name__)

_PATH_SCOPES = (ScopeType.PATH.value, ScopeType.PATH_PREFIX.value, ScopeType.GLOB.value)


class GrantStore:
    """Append-only grant storage on top of the persistence layer.

    Grants are never edited in place: an operator changes their mind by
    deleting a grant and adding another.
    """

    def __init__(self, persistence: Persistence):
        self._persistence = persistence

    def list_grants(
        self,
        project_path: str,
        tool_kind: Optional[str] = None,
    ) -> List[PermissionGrant]:
        grants = self._persistence.get_permission_grants(project_path)
        if tool_kind is not None:
            kind = ToolKind(tool_kind).value
            grants = [g for g in grants if g.tool_kind == kind]
        return grants

    def add_grant(
        self,
        project_path: str,
        tool_kind: str,
        scope_type: str,
        scope_value: str = "",
        granted: bool = True,
    ) -> PermissionGrant:
        """
        Store a new grant.

        Path-like scope values are normalized on the way in so they compare
        equal to normalized request locations.

        Returns:
            The stored grant. An identical existing grant is returned as-is
            instead of storing a duplicate.
        """
        scope_type = ScopeType(scope_type).value
        if scope_type in _PATH_SCOPES:
            scope_value = normalize_path(scope_value)

        for existing in self.list_grants(project_path, tool_kind):
            if (
                existing.scope_type == scope_type
                and existing.scope_value == scope_value
                and existing.granted == granted
            ):
                return existing

        grant = PermissionGrant(
            project_path=project_path,
            tool_kind=ToolKind(tool_kind),
            scope_type=ScopeType(scope_type),
            scope_value=scope_value,
            granted=granted,
        )
        self._persistence.save_permission_grant(grant)
        logger.info(
            f"Stored {'allow' if granted else 'reject'} grant for {grant.tool_kind} "
            f"{grant.scope_type}={grant.scope_value!r} in {project_path}"
        )
        return grant

    def delete_grant(self, grant_id: str) -> bool:
        deleted = self._persistence.delete_permission_grant(grant_id)
        if deleted:
            logger.info(f"Deleted grant {grant_id}")
        return deleted
