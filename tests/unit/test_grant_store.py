"""Tests for GrantStore."""

import pytest

from agent_workbench.permissions import GrantStore, ScopeType, ToolKind


class TestGrantStore:
    def test_add_and_list(self, grant_store):
        """Grants are scoped to their project."""
        grant_store.add_grant("/p1", "execute", "command_prefix", "git")
        grant_store.add_grant("/p2", "execute", "command_prefix", "npm")

        grants = grant_store.list_grants("/p1")

        assert len(grants) == 1
        assert grants[0].scope_value == "git"
        assert grants[0].tool_kind == ToolKind.EXECUTE.value
        assert grants[0].granted is True

    def test_filter_by_tool_kind(self, grant_store):
        """tool_kind narrows the listing."""
        grant_store.add_grant("/p", "execute", "any")
        grant_store.add_grant("/p", "read", "any")

        assert [g.tool_kind for g in grant_store.list_grants("/p", "read")] == ["read"]

    def test_identical_grant_not_duplicated(self, grant_store):
        """Adding the same grant twice returns the stored one."""
        first = grant_store.add_grant("/p", "edit", "path", "/p/a.py")
        second = grant_store.add_grant("/p", "edit", "path", "/p/a.py")

        assert first.id == second.id
        assert len(grant_store.list_grants("/p")) == 1

    def test_allow_and_reject_are_distinct(self, grant_store):
        """A reject rule for the same scope is stored separately."""
        grant_store.add_grant("/p", "execute", "command", "make deploy")
        grant_store.add_grant("/p", "execute", "command", "make deploy", granted=False)

        assert sorted(g.granted for g in grant_store.list_grants("/p")) == [False, True]

    def test_path_scope_normalized(self, grant_store):
        """Path-like scope values are stored with forward slashes."""
        grant = grant_store.add_grant("/p", "edit", ScopeType.PATH_PREFIX.value, "src\\\\pkg\\")

        assert grant.scope_value == "src/pkg/"

    def test_delete(self, grant_store):
        """Deleted grants disappear; deleting twice reports False."""
        grant = grant_store.add_grant("/p", "read", "any")

        assert grant_store.delete_grant(grant.id) is True
        assert grant_store.list_grants("/p") == []
        assert grant_store.delete_grant(grant.id) is False

    def test_unknown_scope_type_rejected(self, grant_store):
        """Scope types outside the enum raise ValueError."""
        with pytest.raises(ValueError):
            grant_store.add_grant("/p", "read", "everything")

    def test_grants_survive_new_store(self, store):
        """Grants are durable across GrantStore instances."""
        GrantStore(store).add_grant("/p", "fetch", "domain", "pypi.org")

        grants = GrantStore(store).list_grants("/p")

        assert [(g.scope_type, g.scope_value) for g in grants] == [("domain", "pypi.org")]
