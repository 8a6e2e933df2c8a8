"""Tests for PermissionMatcher scoring, chained commands and scope options."""

import pytest

from agent_workbench.permissions import (
    PermissionGrant,
    PermissionMatcher,
    ScopeType,
    ToolKind,
    ToolLocation,
    classify_tool_call,
    derive_scope_options,
)
from agent_workbench.permissions.matcher import glob_match, split_chained_commands

PROJECT = "/work/project"


def _grant(kind, scope_type, value="", granted=True):
    return PermissionGrant(
        project_path=PROJECT,
        tool_kind=kind,
        scope_type=scope_type,
        scope_value=value,
        granted=granted,
    )


@pytest.fixture
def matcher():
    return PermissionMatcher()


class TestCommandMatching:
    def test_exact_command_beats_prefix(self, matcher):
        """An exact command grant is more specific than a prefix grant."""
        prefix = _grant(ToolKind.EXECUTE, ScopeType.COMMAND_PREFIX, "git")
        exact = _grant(ToolKind.EXECUTE, ScopeType.COMMAND, "git status")

        result = matcher.match([prefix, exact], "execute", None, {"command": "git status"})

        assert result is exact

    def test_prefix_requires_word_boundary(self, matcher):
        """'git' must not cover 'gitk'."""
        prefix = _grant(ToolKind.EXECUTE, ScopeType.COMMAND_PREFIX, "git")

        assert matcher.match([prefix], "execute", None, {"command": "gitk --all"}) is None
        assert matcher.match([prefix], "execute", None, {"command": "git log"}) is prefix

    def test_plain_string_input(self, matcher):
        """Commands can arrive as a bare string."""
        prefix = _grant(ToolKind.EXECUTE, ScopeType.COMMAND_PREFIX, "npm")

        assert matcher.match([prefix], "execute", None, "npm test") is prefix

    def test_no_grants_for_kind(self, matcher):
        """Grants for other tool kinds never apply."""
        read_any = _grant(ToolKind.READ, ScopeType.ANY)

        assert matcher.match([read_any], "execute", None, {"command": "ls"}) is None


class TestChainedCommands:
    def test_cd_is_implicit_in_chain(self, matcher):
        """'cd /tmp && git log' only needs a git grant."""
        git = _grant(ToolKind.EXECUTE, ScopeType.COMMAND_PREFIX, "git")

        result = matcher.match([git], "execute", None, {"command": "cd /tmp && git log"})

        assert result is git

    def test_uncovered_link_means_no_match(self, matcher):
        """Every link of the chain must be covered."""
        git = _grant(ToolKind.EXECUTE, ScopeType.COMMAND_PREFIX, "git")

        result = matcher.match([git], "execute", None, {"command": "git add . && rm -rf build"})

        assert result is None

    def test_weakest_covering_grant_is_returned(self, matcher):
        """The chain is only as trusted as its least specific link."""
        exact = _grant(ToolKind.EXECUTE, ScopeType.COMMAND, "npm test")
        git = _grant(ToolKind.EXECUTE, ScopeType.COMMAND_PREFIX, "git")

        result = matcher.match([exact, git], "execute", None, {"command": "npm test; git status"})

        assert result is git

    def test_reject_grant_is_returned(self, matcher):
        """A matching reject grant decides the request too."""
        deny = _grant(ToolKind.EXECUTE, ScopeType.COMMAND_PREFIX, "rm", granted=False)

        result = matcher.match([deny], "execute", None, {"command": "cd build || rm -rf out"})

        assert result is deny
        assert result.granted is False

    def test_split_chained_commands(self):
        """&&, || and ; separate links; a pipe does not."""
        assert split_chained_commands("a && b || c ; d") == ["a", "b", "c", "d"]
        assert split_chained_commands("git log | head -5") == ["git log | head -5"]


class TestPathMatching:
    LOCATION = [ToolLocation(path=f"{PROJECT}/src/app.py")]

    def test_specificity_order(self, matcher):
        """path > path_prefix > glob > any."""
        exact = _grant(ToolKind.EDIT, ScopeType.PATH, f"{PROJECT}/src/app.py")
        prefix = _grant(ToolKind.EDIT, ScopeType.PATH_PREFIX, f"{PROJECT}/src/")
        glob = _grant(ToolKind.EDIT, ScopeType.GLOB, f"{PROJECT}/**/*.py")
        anything = _grant(ToolKind.EDIT, ScopeType.ANY)

        grants = [anything, glob, prefix, exact]
        assert matcher.match(grants, "edit", self.LOCATION, {}) is exact
        grants.remove(exact)
        assert matcher.match(grants, "edit", self.LOCATION, {}) is prefix
        grants.remove(prefix)
        assert matcher.match(grants, "edit", self.LOCATION, {}) is glob
        grants.remove(glob)
        assert matcher.match(grants, "edit", self.LOCATION, {}) is anything

    def test_backslashes_are_normalized(self, matcher):
        """Windows-style locations compare equal to forward-slash grants."""
        exact = _grant(ToolKind.READ, ScopeType.PATH, "C:/repo/a.txt")

        result = matcher.match([exact], "read", [{"path": "C:\\repo\\a.txt"}], {})

        assert result is exact

    def test_prefix_does_not_cover_sibling(self, matcher):
        """A prefix grant for src/ does not cover tests/."""
        prefix = _grant(ToolKind.EDIT, ScopeType.PATH_PREFIX, f"{PROJECT}/src/")

        result = matcher.match([prefix], "edit", [ToolLocation(path=f"{PROJECT}/tests/t.py")], {})

        assert result is None

    def test_glob_semantics(self):
        """'*' stays within a segment, '**' crosses separators."""
        assert glob_match("src/app.py", "src/*.py")
        assert not glob_match("src/pkg/app.py", "src/*.py")
        assert glob_match("src/pkg/app.py", "src/**/*.py")
        assert glob_match("src/a.py", "src/?.py")


class TestFetchMatching:
    def test_domain_grant(self, matcher):
        """Domain grants match the URL's host."""
        domain = _grant(ToolKind.FETCH, ScopeType.DOMAIN, "docs.python.org")

        assert matcher.match([domain], "fetch", None, {"url": "https://docs.python.org/3/"}) is domain
        assert matcher.match([domain], "fetch", None, {"url": "https://evil.example/"}) is None

    def test_url_prefix_grant(self, matcher):
        """URL prefix grants compare the raw URL."""
        prefix = _grant(ToolKind.FETCH, ScopeType.URL_PREFIX, "https://api.github.com/repos/")

        result = matcher.match([prefix], "fetch", None, {"url": "https://api.github.com/repos/a/b"})

        assert result is prefix


class TestScopeOptions:
    def test_single_command(self):
        """A single command offers exact, prefix and any."""
        options = derive_scope_options("execute", None, {"command": "npm run test"})

        assert [(o.scope_type, o.scope_value) for o in options] == [
            (ScopeType.COMMAND, "npm run test"),
            (ScopeType.COMMAND_PREFIX, "npm"),
            (ScopeType.ANY, ""),
        ]

    def test_chain_offers_one_prefix_per_binary(self):
        """Chains offer each distinct binary once and skip cd."""
        options = derive_scope_options("execute", None, {"command": "cd app && git add . && git commit"})

        assert [(o.scope_type, o.scope_value) for o in options] == [
            (ScopeType.COMMAND_PREFIX, "git"),
            (ScopeType.ANY, ""),
        ]

    def test_file_options(self):
        """File tools offer the file, its directory, the project and any."""
        options = derive_scope_options("edit", [ToolLocation(path="/p/src/a.py")], {})

        assert [(o.scope_type, o.scope_value) for o in options] == [
            (ScopeType.PATH, "/p/src/a.py"),
            (ScopeType.PATH_PREFIX, "/p/src/"),
            (ScopeType.PATH_PREFIX, ""),
            (ScopeType.ANY, ""),
        ]

    def test_fetch_options(self):
        """Fetch offers the domain before any."""
        options = derive_scope_options("fetch", None, {"url": "https://pypi.org/simple/"})

        assert options[0].scope_type == ScopeType.DOMAIN
        assert options[0].scope_value == "pypi.org"
        assert options[-1].scope_type == ScopeType.ANY


class TestClassifyToolCall:
    def test_known_tools(self):
        """Claude tool names map onto kinds and locations."""
        kind, locations = classify_tool_call("Write", {"file_path": "/p/a.py", "content": "x"})
        assert kind == ToolKind.EDIT
        assert [loc.path for loc in locations] == ["/p/a.py"]

        kind, locations = classify_tool_call("Bash", {"command": "ls"})
        assert kind == ToolKind.EXECUTE
        assert locations == []

    def test_unknown_tool(self):
        """Unknown tools fall into 'other'."""
        kind, _ = classify_tool_call("mcp__jira__create_issue", {})
        assert kind == ToolKind.OTHER
