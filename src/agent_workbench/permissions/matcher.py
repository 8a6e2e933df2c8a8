"""Scoring of permission grants against tool-call requests.

Grants for the request's tool kind are scored by how specifically they
describe it; the most specific match wins. Chained shell commands are split
and every link has to be covered on its own.
"""

import re
from typing import Any, Iterable, List, Optional, Sequence
from urllib.parse import urlparse

from .models import PermissionGrant, ScopeOption, ScopeType, ToolKind

# Score per scope type. Command and path scopes share the top score but never
# apply to the same request.
SCORE_COMMAND = 100
SCORE_PATH = 100
SCORE_DOMAIN = 90
SCORE_URL_PREFIX = 85
SCORE_COMMAND_PREFIX = 80
SCORE_COMMAND_PREFIX_CHAIN = 75
SCORE_PATH_PREFIX = 70
SCORE_GLOB = 60
SCORE_ANY = 10

# Pure navigation; allowed inside chains without a grant
IMPLICIT_COMMANDS = frozenset({"cd"})

_CHAIN_SEPARATOR = re.compile(r"\s*(?:&&|\|\||;)\s*")

_FILE_TOOL_KINDS = (
    ToolKind.READ.value, ToolKind.EDIT.value, ToolKind.DELETE.value, ToolKind.MOVE.value,
)


def normalize_command(raw_input: Any) -> Optional[str]:
    """Pull a command string out of a string or a {command|cmd} mapping."""
    if not raw_input:
        return None
    if isinstance(raw_input, str):
        return raw_input.strip()
    if isinstance(raw_input, dict):
        for key in ("command", "cmd"):
            value = raw_input.get(key)
            if isinstance(value, str):
                return value.strip()
    return None


def split_chained_commands(cmd: str) -> List[str]:
    """Split on &&, || and ; dropping empty pieces."""
    return [part.strip() for part in _CHAIN_SEPARATOR.split(cmd) if part.strip()]


def normalize_path(file_path: str) -> str:
    """Forward slashes only, no repeated separators."""
    return re.sub(r"/+", "/", file_path.replace("\\", "/"))


def extract_url(raw_input: Any) -> Optional[str]:
    if not raw_input:
        return None
    if isinstance(raw_input, str):
        parsed = urlparse(raw_input)
        return raw_input if parsed.scheme and (parsed.netloc or parsed.path) else None
    if isinstance(raw_input, dict):
        for key in ("url", "uri"):
            value = raw_input.get(key)
            if isinstance(value, str):
                return value
    return None


def extract_domain(raw_input: Any) -> Optional[str]:
    url = extract_url(raw_input)
    if not url:
        return None
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


def glob_match(file_path: str, pattern: str) -> bool:
    """Anchored glob match: ``**`` spans separators, ``*`` and ``?`` do not."""
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        ch = pattern[i]
        if ch == "*":
            parts.append("[^/]*")
        elif ch == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(ch))
        i += 1
    return re.fullmatch("".join(parts), file_path) is not None


def _location_paths(locations: Optional[Iterable[Any]]) -> List[str]:
    paths = []
    for location in locations or ():
        path = location.get("path") if isinstance(location, dict) else getattr(location, "path", None)
        if path:
            paths.append(normalize_path(path))
    return paths


def _kind_value(tool_kind: Any) -> str:
    return tool_kind.value if isinstance(tool_kind, ToolKind) else str(tool_kind)


def _binary(sub_command: str) -> str:
    return sub_command.split()[0] if sub_command.split() else ""


def score_grant(
    grant: PermissionGrant,
    locations: Optional[Sequence[Any]],
    raw_input: Any,
) -> int:
    """Specificity of ``grant`` for the request, 0 when it does not apply."""
    scope_type = grant.scope_type
    scope_value = grant.scope_value

    if scope_type == ScopeType.COMMAND:
        return SCORE_COMMAND if normalize_command(raw_input) == scope_value else 0

    if scope_type == ScopeType.COMMAND_PREFIX:
        cmd = normalize_command(raw_input)
        if not cmd:
            return 0
        sub_commands = split_chained_commands(cmd)
        if len(sub_commands) > 1:
            if all(_binary(sub) == scope_value for sub in sub_commands):
                return SCORE_COMMAND_PREFIX_CHAIN
            return 0
        if cmd == scope_value or cmd.startswith(scope_value + " "):
            return SCORE_COMMAND_PREFIX
        return 0

    if scope_type == ScopeType.PATH:
        target = normalize_path(scope_value)
        return SCORE_PATH if any(p == target for p in _location_paths(locations)) else 0

    if scope_type == ScopeType.PATH_PREFIX:
        paths = _location_paths(locations)
        prefix = normalize_path(scope_value)
        if paths and all(p.startswith(prefix) for p in paths):
            return SCORE_PATH_PREFIX
        return 0

    if scope_type == ScopeType.GLOB:
        paths = _location_paths(locations)
        if paths and all(glob_match(p, scope_value) for p in paths):
            return SCORE_GLOB
        return 0

    if scope_type == ScopeType.DOMAIN:
        return SCORE_DOMAIN if extract_domain(raw_input) == scope_value else 0

    if scope_type == ScopeType.URL_PREFIX:
        url = extract_url(raw_input)
        return SCORE_URL_PREFIX if url and url.startswith(scope_value) else 0

    if scope_type == ScopeType.ANY:
        return SCORE_ANY

    return 0


class PermissionMatcher:
    """Pure decision function over grants; holds no state."""

    def match(
        self,
        grants: Iterable[PermissionGrant],
        tool_kind: str,
        locations: Optional[Sequence[Any]],
        raw_input: Any,
        project_path: Optional[str] = None,
    ) -> Optional[PermissionGrant]:
        """
        Find the grant that decides a tool call.

        Args:
            grants: Grants stored for the project
            tool_kind: Kind of the requested tool call
            locations: Files the call touches (objects or dicts with ``path``)
            raw_input: Raw tool input (command string, URL, or mapping)
            project_path: Project the request belongs to

        Returns:
            The most specific matching grant, or None when the operator must
            be asked. For chained commands, the weakest of the grants that
            covered each link, or None if any link is uncovered.
        """
        kind = _kind_value(tool_kind)
        candidates = [g for g in grants if g.tool_kind == kind]

        if kind == ToolKind.EXECUTE.value:
            cmd = normalize_command(raw_input)
            if cmd:
                sub_commands = split_chained_commands(cmd)
                if len(sub_commands) > 1:
                    return self._match_chain(candidates, sub_commands)

        best_grant = None
        best_score = 0
        for grant in candidates:
            score = score_grant(grant, locations, raw_input)
            if score > best_score:
                best_grant, best_score = grant, score
        return best_grant

    def _match_chain(
        self,
        grants: List[PermissionGrant],
        sub_commands: List[str],
    ) -> Optional[PermissionGrant]:
        weakest_grant = None
        weakest_score = None

        for sub in sub_commands:
            if _binary(sub).lower() in IMPLICIT_COMMANDS:
                continue

            best_grant = None
            best_score = 0
            for grant in grants:
                score = score_grant(grant, None, {"command": sub})
                if score > best_score:
                    best_grant, best_score = grant, score

            if best_grant is None:
                return None
            if weakest_score is None or best_score < weakest_score:
                weakest_grant, weakest_score = best_grant, best_score

        return weakest_grant

    def scope_options(
        self,
        tool_kind: str,
        locations: Optional[Sequence[Any]],
        raw_input: Any,
    ) -> List[ScopeOption]:
        """Grant choices to offer the operator for an unmatched request."""
        kind = _kind_value(tool_kind)
        options: List[ScopeOption] = []

        if kind == ToolKind.EXECUTE.value and raw_input:
            cmd = normalize_command(raw_input)
            if cmd:
                sub_commands = split_chained_commands(cmd)
                if len(sub_commands) > 1:
                    seen = []
                    for sub in sub_commands:
                        binary = _binary(sub).lower()
                        if binary and binary not in IMPLICIT_COMMANDS and binary not in seen:
                            seen.append(binary)
                    for binary in seen:
                        options.append(ScopeOption(
                            ScopeType.COMMAND_PREFIX, binary, f"All `{binary}` commands",
                        ))
                else:
                    options.append(ScopeOption(ScopeType.COMMAND, cmd, "This exact command"))
                    prefix = _binary(cmd)
                    if prefix and prefix != cmd:
                        options.append(ScopeOption(
                            ScopeType.COMMAND_PREFIX, prefix, f"All `{prefix}` commands",
                        ))

        paths = _location_paths(locations)
        if kind in _FILE_TOOL_KINDS and paths:
            file_path = paths[0]
            options.append(ScopeOption(ScopeType.PATH, file_path, "This file only"))
            directory = file_path[: file_path.rfind("/") + 1]
            if directory:
                options.append(ScopeOption(
                    ScopeType.PATH_PREFIX, directory, f"Files in `{directory}`",
                ))
            options.append(ScopeOption(ScopeType.PATH_PREFIX, "", "Files in project directory"))

        if kind == ToolKind.FETCH.value and raw_input:
            domain = extract_domain(raw_input)
            if domain:
                options.append(ScopeOption(ScopeType.DOMAIN, domain, f"Requests to `{domain}`"))

        options.append(ScopeOption(ScopeType.ANY, "", f"All {kind} operations"))
        return options


def derive_scope_options(
    tool_kind: str,
    locations: Optional[Sequence[Any]],
    raw_input: Any,
) -> List[ScopeOption]:
    return PermissionMatcher().scope_options(tool_kind, locations, raw_input)
