"""Configuration loading and validation."""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings

from ..utils.validators import validate_identifier

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 5
DEFAULT_CONFIG_PATH = Path("workbench.yaml")
DEFAULT_AGENTS_PATH = Path("config/agents.yaml")


class WorkspaceConfig(BaseModel):
    """Git worktree isolation settings."""
    enabled: bool = True
    worktree_dir: str = ".agent-worktrees"
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    auto_install_deps: bool = True
    install_timeout: int = 300  # npm ci on a cold cache can take minutes
    default_base_branch: Optional[str] = None

    @field_validator('max_concurrent')
    @classmethod
    def clamp_max_concurrent(cls, v: int) -> int:
        return max(1, v)

    @field_validator('worktree_dir')
    @classmethod
    def validate_worktree_dir(cls, v: str) -> str:
        if not v or "/" in v or v in (".", ".."):
            raise ValueError(
                f"worktree_dir must be a single directory name, got '{v}'"
            )
        return v


class SessionConfig(BaseModel):
    """Agent process settings."""
    executable: str = "claude"
    default_model: Optional[str] = None
    extra_args: List[str] = Field(default_factory=list)
    startup_timeout: int = 60


class PullRequestConfig(BaseModel):
    """Pull request creation settings."""
    draft: bool = False
    labels: List[str] = Field(default_factory=list)
    provider: Literal["auto", "gh", "api"] = "auto"


class GitHubConfig(BaseModel):
    """GitHub API credentials (optional; gh CLI is used when absent)."""
    token: Optional[str] = None
    api_url: Optional[str] = None


class LoggingConfig(BaseModel):
    """Logging settings."""
    level: str = "INFO"
    log_dir: Optional[Path] = None

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{v}'")
        return v.upper()


class ExecutionSettings(BaseModel):
    """Runtime settings served by the persistence layer.

    Seeded from WorkbenchConfig the first time they are read and editable
    afterwards without touching the YAML file.
    """
    max_concurrent_workspaces: int = DEFAULT_MAX_CONCURRENT
    auto_install_deps: bool = True
    draft_prs: bool = False
    default_base_branch: Optional[str] = None
    isolation_enabled: bool = True

    @field_validator('max_concurrent_workspaces')
    @classmethod
    def clamp_ceiling(cls, v: int) -> int:
        return max(1, v)


class AgentDefinition(BaseModel):
    """Agent identity from agents.yaml. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    prompt: str = ""
    model: Optional[str] = None
    executable: Optional[str] = None
    mcp_servers: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator('id')
    @classmethod
    def validate_id(cls, v: str) -> str:
        return validate_identifier(v, "agent id")


class WorkbenchConfig(BaseSettings):
    """Main workbench configuration."""
    project: Optional[Path] = None
    storage_path: Path = Field(default=Path(".agent-workbench/state.json"))

    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    pull_requests: PullRequestConfig = Field(default_factory=PullRequestConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    log: LoggingConfig = Field(default_factory=LoggingConfig)

    class Config:
        env_prefix = "WORKBENCH_"
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "ignore"

    def default_execution_settings(self) -> ExecutionSettings:
        """Execution settings as they stand before anything was persisted."""
        return ExecutionSettings(
            max_concurrent_workspaces=self.workspace.max_concurrent,
            auto_install_deps=self.workspace.auto_install_deps,
            draft_prs=self.pull_requests.draft,
            default_base_branch=self.workspace.default_base_branch,
            isolation_enabled=self.workspace.enabled,
        )


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload.

    Works for any config loader that takes a Path and returns a parsed object.
    """
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def _load_config_from_file(config_path: Path) -> WorkbenchConfig:
    """Internal loader for workbench config (no caching)."""
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    data = _expand_env_vars(data)
    return WorkbenchConfig(**data)


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> WorkbenchConfig:
    """Load workbench configuration from YAML file.

    Uses mtime-based caching: returns cached config if the file hasn't changed.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration."
        )
        return WorkbenchConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else WorkbenchConfig()


def _load_agents_from_file(agents_path: Path) -> List[AgentDefinition]:
    """Internal loader for agent definitions (no caching)."""
    with open(agents_path) as f:
        data = yaml.safe_load(f) or {}
    data = _expand_env_vars(data)
    return [AgentDefinition(**agent) for agent in data.get("agents", [])]


def load_agents(agents_path: Path = DEFAULT_AGENTS_PATH) -> List[AgentDefinition]:
    """Load agent definitions from YAML file.

    Uses mtime-based caching: returns cached agents if the file hasn't changed.
    """
    agents_path = Path(agents_path)
    if not agents_path.exists():
        raise FileNotFoundError(f"Agents config not found: {agents_path}")

    result = _get_cached_or_load(agents_path.resolve(), _load_agents_from_file)
    if result is None:
        raise FileNotFoundError(f"Agents config not found: {agents_path}")
    return result


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ${VAR} environment references in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "github.token")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
