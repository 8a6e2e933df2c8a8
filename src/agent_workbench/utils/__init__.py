"""Shared utility functions for the workbench."""

from .subprocess_utils import (
    CommandResult,
    SubprocessError,
    run_command,
    run_git_command,
    check_command_exists,
)
from .validators import validate_branch_name, validate_identifier, slugify, file_slug
from .rich_logging import ContextLogger, get_context_logger, setup_rich_logging

__all__ = [
    # Subprocess utilities
    "CommandResult",
    "SubprocessError",
    "run_command",
    "run_git_command",
    "check_command_exists",
    # Validators
    "validate_branch_name",
    "validate_identifier",
    "slugify",
    "file_slug",
    # Logging
    "ContextLogger",
    "get_context_logger",
    "setup_rich_logging",
]
