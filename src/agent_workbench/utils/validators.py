"""Validation utilities for branch names, identifiers and file slugs."""

import re

MAX_SLUG_LENGTH = 50


def validate_branch_name(branch_name: str) -> str:
    """
    Validate git branch name.

    Args:
        branch_name: Branch name to validate

    Returns:
        Validated branch name

    Raises:
        ValueError: If branch name is invalid
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")

    if not re.match(r'^[a-zA-Z0-9/_.-]+$', branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if branch_name.startswith('/') or branch_name.endswith('/'):
        raise ValueError("Branch name cannot start or end with /")

    if '..' in branch_name or '@{' in branch_name or branch_name.endswith('.lock'):
        raise ValueError("Branch name contains invalid sequence")

    if len(branch_name) > 255:
        raise ValueError("Branch name too long")

    return branch_name


def validate_identifier(value: str, name: str = "identifier") -> str:
    """
    Validate agent_id or task_id to prevent path traversal.

    Args:
        value: Identifier value to validate
        name: Name of the identifier (for error messages)

    Returns:
        Validated identifier

    Raises:
        ValueError: If identifier is invalid
    """
    if not value:
        raise ValueError(f"{name} cannot be empty")

    if not re.match(r'^[a-zA-Z0-9_-]+$', value):
        raise ValueError(f"Invalid {name}: {value}")

    if len(value) > 128:
        raise ValueError(f"{name} too long")

    return value


def slugify(text: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim dashes, cap length."""
    slug = re.sub(r'[^a-z0-9]+', '-', text.lower()).strip('-')
    return slug[:max_length].rstrip('-')


def file_slug(title: str) -> str:
    """Slug used for research document file names.

    Keeps letters, digits, dashes, underscores and spaces, then turns
    whitespace runs into '-' and lowercases.
    """
    kept = re.sub(r'[^a-zA-Z0-9\-_ ]', '', title)
    return re.sub(r'\s+', '-', kept).lower()
