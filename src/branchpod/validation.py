"""Input validation utilities."""

from __future__ import annotations

import re

# Project and console IDs: alphanumeric, dots, underscores, hyphens only
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")

# Branch names follow git's ref rules loosely; slashes are allowed
SAFE_BRANCH_PATTERN = re.compile(r"^[a-zA-Z0-9._/+@-]+$")

MAX_ID_LENGTH = 200


class ValidationError(ValueError):
    """Raised when input validation fails."""


def validate_id(value: str, id_type: str = "ID") -> str:
    """Validate that an ID contains only safe characters.

    Args:
        value: The ID value to validate
        id_type: Description of the ID type for error messages

    Returns:
        The validated ID (unchanged if valid)

    Raises:
        ValidationError: If the ID is empty, too long or contains unsafe characters
    """
    if not value:
        raise ValidationError(f"Invalid {id_type}: cannot be empty")

    if len(value) > MAX_ID_LENGTH:
        raise ValidationError(f"Invalid {id_type}: too long")

    if not SAFE_ID_PATTERN.match(value) or value in (".", ".."):
        raise ValidationError(f"Invalid {id_type}: contains unsafe characters")

    return value


def validate_project_id(project: str) -> str:
    """Validate a project ID."""
    return validate_id(project, "project")


def validate_console_id(console_id: str) -> str:
    """Validate a console ID."""
    return validate_id(console_id, "console_id")


def validate_branch(branch: str) -> str:
    """Validate a branch name.

    Rejects path traversal segments and names git itself would refuse.
    """
    if not branch:
        raise ValidationError("Invalid branch: cannot be empty")

    if len(branch) > MAX_ID_LENGTH:
        raise ValidationError("Invalid branch: too long")

    if not SAFE_BRANCH_PATTERN.match(branch):
        raise ValidationError("Invalid branch: contains unsafe characters")

    if ".." in branch or branch.startswith(("/", "-")) or branch.endswith(("/", ".lock")):
        raise ValidationError("Invalid branch: not a valid git branch name")

    return branch
