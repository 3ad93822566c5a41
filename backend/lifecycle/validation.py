"""Input validation for agent spawns.

Branch names end up in container labels, environment variables and worktree
paths, so they are checked against a strict allowlist before anything is
created. Worktree paths must resolve inside the configured base directory.
"""

import re
from pathlib import Path

BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
MAX_BRANCH_LENGTH = 128


def validate_branch(branch: str) -> tuple[bool, str]:
    """Validate a git branch name before it is used for a spawn.

    Returns:
        A tuple of (is_valid, error_message). error_message is empty when valid.

    Examples:
        >>> validate_branch("fleet/fix-login")
        (True, "")
        >>> validate_branch("main; rm -rf /")
        (False, "Branch contains disallowed characters")
    """
    if not branch:
        return False, "Branch cannot be empty"

    if "\x00" in branch:
        return False, "Branch contains null byte"

    if len(branch) > MAX_BRANCH_LENGTH:
        return False, f"Branch exceeds {MAX_BRANCH_LENGTH} characters"

    if not BRANCH_PATTERN.fullmatch(branch):
        return False, "Branch contains disallowed characters"

    if branch.startswith("-"):
        return False, "Branch cannot start with '-'"

    return True, ""


def validate_worktree_path(base_dir: str, relative_path: str) -> tuple[bool, str, str]:
    """Resolve a worktree path and make sure it stays under ``base_dir``.

    Returns:
        A tuple of (is_valid, error_message, resolved_absolute_path).
        resolved_absolute_path is empty when invalid.

    Examples:
        >>> validate_worktree_path("/srv/worktrees", "task-1/fix-login")
        (True, "", "/srv/worktrees/task-1/fix-login")
        >>> validate_worktree_path("/srv/worktrees", "../etc")
        (False, "Path traversal blocked: contains '..'", "")
    """
    if not relative_path:
        return False, "Path cannot be empty", ""

    if relative_path.startswith("/"):
        return False, "Absolute paths not allowed", ""

    components = [
        part
        for part in relative_path.replace("\\", "/").split("/")
        if part not in ("", ".")
    ]
    if ".." in components:
        return False, "Path traversal blocked: contains '..'", ""

    try:
        base = Path(base_dir).resolve()
        resolved = (base / relative_path).resolve()
    except (ValueError, OSError) as e:
        return False, f"Invalid path: {e}", ""

    try:
        resolved.relative_to(base)
    except ValueError:
        return False, f"Path escapes worktree base: {relative_path}", ""

    return True, "", str(resolved)
