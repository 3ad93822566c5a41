"""Agent lifecycle management: container spawning and spawn input validation."""

from lifecycle.docker_lifecycle import DockerLifecycleManager
from lifecycle.validation import validate_branch, validate_worktree_path

__all__ = [
    "DockerLifecycleManager",
    "validate_branch",
    "validate_worktree_path",
]
