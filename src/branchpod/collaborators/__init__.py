"""Default worktree resolver and app detector."""

from branchpod.collaborators.detector import AppDetector
from branchpod.collaborators.worktrees import (
    GitWorktreeResolver,
    Worktree,
    WorktreeResolver,
    parse_worktree_porcelain,
)

__all__ = [
    "AppDetector",
    "GitWorktreeResolver",
    "Worktree",
    "WorktreeResolver",
    "parse_worktree_porcelain",
]
