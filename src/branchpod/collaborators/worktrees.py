"""Map (project, branch) to the checked-out git worktree directory."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from branchpod.errors import ExternalServiceError, NotFoundError

logger = structlog.get_logger()


class WorktreeResolver(Protocol):
    async def resolve_worktree_path(self, project: str, branch: str) -> str:
        """Absolute worktree path, or raise NotFoundError."""
        ...


@dataclass
class Worktree:
    path: str
    branch: str | None = None
    head: str | None = None
    is_main: bool = False


def parse_worktree_porcelain(output: str) -> list[Worktree]:
    """Parse ``git worktree list --porcelain``.

    Bare entries are skipped and detached worktrees get ``branch=None``.
    The first listed worktree is the main checkout.
    """
    worktrees: list[Worktree] = []
    current: Worktree | None = None
    bare = False

    def flush() -> None:
        if current is not None and not bare:
            worktrees.append(current)

    for line in output.splitlines():
        if line.startswith("worktree "):
            flush()
            current = Worktree(path=line[len("worktree ") :])
            bare = False
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD ") :]
        elif line.startswith("branch "):
            ref = line[len("branch ") :]
            current.branch = ref.removeprefix("refs/heads/")
        elif line == "bare":
            bare = True
    flush()

    if worktrees:
        worktrees[0].is_main = True
    return worktrees


class GitWorktreeResolver:
    """Resolves worktrees of repositories known by project id.

    A project's repository is taken from the explicit ``projects`` mapping,
    else ``<projects_root>/<project>``.
    """

    def __init__(
        self,
        projects: dict[str, str] | None = None,
        projects_root: str | None = None,
        git_binary: str = "git",
    ) -> None:
        self._projects = dict(projects or {})
        self._projects_root = projects_root
        self._git = git_binary

    def repository_path(self, project: str) -> Path:
        if project in self._projects:
            path = Path(self._projects[project]).expanduser()
        elif self._projects_root:
            path = Path(self._projects_root).expanduser() / project
        else:
            raise NotFoundError("project", project, f"Unknown project: {project}")

        if not path.is_dir():
            raise NotFoundError("project", project, f"Project repository not found: {path}")
        return path

    async def _run_git(self, cwd: Path, args: list[str]) -> str:
        """Run a git command and return output."""
        try:
            process = await asyncio.create_subprocess_exec(
                self._git,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExternalServiceError("git", args, str(e)) from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            error = (
                stderr.decode().strip()
                if stderr
                else f"Git command failed with code {process.returncode}"
            )
            raise ExternalServiceError("git", args, error)

        return stdout.decode()

    async def list_worktrees(self, project: str) -> list[Worktree]:
        repo = self.repository_path(project)
        output = await self._run_git(repo, ["worktree", "list", "--porcelain"])
        return parse_worktree_porcelain(output)

    async def resolve_worktree_path(self, project: str, branch: str) -> str:
        for worktree in await self.list_worktrees(project):
            if worktree.branch == branch:
                return worktree.path

        logger.debug("No worktree for branch", project=project, branch=branch)
        raise NotFoundError(
            "worktree", f"{project}:{branch}", f"Worktree not found for branch: {branch}"
        )
