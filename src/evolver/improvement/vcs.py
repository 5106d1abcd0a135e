"""Version control for documentation edits.

Every applied improvement and every rollback becomes a commit, so the
history of the tool documentation doubles as the audit trail of the loop.

Example:
    vcs = GitVersionControl(repo_path, paths=[repo_path / "tool-docs"])
    commit_id = await vcs.commit("description: create_textframe", {"Generation": "2"})
    await vcs.revert(commit_id)
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from evolver.core.errors import VersionControlError
from evolver.core.logging import get_logger

_logger = get_logger("vcs")

DEFAULT_PREFIX = "[Evolution]"
DEFAULT_AUTHOR = ("evolver", "evolver@localhost")


class VersionControl(Protocol):
    async def commit(self, message: str, metadata: dict[str, str]) -> str:
        ...

    async def revert(self, commit_id: str) -> str:
        ...


@dataclass(frozen=True)
class CommitInfo:
    hash: str
    date: str
    subject: str


def format_commit_message(
    subject: str, metadata: dict[str, str], prefix: str = DEFAULT_PREFIX
) -> str:
    """Structured message: prefixed subject line, then one ``Key: value`` line each."""
    lines = [f"{prefix} {subject}"]
    if metadata:
        lines.append("")
        for key, value in metadata.items():
            text = str(value).strip()
            if "\n" in text:
                lines.append(f"{key}:")
                lines.extend(f"  {line}" for line in text.splitlines())
            else:
                lines.append(f"{key}: {text}")
    return "\n".join(lines)


class GitVersionControl:
    """Commits documentation changes to a git repository.

    Only ``paths`` are staged, so unrelated work in the repository is never
    swept into an evolution commit.
    """

    def __init__(
        self,
        repo_path: Path,
        paths: list[Path] | None = None,
        message_prefix: str = DEFAULT_PREFIX,
        author: tuple[str, str] = DEFAULT_AUTHOR,
    ) -> None:
        """Initialize the git collaborator.

        Args:
            repo_path: Repository root.
            paths: Files or directories to stage for each commit. Defaults to
                the whole working tree.
            message_prefix: Subject prefix marking evolution commits.
            author: Name and email used when git has no identity configured.
        """
        self._repo_path = repo_path.resolve()
        self._paths = [p.resolve() for p in paths] if paths else []
        self.message_prefix = message_prefix
        self._author = author

    def _environment(self) -> dict[str, str]:
        name, email = self._author
        env = dict(os.environ)
        env.setdefault("GIT_AUTHOR_NAME", name)
        env.setdefault("GIT_AUTHOR_EMAIL", email)
        env.setdefault("GIT_COMMITTER_NAME", name)
        env.setdefault("GIT_COMMITTER_EMAIL", email)
        return env

    async def _run_git(self, *args: str, check: bool = True) -> tuple[int, str, str]:
        """Run a git command in the repository.

        Returns:
            Tuple of (exit_code, stdout, stderr).

        Raises:
            VersionControlError: If check=True and the command fails, or git
                cannot be started.
        """
        _logger.debug("git_command", args=args, cwd=str(self._repo_path))
        try:
            proc = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=self._repo_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._environment(),
            )
        except OSError as e:
            raise VersionControlError(f"Cannot run git: {e}") from e

        stdout_bytes, stderr_bytes = await proc.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        exit_code = proc.returncode or 0

        if check and exit_code != 0:
            _logger.error(
                "git_command_failed",
                args=args,
                exit_code=exit_code,
                stderr=stderr[:500],
            )
            raise VersionControlError(f"Git command failed: git {' '.join(args)}\n{stderr}")
        return exit_code, stdout, stderr

    async def is_repository(self) -> bool:
        code, _, _ = await self._run_git("rev-parse", "--git-dir", check=False)
        return code == 0

    async def commit(self, message: str, metadata: dict[str, str]) -> str:
        """Stage the documentation paths and commit them.

        Returns:
            Full SHA of the new commit.
        """
        if self._paths:
            await self._run_git("add", "-A", "--", *(str(p) for p in self._paths))
        else:
            await self._run_git("add", "-A")

        full_message = format_commit_message(message, metadata, self.message_prefix)
        await self._run_git("commit", "--allow-empty", "-m", full_message)
        _, sha, _ = await self._run_git("rev-parse", "HEAD")
        _logger.info("commit_created", commit=sha[:7], subject=message)
        return sha

    async def revert(self, commit_id: str) -> str:
        """Create a commit undoing ``commit_id``; returns the new commit's SHA."""
        await self._run_git("revert", "--no-edit", commit_id)
        _, sha, _ = await self._run_git("rev-parse", "HEAD")
        _logger.info("commit_reverted", reverted=commit_id[:7], commit=sha[:7])
        return sha

    async def history(self, limit: int = 20) -> list[CommitInfo]:
        """Most recent evolution commits, newest first."""
        _, output, _ = await self._run_git(
            "log",
            "--fixed-strings",
            f"--grep={self.message_prefix}",
            "--format=%H|%aI|%s",
            f"-n{limit}",
        )
        commits = []
        for line in output.splitlines():
            sha, date, subject = line.split("|", 2)
            commits.append(CommitInfo(hash=sha, date=date, subject=subject))
        return commits


class LocalVersionControl:
    """Stand-in used when git is disabled: hands out sequential local ids.

    Rollbacks still restore the documentation through the store; only the
    commit history is missing.
    """

    def __init__(self) -> None:
        self.commits: list[tuple[str, str, dict[str, str]]] = []

    async def commit(self, message: str, metadata: dict[str, str]) -> str:
        commit_id = f"local-{len(self.commits) + 1}"
        self.commits.append((commit_id, message, dict(metadata)))
        return commit_id

    async def revert(self, commit_id: str) -> str:
        raise VersionControlError("Revert requires git; version control is disabled")
