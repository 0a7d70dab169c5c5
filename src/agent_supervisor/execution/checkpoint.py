"""Git checkpointing of the agent workspace around each attempt.

Every operation is one blocking ``git`` invocation scoped to the workspace
directory. Failures are raised, never swallowed: a workspace that cannot be
rolled back cannot be retried safely.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from agent_supervisor.config import CheckpointSettings
from agent_supervisor.execution.errors import (
    GitNotFoundError,
    GitOperationError,
    NotAGitRepoError,
)
from agent_supervisor.execution.models import Checkpoint, utc_now

logger = logging.getLogger(__name__)


class CheckpointManager(Protocol):
    """Snapshot, commit or discard workspace changes per attempt."""

    def create_checkpoint(self, label: str, attempt_number: int) -> Checkpoint: ...

    def commit_success(self, label: str) -> Checkpoint: ...

    def rollback(self, reason: str) -> str | None: ...

    def get_current_revision(self) -> str | None: ...


class GitCheckpointManager:
    """Git-backed checkpoint manager for one workspace directory."""

    def __init__(self, workspace_dir: Path | str, settings: CheckpointSettings | None = None) -> None:
        self.workspace_dir = Path(workspace_dir).resolve()
        self.settings = settings or CheckpointSettings()
        self._last_checkpoint: Checkpoint | None = None

    @property
    def last_checkpoint(self) -> Checkpoint | None:
        return self._last_checkpoint

    def ensure_repository(self) -> None:
        """Make sure the workspace is the root of its own git repository."""

        if not self.workspace_dir.is_dir():
            raise NotAGitRepoError(f"Workspace directory does not exist: {self.workspace_dir}")
        if self._is_repository_root():
            return
        if not self.settings.auto_init:
            raise NotAGitRepoError(f"Workspace is not a git repository root: {self.workspace_dir}")
        self._git(["init", "--quiet"])
        logger.info("Initialized git repository in %s", self.workspace_dir)

    def create_checkpoint(self, label: str, attempt_number: int) -> Checkpoint:
        """Commit all workspace changes as the rollback target for an attempt."""

        self.ensure_repository()
        message = f"checkpoint: {label} attempt {attempt_number}"
        self._git(["add", "-A"])
        head = self.get_current_revision()
        if head is not None and not self._has_staged_changes():
            logger.info("Checkpoint for attempt %d reuses %s (no changes)", attempt_number, head[:7])
            checkpoint = Checkpoint(id=head, label=message, created_at=utc_now())
        else:
            checkpoint = self._commit(message)
            logger.info("Created checkpoint %s: %s", checkpoint.short_id, message)
        self._last_checkpoint = checkpoint
        return checkpoint

    def commit_success(self, label: str) -> Checkpoint:
        """Record the validated attempt as exactly one success commit."""

        self.ensure_repository()
        self._git(["add", "-A"])
        checkpoint = self._commit(f"success: {label}")
        self._last_checkpoint = checkpoint
        logger.info("Committed success %s for %s", checkpoint.short_id, label)
        return checkpoint

    def rollback(self, reason: str) -> str | None:
        """Reset tracked files to the last checkpoint and delete untracked paths."""

        target = (
            self._last_checkpoint.id
            if self._last_checkpoint is not None
            else self.get_current_revision()
        )
        if target is not None:
            self._git(["reset", "--hard", "--quiet", target])
        self._git(["clean", "-fd", "--quiet"])
        logger.warning(
            "Rolled back workspace %s to %s (%s)",
            self.workspace_dir,
            target[:7] if target else "empty tree",
            reason,
        )
        return target

    def get_current_revision(self) -> str | None:
        """Current HEAD sha, or ``None`` when no commit exists yet."""

        completed = self._git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False)
        if completed.returncode != 0:
            return None
        revision = completed.stdout.strip()
        return revision or None

    def tree_hash(self, revision: str = "HEAD") -> str:
        """Tree object id of ``revision``."""

        return self._git(["rev-parse", f"{revision}^{{tree}}"]).stdout.strip()

    def _is_repository_root(self) -> bool:
        completed = self._git(["rev-parse", "--show-toplevel"], check=False)
        if completed.returncode != 0:
            return False
        return Path(completed.stdout.strip()).resolve() == self.workspace_dir

    def _has_staged_changes(self) -> bool:
        completed = self._git(["diff", "--cached", "--quiet"], check=False)
        if completed.returncode not in (0, 1):
            raise GitOperationError(
                f"git diff --cached failed in {self.workspace_dir}",
                command="diff --cached --quiet",
                returncode=completed.returncode,
                stderr=completed.stderr.strip(),
            )
        return completed.returncode == 1

    def _commit(self, message: str) -> Checkpoint:
        self._git(["commit", "--allow-empty", "--no-verify", "--quiet", "-m", message])
        revision = self.get_current_revision()
        if revision is None:
            raise GitOperationError(
                f"Commit produced no HEAD in {self.workspace_dir}",
                command="commit",
                returncode=0,
                stderr="",
            )
        return Checkpoint(id=revision, label=message, created_at=utc_now())

    def _git(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [
            self.settings.git_executable,
            "-c",
            f"user.name={self.settings.author_name}",
            "-c",
            f"user.email={self.settings.author_email}",
            "-c",
            "commit.gpgsign=false",
            *args,
        ]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=self.workspace_dir,
                capture_output=True,
                text=True,
                timeout=self.settings.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise GitNotFoundError(
                f"git executable not found: {self.settings.git_executable}",
            ) from error
        except subprocess.TimeoutExpired as error:
            raise GitOperationError(
                f"git {' '.join(args)} timed out after {self.settings.timeout_seconds}s",
                command=" ".join(args),
                returncode=-1,
                stderr="",
            ) from error

        if check and completed.returncode != 0:
            raise GitOperationError(
                f"git {' '.join(args)} failed in {self.workspace_dir}: {completed.stderr.strip()}",
                command=" ".join(args),
                returncode=completed.returncode,
                stderr=completed.stderr.strip(),
            )
        return completed
