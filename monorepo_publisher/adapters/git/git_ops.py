from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    pass


def _run_git(repo_path: Path, args: list[str]) -> str:
    cmd = ["git", "-C", str(repo_path)] + args
    try:
        out = subprocess.check_output(cmd, stderr=subprocess.STDOUT)
        return out.decode("utf-8", errors="replace")
    except FileNotFoundError as exc:
        raise GitError("git executable not found") from exc
    except subprocess.CalledProcessError as exc:
        msg = exc.output.decode("utf-8", errors="replace")
        raise GitError(f"git failed: {' '.join(cmd)}\n{msg}") from exc


@dataclass(frozen=True)
class GitRepository:
    """Thin wrapper over the git CLI for one working tree."""

    path: Path

    def head_commit_hash(self) -> str:
        return _run_git(self.path, ["rev-parse", "HEAD"]).strip()

    def current_branch(self) -> str:
        return _run_git(self.path, ["rev-parse", "--abbrev-ref", "HEAD"]).strip()

    def has_uncommitted_changes(self) -> bool:
        # Staged changes are allowed: they belong to a resumable run.
        out = _run_git(self.path, ["status", "--porcelain", "--untracked-files=no"])
        return any(line[1:2].strip() for line in out.splitlines())

    def has_staged_changes(self) -> bool:
        out = _run_git(self.path, ["diff", "--cached", "--name-only"])
        return bool(out.strip())

    def tag_exists(self, tag: str) -> bool:
        out = _run_git(self.path, ["tag", "--list", tag])
        return bool(out.strip())

    def log_since(self, ref: str | None, paths: Iterable[str]) -> list[str]:
        """One-line commit subjects touching paths since ref (all history when None)."""
        rev = f"{ref}..HEAD" if ref else "HEAD"
        out = _run_git(self.path, ["log", "--pretty=format:%h %s", rev, "--", *paths])
        return [line for line in out.splitlines() if line.strip()]

    def add(self, paths: Iterable[str | Path]) -> None:
        _run_git(self.path, ["add", "--", *(str(p) for p in paths)])

    def restore(self, paths: Iterable[str | Path]) -> None:
        """Discard working tree changes to the given paths."""
        _run_git(self.path, ["checkout", "--", *(str(p) for p in paths)])

    def commit(self, message: str) -> None:
        logger.info("Committing: %s", message.splitlines()[0] if message else "")
        _run_git(self.path, ["commit", "-m", message])

    def tag(self, name: str, message: str | None = None) -> None:
        args = ["tag", name] if message is None else ["tag", "-a", name, "-m", message]
        _run_git(self.path, args)

    def push(self, remote: str, branch: str, *, follow_tags: bool = True) -> None:
        args = ["push", remote, branch]
        if follow_tags:
            args.append("--follow-tags")
        logger.info("Pushing %s to %s", branch, remote)
        _run_git(self.path, args)
