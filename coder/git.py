"""Thin wrapper around the local git executable."""

import datetime
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import GitError


@dataclass(frozen=True)
class GitRunResult:
    ok: bool
    code: int
    out: str
    err: str


class GitOps:
    """Runs ``git -C <repo> ...`` and turns failures into GitError."""

    def __init__(self, repo: str | Path):
        self.repo = Path(repo).expanduser().resolve()

    def _git(self, *args: str, check: bool = True) -> GitRunResult:
        cmd = ["git", "-C", str(self.repo), *args]
        try:
            proc = subprocess.run(
                cmd, capture_output=True, text=True, stdin=subprocess.DEVNULL
            )
        except OSError as e:
            raise GitError(f"failed to execute git: {e}") from e

        res = GitRunResult(
            ok=proc.returncode == 0,
            code=proc.returncode,
            out=(proc.stdout or "").strip(),
            err=(proc.stderr or "").strip(),
        )
        if check and not res.ok:
            raise GitError(
                f"git {' '.join(args)} failed (rc={res.code}): {res.err or res.out}",
                detail=res.err,
            )
        return res

    def is_repo(self) -> bool:
        try:
            return self._git("rev-parse", "--is-inside-work-tree", check=False).ok
        except GitError:
            return False

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").out or "HEAD"

    def tracked_files(self) -> list[str]:
        """Tracked and untracked-but-not-ignored files, relative to the repo root."""
        res = self._git("ls-files", "--cached", "--others", "--exclude-standard", "-z")
        return sorted({p for p in res.out.split("\0") if p})

    def has_changes(self, path: str) -> bool:
        """True if ``path`` differs from HEAD/index or is untracked."""
        res = self._git("status", "--porcelain", "--untracked-files=all", "--", path)
        return bool(res.out)

    def branch_exists(self, name: str) -> bool:
        return self._git(
            "show-ref", "--verify", "--quiet", f"refs/heads/{name}", check=False
        ).ok

    def unique_branch_name(self, desired: str) -> str:
        if not self.branch_exists(desired):
            return desired
        ts = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
        return f"{desired}-{ts}"

    def create_branch(self, name: str) -> None:
        self._git("checkout", "-b", name)

    def checkout(self, name: str) -> None:
        self._git("checkout", name)

    def add_all(self, exclude: tuple[str, ...] = ()) -> None:
        pathspec = [".", *(f":(exclude){p}" for p in exclude)]
        self._git("add", "-A", "--", *pathspec)

    def commit(self, message: str) -> None:
        self._git("commit", "-m", message)

    def push(self, branch: str, remote: str = "origin") -> None:
        self._git("push", "--set-upstream", remote, branch)

    def delete_branch(self, name: str) -> None:
        self._git("branch", "-D", name)

    def reset_soft(self, ref: str) -> None:
        """Move HEAD to ``ref`` keeping the index and working tree."""
        self._git("reset", "--soft", ref)
