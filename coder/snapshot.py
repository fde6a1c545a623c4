"""Workspace snapshot: cached file tree and file contents under .coder/index.json."""

import json
import os
from pathlib import Path, PurePosixPath

from .errors import (
    FileNotInSnapshotError,
    SnapshotMalformedError,
    SnapshotMissingError,
)
from .git import GitOps

CODER_DIR = ".coder"
SNAPSHOT_NAME = "index.json"
MAX_FILE_BYTES = 512 * 1024
BINARY_CHECK_BYTES = 8 * 1024


def snapshot_path(base_dir: str | Path) -> Path:
    return Path(base_dir) / CODER_DIR / SNAPSHOT_NAME


def list_workspace_files(base_dir: str | Path) -> list[str]:
    """Relative POSIX paths of the files worth indexing.

    Inside a git work tree the ignore rules come from git; otherwise hidden
    files and directories are skipped.
    """
    base = Path(base_dir).resolve()
    git = GitOps(base)
    if git.is_repo():
        files = git.tracked_files()
    else:
        files = []
        for root, dirs, names in os.walk(base):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for name in names:
                if name.startswith("."):
                    continue
                rel = Path(root, name).relative_to(base)
                files.append(PurePosixPath(*rel.parts).as_posix())
    return sorted(f for f in files if not f.startswith(f"{CODER_DIR}/"))


def build_tree(paths: list[str]) -> str:
    """Render relative paths as an indented tree, like the ``tree`` command."""
    root: dict = {}
    for path in paths:
        node = root
        for part in PurePosixPath(path).parts:
            node = node.setdefault(part, {})

    lines = ["."]

    def _walk(node: dict, prefix: str) -> None:
        entries = sorted(node.items(), key=lambda kv: (not kv[1], kv[0]))
        for i, (name, child) in enumerate(entries):
            last = i == len(entries) - 1
            lines.append(f"{prefix}{'└── ' if last else '├── '}{name}")
            if child:
                _walk(child, prefix + ("    " if last else "│   "))

    _walk(root, "")
    return "\n".join(lines)


def _read_text(path: Path) -> str | None:
    """Return file text, or None for binary, oversized or unreadable files."""
    try:
        if path.stat().st_size > MAX_FILE_BYTES:
            return None
        with path.open("rb") as f:
            data = f.read()
    except OSError:
        return None
    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


class WorkspaceSnapshot:
    """Mapping of relative path -> file text, kept apart from the live tree."""

    def __init__(self, base_dir: str | Path, tree: str = "", content: dict | None = None):
        self.base_dir = Path(base_dir)
        self.tree = tree
        self.content: dict[str, str] = dict(content or {})

    @property
    def path(self) -> Path:
        return snapshot_path(self.base_dir)

    @classmethod
    def build(cls, base_dir: str | Path) -> "WorkspaceSnapshot":
        base = Path(base_dir)
        paths = list_workspace_files(base)
        content = {}
        for rel in paths:
            text = _read_text(base / rel)
            if text is not None:
                content[rel] = text
        return cls(base, build_tree(paths), content)

    @classmethod
    def load(cls, base_dir: str | Path) -> "WorkspaceSnapshot":
        path = snapshot_path(base_dir)
        if not path.is_file():
            raise SnapshotMissingError(
                f"workspace snapshot not found at {path}; run `coder index` first"
            )
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SnapshotMalformedError(f"cannot decode workspace snapshot {path}: {e}") from e

        if not isinstance(data, dict):
            raise SnapshotMalformedError(f"{path}: expected a JSON object at top level")
        content = data.get("content")
        if not isinstance(content, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in content.items()
        ):
            raise SnapshotMalformedError(f"{path}: 'content' must map paths to text")
        tree = data.get("tree", "")
        if not isinstance(tree, str):
            raise SnapshotMalformedError(f"{path}: 'tree' must be a string")
        return cls(base_dir, tree, content)

    def get(self, rel_path: str) -> str:
        try:
            return self.content[rel_path]
        except KeyError:
            raise FileNotInSnapshotError(
                f"file {rel_path!r} not found in workspace snapshot"
            ) from None

    def update(self, rel_path: str, text: str) -> None:
        # tree is left as built; `coder index` rebuilds it
        self.content[rel_path] = text

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"tree": self.tree, "content": self.content}
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    def __contains__(self, rel_path: str) -> bool:
        return rel_path in self.content

    def __len__(self) -> int:
        return len(self.content)
