import shutil
import subprocess

import pytest

from coder import fmt
from coder.git import GitOps


@pytest.fixture(autouse=True)
def _plain_console():
    fmt.init(no_color=True)


@pytest.fixture
def git_repo(tmp_path):
    """A repo in tmp_path on branch main with one committed file, a.txt."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")

    def run(*args):
        subprocess.run(["git", "-C", str(tmp_path), *args], check=True, capture_output=True)

    run("init", "-q")
    run("config", "user.email", "coder@example.com")
    run("config", "user.name", "coder tests")
    run("config", "commit.gpgsign", "false")
    run("symbolic-ref", "HEAD", "refs/heads/main")
    (tmp_path / "a.txt").write_text("one\n", encoding="utf-8")
    run("add", "a.txt")
    run("commit", "-q", "-m", "initial")
    return GitOps(tmp_path)
