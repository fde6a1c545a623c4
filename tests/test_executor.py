"""Tests for ToolExecutor: issue validation, code tools, commands and pull requests."""

import pytest

from coder.config import LanguageProfile, Settings
from coder.errors import (
    CommandError,
    FileNotInSnapshotError,
    GitError,
    IssueValidationError,
    MissingArgumentsError,
    SnapshotMalformedError,
    SnapshotMissingError,
    SourceControlError,
)
from coder.executor import ToolExecutor, safe_resolve, template_sections, validate_issue
from coder.scm import Issue, PullRequest
from coder.snapshot import WorkspaceSnapshot, snapshot_path
from coder.tools import COMPLETED, ToolInvocation, ToolName, Workflow

LINT_FAILS = "sh -c 'echo \"warning: unused import\" >&2; exit 1'"


class FakeSCM:
    def __init__(self, issues=None):
        self.issues = issues or {}
        self.fetched = []
        self.created = []

    def issue_get(self, number):
        self.fetched.append(number)
        try:
            return self.issues[number]
        except KeyError:
            raise SourceControlError(f"issue #{number} not found") from None

    def create_pull_request(self, base, head, title, body):
        self.created.append({"base": base, "head": head, "title": title, "body": body})
        return PullRequest(7, "https://example.com/pulls/7", title, body)


class FakeGit:
    def __init__(self, fail_cleanup=False, fail_push=False):
        self.calls = []
        self.fail_cleanup = fail_cleanup
        self.fail_push = fail_push

    def unique_branch_name(self, desired):
        return desired

    def create_branch(self, name):
        self.calls.append(("create_branch", name))

    def add_all(self, exclude=()):
        self.calls.append(("add_all", tuple(exclude)))

    def commit(self, message):
        self.calls.append(("commit", message))

    def push(self, branch, remote="origin"):
        if self.fail_push:
            raise GitError("push rejected")
        self.calls.append(("push", branch))

    def checkout(self, name):
        if self.fail_cleanup:
            raise GitError("checkout failed")
        self.calls.append(("checkout", name))

    def delete_branch(self, name):
        self.calls.append(("delete_branch", name))

    def reset_soft(self, ref):
        self.calls.append(("reset_soft", ref))

    def has_changes(self, path):
        return True


def _settings(tmp_path, **overrides):
    defaults = dict(
        base_dir=str(tmp_path),
        provider="test",
        model="test-model",
        language=LanguageProfile(
            "sh", lint=LINT_FAILS, analyse="sh -c 'exit 0'", test="sh -c 'echo 3 passed'"
        ),
        iteration_delay=0,
        verbose=False,
    )
    defaults.update(overrides)
    return Settings(**defaults)


def _executor(tmp_path, *, issues=None, workflow=Workflow.FIX, git=None, **overrides):
    scm = FakeSCM(issues)
    executor = ToolExecutor(
        _settings(tmp_path, **overrides), scm, workflow=workflow, git=git or FakeGit()
    )
    return executor, scm


def _invoke(executor, tool, **arguments):
    return executor.execute(ToolInvocation("call-1", tool, arguments))


GOOD_ISSUE = Issue(14, "Crash on empty input", "## Steps\nrun it\n## Expected\nno crash")


# ---------------------------------------------------------------------------
# Paths and templates
# ---------------------------------------------------------------------------


class TestSafeResolve:
    def test_relative_path(self, tmp_path):
        assert safe_resolve("src/a.py", str(tmp_path)) == (tmp_path / "src" / "a.py").resolve()

    @pytest.mark.parametrize("path", ["../outside.py", "src/../../x", "."])
    def test_escape_rejected(self, tmp_path, path):
        with pytest.raises(MissingArgumentsError):
            safe_resolve(path, str(tmp_path))

    def test_absolute_rejected(self, tmp_path):
        with pytest.raises(MissingArgumentsError, match="relative"):
            safe_resolve(str(tmp_path / "a.py"), str(tmp_path))


def test_template_sections():
    template = "# Bug\n\n## Steps to reproduce\n\n## Expected behaviour ##\ntext\n### Not a section\n"
    assert template_sections(template) == ["Steps to reproduce", "Expected behaviour"]


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


class TestIssueValidation:
    def test_valid_issue(self, tmp_path):
        executor, _ = _executor(tmp_path, issues={14: GOOD_ISSUE})
        result = _invoke(executor, ToolName.ISSUE_VALIDATE, issue_number=14)
        assert result.succeeded
        assert result.result["title"] == "Crash on empty input"
        assert executor.validated_issue == GOOD_ISSUE

    def test_empty_title_fails_before_any_pull_request(self, tmp_path):
        executor, scm = _executor(tmp_path, issues={3: Issue(3, "   ", "body")})
        with pytest.raises(IssueValidationError, match="title"):
            _invoke(executor, ToolName.ISSUE_VALIDATE, issue_number=3)
        assert executor.validated_issue is None
        assert scm.created == []

    def test_zero_issue_number(self):
        with pytest.raises(IssueValidationError, match="nonzero"):
            validate_issue(Issue(0, "title"))

    def test_missing_template_section(self, tmp_path):
        template = tmp_path / "bug.md"
        template.write_text("## Steps\n\n## Environment\n", encoding="utf-8")
        executor, _ = _executor(
            tmp_path, issues={14: GOOD_ISSUE}, issue_template=str(template)
        )
        with pytest.raises(IssueValidationError, match="Environment"):
            _invoke(executor, ToolName.ISSUE_VALIDATE, issue_number=14)

    def test_unreadable_template_is_ignored(self, tmp_path):
        executor, _ = _executor(
            tmp_path, issues={14: GOOD_ISSUE}, issue_template=str(tmp_path / "nope.md")
        )
        assert _invoke(executor, ToolName.ISSUE_VALIDATE, issue_number=14).succeeded

    def test_issue_pull(self, tmp_path):
        executor, scm = _executor(tmp_path, issues={14: GOOD_ISSUE})
        result = _invoke(executor, ToolName.ISSUE_PULL, issue_number=14)
        assert result.result == {"number": 14, "title": GOOD_ISSUE.title, "body": GOOD_ISSUE.body}
        assert scm.fetched == [14]
        assert executor.validated_issue is None

    def test_no_scm_configured(self, tmp_path):
        executor = ToolExecutor(_settings(tmp_path), None, git=FakeGit())
        with pytest.raises(IssueValidationError, match="source-control"):
            _invoke(executor, ToolName.ISSUE_PULL, issue_number=1)


# ---------------------------------------------------------------------------
# code_read / code_write
# ---------------------------------------------------------------------------


class TestCodeRead:
    def test_reads_from_snapshot(self, tmp_path):
        WorkspaceSnapshot(tmp_path, ".", {"src/lib.rs": "pub fn f() {}"}).save()
        executor, _ = _executor(tmp_path)
        result = _invoke(executor, ToolName.CODE_READ, path="src/lib.rs")
        assert result.result == "pub fn f() {}"

    def test_missing_key(self, tmp_path):
        WorkspaceSnapshot(tmp_path, ".", {"src/lib.rs": ""}).save()
        executor, _ = _executor(tmp_path)
        with pytest.raises(FileNotInSnapshotError, match="not found"):
            _invoke(executor, ToolName.CODE_READ, path="src/missing.rs")

    def test_malformed_snapshot(self, tmp_path):
        path = snapshot_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")
        executor, _ = _executor(tmp_path)
        with pytest.raises(SnapshotMalformedError, match="decode"):
            _invoke(executor, ToolName.CODE_READ, path="src/missing.rs")


class TestCodeWrite:
    def test_refused_before_validation(self, tmp_path):
        executor, _ = _executor(tmp_path)
        with pytest.raises(IssueValidationError, match="issue_validate"):
            _invoke(executor, ToolName.CODE_WRITE, path="a.py", content="x")
        assert not (tmp_path / "a.py").exists()

    def test_refactor_needs_no_validation(self, tmp_path):
        WorkspaceSnapshot(tmp_path, ".", {}).save()
        executor, _ = _executor(tmp_path, workflow=Workflow.REFACTOR)
        result = _invoke(executor, ToolName.CODE_WRITE, path="pkg/new.py", content="x = 1\n")
        assert result.succeeded and not result.retry
        assert (tmp_path / "pkg" / "new.py").read_text(encoding="utf-8") == "x = 1\n"
        assert WorkspaceSnapshot.load(tmp_path).get("pkg/new.py") == "x = 1\n"

    def test_escape_rejected(self, tmp_path):
        executor, _ = _executor(tmp_path, workflow=Workflow.REFACTOR)
        with pytest.raises(MissingArgumentsError):
            _invoke(executor, ToolName.CODE_WRITE, path="../evil.py", content="x")

    def test_missing_snapshot_leaves_workspace_untouched(self, tmp_path):
        executor, _ = _executor(tmp_path, workflow=Workflow.REFACTOR)
        with pytest.raises(SnapshotMissingError):
            _invoke(executor, ToolName.CODE_WRITE, path="a.py", content="x = 1\n")
        assert not (tmp_path / "a.py").exists()


class TestCodeWriteRetry:
    def _setup(self, git_repo, tmp_path):
        WorkspaceSnapshot.build(tmp_path).save()
        executor, _ = _executor(tmp_path, workflow=Workflow.REFACTOR, git=git_repo)
        return executor

    def test_identical_content_requests_retry(self, git_repo, tmp_path):
        executor = self._setup(git_repo, tmp_path)
        result = _invoke(executor, ToolName.CODE_WRITE, path="a.txt", content="one\n")
        assert result.succeeded
        assert result.retry is True

    def test_real_change_does_not_retry(self, git_repo, tmp_path):
        executor = self._setup(git_repo, tmp_path)
        result = _invoke(executor, ToolName.CODE_WRITE, path="a.txt", content="two\n")
        assert result.succeeded
        assert result.retry is False

    def test_new_untracked_file_is_a_change(self, git_repo, tmp_path):
        executor = self._setup(git_repo, tmp_path)
        result = _invoke(executor, ToolName.CODE_WRITE, path="b.txt", content="new\n")
        assert result.retry is False

    def test_reverting_to_head_requests_retry(self, git_repo, tmp_path):
        executor = self._setup(git_repo, tmp_path)
        (tmp_path / "a.txt").write_text("edited\n", encoding="utf-8")
        result = _invoke(executor, ToolName.CODE_WRITE, path="a.txt", content="one\n")
        assert result.retry is True


# ---------------------------------------------------------------------------
# lint / analyse / test
# ---------------------------------------------------------------------------


class TestProfileCommands:
    def test_lint_failure_carries_stderr(self, tmp_path):
        executor, _ = _executor(tmp_path)
        with pytest.raises(CommandError) as excinfo:
            _invoke(executor, ToolName.CODE_LINT)
        assert excinfo.value.returncode == 1
        assert "warning: unused import" in excinfo.value.stderr
        assert "warning: unused import" in excinfo.value.detail

    def test_analyse_success(self, tmp_path):
        executor, _ = _executor(tmp_path)
        assert _invoke(executor, ToolName.CODE_ANALYSE).succeeded

    def test_test_output_returned(self, tmp_path):
        executor, _ = _executor(tmp_path)
        result = _invoke(executor, ToolName.CODE_TEST)
        assert result.succeeded
        assert "3 passed" in result.result

    def test_missing_executable(self, tmp_path):
        executor, _ = _executor(
            tmp_path, language=LanguageProfile("x", lint="definitely-not-a-real-linter")
        )
        with pytest.raises(CommandError, match="failed to start"):
            _invoke(executor, ToolName.CODE_LINT)


# ---------------------------------------------------------------------------
# pull_request / docs_reference / done
# ---------------------------------------------------------------------------


class TestPullRequest:
    def test_refused_before_validation(self, tmp_path):
        executor, scm = _executor(tmp_path)
        with pytest.raises(IssueValidationError):
            _invoke(executor, ToolName.PULL_REQUEST, title="t", body="b")
        assert scm.created == []

    def test_fix_pull_request(self, tmp_path):
        git = FakeGit()
        executor, scm = _executor(tmp_path, issues={14: GOOD_ISSUE}, git=git)
        _invoke(executor, ToolName.ISSUE_VALIDATE, issue_number=14)
        result = _invoke(executor, ToolName.PULL_REQUEST, title="Handle empty input", body="Fixes it.")

        assert result.succeeded
        assert "#7" in result.message
        assert scm.created == [
            {
                "base": "main",
                "head": "coder/fix-issue-14",
                "title": "Handle empty input",
                "body": "Fixes it.\n\nCloses #14",
            }
        ]
        assert git.calls == [
            ("create_branch", "coder/fix-issue-14"),
            ("add_all", (".coder",)),
            ("commit", "fix: Handle empty input (#14)"),
            ("push", "coder/fix-issue-14"),
            ("checkout", "main"),
            ("delete_branch", "coder/fix-issue-14"),
        ]

    def test_refactor_pull_request_with_branch_name(self, tmp_path):
        git = FakeGit()
        executor, scm = _executor(tmp_path, workflow=Workflow.REFACTOR, git=git, base_branch="dev")
        _invoke(
            executor, ToolName.PULL_REQUEST, title="Tidy", body="b", branch_name="coder/tidy"
        )
        assert scm.created[0]["base"] == "dev"
        assert scm.created[0]["head"] == "coder/tidy"
        assert scm.created[0]["body"] == "b"
        assert ("commit", "refactor: Tidy") in git.calls

    def test_cleanup_failure_is_only_a_warning(self, tmp_path):
        executor, scm = _executor(
            tmp_path, workflow=Workflow.REFACTOR, git=FakeGit(fail_cleanup=True)
        )
        result = _invoke(executor, ToolName.PULL_REQUEST, title="t", body="b")
        assert result.succeeded
        assert len(scm.created) == 1

    def test_push_failure_returns_to_base(self, tmp_path):
        git = FakeGit(fail_push=True)
        executor, scm = _executor(tmp_path, workflow=Workflow.REFACTOR, git=git)
        with pytest.raises(GitError, match="push rejected"):
            _invoke(executor, ToolName.PULL_REQUEST, title="t", body="b")
        assert scm.created == []
        assert git.calls[-3:] == [
            ("reset_soft", "main"),
            ("checkout", "main"),
            ("delete_branch", "coder/refactor"),
        ]

    def test_scm_failure_returns_to_base(self, tmp_path):
        git = FakeGit()
        executor, scm = _executor(tmp_path, workflow=Workflow.REFACTOR, git=git)

        def reject(*args):
            raise SourceControlError("HTTP 422")

        scm.create_pull_request = reject
        with pytest.raises(SourceControlError):
            _invoke(executor, ToolName.PULL_REQUEST, title="t", body="b")
        assert git.calls[-1] == ("delete_branch", "coder/refactor")


class TestPullRequestRollback:
    def test_clean_tree_commit_failure(self, git_repo, tmp_path):
        executor, _ = _executor(tmp_path, workflow=Workflow.REFACTOR, git=git_repo)
        with pytest.raises(GitError, match="commit"):
            _invoke(executor, ToolName.PULL_REQUEST, title="t", body="b")
        assert git_repo.current_branch() == "main"
        assert not git_repo.branch_exists("coder/refactor")

    def test_push_failure_keeps_edits_on_base(self, git_repo, tmp_path):
        (tmp_path / "a.txt").write_text("two\n", encoding="utf-8")
        executor, _ = _executor(tmp_path, workflow=Workflow.REFACTOR, git=git_repo)
        with pytest.raises(GitError, match="push"):
            _invoke(executor, ToolName.PULL_REQUEST, title="t", body="b")
        assert git_repo.current_branch() == "main"
        assert not git_repo.branch_exists("coder/refactor")
        assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "two\n"
        assert git_repo.has_changes("a.txt")


def test_docs_reference_is_a_noop(tmp_path):
    executor, _ = _executor(tmp_path)
    result = _invoke(executor, ToolName.DOCS_REFERENCE, query="tokio select")
    assert result.succeeded
    assert not result.completed


def test_done_returns_completed(tmp_path):
    executor, _ = _executor(tmp_path)
    result = _invoke(executor, ToolName.DONE, summary="fixed")
    assert result.completed
    assert result.message == COMPLETED
    assert result.result == "fixed"
