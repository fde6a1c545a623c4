"""Tool execution: one ToolInvocation in, one ToolResult envelope out."""

import re
import shlex
import subprocess
from pathlib import Path, PurePosixPath

from . import fmt
from .config import Settings
from .errors import (
    CoderError,
    CommandError,
    GitError,
    IssueValidationError,
    MissingArgumentsError,
)
from .git import GitOps
from .scm import Issue, SourceControl
from .snapshot import CODER_DIR, WorkspaceSnapshot
from .tools import COMPLETED, ToolInvocation, ToolName, ToolResult, Workflow

_SECTION_RE = re.compile(r"^##\s+(.+?)\s*#*\s*$", re.MULTILINE)


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a relative file path, ensuring it stays inside base_dir.

    Raises:
        MissingArgumentsError: If the path is absolute or escapes base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        raise MissingArgumentsError(f"path {file_path!r} must be relative to the repository root")
    resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base) or resolved == base:
        raise MissingArgumentsError(
            f"path {file_path!r} resolves to {resolved}, which is outside the repository {base}"
        )
    return resolved


def template_sections(template: str) -> list[str]:
    """Names of the ``## `` sections of an issue template, in order."""
    return [m.group(1).strip() for m in _SECTION_RE.finditer(template)]


def validate_issue(issue: Issue, template: str | None = None) -> None:
    """Raise IssueValidationError for the first rule the issue violates."""
    if issue.number == 0:
        raise IssueValidationError("issue number must be nonzero")
    if not issue.title.strip():
        raise IssueValidationError(f"issue #{issue.number} has an empty title")
    if template:
        body = issue.body or ""
        for section in template_sections(template):
            if section not in body:
                raise IssueValidationError(
                    f"issue #{issue.number} body is missing the template section {section!r}"
                )


class ToolExecutor:
    """Runs tool invocations against the workspace and the source-control service.

    Failures raise CoderError subclasses; the agent loop turns them into
    error envelopes.
    """

    def __init__(
        self,
        settings: Settings,
        scm: SourceControl | None,
        *,
        workflow: Workflow = Workflow.FIX,
        git: GitOps | None = None,
    ):
        self.settings = settings
        self.scm = scm
        self.workflow = workflow
        self.git = git or GitOps(settings.base_dir)
        self.validated_issue: Issue | None = None
        self._snapshot: WorkspaceSnapshot | None = None

    # -- helpers ---------------------------------------------------------

    @property
    def snapshot(self) -> WorkspaceSnapshot:
        if self._snapshot is None:
            self._snapshot = WorkspaceSnapshot.load(self.settings.base_dir)
        return self._snapshot

    def _require_scm(self) -> SourceControl:
        if self.scm is None:
            raise IssueValidationError("no source-control service is configured")
        return self.scm

    def _require_validated(self, tool: ToolName) -> None:
        if self.workflow is Workflow.FIX and self.validated_issue is None:
            raise IssueValidationError(
                f"{tool.value} refused: validate the issue with issue_validate first"
            )

    def _read_template(self) -> str | None:
        path = self.settings.issue_template
        if not path:
            return None
        try:
            return Path(path).read_text(encoding="utf-8")
        except OSError as e:
            fmt.warning(f"cannot read issue template {path}: {e}")
            return None

    # -- dispatch --------------------------------------------------------

    def execute(self, invocation: ToolInvocation) -> ToolResult:
        tool = invocation.tool
        args = invocation.arguments

        if tool is ToolName.ISSUE_VALIDATE:
            return self.issue_validate(args["issue_number"])
        elif tool is ToolName.ISSUE_PULL:
            return self.issue_pull(args["issue_number"])
        elif tool is ToolName.CODE_READ:
            return self.code_read(args["path"])
        elif tool is ToolName.CODE_WRITE:
            return self.code_write(args["path"], args["content"])
        elif tool is ToolName.CODE_LINT:
            return self.run_profile_command("lint")
        elif tool is ToolName.CODE_ANALYSE:
            return self.run_profile_command("analyse")
        elif tool is ToolName.CODE_TEST:
            return self.run_profile_command("test")
        elif tool is ToolName.PULL_REQUEST:
            return self.pull_request(
                title=args["title"],
                body=args["body"],
                branch_name=args.get("branch_name"),
                issue_number=args.get("issue_number"),
            )
        elif tool is ToolName.DOCS_REFERENCE:
            return ToolResult.ok("Documentation lookup is not available; rely on the code you can read.")
        elif tool is ToolName.DONE:
            return ToolResult.ok(COMPLETED, result=args.get("summary"))
        else:
            raise AssertionError(f"unhandled tool {tool!r}")

    # -- issues ----------------------------------------------------------

    def issue_pull(self, number: int) -> ToolResult:
        issue = self._require_scm().issue_get(number)
        return ToolResult.ok(f"Pulled issue #{issue.number}", result=issue.to_context())

    def issue_validate(self, number: int) -> ToolResult:
        issue = self._require_scm().issue_get(number)
        validate_issue(issue, self._read_template())
        self.validated_issue = issue
        return ToolResult.ok(f"Issue #{issue.number} is valid", result=issue.to_context())

    # -- code ------------------------------------------------------------

    def code_read(self, path: str) -> ToolResult:
        content = self.snapshot.get(path)
        return ToolResult.ok(f"Read {path}", result=content)

    def code_write(self, path: str, content: str) -> ToolResult:
        self._require_validated(ToolName.CODE_WRITE)
        resolved = safe_resolve(path, self.settings.base_dir)
        rel = PurePosixPath(*resolved.relative_to(Path(self.settings.base_dir).resolve()).parts).as_posix()
        snapshot = self.snapshot

        previous = None
        if resolved.is_file():
            try:
                previous = resolved.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                previous = None

        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")

        snapshot.update(rel, content)
        snapshot.save()

        changed = previous != content and self.git.has_changes(rel)
        if not changed:
            return ToolResult.ok(
                f"Wrote {path}, but the file has no changes compared to the repository",
                retry=True,
            )
        return ToolResult.ok(f"Wrote {len(content.encode('utf-8'))} bytes to {path}")

    def run_profile_command(self, kind: str) -> ToolResult:
        command = shlex.split(self.settings.language.command(kind))
        try:
            proc = subprocess.run(
                command,
                cwd=self.settings.base_dir,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
            )
        except OSError as e:
            raise CommandError(command, -1, f"failed to start command: {e}") from e
        if proc.returncode != 0:
            raise CommandError(command, proc.returncode, proc.stderr or proc.stdout)
        return ToolResult.ok(f"{kind} passed", result=proc.stdout)

    # -- pull requests ---------------------------------------------------

    def pull_request(
        self,
        *,
        title: str,
        body: str,
        branch_name: str | None = None,
        issue_number: int | None = None,
    ) -> ToolResult:
        self._require_validated(ToolName.PULL_REQUEST)
        scm = self._require_scm()
        if issue_number is None and self.validated_issue is not None:
            issue_number = self.validated_issue.number

        if issue_number is not None:
            default_branch = f"coder/fix-issue-{issue_number}"
            commit_message = f"fix: {title} (#{issue_number})"
            body = f"{body}\n\nCloses #{issue_number}"
        else:
            default_branch = "coder/refactor"
            commit_message = f"refactor: {title}"

        base = self.settings.base_branch
        branch = self.git.unique_branch_name(branch_name or default_branch)

        self.git.create_branch(branch)
        try:
            self.git.add_all(exclude=(CODER_DIR,))
            self.git.commit(commit_message)
            self.git.push(branch)
            pr = scm.create_pull_request(base, branch, title, body)
        except CoderError:
            self._abandon_branch(base, branch)
            raise

        try:
            self.git.checkout(base)
            self.git.delete_branch(branch)
        except GitError as e:
            fmt.warning(f"pull request #{pr.number} opened, but branch cleanup failed: {e}")

        return ToolResult.ok(f"Opened pull request #{pr.number}: {pr.url}", result=pr.to_context())

    def _abandon_branch(self, base: str, branch: str) -> None:
        """Return to ``base`` with the edits uncommitted and drop ``branch``."""
        try:
            self.git.reset_soft(base)
            self.git.checkout(base)
            self.git.delete_branch(branch)
        except GitError as e:
            fmt.warning(f"could not restore {base} after the failed pull request: {e}")
