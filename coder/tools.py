"""Tool registry: the closed set of tools the model may call, and the result envelope."""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from jsonschema import Draft7Validator

from .errors import MissingArgumentsError, UnknownToolError

COMPLETED = "completed"


class ToolName(Enum):
    ISSUE_VALIDATE = "issue_validate"
    ISSUE_PULL = "issue_pull"
    CODE_READ = "code_read"
    CODE_WRITE = "code_write"
    CODE_LINT = "code_lint"
    CODE_ANALYSE = "code_analyse"
    CODE_TEST = "code_test"
    PULL_REQUEST = "pull_request"
    DOCS_REFERENCE = "docs_reference"
    DONE = "done"

    @classmethod
    def parse(cls, name: str, declared: "set[ToolName] | None" = None) -> "ToolName":
        """Map a model-supplied name to a tool.

        With ``declared``, names outside that set are rejected as well.
        """
        allowed = declared if declared is not None else set(cls)
        try:
            tool = cls(name)
        except ValueError:
            tool = None
        if tool not in allowed:
            known = ", ".join(t.value for t in cls if t in allowed)
            raise UnknownToolError(f"unknown tool {name!r}; declared tools: {known}")
        return tool


class Workflow(Enum):
    FIX = "fix"
    REFACTOR = "refactor"


_ISSUE_NUMBER = {
    "type": "integer",
    "description": "The issue number, without the leading '#'.",
}

_NO_ARGS = {"type": "object", "properties": {}}


def _function(name: ToolName, description: str, parameters: dict) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name.value,
            "description": description,
            "parameters": parameters,
        },
    }


TOOL_DEFINITIONS: dict[ToolName, dict] = {
    ToolName.ISSUE_VALIDATE: _function(
        ToolName.ISSUE_VALIDATE,
        (
            "Pull the issue and check that it is complete enough to work on: "
            "it must have a title and contain every section of the issue template. "
            "Call this first; code changes are refused until the issue is valid."
        ),
        {
            "type": "object",
            "properties": {"issue_number": _ISSUE_NUMBER},
            "required": ["issue_number"],
        },
    ),
    ToolName.ISSUE_PULL: _function(
        ToolName.ISSUE_PULL,
        "Fetch the number, title and body of an issue.",
        {
            "type": "object",
            "properties": {"issue_number": _ISSUE_NUMBER},
            "required": ["issue_number"],
        },
    ),
    ToolName.CODE_READ: _function(
        ToolName.CODE_READ,
        (
            "Read a file of the repository. Paths are relative to the repository "
            "root, exactly as listed in the project structure."
        ),
        {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative path of the file to read.",
                }
            },
            "required": ["path"],
        },
    ),
    ToolName.CODE_WRITE: _function(
        ToolName.CODE_WRITE,
        (
            "Replace the whole content of a file, creating parent directories as needed. "
            "Always send the complete file, not a fragment."
        ),
        {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Relative path of the file to write.",
                },
                "content": {
                    "type": "string",
                    "description": "The full new content of the file.",
                },
            },
            "required": ["path", "content"],
        },
    ),
    ToolName.CODE_LINT: _function(
        ToolName.CODE_LINT,
        "Run the project's linter and return its output.",
        _NO_ARGS,
    ),
    ToolName.CODE_ANALYSE: _function(
        ToolName.CODE_ANALYSE,
        "Run the project's static analysis (type check / compile check) and return its output.",
        _NO_ARGS,
    ),
    ToolName.CODE_TEST: _function(
        ToolName.CODE_TEST,
        "Run the project's test suite and return its output.",
        _NO_ARGS,
    ),
    ToolName.PULL_REQUEST: _function(
        ToolName.PULL_REQUEST,
        (
            "Commit all pending changes on a new branch, push it and open a pull request. "
            "Only call this once lint, analysis and tests pass."
        ),
        {
            "type": "object",
            "properties": {
                "title": {"type": "string", "minLength": 1},
                "body": {
                    "type": "string",
                    "description": "Description of the change for reviewers.",
                },
                "branch_name": {
                    "type": "string",
                    "description": "Optional branch name. Defaults to one derived from the issue.",
                },
                "issue_number": _ISSUE_NUMBER,
            },
            "required": ["title", "body"],
        },
    ),
    ToolName.DOCS_REFERENCE: _function(
        ToolName.DOCS_REFERENCE,
        "Look up documentation for a library, API or language feature.",
        {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    ),
    ToolName.DONE: _function(
        ToolName.DONE,
        "Declare the task complete. Call this after the pull request was opened.",
        {
            "type": "object",
            "properties": {
                "summary": {
                    "type": "string",
                    "description": "Short summary of what was done.",
                }
            },
        },
    ),
}

_VALIDATORS = {
    name: Draft7Validator(defn["function"]["parameters"])
    for name, defn in TOOL_DEFINITIONS.items()
}

_ISSUE_TOOLS = {ToolName.ISSUE_VALIDATE, ToolName.ISSUE_PULL}


def build_tools(workflow: Workflow) -> list[dict]:
    """Return the tool schemas advertised to the model for ``workflow``."""
    names = [t for t in ToolName]
    if workflow is Workflow.REFACTOR:
        names = [t for t in names if t not in _ISSUE_TOOLS]
    return [TOOL_DEFINITIONS[t] for t in names]


@dataclass(frozen=True)
class ToolInvocation:
    call_id: str
    tool: ToolName
    arguments: dict


def parse_arguments(tool: ToolName, raw: str | None) -> dict:
    """Decode and validate the JSON arguments of a tool call.

    Raises MissingArgumentsError on invalid JSON or schema violations.
    """
    if raw is None or not raw.strip():
        args: Any = {}
    else:
        try:
            args = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MissingArgumentsError(
                f"invalid JSON in {tool.value} arguments: {e}"
            ) from e
    if not isinstance(args, dict):
        raise MissingArgumentsError(
            f"{tool.value} arguments must be a JSON object, got {type(args).__name__}"
        )

    errors = sorted(_VALIDATORS[tool].iter_errors(args), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first.path)
        prefix = f"{tool.value}.{where}" if where else tool.value
        raise MissingArgumentsError(f"missing or invalid arguments for {prefix}: {first.message}")
    return args


@dataclass
class ToolResult:
    """Uniform outcome of one tool execution."""

    status: str
    message: str | None = None
    result: Any = None
    retry: bool = False

    @classmethod
    def ok(cls, message: str | None = None, result: Any = None, retry: bool = False) -> "ToolResult":
        return cls("ok", message, result, retry)

    @classmethod
    def error(cls, message: str, result: Any = None) -> "ToolResult":
        return cls("error", message, result, False)

    @property
    def succeeded(self) -> bool:
        return self.status == "ok"

    @property
    def completed(self) -> bool:
        return self.succeeded and self.message == COMPLETED

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "message": self.message,
            "result": self.result,
            "retry": self.retry,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
