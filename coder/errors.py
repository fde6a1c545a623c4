"""Exception hierarchy for the coder agent."""


class CoderError(Exception):
    """Base class for reportable runtime failures.

    ``detail`` carries extra text (captured stderr, validation context) that
    is handed back to the model alongside the message.
    """

    def __init__(self, message: str, *, detail: str | None = None):
        super().__init__(message)
        self.detail = detail


class ConfigError(CoderError):
    """Raised for missing or invalid settings."""


class SourceControlError(CoderError):
    """Raised when the issue tracker / source-control API call fails."""


class GitError(CoderError):
    """Raised when a local git command fails."""


class CommandError(CoderError):
    """Raised when a lint/analyse/test command exits nonzero."""

    def __init__(self, command: list[str], returncode: int, stderr: str):
        super().__init__(
            f"command {' '.join(command)!r} exited with code {returncode}: {stderr.strip()}",
            detail=stderr,
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class MissingArgumentsError(CoderError):
    """Raised when tool-call arguments are malformed or incomplete."""


class TokenizerError(CoderError):
    """Raised when token counting is unavailable."""


class SerializationError(CoderError):
    """Raised when a request or response cannot be decoded."""


class MalformedResponseError(SerializationError):
    """Raised when the assistant text cannot be cleaned safely."""


class InferenceError(CoderError):
    """Raised when the inference service call fails."""


class UnknownToolError(CoderError):
    """Raised when the model names a tool that is not in the registry."""


class IssueValidationError(CoderError):
    """Raised when an issue does not satisfy the validation rules."""


class SnapshotError(CoderError):
    """Base class for workspace snapshot failures."""


class SnapshotMissingError(SnapshotError):
    """The snapshot file does not exist."""


class SnapshotMalformedError(SnapshotError):
    """The snapshot file exists but cannot be decoded."""


class FileNotInSnapshotError(SnapshotError):
    """The requested path is not a key of the snapshot."""
