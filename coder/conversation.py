"""Conversation log and its token-bounded view."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Callable

import tiktoken

from .errors import TokenizerError

FALLBACK_ENCODING = "cl100k_base"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """A tool call as emitted by the model: id, name and raw JSON arguments."""

    id: str
    name: str
    raw_arguments: str

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    def __post_init__(self):
        if (self.role is Role.TOOL) != (self.tool_call_id is not None):
            raise ValueError("tool_call_id must be set exactly for tool messages")
        if self.tool_calls and self.role is not Role.ASSISTANT:
            raise ValueError("only assistant messages carry tool calls")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str, tool_calls=()) -> "Message":
        return cls(Role.ASSISTANT, content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(Role.TOOL, content, tool_call_id=tool_call_id)

    def token_text(self) -> str:
        """Text whose token count is the cost of this message."""
        text = self.content
        for tc in self.tool_calls:
            text += tc.name + tc.raw_arguments
        return text

    def to_wire(self) -> dict:
        msg: dict = {"role": self.role.value, "content": self.content}
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        return msg


@lru_cache(maxsize=16)
def _encoding_for(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        # Unknown to tiktoken (most non-OpenAI models)
        return tiktoken.get_encoding(FALLBACK_ENCODING)


def count_tokens(text: str, model: str) -> int:
    """Return the number of tokens in ``text`` for ``model``.

    Raises TokenizerError when no encoding can be loaded.
    """
    try:
        encoding = _encoding_for(model)
    except Exception as e:
        raise TokenizerError(f"tokenizer unavailable for model {model!r}: {e}") from e
    return len(encoding.encode(text, disallowed_special=()))


@dataclass
class ConversationMetadata:
    repository_path: str
    model: str
    provider: str
    files_reviewed: set[str] = field(default_factory=set)
    max_tokens: int | None = None


class Conversation:
    """Append-only message log plus session metadata.

    ``to_bounded_view()`` returns the messages actually sent to the model:
    the newest messages that fit in ``max_tokens``. With ``pin_system`` a
    leading system message is always kept when it fits on its own.
    """

    def __init__(
        self,
        model: str,
        provider: str,
        *,
        max_tokens: int | None = None,
        repository_path: str | None = None,
        pin_system: bool = True,
        token_counter: Callable[[str, str], int] | None = None,
    ):
        self.id = str(uuid.uuid4())
        self.created_at = datetime.now(timezone.utc)
        self.messages: list[Message] = []
        self.metadata = ConversationMetadata(
            repository_path=repository_path or os.getcwd(),
            model=model,
            provider=provider,
            max_tokens=max_tokens,
        )
        self.pin_system = pin_system
        self._token_counter = token_counter or count_tokens

    def add_message(self, message: Message) -> None:
        self.messages.append(message)

    def add_reviewed_file(self, path: str) -> None:
        self.metadata.files_reviewed.add(path)

    def message_tokens(self, message: Message) -> int:
        return self._token_counter(message.token_text(), self.metadata.model)

    def count_view_tokens(self, messages: list[Message]) -> int:
        return sum(self.message_tokens(m) for m in messages)

    def to_bounded_view(self) -> list[Message]:
        budget = self.metadata.max_tokens
        if budget is None:
            return list(self.messages)

        messages = self.messages
        pinned: list[Message] = []
        if self.pin_system and messages and messages[0].role is Role.SYSTEM:
            cost = self.message_tokens(messages[0])
            if cost <= budget:
                pinned = [messages[0]]
                budget -= cost
                messages = messages[1:]

        accepted: list[Message] = []
        total = 0
        for message in reversed(messages):
            cost = self.message_tokens(message)
            if total + cost > budget:
                break
            total += cost
            accepted.append(message)
        accepted.reverse()
        return pinned + accepted

    def to_dict(self) -> dict:
        meta = self.metadata
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "metadata": {
                "repository_path": meta.repository_path,
                "model": meta.model,
                "provider": meta.provider,
                "files_reviewed": sorted(meta.files_reviewed),
                "max_tokens": meta.max_tokens,
            },
            "messages": [m.to_wire() for m in self.messages],
        }
