"""Engine value types.

These types are shared by the generation loop, the controller and the
front-ends. They carry no runtime handles.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class TokenFragment:
    """Decoded text for exactly one newly generated token."""

    token_id: int
    text: str


@dataclass
class ConversationEntry:
    """One message in the chat history.

    The in-progress assistant entry is mutated (text appended) while a
    generation runs; once the generation ends it is never touched again.
    """

    content: str = ""
    is_user_input: bool = False

    def append(self, text: str) -> None:
        self.content += text


FinishReason = Literal["stop", "cancelled", "error"]


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    first_token_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class GenerationStats:
    """Summary of one generation call."""

    finish_reason: FinishReason
    usage: Usage
    timing: Timing


# Controller notifications -------------------------------------------------


@dataclass(frozen=True)
class PropertyChanged:
    name: str


@dataclass(frozen=True)
class HistoryChanged:
    """The history list changed: an entry was added or the list was cleared."""

    action: Literal["append", "clear"]
    index: int | None = None


@dataclass(frozen=True)
class ErrorNotice:
    """A user-visible error surfaced by a controller command."""

    operation: str
    message: str
    error: BaseException | None = None


ControllerEvent = PropertyChanged | HistoryChanged | ErrorNotice
