"""Text-completion service contract."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class CompletionRequest:
    """One system + user prompt exchange with optional model overrides."""

    system_prompt: str
    user_prompt: str
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(slots=True)
class CompletionResult:
    content: str
    input_tokens: int
    output_tokens: int
    model: str
    is_mock: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class CompletionService(Protocol):
    """Text generation backend with token accounting.

    Implementations raise `taskgate.errors.CompletionError` for failed calls.
    """

    def complete(self, request: CompletionRequest) -> CompletionResult: ...
