"""Anthropic Messages API backed completion service."""

from __future__ import annotations

import logging

import anthropic

from taskgate.completion.base import CompletionRequest, CompletionResult
from taskgate.config import DEFAULT_MODEL, CompletionSettings
from taskgate.errors import CompletionError

logger = logging.getLogger(__name__)

MOCK_INPUT_TOKENS = 100
MOCK_OUTPUT_TOKENS = 50


class AnthropicCompletionService:
    """Calls Claude through the `anthropic` SDK.

    Without an API key no client is built and every call returns a clearly
    marked mock response, so planning and tests can run offline.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = (
            anthropic.Anthropic(api_key=api_key, timeout=timeout_seconds) if api_key else None
        )
        if self._client is None:
            logger.warning("ANTHROPIC_API_KEY is not set; completions will return mock responses")

    @classmethod
    def from_settings(cls, settings: CompletionSettings) -> AnthropicCompletionService:
        return cls(
            api_key=settings.api_key,
            model=settings.model,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            timeout_seconds=settings.timeout_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return self._client is not None

    def complete(self, request: CompletionRequest) -> CompletionResult:
        model = request.model or self.model
        if self._client is None:
            return mock_completion(request.user_prompt, model=model)

        try:
            message = self._client.messages.create(
                model=model,
                max_tokens=request.max_tokens or self.max_tokens,
                temperature=(
                    request.temperature if request.temperature is not None else self.temperature
                ),
                system=request.system_prompt,
                messages=[{"role": "user", "content": request.user_prompt}],
            )
        except anthropic.APIError as error:
            raise CompletionError(f"Anthropic API call failed: {error}") from error

        content = "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )
        usage = message.usage
        result = CompletionResult(
            content=content,
            input_tokens=usage.input_tokens if usage is not None else 0,
            output_tokens=usage.output_tokens if usage is not None else 0,
            model=model,
        )
        logger.debug(
            "Completion done: model=%s input_tokens=%d output_tokens=%d",
            model,
            result.input_tokens,
            result.output_tokens,
        )
        return result


def mock_completion(user_prompt: str, *, model: str = DEFAULT_MODEL) -> CompletionResult:
    """Placeholder answer used when no credentials are configured."""

    return CompletionResult(
        content=f"[Mock Response] Task received: {user_prompt[:100]}...",
        input_tokens=MOCK_INPUT_TOKENS,
        output_tokens=MOCK_OUTPUT_TOKENS,
        model=model,
        is_mock=True,
    )
