"""Text-completion backends."""

from taskgate.completion.anthropic_client import AnthropicCompletionService, mock_completion
from taskgate.completion.base import CompletionRequest, CompletionResult, CompletionService

__all__ = [
    "AnthropicCompletionService",
    "CompletionRequest",
    "CompletionResult",
    "CompletionService",
    "mock_completion",
]
