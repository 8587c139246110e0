"""Token cost estimation for orchestrator tasks."""

from __future__ import annotations


def estimate_cost_usd(*, total_tokens: int, cost_per_1k_tokens: float) -> float:
    """Flat blended rate: tokens / 1000 x rate."""

    if total_tokens <= 0:
        return 0.0
    return (total_tokens / 1_000) * cost_per_1k_tokens
