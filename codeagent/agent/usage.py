from __future__ import annotations

import time
from dataclasses import dataclass, field

from codeagent.agent.state import TokenUsage


@dataclass
class UsageRecord:
    model: str
    provider: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    timestamp: float = field(default_factory=time.time)


class UsageTracker:
    """Collects token usage reported by the backend, one record per request."""

    def __init__(self) -> None:
        self.records: list[UsageRecord] = []

    def record(self, usage: TokenUsage, model: str, provider: str) -> None:
        self.records.append(
            UsageRecord(
                model=model,
                provider=provider,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
            )
        )

    @property
    def request_count(self) -> int:
        return len(self.records)

    def totals(self) -> TokenUsage:
        prompt = sum(r.prompt_tokens for r in self.records)
        completion = sum(r.completion_tokens for r in self.records)
        return TokenUsage(prompt, completion, sum(r.total_tokens for r in self.records))

    def summary(self) -> str:
        totals = self.totals()
        return (
            f"{self.request_count} request(s), {totals.prompt_tokens} prompt + "
            f"{totals.completion_tokens} completion = {totals.total_tokens} tokens"
        )
