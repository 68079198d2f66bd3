"""Usage et coût d'une génération, calculés au chunk terminal."""
from dataclasses import asdict, dataclass

from config import COMPLETION_COST_PER_TOKEN, PROMPT_COST_PER_TOKEN

from .messages import ProviderUsage


@dataclass(frozen=True)
class UsageRecord:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    prompt_cost: float
    completion_cost: float
    total_cost: float
    wall_duration_ms: float
    tokens_per_second: float

    def to_dict(self) -> dict:
        return asdict(self)


def compute_usage(
    usage: ProviderUsage,
    started_at: float,
    finished_at: float,
    prompt_rate: float = PROMPT_COST_PER_TOKEN,
    completion_rate: float = COMPLETION_COST_PER_TOKEN,
) -> UsageRecord:
    """
    Calcule le UsageRecord.

    La durée vient du provider (total_duration) quand il la fournit,
    sinon de l'horloge murale entre l'envoi et le chunk terminal.
    """
    prompt_cost = usage.prompt_tokens * prompt_rate
    completion_cost = usage.completion_tokens * completion_rate

    if usage.total_duration_s:
        duration_s = usage.total_duration_s
    else:
        duration_s = max(0.0, finished_at - started_at)

    generation_s = usage.eval_duration_s or duration_s
    tokens_per_second = usage.completion_tokens / generation_s if generation_s > 0 else 0.0

    return UsageRecord(
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        total_tokens=usage.total_tokens or usage.prompt_tokens + usage.completion_tokens,
        prompt_cost=round(prompt_cost, 10),
        completion_cost=round(completion_cost, 10),
        total_cost=round(prompt_cost + completion_cost, 10),
        wall_duration_ms=round(duration_s * 1000, 3),
        tokens_per_second=round(tokens_per_second, 2),
    )
