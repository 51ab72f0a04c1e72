# ai_cost_audit/demo/seed_demo_data.py

import random
from typing import Optional

from ai_cost_audit.core.pricing import BILLING_MODE_API, BILLING_MODE_MAX, calculate_cost
from ai_cost_audit.core.token_counter import TokenCounts
from ai_cost_audit.storage.models import UsageFact, current_time_ms
from ai_cost_audit.storage.repository import EventStore

_HOUR_MS = 60 * 60 * 1000
_DAY_MS = 24 * _HOUR_MS

DEMO_AGENTS = (
    ("claude-code", "claude-opus-4-5", BILLING_MODE_MAX),
    ("claude-code", "claude-sonnet-4-5", BILLING_MODE_API),
    ("codex", None, None),
)


def seed_demo_data(events: EventStore, now_ms: Optional[int] = None, days: int = 7, seed: int = 7) -> int:
    """Insert a few days of plausible usage facts and sessions.

    Returns:
        Number of facts inserted
    """
    now_ms = now_ms if now_ms is not None else current_time_ms()
    rng = random.Random(seed)
    facts = []

    for day in range(days):
        day_start = now_ms - (day + 1) * _DAY_MS
        for index, (agent_type, model, billing_mode) in enumerate(DEMO_AGENTS):
            agent_id = f"demo-{agent_type}-{index}"
            session_id = f"{agent_id}-ai-{now_ms}-{day}"
            created_at = day_start + rng.randint(1, 8) * _HOUR_MS
            events.record_session_created(session_id, agent_type, created_at=created_at,
                                          project_path="/home/demo/project")

            started = created_at
            for query in range(rng.randint(2, 5)):
                started += rng.randint(2, 30) * 60 * 1000
                duration = rng.randint(3_000, 90_000)
                if model is None:
                    # Agents without token reporting
                    facts.append(UsageFact(
                        session_id=session_id,
                        agent_id=agent_id,
                        agent_type=agent_type,
                        source="user",
                        start_time=started,
                        duration=duration,
                        project_path="/home/demo/project",
                    ))
                    continue

                usage = TokenCounts(
                    input_tokens=rng.randint(2_000, 40_000),
                    output_tokens=rng.randint(200, 6_000),
                    cache_read_tokens=rng.randint(0, 200_000),
                    cache_write_tokens=rng.randint(0, 20_000),
                )
                local_cost = calculate_cost(model, usage, billing_mode)
                facts.append(UsageFact(
                    session_id=session_id,
                    agent_id=agent_id,
                    agent_type=agent_type,
                    source="user" if query == 0 else "auto",
                    start_time=started,
                    duration=duration,
                    project_path="/home/demo/project",
                    is_remote=False,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    tokens_per_second=round(usage.output_tokens / (duration / 1000), 2),
                    cache_read_input_tokens=usage.cache_read_tokens,
                    cache_creation_input_tokens=usage.cache_write_tokens,
                    external_cost=calculate_cost(model, usage, BILLING_MODE_API),
                    external_model=model,
                    local_cost=local_cost,
                    local_billing_mode=billing_mode,
                    local_pricing_model=model,
                    local_calculated_at=now_ms,
                ))

            events.record_session_closed(session_id, closed_at=started + _HOUR_MS)

    events.insert_many(facts)
    return len(facts)


if __name__ == "__main__":
    from ai_cost_audit.runtime import bootstrap

    with bootstrap() as runtime:
        count = seed_demo_data(runtime.events)
    print(f"Inserted {count} demo usage facts")
