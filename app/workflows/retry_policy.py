"""Retry profile resolution and backoff computation."""

import asyncio
import random
from typing import Any, Dict, Mapping, Optional

from ..models.workflow import (
    RetryPolicy,
    RetryProfile,
    WorkflowDefinition,
    WorkflowNode,
)

RETRY_PROFILES: Dict[RetryProfile, RetryPolicy] = {
    RetryProfile.FAST_SAFE: RetryPolicy(
        max_attempts=2, backoff_ms=500, max_backoff_ms=5_000, jitter_ratio=0.1
    ),
    RetryProfile.BALANCED: RetryPolicy(
        max_attempts=3, backoff_ms=1_000, max_backoff_ms=20_000, jitter_ratio=0.2
    ),
    RetryProfile.STRICT_ENTERPRISE: RetryPolicy(
        max_attempts=5, backoff_ms=2_000, max_backoff_ms=60_000, jitter_ratio=0.25
    ),
}

# Definitions that never set a retry policy carry this value, so it is
# treated as "not overridden".
BALANCED_DEFAULT = RETRY_PROFILES[RetryProfile.BALANCED]


def _coerce_profile(value: Any) -> Optional[RetryProfile]:
    if value is None:
        return None
    try:
        return RetryProfile(value)
    except ValueError:
        return None


def resolve_retry_profile(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    run_input: Optional[Mapping[str, Any]] = None,
) -> RetryProfile:
    """Pick the profile: node, then run input, then definition, then balanced."""
    run_input = run_input or {}
    for candidate in (
        node.retry_profile,
        _coerce_profile(run_input.get("retry_profile", run_input.get("retryProfile"))),
        definition.defaults.retry_profile,
    ):
        if candidate is not None:
            return candidate
    return RetryProfile.BALANCED


def resolve_retry_policy(
    node: WorkflowNode,
    definition: WorkflowDefinition,
    run_input: Optional[Mapping[str, Any]] = None,
) -> RetryPolicy:
    """Resolve the effective retry policy for one node.

    An explicit node policy always wins. A definition policy wins unless it
    equals the built-in balanced default. Otherwise the resolved profile
    supplies the policy.
    """
    if node.retry is not None:
        return node.retry

    definition_retry = definition.defaults.retry
    if definition_retry is not None and definition_retry != BALANCED_DEFAULT:
        return definition_retry

    profile = resolve_retry_profile(node, definition, run_input)
    return RETRY_PROFILES[profile]


def compute_retry_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: Optional[random.Random] = None,
) -> float:
    """Exponential backoff in milliseconds with +/- jitter, capped at max_backoff_ms.

    ``attempt`` is the 1-based number of the attempt that just failed.
    """
    if policy.backoff_ms <= 0:
        return 0.0

    base = policy.backoff_ms * (2 ** max(attempt - 1, 0))
    spread = base * policy.jitter_ratio
    jitter = (rng or random).uniform(-spread, spread) if spread else 0.0
    delay = max(0.0, base + jitter)
    return min(delay, float(policy.max_backoff_ms))


async def sleep_ms(delay_ms: float) -> None:
    """Default backoff sleeper."""
    if delay_ms > 0:
        await asyncio.sleep(delay_ms / 1000.0)
