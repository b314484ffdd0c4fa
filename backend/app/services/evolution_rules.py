"""
Evolution rules

Each rule is a pure (predicate, mutation) pair evaluated against an
immutable RuleContext (metrics snapshot + current payload). Rules run in
declaration order and:

- only one rule per ``category`` may fire in a cycle (first applicable wins);
- a triggered rule may ``suppress`` named rules later in the list;
- a rule "fires" only if its mutation actually changes the payload, so a
  predicate that holds at a ceiling (e.g. already on the premium tier with
  deep search) is a no-op rather than an empty version bump;
- every rule except the catastrophic one needs ``min_episodes`` samples.

Rules from different categories combine into one new payload.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence, Tuple

from ..schemas.strategy import (
    EVALUATION_TOOL,
    MODEL_TIER_LADDER,
    SEARCH_DEPTH_LADDER,
    TIME_WINDOW_LADDER,
    ConfigChange,
    MetricsSnapshot,
    ModelTier,
    StrategyPayload,
)

# Thresholds
CATASTROPHIC_SAVE_RATE = 0.0
LOW_QUALITY_SAVE_RATE = 0.5
HIGH_QUALITY_SAVE_RATE = 0.7
REENABLE_EVALUATION_SAVE_RATE = 0.6
MAX_AVG_FOLLOWUPS = 5.0

# Rule names (also used in ledger reasons and logs)
RULE_CATASTROPHIC = "catastrophic_failure"
RULE_LOW_QUALITY = "low_quality"
RULE_COST_OPTIMIZATION = "cost_optimization"
RULE_EFFICIENCY = "efficiency"
RULE_REENABLE_EVALUATION = "reenable_evaluation"

# Categories
CATEGORY_EVALUATION = "evaluation"
CATEGORY_QUALITY = "quality"
CATEGORY_EXECUTION = "execution"


@dataclass(frozen=True)
class RuleContext:
    metrics: MetricsSnapshot
    payload: StrategyPayload
    min_episodes: int = 3


@dataclass(frozen=True)
class Rule:
    name: str
    category: str
    predicate: Callable[[RuleContext], bool]
    mutate: Callable[[StrategyPayload, RuleContext], Dict[str, Any]]
    describe: Callable[[RuleContext], str]
    suppresses: Tuple[str, ...] = ()
    exempt_from_min_sample: bool = False


@dataclass(frozen=True)
class RuleOutcome:
    payload: StrategyPayload
    fired: Tuple[str, ...] = ()
    reasons: Tuple[str, ...] = ()
    changes: Tuple[ConfigChange, ...] = ()
    corrective: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


def _step_up(ladder: Sequence[Any], current: Any) -> Any:
    idx = ladder.index(current)
    return ladder[min(idx + 1, len(ladder) - 1)]


def _pct(value: float) -> str:
    return f"{round(value * 100)}%"


# ---------------------------------------------------------------------------
# 1. Catastrophic failure
# ---------------------------------------------------------------------------

def _catastrophic_applies(ctx: RuleContext) -> bool:
    return ctx.metrics.avg_save_rate == CATASTROPHIC_SAVE_RATE


def _catastrophic_mutate(payload: StrategyPayload, ctx: RuleContext) -> Dict[str, Any]:
    return {
        "skip_evaluation": True,
        "enabled_tools": tuple(t for t in payload.enabled_tools if t != EVALUATION_TOOL),
    }


def _catastrophic_describe(ctx: RuleContext) -> str:
    m = ctx.metrics
    return (
        f"{RULE_CATASTROPHIC}: No sources saved "
        f"({m.total_sources_saved}/{m.total_sources_returned}, save rate 0 over "
        f"{m.episode_count} episodes) - disabling evaluation step"
    )


# ---------------------------------------------------------------------------
# 2. Low quality
# ---------------------------------------------------------------------------

def _low_quality_applies(ctx: RuleContext) -> bool:
    return ctx.metrics.avg_save_rate < LOW_QUALITY_SAVE_RATE


def _low_quality_mutate(payload: StrategyPayload, ctx: RuleContext) -> Dict[str, Any]:
    return {
        "model_tier": _step_up(MODEL_TIER_LADDER, payload.model_tier),
        "search_depth": _step_up(SEARCH_DEPTH_LADDER, payload.search_depth),
        "time_window": _step_up(TIME_WINDOW_LADDER, payload.time_window),
    }


def _low_quality_describe(ctx: RuleContext) -> str:
    return (
        f"{RULE_LOW_QUALITY}: Low save rate ({_pct(ctx.metrics.avg_save_rate)} over "
        f"{ctx.metrics.episode_count} episodes) - upgrading model, deepening search "
        f"and widening time window"
    )


# ---------------------------------------------------------------------------
# 3. Cost optimization
# ---------------------------------------------------------------------------

def _cost_applies(ctx: RuleContext) -> bool:
    return (
        ctx.metrics.avg_save_rate > HIGH_QUALITY_SAVE_RATE
        and ctx.payload.model_tier == ModelTier.PREMIUM
    )


def _cost_mutate(payload: StrategyPayload, ctx: RuleContext) -> Dict[str, Any]:
    return {"model_tier": ModelTier.STANDARD}


def _cost_describe(ctx: RuleContext) -> str:
    return (
        f"{RULE_COST_OPTIMIZATION}: High save rate ({_pct(ctx.metrics.avg_save_rate)}) "
        f"on premium model - downgrading to standard tier"
    )


# ---------------------------------------------------------------------------
# 4. Efficiency
# ---------------------------------------------------------------------------

def _efficiency_applies(ctx: RuleContext) -> bool:
    return ctx.metrics.avg_followup_count > MAX_AVG_FOLLOWUPS


def _efficiency_mutate(payload: StrategyPayload, ctx: RuleContext) -> Dict[str, Any]:
    return {"parallel_execution": True}


def _efficiency_describe(ctx: RuleContext) -> str:
    return (
        f"{RULE_EFFICIENCY}: High follow-ups ({ctx.metrics.avg_followup_count:.1f} avg) "
        f"- enabling parallel execution"
    )


# ---------------------------------------------------------------------------
# 5. Re-enable evaluation
# ---------------------------------------------------------------------------

def _reenable_applies(ctx: RuleContext) -> bool:
    # Only undoes a drop made by the catastrophic rule, which sets skip_evaluation.
    return (
        ctx.payload.skip_evaluation
        and ctx.metrics.avg_save_rate > REENABLE_EVALUATION_SAVE_RATE
    )


def _reenable_mutate(payload: StrategyPayload, ctx: RuleContext) -> Dict[str, Any]:
    return {
        "skip_evaluation": False,
        "enabled_tools": tuple(payload.enabled_tools) + (EVALUATION_TOOL,),
    }


def _reenable_describe(ctx: RuleContext) -> str:
    return (
        f"{RULE_REENABLE_EVALUATION}: Save rate recovered to "
        f"{_pct(ctx.metrics.avg_save_rate)} - re-enabling evaluation step"
    )


RULES: Tuple[Rule, ...] = (
    Rule(
        name=RULE_CATASTROPHIC,
        category=CATEGORY_EVALUATION,
        predicate=_catastrophic_applies,
        mutate=_catastrophic_mutate,
        describe=_catastrophic_describe,
        suppresses=(RULE_LOW_QUALITY, RULE_COST_OPTIMIZATION),
        exempt_from_min_sample=True,
    ),
    Rule(
        name=RULE_LOW_QUALITY,
        category=CATEGORY_QUALITY,
        predicate=_low_quality_applies,
        mutate=_low_quality_mutate,
        describe=_low_quality_describe,
    ),
    Rule(
        name=RULE_COST_OPTIMIZATION,
        category=CATEGORY_QUALITY,
        predicate=_cost_applies,
        mutate=_cost_mutate,
        describe=_cost_describe,
    ),
    Rule(
        name=RULE_EFFICIENCY,
        category=CATEGORY_EXECUTION,
        predicate=_efficiency_applies,
        mutate=_efficiency_mutate,
        describe=_efficiency_describe,
    ),
    Rule(
        name=RULE_REENABLE_EVALUATION,
        category=CATEGORY_EVALUATION,
        predicate=_reenable_applies,
        mutate=_reenable_mutate,
        describe=_reenable_describe,
    ),
)

CORRECTIVE_RULES = frozenset({RULE_CATASTROPHIC})


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def diff_payloads(old: StrategyPayload, new: StrategyPayload) -> List[ConfigChange]:
    """
    One entry per changed top-level field, in field declaration order.
    Nested values (tool list, weight map) count as a single field.
    """
    old_json = old.to_json()
    new_json = new.to_json()
    changes: List[ConfigChange] = []
    for name in StrategyPayload.model_fields:
        before = old_json.get(name)
        after = new_json.get(name)
        if _canonical(before) != _canonical(after):
            changes.append(ConfigChange(field=name, old_value=before, new_value=after))
    return changes


def evaluate_rules(
    ctx: RuleContext,
    rules: Sequence[Rule] = RULES,
) -> RuleOutcome:
    """Apply the ordered rule list to ``ctx`` and return the combined outcome."""
    if ctx.metrics.episode_count == 0:
        return RuleOutcome(payload=ctx.payload)

    payload = ctx.payload
    claimed: set[str] = set()
    suppressed: set[str] = set()
    fired: List[str] = []
    reasons: List[str] = []

    for rule in rules:
        if rule.category in claimed or rule.name in suppressed:
            continue
        if not rule.exempt_from_min_sample and ctx.metrics.episode_count < ctx.min_episodes:
            continue
        if not rule.predicate(ctx):
            continue

        # A triggered rule suppresses its targets even when it is at a ceiling
        suppressed.update(rule.suppresses)

        updates = rule.mutate(payload, ctx)
        candidate = StrategyPayload.model_validate({**payload.model_dump(), **updates})
        if not diff_payloads(payload, candidate):
            continue

        payload = candidate
        claimed.add(rule.category)
        fired.append(rule.name)
        reasons.append(rule.describe(ctx))

    changes = diff_payloads(ctx.payload, payload)
    return RuleOutcome(
        payload=payload,
        fired=tuple(fired),
        reasons=tuple(reasons),
        changes=tuple(changes),
        corrective=any(name in CORRECTIVE_RULES for name in fired),
    )
