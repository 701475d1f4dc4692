"""Decision rules.

Each rule is a pure function of an immutable DecisionContext. It returns a
RuleOutcome carrying one reasoning line and, for terminal rules, a verdict.
The engine runs them in order and stops at the first verdict.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ecodefer.feedback.learning import LearnedPattern
from ecodefer.models import SandboxConstraints, Urgency, Verdict
from ecodefer.scheduling.scheduler import CapacityCheck

DEFER_CAPACITY = "capacity"
DEFER_POLICY = "policy"


@dataclass(frozen=True)
class DecisionContext:
    """Everything a rule may look at, sampled once per decision."""

    task_id: str
    task_name: str
    urgency: str
    data_size_mb: float
    whitelisted: bool
    learning_enabled: bool
    pattern: LearnedPattern | None
    capacity: CapacityCheck
    is_off_peak: bool
    normal_window: datetime
    low_window: datetime
    base_power_w: float
    constraints: SandboxConstraints

    def snapshot(self) -> dict[str, Any]:
        """System state stored alongside the decision record."""
        return {
            "urgency": self.urgency,
            "data_size_mb": self.data_size_mb,
            "whitelisted": self.whitelisted,
            "is_off_peak": self.is_off_peak,
            "capacity": self.capacity.to_dict(),
            "pattern": self.pattern.counts() if self.pattern else None,
        }


@dataclass(frozen=True)
class RuleOutcome:
    reasoning: str
    verdict: Verdict | None = None
    scheduled_for: datetime | None = None
    defer_reason: str | None = None
    reason: str = ""

    @property
    def terminal(self) -> bool:
        return self.verdict is not None


Rule = Callable[[DecisionContext], RuleOutcome]


def estimate_power_cost(base_power_w: float, data_size_mb: float = 0.0) -> int:
    """Base wattage scaled linearly by declared data size, rounded to the watt."""
    cost = base_power_w
    if data_size_mb:
        cost *= 1 + data_size_mb / 1000
    return int(round(cost))


def check_whitelist(ctx: DecisionContext) -> RuleOutcome:
    if not ctx.whitelisted:
        return RuleOutcome(
            reasoning=f"Not whitelisted: {ctx.task_name} is not in the execution whitelist",
            verdict=Verdict.DENIED,
            reason="Task not in execution whitelist",
        )
    return RuleOutcome(reasoning="Whitelisted")


def consult_learned_pattern(ctx: DecisionContext) -> RuleOutcome:
    if not ctx.learning_enabled:
        return RuleOutcome(reasoning="Learning disabled; no feedback consulted")
    if ctx.pattern is None:
        return RuleOutcome(reasoning="No feedback history for this task")
    return RuleOutcome(reasoning=ctx.pattern.advisory() or "No feedback history for this task")


def check_capacity(ctx: DecisionContext) -> RuleOutcome:
    if not ctx.capacity.can_execute:
        detail = "; ".join(ctx.capacity.reasons)
        return RuleOutcome(
            reasoning=f"Deferring: system load too high ({detail}) - scheduling for off-peak",
            verdict=Verdict.DEFERRED,
            scheduled_for=ctx.normal_window,
            defer_reason=DEFER_CAPACITY,
            reason="System capacity constraint - optimal window identified",
        )
    return RuleOutcome(reasoning="System has capacity")


def note_power_estimate(ctx: DecisionContext) -> RuleOutcome:
    watts = estimate_power_cost(ctx.base_power_w, ctx.data_size_mb)
    return RuleOutcome(reasoning=f"Estimated cost: {watts}W")


def check_urgency_window(ctx: DecisionContext) -> RuleOutcome:
    if not ctx.is_off_peak and ctx.urgency == Urgency.LOW:
        return RuleOutcome(
            reasoning="Low urgency + peak hours - deferring",
            verdict=Verdict.DEFERRED,
            scheduled_for=ctx.low_window,
            defer_reason=DEFER_POLICY,
            reason="Low priority - deferred to optimal window",
        )
    return RuleOutcome(reasoning="Urgency acceptable")


def approve(ctx: DecisionContext) -> RuleOutcome:
    return RuleOutcome(
        reasoning="APPROVED FOR EXECUTION",
        verdict=Verdict.APPROVED,
        reason="All checks passed",
    )


DEFAULT_RULES: tuple[Rule, ...] = (
    check_whitelist,
    consult_learned_pattern,
    check_capacity,
    note_power_estimate,
    check_urgency_window,
    approve,
)


def evaluate(
    ctx: DecisionContext, rules: Sequence[Rule] = DEFAULT_RULES
) -> tuple[RuleOutcome, list[str]]:
    """Run rules in order; return the terminal outcome and the reasoning trail."""
    reasoning: list[str] = []
    for rule in rules:
        outcome = rule(ctx)
        reasoning.append(outcome.reasoning)
        if outcome.terminal:
            return outcome, reasoning
    raise RuntimeError("Rule chain ended without a verdict")
