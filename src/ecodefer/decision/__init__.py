"""Decision engine: whitelist enforcement and the ordered rule chain."""

from ecodefer.decision.engine import Decision, DecisionEngine
from ecodefer.decision.rules import DecisionContext, RuleOutcome, estimate_power_cost

__all__ = ["Decision", "DecisionContext", "DecisionEngine", "RuleOutcome", "estimate_power_cost"]
