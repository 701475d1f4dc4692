"""Energy SLA policies: what energy a task's urgency requires of the executing peer."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime

from ecodefer.mesh.models import EnergyProfile
from ecodefer.models import Urgency

ANY = "any"
PREFER_CLEAN = "prefer-clean"
CLEAN_ONLY = "clean-only"
SOLAR_ONLY = "solar-only"


@dataclass(frozen=True)
class EnergySLA:
    name: str
    max_wait_s: float
    energy_required: str
    can_delegate: bool
    can_interrupt: bool

    def would_break(self, started_at: datetime, now: datetime) -> bool:
        """True once a task has waited longer than this SLA allows."""
        return (now - started_at).total_seconds() > self.max_wait_s

    def admits(self, energy: EnergyProfile, eco_min_clean_percent: float) -> bool:
        if self.energy_required == CLEAN_ONLY:
            return energy.percent_clean >= eco_min_clean_percent
        if self.energy_required == SOLAR_ONLY:
            return energy.type == "solar"
        return True


URGENT = EnergySLA("urgent", 30 * 60, ANY, can_delegate=True, can_interrupt=False)
HIGH = EnergySLA("high", 24 * 3600, PREFER_CLEAN, can_delegate=True, can_interrupt=False)
NORMAL = EnergySLA("normal", 48 * 3600, PREFER_CLEAN, can_delegate=True, can_interrupt=True)
ECO = EnergySLA("eco", math.inf, CLEAN_ONLY, can_delegate=True, can_interrupt=True)
SOLAR = EnergySLA("solar_only", math.inf, SOLAR_ONLY, can_delegate=True, can_interrupt=True)

_POLICIES = {
    Urgency.CRITICAL: URGENT,
    Urgency.HIGH: HIGH,
    Urgency.NORMAL: NORMAL,
    Urgency.LOW: NORMAL,
    Urgency.ECO: ECO,
    Urgency.SOLAR_ONLY: SOLAR,
}


def sla_for(urgency: str) -> EnergySLA:
    """Policy for an urgency; unknown urgencies get the normal policy."""
    try:
        return _POLICIES[Urgency(urgency)]
    except ValueError:
        return NORMAL


def energy_score(energy: EnergyProfile, urgency: str) -> float:
    """Ranking score in [0, 100]. Urgent work runs anywhere, so every peer scores 100."""
    if sla_for(urgency).energy_required == ANY:
        return 100.0
    return energy.percent_clean
