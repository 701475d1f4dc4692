"""
Delegation Policy

Per-user checks that run before a task is offered to any peer, in order:

1. Idle cooldown. After a user's delegated task completes, further
   delegation waits ``delegation_idle_minutes``.
2. Delegation hours. A user with active windows only delegates inside them.
   Critical tasks skip this check.
3. Ethical rules. A strict violation blocks the delegation; a warn-level one
   is logged and allowed.
4. Tier quota. Daily delegation count, estimated duration and memory are
   capped by the user's tier.

Cooldown and hours defer the delegation (DelegationDeferred, with a retry
time); ethics and quota refuse it (DelegationBlocked). Delegations without a
user id are local and skip all four checks.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from ecodefer.config import ServiceConfig
from ecodefer.errors import DelegationBlocked, DelegationDeferred, ValidationError
from ecodefer.models import Clock, Urgency, iso, parse_iso
from ecodefer.storage.database import Database

logger = logging.getLogger(__name__)


class RuleType(StrEnum):
    MAX_POWER_WATTS = "max_power_watts"
    TASK_TYPE_BLACKLIST = "task_type_blacklist"
    TASK_TYPE_WHITELIST = "task_type_whitelist"
    NO_HEAVY_COMPUTATION = "no_heavy_computation"
    NO_DATA_INTENSIVE = "no_data_intensive"


class Enforcement(StrEnum):
    STRICT = "strict"
    WARN = "warn"


HEAVY_COMPUTATION_MARKERS = ("ml", "render", "analysis")
DATA_INTENSIVE_MARKERS = ("backup", "sync", "transfer")


class Tier(StrEnum):
    FREE = "free"
    SUPPORTER = "supporter"
    CONTRIBUTOR = "contributor"


@dataclass(frozen=True)
class Quota:
    tasks_per_day: int
    max_duration_s: float
    max_memory_mb: float


QUOTAS: dict[Tier, Quota] = {
    Tier.FREE: Quota(tasks_per_day=10, max_duration_s=600, max_memory_mb=100),
    Tier.SUPPORTER: Quota(tasks_per_day=50, max_duration_s=1800, max_memory_mb=500),
    Tier.CONTRIBUTOR: Quota(tasks_per_day=200, max_duration_s=3600, max_memory_mb=2000),
}

# Contribution counts that upgrade a user regardless of the stored tier
CONTRIBUTOR_THRESHOLD = 100
SUPPORTER_THRESHOLD = 20


@dataclass
class DelegationWindow:
    """A daily time range (end exclusive) in which a user allows delegation."""

    id: str
    user_id: str
    start_hour: int
    end_hour: int
    start_minute: int = 0
    end_minute: int = 0
    day_of_week: int | None = None  # Monday = 0; None = every day
    description: str = ""
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Any) -> DelegationWindow:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            start_hour=row["start_hour"],
            end_hour=row["end_hour"],
            start_minute=row["start_minute"],
            end_minute=row["end_minute"],
            day_of_week=row["day_of_week"],
            description=row["description"],
            is_active=bool(row["is_active"]),
        )

    def applies_on(self, moment: datetime) -> bool:
        return self.day_of_week is None or self.day_of_week == moment.weekday()

    def contains(self, moment: datetime) -> bool:
        minutes = moment.hour * 60 + moment.minute
        start = self.start_hour * 60 + self.start_minute
        end = self.end_hour * 60 + self.end_minute
        return self.applies_on(moment) and start <= minutes < end

    def label(self) -> str:
        return f"{self.start_hour}:{self.start_minute:02d}-{self.end_hour}:{self.end_minute:02d}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EthicalRule:
    id: str
    user_id: str
    rule_type: str
    rule_value: str = ""
    enforcement_level: str = Enforcement.STRICT
    reasoning: str = ""
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Any) -> EthicalRule:
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            rule_type=row["rule_type"],
            rule_value=row["rule_value"],
            enforcement_level=row["enforcement_level"],
            reasoning=row["reasoning"],
            is_active=bool(row["is_active"]),
        )

    def violated_by(self, task_name: str, power_w: float) -> bool:
        name = task_name.lower()
        value = self.rule_value.lower()
        if self.rule_type == RuleType.MAX_POWER_WATTS:
            return power_w > float(self.rule_value)
        if self.rule_type == RuleType.TASK_TYPE_BLACKLIST:
            return value in name
        if self.rule_type == RuleType.TASK_TYPE_WHITELIST:
            return value not in name
        if self.rule_type == RuleType.NO_HEAVY_COMPUTATION:
            return any(marker in name for marker in HEAVY_COMPUTATION_MARKERS)
        if self.rule_type == RuleType.NO_DATA_INTENSIVE:
            return any(marker in name for marker in DATA_INTENSIVE_MARKERS)
        return False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def next_window_start(windows: list[DelegationWindow], after: datetime) -> datetime | None:
    """Earliest window start strictly after ``after``, searching one week ahead."""
    for offset in range(8):
        day = after + timedelta(days=offset)
        starts = [
            day.replace(
                hour=window.start_hour, minute=window.start_minute, second=0, microsecond=0
            )
            for window in windows
            if window.applies_on(day)
        ]
        upcoming = [start for start in starts if start > after]
        if upcoming:
            return min(upcoming)
    return None


class DelegationPolicy:
    def __init__(self, db: Database, config: ServiceConfig, clock: Clock | None = None) -> None:
        self.db = db
        self.config = config
        self.clock = clock or datetime.now

    # -- delegation hours --------------------------------------------------

    def add_window(
        self,
        user_id: str,
        start_hour: int,
        end_hour: int,
        start_minute: int = 0,
        end_minute: int = 0,
        day_of_week: int | None = None,
        description: str = "",
    ) -> DelegationWindow:
        if not 0 <= start_hour <= 23 or not 0 <= start_minute <= 59 or not 0 <= end_minute <= 59:
            raise ValidationError("Window start must be a valid time of day", component="mesh")
        if not 0 <= end_hour <= 24 or (end_hour == 24 and end_minute):
            raise ValidationError("Window end must be at or before 24:00", component="mesh")
        if start_hour * 60 + start_minute >= end_hour * 60 + end_minute:
            raise ValidationError("Window must end after it starts", component="mesh")
        if day_of_week is not None and not 0 <= day_of_week <= 6:
            raise ValidationError(f"Invalid day_of_week: {day_of_week}", component="mesh")

        window = DelegationWindow(
            id=str(uuid.uuid4()),
            user_id=user_id,
            start_hour=start_hour,
            end_hour=end_hour,
            start_minute=start_minute,
            end_minute=end_minute,
            day_of_week=day_of_week,
            description=description,
        )
        self.db.execute_insert(
            """
            INSERT INTO delegation_hours (
                id, user_id, day_of_week, start_hour, start_minute,
                end_hour, end_minute, description, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                window.id,
                user_id,
                day_of_week,
                start_hour,
                start_minute,
                end_hour,
                end_minute,
                description,
                iso(self.clock()),
            ),
        )
        logger.info(f"Delegation window {window.label()} added for {user_id}")
        return window

    def windows_for(self, user_id: str) -> list[DelegationWindow]:
        rows = self.db.execute(
            "SELECT * FROM delegation_hours WHERE user_id = ? AND is_active = 1 "
            "ORDER BY start_hour, start_minute",
            (user_id,),
        )
        return [DelegationWindow.from_row(row) for row in rows]

    def check_hours(self, user_id: str) -> tuple[bool, datetime | None]:
        """(allowed, next window start). Users without windows may delegate any time."""
        windows = self.windows_for(user_id)
        if not windows:
            return True, None
        now = self.clock()
        if any(window.contains(now) for window in windows):
            return True, None
        return False, next_window_start(windows, now)

    # -- idle cooldown -----------------------------------------------------

    def start_cooldown(
        self, user_id: str, task_id: str, conn: sqlite3.Connection | None = None
    ) -> datetime:
        now = self.clock()
        minutes = self.config.delegation_idle_minutes
        idle_until = now + timedelta(minutes=minutes)
        sql = """
            INSERT OR REPLACE INTO task_cooldown (
                user_id, last_task_id, last_executed_at, idle_until, reason
            ) VALUES (?, ?, ?, ?, ?)
        """
        params = (user_id, task_id, iso(now), iso(idle_until), f"Idle period: {minutes:g} min")
        if conn is not None:
            conn.execute(sql, params)
        else:
            self.db.execute_insert(sql, params)
        logger.info(f"Idle period for {user_id} until {iso(idle_until)}")
        return idle_until

    def idle_until(self, user_id: str) -> datetime | None:
        """End of the user's active cooldown, or None. Expired cooldowns are cleared."""
        rows = self.db.execute(
            "SELECT idle_until FROM task_cooldown WHERE user_id = ?", (user_id,)
        )
        if not rows:
            return None
        until = parse_iso(rows[0]["idle_until"])
        if until is not None and self.clock() < until:
            return until
        self.db.execute_insert("DELETE FROM task_cooldown WHERE user_id = ?", (user_id,))
        return None

    # -- ethical rules -----------------------------------------------------

    def add_rule(
        self,
        user_id: str,
        rule_type: str,
        rule_value: str = "",
        enforcement_level: str = Enforcement.STRICT,
        reasoning: str = "",
    ) -> EthicalRule:
        try:
            rule_type = RuleType(rule_type)
            enforcement_level = Enforcement(enforcement_level)
        except ValueError as e:
            raise ValidationError(str(e), component="mesh") from e
        if rule_type == RuleType.MAX_POWER_WATTS:
            try:
                float(rule_value)
            except ValueError as e:
                raise ValidationError(
                    f"max_power_watts needs a number, got {rule_value!r}", component="mesh"
                ) from e
        elif rule_type in (RuleType.TASK_TYPE_BLACKLIST, RuleType.TASK_TYPE_WHITELIST):
            if not rule_value:
                raise ValidationError(f"{rule_type} needs a task name fragment", component="mesh")

        rule = EthicalRule(
            id=str(uuid.uuid4()),
            user_id=user_id,
            rule_type=rule_type.value,
            rule_value=rule_value,
            enforcement_level=enforcement_level.value,
            reasoning=reasoning,
        )
        self.db.execute_insert(
            """
            INSERT INTO ethical_rules (
                id, user_id, rule_type, rule_value, enforcement_level, reasoning, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.id,
                user_id,
                rule.rule_type,
                rule_value,
                rule.enforcement_level,
                reasoning,
                iso(self.clock()),
            ),
        )
        logger.info(f"Ethical rule {rule.rule_type} ({rule.enforcement_level}) added for {user_id}")
        return rule

    def rules_for(self, user_id: str) -> list[EthicalRule]:
        rows = self.db.execute(
            "SELECT * FROM ethical_rules WHERE user_id = ? AND is_active = 1 "
            "ORDER BY created_at, rowid",
            (user_id,),
        )
        return [EthicalRule.from_row(row) for row in rows]

    def violations(self, user_id: str, task_name: str, power_w: float) -> list[EthicalRule]:
        return [rule for rule in self.rules_for(user_id) if rule.violated_by(task_name, power_w)]

    # -- tiers and quotas --------------------------------------------------

    def set_tier(self, user_id: str, tier: str, total_contributions: int = 0) -> None:
        try:
            tier = Tier(tier)
        except ValueError as e:
            raise ValidationError(str(e), component="mesh") from e
        self.db.execute_insert(
            """
            INSERT INTO user_tiers (user_id, tier, total_contributions, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                tier = excluded.tier,
                total_contributions = excluded.total_contributions,
                updated_at = excluded.updated_at
            """,
            (user_id, tier.value, total_contributions, iso(self.clock())),
        )

    def tier_for(self, user_id: str) -> Tier:
        rows = self.db.execute(
            "SELECT tier, total_contributions FROM user_tiers WHERE user_id = ?", (user_id,)
        )
        if not rows:
            return Tier.FREE
        contributions = rows[0]["total_contributions"]
        if contributions > CONTRIBUTOR_THRESHOLD:
            return Tier.CONTRIBUTOR
        if contributions > SUPPORTER_THRESHOLD:
            return Tier.SUPPORTER
        return Tier(rows[0]["tier"])

    def delegations_today(self, user_id: str) -> int:
        midnight = self.clock().replace(hour=0, minute=0, second=0, microsecond=0)
        rows = self.db.execute(
            "SELECT COUNT(*) AS count FROM delegations "
            "WHERE from_user_id = ? AND created_at >= ? AND status != 'retracted'",
            (user_id, iso(midnight)),
        )
        return int(rows[0]["count"])

    def quota_problems(self, user_id: str, duration_s: float, memory_mb: float) -> list[str]:
        tier = self.tier_for(user_id)
        quota = QUOTAS[tier]
        problems = []
        if self.delegations_today(user_id) >= quota.tasks_per_day:
            problems.append(f"daily limit ({quota.tasks_per_day}) reached for {tier} tier")
        if duration_s > quota.max_duration_s:
            problems.append(f"task too long (max {quota.max_duration_s / 60:g} min)")
        if memory_mb > quota.max_memory_mb:
            problems.append(f"task too memory-heavy (max {quota.max_memory_mb:g} MB)")
        return problems

    # -- admission ---------------------------------------------------------

    def admit(
        self,
        user_id: str,
        task_id: str,
        task_name: str,
        urgency: str,
        power_w: float = 0.0,
        duration_s: float = 0.0,
        memory_mb: float = 0.0,
    ) -> None:
        """Run the per-user checks in order.

        Raises:
            DelegationDeferred: the user is cooling down or outside their hours.
            DelegationBlocked: a strict ethical rule or the tier quota forbids it.
        """
        if not user_id:
            return

        until = self.idle_until(user_id)
        if until is not None:
            raise DelegationDeferred(
                f"Idle period active for {user_id} until {iso(until)}",
                retry_at=until,
                task_id=task_id,
            )

        if urgency != Urgency.CRITICAL:
            allowed, next_start = self.check_hours(user_id)
            if not allowed:
                raise DelegationDeferred(
                    f"Outside delegation hours for {user_id}",
                    retry_at=next_start,
                    task_id=task_id,
                )

        violations = self.violations(user_id, task_name, power_w)
        hard = [rule for rule in violations if rule.enforcement_level == Enforcement.STRICT]
        soft = [rule for rule in violations if rule.enforcement_level == Enforcement.WARN]
        if hard:
            raise DelegationBlocked(
                f"Ethical rule violation: {hard[0].rule_type}",
                violations=[rule.rule_type for rule in hard],
                task_id=task_id,
            )
        if soft:
            logger.warning(
                f"Ethical rule warning for {user_id}: {', '.join(r.rule_type for r in soft)}"
            )

        problems = self.quota_problems(user_id, duration_s, memory_mb)
        if problems:
            logger.warning(f"Quota exceeded for {user_id}: {'; '.join(problems)}")
            raise DelegationBlocked(
                f"Quota exceeded: {'; '.join(problems)}", violations=problems, task_id=task_id
            )
