"""
SLA timers. Every function takes "now" explicitly; nothing here reads the clock.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from fulfillment.models import Order, StageHistoryEntry
from fulfillment.stages import StageDefinition, StageId, stage_by_id


@dataclass(frozen=True)
class StageTimer:
    stage: StageId
    entered_at: datetime
    deadline: datetime | None
    elapsed_minutes: int
    remaining_minutes: int | None
    is_overdue: bool
    is_warning: bool

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "entered_at": self.entered_at.isoformat(),
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "elapsed_minutes": self.elapsed_minutes,
            "remaining_minutes": self.remaining_minutes,
            "is_overdue": self.is_overdue,
            "is_warning": self.is_warning,
        }


def whole_minutes(delta: timedelta) -> int:
    """Floor of a duration in minutes."""
    return int(delta.total_seconds() // 60)


def deadline_for(stage: StageId | StageDefinition, entered_at: datetime) -> datetime | None:
    definition = stage if isinstance(stage, StageDefinition) else stage_by_id(stage)
    if definition.is_terminal:
        return None
    return entered_at + timedelta(minutes=definition.standard_duration_minutes)


def elapsed_minutes(entry: StageHistoryEntry, next_entry_or_now: StageHistoryEntry | datetime) -> int:
    """Minutes from entry to the next history entry, or to now for the current entry."""
    end = next_entry_or_now.entered_at if isinstance(next_entry_or_now, StageHistoryEntry) else next_entry_or_now
    return whole_minutes(end - entry.entered_at)


def is_overdue(elapsed: int, stage: StageId | StageDefinition) -> bool:
    definition = stage if isinstance(stage, StageDefinition) else stage_by_id(stage)
    if definition.is_terminal:
        return False
    return elapsed > definition.standard_duration_minutes


def is_warning(elapsed: int, stage: StageId | StageDefinition) -> bool:
    """True once remaining time is at or below the warning threshold, until the stage is overdue."""
    definition = stage if isinstance(stage, StageDefinition) else stage_by_id(stage)
    if definition.is_terminal:
        return False
    remaining_budget = definition.standard_duration_minutes - definition.warning_threshold_minutes
    return elapsed >= remaining_budget and not is_overdue(elapsed, definition)


def remaining_minutes(deadline: datetime | None, now: datetime) -> int | None:
    """Whole minutes left until deadline, clamped at 0. None when there is no deadline."""
    if deadline is None:
        return None
    return max(0, whole_minutes(deadline - now))


def minutes_overdue(deadline: datetime | None, now: datetime) -> int:
    if deadline is None or deadline >= now:
        return 0
    return whole_minutes(now - deadline)


def compute_deadline(order: Order) -> datetime | None:
    """Deadline of the current stage from its latest entry. Terminal orders have none."""
    entry = order.last_entry
    if entry is None:
        return None
    return deadline_for(order.current_stage, entry.entered_at)


def live_flags(
    stage: StageId | StageDefinition,
    entered_at: datetime,
    deadline: datetime | None,
    now: datetime,
) -> tuple[bool, bool]:
    """
    (is_overdue, is_warning) for a running stage. Measured against the stage budget, or against
    deadline when a scheduled time replaced the budget deadline.
    """
    definition = stage if isinstance(stage, StageDefinition) else stage_by_id(stage)
    if deadline is None or deadline == deadline_for(definition, entered_at):
        elapsed = whole_minutes(now - entered_at)
        return is_overdue(elapsed, definition), is_warning(elapsed, definition)
    overdue = minutes_overdue(deadline, now) > 0
    warning = not overdue and remaining_minutes(deadline, now) <= definition.warning_threshold_minutes
    return overdue, warning


def current_timer(order: Order, now: datetime) -> StageTimer | None:
    """Live timer for the current stage. Uses the stored deadline, which may carry a scheduled override."""
    entry = order.last_entry
    if entry is None:
        return None
    definition = stage_by_id(order.current_stage)
    deadline = None if definition.is_terminal else order.deadline
    overdue, warning = live_flags(definition, entry.entered_at, deadline, now)
    return StageTimer(
        stage=definition.id,
        entered_at=entry.entered_at,
        deadline=deadline,
        elapsed_minutes=elapsed_minutes(entry, now),
        remaining_minutes=remaining_minutes(deadline, now),
        is_overdue=overdue,
        is_warning=warning,
    )
