"""
Read-only views over orders: progress, per-stage timeline, fleet overdue summary and statistics.
Recomputed on demand from the given orders and "now".
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal

from fulfillment.models import Order, StageHistoryEntry
from fulfillment.sla import deadline_for, elapsed_minutes, is_overdue, live_flags, minutes_overdue
from fulfillment.stages import PIPELINE, STAGES, StageId, pipeline_index, stage_by_id

StageState = Literal["past", "current", "upcoming"]


@dataclass(frozen=True)
class StageTiming:
    stage: StageId
    label: str
    state: StageState
    entered_at: datetime | None = None
    deadline: datetime | None = None
    minutes_spent: int = 0
    is_overdue: bool = False
    is_warning: bool = False

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "label": self.label,
            "state": self.state,
            "entered_at": self.entered_at.isoformat() if self.entered_at else None,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "minutes_spent": self.minutes_spent,
            "is_overdue": self.is_overdue,
            "is_warning": self.is_warning,
        }


@dataclass(frozen=True)
class OverdueSummary:
    by_stage: dict[StageId, int]
    total_minutes_overdue: int
    most_overdue_order: Order | None
    most_overdue_minutes: int
    overdue_count: int

    def to_dict(self) -> dict:
        return {
            "by_stage": {stage.value: count for stage, count in self.by_stage.items()},
            "total_minutes_overdue": self.total_minutes_overdue,
            "most_overdue_order": (
                {"id": self.most_overdue_order.id, "order_number": self.most_overdue_order.order_number}
                if self.most_overdue_order else None
            ),
            "most_overdue_minutes": self.most_overdue_minutes,
            "overdue_count": self.overdue_count,
        }


def _reached_stage(order: Order) -> StageId | None:
    """Last non-terminal stage the order was in (the stage it failed from, for FAILED orders)."""
    for entry in reversed(order.stage_history):
        if entry.stage in PIPELINE:
            return entry.stage
    return None


def progress_percent(order: Order) -> int:
    if order.current_stage == StageId.COMPLETED:
        return 100
    stage = order.current_stage if order.current_stage != StageId.FAILED else _reached_stage(order)
    if stage is None:
        return 0
    percent = (pipeline_index(stage) + 1) * 100 // len(PIPELINE)
    return max(0, min(100, percent))


def _first_entry(order: Order, stage: StageId) -> tuple[StageHistoryEntry, int] | None:
    for index, entry in enumerate(order.stage_history):
        if entry.stage == stage:
            return entry, index
    return None


def stage_timeline(order: Order, now: datetime) -> list[StageTiming]:
    """
    One row per non-terminal stage. Past and current stages carry minutes spent (until the
    next history entry, or now for the current stage) and SLA flags; later stages are upcoming.
    """
    current = order.current_stage if order.current_stage in PIPELINE else _reached_stage(order)
    current_index = pipeline_index(current) if current is not None else -1
    if order.current_stage == StageId.COMPLETED:
        current_index = len(PIPELINE)
    timeline = []
    for index, stage in enumerate(PIPELINE):
        definition = stage_by_id(stage)
        found = _first_entry(order, stage)
        if found is None or index > current_index:
            timeline.append(StageTiming(stage, definition.label, "upcoming"))
            continue
        entry, position = found
        following = order.stage_history[position + 1] if position + 1 < len(order.stage_history) else now
        spent = elapsed_minutes(entry, following)
        is_live = stage == order.current_stage
        if is_live:
            deadline = order.deadline
            overdue, warning = live_flags(definition, entry.entered_at, deadline, now)
        else:
            deadline = deadline_for(definition, entry.entered_at)
            overdue, warning = is_overdue(spent, definition), False
        timeline.append(StageTiming(
            stage=stage,
            label=definition.label,
            state="current" if is_live else "past",
            entered_at=entry.entered_at,
            deadline=deadline,
            minutes_spent=spent,
            is_overdue=overdue,
            is_warning=warning,
        ))
    return timeline


def fleet_overdue_summary(orders: list[Order], now: datetime) -> OverdueSummary:
    """Orders whose current-stage deadline has passed, grouped by stage in pipeline order."""
    overdue = [o for o in orders if o.deadline is not None and o.deadline < now and not o.is_terminal]
    by_stage: dict[StageId, int] = {}
    for stage in STAGES:
        count = sum(1 for o in overdue if o.current_stage == stage.id)
        if count:
            by_stage[stage.id] = count
    most_overdue = None
    for order in overdue:
        if most_overdue is None or now - order.deadline > now - most_overdue.deadline:
            most_overdue = order
    return OverdueSummary(
        by_stage=by_stage,
        total_minutes_overdue=sum(minutes_overdue(o.deadline, now) for o in overdue),
        most_overdue_order=most_overdue,
        most_overdue_minutes=minutes_overdue(most_overdue.deadline, now) if most_overdue else 0,
        overdue_count=len(overdue),
    )


def order_statistics(orders: list[Order]) -> dict:
    """Counts per stage plus revenue and average value of completed orders."""
    by_stage = {stage.id.value: 0 for stage in STAGES}
    for order in orders:
        by_stage[order.current_stage.value] += 1
    completed = [o for o in orders if o.current_stage == StageId.COMPLETED]
    revenue = sum((o.total for o in completed), Decimal("0"))
    average = (revenue / len(completed)).quantize(Decimal("0.01")) if completed else Decimal("0")
    return {
        "total_orders": len(orders),
        "by_stage": by_stage,
        "total_revenue": str(revenue),
        "average_order_value": str(average),
    }
