"""
Stage catalog: the fixed, ordered pipeline every order moves through.
"""
from dataclasses import dataclass
from enum import Enum

from fulfillment.config import settings
from fulfillment.errors import UnknownStage


class StageId(str, Enum):
    CREATED = "created"
    WEIGHING = "weighing"
    CREATE_INVOICE = "create_invoice"
    SEND_PHOTO = "send_photo"
    PAYMENT = "payment"
    IN_KITCHEN = "in_kitchen"
    PROCESSING = "processing"
    DELIVERY = "delivery"
    COMPLETED = "completed"
    FAILED = "failed"


class ImageType(str, Enum):
    WEIGHING = "weighing"
    INVOICE = "invoice"
    ATTACHMENT = "attachment"


@dataclass(frozen=True)
class StageDefinition:
    id: StageId
    label: str
    standard_duration_minutes: int
    warning_threshold_minutes: int
    required_image_types: frozenset[ImageType] = frozenset()

    @property
    def is_terminal(self) -> bool:
        return self.id in TERMINAL_STAGES


TERMINAL_STAGES: frozenset[StageId] = frozenset({StageId.COMPLETED, StageId.FAILED})

# Pipeline order; durations and warning thresholds in minutes
_DEFAULT_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(StageId.CREATED, "Created", 15, 10),
    StageDefinition(StageId.WEIGHING, "Weighing", 20, 15, frozenset({ImageType.WEIGHING})),
    StageDefinition(StageId.CREATE_INVOICE, "Create invoice", 10, 7, frozenset({ImageType.INVOICE})),
    StageDefinition(StageId.SEND_PHOTO, "Send photo", 10, 7),
    StageDefinition(StageId.PAYMENT, "Payment", 30, 20),
    StageDefinition(StageId.IN_KITCHEN, "In kitchen", 60, 45),
    StageDefinition(StageId.PROCESSING, "Processing", 45, 30),
    StageDefinition(StageId.DELIVERY, "Delivery", 30, 20),
    StageDefinition(StageId.COMPLETED, "Completed", 0, 0),
    StageDefinition(StageId.FAILED, "Failed", 0, 0),
)


def build_catalog(overrides: dict[str, tuple[int, int]] | None = None) -> tuple[StageDefinition, ...]:
    """
    Apply duration/warning overrides (stage id -> (duration, warning)) to the default catalog.
    Raises ValueError for overrides on terminal stages or with warning outside (0, duration].
    """
    overrides = overrides or {}
    catalog = []
    for stage in _DEFAULT_STAGES:
        budget = overrides.get(stage.id.value)
        if budget is None:
            catalog.append(stage)
            continue
        duration, warning = budget
        if stage.id in TERMINAL_STAGES:
            raise ValueError(f"terminal stage {stage.id.value} has no duration budget")
        if duration <= 0 or not 0 < warning <= duration:
            raise ValueError(f"invalid budget for {stage.id.value}: duration={duration} warning={warning}")
        catalog.append(StageDefinition(stage.id, stage.label, duration, warning, stage.required_image_types))
    unknown = set(overrides) - {s.id.value for s in _DEFAULT_STAGES}
    if unknown:
        raise ValueError(f"budget overrides for unknown stages: {sorted(unknown)}")
    return tuple(catalog)


STAGES: tuple[StageDefinition, ...] = build_catalog(settings.stage_budget_overrides)
_BY_ID: dict[StageId, StageDefinition] = {s.id: s for s in STAGES}

# Non-terminal stages in pipeline order (the progress denominator)
PIPELINE: tuple[StageId, ...] = tuple(s.id for s in STAGES if s.id not in TERMINAL_STAGES)


def parse_stage(value: str | StageId) -> StageId:
    try:
        return StageId(value)
    except ValueError:
        raise UnknownStage(value) from None


def stage_by_id(stage_id: str | StageId) -> StageDefinition:
    """Catalog entry for stage_id. Raises UnknownStage for anything outside the ten constants."""
    return _BY_ID[parse_stage(stage_id)]


def next_stage(stage_id: str | StageId) -> StageId | None:
    """
    Successor in pipeline order. The last non-terminal stage leads to COMPLETED;
    terminal stages have no successor.
    """
    stage = parse_stage(stage_id)
    if stage in TERMINAL_STAGES:
        return None
    index = PIPELINE.index(stage)
    if index == len(PIPELINE) - 1:
        return StageId.COMPLETED
    return PIPELINE[index + 1]


def is_terminal(stage_id: str | StageId) -> bool:
    return parse_stage(stage_id) in TERMINAL_STAGES


def pipeline_index(stage_id: str | StageId) -> int:
    """Position among non-terminal stages. Raises ValueError for terminal stages."""
    return PIPELINE.index(parse_stage(stage_id))
