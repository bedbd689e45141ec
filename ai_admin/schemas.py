from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


ActionType = Literal["research_census", "import_census_stat", "create_derived_stat", "create_stat_family_links"]
RunStatus = Literal["draft", "awaiting_approval", "approved", "running", "paused", "completed", "failed", "stopped"]
StepStatus = Literal["pending", "running", "completed", "failed"]
RunEventType = Literal[
    "run_created",
    "run_awaiting_approval",
    "run_approved",
    "run_started",
    "step_started",
    "step_completed",
    "step_failed",
    "step_released",
    "run_paused",
    "run_resumed",
    "run_completed",
    "run_stopped",
]
ConflictReason = Literal[
    "existing_stat_by_external_id",
    "existing_stat_by_name",
    "duplicate_import_in_plan",
    "duplicate_derived_name_in_plan",
]
IssueCode = Literal[
    "invalid_body",
    "invalid_caps",
    "invalid_actions",
    "unsupported_action_type",
    "invalid_action_payload",
    "blocked_mutation_intent",
    "caps_exceeded",
]
DerivedFormula = Literal["percent", "sum", "difference", "rate_per_1000", "ratio", "index", "change_over_time"]

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "stopped"})


class CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "protected_namespaces": (),
    }

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RunCaps(CamelModel):
    max_steps: int
    max_stats_created: int
    max_rows_written: int


class PlanEstimate(CamelModel):
    action_count: int = 0
    write_action_count: int = 0
    estimated_stats_created: int = 0
    estimated_rows_written: int = 0


class Action(CamelModel):
    id: str
    type: ActionType
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {**CamelModel.model_config, "frozen": True}


class PlanIssue(CamelModel):
    code: IssueCode
    message: str
    path: Optional[str] = None


class ValidatedPlan(CamelModel):
    caller_email: Optional[str] = None
    dry_run: bool = False
    validate_only: bool = False
    caps: RunCaps
    actions: List[Action]
    estimate: PlanEstimate

    model_config = {**CamelModel.model_config, "frozen": True}


class Conflict(CamelModel):
    action_id: str
    action_type: ActionType
    reason: ConflictReason
    stat_id: Optional[str] = None
    stat_name: Optional[str] = None
    ne_id: Optional[str] = None
    detail: str


class RunEvent(CamelModel):
    id: str
    run_id: str
    type: RunEventType
    created_at: datetime
    summary: str
    metadata: Optional[Dict[str, Any]] = None


class RunStep(CamelModel):
    index: int
    action_id: str
    action_type: ActionType
    status: StepStatus = "pending"
    payload_summary: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    stalled: bool = False
    result_summary: Optional[str] = None
    error: Optional[str] = None


class Run(CamelModel):
    run_id: str
    status: RunStatus = "draft"
    caller_email: Optional[str] = None
    caps: RunCaps
    estimate: PlanEstimate
    actions: List[Action]
    steps: List[RunStep]
    next_action_index: int = 0
    created_at: datetime
    updated_at: datetime
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    paused_at: Optional[datetime] = None
    paused_reason: Optional[str] = None
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    events: List[RunEvent] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES
