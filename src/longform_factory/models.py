from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Scalar = bool | int | float | str


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_session_id() -> str:
    """Opaque session id, lexically sortable by creation time."""
    return f"LF-{utc_now():%Y%m%dT%H%M%S%f}Z-{uuid.uuid4().hex[:6]}"


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    INIT = "init"
    DRAFT_GENERATION = "draft_generation"
    ASSEMBLY = "assembly"
    AUDIT = "audit"
    REFINEMENT = "refinement"
    PACKAGING = "packaging"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STAGES: frozenset[Stage] = frozenset({Stage.COMPLETE, Stage.FAILED})

STAGE_TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.INIT: frozenset({Stage.DRAFT_GENERATION, Stage.FAILED}),
    Stage.DRAFT_GENERATION: frozenset({Stage.ASSEMBLY, Stage.FAILED}),
    Stage.ASSEMBLY: frozenset({Stage.AUDIT, Stage.REFINEMENT, Stage.PACKAGING, Stage.FAILED}),
    Stage.AUDIT: frozenset({Stage.REFINEMENT, Stage.PACKAGING, Stage.FAILED}),
    Stage.REFINEMENT: frozenset({Stage.PACKAGING, Stage.FAILED}),
    Stage.PACKAGING: frozenset({Stage.COMPLETE, Stage.FAILED}),
    Stage.COMPLETE: frozenset(),
    Stage.FAILED: frozenset(),
}


# ---------------------------------------------------------------------------
# Rule system
# ---------------------------------------------------------------------------


class RuleType(str, Enum):
    BOUNDARY = "boundary"
    TEMPORAL = "temporal"
    BEHAVIORAL = "behavioral"
    OBJECT_INTERACTION = "object_interaction"
    PROCEDURAL = "procedural"


class RuleConsequences(BaseModel):
    immediate: list[str] = Field(default_factory=list)
    delayed: list[str] = Field(default_factory=list)
    permanent: list[str] = Field(default_factory=list)


class RuleDependencies(BaseModel):
    requires: list[str] = Field(default_factory=list)
    enables: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)


class RuleSpec(BaseModel):
    """Authored rule supplied in the session parameters."""

    rule_id: str | None = None
    text: str | None = None
    rule_type: RuleType | None = None
    violation_threshold: int | None = Field(default=None, ge=1)
    consequences: RuleConsequences | None = None
    dependencies: RuleDependencies | None = None
    active: bool = True


class RuleSlot(BaseModel):
    rule_id: str
    text: str | None = None
    rule_type: RuleType | None = None
    active: bool = False
    violated: bool = False
    violation_count: int = Field(default=0, ge=0)
    violation_threshold: int = Field(default=1, ge=1)
    consequences: RuleConsequences = Field(default_factory=RuleConsequences)
    dependencies: RuleDependencies = Field(default_factory=RuleDependencies)
    reversible: bool = False
    established_at: int | None = None

    @property
    def at_threshold(self) -> bool:
        return self.violation_count >= self.violation_threshold


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class GenerationParameters(BaseModel):
    """Immutable contract blob for one session."""

    model_config = ConfigDict(frozen=True)

    target_size: int = Field(ge=1)
    chunk_size: int | None = Field(default=None, ge=1)
    rule_count: int | None = Field(default=None, ge=1, le=50)
    contract_rule_count: int | None = Field(default=None, ge=1)
    rules: list[RuleSpec] = Field(default_factory=list)
    protagonist: str | None = None
    setting: str | None = None
    setting_keywords: list[str] = Field(default_factory=list)
    point_of_view: str | None = None
    themes: list[str] = Field(default_factory=list)
    instructions: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    def effective_rule_count(self, default: int) -> int:
        count = self.rule_count if self.rule_count is not None else default
        return max(count, len(self.rules))

    def effective_contract_rule_count(self, default: int) -> int:
        if self.contract_rule_count is not None:
            return self.contract_rule_count
        return self.effective_rule_count(default)


class SessionOptions(BaseModel):
    run_audit: bool = True
    run_refinement: bool = True
    gate_enabled: bool = True


class SessionFailure(BaseModel):
    stage: Stage
    kind: str
    error_type: str
    message: str
    failed_at: datetime = Field(default_factory=utc_now)


class Session(BaseModel):
    session_id: str = Field(default_factory=new_session_id)
    stage: Stage = Stage.INIT
    target_size: int = Field(ge=1)
    parameters: GenerationParameters
    options: SessionOptions = Field(default_factory=SessionOptions)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    cancelled: bool = False
    resumed_count: int = 0
    failure: SessionFailure | None = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def advance(self, stage: Stage) -> None:
        allowed = STAGE_TRANSITIONS[self.stage]
        if stage not in allowed:
            raise ValueError(f"Illegal stage transition: {self.stage.value} -> {stage.value}")
        self.stage = stage
        self.updated_at = utc_now()

    def reopen(self) -> None:
        """Move a FAILED session back into draft generation for resume."""
        if self.stage != Stage.FAILED:
            raise ValueError(f"Only failed sessions can be resumed, session is {self.stage.value}")
        self.stage = Stage.DRAFT_GENERATION
        self.failure = None
        self.cancelled = False
        self.resumed_count += 1
        self.updated_at = utc_now()


# ---------------------------------------------------------------------------
# Increments and manifest
# ---------------------------------------------------------------------------


class Increment(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    sequence_number: int = Field(ge=1)
    text: str
    size: int = Field(ge=0)
    saved_at: datetime = Field(default_factory=utc_now)

    @property
    def filename(self) -> str:
        return increment_filename(self.sequence_number)


def increment_filename(sequence_number: int) -> str:
    return f"increment_{sequence_number:03d}.txt"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ManifestEntry(_CamelModel):
    number: int = Field(ge=1)
    filename: str
    size: int = Field(ge=0)
    saved_at: datetime


class StateSummary(_CamelModel):
    rules_active: int = 0
    rules_violated: int = 0
    capabilities: int = 0
    contamination_level: int = 0


class Manifest(_CamelModel):
    version: str = "1.0.0"
    session_id: str
    total_increments: int
    total_size: int
    generated_at: datetime = Field(default_factory=utc_now)
    entries: list[ManifestEntry] = Field(default_factory=list)
    state_summary: StateSummary = Field(default_factory=StateSummary)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Manifest":
        numbers = [entry.number for entry in self.entries]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"manifest entries must be 1..N without gaps or duplicates, got {numbers}")
        if self.total_increments != len(self.entries):
            raise ValueError("manifest totalIncrements does not match entry count")
        if self.total_size != sum(entry.size for entry in self.entries):
            raise ValueError("manifest totalSize does not match sum of entry sizes")
        return self

    @classmethod
    def build(
        cls,
        session_id: str,
        entries: list[ManifestEntry],
        state_summary: StateSummary | None = None,
    ) -> "Manifest":
        ordered = sorted(entries, key=lambda entry: entry.number)
        return cls(
            session_id=session_id,
            total_increments=len(ordered),
            total_size=sum(entry.size for entry in ordered),
            entries=ordered,
            state_summary=state_summary or StateSummary(),
        )


# ---------------------------------------------------------------------------
# Canonical state
# ---------------------------------------------------------------------------


class ViolationRecord(BaseModel):
    rule_id: str
    increment: int | None = None
    violation_number: int
    recorded_at: datetime = Field(default_factory=utc_now)


class IrreversibleFlags(BaseModel):
    """Flags that may only move in one direction.

    counters never decrease, safety flags only fall from True to False,
    markers only rise from False to True.
    """

    counters: dict[str, int] = Field(default_factory=lambda: {"contamination_level": 0})
    safety_flags: dict[str, bool] = Field(default_factory=dict)
    markers: dict[str, bool] = Field(default_factory=dict)
    violations: list[ViolationRecord] = Field(default_factory=list)


class TimelineCommitment(BaseModel):
    text: str
    increment: int | None = None
    recorded_at: datetime = Field(default_factory=utc_now)


class DeltaLogEntry(BaseModel):
    increment: int | None = None
    recorded_at: datetime = Field(default_factory=utc_now)
    changes: list[str] = Field(default_factory=list)


class CanonicalState(BaseModel):
    session_id: str
    rules: list[RuleSlot] = Field(default_factory=list)
    capabilities: dict[str, Scalar] = Field(default_factory=dict)
    irreversible: IrreversibleFlags = Field(default_factory=IrreversibleFlags)
    world_facts: dict[str, Any] = Field(default_factory=dict)
    timeline_commitments: list[TimelineCommitment] = Field(default_factory=list)
    delta_log: list[DeltaLogEntry] = Field(default_factory=list)
    applied_increments: list[int] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Deltas and updates
# ---------------------------------------------------------------------------


class DeltaSource(str, Enum):
    ORACLE = "oracle"
    HEURISTIC = "heuristic"
    EMPTY = "empty"


class IrreversibleChange(BaseModel):
    flag: str
    value: bool | int


class Delta(BaseModel):
    sequence_number: int | None = None
    source: DeltaSource = DeltaSource.EMPTY
    rules_introduced: list[str] = Field(default_factory=list)
    rules_violated: list[str] = Field(default_factory=list)
    capabilities: dict[str, Scalar] = Field(default_factory=dict)
    irreversible_changes: list[IrreversibleChange] = Field(default_factory=list)
    world_facts: dict[str, Any] = Field(default_factory=dict)
    timeline_commitments: list[str] = Field(default_factory=list)

    @classmethod
    def empty(cls, sequence_number: int | None = None) -> "Delta":
        return cls(sequence_number=sequence_number, source=DeltaSource.EMPTY)

    @property
    def is_empty(self) -> bool:
        return not (
            self.rules_introduced
            or self.rules_violated
            or self.capabilities
            or self.irreversible_changes
            or self.world_facts
            or self.timeline_commitments
        )


class ExtractedDelta(_CamelModel):
    """Schema the extraction oracle is instructed to emit."""

    rules_introduced: list[str] = Field(default_factory=list)
    rules_violated: list[str] = Field(default_factory=list)
    entity_capabilities: dict[str, bool | str] = Field(default_factory=dict)
    timeline_commitments: list[str] = Field(default_factory=list)


class ChangeRecord(BaseModel):
    change_type: str
    target: str
    detail: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = None


class UpdateResult(BaseModel):
    sequence_number: int | None = None
    applied_changes: list[ChangeRecord] = Field(default_factory=list)
    skipped_changes: list[ChangeRecord] = Field(default_factory=list)
    errors: list[ChangeRecord] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)

    @property
    def success(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class CheckSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    WARNING = "warning"


class GateStatus(str, Enum):
    PASS = "PASS"
    PASS_WITH_WARNINGS = "PASS_WITH_WARNINGS"
    FAIL = "FAIL"


class Recommendation(str, Enum):
    PROCEED = "PROCEED"
    PROCEED_WITH_CAUTION = "PROCEED_WITH_CAUTION"
    STOP = "STOP"


class GateCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: CheckStatus = CheckStatus.PASS
    severity: CheckSeverity = CheckSeverity.CRITICAL
    reason: str | None = None
    evidence: list[str] = Field(default_factory=list)


class GateFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    check: str
    reason: str
    evidence: list[str] = Field(default_factory=list)


class GateResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence_number: int
    status: GateStatus
    recommendation: Recommendation
    critical_failures: list[GateFinding] = Field(default_factory=list)
    warnings: list[GateFinding] = Field(default_factory=list)
    checks: dict[str, GateCheck] = Field(default_factory=dict)
    evaluated_at: datetime = Field(default_factory=utc_now)
    duration_ms: float = 0.0


# ---------------------------------------------------------------------------
# Events and recovery artifacts
# ---------------------------------------------------------------------------


class EventType(str, Enum):
    JOB_CREATED = "job_created"
    STAGE_START = "stage_start"
    INCREMENT_START = "increment_start"
    INCREMENT_COMPLETE = "increment_complete"
    STAGE_COMPLETE = "stage_complete"
    HEARTBEAT = "heartbeat"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: EventType
    session_id: str
    stage: Stage
    timestamp: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)


class ErrorReport(BaseModel):
    status: str = "failed"
    session_id: str
    failed_stage: Stage
    kind: str
    error_type: str
    message: str
    increments_completed: int
    total_size: int
    stages_completed: list[Stage] = Field(default_factory=list)
    partial_artifacts: dict[str, str] = Field(default_factory=dict)
    resumable: bool = True
    gate_result: GateResult | None = None
    reported_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Oracle exchange
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    system_instructions: str
    user_instructions: str
    target_size: int = Field(ge=1)
    max_output_tokens: int = Field(ge=1)
    timeout_seconds: float | None = None
    temperature: float = 0.7


class GenerationResponse(BaseModel):
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    model: str | None = None
    stop_reason: str | None = None


class IncrementRequest(BaseModel):
    session_id: str
    sequence_number: int = Field(ge=1)
    target_size: int = Field(ge=1)
    is_first: bool
    is_final: bool
    request: GenerationRequest


class Artifact(BaseModel):
    text: str
    size: int
    increment_count: int
    partial: bool = False


class PassResult(BaseModel):
    """Output of a whole-artifact pass (audit or refinement)."""

    text: str
    report: dict[str, Any] = Field(default_factory=dict)
    needs_followup: bool = False
