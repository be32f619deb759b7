from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import GateResult


class PipelineError(RuntimeError):
    """Base class for all pipeline failures surfaced to callers."""

    kind: str = "infrastructure"


class GenerationFailed(PipelineError):
    """The generation oracle failed or timed out for one increment."""

    def __init__(self, message: str, *, sequence_number: int | None = None, attempts: int = 1) -> None:
        super().__init__(message)
        self.sequence_number = sequence_number
        self.attempts = attempts


class PersistenceFailed(PipelineError):
    """An atomic write could not be completed."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class DeltaExtractionFailed(PipelineError):
    """Secondary extraction call failed. Always swallowed into an empty delta."""

    kind = "advisory"


class InvariantViolation(PipelineError):
    """A proposed state change would break a monotonic invariant."""

    kind = "advisory"

    def __init__(self, message: str, *, change: dict[str, Any] | None = None, reason: str = "monotonicity") -> None:
        super().__init__(message)
        self.change = change or {}
        self.reason = reason


class GateFailure(PipelineError):
    """The gate validator recommended STOP for an increment."""

    kind = "content"

    def __init__(self, message: str, *, result: "GateResult") -> None:
        super().__init__(message)
        self.result = result


class StageTimeout(PipelineError):
    """A stage ran past its time budget."""

    def __init__(self, stage: str, *, elapsed_seconds: float, budget_seconds: float) -> None:
        super().__init__(
            f"Stage {stage} exceeded its budget ({elapsed_seconds:.1f}s > {budget_seconds:.1f}s)"
        )
        self.stage = stage
        self.elapsed_seconds = elapsed_seconds
        self.budget_seconds = budget_seconds


class SessionCancelled(PipelineError):
    """Cooperative cancellation was observed between increments."""

    kind = "control"
