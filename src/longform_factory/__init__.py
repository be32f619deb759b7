from importlib.metadata import version

from .assembly import ArtifactPass, Assembler, Packager
from .canon import CanonicalStateStore, assert_monotonic
from .controller import SessionResult, StageController
from .delta import DeltaExtractor
from .errors import (
    DeltaExtractionFailed,
    GateFailure,
    GenerationFailed,
    InvariantViolation,
    PersistenceFailed,
    PipelineError,
    SessionCancelled,
    StageTimeout,
)
from .events import EventChannel, QueueSubscriber, heartbeat
from .gate import GateContract, GateValidator
from .generator import IncrementGenerator
from .llm import ChatModelOracle, GenerationOracle
from .models import (
    Artifact,
    CanonicalState,
    Delta,
    ErrorReport,
    EventType,
    GateResult,
    GenerationParameters,
    GenerationRequest,
    GenerationResponse,
    Increment,
    Manifest,
    PassResult,
    ProgressEvent,
    RuleSlot,
    RuleSpec,
    Session,
    SessionOptions,
    Stage,
    UpdateResult,
)
from .recovery import RecoveryPlanner, ResumePlan
from .sessions import SessionRegistry
from .settings import RuntimeSettings
from .state_store import IncrementStore
from .updater import StateUpdater


def get_version() -> str:
    try:
        return version("longform-factory")
    except Exception:
        return "0.0.0"


__all__ = [
    "Artifact",
    "ArtifactPass",
    "Assembler",
    "CanonicalState",
    "CanonicalStateStore",
    "ChatModelOracle",
    "Delta",
    "DeltaExtractionFailed",
    "DeltaExtractor",
    "ErrorReport",
    "EventChannel",
    "EventType",
    "GateContract",
    "GateFailure",
    "GateResult",
    "GateValidator",
    "GenerationFailed",
    "GenerationOracle",
    "GenerationParameters",
    "GenerationRequest",
    "GenerationResponse",
    "Increment",
    "IncrementGenerator",
    "IncrementStore",
    "InvariantViolation",
    "Manifest",
    "Packager",
    "PassResult",
    "PersistenceFailed",
    "PipelineError",
    "ProgressEvent",
    "QueueSubscriber",
    "RecoveryPlanner",
    "ResumePlan",
    "RuleSlot",
    "RuleSpec",
    "RuntimeSettings",
    "Session",
    "SessionCancelled",
    "SessionOptions",
    "SessionRegistry",
    "SessionResult",
    "Stage",
    "StageController",
    "StageTimeout",
    "StateUpdater",
    "UpdateResult",
    "assert_monotonic",
    "heartbeat",
]
