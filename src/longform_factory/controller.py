from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .assembly import ArtifactPass, Assembler, Packager
from .canon import CanonicalStateStore
from .delta import DeltaExtractor
from .errors import GateFailure, GenerationFailed, PipelineError, SessionCancelled, StageTimeout
from .events import EventChannel, heartbeat
from .gate import GateContract, GateValidator, render_report
from .generator import IncrementGenerator
from .models import (
    TERMINAL_STAGES,
    Artifact,
    DeltaSource,
    ErrorReport,
    EventType,
    GateResult,
    GenerationParameters,
    Increment,
    IncrementRequest,
    ManifestEntry,
    Recommendation,
    Session,
    SessionFailure,
    SessionOptions,
    Stage,
)
from .recovery import RecoveryPlanner
from .session_log import SessionLogAdapter, session_logging
from .sessions import SessionRegistry
from .settings import RuntimeSettings
from .state_store import IncrementStore
from .updater import StateUpdater
from .utils import count_words

logger = logging.getLogger(__name__)

ASSEMBLED_DRAFT = "assembled_draft.txt"
PARTIAL_ARTIFACT = "partial_artifact.txt"
FINAL_ARTIFACT = "final_artifact.txt"


class PipelineState(TypedDict, total=False):
    session_id: str
    stages_completed: list[str]


class DraftLoopState(TypedDict, total=False):
    session_id: str
    target_size: int
    produced_size: int
    next_sequence: int
    done: bool


@dataclass
class SessionResult:
    session_id: str
    success: bool
    stage: Stage
    increments_completed: int = 0
    total_size: int = 0
    artifact: Artifact | None = None
    artifact_paths: dict[str, str] = field(default_factory=dict)
    gate_results: list[GateResult] = field(default_factory=list)
    error_report: ErrorReport | None = None


@dataclass
class _RunContext:
    session: Session
    canon: CanonicalStateStore
    updater: StateUpdater
    contract: GateContract
    log: SessionLogAdapter
    increments: list[Increment] = field(default_factory=list)
    stages_completed: list[Stage] = field(default_factory=list)
    gate_results: list[GateResult] = field(default_factory=list)
    failed_extractions: list[int] = field(default_factory=list)
    reports: dict[str, dict[str, Any]] = field(default_factory=dict)
    artifact: Artifact | None = None
    artifact_paths: dict[str, str] = field(default_factory=dict)
    stage_started: float = 0.0

    @property
    def produced_size(self) -> int:
        return sum(increment.size for increment in self.increments)


class StageController:
    """Drives one session through draft generation, assembly, optional passes and packaging.

    Draft generation is a nested increment loop: generate, persist, extract,
    update, gate. Every failure ends in FAILED with increments, manifest,
    canonical state and an error report left loadable for resume.
    """

    def __init__(
        self,
        generator: IncrementGenerator,
        extractor: DeltaExtractor,
        store: IncrementStore,
        registry: SessionRegistry,
        settings: RuntimeSettings,
        channel: EventChannel,
        validator: GateValidator | None = None,
        auditor: ArtifactPass | None = None,
        refiner: ArtifactPass | None = None,
        packager: Packager | None = None,
        *,
        assembler: Assembler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.generator = generator
        self.extractor = extractor
        self.store = store
        self.registry = registry
        self.settings = settings
        self.channel = channel
        self.validator = validator
        self.auditor = auditor
        self.refiner = refiner
        self.packager = packager
        self.assembler = assembler or Assembler()
        self.clock = clock
        self.recovery = RecoveryPlanner(store)
        self._cancel = threading.Event()
        self._run: _RunContext | None = None
        self.graph = self._build_graph().compile()
        self.draft_graph = self._build_draft_graph().compile()

    # ------------------------------------------------------------------
    # Graphs
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("draft_generation", self._draft_generation_node)
        graph.add_node("assembly", self._assembly_node)
        graph.add_node("post_assembly_route", self._post_assembly_route_node)
        graph.add_node("audit", self._audit_node)
        graph.add_node("audit_route", self._audit_route_node)
        graph.add_node("refinement", self._refinement_node)
        graph.add_node("packaging", self._packaging_node)

        graph.add_edge(START, "draft_generation")
        graph.add_edge("draft_generation", "assembly")
        graph.add_edge("assembly", "post_assembly_route")
        graph.add_edge("audit", "audit_route")
        graph.add_edge("refinement", "packaging")
        graph.add_edge("packaging", END)
        return graph

    def _build_draft_graph(self) -> StateGraph:
        graph = StateGraph(DraftLoopState)
        graph.add_node("increment_route", self._increment_route_node)
        graph.add_node("increment_step", self._increment_step_node)
        graph.add_node("finalize", self._draft_finalize_node)

        graph.add_edge(START, "increment_route")
        graph.add_edge("increment_step", "increment_route")
        graph.add_edge("finalize", END)
        return graph

    def _graph_config(self) -> dict[str, Any]:
        return {"recursion_limit": self.settings.recursion_limit}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Request cooperative cancellation; honoured at the next increment boundary."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def start(self, parameters: GenerationParameters, options: SessionOptions | None = None) -> SessionResult:
        return self.run(self.registry.create(parameters, options))

    def run(self, session: Session) -> SessionResult:
        if session.stage != Stage.INIT:
            raise ValueError(f"Session {session.session_id} is {session.stage.value}; use resume()")
        canon = CanonicalStateStore.initialize(
            session.session_id,
            session.parameters,
            default_rule_count=self.settings.default_rule_count,
        )
        self.registry.save(session)
        self.store.write_state(canon.state)
        self.store.rewrite_manifest(session.session_id, [], canon.summary())
        context = self._new_context(session, canon)
        self.channel.emit(
            EventType.JOB_CREATED,
            session.session_id,
            session.stage,
            target_size=session.target_size,
            resumed=False,
        )
        return self._execute(context)

    def resume(self, session_id: str) -> SessionResult:
        """Continue a failed or interrupted session from its last persisted increment.

        Raises:
            FileNotFoundError: If the session does not exist.
            ValueError: If the session already completed.
        """
        session = self.registry.get(session_id)
        if session.stage == Stage.COMPLETE:
            raise ValueError(f"Session {session_id} already completed")
        if session.stage == Stage.INIT:
            return self.run(session)
        if session.stage != Stage.FAILED and session.stage != Stage.DRAFT_GENERATION:
            # Interrupted after drafting; replay the post-draft stages from a clean failure.
            session.advance(Stage.FAILED)
        if session.stage == Stage.FAILED:
            session.reopen()

        plan = self.recovery.plan(session_id)
        if plan.state is not None:
            canon = CanonicalStateStore.from_state(plan.state)
        else:
            canon = CanonicalStateStore.initialize(
                session_id,
                session.parameters,
                default_rule_count=self.settings.default_rule_count,
            )
        context = self._new_context(session, canon)
        context.increments = list(plan.increments)

        if plan.unapplied:
            results = self.recovery.reconcile(
                self.extractor,
                context.updater,
                [increment for increment in plan.increments if increment.sequence_number in plan.unapplied],
            )
            context.log.info("Reconciled %s of %s unapplied increments", len(results), len(plan.unapplied))
        self.store.write_state(canon.state)
        self._rewrite_manifest(context)
        self.store.clear_error_report(session_id)
        self.registry.save(session)

        self.channel.emit(
            EventType.JOB_CREATED,
            session_id,
            session.stage,
            target_size=session.target_size,
            resumed=True,
            increments_recovered=len(plan.increments),
            size_recovered=plan.size_achieved,
        )
        return self._execute(context)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _new_context(self, session: Session, canon: CanonicalStateStore) -> _RunContext:
        return _RunContext(
            session=session,
            canon=canon,
            updater=StateUpdater(canon),
            contract=GateContract.from_parameters(
                session.parameters,
                default_rule_count=self.settings.default_rule_count,
            ),
            log=SessionLogAdapter(logger, session.session_id),
        )

    def _context(self) -> _RunContext:
        if self._run is None:
            raise RuntimeError("No session is running on this controller")
        return self._run

    def _execute(self, context: _RunContext) -> SessionResult:
        session_id = context.session.session_id
        failure: BaseException | None = None
        self._run = context
        try:
            with session_logging(self.store.session_dir(session_id), session_id):
                with heartbeat(
                    self.channel,
                    session_id=session_id,
                    interval=self.settings.heartbeat_interval_seconds,
                    stage_fn=lambda: context.session.stage,
                    status_fn=lambda: {
                        "increments_completed": len(context.increments),
                        "produced_size": context.produced_size,
                        "target_size": context.session.target_size,
                    },
                ):
                    try:
                        self.graph.invoke({"session_id": session_id, "stages_completed": []}, config=self._graph_config())
                    except Exception as exc:  # noqa: BLE001 - every failure is routed to FAILED below.
                        failure = exc
                if failure is not None:
                    return self._fail(context, failure)
                return self._complete(context)
        finally:
            self._run = None
            self._cancel.clear()

    def _enter_stage(self, context: _RunContext, stage: Stage) -> None:
        if context.session.stage != stage:
            context.session.advance(stage)
            self.registry.save(context.session)
        context.stage_started = self.clock()
        context.log.stage = stage.value
        context.log.info("Stage %s started", stage.value)
        self.channel.emit(EventType.STAGE_START, context.session.session_id, stage)

    def _complete_stage(self, context: _RunContext, stage: Stage, **payload: Any) -> None:
        self._check_budget(context)
        context.stages_completed.append(stage)
        elapsed = round(self.clock() - context.stage_started, 3)
        context.log.info("Stage %s complete in %.1fs", stage.value, elapsed)
        self.channel.emit(
            EventType.STAGE_COMPLETE,
            context.session.session_id,
            stage,
            elapsed_seconds=elapsed,
            **payload,
        )

    def _check_budget(self, context: _RunContext) -> None:
        elapsed = self.clock() - context.stage_started
        budget = self.settings.stage_timeout_seconds
        if elapsed > budget:
            raise StageTimeout(context.session.stage.value, elapsed_seconds=elapsed, budget_seconds=budget)

    def _check_cancelled(self, context: _RunContext) -> None:
        if self._cancel.is_set():
            raise SessionCancelled(
                f"Session {context.session.session_id} cancelled after {len(context.increments)} increments"
            )

    def _rewrite_manifest(self, context: _RunContext) -> None:
        entries = [
            ManifestEntry(
                number=increment.sequence_number,
                filename=increment.filename,
                size=increment.size,
                saved_at=increment.saved_at,
            )
            for increment in context.increments
        ]
        self.store.rewrite_manifest(context.session.session_id, entries, context.canon.summary())

    # ------------------------------------------------------------------
    # Draft generation
    # ------------------------------------------------------------------

    def _draft_generation_node(self, state: PipelineState) -> dict[str, Any]:
        context = self._context()
        self._enter_stage(context, Stage.DRAFT_GENERATION)
        self.draft_graph.invoke(
            {
                "session_id": state["session_id"],
                "target_size": context.session.target_size,
                "produced_size": context.produced_size,
                "next_sequence": len(context.increments) + 1,
                "done": False,
            },
            config=self._graph_config(),
        )
        context.log.increment = None
        self._complete_stage(
            context,
            Stage.DRAFT_GENERATION,
            increments=len(context.increments),
            total_size=context.produced_size,
        )
        return {"stages_completed": [stage.value for stage in context.stages_completed]}

    def _increment_route_node(self, state: DraftLoopState) -> Command[str]:
        if int(state.get("produced_size", 0)) >= int(state["target_size"]):
            return Command(goto="finalize")
        return Command(goto="increment_step")

    def _increment_step_node(self, state: DraftLoopState) -> dict[str, Any]:
        context = self._context()
        self._check_cancelled(context)
        self._check_budget(context)

        session = context.session
        session_id = session.session_id
        target_total = int(state["target_size"])
        produced = int(state["produced_size"])
        sequence_number = int(state["next_sequence"])
        chunk_size = session.parameters.chunk_size or self.settings.chunk_size
        remaining = target_total - produced
        increment_target = min(chunk_size, remaining)
        is_final = remaining <= chunk_size
        context.log.increment = sequence_number

        self.channel.emit(
            EventType.INCREMENT_START,
            session_id,
            Stage.DRAFT_GENERATION,
            sequence_number=sequence_number,
            target_size=increment_target,
            produced_size=produced,
            total_target=target_total,
            percent_complete=round(produced * 100 / target_total),
        )
        started = self.clock()

        request = self.generator.build_request(
            session_id=session_id,
            parameters=session.parameters,
            sequence_number=sequence_number,
            target_size=increment_target,
            is_first=sequence_number == 1,
            is_final=is_final,
            prior_text=context.increments[-1].text if context.increments else "",
            constraints=context.canon.render_constraints(),
        )
        increment = self._generate_with_retry(context, request)

        # Durable before any state reflects it.
        self.store.persist(session_id, sequence_number, increment.text, increment.size, saved_at=increment.saved_at)
        context.increments.append(increment)
        self._rewrite_manifest(context)

        state_before = context.canon.snapshot()
        delta = self.extractor.extract(increment.text, context.canon.state, sequence_number)
        if delta.source == DeltaSource.EMPTY:
            context.failed_extractions.append(sequence_number)
            context.log.warning("No delta for increment %s; leaving it for re-extraction", sequence_number)
            applied, skipped = [], []
        else:
            update = context.updater.apply(delta)
            applied = [change.model_dump(mode="json") for change in update.applied_changes]
            skipped = [change.model_dump(mode="json") for change in update.skipped_changes]
        self.store.write_state(context.canon.state)
        self._rewrite_manifest(context)
        self.store.append_audit_event(
            session_id,
            {
                "event": "delta",
                "increment": sequence_number,
                "source": delta.source.value,
                "delta": delta.model_dump(mode="json"),
                "applied": applied,
                "skipped": skipped,
            },
        )

        gate_status: str | None = None
        if self._gate_active(session):
            result = self.validator.evaluate(
                context.contract,
                state_before,
                context.canon.state,
                increment.text,
                sequence_number,
                is_final,
                increment_target,
            )
            self.store.write_gate_result(session_id, result, render_report(result))
            context.gate_results.append(result)
            gate_status = result.status.value
            if result.recommendation == Recommendation.STOP:
                reasons = "; ".join(f"{finding.check}: {finding.reason}" for finding in result.critical_failures)
                raise GateFailure(f"Gate stopped the session at increment {sequence_number}: {reasons}", result=result)

        produced += increment.size
        context.log.info("Increment %s complete: %s units (%s/%s)", sequence_number, increment.size, produced, target_total)
        self.channel.emit(
            EventType.INCREMENT_COMPLETE,
            session_id,
            Stage.DRAFT_GENERATION,
            sequence_number=sequence_number,
            size=increment.size,
            produced_size=produced,
            total_target=target_total,
            percent_complete=min(100, round(produced * 100 / target_total)),
            duration_seconds=round(self.clock() - started, 3),
            gate_status=gate_status,
        )
        return {"produced_size": produced, "next_sequence": sequence_number + 1}

    def _draft_finalize_node(self, state: DraftLoopState) -> dict[str, Any]:
        self._context().log.info(
            "Draft loop finished at %s/%s units", state.get("produced_size", 0), state.get("target_size", 0)
        )
        return {"done": True}

    def _gate_active(self, session: Session) -> bool:
        return self.validator is not None and self.settings.gate_enabled and session.options.gate_enabled

    def _generate_with_retry(self, context: _RunContext, request: IncrementRequest) -> Increment:
        attempts = 0

        @retry(
            reraise=True,
            stop=stop_after_attempt(self.settings.max_generation_retries),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_seconds, max=60),
            retry=retry_if_exception_type(GenerationFailed),
            before_sleep=before_sleep_log(context.log, logging.WARNING),
        )
        def attempt() -> Increment:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                self._check_cancelled(context)
            return self.generator.generate(request)

        try:
            return attempt()
        except GenerationFailed as exc:
            exc.attempts = attempts
            context.log.error("Increment %s failed after %s attempt(s): %s", request.sequence_number, attempts, exc)
            raise

    # ------------------------------------------------------------------
    # Post-draft stages
    # ------------------------------------------------------------------

    def _assembly_node(self, state: PipelineState) -> dict[str, Any]:
        context = self._context()
        session_id = context.session.session_id
        self._enter_stage(context, Stage.ASSEMBLY)
        try:
            artifact = self.assembler.assemble(self.store.load_from_manifest(session_id))
            recovered = False
        except (FileNotFoundError, ValueError) as exc:
            context.log.warning("Manifest assembly failed (%s); recovering from increment files", exc)
            artifact = self.assembler.recover(self.store.load_all(session_id))
            recovered = True
        context.artifact = artifact
        path = self.store.write_artifact(session_id, ASSEMBLED_DRAFT, artifact.text)
        context.artifact_paths["assembled_draft"] = str(path)

        self._reextraction_sweep(context)
        self._complete_stage(
            context,
            Stage.ASSEMBLY,
            size=artifact.size,
            increments=artifact.increment_count,
            partial_recovery=recovered,
        )
        return {"stages_completed": [stage.value for stage in context.stages_completed]}

    def _reextraction_sweep(self, context: _RunContext) -> None:
        policy = self.settings.reextraction_policy
        if policy == "never":
            return
        if policy == "on_failure":
            targets = [i for i in context.increments if i.sequence_number in context.failed_extractions]
        else:
            targets = [i for i in context.increments if not context.canon.is_applied(i.sequence_number)]
        if not targets:
            return
        results = self.recovery.reconcile(self.extractor, context.updater, targets)
        self.store.write_state(context.canon.state)
        self._rewrite_manifest(context)
        context.log.info("Re-extraction sweep (%s) applied %s of %s deltas", policy, len(results), len(targets))

    def _post_assembly_route_node(self, state: PipelineState) -> Command[str]:
        options = self._context().session.options
        if options.run_audit and self.auditor is not None:
            return Command(goto="audit")
        if options.run_refinement and self.refiner is not None:
            return Command(goto="refinement")
        return Command(goto="packaging")

    def _audit_route_node(self, state: PipelineState) -> Command[str]:
        context = self._context()
        if context.session.options.run_refinement and self.refiner is not None:
            return Command(goto="refinement")
        return Command(goto="packaging")

    def _run_pass(self, context: _RunContext, stage: Stage, artifact_pass: ArtifactPass, prior_report: dict[str, Any]) -> None:
        assert context.artifact is not None
        self._enter_stage(context, stage)
        outcome = artifact_pass(context.artifact.text, prior_report)
        if outcome.text != context.artifact.text:
            context.artifact = context.artifact.model_copy(update={"text": outcome.text, "size": count_words(outcome.text)})
        context.reports[stage.value] = outcome.report
        path = self.store.write_json(context.session.session_id, f"{stage.value}_report.json", outcome.report)
        context.artifact_paths[f"{stage.value}_report"] = str(path)
        self._complete_stage(context, stage, needs_followup=outcome.needs_followup)

    def _audit_node(self, state: PipelineState) -> dict[str, Any]:
        context = self._context()
        self._run_pass(context, Stage.AUDIT, self.auditor, {})
        return {"stages_completed": [stage.value for stage in context.stages_completed]}

    def _refinement_node(self, state: PipelineState) -> dict[str, Any]:
        context = self._context()
        self._run_pass(context, Stage.REFINEMENT, self.refiner, context.reports.get(Stage.AUDIT.value, {}))
        return {"stages_completed": [stage.value for stage in context.stages_completed]}

    def _packaging_node(self, state: PipelineState) -> dict[str, Any]:
        context = self._context()
        session_id = context.session.session_id
        assert context.artifact is not None
        self._enter_stage(context, Stage.PACKAGING)
        context.artifact_paths["final_artifact"] = str(
            self.store.write_artifact(session_id, FINAL_ARTIFACT, context.artifact.text)
        )
        context.artifact_paths["canonical_state"] = str(self.store.write_state(context.canon.state))
        context.artifact_paths["manifest"] = str(self.store.manifest_path(session_id))
        if self.packager is not None:
            context.artifact_paths.update(
                self.packager.package(session_id, context.artifact, context.canon.snapshot(), self.store.session_dir(session_id))
            )
        self._complete_stage(context, Stage.PACKAGING, artifacts=sorted(context.artifact_paths))
        return {"stages_completed": [stage.value for stage in context.stages_completed]}

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _complete(self, context: _RunContext) -> SessionResult:
        session = context.session
        session.advance(Stage.COMPLETE)
        self.registry.save(session)
        context.log.info("Session complete: %s increments, %s units", len(context.increments), context.produced_size)
        self.channel.emit(
            EventType.COMPLETE,
            session.session_id,
            Stage.COMPLETE,
            increments=len(context.increments),
            total_size=context.produced_size,
            artifacts=dict(context.artifact_paths),
        )
        return SessionResult(
            session_id=session.session_id,
            success=True,
            stage=Stage.COMPLETE,
            increments_completed=len(context.increments),
            total_size=context.produced_size,
            artifact=context.artifact,
            artifact_paths=dict(context.artifact_paths),
            gate_results=list(context.gate_results),
        )

    def _fail(self, context: _RunContext, exc: BaseException) -> SessionResult:
        session = context.session
        session_id = session.session_id
        failed_stage = session.stage if session.stage not in TERMINAL_STAGES else Stage.FAILED
        kind = exc.kind if isinstance(exc, PipelineError) else "infrastructure"
        if isinstance(exc, PipelineError):
            context.log.error("Session failed in %s (%s): %s", failed_stage.value, kind, exc)
        else:
            context.log.exception("Session failed in %s with unexpected error", failed_stage.value, exc_info=exc)

        session.failure = SessionFailure(
            stage=failed_stage,
            kind=kind,
            error_type=type(exc).__name__,
            message=str(exc),
        )
        session.cancelled = isinstance(exc, SessionCancelled)
        session.advance(Stage.FAILED)

        persisted = self.store.load_all(session_id)
        partial_artifacts = self._preserve_partial_work(context, persisted)
        report = ErrorReport(
            session_id=session_id,
            failed_stage=failed_stage,
            kind=kind,
            error_type=type(exc).__name__,
            message=str(exc),
            increments_completed=len(persisted),
            total_size=sum(increment.size for increment in persisted),
            stages_completed=list(context.stages_completed),
            partial_artifacts=partial_artifacts,
            gate_result=exc.result if isinstance(exc, GateFailure) else None,
        )
        try:
            partial_artifacts["error_report"] = str(self.store.write_error_report(report))
            self.registry.save(session)
        except PipelineError:
            context.log.exception("Could not persist failure records for %s", session_id)

        self.channel.emit(
            EventType.ERROR,
            session_id,
            failed_stage,
            kind=kind,
            error_type=report.error_type,
            message=report.message,
            increments_completed=report.increments_completed,
            total_size=report.total_size,
            cancelled=session.cancelled,
        )
        return SessionResult(
            session_id=session_id,
            success=False,
            stage=Stage.FAILED,
            increments_completed=report.increments_completed,
            total_size=report.total_size,
            artifact=context.artifact,
            artifact_paths=dict(partial_artifacts),
            gate_results=list(context.gate_results),
            error_report=report,
        )

    def _preserve_partial_work(self, context: _RunContext, persisted: list[Increment]) -> dict[str, str]:
        """Leave state, manifest and a recovered draft loadable; return pointers to them."""
        session_id = context.session.session_id
        pointers: dict[str, str] = {"increments_dir": str(self.store.increments_dir(session_id))}
        try:
            pointers["canonical_state"] = str(self.store.write_state(context.canon.state))
            entries = [
                ManifestEntry(
                    number=increment.sequence_number,
                    filename=increment.filename,
                    size=increment.size,
                    saved_at=increment.saved_at,
                )
                for increment in persisted
            ]
            pointers["manifest"] = str(self.store.rewrite_manifest(session_id, entries, context.canon.summary()))
            if persisted:
                recovered = self.assembler.recover(persisted)
                pointers["partial_artifact"] = str(self.store.write_artifact(session_id, PARTIAL_ARTIFACT, recovered.text))
        except PipelineError:
            context.log.exception("Could not fully preserve partial work for %s", session_id)
        pointers["debug_log"] = str(self.store.session_dir(session_id) / "debug_log.jsonl")
        return pointers
