"""Entry point for `python -m longform_factory` and the `longform` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import signal
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError

from longform_factory.controller import SessionResult, StageController
from longform_factory.delta import DeltaExtractor
from longform_factory.events import EventChannel
from longform_factory.gate import GateValidator
from longform_factory.generator import IncrementGenerator
from longform_factory.llm import ChatModelOracle
from longform_factory.models import GenerationParameters, ProgressEvent, SessionOptions
from longform_factory.sessions import SessionRegistry
from longform_factory.settings import RuntimeSettings
from longform_factory.state_store import IncrementStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate long-form text in durable, validated increments")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--sessions-root",
        type=Path,
        default=None,
        help="Directory holding session folders (default: LONGFORM_SESSIONS_ROOT or ./generated)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Start a new session")
    run.add_argument("--params", type=Path, required=True, help="JSON file with generation parameters")
    run.add_argument("--target-size", type=int, default=None, help="Override the target size from the params file")
    run.add_argument("--no-gate", action="store_true", help="Disable per-increment gate validation")

    resume = subparsers.add_parser("resume", help="Resume a failed or interrupted session")
    resume.add_argument("session_id")

    status = subparsers.add_parser("status", help="Print a session record and its manifest summary")
    status.add_argument("session_id")

    subparsers.add_parser("gc", help="Delete terminal sessions older than the retention window")
    return parser.parse_args(argv)


def load_parameters(path: Path, *, target_size: int | None = None) -> GenerationParameters:
    if not path.is_file():
        raise FileNotFoundError(f"Parameters file does not exist: {path}")
    try:
        parameters = GenerationParameters.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise ValueError(f"Parameters file {path} failed validation: {exc}") from exc
    if target_size is not None:
        if target_size < 1:
            raise ValueError(f"--target-size must be >= 1, got: {target_size}")
        parameters = parameters.model_copy(update={"target_size": target_size})
    return parameters


def build_controller(settings: RuntimeSettings, sessions_root: Path, channel: EventChannel) -> StageController:
    """Wire the production collaborators: OpenAI-backed oracles and file-backed stores."""
    generation_oracle = ChatModelOracle(model_name=settings.model_generation)
    extraction_oracle = ChatModelOracle(model_name=settings.model_extraction)
    return StageController(
        generator=IncrementGenerator(generation_oracle, settings),
        extractor=DeltaExtractor(extraction_oracle, timeout_seconds=settings.extraction_timeout_seconds),
        store=IncrementStore(sessions_root),
        registry=SessionRegistry(sessions_root),
        settings=settings,
        channel=channel,
        validator=GateValidator(),
    )


def print_event(event: ProgressEvent) -> None:
    print(event.model_dump_json(), flush=True)


def print_result(result: SessionResult) -> None:
    summary = {
        "session_id": result.session_id,
        "success": result.success,
        "stage": result.stage.value,
        "increments_completed": result.increments_completed,
        "total_size": result.total_size,
        "artifacts": result.artifact_paths,
    }
    if result.error_report is not None:
        summary["error"] = {
            "failed_stage": result.error_report.failed_stage.value,
            "kind": result.error_report.kind,
            "message": result.error_report.message,
        }
    print(json.dumps(summary, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1
    sessions_root = args.sessions_root.resolve() if args.sessions_root is not None else settings.sessions_path()

    if args.command == "status":
        return show_status(sessions_root, args.session_id)
    if args.command == "gc":
        removed = SessionRegistry(sessions_root).collect_garbage(retention=timedelta(hours=settings.retention_hours))
        print(json.dumps({"removed": removed}, indent=2))
        return 0

    channel = EventChannel()
    channel.subscribe(print_event)
    controller = build_controller(settings, sessions_root, channel)
    signal.signal(signal.SIGINT, lambda signum, frame: controller.cancel())

    try:
        if args.command == "run":
            parameters = load_parameters(args.params, target_size=args.target_size)
            # The CLI wires no audit or refinement collaborator.
            options = SessionOptions(run_audit=False, run_refinement=False, gate_enabled=not args.no_gate)
            result = controller.start(parameters, options)
        else:
            result = controller.resume(args.session_id)
    except (OSError, ValueError) as exc:
        logging.error("Unable to start session: %s", exc)
        return 1

    print_result(result)
    return 0 if result.success else 1


def show_status(sessions_root: Path, session_id: str) -> int:
    registry = SessionRegistry(sessions_root)
    store = IncrementStore(sessions_root)
    try:
        session = registry.get(session_id)
    except (OSError, ValueError) as exc:
        logging.error("Unable to read session %s: %s", session_id, exc)
        return 1

    status = json.loads(session.model_dump_json())
    try:
        manifest = store.load_manifest(session_id)
        status["manifest"] = {
            "totalIncrements": manifest.total_increments,
            "totalSize": manifest.total_size,
            "stateSummary": manifest.state_summary.model_dump(by_alias=True),
        }
    except (FileNotFoundError, ValueError) as exc:
        status["manifest"] = {"error": str(exc)}
    report = store.read_error_report(session_id)
    if report is not None:
        status["error_report"] = json.loads(report.model_dump_json())
    print(json.dumps(status, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
