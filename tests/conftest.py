from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from longform_factory.controller import StageController
from longform_factory.delta import DeltaExtractor
from longform_factory.events import EventChannel
from longform_factory.gate import GateValidator
from longform_factory.generator import IncrementGenerator
from longform_factory.models import GenerationParameters, GenerationRequest, GenerationResponse, RuleSpec
from longform_factory.sessions import SessionRegistry
from longform_factory.settings import RuntimeSettings
from longform_factory.state_store import IncrementStore


class ProseOracle:
    """Generation oracle returning exactly ``target_size`` words per call."""

    def __init__(self, *, fail_on: set[int] | None = None, hooks: dict[int, Callable[[], None]] | None = None) -> None:
        self.calls: list[GenerationRequest] = []
        self.fail_on = fail_on or set()
        self.hooks = hooks or {}
        self.texts: dict[int, str] = {}

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.calls.append(request)
        call_number = len(self.calls)
        hook = self.hooks.get(call_number)
        if hook is not None:
            hook()
        if call_number in self.fail_on:
            raise TimeoutError(f"oracle timed out on call {call_number}")
        if call_number in self.texts:
            return GenerationResponse(text=self.texts[call_number], output_tokens=10)
        words = " ".join(f"w{call_number}x{index}" for index in range(request.target_size))
        return GenerationResponse(text=words, output_tokens=request.target_size)


class ScriptedExtractionOracle:
    """Extraction oracle replaying canned JSON payloads in call order, then empty deltas."""

    def __init__(self, payloads: list[dict[str, Any] | Exception] | None = None) -> None:
        self.payloads = list(payloads or [])
        self.calls: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        self.calls.append(request)
        if self.payloads:
            payload = self.payloads.pop(0)
        else:
            payload = {}
        if isinstance(payload, Exception):
            raise payload
        return GenerationResponse(text=json.dumps(payload))


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(tmp_path: Path, **overrides: Any) -> RuntimeSettings:
    values: dict[str, Any] = {
        "sessions_root": str(tmp_path / "sessions"),
        "chunk_size": 2_000,
        "retry_backoff_seconds": 0.0,
        "max_generation_retries": 2,
        "heartbeat_interval_seconds": 30.0,
    }
    values.update(overrides)
    return RuntimeSettings(**values)


def make_parameters(**overrides: Any) -> GenerationParameters:
    values: dict[str, Any] = {
        "target_size": 6_000,
        "chunk_size": 2_000,
        "protagonist": "Mara",
        "setting": "a night ferry",
        "rules": [
            RuleSpec(text="Never answer a voice from the lower deck", violation_threshold=1),
            RuleSpec(text="Keep the cabin lamp lit until dawn", violation_threshold=2),
        ],
    }
    values.update(overrides)
    return GenerationParameters(**values)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return make_settings(tmp_path)


@pytest.fixture
def store(settings: RuntimeSettings) -> IncrementStore:
    return IncrementStore(Path(settings.sessions_root))


@pytest.fixture
def registry(settings: RuntimeSettings) -> SessionRegistry:
    return SessionRegistry(Path(settings.sessions_root))


@pytest.fixture
def channel() -> EventChannel:
    return EventChannel()


@pytest.fixture
def build_controller(
    settings: RuntimeSettings,
    store: IncrementStore,
    registry: SessionRegistry,
    channel: EventChannel,
) -> Callable[..., StageController]:
    def _build(
        oracle: ProseOracle,
        extraction_oracle: ScriptedExtractionOracle | None = None,
        *,
        validator: GateValidator | None = None,
        runtime: RuntimeSettings | None = None,
        **kwargs: Any,
    ) -> StageController:
        effective = runtime or settings
        return StageController(
            generator=IncrementGenerator(oracle, effective),
            extractor=DeltaExtractor(extraction_oracle or ScriptedExtractionOracle()),
            store=store,
            registry=registry,
            settings=effective,
            channel=channel,
            validator=validator if validator is not None else GateValidator(),
            **kwargs,
        )

    return _build
