import json
from pathlib import Path

import pytest

from longform_factory import __main__ as cli
from longform_factory import get_version
from longform_factory.models import Stage
from longform_factory.sessions import SessionRegistry
from longform_factory.settings import RuntimeSettings

from conftest import make_parameters


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LONGFORM_CHUNK_SIZE", "1500")
    monkeypatch.setenv("LONGFORM_GATE_ENABLED", "off")
    monkeypatch.setenv("LONGFORM_REEXTRACTION_POLICY", " Always ")
    settings = RuntimeSettings.from_env()
    assert settings.chunk_size == 1_500
    assert settings.gate_enabled is False
    assert settings.reextraction_policy == "always"
    assert settings.stage_timeout_seconds == 7_200.0


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("LONGFORM_CHUNK_SIZE", "10"),
        ("LONGFORM_CHUNK_SIZE", "many"),
        ("LONGFORM_MAX_GENERATION_RETRIES", "0"),
        ("LONGFORM_GATE_ENABLED", "maybe"),
        ("LONGFORM_REEXTRACTION_POLICY", "sometimes"),
        ("LONGFORM_STAGE_TIMEOUT", "0"),
        ("LONGFORM_SIZE_TOLERANCE", "1.0"),
        ("LONGFORM_MODEL_GENERATION", "  "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_stage_budget_must_cover_one_fully_retried_increment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LONGFORM_GENERATION_TIMEOUT", "240")
    monkeypatch.setenv("LONGFORM_MAX_GENERATION_RETRIES", "3")
    monkeypatch.setenv("LONGFORM_STAGE_TIMEOUT", "600")
    with pytest.raises(ValueError, match="LONGFORM_STAGE_TIMEOUT"):
        RuntimeSettings.from_env()

    monkeypatch.setenv("LONGFORM_STAGE_TIMEOUT", "720")
    assert RuntimeSettings.from_env().stage_timeout_seconds == 720.0
    RuntimeSettings().normalized()


def test_sessions_path_resolves_relative_roots(tmp_path: Path) -> None:
    assert RuntimeSettings(sessions_root="out").sessions_path(tmp_path) == tmp_path / "out"
    assert RuntimeSettings(sessions_root=str(tmp_path)).sessions_path() == tmp_path


def test_get_version_returns_string() -> None:
    assert isinstance(get_version(), str)


def test_load_parameters_applies_target_override(tmp_path: Path) -> None:
    params = tmp_path / "params.json"
    params.write_text(make_parameters().model_dump_json(), encoding="utf-8")
    assert cli.load_parameters(params, target_size=900).target_size == 900
    with pytest.raises(FileNotFoundError):
        cli.load_parameters(tmp_path / "missing.json")
    params.write_text('{"target_size": 0}', encoding="utf-8")
    with pytest.raises(ValueError):
        cli.load_parameters(params)


def test_cli_run_without_api_key_fails_recoverably(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("LONGFORM_MAX_GENERATION_RETRIES", "1")
    monkeypatch.setenv("LONGFORM_RETRY_BACKOFF", "0")
    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)
    params = tmp_path / "params.json"
    params.write_text(make_parameters(target_size=500).model_dump_json(), encoding="utf-8")
    sessions_root = tmp_path / "sessions"

    exit_code = cli.main(["--sessions-root", str(sessions_root), "run", "--params", str(params)])
    assert exit_code == 1

    lines = capsys.readouterr().out.splitlines()
    events = [json.loads(line) for line in lines if line.startswith('{"event"')]
    assert events[0]["event"] == "job_created"
    assert events[-1]["event"] == "error"

    sessions = SessionRegistry(sessions_root).list_sessions()
    assert len(sessions) == 1
    assert sessions[0].stage == Stage.FAILED
    assert sessions[0].failure.error_type == "GenerationFailed"
    assert sessions[0].options.run_audit is False
    assert sessions[0].options.run_refinement is False

    assert cli.main(["--sessions-root", str(sessions_root), "status", sessions[0].session_id]) == 0
    status = json.loads(capsys.readouterr().out)
    assert status["stage"] == "failed"
    assert status["manifest"]["totalIncrements"] == 0
    assert status["error_report"]["kind"] == "infrastructure"


@pytest.mark.parametrize("flag", ["--no-audit", "--no-refinement"])
def test_cli_run_has_no_pass_flags_without_collaborators(flag: str) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(["run", "--params", "params.json", flag])
    assert cli.parse_args(["run", "--params", "params.json", "--no-gate"]).no_gate is True


def test_cli_gc_and_unknown_status(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    sessions_root = tmp_path / "sessions"
    assert cli.main(["--sessions-root", str(sessions_root), "gc"]) == 0
    assert json.loads(capsys.readouterr().out) == {"removed": []}
    assert cli.main(["--sessions-root", str(sessions_root), "status", "LF-missing"]) == 1
