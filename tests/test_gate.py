import pytest

from longform_factory import gate
from longform_factory.canon import CanonicalStateStore
from longform_factory.gate import GateContract, GateValidator, render_report
from longform_factory.models import CheckStatus, GateStatus, Recommendation

from conftest import make_parameters


def _words(count: int, filler: str = "mist") -> str:
    return " ".join([filler] * count)


def _setup(**overrides: object):
    parameters = make_parameters(**overrides)
    store = CanonicalStateStore.initialize("LF-gate", parameters, default_rule_count=4)
    contract = GateContract.from_parameters(parameters, default_rule_count=4)
    return store, contract


def _applied(store: CanonicalStateStore, sequence_number: int):
    store.mark_increment_applied(sequence_number)
    return store.snapshot()


def test_clean_increment_passes() -> None:
    store, contract = _setup()
    before = store.snapshot()
    after = _applied(store, 1)
    result = GateValidator().evaluate(contract, before, after, _words(2_000), 1, False, 2_000)
    assert result.status == GateStatus.PASS
    assert result.recommendation == Recommendation.PROCEED
    assert list(result.checks) == list(gate.CHECK_ORDER)


def test_decreasing_counter_is_critical_stop() -> None:
    store, contract = _setup()
    store.raise_counter("contamination_level", 2)
    before = store.snapshot()
    after = _applied(store, 1)
    after.irreversible.counters["contamination_level"] = 1
    result = GateValidator().evaluate(contract, before, after, _words(2_000), 1, False, 2_000)
    assert result.status == GateStatus.FAIL
    assert result.recommendation == Recommendation.STOP
    assert [finding.check for finding in result.critical_failures] == ["invariant_monotonicity"]


def test_ending_language_fails_only_non_final_increments() -> None:
    store, contract = _setup()
    before = store.snapshot()
    after = _applied(store, 2)
    text = _words(1_990) + " and that was the last of it. The End."
    early = GateValidator().evaluate(contract, before, after, text, 2, False, 2_000)
    assert early.recommendation == Recommendation.STOP
    assert early.checks["premature_termination"].status == CheckStatus.FAIL

    final = GateValidator().evaluate(contract, before, after, text, 2, True, 2_000)
    assert final.checks["premature_termination"].status == CheckStatus.PASS


def test_size_drift_is_only_a_warning() -> None:
    store, contract = _setup()
    before = store.snapshot()
    after = _applied(store, 1)
    result = GateValidator().evaluate(contract, before, after, _words(400), 1, False, 2_000)
    assert result.status == GateStatus.PASS_WITH_WARNINGS
    assert result.recommendation == Recommendation.PROCEED_WITH_CAUTION
    assert [finding.check for finding in result.warnings] == ["size_conformance"]


def test_scope_containment_counts_established_rules() -> None:
    store, contract = _setup(contract_rule_count=2)
    before = store.snapshot()
    store.introduce_rule("A third rule", 1)
    after = _applied(store, 1)
    result = GateValidator().evaluate(contract, before, after, _words(2_000), 1, False, 2_000)
    assert result.checks["scope_containment"].status == CheckStatus.FAIL
    assert result.recommendation == Recommendation.STOP


def test_identity_drift_warns_from_third_increment() -> None:
    store, contract = _setup(setting_keywords=["ferry", "deck"])
    before = store.snapshot()
    after = _applied(store, 3)
    result = GateValidator().evaluate(contract, before, after, _words(2_000), 3, False, 2_000)
    check = result.checks["identity_preservation"]
    assert check.status == CheckStatus.WARN
    assert "protagonist_name" in check.reason
    assert "setting_identity" in check.reason

    early = GateValidator().evaluate(contract, before, after, _words(2_000), 2, False, 2_000)
    assert early.checks["identity_preservation"].status == CheckStatus.PASS


def test_unapplied_increment_warns_state_validity() -> None:
    store, contract = _setup()
    before = store.snapshot()
    result = GateValidator().evaluate(contract, before, store.snapshot(), _words(2_000), 1, False, 2_000)
    assert result.checks["state_validity"].status == CheckStatus.WARN
    assert result.status == GateStatus.PASS_WITH_WARNINGS


def test_crashing_check_fails_closed(monkeypatch: pytest.MonkeyPatch) -> None:
    def explode(gate_input: object) -> None:
        raise RuntimeError("check bug")

    monkeypatch.setitem(gate._CHECKS, "state_validity", explode)
    store, contract = _setup()
    before = store.snapshot()
    after = _applied(store, 1)
    result = GateValidator().evaluate(contract, before, after, _words(2_000), 1, False, 2_000)
    assert result.recommendation == Recommendation.STOP
    assert result.checks["state_validity"].reason.startswith("Check raised RuntimeError")


def test_validator_does_not_mutate_inputs() -> None:
    store, contract = _setup()
    before = store.snapshot()
    after = _applied(store, 1)
    fingerprint_before = before.model_dump_json()
    fingerprint_after = after.model_dump_json()
    GateValidator().evaluate(contract, before, after, _words(2_000), 1, False, 2_000)
    assert before.model_dump_json() == fingerprint_before
    assert after.model_dump_json() == fingerprint_after


def test_render_report_lists_failures_and_recommendation() -> None:
    store, contract = _setup()
    before = store.snapshot()
    after = _applied(store, 2)
    result = GateValidator().evaluate(contract, before, after, _words(100) + " the end", 2, False, 2_000)
    report = render_report(result)
    assert report.startswith("# Gate Audit: Increment 2")
    assert "## Critical Failures" in report
    assert "- **premature_termination**" in report
    assert report.rstrip().endswith("STOP")
