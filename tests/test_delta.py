import pytest

from longform_factory import delta as delta_module
from longform_factory.canon import CanonicalStateStore
from longform_factory.delta import DeltaExtractor, build_extraction_prompt, fallback_parse, parse_delta_response
from longform_factory.models import DeltaSource

from conftest import ScriptedExtractionOracle, make_parameters


def _state():
    return CanonicalStateStore.initialize("LF-delta", make_parameters()).state


def test_parse_valid_json_normalizes_ids() -> None:
    text = 'Here you go: {"rulesViolated": ["Rule_1", "rule_1"], "entityCapabilities": {"Knows Name": true}, "timelineCommitments": ["Docked at midnight"]}'
    delta = parse_delta_response(text, 2)
    assert delta.source == DeltaSource.ORACLE
    assert delta.sequence_number == 2
    assert delta.rules_violated == ["rule_1"]
    assert delta.capabilities == {"knows_name": True}
    assert delta.timeline_commitments == ["Docked at midnight"]


def test_parse_drops_wrongly_typed_members() -> None:
    delta = parse_delta_response('{"rulesViolated": ["rule_2", 7], "entityCapabilities": {"can_see": 3}}', 1)
    assert delta.rules_violated == ["rule_2"]
    assert delta.capabilities == {}


@pytest.mark.parametrize(
    "payload",
    [
        '{"rulesViolated": 5}',
        '{"rulesIntroduced": true}',
        '{"timelineCommitments": {"at": "dawn"}}',
        '{"entityCapabilities": ["knows_name"]}',
        '{"rulesViolated": null, "entityCapabilities": "can_see"}',
    ],
)
def test_parse_ignores_members_that_are_not_arrays_or_objects(payload: str) -> None:
    delta = parse_delta_response(payload, 2)
    assert delta.source == DeltaSource.ORACLE
    assert delta.is_empty


def test_parse_never_splits_a_bare_string_member() -> None:
    delta = parse_delta_response('{"rulesViolated": "rule_1", "timelineCommitments": ["Docked at dawn"]}', 3)
    assert delta.rules_violated == []
    assert delta.timeline_commitments == ["Docked at dawn"]


def test_extractor_returns_empty_delta_when_parsing_blows_up(monkeypatch: pytest.MonkeyPatch) -> None:
    def explode(text: str, sequence_number: int | None):
        raise KeyError("unexpected")

    monkeypatch.setattr(delta_module, "parse_delta_response", explode)
    delta = DeltaExtractor(ScriptedExtractionOracle([{"rulesViolated": ["rule_1"]}])).extract("prose", _state(), 5)
    assert delta.source == DeltaSource.EMPTY
    assert delta.sequence_number == 5

def test_malformed_json_falls_back_to_heuristics() -> None:
    text = "{rulesViolated: [rule_3], the entity can see her now, she must leave before midnight"
    delta = parse_delta_response(text + "}", 4)
    assert delta.source == DeltaSource.HEURISTIC
    assert delta.rules_violated == ["rule_3"]
    assert delta.capabilities == {"can_see": True}
    assert delta.timeline_commitments == ["midnight"]


def test_fallback_ignores_time_markers_without_commitment_context() -> None:
    delta = fallback_parse("midnight", 1)
    assert delta.timeline_commitments == []


def test_response_without_json_is_empty() -> None:
    delta = parse_delta_response("nothing changed", 1)
    assert delta.is_empty
    assert delta.source == DeltaSource.EMPTY


def test_extractor_swallows_oracle_failure() -> None:
    oracle = ScriptedExtractionOracle([TimeoutError("slow")])
    delta = DeltaExtractor(oracle).extract("some prose", _state(), 3)
    assert delta.source == DeltaSource.EMPTY
    assert delta.sequence_number == 3
    assert delta.is_empty


def test_extractor_requests_deterministic_output_with_bounded_prompt() -> None:
    oracle = ScriptedExtractionOracle([{"rulesViolated": ["rule_1"]}])
    delta = DeltaExtractor(oracle, timeout_seconds=12).extract("x" * 5_000, _state(), 1)
    request = oracle.calls[0]
    assert request.temperature == 0.0
    assert request.timeout_seconds == 12
    assert "x" * 3_000 in request.user_instructions
    assert "x" * 3_001 not in request.user_instructions
    assert delta.rules_violated == ["rule_1"]


def test_prompt_lists_active_rules() -> None:
    prompt = build_extraction_prompt("text", _state())
    assert "rule_1: Never answer a voice from the lower deck" in prompt
    assert "rule_3" not in prompt
