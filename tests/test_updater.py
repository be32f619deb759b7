from longform_factory.canon import CanonicalStateStore
from longform_factory.models import (
    Delta,
    DeltaSource,
    GenerationParameters,
    IrreversibleChange,
    RuleDependencies,
    RuleSpec,
    RuleType,
)
from longform_factory.updater import StateUpdater


def _updater(rules: list[RuleSpec], rule_count: int = 4) -> StateUpdater:
    parameters = GenerationParameters(target_size=1_000, rules=rules, rule_count=rule_count)
    return StateUpdater(CanonicalStateStore.initialize("LF-updater", parameters))


def _delta(sequence_number: int, **changes: object) -> Delta:
    return Delta(sequence_number=sequence_number, source=DeltaSource.ORACLE, **changes)


def _reasons(result) -> dict[str, str | None]:
    return {f"{change.change_type}:{change.target}": change.reason for change in result.skipped_changes}


def test_violation_skip_rules() -> None:
    updater = _updater([RuleSpec(text="Stay below deck", violation_threshold=1)])
    first = updater.apply(_delta(1, rules_violated=["rule_1", "rule_9"]))
    assert _reasons(first)["rule_violation:rule_9"] == "unknown_slot"
    assert updater.store.get_rule("rule_1").violated is True

    second = updater.apply(_delta(2, rules_violated=["rule_1"]))
    assert _reasons(second)["rule_violation:rule_1"] == "already_at_threshold"
    assert updater.store.get_rule("rule_1").violation_count == 1


def test_boundary_violation_applies_immediate_and_permanent_consequences_only() -> None:
    updater = _updater([RuleSpec(text="Never open the hatch", rule_type=RuleType.BOUNDARY)])
    result = updater.apply(_delta(1, rules_violated=["rule_1"]))
    flags = updater.store.state.irreversible.safety_flags
    assert flags["protected"] is False
    assert flags["boundary_intact"] is False
    applied = {change.target for change in result.applied_changes if change.change_type == "consequence"}
    assert applied == {"protection_void", "boundary_breached"}


def test_delayed_consequences_are_recorded_not_applied() -> None:
    updater = _updater([RuleSpec(text="Do not wind the clock", rule_type=RuleType.PROCEDURAL)])
    result = updater.apply(_delta(1, rules_violated=["rule_1"]))
    assert _reasons(result)["consequence:system_instability"] == "delayed_consequence"
    assert updater.store.state.irreversible.safety_flags["system_stable"] is True
    assert updater.store.state.world_facts["procedure_intact"] is False


def test_each_applied_violation_escalates_contamination() -> None:
    updater = _updater(
        [
            RuleSpec(text="Rule one", violation_threshold=2),
            RuleSpec(text="Rule two", violation_threshold=2),
        ]
    )
    updater.apply(_delta(1, rules_violated=["rule_1", "rule_2"]))
    assert updater.store.counter("contamination_level") == 2
    updater.apply(_delta(2, rules_violated=["rule_1"]))
    assert updater.store.counter("contamination_level") == 3


def test_dependents_activate_once_requirements_are_violated() -> None:
    updater = _updater(
        [
            RuleSpec(rule_id="rule_1", text="Keep the door shut", dependencies=RuleDependencies(enables=["rule_2"])),
            RuleSpec(rule_id="rule_2", text="Do not answer the knock", active=False),
        ]
    )
    assert updater.store.get_rule("rule_2").active is False
    result = updater.apply(_delta(1, rules_violated=["rule_1"]))
    assert updater.store.get_rule("rule_2").active is True
    assert any(change.change_type == "rule_activated" for change in result.applied_changes)


def test_monotonicity_breaking_changes_are_skipped_and_rest_applies() -> None:
    updater = _updater([])
    updater.apply(
        _delta(
            1,
            capabilities={"can_enter": True},
            irreversible_changes=[IrreversibleChange(flag="contamination_level", value=3)],
        )
    )
    result = updater.apply(
        _delta(
            2,
            capabilities={"can_enter": False, "knows_name": True},
            irreversible_changes=[
                IrreversibleChange(flag="contamination_level", value=1),
                IrreversibleChange(flag="protected", value=False),
            ],
            timeline_commitments=["Arrived at 10pm"],
        )
    )
    state = updater.store.state
    assert state.capabilities == {"can_enter": True, "knows_name": True}
    assert state.irreversible.counters["contamination_level"] == 3
    assert state.irreversible.safety_flags["protected"] is False
    assert [item.text for item in state.timeline_commitments] == ["Arrived at 10pm"]
    assert _reasons(result)["capability:can_enter"] == "monotonicity"
    assert _reasons(result)["irreversible:contamination_level"] == "monotonicity"


def test_rules_introduced_fill_empty_slots() -> None:
    updater = _updater([], rule_count=1)
    result = updater.apply(_delta(1, rules_introduced=["Never whistle on deck", "Count the lifeboats"]))
    assert updater.store.get_rule("rule_1").text == "Never whistle on deck"
    assert _reasons(result)["rule_introduced:Count the lifeboats"] == "no_empty_slot"


def test_reapplying_same_increment_is_a_no_op() -> None:
    updater = _updater([RuleSpec(text="Stay below deck", violation_threshold=3)])
    delta = _delta(1, rules_violated=["rule_1"], timeline_commitments=["Docked at dawn"])
    updater.apply(delta)
    fingerprint = updater.store.fingerprint()

    again = updater.apply(delta)
    assert updater.store.fingerprint() == fingerprint
    assert _reasons(again) == {"delta:increment_1": "already_applied"}
    assert updater.store.state.applied_increments == [1]
    assert updater.summary()["update_count"] == 2
