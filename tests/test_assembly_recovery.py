import pytest

from longform_factory.assembly import RECOVERY_SEPARATOR, SECTION_SEPARATOR, Assembler
from longform_factory.canon import CanonicalStateStore
from longform_factory.delta import DeltaExtractor
from longform_factory.models import Increment
from longform_factory.recovery import RecoveryPlanner
from longform_factory.state_store import IncrementStore
from longform_factory.updater import StateUpdater

from conftest import ScriptedExtractionOracle, make_parameters


SESSION = "LF-recovery"


def _increment(number: int, text: str) -> Increment:
    return Increment(session_id=SESSION, sequence_number=number, text=text, size=len(text.split()))


def test_assemble_orders_and_joins_with_separator() -> None:
    artifact = Assembler().assemble([_increment(2, "second part"), _increment(1, "first part")])
    assert artifact.text == f"first part{SECTION_SEPARATOR}second part"
    assert artifact.size == 4
    assert artifact.increment_count == 2
    assert artifact.partial is False


def test_assemble_rejects_gaps_and_empty_input() -> None:
    with pytest.raises(ValueError):
        Assembler().assemble([])
    with pytest.raises(ValueError):
        Assembler().assemble([_increment(1, "a"), _increment(3, "c")])


def test_recover_marks_artifact_partial() -> None:
    artifact = Assembler().recover([_increment(1, "only survivor")])
    assert artifact.partial is True
    assert artifact.text == "only survivor"
    assert RECOVERY_SEPARATOR in Assembler().recover([_increment(1, "a"), _increment(2, "b")]).text


def _seed(store: IncrementStore, count: int) -> CanonicalStateStore:
    for number in range(1, count + 1):
        store.persist(SESSION, number, f"increment {number} text", 3)
    store.rewrite_manifest(SESSION, store.manifest_entries_from_disk(SESSION))
    canon = CanonicalStateStore.initialize(SESSION, make_parameters())
    canon.mark_increment_applied(1)
    store.write_state(canon.state)
    return canon


def test_plan_reports_unapplied_increments(store: IncrementStore) -> None:
    _seed(store, 3)
    plan = RecoveryPlanner(store).plan(SESSION)
    assert [increment.sequence_number for increment in plan.increments] == [1, 2, 3]
    assert plan.size_achieved == 9
    assert plan.unapplied == [2, 3]
    assert plan.manifest_consistent is True
    assert plan.next_sequence_number == 4


def test_plan_flags_stale_manifest_and_missing_state(store: IncrementStore) -> None:
    _seed(store, 2)
    store.persist(SESSION, 3, "written but never indexed", 5)
    store.state_path(SESSION).unlink()
    plan = RecoveryPlanner(store).plan(SESSION)
    assert plan.manifest_consistent is False
    assert plan.state is None
    assert plan.unapplied == [1, 2, 3]


def test_reconcile_is_idempotent(store: IncrementStore) -> None:
    canon = _seed(store, 3)
    updater = StateUpdater(canon)
    extractor = DeltaExtractor(
        ScriptedExtractionOracle([{"timelineCommitments": ["Docked at dawn"]}, {"rulesViolated": ["rule_2"]}])
    )
    increments = store.load_all(SESSION)

    first = RecoveryPlanner.reconcile(extractor, updater, increments)
    assert [result.sequence_number for result in first] == [2, 3]
    fingerprint = canon.fingerprint()

    second = RecoveryPlanner.reconcile(extractor, updater, increments)
    assert second == []
    assert canon.fingerprint() == fingerprint
    assert canon.state.applied_increments == [1, 2, 3]


def test_reconcile_leaves_increment_unapplied_when_extraction_fails_again(store: IncrementStore) -> None:
    canon = _seed(store, 2)
    extractor = DeltaExtractor(ScriptedExtractionOracle([TimeoutError("still down")]))
    results = RecoveryPlanner.reconcile(extractor, StateUpdater(canon), store.load_all(SESSION))
    assert results == []
    assert canon.is_applied(2) is False
