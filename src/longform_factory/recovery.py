from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .delta import DeltaExtractor
from .models import CanonicalState, DeltaSource, Increment, UpdateResult
from .state_store import IncrementStore
from .updater import StateUpdater

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResumePlan:
    session_id: str
    increments: list[Increment] = field(default_factory=list)
    size_achieved: int = 0
    unapplied: list[int] = field(default_factory=list)
    manifest_consistent: bool = False
    state: CanonicalState | None = None

    @property
    def next_sequence_number(self) -> int:
        return len(self.increments) + 1


class RecoveryPlanner:
    """Works out where a session can resume from, using only what is durably on disk."""

    def __init__(self, store: IncrementStore) -> None:
        self.store = store

    def plan(self, session_id: str) -> ResumePlan:
        increments = self.store.load_all(session_id)

        state: CanonicalState | None
        try:
            state = self.store.read_state(session_id)
        except FileNotFoundError:
            state = None
        except ValueError as exc:
            logger.warning("Canonical state for %s is unreadable; it will be rebuilt: %s", session_id, exc)
            state = None

        applied = set(state.applied_increments) if state is not None else set()
        unapplied = [increment.sequence_number for increment in increments if increment.sequence_number not in applied]

        try:
            manifest = self.store.load_manifest(session_id)
            manifest_consistent = [(entry.number, entry.size) for entry in manifest.entries] == [
                (increment.sequence_number, increment.size) for increment in increments
            ]
        except (FileNotFoundError, ValueError) as exc:
            logger.info("Manifest for %s unusable (%s); it will be rebuilt from increments", session_id, exc)
            manifest_consistent = False

        plan = ResumePlan(
            session_id=session_id,
            increments=increments,
            size_achieved=sum(increment.size for increment in increments),
            unapplied=unapplied,
            manifest_consistent=manifest_consistent,
            state=state,
        )
        logger.info(
            "Resume plan for %s: %s increments (%s units), %s unapplied, manifest %s",
            session_id,
            len(increments),
            plan.size_achieved,
            len(unapplied),
            "consistent" if manifest_consistent else "stale",
        )
        return plan

    @staticmethod
    def reconcile(
        extractor: DeltaExtractor,
        updater: StateUpdater,
        increments: list[Increment],
    ) -> list[UpdateResult]:
        """Re-extract and apply deltas for increments whose delta never landed.

        Increments already applied are skipped, so running this twice is a no-op
        the second time. Increments whose extraction fails again stay unapplied.
        """
        results: list[UpdateResult] = []
        for increment in sorted(increments, key=lambda item: item.sequence_number):
            if updater.store.is_applied(increment.sequence_number):
                continue
            delta = extractor.extract(increment.text, updater.store.state, increment.sequence_number)
            if delta.source == DeltaSource.EMPTY:
                logger.warning("Re-extraction for increment %s failed again; leaving it unapplied", increment.sequence_number)
                continue
            results.append(updater.apply(delta))
        return results
