from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .canon import CONTAMINATION_COUNTER, CanonicalStateStore
from .errors import InvariantViolation
from .models import ChangeRecord, Delta, RuleSlot, UpdateResult, utc_now
from .rules import EffectKind, resolve_consequence
from .utils import preview

logger = logging.getLogger(__name__)


@dataclass
class UpdateLogEntry:
    sequence_number: int | None
    applied: int
    skipped: int
    errors: int
    timestamp: datetime = field(default_factory=utc_now)


class StateUpdater:
    """Applies extracted deltas to the canonical state store.

    Bookkeeping and monotonic enforcement only: a change the store refuses is
    recorded as skipped with the store's reason and the rest of the delta still
    applies. No plausibility checks happen here.
    """

    def __init__(self, store: CanonicalStateStore) -> None:
        self.store = store
        self.update_log: list[UpdateLogEntry] = []

    def apply(self, delta: Delta) -> UpdateResult:
        sequence_number = delta.sequence_number
        result = UpdateResult(sequence_number=sequence_number)

        if sequence_number is not None and self.store.is_applied(sequence_number):
            result.skipped_changes.append(
                ChangeRecord(change_type="delta", target=f"increment_{sequence_number}", reason="already_applied")
            )
            logger.info("Delta for increment %s already applied; skipping", sequence_number)
            self._log(result)
            return result

        violations = self._apply_violations(delta, result)
        if violations:
            self._activate_dependents(sequence_number, result)
        self._apply_rules_introduced(delta, result)
        self._apply_capabilities(delta, result)
        self._apply_irreversible(delta, result)
        self._apply_world_facts(delta, result)
        self._apply_commitments(delta, result)
        self._escalate(violations, result)

        if sequence_number is not None:
            self.store.mark_increment_applied(sequence_number)
        self.store.log_delta(
            sequence_number,
            [f"{change.change_type}:{change.target}" for change in result.applied_changes],
        )
        self._log(result)
        logger.debug(
            "Applied delta for increment %s: %s applied, %s skipped, %s errors",
            sequence_number,
            len(result.applied_changes),
            len(result.skipped_changes),
            len(result.errors),
        )
        return result

    def summary(self) -> dict[str, Any]:
        last = self.update_log[-1] if self.update_log else None
        return {
            **self.store.summary().model_dump(),
            "update_count": len(self.update_log),
            "last_update": None
            if last is None
            else {
                "sequence_number": last.sequence_number,
                "applied": last.applied,
                "skipped": last.skipped,
                "errors": last.errors,
                "timestamp": last.timestamp.isoformat(),
            },
        }

    def _log(self, result: UpdateResult) -> None:
        self.update_log.append(
            UpdateLogEntry(
                sequence_number=result.sequence_number,
                applied=len(result.applied_changes),
                skipped=len(result.skipped_changes),
                errors=len(result.errors),
            )
        )

    # ------------------------------------------------------------------
    # Change groups, applied in this order
    # ------------------------------------------------------------------

    def _apply_violations(self, delta: Delta, result: UpdateResult) -> int:
        applied = 0
        for rule_id in delta.rules_violated:
            try:
                rule = self.store.record_violation(rule_id, delta.sequence_number)
            except InvariantViolation as exc:
                result.skipped_changes.append(
                    ChangeRecord(change_type="rule_violation", target=rule_id, reason=exc.reason)
                )
                continue
            applied += 1
            result.applied_changes.append(
                ChangeRecord(
                    change_type="rule_violation",
                    target=rule.rule_id,
                    detail={"new_count": rule.violation_count, "threshold": rule.violation_threshold},
                )
            )
            self._apply_consequences(rule, result)
        return applied

    def _apply_consequences(self, rule: RuleSlot, result: UpdateResult) -> None:
        for tag in [*rule.consequences.immediate, *rule.consequences.permanent]:
            effect = resolve_consequence(tag)
            if effect is None:
                result.skipped_changes.append(
                    ChangeRecord(change_type="consequence", target=tag, reason="unknown_consequence")
                )
                continue
            try:
                if effect.kind == EffectKind.CAPABILITY:
                    changed = self.store.acquire_capability(effect.target, effect.value)
                elif effect.kind == EffectKind.SAFETY_FLAG:
                    changed = self.store.lower_safety_flag(effect.target)
                elif effect.kind == EffectKind.COUNTER:
                    self.store.raise_counter(effect.target, int(effect.value))
                    changed = True
                else:
                    changed = self.store.set_world_fact(effect.target, effect.value)
            except InvariantViolation as exc:
                result.skipped_changes.append(ChangeRecord(change_type="consequence", target=tag, reason=exc.reason))
                continue
            record = ChangeRecord(
                change_type="consequence",
                target=tag,
                detail={"rule_id": rule.rule_id, "effect": effect.kind.value, "key": effect.target, "value": effect.value},
            )
            if changed:
                result.applied_changes.append(record)
            else:
                result.skipped_changes.append(record.model_copy(update={"reason": "unchanged"}))

        for tag in rule.consequences.delayed:
            result.skipped_changes.append(
                ChangeRecord(
                    change_type="consequence",
                    target=tag,
                    detail={"rule_id": rule.rule_id},
                    reason="delayed_consequence",
                )
            )

    def _activate_dependents(self, sequence_number: int | None, result: UpdateResult) -> None:
        state = self.store.state
        violated = {rule.rule_id for rule in state.rules if rule.violated}
        for rule in state.rules:
            requires = rule.dependencies.requires
            if rule.active or not requires or not set(requires) <= violated:
                continue
            if self.store.activate_rule(rule.rule_id, sequence_number):
                result.applied_changes.append(
                    ChangeRecord(
                        change_type="rule_activated",
                        target=rule.rule_id,
                        detail={"requires": list(requires)},
                    )
                )

    def _apply_rules_introduced(self, delta: Delta, result: UpdateResult) -> None:
        for text in delta.rules_introduced:
            try:
                rule = self.store.introduce_rule(text, delta.sequence_number)
            except InvariantViolation as exc:
                result.skipped_changes.append(
                    ChangeRecord(change_type="rule_introduced", target=preview(text), reason=exc.reason)
                )
                continue
            result.applied_changes.append(
                ChangeRecord(change_type="rule_introduced", target=rule.rule_id, detail={"text": preview(text)})
            )

    def _apply_capabilities(self, delta: Delta, result: UpdateResult) -> None:
        for name, value in delta.capabilities.items():
            try:
                changed = self.store.acquire_capability(name, value)
            except InvariantViolation as exc:
                result.skipped_changes.append(
                    ChangeRecord(change_type="capability", target=name, detail={"value": value}, reason=exc.reason)
                )
                logger.info("Skipped capability change %s=%r: %s", name, value, exc)
                continue
            record = ChangeRecord(change_type="capability", target=name, detail={"value": value})
            if changed:
                result.applied_changes.append(record)
            else:
                result.skipped_changes.append(record.model_copy(update={"reason": "unchanged"}))

    def _apply_irreversible(self, delta: Delta, result: UpdateResult) -> None:
        for change in delta.irreversible_changes:
            try:
                if isinstance(change.value, bool):
                    changed = self.store.set_boolean_flag(change.flag, change.value)
                else:
                    current = self.store.counter(change.flag)
                    self.store.raise_counter(change.flag, change.value - current)
                    changed = change.value != current
            except InvariantViolation as exc:
                result.skipped_changes.append(
                    ChangeRecord(
                        change_type="irreversible",
                        target=change.flag,
                        detail={"value": change.value},
                        reason=exc.reason,
                    )
                )
                logger.info("Skipped irreversible change %s=%r: %s", change.flag, change.value, exc)
                continue
            record = ChangeRecord(change_type="irreversible", target=change.flag, detail={"value": change.value})
            if changed:
                result.applied_changes.append(record)
            else:
                result.skipped_changes.append(record.model_copy(update={"reason": "unchanged"}))

    def _apply_world_facts(self, delta: Delta, result: UpdateResult) -> None:
        for key, value in delta.world_facts.items():
            try:
                changed = self.store.set_world_fact(key, value)
            except (TypeError, ValueError) as exc:
                result.errors.append(
                    ChangeRecord(change_type="world_fact", target=key, detail={"message": str(exc)})
                )
                continue
            if changed:
                result.applied_changes.append(ChangeRecord(change_type="world_fact", target=key, detail={"value": value}))

    def _apply_commitments(self, delta: Delta, result: UpdateResult) -> None:
        for text in delta.timeline_commitments:
            try:
                self.store.append_commitment(text, delta.sequence_number)
            except InvariantViolation as exc:
                result.skipped_changes.append(
                    ChangeRecord(change_type="timeline_commitment", target=preview(text), reason=exc.reason)
                )
                continue
            result.applied_changes.append(ChangeRecord(change_type="timeline_commitment", target=preview(text)))

    def _escalate(self, violations: int, result: UpdateResult) -> None:
        if violations <= 0:
            return
        previous = self.store.counter(CONTAMINATION_COUNTER)
        level = self.store.raise_counter(CONTAMINATION_COUNTER, violations)
        result.applied_changes.append(
            ChangeRecord(
                change_type="escalation",
                target=CONTAMINATION_COUNTER,
                detail={"previous_level": previous, "new_level": level},
            )
        )
