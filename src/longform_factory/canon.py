from __future__ import annotations

import hashlib
import logging
from typing import Any

import rfc8785

from .errors import InvariantViolation
from .models import (
    CanonicalState,
    DeltaLogEntry,
    GenerationParameters,
    RuleSlot,
    Scalar,
    StateSummary,
    TimelineCommitment,
    ViolationRecord,
    utc_now,
)
from .rules import INITIAL_SAFETY_FLAGS, build_rule_slots
from .utils import normalize_identifier

logger = logging.getLogger(__name__)

CONTAMINATION_COUNTER = "contamination_level"

# Excluded from fingerprints so that replaying the same deltas yields the same digest.
_VOLATILE_KEYS = frozenset({"created_at", "updated_at", "recorded_at", "delta_log"})


def _strip_volatile(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _strip_volatile(item) for key, item in value.items() if key not in _VOLATILE_KEYS}
    if isinstance(value, list):
        return [_strip_volatile(item) for item in value]
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def assert_monotonic(before: CanonicalState, after: CanonicalState) -> list[str]:
    """Return a description of every monotonic invariant *after* breaks relative to *before*.

    An empty list means the transition is legal.
    """
    regressions: list[str] = []

    after_rules = {rule.rule_id: rule for rule in after.rules}
    for rule in before.rules:
        later = after_rules.get(rule.rule_id)
        if later is None:
            regressions.append(f"rule {rule.rule_id} disappeared")
            continue
        if later.violation_count < rule.violation_count:
            regressions.append(
                f"rule {rule.rule_id} violation_count decreased {rule.violation_count} -> {later.violation_count}"
            )
        if rule.violated and not later.violated:
            regressions.append(f"rule {rule.rule_id} violated flag reset")

    for name, value in before.irreversible.counters.items():
        later_value = after.irreversible.counters.get(name)
        if later_value is None or later_value < value:
            regressions.append(f"counter {name} decreased {value} -> {later_value}")

    for name, value in before.capabilities.items():
        if name not in after.capabilities:
            if value:
                regressions.append(f"capability {name} revoked")
            continue
        later_value = after.capabilities[name]
        if value and not later_value:
            regressions.append(f"capability {name} revoked ({value!r} -> {later_value!r})")
        elif _is_number(value) and _is_number(later_value) and later_value < value:
            regressions.append(f"capability {name} decreased {value} -> {later_value}")

    for name, value in before.irreversible.safety_flags.items():
        later_value = after.irreversible.safety_flags.get(name, value)
        if not value and later_value:
            regressions.append(f"safety flag {name} restored to True")

    for name, value in before.irreversible.markers.items():
        if value and not after.irreversible.markers.get(name, False):
            regressions.append(f"marker {name} cleared")

    if len(after.irreversible.violations) < len(before.irreversible.violations):
        regressions.append("violations log shrank")

    before_commitments = [item.text for item in before.timeline_commitments]
    after_commitments = [item.text for item in after.timeline_commitments]
    if after_commitments[: len(before_commitments)] != before_commitments:
        regressions.append("timeline commitments were removed or reordered")

    missing_applied = set(before.applied_increments) - set(after.applied_increments)
    if missing_applied:
        regressions.append(f"applied increments forgotten: {sorted(missing_applied)}")

    return regressions


class CanonicalStateStore:
    """Owner of one session's canonical state.

    All writes go through the named mutators below; each refuses (with
    ``InvariantViolation``) any change that would move a monotonic field
    backwards.
    """

    def __init__(self, state: CanonicalState) -> None:
        self._state = state

    @classmethod
    def initialize(
        cls,
        session_id: str,
        parameters: GenerationParameters,
        *,
        default_rule_count: int = 7,
    ) -> "CanonicalStateStore":
        state = CanonicalState(
            session_id=session_id,
            rules=build_rule_slots(parameters, default_rule_count=default_rule_count),
        )
        for flag in INITIAL_SAFETY_FLAGS:
            state.irreversible.safety_flags[flag] = True
        if parameters.setting:
            state.world_facts["setting"] = parameters.setting
        if parameters.protagonist:
            state.world_facts["protagonist"] = parameters.protagonist
        return cls(state)

    @classmethod
    def from_state(cls, state: CanonicalState) -> "CanonicalStateStore":
        return cls(state.model_copy(deep=True))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def state(self) -> CanonicalState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._state.session_id

    def snapshot(self) -> CanonicalState:
        return self._state.model_copy(deep=True)

    def fingerprint(self) -> str:
        """SHA-256 of the RFC 8785 canonical JSON of the state, ignoring timestamps and the delta log."""
        payload = _strip_volatile(self._state.model_dump(mode="json"))
        return hashlib.sha256(rfc8785.dumps(payload)).hexdigest()

    def _slot(self, rule_id: str) -> RuleSlot | None:
        wanted = normalize_identifier(rule_id)
        for rule in self._state.rules:
            if rule.rule_id == wanted:
                return rule
        return None

    def get_rule(self, rule_id: str) -> RuleSlot | None:
        rule = self._slot(rule_id)
        return rule.model_copy(deep=True) if rule is not None else None

    def active_rules(self) -> list[RuleSlot]:
        return [rule.model_copy(deep=True) for rule in self._state.rules if rule.active]

    def violated_rules(self) -> list[RuleSlot]:
        return [rule.model_copy(deep=True) for rule in self._state.rules if rule.violated]

    def counter(self, name: str) -> int:
        return self._state.irreversible.counters.get(name, 0)

    def is_applied(self, sequence_number: int) -> bool:
        return sequence_number in self._state.applied_increments

    def summary(self) -> StateSummary:
        return StateSummary(
            rules_active=sum(1 for rule in self._state.rules if rule.active),
            rules_violated=sum(1 for rule in self._state.rules if rule.violated),
            capabilities=sum(1 for value in self._state.capabilities.values() if value),
            contamination_level=self.counter(CONTAMINATION_COUNTER),
        )

    def render_constraints(self) -> str:
        """Text block describing the current state, injected into generation prompts."""
        lines: list[str] = []
        active = [rule for rule in self._state.rules if rule.active and rule.text]
        if active:
            lines.append("ESTABLISHED RULES:")
            for rule in active:
                status = "VIOLATED" if rule.violated else "intact"
                lines.append(
                    f"- [{rule.rule_id}] {rule.text} "
                    f"({status}, {rule.violation_count}/{rule.violation_threshold} violations)"
                )

        acquired = {name: value for name, value in self._state.capabilities.items() if value}
        if acquired:
            lines.append("ENTITY CAPABILITIES (cannot be lost):")
            lines.extend(f"- {name}: {value}" for name, value in sorted(acquired.items()))

        fallen = sorted(name for name, value in self._state.irreversible.safety_flags.items() if not value)
        markers = sorted(name for name, value in self._state.irreversible.markers.items() if value)
        counters = {name: value for name, value in self._state.irreversible.counters.items() if value}
        if fallen or markers or counters:
            lines.append("IRREVERSIBLE CONDITIONS (must not be undone):")
            lines.extend(f"- {name} is no longer true" for name in fallen)
            lines.extend(f"- {name} has happened" for name in markers)
            lines.extend(f"- {name} = {value}" for name, value in sorted(counters.items()))

        if self._state.timeline_commitments:
            lines.append("TIMELINE COMMITMENTS (already asserted):")
            lines.extend(f"- {item.text}" for item in self._state.timeline_commitments)

        if self._state.world_facts:
            lines.append("WORLD FACTS:")
            lines.extend(f"- {key}: {value}" for key, value in sorted(self._state.world_facts.items()))

        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self._state.updated_at = utc_now()

    def record_violation(self, rule_id: str, increment: int | None) -> RuleSlot:
        rule = self._slot(rule_id)
        if rule is None:
            raise InvariantViolation(f"Unknown rule slot {rule_id}", change={"rule_id": rule_id}, reason="unknown_slot")
        if rule.at_threshold:
            raise InvariantViolation(
                f"Rule {rule.rule_id} already at threshold {rule.violation_threshold}",
                change={"rule_id": rule.rule_id},
                reason="already_at_threshold",
            )
        rule.violation_count += 1
        rule.violated = True
        self._state.irreversible.violations.append(
            ViolationRecord(rule_id=rule.rule_id, increment=increment, violation_number=rule.violation_count)
        )
        self._touch()
        return rule.model_copy(deep=True)

    def introduce_rule(self, text: str, increment: int | None) -> RuleSlot:
        cleaned = text.strip()
        if not cleaned:
            raise InvariantViolation("Rule text is empty", change={"text": text}, reason="empty_rule")
        for rule in self._state.rules:
            if rule.text and rule.text.strip().lower() == cleaned.lower():
                raise InvariantViolation(
                    f"Rule already established as {rule.rule_id}",
                    change={"text": cleaned},
                    reason="duplicate_rule",
                )
        for rule in self._state.rules:
            if not rule.active and not rule.text:
                rule.text = cleaned
                rule.active = True
                rule.established_at = increment
                self._touch()
                return rule.model_copy(deep=True)
        raise InvariantViolation("No empty rule slot available", change={"text": cleaned}, reason="no_empty_slot")

    def activate_rule(self, rule_id: str, increment: int | None) -> bool:
        rule = self._slot(rule_id)
        if rule is None:
            raise InvariantViolation(f"Unknown rule slot {rule_id}", change={"rule_id": rule_id}, reason="unknown_slot")
        if rule.active:
            return False
        rule.active = True
        if rule.established_at is None:
            rule.established_at = increment
        self._touch()
        return True

    def acquire_capability(self, name: str, value: Scalar) -> bool:
        """Set a capability; returns False when the value is unchanged."""
        key = normalize_identifier(name)
        current = self._state.capabilities.get(key)
        if current == value and type(current) is type(value):
            return False
        if current is not None:
            if current and not value:
                raise InvariantViolation(
                    f"Capability {key} cannot be revoked",
                    change={"capability": key, "from": current, "to": value},
                )
            if _is_number(current) and _is_number(value) and value < current:
                raise InvariantViolation(
                    f"Capability {key} cannot decrease",
                    change={"capability": key, "from": current, "to": value},
                )
        elif not value:
            # Nothing to acquire.
            return False
        self._state.capabilities[key] = value
        self._touch()
        return True

    def raise_counter(self, name: str, amount: int = 1) -> int:
        if amount < 0:
            raise InvariantViolation(
                f"Counter {name} cannot decrease",
                change={"counter": name, "amount": amount},
            )
        counters = self._state.irreversible.counters
        counters[name] = counters.get(name, 0) + amount
        if amount:
            self._touch()
        return counters[name]

    def lower_safety_flag(self, flag: str) -> bool:
        key = normalize_identifier(flag)
        if self._state.irreversible.markers.get(key):
            raise InvariantViolation(
                f"Flag {key} is a marker and cannot be lowered",
                change={"flag": key, "value": False},
            )
        if self._state.irreversible.safety_flags.get(key) is False:
            return False
        self._state.irreversible.safety_flags[key] = False
        self._touch()
        return True

    def set_boolean_flag(self, flag: str, value: bool) -> bool:
        """Set an irreversible boolean.

        Safety flags may only fall; markers may only rise. A flag seen for the
        first time is a safety flag when it arrives False and a marker when it
        arrives True.
        """
        key = normalize_identifier(flag)
        flags = self._state.irreversible
        if key in flags.safety_flags:
            if value:
                if not flags.safety_flags[key]:
                    raise InvariantViolation(
                        f"Safety flag {key} cannot be restored",
                        change={"flag": key, "value": value},
                    )
                return False
            return self.lower_safety_flag(key)
        if key in flags.markers:
            if not value and flags.markers[key]:
                raise InvariantViolation(
                    f"Marker {key} cannot be cleared",
                    change={"flag": key, "value": value},
                )
            if flags.markers[key] == value:
                return False
            flags.markers[key] = value
            self._touch()
            return True
        if value:
            flags.markers[key] = True
        else:
            flags.safety_flags[key] = False
        self._touch()
        return True

    def set_world_fact(self, key: str, value: Any) -> bool:
        if self._state.world_facts.get(key) == value and key in self._state.world_facts:
            return False
        self._state.world_facts[key] = value
        self._touch()
        return True

    def append_commitment(self, text: str, increment: int | None) -> TimelineCommitment:
        cleaned = text.strip()
        if not cleaned:
            raise InvariantViolation("Timeline commitment is empty", change={"text": text}, reason="empty_commitment")
        lowered = cleaned.lower()
        if any(item.text.lower() == lowered for item in self._state.timeline_commitments):
            raise InvariantViolation(
                "Timeline commitment already recorded",
                change={"text": cleaned},
                reason="duplicate_commitment",
            )
        commitment = TimelineCommitment(text=cleaned, increment=increment)
        self._state.timeline_commitments.append(commitment)
        self._touch()
        return commitment

    def mark_increment_applied(self, sequence_number: int) -> None:
        if sequence_number in self._state.applied_increments:
            raise InvariantViolation(
                f"Increment {sequence_number} delta already applied",
                change={"sequence_number": sequence_number},
                reason="already_applied",
            )
        self._state.applied_increments.append(sequence_number)
        self._state.applied_increments.sort()
        self._touch()

    def log_delta(self, increment: int | None, changes: list[str]) -> None:
        self._state.delta_log.append(DeltaLogEntry(increment=increment, changes=changes))
        self._touch()
