from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .models import GenerationParameters, RuleConsequences, RuleDependencies, RuleSlot, RuleSpec, RuleType, Scalar
from .utils import normalize_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleTypeDefaults:
    violation_threshold: int
    reversible: bool
    immediate: tuple[str, ...] = ()
    delayed: tuple[str, ...] = ()
    permanent: tuple[str, ...] = ()

    def consequences(self) -> RuleConsequences:
        return RuleConsequences(
            immediate=list(self.immediate),
            delayed=list(self.delayed),
            permanent=list(self.permanent),
        )


RULE_TYPE_DEFAULTS: dict[RuleType, RuleTypeDefaults] = {
    RuleType.BOUNDARY: RuleTypeDefaults(
        violation_threshold=1,
        reversible=False,
        immediate=("protection_void",),
        permanent=("boundary_breached",),
    ),
    RuleType.TEMPORAL: RuleTypeDefaults(
        violation_threshold=3,
        reversible=True,
        immediate=("temporal_slip",),
        delayed=("reality_degradation",),
    ),
    RuleType.BEHAVIORAL: RuleTypeDefaults(
        violation_threshold=2,
        reversible=False,
        immediate=("attention_drawn",),
        delayed=("marked_for_observation",),
    ),
    RuleType.OBJECT_INTERACTION: RuleTypeDefaults(
        violation_threshold=1,
        reversible=False,
        immediate=("object_state_changed",),
        permanent=("interaction_irreversible",),
    ),
    RuleType.PROCEDURAL: RuleTypeDefaults(
        violation_threshold=2,
        reversible=True,
        immediate=("procedure_disrupted",),
        delayed=("system_instability",),
    ),
}


class EffectKind(str, Enum):
    CAPABILITY = "capability"
    SAFETY_FLAG = "safety_flag"
    COUNTER = "counter"
    WORLD_FACT = "world_fact"


@dataclass(frozen=True)
class ConsequenceEffect:
    kind: EffectKind
    target: str
    value: Scalar
    description: str


CONSEQUENCE_CATALOG: dict[str, ConsequenceEffect] = {
    "protection_void": ConsequenceEffect(EffectKind.SAFETY_FLAG, "protected", False, "Protagonist no longer protected by rules"),
    "boundary_breached": ConsequenceEffect(EffectKind.SAFETY_FLAG, "boundary_intact", False, "Physical boundary no longer enforced"),
    "entity_can_reach_vehicle": ConsequenceEffect(EffectKind.CAPABILITY, "can_enter_vehicle", True, "Entity gains access to the vehicle"),
    "entity_can_imitate_narrator": ConsequenceEffect(EffectKind.CAPABILITY, "can_imitate_narrator", True, "Entity can mimic the narrator"),
    "entity_knows_name": ConsequenceEffect(EffectKind.CAPABILITY, "knows_narrator_name", True, "Entity has learned the narrator's identity"),
    "attention_drawn": ConsequenceEffect(EffectKind.CAPABILITY, "aware_of_narrator", True, "Entity is aware of the narrator"),
    "marked_for_collection": ConsequenceEffect(EffectKind.COUNTER, "contamination_level", 1, "Narrator marked for attention"),
    "marked_for_observation": ConsequenceEffect(EffectKind.COUNTER, "contamination_level", 1, "Narrator under observation"),
    "contamination_spread": ConsequenceEffect(EffectKind.COUNTER, "contamination_level", 2, "Contamination spreads to the narrator"),
    "temporal_slip": ConsequenceEffect(EffectKind.WORLD_FACT, "temporal_stability", "unstable", "Time flow becomes unreliable"),
    "reality_degradation": ConsequenceEffect(EffectKind.SAFETY_FLAG, "reality_stable", False, "Reality begins to break down"),
    "procedure_disrupted": ConsequenceEffect(EffectKind.WORLD_FACT, "procedure_intact", False, "Required procedure disrupted"),
    "system_instability": ConsequenceEffect(EffectKind.SAFETY_FLAG, "system_stable", False, "Overall system becomes unstable"),
    "object_state_changed": ConsequenceEffect(EffectKind.WORLD_FACT, "object_pristine", False, "Object state permanently altered"),
    "interaction_irreversible": ConsequenceEffect(EffectKind.SAFETY_FLAG, "can_undo_interaction", False, "Object interaction cannot be undone"),
}

# Safety flags every session starts with; each may only ever fall to False.
INITIAL_SAFETY_FLAGS: tuple[str, ...] = tuple(
    sorted({effect.target for effect in CONSEQUENCE_CATALOG.values() if effect.kind == EffectKind.SAFETY_FLAG})
)


def resolve_consequence(tag: str) -> ConsequenceEffect | None:
    return CONSEQUENCE_CATALOG.get(normalize_identifier(tag))


def slot_id(index: int) -> str:
    return f"rule_{index}"


def empty_slot(rule_id: str) -> RuleSlot:
    return RuleSlot(rule_id=rule_id)


def build_rule(spec: RuleSpec, rule_id: str) -> RuleSlot:
    """Materialize an authored rule into a slot, filling gaps from its type defaults."""
    defaults = RULE_TYPE_DEFAULTS.get(spec.rule_type) if spec.rule_type is not None else None
    if spec.consequences is not None:
        consequences = spec.consequences.model_copy(deep=True)
    elif defaults is not None:
        consequences = defaults.consequences()
    else:
        consequences = RuleConsequences()

    threshold = spec.violation_threshold
    if threshold is None:
        threshold = defaults.violation_threshold if defaults is not None else 1

    has_text = bool(spec.text and spec.text.strip())
    return RuleSlot(
        rule_id=rule_id,
        text=spec.text.strip() if has_text else None,
        rule_type=spec.rule_type,
        active=spec.active and has_text,
        violation_threshold=threshold,
        consequences=consequences,
        dependencies=(spec.dependencies or RuleDependencies()).model_copy(deep=True),
        reversible=defaults.reversible if defaults is not None else False,
        established_at=0 if has_text else None,
    )


def build_rule_slots(parameters: GenerationParameters, *, default_rule_count: int) -> list[RuleSlot]:
    """Create the fixed slot collection ``rule_1..rule_N`` for a session.

    Authored rules occupy the leading slots (keeping an explicit ``rule_id`` when
    one is given); the rest stay empty until a delta introduces a rule.

    Raises:
        ValueError: If authored rule ids collide.
    """
    count = parameters.effective_rule_count(default_rule_count)
    slots: list[RuleSlot] = []
    seen: set[str] = set()
    for index in range(1, count + 1):
        if index <= len(parameters.rules):
            spec = parameters.rules[index - 1]
            rule_id = normalize_identifier(spec.rule_id) if spec.rule_id else slot_id(index)
            slot = build_rule(spec, rule_id)
        else:
            rule_id = slot_id(index)
            slot = empty_slot(rule_id)
        if rule_id in seen:
            raise ValueError(f"Duplicate rule id in session parameters: {rule_id}")
        seen.add(rule_id)
        slots.append(slot)

    _link_dependencies(slots)
    logger.debug("Built %s rule slots (%s authored)", len(slots), len(parameters.rules))
    return slots


def _link_dependencies(slots: list[RuleSlot]) -> None:
    """Mirror ``enables`` edges into the target's ``requires`` and make conflicts symmetric."""
    by_id = {slot.rule_id: slot for slot in slots}
    for slot in slots:
        for target_id in slot.dependencies.enables:
            target = by_id.get(target_id)
            if target is None:
                logger.warning("Rule %s enables unknown rule %s", slot.rule_id, target_id)
                continue
            if slot.rule_id not in target.dependencies.requires:
                target.dependencies.requires.append(slot.rule_id)
        for other_id in slot.dependencies.conflicts:
            other = by_id.get(other_id)
            if other is not None and slot.rule_id not in other.dependencies.conflicts:
                other.dependencies.conflicts.append(slot.rule_id)
