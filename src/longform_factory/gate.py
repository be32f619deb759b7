from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from .canon import assert_monotonic
from .models import (
    CanonicalState,
    CheckSeverity,
    CheckStatus,
    GateCheck,
    GateFinding,
    GateResult,
    GateStatus,
    GenerationParameters,
    Recommendation,
)
from .utils import count_words, within_band

logger = logging.getLogger(__name__)

_ENDING_PATTERNS = (
    re.compile(r"\bthe end\b", re.IGNORECASE),
    re.compile(r"\bfinally.*over\b", re.IGNORECASE),
    re.compile(r"\band so.*story\b", re.IGNORECASE),
    re.compile(r"\bthat was the last\b", re.IGNORECASE),
)
_FIRST_PERSON_RE = re.compile(r"\b(?:I|me|my|myself)\b", re.IGNORECASE)
_THIRD_PERSON_RE = re.compile(r"\b(?:he|she|they|him|her|them)\b", re.IGNORECASE)

SIZE_BAND_LOW = 0.5
SIZE_BAND_HIGH = 1.5
IDENTITY_CHECK_FROM = 3
FIRST_PERSON_MIN_RATIO = 0.3

CHECK_ORDER = (
    "invariant_monotonicity",
    "scope_containment",
    "premature_termination",
    "size_conformance",
    "identity_preservation",
    "state_validity",
)


@dataclass(frozen=True)
class GateContract:
    """The slice of session parameters the gate checks against."""

    contract_rule_count: int
    protagonist: str | None = None
    setting: str | None = None
    setting_keywords: tuple[str, ...] = ()
    point_of_view: str | None = None

    @classmethod
    def from_parameters(cls, parameters: GenerationParameters, *, default_rule_count: int) -> "GateContract":
        return cls(
            contract_rule_count=parameters.effective_contract_rule_count(default_rule_count),
            protagonist=parameters.protagonist,
            setting=parameters.setting,
            setting_keywords=tuple(parameters.setting_keywords),
            point_of_view=parameters.point_of_view,
        )


@dataclass(frozen=True)
class _GateInput:
    contract: GateContract
    state_before: CanonicalState
    state_after: CanonicalState
    text: str
    sequence_number: int
    is_final: bool
    target_size: int


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_invariant_monotonicity(gate_input: _GateInput) -> GateCheck:
    regressions = assert_monotonic(gate_input.state_before, gate_input.state_after)
    if regressions:
        return GateCheck(
            name="invariant_monotonicity",
            status=CheckStatus.FAIL,
            severity=CheckSeverity.CRITICAL,
            reason="Irreversible state moved backwards",
            evidence=regressions,
        )
    return GateCheck(name="invariant_monotonicity", evidence=["All monotonic fields held or advanced"])


def check_scope_containment(gate_input: _GateInput) -> GateCheck:
    established = [rule for rule in gate_input.state_after.rules if rule.active or rule.text]
    limit = gate_input.contract.contract_rule_count
    evidence = [f"Contract rules: {limit}, established rules: {len(established)}"]
    if len(established) > limit:
        return GateCheck(
            name="scope_containment",
            status=CheckStatus.FAIL,
            severity=CheckSeverity.CRITICAL,
            reason="More rules established than the contract allows",
            evidence=evidence,
        )
    return GateCheck(name="scope_containment", evidence=evidence)


def check_premature_termination(gate_input: _GateInput) -> GateCheck:
    if gate_input.is_final:
        return GateCheck(name="premature_termination", evidence=["Final increment; ending allowed"])
    hits: list[str] = []
    for pattern in _ENDING_PATTERNS:
        match = pattern.search(gate_input.text)
        if match is not None:
            hits.append(match.group(0))
    if hits:
        return GateCheck(
            name="premature_termination",
            status=CheckStatus.FAIL,
            severity=CheckSeverity.CRITICAL,
            reason="Ending language detected in a non-final increment",
            evidence=hits,
        )
    return GateCheck(name="premature_termination", evidence=["No premature ending"])


def check_size_conformance(gate_input: _GateInput) -> GateCheck:
    size = count_words(gate_input.text)
    target = gate_input.target_size
    evidence = [
        f"Size: {size}, target: {target} "
        f"(band {int(target * SIZE_BAND_LOW)}-{int(target * SIZE_BAND_HIGH)})"
    ]
    if within_band(size, target, low=SIZE_BAND_LOW, high=SIZE_BAND_HIGH):
        return GateCheck(name="size_conformance", severity=CheckSeverity.WARNING, evidence=evidence)
    return GateCheck(
        name="size_conformance",
        status=CheckStatus.WARN,
        severity=CheckSeverity.WARNING,
        reason="Increment size outside the tolerance band",
        evidence=evidence,
    )


def check_identity_preservation(gate_input: _GateInput) -> GateCheck:
    if gate_input.sequence_number < IDENTITY_CHECK_FROM:
        return GateCheck(
            name="identity_preservation",
            severity=CheckSeverity.WARNING,
            evidence=[f"Not checked before increment {IDENTITY_CHECK_FROM}"],
        )
    contract = gate_input.contract
    text = gate_input.text
    lowered = text.lower()
    drift: list[str] = []
    evidence: list[str] = []

    if contract.protagonist:
        count = lowered.count(contract.protagonist.lower())
        evidence.append(f'Name "{contract.protagonist}" found {count} times')
        if count == 0:
            drift.append("protagonist_name")

    if contract.setting_keywords:
        found = [keyword for keyword in contract.setting_keywords if keyword.lower() in lowered]
        evidence.append(f"Setting keywords found: {', '.join(found) or 'none'}")
        if not found:
            drift.append("setting_identity")

    if contract.point_of_view and contract.point_of_view.lower().replace(" ", "_") == "first_person":
        first = len(_FIRST_PERSON_RE.findall(text))
        third = len(_THIRD_PERSON_RE.findall(text))
        ratio = first / (first + third + 1)
        evidence.append(f"First-person pronouns: {first}, ratio: {ratio:.1%}")
        if ratio <= FIRST_PERSON_MIN_RATIO:
            drift.append("pov_consistency")

    if drift:
        return GateCheck(
            name="identity_preservation",
            status=CheckStatus.WARN,
            severity=CheckSeverity.WARNING,
            reason=f"Potential identity drift: {', '.join(drift)}",
            evidence=evidence,
        )
    return GateCheck(name="identity_preservation", severity=CheckSeverity.WARNING, evidence=evidence)


def check_state_validity(gate_input: _GateInput) -> GateCheck:
    after = gate_input.state_after
    problems: list[str] = []
    if after.session_id != gate_input.state_before.session_id:
        problems.append(f"state belongs to {after.session_id}, expected {gate_input.state_before.session_id}")
    if gate_input.sequence_number not in after.applied_increments:
        problems.append(f"increment {gate_input.sequence_number} not recorded as applied")
    if problems:
        return GateCheck(
            name="state_validity",
            status=CheckStatus.WARN,
            severity=CheckSeverity.WARNING,
            reason="State bookkeeping did not advance",
            evidence=problems,
        )
    return GateCheck(name="state_validity", severity=CheckSeverity.WARNING, evidence=["Bookkeeping advanced"])


_CHECKS: dict[str, Callable[[_GateInput], GateCheck]] = {
    "invariant_monotonicity": check_invariant_monotonicity,
    "scope_containment": check_scope_containment,
    "premature_termination": check_premature_termination,
    "size_conformance": check_size_conformance,
    "identity_preservation": check_identity_preservation,
    "state_validity": check_state_validity,
}


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


def aggregate(sequence_number: int, checks: dict[str, GateCheck], duration_ms: float = 0.0) -> GateResult:
    critical: list[GateFinding] = []
    warnings: list[GateFinding] = []
    for check in checks.values():
        if check.status == CheckStatus.PASS:
            continue
        finding = GateFinding(check=check.name, reason=check.reason or check.status.value, evidence=check.evidence)
        if check.status == CheckStatus.FAIL and check.severity == CheckSeverity.CRITICAL:
            critical.append(finding)
        else:
            warnings.append(finding)

    if critical:
        status, recommendation = GateStatus.FAIL, Recommendation.STOP
    elif warnings:
        status, recommendation = GateStatus.PASS_WITH_WARNINGS, Recommendation.PROCEED_WITH_CAUTION
    else:
        status, recommendation = GateStatus.PASS, Recommendation.PROCEED
    return GateResult(
        sequence_number=sequence_number,
        status=status,
        recommendation=recommendation,
        critical_failures=critical,
        warnings=warnings,
        checks=checks,
        duration_ms=duration_ms,
    )


class GateValidator:
    """Runs the fixed battery of read-only checks concurrently and aggregates a verdict."""

    def __init__(self, *, max_workers: int = 5) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got: {max_workers}")
        self.max_workers = max_workers

    def evaluate(
        self,
        contract: GateContract,
        state_before: CanonicalState,
        state_after: CanonicalState,
        text: str,
        sequence_number: int,
        is_final: bool,
        target_size: int,
    ) -> GateResult:
        started = time.perf_counter()
        gate_input = _GateInput(
            contract=contract,
            state_before=state_before.model_copy(deep=True),
            state_after=state_after.model_copy(deep=True),
            text=text,
            sequence_number=sequence_number,
            is_final=is_final,
            target_size=target_size,
        )
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="gate-check") as pool:
            futures = {name: pool.submit(check, gate_input) for name, check in _CHECKS.items()}
            checks: dict[str, GateCheck] = {}
            for name in CHECK_ORDER:
                try:
                    checks[name] = futures[name].result()
                except Exception as exc:  # noqa: BLE001 - a crashing check fails closed.
                    logger.exception("Gate check %s raised", name)
                    checks[name] = GateCheck(
                        name=name,
                        status=CheckStatus.FAIL,
                        severity=CheckSeverity.CRITICAL,
                        reason=f"Check raised {type(exc).__name__}: {exc}",
                    )

        result = aggregate(sequence_number, checks, duration_ms=(time.perf_counter() - started) * 1000)
        if result.status == GateStatus.FAIL:
            logger.warning(
                "Gate FAILED for increment %s: %s",
                sequence_number,
                "; ".join(f"{finding.check}: {finding.reason}" for finding in result.critical_failures),
            )
        elif result.status == GateStatus.PASS_WITH_WARNINGS:
            logger.info("Gate passed with %s warning(s) for increment %s", len(result.warnings), sequence_number)
        return result


def render_report(result: GateResult) -> str:
    lines = [
        f"# Gate Audit: Increment {result.sequence_number}",
        f"**Status:** {result.status.value}",
        f"**Timestamp:** {result.evaluated_at.isoformat()}",
        f"**Duration:** {result.duration_ms:.1f}ms",
        "",
        "## Checks Performed",
        "| Check | Result | Notes |",
        "|-------|--------|-------|",
    ]
    for name, check in result.checks.items():
        notes = "; ".join(check.evidence) or check.reason or "-"
        lines.append(f"| {name} | {check.status.value} | {notes.replace('|', '/')} |")

    if result.critical_failures:
        lines.extend(["", "## Critical Failures"])
        for finding in result.critical_failures:
            lines.append(f"- **{finding.check}**: {finding.reason}")
            if finding.evidence:
                lines.append(f"  - Evidence: {'; '.join(finding.evidence)}")

    if result.warnings:
        lines.extend(["", "## Warnings"])
        lines.extend(f"- **{finding.check}**: {finding.reason}" for finding in result.warnings)

    lines.extend(["", "## Recommendation", result.recommendation.value])
    return "\n".join(lines)
