from __future__ import annotations

import json
import logging
import re
from typing import Any

from .errors import DeltaExtractionFailed
from .llm import GenerationOracle, validate_oracle_payload
from .models import CanonicalState, Delta, DeltaSource, ExtractedDelta, GenerationRequest
from .utils import normalize_identifier

logger = logging.getLogger(__name__)

MAX_PROMPT_RULES = 7
MAX_PROMPT_CHARS = 3_000
RULE_PREVIEW_CHARS = 50

_JSON_BLOCK_RE = re.compile(r"\{[\s\S]*\}")
_RULE_ID_RE = re.compile(r"rule_\d+", re.IGNORECASE)
_CAPABILITY_PATTERNS = (
    re.compile(r"knows[_\s]+(?:narrator['s]*[_\s]*)?name", re.IGNORECASE),
    re.compile(r"can[_\s]+enter", re.IGNORECASE),
    re.compile(r"can[_\s]+see", re.IGNORECASE),
    re.compile(r"aware[_\s]+of", re.IGNORECASE),
    re.compile(r"has[_\s]+seen", re.IGNORECASE),
)
_TIME_PATTERNS = (
    re.compile(r"\d{1,2}:\d{2}\s*(?:am|pm)?", re.IGNORECASE),
    re.compile(r"midnight", re.IGNORECASE),
    re.compile(r"dawn", re.IGNORECASE),
    re.compile(r"sunset", re.IGNORECASE),
    re.compile(r"sunrise", re.IGNORECASE),
)
_COMMITMENT_CONTEXT_RE = re.compile(r"must|deadline|by|before|after|at|until", re.IGNORECASE)
_CONTEXT_WINDOW = 50

_SYSTEM_INSTRUCTIONS = (
    "You extract state changes from prose. Be precise and literal. "
    "Respond with a single JSON object and nothing else."
)


def build_extraction_prompt(text: str, state: CanonicalState) -> str:
    active = [rule for rule in state.rules if rule.active and rule.text][:MAX_PROMPT_RULES]
    rule_lines = "\n".join(f"{rule.rule_id}: {(rule.text or '')[:RULE_PREVIEW_CHARS]}..." for rule in active)
    return f"""Extract state changes from this text increment.

ACTIVE RULES:
{rule_lines or 'None established yet'}

OUTPUT FORMAT (JSON):
{{
  "rulesIntroduced": ["exact rule text if a new rule is stated"],
  "rulesViolated": ["rule_1", "rule_2"],
  "entityCapabilities": {{"capability_name": true}},
  "timelineCommitments": ["specific event with time marker"]
}}

INSTRUCTIONS:
- Only include changes EXPLICITLY shown in the text
- rulesViolated: use the rule id (rule_1, rule_2, ...) when a character breaks a rule
- entityCapabilities: new entity abilities (e.g. knows_name, can_enter, has_seen)
- timelineCommitments: concrete time-bound events (e.g. "arrived at 10pm", "deadline is midnight")
- Return empty arrays/objects if nothing changed

TEXT:
{text[:MAX_PROMPT_CHARS]}

JSON:"""


def _string_list(parsed: dict[str, Any], key: str, alias: str) -> list[str]:
    value = parsed.get(key, parsed.get(alias))
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _clean_payload(parsed: dict[str, Any]) -> dict[str, Any]:
    """Drop wrongly typed members the way a lenient reader would, before schema validation.

    List members that are not JSON arrays become empty lists; a bare string is
    never iterated character by character.
    """
    capabilities = parsed.get("entityCapabilities", parsed.get("entity_capabilities"))
    if not isinstance(capabilities, dict):
        capabilities = {}
    return {
        "rulesIntroduced": _string_list(parsed, "rulesIntroduced", "rules_introduced"),
        "rulesViolated": _string_list(parsed, "rulesViolated", "rules_violated"),
        "entityCapabilities": {
            str(key): value for key, value in capabilities.items() if isinstance(value, (bool, str))
        },
        "timelineCommitments": _string_list(parsed, "timelineCommitments", "timeline_commitments"),
    }


def parse_delta_response(text: str, sequence_number: int | None) -> Delta:
    """Parse an extraction response; falls back to regex heuristics on malformed JSON."""
    match = _JSON_BLOCK_RE.search(text)
    if match is None:
        logger.warning("No JSON block in extraction response for increment %s", sequence_number)
        return Delta.empty(sequence_number)
    try:
        parsed = json.loads(match.group(0))
        if not isinstance(parsed, dict):
            raise RuntimeError(f"extraction JSON is a {type(parsed).__name__}, expected object")
        extracted = validate_oracle_payload(payload=_clean_payload(parsed), schema=ExtractedDelta)
    except (json.JSONDecodeError, RuntimeError, TypeError, AttributeError) as exc:
        logger.warning("Extraction JSON unusable for increment %s (%s); using regex fallback", sequence_number, exc)
        return fallback_parse(text, sequence_number)

    return Delta(
        sequence_number=sequence_number,
        source=DeltaSource.ORACLE,
        rules_introduced=[item.strip() for item in extracted.rules_introduced if item.strip()],
        rules_violated=_unique(normalize_identifier(item) for item in extracted.rules_violated if item.strip()),
        capabilities={
            normalize_identifier(key): value for key, value in extracted.entity_capabilities.items() if key.strip()
        },
        timeline_commitments=[item.strip() for item in extracted.timeline_commitments if item.strip()],
    )


def fallback_parse(text: str, sequence_number: int | None) -> Delta:
    """Recover partial signal from a response that is not valid JSON."""
    delta = Delta(sequence_number=sequence_number, source=DeltaSource.HEURISTIC)
    delta.rules_violated = _unique(item.lower() for item in _RULE_ID_RE.findall(text))

    for pattern in _CAPABILITY_PATTERNS:
        found = pattern.search(text)
        if found is not None:
            delta.capabilities[normalize_identifier(found.group(0))] = True

    for pattern in _TIME_PATTERNS:
        found = pattern.search(text)
        if found is None:
            continue
        start = max(0, found.start() - _CONTEXT_WINDOW)
        end = min(len(text), found.end() + _CONTEXT_WINDOW)
        if _COMMITMENT_CONTEXT_RE.search(text[start:end]):
            delta.timeline_commitments.append(found.group(0).strip())
    return delta


def _unique(values: Any) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


class DeltaExtractor:
    """Best-effort derivation of state changes from one increment.

    ``extract`` never raises: any oracle failure yields an empty delta and a
    warning, so extraction problems can never stall generation.
    """

    def __init__(self, oracle: GenerationOracle, *, timeout_seconds: float = 30, max_output_tokens: int = 1_500) -> None:
        self.oracle = oracle
        self.timeout_seconds = timeout_seconds
        self.max_output_tokens = max_output_tokens

    def extract(self, text: str, state: CanonicalState, sequence_number: int | None = None) -> Delta:
        try:
            raw = self._call_oracle(text, state)
        except DeltaExtractionFailed as exc:
            logger.warning("Delta extraction failed for increment %s: %s", sequence_number, exc)
            return Delta.empty(sequence_number)
        try:
            delta = parse_delta_response(raw, sequence_number)
        except Exception as exc:  # noqa: BLE001 - a malformed reply must not stall generation.
            logger.warning("Delta parsing failed for increment %s: %s: %s", sequence_number, type(exc).__name__, exc)
            return Delta.empty(sequence_number)
        logger.debug(
            "Extracted delta for increment %s via %s: %s violations, %s capabilities, %s commitments",
            sequence_number,
            delta.source.value,
            len(delta.rules_violated),
            len(delta.capabilities),
            len(delta.timeline_commitments),
        )
        return delta

    def _call_oracle(self, text: str, state: CanonicalState) -> str:
        request = GenerationRequest(
            system_instructions=_SYSTEM_INSTRUCTIONS,
            user_instructions=build_extraction_prompt(text, state),
            target_size=1,
            max_output_tokens=self.max_output_tokens,
            timeout_seconds=self.timeout_seconds,
            temperature=0.0,
        )
        try:
            response = self.oracle.generate(request)
        except Exception as exc:  # noqa: BLE001 - any oracle fault degrades to an empty delta.
            raise DeltaExtractionFailed(f"{type(exc).__name__}: {exc}") from exc
        return response.text
