from __future__ import annotations

import logging
import math

from .errors import GenerationFailed
from .llm import GenerationOracle
from .models import GenerationParameters, GenerationRequest, Increment, IncrementRequest
from .settings import RuntimeSettings
from .utils import count_words, tail_words, within_band

logger = logging.getLogger(__name__)

PRIOR_TAIL_WORDS = 1_500
TOKENS_PER_WORD = 1.6
TOKEN_HEADROOM = 1.2

_SYSTEM_INSTRUCTIONS = """You write one bounded section of a longer piece of prose.

Discipline:
- Write only the requested section, at close to the requested length.
- Continue seamlessly from the prior text when it is given; never recap it or restart.
- Treat every established rule, capability, irreversible condition and timeline commitment as binding fact.
- Do not conclude the piece unless you are told this is the final section.
- Output prose only: no headings, notes, or commentary."""


def max_tokens_for(target_size: int, cap: int) -> int:
    return max(1, min(cap, math.ceil(target_size * TOKENS_PER_WORD * TOKEN_HEADROOM)))


def render_parameters(parameters: GenerationParameters) -> str:
    lines: list[str] = []
    if parameters.protagonist:
        lines.append(f"Protagonist: {parameters.protagonist}")
    if parameters.setting:
        lines.append(f"Setting: {parameters.setting}")
    if parameters.setting_keywords:
        lines.append(f"Atmosphere: {', '.join(parameters.setting_keywords)}")
    if parameters.point_of_view:
        lines.append(f"Point of view: {parameters.point_of_view}")
    if parameters.themes:
        lines.append(f"Themes: {', '.join(parameters.themes)}")
    for key, value in sorted(parameters.extra.items()):
        lines.append(f"{key}: {value}")
    if parameters.instructions:
        lines.append("")
        lines.append(parameters.instructions.strip())
    return "\n".join(lines)


class IncrementGenerator:
    """Builds bounded increment requests and turns oracle responses into increments.

    Does not retry and never touches canonical state.
    """

    def __init__(self, oracle: GenerationOracle, settings: RuntimeSettings) -> None:
        self.oracle = oracle
        self.settings = settings

    def build_request(
        self,
        *,
        session_id: str,
        parameters: GenerationParameters,
        sequence_number: int,
        target_size: int,
        is_first: bool,
        is_final: bool,
        prior_text: str = "",
        constraints: str = "",
    ) -> IncrementRequest:
        sections = [f"Write section {sequence_number} of the piece, about {target_size} words long."]

        rendered = render_parameters(parameters)
        if rendered:
            sections.append(f"PARAMETERS:\n{rendered}")

        if constraints.strip():
            sections.append(f"CURRENT STATE (binding):\n{constraints.strip()}")

        tail = tail_words(prior_text, PRIOR_TAIL_WORDS) if not is_first else ""
        if tail:
            sections.append(f"PRIOR TEXT (most recent {PRIOR_TAIL_WORDS} words at most):\n{tail}")

        if is_first:
            sections.append("This is the opening section. Establish the setting and the protagonist.")
        else:
            sections.append("Continue naturally from where the prior text left off.")
        if is_final:
            sections.append("This is the final section. Bring the piece to a satisfying conclusion.")
        else:
            sections.append("This is NOT the final section. Do not conclude the piece.")

        request = GenerationRequest(
            system_instructions=_SYSTEM_INSTRUCTIONS,
            user_instructions="\n\n".join(sections),
            target_size=target_size,
            max_output_tokens=max_tokens_for(target_size, self.settings.max_output_tokens),
            timeout_seconds=self.settings.generation_timeout_seconds,
        )
        return IncrementRequest(
            session_id=session_id,
            sequence_number=sequence_number,
            target_size=target_size,
            is_first=is_first,
            is_final=is_final,
            request=request,
        )

    def generate(self, increment_request: IncrementRequest) -> Increment:
        """Invoke the oracle once.

        Raises:
            GenerationFailed: On any oracle exception or an empty response.
        """
        sequence_number = increment_request.sequence_number
        try:
            response = self.oracle.generate(increment_request.request)
        except Exception as exc:  # noqa: BLE001 - every oracle fault maps to GenerationFailed.
            raise GenerationFailed(
                f"Oracle failed for increment {sequence_number}: {type(exc).__name__}: {exc}",
                sequence_number=sequence_number,
            ) from exc

        text = response.text.strip()
        size = count_words(text)
        if size == 0:
            raise GenerationFailed(f"Oracle returned empty text for increment {sequence_number}", sequence_number=sequence_number)

        tolerance = self.settings.size_tolerance
        target = increment_request.target_size
        if not within_band(size, target, low=1.0 - tolerance, high=1.0 + tolerance):
            logger.warning(
                "Increment %s size %s outside +/-%d%% of target %s",
                sequence_number,
                size,
                round(tolerance * 100),
                target,
            )
        logger.debug(
            "Generated increment %s: %s words, %s output tokens",
            sequence_number,
            size,
            response.output_tokens,
        )
        return Increment(
            session_id=increment_request.session_id,
            sequence_number=sequence_number,
            text=text,
            size=size,
        )
