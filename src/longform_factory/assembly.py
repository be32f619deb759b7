from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from .models import Artifact, CanonicalState, Increment, PassResult
from .utils import count_words

logger = logging.getLogger(__name__)

SECTION_SEPARATOR = "\n\n---\n\n"
RECOVERY_SEPARATOR = "\n\n"


class ArtifactPass(Protocol):
    """Whole-artifact collaborator (audit or refinement)."""

    def __call__(self, artifact_text: str, prior_report: dict[str, Any]) -> PassResult:
        ...


class Packager(Protocol):
    """Turns a finished artifact into deliverables; returns name -> path of what it wrote."""

    def package(self, session_id: str, artifact: Artifact, state: CanonicalState, session_dir: Path) -> dict[str, str]:
        ...


class Assembler:
    def __init__(self, separator: str = SECTION_SEPARATOR) -> None:
        self.separator = separator

    def assemble(self, increments: list[Increment]) -> Artifact:
        """Concatenate increments in sequence order.

        Raises:
            ValueError: If there are no increments or the sequence has gaps or duplicates.
        """
        if not increments:
            raise ValueError("No increments to assemble")
        ordered = sorted(increments, key=lambda increment: increment.sequence_number)
        numbers = [increment.sequence_number for increment in ordered]
        if numbers != list(range(1, len(ordered) + 1)):
            raise ValueError(f"Increment sequence must be 1..N without gaps, got {numbers}")
        text = self.separator.join(increment.text for increment in ordered)
        return Artifact(
            text=text,
            size=sum(increment.size for increment in ordered),
            increment_count=len(ordered),
        )

    def recover(self, increments: list[Increment]) -> Artifact:
        """Best-effort join of whatever increments survived, for partial recovery."""
        if not increments:
            raise ValueError("No increments found for recovery")
        ordered = sorted(increments, key=lambda increment: increment.sequence_number)
        text = RECOVERY_SEPARATOR.join(increment.text for increment in ordered)
        logger.info("Partial recovery joined %s increments", len(ordered))
        return Artifact(text=text, size=count_words(text), increment_count=len(ordered), partial=True)
