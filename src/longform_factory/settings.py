from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

REEXTRACTION_POLICIES = frozenset({"never", "on_failure", "always"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    sessions_root: str = "generated"
    chunk_size: int = 2_000
    size_tolerance: float = 0.10
    heartbeat_interval_seconds: float = 10.0
    stage_timeout_seconds: float = 7_200.0
    max_generation_retries: int = 3
    retry_backoff_seconds: float = 2.0
    generation_timeout_seconds: int = 240
    extraction_timeout_seconds: int = 30
    model_generation: str = "gpt-4o"
    model_extraction: str = "gpt-4o-mini"
    max_output_tokens: int = 16_000
    gate_enabled: bool = True
    reextraction_policy: str = "on_failure"
    retention_hours: int = 168
    recursion_limit: int = 1_000
    default_rule_count: int = 7

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            sessions_root=os.getenv("LONGFORM_SESSIONS_ROOT", "generated"),
            chunk_size=_get_env_int("LONGFORM_CHUNK_SIZE", default=2_000, minimum=100, maximum=20_000),
            size_tolerance=_get_env_float("LONGFORM_SIZE_TOLERANCE", default=0.10, minimum=0.0, maximum=1.0),
            heartbeat_interval_seconds=_get_env_float("LONGFORM_HEARTBEAT_INTERVAL", default=10.0, minimum=0.0),
            stage_timeout_seconds=_get_env_float("LONGFORM_STAGE_TIMEOUT", default=7_200.0, minimum=0.0),
            max_generation_retries=_get_env_int("LONGFORM_MAX_GENERATION_RETRIES", default=3, minimum=1, maximum=10),
            retry_backoff_seconds=_get_env_float("LONGFORM_RETRY_BACKOFF", default=2.0, minimum=0.0),
            generation_timeout_seconds=_get_env_int("LONGFORM_GENERATION_TIMEOUT", default=240, minimum=10),
            extraction_timeout_seconds=_get_env_int("LONGFORM_EXTRACTION_TIMEOUT", default=30, minimum=5),
            model_generation=os.getenv("LONGFORM_MODEL_GENERATION", "gpt-4o"),
            model_extraction=os.getenv("LONGFORM_MODEL_EXTRACTION", "gpt-4o-mini"),
            max_output_tokens=_get_env_int("LONGFORM_MAX_OUTPUT_TOKENS", default=16_000, minimum=256),
            gate_enabled=_get_env_bool("LONGFORM_GATE_ENABLED", default=True),
            reextraction_policy=os.getenv("LONGFORM_REEXTRACTION_POLICY", "on_failure"),
            retention_hours=_get_env_int("LONGFORM_RETENTION_HOURS", default=168, minimum=1),
            recursion_limit=_get_env_int("LONGFORM_RECURSION_LIMIT", default=1_000, minimum=100, maximum=100_000),
            default_rule_count=_get_env_int("LONGFORM_DEFAULT_RULE_COUNT", default=7, minimum=1, maximum=50),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_generation = self.model_generation.strip()
        if not model_generation:
            raise ValueError("LONGFORM_MODEL_GENERATION must be non-empty")
        model_extraction = self.model_extraction.strip()
        if not model_extraction:
            raise ValueError("LONGFORM_MODEL_EXTRACTION must be non-empty")
        if not self.sessions_root.strip():
            raise ValueError("LONGFORM_SESSIONS_ROOT must be non-empty")

        # -- Numeric bounds validation --
        if not 0.0 < self.size_tolerance < 1.0:
            raise ValueError(f"LONGFORM_SIZE_TOLERANCE must be in (0, 1), got: {self.size_tolerance}")
        if self.heartbeat_interval_seconds <= 0:
            raise ValueError(
                f"LONGFORM_HEARTBEAT_INTERVAL must be > 0, got: {self.heartbeat_interval_seconds}"
            )
        if self.stage_timeout_seconds <= 0:
            raise ValueError(f"LONGFORM_STAGE_TIMEOUT must be > 0, got: {self.stage_timeout_seconds}")
        if self.chunk_size < 1:
            raise ValueError(f"LONGFORM_CHUNK_SIZE must be >= 1, got: {self.chunk_size}")
        if self.max_generation_retries < 1:
            raise ValueError(
                f"LONGFORM_MAX_GENERATION_RETRIES must be >= 1, got: {self.max_generation_retries}"
            )
        # A stage must outlast one increment whose every attempt runs to the oracle timeout.
        worst_increment = self.generation_timeout_seconds * self.max_generation_retries
        if self.stage_timeout_seconds < worst_increment:
            raise ValueError(
                f"LONGFORM_STAGE_TIMEOUT must be >= LONGFORM_GENERATION_TIMEOUT * LONGFORM_MAX_GENERATION_RETRIES "
                f"({worst_increment}s), got: {self.stage_timeout_seconds}"
            )

        # -- Policy validation --
        policy = self.reextraction_policy.strip().lower()
        if policy not in REEXTRACTION_POLICIES:
            raise ValueError("LONGFORM_REEXTRACTION_POLICY must be one of: never, on_failure, always")

        return RuntimeSettings(
            sessions_root=self.sessions_root,
            chunk_size=self.chunk_size,
            size_tolerance=self.size_tolerance,
            heartbeat_interval_seconds=self.heartbeat_interval_seconds,
            stage_timeout_seconds=self.stage_timeout_seconds,
            max_generation_retries=self.max_generation_retries,
            retry_backoff_seconds=self.retry_backoff_seconds,
            generation_timeout_seconds=self.generation_timeout_seconds,
            extraction_timeout_seconds=self.extraction_timeout_seconds,
            model_generation=model_generation,
            model_extraction=model_extraction,
            max_output_tokens=self.max_output_tokens,
            gate_enabled=self.gate_enabled,
            reextraction_policy=policy,
            retention_hours=self.retention_hours,
            recursion_limit=self.recursion_limit,
            default_rule_count=self.default_rule_count,
        )

    def sessions_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.sessions_root)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1e9) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean, got: {raw!r}")
