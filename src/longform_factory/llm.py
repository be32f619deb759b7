from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .models import GenerationRequest, GenerationResponse

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 0


class GenerationOracle(Protocol):
    """Anything that turns instructions into text. Exceptions signal failure."""

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        ...


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for oracle execution")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key and production defaults.

    Retries default to zero here: the stage controller owns retry and backoff
    for generation calls.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def validate_oracle_payload(*, payload: dict[str, Any], schema: type[ModelT]) -> ModelT:
    """Validate a JSON object pulled out of an oracle reply against *schema*.

    Raises:
        RuntimeError: If the payload does not match the schema.
    """
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"Oracle payload failed validation for {schema.__name__}: {exc}") from exc


def message_text(content: Any) -> str:
    """Flatten a chat message content payload (string or content blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    raise RuntimeError(f"Unsupported message content type: {type(content).__name__}")


class ChatModelOracle:
    """GenerationOracle backed by an OpenAI chat model."""

    def __init__(
        self,
        *,
        model_name: str,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        repo_root: Path | None = None,
    ) -> None:
        if not model_name or not model_name.strip():
            raise ValueError("model_name must be a non-empty string")
        self.model_name = model_name
        self.max_retries = max_retries
        self.repo_root = repo_root

    def generate(self, request: GenerationRequest) -> GenerationResponse:
        timeout = int(request.timeout_seconds) if request.timeout_seconds is not None else _DEFAULT_TIMEOUT
        model = get_chat_model(
            model_name=self.model_name,
            temperature=request.temperature,
            timeout=timeout,
            max_retries=self.max_retries,
            max_completion_tokens=request.max_output_tokens,
            repo_root=self.repo_root,
        )
        message = model.invoke(
            [
                SystemMessage(content=request.system_instructions),
                HumanMessage(content=request.user_instructions),
            ]
        )
        usage = getattr(message, "usage_metadata", None) or {}
        metadata = getattr(message, "response_metadata", None) or {}
        response = GenerationResponse(
            text=message_text(message.content),
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
            model=metadata.get("model_name", self.model_name),
            stop_reason=metadata.get("finish_reason"),
        )
        logger.debug(
            "Oracle %s returned %s output tokens (stop=%s)",
            self.model_name,
            response.output_tokens,
            response.stop_reason,
        )
        return response
