from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator, MutableMapping

PACKAGE_LOGGER = "longform_factory"


class SessionLogAdapter(logging.LoggerAdapter):
    """Tags every record with the session id, plus the current stage and increment when known."""

    def __init__(self, logger: logging.Logger, session_id: str) -> None:
        super().__init__(logger, {"session_id": session_id})
        self.stage: str | None = None
        self.increment: int | None = None

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("session_id", self.extra["session_id"])
        extra.setdefault("stage", self.stage)
        extra.setdefault("increment", self.increment)
        kwargs["extra"] = extra
        return msg, kwargs


class SessionLogHandler(logging.Handler):
    """Writes one session's records to ``debug_log.jsonl`` and ``debug_log.txt``.

    Records without a matching ``session_id`` attribute are ignored, so
    concurrent sessions sharing the package logger keep separate logs.
    """

    def __init__(self, session_dir: Path, session_id: str, level: int = logging.DEBUG) -> None:
        super().__init__(level=level)
        self.session_id = session_id
        self.started = time.monotonic()
        session_dir.mkdir(parents=True, exist_ok=True)
        self.jsonl_path = session_dir / "debug_log.jsonl"
        self.text_path = session_dir / "debug_log.txt"
        self._jsonl = self.jsonl_path.open("a", encoding="utf-8")
        self._text = self.text_path.open("a", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, "session_id", None) != self.session_id:
            return
        try:
            message = record.getMessage()
            elapsed_ms = int((time.monotonic() - self.started) * 1000)
            stage = getattr(record, "stage", None)
            increment = getattr(record, "increment", None)
            timestamp = datetime.fromtimestamp(record.created, UTC).isoformat()
            entry = {
                "timestamp": timestamp,
                "elapsed_ms": elapsed_ms,
                "session_id": self.session_id,
                "level": record.levelname,
                "stage": stage,
                "logger": record.name,
                "message": message,
                "increment": increment,
            }
            if record.exc_info:
                entry["exception"] = logging.Formatter().formatException(record.exc_info)
            self._jsonl.write(json.dumps(entry, default=str) + "\n")
            location = f"[{stage or '-'}]" + (f"[#{increment}]" if increment is not None else "")
            self._text.write(f"{timestamp} +{elapsed_ms}ms {record.levelname:<7} {location} {message}\n")
            self._jsonl.flush()
            self._text.flush()
        except Exception:  # noqa: BLE001 - logging.Handler contract.
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            for handle in (self._jsonl, self._text):
                if not handle.closed:
                    handle.close()
        finally:
            self.release()
        super().close()


@contextmanager
def session_logging(session_dir: Path, session_id: str) -> Iterator[SessionLogHandler]:
    """Attach a SessionLogHandler to the package logger for the duration of the block.

    The package logger is opened up to INFO while the block runs so the
    session log records progress even when the root logger is quieter.
    """
    handler = SessionLogHandler(session_dir, session_id)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    previous_level = package_logger.level
    if package_logger.getEffectiveLevel() > logging.INFO:
        package_logger.setLevel(logging.INFO)
    package_logger.addHandler(handler)
    try:
        yield handler
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(previous_level)
        handler.close()
