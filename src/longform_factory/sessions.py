from __future__ import annotations

import logging
import shutil
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from .errors import PersistenceFailed
from .models import GenerationParameters, Session, SessionOptions, utc_now
from .state_store import _atomic_write_text, _locked_file, _safe_read_text

logger = logging.getLogger(__name__)

SESSION_FILENAME = "session.json"


class SessionRegistry:
    """File-backed session records: create, read many, write rarely, garbage collect.

    One ``session.json`` per session directory, written atomically under an
    fcntl lock sidecar so concurrent readers and the owning controller never
    race.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or session_id.startswith("."):
            raise ValueError(f"invalid session id: {session_id!r}")
        return self.root / session_id / SESSION_FILENAME

    def create(self, parameters: GenerationParameters, options: SessionOptions | None = None) -> Session:
        session = Session(
            target_size=parameters.target_size,
            parameters=parameters,
            options=options or SessionOptions(),
        )
        if self._path(session.session_id).exists():
            raise ValueError(f"Session {session.session_id} already exists")
        self.save(session)
        logger.info("Created session %s (target size %s)", session.session_id, session.target_size)
        return session

    def save(self, session: Session) -> Path:
        path = self._path(session.session_id)
        try:
            with _locked_file(path):
                _atomic_write_text(path, session.model_dump_json(indent=2))
        except OSError as exc:
            raise PersistenceFailed(f"Failed to save session {session.session_id}: {exc}", path=str(path)) from exc
        return path

    def get(self, session_id: str) -> Session:
        """Load a session record.

        Raises:
            FileNotFoundError: If the session does not exist.
            ValueError: If the record is corrupt.
        """
        path = self._path(session_id)
        if not path.is_file():
            raise FileNotFoundError(f"session record not found: {path}")
        with _locked_file(path):
            text = _safe_read_text(path, "session record")
        try:
            return Session.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"session record at {path} failed validation: {exc}") from exc

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).is_file()

    def list_sessions(self) -> list[Session]:
        sessions: list[Session] = []
        for path in sorted(self.root.glob(f"*/{SESSION_FILENAME}")):
            try:
                sessions.append(self.get(path.parent.name))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable session record %s: %s", path, exc)
        return sessions

    def collect_garbage(self, *, now: datetime | None = None, retention: timedelta) -> list[str]:
        """Delete terminal sessions whose last update is older than *retention*.

        Sessions still in a non-terminal stage are never removed.
        """
        cutoff = (now or utc_now()) - retention
        removed: list[str] = []
        for session in self.list_sessions():
            if not session.is_terminal or session.updated_at >= cutoff:
                continue
            shutil.rmtree(self.root / session.session_id)
            removed.append(session.session_id)
            logger.info("Garbage collected session %s (stage %s)", session.session_id, session.stage.value)
        return removed
