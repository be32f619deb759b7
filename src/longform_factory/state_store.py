from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, ValidationError

from .errors import PersistenceFailed
from .models import (
    CanonicalState,
    ErrorReport,
    GateResult,
    Increment,
    Manifest,
    ManifestEntry,
    StateSummary,
    increment_filename,
    utc_now,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_HEADER_OPEN = "<!-- INCREMENT METADATA"
_HEADER_CLOSE = "-->"
_HEADER_RE = re.compile(r"\A<!-- INCREMENT METADATA\n(?P<meta>.*?)\n-->\n\n", re.DOTALL)
_INCREMENT_FILE_RE = re.compile(r"^increment_(?P<number>\d{3,})\.txt$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.  A reader never observes a partial file:
    it sees either the previous version or the complete new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.stem}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_exact(path: Path) -> str:
    # newline="" keeps \r and \r\n exactly as the oracle produced them.
    with path.open(encoding="utf-8", newline="") as handle:
        return handle.read()


def _safe_read_text(path: Path, label: str) -> str:
    """Read a file and raise a clear error if missing or unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = _read_exact(path)
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def render_increment_file(increment: Increment) -> str:
    metadata = {
        "sequence_number": increment.sequence_number,
        "size": increment.size,
        "session_id": increment.session_id,
        "saved_at": increment.saved_at.isoformat(),
    }
    return "\n".join([_HEADER_OPEN, json.dumps(metadata, indent=2), _HEADER_CLOSE, "", increment.text])


def parse_increment_file(content: str, *, source: Path) -> Increment:
    """Parse the metadata header and body of an increment file.

    Raises:
        ValueError: If the header is missing or malformed.
    """
    match = _HEADER_RE.match(content)
    if match is None:
        raise ValueError(f"increment file {source} is missing its metadata header")
    try:
        metadata = json.loads(match.group("meta"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"increment file {source} has a corrupt metadata header") from exc
    try:
        return Increment(
            session_id=metadata["session_id"],
            sequence_number=metadata["sequence_number"],
            size=metadata["size"],
            saved_at=datetime.fromisoformat(metadata["saved_at"]),
            text=content[match.end():],
        )
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        raise ValueError(f"increment file {source} has invalid metadata: {exc}") from exc


# ---------------------------------------------------------------------------
# IncrementStore
# ---------------------------------------------------------------------------


class IncrementStore:
    """Crash-safe filesystem store for increments, manifests and session artifacts.

    Layout per session::

        <root>/<session_id>/
            increments/increment_001.txt
            manifest.json
            canonical_state.json
            gates/gate_001.json, gate_001.md
            error_report.json
            audit_trail.jsonl
            assembled_draft.txt, final_artifact.txt

    Every write except the append-only audit trail goes through
    temp-file-then-rename.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or session_id.startswith("."):
            raise ValueError(f"invalid session id: {session_id!r}")
        return self.root / session_id

    def increments_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "increments"

    def manifest_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "manifest.json"

    def state_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "canonical_state.json"

    def error_report_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "error_report.json"

    def gates_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "gates"

    def audit_trail_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "audit_trail.jsonl"

    # ------------------------------------------------------------------
    # Increments
    # ------------------------------------------------------------------

    def persist(
        self,
        session_id: str,
        sequence_number: int,
        text: str,
        size: int,
        *,
        saved_at: datetime | None = None,
    ) -> Path:
        """Atomically persist one increment and return its path.

        Raises:
            PersistenceFailed: If the write or rename fails. The temp file is removed.
        """
        if sequence_number < 1:
            raise ValueError(f"sequence_number must be >= 1, got: {sequence_number}")
        increment = Increment(
            session_id=session_id,
            sequence_number=sequence_number,
            text=text,
            size=size,
            saved_at=saved_at or utc_now(),
        )
        path = self.increments_dir(session_id) / increment_filename(sequence_number)
        try:
            _atomic_write_text(path, render_increment_file(increment))
        except OSError as exc:
            raise PersistenceFailed(
                f"Failed to persist increment {sequence_number} for {session_id}: {exc}",
                path=str(path),
            ) from exc
        logger.debug("Persisted increment %s (%s units) to %s", sequence_number, size, path)
        return path

    def list_increment_files(self, session_id: str) -> list[tuple[int, Path]]:
        """Return ``(sequence_number, path)`` for every complete increment file, sorted."""
        directory = self.increments_dir(session_id)
        if not directory.is_dir():
            return []
        found: list[tuple[int, Path]] = []
        for candidate in directory.iterdir():
            match = _INCREMENT_FILE_RE.match(candidate.name)
            if match is None or not candidate.is_file():
                continue
            found.append((int(match.group("number")), candidate))
        return sorted(found)

    def read_increment(self, path: Path) -> Increment:
        text = _read_exact(path)
        return parse_increment_file(text, source=path)

    def load_all(self, session_id: str) -> list[Increment]:
        """Load every fully persisted increment in order, bypassing the manifest.

        The scan stops at the first gap or unreadable file, so the result is
        always a gap-free prefix 1..N.
        """
        increments: list[Increment] = []
        expected = 1
        for number, path in self.list_increment_files(session_id):
            if number != expected:
                logger.warning(
                    "Increment scan for %s stopped at gap: expected %s, found %s",
                    session_id,
                    expected,
                    number,
                )
                break
            try:
                increment = self.read_increment(path)
            except (OSError, ValueError) as exc:
                logger.warning("Increment scan for %s stopped at unreadable %s: %s", session_id, path, exc)
                break
            if increment.sequence_number != number:
                logger.warning("Increment %s header disagrees with filename number %s", path, number)
                break
            increments.append(increment)
            expected += 1
        return increments

    def load_from_manifest(self, session_id: str) -> list[Increment]:
        """Load increments exactly as indexed by the manifest.

        Raises:
            FileNotFoundError: If the manifest or an indexed increment is missing.
            ValueError: If the manifest or an increment is corrupt or disagrees with the index.
        """
        manifest = self.load_manifest(session_id)
        increments: list[Increment] = []
        for entry in manifest.entries:
            path = self.increments_dir(session_id) / entry.filename
            text = _safe_read_text(path, f"increment {entry.number}")
            increment = parse_increment_file(text, source=path)
            if increment.sequence_number != entry.number or increment.size != entry.size:
                raise ValueError(f"increment {path} disagrees with manifest entry {entry.number}")
            increments.append(increment)
        return increments

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def rewrite_manifest(
        self,
        session_id: str,
        entries: list[ManifestEntry],
        state_summary: StateSummary | None = None,
    ) -> Path:
        """Rewrite the whole manifest atomically.

        Raises:
            ValueError: If *entries* violate the manifest ordering invariant.
            PersistenceFailed: If the write fails.
        """
        manifest = Manifest.build(session_id, entries, state_summary)
        path = self.manifest_path(session_id)
        try:
            _atomic_write_text(path, manifest.model_dump_json(indent=2, by_alias=True))
        except OSError as exc:
            raise PersistenceFailed(f"Failed to rewrite manifest for {session_id}: {exc}", path=str(path)) from exc
        return path

    def load_manifest(self, session_id: str) -> Manifest:
        path = self.manifest_path(session_id)
        text = _safe_read_text(path, "manifest")
        try:
            return Manifest.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"manifest at {path} failed validation: {exc}") from exc

    def manifest_entries_from_disk(self, session_id: str) -> list[ManifestEntry]:
        """Rebuild manifest entries from the persisted increments themselves."""
        return [
            ManifestEntry(
                number=increment.sequence_number,
                filename=increment.filename,
                size=increment.size,
                saved_at=increment.saved_at,
            )
            for increment in self.load_all(session_id)
        ]

    # ------------------------------------------------------------------
    # Canonical state
    # ------------------------------------------------------------------

    def write_state(self, state: CanonicalState) -> Path:
        path = self.state_path(state.session_id)
        try:
            _atomic_write_text(path, state.model_dump_json(indent=2))
        except OSError as exc:
            raise PersistenceFailed(
                f"Failed to persist canonical state for {state.session_id}: {exc}", path=str(path)
            ) from exc
        return path

    def read_state(self, session_id: str) -> CanonicalState:
        path = self.state_path(session_id)
        text = _safe_read_text(path, "canonical state")
        try:
            return CanonicalState.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"canonical state at {path} failed validation: {exc}") from exc

    # ------------------------------------------------------------------
    # Gate results, reports, artifacts
    # ------------------------------------------------------------------

    def write_gate_result(self, session_id: str, result: GateResult, report_markdown: str | None = None) -> Path:
        directory = self.gates_dir(session_id)
        path = directory / f"gate_{result.sequence_number:03d}.json"
        try:
            _atomic_write_text(path, result.model_dump_json(indent=2))
            if report_markdown is not None:
                _atomic_write_text(path.with_suffix(".md"), report_markdown)
        except OSError as exc:
            raise PersistenceFailed(f"Failed to persist gate result: {exc}", path=str(path)) from exc
        return path

    def read_gate_results(self, session_id: str) -> list[GateResult]:
        directory = self.gates_dir(session_id)
        if not directory.is_dir():
            return []
        return [
            GateResult.model_validate_json(path.read_text(encoding="utf-8"))
            for path in sorted(directory.glob("gate_*.json"))
        ]

    def write_error_report(self, report: ErrorReport) -> Path:
        path = self.error_report_path(report.session_id)
        try:
            _atomic_write_text(path, report.model_dump_json(indent=2))
        except OSError as exc:
            raise PersistenceFailed(f"Failed to persist error report: {exc}", path=str(path)) from exc
        return path

    def read_error_report(self, session_id: str) -> ErrorReport | None:
        path = self.error_report_path(session_id)
        if not path.is_file():
            return None
        return ErrorReport.model_validate_json(_safe_read_text(path, "error report"))

    def clear_error_report(self, session_id: str) -> None:
        path = self.error_report_path(session_id)
        if path.is_file():
            path.unlink()

    def write_artifact(self, session_id: str, name: str, text: str) -> Path:
        path = self.session_dir(session_id) / name
        try:
            _atomic_write_text(path, text)
        except OSError as exc:
            raise PersistenceFailed(f"Failed to persist artifact {name}: {exc}", path=str(path)) from exc
        return path

    def write_json(self, session_id: str, name: str, payload: BaseModel | dict[str, Any]) -> Path:
        if isinstance(payload, BaseModel):
            content = payload.model_dump_json(indent=2)
        else:
            content = json.dumps(payload, indent=2, default=str)
        return self.write_artifact(session_id, name, content)

    def append_audit_event(self, session_id: str, record: dict[str, Any]) -> None:
        """Append one JSON line to the session audit trail."""
        path = self.audit_trail_path(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps({"recorded_at": utc_now().isoformat(), **record}, default=str, sort_keys=True)
        with _locked_file(path):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def read_audit_trail(self, session_id: str) -> list[dict[str, Any]]:
        path = self.audit_trail_path(session_id)
        if not path.is_file():
            return []
        records: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                records.append(json.loads(line))
        return records
