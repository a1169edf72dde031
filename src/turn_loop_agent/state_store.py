from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .models import PersistedLoopState

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path*.

    The data file itself is swapped with ``os.replace``, so the lock lives on a
    separate handle in the same directory.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file next to *path* and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_text(path: Path, label: str) -> str:
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


class LoopStateStore:
    """File-backed persistence for loop state snapshots, one JSON file per session.

    Snapshots are written after every completed turn and can seed a new run
    through ``LoopInput.resume_from``.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def _session_path(self, session_id: str) -> Path:
        if not _SESSION_ID_PATTERN.match(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / f"{session_id}.json"

    def save(self, state: PersistedLoopState) -> Path:
        path = self._session_path(state.session_id)
        with _locked_file(path):
            atomic_write_text(path, state.model_dump_json(indent=2))
        logger.debug("Saved loop state for %s at iteration %d", state.session_id, state.loop_count)
        return path

    def load(self, session_id: str) -> PersistedLoopState:
        path = self._session_path(session_id)
        with _locked_file(path):
            text = _safe_read_text(path, "Loop state")
        try:
            return PersistedLoopState.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"Loop state at {path} is invalid: {exc}") from exc

    def exists(self, session_id: str) -> bool:
        return self._session_path(session_id).is_file()

    def list_sessions(self) -> list[str]:
        return sorted(path.stem for path in self.sessions_dir.glob("*.json"))
