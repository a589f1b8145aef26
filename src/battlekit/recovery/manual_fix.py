"""Manual fix sessions.

When a failure needs a human, the battle pauses and a session watches the
working directory while the user edits. Detected changes are recorded per
path, the user's verification run marks the fix as verified, and completing
the session produces the text the next iteration starts from.

Session lifecycle:
    active -> completed  (complete(), requires verified)
    active -> aborted    (abort())

Each active session owns one watch thread. complete(), abort() and
cleanup_all() release it exactly once.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import secrets
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Literal

from pydantic import BaseModel, Field
from watchfiles import Change, watch

from ..models import FeedbackResults, utc_now
from ..utils.errors import BattlekitError, FixNotVerifiedError, SessionNotFoundError
from .classifier import BattleFailure

logger = logging.getLogger(__name__)

ChangeType = Literal["created", "modified", "deleted"]
SessionStatus = Literal["active", "completed", "aborted"]

CHANGE_TYPES: dict[Change, ChangeType] = {
    Change.added: "created",
    Change.modified: "modified",
    Change.deleted: "deleted",
}

IGNORED_DIRS = frozenset(
    {
        # VCS internals
        ".git",
        ".hg",
        ".svn",
        # Dependency and build caches
        "node_modules",
        "__pycache__",
        ".venv",
        "venv",
        "dist",
        "build",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".tox",
        ".next",
        ".cache",
        "coverage",
        ".battlekit",
    }
)

IGNORED_FILE_PATTERNS = (
    "*.swp",
    "*.swo",
    "*~",
    ".#*",
    ".DS_Store",
    "Thumbs.db",
    "4913",  # vim write probe
)


def should_ignore(relative_path: str) -> bool:
    """Check if a path inside the working directory is watcher noise."""
    parts = PurePosixPath(relative_path.replace(os.sep, "/")).parts
    if not parts:
        return True
    if any(part in IGNORED_DIRS for part in parts):
        return True
    return any(fnmatch.fnmatchcase(parts[-1], pattern) for pattern in IGNORED_FILE_PATTERNS)


# =============================================================================
# Records
# =============================================================================


class FileChange(BaseModel):
    """A change detected in the working directory during a session."""

    path: str
    type: ChangeType
    diff: str | None = None
    detected_at: str = Field(default_factory=utc_now)


class ManualFixSession(BaseModel):
    """State of one manual fix."""

    id: str
    battle_id: str
    task_id: str
    working_dir: str
    started_at: str = Field(default_factory=utc_now)
    issue: BattleFailure
    detected_changes: list[FileChange] = Field(default_factory=list)
    last_change_detected: str | None = None
    verification_results: FeedbackResults | None = None
    verified: bool = False
    status: SessionStatus = "active"


@dataclass
class StartOptions:
    """Options for starting a manual fix session."""

    battle_id: str
    task_id: str
    working_dir: Path | str
    issue: BattleFailure
    on_change: Callable[[FileChange], None] | None = None


@dataclass
class ManualFixCompletion:
    """A completed session and the prompt to continue the battle with."""

    session: ManualFixSession
    continuation_prompt: str


# =============================================================================
# Directory watching
# =============================================================================


class WatchHandle:
    """A running directory watch. close() stops it and is idempotent."""

    def __init__(self, thread: threading.Thread, stop_event: threading.Event):
        self._thread = thread
        self._stop_event = stop_event
        self._lock = threading.Lock()
        self.closed = False

    def close(self, timeout: float = 5.0) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)


WatchCallback = Callable[[ChangeType, Path], None]
Watcher = Callable[[Path, WatchCallback], WatchHandle]


def watch_directory(path: Path, callback: WatchCallback, debounce_ms: int = 200) -> WatchHandle:
    """Recursively watch ``path`` on a daemon thread.

    Args:
        path: Directory to watch.
        callback: Called with the change type and absolute path of each event.
        debounce_ms: Window for grouping events.

    Returns:
        WatchHandle that stops the thread when closed.
    """
    stop_event = threading.Event()

    def run() -> None:
        try:
            for changes in watch(
                path,
                watch_filter=None,
                debounce=debounce_ms,
                stop_event=stop_event,
                recursive=True,
            ):
                for change, raw_path in changes:
                    change_type = CHANGE_TYPES.get(change)
                    if change_type is None:
                        continue
                    try:
                        callback(change_type, Path(raw_path))
                    except Exception:
                        logger.exception(f"Change callback failed for {raw_path}")
        except Exception:
            logger.exception(f"Watcher for {path} stopped unexpectedly")

    thread = threading.Thread(target=run, name=f"battlekit-watch-{path.name}", daemon=True)
    thread.start()
    return WatchHandle(thread, stop_event)


# =============================================================================
# Registry
# =============================================================================


class SessionRegistry:
    """Holds sessions and their watch handles.

    Watch callbacks arrive on watcher threads, so every access is locked.
    Ended sessions are removed along with their handle. Handles are popped
    before being closed, which makes release happen exactly once whichever
    path ends the session.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, ManualFixSession] = {}
        self._watches: dict[str, WatchHandle] = {}
        self.lock = threading.RLock()

    def add(self, session: ManualFixSession) -> None:
        with self.lock:
            self._sessions[session.id] = session

    def attach_watch(self, session_id: str, handle: WatchHandle) -> None:
        with self.lock:
            self._watches[session_id] = handle

    def get(self, session_id: str) -> ManualFixSession | None:
        with self.lock:
            return self._sessions.get(session_id)

    def sessions(self) -> list[ManualFixSession]:
        with self.lock:
            return list(self._sessions.values())

    def has_watch(self, session_id: str) -> bool:
        with self.lock:
            return session_id in self._watches

    def record_change(self, session_id: str, change: FileChange) -> bool:
        """Upsert a change by path. Returns False if the session is not active."""
        with self.lock:
            session = self._sessions.get(session_id)
            if session is None or session.status != "active":
                return False
            session.detected_changes = [
                c for c in session.detected_changes if c.path != change.path
            ]
            session.detected_changes.append(change)
            session.last_change_detected = change.detected_at
            return True

    def remove(self, session_id: str) -> ManualFixSession | None:
        """Drop a session and release its watch. Returns the removed session."""
        with self.lock:
            session = self._sessions.pop(session_id, None)
            handle = self._watches.pop(session_id, None)
        # Closed outside the lock: the watch thread may be waiting on it
        if handle is not None:
            handle.close()
        return session

    def clear(self) -> int:
        """Release every watch and drop every session. Returns watches released."""
        with self.lock:
            handles = list(self._watches.values())
            self._watches.clear()
            self._sessions.clear()
        for handle in handles:
            handle.close()
        return len(handles)


# =============================================================================
# Manager
# =============================================================================


def build_continuation_prompt(session: ManualFixSession) -> str:
    """Text handed to the next iteration after a manual fix."""
    lines = [
        "The previous failure was fixed manually.",
        "",
        f"Original issue: {session.issue.message}",
        "",
    ]
    if session.detected_changes:
        lines.append("Changes made during the manual fix:")
        lines.extend(f"- {c.path} ({c.type})" for c in session.detected_changes)
    else:
        lines.append("No file changes were detected during the manual fix.")
    return "\n".join(lines)


class ManualFixManager:
    """Starts, tracks and ends manual fix sessions."""

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        watcher: Watcher = watch_directory,
    ):
        self.registry = registry or SessionRegistry()
        self._watcher = watcher

    def start(self, options: StartOptions) -> ManualFixSession:
        """Start a session and begin watching the working directory."""
        working_dir = Path(options.working_dir).resolve()
        session = ManualFixSession(
            id=f"fix-{int(time.time() * 1000)}-{secrets.token_hex(4)}",
            battle_id=options.battle_id,
            task_id=options.task_id,
            working_dir=str(working_dir),
            issue=options.issue,
        )
        self.registry.add(session)

        def on_event(change_type: ChangeType, path: Path) -> None:
            self._record(session.id, working_dir, change_type, path, options.on_change)

        try:
            handle = self._watcher(working_dir, on_event)
        except Exception:
            self.registry.remove(session.id)
            raise
        self.registry.attach_watch(session.id, handle)

        logger.info(f"Started manual fix session {session.id} in {working_dir}")
        return session.model_copy(deep=True)

    def _record(
        self,
        session_id: str,
        working_dir: Path,
        change_type: ChangeType,
        path: Path,
        on_change: Callable[[FileChange], None] | None,
    ) -> None:
        try:
            relative = path.resolve().relative_to(working_dir).as_posix()
        except ValueError:
            return
        if should_ignore(relative):
            return

        change = FileChange(path=relative, type=change_type)
        if not self.registry.record_change(session_id, change):
            return
        logger.debug(f"Session {session_id}: {change_type} {relative}")

        if on_change is not None:
            try:
                on_change(change)
            except Exception:
                logger.exception(f"on_change callback failed for session {session_id}")

    def _require(self, session_id: str) -> ManualFixSession:
        session = self.registry.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def set_verification_results(
        self, session_id: str, results: FeedbackResults
    ) -> ManualFixSession:
        """Store the user's verification run. Verified only if every loop passed."""
        with self.registry.lock:
            session = self._require(session_id)
            session.verification_results = dict(results)
            session.verified = all(r.passed for r in results.values())
            snapshot = session.model_copy(deep=True)
        logger.info(f"Session {session_id} verification: verified={snapshot.verified}")
        return snapshot

    def complete(self, session_id: str) -> ManualFixCompletion:
        """Complete a verified session and drop it from the registry.

        Raises:
            SessionNotFoundError: Unknown session.
            FixNotVerifiedError: Verification has not passed.
            BattlekitError: The session already ended.
        """
        with self.registry.lock:
            session = self._require(session_id)
            if session.status != "active":
                raise BattlekitError(f"Session {session_id} is already {session.status}")
            if not session.verified:
                raise FixNotVerifiedError(session_id)
            session.status = "completed"
            snapshot = session.model_copy(deep=True)

        self.registry.remove(session_id)
        logger.info(
            f"Completed manual fix session {session_id} "
            f"({len(snapshot.detected_changes)} changes)"
        )
        return ManualFixCompletion(
            session=snapshot,
            continuation_prompt=build_continuation_prompt(snapshot),
        )

    def abort(self, session_id: str) -> ManualFixSession | None:
        """Abort a session and drop it from the registry.

        Safe to call for unknown or ended sessions, which return None.
        """
        with self.registry.lock:
            session = self.registry.get(session_id)
            snapshot: ManualFixSession | None = None
            if session is not None and session.status == "active":
                session.status = "aborted"
                snapshot = session.model_copy(deep=True)
        self.registry.remove(session_id)
        if snapshot is not None:
            logger.info(f"Aborted manual fix session {session_id}")
        return snapshot

    def cleanup_all(self) -> None:
        """Release every watch and forget every session."""
        released = self.registry.clear()
        if released:
            logger.info(f"Released {released} manual fix watches")

    def get_session(self, session_id: str) -> ManualFixSession | None:
        session = self.registry.get(session_id)
        if session is None:
            return None
        with self.registry.lock:
            return session.model_copy(deep=True)

    def list_sessions(self) -> list[ManualFixSession]:
        with self.registry.lock:
            return [s.model_copy(deep=True) for s in self.registry.sessions()]
