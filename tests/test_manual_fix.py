"""Tests for manual fix sessions."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from battlekit.models import FeedbackResult
from battlekit.recovery.classifier import BattleFailure, FailureType, RecoveryAction
from battlekit.recovery.manual_fix import (
    FileChange,
    ManualFixManager,
    SessionRegistry,
    StartOptions,
    WatchHandle,
    build_continuation_prompt,
    should_ignore,
    watch_directory,
)
from battlekit.utils.errors import FixNotVerifiedError, SessionNotFoundError


class FakeHandle:
    def __init__(self):
        self.close_calls = 0

    def close(self, timeout: float = 5.0) -> None:
        self.close_calls += 1


class FakeWatcher:
    """Captures the change callback instead of watching the filesystem."""

    def __init__(self):
        self.callbacks = []
        self.handles: list[FakeHandle] = []

    def __call__(self, path, callback):
        self.callbacks.append(callback)
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    def emit(self, change_type, path, index=-1):
        self.callbacks[index](change_type, Path(path))


@pytest.fixture
def failure() -> BattleFailure:
    return BattleFailure(
        type=FailureType.FEEDBACK_FAILURE,
        timestamp="2026-01-01T00:00:00+00:00",
        iteration=2,
        message="Feedback loop 'test' failed",
        details="1 failed",
        recoverable=True,
        suggested_action=RecoveryAction.FIX_AND_CONTINUE,
    )


@pytest.fixture
def watcher() -> FakeWatcher:
    return FakeWatcher()


@pytest.fixture
def manager(watcher) -> ManualFixManager:
    return ManualFixManager(watcher=watcher)


@pytest.fixture
def workdir(tmp_path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path.resolve()


def start(manager, workdir, failure, **kwargs):
    return manager.start(
        StartOptions(
            battle_id="battle-1", task_id="task-1", working_dir=workdir, issue=failure, **kwargs
        )
    )


PASSED = {"test": FeedbackResult(passed=True), "lint": FeedbackResult(passed=True)}
ONE_FAILED = {"test": FeedbackResult(passed=True), "lint": FeedbackResult(passed=False)}


# =============================================================================
# Ignore list
# =============================================================================


class TestShouldIgnore:
    @pytest.mark.parametrize(
        "path",
        [
            ".git/index",
            "node_modules/lodash/index.js",
            "src/__pycache__/app.cpython-312.pyc",
            ".battlekit/checkpoints.json",
            "src/.app.py.swp",
            "notes.txt~",
            ".DS_Store",
            "4913",
        ],
    )
    def test_noise_ignored(self, path):
        assert should_ignore(path)

    @pytest.mark.parametrize("path", ["src/app.py", "README.md", "build.gradle", "docs/git.md"])
    def test_sources_watched(self, path):
        assert not should_ignore(path)


# =============================================================================
# Session lifecycle
# =============================================================================


class TestStart:
    def test_new_session(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)

        assert session.id.startswith("fix-")
        assert session.status == "active"
        assert session.verified is False
        assert session.detected_changes == []
        assert session.working_dir == str(workdir)
        assert session.issue == failure
        assert len(watcher.handles) == 1
        assert manager.registry.has_watch(session.id)

    def test_returns_copy(self, manager, workdir, failure):
        session = start(manager, workdir, failure)
        session.status = "completed"
        assert manager.get_session(session.id).status == "active"

    def test_watcher_failure_propagates(self, workdir, failure):
        def broken_watcher(path, callback):
            raise OSError("inotify limit reached")

        manager = ManualFixManager(watcher=broken_watcher)
        with pytest.raises(OSError):
            start(manager, workdir, failure)
        assert manager.list_sessions() == []


class TestChangeTracking:
    def test_changes_recorded_relative(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        watcher.emit("modified", workdir / "src" / "app.py")

        changes = manager.get_session(session.id).detected_changes
        assert [(c.path, c.type) for c in changes] == [("src/app.py", "modified")]

    def test_upsert_by_path(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        watcher.emit("created", workdir / "a.py")
        watcher.emit("modified", workdir / "b.py")
        watcher.emit("modified", workdir / "a.py")

        current = manager.get_session(session.id)
        assert [(c.path, c.type) for c in current.detected_changes] == [
            ("b.py", "modified"),
            ("a.py", "modified"),
        ]
        assert current.last_change_detected == current.detected_changes[-1].detected_at

    def test_ignored_paths_skipped(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        watcher.emit("modified", workdir / ".git" / "index")
        watcher.emit("created", workdir / "node_modules" / "x" / "index.js")
        watcher.emit("modified", workdir / "src" / ".app.py.swp")

        assert manager.get_session(session.id).detected_changes == []

    def test_paths_outside_workdir_skipped(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        watcher.emit("modified", workdir.parent / "elsewhere.txt")
        assert manager.get_session(session.id).detected_changes == []

    def test_on_change_called(self, manager, watcher, workdir, failure):
        seen: list[FileChange] = []
        start(manager, workdir, failure, on_change=seen.append)
        watcher.emit("deleted", workdir / "old.py")

        assert [(c.path, c.type) for c in seen] == [("old.py", "deleted")]

    def test_on_change_errors_contained(self, manager, watcher, workdir, failure):
        def explode(change):
            raise RuntimeError("listener bug")

        session = start(manager, workdir, failure, on_change=explode)
        watcher.emit("created", workdir / "a.py")

        assert len(manager.get_session(session.id).detected_changes) == 1

    def test_changes_after_end_ignored(self, manager, watcher, workdir, failure):
        seen: list[FileChange] = []
        session = start(manager, workdir, failure, on_change=seen.append)
        ended = manager.abort(session.id)
        watcher.emit("created", workdir / "late.py")

        assert ended.detected_changes == []
        assert seen == []
        assert manager.get_session(session.id) is None


class TestVerification:
    def test_all_passed_verifies(self, manager, workdir, failure):
        session = start(manager, workdir, failure)
        updated = manager.set_verification_results(session.id, PASSED)
        assert updated.verified is True
        assert set(updated.verification_results) == {"test", "lint"}

    def test_any_failure_unverifies(self, manager, workdir, failure):
        session = start(manager, workdir, failure)
        manager.set_verification_results(session.id, PASSED)
        updated = manager.set_verification_results(session.id, ONE_FAILED)
        assert updated.verified is False

    def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFoundError, match="Manual fix session not found: nope"):
            manager.set_verification_results("nope", PASSED)


class TestComplete:
    def test_requires_verification(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        with pytest.raises(FixNotVerifiedError, match="fix not verified"):
            manager.complete(session.id)

        assert manager.get_session(session.id).status == "active"
        assert watcher.handles[0].close_calls == 0

    def test_complete_releases_watch(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        watcher.emit("modified", workdir / "src" / "app.py")
        manager.set_verification_results(session.id, PASSED)

        completion = manager.complete(session.id)

        assert completion.session.status == "completed"
        assert watcher.handles[0].close_calls == 1
        assert not manager.registry.has_watch(session.id)
        assert manager.get_session(session.id) is None
        assert "Original issue: Feedback loop 'test' failed" in completion.continuation_prompt
        assert "- src/app.py (modified)" in completion.continuation_prompt

    def test_complete_twice_raises(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        manager.set_verification_results(session.id, PASSED)
        manager.complete(session.id)

        with pytest.raises(SessionNotFoundError):
            manager.complete(session.id)
        assert watcher.handles[0].close_calls == 1

    def test_unknown_session(self, manager):
        with pytest.raises(SessionNotFoundError):
            manager.complete("missing")


class TestAbortAndCleanup:
    def test_abort_releases_once(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        ended = manager.abort(session.id)

        assert ended.status == "aborted"
        assert manager.abort(session.id) is None
        assert manager.get_session(session.id) is None
        assert watcher.handles[0].close_calls == 1

    def test_abort_unknown_is_noop(self, manager):
        manager.abort("missing")

    def test_abort_after_complete_is_noop(self, manager, watcher, workdir, failure):
        session = start(manager, workdir, failure)
        manager.set_verification_results(session.id, PASSED)
        manager.complete(session.id)

        assert manager.abort(session.id) is None
        assert watcher.handles[0].close_calls == 1

    def test_cleanup_all(self, manager, watcher, workdir, failure):
        first = start(manager, workdir, failure)
        start(manager, workdir, failure)
        manager.abort(first.id)

        manager.cleanup_all()

        assert [h.close_calls for h in watcher.handles] == [1, 1]
        assert manager.list_sessions() == []
        assert manager.get_session(first.id) is None


class TestContinuationPrompt:
    def test_without_changes(self, manager, workdir, failure):
        session = start(manager, workdir, failure)
        prompt = build_continuation_prompt(session)
        assert prompt.startswith("The previous failure was fixed manually.")
        assert "No file changes were detected" in prompt


# =============================================================================
# Real watcher
# =============================================================================


class TestWatchDirectory:
    def test_close_is_idempotent(self):
        thread = threading.Thread(target=lambda: None)
        thread.start()
        handle = WatchHandle(thread, threading.Event())
        handle.close()
        handle.close()
        assert handle.closed is True

    def test_detects_file_creation(self, tmp_path):
        events: list[tuple[str, Path]] = []
        seen = threading.Event()

        def callback(change_type, path):
            events.append((change_type, path))
            seen.set()

        handle = watch_directory(tmp_path, callback, debounce_ms=50)
        try:
            # Give the watcher time to register before writing
            deadline = time.monotonic() + 10
            while not seen.is_set() and time.monotonic() < deadline:
                (tmp_path / "hello.txt").write_text(str(time.monotonic()))
                seen.wait(0.5)
        finally:
            handle.close()

        assert any(path.name == "hello.txt" for _, path in events)
        assert handle.closed is True


class TestRegistry:
    def test_record_change_unknown_session(self):
        registry = SessionRegistry()
        assert registry.record_change("missing", FileChange(path="a", type="created")) is False

    def test_clear_counts_released(self):
        registry = SessionRegistry()
        handle = FakeHandle()
        registry.attach_watch("fix-1", handle)
        assert registry.clear() == 1
        assert registry.clear() == 0
        assert handle.close_calls == 1
