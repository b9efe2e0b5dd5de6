"""Tests for the folder watcher."""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileModifiedEvent, FileMovedEvent

from bucketsync.storage import TransientStoreError
from bucketsync.sync.types import ReconcileResult, SyncFolder, SyncFolderDisabledError
from bucketsync.sync.watcher import FolderChangeHandler, FolderWatcher


def _folder(path: Path, folder_id: int = 1, enabled: bool = True) -> SyncFolder:
    return SyncFolder(id=folder_id, local_path=str(path), remote_prefix="backup/", enabled=enabled)


class TestFolderChangeHandler:
    """Tests for event debouncing."""

    def test_debounces_bursts(self, tmp_path: Path) -> None:
        """A burst of events should produce one trigger after the delay."""
        fired: list[int] = []
        handler = FolderChangeHandler(_folder(tmp_path), fired.append, delay=0.1)

        for i in range(5):
            handler.on_modified(FileModifiedEvent(str(tmp_path / f"f{i}.txt")))
        assert fired == []

        time.sleep(0.3)
        assert fired == [1]

    def test_ignored_paths(self, tmp_path: Path) -> None:
        """Changes to ignored files should not trigger a pass."""
        fired: list[int] = []
        handler = FolderChangeHandler(_folder(tmp_path), fired.append, delay=0.05)

        handler.on_created(FileCreatedEvent(str(tmp_path / "scratch.tmp")))
        handler.on_created(FileCreatedEvent(str(tmp_path / ".git" / "index")))
        time.sleep(0.2)

        assert fired == []

    def test_directory_events_ignored(self, tmp_path: Path) -> None:
        """Directory events alone should not trigger a pass."""
        fired: list[int] = []
        handler = FolderChangeHandler(_folder(tmp_path), fired.append, delay=0.05)

        handler.on_created(DirCreatedEvent(str(tmp_path / "new")))
        time.sleep(0.2)

        assert fired == []

    def test_move_into_folder(self, tmp_path: Path) -> None:
        """A rename from an ignored name to a real one should trigger."""
        fired: list[int] = []
        handler = FolderChangeHandler(_folder(tmp_path), fired.append, delay=0.05)

        handler.on_moved(
            FileMovedEvent(str(tmp_path / "video.tmp"), str(tmp_path / "video.mkv"))
        )
        time.sleep(0.2)

        assert fired == [1]

    def test_stop_cancels_timer(self, tmp_path: Path) -> None:
        """stop() should drop a pending trigger."""
        fired: list[int] = []
        handler = FolderChangeHandler(_folder(tmp_path), fired.append, delay=0.1)

        handler.on_created(FileCreatedEvent(str(tmp_path / "a.txt")))
        handler.stop()
        time.sleep(0.2)

        assert fired == []


class TestFolderWatcher:
    """Tests for FolderWatcher."""

    @pytest.fixture
    def engine(self, tmp_path: Path) -> MagicMock:
        """Engine double with one enabled and one disabled folder."""
        (tmp_path / "on").mkdir()
        (tmp_path / "off").mkdir()
        engine = MagicMock()
        engine.list_sync_folders.return_value = [
            _folder(tmp_path / "on", folder_id=1),
            _folder(tmp_path / "off", folder_id=2, enabled=False),
        ]
        engine.reconcile_now.side_effect = lambda folder_id: ReconcileResult(folder_id=folder_id)
        return engine

    def test_initial_pass_on_enabled_folders(self, engine: MagicMock) -> None:
        """start() should run one pass on each enabled folder."""
        with FolderWatcher(engine, debounce=0.05) as watcher:
            assert watcher.is_running

        engine.reconcile_now.assert_called_once_with(1)
        assert not watcher.is_running

    def test_change_triggers_pass(self, engine: MagicMock, tmp_path: Path) -> None:
        """Writing a file in a watched folder should run another pass."""
        with FolderWatcher(engine, debounce=0.1):
            (tmp_path / "on" / "new.txt").write_text("hello")
            deadline = time.monotonic() + 5.0
            while engine.reconcile_now.call_count < 2 and time.monotonic() < deadline:
                time.sleep(0.05)

        assert engine.reconcile_now.call_count >= 2

    def test_interval_pass(self, engine: MagicMock) -> None:
        """An interval should run passes without any change."""
        with FolderWatcher(engine, debounce=10.0, interval=0.05):
            time.sleep(0.3)

        assert engine.reconcile_now.call_count >= 2

    def test_trigger_failure_is_logged(self, engine: MagicMock) -> None:
        """A failing pass should not raise out of trigger()."""
        engine.reconcile_now.side_effect = TransientStoreError("listing failed")
        watcher = FolderWatcher(engine)

        assert watcher.trigger(1) is None

        engine.reconcile_now.side_effect = SyncFolderDisabledError("disabled")
        assert watcher.trigger(1) is None

    def test_one_pass_per_folder_at_a_time(self, engine: MagicMock) -> None:
        """A trigger while a pass is running should be skipped."""
        entered = threading.Event()
        release = threading.Event()

        def slow(folder_id: int) -> ReconcileResult:
            entered.set()
            release.wait(5.0)
            return ReconcileResult(folder_id=folder_id)

        engine.reconcile_now.side_effect = slow
        watcher = FolderWatcher(engine)
        thread = threading.Thread(target=watcher.trigger, args=(1,))
        thread.start()
        entered.wait(5.0)

        assert watcher.trigger(1) is None

        release.set()
        thread.join(5.0)
        assert engine.reconcile_now.call_count == 1
        assert len(watcher.results) == 1

    def test_keeps_last_result_per_folder(self, engine: MagicMock) -> None:
        """Repeated passes replace the stored result instead of piling up."""
        watcher = FolderWatcher(engine)

        for _ in range(5):
            watcher.trigger(1)
        last = watcher.trigger(2)

        assert set(watcher.results) == {1, 2}
        assert watcher.results[2] is last
