import shutil
import threading
import time
from pathlib import Path

import pytest

from battery_logger.health import HealthSnapshot
from battery_logger.sampler import BatterySampler
from battery_logger.sink import DataFileWriter, SinkStopError, find_removable_drive


def _writer(root: Path, **kwargs) -> DataFileWriter:
    options = {
        "log_root": str(root),
        "removable_media": False,
        "flush_interval_sec": 30.0,
        "poll_interval_sec": 0.01,
    }
    options.update(kwargs)
    return DataFileWriter("Battery.txt", **options)


def _session_files(root: Path) -> list[Path]:
    return sorted(root.glob("Logging/*/Battery.txt"))


def test_stop_drains_queued_lines_without_run_loop(tmp_path: Path) -> None:
    writer = _writer(tmp_path)
    writer.open()
    writer.submit("header")
    writer.submit("line-1")

    writer.stop(timeout=1.0)

    files = _session_files(tmp_path)
    assert len(files) == 1
    assert files[0].read_text(encoding="utf-8") == "header\nline-1\n"
    assert writer.removable_storage_connected is True


def test_run_loop_buffers_until_stop(tmp_path: Path) -> None:
    writer = _writer(tmp_path)
    writer.open()
    cancel = threading.Event()
    thread = threading.Thread(target=writer.start, args=(cancel,), daemon=True)
    thread.start()

    for i in range(5):
        writer.submit(f"line-{i}")
    cancel.set()
    thread.join(timeout=1.0)
    writer.stop(timeout=1.0)

    lines = _session_files(tmp_path)[0].read_text(encoding="utf-8").splitlines()
    assert lines == [f"line-{i}" for i in range(5)]
    assert writer.status()["stats"]["lines_written"] == 5


def test_flush_on_buffer_size(tmp_path: Path) -> None:
    writer = _writer(tmp_path, max_buffer_bytes=10)
    writer.open()
    cancel = threading.Event()
    thread = threading.Thread(target=writer.start, args=(cancel,), daemon=True)
    thread.start()
    try:
        writer.submit("0123456789abcdef")
        for _ in range(200):
            files = _session_files(tmp_path)
            if files and files[0].read_text(encoding="utf-8"):
                break
            time.sleep(0.01)
        assert _session_files(tmp_path)[0].read_text(encoding="utf-8") == "0123456789abcdef\n"
    finally:
        writer.stop(timeout=1.0)


def test_stop_is_idempotent_and_drops_late_lines(tmp_path: Path) -> None:
    writer = _writer(tmp_path)
    writer.open()
    writer.submit("first")
    writer.stop(timeout=1.0)
    writer.submit("late")
    writer.stop(timeout=1.0)

    assert _session_files(tmp_path)[0].read_text(encoding="utf-8") == "first\n"
    assert writer.status()["stats"]["lines_dropped"] == 1


def test_stop_times_out_when_run_loop_is_stuck(tmp_path: Path) -> None:
    writer = _writer(tmp_path)
    writer.open()
    # Simulate a run loop that started but never returns.
    writer._run_started.set()

    with pytest.raises(SinkStopError):
        writer.stop(timeout=0.05)


def test_full_queue_drops_line(tmp_path: Path) -> None:
    writer = _writer(tmp_path, queue_size=1)
    writer.submit("kept")
    writer.submit("dropped")

    stats = writer.status()["stats"]
    assert stats["lines_submitted"] == 1
    assert stats["lines_dropped"] == 1


def test_open_fails_when_root_cannot_be_created(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    writer = _writer(blocker / "logs")

    with pytest.raises(OSError):
        writer.open()


def test_removable_media_without_drive_drops_lines(tmp_path: Path) -> None:
    writer = _writer(tmp_path / "media", removable_media=True)
    writer.open()
    writer.submit("line")

    writer.stop(timeout=1.0)

    assert writer.removable_storage_connected is False
    assert writer.status()["stats"]["lines_dropped"] == 1


def test_find_removable_drive_prefers_user_mounts(tmp_path: Path) -> None:
    media = tmp_path / "media"
    (media / "pi" / "USBSTICK").mkdir(parents=True)
    (media / "bootfs").mkdir()
    (media / "bootfs" / "config.txt").write_text("x", encoding="utf-8")

    assert find_removable_drive(media) == media / "pi" / "USBSTICK"


def test_find_removable_drive_skips_system_mounts(tmp_path: Path) -> None:
    media = tmp_path / "media"
    (media / "pi" / "rootfs").mkdir(parents=True)

    assert find_removable_drive(media) is None
    assert find_removable_drive(tmp_path / "missing") is None


def test_removable_media_writes_to_drive_session(tmp_path: Path) -> None:
    media = tmp_path / "media"
    drive = media / "pi" / "USBSTICK"
    drive.mkdir(parents=True)
    writer = _writer(media, removable_media=True)
    writer.open()
    writer.submit("line")
    writer.stop(timeout=1.0)

    files = sorted(drive.glob("Logging/*/Battery.txt"))
    assert len(files) == 1
    assert files[0].read_text(encoding="utf-8") == "line\n"
    status = writer.status()
    assert status["drive_available"] is True
    assert status["drive_path"] == str(drive)
    assert status["active_files"][0]["file_name"] == "Battery.txt"


def test_close_releases_without_draining(tmp_path: Path) -> None:
    writer = _writer(tmp_path)
    writer.open()
    writer.submit("never written")

    writer.close()
    writer.close()

    assert _session_files(tmp_path) == []


HEADER = "timestamp,battery_level,voltage,external_power_connected,camera_connected,usb_drive_connected"


class SteadySource:
    def get_snapshot(self):
        return HealthSnapshot(50.0, 3.7, True)


class NoPeripherals:
    peripheral_connected = False
    removable_storage_connected = False


def _flush_now(writer: DataFileWriter) -> None:
    writer._move_queued_to_buffer()
    writer._flush_buffer()


def test_header_written_when_drive_appears_after_first_tick(tmp_path: Path) -> None:
    media = tmp_path / "media"
    writer = _writer(media, removable_media=True, header=HEADER)
    writer.open()
    sampler = BatterySampler(SteadySource(), NoPeripherals(), writer)

    sampler.tick()
    _flush_now(writer)
    assert writer.removable_storage_connected is False

    drive = media / "pi" / "USB"
    drive.mkdir(parents=True)
    sampler.tick()
    sampler.tick()
    writer.stop(timeout=1.0)

    lines = sorted(drive.glob("Logging/*/Battery.txt"))[0].read_text(encoding="utf-8").splitlines()
    assert lines[0] == HEADER
    assert lines.count(HEADER) == 1
    assert len(lines) == 3


def test_new_drive_file_gets_its_own_header(tmp_path: Path) -> None:
    media = tmp_path / "media"
    first = media / "pi" / "A_DRIVE"
    first.mkdir(parents=True)
    writer = _writer(media, removable_media=True, header=HEADER)
    writer.open()
    sampler = BatterySampler(SteadySource(), NoPeripherals(), writer)

    sampler.tick()
    _flush_now(writer)
    shutil.rmtree(first)
    second = media / "pi" / "B_DRIVE"
    second.mkdir(parents=True)
    sampler.tick()
    writer.stop(timeout=1.0)

    lines = sorted(second.glob("Logging/*/Battery.txt"))[0].read_text(encoding="utf-8").splitlines()
    assert lines[0] == HEADER
    assert lines.count(HEADER) == 1
    assert len(lines) == 2


class HalfWriteFile:
    """Writes half of what it is given, then fails like a full disk."""

    def __init__(self, real) -> None:
        self.real = real

    def write(self, content: str) -> int:
        self.real.write(content[: len(content) // 2])
        self.real.flush()
        raise OSError(28, "No space left on device")

    def flush(self) -> None:
        self.real.flush()

    def fileno(self) -> int:
        return self.real.fileno()

    def close(self) -> None:
        self.real.close()


def test_failed_write_is_rolled_back(tmp_path: Path) -> None:
    writer = _writer(tmp_path, header=HEADER)
    writer.open()
    writer.submit("line-0")
    _flush_now(writer)
    writer._fh = HalfWriteFile(writer._fh)

    writer.submit("line-1")
    writer.submit("line-2")
    with pytest.raises(OSError):
        _flush_now(writer)

    path = _session_files(tmp_path)[0]
    assert path.read_text(encoding="utf-8") == f"{HEADER}\nline-0\n"

    writer.stop(timeout=1.0)
    assert path.read_text(encoding="utf-8").splitlines() == [HEADER, "line-0", "line-1", "line-2"]


def test_failed_flush_backs_off_before_retrying(tmp_path: Path) -> None:
    writer = _writer(tmp_path, max_buffer_bytes=1, flush_interval_sec=30.0)
    writer.open()
    writer.submit("line-0")
    _flush_now(writer)
    writer._fh = HalfWriteFile(writer._fh)

    cancel = threading.Event()
    thread = threading.Thread(target=writer.start, args=(cancel,), daemon=True)
    thread.start()
    writer.submit("line-1")
    time.sleep(0.2)
    writer.submit("line-2")
    time.sleep(0.2)
    cancel.set()
    thread.join(timeout=1.0)

    assert writer.status()["stats"]["flush_errors"] == 1
    writer.stop(timeout=1.0)
    assert _session_files(tmp_path)[0].read_text(encoding="utf-8").splitlines() == ["line-0", "line-1", "line-2"]


def test_status_survives_vanished_session(tmp_path: Path) -> None:
    writer = _writer(tmp_path)
    writer.open()
    writer.submit("line")
    _flush_now(writer)
    current = writer.status()["current_file"]
    shutil.rmtree(tmp_path / "Logging")

    status = writer.status()

    assert current == str(writer.current_file_path)
    assert status["active_files"] == []
