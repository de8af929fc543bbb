"""Buffered, append-only CSV log writer."""

from __future__ import annotations

import logging
import os
import queue
import shutil
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, TextIO

logger = logging.getLogger(__name__)

_EXCLUDED_MOUNT_NAMES = ("system", "boot", "root")


class SinkStopError(RuntimeError):
    """Raised when the sink cannot drain and close cleanly."""


class RecordSink(Protocol):
    @property
    def removable_storage_connected(self) -> bool: ...

    def open(self) -> None: ...

    def start(self, cancel: threading.Event) -> None: ...

    def submit(self, line: str) -> None: ...

    def stop(self, timeout: float | None = None) -> None: ...

    def close(self) -> None: ...


def _is_writable_mount(path: Path) -> bool:
    if not path.is_dir():
        return False
    if any(name in path.name.lower() for name in _EXCLUDED_MOUNT_NAMES):
        return False
    probe = path / ".write_test"
    try:
        probe.write_text("test", encoding="utf-8")
        probe.unlink()
    except OSError:
        logger.warning("Drive %s is not writable", path)
        return False
    return True


def find_removable_drive(media_root: Path) -> Path | None:
    """Return the first writable mount under `media_root`.

    Looks at `/media/<user>/<drive>` first, then at drives mounted directly
    under `/media`.
    """
    if not media_root.is_dir():
        return None
    candidates: list[Path] = []
    try:
        top_level = sorted(p for p in media_root.iterdir() if p.is_dir())
        for entry in top_level:
            candidates.extend(sorted(p for p in entry.iterdir() if p.is_dir()))
        for entry in top_level:
            # A direct mount holds files or nothing at all; a user dir only holds mounts.
            children = list(entry.iterdir())
            if not children or any(child.is_file() for child in children):
                candidates.append(entry)
    except OSError:
        logger.exception("Error scanning %s for drives", media_root)
        return None
    for candidate in candidates:
        if _is_writable_mount(candidate):
            return candidate
    return None


class DataFileWriter:
    """Queue-fed file writer.

    Producers call `submit()`; the run loop started with `start()` batches
    queued lines and flushes them to `<root>/<directory_name>/<session>/<file_name>`.
    `stop()` drains whatever is still queued or buffered before closing the file.

    When `header` is set, every file this writer opens empty starts with it,
    and submitted copies of the header are not written again.
    """

    def __init__(
        self,
        file_name: str,
        *,
        log_root: str,
        removable_media: bool = True,
        directory_name: str = "Logging",
        flush_interval_sec: float = 30.0,
        max_buffer_bytes: int = 1048576,
        queue_size: int = 10000,
        poll_interval_sec: float = 0.5,
        header: str | None = None,
    ) -> None:
        self.file_name = file_name
        self.header = header
        self.log_root = Path(log_root)
        self.removable_media = bool(removable_media)
        self.directory_name = directory_name
        self.flush_interval_sec = float(flush_interval_sec)
        self.max_buffer_bytes = int(max_buffer_bytes)
        self.poll_interval_sec = max(0.01, float(poll_interval_sec))
        self._queue: queue.Queue[str] = queue.Queue(maxsize=max(1, int(queue_size)))
        self._buffer: list[str] = []
        self._buffer_bytes = 0
        self._io_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._closing = threading.Event()
        self._run_started = threading.Event()
        self._run_finished = threading.Event()
        self._closed = False
        self._released = False
        self._fh: TextIO | None = None
        self._session_name: str | None = None
        self._drive_path: Path | None = None
        self._file_path: Path | None = None
        self._drive_available = False
        self._last_flush_monotonic = time.monotonic()
        self._retry_after_monotonic = 0.0
        self._needs_header = False
        self._stats = {
            "lines_submitted": 0,
            "lines_written": 0,
            "lines_dropped": 0,
            "flushes": 0,
            "flush_errors": 0,
        }

    @property
    def removable_storage_connected(self) -> bool:
        return self._drive_available

    @property
    def current_file_path(self) -> Path | None:
        return self._file_path

    def open(self) -> None:
        """Prepare the log location. Raises OSError when it cannot be created."""
        if not self.removable_media:
            self.log_root.mkdir(parents=True, exist_ok=True)
        self._resolve_drive()

    def submit(self, line: str) -> None:
        if self._closed:
            self._count("lines_dropped")
            logger.warning("Dropping line for %s - writer is closed", self.file_name)
            return
        try:
            self._queue.put_nowait(line)
        except queue.Full:
            self._count("lines_dropped")
            logger.warning("Failed to queue data for %s - queue full", self.file_name)
            return
        self._count("lines_submitted")

    def start(self, cancel: threading.Event) -> None:
        """Run the write loop until `cancel` is set or `stop()` is called."""
        self._run_started.set()
        logger.info("DataFileWriter started for %s", self.file_name)
        try:
            while not cancel.is_set() and not self._closing.is_set():
                try:
                    line = self._queue.get(timeout=self.poll_interval_sec)
                except queue.Empty:
                    line = None
                with self._io_lock:
                    if self._released:
                        break
                    if line is not None:
                        self._append_to_buffer(line)
                        self._move_queued_to_buffer()
                    if self._flush_due():
                        try:
                            self._flush_buffer()
                        except OSError:
                            self._count("flush_errors")
                            self._retry_after_monotonic = time.monotonic() + self.flush_interval_sec
                            logger.exception(
                                "Error flushing data buffer for %s - retrying in %ss",
                                self.file_name,
                                self.flush_interval_sec,
                            )
        finally:
            self._run_finished.set()
            logger.info("DataFileWriter run loop exited for %s", self.file_name)

    def stop(self, timeout: float | None = None) -> None:
        """Drain queued and buffered lines, then close the file."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
        self._closing.set()
        if self._run_started.is_set() and not self._run_finished.wait(timeout):
            raise SinkStopError(f"DataFileWriter for {self.file_name} did not stop within {timeout}s")
        with self._io_lock:
            self._move_queued_to_buffer()
            try:
                self._flush_buffer()
            except OSError as exc:
                self._count("flush_errors")
                raise SinkStopError(f"Final flush failed for {self.file_name}") from exc
            finally:
                self._released = True
                self._close_file()
        logger.info("DataFileWriter stopped for %s", self.file_name)

    def close(self) -> None:
        """Release the file handle without draining."""
        with self._state_lock:
            self._closed = True
        self._closing.set()
        with self._io_lock:
            self._released = True
            self._close_file()

    def status(self) -> dict[str, Any]:
        files = []
        disk: dict[str, int] | None = None
        session_path = self._session_path()
        if self._drive_available and session_path is not None:
            try:
                for path in sorted(session_path.iterdir()):
                    if not path.is_file():
                        continue
                    stat = path.stat()
                    files.append(
                        {
                            "file_name": path.name,
                            "file_path": str(path),
                            "size_bytes": stat.st_size,
                            "last_modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
                        }
                    )
            except OSError:
                # Drive pulled or session not created yet.
                files = []
        if self._drive_available and self._drive_path is not None:
            try:
                usage = shutil.disk_usage(self._drive_path)
                disk = {"total_bytes": usage.total, "used_bytes": usage.used, "free_bytes": usage.free}
            except OSError:
                disk = None
        with self._state_lock:
            stats = dict(self._stats)
        current_file = self.current_file_path
        return {
            "file_name": self.file_name,
            "drive_available": self._drive_available,
            "drive_path": str(self._drive_path) if self._drive_path else None,
            "current_session": self._session_name,
            "current_file": str(current_file) if current_file else None,
            "queue_size": self._queue.qsize(),
            "buffered_lines": len(self._buffer),
            "closed": self._closed,
            "active_files": files,
            "disk": disk,
            "stats": stats,
        }

    def _count(self, key: str, amount: int = 1) -> None:
        with self._state_lock:
            self._stats[key] += amount

    def _append_to_buffer(self, line: str) -> None:
        self._buffer.append(line)
        self._buffer_bytes += len(line.encode("utf-8")) + 1

    def _move_queued_to_buffer(self) -> None:
        while True:
            try:
                line = self._queue.get_nowait()
            except queue.Empty:
                return
            self._append_to_buffer(line)

    def _flush_due(self) -> bool:
        if not self._buffer:
            return False
        if time.monotonic() < self._retry_after_monotonic:
            return False
        elapsed = time.monotonic() - self._last_flush_monotonic
        return elapsed >= self.flush_interval_sec or self._buffer_bytes >= self.max_buffer_bytes

    def _session_path(self) -> Path | None:
        if self._drive_path is None or self._session_name is None:
            return None
        return self._drive_path / self.directory_name / self._session_name

    def _resolve_drive(self) -> Path | None:
        if self.removable_media:
            drive = find_removable_drive(self.log_root)
        else:
            drive = self.log_root if self.log_root.is_dir() else None
        if drive is None:
            if self._drive_available:
                logger.warning("Log drive for %s is no longer available", self.file_name)
            self._drive_available = False
            return None
        if drive != self._drive_path:
            logger.info("Using log drive: %s", drive)
            self._close_file()
            self._drive_path = drive
        if self._session_name is None:
            self._session_name = datetime.now().strftime("%Y-%m-%d-%H-%M")
        self._drive_available = True
        return drive

    def _ensure_file(self) -> TextIO | None:
        if self._resolve_drive() is None:
            return None
        if self._fh is None:
            session_path = self._session_path()
            session_path.mkdir(parents=True, exist_ok=True)
            self._file_path = session_path / self.file_name
            self._fh = self._file_path.open("a", encoding="utf-8")
            self._needs_header = self.header is not None and os.fstat(self._fh.fileno()).st_size == 0
            logger.info("Data will be written to: %s", self._file_path)
        return self._fh

    def _flush_buffer(self) -> None:
        if not self._buffer:
            return
        fh = self._ensure_file()
        if fh is None:
            dropped = len(self._buffer)
            logger.warning("No log drive available - dropping %d data lines for %s", dropped, self.file_name)
            self._buffer.clear()
            self._buffer_bytes = 0
            self._count("lines_dropped", dropped)
            return
        # The header is owned by the file, not by the producer.
        lines = [line for line in self._buffer if self.header is None or line != self.header]
        if self._needs_header:
            lines.insert(0, self.header)
        content = "".join(f"{line}\n" for line in lines)
        start_size = os.fstat(fh.fileno()).st_size
        try:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        except OSError:
            self._close_file()
            self._truncate_file(start_size)
            raise
        self._needs_header = False
        written = len(lines)
        logger.debug("Flushed %d lines to %s", written, self._file_path)
        self._buffer.clear()
        self._buffer_bytes = 0
        self._last_flush_monotonic = time.monotonic()
        self._count("lines_written", written)
        self._count("flushes")

    def _truncate_file(self, size: int) -> None:
        """Cut a failed write back to the last complete flush."""
        try:
            os.truncate(self._file_path, size)
        except OSError:
            logger.warning("Could not roll back partial write in %s", self._file_path, exc_info=True)

    def _close_file(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.close()
        except OSError:
            logger.warning("Error closing %s", self._file_path, exc_info=True)
        self._fh = None
