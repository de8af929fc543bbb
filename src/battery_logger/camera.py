"""Camera availability probe based on rpicam-hello."""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import threading
import time
from typing import Any

logger = logging.getLogger(__name__)


def parse_camera_listing(output: str) -> bool:
    """Return True when an `rpicam-hello --list-cameras` listing names a camera.

    Camera entries look like `0 : imx708 [4608x2592 10-bit RGGB] (...)`.
    """
    if "No cameras available" in output:
        return False
    for line in output.splitlines():
        head, sep, _rest = line.strip().partition(":")
        if sep and head.strip().isdigit():
            return True
    return False


class CameraMonitor:
    """Background camera probe.

    `is_available` only reads the cached result so callers never wait on the
    probe subprocess.
    """

    def __init__(
        self,
        *,
        enabled: bool,
        probe_command: str,
        probe_interval_sec: float,
        probe_timeout_sec: float,
    ) -> None:
        self.enabled = bool(enabled)
        self.probe_command = shlex.split(probe_command)
        self.probe_interval_sec = max(1.0, float(probe_interval_sec))
        self.probe_timeout_sec = float(probe_timeout_sec)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._available = False
        self._reason = "disabled" if not self.enabled else "idle"
        self._last_probe_ts: str | None = None

    @property
    def is_available(self) -> bool:
        with self._lock:
            return self._available

    def probe(self) -> bool:
        if not self.probe_command:
            available, reason = False, "no_probe_command"
        elif shutil.which(self.probe_command[0]) is None:
            available, reason = False, f"missing_binary:{self.probe_command[0]}"
        else:
            try:
                proc = subprocess.run(
                    self.probe_command,
                    capture_output=True,
                    text=True,
                    timeout=self.probe_timeout_sec,
                )
            except subprocess.TimeoutExpired:
                available, reason = False, "probe_timeout"
            except OSError as exc:
                available, reason = False, f"probe_error:{exc}"
            else:
                # rpicam-hello prints the listing on stderr on some releases
                listing = f"{proc.stdout}\n{proc.stderr}"
                if proc.returncode != 0:
                    available, reason = False, f"probe_exit:{proc.returncode}"
                else:
                    available = parse_camera_listing(listing)
                    reason = "camera_found" if available else "no_camera"

        with self._lock:
            changed = available != self._available
            self._available = available
            self._reason = reason
            self._last_probe_ts = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        if changed:
            logger.info("Camera availability changed: %s (%s)", available, reason)
        return available

    def start(self) -> None:
        if not self.enabled:
            return
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._worker_loop, name="camera-probe", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread and thread.is_alive():
            thread.join(timeout=self.probe_timeout_sec + 1.0)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "available": self._available,
                "reason": self._reason,
                "probe_interval_sec": self.probe_interval_sec,
                "last_probe_ts": self._last_probe_ts,
                "worker_alive": bool(self._thread and self._thread.is_alive()),
            }

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.probe()
            except Exception:
                logger.exception("Camera probe failed")
            self._stop.wait(self.probe_interval_sec)
