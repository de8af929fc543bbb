"""Periodic battery sampler feeding the CSV data file."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from .health import FALLBACK_SNAPSHOT, HealthSnapshot, HealthSource
from .sink import RecordSink

logger = logging.getLogger(__name__)

RECORD_HEADER = "timestamp,battery_level,voltage,external_power_connected,camera_connected,usb_drive_connected"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. `2024-01-01T00:00:10.000Z`."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class Record:
    timestamp: datetime
    snapshot: HealthSnapshot
    peripheral_connected: bool
    removable_storage_connected: bool

    def to_line(self) -> str:
        return ",".join(
            (
                format_timestamp(self.timestamp),
                f"{self.snapshot.battery_level:.2f}",
                f"{self.snapshot.battery_voltage:.3f}",
                str(bool(self.snapshot.external_power_connected)),
                str(bool(self.peripheral_connected)),
                str(bool(self.removable_storage_connected)),
            )
        )


class AvailabilitySource(Protocol):
    @property
    def peripheral_connected(self) -> bool: ...

    @property
    def removable_storage_connected(self) -> bool: ...


class DeviceAvailability:
    """Camera flag from the camera monitor, storage flag from the data file writer."""

    def __init__(self, camera, sink) -> None:
        self._camera = camera
        self._sink = sink

    @property
    def peripheral_connected(self) -> bool:
        return bool(getattr(self._camera, "is_available", False))

    @property
    def removable_storage_connected(self) -> bool:
        return bool(getattr(self._sink, "removable_storage_connected", False))


class SamplerState(str, enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class BatterySampler:
    """Writes one battery record to the sink every `interval_sec`.

    Lifecycle is one-shot: created -> running -> stopping -> stopped. The sink's
    run loop gets its own thread; `stop()` returns only after the sink drained
    and closed its file.
    """

    def __init__(
        self,
        health_source: HealthSource,
        availability: AvailabilitySource,
        sink: RecordSink,
        *,
        interval_sec: float = 10.0,
        stop_timeout_sec: float = 5.0,
        clock: Clock = _utc_now,
    ) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive.")
        self.interval_sec = float(interval_sec)
        self.stop_timeout_sec = float(stop_timeout_sec)
        self._health_source = health_source
        self._availability = availability
        self._sink = sink
        self._clock = clock
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._stopped = threading.Event()
        self._state = SamplerState.CREATED
        self._thread: threading.Thread | None = None
        self._sink_thread: threading.Thread | None = None
        self._header_written = False
        self._stats = {
            "ticks": 0,
            "records_submitted": 0,
            "tick_errors": 0,
            "fallback_snapshots": 0,
            "last_tick_ts": None,
        }

    @property
    def state(self) -> SamplerState:
        return self._state

    @property
    def header_written(self) -> bool:
        return self._header_written

    def start(self) -> None:
        with self._lock:
            if self._state is not SamplerState.CREATED:
                raise RuntimeError(f"Sampler cannot be started from state {self._state.value}.")
            self._sink.open()
            self._sink_thread = threading.Thread(target=self._run_sink, name="record-sink", daemon=True)
            self._thread = threading.Thread(target=self._run, name="battery-sampler", daemon=True)
            self._state = SamplerState.RUNNING
            self._sink_thread.start()
            self._thread.start()
        logger.info("Battery logging started - logging every %s seconds", self.interval_sec)

    def stop(self, timeout: float | None = None) -> None:
        """Stop ticking, then drain and close the sink.

        Sink errors are re-raised after the sampler has reached `stopped`.
        """
        timeout = self.stop_timeout_sec if timeout is None else timeout
        with self._lock:
            state = self._state
            if state is SamplerState.CREATED:
                self._state = SamplerState.STOPPED
                self._stopped.set()
                return
            if state is SamplerState.RUNNING:
                self._state = SamplerState.STOPPING
        if state is not SamplerState.RUNNING:
            self._stopped.wait(timeout)
            return

        logger.info("Stopping battery logging")
        self._cancel.set()
        try:
            if self._thread is not None:
                self._thread.join(timeout)
                if self._thread.is_alive():
                    logger.warning("Sampler thread still running after %ss", timeout)
            self._sink.stop(timeout)
            if self._sink_thread is not None:
                self._sink_thread.join(timeout)
        finally:
            with self._lock:
                self._state = SamplerState.STOPPED
            self._stopped.set()
            logger.info("Battery logging stopped")

    def close(self) -> None:
        """Release threads and the sink without a graceful drain. Never raises."""
        self._cancel.set()
        with self._lock:
            if self._state is SamplerState.STOPPED:
                return
            self._state = SamplerState.STOPPED
        try:
            self._sink.close()
        except Exception:
            logger.warning("Error closing record sink", exc_info=True)
        self._stopped.set()

    def tick(self) -> None:
        """Produce one record. Errors are logged and the tick is dropped."""
        self._stats["ticks"] += 1
        try:
            snapshot = self._read_snapshot()
            record = Record(
                timestamp=self._clock(),
                snapshot=snapshot,
                peripheral_connected=self._read_flag("peripheral_connected"),
                removable_storage_connected=self._read_flag("removable_storage_connected"),
            )
            line = record.to_line()
            if not self._header_written:
                self._sink.submit(RECORD_HEADER)
                self._header_written = True
            self._sink.submit(line)
            self._stats["records_submitted"] += 1
            self._stats["last_tick_ts"] = format_timestamp(record.timestamp)
            logger.debug(
                "Battery data logged: level=%.1f%% voltage=%.2fV external_power=%s camera=%s usb=%s",
                snapshot.battery_level,
                snapshot.battery_voltage,
                snapshot.external_power_connected,
                record.peripheral_connected,
                record.removable_storage_connected,
            )
        except Exception:
            self._stats["tick_errors"] += 1
            logger.exception("Error logging battery data")

    def status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "interval_sec": self.interval_sec,
            "header_written": self._header_written,
            "worker_alive": bool(self._thread and self._thread.is_alive()),
            "sink_alive": bool(self._sink_thread and self._sink_thread.is_alive()),
            "stats": dict(self._stats),
        }

    def _read_snapshot(self) -> HealthSnapshot:
        try:
            snapshot = self._health_source.get_snapshot()
        except Exception as exc:
            logger.warning("Could not read health snapshot (%s) - using fallback values", exc)
            snapshot = None
        if snapshot is None:
            self._stats["fallback_snapshots"] += 1
            return FALLBACK_SNAPSHOT
        return snapshot

    def _read_flag(self, name: str) -> bool:
        return bool(getattr(self._availability, name, False))

    def _wait_for_tick(self, deadline: float) -> bool:
        """Block until `deadline` (monotonic). False when cancelled."""
        return not self._cancel.wait(max(0.0, deadline - time.monotonic()))

    def _run(self) -> None:
        next_tick = time.monotonic() + self.interval_sec
        while self._wait_for_tick(next_tick):
            self.tick()
            next_tick += self.interval_sec
            now = time.monotonic()
            if next_tick < now:
                # Overran one or more periods: skip them instead of bursting.
                next_tick = now + self.interval_sec - ((now - next_tick) % self.interval_sec)
        logger.debug("Sampler loop exited")

    def _run_sink(self) -> None:
        try:
            self._sink.start(self._cancel)
        except Exception:
            logger.exception("Record sink run loop failed")
