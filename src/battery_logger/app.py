"""FastAPI entrypoint."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from .camera import CameraMonitor
from .config import configure_logging, settings
from .health import SysfsPowerSupply
from .sampler import RECORD_HEADER, BatterySampler, DeviceAvailability
from .sink import DataFileWriter

logger = logging.getLogger(__name__)

app = FastAPI(title="battery-logger", version="0.1.0")


@app.on_event("startup")
def startup() -> None:
    configure_logging(settings.log_level)
    app.state.camera = CameraMonitor(
        enabled=settings.camera_probe_enabled,
        probe_command=settings.camera_probe_command,
        probe_interval_sec=settings.camera_probe_interval_sec,
        probe_timeout_sec=settings.camera_probe_timeout_sec,
    )
    app.state.data_file = DataFileWriter(
        settings.log_file_name,
        log_root=settings.log_root,
        removable_media=settings.removable_media,
        directory_name=settings.log_directory_name,
        flush_interval_sec=settings.flush_interval_sec,
        max_buffer_bytes=settings.max_buffer_bytes,
        queue_size=settings.queue_size,
        poll_interval_sec=settings.sink_poll_interval_sec,
        header=RECORD_HEADER,
    )
    app.state.sampler = BatterySampler(
        SysfsPowerSupply(settings.power_supply_root),
        DeviceAvailability(app.state.camera, app.state.data_file),
        app.state.data_file,
        interval_sec=settings.sample_interval_sec,
        stop_timeout_sec=settings.stop_timeout_sec,
    )
    app.state.camera.start()
    app.state.sampler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    app.state.camera.stop()
    try:
        app.state.sampler.stop()
    except Exception:
        logger.exception("Battery logging did not shut down cleanly")
        raise


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": settings.service_name}


@app.get("/sampler/status")
def sampler_status() -> dict:
    return app.state.sampler.status()


@app.get("/logging/status")
def logging_status() -> dict:
    return app.state.data_file.status()


@app.get("/camera/status")
def camera_status() -> dict:
    return app.state.camera.status()
