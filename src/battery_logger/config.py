"""Configuration for battery-logger."""

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="BATTERY_LOGGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "battery-logger"
    sample_interval_sec: float = 10.0
    log_file_name: str = "Battery.txt"
    log_root: str = "/media"
    removable_media: bool = True
    log_directory_name: str = "Logging"
    flush_interval_sec: float = 30.0
    max_buffer_bytes: int = 1048576
    queue_size: int = 10000
    sink_poll_interval_sec: float = 0.5
    stop_timeout_sec: float = 5.0
    power_supply_root: str = "/sys/class/power_supply"
    camera_probe_enabled: bool = True
    camera_probe_command: str = "rpicam-hello --list-cameras"
    camera_probe_interval_sec: float = 30.0
    camera_probe_timeout_sec: float = 5.0
    log_level: str = "INFO"
    http_host: str = "0.0.0.0"
    http_port: int = 8000


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


settings = Settings()
