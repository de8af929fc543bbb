"""Battery/power health snapshots read from the Linux power_supply class."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


_EXTERNAL_SUPPLY_TYPES = ("Mains", "USB", "Wireless")
_CHARGING_STATUSES = ("Charging", "Full")


class HealthReadError(RuntimeError):
    """Raised when no usable battery reading is available."""


@dataclass(frozen=True)
class HealthSnapshot:
    battery_level: float
    battery_voltage: float
    external_power_connected: bool


FALLBACK_SNAPSHOT = HealthSnapshot(battery_level=0.0, battery_voltage=0.0, external_power_connected=False)


class HealthSource(Protocol):
    def get_snapshot(self) -> HealthSnapshot: ...


def _read_attr(supply: Path, name: str) -> str | None:
    try:
        return (supply / name).read_text(encoding="utf-8").strip()
    except OSError:
        return None


class SysfsPowerSupply:
    """Health source backed by `/sys/class/power_supply`.

    The first supply of type `Battery` provides level (`capacity`, percent)
    and voltage (`voltage_now`, microvolts). External power is reported when an
    AC/USB/wireless supply is online or the battery says it is charging.
    """

    def __init__(self, root: str = "/sys/class/power_supply") -> None:
        self.root = Path(root)

    def _supplies(self) -> list[Path]:
        if not self.root.is_dir():
            raise HealthReadError(f"Power supply class not found: {self.root}")
        return sorted(p for p in self.root.iterdir() if p.is_dir())

    def get_snapshot(self) -> HealthSnapshot:
        supplies = self._supplies()
        battery = None
        external = False
        for supply in supplies:
            kind = _read_attr(supply, "type")
            if kind == "Battery" and battery is None:
                battery = supply
            elif kind in _EXTERNAL_SUPPLY_TYPES and _read_attr(supply, "online") == "1":
                external = True
        if battery is None:
            raise HealthReadError(f"No battery found under {self.root}")

        capacity = _read_attr(battery, "capacity")
        voltage_uv = _read_attr(battery, "voltage_now")
        if capacity is None or voltage_uv is None:
            raise HealthReadError(f"Battery {battery.name} is missing capacity/voltage_now")
        try:
            level = float(capacity)
            voltage = int(voltage_uv) / 1_000_000.0
        except ValueError as exc:
            raise HealthReadError(f"Unreadable battery values in {battery.name}") from exc

        if _read_attr(battery, "status") in _CHARGING_STATUSES:
            external = True
        return HealthSnapshot(battery_level=level, battery_voltage=voltage, external_power_connected=external)
