"""Periodic battery/power telemetry logger."""
