"""aquasync: water-quality telemetry windows and operator control sync."""

__version__ = "0.1.0"
