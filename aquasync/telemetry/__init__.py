"""Telemetry windowing for the sensor feed."""

from .aggregator import AggregatorStatus, ChannelMessage, TelemetryAggregator, parse_history
from .decoder import DecodeResult, RejectReason, Rejected, decode
from .export import CSV_HEADER, export_csv, render_csv
from .window import RollingWindow

__all__ = [
    "AggregatorStatus",
    "CSV_HEADER",
    "ChannelMessage",
    "DecodeResult",
    "RejectReason",
    "Rejected",
    "RollingWindow",
    "TelemetryAggregator",
    "decode",
    "export_csv",
    "parse_history",
    "render_csv",
]
