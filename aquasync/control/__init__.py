"""Operator control state, countdown and command publishing."""

from .countdown import CountdownHandle, CountdownProcess, CountdownState, format_time_left
from .publisher import CommandPublisher, InvalidCommandInput, describe_rejection
from .state_store import ChangeOrigin, ControlStateStore

__all__ = [
    "ChangeOrigin",
    "CommandPublisher",
    "ControlStateStore",
    "CountdownHandle",
    "CountdownProcess",
    "CountdownState",
    "InvalidCommandInput",
    "describe_rejection",
    "format_time_left",
]
