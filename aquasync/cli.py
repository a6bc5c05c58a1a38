"""Command-line interface for aquasync."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import AquaSyncApp
from .config import AquaSyncConfig, load_config

LOGGER = logging.getLogger(__name__)

_SECRET_KEYS = frozenset({"password", "auth_token"})
_MASK = "********"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aquasync",
        description="Water-quality telemetry dashboard and device control",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("start", help="Run the telemetry and control service")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration with secrets masked"
    )
    return parser


def render_config(config: AquaSyncConfig) -> str:
    lines = [f"Configuration loaded from {config.path!s}", ""]
    for section in config.raw.sections():
        lines.append(f"[{section}]")
        for key, value in config.raw[section].items():
            shown = _MASK if key in _SECRET_KEYS and value else value
            lines.append(f"{key} = {shown}")
        lines.append("")
    return "\n".join(lines)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)

    if args.command == "start":
        AquaSyncApp.start(config)
        return 0

    if args.command == "show-config":
        print(render_config(config))
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
