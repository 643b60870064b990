"""Command-line interface for scale-bridge."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import ScaleBridgeApp
from .config import load_config
from .decoder import match_frame
from .devices.serial_scale import list_serial_ports
from .errors import ConfigError

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scale-bridge",
        description="Bridge between a serial weighing indicator and an HTTP backend",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Start the scale-bridge service")
    start_parser.add_argument(
        "--emulator",
        action="store_true",
        help="Use the simulated scale instead of the configured serial port",
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )
    subparsers.add_parser("list-ports", help="List serial ports visible to the system")

    decode_parser = subparsers.add_parser(
        "decode", help="Decode a single indicator frame and print the weight"
    )
    decode_parser.add_argument("frame", help="Raw frame text, e.g. 'ST,GS,+012345.0kg'")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "decode":
        match = match_frame(args.frame)
        if match is None:
            print("No weight found in frame")
            return 1
        print(f"{match.value:.1f} {match.unit} ({match.rule})")
        return 0

    if args.command == "list-ports":
        ports = list_serial_ports()
        if not ports:
            print("No serial ports found")
        for port in ports:
            print(f"{port['path']}\t{port['manufacturer']}")
        return 0

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        return 1

    if args.command == "start":
        if args.emulator:
            config = dataclasses.replace(config, emulator_mode=True)
        return ScaleBridgeApp.start(config)

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        print(json.dumps(config.public_dict(), indent=2, ensure_ascii=False))
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
