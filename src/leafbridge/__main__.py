"""Command-line entry point: ``python -m leafbridge``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from leafbridge.bridge import run_bridge
from leafbridge.config import BridgeConfig
from leafbridge.exceptions import BridgeError

_LOG = logging.getLogger("leafbridge")

DEFAULT_OPTIONS_PATH = Path("/data/options.json")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="leafbridge",
        description="Bridge vehicle telemetry and climate commands to MQTT.",
    )
    parser.add_argument(
        "--options",
        type=Path,
        default=None,
        help=f"Add-on options JSON file (default: {DEFAULT_OPTIONS_PATH} if present, else LEAF_* env vars).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args(argv)


def load_config(options: Path | None) -> BridgeConfig:
    """Load configuration from *options*, the default add-on file, or the environment."""
    if options is None and DEFAULT_OPTIONS_PATH.is_file():
        options = DEFAULT_OPTIONS_PATH
    if options is not None:
        return BridgeConfig.from_options_file(options).validate()
    return BridgeConfig.from_env().validate()


async def _run(config: BridgeConfig) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)
    await run_bridge(config, stop_event)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.options)
    except BridgeError as exc:
        print(f"[leafbridge] {exc}", file=sys.stderr)
        return 2

    try:
        asyncio.run(_run(config))
    except BridgeError as exc:
        _LOG.error("Bridge failed to start: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
