#!/usr/bin/env python3
"""Main entry point for the dgrep coordinator."""

import argparse
import asyncio
import logging
import os
import sys
import time
from pathlib import Path

from pydantic import ValidationError

from dgrep.config import load_config
from dgrep.executor import Dispatcher
from dgrep.log import configure_logging
from dgrep.models import ConfigError, summarize
from dgrep.protocol import ExecutionRequest
from dgrep.report import format_results

logger = logging.getLogger(__name__)


def build_request(grep_args: list[str], path: str = "") -> ExecutionRequest:
    """Turn trailing command-line arguments into a request.

    The last argument is the pattern; everything before it is passed to grep
    as options.
    """
    if not grep_args:
        raise ConfigError("No search pattern given")
    try:
        return ExecutionRequest(
            pattern=grep_args[-1], path=path, options=tuple(grep_args[:-1])
        )
    except ValidationError as e:
        messages = "; ".join(err["msg"] for err in e.errors())
        raise ConfigError(f"Invalid grep arguments: {messages}") from None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dgrep",
        description="Run grep on many machines and report per machine",
        epilog=(
            "Unrecognized flags are passed to grep, e.g.: dgrep -i error. "
            "Put grep flags that clash with dgrep's own after '--'."
        ),
        allow_abbrev=False,
    )
    parser.add_argument("--config", type=Path, help="Path to YAML configuration file")
    parser.add_argument(
        "--targets",
        type=Path,
        help="JSON array of host:port addresses (default: sources.json)",
    )
    parser.add_argument("--path", help="File to search on every target")
    parser.add_argument("--dial-timeout", type=float, help="Seconds to connect")
    parser.add_argument("--call-timeout", type=float, help="Seconds to wait for a reply")
    parser.add_argument(
        "--max-concurrency", type=int, help="Targets contacted at the same time"
    )
    parser.add_argument(
        "--dashboard", action="store_true", help="Run with the TUI dashboard"
    )
    parser.add_argument(
        "--no-color", action="store_true", help="Disable ANSI colors in the report"
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("DGREP_LOG_LEVEL", "WARNING"),
        help="Logging level (default WARNING)",
    )
    parser.add_argument(
        "grep_args",
        nargs="*",
        help="grep options followed by the pattern",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)

    # Flags dgrep does not know are grep options; they come before the pattern
    grep_args = [*unknown, *args.grep_args]
    if "--" in grep_args:
        grep_args.remove("--")
    if not grep_args:
        parser.error("a search pattern is required")

    try:
        configure_logging(args.log_level)
    except ValueError as e:
        parser.error(f"invalid --log-level: {e}")

    # Load configuration
    try:
        config = load_config(args.config, args.targets)
        defaults = config.defaults
        if args.dial_timeout is not None:
            defaults.dial_timeout = args.dial_timeout
        if args.call_timeout is not None:
            defaults.call_timeout = args.call_timeout
        if args.max_concurrency is not None:
            defaults.max_concurrency = args.max_concurrency
        if args.path is not None:
            defaults.path = args.path
        _validate(defaults.dial_timeout, defaults.call_timeout, defaults.max_concurrency)
        request = build_request(grep_args, defaults.path)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    logger.info(
        "Dispatching pattern=%r to %d targets", request.pattern, len(config.targets)
    )

    if args.dashboard:
        # Imported here so headless runs do not pay for textual
        from dgrep.dashboard import Dashboard

        app = Dashboard(
            config.targets,
            request,
            defaults.dial_timeout,
            defaults.call_timeout,
            max_concurrency=defaults.max_concurrency,
        )
        app.run()
        return 0

    dispatcher = Dispatcher(max_concurrency=defaults.max_concurrency)
    start = time.monotonic()
    results = asyncio.run(
        dispatcher.dispatch(
            config.targets, request, defaults.dial_timeout, defaults.call_timeout
        )
    )
    elapsed = time.monotonic() - start

    color = not args.no_color and sys.stdout.isatty()
    print(format_results(results, summarize(results), elapsed, color=color))

    # Partial failure is reported, not fatal
    return 0


def _validate(dial_timeout: float, call_timeout: float, max_concurrency: int | None) -> None:
    if dial_timeout <= 0 or call_timeout <= 0:
        raise ConfigError("Timeouts must be positive")
    if max_concurrency is not None and max_concurrency < 1:
        raise ConfigError("--max-concurrency must be at least 1")


if __name__ == "__main__":
    sys.exit(main())
