"""
InstantConf — CLI entry point

Usage:
    instantconf
    instantconf --mode pending --subscribe --count 5
    python -m instantconf --config config/default.yaml --json

Exit status: 0 when no transaction failed, 1 on any failed verdict or a
run-fatal error, 2 on invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Any

import structlog
from dotenv import load_dotenv

from instantconf.config import SubmissionMode, load_config
from instantconf.engine.reporter import render_json, render_text
from instantconf.engine.service import VerificationEngine
from instantconf.errors import ConfigurationError, InstantConfError
from instantconf.telemetry import setup_logging

logger = structlog.get_logger("instantconf.main")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="instantconf",
        description="Verify instant-confirmation receipts against canonical finality",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("INSTANTCONF_CONFIG_PATH"),
        help="Path to YAML config file (default: INSTANTCONF_CONFIG_PATH env var)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in SubmissionMode],
        help="Status the synchronous submission blocks for",
    )
    parser.add_argument(
        "--subscribe",
        action="store_true",
        default=None,
        help="Also listen on the inclusion and preconfirmation push channels",
    )
    parser.add_argument("--count", type=int, help="Number of transactions to submit")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    """CLI flags that were actually given, shaped like the config tree."""
    overrides: dict[str, Any] = {}
    if args.mode is not None:
        overrides["mode"] = args.mode
    if args.count is not None:
        overrides["count"] = args.count
    if args.subscribe:
        overrides["subscription"] = {"enabled": True}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    return overrides


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        config = load_config(args.config, overrides_from_args(args))
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        engine = VerificationEngine(config)
        setup_logging(config.logging, run_id=engine.run_id)
        report = asyncio.run(engine.run())
    except ConfigurationError as exc:
        logger.error("configuration_error", error=str(exc))
        return EXIT_CONFIG
    except InstantConfError as exc:
        logger.error("run_aborted", error_type=type(exc).__name__, error=str(exc))
        return EXIT_FAILED

    if args.json:
        sys.stdout.buffer.write(render_json(report) + b"\n")
        sys.stdout.flush()
    else:
        print(render_text(report))
    return EXIT_FAILED if report.failed else EXIT_OK


def main() -> None:
    """CLI entry point."""
    sys.exit(run())


if __name__ == "__main__":
    main()
