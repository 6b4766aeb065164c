"""preexec command line entry point."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from .errors import InternalConsistencyError, IRParseError
from .llparse import parse_module
from .orchestrator import PreExecuteConfig, PreExecutor

LOGGER = logging.getLogger("preexec.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Pre-execute static constructors of a textual IR module")
    parser.add_argument("input", type=Path, help="Input .ll file")
    parser.add_argument("-o", "--output", type=Path, required=True, help="Rewritten .ll file")
    parser.add_argument("--report", help="Write a JSON report to PATH ('-' for stdout)")
    parser.add_argument(
        "--unrestricted",
        action="store_true",
        help="Emit pointers outside every known object as inttoptr literals",
    )
    parser.add_argument("--step-limit", type=int, default=None, help="Instructions per constructor before giving up")
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Keep trying later constructors after one is preserved",
    )
    parser.add_argument("--heap-prefix", default=None, help="Name prefix for synthesized heap globals")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("PREEXEC_LOG", "WARNING"),
        help="Logging level (default WARNING)",
    )
    return parser


def _config_from_args(args: argparse.Namespace) -> PreExecuteConfig:
    config = PreExecuteConfig(
        restricted_address_space=not args.unrestricted,
        stop_at_first_failure=not args.keep_going,
    )
    if args.step_limit is not None:
        config.step_limit = args.step_limit
    if args.heap_prefix:
        config.heap_global_prefix = args.heap_prefix
    return config


def _write_report(target: str, payload: dict) -> None:
    text = json.dumps(payload, indent=2)
    if target == "-":
        print(text)
        return
    Path(target).write_text(text + "\n", encoding="utf-8")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    try:
        module = parse_module(args.input.read_text(encoding="utf-8"))
    except OSError as exc:
        print(f"error: cannot read {args.input}: {exc}", file=sys.stderr)
        return 1
    except IRParseError as exc:
        print(f"error: {args.input}: {exc}", file=sys.stderr)
        return 1

    executor = PreExecutor(config=_config_from_args(args))
    try:
        report = executor.run_on_module(module)
    except InternalConsistencyError as exc:
        print(f"error: pre-execution aborted: {exc}", file=sys.stderr)
        return 1

    try:
        args.output.write_text(module.render(), encoding="utf-8")
        if args.report:
            _write_report(args.report, report.to_dict())
    except OSError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    LOGGER.debug("report: %s", report.to_dict())
    print(f"Wrote {args.output}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
