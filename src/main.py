# src/main.py — v3
"""CLI entry point — validate, process, guid commands.

Usage:
    entitysynth validate <rules-path>... [--builtin]
    entitysynth process <events.jsonl|-> [--rules PATH]... [-o OUT]
    entitysynth guid encode --account N --domain D --type T --identifier I
    entitysynth guid decode <guid>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Iterator
from pathlib import Path
from typing import IO, TYPE_CHECKING

from entitysynth.version import __version__

if TYPE_CHECKING:
    from entitysynth.config.settings import Settings

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    _setup_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="entitysynth",
        description=f"entitysynth v{__version__} — Entity synthesis and relationship engine",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- validate ---
    p_validate = subparsers.add_parser(
        "validate", help="Validate rule definition files",
    )
    p_validate.add_argument(
        "paths", type=Path, nargs="*", help="Rule files or directories",
    )
    p_validate.add_argument(
        "--builtin", action="store_true",
        help="Also load the built-in rule definitions",
    )
    p_validate.set_defaults(func=_cmd_validate)

    # --- process ---
    p_process = subparsers.add_parser(
        "process", help="Process a JSON-lines event file",
    )
    p_process.add_argument(
        "events", help="Path to a JSON-lines file of events, or '-' for stdin",
    )
    p_process.add_argument(
        "-r", "--rules", type=Path, action="append", default=[],
        help="Rule file or directory (repeatable; default: settings)",
    )
    p_process.add_argument(
        "--no-builtin", action="store_true",
        help="Do not load the built-in rule definitions",
    )
    p_process.add_argument(
        "-o", "--output", type=Path, default=None,
        help="Write one JSON result per event here (default: stdout)",
    )
    p_process.add_argument(
        "-c", "--concurrency", type=int, default=None,
        help="Number of concurrent workers (default: settings)",
    )
    p_process.add_argument(
        "--store", choices=["memory", "sqlite", "redis"], default=None,
        help="Store backend (default: settings)",
    )
    p_process.set_defaults(func=_cmd_process)

    # --- guid ---
    p_guid = subparsers.add_parser("guid", help="Encode or decode entity GUIDs")
    guid_sub = p_guid.add_subparsers(dest="guid_command")

    p_encode = guid_sub.add_parser("encode", help="Build a GUID from its parts")
    p_encode.add_argument("--account", type=int, required=True)
    p_encode.add_argument("--domain", required=True)
    p_encode.add_argument("--type", dest="entity_type", required=True)
    p_encode.add_argument("--identifier", required=True)
    p_encode.set_defaults(func=_cmd_guid_encode)

    p_decode = guid_sub.add_parser("decode", help="Split a GUID into its parts")
    p_decode.add_argument("guid")
    p_decode.set_defaults(func=_cmd_guid_decode)

    return parser


async def _cmd_validate(args: argparse.Namespace) -> int:
    """Load rule files and report what they define."""
    from entitysynth.core.errors import InvalidRuleDefinition
    from entitysynth.rules.loader import load_rule_set

    if not args.paths and not args.builtin:
        logger.error("Nothing to validate: pass rule paths or --builtin")
        return 1

    try:
        rule_set = load_rule_set(args.paths, include_builtin=args.builtin)
    except InvalidRuleDefinition as exc:
        print(f"INVALID  {exc.source}: {exc.reason}")
        return 1

    print(f"\nRule set {rule_set.version} is valid:")
    print(f"  Files:          {len(rule_set.sources)}")
    print(f"  Providers:      {', '.join(rule_set.providers) or '-'}")
    print(f"  Synthesis:      {len(rule_set.synthesis)}")
    print(f"  Relationships:  {len(rule_set.relationships)}")
    return 0


async def _cmd_process(args: argparse.Namespace) -> int:
    """Run events through the engine and emit one result line per event."""
    from entitysynth.config.settings import load_settings
    from entitysynth.pipeline.engine import Engine
    from entitysynth.pipeline.processor import ProcessResult

    overrides: dict[str, object] = {"sweep_enabled": False}
    if args.rules:
        overrides["rules_paths"] = ",".join(str(p) for p in args.rules)
    if args.no_builtin:
        overrides["rules_include_builtin"] = False
    if args.store:
        overrides["store_backend"] = args.store
    settings = load_settings(**overrides)
    _apply_logging_settings(settings, args.verbose)

    if args.events != "-" and not Path(args.events).is_file():
        logger.error("File not found: %s", args.events)
        return 1

    out: IO[str] = (
        args.output.open("w", encoding="utf-8") if args.output else sys.stdout
    )

    def emit(result: ProcessResult) -> None:
        out.write(result.model_dump_json() + "\n")

    try:
        async with Engine(settings) as engine:
            source = sys.stdin if args.events == "-" else open(args.events, encoding="utf-8")
            with source:
                summary = await engine.processor.process_stream(
                    _read_events(source), args.concurrency, on_result=emit
                )
            snapshot = engine.stats()
    finally:
        if args.output:
            out.close()

    print(f"\nProcessing complete:", file=sys.stderr)
    print(f"  Events:         {summary.events}", file=sys.stderr)
    print(f"  Failed:         {summary.failed}", file=sys.stderr)
    print(f"  Entities:       {summary.entities}", file=sys.stderr)
    print(f"  Relationships:  {summary.relationships}", file=sys.stderr)
    print(f"  No match:       {snapshot.no_match_total}", file=sys.stderr)
    return 0 if summary.failed == 0 else 2


async def _cmd_guid_encode(args: argparse.Namespace) -> int:
    from entitysynth.engine.guid import encode_guid

    try:
        print(encode_guid(args.account, args.domain, args.entity_type, args.identifier))
    except ValueError as exc:
        logger.error("Cannot encode GUID: %s", exc)
        return 1
    return 0


async def _cmd_guid_decode(args: argparse.Namespace) -> int:
    from entitysynth.core.errors import InvalidGuid
    from entitysynth.engine.guid import decode_guid

    try:
        parts = decode_guid(args.guid)
    except InvalidGuid as exc:
        logger.error("%s", exc)
        return 1
    print(json.dumps(parts._asdict()))
    return 0


def _read_events(source: IO[str]) -> Iterator[dict]:
    """Yield JSON objects from a JSON-lines stream, skipping bad lines."""
    for lineno, line in enumerate(source, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Line %d: invalid JSON (%s), skipped", lineno, exc)
            continue
        if not isinstance(event, dict):
            logger.warning("Line %d: not a JSON object, skipped", lineno)
            continue
        yield event


def _setup_logging(verbose: bool) -> None:
    """Configure logging for CLI usage."""
    from entitysynth.logging.logger import setup_logging

    setup_logging(level="DEBUG" if verbose else "INFO", log_format="text")


def _apply_logging_settings(settings: Settings, verbose: bool) -> None:
    """Reconfigure logging from ENTITYSYNTH_LOG_* settings; --verbose still wins."""
    from entitysynth.logging.logger import setup_logging_from_settings

    setup_logging_from_settings(settings, level="DEBUG" if verbose else None)


if __name__ == "__main__":
    sys.exit(main())
