"""
Command-line interface for wizardflow.

Usage:
    wizardflow parse response.txt
    wizardflow parse response.txt --chunk-size 7
    wizardflow run my_wizards.essay:wizard --context '{"topic": "tides"}'
    wizardflow run my_wizards.essay:build_wizard --log-format json
"""

import argparse
import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path

from wizardflow.errors import TaggedParseError
from wizardflow.flow.executor import Wizard
from wizardflow.flow.parser import TaggedFieldParser, parse_tagged_text
from wizardflow.observability import configure_logging

logger = logging.getLogger(__name__)


def _read_source(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def cmd_parse(args: argparse.Namespace) -> int:
    """Parse a tagged response file and print the fields as JSON."""
    try:
        text = _read_source(args.file)
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return 1

    if not args.chunk_size:
        try:
            result = parse_tagged_text(text)
        except TaggedParseError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(json.dumps(result, indent=2, default=str))
        return 0

    parser = TaggedFieldParser()
    for start in range(0, len(text), args.chunk_size):
        update = parser.push(text[start : start + args.chunk_size])
        if update is not None and update.done:
            break
    outcome = parser.finish()
    if outcome is None:
        print("Error: missing <response> container", file=sys.stderr)
        return 1
    for error in parser.errors:
        print(f"warning: {error}", file=sys.stderr)
    print(json.dumps(outcome.result, indent=2, default=str))
    return 0


def load_wizard(target: str) -> Wizard:
    """
    Resolve ``module:attr`` to a Wizard.

    ``attr`` may be a Wizard instance or a zero-argument factory returning one.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected MODULE:ATTR, got {target!r}")

    if str(Path.cwd()) not in sys.path:
        sys.path.insert(0, str(Path.cwd()))
    module = importlib.import_module(module_name)
    obj = getattr(module, attr)
    if callable(obj) and not isinstance(obj, Wizard):
        obj = obj()
    if not isinstance(obj, Wizard):
        raise TypeError(f"{target} is not a Wizard (got {type(obj).__name__})")
    return obj


def cmd_run(args: argparse.Namespace) -> int:
    """Import a wizard and run it to completion."""
    configure_logging(level=args.log_level, format=args.log_format)

    try:
        context = json.loads(args.context) if args.context else {}
    except json.JSONDecodeError as e:
        print(f"Error: --context is not valid JSON: {e}", file=sys.stderr)
        return 1
    if not isinstance(context, dict):
        print("Error: --context must be a JSON object", file=sys.stderr)
        return 1

    try:
        wizard = load_wizard(args.target)
    except (ImportError, AttributeError, ValueError, TypeError) as e:
        print(f"Error: cannot load wizard {args.target}: {e}", file=sys.stderr)
        return 1

    result = asyncio.run(wizard.run(context))

    summary = {
        "success": result.success,
        "stopped": result.stopped,
        "error": result.error,
        "steps_executed": result.steps_executed,
        "path": result.path,
        "total_tokens": result.total_tokens,
        "duration_ms": result.duration_ms,
    }
    if args.show_context:
        summary["context"] = result.context
    print(json.dumps(summary, indent=2, default=str))
    return 0 if result.success else 1


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    parse_parser = subparsers.add_parser(
        "parse",
        help="Parse a tagged response file into JSON",
        description="Parse a <response> tagged-field document and print its fields as JSON.",
    )
    parse_parser.add_argument("file", help="Response file to parse ('-' for stdin)")
    parse_parser.add_argument(
        "--chunk-size",
        type=int,
        default=0,
        help="Feed the streaming parser N characters at a time",
    )
    parse_parser.set_defaults(func=cmd_parse)

    run_parser = subparsers.add_parser(
        "run",
        help="Run a wizard",
        description="Import MODULE:ATTR (a Wizard or a factory returning one) and run it.",
    )
    run_parser.add_argument("target", help="Wizard location as MODULE:ATTR")
    run_parser.add_argument(
        "--context",
        "-c",
        default=None,
        help="Initial shared context as a JSON object",
    )
    run_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    run_parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "human", "json"],
        help="Log output format (default: auto)",
    )
    run_parser.add_argument(
        "--show-context",
        action="store_true",
        help="Include the final shared context in the output",
    )
    run_parser.set_defaults(func=cmd_run)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="wizardflow",
        description="wizardflow - run step wizards and inspect tagged model output",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
