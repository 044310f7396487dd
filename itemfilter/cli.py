#!/usr/bin/env python3
"""Command-line interface for itemfilter.

Two commands help filter authors work on a rule file outside the host:
- ``check``: compile a filter and report which blocks failed and why
- ``match``: evaluate items from a YAML file against a filter

Example:
    >>> from itemfilter.cli import main
    >>> main(["check", "pickit.ifl"])
    0
"""

import argparse
import sys
from pathlib import Path
from typing import Any, List, Optional

import yaml

from itemfilter.core.config import ConfigError, ConfigManager, ConfigSource
from itemfilter.core.constants import DEFAULT_IDENTITY_FIELD, ITEMFILTER_VERSION, ErrorCode
from itemfilter.core.logging import Logger, set_global_logger
from itemfilter.report import render_report
from itemfilter.rules.engine import ItemFilter, MatchStatus
from itemfilter.schema import ItemData, SchemaError

DESCRIPTION = "itemfilter - Rule-based item filtering"


class CLIError(Exception):
    """Exception raised for CLI-related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.INVALID_INPUT):
        super().__init__(message)
        self.error_code = error_code


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="itemfilter",
        description=DESCRIPTION,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report rules that fail to compile
  itemfilter check pickit.ifl

  # Show which rule picks up each item
  itemfilter match pickit.ifl items.yaml --all
        """,
    )

    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {ITEMFILTER_VERSION}",
    )

    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        type=str,
        help="Configuration file path (YAML format)",
    )

    log_group = parser.add_argument_group("logging options")

    log_group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    log_group.add_argument(
        "--log-file",
        metavar="FILE",
        type=str,
        help="Also write log messages to FILE",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    check = subparsers.add_parser("check", help="Compile a filter and report failures")
    check.add_argument("filter", metavar="FILTER", help="Filter file")
    check.add_argument(
        "--keep-comment-only",
        action="store_true",
        default=None,
        help="Report blocks made only of comments as failures",
    )

    match = subparsers.add_parser("match", help="Evaluate items against a filter")
    match.add_argument("filter", metavar="FILTER", help="Filter file")
    match.add_argument("items", metavar="ITEMS", help="YAML file with an item or a list of items")
    match.add_argument(
        "--all",
        action="store_true",
        help="List every matching rule, not just the deciding one",
    )

    return parser


def parse_arguments(args: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Raises:
        SystemExit: On invalid arguments or --help/--version
    """
    return build_parser().parse_args(args)


def build_config(args: argparse.Namespace) -> ConfigManager:
    """Layer the config file and command-line options over the defaults.

    Raises:
        CLIError: If the config file cannot be loaded
    """
    config = ConfigManager()

    if args.config:
        try:
            config.load_file(args.config)
        except ConfigError as e:
            raise CLIError(e.message, e.error_code) from e

    overrides: dict = {}
    if args.debug:
        overrides["logging"] = {"level": "DEBUG"}
    if args.log_file:
        overrides.setdefault("logging", {})["file"] = args.log_file
    if getattr(args, "keep_comment_only", None):
        overrides["filter"] = {"keep_comment_only_blocks": True}

    if overrides:
        config.load_dict({"itemfilter": overrides}, ConfigSource.CLI_ARGS)

    return config


def setup_logging(config: ConfigManager) -> Logger:
    """Create the logger described by the configuration."""
    logger = Logger("itemfilter", level=config.get("itemfilter.logging.level", "INFO"))

    log_file = config.get("itemfilter.logging.file")
    if log_file:
        logger.add_handler(logger.create_file_handler(log_file))

    set_global_logger(logger)
    return logger


def load_filter(path: str, config: ConfigManager, logger: Logger) -> ItemFilter:
    """Load a filter file with configured options.

    Raises:
        CLIError: If the file is missing or unreadable
    """
    if not Path(path).is_file():
        raise CLIError(f"Filter file does not exist: {path}", ErrorCode.NOT_FOUND)

    try:
        return ItemFilter.load(
            path,
            logger=logger,
            keep_comment_only=bool(config.get("itemfilter.filter.keep_comment_only_blocks", False)),
            identity_field=config.get("itemfilter.matcher.identity_field", DEFAULT_IDENTITY_FIELD),
        )
    except OSError as e:
        raise CLIError(f"Failed to read filter file: {path}\n{e}", ErrorCode.PERMISSION_DENIED) from e


def load_items(path: str) -> List[ItemData]:
    """Load items from a YAML file holding a mapping or a list of mappings.

    Raises:
        CLIError: If the file is missing, malformed, or describes an invalid item
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data: Any = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise CLIError(f"Items file does not exist: {path}", ErrorCode.NOT_FOUND) from e
    except yaml.YAMLError as e:
        raise CLIError(f"Failed to parse items file: {path}\n{e}") from e
    except OSError as e:
        raise CLIError(f"Failed to read items file: {path}\n{e}", ErrorCode.PERMISSION_DENIED) from e

    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise CLIError(f"Items file must contain a mapping or a list of mappings: {path}")

    items = []
    for index, entry in enumerate(data):
        try:
            items.append(ItemData.from_mapping(entry))
        except SchemaError as e:
            raise CLIError(f"Invalid item at index {index}: {e}") from e
    return items


def run_check(args: argparse.Namespace, config: ConfigManager, logger: Logger) -> int:
    """Print the load report; non-zero when any block failed."""
    item_filter = load_filter(args.filter, config, logger)
    print(render_report(item_filter), end="")
    return int(ErrorCode.INVALID_INPUT) if item_filter.errors else int(ErrorCode.SUCCESS)


def run_match(args: argparse.Namespace, config: ConfigManager, logger: Logger) -> int:
    """Print the decision for every item."""
    item_filter = load_filter(args.filter, config, logger)
    items = load_items(args.items)

    for item in items:
        label = item.base_name or item.name or repr(item)
        result = item_filter.evaluate(item)

        if result.status is MatchStatus.MATCHED:
            print(f"{label}: matched line {result.rule.start_line}")
        elif result.status is MatchStatus.ERROR:
            print(f"{label}: error on line {result.rule.start_line}: {result.error.__cause__}")
        else:
            print(f"{label}: no match")

        if args.all:
            for rule in item_filter.get_matching_rules(item):
                print(f"    line {rule.start_line}: {' '.join(rule.query.split())}")

    return int(ErrorCode.SUCCESS)


COMMANDS = {
    "check": run_check,
    "match": run_match,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    try:
        args = parse_arguments(argv)
        config = build_config(args)
        logger = setup_logging(config)
        return COMMANDS[args.command](args, config, logger)

    except CLIError as e:
        print(f"Error: {e}", file=sys.stderr)
        return int(e.error_code)

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
