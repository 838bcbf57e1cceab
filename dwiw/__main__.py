"""Module entrypoint to run `python -m dwiw`."""

from __future__ import annotations

import argparse
import logging
import re
import sys
from pathlib import Path
from typing import Any, Sequence

from .config import load_config
from .errors import DWIWError
from .registry import ConnectionRegistry

_INTEGER = re.compile(r"-?(?:0|[1-9]\d*)")
_DECIMAL = re.compile(r"-?(?:0|[1-9]\d*)\.\d+")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dwiw", description="Run one query and print the rows as CSV.")
    parser.add_argument("sql", help="query to run; use ? for placeholders")
    parser.add_argument("values", nargs="*", help="values bound to the placeholders")
    parser.add_argument("--profile", help="profile name from the config file")
    parser.add_argument("--config", type=Path, help="config file (default ~/.config/dwiw/config.toml)")
    parser.add_argument("--database")
    parser.add_argument("--user")
    parser.add_argument("--password")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--timeout", type=float)
    parser.add_argument("--no-retry", action="store_true", help="fail at once if the server is down")
    parser.add_argument("--raw", action="store_true", help="bind every value as text")
    parser.add_argument("--verbose", action="store_true")
    return parser


def _coerce(value: str) -> Any:
    # Only canonical numerals become numbers, so "007" or "nan" stay text.
    if _INTEGER.fullmatch(value):
        return int(value)
    if _DECIMAL.fullmatch(value):
        return float(value)
    return value


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    options = {
        name: getattr(args, name)
        for name in ("database", "user", "password", "host", "port", "timeout")
        if getattr(args, name) is not None
    }
    if args.verbose:
        options["verbose"] = True
    values = list(args.values) if args.raw else [_coerce(value) for value in args.values]

    with ConnectionRegistry.from_config(load_config(args.config)) as registry:
        try:
            connection = registry.connect(args.profile, no_retry=args.no_retry, **options)
        except DWIWError as exc:
            print(f"dwiw: {exc}", file=sys.stderr)
            return 2
        if connection is None:
            print(f"dwiw: {registry.last_error}", file=sys.stderr)
            return 2
        output = connection.csv(args.sql, *values)
        if output is None:
            print(f"dwiw: {connection.last_error}", file=sys.stderr)
            return 1
        statement = connection.recent_statement
        if statement is not None and not statement.columns:
            print(f"{statement.rows} row(s) affected")
        else:
            sys.stdout.write(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
