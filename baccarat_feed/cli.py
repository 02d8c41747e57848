from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import fields
from typing import Any

from .config import Config, _is_field_type, _parse_bool, load_env
from .errors import ConfigurationError
from .store import GameStore
from .store_inspect import summarize_groups
from .worker import run_worker


def _str2bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    try:
        return _parse_bool(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        name = field.name.replace("_", "-")
        if _is_field_type(field.type, bool, "bool"):
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is None:
            continue
        if _is_field_type(field.type, bool, "bool"):
            overrides[field.name] = _str2bool(value)
        elif _is_field_type(field.type, int, "int"):
            overrides[field.name] = int(value)
        elif _is_field_type(field.type, float, "float"):
            overrides[field.name] = float(value)
        else:
            overrides[field.name] = value
    return overrides


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="baccarat-feed")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    _add_config_args(common)

    run = subparsers.add_parser("run", parents=[common])
    run.add_argument("--run-id", default=None)

    groups = subparsers.add_parser("groups", parents=[common])
    groups.add_argument("--limit", type=int, default=10)

    args = parser.parse_args(argv)
    overrides = _cli_overrides(args)
    config = Config.from_env_and_cli(overrides, load_env(os.environ))

    if args.command == "run":
        try:
            config.validate()
        except ConfigurationError as exc:
            print(f"configuration error: {exc}", file=sys.stderr)
            return 1
        return run_worker(config, run_id=args.run_id)
    if args.command == "groups":
        store = GameStore(config.games_path)
        summaries = summarize_groups(store.iter_games(), limit=args.limit)
        print(json.dumps(summaries, ensure_ascii=True, separators=(",", ":")))
        return 0
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
