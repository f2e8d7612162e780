"""CLI entrypoint for tutor-chat."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path

from .config import ensure_config_dir, load_config
from .console import run_console
from .logging_utils import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tutor-chat",
        description="Tutor Chat - streamed AI tutoring session in the terminal",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a config.toml (defaults to the user config directory)",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Load configuration, handle CLI flags, and run the console session."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("tutor-chat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"tutor-chat {version}")
        return

    if args.config is None:
        ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config["logging"])
    run_console(config)


if __name__ == "__main__":
    main()
