"""Command line entry point: forward to a running instance or become it."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .config import AppConfig, load_config
from .document import DocumentState, has_supported_extension
from .errors import MdGlanceError
from .instance import probe_and_forward


def _configure_logging() -> None:
    level_name = os.environ.get("MDGLANCE_LOG_LEVEL", "WARNING").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdglance",
        description="A minimal markdown viewer. Later launches hand their file to the running window.",
    )
    parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Markdown (.md, .markdown) or PlantUML (.puml, .plantuml) file to open.",
    )
    parser.add_argument(
        "--no-truncate",
        action="store_true",
        help="Render the entire file regardless of size.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"mdglance {__version__}")
    return parser


def _start_daemon(state: DocumentState, config: AppConfig) -> int:
    # Qt (and its GUI libraries) load only once this process is the daemon.
    from .window import run_daemon

    return run_daemon(state, config)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging()

    config = load_config()
    state = DocumentState(no_truncate=args.no_truncate or config.no_truncate)

    if args.path is None:
        # No file: just surface an existing window, or start an empty one.
        if probe_and_forward(None):
            return 0
        return _start_daemon(state, config)

    file_path = Path(args.path).expanduser()
    if not file_path.is_absolute():
        file_path = Path.cwd() / file_path
    try:
        found = file_path.exists()
    except OSError as exc:
        print(f"Error: Cannot access {file_path}: {exc}", file=sys.stderr)
        return 1
    if not found:
        print(f"Error: File not found: {file_path}", file=sys.stderr)
        return 1
    if not has_supported_extension(file_path):
        print(
            f"Error: Unsupported file type (expected .md, .markdown, .puml or .plantuml): {file_path}",
            file=sys.stderr,
        )
        return 1

    if probe_and_forward(file_path):
        return 0

    try:
        state.load(file_path)
    except MdGlanceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return _start_daemon(state, config)


if __name__ == "__main__":
    raise SystemExit(main())
