"""
Helpers shared by the per-stage command-line tools.

Every tool follows the same contract: JSON result on stdout, a
human-readable summary on stderr, and a non-zero exit status only when a
precondition fails (missing argument, unreadable file) or, for the
validators, when validation fails.
"""

import argparse
import json
import logging
import os
import sys

from . import config
from .errors import MalformedInput

EXIT_OK = 0
EXIT_FAILURE = 1


def setup_logging(level: str = config.LOG_LEVEL) -> None:
    """Send log records to stderr so stdout stays clean JSON."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default=config.LOG_LEVEL,
        help="Logging level for stderr diagnostics (default: %(default)s)",
    )


def load_json_file(path: str):
    """Read a JSON document from disk, raising MalformedInput on failure."""
    if not path or not os.path.isfile(path):
        raise MalformedInput(f"File not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise MalformedInput(f"Could not read JSON from {path}: {e}") from e


def load_optional_json_file(path: str):
    """Like load_json_file, but a missing path yields None."""
    if not path:
        return None
    return load_json_file(path)


def read_text_input(path: str = None) -> str:
    """Read the positional input file, or stdin when no path is given."""
    if path and path != "-":
        if not os.path.isfile(path):
            raise MalformedInput(f"File not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    if sys.stdin is None or sys.stdin.isatty():
        raise MalformedInput("No input provided via argument or stdin")
    return sys.stdin.read()


def emit_json(payload, output_path: str = None) -> None:
    """Write the JSON result to stdout, and to output_path when given."""
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if output_path:
        directory = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(directory, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(text + "\n")
    sys.stdout.write(text + "\n")


def print_summary(text: str) -> None:
    sys.stderr.write(text.rstrip() + "\n")
