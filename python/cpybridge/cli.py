"""cpybridge CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List

from .config import ENV_LOG, BridgeConfig
from .errors import BridgeError, EnvironmentUnavailableError, ScriptError
from .executor import load_script
from .repl import BridgeREPL
from .session import Session

LOG = logging.getLogger("cpybridge.cli")

CLI_IDENTITY = "cpybridge-cli"


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run Python scripts in a companion pandas runtime")
    parser.add_argument("--python", help="Interpreter command for the companion (default: python)")
    parser.add_argument("--debug", action="store_true", help="Start the companion in debug mode")
    parser.add_argument("--log-level", default=os.environ.get(ENV_LOG, "WARNING"), help="Logging level (default WARNING)")
    parser.add_argument("--accept-timeout", type=float, help="Seconds to wait for the companion to connect")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("-c", "--command", help="Execute a script non-interactively and print its output")
    source.add_argument("-f", "--file", type=Path, help="Execute a script file non-interactively")
    parser.add_argument(
        "--history",
        type=Path,
        default=Path.home() / ".cpybridge-history",
        help="Path to the REPL history file",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    config = BridgeConfig.from_env(
        python_command=args.python,
        accept_timeout=args.accept_timeout,
        debug=True if args.debug else None,
    )
    session = Session(config)
    try:
        session.initialize()
    except EnvironmentUnavailableError as exc:
        print(f"Python environment is not usable:\n{exc.diagnostic}", file=sys.stderr)
        return 2
    except BridgeError as exc:
        print(f"Could not start the companion: {exc}", file=sys.stderr)
        return 2
    try:
        if args.command is not None:
            return _run_single_script(session, args.command)
        if args.file is not None:
            return _run_single_script(session, load_script(str(args.file)))
        repl = BridgeREPL(session, history_path=str(args.history))
        try:
            return repl.run()
        except KeyboardInterrupt:
            print()
            return 0
    except BridgeError as exc:
        LOG.debug("session failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        session.shutdown()


def _run_single_script(session: Session, script: str) -> int:
    with session.hold(CLI_IDENTITY) as handle:
        try:
            output = handle.run_script(script)
        except ScriptError as exc:
            sys.stderr.write(exc.stderr)
            return 1
    if output.stdout:
        sys.stdout.write(output.stdout)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
