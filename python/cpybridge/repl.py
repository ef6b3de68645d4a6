"""Interactive prompt that forwards Python lines to the companion."""

from __future__ import annotations

import csv
import logging
import shlex
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO

from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory, InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout

from .errors import BridgeError
from .schema import infer_schema
from .session import Session, SessionHandle

LOGGER = logging.getLogger(__name__)

REPL_IDENTITY = "cpybridge-repl"
DEFAULT_FRAME_PREVIEW = 10

HELP_TEXT = """\
Lines are executed in the companion interpreter; end a line with \\ to continue it.
  :type NAME               show the kind of a variable
  :get NAME                print a variable as text
  :frame NAME [N]          print the first N rows of a data frame (default 10)
  :load NAME PATH.csv      load a CSV file into a data frame
  :image NAME PATH.png     save an image variable as PNG
  :debug                   print and clear the companion capture buffers
  :help                    this text
  :quit                    leave"""


def _parse_cell(text: str) -> Any:
    if text == "":
        return None
    try:
        return float(text)
    except ValueError:
        return text


def read_csv_file(path: Path):
    """Read a plain CSV file; numeric-looking cells become floats."""
    with path.open("r", encoding="utf-8", newline="") as handle:
        reader = csv.reader(handle)
        try:
            header = next(reader)
        except StopIteration:
            raise ValueError(f"{path} is empty") from None
        rows = [[_parse_cell(cell) for cell in record] for record in reader if record]
    return infer_schema(header, rows), rows


class BridgeREPL:
    """prompt_toolkit REPL bound to one session ticket."""

    def __init__(
        self,
        session: Session,
        *,
        identity: Any = REPL_IDENTITY,
        history_path: Optional[str] = None,
        out: Optional[TextIO] = None,
        err: Optional[TextIO] = None,
    ) -> None:
        self.session = session
        self.identity = identity
        self.history_path = history_path
        self.out = out or sys.stdout
        self.err = err or sys.stderr
        self._buffer: List[str] = []
        self._meta: Dict[str, Callable[[SessionHandle, List[str]], bool]] = {
            "type": self._cmd_type,
            "get": self._cmd_get,
            "frame": self._cmd_frame,
            "load": self._cmd_load,
            "image": self._cmd_image,
            "debug": self._cmd_debug,
            "help": self._cmd_help,
            "quit": self._cmd_quit,
            "exit": self._cmd_quit,
        }

    def run(self) -> int:
        history = FileHistory(self.history_path) if self.history_path else InMemoryHistory()
        prompt = PromptSession(">>> ", history=history)
        with self.session.hold(self.identity) as handle:
            while True:
                try:
                    with patch_stdout():
                        line = prompt.prompt("... " if self._buffer else ">>> ")
                except KeyboardInterrupt:
                    self._buffer.clear()
                    continue
                except EOFError:
                    self._print()
                    return 0
                if not self.handle_line(handle, line):
                    return 0

    def handle_line(self, handle: SessionHandle, line: str) -> bool:
        """Process one input line; ``False`` ends the loop."""

        stripped = line.rstrip()
        if stripped.endswith("\\"):
            self._buffer.append(stripped[:-1])
            return True
        if self._buffer:
            self._buffer.append(stripped)
            source = "\n".join(self._buffer)
            self._buffer.clear()
        else:
            source = stripped
        if not source.strip():
            return True
        try:
            if source.lstrip().startswith(":"):
                return self._dispatch_meta(handle, source.strip()[1:])
            self._execute(handle, source)
        except (BridgeError, OSError, ValueError) as exc:
            LOGGER.debug("command failed", exc_info=True)
            self._print(f"error: {exc}", stream=self.err)
        return True

    def _print(self, text: str = "", stream: Optional[TextIO] = None) -> None:
        target = stream or self.out
        target.write(text if text.endswith("\n") else text + "\n")
        target.flush()

    def _execute(self, handle: SessionHandle, source: str) -> None:
        output = handle.execute_script(source)
        if output.stdout:
            self.out.write(output.stdout)
            self.out.flush()
        if output.stderr:
            self.err.write(output.stderr)
            self.err.flush()

    def _dispatch_meta(self, handle: SessionHandle, text: str) -> bool:
        argv = shlex.split(text)
        if not argv:
            return True
        name, *args = argv
        command = self._meta.get(name)
        if command is None:
            self._print(f"unknown command :{name} (try :help)", stream=self.err)
            return True
        return command(handle, args)

    def _require(self, args: List[str], count: int, usage: str) -> bool:
        if len(args) < count:
            self._print(f"usage: {usage}", stream=self.err)
            return False
        return True

    def _cmd_type(self, handle: SessionHandle, args: List[str]) -> bool:
        if self._require(args, 1, ":type NAME"):
            self._print(handle.variable_type(args[0]).value)
        return True

    def _cmd_get(self, handle: SessionHandle, args: List[str]) -> bool:
        if self._require(args, 1, ":get NAME"):
            self._print(handle.variable_as_string(args[0]))
        return True

    def _cmd_frame(self, handle: SessionHandle, args: List[str]) -> bool:
        if not self._require(args, 1, ":frame NAME [N]"):
            return True
        limit = int(args[1]) if len(args) > 1 else DEFAULT_FRAME_PREVIEW
        frame = handle.pull_frame(args[0])
        self._print(",".join(frame.schema.names))
        for row in frame.rows[:limit]:
            self._print(",".join("" if value is None else str(value) for value in row))
        if len(frame.rows) > limit:
            self._print(f"... {len(frame.rows) - limit} more rows")
        return True

    def _cmd_load(self, handle: SessionHandle, args: List[str]) -> bool:
        if not self._require(args, 2, ":load NAME PATH.csv"):
            return True
        schema, rows = read_csv_file(Path(args[1]))
        handle.push_rows(schema, rows, args[0])
        self._print(f"{args[0]}: {len(rows)} rows, {len(schema)} columns")
        return True

    def _cmd_image(self, handle: SessionHandle, args: List[str]) -> bool:
        if not self._require(args, 2, ":image NAME PATH.png"):
            return True
        data = handle.variable_as_image(args[0])
        Path(args[1]).write_bytes(data)
        self._print(f"wrote {len(data)} bytes to {args[1]}")
        return True

    def _cmd_debug(self, handle: SessionHandle, args: List[str]) -> bool:
        output = handle.debug_buffers()
        if output.stdout:
            self._print(output.stdout)
        if output.stderr:
            self._print(output.stderr, stream=self.err)
        return True

    def _cmd_help(self, handle: SessionHandle, args: List[str]) -> bool:
        self._print(HELP_TEXT)
        return True

    def _cmd_quit(self, handle: SessionHandle, args: List[str]) -> bool:
        return False
