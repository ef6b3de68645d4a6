"""Companion server.

Usage: server.py PORT [debug]

Connects back to the host on PORT, acknowledges with its PID and then serves
commands one at a time until told to shut down or the host goes away.
Frames are pandas DataFrames; rows travel in the bridge CSV dialect.
"""

import base64
import io
import json
import logging
import math
import os
import socket
import struct
import sys
import traceback

import numpy as np
import pandas as pd

LOG = logging.getLogger("cpybridge.companion")

HOST_ENV = "CPYBRIDGE_COMPANION_HOST"
FRAME_HEADER = struct.Struct(">I")
ROW_DELIMITER = "#||#"
MISSING_VALUE = "?"
LF_PLACEHOLDER = "<lf>"
CR_PLACEHOLDER = "<cr>"

_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    "\t": "\\t",
    "\n": "\\n",
    "\r": "\\r",
    '"': '\\"',
    "%": "\\%",
    "\x1e": "\\u001E",
}
_UNESCAPES = {"t": "\t", "n": "\n", "r": "\r"}
_QUOTE_TRIGGERS = frozenset("{}, ")


class StreamClosed(Exception):
    pass


class CommandError(Exception):
    pass


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


def read_exact(sock, size):
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = sock.recv(min(remaining, 65536))
        if not chunk:
            raise StreamClosed("host closed the connection")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_frame(sock):
    (length,) = FRAME_HEADER.unpack(read_exact(sock, FRAME_HEADER.size))
    return read_exact(sock, length) if length else b""


def write_frame(sock, payload):
    sock.sendall(FRAME_HEADER.pack(len(payload)) + payload)


def send_message(sock, message):
    write_frame(sock, json.dumps(message, separators=(",", ":")).encode("utf-8"))


def receive_message(sock):
    return json.loads(read_frame(sock).decode("utf-8"))


def ok(**fields):
    message = {"response": "ok"}
    message.update(fields)
    return message


def error(text):
    return {"response": "error", "error_message": text}


def _describe(exc):
    try:
        text = str(exc)
    except Exception:
        text = ""
    return text or exc.__class__.__name__


# ---------------------------------------------------------------------------
# CSV dialect
# ---------------------------------------------------------------------------


def quote(text):
    escaped = any(ch in _ESCAPES for ch in text)
    if escaped:
        text = "".join(_ESCAPES.get(ch, ch) for ch in text)
    if escaped or text == "" or text == MISSING_VALUE or any(ch in _QUOTE_TRIGGERS for ch in text):
        return "'" + text + "'"
    return text


def split_record(record):
    cells = []
    buf = []
    quoted = False
    in_quotes = False
    pos = 0
    end = len(record)
    while pos < end:
        ch = record[pos]
        if ch == "\\" and pos + 1 < end:
            nxt = record[pos + 1]
            digits = record[pos + 2 : pos + 6]
            if nxt == "u" and len(digits) == 4 and all(c in "0123456789abcdefABCDEF" for c in digits):
                buf.append(chr(int(digits, 16)))
                pos += 6
            else:
                buf.append(_UNESCAPES.get(nxt, nxt))
                pos += 2
            continue
        if in_quotes:
            if ch == "'":
                in_quotes = False
            else:
                buf.append(ch)
        elif ch == "'":
            in_quotes = True
            quoted = True
        elif ch == ",":
            cells.append(("".join(buf), quoted))
            buf = []
            quoted = False
        else:
            buf.append(ch)
        pos += 1
    if in_quotes:
        raise CommandError("unterminated quoted value")
    cells.append(("".join(buf), quoted))
    return cells


def _is_missing(value):
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _convert_column(kind, cells):
    values = []
    for text, quoted in cells:
        if not quoted and text == MISSING_VALUE:
            values.append(None)
        elif kind == "number":
            values.append(float(text))
        elif kind == "boolean":
            values.append(text.strip().lower() in ("1", "true"))
        elif kind == "date":
            values.append(int(float(text)))
        else:
            values.append(text.replace(LF_PLACEHOLDER, "\n").replace(CR_PLACEHOLDER, "\r"))
    if kind == "number":
        return pd.Series([np.nan if v is None else v for v in values], dtype="float64")
    if kind == "date":
        return pd.Series(pd.to_datetime(values, unit="ms"))
    if kind == "boolean" and None not in values:
        return pd.Series(values, dtype="bool")
    return pd.Series(values, dtype="object")


def csv_to_frame(text, fields, num_rows):
    records = text.split(ROW_DELIMITER) if text else []
    if records and records[-1] == "":
        records.pop()
    body = records[1:]
    if len(body) != num_rows:
        raise CommandError("expected %d rows, received %d" % (num_rows, len(body)))
    columns = [[] for _ in fields]
    for index, record in enumerate(body):
        record = record.replace("\n", LF_PLACEHOLDER).replace("\r", CR_PLACEHOLDER)
        cells = split_record(record)
        if len(cells) != len(fields):
            raise CommandError("row %d has %d columns, expected %d" % (index, len(cells), len(fields)))
        for column, cell in zip(columns, cells):
            column.append(cell)
    data = {}
    for field, cells in zip(fields, columns):
        data[str(field["name"])] = _convert_column(field.get("type", "string"), cells)
    return pd.DataFrame(data, columns=[str(field["name"]) for field in fields])


def field_kind(series):
    if pd.api.types.is_bool_dtype(series):
        return "boolean"
    if pd.api.types.is_numeric_dtype(series):
        return "number"
    if pd.api.types.is_datetime64_any_dtype(series):
        return "date"
    return "string"


def _format_value(kind, value):
    if _is_missing(value):
        return MISSING_VALUE
    if kind == "boolean":
        return "1" if value else "0"
    if kind == "number":
        if isinstance(value, (int, np.integer)):
            return str(int(value))
        number = float(value)
        return MISSING_VALUE if math.isnan(number) else repr(number)
    if kind == "date":
        return str(pd.Timestamp(value).value // 1000000)
    text = str(value)
    if ROW_DELIMITER in text:
        raise CommandError("value %r contains the row delimiter %s" % (text, ROW_DELIMITER))
    return quote(text)


def frame_to_csv(frame, kinds):
    records = [",".join(quote(str(name)) for name in frame.columns)]
    for row in frame.itertuples(index=False, name=None):
        records.append(",".join(_format_value(kind, value) for kind, value in zip(kinds, row)))
    return ROW_DELIMITER.join(records)


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------


def _figure_type():
    try:
        from matplotlib.figure import Figure
    except ImportError:
        return None
    return Figure


def is_image(value):
    figure = _figure_type()
    return figure is not None and isinstance(value, figure)


def classify(value):
    if isinstance(value, pd.DataFrame):
        return "dataframe"
    if is_image(value):
        return "image"
    if isinstance(value, str):
        return "string"
    return "unknown"


def _jsonable(value):
    if isinstance(value, pd.DataFrame):
        return json.loads(value.to_json(orient="records", date_format="iso"))
    if isinstance(value, pd.Series):
        return json.loads(value.to_json(date_format="iso"))
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    return str(value)


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


class CompanionServer:
    def __init__(self, sock, debug=False):
        self.sock = sock
        self.debug = debug
        self.namespace = {"__name__": "__main__", "pd": pd, "np": np}
        self.capture_out = io.StringIO()
        self.capture_err = io.StringIO()
        self.running = True
        self.handlers = {
            "accept_rows": self.accept_rows,
            "get_frame": self.get_frame,
            "execute_script": self.execute_script,
            "variable_is_set": self.variable_is_set,
            "get_variable_type": self.get_variable_type,
            "get_variable_value": self.get_variable_value,
            "get_image": self.get_image,
            "get_debug_buffer": self.get_debug_buffer,
            "shutdown": self.shutdown,
        }

    def serve(self):
        send_message(self.sock, {"response": "pid_response", "pid": os.getpid()})
        sys.stdout = self.capture_out
        sys.stderr = self.capture_err
        try:
            while self.running:
                try:
                    message = receive_message(self.sock)
                except StreamClosed:
                    LOG.debug("host went away")
                    return
                name = message.get("command")
                LOG.debug("command %s", name)
                handler = self.handlers.get(name)
                if handler is None:
                    send_message(self.sock, error("unknown command: %s" % name))
                    continue
                handler(message)
        finally:
            sys.stdout = sys.__stdout__
            sys.stderr = sys.__stderr__

    def _variable(self, message):
        name = message.get("variable_name")
        if name not in self.namespace:
            raise CommandError("variable %s is not set" % name)
        return name, self.namespace[name]

    def _reply(self, message, build):
        try:
            reply = build(message)
        except Exception as exc:
            LOG.debug("command failed", exc_info=True)
            reply = error(_describe(exc))
        send_message(self.sock, reply)

    def accept_rows(self, message):
        meta = message.get("row_meta") or {}
        num_rows = int(message.get("num_rows", 0))
        text = read_frame(self.sock).decode("utf-8") if num_rows > 0 else ""

        def build(_):
            fields = meta.get("fields") or []
            frame_name = meta.get("frame_name")
            if not frame_name:
                raise CommandError("row metadata without a frame name")
            self.namespace[frame_name] = csv_to_frame(text, fields, num_rows)
            return ok()

        self._reply(message, build)

    def get_frame(self, message):
        name = message.get("frame_name")
        try:
            header, body = self._render_frame(name, bool(message.get("include_index")))
        except Exception as exc:
            LOG.debug("get_frame failed", exc_info=True)
            send_message(self.sock, error(_describe(exc)))
            return
        send_message(self.sock, ok())
        send_message(self.sock, header)
        write_frame(self.sock, body)

    def _render_frame(self, name, include_index):
        frame = self.namespace.get(name)
        if not isinstance(frame, pd.DataFrame):
            raise CommandError("%s is not a pandas data frame" % name)
        if include_index:
            frame = frame.reset_index()
        kinds = [field_kind(frame[column]) for column in frame.columns]
        fields = []
        for column, kind in zip(frame.columns, kinds):
            entry = {"name": str(column), "type": kind}
            if kind == "date":
                entry["date_format"] = "none"
            fields.append(entry)
        body = frame_to_csv(frame, kinds).encode("utf-8")
        header = {"response": "row_meta", "frame_name": name, "num_rows": len(frame), "fields": fields}
        return header, body

    def execute_script(self, message):
        out = io.StringIO()
        err = io.StringIO()
        sys.stdout, sys.stderr = out, err
        try:
            code = compile(message.get("script", ""), "<script>", "exec")
            exec(code, self.namespace)
        except (Exception, SystemExit):
            traceback.print_exc()
        finally:
            sys.stdout, sys.stderr = self.capture_out, self.capture_err
        send_message(self.sock, ok(script_out=out.getvalue(), script_error=err.getvalue()))

    def variable_is_set(self, message):
        name = message.get("variable_name")
        send_message(self.sock, ok(variable_name=name, variable_exists=name in self.namespace))

    def get_variable_type(self, message):
        def build(msg):
            name, value = self._variable(msg)
            return ok(variable_name=name, type=classify(value))

        self._reply(message, build)

    def get_variable_value(self, message):
        def build(msg):
            name, value = self._variable(msg)
            if msg.get("variable_encoding") == "json":
                text = json.dumps(value, default=_jsonable)
            else:
                text = str(value)
            return ok(variable_name=name, variable_value=text)

        self._reply(message, build)

    def get_image(self, message):
        def build(msg):
            name, value = self._variable(msg)
            if not is_image(value):
                raise CommandError("%s is not a matplotlib figure" % name)
            buf = io.BytesIO()
            value.savefig(buf, format="png")
            data = base64.b64encode(buf.getvalue()).decode("ascii")
            return ok(variable_name=name, encoding="base64", image_data=data)

        self._reply(message, build)

    def get_debug_buffer(self, message):
        out, err = self.capture_out.getvalue(), self.capture_err.getvalue()
        self.capture_out.seek(0)
        self.capture_out.truncate()
        self.capture_err.seek(0)
        self.capture_err.truncate()
        send_message(self.sock, ok(std_out=out, std_err=err))

    def shutdown(self, message):
        LOG.debug("shutdown requested")
        self.running = False


def main(argv):
    if len(argv) < 2:
        sys.__stderr__.write("usage: server.py PORT [debug]\n")
        return 2
    port = int(argv[1])
    debug = len(argv) > 2 and argv[2] == "debug"
    logging.basicConfig(
        stream=sys.__stderr__,
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    os.environ.setdefault("MPLBACKEND", "Agg")
    host = os.environ.get(HOST_ENV, "127.0.0.1")
    sock = socket.create_connection((host, port))
    try:
        CompanionServer(sock, debug).serve()
    finally:
        sock.close()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
