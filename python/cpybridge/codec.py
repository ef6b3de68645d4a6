"""Wire codec: length-prefixed frames, JSON messages and the CSV row dialect.

Everything here is a pure transformation; sockets are only touched through
the ``sink``/``source`` objects handed in by the caller.

CSV dialect
-----------
* records are joined with ``#||#`` rather than a newline, so a cell may
  carry line breaks without splitting its row;
* the first record holds the column names;
* ``?`` (unquoted) is a null;
* values containing ``\\ ' TAB LF CR " % 0x1E`` are backslash escaped and
  single quoted; values containing ``{ } ,`` or a space, empty values and a
  literal ``?`` are single quoted as well.
"""

from __future__ import annotations

import datetime as _dt
import json
import math
import struct
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import (
    MalformedMessageError,
    MalformedRowDataError,
    TruncatedStreamError,
    UnsupportedFieldTypeError,
)
from .schema import Field, FieldType, FrameSchema, HostType

JsonDict = Dict[str, Any]

FRAME_HEADER = struct.Struct(">I")
ROW_DELIMITER = "#||#"
MISSING_VALUE = "?"
LF_PLACEHOLDER = "<lf>"
CR_PLACEHOLDER = "<cr>"

_READ_CHUNK = 64 * 1024

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

_EPOCH = _dt.datetime(1970, 1, 1)
_EPOCH_UTC = _EPOCH.replace(tzinfo=_dt.timezone.utc)
_ONE_MS = _dt.timedelta(milliseconds=1)
_DATE_PATTERNS = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
)

_HOST_TO_WIRE = {
    HostType.NUMBER: FieldType.NUMBER,
    HostType.INTEGER: FieldType.NUMBER,
    HostType.BIGNUMBER: FieldType.NUMBER,
    HostType.DATE: FieldType.DATE,
    HostType.TIMESTAMP: FieldType.DATE,
    HostType.BOOLEAN: FieldType.BOOLEAN,
}
_WIRE_TO_HOST = {
    FieldType.NUMBER: HostType.NUMBER,
    FieldType.DATE: HostType.DATE,
    FieldType.BOOLEAN: HostType.BOOLEAN,
    FieldType.STRING: HostType.STRING,
}


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


def _send_all(sink: Any, data: bytes) -> None:
    sendall = getattr(sink, "sendall", None)
    if sendall is not None:
        sendall(data)
        return
    sink.write(data)
    flush = getattr(sink, "flush", None)
    if flush is not None:
        flush()


def _read_exact(source: Any, size: int) -> bytes:
    recv = getattr(source, "recv", None)
    chunks: List[bytes] = []
    remaining = size
    while remaining > 0:
        if recv is not None:
            chunk = recv(min(remaining, _READ_CHUNK))
        else:
            chunk = source.read(remaining)
        if not chunk:
            raise TruncatedStreamError(f"stream closed after {size - remaining} of {size} bytes")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def write_frame(payload: bytes, sink: Any) -> None:
    """Write ``payload`` preceded by its 4-byte big-endian length."""
    _send_all(sink, FRAME_HEADER.pack(len(payload)) + payload)


def read_frame(source: Any) -> bytes:
    """Read one length-prefixed frame, blocking until it is complete."""
    (length,) = FRAME_HEADER.unpack(_read_exact(source, FRAME_HEADER.size))
    if length == 0:
        return b""
    return _read_exact(source, length)


def encode_message(payload: JsonDict) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_message(data: bytes) -> JsonDict:
    try:
        message = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError(f"undecodable message: {exc}") from exc
    if not isinstance(message, dict):
        raise MalformedMessageError(f"expected a JSON object, got {type(message).__name__}")
    return message


def write_message(payload: JsonDict, sink: Any) -> None:
    write_frame(encode_message(payload), sink)


def read_message(source: Any) -> JsonDict:
    return decode_message(read_frame(source))


# ---------------------------------------------------------------------------
# Type mapping
# ---------------------------------------------------------------------------


def host_type_to_wire(host_type: HostType) -> FieldType:
    if host_type in (HostType.SERIALIZABLE, HostType.BINARY):
        raise UnsupportedFieldTypeError(f"{host_type.value} columns cannot be transferred")
    return _HOST_TO_WIRE.get(host_type, FieldType.STRING)


def wire_type_to_host(wire_type: Any) -> HostType:
    return _WIRE_TO_HOST[FieldType.from_wire(wire_type)]


def schema_from_host(columns: Iterable[Sequence[Any]]) -> FrameSchema:
    """Build a frame schema from ``(name, HostType[, date_format])`` tuples."""
    fields = []
    for column in columns:
        name, host_type = column[0], column[1]
        date_format = column[2] if len(column) > 2 else None
        wire = host_type_to_wire(host_type)
        fields.append(Field(name, wire, date_format if wire is FieldType.DATE else None))
    return FrameSchema(tuple(fields))


# ---------------------------------------------------------------------------
# CSV values
# ---------------------------------------------------------------------------


def backquote(text: str) -> str:
    return "".join(_ESCAPES.get(ch, ch) for ch in text)


def quote(text: str) -> str:
    escaped = any(ch in _ESCAPES for ch in text)
    if escaped:
        text = backquote(text)
    if escaped or text == "" or text == MISSING_VALUE or any(ch in _QUOTE_TRIGGERS for ch in text):
        return f"'{text}'"
    return text


def to_epoch_millis(value: Any) -> int:
    if isinstance(value, _dt.datetime):
        if value.tzinfo is None:
            return (value - _EPOCH) // _ONE_MS
        return (value - _EPOCH_UTC) // _ONE_MS
    if isinstance(value, _dt.date):
        return (_dt.datetime.combine(value, _dt.time()) - _EPOCH) // _ONE_MS
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    raise MalformedRowDataError(f"not a date value: {value!r}")


def from_epoch_millis(millis: int) -> _dt.datetime:
    return _EPOCH + _dt.timedelta(milliseconds=millis)


def _encode_number(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return MISSING_VALUE if math.isnan(value) else repr(value)
    if isinstance(value, (int, Decimal)):
        return str(value)
    try:
        return repr(float(value))
    except (TypeError, ValueError) as exc:
        raise MalformedRowDataError(f"not a numeric value: {value!r}") from exc


def _encode_boolean(value: Any) -> str:
    if isinstance(value, str):
        return "1" if value.strip().lower() in ("1", "true", "y", "yes") else "0"
    return "1" if value else "0"


def encode_value(field: Field, value: Any) -> str:
    if value is None:
        return MISSING_VALUE
    if field.type is FieldType.NUMBER:
        return _encode_number(value)
    if field.type is FieldType.DATE:
        return str(to_epoch_millis(value))
    if field.type is FieldType.BOOLEAN:
        return _encode_boolean(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raise UnsupportedFieldTypeError(f"binary value in string column {field.name!r}")
    text = str(value)
    if ROW_DELIMITER in text:
        raise MalformedRowDataError(f"value in column {field.name!r} contains the row delimiter {ROW_DELIMITER!r}")
    return quote(text)


def encode_rows_to_csv(schema: FrameSchema, rows: Iterable[Sequence[Any]]) -> str:
    for name in schema.names:
        if ROW_DELIMITER in name:
            raise MalformedRowDataError(f"column name {name!r} contains the row delimiter {ROW_DELIMITER!r}")
    records = [",".join(quote(name) for name in schema.names)]
    width = len(schema)
    for index, row in enumerate(rows):
        if len(row) != width:
            raise MalformedRowDataError(f"row {index} has {len(row)} values, schema has {width} columns")
        records.append(",".join(encode_value(fld, value) for fld, value in zip(schema.fields, row)))
    return ROW_DELIMITER.join(records)


# ---------------------------------------------------------------------------
# CSV parsing
# ---------------------------------------------------------------------------


def _unescape_at(record: str, pos: int) -> Tuple[str, int]:
    """Decode the escape sequence whose backslash sits at ``pos``."""
    nxt = record[pos + 1]
    if nxt == "u":
        digits = record[pos + 2 : pos + 6]
        if len(digits) == 4:
            try:
                return chr(int(digits, 16)), pos + 6
            except ValueError:
                pass
    return _UNESCAPES.get(nxt, nxt), pos + 2


def split_record(record: str) -> List[Tuple[str, bool]]:
    """Split one record into ``(text, was_quoted)`` cells."""
    cells: List[Tuple[str, bool]] = []
    buf: List[str] = []
    quoted = False
    in_quotes = False
    pos = 0
    end = len(record)
    while pos < end:
        ch = record[pos]
        if ch == "\\" and pos + 1 < end:
            text, pos = _unescape_at(record, pos)
            buf.append(text)
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
        raise MalformedRowDataError(f"unterminated quoted value in record: {record[:80]!r}")
    cells.append(("".join(buf), quoted))
    return cells


def split_records(text: str) -> List[str]:
    if not text:
        return []
    records = text.split(ROW_DELIMITER)
    if records and records[-1] == "":
        records.pop()
    return records


def _parse_date(text: str) -> _dt.datetime:
    stripped = text.strip()
    try:
        return from_epoch_millis(int(stripped))
    except ValueError:
        pass
    try:
        return from_epoch_millis(int(float(stripped)))
    except (ValueError, OverflowError):
        pass
    for pattern in _DATE_PATTERNS:
        try:
            return _dt.datetime.strptime(stripped, pattern)
        except ValueError:
            continue
    raise MalformedRowDataError(f"unparseable date value: {text!r}")


def _parse_boolean(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in ("1", "true"):
        return True
    if lowered in ("0", "false"):
        return False
    raise MalformedRowDataError(f"unparseable boolean value: {text!r}")


def decode_value(field: Field, text: str, quoted: bool, restore_breaks: bool = False) -> Any:
    if not quoted and text == MISSING_VALUE:
        return None
    if field.type is FieldType.NUMBER:
        try:
            return float(text)
        except ValueError as exc:
            raise MalformedRowDataError(f"unparseable number in column {field.name!r}: {text!r}") from exc
    if field.type is FieldType.BOOLEAN:
        return _parse_boolean(text)
    if field.type is FieldType.DATE:
        return _parse_date(text)
    if restore_breaks:
        text = text.replace(LF_PLACEHOLDER, "\n").replace(CR_PLACEHOLDER, "\r")
    return text


def decode_csv_to_rows(
    text: str,
    schema: FrameSchema,
    row_count: int,
    *,
    has_header: bool = True,
) -> List[List[Any]]:
    records = split_records(text)
    width = len(schema)
    if has_header:
        if not records:
            raise MalformedRowDataError("missing header record")
        header = split_record(records.pop(0))
        if len(header) != width:
            raise MalformedRowDataError(f"header has {len(header)} columns, schema has {width}")
    if len(records) != row_count:
        raise MalformedRowDataError(f"expected {row_count} rows, received {len(records)}")
    rows: List[List[Any]] = []
    for index, record in enumerate(records):
        # raw line breaks are stashed so they survive tokenizing untouched
        stashed = "\n" in record or "\r" in record
        if stashed:
            record = record.replace("\n", LF_PLACEHOLDER).replace("\r", CR_PLACEHOLDER)
        cells = split_record(record)
        if len(cells) != width:
            raise MalformedRowDataError(f"row {index} has {len(cells)} columns, schema has {width}")
        rows.append(
            [decode_value(fld, cell, quoted, stashed) for fld, (cell, quoted) in zip(schema.fields, cells)]
        )
    return rows


def csv_header(text: str) -> Optional[List[str]]:
    """Return the column names of an encoded CSV payload."""
    records = split_records(text)
    if not records:
        return None
    return [cell for cell, _ in split_record(records[0])]
