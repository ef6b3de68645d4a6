"""Command and acknowledgement messages exchanged with the companion.

Commands are frozen dataclasses rendered to JSON maps keyed by ``command``.
Acknowledgements are decoded by :func:`parse_response` into one of the
``*Ack`` variants; each command knows how to turn the acknowledgement it
expects into a typed result.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union

from .errors import (
    CompanionError,
    MalformedMessageError,
    ProtocolMismatchError,
    TransferError,
)
from .schema import FrameSchema, VariableType

JsonDict = Dict[str, Any]

RESPONSE_OK = "ok"
RESPONSE_ROW_META = "row_meta"
RESPONSE_PID = "pid_response"

ENCODING_STRING = "string"
ENCODING_JSON = "json"
ENCODING_BASE64 = "base64"


# ---------------------------------------------------------------------------
# Acknowledgements
# ---------------------------------------------------------------------------


def _require(message: JsonDict, key: str, context: str) -> Any:
    if key not in message:
        raise MalformedMessageError(f"{context} response missing '{key}'")
    return message[key]


@dataclass(frozen=True)
class OkAck:
    fields: JsonDict = field(default_factory=dict)

    def require(self, key: str, context: str = "ok") -> Any:
        return _require(self.fields, key, context)

    def text(self, key: str) -> str:
        value = self.fields.get(key)
        return "" if value is None else str(value)


@dataclass(frozen=True)
class ErrorAck:
    response: str
    message: str


@dataclass(frozen=True)
class FrameHeaderAck:
    frame_name: str
    schema: FrameSchema
    num_rows: int


@dataclass(frozen=True)
class PidAck:
    pid: int


Ack = Union[OkAck, ErrorAck, FrameHeaderAck, PidAck]


def parse_response(message: JsonDict) -> Ack:
    """Decode a raw acknowledgement map into its typed variant."""

    response = message.get("response")
    if not isinstance(response, str):
        raise MalformedMessageError(f"acknowledgement without a response tag: {message!r}")
    if response == RESPONSE_OK:
        return OkAck(dict(message))
    if response == RESPONSE_ROW_META:
        frame_name = _require(message, "frame_name", response)
        num_rows = _require(message, "num_rows", response)
        try:
            num_rows = int(num_rows)
        except (TypeError, ValueError) as exc:
            raise MalformedMessageError(f"bad row count: {num_rows!r}") from exc
        return FrameHeaderAck(str(frame_name), FrameSchema.from_message(message), num_rows)
    if response == RESPONSE_PID:
        pid = _require(message, "pid", response)
        if isinstance(pid, bool) or not isinstance(pid, int):
            raise MalformedMessageError(f"bad pid: {pid!r}")
        return PidAck(pid)
    error = message.get("error_message")
    return ErrorAck(response, str(error) if error is not None else response)


def expect_ok(ack: Ack, error_type: type = CompanionError) -> OkAck:
    if isinstance(ack, OkAck):
        return ack
    if isinstance(ack, ErrorAck):
        raise error_type(ack.message)
    raise MalformedMessageError(f"expected an ok acknowledgement, got {type(ack).__name__}")


def _check_name(ack: OkAck, key: str, expected: str) -> None:
    echoed = ack.require(key)
    if echoed != expected:
        raise ProtocolMismatchError(f"companion answered for {echoed!r}, expected {expected!r}")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScriptOutput:
    stdout: str
    stderr: str


@dataclass(frozen=True)
class DebugOutput:
    stdout: str
    stderr: str


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Command:
    name: ClassVar[str] = ""

    def body(self) -> JsonDict:
        return {}

    def to_payload(self, debug: bool = False) -> JsonDict:
        payload: JsonDict = {"command": self.name, "debug": bool(debug)}
        payload.update(self.body())
        return payload

    def decode(self, ack: Ack) -> Any:
        expect_ok(ack)
        return None


@dataclass(frozen=True)
class AcceptRows(Command):
    name: ClassVar[str] = "accept_rows"

    frame_name: str
    schema: FrameSchema
    num_rows: int

    def body(self) -> JsonDict:
        return {"num_rows": self.num_rows, "row_meta": self.schema.to_message(self.frame_name)}

    def decode(self, ack: Ack) -> None:
        expect_ok(ack, TransferError)


@dataclass(frozen=True)
class GetFrame(Command):
    """Sent once; answered by an ok ack, then a ``row_meta`` header."""

    name: ClassVar[str] = "get_frame"

    frame_name: str
    include_index: bool = False

    def body(self) -> JsonDict:
        return {"frame_name": self.frame_name, "include_index": bool(self.include_index)}

    def decode(self, ack: Ack) -> None:
        expect_ok(ack, TransferError)

    def decode_header(self, ack: Ack) -> FrameHeaderAck:
        if isinstance(ack, ErrorAck):
            raise TransferError(ack.message)
        if not isinstance(ack, FrameHeaderAck):
            raise MalformedMessageError(f"expected a frame header, got {type(ack).__name__}")
        if ack.frame_name != self.frame_name:
            raise ProtocolMismatchError(
                f"companion sent frame {ack.frame_name!r}, expected {self.frame_name!r}"
            )
        return ack


@dataclass(frozen=True)
class ExecuteScript(Command):
    name: ClassVar[str] = "execute_script"

    script: str

    def body(self) -> JsonDict:
        return {"script": self.script}

    def decode(self, ack: Ack) -> ScriptOutput:
        ok = expect_ok(ack)
        ok.require("script_out", self.name)
        ok.require("script_error", self.name)
        return ScriptOutput(ok.text("script_out"), ok.text("script_error"))


@dataclass(frozen=True)
class VariableIsSet(Command):
    name: ClassVar[str] = "variable_is_set"

    variable_name: str

    def body(self) -> JsonDict:
        return {"variable_name": self.variable_name}

    def decode(self, ack: Ack) -> bool:
        ok = expect_ok(ack)
        _check_name(ok, "variable_name", self.variable_name)
        return bool(ok.require("variable_exists", self.name))


@dataclass(frozen=True)
class GetVariableType(Command):
    name: ClassVar[str] = "get_variable_type"

    variable_name: str

    def body(self) -> JsonDict:
        return {"variable_name": self.variable_name}

    def decode(self, ack: Ack) -> VariableType:
        ok = expect_ok(ack)
        _check_name(ok, "variable_name", self.variable_name)
        return VariableType.from_wire(ok.require("type", self.name))


@dataclass(frozen=True)
class GetVariableValue(Command):
    name: ClassVar[str] = "get_variable_value"

    variable_name: str
    encoding: str = ENCODING_STRING

    def __post_init__(self) -> None:
        if self.encoding not in (ENCODING_STRING, ENCODING_JSON):
            raise ValueError(f"unsupported variable encoding: {self.encoding!r}")

    def body(self) -> JsonDict:
        return {"variable_name": self.variable_name, "variable_encoding": self.encoding}

    def decode(self, ack: Ack) -> Any:
        ok = expect_ok(ack)
        _check_name(ok, "variable_name", self.variable_name)
        value = ok.require("variable_value", self.name)
        if self.encoding == ENCODING_STRING:
            return "" if value is None else str(value)
        try:
            return json.loads(value)
        except (TypeError, ValueError) as exc:
            raise MalformedMessageError(f"undecodable json value for {self.variable_name!r}: {exc}") from exc


@dataclass(frozen=True)
class GetImage(Command):
    name: ClassVar[str] = "get_image"

    variable_name: str

    def body(self) -> JsonDict:
        return {"variable_name": self.variable_name}

    def decode(self, ack: Ack) -> bytes:
        ok = expect_ok(ack)
        _check_name(ok, "variable_name", self.variable_name)
        encoding = ok.require("encoding", self.name)
        data = ok.require("image_data", self.name)
        if encoding != ENCODING_BASE64:
            raise MalformedMessageError(f"unsupported image encoding: {encoding!r}")
        try:
            return base64.b64decode(str(data), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedMessageError(f"corrupt image data: {exc}") from exc


@dataclass(frozen=True)
class GetDebugBuffer(Command):
    name: ClassVar[str] = "get_debug_buffer"

    def decode(self, ack: Ack) -> DebugOutput:
        ok = expect_ok(ack)
        return DebugOutput(ok.text("std_out"), ok.text("std_err"))


@dataclass(frozen=True)
class Shutdown(Command):
    """Fire-and-forget; the companion exits without answering."""

    name: ClassVar[str] = "shutdown"


def expect_pid(ack: Optional[Ack]) -> int:
    if not isinstance(ack, PidAck):
        raise MalformedMessageError(f"expected a pid acknowledgement, got {type(ack).__name__}")
    return ack.pid
