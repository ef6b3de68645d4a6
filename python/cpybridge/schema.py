"""Frame schema and type vocabulary shared by the codec and the session."""

from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import MalformedMessageError, UnsupportedFieldTypeError

DATE_FORMAT_NONE = "none"

Row = Sequence[Any]


class FieldType(Enum):
    """Semantic column types understood by both sides of the wire."""

    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    DATE = "date"

    @classmethod
    def from_wire(cls, value: Any) -> "FieldType":
        if isinstance(value, FieldType):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise MalformedMessageError(f"unknown field type: {value!r}") from None


class HostType(Enum):
    """Column kinds as the host side describes them."""

    NUMBER = "number"
    INTEGER = "integer"
    BIGNUMBER = "bignumber"
    STRING = "string"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    INET = "inet"
    SERIALIZABLE = "serializable"
    BINARY = "binary"


class VariableType(Enum):
    """Classification of a companion variable, resolved per query."""

    DATAFRAME = "dataframe"
    IMAGE = "image"
    STRING = "string"
    UNKNOWN = "unknown"

    @classmethod
    def from_wire(cls, value: Any) -> "VariableType":
        key = str(value or "").lower()
        for member in cls:
            if member.value == key:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class Field:
    name: str
    type: FieldType
    date_format: Optional[str] = None

    def to_message(self) -> Dict[str, str]:
        message = {"name": self.name, "type": self.type.value}
        if self.type is FieldType.DATE:
            message["date_format"] = self.date_format or DATE_FORMAT_NONE
        return message

    @classmethod
    def from_message(cls, message: Any) -> "Field":
        if not isinstance(message, dict) or "name" not in message or "type" not in message:
            raise MalformedMessageError(f"bad field entry: {message!r}")
        date_format = message.get("date_format")
        if date_format in (None, "", DATE_FORMAT_NONE):
            date_format = None
        return cls(str(message["name"]), FieldType.from_wire(message["type"]), date_format)


@dataclass(frozen=True)
class FrameSchema:
    """Ordered, uniquely named columns of a frame."""

    fields: Tuple[Field, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        seen = set()
        for item in self.fields:
            if item.name in seen:
                raise ValueError(f"duplicate column name: {item.name!r}")
            seen.add(item.name)

    @classmethod
    def of(cls, *columns: Tuple[str, FieldType]) -> "FrameSchema":
        return cls(tuple(Field(name, ftype) for name, ftype in columns))

    def __len__(self) -> int:
        return len(self.fields)

    def __iter__(self):
        return iter(self.fields)

    @property
    def names(self) -> List[str]:
        return [item.name for item in self.fields]

    def index_of(self, name: str) -> int:
        for idx, item in enumerate(self.fields):
            if item.name == name:
                return idx
        return -1

    def to_message(self, frame_name: str) -> Dict[str, Any]:
        return {"frame_name": frame_name, "fields": [item.to_message() for item in self.fields]}

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "FrameSchema":
        fields = message.get("fields")
        if not isinstance(fields, list):
            raise MalformedMessageError("frame header missing field list")
        try:
            return cls(tuple(Field.from_message(entry) for entry in fields))
        except ValueError as exc:
            raise MalformedMessageError(str(exc)) from exc


@dataclass
class FrameData:
    schema: FrameSchema
    rows: List[List[Any]]

    def __len__(self) -> int:
        return len(self.rows)

    def column(self, name: str) -> List[Any]:
        idx = self.schema.index_of(name)
        if idx < 0:
            raise KeyError(name)
        return [row[idx] for row in self.rows]


def _value_kind(value: Any) -> Optional[FieldType]:
    if value is None:
        return None
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, (int, float, Decimal)):
        return FieldType.NUMBER
    if isinstance(value, (_dt.datetime, _dt.date)):
        return FieldType.DATE
    if isinstance(value, str):
        return FieldType.STRING
    if isinstance(value, (bytes, bytearray, memoryview)):
        raise UnsupportedFieldTypeError("binary values cannot be sent as frame data")
    return FieldType.STRING


def infer_schema(names: Sequence[str], rows: Iterable[Row]) -> FrameSchema:
    """Infer column types from Python values.

    A column with mixed kinds falls back to string; an all-null column is a
    string column.
    """

    kinds: List[Optional[FieldType]] = [None] * len(names)
    mixed = [False] * len(names)
    for row in rows:
        for idx, value in enumerate(row):
            kind = _value_kind(value)
            if kind is None or mixed[idx]:
                continue
            if kinds[idx] is None:
                kinds[idx] = kind
            elif kinds[idx] is not kind:
                mixed[idx] = True
    columns = []
    for idx, name in enumerate(names):
        kind = FieldType.STRING if mixed[idx] or kinds[idx] is None else kinds[idx]
        columns.append(Field(name, kind))
    return FrameSchema(tuple(columns))
