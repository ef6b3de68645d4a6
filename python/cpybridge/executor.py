"""Script step: push input frames, run a script, collect its variables.

This is the host-side glue a data pipeline uses around a session.  A step
names the frames its inputs become in the companion, the script to run and
the variables to read back.  :func:`determine_output` runs the script once
against synthetic rows to learn the shape of its output ahead of time.
"""

from __future__ import annotations

import datetime as _dt
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from .codec import wire_type_to_host
from .errors import ScriptError, ScriptLoadError
from .schema import FieldType, FrameSchema, HostType, Row, VariableType
from .session import Session, SessionHandle

logger = logging.getLogger(__name__)

NUM_RANDOM_ROWS = 100
SYNTHETIC_SEED = 1

HostColumn = Tuple[str, HostType]
InputFrame = Tuple[FrameSchema, Sequence[Row]]


def load_script(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ScriptLoadError(f"cannot read script {path}: {exc}") from exc


@dataclass
class ScriptStep:
    variables: List[str]
    script: Optional[str] = None
    script_file: Optional[str] = None
    frame_names: List[str] = field(default_factory=list)
    include_row_index: bool = False
    continue_on_unset: bool = False
    include_input_as_output: bool = False

    def validate(self) -> None:
        if not (self.script and self.script.strip()) and not self.script_file:
            raise ValueError("a script or a script file is required")
        if not self.variables:
            raise ValueError("at least one variable to retrieve is required")
        if len(set(self.frame_names)) != len(self.frame_names):
            raise ValueError("frame names must be unique")

    def resolve_script(self) -> str:
        """Script text; a configured file is read at call time."""
        if self.script_file:
            return load_script(self.script_file)
        return self.script or ""


@dataclass
class StepResult:
    columns: List[HostColumn]
    rows: List[List[Any]]

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.columns]


def generate_synthetic_rows(
    schema: FrameSchema, rng: random.Random, count: int = NUM_RANDOM_ROWS
) -> List[List[Any]]:
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None, microsecond=0)
    rows = []
    for _ in range(count):
        row: List[Any] = []
        for item in schema.fields:
            d = rng.random()
            if item.type is FieldType.NUMBER:
                row.append(d * 100.0)
            elif item.type is FieldType.DATE:
                row.append(now + _dt.timedelta(milliseconds=int(d * 100000)))
            elif item.type is FieldType.BOOLEAN:
                row.append(rng.random() < 0.5)
            else:
                row.append("value1" if d < 0.5 else "value2")
        rows.append(row)
    return rows


def _host_columns(schema: FrameSchema) -> List[HostColumn]:
    return [(item.name, wire_type_to_host(item.type)) for item in schema.fields]


def _check_inputs(step: ScriptStep, count: int) -> None:
    if count != len(step.frame_names):
        raise ValueError(f"step names {len(step.frame_names)} frames but received {count} inputs")


def _unique_name(name: str, taken: set) -> str:
    candidate, suffix = name, 1
    while candidate in taken:
        candidate = f"{name}_{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate


def _prepend_inputs(result: StepResult, inputs: Sequence[InputFrame]) -> StepResult:
    """Put the input columns in front of the script output.

    Input columns are the union of the input frames' columns by name. Output
    row ``i`` carries the values of the ``i``-th input row across all frames,
    in frame order; columns the row's frame lacks, and rows past the last
    input row, are null. Script columns whose name clashes with an input
    column get a numeric suffix.
    """

    names: List[str] = []
    columns: List[HostColumn] = []
    for schema, _ in inputs:
        for item in schema.fields:
            if item.name not in names:
                names.append(item.name)
                columns.append((item.name, wire_type_to_host(item.type)))
    flattened: List[List[Any]] = []
    for schema, rows in inputs:
        for row in rows:
            values = dict(zip(schema.names, row))
            flattened.append([values.get(name) for name in names])

    taken = set(names)
    for name, host_type in result.columns:
        columns.append((_unique_name(name, taken), host_type))
    blank = [None] * len(names)
    rows = []
    for index, row in enumerate(result.rows):
        prefix = flattened[index] if index < len(flattened) else blank
        rows.append(list(prefix) + list(row))
    return StepResult(columns, rows)


def _collect(step: ScriptStep, handle: SessionHandle, continue_on_unset: bool) -> StepResult:
    if len(step.variables) == 1:
        name = step.variables[0]
        if handle.variable_exists(name) and handle.variable_type(name) is VariableType.DATAFRAME:
            frame = handle.pull_frame(name, step.include_row_index)
            return StepResult(_host_columns(frame.schema), frame.rows)

    columns: List[HostColumn] = []
    row: List[Any] = []
    for name in step.variables:
        if not handle.variable_exists(name):
            if not continue_on_unset:
                raise ScriptError(f"variable {name!r} is not set")
            logger.debug("variable %s not set; emitting null", name)
            columns.append((name, HostType.STRING))
            row.append(None)
            continue
        if handle.variable_type(name) is VariableType.IMAGE:
            columns.append((name, HostType.BINARY))
            row.append(handle.variable_as_image(name))
        else:
            columns.append((name, HostType.STRING))
            row.append(handle.variable_as_string(name))
    return StepResult(columns, [row])


def determine_output(
    step: ScriptStep,
    session: Session,
    identity: Any,
    input_schemas: Sequence[FrameSchema],
) -> StepResult:
    """Run the step on synthetic rows and report what it produces."""

    step.validate()
    _check_inputs(step, len(input_schemas))
    script = step.resolve_script()
    rng = random.Random(SYNTHETIC_SEED)
    inputs = [(schema, generate_synthetic_rows(schema, rng)) for schema in input_schemas]
    with session.hold(identity) as handle:
        for frame_name, (schema, rows) in zip(step.frame_names, inputs):
            handle.push_rows(schema, rows, frame_name)
        handle.run_script(script)
        result = _collect(step, handle, continue_on_unset=False)
    if step.include_input_as_output:
        result = _prepend_inputs(result, inputs)
    return result


def run(step: ScriptStep, session: Session, identity: Any, inputs: Sequence[InputFrame]) -> StepResult:
    step.validate()
    _check_inputs(step, len(inputs))
    script = step.resolve_script()
    inputs = [(schema, list(rows)) for schema, rows in inputs]
    with session.hold(identity) as handle:
        for frame_name, (schema, rows) in zip(step.frame_names, inputs):
            handle.push_rows(schema, rows, frame_name)
        handle.run_script(script)
        result = _collect(step, handle, step.continue_on_unset)
    if step.include_input_as_output:
        result = _prepend_inputs(result, inputs)
    logger.debug("step produced %d rows over %d columns", len(result.rows), len(result.columns))
    return result
