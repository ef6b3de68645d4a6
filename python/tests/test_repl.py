import io
from unittest.mock import MagicMock

import pytest

from cpybridge.errors import CompanionError
from cpybridge.protocol import DebugOutput, ScriptOutput
from cpybridge.repl import BridgeREPL, read_csv_file
from cpybridge.schema import FieldType, FrameData, FrameSchema, VariableType


@pytest.fixture
def repl():
    return BridgeREPL(MagicMock(), out=io.StringIO(), err=io.StringIO())


@pytest.fixture
def handle():
    mock = MagicMock()
    mock.execute_script.return_value = ScriptOutput("", "")
    return mock


def test_plain_line_is_executed(repl, handle):
    handle.execute_script.return_value = ScriptOutput("3\n", "")
    assert repl.handle_line(handle, "print(1 + 2)") is True
    handle.execute_script.assert_called_once_with("print(1 + 2)")
    assert repl.out.getvalue() == "3\n"


def test_script_stderr_goes_to_err(repl, handle):
    handle.execute_script.return_value = ScriptOutput("", "NameError: x\n")
    repl.handle_line(handle, "x")
    assert repl.err.getvalue() == "NameError: x\n"


def test_continuation_lines_are_joined(repl, handle):
    assert repl.handle_line(handle, "for i in range(2): \\") is True
    handle.execute_script.assert_not_called()
    repl.handle_line(handle, "    print(i)")
    handle.execute_script.assert_called_once_with("for i in range(2): \n    print(i)")


def test_blank_line_is_ignored(repl, handle):
    assert repl.handle_line(handle, "   ") is True
    handle.execute_script.assert_not_called()


def test_quit(repl, handle):
    assert repl.handle_line(handle, ":quit") is False
    assert repl.handle_line(handle, ":exit") is False


def test_type_and_get(repl, handle):
    handle.variable_type.return_value = VariableType.DATAFRAME
    handle.variable_as_string.return_value = "[1, 2]"
    repl.handle_line(handle, ":type df")
    repl.handle_line(handle, ":get items")
    assert repl.out.getvalue() == "dataframe\n[1, 2]\n"
    handle.variable_type.assert_called_once_with("df")


def test_frame_preview(repl, handle):
    schema = FrameSchema.of(("n", FieldType.NUMBER), ("s", FieldType.STRING))
    handle.pull_frame.return_value = FrameData(schema, [[float(i), None] for i in range(5)])
    repl.handle_line(handle, ":frame df 2")
    assert repl.out.getvalue().splitlines() == ["n,s", "0.0,", "1.0,", "... 3 more rows"]


def test_companion_errors_are_reported(repl, handle):
    handle.variable_type.side_effect = CompanionError("variable nope is not set")
    assert repl.handle_line(handle, ":type nope") is True
    assert repl.err.getvalue() == "error: variable nope is not set\n"


def test_usage_and_unknown_commands(repl, handle):
    repl.handle_line(handle, ":get")
    repl.handle_line(handle, ":bogus")
    assert repl.err.getvalue().splitlines() == ["usage: :get NAME", "unknown command :bogus (try :help)"]


def test_help(repl, handle):
    repl.handle_line(handle, ":help")
    assert ":frame NAME [N]" in repl.out.getvalue()


def test_load_csv(repl, handle, tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("city,temp\nOslo,4.5\nBergen,\n", encoding="utf-8")
    repl.handle_line(handle, f":load weather {path}")
    schema, rows, name = handle.push_rows.call_args[0]
    assert name == "weather"
    assert [f.type for f in schema] == [FieldType.STRING, FieldType.NUMBER]
    assert rows == [["Oslo", 4.5], ["Bergen", None]]
    assert repl.out.getvalue() == "weather: 2 rows, 2 columns\n"


def test_load_missing_file(repl, handle, tmp_path):
    repl.handle_line(handle, f":load df {tmp_path / 'none.csv'}")
    assert repl.err.getvalue().startswith("error: ")
    handle.push_rows.assert_not_called()


def test_read_empty_csv(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("", encoding="utf-8")
    with pytest.raises(ValueError):
        read_csv_file(path)


def test_image_is_written(repl, handle, tmp_path):
    handle.variable_as_image.return_value = b"\x89PNG"
    target = tmp_path / "plot.png"
    repl.handle_line(handle, f":image fig {target}")
    assert target.read_bytes() == b"\x89PNG"


def test_debug_buffers(repl, handle):
    handle.debug_buffers.return_value = DebugOutput("captured out", "captured err")
    repl.handle_line(handle, ":debug")
    assert repl.out.getvalue() == "captured out\n"
    assert repl.err.getvalue() == "captured err\n"
