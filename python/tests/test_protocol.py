import base64

import pytest

from cpybridge import protocol
from cpybridge.errors import (
    CompanionError,
    MalformedMessageError,
    ProtocolMismatchError,
    TransferError,
)
from cpybridge.schema import FieldType, FrameSchema, VariableType


def _ok(**fields):
    return protocol.parse_response(dict(response="ok", **fields))


def test_accept_rows_payload():
    schema = FrameSchema.of(("a", FieldType.NUMBER))
    payload = protocol.AcceptRows("df", schema, 3).to_payload(debug=True)
    assert payload == {
        "command": "accept_rows",
        "debug": True,
        "num_rows": 3,
        "row_meta": {"frame_name": "df", "fields": [{"name": "a", "type": "number"}]},
    }


def test_simple_payloads():
    assert protocol.GetFrame("df", True).to_payload() == {
        "command": "get_frame",
        "debug": False,
        "frame_name": "df",
        "include_index": True,
    }
    assert protocol.ExecuteScript("x = 1\n").to_payload()["script"] == "x = 1\n"
    assert protocol.GetVariableValue("v", "json").to_payload()["variable_encoding"] == "json"
    assert protocol.GetDebugBuffer().to_payload() == {"command": "get_debug_buffer", "debug": False}
    assert protocol.Shutdown().to_payload() == {"command": "shutdown", "debug": False}


def test_variable_value_encoding_is_validated():
    with pytest.raises(ValueError):
        protocol.GetVariableValue("v", "pickled")


def test_parse_response_variants():
    assert isinstance(_ok(), protocol.OkAck)
    error = protocol.parse_response({"response": "error", "error_message": "boom"})
    assert error == protocol.ErrorAck("error", "boom")
    header = protocol.parse_response(
        {"response": "row_meta", "frame_name": "df", "num_rows": 2, "fields": [{"name": "a", "type": "string"}]}
    )
    assert header == protocol.FrameHeaderAck("df", FrameSchema.of(("a", FieldType.STRING)), 2)
    assert protocol.parse_response({"response": "pid_response", "pid": 99}) == protocol.PidAck(99)


@pytest.mark.parametrize(
    "message",
    [
        {},
        {"response": 3},
        {"response": "row_meta", "frame_name": "df", "fields": []},
        {"response": "row_meta", "frame_name": "df", "num_rows": "many", "fields": []},
        {"response": "row_meta", "frame_name": "df", "num_rows": 1},
        {"response": "row_meta", "frame_name": "df", "num_rows": 1, "fields": [{"name": "a", "type": "blob"}]},
        {"response": "pid_response"},
        {"response": "pid_response", "pid": "12"},
    ],
)
def test_parse_response_rejects_malformed(message):
    with pytest.raises(MalformedMessageError):
        protocol.parse_response(message)


def test_error_ack_raises_companion_error():
    command = protocol.VariableIsSet("x")
    with pytest.raises(CompanionError) as excinfo:
        command.decode(protocol.parse_response({"response": "error", "error_message": "no such thing"}))
    assert excinfo.value.companion_message == "no such thing"


def test_variable_is_set_decoding():
    command = protocol.VariableIsSet("x")
    assert command.decode(_ok(variable_name="x", variable_exists=True)) is True
    assert command.decode(_ok(variable_name="x", variable_exists=False)) is False
    with pytest.raises(ProtocolMismatchError):
        command.decode(_ok(variable_name="y", variable_exists=True))
    with pytest.raises(MalformedMessageError):
        command.decode(_ok(variable_name="x"))
    with pytest.raises(MalformedMessageError):
        command.decode(_ok(variable_exists=True))


def test_variable_type_decoding():
    command = protocol.GetVariableType("v")
    assert command.decode(_ok(variable_name="v", type="dataframe")) is VariableType.DATAFRAME
    assert command.decode(_ok(variable_name="v", type="image")) is VariableType.IMAGE
    assert command.decode(_ok(variable_name="v", type="something")) is VariableType.UNKNOWN


def test_variable_value_decoding():
    assert protocol.GetVariableValue("v").decode(_ok(variable_name="v", variable_value=12)) == "12"
    as_json = protocol.GetVariableValue("v", "json")
    assert as_json.decode(_ok(variable_name="v", variable_value='{"a": [1, 2]}')) == {"a": [1, 2]}
    with pytest.raises(MalformedMessageError):
        as_json.decode(_ok(variable_name="v", variable_value="{oops"))


def test_image_decoding():
    command = protocol.GetImage("plot")
    data = b"\x89PNG\r\n\x1a\nrest"
    encoded = base64.b64encode(data).decode("ascii")
    assert command.decode(_ok(variable_name="plot", encoding="base64", image_data=encoded)) == data
    with pytest.raises(MalformedMessageError):
        command.decode(_ok(variable_name="plot", encoding="hex", image_data="00"))
    with pytest.raises(MalformedMessageError):
        command.decode(_ok(variable_name="plot", encoding="base64", image_data="%%%"))


def test_execute_script_decoding():
    command = protocol.ExecuteScript("print(1)\n")
    assert command.decode(_ok(script_out="1\n", script_error="")) == protocol.ScriptOutput("1\n", "")
    with pytest.raises(MalformedMessageError):
        command.decode(_ok(script_out="1\n"))


def test_debug_buffer_defaults_to_empty_strings():
    assert protocol.GetDebugBuffer().decode(_ok()) == protocol.DebugOutput("", "")


def test_row_transfer_errors_are_transfer_errors():
    schema = FrameSchema.of(("a", FieldType.NUMBER))
    failure = protocol.parse_response({"response": "error", "error_message": "bad rows"})
    with pytest.raises(TransferError):
        protocol.AcceptRows("df", schema, 1).decode(failure)
    with pytest.raises(TransferError):
        protocol.GetFrame("df").decode(failure)


def test_frame_header_must_match_request():
    command = protocol.GetFrame("df")
    header = protocol.FrameHeaderAck("other", FrameSchema.of(("a", FieldType.NUMBER)), 0)
    with pytest.raises(ProtocolMismatchError):
        command.decode_header(header)
    with pytest.raises(MalformedMessageError):
        command.decode_header(_ok())


def test_expect_pid():
    assert protocol.expect_pid(protocol.PidAck(7)) == 7
    with pytest.raises(MalformedMessageError):
        protocol.expect_pid(_ok())
