"""Round trips against a real companion interpreter (needs pandas)."""

import datetime as dt
import sys

import pytest

pytest.importorskip("pandas")

from cpybridge.config import BridgeConfig
from cpybridge.errors import CompanionError, ScriptError, TransferError
from cpybridge.executor import ScriptStep, determine_output, run
from cpybridge.schema import FieldType, FrameSchema, HostType, VariableType
from cpybridge.session import Session, SessionStatus
from cpybridge.supervisor import SupervisorState

SCHEMA = FrameSchema.of(
    ("n", FieldType.NUMBER),
    ("s", FieldType.STRING),
    ("b", FieldType.BOOLEAN),
    ("d", FieldType.DATE),
)
ROWS = [
    [1.5, "plain", True, dt.datetime(2021, 3, 4, 5, 6, 7)],
    [None, "it's, \"odd\"\n50%", False, None],
    [-2.0, "?", True, dt.datetime(1970, 1, 1)],
]


@pytest.fixture(scope="module")
def live_session():
    session = Session(BridgeConfig(python_command=[sys.executable], accept_timeout=30.0))
    session.initialize()
    yield session
    session.shutdown()


def test_frame_round_trip(live_session):
    with live_session.hold("e2e") as handle:
        handle.push_rows(SCHEMA, ROWS, "df")
        frame = handle.pull_frame("df")
    assert frame.schema.names == ["n", "s", "b", "d"]
    assert [f.type for f in frame.schema] == [
        FieldType.NUMBER,
        FieldType.STRING,
        FieldType.BOOLEAN,
        FieldType.DATE,
    ]
    assert frame.rows == ROWS


def test_empty_push_creates_no_rows(live_session):
    with live_session.hold("e2e") as handle:
        handle.push_rows(FrameSchema.of(("n", FieldType.NUMBER)), [], "nothing")
        frame = handle.pull_frame("nothing")
    assert frame.rows == []


def test_script_output_and_errors(live_session):
    with live_session.hold("e2e") as handle:
        assert handle.execute_script("print('hello')").stdout == "hello\n"
        output = handle.execute_script("undefined_name")
        assert "NameError" in output.stderr
        with pytest.raises(ScriptError):
            handle.run_script("raise ValueError('bad')")
        assert handle.run_script("import warnings\nwarnings.warn('meh')").stderr == ""


def test_variable_queries(live_session):
    with live_session.hold("e2e") as handle:
        handle.run_script("word = 'abc'\nitems = [1, 2]\nframe = pd.DataFrame({'x': [1, 2]})")
        assert handle.variable_exists("word")
        assert not handle.variable_exists("never_set")
        assert handle.variable_type("word") is VariableType.STRING
        assert handle.variable_type("frame") is VariableType.DATAFRAME
        assert handle.variable_type("items") is VariableType.UNKNOWN
        assert handle.variable_as_string("items") == "[1, 2]"
        assert handle.variable_as_json("frame") == [{"x": 1}, {"x": 2}]
        with pytest.raises(CompanionError):
            handle.variable_type("never_set")
        with pytest.raises(TransferError):
            handle.pull_frame("word")


def test_failing_variable_is_reported_not_fatal(live_session):
    with live_session.hold("e2e") as handle:
        handle.run_script(
            "class Loud:\n    def __str__(self):\n        raise RuntimeError('boom')\nloud = Loud()"
        )
        with pytest.raises(CompanionError, match="boom"):
            handle.variable_as_string("loud")
        assert live_session.is_ready
        assert handle.variable_exists("loud")


def test_unrenderable_frames_are_reported(live_session):
    with live_session.hold("e2e") as handle:
        handle.run_script(
            "clash = pd.DataFrame({'index': [1, 2], 'level_0': [3, 4]})\n"
            "delim = pd.DataFrame({'s': ['a#||#b']})"
        )
        with pytest.raises(TransferError):
            handle.pull_frame("clash", include_row_index=True)
        with pytest.raises(TransferError, match="row delimiter"):
            handle.pull_frame("delim")
        assert live_session.is_ready
        assert handle.pull_frame("clash").rows == [[1.0, 3.0], [2.0, 4.0]]


def test_image_variable(live_session):
    pytest.importorskip("matplotlib")
    with live_session.hold("e2e") as handle:
        handle.run_script(
            "import matplotlib.pyplot as plt\nfig, ax = plt.subplots()\nax.plot([1, 2], [3, 4])"
        )
        assert handle.variable_type("fig") is VariableType.IMAGE
        data = handle.variable_as_image("fig")
    assert data.startswith(b"\x89PNG")


def test_script_step(live_session):
    step = ScriptStep(
        variables=["summary"],
        script="summary = df.assign(twice=df['n'] * 2)",
        frame_names=["df"],
    )
    preview = determine_output(step, live_session, "e2e-step", [SCHEMA])
    assert preview.names == ["n", "s", "b", "d", "twice"]
    result = run(step, live_session, "e2e-step", [(SCHEMA, ROWS)])
    assert result.columns[-1] == ("twice", HostType.NUMBER)
    assert [row[-1] for row in result.rows] == [3.0, None, -4.0]


def test_shutdown_stops_companion():
    session = Session(BridgeConfig(python_command=[sys.executable], accept_timeout=30.0))
    session.initialize()
    supervisor = session.supervisor
    process = supervisor.process
    assert session.companion_pid == process.pid
    session.shutdown()
    assert session.status is SessionStatus.SHUT_DOWN
    assert supervisor.state is SupervisorState.STOPPED
    assert process.poll() is not None
