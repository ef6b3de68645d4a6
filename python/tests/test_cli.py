import pytest

from cpybridge import cli
from cpybridge.errors import EnvironmentUnavailableError, ProcessStartError
from cpybridge.session import Session

from conftest import FakeSupervisor, ScriptedCompanion, ok


def _script_handler(message, companion):
    script = message["script"]
    if "boom" in script:
        companion.send(ok(script_out="", script_error="Traceback (most recent call last):\nNameError: boom\n"))
    else:
        companion.send(ok(script_out=f"ran {script.strip()}\n", script_error=""))


@pytest.fixture
def fake_cli(monkeypatch):
    created = []

    def make(config):
        companion = ScriptedCompanion(_script_handler)
        session = Session(config, supervisor_factory=lambda cfg: FakeSupervisor(cfg, companion))
        created.append((session, companion))
        return session

    monkeypatch.setattr(cli, "Session", make)
    yield created
    for _, companion in created:
        companion.join()


def test_parser_defaults():
    args = cli.build_arg_parser().parse_args([])
    assert args.command is None
    assert args.file is None
    assert args.debug is False
    assert args.history.name == ".cpybridge-history"


def test_command_and_file_are_exclusive():
    with pytest.raises(SystemExit):
        cli.build_arg_parser().parse_args(["-c", "x", "-f", "y.py"])


def test_single_command(fake_cli, capsys):
    assert cli.main(["-c", "print(1)"]) == 0
    assert capsys.readouterr().out == "ran print(1)\n"
    session, companion = fake_cli[0]
    companion.join()
    assert companion.received[0]["script"] == "print(1)\n"
    assert companion.received[-1]["command"] == "shutdown"
    assert not session.is_ready


def test_script_file(fake_cli, capsys, tmp_path):
    path = tmp_path / "job.py"
    path.write_text("x = 2", encoding="utf-8")
    assert cli.main(["-f", str(path)]) == 0
    assert capsys.readouterr().out == "ran x = 2\n"


def test_missing_script_file(fake_cli, capsys, tmp_path):
    assert cli.main(["-f", str(tmp_path / "gone.py")]) == 1
    assert "cannot read script" in capsys.readouterr().err


def test_script_error_exit_code(fake_cli, capsys):
    assert cli.main(["-c", "boom"]) == 1
    assert "NameError: boom" in capsys.readouterr().err


def test_options_reach_config(fake_cli):
    cli.main(["--python", "python3 -X utf8", "--debug", "--accept-timeout", "2.5", "-c", "pass"])
    config = fake_cli[0][0].config
    assert config.command() == ["python3", "-X", "utf8"]
    assert config.debug is True
    assert config.accept_timeout == 2.5


class _FailingSupervisor:
    def __init__(self, error):
        self.error = error
        self.env_check_output = None

    def start(self):
        raise self.error


@pytest.mark.parametrize(
    "error, expected",
    [
        (EnvironmentUnavailableError("No module named pandas"), "No module named pandas"),
        (ProcessStartError("companion exited with status 1"), "Could not start"),
    ],
)
def test_startup_failures_exit_2(monkeypatch, capsys, error, expected):
    monkeypatch.setattr(
        cli, "Session", lambda config: Session(config, supervisor_factory=lambda cfg: _FailingSupervisor(error))
    )
    assert cli.main(["-c", "pass"]) == 2
    assert expected in capsys.readouterr().err
