import pytest

import cpybridge
from cpybridge import config


def test_public_exports():
    for name in cpybridge.__all__:
        assert hasattr(cpybridge, name), name
    assert issubclass(cpybridge.TransferError, cpybridge.CompanionError)
    assert issubclass(cpybridge.EnvironmentUnavailableError, cpybridge.SessionUnavailableError)
    assert issubclass(cpybridge.BridgeError, RuntimeError)


def test_version_string():
    assert cpybridge.__version__.startswith("0.1")


def test_config_from_env():
    env = {
        config.ENV_PYTHON: "/opt/py/bin/python3 -I",
        config.ENV_DEBUG: "yes",
        config.ENV_ACCEPT_TIMEOUT: "3",
        config.ENV_SCRIPT_DIR: "/tmp/stage",
    }
    cfg = config.BridgeConfig.from_env(env, accept_timeout=7.0, python_command=None)
    assert cfg.command() == ["/opt/py/bin/python3", "-I"]
    assert cfg.debug is True
    assert cfg.accept_timeout == 7.0
    assert cfg.script_dir == "/tmp/stage"


def test_config_rejects_bad_values():
    with pytest.raises(ValueError):
        config.BridgeConfig.from_env({config.ENV_ACCEPT_TIMEOUT: "soon"})
    with pytest.raises(TypeError):
        config.BridgeConfig.from_env({}, colour="blue")
    with pytest.raises(ValueError):
        config.BridgeConfig(python_command="").command()
    assert config.BridgeConfig(python_command=["py", "-3"]).command() == ["py", "-3"]
