"""
Pytest fixtures for cpybridge tests.

``ScriptedCompanion`` stands in for the companion process on one end of a
socket pair; ``FakeSupervisor`` hands the other end to a :class:`Session`
so the session can be exercised without launching an interpreter.
"""

import socket
import threading
from typing import Callable, List, Optional

import pytest

from cpybridge import codec
from cpybridge.config import BridgeConfig
from cpybridge.errors import TruncatedStreamError
from cpybridge.session import Session
from cpybridge.transport import FrameChannel


class ScriptedCompanion:
    def __init__(self, handler: Callable[[dict, "ScriptedCompanion"], None]) -> None:
        self.host_sock, self.peer = socket.socketpair()
        self.handler = handler
        self.received: List[dict] = []
        self.bodies: List[str] = []
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            while True:
                message = codec.read_message(self.peer)
                self.received.append(message)
                if message.get("command") == "shutdown":
                    break
                self.handler(message, self)
        except (TruncatedStreamError, OSError):
            pass
        finally:
            self.peer.close()

    def send(self, payload: dict) -> None:
        codec.write_message(payload, self.peer)

    def send_text(self, text: str) -> None:
        codec.write_frame(text.encode("utf-8"), self.peer)

    def read_text(self) -> str:
        text = codec.read_frame(self.peer).decode("utf-8")
        self.bodies.append(text)
        return text

    def hang_up(self) -> None:
        self.peer.close()

    def join(self, timeout: float = 2.0) -> None:
        self._thread.join(timeout)


class FakeSupervisor:
    def __init__(self, config: BridgeConfig, companion: ScriptedCompanion) -> None:
        self.config = config
        self.companion = companion
        self.channel: Optional[FrameChannel] = None
        self.channel_lock = threading.RLock()
        self.pid: Optional[int] = None
        self.env_check_output: Optional[str] = None
        self.start_calls = 0
        self.shutdown_calls: List[bool] = []

    def start(self) -> int:
        self.start_calls += 1
        self.env_check_output = ""
        self.channel = FrameChannel(self.companion.host_sock, peer="fake-companion")
        self.pid = 4242
        return self.pid

    def shutdown(self, force: bool = False) -> None:
        self.shutdown_calls.append(force)
        if self.channel is None or self.channel.closed:
            return
        if not force:
            self.channel.send_message({"command": "shutdown", "debug": False})
        self.channel.close()


def ok(**fields) -> dict:
    message = {"response": "ok"}
    message.update(fields)
    return message


def echo_handler(message: dict, companion: ScriptedCompanion) -> None:
    """Answer every command with an empty ok ack (reading row bodies)."""
    if message.get("command") == "accept_rows" and message.get("num_rows"):
        companion.read_text()
    companion.send(ok())


@pytest.fixture
def make_session():
    created = []

    def _make(handler=echo_handler, config: Optional[BridgeConfig] = None):
        companion = ScriptedCompanion(handler)
        supervisors: List[FakeSupervisor] = []

        def factory(cfg: BridgeConfig) -> FakeSupervisor:
            supervisor = FakeSupervisor(cfg, companion)
            supervisors.append(supervisor)
            return supervisor

        session = Session(config or BridgeConfig(), supervisor_factory=factory)
        session.initialize()
        created.append((session, companion))
        return session, companion, supervisors

    yield _make

    for session, companion in created:
        session.shutdown()
        companion.join()
