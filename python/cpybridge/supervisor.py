"""Companion process supervisor.

Stages the bootstrap scripts, checks the interpreter environment, starts the
companion server, waits for it to connect back, and tears it down again.
The supervisor owns the process handle, the listening socket and the
connected :class:`~cpybridge.transport.FrameChannel`.
"""

from __future__ import annotations

import atexit
import logging
import os
import shutil
import signal
import socket
import subprocess
import tempfile
import threading
import time
from enum import Enum
from importlib import resources
from pathlib import Path
from typing import Dict, List, Optional, Set

from . import protocol
from .config import BridgeConfig
from .errors import (
    BridgeError,
    EnvironmentUnavailableError,
    HandshakeError,
    MalformedMessageError,
    ProcessStartError,
    SessionIOError,
)
from .transport import FrameChannel

logger = logging.getLogger(__name__)

ENV_CHECK_SCRIPT = "env_check.py"
SERVER_SCRIPT = "server.py"
COMPANION_LOG = "companion.log"
COMPANION_HOST_ENV = "CPYBRIDGE_COMPANION_HOST"

_ACCEPT_POLL = 0.2
_LOG_TAIL_CHARS = 2000


class SupervisorState(Enum):
    NOT_STARTED = "not_started"
    PROBING = "probing"
    LAUNCHED = "launched"
    LISTENING = "listening"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: Dict[SupervisorState, Set[SupervisorState]] = {
    SupervisorState.NOT_STARTED: {SupervisorState.PROBING},
    SupervisorState.PROBING: {SupervisorState.LAUNCHED, SupervisorState.FAILED},
    SupervisorState.LAUNCHED: {SupervisorState.LISTENING, SupervisorState.FAILED},
    SupervisorState.LISTENING: {SupervisorState.READY, SupervisorState.FAILED},
    SupervisorState.READY: {SupervisorState.SHUTTING_DOWN},
    SupervisorState.SHUTTING_DOWN: {SupervisorState.STOPPED},
    SupervisorState.STOPPED: set(),
    SupervisorState.FAILED: set(),
}


def _read_tail(path: Path) -> str:
    try:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            text = handle.read()
    except OSError:
        return ""
    return text[-_LOG_TAIL_CHARS:].strip()


class ProcessSupervisor:
    """Launches and owns one companion process."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        env_check_script: Optional[os.PathLike] = None,
        server_script: Optional[os.PathLike] = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.command: List[str] = self.config.command()
        self._env_check_source = Path(env_check_script) if env_check_script else None
        self._server_source = Path(server_script) if server_script else None

        self.script_dir: Optional[Path] = None
        self.env_check_output: Optional[str] = None
        self.process: Optional[subprocess.Popen] = None
        self.listener: Optional[socket.socket] = None
        self.channel: Optional[FrameChannel] = None
        self.pid: Optional[int] = None
        # round trips on ``channel`` must hold this lock
        self.channel_lock = threading.RLock()

        self._state = SupervisorState.NOT_STARTED
        self._state_lock = threading.Lock()
        self._shutdown_lock = threading.Lock()
        self._shutdown_started = False
        self._owns_script_dir = False
        self._log_file = None

    #
    # State
    #
    @property
    def state(self) -> SupervisorState:
        with self._state_lock:
            return self._state

    def _transition(self, new: SupervisorState) -> None:
        with self._state_lock:
            previous = self._state
            if new not in _ALLOWED_TRANSITIONS[previous]:
                raise RuntimeError(f"invalid supervisor transition {previous.value}->{new.value}")
            self._state = new
        logger.debug("supervisor %s -> %s", previous.value, new.value)

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    @property
    def log_path(self) -> Optional[Path]:
        return self.script_dir / COMPANION_LOG if self.script_dir else None

    #
    # Start-up
    #
    def start(self) -> int:
        """Run stage, environment check, launch and handshake; return the companion PID."""

        if self._shutdown_started:
            raise ProcessStartError("supervisor has been shut down")
        if self.state is SupervisorState.READY and self.pid is not None:
            return self.pid
        self._transition(SupervisorState.PROBING)
        try:
            directory = self.stage_scripts()
            self._check_environment(directory)
            channel = self._launch(directory)
            pid = self._handshake(channel)
        except BridgeError:
            self._abort()
            raise
        except OSError as exc:
            self._abort()
            raise ProcessStartError(f"could not start companion: {exc}") from exc
        self._transition(SupervisorState.READY)
        atexit.register(self.shutdown)
        logger.info("companion ready (pid %s)", pid)
        return pid

    def stage_scripts(self) -> Path:
        if self.config.script_dir:
            directory = Path(self.config.script_dir)
            directory.mkdir(parents=True, exist_ok=True)
        else:
            directory = Path(tempfile.mkdtemp(prefix="cpybridge-"))
            self._owns_script_dir = True
        self.script_dir = directory
        self._stage(directory / ENV_CHECK_SCRIPT, self._env_check_source)
        self._stage(directory / SERVER_SCRIPT, self._server_source)
        logger.debug("staged companion scripts in %s", directory)
        return directory

    def _stage(self, target: Path, source: Optional[Path]) -> None:
        if source is not None:
            shutil.copyfile(source, target)
            return
        target.write_bytes(resources.files("cpybridge.resources").joinpath(target.name).read_bytes())

    def _child_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env["PYTHONIOENCODING"] = "utf-8"
        env[COMPANION_HOST_ENV] = self.config.host
        return env

    def _check_environment(self, directory: Path) -> None:
        argv = [*self.command, str(directory / ENV_CHECK_SCRIPT)]
        logger.debug("probing environment: %s", " ".join(argv))
        try:
            completed = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=str(directory),
                env=self._child_env(),
                timeout=self.config.env_check_timeout,
                encoding="utf-8",
                errors="replace",
            )
        except (OSError, subprocess.SubprocessError) as exc:
            output = str(exc)
        else:
            output = completed.stdout or ""
            if not output.strip() and completed.returncode != 0:
                output = f"environment check exited with status {completed.returncode}"
        self.env_check_output = output
        if output.strip():
            raise EnvironmentUnavailableError(output)

    def _open_listener(self) -> socket.socket:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.bind((self.config.host, 0))
            listener.listen(1)
        except OSError:
            listener.close()
            raise
        return listener

    def _launch(self, directory: Path) -> FrameChannel:
        listener = self.listener = self._open_listener()
        port = listener.getsockname()[1]
        argv = [
            *self.command,
            str(directory / SERVER_SCRIPT),
            str(port),
            "debug" if self.config.debug else "",
        ]
        logger.debug("starting companion: %s", " ".join(argv))
        self._log_file = open(directory / COMPANION_LOG, "wb")
        process = self.process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=self._log_file,
            cwd=str(directory),
            env=self._child_env(),
        )
        self._transition(SupervisorState.LAUNCHED)
        self._transition(SupervisorState.LISTENING)
        self.channel = FrameChannel(self._accept(listener, process))
        return self.channel

    def _accept(self, listener: socket.socket, process: subprocess.Popen) -> socket.socket:
        timeout = self.config.accept_timeout
        deadline = time.monotonic() + timeout
        while True:
            code = process.poll()
            if code is not None:
                raise ProcessStartError(self._with_log(f"companion exited with status {code} before connecting"))
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProcessStartError(self._with_log(f"companion did not connect within {timeout:g}s"))
            listener.settimeout(min(_ACCEPT_POLL, remaining))
            try:
                conn, addr = listener.accept()
            except socket.timeout:
                continue
            conn.settimeout(None)
            logger.debug("companion connected from %s:%s", addr[0], addr[1])
            return conn

    def _handshake(self, channel: FrameChannel) -> int:
        try:
            self.pid = protocol.expect_pid(protocol.parse_response(channel.receive_message()))
        except (SessionIOError, MalformedMessageError) as exc:
            raise HandshakeError(self._with_log(f"companion handshake failed: {exc}")) from exc
        return self.pid

    def _with_log(self, message: str) -> str:
        if self._log_file is not None:
            self._log_file.flush()
        path = self.log_path
        tail = _read_tail(path) if path else ""
        return f"{message}\n{tail}" if tail else message

    def _abort(self) -> None:
        handle = self.process
        if handle is not None and handle.poll() is None:
            try:
                handle.kill()
                handle.wait(timeout=self.config.shutdown_timeout)
            except (OSError, subprocess.SubprocessError) as exc:
                logger.warning("could not kill failed companion: %s", exc)
        self._release_resources()
        self._transition(SupervisorState.FAILED)

    def _release_resources(self) -> None:
        if self.channel is not None:
            self.channel.close()
        listener, self.listener = self.listener, None
        if listener is not None:
            listener.close()
        log_file, self._log_file = self._log_file, None
        if log_file is not None:
            log_file.close()
        if self._owns_script_dir and self.script_dir is not None:
            shutil.rmtree(self.script_dir, ignore_errors=True)
            self._owns_script_dir = False

    #
    # Shutdown
    #
    def shutdown(self, force: bool = False) -> None:
        """Stop the companion. Idempotent and never raises.

        With ``force`` the graceful sequence is skipped; used once the
        channel is known to be broken.
        """

        with self._shutdown_lock:
            if self._shutdown_started:
                return
            self._shutdown_started = True
        atexit.unregister(self.shutdown)
        if self.state is not SupervisorState.READY:
            return
        handle = self.process
        alive_at_start = handle is not None and handle.poll() is None
        self._transition(SupervisorState.SHUTTING_DOWN)
        try:
            if force:
                self._force_kill(alive_at_start)
            else:
                self._graceful_shutdown()
        except (BridgeError, OSError, subprocess.SubprocessError) as exc:
            logger.warning("graceful companion shutdown failed (%s); forcing kill", exc)
            self._force_kill(alive_at_start)
        finally:
            self._release_resources()
            self._transition(SupervisorState.STOPPED)
        logger.info("companion stopped")

    def _graceful_shutdown(self) -> None:
        if not self.channel_lock.acquire(timeout=self.config.shutdown_timeout):
            raise SessionIOError("companion channel still busy")
        try:
            channel = self.channel
            if channel is not None and not channel.closed:
                if self.config.debug and self.config.drain_debug_on_shutdown:
                    self._drain_debug(channel)
                channel.send_message(protocol.Shutdown().to_payload(self.config.debug))
                channel.close()
        finally:
            self.channel_lock.release()
        handle = self.process
        if handle is None:
            return
        try:
            handle.wait(timeout=self.config.shutdown_timeout)
        except subprocess.TimeoutExpired:
            logger.debug("companion still running; terminating pid %s", handle.pid)
            handle.terminate()
            handle.wait(timeout=self.config.shutdown_timeout)

    def _drain_debug(self, channel: FrameChannel) -> None:
        command = protocol.GetDebugBuffer()
        channel.send_message(command.to_payload(True))
        output = command.decode(protocol.parse_response(channel.receive_message()))
        if output.stdout:
            logger.debug("companion stdout:\n%s", output.stdout)
        if output.stderr:
            logger.debug("companion stderr:\n%s", output.stderr)

    def _force_kill(self, alive_at_start: bool) -> None:
        if self.channel is not None:
            self.channel.close()
        handle = self.process
        if handle is not None and handle.poll() is None:
            try:
                handle.kill()
                handle.wait(timeout=self.config.shutdown_timeout)
            except (OSError, subprocess.SubprocessError) as exc:
                logger.warning("could not kill companion pid %s: %s", handle.pid, exc)
        pid = self.pid
        if pid is None or handle is None or not alive_at_start or pid == handle.pid:
            return
        # the interpreter command may be a wrapper whose child acknowledged a different pid
        self._kill_pid(pid)

    def _kill_pid(self, pid: int) -> None:
        logger.warning("force killing companion pid %s", pid)
        try:
            if os.name == "nt":
                subprocess.run(
                    ["taskkill", "/F", "/PID", str(pid)],
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=self.config.shutdown_timeout,
                )
            else:
                os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug("companion pid %s already gone", pid)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("could not kill companion pid %s: %s", pid, exc)
