"""
Session manager for the companion runtime.

Responsibilities:
    * Start the companion through a :class:`ProcessSupervisor`.
    * Hand out the exclusive-access ticket (:class:`SessionHandle`).
    * Expose the command API: scripts, row transfer and variable queries.
    * Detect a lost companion so the next ``initialize`` relaunches it.

A :class:`Session` is an ordinary object; the module-level helpers manage a
single process-wide default session for callers that want one.
"""

from __future__ import annotations

import contextlib
import logging
import re
import threading
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from . import codec
from .config import BridgeConfig
from .errors import (
    BridgeError,
    MalformedMessageError,
    ProtocolMismatchError,
    ScriptError,
    SessionIOError,
    SessionUnavailableError,
)
from .mutex import SessionMutex
from .protocol import (
    ENCODING_JSON,
    ENCODING_STRING,
    AcceptRows,
    Command,
    DebugOutput,
    ExecuteScript,
    GetDebugBuffer,
    GetFrame,
    GetImage,
    GetVariableType,
    GetVariableValue,
    ScriptOutput,
    VariableIsSet,
    parse_response,
)
from .schema import FrameData, FrameSchema, VariableType
from .supervisor import ProcessSupervisor
from .transport import FrameChannel

logger = logging.getLogger(__name__)

SupervisorFactory = Callable[[BridgeConfig], ProcessSupervisor]


class SessionStatus(Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    READY = "ready"
    SHUT_DOWN = "shut_down"
    FAILED = "failed"


class SessionHandle:
    """Scoped exclusive access to a :class:`Session`.

    Leaving the ``with`` block releases the ticket unless the holder had
    already acquired it before this handle was created.
    """

    def __init__(self, session: "Session", identity: Any, owns: bool) -> None:
        self.session = session
        self.identity = identity
        self._owns = owns
        self._closed = False

    def __enter__(self) -> "SessionHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True
        if self._owns:
            self._owns = False
            self.session.release(self.identity)

    def _live(self) -> "Session":
        if self._closed:
            raise SessionUnavailableError(f"session handle for {self.identity!r} is closed")
        return self.session

    def execute_script(self, script: str) -> ScriptOutput:
        return self._live().execute_script(script)

    def run_script(self, script: str) -> ScriptOutput:
        return self._live().run_script(script)

    def push_rows(self, schema: FrameSchema, rows: Iterable[Sequence[Any]], frame_name: str) -> None:
        self._live().push_rows(schema, rows, frame_name)

    def pull_frame(self, frame_name: str, include_row_index: bool = False) -> FrameData:
        return self._live().pull_frame(frame_name, include_row_index)

    def variable_exists(self, name: str) -> bool:
        return self._live().variable_exists(name)

    def variable_type(self, name: str) -> VariableType:
        return self._live().variable_type(name)

    def variable_as_string(self, name: str) -> str:
        return self._live().variable_as_string(name)

    def variable_as_json(self, name: str) -> Any:
        return self._live().variable_as_json(name)

    def variable_as_image(self, name: str) -> bytes:
        return self._live().variable_as_image(name)

    def debug_buffers(self) -> DebugOutput:
        return self._live().debug_buffers()


class Session:
    """One companion process plus the ticket guarding it."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        supervisor_factory: SupervisorFactory = ProcessSupervisor,
    ) -> None:
        self.config = config or BridgeConfig()
        self.mutex = SessionMutex()
        self.supervisor: Optional[ProcessSupervisor] = None
        self.env_check_output: Optional[str] = None
        self._supervisor_factory = supervisor_factory
        self._status = SessionStatus.UNINITIALIZED
        self._lifecycle_lock = threading.Lock()
        self._benign_warning = re.compile(self.config.benign_warning_pattern)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_ready(self) -> bool:
        return self._status is SessionStatus.READY

    @property
    def companion_pid(self) -> Optional[int]:
        return self.supervisor.pid if self.supervisor is not None else None

    #
    # Lifecycle
    #
    def initialize(self) -> bool:
        """Start the companion unless it is already running."""

        with self._lifecycle_lock:
            if self._status is SessionStatus.READY:
                return True
            self._status = SessionStatus.STARTING
            supervisor = self._supervisor_factory(self.config)
            try:
                supervisor.start()
            except BridgeError:
                self.env_check_output = supervisor.env_check_output
                self._status = SessionStatus.FAILED
                raise
            self.env_check_output = supervisor.env_check_output
            self.supervisor = supervisor
            self._status = SessionStatus.READY
            logger.debug("session ready")
            return True

    def shutdown(self) -> None:
        with self._lifecycle_lock:
            supervisor = self.supervisor
            if supervisor is not None:
                supervisor.shutdown()
            if self._status is not SessionStatus.UNINITIALIZED:
                self._status = SessionStatus.SHUT_DOWN

    def _mark_lost(self, supervisor: ProcessSupervisor, exc: BaseException) -> None:
        logger.warning("companion session lost: %s", exc)
        self._status = SessionStatus.SHUT_DOWN
        supervisor.shutdown(force=True)

    #
    # Exclusive access
    #
    def acquire(self, identity: Any) -> SessionHandle:
        """Block until ``identity`` holds the session."""

        if not self.is_ready:
            raise SessionUnavailableError(f"session is {self._status.value}")
        owns = self.mutex.acquire(identity)
        if not self.is_ready:
            if owns:
                self.mutex.release(identity)
            raise SessionUnavailableError(f"session is {self._status.value}")
        return SessionHandle(self, identity, owns)

    def release(self, identity: Any) -> bool:
        return self.mutex.release(identity)

    @contextlib.contextmanager
    def hold(self, identity: Any) -> Iterator[SessionHandle]:
        handle = self.acquire(identity)
        try:
            yield handle
        finally:
            handle.close()

    #
    # Round trips
    #
    @contextlib.contextmanager
    def _io(self) -> Iterator[FrameChannel]:
        supervisor = self.supervisor
        if not self.is_ready or supervisor is None:
            raise SessionUnavailableError(f"session is {self._status.value}")
        with supervisor.channel_lock:
            channel = supervisor.channel
            if channel is None or channel.closed:
                raise SessionUnavailableError("companion channel is closed")
            try:
                yield channel
            except (SessionIOError, ProtocolMismatchError, MalformedMessageError) as exc:
                # the reply stream can no longer be trusted to line up with requests
                self._mark_lost(supervisor, exc)
                raise

    def _call(self, command: Command) -> Any:
        with self._io() as channel:
            channel.send_message(command.to_payload(self.config.debug))
            return command.decode(parse_response(channel.receive_message()))

    def execute_script(self, script: str) -> ScriptOutput:
        if not script.endswith("\n"):
            script += "\n"
        output = self._call(ExecuteScript(script))
        if output.stderr and self._only_benign_warnings(output.stderr):
            return ScriptOutput(output.stdout, "")
        return output

    def run_script(self, script: str) -> ScriptOutput:
        output = self.execute_script(script)
        if output.stderr.strip():
            raise ScriptError(output.stderr)
        return output

    def _only_benign_warnings(self, stderr: str) -> bool:
        after_warning = False
        for line in stderr.splitlines():
            if self._benign_warning.search(line):
                after_warning = True
                continue
            if after_warning and line[:1] in (" ", "\t"):
                after_warning = False
                continue
            after_warning = False
            if line.strip():
                return False
        return True

    def push_rows(self, schema: FrameSchema, rows: Iterable[Sequence[Any]], frame_name: str) -> None:
        """Create (or replace) the data frame ``frame_name`` in the companion."""

        rows = list(rows)
        command = AcceptRows(frame_name, schema, len(rows))
        body = codec.encode_rows_to_csv(schema, rows) if rows else None
        with self._io() as channel:
            channel.send_message(command.to_payload(self.config.debug))
            if body is not None:
                channel.send_text(body)
            command.decode(parse_response(channel.receive_message()))
        logger.debug("pushed %d rows into %s", len(rows), frame_name)

    def pull_frame(self, frame_name: str, include_row_index: bool = False) -> FrameData:
        command = GetFrame(frame_name, include_row_index)
        with self._io() as channel:
            channel.send_message(command.to_payload(self.config.debug))
            command.decode(parse_response(channel.receive_message()))
            header = command.decode_header(parse_response(channel.receive_message()))
            body = channel.receive_text()
        rows = codec.decode_csv_to_rows(body, header.schema, header.num_rows)
        logger.debug("pulled %d rows from %s", len(rows), frame_name)
        return FrameData(header.schema, rows)

    def variable_exists(self, name: str) -> bool:
        return self._call(VariableIsSet(name))

    def variable_type(self, name: str) -> VariableType:
        return self._call(GetVariableType(name))

    def variable_as_string(self, name: str) -> str:
        return self._call(GetVariableValue(name, ENCODING_STRING))

    def variable_as_json(self, name: str) -> Any:
        return self._call(GetVariableValue(name, ENCODING_JSON))

    def variable_as_image(self, name: str) -> bytes:
        return self._call(GetImage(name))

    def debug_buffers(self) -> DebugOutput:
        return self._call(GetDebugBuffer())


#
# Process-wide default session
#
_DEFAULT_SESSION: Optional[Session] = None
_DEFAULT_SESSION_LOCK = threading.Lock()


def default_session(config: Optional[BridgeConfig] = None) -> Session:
    """Return the process-wide session, creating it on first use."""

    global _DEFAULT_SESSION
    with _DEFAULT_SESSION_LOCK:
        if _DEFAULT_SESSION is None:
            _DEFAULT_SESSION = Session(config or BridgeConfig.from_env())
        elif config is not None and config != _DEFAULT_SESSION.config:
            logger.debug("default session exists; ignoring new configuration")
        return _DEFAULT_SESSION


def init_session(config: Optional[BridgeConfig] = None) -> bool:
    return default_session(config).initialize()


def acquire_session(identity: Any) -> SessionHandle:
    with _DEFAULT_SESSION_LOCK:
        session = _DEFAULT_SESSION
    if session is None:
        raise SessionUnavailableError("python session has not been initialized")
    return session.acquire(identity)


def release_session(identity: Any) -> None:
    with _DEFAULT_SESSION_LOCK:
        session = _DEFAULT_SESSION
    if session is not None:
        session.release(identity)


def python_available() -> bool:
    with _DEFAULT_SESSION_LOCK:
        session = _DEFAULT_SESSION
    return session is not None and session.is_ready


def env_check_results() -> str:
    with _DEFAULT_SESSION_LOCK:
        session = _DEFAULT_SESSION
    if session is None or session.env_check_output is None:
        return ""
    return session.env_check_output


def shutdown_default_session() -> None:
    global _DEFAULT_SESSION
    with _DEFAULT_SESSION_LOCK:
        session, _DEFAULT_SESSION = _DEFAULT_SESSION, None
    if session is not None:
        session.shutdown()
