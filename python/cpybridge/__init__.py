"""
cpybridge - run Python scripts against pandas in a companion process.

The host keeps one long-lived companion interpreter and talks to it over a
local socket.  Modules, leaves first:

    codec.py      → length-prefixed frames, JSON messages, CSV row dialect
    transport.py  → framed channel over the accepted socket
    protocol.py   → command and acknowledgement variants
    mutex.py      → identity keyed exclusive-access ticket
    supervisor.py → environment check, launch, handshake and teardown of the companion
    session.py    → lifecycle, scoped access and the command API
    executor.py   → script steps over input frames
"""

from .config import BridgeConfig  # noqa: F401
from .errors import (  # noqa: F401
    BridgeError,
    CompanionError,
    EnvironmentUnavailableError,
    HandshakeError,
    MalformedMessageError,
    MalformedRowDataError,
    ProcessStartError,
    ProtocolMismatchError,
    ScriptError,
    ScriptLoadError,
    SessionIOError,
    SessionUnavailableError,
    TransferError,
    TruncatedStreamError,
    UnsupportedFieldTypeError,
)
from .schema import Field, FieldType, FrameData, FrameSchema, HostType, VariableType, infer_schema  # noqa: F401
from .protocol import DebugOutput, ScriptOutput  # noqa: F401
from .mutex import SessionMutex  # noqa: F401
from .supervisor import ProcessSupervisor, SupervisorState  # noqa: F401
from .session import (  # noqa: F401
    Session,
    SessionHandle,
    SessionStatus,
    acquire_session,
    default_session,
    env_check_results,
    init_session,
    python_available,
    release_session,
    shutdown_default_session,
)
from .executor import ScriptStep, StepResult, determine_output, run  # noqa: F401

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "CompanionError",
    "EnvironmentUnavailableError",
    "HandshakeError",
    "MalformedMessageError",
    "MalformedRowDataError",
    "ProcessStartError",
    "ProtocolMismatchError",
    "ScriptError",
    "ScriptLoadError",
    "SessionIOError",
    "SessionUnavailableError",
    "TransferError",
    "TruncatedStreamError",
    "UnsupportedFieldTypeError",
    "Field",
    "FieldType",
    "FrameData",
    "FrameSchema",
    "HostType",
    "VariableType",
    "infer_schema",
    "DebugOutput",
    "ScriptOutput",
    "SessionMutex",
    "ProcessSupervisor",
    "SupervisorState",
    "Session",
    "SessionHandle",
    "SessionStatus",
    "acquire_session",
    "default_session",
    "env_check_results",
    "init_session",
    "python_available",
    "release_session",
    "shutdown_default_session",
    "ScriptStep",
    "StepResult",
    "determine_output",
    "run",
]

__version__ = "0.1.0-dev"
