"""Exception hierarchy shared by every cpybridge layer."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base class for errors raised by the bridge."""


class SessionUnavailableError(BridgeError):
    """Raised when no usable companion session exists."""


class EnvironmentUnavailableError(SessionUnavailableError):
    """Raised when the companion runtime fails its environment check.

    The message is the check output, verbatim.
    """

    def __init__(self, diagnostic: str) -> None:
        super().__init__(diagnostic)
        self.diagnostic = diagnostic


class ProcessStartError(BridgeError):
    """Raised when the companion process could not be launched."""


class HandshakeError(ProcessStartError):
    """Raised when the companion does not acknowledge its PID."""


class SessionIOError(BridgeError):
    """Raised when the socket to the companion fails."""


class TruncatedStreamError(SessionIOError):
    """Raised when the peer closes the stream in the middle of a frame."""


class MalformedMessageError(BridgeError):
    """Raised when a JSON message cannot be decoded or lacks a field."""


class ProtocolMismatchError(BridgeError):
    """Raised when a response names a different frame or variable."""


class MalformedRowDataError(BridgeError):
    """Raised when CSV row data cannot be decoded against its schema."""


class UnsupportedFieldTypeError(BridgeError):
    """Raised for column types that cannot travel over the wire."""


class CompanionError(BridgeError):
    """Raised when the companion answers a command with an error."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.companion_message = message


class TransferError(CompanionError):
    """Raised when the companion rejects a row push or frame pull."""


class ScriptError(BridgeError):
    """Raised when a user script reports errors on stderr."""

    def __init__(self, stderr: str) -> None:
        super().__init__(stderr)
        self.stderr = stderr


class ScriptLoadError(BridgeError):
    """Raised when a script file cannot be read."""
