"""
Socket transport between the host and the companion process.

Responsibilities:
    * Own the connected socket accepted from the companion.
    * Read and write length-prefixed frames and JSON messages.
    * Turn every OS-level failure into a typed session error.
"""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import codec
from .errors import SessionIOError

logger = logging.getLogger(__name__)


@dataclass
class FrameChannel:
    """Blocking framed channel over a connected stream socket."""

    sock: Optional[socket.socket]
    peer: str = ""

    _close_lock: threading.Lock = field(init=False, default_factory=threading.Lock)

    def __post_init__(self) -> None:
        if self.sock is not None and not self.peer:
            try:
                host, port = self.sock.getpeername()[:2]
                self.peer = f"{host}:{port}"
            except (OSError, ValueError):
                self.peer = "<unknown>"

    @property
    def closed(self) -> bool:
        return self.sock is None

    def _require_socket(self) -> socket.socket:
        sock = self.sock
        if sock is None:
            raise SessionIOError("channel closed")
        return sock

    def send_frame(self, payload: bytes) -> None:
        sock = self._require_socket()
        try:
            codec.write_frame(payload, sock)
        except OSError as exc:
            raise SessionIOError(f"send to {self.peer} failed: {exc}") from exc

    def receive_frame(self) -> bytes:
        sock = self._require_socket()
        try:
            return codec.read_frame(sock)
        except OSError as exc:
            raise SessionIOError(f"receive from {self.peer} failed: {exc}") from exc

    def send_message(self, payload: Dict[str, Any]) -> None:
        logger.debug("-> %s", payload.get("command", payload))
        self.send_frame(codec.encode_message(payload))

    def receive_message(self) -> Dict[str, Any]:
        message = codec.decode_message(self.receive_frame())
        logger.debug("<- %s", message.get("response", message))
        return message

    def send_text(self, text: str) -> None:
        self.send_frame(text.encode("utf-8"))

    def receive_text(self) -> str:
        data = self.receive_frame()
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SessionIOError(f"undecodable text frame from {self.peer}: {exc}") from exc

    def close(self) -> None:
        with self._close_lock:
            sock, self.sock = self.sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError as exc:
            logger.debug("socket close failed: %s", exc)
