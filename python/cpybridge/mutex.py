"""Exclusive-access ticket for the shared companion session."""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

logger = logging.getLogger(__name__)

_FREE = object()


class SessionMutex:
    """Re-entrant-by-identity lock.

    Identities are arbitrary objects compared with ``==``; the holder may
    acquire again without blocking and only the holder may release.  A
    release wakes a single waiter.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._holder: Any = _FREE

    @property
    def holder(self) -> Optional[Any]:
        with self._cond:
            return None if self._holder is _FREE else self._holder

    def locked(self) -> bool:
        with self._cond:
            return self._holder is not _FREE

    def acquire(self, identity: Any) -> bool:
        """Block until ``identity`` holds the ticket.

        Returns ``False`` when ``identity`` already held it.
        """

        with self._cond:
            if self._holder is not _FREE and self._holder == identity:
                return False
            if self._holder is not _FREE:
                logger.debug("%r waiting for session held by %r", identity, self._holder)
            while self._holder is not _FREE:
                self._cond.wait()
            self._holder = identity
            logger.debug("session acquired by %r", identity)
            return True

    def release(self, identity: Any) -> bool:
        with self._cond:
            if self._holder is _FREE or not self._holder == identity:
                return False
            self._holder = _FREE
            logger.debug("session released by %r", identity)
            self._cond.notify()
            return True
