#!/usr/bin/env python3
"""
DASH Experiment Session Table

Thread-safe registry of in-flight measurement sessions and the periodic
reaper that drops sessions that were never collected.

Session lifecycle:
    [none] --create--> ACTIVE --record_iteration x cap--> EXPIRED
       ^                  |                                  |
       +------pop---------+-------------pop------------------+
       +------reap (idle > max_idle, data is discarded)------+
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Optional

from dash_model import CURRENT_SERVER_SCHEMA_VERSION, ServerResults, ServerSchema


logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 17
DEFAULT_MAX_IDLE_SEC = 60.0
DEFAULT_REAP_INTERVAL_SEC = 14.0


class SessionState(Enum):
    """State of a token as seen by the download handler."""
    MISSING = auto()
    ACTIVE = auto()
    EXPIRED = auto()


@dataclass
class Session:
    """Server-side state of one measurement run."""
    token: str
    created_at: float
    iteration: int = 0
    schema: ServerSchema = field(default_factory=ServerSchema)

    @property
    def measurements(self) -> list[ServerResults]:
        return self.schema.server


# =============================================================================
# SESSION TABLE
# =============================================================================

class SessionTable:
    """
    Concurrent map from session token to Session.

    A single lock guards the whole table. Every method is a short critical
    section and never blocks while holding it.
    """

    def __init__(
        self,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        clock: Callable[[], float] = time.time,
    ):
        self._max_iterations = max_iterations
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}

    def create(self, token: str) -> None:
        """Register a new session; tokens are assumed unique."""
        now = self._clock()
        session = Session(
            token=token,
            created_at=now,
            schema=ServerSchema(
                srvr_schema_version=CURRENT_SERVER_SCHEMA_VERSION,
                srvr_timestamp=int(now),
            ),
        )
        with self._lock:
            self._sessions[token] = session

    def state(self, token: str) -> SessionState:
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return SessionState.MISSING
            if session.iteration >= self._max_iterations:
                return SessionState.EXPIRED
            return SessionState.ACTIVE

    def record_iteration(self, token: str) -> None:
        """
        Append a ServerResults entry and bump the iteration counter.

        Silently ignores unknown tokens. The iteration cap is not enforced
        here; callers check state() first.
        """
        now = self._clock()
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return
            session.schema.server.append(ServerResults(
                iteration=session.iteration,
                ticks=now - session.created_at,
                timestamp=int(now),
            ))
            session.iteration += 1

    def pop(self, token: str) -> Optional[Session]:
        """Remove and return the session, or None if it is not registered."""
        with self._lock:
            return self._sessions.pop(token, None)

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def reap_stale(self, max_idle: float = DEFAULT_MAX_IDLE_SEC) -> int:
        """Delete every session created more than max_idle seconds ago."""
        with self._lock:
            now = self._clock()
            logger.debug("reap_stale: inspecting %d sessions", len(self._sessions))
            stale = [
                token for token, session in self._sessions.items()
                if now - session.created_at > max_idle
            ]
            logger.debug("reap_stale: reaping %d stale sessions", len(stale))
            for token in stale:
                del self._sessions[token]
            return len(stale)


# =============================================================================
# REAPER
# =============================================================================

class SessionReaper:
    """
    Periodic background sweep over a SessionTable.

    start() launches the sweep task on the running loop, stop() requests
    termination and join() waits until no further sweep can happen.
    """

    def __init__(
        self,
        table: SessionTable,
        interval: float = DEFAULT_REAP_INTERVAL_SEC,
        max_idle: float = DEFAULT_MAX_IDLE_SEC,
    ):
        self._table = table
        self._interval = interval
        self._max_idle = max_idle
        self._stop = asyncio.Event()
        self._done = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._done.is_set()

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("reaper already started")
        self._task = asyncio.create_task(self._loop())

    def stop(self) -> None:
        self._stop.set()

    async def join(self) -> None:
        if self._task is None:
            return
        await self._done.wait()

    async def _loop(self) -> None:
        logger.debug("reaper: start")
        try:
            while not self._stop.is_set():
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
                if self._stop.is_set():
                    break
                self._table.reap_stale(self._max_idle)
        finally:
            logger.debug("reaper: done")
            self._done.set()
