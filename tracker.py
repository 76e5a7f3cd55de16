"""Per-device session state machine.

NONE -> RUNNING -> ENDED | ABORTED. A device holds at most one running
session; starting a new one aborts the stale one first. Callers confirm the
license is valid before calling ``start`` or ``end``.
"""
import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from models import SessionRecord, SESSION_RUNNING, SESSION_ENDED, SESSION_ABORTED
from security import new_session_id, utcnow
from store import get_session, latest_running_session, running_sessions

logger = logging.getLogger("license_server.tracker")


class SessionConflictError(Exception):
    """A client-supplied session id is already taken."""


class DurationPolicy(str, Enum):
    PREFER_CLIENT = "prefer_client"
    SERVER_ONLY = "server_only"


@dataclass(frozen=True)
class EndResult:
    closed: bool
    session_id: Optional[str] = None
    duration_sec: Optional[int] = None


def elapsed_seconds(start: datetime, end: datetime) -> int:
    return max(0, math.floor((end - start).total_seconds()))


class _DeviceLocks:
    """Lock per device id, kept only while some caller is using it."""

    def __init__(self):
        self._guard = threading.Lock()
        # device_id -> [lock, number of callers holding or waiting]
        self._locks: dict[str, list] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, device_id: str):
        with self._guard:
            entry = self._locks.get(device_id)
            if entry is None:
                entry = self._locks[device_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[device_id]


class SessionTracker:
    def __init__(
        self,
        session_factory,
        clock: Callable[[], datetime] = utcnow,
        duration_policy: DurationPolicy = DurationPolicy.PREFER_CLIENT,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.duration_policy = duration_policy
        self._locks = _DeviceLocks()

    def start(self, device_id: str, level: Optional[str], client_session_id: Optional[str] = None, *,
              ip: str = "", user_agent: str = "") -> str:
        sid = client_session_id or new_session_id()
        with self._locks.hold(device_id), self._session_factory() as db:
            now = self._clock()
            self._abort(db, device_id, now)

            if client_session_id and get_session(db, client_session_id) is not None:
                # closing the session rolls the abort back too
                raise SessionConflictError(client_session_id)

            db.add(SessionRecord(
                session_id=sid,
                device_id=device_id,
                level=level or "unknown",
                start_time=now,
                status=SESSION_RUNNING,
                ip=ip or "",
                user_agent=user_agent or "",
            ))
            db.commit()
        logger.info("session started", extra={"device_id": device_id, "session_id": sid})
        return sid

    def end(self, device_id: str, client_session_id: Optional[str] = None,
            client_duration: Optional[int] = None) -> EndResult:
        with self._locks.hold(device_id), self._session_factory() as db:
            if client_session_id:
                rec = get_session(db, client_session_id)
                if rec is None or rec.device_id != device_id or rec.status != SESSION_RUNNING:
                    rec = None
            else:
                rec = latest_running_session(db, device_id)

            if rec is None:
                return EndResult(closed=False)

            now = self._clock()
            rec.end_time = now
            rec.status = SESSION_ENDED
            rec.duration_sec = self._resolve_duration(rec.start_time, now, client_duration)
            db.commit()
            return EndResult(closed=True, session_id=rec.session_id, duration_sec=rec.duration_sec)

    def _resolve_duration(self, start: datetime, now: datetime, client_duration: Optional[int]) -> int:
        if (
            self.duration_policy is DurationPolicy.PREFER_CLIENT
            and client_duration is not None
            and client_duration >= 0
        ):
            return int(client_duration)
        return elapsed_seconds(start, now)

    def _abort(self, db: Session, device_id: str, now: datetime) -> int:
        stale = running_sessions(db, device_id)
        for rec in stale:
            rec.end_time = now
            rec.status = SESSION_ABORTED
            rec.duration_sec = elapsed_seconds(rec.start_time, now)
            logger.warning(
                "aborted stale session %s for device %s after %ss",
                rec.session_id, device_id, rec.duration_sec,
            )
        if stale:
            # the partial unique index needs the abort written before the insert
            db.flush()
        return len(stale)
