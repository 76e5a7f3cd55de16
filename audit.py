"""
Audit log for license checks and device events.

Writes are fire-and-forget: a failed write is logged and counted, never
raised, so the check/event response does not depend on the audit trail.
"""

import json
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import Event
from security import utcnow

logger = logging.getLogger("license_server.audit")


def _clean(value: Optional[str]) -> str:
    """Drop characters the database driver cannot encode, e.g. lone surrogates."""
    return (value or "").encode("utf-8", "replace").decode("utf-8")


class AuditLog:
    """Appends ``events`` rows through its own DB session."""

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock
        self._lock = threading.Lock()
        self.failures = 0

    def record(
        self,
        device_id: str,
        event: str,
        result: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Append one audit record.

        Args:
            device_id: Device the check/event concerns
            event: "check", "start", "end" or any client event kind
            result: Evaluator status, "ok", or "error_*"
            ip: Client address
            user_agent: Client user agent
            data: Extra structured fields, stored as JSON
        """
        try:
            entry = Event(
                device_id=_clean(device_id),
                event=_clean(event),
                result=_clean(result),
                ip=_clean(ip),
                user_agent=_clean(user_agent),
                data_json=_clean(json.dumps(data or {}, ensure_ascii=False, default=str)),
                created_at=self._clock(),
            )
            with self._session_factory() as db:
                db.add(entry)
                db.commit()
        except SQLAlchemyError:
            self._failed("Audit write skipped for device %r event %r", device_id, event)
        except Exception:
            self._failed("Audit record dropped for device %r event %r", device_id, event)

    def _failed(self, msg: str, *args) -> None:
        with self._lock:
            self.failures += 1
        logger.exception(msg, *args)


def event_to_dict(row: Event) -> dict:
    return {
        "id": row.id,
        "device_id": row.device_id,
        "event": row.event,
        "result": row.result,
        "ip": row.ip,
        "user_agent": row.user_agent,
        "data": json.loads(row.data_json or "{}"),
        "created_at": row.created_at.isoformat(),
    }
