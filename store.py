"""Query helpers over the license, session and event tables.

Every helper takes an open ``Session``; callers own the transaction.
"""
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import License, SessionRecord, Event, SESSION_RUNNING

MAX_LIST_LIMIT = 1000
DEFAULT_LIST_LIMIT = 200

def clamp_limit(limit: int | None) -> int:
    if not limit:
        return DEFAULT_LIST_LIMIT
    return max(1, min(int(limit), MAX_LIST_LIMIT))

def day_start(d: date) -> datetime:
    return datetime.combine(d, time.min)

def day_after(d: date) -> datetime:
    return datetime.combine(d + timedelta(days=1), time.min)

# ---------- licenses ----------
def get_license(db: Session, device_id: str) -> License | None:
    return db.get(License, device_id)

def list_licenses(db: Session) -> list[License]:
    return list(db.execute(select(License).order_by(License.device_id)).scalars().all())

def upsert_license(db: Session, *, device_id: str, username: str, level: str, expiry: date, status: str) -> License:
    """Replace-or-insert keyed by device_id. Does not commit."""
    lic = db.get(License, device_id)
    if lic is None:
        lic = License(device_id=device_id)
        db.add(lic)
    lic.username = username
    lic.level = level
    lic.expiry = expiry
    lic.status = status
    return lic

def delete_license(db: Session, device_id: str) -> bool:
    lic = db.get(License, device_id)
    if lic is None:
        return False
    db.delete(lic)
    return True

# ---------- sessions ----------
def get_session(db: Session, session_id: str) -> SessionRecord | None:
    return db.get(SessionRecord, session_id)

def running_sessions(db: Session, device_id: str) -> list[SessionRecord]:
    stmt = (
        select(SessionRecord)
        .where(SessionRecord.device_id == device_id, SessionRecord.status == SESSION_RUNNING)
        .order_by(SessionRecord.start_time.desc())
        .with_for_update()
    )
    return list(db.execute(stmt).scalars().all())

def latest_running_session(db: Session, device_id: str) -> SessionRecord | None:
    rows = running_sessions(db, device_id)
    return rows[0] if rows else None

def list_sessions(db: Session, *, device_id: str = "", status: str = "", since: date | None = None,
                  until: date | None = None, limit: int | None = None) -> list[SessionRecord]:
    stmt = select(SessionRecord)
    if device_id:
        stmt = stmt.where(SessionRecord.device_id == device_id)
    if status:
        stmt = stmt.where(SessionRecord.status == status)
    if since:
        stmt = stmt.where(SessionRecord.start_time >= day_start(since))
    if until:
        stmt = stmt.where(SessionRecord.start_time < day_after(until))
    stmt = stmt.order_by(SessionRecord.start_time.desc()).limit(clamp_limit(limit))
    return list(db.execute(stmt).scalars().all())

# ---------- events ----------
def list_events(db: Session, *, device_id: str = "", since: date | None = None,
                until: date | None = None, limit: int | None = None) -> list[Event]:
    stmt = select(Event)
    if device_id:
        stmt = stmt.where(Event.device_id == device_id)
    if since:
        stmt = stmt.where(Event.created_at >= day_start(since))
    if until:
        stmt = stmt.where(Event.created_at < day_after(until))
    stmt = stmt.order_by(Event.created_at.desc(), Event.id.desc()).limit(clamp_limit(limit))
    return list(db.execute(stmt).scalars().all())
