import logging
from datetime import date
from typing import Any, Literal

from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit import AuditLog, event_to_dict
from config import Settings
from db import make_engine, make_session_factory, ping
from evaluator import LicenseEvaluator
from logging_config import setup_logging
from models import Base, SESSION_RUNNING, SESSION_ENDED, SESSION_ABORTED
from rate_limiter import get_real_client_ip, make_limiter, rate_limit_exceeded_handler
from security import safe_eq, utcnow
from store import get_license, list_licenses, upsert_license, delete_license, list_sessions, list_events
from tracker import DurationPolicy, SessionConflictError, SessionTracker

logger = logging.getLogger("license_server.api")

MAX_DEVICE_ID_LEN = 128
MAX_EVENT_LEN = 32
MAX_SESSION_ID_LEN = 64
MAX_LEVEL_LEN = 32
SESSION_EVENTS = ("start", "end")


def safe_int(v) -> int | None:
    """Non-negative int or None; anything else counts as absent."""
    try:
        n = int(str(v).strip())
    except (TypeError, ValueError):
        return None
    return n if n >= 0 else None

def require_device_id(raw: str | None) -> str:
    device_id = (raw or "").strip()
    if not device_id:
        raise HTTPException(status_code=400, detail="device_id required")
    if len(device_id) > MAX_DEVICE_ID_LEN:
        raise HTTPException(status_code=400, detail="device_id too long")
    return device_id

def require_event(raw: str | None) -> str:
    event = (raw or "").strip().lower()
    if not event:
        raise HTTPException(status_code=400, detail="event required")
    if len(event) > MAX_EVENT_LEN:
        raise HTTPException(status_code=400, detail="event too long")
    return event

def optional_field(raw: str | None, name: str, max_len: int, lower: bool = False) -> str | None:
    value = (raw or "").strip()
    if len(value) > max_len:
        raise HTTPException(status_code=400, detail=f"{name} too long")
    return (value.lower() if lower else value) or None

def client_meta(req: Request) -> tuple[str, str]:
    return get_real_client_ip(req), req.headers.get("user-agent", "")


# ---------- request bodies ----------
class EventReq(BaseModel):
    device_id: str = ""
    event: str = ""
    # "script" is what older clients send for the level
    level: str | None = None
    script: str | None = None
    session_id: str | None = None
    duration_sec: int | None = None
    result: str | None = None
    data: dict[str, Any] | None = None

class LicenseUpsertReq(BaseModel):
    device_id: str
    username: str = ""
    level: Literal["lite", "premium"]
    expiry: date
    status: Literal["active", "inactive"] = "active"

    @field_validator("level", "status", mode="before")
    @classmethod
    def _normalize(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


def create_app(settings: Settings | None = None, clock=utcnow) -> FastAPI:
    settings = settings or Settings.from_env()

    engine = make_engine(settings.db_url)
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    evaluator = LicenseEvaluator(SessionLocal, clock)
    tracker = SessionTracker(
        SessionLocal,
        clock,
        DurationPolicy.PREFER_CLIENT if settings.trust_client_duration else DurationPolicy.SERVER_ONLY,
    )
    audit = AuditLog(SessionLocal, clock)
    limiter = make_limiter()

    app = FastAPI(title="Device License Server")
    app.state.settings = settings
    app.state.engine = engine
    app.state.evaluator = evaluator
    app.state.tracker = tracker
    app.state.audit = audit
    app.state.limiter = limiter

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SQLAlchemyError)
    async def store_fault_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Store fault on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "server_error"})

    def get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def require_admin(req: Request) -> str:
        """Validate the admin token from a Bearer header or X-Admin-Token.

        Returns the token string for audit logging.
        """
        if not settings.admin_tokens:
            raise HTTPException(status_code=401, detail="admin access not configured")
        auth = req.headers.get("authorization", "")
        if auth.startswith("Bearer "):
            token = auth.removeprefix("Bearer ").strip()
        else:
            token = req.headers.get("x-admin-token", "").strip()
        if not token:
            raise HTTPException(status_code=401, detail="missing admin token")
        if not any(safe_eq(token, t) for t in settings.admin_tokens):
            raise HTTPException(status_code=403, detail="invalid admin token")
        return token

    @app.get("/health")
    def health():
        if not ping(engine):
            return JSONResponse(status_code=503, content={"ok": False})
        return {"ok": True, "time": clock().isoformat()}

    # ---------- license check ----------
    @app.get("/check")
    @app.get("/validate")
    @limiter.limit(settings.rate_limit)
    def check(request: Request, device_id: str = ""):
        ip, ua = client_meta(request)
        device_id = require_device_id(device_id)

        try:
            lic = evaluator.evaluate(device_id)
        except SQLAlchemyError:
            audit.record(device_id, "check", "error_store", ip=ip, user_agent=ua)
            raise

        data = {} if lic.expiry is None else {"level": lic.level, "expiry": str(lic.expiry)}
        audit.record(device_id, "check", lic.status.value, ip=ip, user_agent=ua, data=data)
        return lic.to_dict()

    # ---------- events ----------
    def handle_event(request: Request, body: EventReq) -> dict:
        ip, ua = client_meta(request)
        device_id = require_device_id(body.device_id)
        event = require_event(body.event)
        level = optional_field(body.level or body.script, "level", MAX_LEVEL_LEN, lower=True)
        session_id = optional_field(body.session_id, "session_id", MAX_SESSION_ID_LEN)
        duration = body.duration_sec if body.duration_sec is not None and body.duration_sec >= 0 else None
        data = {"level": level, "session_id": session_id, "duration_sec": duration}

        if event not in SESSION_EVENTS:
            # other kinds are only logged
            audit.record(device_id, event, (body.result or "").strip()[:32] or "ok", ip=ip, user_agent=ua,
                         data={**data, **(body.data or {})})
            return {"status": "ok"}

        result = "error_store"
        try:
            lic = evaluator.evaluate(device_id)
            if not lic.is_valid:
                result = lic.status.value
                return {
                    "status": "ok",
                    "session": "not_started" if event == "start" else "not_ended",
                    "reason": lic.status.value,
                }

            if event == "start":
                try:
                    sid = tracker.start(device_id, level, session_id, ip=ip, user_agent=ua)
                except SessionConflictError:
                    result = "error_conflict"
                    raise HTTPException(status_code=409, detail="session_id already exists")
                result = "ok"
                data["session_id"] = sid
                return {"status": "ok", "session": "started", "session_id": sid}

            out = tracker.end(device_id, session_id, duration)
            if not out.closed:
                result = "not_found"
                return {"status": "ok", "session": "not_found"}
            result = "ok"
            data.update(session_id=out.session_id, duration_sec=out.duration_sec)
            return {
                "status": "ok",
                "session": "ended",
                "session_id": out.session_id,
                "duration_sec": out.duration_sec,
            }
        finally:
            audit.record(device_id, event, result, ip=ip, user_agent=ua, data=data)

    @app.post("/event")
    @limiter.limit(settings.rate_limit)
    def post_event(request: Request, body: EventReq):
        return handle_event(request, body)

    # legacy clients: /event?device_id=123&event=end&duration=25&script=premium
    @app.get("/event")
    @limiter.limit(settings.rate_limit)
    def get_event(
        request: Request,
        device_id: str = "",
        event: str = "",
        script: str = "",
        level: str = "",
        session_id: str = "",
        duration: str = "",
    ):
        body = EventReq(
            device_id=device_id,
            event=event,
            level=level or None,
            script=script or None,
            session_id=session_id or None,
            duration_sec=safe_int(duration),
        )
        return handle_event(request, body)

    # ---------- admin ----------
    @app.get("/admin/licenses")
    def admin_licenses(admin_token: str = Depends(require_admin), db: Session = Depends(get_db)):
        return [r.to_dict() for r in list_licenses(db)]

    @app.get("/admin/licenses/{device_id}")
    def admin_license_get(device_id: str, admin_token: str = Depends(require_admin), db: Session = Depends(get_db)):
        lic = get_license(db, device_id.strip())
        if not lic:
            raise HTTPException(status_code=404, detail="unknown device_id")
        return lic.to_dict()

    @app.post("/admin/licenses")
    def admin_license_upsert(req: Request, body: LicenseUpsertReq,
                             admin_token: str = Depends(require_admin), db: Session = Depends(get_db)):
        ip, ua = client_meta(req)
        device_id = require_device_id(body.device_id)
        lic = upsert_license(
            db,
            device_id=device_id,
            username=body.username.strip(),
            level=body.level,
            expiry=body.expiry,
            status=body.status,
        )
        db.commit()
        out = lic.to_dict()

        logger.info("license upserted for %s by admin:%s", device_id, admin_token[:8])
        audit.record(device_id, "admin_upsert", "ok", ip=ip, user_agent=ua,
                     data={"actor": f"admin:{admin_token[:8]}", **out})
        return out

    @app.delete("/admin/licenses/{device_id}")
    def admin_license_delete(req: Request, device_id: str,
                             admin_token: str = Depends(require_admin), db: Session = Depends(get_db)):
        ip, ua = client_meta(req)
        device_id = require_device_id(device_id)
        if not delete_license(db, device_id):
            raise HTTPException(status_code=404, detail="unknown device_id")
        db.commit()

        logger.info("license deleted for %s by admin:%s", device_id, admin_token[:8])
        audit.record(device_id, "admin_delete", "ok", ip=ip, user_agent=ua,
                     data={"actor": f"admin:{admin_token[:8]}"})
        return {"ok": True, "deleted": device_id}

    @app.get("/admin/events")
    def admin_events(device_id: str = "", since: date | None = None, until: date | None = None,
                     limit: int = 200, admin_token: str = Depends(require_admin), db: Session = Depends(get_db)):
        rows = list_events(db, device_id=device_id.strip(), since=since, until=until, limit=limit)
        return [event_to_dict(r) for r in rows]

    @app.get("/admin/sessions")
    def admin_sessions(device_id: str = "", status: str = "", since: date | None = None,
                       until: date | None = None, limit: int = 200,
                       admin_token: str = Depends(require_admin), db: Session = Depends(get_db)):
        status = status.strip().lower()
        if status and status not in (SESSION_RUNNING, SESSION_ENDED, SESSION_ABORTED):
            raise HTTPException(status_code=400, detail="invalid status")
        rows = list_sessions(db, device_id=device_id.strip(), status=status, since=since, until=until, limit=limit)
        return [r.to_dict() for r in rows]

    return app


settings = Settings.from_env()
setup_logging(settings.log_level, settings.log_json)
app = create_app(settings)
