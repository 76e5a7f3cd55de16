"""License status computation.

Precedence is fixed: missing -> inactive -> expired -> valid. Every device id
maps to exactly one status, and only ``valid`` may open or close sessions.
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Optional

from models import License
from security import utcnow
from store import get_license


class LicenseStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INACTIVE = "inactive"
    UNAUTHORISED = "unauthorised"


@dataclass(frozen=True)
class LicenseCheck:
    status: LicenseStatus
    username: Optional[str] = None
    level: Optional[str] = None
    expiry: Optional[date] = None

    @property
    def is_valid(self) -> bool:
        return self.status is LicenseStatus.VALID

    def to_dict(self) -> dict:
        out = {"status": self.status.value}
        if self.status is not LicenseStatus.UNAUTHORISED:
            out["username"] = self.username
            out["level"] = self.level
            out["expiry"] = str(self.expiry) if self.expiry else None
        return out


def utc_date(now: datetime) -> date:
    """Calendar date of ``now`` in UTC; naive datetimes are taken as UTC."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.date()


def evaluate_record(lic: Optional[License], now: datetime) -> LicenseCheck:
    if lic is None:
        return LicenseCheck(LicenseStatus.UNAUTHORISED)

    if lic.status != "active":
        status = LicenseStatus.INACTIVE
    elif lic.expiry < utc_date(now):
        # valid through 23:59:59 UTC on the expiry date
        status = LicenseStatus.EXPIRED
    else:
        status = LicenseStatus.VALID

    return LicenseCheck(status, username=lic.username, level=lic.level, expiry=lic.expiry)


class LicenseEvaluator:
    """Looks up a license and computes its status.

    Store errors propagate: an undetermined license is never reported valid.
    """

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def evaluate(self, device_id: str, now: Optional[datetime] = None) -> LicenseCheck:
        with self._session_factory() as db:
            lic = get_license(db, device_id)
            return evaluate_record(lic, now or self._clock())
