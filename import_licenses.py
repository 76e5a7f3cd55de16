import json
import sys
from datetime import date
from pathlib import Path

from config import Settings
from db import make_engine, make_session_factory
from models import Base, LICENSE_LEVELS, LICENSE_STATUSES
from store import upsert_license


def load_records(path: Path) -> list[dict]:
    raw = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("licenses") or []
    if not isinstance(raw, list):
        raise ValueError("expected a JSON array or an object with a 'licenses' array")
    return raw


def import_record(db, item: dict) -> bool:
    device_id = str(item.get("device_id") or "").strip()
    level = str(item.get("level") or "").strip().lower()
    status = str(item.get("status") or "active").strip().lower()
    try:
        expiry = date.fromisoformat(str(item.get("expiry") or "").strip())
    except ValueError:
        print(f"[SKIP] bad expiry: {device_id or item}")
        return False

    if not device_id or level not in LICENSE_LEVELS or status not in LICENSE_STATUSES:
        print(f"[SKIP] invalid record: {item}")
        return False

    upsert_license(
        db,
        device_id=device_id,
        username=str(item.get("username") or "").strip(),
        level=level,
        expiry=expiry,
        status=status,
    )
    print(f"[OK] {device_id}")
    return True


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) != 1:
        print("Usage: python -m import_licenses LICENSES.json")
        return 1

    settings = Settings.from_env()
    engine = make_engine(settings.db_url)
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    records = load_records(Path(argv[0]))
    imported = 0
    with SessionLocal() as db:
        for item in records:
            if isinstance(item, dict) and import_record(db, item):
                imported += 1
        db.commit()

    print(f"imported {imported}/{len(records)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
