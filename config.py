import os
from dataclasses import dataclass

DEFAULT_DB_URL = "sqlite:///./license_server.db"

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def _split_csv(raw: str) -> list[str]:
    return [t.strip() for t in (raw or "").split(",") if t.strip()]

def _load_admin_tokens() -> frozenset[str]:
    toks = set(_split_csv(os.getenv("ADMIN_TOKENS") or ""))
    legacy = (os.getenv("ADMIN_TOKEN") or "").strip()  # legacy single token
    if not toks and legacy:
        toks = {legacy}
    return frozenset(toks)

@dataclass(frozen=True)
class Settings:
    db_url: str = DEFAULT_DB_URL
    admin_tokens: frozenset[str] = frozenset()
    rate_limit: str = "120/minute"
    trust_client_duration: bool = True
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_url=os.getenv("DB_URL") or os.getenv("DATABASE_URL") or DEFAULT_DB_URL,
            admin_tokens=_load_admin_tokens(),
            rate_limit=(os.getenv("RATE_LIMIT") or "120/minute").strip(),
            trust_client_duration=_env_bool("TRUST_CLIENT_DURATION", True),
            cors_origins=tuple(_split_csv(os.getenv("CORS_ORIGINS") or "*")) or ("*",),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
            log_json=_env_bool("LOG_JSON", False),
        )
