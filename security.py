import hmac, secrets
from datetime import datetime, timezone

def safe_eq(a: str, b: str):
    return hmac.compare_digest(a.encode(), b.encode())

def new_session_id():
    return secrets.token_hex(12)

def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
