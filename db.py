from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

def normalize_db_url(db_url: str) -> str:
    # SQLAlchemy expects postgresql:// not postgres://
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql://", 1)
    return db_url

def make_engine(db_url: str):
    db_url = normalize_db_url(db_url)
    connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
    return create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)

def make_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)

def ping(engine) -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
