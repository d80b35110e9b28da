from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.config import DATABASE_URL, STORE_TIMEOUT_SECONDS


def _connect_args(url: str) -> dict:
    if url.startswith("postgresql"):
        timeout_ms = int(STORE_TIMEOUT_SECONDS * 1000)
        return {
            "connect_timeout": max(1, int(STORE_TIMEOUT_SECONDS)),
            "options": f"-c statement_timeout={timeout_ms}",
        }
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": STORE_TIMEOUT_SECONDS}
    return {}


engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    pool_timeout=STORE_TIMEOUT_SECONDS,
    connect_args=_connect_args(DATABASE_URL),
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
