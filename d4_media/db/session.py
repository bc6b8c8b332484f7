import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


D4_MEDIA_DB_URL = _require_env("D4_MEDIA_DB_URL")


def _connect_args(url: str) -> dict:
    # SQLite connections are shared with the request threadpool.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine_d4 = create_engine(
    D4_MEDIA_DB_URL,
    pool_pre_ping=True,
    future=True,
    connect_args=_connect_args(D4_MEDIA_DB_URL),
)

SessionLocalD4 = sessionmaker(
    bind=engine_d4,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
