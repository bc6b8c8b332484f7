from collections.abc import Generator

from .session import SessionLocalD4


def get_d4_db() -> Generator:
    db = SessionLocalD4()
    try:
        yield db
    finally:
        db.close()
