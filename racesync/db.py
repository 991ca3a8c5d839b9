from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase

from .settings import settings


class Base(DeclarativeBase):
    pass


_engine = None
_SessionLocal = None


def init_db(db_url: str | None = None) -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        return
    url = db_url or settings.RACESYNC_DB_URL
    # sqlite serialises writers; give concurrent CAS writers time to wait for the lock
    connect_args = {"check_same_thread": False, "timeout": 30} if url.startswith("sqlite") else {}
    _engine = create_engine(url, future=True, echo=False, connect_args=connect_args)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
    from . import models  # noqa
    Base.metadata.create_all(bind=_engine)


def dispose_db() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def new_session() -> Session:
    if _SessionLocal is None:
        init_db()
    return _SessionLocal()


def get_session() -> Session:
    db = new_session()
    try:
        yield db
    finally:
        db.close()
