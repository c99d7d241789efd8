from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from scene_import.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Background tasks and the stream worker thread share the engine
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    """FastAPI dependency — yields a DB session and closes it after request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """FastAPI dependency — session factory for work that outlives the request."""
    return SessionLocal
