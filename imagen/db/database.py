from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from imagen import config


class Base(DeclarativeBase):
    pass


def make_engine(url: str = config.DATABASE_URL):
    return create_engine(url, connect_args={"check_same_thread": False})


engine = make_engine()

SessionLocal = sessionmaker(bind=engine)


def init_db():
    from imagen.db import tables  # noqa: F401 - registers table models

    Path(config.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal):
    """Session for code running outside a request, e.g. the generation pipeline."""
    db: Session = factory()
    try:
        yield db
    finally:
        db.close()
