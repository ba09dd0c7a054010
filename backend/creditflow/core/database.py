from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from creditflow.core.config import settings

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any failure. Nothing partial survives."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def get_db() -> Generator[Session, None, None]:
    """Yield a request-scoped session; always closed afterwards."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
