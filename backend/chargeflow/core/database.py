from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Query, Session, declarative_base, sessionmaker

from chargeflow.core.config import settings

engine = create_engine(
    settings.APP_DATABASE_DSN,
    connect_args=({"check_same_thread": False} if "sqlite" in settings.APP_DATABASE_DSN else {}),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables."""
    Base.metadata.create_all(bind=engine)


def supports_select_for_update(db: Session) -> bool:
    bind = db.get_bind()
    return bind.dialect.name != "sqlite"


def lock_for_update(db: Session, query: Query[Any]) -> Query[Any]:
    """Apply ``SELECT ... FOR UPDATE`` where the dialect supports it."""
    if supports_select_for_update(db):
        return query.with_for_update()
    return query


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a unit of work that is committed as a whole or not at all.

    Any exception rolls back every change made inside the block and is
    re-raised to the caller.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
