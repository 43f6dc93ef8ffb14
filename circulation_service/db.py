from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import StoreError
from .models import Base


def make_engine(url, echo=False):
    """
    Build the SQLAlchemy engine and create tables if not present.
    In-memory SQLite gets a single shared connection so every session
    sees the same database.
    """
    kwargs = {"future": True, "echo": echo}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}

    engine = create_engine(url, **kwargs)
    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
    )


@contextmanager
def session_scope(session_factory):
    """
    One transaction per unit of work: commit on success, roll back on
    any failure. Store failures surface as StoreError.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreError(f"store operation failed: {e}") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
