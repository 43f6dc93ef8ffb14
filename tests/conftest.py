"""Shared fixtures: an in-memory database with plans, customers and titles."""

import pytest
from sqlalchemy import select

from circulation_service.app import create_app
from circulation_service.config import Config
from circulation_service.db import make_engine, make_session_factory, session_scope
from circulation_service.engine import CirculationEngine
from circulation_service.inventory import add_copy, upsert_customer, upsert_plan, upsert_title
from circulation_service.models import Copy

API_KEY = "test-key"


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    yield make_session_factory(engine)
    engine.dispose()


def seed_catalog(session_factory):
    """
    Plans Basic (3) and Family (6); customers A, B, C, X on Basic and
    ORPHAN on a plan that does not exist; titles T1..T7 with one unbooked
    copy each; EMPTY has no copies.
    """
    with session_scope(session_factory) as session:
        upsert_plan(session, "Basic", 3)
        upsert_plan(session, "Family", 6)
        for cid in ("A", "B", "C", "X"):
            upsert_customer(session, cid, f"Customer {cid}", "Basic")
        upsert_customer(session, "ORPHAN", "Orphan", "Gold")

        for i in range(1, 8):
            upsert_title(
                session,
                f"T{i}",
                f"Title {i}",
                authors=f"Author {i}",
                tags="picture" if i % 2 else "chapter",
                min_age=i,
                max_age=i + 3,
            )
            add_copy(session, f"T{i}")
        upsert_title(session, "EMPTY", "No Copies Yet")


@pytest.fixture
def seeded(session_factory):
    seed_catalog(session_factory)
    return session_factory


@pytest.fixture
def file_sessions(tmp_path):
    """
    The same catalog in a SQLite file. Unlike the in-memory database,
    every thread gets its own connection and transaction.
    """
    engine = make_engine(f"sqlite:///{tmp_path / 'circulation.db'}")
    session_factory = make_session_factory(engine)
    seed_catalog(session_factory)
    yield session_factory
    engine.dispose()


@pytest.fixture
def engine(seeded):
    return CirculationEngine(seeded)


def copy_ids(session_factory, isbn):
    with session_scope(session_factory) as session:
        return list(
            session.execute(select(Copy.id).where(Copy.isbn == isbn).order_by(Copy.id)).scalars()
        )


def queue(engine, isbn, copy_id=None):
    return [(e.customer_id, e.serial) for e in engine.list_queue(isbn, copy_id)]


class _TestConfig(Config):
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SERVICE_API_KEY = API_KEY
    NOTIFIER_URL = None
    TESTING = True


@pytest.fixture
def app():
    return create_app(_TestConfig)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def staff_headers():
    return {"X-API-Key": API_KEY}
