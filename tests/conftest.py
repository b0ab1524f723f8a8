"""
conftest.py — Shared Test Fixtures for the Offering Engine

Provides an in-memory SQLite database, a FastAPI TestClient wired to it,
and factory fixtures for publishers, websites, offerings, relationships
and line items.

Business Rules:
- All tests run against an isolated in-memory DB
- Each test function gets freshly created tables
- Factories go through the repository so validation and defaults apply

Called by: all test files via pytest autodiscovery
Depends on: offering_engine.models (Base), offering_engine.database (get_db)
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"  # Must be set before importing offering_engine

import uuid

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from offering_engine.models import Base, RelationshipType, VerificationStatus
from offering_engine.services import line_item_lifecycle, offering_repository

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> TestClient:
    """TestClient whose requests share the test session."""
    from offering_engine.database import get_db
    from offering_engine.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def make_publisher(db_session: Session):
    counter = {"n": 0}

    def _make(email=None, **kw):
        counter["n"] += 1
        return offering_repository.create_publisher(
            db_session, email or f"publisher{counter['n']}@example.com", **kw
        )

    return _make


@pytest.fixture()
def make_website(db_session: Session):
    counter = {"n": 0}

    def _make(domain=None, **kw):
        counter["n"] += 1
        return offering_repository.create_website(
            db_session, domain or f"site{counter['n']}.example.com", **kw
        )

    return _make


@pytest.fixture()
def make_offering(db_session: Session):
    """Publisher + website relationship + linked offering in one call."""

    def _make(
        publisher,
        website,
        base_price,
        offering_type="guest_post",
        relationship_type=RelationshipType.CONTACT,
        verification_status=VerificationStatus.CLAIMED,
        priority_rank=100,
        **fields,
    ):
        rel = offering_repository.create_relationship(
            db_session,
            publisher.id,
            website.id,
            relationship_type=relationship_type,
            verification_status=verification_status,
            priority_rank=priority_rank,
        )
        offering, _ = offering_repository.create_offering_with_relationship(
            db_session, rel.id, offering_type, base_price, **fields
        )
        return offering

    return _make


@pytest.fixture()
def order_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def client_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def make_line_item(db_session: Session, order_id, client_id):
    """A single draft line item with a target page and anchor text."""

    def _make(**fields):
        spec = {
            "client_id": client_id,
            "target_page_url": "https://client.example.com/landing",
            "anchor_text": "best widgets",
            **fields,
        }
        _, items = line_item_lifecycle.add_line_items(
            db_session, order_id, [spec], actor="tester"
        )
        return items[0]

    return _make
