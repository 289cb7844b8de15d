"""Pytest configuration and fixtures."""

import os
import tempfile

# Settings are read at import time; keep tests off the on-disk dev database
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("POS_DOCUMENTS_DIR", tempfile.mkdtemp(prefix="kassa-docs-"))
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-hs256")

import base64
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from kassa.core.config import settings
from kassa.core.rate_limit import agent_limiter, limiter
from kassa.core.security import create_access_token, generate_agent_key
from kassa.db.base import Base, utcnow
from kassa.db.session import get_db
from kassa.main import app
# Import all models to ensure they're registered with Base.metadata
from kassa.models import *  # noqa: F401,F403
from kassa.models.pos import PosAgent, PosItem, PosLocation, PosTerminal, PosTransaction
from kassa.services.pos.payments import reset_mock_payments
from kassa.services.pos.payments.verifone import clear_oauth_cache
from kassa.services.pos.totals import build_totals
from kassa.services.pos.tse.fiskaly import clear_token_cache

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

ADMIN_ID = 1


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def isolated_pos_state(tmp_path, monkeypatch):
    """Fresh document directory and provider caches for every test."""
    monkeypatch.setattr(settings, "pos_documents_dir", str(tmp_path / "documents"))
    monkeypatch.setattr(settings, "pos_documents_base_url", None)
    monkeypatch.setattr(settings, "pos_payment_provider", "bridge")
    monkeypatch.setattr(settings, "pos_tse_provider", "noop")
    monkeypatch.setattr(settings, "pos_tse_allow_noop_fallback", False)
    monkeypatch.setattr(settings, "pos_tse_strict", False)
    reset_mock_payments()
    clear_oauth_cache()
    clear_token_cache()
    yield
    reset_mock_payments()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiters during tests to avoid flaky failures
    limiter.enabled = False
    agent_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True
    agent_limiter.enabled = True
    app.dependency_overrides.clear()


@pytest.fixture
def auth_token() -> str:
    """Get an admin token."""
    return create_access_token(data={"sub": str(ADMIN_ID), "email": "admin@example.com", "role": "admin"})


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
    """Get authentication headers."""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def test_location(db_session: Session) -> PosLocation:
    """Create a gallery location."""
    location = PosLocation(name="Gallery Mitte", address="Torstrasse 1, Berlin", is_active=True)
    db_session.add(location)
    db_session.commit()
    db_session.refresh(location)
    return location


@pytest.fixture
def test_terminal(db_session: Session, test_location: PosLocation) -> PosTerminal:
    """Create a ZVT terminal reachable on the local network."""
    terminal = PosTerminal(
        location_id=test_location.id,
        label="Counter",
        terminal_ref="T-100",
        provider="bridge",
        mode="bridge",
        host="192.168.1.50",
        port=22000,
        is_active=True,
    )
    db_session.add(terminal)
    db_session.commit()
    db_session.refresh(terminal)
    return terminal


@pytest.fixture
def test_artwork(db_session: Session) -> PosItem:
    """Create an artwork at 19% VAT."""
    item = PosItem(
        type="artwork",
        title="Blue Hour",
        sku="ART-1",
        price_gross_cents=10000,
        vat_rate=19,
        artist_name="Mira Kovac",
        is_active=True,
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture
def test_event(db_session: Session) -> PosItem:
    """Create an event ticket at 7% VAT."""
    item = PosItem(
        type="event",
        title="Opening Night",
        sku="EVT-1",
        price_gross_cents=2500,
        vat_rate=7,
        is_active=True,
    )
    db_session.add(item)
    db_session.commit()
    db_session.refresh(item)
    return item


@pytest.fixture
def test_agent(db_session: Session) -> PosAgent:
    """Create a bridge agent that has just been seen."""
    agent = PosAgent(
        name="Back office PC",
        agent_key=generate_agent_key(),
        location_label="Gallery Mitte",
        is_active=True,
        last_seen_at=utcnow(),
    )
    db_session.add(agent)
    db_session.commit()
    db_session.refresh(agent)
    return agent


@pytest.fixture
def agent_headers(test_agent: PosAgent) -> dict:
    return {"x-pos-agent-key": test_agent.agent_key}


@pytest.fixture
def signature_data_url() -> str:
    return "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\nsignature").decode("ascii")


@pytest.fixture
def b2c_buyer() -> dict:
    return {"type": "b2c", "name": "Jana Berg", "email": "jana@example.com"}


@pytest.fixture
def make_transaction(db_session: Session, test_location: PosLocation):
    """Factory for transactions in an arbitrary state, bypassing checkout."""
    def _make(
        status: str = "payment_pending",
        unit_gross_cents: int = 10000,
        vat_rate: int = 19,
        qty: int = 1,
        payment_provider: str = "external",
        payment_provider_tx_id=None,
        **fields,
    ) -> PosTransaction:
        lines = [{
            "itemId": 1,
            "qty": qty,
            "unitGrossCents": unit_gross_cents,
            "vatRate": vat_rate,
            "titleSnapshot": "Blue Hour",
        }]
        totals = build_totals(lines)
        values = {
            "buyer_type": "b2c",
            "buyer_name": "Jana Berg",
            "payment_method": "terminal_external",
            "created_by_admin_id": ADMIN_ID,
            "tse_provider": "noop",
        }
        values.update(fields)
        tx = PosTransaction(
            location_id=test_location.id,
            status=status,
            items=lines,
            gross_cents=totals.gross_cents,
            net_cents=totals.net_cents,
            vat_cents=totals.vat_cents,
            payment_provider=payment_provider,
            payment_provider_tx_id=payment_provider_tx_id,
            **values,
        )
        db_session.add(tx)
        db_session.commit()
        db_session.refresh(tx)
        return tx

    return _make
