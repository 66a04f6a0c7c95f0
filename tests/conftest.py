from datetime import UTC, date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa
from sqlalchemy.pool import StaticPool

from dealerbooks.config import Settings
from dealerbooks.db import Base, FortnoxIntegration, InventoryItem, Organization, Profile
from dealerbooks.fortnox.tokens import TokenManager


@pytest.fixture
def engine():
    """In-memory SQLite database with all tables created.

    StaticPool keeps one connection so the API's worker threads see the same data.
    """
    engine = sa.create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Enable foreign keys for SQLite
    @sa.event.listens_for(engine, "connect")
    def enable_fk(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def session(engine):
    """SQLAlchemy session bound to the in-memory database."""
    with sa.orm.Session(engine) as session:
        yield session


@pytest.fixture
def settings(tmp_path):
    """Test settings with dummy values."""
    return Settings(
        fortnox_client_id="test-client-id",
        fortnox_client_secret="test-client-secret",
        database_path=":memory:",
        storage_path=str(tmp_path / "storage"),
        log_json=False,
    )


@pytest.fixture
def org(session):
    org = Organization(id="org-1", name="Bilhallen AB")
    session.add(org)
    session.commit()
    return org


@pytest.fixture
def profile(session, org):
    profile = Profile(user_id="user-1", organization_id=org.id, email="anna@bilhallen.se")
    session.add(profile)
    session.commit()
    return profile


@pytest.fixture
def make_item(session, profile):
    """Factory for inventory items owned by the test profile."""

    def _make(**overrides):
        fields = {
            "user_id": profile.user_id,
            "organization_id": profile.organization_id,
            "registration_number": "ABC123",
            "brand": "Volvo",
            "model": "V70",
            "purchase_date": date(2024, 3, 15),
            "purchase_price": 85000.0,
        }
        fields.update(overrides)
        item = InventoryItem(**fields)
        session.add(item)
        session.commit()
        return item

    return _make


@pytest.fixture
def make_integration(session, profile):
    """Factory for Fortnox integrations; valid for an hour unless overridden."""

    def _make(**overrides):
        fields = {
            "user_id": profile.user_id,
            "access_token": "access-old",
            "refresh_token": "refresh-old",
            "token_expires_at": datetime.now(UTC) + timedelta(hours=1),
            "company_name": "Bilhallen AB",
            "is_active": True,
        }
        fields.update(overrides)
        integration = FortnoxIntegration(**fields)
        session.add(integration)
        session.commit()
        return integration

    return _make


@pytest.fixture
def fortnox():
    """Mock FortnoxClient."""
    return MagicMock()


@pytest.fixture
def tokens(engine, fortnox):
    return TokenManager(engine, fortnox, redirect_uri="http://localhost/cb", scope="bookkeeping")
