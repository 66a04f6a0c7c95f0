import uuid
from datetime import UTC, date, datetime
from pathlib import Path

import sqlalchemy as sa
from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from dealerbooks.config import get_settings


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    profiles: Mapped[list["Profile"]] = relationship(back_populates="organization")


class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    full_name: Mapped[str | None] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="user")  # admin/user
    api_token_hash: Mapped[str | None] = mapped_column(String, unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    organization: Mapped["Organization"] = relationship(back_populates="profiles")


class InventoryItem(Base):
    __tablename__ = "inventory_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.user_id"), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    registration_number: Mapped[str] = mapped_column(String, nullable=False, index=True)
    chassis_number: Mapped[str | None] = mapped_column(String)
    brand: Mapped[str] = mapped_column(String, nullable=False)
    model: Mapped[str | None] = mapped_column(String)
    year_model: Mapped[int | None] = mapped_column(Integer)
    mileage: Mapped[int | None] = mapped_column(Integer)
    first_registration_date: Mapped[date | None] = mapped_column(Date)
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    purchase_price: Mapped[float] = mapped_column(Float, nullable=False)
    purchase_channel: Mapped[str | None] = mapped_column(String)  # Privatperson/Företag/...
    seller: Mapped[str | None] = mapped_column(String)
    purchaser: Mapped[str | None] = mapped_column(String)
    vat_type: Mapped[str | None] = mapped_column(String)
    down_payment: Mapped[float | None] = mapped_column(Float)
    expected_selling_price: Mapped[float | None] = mapped_column(Float)
    selling_price: Mapped[float | None] = mapped_column(Float)
    selling_date: Mapped[date | None] = mapped_column(Date)
    sales_channel: Mapped[str | None] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="in_stock")  # in_stock/in_transit/sold
    fortnox_sync_status: Mapped[str] = mapped_column(
        String, default="pending"
    )  # pending/synced/failed
    fortnox_voucher_series: Mapped[str | None] = mapped_column(String)
    fortnox_verification_number: Mapped[str | None] = mapped_column(String)
    fortnox_synced_at: Mapped[datetime | None] = mapped_column(DateTime)
    purchase_documentation: Mapped[str | None] = mapped_column(String)  # storage key
    comment: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    sync_log: Mapped[list["SyncLogEntry"]] = relationship(back_populates="inventory_item")


class FortnoxIntegration(Base):
    __tablename__ = "fortnox_integrations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.user_id"), nullable=False, index=True)
    access_token: Mapped[str | None] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime)
    company_name: Mapped[str | None] = mapped_column(String)
    oauth_state: Mapped[str | None] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)


class SyncLogEntry(Base):
    __tablename__ = "fortnox_sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    inventory_item_id: Mapped[str] = mapped_column(
        ForeignKey("inventory_items.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    sync_type: Mapped[str] = mapped_column(String, default="purchase")
    sync_status: Mapped[str] = mapped_column(String, default="pending")  # pending/success/failed
    sync_data: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    fortnox_verification_number: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    inventory_item: Mapped["InventoryItem"] = relationship(back_populates="sync_log")


class CorrectionRecord(Base):
    __tablename__ = "fortnox_corrections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    original_series: Mapped[str] = mapped_column(String, nullable=False)
    original_number: Mapped[str] = mapped_column(String, nullable=False)
    correction_series: Mapped[str] = mapped_column(String, nullable=False)
    correction_number: Mapped[str] = mapped_column(String, nullable=False)
    correction_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)


class FortnoxErrorLog(Base):
    __tablename__ = "fortnox_errors_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)


def log_fortnox_error(
    session, user_id: str, error_type: str, message: str, context: dict | None = None
):
    """Add a FortnoxErrorLog record to the session."""
    session.add(
        FortnoxErrorLog(user_id=user_id, type=error_type, message=message, context=context or {})
    )


def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(database_path: str | None = None) -> sa.Engine:
    if database_path is None:
        database_path = get_settings().database_path

    Path(database_path).parent.mkdir(parents=True, exist_ok=True)

    engine = sa.create_engine(f"sqlite:///{database_path}")
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def init_db(database_path: str | None = None) -> sa.Engine:
    engine = create_engine(database_path)
    Base.metadata.create_all(engine)
    return engine
