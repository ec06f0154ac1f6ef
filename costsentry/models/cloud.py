from datetime import date, datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from costsentry.db.base import Base, utcnow

# Floats in, floats out; SQLite has no native DECIMAL.
Money = Numeric(18, 6, asdecimal=False)


def new_id() -> str:
    return str(uuid4())


class CloudAccount(Base):
    """A user's connection to one cloud provider. Credentials live outside this table."""
    __tablename__ = "cloud_accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<CloudAccount {self.id} ({self.provider_id})>"


class CostSnapshotRecord(Base):
    """Snapshot header, one row per account/provider/period."""
    __tablename__ = "cost_snapshots"
    __table_args__ = (
        UniqueConstraint("account_id", "provider_id", "period_start", name="uix_snapshot_account_period"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    current_month_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0)
    last_month_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0)
    forecast_cost: Mapped[float] = mapped_column(Money, nullable=False, default=0)
    credits: Mapped[float] = mapped_column(Money, nullable=False, default=0)
    savings: Mapped[float] = mapped_column(Money, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    services: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class DailyCostRecord(Base):
    __tablename__ = "daily_costs"
    __table_args__ = (
        UniqueConstraint("account_id", "provider_id", "date", name="uix_daily_cost_account_date"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    cost: Mapped[float] = mapped_column(Money, nullable=False, default=0)
    breakdown: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
