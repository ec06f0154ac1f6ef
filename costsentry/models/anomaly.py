"""
Anomaly persistence: rolling baselines and detected events.

Events are keyed by (account, provider, service, detected_date); re-detection
of the same key updates the open row instead of inserting a duplicate.
"""

from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from costsentry.db.base import Base, utcnow
from costsentry.models.cloud import Money, new_id


class AnomalyBaselineRecord(Base):
    __tablename__ = "anomaly_baselines"
    __table_args__ = (
        UniqueConstraint("provider_id", "account_id", "service_name", name="uix_baseline_series"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mean: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    variance: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_sample_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AnomalyEventRecord(Base):
    __tablename__ = "anomaly_events"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "provider_id", "service_name", "detected_date", name="uix_anomaly_event_key"
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    detected_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    anomaly_type: Mapped[str] = mapped_column(String(16), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    expected_cost: Mapped[float] = mapped_column(Money, nullable=False)
    actual_cost: Mapped[float] = mapped_column(Money, nullable=False)
    variance_percent: Mapped[float] = mapped_column(Float, nullable=False)
    contributing_services: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    root_cause: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resolution_status: Mapped[str] = mapped_column(String(20), nullable=False, default="open", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<AnomalyEvent {self.service_name} {self.detected_date} {self.severity}>"
