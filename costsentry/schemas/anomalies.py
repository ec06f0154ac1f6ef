"""
Anomaly schemas: baselines, events and the query shapes the API layer consumes.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

# Reserved service name for the account-wide total series.
ACCOUNT_TOTAL = "__total__"


class AnomalyType(str, Enum):
    SPIKE = "spike"
    DROP = "drop"
    TREND = "trend"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionStatus(str, Enum):
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    FALSE_POSITIVE = "false_positive"


class AnomalyBaseline(BaseModel):
    """Rolling expected-cost statistics for one (provider, account, service)."""
    provider_id: str
    account_id: str
    service_name: str
    mean: float = 0.0
    variance: float = Field(0.0, ge=0)
    sample_count: int = Field(1, ge=1)
    last_sample_date: Optional[date] = None
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def stddev(self) -> float:
        return self.variance ** 0.5


class ContributingService(BaseModel):
    name: str
    actual_cost: float
    expected_cost: float
    delta: float
    change_pct: Optional[float] = None


class AnomalyEvent(BaseModel):
    """Detected deviation. Only resolution_status changes after creation."""
    id: Optional[str] = None
    account_id: str
    provider_id: str
    service_name: str
    detected_date: date
    anomaly_type: AnomalyType
    severity: Severity
    expected_cost: float
    actual_cost: float
    variance_percent: float
    contributing_services: List[ContributingService] = Field(default_factory=list)
    root_cause: str = ""
    resolution_status: ResolutionStatus = ResolutionStatus.OPEN
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> tuple:
        return (self.account_id, self.provider_id, self.service_name, self.detected_date)


class AnomalyFilter(BaseModel):
    status: Optional[ResolutionStatus] = None
    severity: Optional[Severity] = None
    account_id: Optional[str] = None
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0)


class AnomalyPage(BaseModel):
    events: List[AnomalyEvent]
    total: int
