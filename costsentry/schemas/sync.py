from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from costsentry.core.exceptions import CostSentryException


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"  # snapshot persisted, a later step failed
    FAILURE = "failure"


class SyncStep(str, Enum):
    CREDENTIALS = "credentials"
    FETCH = "fetch"
    NORMALIZE = "normalize"
    PERSIST = "persist"
    MARK_SYNCED = "mark_synced"
    ANALYZE = "analyze"


class SyncError(BaseModel):
    provider_id: str
    step: SyncStep
    error_type: str
    message: str

    @classmethod
    def from_exception(cls, provider_id: str, step: SyncStep, exc: Exception) -> "SyncError":
        message = exc.message if isinstance(exc, CostSentryException) else str(exc)
        return cls(
            provider_id=provider_id,
            step=step,
            error_type=type(exc).__name__,
            message=message or type(exc).__name__,
        )


class SyncResult(BaseModel):
    """Outcome of one account sync. Not persisted; surfaced to the caller and logged."""
    account_id: str
    provider_id: str
    status: SyncStatus = SyncStatus.SUCCESS
    errors: List[SyncError] = Field(default_factory=list)
    from_cache: bool = False
    snapshot_persisted: bool = False
    anomalies_detected: int = 0
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    def first_error_type(self) -> Optional[str]:
        return self.errors[0].error_type if self.errors else None


class SyncFailure(BaseModel):
    account_id: str
    provider_id: str
    reason: str


class SyncSummary(BaseModel):
    """What the API layer shows for a batch sync instead of raw internal errors."""
    total: int
    succeeded: int
    partial: int
    failed: int
    failures: List[SyncFailure] = Field(default_factory=list)
