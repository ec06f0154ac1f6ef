"""
Storage port for the sync engine.

The orchestrator, baseline engine and SyncEngine facade only talk to this
interface. SQLAlchemyCostRepository backs it in production; the in-memory
repository backs development and tests.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Dict, List, Optional

from costsentry.schemas.anomalies import (
    AnomalyBaseline,
    AnomalyEvent,
    AnomalyFilter,
    AnomalyPage,
    ResolutionStatus,
)
from costsentry.schemas.costs import Account, NormalizedCostSnapshot


class CostRepository(ABC):

    # Accounts
    @abstractmethod
    async def add_account(self, account: Account) -> Account:
        """Create or replace an account row."""

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def list_active_accounts(self) -> List[Account]:
        pass

    @abstractmethod
    async def mark_synced(self, account_id: str, synced_at: datetime) -> None:
        pass

    # Snapshots
    @abstractmethod
    async def save_snapshot(self, snapshot: NormalizedCostSnapshot) -> None:
        """
        Idempotent upsert of the header (account, provider, period_start) and
        its daily rows (account, provider, date), all-or-nothing.
        """

    @abstractmethod
    async def get_latest_snapshot(self, account_id: str) -> Optional[NormalizedCostSnapshot]:
        pass

    # Baselines
    @abstractmethod
    async def get_baselines(self, account_id: str, provider_id: str) -> Dict[str, AnomalyBaseline]:
        """Baselines for an account keyed by service name."""

    @abstractmethod
    async def save_baselines(self, baselines: List[AnomalyBaseline]) -> None:
        pass

    # Anomaly events
    @abstractmethod
    async def record_events(self, events: List[AnomalyEvent]) -> List[AnomalyEvent]:
        """
        Insert events keyed by (account, provider, service, detected_date).

        An existing open event has its magnitude refreshed; an existing event in
        any other status is left alone. Returns only the newly created events.
        """

    @abstractmethod
    async def get_events_between(
        self, account_id: str, provider_id: str, start: date, end: date
    ) -> List[AnomalyEvent]:
        """Events detected in [start, end] for one account."""

    @abstractmethod
    async def list_events(self, filters: AnomalyFilter) -> AnomalyPage:
        pass

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[AnomalyEvent]:
        pass

    @abstractmethod
    async def set_event_status(
        self, event_id: str, status: ResolutionStatus, expected: ResolutionStatus
    ) -> AnomalyEvent:
        """
        Compare-and-set a status change: applied only while the stored status is still ``expected``.

        Raises InvalidStatusTransitionError when another update got there first.
        Lifecycle rules are checked by the caller.
        """
