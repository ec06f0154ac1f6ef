"""In-process CostRepository for development and tests."""

import asyncio
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from costsentry.core.exceptions import InvalidStatusTransitionError, ResourceNotFoundError
from costsentry.schemas.anomalies import (
    AnomalyBaseline,
    AnomalyEvent,
    AnomalyFilter,
    AnomalyPage,
    ResolutionStatus,
)
from costsentry.schemas.costs import Account, DailyCost, NormalizedCostSnapshot
from costsentry.services.persistence.ports import CostRepository

REFRESHED_FIELDS = (
    "anomaly_type",
    "severity",
    "expected_cost",
    "actual_cost",
    "variance_percent",
    "contributing_services",
    "root_cause",
)


class InMemoryCostRepository(CostRepository):

    def __init__(self):
        self.accounts: Dict[str, Account] = {}
        self.snapshots: Dict[Tuple[str, str, date], NormalizedCostSnapshot] = {}
        self.daily: Dict[Tuple[str, str, date], DailyCost] = {}
        self.baselines: Dict[Tuple[str, str, str], AnomalyBaseline] = {}
        self.events: Dict[str, AnomalyEvent] = {}
        self._lock = asyncio.Lock()

    async def add_account(self, account: Account) -> Account:
        self.accounts[account.id] = account.model_copy()
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self.accounts.get(account_id)
        return account.model_copy() if account else None

    async def list_active_accounts(self) -> List[Account]:
        return [a.model_copy() for a in self.accounts.values() if a.is_active]

    async def mark_synced(self, account_id: str, synced_at: datetime) -> None:
        account = self.accounts.get(account_id)
        if account is None:
            raise ResourceNotFoundError(f"Account {account_id} not found")
        account.last_synced_at = synced_at

    async def save_snapshot(self, snapshot: NormalizedCostSnapshot) -> None:
        async with self._lock:
            self.snapshots[(snapshot.account_id, snapshot.provider_id, snapshot.period_start)] = snapshot.model_copy(deep=True)
            for day in snapshot.daily_costs:
                self.daily[(snapshot.account_id, snapshot.provider_id, day.date)] = day.model_copy(deep=True)

    async def get_latest_snapshot(self, account_id: str) -> Optional[NormalizedCostSnapshot]:
        candidates = [s for (acc, _, _), s in self.snapshots.items() if acc == account_id]
        if not candidates:
            return None
        return max(candidates, key=lambda s: (s.generated_at, s.period_start)).model_copy(deep=True)

    async def get_baselines(self, account_id: str, provider_id: str) -> Dict[str, AnomalyBaseline]:
        return {
            service: b.model_copy()
            for (prov, acc, service), b in self.baselines.items()
            if acc == account_id and prov == provider_id
        }

    async def save_baselines(self, baselines: List[AnomalyBaseline]) -> None:
        for b in baselines:
            self.baselines[(b.provider_id, b.account_id, b.service_name)] = b.model_copy()

    def _find(self, key: tuple) -> Optional[AnomalyEvent]:
        return next((e for e in self.events.values() if e.key == key), None)

    async def record_events(self, events: List[AnomalyEvent]) -> List[AnomalyEvent]:
        created = []
        async with self._lock:
            for event in events:
                existing = self._find(event.key)
                if existing is None:
                    stored = event.model_copy(update={"id": event.id or str(uuid4())}, deep=True)
                    self.events[stored.id] = stored
                    created.append(stored.model_copy(deep=True))
                elif existing.resolution_status == ResolutionStatus.OPEN:
                    for field in REFRESHED_FIELDS:
                        setattr(existing, field, getattr(event, field))
                    existing.updated_at = datetime.now(timezone.utc)
        return created

    async def get_events_between(
        self, account_id: str, provider_id: str, start: date, end: date
    ) -> List[AnomalyEvent]:
        return sorted(
            (
                e.model_copy(deep=True)
                for e in self.events.values()
                if e.account_id == account_id and e.provider_id == provider_id and start <= e.detected_date <= end
            ),
            key=lambda e: (e.detected_date, e.service_name),
        )

    async def list_events(self, filters: AnomalyFilter) -> AnomalyPage:
        matches = [
            e for e in self.events.values()
            if (filters.status is None or e.resolution_status == filters.status)
            and (filters.severity is None or e.severity == filters.severity)
            and (filters.account_id is None or e.account_id == filters.account_id)
        ]
        matches.sort(key=lambda e: (e.detected_date, e.created_at), reverse=True)
        page = matches[filters.offset:filters.offset + filters.limit]
        return AnomalyPage(events=[e.model_copy(deep=True) for e in page], total=len(matches))

    async def get_event(self, event_id: str) -> Optional[AnomalyEvent]:
        event = self.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def set_event_status(
        self, event_id: str, status: ResolutionStatus, expected: ResolutionStatus
    ) -> AnomalyEvent:
        event = self.events.get(event_id)
        if event is None:
            raise ResourceNotFoundError(f"Anomaly event {event_id} not found", details={"event_id": event_id})
        if event.resolution_status != expected:
            raise InvalidStatusTransitionError(event.resolution_status.value, ResolutionStatus(status).value)
        event.resolution_status = status
        event.updated_at = datetime.now(timezone.utc)
        return event.model_copy(deep=True)
