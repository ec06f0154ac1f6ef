"""
SyncEngine facade.

The single entry point for callers (API layer, scheduler, CLI). Wraps the
orchestrator, repository and anomaly lifecycle behind account-id based calls.
"""

from typing import List, Optional

import structlog

from costsentry.core.config import Settings, get_settings
from costsentry.core.exceptions import ResourceNotFoundError
from costsentry.core.logging import setup_logging
from costsentry.db.session import build_engine, build_session_maker
from costsentry.schemas.anomalies import AnomalyEvent, AnomalyFilter, AnomalyPage, ResolutionStatus
from costsentry.schemas.costs import NormalizedCostSnapshot
from costsentry.schemas.sync import SyncFailure, SyncResult, SyncStatus, SyncSummary
from costsentry.services.anomaly.lifecycle import transition
from costsentry.services.cache.snapshot_cache import build_snapshot_cache
from costsentry.services.credentials import CredentialsProvider
from costsentry.services.fetch import build_fetch_clients
from costsentry.services.notifications.sink import build_notification_sink
from costsentry.services.persistence.ports import CostRepository
from costsentry.services.persistence.sql import SQLAlchemyCostRepository
from costsentry.services.sync.orchestrator import SyncOrchestrator

logger = structlog.get_logger()


def summarize(results: List[SyncResult]) -> SyncSummary:
    """Counts plus one human-readable reason per failed or partial account."""
    failures = []
    for r in results:
        if r.status == SyncStatus.SUCCESS:
            continue
        reason = "; ".join(f"{e.step.value}: {e.message}" for e in r.errors) or r.status.value
        failures.append(SyncFailure(account_id=r.account_id, provider_id=r.provider_id, reason=reason))
    return SyncSummary(
        total=len(results),
        succeeded=sum(1 for r in results if r.status == SyncStatus.SUCCESS),
        partial=sum(1 for r in results if r.status == SyncStatus.PARTIAL),
        failed=sum(1 for r in results if r.status == SyncStatus.FAILURE),
        failures=failures,
    )


class SyncEngine:

    def __init__(
        self,
        repository: CostRepository,
        orchestrator: SyncOrchestrator,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()

    async def sync_account(self, account_id: str) -> SyncResult:
        account = await self.repository.get_account(account_id)
        if account is None:
            raise ResourceNotFoundError(f"Account {account_id} not found", details={"account_id": account_id})
        return await self.orchestrator.sync_account(account)

    async def sync_all(self) -> List[SyncResult]:
        accounts = await self.repository.list_active_accounts()
        return await self.orchestrator.sync_all(accounts)

    async def get_latest_snapshot(self, account_id: str) -> Optional[NormalizedCostSnapshot]:
        return await self.repository.get_latest_snapshot(account_id)

    async def get_anomaly_events(self, filters: Optional[AnomalyFilter] = None) -> AnomalyPage:
        return await self.repository.list_events(filters or AnomalyFilter())

    async def update_anomaly_status(self, event_id: str, new_status: ResolutionStatus) -> AnomalyEvent:
        """Apply an operator status change. Invalid transitions raise InvalidStatusTransitionError."""
        event = await self.repository.get_event(event_id)
        if event is None:
            raise ResourceNotFoundError(f"Anomaly event {event_id} not found", details={"event_id": event_id})
        status = transition(event.resolution_status, new_status)
        updated = await self.repository.set_event_status(event_id, status, expected=event.resolution_status)
        logger.info(
            "anomaly_status_updated",
            event_id=event_id,
            previous=event.resolution_status.value,
            status=status.value,
        )
        return updated

    @staticmethod
    def summarize(results: List[SyncResult]) -> SyncSummary:
        return summarize(results)


def build_sync_engine(
    credentials: CredentialsProvider,
    repository: Optional[CostRepository] = None,
    settings: Optional[Settings] = None,
) -> SyncEngine:
    """Wire the production graph: SQL repository, snapshot cache, fetch clients and notifier from settings."""
    settings = settings or get_settings()
    setup_logging(settings)
    if repository is None:
        repository = SQLAlchemyCostRepository(build_session_maker(build_engine(settings=settings)))
    orchestrator = SyncOrchestrator(
        repository=repository,
        credentials=credentials,
        fetch_clients=build_fetch_clients(settings),
        cache=build_snapshot_cache(settings),
        notifier=build_notification_sink(settings),
        settings=settings,
    )
    return SyncEngine(repository, orchestrator, settings)
