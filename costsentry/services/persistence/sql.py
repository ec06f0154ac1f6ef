"""
SQLAlchemy implementation of CostRepository.

Upserts use INSERT ... ON CONFLICT DO UPDATE for PostgreSQL and SQLite, so
re-running a sync for the same period rewrites rows in place. Each public
method runs in its own transaction; a failure rolls the whole call back.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from costsentry.core.exceptions import (
    InvalidStatusTransitionError,
    PersistenceError,
    ResourceNotFoundError,
)
from costsentry.models.anomaly import AnomalyBaselineRecord, AnomalyEventRecord
from costsentry.models.cloud import CloudAccount, CostSnapshotRecord, DailyCostRecord
from costsentry.schemas.anomalies import (
    AnomalyBaseline,
    AnomalyEvent,
    AnomalyFilter,
    AnomalyPage,
    ContributingService,
    ResolutionStatus,
)
from costsentry.schemas.costs import Account, DailyCost, NormalizedCostSnapshot, ServiceCost
from costsentry.services.persistence.ports import CostRepository

logger = structlog.get_logger()

BATCH_SIZE = 500


def _insert(session: AsyncSession, model):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise PersistenceError(f"Upserts are not supported on dialect '{dialect}'")


def _account(row: CloudAccount) -> Account:
    return Account(
        id=row.id,
        user_id=row.user_id,
        provider_id=row.provider_id,
        name=row.name,
        is_active=row.is_active,
        last_synced_at=row.last_synced_at,
    )


def _baseline(row: AnomalyBaselineRecord) -> AnomalyBaseline:
    return AnomalyBaseline(
        provider_id=row.provider_id,
        account_id=row.account_id,
        service_name=row.service_name,
        mean=row.mean,
        variance=max(row.variance, 0.0),
        sample_count=row.sample_count,
        last_sample_date=row.last_sample_date,
        last_updated=row.last_updated,
    )


def _event(row: AnomalyEventRecord) -> AnomalyEvent:
    return AnomalyEvent(
        id=row.id,
        account_id=row.account_id,
        provider_id=row.provider_id,
        service_name=row.service_name,
        detected_date=row.detected_date,
        anomaly_type=row.anomaly_type,
        severity=row.severity,
        expected_cost=row.expected_cost,
        actual_cost=row.actual_cost,
        variance_percent=row.variance_percent,
        contributing_services=[ContributingService.model_validate(c) for c in row.contributing_services or []],
        root_cause=row.root_cause or "",
        resolution_status=row.resolution_status,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _event_values(event: AnomalyEvent) -> Dict[str, Any]:
    return {
        "anomaly_type": event.anomaly_type.value,
        "severity": event.severity.value,
        "expected_cost": event.expected_cost,
        "actual_cost": event.actual_cost,
        "variance_percent": event.variance_percent,
        "contributing_services": [c.model_dump() for c in event.contributing_services],
        "root_cause": event.root_cause,
    }


class SQLAlchemyCostRepository(CostRepository):

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _run(self, operation: str, func_, *args):
        """Run func_(session, *args) in one transaction, translating storage errors."""
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    return await func_(session, *args)
        except SQLAlchemyError as e:
            logger.error("persistence_failed", operation=operation, error=str(e))
            raise PersistenceError(f"{operation} failed", details={"operation": operation}) from e

    # Accounts

    async def add_account(self, account: Account) -> Account:
        async def _add(session: AsyncSession, account: Account):
            await session.merge(CloudAccount(
                id=account.id,
                user_id=account.user_id,
                provider_id=account.provider_id,
                name=account.name,
                is_active=account.is_active,
                last_synced_at=account.last_synced_at,
            ))
            return account
        return await self._run("add_account", _add, account)

    async def get_account(self, account_id: str) -> Optional[Account]:
        async def _get(session: AsyncSession, account_id: str):
            row = await session.get(CloudAccount, account_id)
            return _account(row) if row else None
        return await self._run("get_account", _get, account_id)

    async def list_active_accounts(self) -> List[Account]:
        async def _list(session: AsyncSession):
            result = await session.execute(
                select(CloudAccount).where(CloudAccount.is_active.is_(True)).order_by(CloudAccount.id)
            )
            return [_account(row) for row in result.scalars().all()]
        return await self._run("list_active_accounts", _list)

    async def mark_synced(self, account_id: str, synced_at: datetime) -> None:
        async def _mark(session: AsyncSession, account_id: str, synced_at: datetime):
            result = await session.execute(
                update(CloudAccount).where(CloudAccount.id == account_id).values(last_synced_at=synced_at)
            )
            if result.rowcount == 0:
                raise ResourceNotFoundError(f"Account {account_id} not found")
        await self._run("mark_synced", _mark, account_id, synced_at)

    # Snapshots

    async def save_snapshot(self, snapshot: NormalizedCostSnapshot) -> None:
        async def _save(session: AsyncSession, snapshot: NormalizedCostSnapshot):
            header = {
                "current_month_cost": snapshot.current_month_cost,
                "last_month_cost": snapshot.last_month_cost,
                "forecast_cost": snapshot.forecast_cost,
                "credits": snapshot.credits,
                "savings": snapshot.savings,
                "currency": snapshot.currency,
                "services": [s.model_dump() for s in snapshot.services],
                "generated_at": snapshot.generated_at,
                "updated_at": datetime.now(timezone.utc),
            }
            stmt = _insert(session, CostSnapshotRecord).values(
                id=str(uuid4()),
                account_id=snapshot.account_id,
                provider_id=snapshot.provider_id,
                period_start=snapshot.period_start,
                **header,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_id", "provider_id", "period_start"],
                set_=header,
            )
            await session.execute(stmt)

            rows = [
                {
                    "id": str(uuid4()),
                    "account_id": snapshot.account_id,
                    "provider_id": snapshot.provider_id,
                    "date": d.date,
                    "cost": d.cost,
                    "breakdown": d.breakdown,
                }
                for d in snapshot.daily_costs
            ]
            for i in range(0, len(rows), BATCH_SIZE):
                stmt = _insert(session, DailyCostRecord).values(rows[i:i + BATCH_SIZE])
                stmt = stmt.on_conflict_do_update(
                    index_elements=["account_id", "provider_id", "date"],
                    set_={"cost": stmt.excluded.cost, "breakdown": stmt.excluded.breakdown},
                )
                await session.execute(stmt)

        await self._run("save_snapshot", _save, snapshot)
        logger.info(
            "snapshot_persisted",
            account_id=snapshot.account_id,
            provider=snapshot.provider_id,
            days=len(snapshot.daily_costs),
        )

    async def get_latest_snapshot(self, account_id: str) -> Optional[NormalizedCostSnapshot]:
        async def _latest(session: AsyncSession, account_id: str):
            result = await session.execute(
                select(CostSnapshotRecord)
                .where(CostSnapshotRecord.account_id == account_id)
                .order_by(CostSnapshotRecord.generated_at.desc(), CostSnapshotRecord.period_start.desc())
                .limit(1)
            )
            header = result.scalars().first()
            if header is None:
                return None

            days = await session.execute(
                select(DailyCostRecord)
                .where(
                    DailyCostRecord.account_id == account_id,
                    DailyCostRecord.provider_id == header.provider_id,
                    DailyCostRecord.date >= header.period_start,
                    DailyCostRecord.date <= header.generated_at.date(),
                )
                .order_by(DailyCostRecord.date)
            )
            return NormalizedCostSnapshot(
                account_id=header.account_id,
                provider_id=header.provider_id,
                period_start=header.period_start,
                current_month_cost=header.current_month_cost,
                last_month_cost=header.last_month_cost,
                forecast_cost=header.forecast_cost,
                credits=header.credits,
                savings=header.savings,
                currency=header.currency,
                services=[ServiceCost.model_validate(s) for s in header.services or []],
                daily_costs=[
                    DailyCost(date=d.date, cost=d.cost, breakdown=d.breakdown or {})
                    for d in days.scalars().all()
                ],
                generated_at=header.generated_at,
            )
        return await self._run("get_latest_snapshot", _latest, account_id)

    # Baselines

    async def get_baselines(self, account_id: str, provider_id: str) -> Dict[str, AnomalyBaseline]:
        async def _get(session: AsyncSession, account_id: str, provider_id: str):
            result = await session.execute(
                select(AnomalyBaselineRecord).where(
                    AnomalyBaselineRecord.account_id == account_id,
                    AnomalyBaselineRecord.provider_id == provider_id,
                )
            )
            return {row.service_name: _baseline(row) for row in result.scalars().all()}
        return await self._run("get_baselines", _get, account_id, provider_id)

    async def save_baselines(self, baselines: List[AnomalyBaseline]) -> None:
        if not baselines:
            return

        async def _save(session: AsyncSession, baselines: List[AnomalyBaseline]):
            rows = [
                {
                    "id": str(uuid4()),
                    "provider_id": b.provider_id,
                    "account_id": b.account_id,
                    "service_name": b.service_name,
                    "mean": b.mean,
                    "variance": b.variance,
                    "sample_count": b.sample_count,
                    "last_sample_date": b.last_sample_date,
                    "last_updated": b.last_updated,
                }
                for b in baselines
            ]
            for i in range(0, len(rows), BATCH_SIZE):
                stmt = _insert(session, AnomalyBaselineRecord).values(rows[i:i + BATCH_SIZE])
                stmt = stmt.on_conflict_do_update(
                    index_elements=["provider_id", "account_id", "service_name"],
                    set_={
                        "mean": stmt.excluded.mean,
                        "variance": stmt.excluded.variance,
                        "sample_count": stmt.excluded.sample_count,
                        "last_sample_date": stmt.excluded.last_sample_date,
                        "last_updated": stmt.excluded.last_updated,
                    },
                )
                await session.execute(stmt)
        await self._run("save_baselines", _save, baselines)

    # Anomaly events

    async def record_events(self, events: List[AnomalyEvent]) -> List[AnomalyEvent]:
        async def _record(session: AsyncSession, events: List[AnomalyEvent]):
            created = []
            for event in events:
                result = await session.execute(
                    select(AnomalyEventRecord).where(
                        AnomalyEventRecord.account_id == event.account_id,
                        AnomalyEventRecord.provider_id == event.provider_id,
                        AnomalyEventRecord.service_name == event.service_name,
                        AnomalyEventRecord.detected_date == event.detected_date,
                    )
                )
                row = result.scalars().first()
                if row is None:
                    row = AnomalyEventRecord(
                        id=event.id or str(uuid4()),
                        account_id=event.account_id,
                        provider_id=event.provider_id,
                        service_name=event.service_name,
                        detected_date=event.detected_date,
                        resolution_status=ResolutionStatus.OPEN.value,
                        created_at=event.created_at,
                        updated_at=event.updated_at,
                        **_event_values(event),
                    )
                    session.add(row)
                    await session.flush()
                    created.append(_event(row))
                elif row.resolution_status == ResolutionStatus.OPEN.value:
                    for field, value in _event_values(event).items():
                        setattr(row, field, value)
                    row.updated_at = datetime.now(timezone.utc)
            return created
        return await self._run("record_events", _record, events)

    async def get_events_between(
        self, account_id: str, provider_id: str, start: date, end: date
    ) -> List[AnomalyEvent]:
        async def _between(session: AsyncSession):
            result = await session.execute(
                select(AnomalyEventRecord)
                .where(
                    AnomalyEventRecord.account_id == account_id,
                    AnomalyEventRecord.provider_id == provider_id,
                    AnomalyEventRecord.detected_date >= start,
                    AnomalyEventRecord.detected_date <= end,
                )
                .order_by(AnomalyEventRecord.detected_date, AnomalyEventRecord.service_name)
            )
            return [_event(row) for row in result.scalars().all()]
        return await self._run("get_events_between", _between)

    async def list_events(self, filters: AnomalyFilter) -> AnomalyPage:
        async def _list(session: AsyncSession, filters: AnomalyFilter):
            conditions = []
            if filters.status is not None:
                conditions.append(AnomalyEventRecord.resolution_status == filters.status.value)
            if filters.severity is not None:
                conditions.append(AnomalyEventRecord.severity == filters.severity.value)
            if filters.account_id is not None:
                conditions.append(AnomalyEventRecord.account_id == filters.account_id)

            total = await session.scalar(select(func.count(AnomalyEventRecord.id)).where(*conditions))
            result = await session.execute(
                select(AnomalyEventRecord)
                .where(*conditions)
                .order_by(AnomalyEventRecord.detected_date.desc(), AnomalyEventRecord.created_at.desc())
                .offset(filters.offset)
                .limit(filters.limit)
            )
            return AnomalyPage(events=[_event(row) for row in result.scalars().all()], total=total or 0)
        return await self._run("list_events", _list, filters)

    async def get_event(self, event_id: str) -> Optional[AnomalyEvent]:
        async def _get(session: AsyncSession, event_id: str):
            row = await session.get(AnomalyEventRecord, event_id)
            return _event(row) if row else None
        return await self._run("get_event", _get, event_id)

    async def set_event_status(
        self, event_id: str, status: ResolutionStatus, expected: ResolutionStatus
    ) -> AnomalyEvent:
        status = ResolutionStatus(status)
        expected = ResolutionStatus(expected)

        async def _set(session: AsyncSession):
            result = await session.execute(
                update(AnomalyEventRecord)
                .where(
                    AnomalyEventRecord.id == event_id,
                    AnomalyEventRecord.resolution_status == expected.value,
                )
                .values(resolution_status=status.value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            row = await session.get(AnomalyEventRecord, event_id, populate_existing=True)
            if row is None:
                raise ResourceNotFoundError(f"Anomaly event {event_id} not found", details={"event_id": event_id})
            if result.rowcount == 0:
                raise InvalidStatusTransitionError(row.resolution_status, status.value)
            return _event(row)
        return await self._run("set_event_status", _set)
