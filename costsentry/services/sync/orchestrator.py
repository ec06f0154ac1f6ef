"""
Sync Orchestrator

Runs the per-account pipeline:

    cache check -> credentials -> fetch (under deadline) -> normalize
    -> persist snapshot -> touch last_synced_at -> baselines + detection

Every failure is caught at the account boundary and recorded in that
account's SyncResult, so one broken account never affects another.
"""

import asyncio
import time
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

import structlog

from costsentry.core.concurrency import ConcurrencyLimiter, SingleFlight
from costsentry.core.config import Settings, get_settings
from costsentry.core.exceptions import SyncTimeoutError, UnsupportedProviderError
from costsentry.core.metrics import ANOMALIES_DETECTED, SYNC_DURATION, SYNC_RUNS
from costsentry.schemas.anomalies import ACCOUNT_TOTAL, AnomalyBaseline, AnomalyEvent, Severity
from costsentry.schemas.costs import Account, NormalizedCostSnapshot
from costsentry.schemas.sync import SyncError, SyncResult, SyncStatus, SyncStep
from costsentry.services.adapters import normalize
from costsentry.services.adapters.common import default_period_start
from costsentry.services.anomaly.baseline import BaselineEngine
from costsentry.services.anomaly.detector import AnomalyDetector, day_series
from costsentry.services.cache.snapshot_cache import InMemoryCache, SnapshotCache
from costsentry.services.credentials import CredentialsProvider
from costsentry.services.fetch import FetchClient, build_fetch_clients
from costsentry.services.notifications.sink import LoggingNotificationSink, NotificationSink
from costsentry.services.persistence.ports import CostRepository
from costsentry.services.providers.registry import get_provider

logger = structlog.get_logger()

NOTIFY_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class SyncOrchestrator:
    """Coordinates account syncs with bounded parallelism and per-account de-duplication."""

    def __init__(
        self,
        repository: CostRepository,
        credentials: CredentialsProvider,
        fetch_clients: Optional[Dict[str, FetchClient]] = None,
        cache: Optional[SnapshotCache] = None,
        notifier: Optional[NotificationSink] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], date] = utc_today,
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.credentials = credentials
        self.fetch_clients = fetch_clients if fetch_clients is not None else build_fetch_clients(self.settings)
        self.cache = cache or SnapshotCache(InMemoryCache(), self.settings.SNAPSHOT_CACHE_TTL_SECONDS)
        self.notifier = notifier or LoggingNotificationSink()
        self.clock = clock

        self.limiter = ConcurrencyLimiter(self.settings.SYNC_MAX_CONCURRENCY)
        self.single_flight = SingleFlight()
        self.detector = AnomalyDetector(self.settings)
        self.baseline_engine = BaselineEngine(repository, self.settings)
        self._notifications: Set[asyncio.Task] = set()

    # Public API

    async def sync_account(self, account: Account) -> SyncResult:
        """Sync one account. Concurrent calls for the same account share one run."""
        return await self.single_flight.run(account.id, lambda: self._sync_in_slot(account))

    async def sync_all(self, accounts: List[Account]) -> List[SyncResult]:
        """Sync accounts in parallel, at most SYNC_MAX_CONCURRENCY at a time. Results follow input order."""
        logger.info("sync_all_started", accounts=len(accounts), max_concurrency=self.limiter.limit)
        results = await asyncio.gather(*(self.sync_account(a) for a in accounts))
        logger.info(
            "sync_all_completed",
            accounts=len(results),
            failed=sum(1 for r in results if r.status == SyncStatus.FAILURE),
        )
        return list(results)

    async def drain_notifications(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    # Pipeline

    async def _sync_in_slot(self, account: Account) -> SyncResult:
        async with self.limiter.slot():
            return await self._sync(account)

    async def _fetch_snapshot(self, account: Account, provider_id: str, period_start: date, as_of: date, steps: list):
        steps.append(SyncStep.CREDENTIALS)
        credentials = await self.credentials.get_credentials(account)

        client = self.fetch_clients.get(provider_id)
        if client is None:
            raise UnsupportedProviderError(provider_id)

        steps.append(SyncStep.FETCH)
        timeout = self.settings.SYNC_FETCH_TIMEOUT_SECONDS
        try:
            raw = await asyncio.wait_for(client.fetch(account, credentials, period_start, as_of), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(timeout) from e

        steps.append(SyncStep.NORMALIZE)
        return normalize(provider_id, raw, account_id=account.id, as_of=as_of)

    async def _sync(self, account: Account) -> SyncResult:
        started = time.perf_counter()
        result = SyncResult(account_id=account.id, provider_id=account.provider_id)
        steps: List[SyncStep] = [SyncStep.FETCH]
        cache_key: Optional[str] = None
        fresh = False

        with structlog.contextvars.bound_contextvars(account_id=account.id, provider=account.provider_id):
            try:
                spec = get_provider(account.provider_id)
                result.provider_id = spec.id
                as_of = self.clock()
                period_start = default_period_start(as_of)
                cache_key = self.cache.make_key(account.id, spec.id, period_start, as_of)

                snapshot, hit = await self.cache.get_or_load(
                    cache_key,
                    lambda: self._fetch_snapshot(account, spec.id, period_start, as_of, steps),
                )
                if hit:
                    result.from_cache = True
                    logger.info("sync_served_from_cache")
                    return result
                fresh = True

                steps.append(SyncStep.PERSIST)
                await self.repository.save_snapshot(snapshot)
                result.snapshot_persisted = True

                steps.append(SyncStep.MARK_SYNCED)
                await self.repository.mark_synced(account.id, datetime.now(timezone.utc))

                steps.append(SyncStep.ANALYZE)
                result.anomalies_detected = await self._analyze(account, spec.id, snapshot, as_of)

                logger.info(
                    "sync_account_succeeded",
                    current_month_cost=snapshot.current_month_cost,
                    anomalies=result.anomalies_detected,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                step = steps[-1]
                result.errors.append(SyncError.from_exception(result.provider_id, step, e))
                result.status = SyncStatus.PARTIAL if result.snapshot_persisted else SyncStatus.FAILURE
                if fresh and cache_key:
                    await self.cache.invalidate(cache_key)
                logger.warning(
                    "sync_account_failed",
                    step=step.value,
                    error_type=type(e).__name__,
                    error=str(e),
                    status=result.status.value,
                )
            finally:
                result.duration_seconds = round(time.perf_counter() - started, 4)
                SYNC_RUNS.labels(provider=result.provider_id, status=result.status.value).inc()
                SYNC_DURATION.labels(provider=result.provider_id).observe(result.duration_seconds)

        return result

    async def _analyze(self, account: Account, provider_id: str, snapshot: NormalizedCostSnapshot, as_of: date) -> int:
        """
        Detect and fold every complete day not yet in the baselines, oldest first.

        Each day is checked against the baselines as they stood before that day,
        then folded in. Returns the number of newly created events.
        """
        baselines = await self.repository.get_baselines(account.id, provider_id)
        changed: Dict[str, AnomalyBaseline] = {}
        trend_window = max(self.settings.ANOMALY_TREND_MIN_DAYS - 1, 0)
        created_count = 0

        for entry in snapshot.daily_costs:
            if entry.date >= as_of:
                break
            total = baselines.get(ACCOUNT_TOTAL)
            if total and total.last_sample_date and entry.date <= total.last_sample_date:
                continue

            history: List[AnomalyEvent] = []
            if trend_window:
                history = await self.repository.get_events_between(
                    account.id, provider_id, entry.date - timedelta(days=trend_window), entry.date - timedelta(days=1)
                )
            events = self.detector.detect(account.id, provider_id, snapshot, baselines, day=entry.date, history=history)
            if events:
                created = await self.repository.record_events(events)
                created_count += len(created)
                for event in created:
                    ANOMALIES_DETECTED.labels(provider=provider_id, severity=event.severity.value).inc()
                    if event.severity in NOTIFY_SEVERITIES:
                        self._schedule_notification(event)

            series = {ACCOUNT_TOTAL: entry.cost, **day_series(entry, snapshot.services, baselines)}
            for baseline in self.baseline_engine.fold_day(baselines, account.id, provider_id, series, entry.date):
                changed[baseline.service_name] = baseline

        await self.repository.save_baselines(list(changed.values()))
        return created_count

    # Notifications

    def _schedule_notification(self, event: AnomalyEvent) -> None:
        task = asyncio.create_task(self._notify(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _notify(self, event: AnomalyEvent) -> None:
        try:
            delivered = await self.notifier.notify(event)
            if not delivered:
                logger.warning("anomaly_notification_not_delivered", event_id=event.id)
        except Exception as e:
            logger.error("anomaly_notification_failed", event_id=event.id, error=str(e))
