"""
Sync orchestrator tests.

Tests:
1. Full pipeline: fetch, persist, baselines, detection, notification
2. Idempotent re-sync
3. Failure isolation across accounts
4. Timeouts, single-flight and the concurrency bound
5. Partial results when analysis fails after persistence
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from costsentry.core.exceptions import AuthenticationError, PersistenceError
from costsentry.schemas.anomalies import ACCOUNT_TOTAL, Severity
from costsentry.schemas.costs import Account
from costsentry.schemas.sync import SyncStatus, SyncStep
from costsentry.services.credentials import StaticCredentialsProvider
from costsentry.services.fetch.base import FetchClient
from costsentry.services.notifications.sink import NotificationSink
from costsentry.services.sync.orchestrator import SyncOrchestrator
from tests.factories import AS_OF, aws_daily_payload

AWS_CREDS = {"access_key_id": "AKIAEXAMPLE", "secret_access_key": "s3cr3t"}
PERIOD_START = date(2024, 2, 1)
SPIKE_DAY = date(2024, 3, 9)


class FakeAWSClient(FetchClient):
    """Serves a canned Cost Explorer payload; per-account behavior is configurable."""

    provider_id = "aws"

    def __init__(self, settings, payload=None):
        super().__init__(settings)
        self.payload = payload or aws_daily_payload(
            PERIOD_START, SPIKE_DAY, {"EC2": 100.0, "S3": 10.0}, {SPIKE_DAY: {"EC2": 400.0}}
        )
        self.calls = []
        self.errors = {}
        self.delay = 0.0
        self.gate = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def _fetch(self, account, credentials, period_start, period_end):
        self.calls.append((account.id, period_start, period_end))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if account.id in self.errors:
                raise self.errors[account.id]
            return dict(self.payload)
        finally:
            self.in_flight -= 1


def make_account(account_id: str, provider_id: str = "aws") -> Account:
    return Account(id=account_id, user_id="user-1", provider_id=provider_id)


@pytest.fixture
def client(settings):
    return FakeAWSClient(settings)


@pytest.fixture
def notifier():
    sink = AsyncMock(spec=NotificationSink)
    sink.notify.return_value = True
    return sink


@pytest.fixture
def credentials():
    return StaticCredentialsProvider({f"acc-{i}": AWS_CREDS for i in range(1, 6)})


@pytest.fixture
def make_orchestrator(repo, credentials, client, notifier, settings):
    def _make(**overrides):
        kwargs = dict(
            repository=repo,
            credentials=credentials,
            fetch_clients={"aws": client},
            notifier=notifier,
            settings=settings,
            clock=lambda: AS_OF,
        )
        kwargs.update(overrides)
        return SyncOrchestrator(**kwargs)
    return _make


@pytest.fixture
async def registered(repo):
    accounts = [make_account(f"acc-{i}") for i in range(1, 6)]
    for a in accounts:
        await repo.add_account(a)
    return accounts


class TestPipeline:

    async def test_sync_detects_spike_and_notifies(self, make_orchestrator, registered, repo, client, notifier):
        orchestrator = make_orchestrator()

        result = await orchestrator.sync_account(registered[0])
        await orchestrator.drain_notifications()

        assert result.status == SyncStatus.SUCCESS
        assert result.snapshot_persisted
        assert not result.from_cache
        assert result.anomalies_detected == 2
        assert client.calls == [("acc-1", PERIOD_START, AS_OF)]

        events = sorted(repo.events.values(), key=lambda e: e.service_name)
        assert [e.service_name for e in events] == [ACCOUNT_TOTAL, "EC2"]
        assert all(e.detected_date == SPIKE_DAY for e in events)
        assert all(e.severity == Severity.CRITICAL for e in events)
        ec2 = events[1]
        assert ec2.expected_cost == pytest.approx(100.0)
        assert ec2.variance_percent == pytest.approx(300.0)
        assert ec2.contributing_services[0].name == "EC2"

        assert notifier.notify.await_count == 2

    async def test_snapshot_and_baselines_persisted(self, make_orchestrator, registered, repo):
        await make_orchestrator().sync_account(registered[0])

        snapshot = await repo.get_latest_snapshot("acc-1")
        assert snapshot.period_start == PERIOD_START
        assert snapshot.current_month_cost == pytest.approx(8 * 110.0 + 410.0)
        assert snapshot.last_month_cost == pytest.approx(29 * 110.0)

        baselines = await repo.get_baselines("acc-1", "aws")
        assert set(baselines) == {ACCOUNT_TOTAL, "EC2", "S3"}
        assert baselines["S3"].sample_count == 38
        assert baselines["S3"].mean == pytest.approx(10.0)
        assert baselines[ACCOUNT_TOTAL].last_sample_date == SPIKE_DAY

    async def test_last_synced_at_is_set(self, make_orchestrator, registered, repo):
        assert repo.accounts["acc-1"].last_synced_at is None
        await make_orchestrator().sync_account(registered[0])
        assert repo.accounts["acc-1"].last_synced_at is not None

    async def test_service_that_stops_billing_raises_a_drop(self, make_orchestrator, registered, repo, settings):
        payload = aws_daily_payload(PERIOD_START, date(2024, 3, 8), {"EC2": 100.0, "S3": 10.0})
        payload["ResultsByTime"] += aws_daily_payload(SPIKE_DAY, SPIKE_DAY, {"S3": 10.0})["ResultsByTime"]
        client = FakeAWSClient(settings, payload=payload)

        result = await make_orchestrator(fetch_clients={"aws": client}).sync_account(registered[0])

        assert result.status == SyncStatus.SUCCESS
        events = {e.service_name: e for e in repo.events.values()}
        assert set(events) == {"EC2", ACCOUNT_TOTAL}
        assert events["EC2"].actual_cost == 0.0
        assert events["EC2"].severity == Severity.HIGH

        ec2 = (await repo.get_baselines("acc-1", "aws"))["EC2"]
        assert ec2.last_sample_date == SPIKE_DAY
        assert ec2.sample_count == 38
        assert ec2.mean < 100.0


class TestIdempotence:

    async def test_cached_resync_skips_fetch(self, make_orchestrator, registered, client):
        orchestrator = make_orchestrator()
        await orchestrator.sync_account(registered[0])

        second = await orchestrator.sync_account(registered[0])

        assert second.status == SyncStatus.SUCCESS
        assert second.from_cache
        assert second.anomalies_detected == 0
        assert len(client.calls) == 1

    async def test_resync_without_cache_creates_no_duplicates(self, make_orchestrator, registered, repo, notifier):
        first = make_orchestrator()
        await first.sync_account(registered[0])
        await first.drain_notifications()
        baselines_before = await repo.get_baselines("acc-1", "aws")

        second = make_orchestrator()
        result = await second.sync_account(registered[0])
        await second.drain_notifications()

        assert result.status == SyncStatus.SUCCESS
        assert not result.from_cache
        assert result.anomalies_detected == 0
        assert len(repo.events) == 2
        assert notifier.notify.await_count == 2
        assert await repo.get_baselines("acc-1", "aws") == baselines_before


class TestFailures:

    async def test_one_failing_account_does_not_affect_others(self, make_orchestrator, registered, repo, client):
        client.errors["acc-2"] = AuthenticationError("AWS rejected the credentials (InvalidClientTokenId)")

        results = await make_orchestrator().sync_all(registered[:3])

        assert [r.account_id for r in results] == ["acc-1", "acc-2", "acc-3"]
        assert [r.status for r in results] == [SyncStatus.SUCCESS, SyncStatus.FAILURE, SyncStatus.SUCCESS]
        error = results[1].errors[0]
        assert error.step == SyncStep.FETCH
        assert error.error_type == "AuthenticationError"
        assert not results[1].snapshot_persisted
        assert await repo.get_latest_snapshot("acc-1") is not None
        assert await repo.get_latest_snapshot("acc-2") is None
        assert await repo.get_latest_snapshot("acc-3") is not None

    async def test_missing_credentials(self, make_orchestrator, repo, client):
        account = make_account("acc-9")
        await repo.add_account(account)

        result = await make_orchestrator().sync_account(account)

        assert result.status == SyncStatus.FAILURE
        assert result.errors[0].step == SyncStep.CREDENTIALS
        assert result.errors[0].error_type == "AuthenticationError"
        assert client.calls == []

    async def test_unsupported_provider(self, make_orchestrator, repo):
        account = make_account("acc-x", provider_id="oracle")
        await repo.add_account(account)

        result = await make_orchestrator().sync_account(account)

        assert result.status == SyncStatus.FAILURE
        assert result.provider_id == "oracle"
        assert result.first_error_type() == "UnsupportedProviderError"

    async def test_malformed_payload(self, make_orchestrator, registered, repo, settings):
        bad = FakeAWSClient(settings, payload={"ResultsByTime": "not-a-list"})

        result = await make_orchestrator(fetch_clients={"aws": bad}).sync_account(registered[0])

        assert result.status == SyncStatus.FAILURE
        assert result.errors[0].step == SyncStep.NORMALIZE
        assert result.errors[0].error_type == "NormalizationError"
        assert repo.snapshots == {}

    async def test_timeout_persists_nothing(self, make_orchestrator, registered, repo, client, settings):
        fast = settings.model_copy(update={"SYNC_FETCH_TIMEOUT_SECONDS": 0.05})
        client.delay = 1.0
        orchestrator = make_orchestrator(settings=fast)

        result = await orchestrator.sync_account(registered[0])

        assert result.status == SyncStatus.FAILURE
        assert result.errors[0].step == SyncStep.FETCH
        assert result.errors[0].error_type == "SyncTimeoutError"
        assert repo.snapshots == {}
        assert repo.accounts["acc-1"].last_synced_at is None

        # Nothing was cached, so the next attempt fetches again
        client.delay = 0.0
        retry = await orchestrator.sync_account(registered[0])
        assert retry.status == SyncStatus.SUCCESS
        assert len(client.calls) == 2

    async def test_analysis_failure_is_partial(self, make_orchestrator, registered, repo, client):
        repo.get_baselines = AsyncMock(side_effect=PersistenceError("database unavailable"))
        orchestrator = make_orchestrator()

        result = await orchestrator.sync_account(registered[0])

        assert result.status == SyncStatus.PARTIAL
        assert result.snapshot_persisted
        assert result.errors[0].step == SyncStep.ANALYZE
        assert result.errors[0].error_type == "PersistenceError"
        assert await repo.get_latest_snapshot("acc-1") is not None

        # The cached snapshot is dropped so the next sync runs analysis again
        key = orchestrator.cache.make_key("acc-1", "aws", PERIOD_START, AS_OF)
        assert await orchestrator.cache.get(key) is None
        await orchestrator.sync_account(registered[0])
        assert len(client.calls) == 2


class TestConcurrency:

    async def test_concurrent_syncs_of_one_account_share_a_run(self, make_orchestrator, registered, client):
        client.gate = asyncio.Event()
        orchestrator = make_orchestrator()

        first = asyncio.create_task(orchestrator.sync_account(registered[0]))
        second = asyncio.create_task(orchestrator.sync_account(registered[0]))
        await asyncio.sleep(0.01)
        assert orchestrator.single_flight.is_running("acc-1")
        client.gate.set()

        results = await asyncio.gather(first, second)

        assert len(client.calls) == 1
        assert results[0] is results[1]
        assert results[0].status == SyncStatus.SUCCESS

    async def test_parallelism_is_bounded(self, make_orchestrator, registered, client, settings):
        client.delay = 0.02
        bounded = settings.model_copy(update={"SYNC_MAX_CONCURRENCY": 2})

        results = await make_orchestrator(settings=bounded).sync_all(registered)

        assert all(r.status == SyncStatus.SUCCESS for r in results)
        assert len(client.calls) == 5
        assert client.max_in_flight == 2
