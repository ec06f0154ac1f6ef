"""
Tests for rolling baselines.
"""

from datetime import date, timedelta

import pytest

from costsentry.services.anomaly.baseline import BaselineEngine, decay_alpha, fold_sample

START = date(2024, 1, 1)


def fold_series(values, half_life_days=14.0):
    baseline = None
    for i, value in enumerate(values):
        baseline = fold_sample(
            baseline,
            account_id="acc-1",
            provider_id="aws",
            service_name="EC2",
            value=value,
            sample_date=START + timedelta(days=i),
            half_life_days=half_life_days,
        )
    return baseline


class TestFoldSample:

    def test_first_observation(self):
        baseline = fold_series([42.0])
        assert baseline.mean == 42.0
        assert baseline.variance == 0.0
        assert baseline.sample_count == 1
        assert baseline.last_sample_date == START

    def test_warmup_is_exact_running_statistics(self):
        baseline = fold_series([10.0, 20.0, 30.0])
        assert baseline.sample_count == 3
        assert baseline.mean == pytest.approx(20.0)
        # Population variance of 10, 20, 30
        assert baseline.variance == pytest.approx(200.0 / 3)
        assert baseline.stddev == pytest.approx((200.0 / 3) ** 0.5)

    def test_old_history_decays_after_warmup(self):
        baseline = fold_series([10.0] * 100 + [20.0])
        alpha = decay_alpha(14.0)
        assert baseline.mean == pytest.approx(10.0 + alpha * 10.0)
        assert baseline.variance > 0

    def test_replaying_a_date_is_a_noop(self):
        baseline = fold_series([10.0, 20.0])
        again = fold_sample(
            baseline,
            account_id="acc-1",
            provider_id="aws",
            service_name="EC2",
            value=1000.0,
            sample_date=START + timedelta(days=1),
            half_life_days=14.0,
        )
        assert again is baseline

    def test_half_life(self):
        assert decay_alpha(1.0) == pytest.approx(0.5)
        assert 0 < decay_alpha(14.0) < decay_alpha(7.0)

    def test_variance_never_negative(self):
        baseline = fold_series([5.0, 5.0, 5.0, 5.0])
        assert baseline.variance == 0.0


class TestBaselineEngine:

    @pytest.mark.asyncio
    async def test_update_baseline_persists(self, repo, settings):
        engine = BaselineEngine(repo, settings)

        await engine.update_baseline("acc-1", "aws", "EC2", 10.0, START)
        updated = await engine.update_baseline("acc-1", "aws", "EC2", 30.0, START + timedelta(days=1))

        assert updated.mean == pytest.approx(20.0)
        stored = await repo.get_baselines("acc-1", "aws")
        assert stored["EC2"].sample_count == 2

    @pytest.mark.asyncio
    async def test_update_baseline_is_idempotent(self, repo, settings):
        engine = BaselineEngine(repo, settings)

        first = await engine.update_baseline("acc-1", "aws", "EC2", 10.0, START)
        second = await engine.update_baseline("acc-1", "aws", "EC2", 99.0, START)

        assert second.mean == first.mean
        assert second.sample_count == 1

    def test_fold_day_reports_changed_series(self, repo, settings):
        engine = BaselineEngine(repo, settings)
        baselines = {}

        changed = engine.fold_day(baselines, "acc-1", "aws", {"EC2": 1.0, "S3": 2.0}, START)
        assert {b.service_name for b in changed} == {"EC2", "S3"}

        changed = engine.fold_day(baselines, "acc-1", "aws", {"EC2": 1.0, "S3": 2.0}, START)
        assert changed == []
