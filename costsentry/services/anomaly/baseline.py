"""
Rolling cost baselines.

Each (provider, account, service) series keeps an exponentially weighted mean
and variance of its daily cost. The per-sample weight is max(alpha, 1/n):
while fewer samples exist than the half-life implies, every sample counts
equally (exact running mean and population variance); afterwards older
history decays with the configured half-life.
"""

from datetime import date, datetime, timezone
from typing import Dict, List, Mapping, Optional

import structlog

from costsentry.core.config import Settings, get_settings
from costsentry.schemas.anomalies import AnomalyBaseline
from costsentry.services.persistence.ports import CostRepository

logger = structlog.get_logger()


def decay_alpha(half_life_days: float) -> float:
    """Per-day weight such that a sample's influence halves every half_life_days."""
    return 1.0 - 0.5 ** (1.0 / half_life_days)


def fold_sample(
    baseline: Optional[AnomalyBaseline],
    *,
    account_id: str,
    provider_id: str,
    service_name: str,
    value: float,
    sample_date: date,
    half_life_days: float,
) -> AnomalyBaseline:
    """
    Fold one daily observation into a baseline and return the new baseline.

    A sample dated at or before the baseline's last_sample_date is ignored, so
    replaying the same days is a no-op.
    """
    now = datetime.now(timezone.utc)
    if baseline is None:
        return AnomalyBaseline(
            provider_id=provider_id,
            account_id=account_id,
            service_name=service_name,
            mean=value,
            variance=0.0,
            sample_count=1,
            last_sample_date=sample_date,
            last_updated=now,
        )
    if baseline.last_sample_date is not None and sample_date <= baseline.last_sample_date:
        return baseline

    n = baseline.sample_count + 1
    weight = max(decay_alpha(half_life_days), 1.0 / n)
    diff = value - baseline.mean
    incr = weight * diff
    mean = baseline.mean + incr
    variance = max((1.0 - weight) * (baseline.variance + diff * incr), 0.0)

    return baseline.model_copy(update={
        "mean": mean,
        "variance": variance,
        "sample_count": n,
        "last_sample_date": sample_date,
        "last_updated": now,
    })


class BaselineEngine:
    """Maintains baselines for an account, in memory during a sync and through the repository."""

    def __init__(self, repository: CostRepository, settings: Optional[Settings] = None):
        self.repository = repository
        self.settings = settings or get_settings()

    @property
    def half_life_days(self) -> float:
        return self.settings.BASELINE_HALF_LIFE_DAYS

    def fold_day(
        self,
        baselines: Dict[str, AnomalyBaseline],
        account_id: str,
        provider_id: str,
        series: Mapping[str, float],
        sample_date: date,
    ) -> List[AnomalyBaseline]:
        """Fold one day of every series into ``baselines`` in place. Returns the baselines that changed."""
        changed = []
        for service_name, value in series.items():
            current = baselines.get(service_name)
            updated = fold_sample(
                current,
                account_id=account_id,
                provider_id=provider_id,
                service_name=service_name,
                value=value,
                sample_date=sample_date,
                half_life_days=self.half_life_days,
            )
            if updated is not current:
                baselines[service_name] = updated
                changed.append(updated)
        return changed

    async def update_baseline(
        self,
        account_id: str,
        provider_id: str,
        service_name: str,
        new_daily_cost: float,
        sample_date: date,
    ) -> AnomalyBaseline:
        """Fold a single observation and persist it."""
        baselines = await self.repository.get_baselines(account_id, provider_id)
        changed = self.fold_day(baselines, account_id, provider_id, {service_name: new_daily_cost}, sample_date)
        if changed:
            await self.repository.save_baselines(changed)
        else:
            logger.debug(
                "baseline_sample_already_folded",
                account_id=account_id,
                service=service_name,
                sample_date=sample_date.isoformat(),
            )
        return baselines[service_name]
