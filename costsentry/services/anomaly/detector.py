"""
Anomaly detection against rolling baselines.

For a given complete day, every service series and the account total are
compared with their baseline mean:

    variance_percent = (actual - expected) / expected * 100

Series with too little history or a negligible expectation are skipped. The
sign picks spike or drop; a deviation in the same direction on the preceding
days makes it a trend. Detection is a pure function of its inputs.
"""

from datetime import date, timedelta
from typing import Dict, Iterable, List, Mapping, Optional

import structlog

from costsentry.core.config import Settings, get_settings
from costsentry.schemas.anomalies import (
    ACCOUNT_TOTAL,
    AnomalyBaseline,
    AnomalyEvent,
    AnomalyType,
    ContributingService,
    Severity,
)
from costsentry.schemas.costs import DailyCost, NormalizedCostSnapshot, ServiceCost

logger = structlog.get_logger()


def rank_contributors(
    actual: Mapping[str, float],
    baselines: Mapping[str, AnomalyBaseline],
    top_n: int,
) -> List[ContributingService]:
    """Services whose cost rose above expectation, largest dollar increase first."""
    contributors = []
    for name, cost in actual.items():
        if name == ACCOUNT_TOTAL:
            continue
        baseline = baselines.get(name)
        expected = baseline.mean if baseline else 0.0
        delta = cost - expected
        if delta <= 0:
            continue
        contributors.append(ContributingService(
            name=name,
            actual_cost=round(cost, 6),
            expected_cost=round(expected, 6),
            delta=round(delta, 6),
            change_pct=round(delta / expected * 100, 2) if expected > 0 else None,
        ))
    contributors.sort(key=lambda c: (-abs(c.delta), c.name))
    return contributors[:top_n]


def day_series(
    entry: DailyCost,
    services: List[ServiceCost],
    baselines: Mapping[str, AnomalyBaseline],
) -> Dict[str, float]:
    """Per-service cost for one day. A service with a baseline but no spend that day counts as 0."""
    per_service = entry.service_costs(services)
    for name in baselines:
        if name != ACCOUNT_TOTAL:
            per_service.setdefault(name, 0.0)
    return per_service


def describe_root_cause(
    variance_percent: float,
    expected_cost: float,
    actual_cost: float,
    contributors: List[ContributingService],
) -> str:
    direction = "increased" if variance_percent > 0 else "decreased"
    text = (
        f"Cost {direction} by {abs(variance_percent):.1f}% from the expected baseline "
        f"of ${expected_cost:.2f}/day to ${actual_cost:.2f}/day."
    )
    if contributors and variance_percent > 0:
        top = contributors[0]
        text += f" Largest contributor: {top.name} (+${top.delta:.2f})."
    return text


class AnomalyDetector:

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def classify_severity(self, magnitude_percent: float) -> Optional[Severity]:
        """Lower bounds are inclusive. None below the detection threshold."""
        s = self.settings
        magnitude = abs(magnitude_percent)
        if magnitude >= s.ANOMALY_CRITICAL_PERCENT:
            return Severity.CRITICAL
        if magnitude >= s.ANOMALY_HIGH_PERCENT:
            return Severity.HIGH
        if magnitude >= s.ANOMALY_MEDIUM_PERCENT:
            return Severity.MEDIUM
        if magnitude >= s.ANOMALY_THRESHOLD_PERCENT:
            return Severity.LOW
        return None

    def _is_trend(
        self,
        service_name: str,
        day: date,
        direction: int,
        history: Iterable[AnomalyEvent],
    ) -> bool:
        needed = self.settings.ANOMALY_TREND_MIN_DAYS - 1
        if needed <= 0:
            return False
        deviating = {
            e.detected_date
            for e in history
            if e.service_name == service_name and (e.variance_percent > 0) == (direction > 0)
        }
        return all(day - timedelta(days=i) in deviating for i in range(1, needed + 1))

    @staticmethod
    def latest_complete_day(snapshot: NormalizedCostSnapshot) -> Optional[date]:
        cutoff = snapshot.generated_at.date()
        days = [d.date for d in snapshot.daily_costs if d.date < cutoff]
        return days[-1] if days else None

    def detect(
        self,
        account_id: str,
        provider_id: str,
        snapshot: NormalizedCostSnapshot,
        baselines: Mapping[str, AnomalyBaseline],
        day: Optional[date] = None,
        history: Iterable[AnomalyEvent] = (),
    ) -> List[AnomalyEvent]:
        """
        Detect anomalies for one day of a snapshot.

        ``baselines`` must not yet include ``day``. ``history`` holds events
        from the days before, used for trend classification.
        """
        day = day or self.latest_complete_day(snapshot)
        entry = snapshot.day(day) if day else None
        if entry is None:
            return []

        s = self.settings
        history = list(history)
        per_service = day_series(entry, snapshot.services, baselines)
        series: Dict[str, float] = {ACCOUNT_TOTAL: entry.cost, **per_service}
        contributors = rank_contributors(per_service, baselines, s.ANOMALY_TOP_CONTRIBUTORS)

        events = []
        for service_name, actual in series.items():
            baseline = baselines.get(service_name)
            if baseline is None or baseline.sample_count < s.ANOMALY_MIN_SAMPLES:
                continue
            if baseline.last_sample_date is not None and day <= baseline.last_sample_date:
                continue
            expected = baseline.mean
            if expected < s.ANOMALY_MIN_EXPECTED_COST:
                continue

            variance_percent = (actual - expected) / expected * 100
            severity = self.classify_severity(variance_percent)
            if severity is None:
                continue

            direction = 1 if variance_percent > 0 else -1
            if self._is_trend(service_name, day, direction, history):
                anomaly_type = AnomalyType.TREND
            else:
                anomaly_type = AnomalyType.SPIKE if direction > 0 else AnomalyType.DROP

            events.append(AnomalyEvent(
                account_id=account_id,
                provider_id=provider_id,
                service_name=service_name,
                detected_date=day,
                anomaly_type=anomaly_type,
                severity=severity,
                expected_cost=round(expected, 6),
                actual_cost=round(actual, 6),
                variance_percent=round(variance_percent, 2),
                contributing_services=contributors,
                root_cause=describe_root_cause(variance_percent, expected, actual, contributors),
            ))

        if events:
            logger.info(
                "anomalies_detected",
                account_id=account_id,
                provider=provider_id,
                day=day.isoformat(),
                count=len(events),
            )
        return events
