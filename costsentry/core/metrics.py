"""
Prometheus metrics for the sync and anomaly pipeline.
"""
from prometheus_client import Counter, Histogram

SYNC_RUNS = Counter(
    "costsentry_sync_runs_total",
    "Total number of account syncs by outcome",
    ["provider", "status"]
)

SYNC_DURATION = Histogram(
    "costsentry_sync_duration_seconds",
    "Duration of a single account sync in seconds",
    ["provider"],
    buckets=[0.5, 1, 5, 10, 30, 60, 120, 300]
)

FETCH_RETRIES = Counter(
    "costsentry_fetch_retries_total",
    "Retries of transient provider fetch failures",
    ["provider"]
)

SNAPSHOT_CACHE_LOOKUPS = Counter(
    "costsentry_snapshot_cache_lookups_total",
    "Snapshot cache lookups by result",
    ["result"]  # hit, miss
)

ANOMALIES_DETECTED = Counter(
    "costsentry_anomalies_detected_total",
    "Newly created anomaly events",
    ["provider", "severity"]
)
