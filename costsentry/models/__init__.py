from costsentry.models.anomaly import AnomalyBaselineRecord, AnomalyEventRecord
from costsentry.models.cloud import CloudAccount, CostSnapshotRecord, DailyCostRecord

__all__ = [
    "AnomalyBaselineRecord",
    "AnomalyEventRecord",
    "CloudAccount",
    "CostSnapshotRecord",
    "DailyCostRecord",
]
