"""Durable scan state: lease, discovery queue, scan results and asset index."""

from media_index.state.models import (
    IndexState,
    LeaseProgress,
    LeaseStatus,
    QueueState,
    ResultsState,
    ScanLease,
    ScanResultRecord,
)
from media_index.state.state_store import StateStore, generate_session_id, needs_scan

__all__ = [
    "IndexState",
    "LeaseProgress",
    "LeaseStatus",
    "QueueState",
    "ResultsState",
    "ScanLease",
    "ScanResultRecord",
    "StateStore",
    "generate_session_id",
    "needs_scan",
]
