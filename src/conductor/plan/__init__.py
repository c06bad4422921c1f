from conductor.plan.document import PlanDocument, parse_plan
from conductor.plan.model import (
    CommitKind,
    CommitRecord,
    GhostReference,
    ItemKind,
    Status,
    WorkItem,
)
from conductor.plan.registry import TrackRegistry
from conductor.plan.store import PlanStore

__all__ = [
    "CommitKind",
    "CommitRecord",
    "GhostReference",
    "ItemKind",
    "PlanDocument",
    "PlanStore",
    "Status",
    "TrackRegistry",
    "WorkItem",
    "parse_plan",
]
