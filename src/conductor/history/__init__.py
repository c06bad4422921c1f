from conductor.history.correlator import CommitCorrelator, ExactShaStrategy, MessageMatchStrategy
from conductor.history.executor import RevertExecutor, RevertSession, SessionState
from conductor.history.planner import RevertPlan, RevertPlanner

__all__ = [
    "CommitCorrelator",
    "ExactShaStrategy",
    "MessageMatchStrategy",
    "RevertExecutor",
    "RevertPlan",
    "RevertPlanner",
    "RevertSession",
    "SessionState",
]
