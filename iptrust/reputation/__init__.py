from .aggregator import ReputationAggregator, ReputationQuery, ReputationFlags, SourceOutcome
from .refresh import RefreshCoordinator, ReputationSnapshot

__all__ = [
    "ReputationAggregator",
    "ReputationQuery",
    "ReputationFlags",
    "SourceOutcome",
    "RefreshCoordinator",
    "ReputationSnapshot",
]
