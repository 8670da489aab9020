# criptocracia/sync/__init__.py

from criptocracia.sync.election_sync import ChangeType, ElectionChange, ElectionSyncEngine
from criptocracia.sync.results import ResultsAggregator

__all__ = ["ChangeType", "ElectionChange", "ElectionSyncEngine", "ResultsAggregator"]
