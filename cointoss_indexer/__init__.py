"""CoinToss event indexer: materializes pools, players, creators, rounds and stats from contract logs."""

from .context import ChainEvent
from .errors import EventApplyError, IndexerError, OutOfOrderEventError
from .router import EventRouter
from .store import EntityStore

__version__ = "0.1.0"

__all__ = [
    "ChainEvent",
    "EntityStore",
    "EventApplyError",
    "EventRouter",
    "IndexerError",
    "OutOfOrderEventError",
]
