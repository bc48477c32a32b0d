from typing import Any, Dict, List

from . import entities as E
from .policy import apply_update
from .store import EntityStore


class StatsAggregator:
    """Single writer for SystemStats and NetworkStats.

    Every change lands on the chain's NetworkStats first; SystemStats then
    moves by exactly the change the network counter took (after clamping and
    replace semantics), so each global counter stays the sum of its
    per-chain counterparts.
    """

    def __init__(self, store: EntityStore):
        self.store = store

    def system(self, timestamp: int = 0) -> Dict[str, Any]:
        stats, _ = self.store.get_or_create(
            E.SYSTEM_STATS, E.SYSTEM_STATS_ID, lambda: E.new_stats(E.SYSTEM_STATS_ID, timestamp)
        )
        return stats

    def network(self, chain_id: int, timestamp: int = 0) -> Dict[str, Any]:
        stats_id = str(chain_id)
        stats, _ = self.store.get_or_create(
            E.NETWORK_STATS, stats_id, lambda: E.new_stats(stats_id, timestamp, chain_id)
        )
        return stats

    def apply(self, chain_id: int, timestamp: int, **changes: int) -> Dict[str, int]:
        """Apply counter changes for one chain; returns the effective deltas."""
        network = self.network(chain_id, timestamp)
        system = self.system(timestamp)
        applied: Dict[str, int] = {}
        for field, value in changes.items():
            if field not in E.STAT_COUNTERS:
                raise KeyError(f"unknown stats counter {field}")
            delta = apply_update(E.NETWORK_STATS, network, field, value)
            system[field] = system.get(field, 0) + delta
            applied[field] = delta
        network["last_updated_at"] = timestamp
        system["last_updated_at"] = timestamp
        self.store.set(E.NETWORK_STATS, network)
        self.store.set(E.SYSTEM_STATS, system)
        return applied

    def inconsistencies(self) -> List[str]:
        system = self.store.get(E.SYSTEM_STATS, E.SYSTEM_STATS_ID)
        networks = self.store.find(E.NETWORK_STATS)
        if system is None:
            return [] if not networks else ["SystemStats missing while NetworkStats exist"]
        problems = []
        for field in E.STAT_COUNTERS:
            total = sum(n.get(field, 0) for n in networks)
            if system.get(field, 0) != total:
                problems.append(f"{field}: system={system.get(field, 0)} networks={total}")
        return problems
