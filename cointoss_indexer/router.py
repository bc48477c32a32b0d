from typing import Any, Dict, Iterable, Optional

from . import entities as E
from .aggregation import StatsAggregator
from .context import ChainEvent, HandlerContext
from .errors import OutOfOrderEventError
from .handlers import HANDLERS, Handler
from .identity import event_id
from .store import EntityStore
from .util import _db_addr, _json_dumps, _log, _parse_int


class EventRouter:
    """Applies chain events to the entity store, one at a time, exactly once.

    For every event the router checks the audit log for a previous
    application, enforces per-chain (block, log index) order, runs the
    registered handler and writes the audit ``Event`` record, all in one
    store transaction. A handler failure rolls the event back and is
    re-raised: later events on that chain may depend on it, so the caller
    has to stop the chain's stream rather than skip ahead.
    """

    def __init__(self, store: EntityStore, handlers: Optional[Dict[str, Handler]] = None):
        self.store = store
        self.stats = StatsAggregator(store)
        self.handlers: Dict[str, Handler] = dict(HANDLERS if handlers is None else handlers)

    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    def last_position(self, chain_id: int) -> Optional[tuple]:
        return self.store.get_cursor(chain_id)

    def process(self, event: ChainEvent) -> bool:
        """Apply one event; returns False when it had already been applied."""
        audit_id = event_id(event.transaction_hash, event.log_index)
        if self.store.exists(E.EVENT, audit_id):
            _log(f"Skipping already indexed {event!r}")
            return False

        last = self.store.get_cursor(event.chain_id)
        if last is not None and event.position <= last:
            raise OutOfOrderEventError(event.chain_id, event.position, last)

        handler = self.handlers.get(event.name)
        ctx = HandlerContext(event, self.store, self.stats)
        with self.store.transaction():
            if handler is None:
                _log(f"WARN: no handler for {event.name}; recording it as {E.UNMAPPED_EVENT_TYPE}")
            else:
                handler(ctx)
            self.store.set(E.EVENT, self._audit_record(audit_id, ctx, handler is not None))
            self.store.set_cursor(
                event.chain_id, event.block_number, event.log_index, event.block_timestamp
            )
        return True

    def process_all(self, events: Iterable[ChainEvent]) -> int:
        applied = 0
        for event in events:
            if self.process(event):
                applied += 1
        return applied

    @staticmethod
    def _default_refs(params: Dict[str, Any]) -> Dict[str, Optional[str]]:
        pool = params.get("poolId")
        player = params.get("player") or params.get("winner")
        creator = params.get("creator")
        return {
            "pool": None if pool is None else str(_parse_int(pool)),
            "player": _db_addr(player) if player else None,
            "creator": _db_addr(creator) if creator else None,
        }

    def _audit_record(self, audit_id: str, ctx: HandlerContext, mapped: bool) -> Dict[str, Any]:
        event = ctx.event
        refs = self._default_refs(event.params)
        refs.update({k: v for k, v in ctx.refs.items() if v is not None})
        if mapped:
            event_type = E.EVENT_TYPES.get(event.name, E.UNMAPPED_EVENT_TYPE)
        else:
            event_type = E.UNMAPPED_EVENT_TYPE
        return {
            "id": audit_id,
            "event_type": event_type,
            "event_name": event.name,
            "transaction_hash": event.transaction_hash,
            "block_number": event.block_number,
            "block_timestamp": event.block_timestamp,
            "log_index": event.log_index,
            "chain_id": event.chain_id,
            "pool": refs["pool"],
            "player": refs["player"],
            "creator": refs["creator"],
            "raw_data": _json_dumps(event.params),
        }
