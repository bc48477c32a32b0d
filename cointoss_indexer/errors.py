class IndexerError(RuntimeError):
    pass


class OutOfOrderEventError(IndexerError):
    def __init__(self, chain_id: int, position, last_position):
        self.chain_id = chain_id
        self.position = position
        self.last_position = last_position
        super().__init__(
            f"chain {chain_id}: event at {position} is not after last applied {last_position}"
        )


class EventApplyError(IndexerError):
    """A handler or the store failed on an event; the chain's stream must stop there."""

    def __init__(self, event, cause: Exception):
        self.event = event
        self.cause = cause
        super().__init__(f"failed to apply {event!r}: {cause}")
