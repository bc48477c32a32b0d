from typing import Any, Dict, Optional, Tuple

from .util import _db_addr, _log, _parse_int, _to_hex


class ChainEvent:
    """One decoded contract log, as handed over by the ingestion side."""

    __slots__ = (
        "name",
        "params",
        "block_number",
        "block_timestamp",
        "transaction_hash",
        "log_index",
        "chain_id",
    )

    def __init__(
        self,
        name: str,
        params: Dict[str, Any],
        block_number: int,
        block_timestamp: int,
        transaction_hash: str,
        log_index: int,
        chain_id: int,
    ):
        self.name = name
        self.params = dict(params or {})
        self.block_number = _parse_int(block_number)
        self.block_timestamp = _parse_int(block_timestamp or 0)
        self.transaction_hash = _to_hex(transaction_hash)
        self.log_index = _parse_int(log_index)
        self.chain_id = _parse_int(chain_id)

    @property
    def position(self) -> Tuple[int, int]:
        return self.block_number, self.log_index

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainEvent":
        """Build from either the snake_case form of ``to_dict`` or RPC-style camelCase keys."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            raise ValueError(f"event is missing {keys[0]}: {data}")

        return cls(
            name=pick("name", "event", "event_name"),
            params=pick("params", "args"),
            block_number=pick("block_number", "blockNumber"),
            block_timestamp=data.get("block_timestamp", data.get("blockTimestamp", 0)),
            transaction_hash=pick("transaction_hash", "transactionHash"),
            log_index=pick("log_index", "logIndex"),
            chain_id=pick("chain_id", "chainId"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "params": self.params,
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
            "chain_id": self.chain_id,
        }

    def __repr__(self) -> str:
        return (
            f"ChainEvent({self.name} chain={self.chain_id} block={self.block_number} "
            f"log={self.log_index} tx={self.transaction_hash})"
        )


class HandlerContext:
    """What a handler sees while one event is being applied."""

    def __init__(self, event: ChainEvent, store: Any, stats: Any):
        self.event = event
        self.store = store
        self.stats = stats
        self.refs: Dict[str, Optional[str]] = {"pool": None, "player": None, "creator": None}

    @property
    def params(self) -> Dict[str, Any]:
        return self.event.params

    @property
    def chain_id(self) -> int:
        return self.event.chain_id

    @property
    def timestamp(self) -> int:
        return self.event.block_timestamp

    @property
    def block_number(self) -> int:
        return self.event.block_number

    def refer(self, **refs: Optional[str]) -> None:
        for key, value in refs.items():
            if key not in self.refs:
                raise KeyError(f"unknown audit reference {key}")
            if value is not None:
                self.refs[key] = value

    def int_param(self, *names: str, default: Optional[int] = None) -> int:
        for name in names:
            value = self.params.get(name)
            if value is not None:
                return _parse_int(value)
        if default is None:
            raise ValueError(f"{self.event.name} payload has no {names[0]}")
        return default

    def addr_param(self, *names: str, required: bool = True) -> Optional[str]:
        for name in names:
            value = self.params.get(name)
            if value:
                return _db_addr(value)
        if required:
            raise ValueError(f"{self.event.name} payload has no {names[0]}")
        return None

    def pool_id(self) -> str:
        return str(self.int_param("poolId"))

    def missing(self, entity_type: str, entity_id: Any) -> None:
        _log(
            f"WARN: {self.event.name} at {self.event.position} on chain {self.chain_id} "
            f"references unknown {entity_type} {entity_id}; skipping its update"
        )

    def inconsistent(self, msg: str) -> None:
        _log(
            f"WARN: inconsistency in {self.event.name} at {self.event.position} "
            f"on chain {self.chain_id}: {msg}"
        )
