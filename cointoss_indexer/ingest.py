"""Chain log ingestion for the CoinToss indexer.

Pulls CoinToss logs from an RPC node (HTTP ``eth_getLogs`` for backfills,
websocket ``eth_subscribe`` for the live tail), decodes them against the
contract ABI and hands them to the ``EventRouter`` in (block, log index)
order. One ``ChainIngestor`` runs per network; all of them share one lock
around the router so the store only ever has a single writer.
"""

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import websockets
from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import get_event_data, event_abi_to_log_topic

from .context import ChainEvent
from .errors import EventApplyError, IndexerError
from .router import EventRouter
from .store import EntityStore
from .util import _db_addr, _load_json, _log, _parse_int, _to_hex

BUNDLED_ABI = os.path.join(os.path.dirname(__file__), "abis", "CoinToss.json")

# Names for logs kept raw; no handler is registered under them, so the router audits them as unmapped.
ANONYMOUS_EVENT = "anonymous"
UNDECODED_SUFFIX = ":undecoded"


def _normalize_log(log: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log)
    for key in ("transactionHash", "blockHash", "data"):
        if isinstance(out.get(key), str):
            out[key] = HexBytes(out[key])
    if isinstance(out.get("topics"), list):
        out["topics"] = [HexBytes(t) if isinstance(t, str) else t for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if key in out:
            out[key] = _parse_int(out[key])
    if "address" in out and isinstance(out["address"], str):
        out["address"] = Web3.to_checksum_address(out["address"])
    return out


def _extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def _find_abi_file(contract_name: str, abi_dir: str) -> Optional[str]:
    if not abi_dir or not os.path.exists(abi_dir):
        return None
    for candidate in (f"{contract_name}.json", f"{contract_name}.abi.json"):
        direct = os.path.join(abi_dir, candidate)
        if os.path.exists(direct):
            return direct
    for root, _dirs, files in os.walk(abi_dir):
        for filename in sorted(files):
            if filename == f"{contract_name}.json":
                return os.path.join(root, filename)
    return None


def load_abi(abi_source: Optional[Any] = None, contract_name: str = "CoinToss") -> List[Dict[str, Any]]:
    """Load an ABI from a list, a file (raw ABI or Hardhat artifact) or a directory."""
    if isinstance(abi_source, list):
        return abi_source
    path = abi_source or BUNDLED_ABI
    if os.path.isdir(path):
        path = _find_abi_file(contract_name, path)
    if not path or not os.path.exists(path):
        raise FileNotFoundError(f"ABI path not found for {contract_name}: {abi_source}")
    abi = _extract_abi(_load_json(path))
    if abi is None:
        raise ValueError(f"{path} holds neither an ABI list nor an artifact with an abi field")
    return abi


def build_topic_map(abi: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    topic_map: Dict[str, Dict[str, Any]] = {}
    for item in abi:
        if not isinstance(item, dict) or item.get("type") != "event" or item.get("anonymous"):
            continue
        topic_map[bytes(event_abi_to_log_topic(item)).hex()] = item
    return topic_map


def _param_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, str) and Web3.is_address(value):
        return _db_addr(value)
    if isinstance(value, (list, tuple)):
        return [_param_value(v) for v in value]
    return value


def _raw_params(log: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "address": _db_addr(log.get("address")),
        "topics": [_to_hex(t) for t in log.get("topics") or []],
        "data": _to_hex(log.get("data") or b""),
    }


class ChainIngestor:
    def __init__(
        self,
        network: Dict[str, Any],
        router: EventRouter,
        abi: List[Dict[str, Any]],
        lock: Optional[asyncio.Lock] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        config = config or {}
        self.router = router
        self.lock = lock or asyncio.Lock()
        self.chain_id = int(network["chain_id"])
        self.rpc_http = network.get("rpc_http")
        self.rpc_ws = network.get("rpc_ws")
        address = network.get("address")
        self.address = Web3.to_checksum_address(address) if address else None
        self.start_block = int(network.get("start_block", 0))
        self.batch_size = int(config.get("batch_size", 1000))
        self.reconnect_delay = int(config.get("reconnect_delay", 5))
        self.health_check_interval = int(config.get("health_check_interval", 30))
        self.health_check_threshold = int(config.get("health_check_threshold", 3))

        self.w3_http = Web3(Web3.HTTPProvider(self.rpc_http)) if self.rpc_http else None
        self.codec = (self.w3_http or Web3()).codec
        self.topic_to_abi = build_topic_map(abi)

        self.last_scanned_block: Optional[int] = None
        self._block_ts_cache: Dict[int, int] = {}
        self._ws_id = 0

    def resume_block(self) -> int:
        """First block to scan: the block of the last applied event, or start_block."""
        cursor = self.router.last_position(self.chain_id)
        if cursor is None:
            return self.start_block
        return max(cursor[0], self.start_block)

    async def start(self) -> None:
        if not self.rpc_http:
            raise RuntimeError(f"chain {self.chain_id}: rpc_http is required for backfills")
        await self.backfill_missed_blocks()
        await asyncio.gather(
            self.subscribe_to_events(),
            self._health_check_loop(),
        )

    async def backfill_missed_blocks(self) -> None:
        if not self.w3_http:
            raise RuntimeError("rpc_http is required for backfills")
        latest = self.w3_http.eth.block_number
        from_block = self.resume_block()
        if self.last_scanned_block is not None:
            from_block = max(from_block, self.last_scanned_block + 1)
        if from_block > latest:
            return
        await self.backfill_range(from_block, latest)

    async def backfill_range(self, from_block: int, to_block: int) -> None:
        if not self.w3_http:
            raise RuntimeError("rpc_http is required for backfills")
        current = from_block
        batch_size = self.batch_size

        while current <= to_block:
            batch_to = min(current + batch_size - 1, to_block)
            query: Dict[str, Any] = {"fromBlock": current, "toBlock": batch_to}
            if self.address:
                query["address"] = self.address
            try:
                logs = self.w3_http.eth.get_logs(query)
            except ValueError as exc:
                msg = str(exc).lower()
                if batch_size <= 1:
                    raise
                if "query returned more than" in msg or "too many" in msg:
                    batch_size = max(batch_size // 2, 1)
                    _log(
                        f"WARN: chain {self.chain_id} get_logs too large ({current}-{batch_to}), "
                        f"reducing batch size to {batch_size}"
                    )
                    continue
                raise
            logs = sorted(logs, key=lambda x: (x.get("blockNumber", 0), x.get("logIndex", 0)))
            events = [await self.decode_log(_normalize_log(raw)) for raw in logs]
            await self.apply(events)
            self.last_scanned_block = batch_to
            current = batch_to + 1

    async def apply(self, events: List[ChainEvent]) -> int:
        applied = 0
        async with self.lock:
            for event in events:
                try:
                    if self.router.process(event):
                        applied += 1
                except IndexerError:
                    raise
                except Exception as exc:
                    raise EventApplyError(event, exc) from exc
        return applied

    async def subscribe_to_events(self) -> None:
        if not self.rpc_ws:
            _log(f"WARN: chain {self.chain_id} has no rpc_ws; relying on health-check backfills")
            return

        backoff = max(self.reconnect_delay, 1)
        max_backoff = 60

        while True:
            try:
                await self.backfill_missed_blocks()
                async with websockets.connect(self.rpc_ws, ping_interval=20, ping_timeout=20) as ws:
                    _log(f"Chain {self.chain_id}: websocket connected, subscribing to logs...")
                    sub_id = await self._ws_subscribe(ws)
                    _log(f"Chain {self.chain_id}: subscribed {sub_id}")
                    backoff = max(self.reconnect_delay, 1)

                    async for message in ws:
                        payload = json.loads(message)
                        if payload.get("method") == "eth_subscription":
                            log = payload.get("params", {}).get("result")
                            if log:
                                await self._handle_ws_log(log)
                        elif payload.get("id") is not None and payload.get("error"):
                            _log(f"Chain {self.chain_id} WS error: {payload}")
            except IndexerError:
                raise
            except Exception as exc:
                _log(f"Chain {self.chain_id} websocket error: {exc}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)

    async def _ws_subscribe(self, ws: Any) -> str:
        self._ws_id += 1
        req_id = self._ws_id
        params: Dict[str, Any] = {}
        if self.address:
            params["address"] = self.address
        payload = {
            "jsonrpc": "2.0",
            "id": req_id,
            "method": "eth_subscribe",
            "params": ["logs", params],
        }
        await ws.send(json.dumps(payload))

        while True:
            message = await ws.recv()
            data = json.loads(message)
            if data.get("id") == req_id:
                if "result" in data:
                    return data["result"]
                raise RuntimeError(f"Subscribe failed: {data}")
            if data.get("method") == "eth_subscription":
                log = data.get("params", {}).get("result")
                if log:
                    await self._handle_ws_log(log)

    async def _handle_ws_log(self, log: Dict[str, Any]) -> None:
        normalized = _normalize_log(log)
        if normalized.get("removed"):
            _log(
                f"WARN: chain {self.chain_id} reorg removed log "
                f"{_to_hex(normalized.get('transactionHash'))}:{normalized.get('logIndex')}; "
                "projection is not rolled back"
            )
            return

        block_number = normalized.get("blockNumber")
        if block_number is not None and self.last_scanned_block is not None:
            if block_number > self.last_scanned_block + 1:
                await self.backfill_range(self.last_scanned_block + 1, block_number - 1)

        await self.apply([await self.decode_log(normalized)])
        if block_number is not None:
            self.last_scanned_block = max(self.last_scanned_block or 0, block_number - 1)

    async def decode_log(self, log: Dict[str, Any]) -> ChainEvent:
        """Decode one log; logs the ABI cannot decode come back as raw, unmapped events."""
        topics = log.get("topics") or []
        event_abi = self.topic_to_abi.get(bytes(topics[0]).hex()) if topics else None
        if event_abi is None:
            name = _to_hex(topics[0]) if topics else ANONYMOUS_EVENT
            _log(f"WARN: chain {self.chain_id} unknown topic {name}; recording it raw")
            params = _raw_params(log)
        else:
            try:
                event_data = get_event_data(self.codec, event_abi, log)
            except Exception as exc:
                name = f"{event_abi.get('name')}{UNDECODED_SUFFIX}"
                _log(f"WARN: chain {self.chain_id} failed decoding {event_abi.get('name')}: {exc}")
                params = _raw_params(log)
            else:
                name = event_data["event"]
                params = {k: _param_value(v) for k, v in dict(event_data["args"]).items()}

        block_number = log.get("blockNumber")
        return ChainEvent(
            name=name,
            params=params,
            block_number=block_number,
            block_timestamp=await self._get_block_timestamp(block_number),
            transaction_hash=_to_hex(log.get("transactionHash")),
            log_index=log.get("logIndex"),
            chain_id=self.chain_id,
        )

    async def _get_block_timestamp(self, block_number: Optional[int]) -> int:
        if block_number is None or not self.w3_http:
            return 0
        if block_number in self._block_ts_cache:
            return self._block_ts_cache[block_number]
        block = self.w3_http.eth.get_block(block_number)
        ts = int(block.get("timestamp", 0))
        self._block_ts_cache[block_number] = ts
        return ts

    async def _health_check_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                if not self.w3_http or self.last_scanned_block is None:
                    continue
                latest = self.w3_http.eth.block_number
                if latest > self.last_scanned_block + self.health_check_threshold:
                    await self.backfill_missed_blocks()
            except IndexerError:
                raise
            except Exception as exc:
                _log(f"Chain {self.chain_id} health check error: {exc}")


class MultiChainIndexer:
    """Runs one ChainIngestor per configured network over a shared store."""

    def __init__(self, config: Dict[str, Any], store: Optional[EntityStore] = None):
        networks = config.get("networks") or []
        if not networks:
            raise ValueError("config.networks is empty")
        self.config = config
        self.store = store or EntityStore(config.get("db_path", "./cointoss.db"))
        self.router = EventRouter(self.store)
        self.lock = asyncio.Lock()
        abi = load_abi(config.get("abi"))
        self.ingestors: Dict[int, ChainIngestor] = {}
        for network in networks:
            ingestor = ChainIngestor(network, self.router, abi, self.lock, config)
            if ingestor.chain_id in self.ingestors:
                raise ValueError(f"chain {ingestor.chain_id} configured twice")
            self.ingestors[ingestor.chain_id] = ingestor

    def ingestor(self, chain_id: int) -> ChainIngestor:
        try:
            return self.ingestors[chain_id]
        except KeyError:
            raise ValueError(f"chain {chain_id} is not configured") from None

    async def start(self) -> None:
        await asyncio.gather(*(ingestor.start() for ingestor in self.ingestors.values()))
