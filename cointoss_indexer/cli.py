"""CoinToss indexer command line.

Usage:
  cointoss-indexer --config config.json run
  cointoss-indexer --config config.json backfill --chain-id 42220 --from-block 0
  cointoss-indexer --config config.json replay --file events.jsonl
  cointoss-indexer --config config.json get --type Pool --id 1
  cointoss-indexer --config config.json list --type Pool --status ACTIVE
  cointoss-indexer --config config.json events --name GameCompleted
  cointoss-indexer --config config.json stats --chain-id 42220
"""

import argparse
import asyncio
import json
import os
import sys
from typing import Any, Dict, Iterator, List, Optional

from . import entities as E
from .context import ChainEvent
from .ingest import MultiChainIndexer
from .router import EventRouter
from .store import EntityStore
from .util import _json_dumps, _load_json, _log

DEFAULTS = {
    "db_path": "./cointoss.db",
    "abi": None,
    "batch_size": 1000,
    "reconnect_delay": 5,
    "health_check_interval": 30,
    "health_check_threshold": 3,
    "networks": [],
}


def load_config(path: Optional[str]) -> Dict[str, Any]:
    cfg: Dict[str, Any] = {}
    if path and os.path.exists(path):
        cfg = _load_json(path)
    elif path:
        _log(f"WARN: config {path} not found, using defaults")
    for key, value in DEFAULTS.items():
        cfg.setdefault(key, value)
    for network in cfg["networks"]:
        if "chain_id" not in network:
            raise ValueError(f"network entry without chain_id: {network}")
        network.setdefault("rpc_http", None)
        network.setdefault("rpc_ws", None)
        network.setdefault("start_block", 0)
    return cfg


def iter_event_file(path: str) -> Iterator[ChainEvent]:
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                yield ChainEvent.from_dict(json.loads(line))
            except (json.JSONDecodeError, ValueError) as exc:
                raise ValueError(f"{path}:{lineno}: {exc}") from exc


def _query_events(
    store: EntityStore,
    name: Optional[str],
    chain_id: Optional[int],
    limit: int = 200,
) -> List[Dict[str, Any]]:
    rows = store.find(E.EVENT, newest_first=True, chain_id=chain_id)
    if name:
        rows = [row for row in rows if row["event_name"] == name]
    result = []
    for row in rows[:limit]:
        record = dict(row)
        try:
            record["raw_data"] = json.loads(row["raw_data"])
        except (TypeError, json.JSONDecodeError):
            pass
        result.append(record)
    return result


def _print(obj: Any) -> None:
    print(_json_dumps(obj))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="CoinToss Event Indexer")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Backfill and follow every configured network")

    backfill_parser = sub.add_parser("backfill", help="Manual backfill of one network")
    backfill_parser.add_argument("--chain-id", type=int, required=True)
    backfill_parser.add_argument("--from-block", type=int, required=True)
    backfill_parser.add_argument("--to-block", type=int, default=None)

    replay_parser = sub.add_parser("replay", help="Apply events from a JSON-lines file")
    replay_parser.add_argument("--file", required=True)

    get_parser = sub.add_parser("get", help="Print one entity")
    get_parser.add_argument("--type", required=True, choices=E.ENTITY_TYPES)
    get_parser.add_argument("--id", required=True)

    list_parser = sub.add_parser("list", help="List entities by indexed fields")
    list_parser.add_argument("--type", required=True, choices=E.ENTITY_TYPES)
    list_parser.add_argument("--status", default=None)
    list_parser.add_argument("--creator", default=None)
    list_parser.add_argument("--chain-id", type=int, default=None)
    list_parser.add_argument("--limit", type=int, default=200)

    events_parser = sub.add_parser("events", help="Query the audit log")
    events_parser.add_argument("--name", type=str, default=None)
    events_parser.add_argument("--chain-id", type=int, default=None)
    events_parser.add_argument("--limit", type=int, default=200)

    stats_parser = sub.add_parser("stats", help="Print system or network stats")
    stats_parser.add_argument("--chain-id", type=int, default=None)

    args = parser.parse_args(argv)
    cfg = load_config(args.config)

    if args.command in ("run", "backfill"):
        indexer = MultiChainIndexer(cfg)
        if args.command == "run":
            asyncio.run(indexer.start())
            return 0

        ingestor = indexer.ingestor(args.chain_id)
        if not ingestor.w3_http:
            raise RuntimeError("rpc_http is required")
        to_block = args.to_block
        if to_block is None:
            to_block = ingestor.w3_http.eth.block_number
        asyncio.run(ingestor.backfill_range(args.from_block, to_block))
        return 0

    store = EntityStore(cfg["db_path"])
    try:
        if args.command == "replay":
            router = EventRouter(store)
            applied = router.process_all(iter_event_file(args.file))
            _log(f"Replay applied {applied} new events from {args.file}")
            problems = router.stats.inconsistencies()
            for problem in problems:
                _log(f"WARN: stats mismatch {problem}")
            return 1 if problems else 0

        if args.command == "get":
            entity = store.get(args.type, args.id)
            if entity is None:
                sys.stderr.write(f"{args.type} {args.id} not found\n")
                return 1
            _print(entity)
            return 0

        if args.command == "list":
            _print(
                store.find(
                    args.type,
                    limit=args.limit,
                    status=args.status,
                    creator=args.creator.lower() if args.creator else None,
                    chain_id=args.chain_id,
                )
            )
            return 0

        if args.command == "events":
            _print(_query_events(store, args.name, args.chain_id, args.limit))
            return 0

        if args.command == "stats":
            if args.chain_id is None:
                _print(store.get(E.SYSTEM_STATS, E.SYSTEM_STATS_ID))
            else:
                _print(store.get(E.NETWORK_STATS, str(args.chain_id)))
            return 0
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
