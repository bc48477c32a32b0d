import asyncio
import json

import pytest
from hexbytes import HexBytes
from web3._utils.events import event_abi_to_log_topic

from cointoss_indexer import entities as E
from cointoss_indexer.errors import EventApplyError, OutOfOrderEventError
from cointoss_indexer.ingest import (
    ANONYMOUS_EVENT,
    UNDECODED_SUFFIX,
    ChainIngestor,
    MultiChainIndexer,
    build_topic_map,
    load_abi,
)
from cointoss_indexer.router import EventRouter

from conftest import CHAIN_ID, CREATOR, ONE_ETHER, PLAYER_B, tx_hash

CONTRACT = "0x" + "1" * 40


def _abi_for(abi, name):
    return next(item for item in abi if item.get("name") == name)


def _uint_topic(value):
    return HexBytes(value.to_bytes(32, "big"))


def _addr_topic(address):
    return HexBytes(b"\x00" * 12 + bytes.fromhex(address[2:]))


class FakeEth:
    """Serves canned logs the way ``w3.eth`` does, optionally refusing wide ranges."""

    def __init__(self, logs, latest, max_range=None):
        self.logs = logs
        self.block_number = latest
        self.max_range = max_range
        self.queries = []

    def get_logs(self, query):
        self.queries.append((query["fromBlock"], query["toBlock"]))
        if self.max_range and query["toBlock"] - query["fromBlock"] + 1 > self.max_range:
            raise ValueError("query returned more than 10000 results")
        return [
            log for log in self.logs
            if query["fromBlock"] <= log["blockNumber"] <= query["toBlock"]
        ]

    def get_block(self, number):
        return {"number": number, "timestamp": 1_700_000_000 + number}


class FakeWeb3:
    def __init__(self, eth):
        self.eth = eth


@pytest.fixture
def abi():
    return load_abi()


@pytest.fixture
def ingestor(router, abi):
    network = {"chain_id": CHAIN_ID, "address": CONTRACT, "start_block": 50}
    return ChainIngestor(network, router, abi, config={"batch_size": 100})


def _log_entry(ingestor, abi, name, topics, types, values, block, log_index):
    return {
        "address": CONTRACT,
        "topics": [HexBytes(event_abi_to_log_topic(_abi_for(abi, name)))] + topics,
        "data": HexBytes(ingestor.codec.encode(types, values)),
        "blockNumber": block,
        "transactionHash": HexBytes(tx_hash(block, log_index)),
        "transactionIndex": 0,
        "blockHash": HexBytes(b"\x11" * 32),
        "logIndex": log_index,
    }


def _pool_created(ingestor, abi, block, log_index=0, pool_id=1):
    return _log_entry(
        ingestor, abi, "PoolCreated",
        [_uint_topic(pool_id), _addr_topic(CREATOR)],
        ["uint256", "uint256"], [ONE_ETHER, 10],
        block, log_index,
    )


def test_bundled_abi_covers_every_event(abi):
    topic_map = build_topic_map(abi)
    assert len(topic_map) == len(E.EVENT_TYPES)
    assert {item["name"] for item in topic_map.values()} == set(E.EVENT_TYPES)


def test_load_abi_from_artifact_directory(tmp_path, abi):
    (tmp_path / "nested").mkdir()
    artifact = tmp_path / "nested" / "CoinToss.json"
    artifact.write_text(json.dumps({"contractName": "CoinToss", "abi": abi}))
    assert load_abi(str(tmp_path)) == abi
    assert load_abi(str(artifact)) == abi


def test_load_abi_rejects_unknown_shapes(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text(json.dumps({"bytecode": "0x"}))
    with pytest.raises(ValueError):
        load_abi(str(bad))
    with pytest.raises(FileNotFoundError):
        load_abi(str(tmp_path / "missing.json"))


def test_decode_pool_created(ingestor, abi):
    event = asyncio.run(ingestor.decode_log(_pool_created(ingestor, abi, block=120, log_index=3)))

    assert event.name == "PoolCreated"
    assert event.params == {
        "poolId": 1,
        "creator": CREATOR,
        "entryFee": ONE_ETHER,
        "maxPlayers": 10,
    }
    assert event.position == (120, 3)
    assert event.chain_id == CHAIN_ID
    assert event.transaction_hash == tx_hash(120, 3)
    # no HTTP endpoint configured, so no block timestamp lookup
    assert event.block_timestamp == 0


def test_decode_bytes32_as_hex(ingestor, abi):
    log = _log_entry(
        ingestor, abi, "CreatorVerified",
        [_addr_topic(CREATOR)], ["bytes32"], [b"\xab" * 32],
        block=130, log_index=0,
    )
    event = asyncio.run(ingestor.decode_log(log))
    assert event.params["attestationId"] == "0x" + "ab" * 32


def test_unknown_topic_is_audited_as_unmapped(store, ingestor, abi):
    log = _pool_created(ingestor, abi, block=120, log_index=1)
    log["topics"][0] = HexBytes(b"\x99" * 32)

    event = asyncio.run(ingestor.decode_log(log))
    assert event.name == "0x" + "99" * 32
    assert event.params["topics"][1] == "0x" + "00" * 31 + "01"
    assert asyncio.run(ingestor.apply([event])) == 1

    record = store.get(E.EVENT, f"{tx_hash(120, 1)}-1")
    assert record["event_type"] == E.UNMAPPED_EVENT_TYPE
    assert json.loads(record["raw_data"])["data"] == "0x" + bytes(log["data"]).hex()
    assert store.count(E.POOL) == 0


def test_undecodable_log_is_audited_as_unmapped(store, ingestor, abi):
    log = _pool_created(ingestor, abi, block=121)
    log["data"] = HexBytes(b"")

    event = asyncio.run(ingestor.decode_log(log))
    assert event.name == "PoolCreated" + UNDECODED_SUFFIX
    assert event.params["data"] == "0x"
    asyncio.run(ingestor.apply([event]))

    records = store.find(E.EVENT)
    assert [r["event_type"] for r in records] == [E.UNMAPPED_EVENT_TYPE]
    assert records[0]["event_name"] == "PoolCreated" + UNDECODED_SUFFIX
    assert store.count(E.POOL) == 0


def test_anonymous_log_is_audited(store, ingestor, abi):
    log = _pool_created(ingestor, abi, block=122)
    log["topics"] = []
    event = asyncio.run(ingestor.decode_log(log))
    asyncio.run(ingestor.apply([event]))
    assert store.find(E.EVENT)[0]["event_name"] == ANONYMOUS_EVENT


def test_resume_block(ingestor, router, make_event):
    assert ingestor.resume_block() == 50
    router.process(make_event("ProjectPoolUpdated", block=75, totalProjectPool=1))
    assert ingestor.resume_block() == 75


def test_backfill_applies_logs_in_order(store, ingestor, abi):
    logs = [
        _log_entry(
            ingestor, abi, "PlayerJoined",
            [_uint_topic(1), _addr_topic(PLAYER_B)],
            ["uint256", "uint256"], [1, 10],
            block=61, log_index=0,
        ),
        _pool_created(ingestor, abi, block=60, log_index=2),
    ]
    ingestor.w3_http = FakeWeb3(FakeEth(logs, latest=80))

    asyncio.run(ingestor.backfill_missed_blocks())

    pool = store.get(E.POOL, "1")
    assert pool["current_players"] == 1
    assert pool["created_at"] == 1_700_000_060
    assert ingestor.last_scanned_block == 80
    assert store.get_cursor(CHAIN_ID) == (61, 0)


def test_backfill_halves_batch_on_oversized_query(store, ingestor, abi):
    eth = FakeEth([_pool_created(ingestor, abi, block=95)], latest=110, max_range=25)
    ingestor.w3_http = FakeWeb3(eth)

    asyncio.run(ingestor.backfill_range(50, 110))

    assert store.exists(E.POOL, "1")
    assert eth.queries == [(50, 110), (50, 99), (50, 74), (75, 99), (100, 110)]


def test_apply_wraps_handler_failures(store, abi, make_event):
    def broken(ctx):
        raise RuntimeError("disk full")

    router = EventRouter(store)
    router.register("ProjectPoolUpdated", broken)
    ingestor = ChainIngestor({"chain_id": CHAIN_ID}, router, abi)
    event = make_event("ProjectPoolUpdated", totalProjectPool=5)

    with pytest.raises(EventApplyError) as info:
        asyncio.run(ingestor.apply([event]))
    assert info.value.event is event
    assert isinstance(info.value.cause, RuntimeError)


def test_apply_lets_ordering_errors_through(router, ingestor, make_event):
    later = make_event("ProjectPoolUpdated", block=200, totalProjectPool=5)
    earlier = make_event("ProjectPoolUpdated", block=150, totalProjectPool=6)

    assert asyncio.run(ingestor.apply([later])) == 1
    with pytest.raises(OutOfOrderEventError):
        asyncio.run(ingestor.apply([earlier]))


def test_removed_ws_log_is_not_applied(store, ingestor, abi):
    log = _pool_created(ingestor, abi, block=70)
    log["removed"] = True
    asyncio.run(ingestor._handle_ws_log(log))
    assert store.count(E.EVENT) == 0


def test_multi_chain_indexer_config(store):
    with pytest.raises(ValueError):
        MultiChainIndexer({"networks": []}, store=store)
    with pytest.raises(ValueError):
        MultiChainIndexer(
            {"networks": [{"chain_id": CHAIN_ID}, {"chain_id": CHAIN_ID}]}, store=store
        )

    indexer = MultiChainIndexer(
        {"networks": [{"chain_id": CHAIN_ID}, {"chain_id": 44787}]}, store=store
    )
    assert indexer.ingestor(44787).router is indexer.router
    assert indexer.ingestor(CHAIN_ID).lock is indexer.lock
    with pytest.raises(ValueError):
        indexer.ingestor(1)
