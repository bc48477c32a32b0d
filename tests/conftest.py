"""
Shared fixtures for the CoinToss indexer tests
"""

import pytest

from cointoss_indexer.context import ChainEvent
from cointoss_indexer.router import EventRouter
from cointoss_indexer.store import EntityStore

CHAIN_ID = 42220
OTHER_CHAIN_ID = 44787

CREATOR = "0x" + "a" * 40
PLAYER_B = "0x" + "b" * 40
PLAYER_C = "0x" + "c" * 40
PLAYER_D = "0x" + "d" * 40

ONE_ETHER = 10**18
HEADS = 1
TAILS = 2


def tx_hash(block_number: int, log_index: int, chain_id: int = CHAIN_ID) -> str:
    return "0x" + f"{chain_id:016x}{block_number:024x}{log_index:024x}"


class EventFactory:
    """Builds ChainEvents with increasing (block, log index) positions per chain."""

    def __init__(self):
        self._positions = {}

    def __call__(self, name, chain_id=CHAIN_ID, block=None, log_index=None, **params):
        last_block, last_log = self._positions.get(chain_id, (100, -1))
        if block is None:
            block = last_block
        if log_index is None:
            log_index = last_log + 1 if block == last_block else 0
        self._positions[chain_id] = (block, log_index)
        return ChainEvent(
            name=name,
            params=params,
            block_number=block,
            block_timestamp=1_700_000_000 + block * 5,
            transaction_hash=tx_hash(block, log_index, chain_id),
            log_index=log_index,
            chain_id=chain_id,
        )


@pytest.fixture
def store():
    """
    In-memory entity store
    """
    s = EntityStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def router(store):
    return EventRouter(store)


@pytest.fixture
def make_event():
    return EventFactory()


@pytest.fixture
def game_events(make_event):
    """
    A full pool lifecycle: created, three joins, activation, one round, completion
    """
    return [
        make_event("StakeDeposited", creator=CREATOR, amount=10 * ONE_ETHER, poolsEligible=5),
        make_event("PoolCreated", poolId=1, creator=CREATOR, entryFee=ONE_ETHER, maxPlayers=3),
        make_event("PlayerJoined", poolId=1, player=PLAYER_B, currentPlayers=1, maxPlayers=3),
        make_event("PlayerJoined", poolId=1, player=PLAYER_C, currentPlayers=2, maxPlayers=3),
        make_event("PlayerJoined", poolId=1, player=PLAYER_D, currentPlayers=3, maxPlayers=3),
        make_event("PoolActivated", block=101, poolId=1, totalPlayers=3, prizePool=3 * ONE_ETHER),
        make_event("PlayerMadeChoice", block=102, poolId=1, player=PLAYER_B, choice=HEADS, round=1),
        make_event("PlayerMadeChoice", poolId=1, player=PLAYER_C, choice=TAILS, round=1),
        make_event("PlayerMadeChoice", poolId=1, player=PLAYER_D, choice=TAILS, round=1),
        make_event(
            "RoundResolved",
            block=103,
            poolId=1,
            round=1,
            winningChoice=HEADS,
            eliminatedCount=2,
            remainingCount=1,
        ),
        make_event("GameCompleted", poolId=1, winner=PLAYER_B, prizeAmount=2_850_000_000_000_000_000),
        make_event("CreatorRewardClaimed", block=104, creator=CREATOR, amount=150_000_000_000_000_000),
    ]
