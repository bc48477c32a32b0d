"""Entity type names, enumerations and creation defaults.

Every entity is a plain dict keyed by snake_case field names. The factories
below are the only place new entities get their initial values, so handlers
never build partial records by hand.
"""

from typing import Any, Dict, Optional

POOL = "Pool"
CREATOR = "Creator"
PLAYER = "Player"
PLAYER_POOL = "PlayerPool"
GAME_ROUND = "GameRound"
PLAYER_CHOICE = "PlayerChoice"
STAKE_EVENT = "StakeEvent"
EVENT = "Event"
SYSTEM_STATS = "SystemStats"
NETWORK_STATS = "NetworkStats"

ENTITY_TYPES = (
    POOL,
    CREATOR,
    PLAYER,
    PLAYER_POOL,
    GAME_ROUND,
    PLAYER_CHOICE,
    STAKE_EVENT,
    EVENT,
    SYSTEM_STATS,
    NETWORK_STATS,
)

SYSTEM_STATS_ID = "system"


class PoolStatus:
    OPENED = "OPENED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


# Allowed lifecycle moves; anything else is applied but reported.
POOL_TRANSITIONS = {
    PoolStatus.OPENED: {PoolStatus.ACTIVE, PoolStatus.ABANDONED},
    PoolStatus.ACTIVE: {PoolStatus.COMPLETED},
    PoolStatus.COMPLETED: set(),
    PoolStatus.ABANDONED: set(),
}


class ChoiceType:
    HEADS = "HEADS"
    TAILS = "TAILS"


# Contract enum PlayerChoice { NONE, HEADS, TAILS }
CHOICE_BY_CODE = {1: ChoiceType.HEADS, 2: ChoiceType.TAILS}


class StakeType:
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


UNMAPPED_EVENT_TYPE = "UNMAPPED"

EVENT_TYPES = {
    "PoolCreated": "POOL_CREATED",
    "PlayerJoined": "PLAYER_JOINED",
    "PoolActivated": "POOL_ACTIVATED",
    "PoolAbandoned": "POOL_ABANDONED",
    "GameCompleted": "GAME_COMPLETED",
    "PlayerMadeChoice": "PLAYER_MADE_CHOICE",
    "RoundResolved": "ROUND_RESOLVED",
    "RoundRepeated": "ROUND_REPEATED",
    "StakeDeposited": "STAKE_DEPOSITED",
    "StakeWithdrawn": "STAKE_WITHDRAWN",
    "CreatorRewardClaimed": "CREATOR_REWARD_CLAIMED",
    "CreatorVerified": "CREATOR_VERIFIED",
    "VerificationBonusApplied": "VERIFICATION_BONUS_APPLIED",
    "ProjectPoolUpdated": "PROJECT_POOL_UPDATED",
    "ScopeUpdated": "SCOPE_UPDATED",
    "OwnershipTransferred": "OWNERSHIP_TRANSFERRED",
}

STAT_COUNTERS = (
    "total_pools_created",
    "total_pools_active",
    "total_pools_completed",
    "total_pools_abandoned",
    "total_players",
    "total_player_joins",
    "total_volume_processed",
    "total_prizes_awarded",
    "total_creator_rewards",
    "total_staked",
    "total_project_pool",
)


def new_creator(address: str, chain_id: int, timestamp: int) -> Dict[str, Any]:
    return {
        "id": address,
        "address": address,
        "total_staked": 0,
        "total_earned": 0,
        "total_pools_eligible": 0,
        "total_pools_created": 0,
        "is_verified": False,
        "verified_at": None,
        "attestation_id": None,
        "verification_bonus_pools": 0,
        "completed_pools": 0,
        "abandoned_pools": 0,
        "first_staked_at": timestamp,
        "last_active_at": timestamp,
        "chain_id": chain_id,
    }


def new_player(address: str, timestamp: int) -> Dict[str, Any]:
    return {
        "id": address,
        "address": address,
        "total_pools_joined": 0,
        "total_pools_won": 0,
        "total_pools_eliminated": 0,
        "total_earnings": 0,
        "total_spent": 0,
        "first_joined_at": timestamp,
        "last_active_at": timestamp,
    }


def new_pool(
    pool_id: str,
    creator: str,
    entry_fee: int,
    max_players: int,
    chain_id: int,
    timestamp: int,
    block_number: int,
) -> Dict[str, Any]:
    return {
        "id": pool_id,
        "creator": creator,
        "status": PoolStatus.OPENED,
        "entry_fee": entry_fee,
        "max_players": max_players,
        "current_players": 0,
        "prize_pool": 0,
        "current_round": 0,
        "winner": None,
        "prize_amount": None,
        "created_at": timestamp,
        "created_at_block": block_number,
        "activated_at": None,
        "activated_at_block": None,
        "completed_at": None,
        "completed_at_block": None,
        "chain_id": chain_id,
    }


def new_player_pool(
    entity_id: str,
    player: str,
    pool_id: str,
    entry_fee: int,
    chain_id: int,
    timestamp: int,
    block_number: int,
) -> Dict[str, Any]:
    return {
        "id": entity_id,
        "player": player,
        "pool": pool_id,
        "is_eliminated": False,
        "eliminated_in_round": None,
        "has_won": False,
        "joined_at": timestamp,
        "joined_at_block": block_number,
        "entry_fee_paid": entry_fee,
        "prize_claimed": False,
        "prize_amount": None,
        "refunded": False,
        "chain_id": chain_id,
    }


def new_game_round(entity_id: str, pool_id: str, round_number: int, chain_id: int) -> Dict[str, Any]:
    return {
        "id": entity_id,
        "pool": pool_id,
        "round_number": round_number,
        "winning_choice": None,
        "eliminated_count": 0,
        "remaining_count": 0,
        "resolved_at": None,
        "resolved_at_block": None,
        "heads_count": 0,
        "tails_count": 0,
        "repeat_count": 0,
        "chain_id": chain_id,
    }


def new_stats(entity_id: str, timestamp: int, chain_id: Optional[int] = None) -> Dict[str, Any]:
    stats: Dict[str, Any] = {"id": entity_id}
    for counter in STAT_COUNTERS:
        stats[counter] = 0
    stats["last_updated_at"] = timestamp
    if chain_id is not None:
        stats["chain_id"] = chain_id
    return stats
