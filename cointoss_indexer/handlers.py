"""CoinToss event handlers.

Each handler applies one decoded event to the entity store through a
``HandlerContext``. Handlers never write the audit record themselves; the
router does that after the handler returns, inside the same transaction.

Referenced entities that do not exist are reported and their update is
skipped. Lifecycle moves the pool state machine does not allow are applied
anyway (the chain is authoritative) and reported.
"""

from typing import Any, Callable, Dict, Optional

from . import entities as E
from .context import HandlerContext
from .identity import event_id, player_choice_id, player_pool_id, round_id
from .policy import apply_update
from .util import _json_default

Handler = Callable[[HandlerContext], None]


def _transition(ctx: HandlerContext, pool: Dict[str, Any], status: str) -> str:
    previous = pool["status"]
    if status not in E.POOL_TRANSITIONS.get(previous, set()):
        ctx.inconsistent(f"pool {pool['id']} moves {previous} -> {status}")
    pool["status"] = status
    return previous


def _touch(entity: Dict[str, Any], timestamp: int) -> None:
    entity["last_active_at"] = timestamp


def handle_pool_created(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    creator_addr = ctx.addr_param("creator")
    ts = ctx.timestamp

    ctx.refer(pool=pool_id, creator=creator_addr)
    if ctx.store.exists(E.POOL, pool_id):
        ctx.inconsistent(f"pool {pool_id} created twice; keeping the existing pool")
        return

    creator, _ = ctx.store.get_or_create(
        E.CREATOR, creator_addr, lambda: E.new_creator(creator_addr, ctx.chain_id, ts)
    )
    apply_update(E.CREATOR, creator, "total_pools_created", 1)
    _touch(creator, ts)
    ctx.store.set(E.CREATOR, creator)

    pool = E.new_pool(
        pool_id,
        creator_addr,
        ctx.int_param("entryFee"),
        ctx.int_param("maxPlayers"),
        ctx.chain_id,
        ts,
        ctx.block_number,
    )
    ctx.store.set(E.POOL, pool)
    ctx.stats.apply(ctx.chain_id, ts, total_pools_created=1)


def handle_player_joined(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    player_addr = ctx.addr_param("player")
    current_players = ctx.int_param("currentPlayers")
    ts = ctx.timestamp

    player, _ = ctx.store.get_or_create(E.PLAYER, player_addr, lambda: E.new_player(player_addr, ts))
    first_join = player["total_pools_joined"] == 0

    join_id = player_pool_id(player_addr, pool_id)
    new_join = not ctx.store.exists(E.PLAYER_POOL, join_id)
    if not new_join:
        ctx.inconsistent(f"player {player_addr} already joined pool {pool_id}")

    if new_join:
        apply_update(E.PLAYER, player, "total_pools_joined", 1)
    _touch(player, ts)

    pool = ctx.store.get(E.POOL, pool_id)
    if pool is None:
        ctx.missing(E.POOL, pool_id)
    else:
        if pool["status"] != E.PoolStatus.OPENED:
            ctx.inconsistent(f"player joined pool {pool_id} in status {pool['status']}")
        if current_players > pool["max_players"]:
            ctx.inconsistent(
                f"pool {pool_id} reports {current_players} players, cap is {pool['max_players']}"
            )
        apply_update(E.POOL, pool, "current_players", current_players)
        apply_update(E.POOL, pool, "prize_pool", pool["entry_fee"] * current_players)
        ctx.store.set(E.POOL, pool)

        if new_join:
            ctx.store.set(
                E.PLAYER_POOL,
                E.new_player_pool(
                    join_id,
                    player_addr,
                    pool_id,
                    pool["entry_fee"],
                    ctx.chain_id,
                    ts,
                    ctx.block_number,
                ),
            )
            apply_update(E.PLAYER, player, "total_spent", pool["entry_fee"])

    ctx.store.set(E.PLAYER, player)

    ctx.refer(pool=pool_id, player=player_addr)
    if new_join:
        ctx.stats.apply(
            ctx.chain_id,
            ts,
            total_player_joins=1,
            total_players=1 if first_join else 0,
        )


def handle_pool_activated(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    prize_pool = ctx.int_param("prizePool")
    ts = ctx.timestamp
    newly_active = False

    pool = ctx.store.get(E.POOL, pool_id)
    if pool is None:
        ctx.missing(E.POOL, pool_id)
    else:
        previous = _transition(ctx, pool, E.PoolStatus.ACTIVE)
        newly_active = previous != E.PoolStatus.ACTIVE
        pool["activated_at"] = ts
        pool["activated_at_block"] = ctx.block_number
        total_players = ctx.params.get("totalPlayers")
        if total_players is not None:
            apply_update(E.POOL, pool, "current_players", ctx.int_param("totalPlayers"))
        apply_update(E.POOL, pool, "prize_pool", prize_pool)
        apply_update(E.POOL, pool, "current_round", 1)
        ctx.store.set(E.POOL, pool)
        ctx.refer(creator=pool["creator"])

    # a repeated activation notice is not new volume; unknown pools still count it
    counted = newly_active or pool is None
    ctx.refer(pool=pool_id)
    ctx.stats.apply(
        ctx.chain_id,
        ts,
        total_pools_active=1 if newly_active else 0,
        total_volume_processed=prize_pool if counted else 0,
    )


def handle_player_made_choice(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    player_addr = ctx.addr_param("player")
    round_number = ctx.int_param("round")
    code = ctx.int_param("choice")
    ts = ctx.timestamp
    ctx.refer(pool=pool_id, player=player_addr)

    player = ctx.store.get(E.PLAYER, player_addr)
    if player is None:
        ctx.missing(E.PLAYER, player_addr)
    else:
        _touch(player, ts)
        ctx.store.set(E.PLAYER, player)

    if not ctx.store.exists(E.POOL, pool_id):
        ctx.missing(E.POOL, pool_id)

    choice = E.CHOICE_BY_CODE.get(code)
    if choice is None:
        ctx.inconsistent(f"choice code {code} from {player_addr} is not HEADS or TAILS")
        return

    rid = round_id(pool_id, round_number)
    game_round, _ = ctx.store.get_or_create(
        E.GAME_ROUND, rid, lambda: E.new_game_round(rid, pool_id, round_number, ctx.chain_id)
    )
    attempt = game_round["repeat_count"]

    # a choice left over from before a RoundRepeated is replaced, not duplicated
    choice_id = player_choice_id(player_addr, pool_id, round_number)
    previous = ctx.store.get(E.PLAYER_CHOICE, choice_id)
    if previous is not None and previous.get("attempt", 0) >= attempt:
        ctx.inconsistent(f"second choice by {player_addr} in pool {pool_id} round {round_number}")
        return

    counter = "heads_count" if choice == E.ChoiceType.HEADS else "tails_count"
    apply_update(E.GAME_ROUND, game_round, counter, 1)
    ctx.store.set(E.GAME_ROUND, game_round)

    ctx.store.set(
        E.PLAYER_CHOICE,
        {
            "id": choice_id,
            "player": player_addr,
            "pool": pool_id,
            "round": rid,
            "round_number": round_number,
            "attempt": attempt,
            "choice": choice,
            "was_winning_choice": False,
            "made_at": ts,
            "made_at_block": ctx.block_number,
            "chain_id": ctx.chain_id,
        },
    )


def _eliminate(ctx: HandlerContext, player_addr: str, pool_id: str, round_number: int) -> None:
    join = ctx.store.get(E.PLAYER_POOL, player_pool_id(player_addr, pool_id))
    if join is None:
        ctx.missing(E.PLAYER_POOL, player_pool_id(player_addr, pool_id))
        return
    if join["is_eliminated"]:
        return
    join["is_eliminated"] = True
    join["eliminated_in_round"] = round_number
    ctx.store.set(E.PLAYER_POOL, join)

    player = ctx.store.get(E.PLAYER, player_addr)
    if player is None:
        ctx.missing(E.PLAYER, player_addr)
        return
    apply_update(E.PLAYER, player, "total_pools_eliminated", 1)
    ctx.store.set(E.PLAYER, player)


def handle_round_resolved(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    round_number = ctx.int_param("round")
    code = ctx.int_param("winningChoice")
    ts = ctx.timestamp
    ctx.refer(pool=pool_id)

    winning = E.CHOICE_BY_CODE.get(code)
    if winning is None:
        ctx.inconsistent(f"winning choice code {code} for pool {pool_id} round {round_number}")

    rid = round_id(pool_id, round_number)
    game_round, _ = ctx.store.get_or_create(
        E.GAME_ROUND, rid, lambda: E.new_game_round(rid, pool_id, round_number, ctx.chain_id)
    )
    game_round["winning_choice"] = winning
    apply_update(E.GAME_ROUND, game_round, "eliminated_count", ctx.int_param("eliminatedCount"))
    apply_update(E.GAME_ROUND, game_round, "remaining_count", ctx.int_param("remainingCount"))
    game_round["resolved_at"] = ts
    game_round["resolved_at_block"] = ctx.block_number
    ctx.store.set(E.GAME_ROUND, game_round)

    pool = ctx.store.get(E.POOL, pool_id)
    if pool is None:
        ctx.missing(E.POOL, pool_id)
    else:
        if pool["status"] != E.PoolStatus.ACTIVE:
            ctx.inconsistent(f"round resolved for pool {pool_id} in status {pool['status']}")
        apply_update(E.POOL, pool, "current_round", round_number + 1)
        ctx.store.set(E.POOL, pool)

    if winning is None:
        return
    for choice in ctx.store.find(E.PLAYER_CHOICE, round=rid):
        current = choice.get("attempt", 0) == game_round["repeat_count"]
        if not current:
            # superseded by a repeat and never re-made
            if choice["was_winning_choice"]:
                choice["was_winning_choice"] = False
                ctx.store.set(E.PLAYER_CHOICE, choice)
            continue
        won = choice["choice"] == winning
        if choice["was_winning_choice"] != won:
            choice["was_winning_choice"] = won
            ctx.store.set(E.PLAYER_CHOICE, choice)
        if not won:
            _eliminate(ctx, choice["player"], pool_id, round_number)


def handle_round_repeated(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    round_number = ctx.int_param("round")
    ctx.refer(pool=pool_id)

    rid = round_id(pool_id, round_number)
    game_round, _ = ctx.store.get_or_create(
        E.GAME_ROUND, rid, lambda: E.new_game_round(rid, pool_id, round_number, ctx.chain_id)
    )
    # the round is replayed under the same number; earlier picks stop counting
    apply_update(E.GAME_ROUND, game_round, "heads_count", -game_round["heads_count"])
    apply_update(E.GAME_ROUND, game_round, "tails_count", -game_round["tails_count"])
    apply_update(E.GAME_ROUND, game_round, "repeat_count", 1)
    ctx.store.set(E.GAME_ROUND, game_round)


def handle_game_completed(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    winner_addr = ctx.addr_param("winner")
    prize = ctx.int_param("prizeAmount")
    ts = ctx.timestamp
    was_active = False
    ctx.refer(pool=pool_id, player=winner_addr)

    pool = ctx.store.get(E.POOL, pool_id)
    if pool is not None and pool["status"] == E.PoolStatus.COMPLETED:
        ctx.refer(creator=pool["creator"])
        ctx.inconsistent(f"pool {pool_id} already completed; keeping the first completion")
        return

    if pool is None:
        ctx.missing(E.POOL, pool_id)
    else:
        previous = _transition(ctx, pool, E.PoolStatus.COMPLETED)
        was_active = previous == E.PoolStatus.ACTIVE
        pool["winner"] = winner_addr
        apply_update(E.POOL, pool, "prize_amount", prize)
        pool["completed_at"] = ts
        pool["completed_at_block"] = ctx.block_number
        ctx.store.set(E.POOL, pool)
        ctx.refer(creator=pool["creator"])

        creator = ctx.store.get(E.CREATOR, pool["creator"])
        if creator is None:
            ctx.missing(E.CREATOR, pool["creator"])
        else:
            apply_update(E.CREATOR, creator, "completed_pools", 1)
            _touch(creator, ts)
            ctx.store.set(E.CREATOR, creator)

    player = ctx.store.get(E.PLAYER, winner_addr)
    if player is None:
        ctx.missing(E.PLAYER, winner_addr)
    else:
        apply_update(E.PLAYER, player, "total_pools_won", 1)
        apply_update(E.PLAYER, player, "total_earnings", prize)
        _touch(player, ts)
        ctx.store.set(E.PLAYER, player)

        join_id = player_pool_id(winner_addr, pool_id)
        join = ctx.store.get(E.PLAYER_POOL, join_id)
        if join is None:
            ctx.missing(E.PLAYER_POOL, join_id)
        else:
            join["has_won"] = True
            join["prize_amount"] = prize
            join["prize_claimed"] = True
            ctx.store.set(E.PLAYER_POOL, join)

    ctx.stats.apply(
        ctx.chain_id,
        ts,
        total_pools_completed=0 if pool is None else 1,
        total_pools_active=-1 if was_active else 0,
        total_prizes_awarded=prize,
    )


def handle_pool_abandoned(ctx: HandlerContext) -> None:
    pool_id = ctx.pool_id()
    ts = ctx.timestamp
    creator_addr = ctx.addr_param("creator", required=False)
    newly_abandoned = False
    was_active = False

    pool = ctx.store.get(E.POOL, pool_id)
    if pool is None:
        ctx.missing(E.POOL, pool_id)
    else:
        previous = _transition(ctx, pool, E.PoolStatus.ABANDONED)
        newly_abandoned = previous != E.PoolStatus.ABANDONED
        was_active = previous == E.PoolStatus.ACTIVE
        pool["completed_at"] = ts
        pool["completed_at_block"] = ctx.block_number
        ctx.store.set(E.POOL, pool)
        creator_addr = pool["creator"]

        for join in ctx.store.find(E.PLAYER_POOL, pool=pool_id):
            if not join["refunded"]:
                join["refunded"] = True
                ctx.store.set(E.PLAYER_POOL, join)

    if creator_addr is not None:
        creator = ctx.store.get(E.CREATOR, creator_addr)
        if creator is None:
            ctx.missing(E.CREATOR, creator_addr)
        else:
            if newly_abandoned:
                apply_update(E.CREATOR, creator, "abandoned_pools", 1)
            _touch(creator, ts)
            ctx.store.set(E.CREATOR, creator)

    ctx.refer(pool=pool_id, creator=creator_addr)
    ctx.stats.apply(
        ctx.chain_id,
        ts,
        total_pools_abandoned=1 if newly_abandoned else 0,
        total_pools_active=-1 if was_active else 0,
    )


def _stake_event(
    ctx: HandlerContext,
    creator_addr: str,
    stake_type: str,
    amount: int,
    pools_eligible: int,
    penalty: Optional[int] = None,
) -> Dict[str, Any]:
    return {
        "id": event_id(ctx.event.transaction_hash, ctx.event.log_index),
        "creator": creator_addr,
        "stake_type": stake_type,
        "amount": amount,
        "penalty": penalty,
        "pools_eligible": pools_eligible,
        "timestamp": ctx.timestamp,
        "block_number": ctx.block_number,
        "log_index": ctx.event.log_index,
        "transaction_hash": ctx.event.transaction_hash,
        "chain_id": ctx.chain_id,
    }


def handle_stake_deposited(ctx: HandlerContext) -> None:
    creator_addr = ctx.addr_param("creator")
    amount = ctx.int_param("amount")
    pools_eligible = ctx.int_param("poolsEligible")
    ts = ctx.timestamp

    creator, _ = ctx.store.get_or_create(
        E.CREATOR, creator_addr, lambda: E.new_creator(creator_addr, ctx.chain_id, ts)
    )
    apply_update(E.CREATOR, creator, "total_staked", amount)
    apply_update(E.CREATOR, creator, "total_pools_eligible", pools_eligible)
    _touch(creator, ts)
    ctx.store.set(E.CREATOR, creator)

    ctx.store.set(
        E.STAKE_EVENT, _stake_event(ctx, creator_addr, E.StakeType.DEPOSIT, amount, pools_eligible)
    )
    ctx.refer(creator=creator_addr)
    ctx.stats.apply(ctx.chain_id, ts, total_staked=amount)


def handle_stake_withdrawn(ctx: HandlerContext) -> None:
    creator_addr = ctx.addr_param("creator")
    amount = ctx.int_param("amount")
    penalty = ctx.int_param("penalty", default=0)
    ts = ctx.timestamp
    withdrawn = amount

    creator = ctx.store.get(E.CREATOR, creator_addr)
    if creator is None:
        ctx.missing(E.CREATOR, creator_addr)
    else:
        withdrawn = -apply_update(E.CREATOR, creator, "total_staked", -amount)
        if withdrawn != amount:
            ctx.inconsistent(
                f"creator {creator_addr} withdrew {amount} with only {withdrawn} staked"
            )
        apply_update(E.CREATOR, creator, "total_pools_eligible", 0)
        _touch(creator, ts)
        ctx.store.set(E.CREATOR, creator)

    ctx.store.set(
        E.STAKE_EVENT, _stake_event(ctx, creator_addr, E.StakeType.WITHDRAW, amount, 0, penalty)
    )
    ctx.refer(creator=creator_addr)
    ctx.stats.apply(ctx.chain_id, ts, total_staked=-withdrawn)


def handle_creator_reward_claimed(ctx: HandlerContext) -> None:
    creator_addr = ctx.addr_param("creator")
    amount = ctx.int_param("amount")
    ts = ctx.timestamp

    creator = ctx.store.get(E.CREATOR, creator_addr)
    if creator is None:
        ctx.missing(E.CREATOR, creator_addr)
    else:
        apply_update(E.CREATOR, creator, "total_earned", amount)
        _touch(creator, ts)
        ctx.store.set(E.CREATOR, creator)

    ctx.refer(creator=creator_addr)
    ctx.stats.apply(ctx.chain_id, ts, total_creator_rewards=amount)


def handle_creator_verified(ctx: HandlerContext) -> None:
    creator_addr = ctx.addr_param("creator")
    ctx.refer(creator=creator_addr)

    creator = ctx.store.get(E.CREATOR, creator_addr)
    if creator is None:
        ctx.missing(E.CREATOR, creator_addr)
        return
    attestation = ctx.params.get("attestationId")
    if isinstance(attestation, (bytes, bytearray)):
        attestation = _json_default(attestation)
    creator["is_verified"] = True
    creator["verified_at"] = ctx.timestamp
    creator["attestation_id"] = None if attestation is None else str(attestation)
    _touch(creator, ctx.timestamp)
    ctx.store.set(E.CREATOR, creator)


def handle_verification_bonus_applied(ctx: HandlerContext) -> None:
    creator_addr = ctx.addr_param("creator")
    ctx.refer(creator=creator_addr)

    creator = ctx.store.get(E.CREATOR, creator_addr)
    if creator is None:
        ctx.missing(E.CREATOR, creator_addr)
        return
    apply_update(E.CREATOR, creator, "verification_bonus_pools", ctx.int_param("bonusPools"))
    _touch(creator, ctx.timestamp)
    ctx.store.set(E.CREATOR, creator)


def handle_project_pool_updated(ctx: HandlerContext) -> None:
    total = ctx.int_param("totalProjectPool", "newTotal")
    ctx.stats.apply(ctx.chain_id, ctx.timestamp, total_project_pool=total)


def handle_audit_only(ctx: HandlerContext) -> None:
    """Events kept in the audit log without touching any projection."""


HANDLERS: Dict[str, Handler] = {
    "PoolCreated": handle_pool_created,
    "PlayerJoined": handle_player_joined,
    "PoolActivated": handle_pool_activated,
    "PlayerMadeChoice": handle_player_made_choice,
    "RoundResolved": handle_round_resolved,
    "RoundRepeated": handle_round_repeated,
    "GameCompleted": handle_game_completed,
    "PoolAbandoned": handle_pool_abandoned,
    "StakeDeposited": handle_stake_deposited,
    "StakeWithdrawn": handle_stake_withdrawn,
    "CreatorRewardClaimed": handle_creator_reward_claimed,
    "CreatorVerified": handle_creator_verified,
    "VerificationBonusApplied": handle_verification_bonus_applied,
    "ProjectPoolUpdated": handle_project_pool_updated,
    "ScopeUpdated": handle_audit_only,
    "OwnershipTransferred": handle_audit_only,
}
