"""Per-field update policy.

Numeric fields are either payload-authoritative (REPLACE: the event carries
the new value and replaying it converges) or running totals (ACCUMULATE:
the event carries a delta, so replays must be stopped by the audit-log
check before they get here). Handlers route every numeric write through
``apply_update`` so the policy of each field is stated once, here.
"""

from typing import Any, Dict, Optional

from . import entities as E
from .util import _log

REPLACE = "replace"
ACCUMULATE = "accumulate"

FIELD_POLICIES: Dict[str, Dict[str, str]] = {
    E.POOL: {
        "current_players": REPLACE,
        "prize_pool": REPLACE,
        "current_round": REPLACE,
        "prize_amount": REPLACE,
    },
    E.CREATOR: {
        "total_staked": ACCUMULATE,
        "total_earned": ACCUMULATE,
        "total_pools_eligible": REPLACE,
        "total_pools_created": ACCUMULATE,
        "verification_bonus_pools": REPLACE,
        "completed_pools": ACCUMULATE,
        "abandoned_pools": ACCUMULATE,
    },
    E.PLAYER: {
        "total_pools_joined": ACCUMULATE,
        "total_pools_won": ACCUMULATE,
        "total_pools_eliminated": ACCUMULATE,
        "total_earnings": ACCUMULATE,
        "total_spent": ACCUMULATE,
    },
    E.GAME_ROUND: {
        "heads_count": ACCUMULATE,
        "tails_count": ACCUMULATE,
        "repeat_count": ACCUMULATE,
        "eliminated_count": REPLACE,
        "remaining_count": REPLACE,
    },
    E.SYSTEM_STATS: {
        "total_pools_created": ACCUMULATE,
        "total_pools_active": ACCUMULATE,
        "total_pools_completed": ACCUMULATE,
        "total_pools_abandoned": ACCUMULATE,
        "total_players": ACCUMULATE,
        "total_player_joins": ACCUMULATE,
        "total_volume_processed": ACCUMULATE,
        "total_prizes_awarded": ACCUMULATE,
        "total_creator_rewards": ACCUMULATE,
        "total_staked": ACCUMULATE,
        "total_project_pool": REPLACE,
    },
}
FIELD_POLICIES[E.NETWORK_STATS] = dict(FIELD_POLICIES[E.SYSTEM_STATS])

# Fields that may never be driven below zero by an ACCUMULATE delta.
NON_NEGATIVE = {
    (E.CREATOR, "total_staked"),
    (E.SYSTEM_STATS, "total_pools_active"),
    (E.SYSTEM_STATS, "total_staked"),
    (E.NETWORK_STATS, "total_pools_active"),
    (E.NETWORK_STATS, "total_staked"),
}


def policy_for(entity_type: str, field: str) -> str:
    try:
        return FIELD_POLICIES[entity_type][field]
    except KeyError:
        raise KeyError(f"no update policy for {entity_type}.{field}") from None


def apply_update(
    entity_type: str,
    entity: Dict[str, Any],
    field: str,
    value: Optional[int],
) -> int:
    """Apply ``value`` to ``entity[field]`` under the field's policy.

    Returns the signed change actually made to the field, after any clamp.
    """
    old = entity.get(field) or 0
    if policy_for(entity_type, field) == REPLACE:
        new = value or 0
    else:
        new = old + (value or 0)
        if new < 0 and (entity_type, field) in NON_NEGATIVE:
            _log(
                f"WARN: {entity_type}[{entity.get('id')}].{field} would drop to {new}; clamping to 0"
            )
            new = 0
    entity[field] = new
    return new - old
