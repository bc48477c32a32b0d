from typing import Union

ID_SEPARATOR = "-"


def generate_id(*parts: Union[str, int]) -> str:
    """Join identifying fields into a stable entity key.

    Pool ids, round numbers and log indexes are decimal integers, addresses and
    transaction hashes are 0x-hex, so "-" never appears inside a component.
    """
    return ID_SEPARATOR.join(str(p) for p in parts)


def round_id(pool_id: Union[str, int], round_number: int) -> str:
    return generate_id(pool_id, round_number)


def player_pool_id(player: str, pool_id: Union[str, int]) -> str:
    return generate_id(player, pool_id)


def player_choice_id(player: str, pool_id: Union[str, int], round_number: int) -> str:
    return generate_id(player, pool_id, round_number)


def event_id(transaction_hash: str, log_index: int) -> str:
    return generate_id(transaction_hash, log_index)
