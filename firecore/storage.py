"""Lookup of the last merged blocks file present in a store."""

from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

_SEARCH_END = 10_000_000_000
_SEARCH_INTERVAL = 1_000_000_000
_FINEST_INTERVAL = 100


def block_num_iter(
    start_block_num: int,
    exclusive_end_block_num: int,
    interval: int,
    predicate: Callable[[int], bool],
) -> int:
    """Walk down from the end by ``interval`` and refine around the first match."""
    current = exclusive_end_block_num
    while current >= start_block_num and current >= interval:
        current -= interval
        try:
            matched = predicate(current)
        except Exception as err:
            err.add_note(f"failed to match block num {current}")
            raise
        if matched:
            if interval == _FINEST_INTERVAL:
                return current
            return block_num_iter(current, current + interval, interval // 10, predicate)
    return start_block_num


def search_block_num(start_block_num: int, predicate: Callable[[int], bool]) -> int:
    """Return the highest block (multiple of 100) accepted by ``predicate``, never below the start."""
    block_num = block_num_iter(start_block_num, _SEARCH_END, _SEARCH_INTERVAL, predicate)
    return max(block_num, start_block_num)


def last_merged_block_num(start_block_num: int, file_exists: Callable[[str], bool]) -> int:
    """Find the last merged blocks file; fall back to the start block on failure."""
    try:
        return search_block_num(start_block_num, lambda num: file_exists(f"{num:010d}"))
    except Exception as err:
        logger.warning("failed to resolve block: %s", err)
        return start_block_num