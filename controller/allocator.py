"""
Runner Pool - VM Id Allocator

First-gap allocation: the smallest vmid in [min_id, max_id] that is neither
an observed member nor reserved earlier in the same pass.
"""

from __future__ import annotations

from typing import Iterable

from core.errors import AllocationExhausted


def allocate_vmid(taken: Iterable[int], min_id: int, max_id: int) -> int:
    """
    Return the lowest free vmid in range.

    Raises:
        AllocationExhausted: every id in [min_id, max_id] is taken
    """
    used = set(taken)
    for vmid in range(min_id, max_id + 1):
        if vmid not in used:
            return vmid
    raise AllocationExhausted(min_id, max_id)
