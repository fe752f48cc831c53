from __future__ import annotations

from typing import List, Sequence, TypeVar

T = TypeVar("T")


def chunk_accounts(accounts: Sequence[T], chunk_size: int) -> List[List[T]]:
    """Split ``accounts`` into order-preserving groups of at most ``chunk_size``."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [list(accounts[i : i + chunk_size]) for i in range(0, len(accounts), chunk_size)]
