import math

import pytest

from billing_recon.services.chunking import chunk_accounts


@pytest.mark.parametrize("n,size", [(0, 3), (1, 3), (7, 3), (9, 3), (35, 16), (5, 1)])
def test_chunks_cover_input_in_order(n, size):
    accounts = [f"acct-{i}" for i in range(n)]
    parts = chunk_accounts(accounts, size)

    assert len(parts) == math.ceil(n / size)
    assert all(1 <= len(p) <= size for p in parts)
    assert [a for p in parts for a in p] == accounts


def test_only_last_chunk_is_short():
    parts = chunk_accounts(list(range(10)), 4)
    assert [len(p) for p in parts] == [4, 4, 2]


@pytest.mark.parametrize("size", [0, -1])
def test_rejects_non_positive_chunk_size(size):
    with pytest.raises(ValueError):
        chunk_accounts(["a"], size)
