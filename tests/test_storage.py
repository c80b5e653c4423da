import pytest

from firecore.storage import block_num_iter, last_merged_block_num, search_block_num


def _upto(last):
    if last is None:
        return lambda num: False
    return lambda num: num <= last


@pytest.mark.parametrize(
    "start, last, expected",
    [
        (1_690_600, 208_853_300, 208_853_300),  # golden path
        (1_690_600, None, 1_690_600),  # no block file found
        (0, 100, 100),  # block file greater than start block
        (200, 100, 200),  # block file less than start block
        (0, 17821900, 17821900),  # golden path 2
    ],
)
def test_search_block_num(start, last, expected):
    assert search_block_num(start, _upto(last)) == expected


def test_search_block_num_propagates_predicate_error():
    def failing(num):
        raise OSError("store unreachable")

    with pytest.raises(OSError, match="store unreachable"):
        search_block_num(1_690_600, failing)


def test_block_num_iter_returns_start_when_nothing_matches():
    assert block_num_iter(500, 1_000, 100, lambda num: False) == 500


def test_last_merged_block_num_uses_padded_names():
    seen = []

    def exists(name):
        seen.append(name)
        return int(name) <= 17821900

    assert last_merged_block_num(0, exists) == 17821900
    assert seen
    assert all(len(name) == 10 and name.isdigit() for name in seen)


def test_last_merged_block_num_falls_back_on_error():
    def exists(name):
        raise OSError("boom")

    assert last_merged_block_num(1_690_600, exists) == 1_690_600