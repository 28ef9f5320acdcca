import pytest

from vgpushare.corealloc import (
    add_core_usage,
    alloc_core_usage,
    byte_alloc,
    init_core_usage,
)


def test_init():
    assert init_core_usage(60) == "000000000000000"


def test_init_non_multiple_of_four():
    assert init_core_usage(7) == "0"


def test_add_core_usage():
    start = init_core_usage(60)
    first = "abcde000ad00012"
    res = add_core_usage(start, first)
    assert res == first
    res = add_core_usage(res, "50200fff4000000")
    assert res == "fbedefffed00012"


def test_add_core_usage_shorter_mask_fails():
    with pytest.raises(ValueError):
        add_core_usage("0000", "00")


def test_alloc_core_usage():
    assert alloc_core_usage("50200fff4000000", 16) == "afdfe0000000000"


def test_alloc_core_usage_avoids_used_units():
    used = "abcde000ad00012"
    res = alloc_core_usage(used, 32)
    assert len(res) == len(used)
    assert int(res, 16) & int(used, 16) == 0
    assert bin(int(res, 16)).count("1") == 32


def test_byte_alloc_zero_request():
    assert byte_alloc(5, 0) == (0, 0)


def test_byte_alloc_partial():
    assert byte_alloc(0, 2) == (12, 0)
    assert byte_alloc(15, 3) == (0, 3)
    assert byte_alloc(5, 4) == (10, 2)