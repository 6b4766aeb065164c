import pytest

from preexec.address_map import AddressMap
from preexec.errors import InternalConsistencyError


def test_lookup_returns_containing_region():
    amap = AddressMap()
    first = amap.map(0x1000, 16, "a")
    second = amap.map(0x1100, 8, "b")
    assert amap.lookup(0x1000) is first
    assert amap.lookup(0x100F) is first
    assert amap.lookup(0x1104) is second
    assert amap.lookup(0x0FFF) is None
    assert amap.lookup(0x1050) is None


def test_one_past_the_end_belongs_to_region():
    amap = AddressMap()
    entry = amap.map(0x2000, 12, "obj")
    assert amap.resolve(0x200C) == (entry, 12)


def test_resolve_reports_offset():
    amap = AddressMap()
    entry = amap.map(0x3000, 32, "obj")
    assert amap.resolve(0x3014) == (entry, 0x14)
    assert amap.resolve(0x4000) is None


def test_overlapping_regions_rejected():
    amap = AddressMap()
    amap.map(0x1000, 16, "a")
    with pytest.raises(InternalConsistencyError):
        amap.map(0x1008, 16, "b")
    with pytest.raises(InternalConsistencyError):
        amap.map(0x0FF8, 16, "c")
    # Touching regions would make one-past-the-end pointers ambiguous.
    with pytest.raises(InternalConsistencyError):
        amap.map(0x1010, 4, "d")
    assert len(amap) == 1


def test_same_owner_cannot_be_mapped_twice():
    amap = AddressMap()
    owner = object()
    amap.map(0x1000, 4, owner)
    with pytest.raises(InternalConsistencyError):
        amap.map(0x2000, 4, owner)


def test_unmap_unknown_region_is_internal_error():
    amap = AddressMap()
    amap.map(0x1000, 4, "a")
    with pytest.raises(InternalConsistencyError):
        amap.unmap(0x1002)


def test_unmap_forgets_owner():
    amap = AddressMap()
    owner = object()
    amap.map(0x1000, 4, owner)
    assert amap.entry_for(owner) is not None
    amap.unmap(0x1000)
    assert amap.entry_for(owner) is None
    assert amap.lookup(0x1000) is None
    assert len(amap) == 0


def test_iteration_is_sorted_and_safe_to_mutate():
    amap = AddressMap()
    amap.map(0x3000, 4, "c")
    amap.map(0x1000, 4, "a")
    amap.map(0x2000, 4, "b")
    assert [entry.owner for entry in amap] == ["a", "b", "c"]
    for entry in amap:
        amap.unmap(entry.start)
    assert len(amap) == 0


def test_zero_sized_region_resolves_its_start():
    amap = AddressMap()
    entry = amap.map(0x1000, 0, "fn")
    assert amap.resolve(0x1000) == (entry, 0)
    assert amap.lookup(0x1001) is None
