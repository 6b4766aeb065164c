import pytest

from preexec.errors import AllocationSizeMismatch, InternalConsistencyError
from preexec.irtypes import I32, I64, ArrayType
from preexec.tracking import StoreRecorder


def test_recorder_deduplicates_addresses():
    recorder = StoreRecorder()
    recorder.record_store(0x1010)
    recorder.record_store(0x1010)
    recorder.record_store(0x1000)
    assert len(recorder) == 2
    assert recorder.write_count == 3
    assert recorder.drain() == [0x1000, 0x1010]


def test_recorder_listener_form_covers_each_byte():
    recorder = StoreRecorder()
    recorder(0x2000, 4)
    recorder(0x2002, 4)
    assert recorder.drain() == [0x2000 + i for i in range(6)]


def test_recorder_drains_once():
    recorder = StoreRecorder()
    recorder.record_store(1)
    recorder.drain()
    assert recorder.drained
    with pytest.raises(InternalConsistencyError):
        recorder.drain()
    with pytest.raises(InternalConsistencyError):
        recorder.record_store(2)


def test_typed_allocation_record(session):
    addr = session.allocator.allocate(8)
    allocation = session.tracker.record_typed_allocation(I32, 8, addr)
    assert addr in session.tracker
    assert allocation.object_type(session.layout) == ArrayType(I32, 2)
    assert session.tracker.lookup(addr) is allocation


def test_single_element_allocation_keeps_element_type(session):
    addr = session.allocator.allocate(8)
    allocation = session.allocator.record_typed_allocation(I64, 8, addr)
    assert allocation.object_type(session.layout) == I64


def test_typed_allocation_size_mismatch(session):
    addr = session.allocator.allocate(8)
    with pytest.raises(AllocationSizeMismatch):
        session.tracker.record_typed_allocation(I32, 4, addr)
    odd = session.allocator.allocate(6)
    with pytest.raises(AllocationSizeMismatch) as excinfo:
        session.tracker.record_typed_allocation(I32, 6, odd)
    assert excinfo.value.code == "allocation-size"
    assert len(session.tracker) == 0


def test_typed_allocation_can_be_retyped(session):
    addr = session.allocator.allocate(8)
    session.tracker.record_typed_allocation(I32, 8, addr)
    allocation = session.tracker.record_typed_allocation(I64, 8, addr)
    assert allocation.alloc_type == I64


def test_typed_allocation_requires_allocation_start(session):
    addr = session.allocator.allocate(8)
    with pytest.raises(InternalConsistencyError):
        session.tracker.record_typed_allocation(I32, 4, addr + 4)


def test_release_without_record_is_internal_error(session):
    addr = session.allocator.allocate(8)
    with pytest.raises(InternalConsistencyError):
        session.tracker.release_typed_allocation(addr)


def test_deallocate_releases_record(session):
    addr = session.allocator.allocate(8)
    session.tracker.record_typed_allocation(I32, 8, addr)
    session.allocator.deallocate(addr)
    assert addr not in session.tracker
    assert session.address_map.lookup(addr) is None


def test_recorder_keeps_ranges_not_bytes():
    recorder = StoreRecorder()
    recorder(0x4000, 1 << 20)
    recorder(0x4000 + 16, 4)
    recorder(0x9000_0000, 2)
    assert recorder.write_count == 3
    assert len(recorder) == (1 << 20) + 2
    assert recorder.drain_ranges() == [(0x4000, 1 << 20), (0x9000_0000, 2)]


def test_recorder_compacts_many_small_writes():
    recorder = StoreRecorder()
    for offset in range(StoreRecorder.COMPACT_THRESHOLD * 2):
        recorder(0x1000 + offset, 1)
    assert recorder.drain_ranges() == [(0x1000, StoreRecorder.COMPACT_THRESHOLD * 2)]
