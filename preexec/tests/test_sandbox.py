import pytest

from preexec.constants import GlobalReference, IntConstant, StructConstant
from preexec.errors import SandboxFault, UnsupportedOperation
from preexec.irtypes import I32, PTR, FunctionType, StructType, VOID
from preexec.module import Function, GlobalVariable
from preexec.sandbox import GUARD_GAP, SANDBOX_BASE, SandboxSession


def _fn(name):
    return Function(name=name, type=FunctionType(VOID))


def test_allocations_start_above_null_page(session):
    addr = session.allocator.allocate(4)
    assert addr >= SANDBOX_BASE
    assert addr % 8 == 0


def test_allocations_are_separated_by_guard_gap(session):
    first = session.allocator.allocate(12)
    second = session.allocator.allocate(12)
    assert second >= first + 12 + GUARD_GAP
    # One past the end of the first region resolves to the first region only.
    entry, offset = session.address_map.resolve(first + 12)
    assert entry.start == first and offset == 12


def test_allocate_deallocate_balance(session):
    addrs = [session.allocator.allocate(size) for size in (4, 16, 1)]
    assert len(session.allocator.live_allocations()) == 3
    for addr in addrs:
        session.allocator.deallocate(addr)
    assert session.allocator.live_allocations() == []
    assert len(session.address_map) == 0


def test_invalid_free_faults(session):
    addr = session.allocator.allocate(8)
    with pytest.raises(SandboxFault) as excinfo:
        session.allocator.deallocate(addr + 4)
    assert excinfo.value.code == "invalid-free"
    session.allocator.deallocate(addr)
    with pytest.raises(SandboxFault):
        session.allocator.deallocate(addr)


def test_address_space_exhaustion_is_unsupported(layout):
    with SandboxSession(layout, address_limit=SANDBOX_BASE + 0x100) as sess:
        sess.allocator.allocate(0x80)
        with pytest.raises(UnsupportedOperation) as excinfo:
            sess.allocator.allocate(0x80)
        assert excinfo.value.code == "exhausted"


def test_memory_faults(session):
    addr = session.allocator.allocate(8)
    with pytest.raises(SandboxFault):
        session.memory.read(addr + 0x1000, 4)
    with pytest.raises(SandboxFault):
        session.memory.read(addr + 6, 4)
    session.memory.write_int(addr + 4, 0x11223344, 4)
    assert session.memory.read(addr + 4, 4) == bytes([0x44, 0x33, 0x22, 0x11])


def test_store_listener_sees_writes_but_not_initialization(session):
    addr = session.allocator.allocate(8)
    seen = []
    session.memory.install_store_listener(lambda a, n: seen.append((a, n)))
    session.memory.initialize(addr, b"\x01\x02")
    session.memory.write_int(addr, 7, 4)
    session.memory.fill(addr + 4, 0xFF, 2)
    assert seen == [(addr, 4), (addr + 4, 2)]
    assert session.memory.contents(addr) == b"\x07\x00\x00\x00\xff\xff\x00\x00"


def test_float_access_round_trips_bits(session):
    from preexec.irtypes import DOUBLE, FLOAT

    addr = session.allocator.allocate(16)
    session.memory.write_float(addr, 1.5, DOUBLE)
    session.memory.write_float(addr + 8, 1e40, FLOAT)
    assert session.memory.read_float(addr, DOUBLE) == 1.5
    assert session.memory.read_float(addr + 8, FLOAT) == float("inf")


def test_materialize_places_globals_and_functions(session):
    pair = StructType((I32, PTR))
    gv = GlobalVariable("g", pair, StructConstant(pair, (IntConstant(I32, 5), GlobalReference(PTR, "g", 4))))
    init = _fn("init")
    session.materialize([gv], [init])
    base = session.global_address(gv)
    assert session.memory.read_int(base, 4) == 5
    assert session.memory.read_pointer(base + 4) == base + 4
    assert session.allocator.function_at(session.allocator.address_of("init")) is init


def test_constant_globals_are_read_only(session):
    gv = GlobalVariable("c", I32, IntConstant(I32, 3), is_constant=True)
    session.materialize([gv], [])
    addr = session.global_address(gv)
    assert session.memory.read_int(addr, 4) == 3
    with pytest.raises(SandboxFault) as excinfo:
        session.memory.write_int(addr, 4, 4)
    assert excinfo.value.code == "readonly"


def test_external_globals_are_opaque(session):
    gv = GlobalVariable("ext", I32, linkage="external")
    session.materialize([gv], [])
    addr = session.allocator.address_of("ext")
    with pytest.raises(SandboxFault) as excinfo:
        session.memory.read_int(addr, 4)
    assert excinfo.value.code == "opaque"


def test_functions_have_no_readable_contents(session):
    session.materialize([], [_fn("f")])
    with pytest.raises(SandboxFault):
        session.memory.read(session.allocator.address_of("f"), 1)


def test_unknown_symbol_has_no_address(session):
    with pytest.raises(UnsupportedOperation):
        session.allocator.address_of("missing")


def test_release_unmaps_everything(layout):
    sess = SandboxSession(layout)
    sess.materialize([GlobalVariable("g", I32, IntConstant(I32, 1))], [_fn("f")])
    addr = sess.allocator.allocate(8)
    sess.tracker.record_typed_allocation(I32, 8, addr)
    assert sess.release() == 3
    assert len(sess.address_map) == 0
    assert len(sess.tracker) == 0
    assert sess.release() == 0


def test_pointer_writes_are_marked_until_overwritten(session):
    buf = session.allocator.allocate(8)
    target = session.allocator.allocate(4)
    session.memory.write_pointer(buf, target)
    assert session.memory.exposes_pointer(buf, 4)
    assert session.memory.exposes_pointer(buf + 2, 1)
    assert not session.memory.exposes_pointer(buf, 4, PTR)
    assert not session.memory.exposes_pointer(buf + 4, 4)
    session.memory.write_int(buf, 7, 4)
    assert session.memory.pointer_marks(buf, 8) is None


def test_null_pointer_writes_are_not_marked(session):
    buf = session.allocator.allocate(4)
    session.memory.write_pointer(buf, 0)
    assert not session.memory.exposes_pointer(buf, 4)


def test_copy_carries_pointer_marks(session):
    src = session.allocator.allocate(8)
    dest = session.allocator.allocate(8)
    session.memory.write_int(src, 5, 4)
    session.memory.write_pointer(src + 4, src)
    session.memory.copy(dest, src, 8)
    assert session.memory.pointer_marks(dest, 8) == bytes(4) + b"\x01" * 4
    assert not session.memory.exposes_pointer(dest, 8, StructType((I32, PTR)))
    assert session.memory.exposes_pointer(dest, 8, StructType((I32, I32)))


def test_materialized_pointer_fields_are_marked(session):
    pair = StructType((I32, PTR))
    gv = GlobalVariable("g", pair, StructConstant(pair, (IntConstant(I32, 5), GlobalReference(PTR, "g", 0))))
    session.materialize([gv], [])
    base = session.global_address(gv)
    assert session.memory.pointer_marks(base, 8) == bytes(4) + b"\x01" * 4
