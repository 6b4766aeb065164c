import textwrap

import pytest

from preexec.engine import OutcomeStatus
from preexec.interp import IRInterpreter
from preexec.irtypes import FLOAT, I32
from preexec.llparse import parse_module
from preexec.sandbox import SandboxSession


@pytest.fixture
def run():
    sessions = []

    def _run(text, entry="init", **kwargs):
        module = parse_module(textwrap.dedent(text).strip() + "\n")
        sess = SandboxSession(module.layout)
        sessions.append(sess)
        sess.materialize(module.globals.values(), module.functions.values())
        interp = IRInterpreter(module, **kwargs)
        outcome = interp.run(module.get_function(entry), sess.recorder, sess.allocator)
        return outcome, sess

    yield _run
    for sess in sessions:
        sess.release()


def _i32(sess, name, index=0):
    value = sess.memory.read_int(sess.allocator.address_of(name) + 4 * index, 4)
    return value - (1 << 32) if value >> 31 else value


def test_loop_with_phi_nodes(run):
    outcome, sess = run(
        """
        @out = global i32 0
        define void @init() {
        entry:
          br label %loop
        loop:
          %i = phi i32 [ 0, %entry ], [ %next, %loop ]
          %acc = phi i32 [ 0, %entry ], [ %sum, %loop ]
          %next = add nsw i32 %i, 1
          %sum = add i32 %acc, %next
          %done = icmp eq i32 %next, 10
          br i1 %done, label %exit, label %loop
        exit:
          store i32 %sum, ptr @out, align 4
          ret void
        }
        """
    )
    assert outcome.ok
    assert _i32(sess, "out") == 55
    out = sess.allocator.address_of("out")
    assert sess.recorder.drain() == [out, out + 1, out + 2, out + 3]


def test_signed_integer_operations(run):
    outcome, sess = run(
        """
        @vals = global [5 x i32] zeroinitializer
        define void @init() {
          %a = sdiv i32 -7, 2
          %b = srem i32 -7, 2
          %c = ashr i32 -16, 2
          %t = trunc i32 200 to i8
          %d = sext i8 %t to i32
          %e = select i1 true, i32 4, i32 5
          store i32 %a, ptr @vals, align 4
          %p1 = getelementptr inbounds [5 x i32], ptr @vals, i32 0, i32 1
          store i32 %b, ptr %p1, align 4
          %p2 = getelementptr inbounds i32, ptr @vals, i32 2
          store i32 %c, ptr %p2, align 4
          %p3 = getelementptr inbounds [5 x i32], ptr @vals, i32 0, i32 3
          store i32 %d, ptr %p3, align 4
          %p4 = getelementptr i8, ptr @vals, i32 16
          store i32 %e, ptr %p4, align 4
          ret void
        }
        """
    )
    assert outcome.ok
    assert [_i32(sess, "vals", i) for i in range(5)] == [-3, -1, -4, -56, 4]


def test_float_operations(run):
    outcome, sess = run(
        """
        @f = global float 0.0
        @n = global i32 0
        @lt = global i32 0
        define void @init() {
          %x = fadd double 1.5, 2.25
          %y = fmul double %x, 2.0
          %z = fptosi double %y to i32
          store i32 %z, ptr @n
          %s = fptrunc double %y to float
          store float %s, ptr @f
          %c = fcmp olt double %x, 4.0
          %w = zext i1 %c to i32
          store i32 %w, ptr @lt
          ret void
        }
        """
    )
    assert outcome.ok
    assert _i32(sess, "n") == 7
    assert sess.memory.read_float(sess.allocator.address_of("f"), FLOAT) == 7.5
    assert _i32(sess, "lt") == 1


def test_aggregate_load_insert_and_store(run):
    outcome, sess = run(
        """
        %struct.P = type { i16, i32 }
        @a = global %struct.P { i16 1, i32 2 }
        @b = global %struct.P zeroinitializer
        @lo = global i32 0
        define void @init() {
          %v = load %struct.P, ptr @a, align 4
          %w = insertvalue %struct.P %v, i32 9, 1
          store %struct.P %w, ptr @b, align 4
          %x = extractvalue %struct.P %w, 0
          %y = zext i16 %x to i32
          store i32 %y, ptr @lo
          ret void
        }
        """
    )
    assert outcome.ok
    b = sess.allocator.address_of("b")
    assert sess.memory.read_int(b, 2) == 1
    assert sess.memory.read_int(b + 4, 4) == 9
    assert _i32(sess, "lo") == 1


def test_switch_selects_case(run):
    outcome, sess = run(
        """
        @out = global i32 0
        define void @init() {
        entry:
          %x = add i32 1, 1
          switch i32 %x, label %other [
            i32 1, label %one
            i32 2, label %two
          ]
        one:
          store i32 10, ptr @out
          ret void
        two:
          store i32 20, ptr @out
          ret void
        other:
          store i32 30, ptr @out
          ret void
        }
        """
    )
    assert outcome.ok
    assert _i32(sess, "out") == 20


def test_heap_builtins_and_memory_intrinsics(run):
    outcome, sess = run(
        """
        @p = global ptr null
        define void @init() {
          %m = call ptr @malloc(i32 8)
          call void @llvm.memset.p0.i32(ptr %m, i8 1, i32 8, i1 false)
          %tmp = call ptr @malloc(i32 4)
          store i32 5, ptr %tmp
          call void @llvm.memcpy.p0.p0.i32(ptr %m, ptr %tmp, i32 4, i1 false)
          call void @free(ptr %tmp)
          store ptr %m, ptr @p
          ret void
        }
        declare ptr @malloc(i32)
        declare void @free(ptr)
        declare void @llvm.memset.p0.i32(ptr, i8, i32, i1)
        declare void @llvm.memcpy.p0.p0.i32(ptr, ptr, i32, i1)
        """
    )
    assert outcome.ok
    (live,) = sess.allocator.live_allocations()
    assert sess.memory.read_pointer(sess.allocator.address_of("p")) == live.address
    assert sess.memory.read(live.address, 8) == b"\x05\x00\x00\x00\x01\x01\x01\x01"


def test_calloc_and_realloc(run):
    outcome, sess = run(
        """
        @p = global ptr null
        define void @init() {
          %m = call ptr @calloc(i32 2, i32 4)
          store i32 3, ptr %m
          %r = call ptr @realloc(ptr %m, i32 12)
          store ptr %r, ptr @p
          ret void
        }
        declare ptr @calloc(i32, i32)
        declare ptr @realloc(ptr, i32)
        """
    )
    assert outcome.ok
    (live,) = sess.allocator.live_allocations()
    assert live.size == 12
    assert sess.memory.read(live.address, 12) == b"\x03" + b"\x00" * 11


def test_typed_pointer_cast_records_allocation_type(run):
    outcome, sess = run(
        """
        @p = global i32* null
        define void @init() {
          %m = call i8* @malloc(i32 12)
          %t = bitcast i8* %m to i32*
          store i32 3, i32* %t
          store i32* %t, i32** @p
          ret void
        }
        declare i8* @malloc(i32)
        """
    )
    assert outcome.ok
    addr = sess.memory.read_pointer(sess.allocator.address_of("p"))
    assert sess.tracker.lookup(addr).alloc_type == I32


def test_operator_new_and_delete(run):
    outcome, sess = run(
        """
        define void @init() {
          %a = call noalias ptr @_Znwj(i32 4)
          %b = call noalias ptr @_Znaj(i32 16)
          call void @_ZdlPv(ptr %a)
          call void @_ZdaPv(ptr %b)
          ret void
        }
        declare ptr @_Znwj(i32)
        declare ptr @_Znaj(i32)
        declare void @_ZdlPv(ptr)
        declare void @_ZdaPv(ptr)
        """
    )
    assert outcome.ok
    assert sess.allocator.live_allocations() == []


def test_stack_is_released_on_return(run):
    outcome, sess = run(
        """
        @out = global i32 0
        define internal void @set(ptr %dst, i32 %v) {
          store i32 %v, ptr %dst
          ret void
        }
        define void @init() {
          %slot = alloca i32, align 4
          call void @set(ptr %slot, i32 11)
          %v = load i32, ptr %slot
          store i32 %v, ptr @out
          ret void
        }
        """
    )
    assert outcome.ok
    assert _i32(sess, "out") == 11
    assert sess.allocator.live_allocations() == []


def test_indirect_call_through_function_pointer(run):
    outcome, sess = run(
        """
        @fp = global ptr @set7
        @out = global i32 0
        define internal void @set7() {
          store i32 7, ptr @out
          ret void
        }
        define void @init() {
          %f = load ptr, ptr @fp
          call void %f()
          ret void
        }
        """
    )
    assert outcome.ok
    assert _i32(sess, "out") == 7


def test_noop_intrinsics_are_ignored(run):
    outcome, _ = run(
        """
        define void @init() {
          %slot = alloca i32, align 4
          call void @llvm.lifetime.start.p0(i64 4, ptr %slot)
          call void @llvm.lifetime.end.p0(i64 4, ptr %slot)
          ret void
        }
        declare void @llvm.lifetime.start.p0(i64, ptr)
        declare void @llvm.lifetime.end.p0(i64, ptr)
        """
    )
    assert outcome.ok


@pytest.mark.parametrize(
    "body, fragment",
    [
        ("call void @puts(ptr null)", "external"),
        ("%x = ptrtoint ptr @out to i32", "ptrtoint"),
        ("%x = udiv i32 1, 0", "division by zero"),
        ("%x = shl i32 1, 40", "shift"),
        ("fence seq_cst", "unsupported instruction"),
        ("unreachable", "unreachable"),
        ("store i32 1, ptr @ro", "read-only"),
    ],
)
def test_unsupported_constructs(run, body, fragment):
    outcome, sess = run(
        f"""
        @out = global i32 0
        @ro = constant i32 0
        define void @init() {{
          {body}
          ret void
        }}
        declare void @puts(ptr)
        """
    )
    assert outcome.status is OutcomeStatus.UNSUPPORTED
    assert fragment in outcome.reason
    assert sess.memory.install_store_listener(None) is None


def test_free_of_stack_address_is_unsupported(run):
    outcome, _ = run(
        """
        define void @init() {
          %slot = alloca i32
          call void @free(ptr %slot)
          ret void
        }
        declare void @free(ptr)
        """
    )
    assert outcome.status is OutcomeStatus.UNSUPPORTED


def test_infinite_loop_diverges(run):
    outcome, _ = run(
        """
        define void @init() {
        entry:
          br label %entry
        }
        """,
        step_limit=100,
    )
    assert outcome.status is OutcomeStatus.DIVERGED


def test_unbounded_recursion_diverges(run):
    outcome, _ = run(
        """
        define void @init() {
          call void @init()
          ret void
        }
        """,
        call_depth_limit=10,
    )
    assert outcome.status is OutcomeStatus.DIVERGED


def test_integer_load_of_pointer_bytes_is_unsupported(run):
    outcome, _ = run(
        """
        @x = global i32 0
        @slot = global ptr null
        @out = global i32 0
        define void @init() {
          store ptr @x, ptr @slot
          %v = load i32, ptr @slot
          store i32 %v, ptr @out
          ret void
        }
        """
    )
    assert outcome.status is OutcomeStatus.UNSUPPORTED
    assert "expose" in outcome.reason


def test_pointer_survives_memcpy_through_byte_buffer(run):
    outcome, sess = run(
        """
        @x = global i32 0
        @buf = global [8 x i8] zeroinitializer
        @out = global ptr null
        define void @init() {
          %tmp = alloca ptr
          store ptr @x, ptr %tmp
          call void @llvm.memcpy.p0.p0.i32(ptr @buf, ptr %tmp, i32 4, i1 false)
          %p = load ptr, ptr @buf
          store ptr %p, ptr @out
          ret void
        }
        declare void @llvm.memcpy.p0.p0.i32(ptr, ptr, i32, i1)
        """
    )
    assert outcome.ok
    assert sess.memory.read_pointer(sess.allocator.address_of("out")) == sess.allocator.address_of("x")


def test_scalar_gep_does_not_type_heap_object(run):
    outcome, sess = run(
        """
        @head = global ptr null
        define void @init() {
          %m = call ptr @malloc(i32 8)
          store i32 5, ptr %m
          %f = getelementptr inbounds i32, ptr %m, i32 1
          store i32 6, ptr %f
          store ptr %m, ptr @head
          ret void
        }
        declare ptr @malloc(i32)
        """
    )
    assert outcome.ok
    heap = sess.memory.read_pointer(sess.allocator.address_of("head"))
    assert sess.tracker.lookup(heap) is None
