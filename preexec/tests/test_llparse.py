import textwrap

import pytest

from preexec.constants import (
    FloatConstant,
    FunctionReference,
    GlobalReference,
    IntConstant,
    IntToPointer,
    OpaqueConstant,
    StringConstant,
    render_constant,
)
from preexec.errors import IRParseError
from preexec.irtypes import HALF, I8, I32, PTR, VOID, ArrayType, FunctionType, PointerType, StructType
from preexec.llparse import normalize_ir_line, parse_constant, parse_module, parse_type, split_top_level
from preexec.module import GlobalVariable


def test_parse_types():
    assert parse_type("[2 x { i32, ptr }]") == ArrayType(StructType((I32, PTR)), 2)
    assert parse_type("<4 x float>").vector
    assert parse_type("ptr addrspace(1)") == PointerType(None, 1)
    assert parse_type("i32*") == PointerType(I32)
    assert parse_type("<{ i8, i32 }>").packed
    fn = parse_type("void (i32, ...)")
    assert fn == FunctionType(VOID, (I32,), True)
    with pytest.raises(IRParseError):
        parse_type("banana")


def test_split_top_level_respects_nesting():
    parts = split_top_level('i32 1, { i32, i32 } { i32 2, i32 3 }, [2 x i8] c"a,"')
    assert parts == ["i32 1", "{ i32, i32 } { i32 2, i32 3 }", '[2 x i8] c"a,"']


def test_normalize_strips_comments_and_metadata():
    line = "  store i32 1, ptr @g, align 4, !tbaa !3 ; comment"
    assert normalize_ir_line(line) == "store i32 1, ptr @g, align 4"


def test_parse_globals_with_linkage_and_attributes(parse):
    module = parse(
        r"""
        @g = internal global i32 5, align 4
        @s = private unnamed_addr constant [4 x i8] c"hi\0A\00", align 1
        @ext = external global i32
        """
    )
    g = module.get_global("g")
    assert g.linkage == "internal"
    assert g.initializer == IntConstant(I32, 5)
    assert g.align == 4
    s = module.get_global("s")
    assert s.is_constant
    assert s.initializer == StringConstant(ArrayType(I8, 4), b"hi\n\x00")
    ext = module.get_global("ext")
    assert ext.is_declaration
    assert ext.is_opaque


def test_parse_constant_expressions(parse):
    module = parse(
        """
        @arr = global [4 x i32] zeroinitializer
        @b = global i8 0
        @p = global ptr getelementptr inbounds ([4 x i32], ptr @arr, i32 0, i32 2)
        @tp = global i32* bitcast (i8* @b to i32*)
        @raw = global ptr inttoptr (i32 4096 to ptr)
        @q = global i64 ptrtoint (ptr @arr to i64)
        """
    )
    assert module.get_global("p").initializer == GlobalReference(PTR, "arr", 8)
    assert module.get_global("tp").initializer == GlobalReference(PointerType(I32), "b", 0)
    assert module.get_global("raw").initializer == IntToPointer(PTR, 4096)
    q = module.get_global("q")
    assert isinstance(q.initializer, OpaqueConstant)
    assert q.initializer.text == "ptrtoint (ptr @arr to i64)"
    assert q.is_opaque


def test_parse_float_literals():
    assert parse_constant("half 0xH3C00") == FloatConstant(HALF, 0x3C00)
    value = parse_constant("double 0x3FF8000000000000")
    assert value.value == 1.5
    assert parse_constant("float 2.5").value == 2.5


def test_parse_function_reference():
    module = parse_module("define void @f() {\n  ret void\n}\n")
    assert parse_constant("ptr @f", module) == FunctionReference(PTR, "f")


def test_parse_ctors_in_load_order(parse):
    module = parse(
        """
        define internal void @a() {
          ret void
        }
        define internal void @b() {
          ret void
        }
        define internal void @c() {
          ret void
        }
        @llvm.global_ctors = appending global [3 x { i32, ptr, ptr }] [{ i32, ptr, ptr } { i32 200, ptr @a, ptr null }, { i32, ptr, ptr } { i32 101, ptr @b, ptr null }, { i32, ptr, ptr } { i32 200, ptr @c, ptr null }]
        """
    )
    assert [entry.function for entry in module.ctors] == ["a", "b", "c"]
    assert [entry.function for entry in module.static_constructors()] == ["b", "a", "c"]
    assert "llvm.global_ctors" not in module.globals


def test_parse_two_field_ctors_with_typed_pointers(parse):
    module = parse(
        """
        define void @init() {
          ret void
        }
        @llvm.global_ctors = appending global [1 x { i32, void ()* }] [{ i32, void ()* } { i32 65535, void ()* @init }]
        """
    )
    (entry,) = module.ctors
    assert entry.function == "init"
    assert entry.data is None
    assert module.render().splitlines()[-1].endswith("[{ i32, void ()* } { i32 65535, void ()* @init }]")


def test_parse_function_blocks(parse):
    module = parse(
        """
        define i32 @pick(i32 %a, i32) {
          %c = icmp eq i32 %a, 0
          br i1 %c, label %zero, label %other
        zero:
          ret i32 %0
        other:
          ret i32 %a
        }
        declare ptr @malloc(i32)
        """
    )
    fn = module.get_function("pick")
    assert [name for _, name in fn.params] == ["a", "0"]
    assert list(fn.blocks) == ["1", "zero", "other"]
    assert fn.entry_label == "1"
    assert module.get_function("malloc").is_declaration


def test_parse_multiline_switch(parse):
    module = parse(
        """
        define void @f(i32 %x) {
        entry:
          switch i32 %x, label %done [
            i32 0, label %done
            i32 1, label %done
          ]
        done:
          ret void
        }
        """
    )
    (switch,) = module.get_function("f").blocks["entry"]
    assert switch.startswith("switch i32 %x, label %done [")
    assert switch.endswith("]")


def test_named_struct_types(parse):
    module = parse(
        """
        %struct.Node = type { i32, %struct.Node* }
        %struct.Opaque = type opaque
        @n = global %struct.Node zeroinitializer
        """
    )
    node = module.named_types["struct.Node"]
    assert node.fields[1] == PointerType(node)
    assert module.named_types["struct.Opaque"].opaque
    assert module.get_global("n").value_type is node


def test_render_round_trips_unchanged_module(parse):
    text = textwrap.dedent(
        """
        source_filename = "init.c"
        target datalayout = "e-m:e-p:32:32-i64:64-n32-S128"

        %struct.S = type { i32, ptr }

        @g = global %struct.S zeroinitializer, align 4
        @name = private constant [3 x i8] c"ab\\00"

        define internal void @init() {
        entry:
          store i32 42, ptr @g, align 4
          ret void
        }

        @llvm.global_ctors = appending global [1 x { i32, ptr, ptr }] [{ i32, ptr, ptr } { i32 65535, ptr @init, ptr null }]
        attributes #0 = { nounwind }
        """
    ).lstrip()
    assert parse_module(text).render() == text


def test_render_places_synthesized_globals_after_last_global(parse):
    module = parse(
        """
        @p = global ptr null
        @q = global i32 0

        define void @f() {
          ret void
        }
        """
    )
    module.add_global(
        GlobalVariable("heap.0", I32, IntConstant(I32, 3), linkage="internal", synthesized=True), placed=False
    )
    module.set_initializer("p", GlobalReference(PTR, "heap.0", 0))
    lines = module.render().splitlines()
    assert lines[:3] == ["@p = global ptr @heap.0", "@q = global i32 0", "@heap.0 = internal global i32 3"]


def test_render_interior_references():
    module = parse_module("@arr = global [4 x { i32, i32 }] zeroinitializer\n@b = global i8 0\n")
    assert render_constant(GlobalReference(PTR, "arr", 12), module) == (
        "getelementptr inbounds ([4 x { i32, i32 }], ptr @arr, i32 0, i32 1, i32 1)"
    )
    assert render_constant(GlobalReference(PTR, "arr", 2), module) == "getelementptr (i8, ptr @arr, i32 2)"
    assert render_constant(GlobalReference(PointerType(I32), "b", 0), module) == "bitcast (i8* @b to i32*)"


def test_parse_errors():
    with pytest.raises(IRParseError):
        parse_module("@g = global i32 %x\n")
    with pytest.raises(IRParseError):
        parse_module("define void @f() {\n  ret void\n")
