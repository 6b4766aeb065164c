import pytest

from preexec.errors import LayoutInconsistencyError
from preexec.irtypes import I1, I8, I16, I32, I64, DOUBLE, PTR, ArrayType, StructType
from preexec.layout import DataLayout, align_to


def test_align_to():
    assert align_to(0, 4) == 0
    assert align_to(5, 4) == 8
    assert align_to(8, 8) == 8
    assert align_to(3, 0) == 3


def test_default_layout_is_little_endian_32_bit(layout):
    assert layout.byteorder == "little"
    assert layout.pointer_size == 4
    assert layout.size_of(PTR) == 4
    assert layout.size_of(I64) == 8
    assert layout.abi_align(DOUBLE) == 8
    assert layout.store_size(I1) == 1


def test_parse_datalayout_string():
    dl = DataLayout.parse("E-m:e-p:64:64-i64:32-f64:32-n32-S128")
    assert dl.byteorder == "big"
    assert dl.pointer_size == 8
    assert dl.pointer_bits == 64
    assert dl.abi_align(I64) == 4
    assert dl.abi_align(DOUBLE) == 4
    assert dl.text.startswith("E-")


def test_struct_layout_inserts_padding(layout):
    ty = StructType((I8, I32, I16))
    sl = layout.struct_layout(ty)
    assert sl.offsets == (0, 4, 8)
    assert sl.size == 12
    assert sl.align == 4
    assert layout.padding_ranges(ty) == [(1, 4), (10, 12)]


def test_packed_struct_has_no_padding(layout):
    ty = StructType((I8, I32), packed=True)
    assert layout.struct_layout(ty).offsets == (0, 1)
    assert layout.size_of(ty) == 5
    assert layout.abi_align(ty) == 1
    assert layout.padding_ranges(ty) == []


def test_array_and_vector_sizes(layout):
    assert layout.size_of(ArrayType(I16, 3)) == 6
    assert layout.element_stride(ArrayType(I32, 4, vector=True)) == 4
    assert layout.store_size(ArrayType(I8, 3, vector=True)) == 3


def test_gep_offsets(layout):
    ty = StructType((I32, ArrayType(I16, 2)))
    assert layout.gep_offset(ty, [0, 1, 1]) == 6
    assert layout.gep_offset(ty, [1]) == 8
    offset, elem = layout.gep(ty, [0, 1])
    assert (offset, elem) == (4, ArrayType(I16, 2))
    with pytest.raises(LayoutInconsistencyError):
        layout.gep(ty, [0, 2])


def test_index_path_lands_on_sub_objects(layout):
    ty = StructType((I32, ArrayType(I16, 2)))
    assert layout.index_path(ty, 0) == [0]
    assert layout.index_path(ty, 4) == [0, 1]
    assert layout.index_path(ty, 4, I16) == [0, 1, 0]
    assert layout.index_path(ty, 6) == [0, 1, 1]
    assert layout.index_path(ty, 8) == [1]


def test_index_path_inside_scalar_is_none(layout):
    ty = StructType((I32, ArrayType(I16, 2)))
    assert layout.index_path(ty, 2) is None
    padded = StructType((I8, I32))
    assert layout.index_path(padded, 2) is None


def test_opaque_struct_is_unsized(layout):
    opaque = StructType(name="%Opaque")
    assert opaque.opaque
    with pytest.raises(LayoutInconsistencyError):
        layout.size_of(opaque)


def test_named_structs_compare_by_name():
    a = StructType((I32,), name="%S")
    b = StructType(name="%S")
    assert a == b
    assert hash(a) == hash(b)
    assert StructType((I32,)) == StructType((I32,))
    assert StructType((I32,)) != StructType((I32,), packed=True)


def test_pointer_ranges(layout):
    node = StructType((I32, PTR, ArrayType(PTR, 2)))
    assert layout.pointer_ranges(PTR) == [(0, 4)]
    assert layout.pointer_ranges(I64) == []
    assert layout.pointer_ranges(node) == [(4, 4), (8, 4), (12, 4)]
    assert layout.pointer_ranges(ArrayType(StructType((I8, PTR)), 2)) == [(4, 4), (12, 4)]
