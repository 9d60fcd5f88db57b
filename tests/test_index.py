"""
AddressIndex tests.
"""

from conftest import TEXT_FLAGS, FakeDecoder, build_pe, text_offset, text_va
from pescalpel.container import parse_image
from pescalpel.disassembler import build_instruction_stream
from pescalpel.index import AddressIndex


def stream(code=b'\x90\xb0\x05\xc3', sections=None):
    data = build_pe(code, sections=sections)
    return build_instruction_stream(data, parse_image(data), FakeDecoder())


class TestLookups:

    def test_exact_hits(self):
        insns = stream()
        index = AddressIndex(insns)
        assert index.is_valid
        for i, insn in enumerate(insns):
            assert index.address_to_instruction_index(insn.address) == i
            assert index.offset_to_instruction_index(insn.file_offset) == i
            assert index.address_to_offset(insn.address) == insn.file_offset
            assert index.offset_to_address(insn.file_offset) == insn.address

    def test_inside_an_instruction(self):
        index = AddressIndex(stream())
        # mov al, 5 spans +1..+2
        assert index.address_to_instruction_index(text_va() + 2) == 1
        assert index.address_to_offset(text_va() + 2) == text_offset() + 2
        assert index.offset_to_address(text_offset() + 2) == text_va() + 2
        assert index.instruction_at(text_va() + 2) is None

    def test_outside_decoded_range(self):
        index = AddressIndex(stream())
        assert index.address_to_offset(text_va() - 1) is None
        assert index.address_to_offset(text_va() + 4) is None
        assert index.offset_to_address(0) is None

    def test_gap_between_sections(self):
        sections = [('.text', b'\x90', TEXT_FLAGS), ('.text2', b'\xc3', TEXT_FLAGS)]
        index = AddressIndex(stream(sections=sections))
        assert index.address_to_offset(text_va(0) + 0x10) is None
        assert index.address_to_offset(text_va(1)) == text_offset(1)

    def test_instructions_in_range(self):
        insns = stream()
        index = AddressIndex(insns)
        assert index.instructions_in_range(text_va() + 1, text_va() + 4) == insns[1:]
        assert index.instructions_in_range(text_va() + 2, text_va() + 3) == []

    def test_stats(self):
        index = AddressIndex(stream())
        stats = index.stats()
        assert stats.entries == 3
        assert stats.range_start == text_va()
        assert stats.range_end == text_va() + 4
        assert stats.range_size == 4
        assert "3 instructions" in str(stats)


class TestValidity:

    def test_empty_index_is_invalid(self):
        index = AddressIndex([])
        assert not index.is_valid
        assert index.address_to_offset(0x1000) is None
        assert str(index.stats()) == "Cache: Invalid"

    def test_invalidate_range_overlap(self):
        index = AddressIndex(stream())
        assert not index.invalidate_range(text_va() + 4, text_va() + 8)
        assert index.is_valid
        assert index.invalidate_range(text_va() + 3, text_va() + 4)
        assert not index.is_valid

    def test_stale_index_misses_every_lookup(self):
        insns = stream()
        index = AddressIndex(insns)
        index.invalidate()
        assert index.address_to_offset(insns[0].address) is None
        assert index.offset_to_instruction_index(insns[0].file_offset) is None
        assert index.instruction_at(insns[0].address) is None
        assert index.instructions_in_range(0, 2 ** 64) == []

    def test_rebuild_restores_validity(self):
        insns = stream()
        index = AddressIndex(insns)
        index.clear()
        assert not index.is_valid
        index.build(insns)
        assert index.address_to_offset(insns[-1].address) == insns[-1].file_offset


class TestMetadata:

    def test_batch_update(self):
        insns = stream()
        index = AddressIndex(insns)
        applied = index.batch_update_metadata([
            (insns[0].address, insns[0].address, "start"),
            (insns[1].address, insns[0].address, None),
            (0xDEAD, 0, "missing"),
        ])
        assert applied == 2
        assert insns[0].meta.symbol_name == "start"
        assert insns[1].meta.function_address == insns[0].address

    def test_batch_update_without_name_keeps_existing(self):
        insns = stream()
        index = AddressIndex(insns)
        insns[1].meta.symbol_name = "user_label"
        index.batch_update_metadata([(insns[1].address, insns[0].address, None)])
        assert insns[1].meta.symbol_name == "user_label"
        assert insns[1].meta.function_address == insns[0].address

    def test_batch_update_on_stale_index_is_noop(self):
        insns = stream()
        index = AddressIndex(insns)
        index.invalidate()
        assert index.batch_update_metadata([(insns[0].address, 1, "x")]) == 0
        assert insns[0].meta.symbol_name is None

    def test_lazy_annotations_fill_only_empty(self):
        insns = stream()
        insns[0].meta.annotation = "keep"
        index = AddressIndex(insns)
        filled = index.lazy_load_annotations(lambda address: f"at {address:X}")
        assert filled == 2
        assert insns[0].meta.annotation == "keep"
        assert insns[2].meta.annotation == f"at {insns[2].address:X}"
