"""
HexBuffer and PatchLedger tests.
"""

import pytest

from pescalpel.buffer import HexBuffer, PatchLedger
from pescalpel.errors import BoundsError, PatchRangeError


class TestHexBuffer:

    def test_raw_writes_ignore_out_of_range(self):
        buf = HexBuffer(bytes(4))
        assert not buf.write_byte(4, 0x90)
        assert not buf.write_byte(-1, 0x90)
        assert not buf.write_byte(0, 0x100)
        assert not buf.write_bytes(2, b'\x90\x90\x90')
        assert not buf.write_bytes(0, b'')
        assert buf.data == bytes(4)

    def test_modified_is_content_based(self):
        buf = HexBuffer(b'\x01\x02\x03\x04')
        buf.write_byte(1, 0x02)             # same value
        assert buf.is_marked(1)
        assert not buf.is_modified(1)
        buf.write_byte(2, 0xFF)
        assert buf.is_modified(2)
        assert buf.get_modified_count() == 1
        assert list(buf.get_modified_bytes()) == [(2, 0x03, 0xFF)]

    def test_modified_ranges(self):
        buf = HexBuffer(bytes(10))
        buf.write_bytes(1, b'\x01\x01')
        buf.write_byte(5, 0x01)
        buf.write_byte(9, 0x01)
        assert buf.get_modified_ranges() == [(1, 2), (5, 5), (9, 9)]
        assert buf.has_modifications_in_range(3, 5)
        assert not buf.has_modifications_in_range(3, 4)

    def test_writing_back_original_clears_modification(self):
        buf = HexBuffer(b'\xAA')
        buf.write_byte(0, 0xBB)
        buf.write_byte(0, 0xAA)
        assert not buf.is_modified(0)
        assert buf.get_modified_ranges() == []

    def test_reset_keeps_content(self):
        buf = HexBuffer(b'\x00\x00')
        buf.write_byte(0, 0x41)
        buf.reset_modifications()
        assert not buf.is_marked(0)
        assert buf.is_modified(0)
        assert buf.data == b'\x41\x00'

    def test_revert_to_original(self):
        buf = HexBuffer(b'\x10\x20\x30')
        buf.write_bytes(0, b'\xFF\xFF\xFF')
        buf.revert_to_original()
        assert buf.data == b'\x10\x20\x30'
        assert buf.get_modified_count() == 0
        assert not buf.is_marked(0)

    def test_original_snapshot_is_immutable(self):
        source = bytearray(b'\x01\x02')
        buf = HexBuffer(source)
        source[0] = 0xFF
        buf.write_byte(1, 0xEE)
        assert buf.original == b'\x01\x02'

    def test_formatting(self):
        buf = HexBuffer(b'AB\x00\xff' + bytes(14))
        assert buf.hex_string(0, 3) == "41 42 00 FF"
        assert buf.ascii_string(0, 3) == "AB.."
        assert buf.line_string(17).startswith("00000010  00 00")
        assert buf.hex_string(5, 2) == ""


class TestPatchLedger:

    def test_apply_records_original_bytes(self):
        buf = HexBuffer(bytes.fromhex('B801000000C3'))
        ledger = PatchLedger(buf)
        patch = ledger.apply(0, b'\x90' * 5, "nop out mov")
        assert patch.original_bytes == bytes.fromhex('B801000000')
        assert patch.new_bytes == b'\x90' * 5
        assert patch.size == 5 and patch.end == 5
        assert buf.data == b'\x90' * 5 + b'\xC3'
        assert len(ledger) == 1
        assert ledger.patches[0] is patch

    def test_out_of_range_leaves_buffer_untouched(self):
        buf = HexBuffer(bytes(8))
        ledger = PatchLedger(buf)
        with pytest.raises(PatchRangeError) as exc:
            ledger.apply(6, b'\x90\x90\x90')
        assert exc.value.offset == 6
        assert exc.value.length == 3
        assert exc.value.buffer_size == 8
        assert buf.data == bytes(8)
        assert len(ledger) == 0

    def test_negative_and_empty_patches_rejected(self):
        ledger = PatchLedger(HexBuffer(bytes(8)))
        with pytest.raises(PatchRangeError):
            ledger.apply(-1, b'\x90')
        with pytest.raises(PatchRangeError):
            ledger.apply(0, b'')

    def test_range_error_is_a_bounds_error(self):
        assert issubclass(PatchRangeError, BoundsError)

    def test_patch_at_exact_end_is_accepted(self):
        buf = HexBuffer(bytes(4))
        PatchLedger(buf).apply(2, b'\x01\x02')
        assert buf.data == b'\x00\x00\x01\x02'

    def test_overlapping_patches_capture_current_bytes(self):
        buf = HexBuffer(bytes(4))
        ledger = PatchLedger(buf)
        ledger.apply(0, b'\x11\x11')
        second = ledger.apply(1, b'\x22\x22')
        assert second.original_bytes == b'\x11\x00'
        assert list(ledger.flat_patch_list()) == [(0, 0x11), (1, 0x11), (1, 0x22), (2, 0x22)]

    def test_replay_onto_fresh_buffer(self):
        buf = HexBuffer(bytes(4))
        ledger = PatchLedger(buf)
        ledger.apply(1, b'\xAB')
        ledger.apply(3, b'\xCD')
        target = HexBuffer(bytes(4))
        assert ledger.replay(target) == 2
        assert target.data == buf.data

    def test_text_export(self):
        ledger = PatchLedger(HexBuffer(b'\x74\x05'))
        ledger.apply(0, b'\xEB', "force jump")
        text = ledger.to_text()
        assert "# force jump" in text
        assert "00000000 74 EB" in text
        assert ledger.to_dicts() == [{'offset': 0, 'original': '74', 'new': 'eb', 'description': 'force jump'}]

    def test_requires_buffer(self):
        with pytest.raises(TypeError):
            PatchLedger(None)
