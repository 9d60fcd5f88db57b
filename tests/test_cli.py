"""
Command line tests.
"""

import pytest

from conftest import DATA_FLAGS, TEXT_FLAGS, build_pe, text_offset, text_va
from pescalpel.cli import main, parse_disasm_arg

# push rbp ; mov rbp, rsp ; call +0 ; pop rbp ; ret
PROGRAM = bytes.fromhex('55' '4889E5' 'E800000000' '5D' 'C3')


@pytest.fixture
def exe(tmp_path):
    path = tmp_path / "sample.exe"
    path.write_bytes(build_pe(PROGRAM))
    return path


class TestArguments:

    def test_disasm_arg(self):
        assert parse_disasm_arg("0x140001000:4") == (0x140001000, 4)
        assert parse_disasm_arg("140001000") == (0x140001000, 16)
        with pytest.raises(ValueError):
            parse_disasm_arg("0x1000:0")
        with pytest.raises(ValueError):
            parse_disasm_arg("zz:1")


class TestReports:

    def test_info(self, exe, capsys):
        assert main([str(exe), "--info"]) == 0
        out = capsys.readouterr().out
        assert "PE32+" in out
        assert ".text" in out
        assert "0x140000000" in out

    def test_validate(self, exe, capsys):
        assert main([str(exe), "--validate"]) == 0
        assert "PE VALIDATION REPORT" in capsys.readouterr().out

    def test_validate_packed_sections(self, tmp_path, capsys):
        path = tmp_path / "packed.exe"
        path.write_bytes(build_pe(sections=[("UPX0", PROGRAM, TEXT_FLAGS), ("UPX1", b"\x00", DATA_FLAGS)]))
        assert main([str(path), "--validate"]) == 0
        out = capsys.readouterr().out
        assert "Non-standard sections:" in out
        assert "UPX1         packer" in out
        assert "proceed with caution" in out

    def test_disasm(self, exe, capsys):
        assert main([str(exe), "--disasm", f"{text_va():X}:3"]) == 0
        out = capsys.readouterr().out
        assert "push rbp" in out
        assert "mov rbp, rsp" in out
        assert "pop" not in out

    def test_disasm_unknown_address(self, exe, capsys):
        assert main([str(exe), "--disasm", "0x10:2"]) == 1

    def test_xrefs_and_functions(self, exe, capsys):
        assert main([str(exe), "--xrefs", "--functions"]) == 0
        out = capsys.readouterr().out
        assert "[CALL] - 1 references" in out
        assert "_entry" in out
        assert "blocks=1" in out

    def test_image_base_option_drives_address_heuristic(self, tmp_path, capsys):
        # movabs rax, 0x140002000 ; ret in an image whose header base is 0x400000
        path = tmp_path / "low.exe"
        path.write_bytes(build_pe(bytes.fromhex("48B80020004001000000C3"), image_base=0x400000))
        assert main([str(path), "--xrefs"]) == 0
        assert "No references found" in capsys.readouterr().out
        assert main([str(path), "--xrefs", "--image-base", "0x140000000"]) == 0
        assert "[MOV_IMM64] - 1 references" in capsys.readouterr().out

    def test_xrefs_for_address(self, exe, capsys):
        assert main([str(exe), "--xrefs", f"{text_va() + 9:X}"]) == 0
        out = capsys.readouterr().out
        assert "[INCOMING] - 1 references" in out

    def test_search(self, exe, capsys):
        assert main([str(exe), "--search", "48 89 ??"]) == 0
        out = capsys.readouterr().out
        assert "1 match(es)" in out
        assert main([str(exe), "--search", "4"]) == 1

    def test_bad_file(self, tmp_path, capsys):
        path = tmp_path / "bad.exe"
        path.write_bytes(b'nope')
        assert main([str(path), "--info"]) == 1
        assert "Error loading PE" in capsys.readouterr().out


class TestPatch:

    def test_nop_patch_writes_output(self, exe, tmp_path, capsys):
        out_path = tmp_path / "patched.exe"
        assert main([str(exe), "--patch", hex(text_offset() + 4), "-n", "5", "-o", str(out_path)]) == 0
        data = out_path.read_bytes()
        assert data[text_offset() + 4:text_offset() + 9] == b'\x90' * 5
        out = capsys.readouterr().out
        assert "Patch ledger:" in out
        assert "<- patched" in out

    def test_hex_patch(self, exe, tmp_path):
        out_path = tmp_path / "patched.exe"
        assert main([str(exe), "--patch", str(text_offset()), "-x", "CC", "-o", str(out_path)]) == 0
        assert out_path.read_bytes()[text_offset()] == 0xCC

    def test_patch_requires_payload(self, exe, capsys):
        assert main([str(exe), "--patch", "0x200"]) == 1

    def test_patch_out_of_range(self, exe, capsys):
        assert main([str(exe), "--patch", "0x100000", "-x", "90"]) == 1
        assert "Patch failed" in capsys.readouterr().out

    def test_invalid_hex(self, exe, capsys):
        assert main([str(exe), "--patch", "0x200", "-x", "9"]) == 1

    def test_assembled_patch(self, exe, tmp_path, capsys):
        pytest.importorskip("keystone")
        out_path = tmp_path / "patched.exe"
        assert main([str(exe), "--patch", hex(text_offset()), "-c", "nop", "-o", str(out_path)]) == 0
        assert "Assembled: 90" in capsys.readouterr().out
