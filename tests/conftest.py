"""
Shared fixtures: a synthetic PE32 / PE32+ builder and a table-driven fake
decoder, so no binary fixtures are checked in.

Layout produced by build_pe():

    0x000  DOS header, e_lfanew = 0x40
    0x040  "PE\\0\\0" + COFF file header
    0x058  optional header (0xF0 bytes PE32+, 0xE0 bytes PE32)
    ....   section table
    0x200  raw data of section 0, then each following section at the next
           0x200 boundary. SizeOfRawData is the exact payload length so no
           padding gets decoded.

Section i is mapped at RVA 0x1000 * (i + 1).
"""

import struct
from typing import List, Optional, Sequence, Tuple

import pytest

from pescalpel.decoding import Decoder
from pescalpel.instruction import INVALID_DECODE, DecodeResult, FlowClass, Operand, OperandKind

IMAGE_BASE_64 = 0x140000000
IMAGE_BASE_32 = 0x400000
FILE_ALIGNMENT = 0x200
SECTION_ALIGNMENT = 0x1000

TEXT_FLAGS = 0x60000020     # CODE | EXECUTE | READ
DATA_FLAGS = 0xC0000040     # INITIALIZED_DATA | READ | WRITE
RWX_FLAGS = 0xE0000020

SectionLayout = Tuple[str, bytes, int]


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


def build_pe(code: bytes = b'\xc3', bits: int = 64, sections: Optional[Sequence[SectionLayout]] = None,
             image_base: Optional[int] = None, entry_rva: int = 0x1000, machine: Optional[int] = None,
             number_of_sections: Optional[int] = None, magic: Optional[int] = None,
             truncate: Optional[int] = None) -> bytes:
    if sections is None:
        sections = [('.text', code, TEXT_FLAGS)]
    if image_base is None:
        image_base = IMAGE_BASE_64 if bits == 64 else IMAGE_BASE_32
    if machine is None:
        machine = 0x8664 if bits == 64 else 0x14C
    if magic is None:
        magic = 0x20B if bits == 64 else 0x10B
    opt_size = 0xF0 if bits == 64 else 0xE0

    pe_offset = 0x40
    opt_offset = pe_offset + 4 + 20
    table_offset = opt_offset + opt_size

    # Raw layout
    raw_offsets: List[int] = []
    cursor = FILE_ALIGNMENT
    for _, data, _ in sections:
        raw_offsets.append(cursor)
        cursor = _align(cursor + max(len(data), 1), FILE_ALIGNMENT)
    total = cursor
    size_of_image = SECTION_ALIGNMENT * (len(sections) + 1)

    image = bytearray(total)
    image[0:2] = b'MZ'
    struct.pack_into('<I', image, 0x3C, pe_offset)
    image[pe_offset:pe_offset + 4] = b'PE\x00\x00'
    struct.pack_into('<HHIIIHH', image, pe_offset + 4, machine,
                     len(sections) if number_of_sections is None else number_of_sections,
                     0x5F000000, 0, 0, opt_size, 0x22)

    struct.pack_into('<H', image, opt_offset, magic)
    if bits == 64:
        struct.pack_into('<IIQII', image, opt_offset + 16, entry_rva, 0x1000, image_base,
                         SECTION_ALIGNMENT, FILE_ALIGNMENT)
        struct.pack_into('<I', image, opt_offset + 108, 16)
    else:
        struct.pack_into('<IIIIII', image, opt_offset + 16, entry_rva, 0x1000, 0x2000, image_base,
                         SECTION_ALIGNMENT, FILE_ALIGNMENT)
        struct.pack_into('<I', image, opt_offset + 92, 16)
    struct.pack_into('<HH', image, opt_offset + 40, 6, 0)      # OS version
    struct.pack_into('<HH', image, opt_offset + 48, 6, 0)      # subsystem version
    struct.pack_into('<IIIHH', image, opt_offset + 56, size_of_image, FILE_ALIGNMENT, 0, 3, 0x8160)

    for i, (name, data, flags) in enumerate(sections):
        entry = table_offset + i * 40
        struct.pack_into('<8sIIIIIIHHI', image, entry, name.encode()[:8],
                         max(len(data), 1), SECTION_ALIGNMENT * (i + 1), len(data), raw_offsets[i],
                         0, 0, 0, 0, flags)
        image[raw_offsets[i]:raw_offsets[i] + len(data)] = data

    if truncate is not None:
        return bytes(image[:truncate])
    return bytes(image)


def text_va(bits: int = 64, section: int = 0) -> int:
    """Virtual address of the first byte of section ``section``"""
    base = IMAGE_BASE_64 if bits == 64 else IMAGE_BASE_32
    return base + SECTION_ALIGNMENT * (section + 1)


def text_offset(section: int = 0) -> int:
    """File offset of section ``section`` when every earlier section fits one alignment unit"""
    return FILE_ALIGNMENT * (section + 1)


class FakeDecoder(Decoder):
    """
    One-byte opcode table:

        90        nop
        C3        ret
        CC        int3
        E8 rel8   call  (2 bytes, target = next + rel8)
        EB rel8   jmp   (2 bytes)
        B0 imm8   mov al, imm8
        anything else is invalid
    """

    def __init__(self):
        self.calls = 0

    def decode(self, code: bytes, address: int, bits: int) -> DecodeResult:
        self.calls += 1
        if not code:
            return INVALID_DECODE
        op = code[0]
        if op == 0x90:
            return DecodeResult(True, 1, 'nop', '', is_nop=True)
        if op == 0xC3:
            return DecodeResult(True, 1, 'ret', '', FlowClass.RETURN)
        if op == 0xCC:
            return DecodeResult(True, 1, 'int3', '')
        if op in (0xE8, 0xEB) and len(code) >= 2:
            rel = code[1] - 0x100 if code[1] >= 0x80 else code[1]
            target = address + 2 + rel
            flow = FlowClass.CALL if op == 0xE8 else FlowClass.JUMP
            return DecodeResult(True, 2, 'call' if op == 0xE8 else 'jmp', f'0x{target:x}', flow,
                                operands=(Operand(OperandKind.NEAR_BRANCH, size=8, value=target),))
        if op == 0xB0 and len(code) >= 2:
            return DecodeResult(True, 2, 'mov', f'al, 0x{code[1]:x}',
                                operands=(Operand(OperandKind.REGISTER, 1, register='al'),
                                          Operand(OperandKind.IMMEDIATE, 1, value=code[1])),
                                immediate_size=1)
        return INVALID_DECODE


@pytest.fixture
def fake_decoder():
    return FakeDecoder()


@pytest.fixture
def pe64():
    """mov eax, 1 ; ret"""
    return build_pe(bytes.fromhex('B801000000C3'))
