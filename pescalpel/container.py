"""
PE container parser.

Walks the header chain of a PE32 / PE32+ image using only :mod:`struct`:

    MZ signature -> e_lfanew (0x3C) -> "PE\\0\\0" -> COFF file header
    -> optional header (magic 0x10B / 0x20B) -> section table

No loader work is done (no relocations, no imports). Bitness comes from the
optional header magic and nothing else.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import BoundsError, FormatError

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

DOS_SIGNATURE = 0x5A4D          # "MZ"
PE_SIGNATURE = 0x00004550       # "PE\0\0"
E_LFANEW_OFFSET = 0x3C

FILE_HEADER_SIZE = 20
SECTION_HEADER_SIZE = 40

PE32_MAGIC = 0x10B
PE32PLUS_MAGIC = 0x20B

# Fields we read from the optional header, up to and including FileAlignment
OPTIONAL_HEADER_MIN_SIZE = 40

IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000
IMAGE_SCN_MEM_WRITE = 0x80000000

IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_ARM64 = 0xAA64

MACHINE_NAMES = {
    0x0: "Unknown",
    IMAGE_FILE_MACHINE_I386: "x86",
    IMAGE_FILE_MACHINE_AMD64: "x86_64",
    IMAGE_FILE_MACHINE_ARM64: "ARM64",
    0x1C0: "ARM",
    0x1C4: "ARM Thumb-2",
    0x200: "IA64",
}


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class Section:
    """One section table entry"""
    name: str                   # up to 8 raw characters, not necessarily unique
    virtual_address: int        # RVA
    virtual_size: int
    raw_offset: int             # PointerToRawData
    raw_size: int               # SizeOfRawData
    characteristics: int

    @property
    def is_executable(self) -> bool:
        return bool(self.characteristics & IMAGE_SCN_MEM_EXECUTE)

    @property
    def is_readable(self) -> bool:
        return bool(self.characteristics & IMAGE_SCN_MEM_READ)

    @property
    def is_writable(self) -> bool:
        return bool(self.characteristics & IMAGE_SCN_MEM_WRITE)

    @property
    def raw_end(self) -> int:
        return self.raw_offset + self.raw_size

    def flags(self) -> List[str]:
        flags = []
        if self.is_executable:
            flags.append("EXEC")
        if self.is_readable:
            flags.append("READ")
        if self.is_writable:
            flags.append("WRITE")
        return flags

    def contains_rva(self, rva: int) -> bool:
        size = max(self.raw_size, self.virtual_size)
        return self.virtual_address <= rva < self.virtual_address + size


@dataclass
class ImageInfo:
    """Parsed header chain of one image"""
    is_valid: bool = False
    is_truncated: bool = False      # headers parsed but the section table was cut short
    bitness: int = 0                # 32 or 64, from the optional header magic only
    magic: int = 0
    pe_offset: int = 0
    machine: int = 0
    number_of_sections: int = 0
    timestamp: int = 0
    size_of_optional_header: int = 0
    characteristics: int = 0
    entry_point_rva: int = 0
    base_of_code: int = 0
    image_base: int = 0
    section_alignment: int = 0
    file_alignment: int = 0
    size_of_image: int = 0
    size_of_headers: int = 0
    subsystem: int = 0
    dll_characteristics: int = 0
    sections: List[Section] = field(default_factory=list)

    @property
    def is_64bit(self) -> bool:
        return self.bitness == 64

    @property
    def machine_name(self) -> str:
        return MACHINE_NAMES.get(self.machine, f"0x{self.machine:X}")

    @property
    def entry_point(self) -> int:
        """Entry point as a virtual address"""
        return self.image_base + self.entry_point_rva

    def executable_sections(self) -> List[Tuple[int, Section]]:
        """(index, section) for every executable section, in container order"""
        return [(i, s) for i, s in enumerate(self.sections) if s.is_executable]

    def section_for_rva(self, rva: int) -> Optional[Section]:
        for section in self.sections:
            if section.contains_rva(rva):
                return section
        return None

    def rva_to_offset(self, rva: int) -> Optional[int]:
        """
        Convert RVA to file offset.

        The range check uses max(SizeOfRawData, VirtualSize) but an RVA in
        the virtual-only tail of a section has no file offset.
        """
        section = self.section_for_rva(rva)
        if section is None:
            return None
        offset_in_section = rva - section.virtual_address
        if offset_in_section < section.raw_size:
            return section.raw_offset + offset_in_section
        return None

    def offset_to_rva(self, offset: int) -> Optional[int]:
        for section in self.sections:
            if section.raw_offset <= offset < section.raw_end:
                return section.virtual_address + (offset - section.raw_offset)
        return None


# ============================================================================
# Parser
# ============================================================================

def _read(fmt: str, data: bytes, offset: int, what: str):
    size = struct.calcsize(fmt)
    if offset < 0 or offset + size > len(data):
        raise BoundsError(f"{what} at 0x{offset:X} (+{size}) runs past end of buffer (0x{len(data):X})")
    return struct.unpack_from(fmt, data, offset)


def parse_image(data: bytes) -> ImageInfo:
    """
    Parse the PE header chain.

    Raises FormatError for a wrong signature or magic, BoundsError when the
    DOS, file or optional header is cut short. A section table that runs past the
    end of the buffer is not an error: the records read so far are kept and
    ``is_truncated`` is set.
    """
    info = ImageInfo()

    # 1. DOS signature
    if len(data) < 2 or struct.unpack_from('<H', data, 0)[0] != DOS_SIGNATURE:
        raise FormatError("Missing MZ signature")

    # 2. e_lfanew
    pe_offset = _read('<I', data, E_LFANEW_OFFSET, "e_lfanew")[0]

    # 3. PE signature
    if _read('<I', data, pe_offset, "PE signature")[0] != PE_SIGNATURE:
        raise FormatError(f"Missing PE signature at 0x{pe_offset:X}")
    info.pe_offset = pe_offset

    # 4. COFF file header
    file_header_offset = pe_offset + 4
    (info.machine, info.number_of_sections, info.timestamp, _symbol_ptr, _symbol_count,
     info.size_of_optional_header, info.characteristics) = _read(
        '<HHIIIHH', data, file_header_offset, "File header")

    # 5. Optional header
    opt_offset = file_header_offset + FILE_HEADER_SIZE
    magic = _read('<H', data, opt_offset, "Optional header magic")[0]
    if magic == PE32_MAGIC:
        info.bitness = 32
        (info.entry_point_rva, info.base_of_code, _base_of_data, info.image_base,
         info.section_alignment, info.file_alignment) = _read(
            '<IIIIII', data, opt_offset + 16, "PE32 optional header")
    elif magic == PE32PLUS_MAGIC:
        info.bitness = 64
        (info.entry_point_rva, info.base_of_code, info.image_base,
         info.section_alignment, info.file_alignment) = _read(
            '<IIQII', data, opt_offset + 16, "PE32+ optional header")
    else:
        raise FormatError(f"Unknown PE magic: 0x{magic:X}")
    info.magic = magic

    # Trailing fields are identical in both shapes; only read them when the
    # declared optional header covers them.
    if info.size_of_optional_header >= 72 and opt_offset + 72 <= len(data):
        (info.size_of_image, info.size_of_headers, _checksum,
         info.subsystem, info.dll_characteristics) = struct.unpack_from('<IIIHH', data, opt_offset + 56)

    info.is_valid = True

    # 6. Section table
    table_offset = opt_offset + info.size_of_optional_header
    for i in range(info.number_of_sections):
        entry = table_offset + i * SECTION_HEADER_SIZE
        if entry + SECTION_HEADER_SIZE > len(data):
            info.is_truncated = True
            logger.warning("Section table truncated: read %d of %d section headers",
                           len(info.sections), info.number_of_sections)
            break
        (raw_name, virtual_size, virtual_address, raw_size, raw_offset,
         _reloc_ptr, _line_ptr, _reloc_count, _line_count, characteristics) = struct.unpack_from(
            '<8sIIIIIIHHI', data, entry)
        info.sections.append(Section(
            name=raw_name.decode('utf-8', errors='ignore').rstrip('\x00'),
            virtual_address=virtual_address,
            virtual_size=virtual_size,
            raw_offset=raw_offset,
            raw_size=raw_size,
            characteristics=characteristics,
        ))

    logger.debug("Parsed PE%s image: machine=%s, %d section(s), image base 0x%X",
                 "32+" if info.is_64bit else "32", info.machine_name,
                 len(info.sections), info.image_base)
    return info
