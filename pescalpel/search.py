"""
Byte, wildcard-pattern, instruction and reference searches.
"""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

from .instruction import Instruction
from .xrefs import XRefMap

_HEX_SEPARATORS = re.compile(r'[\s,]+')


@dataclass
class SearchResult:
    address: int
    offset: int                 # -1 when the hit has no file offset
    result_type: str            # "byte", "pattern", "instruction", "xref_<type>"
    description: Optional[str] = None
    data: Optional[bytes] = None

    def __str__(self):
        return f"0x{self.address:X}: {self.description} ({self.result_type})"


# ============================================================================
# Bytes
# ============================================================================

def hex_string_to_bytes(text: str) -> Optional[bytes]:
    """'48 89 E5' or '4889e5' -> bytes, None if malformed"""
    cleaned = _HEX_SEPARATORS.sub('', text or '')
    if cleaned.lower().startswith('0x'):
        cleaned = cleaned[2:]
    if not cleaned or len(cleaned) % 2:
        return None
    try:
        return bytes.fromhex(cleaned)
    except ValueError:
        return None


def search_bytes(data: bytes, needle: bytes) -> List[SearchResult]:
    """Every (overlapping) occurrence of ``needle``; address is the file offset"""
    results = []
    if not needle or len(needle) > len(data):
        return results
    start = data.find(needle)
    while start != -1:
        results.append(SearchResult(start, start, "byte", "Byte sequence match", bytes(needle)))
        start = data.find(needle, start + 1)
    return results


def parse_byte_pattern(pattern: str) -> Optional[Tuple[bytes, Tuple[bool, ...]]]:
    """
    Parse "48 8B ?? 05" into (bytes, mask). A mask entry is False for a
    wildcard position. Tokens must be separated by whitespace.
    """
    tokens = (pattern or '').split()
    if not tokens:
        return None
    values = bytearray()
    mask = []
    for token in tokens:
        if token in ('?', '??'):
            values.append(0)
            mask.append(False)
            continue
        if len(token) != 2:
            return None
        try:
            values.append(int(token, 16))
        except ValueError:
            return None
        mask.append(True)
    return bytes(values), tuple(mask)


def find_byte_pattern(data: bytes, pattern: str, description: Optional[str] = None) -> List[SearchResult]:
    parsed = parse_byte_pattern(pattern)
    if parsed is None:
        return []
    values, mask = parsed
    size = len(values)

    # anchor on the first concrete byte when there is one
    anchor = next((i for i, concrete in enumerate(mask) if concrete), None)
    results = []
    pos = 0
    while pos <= len(data) - size:
        if anchor is not None:
            hit = data.find(values[anchor:anchor + 1], pos + anchor)
            if hit == -1:
                break
            pos = hit - anchor
            if pos > len(data) - size:
                break
        if all(not concrete or data[pos + i] == values[i] for i, concrete in enumerate(mask)):
            results.append(SearchResult(pos, pos, "pattern", description, bytes(data[pos:pos + size])))
        pos += 1
    return results


# ============================================================================
# Instructions
# ============================================================================

def search_instructions(instructions: Iterable[Instruction], predicate: Callable[[Instruction], bool],
                        result_type: str = "instruction") -> List[SearchResult]:
    return [
        SearchResult(insn.address, insn.file_offset, result_type, insn.text, insn.raw)
        for insn in instructions if predicate(insn)
    ]


def search_instructions_by_mnemonic(instructions: Iterable[Instruction], mnemonic: str) -> List[SearchResult]:
    wanted = mnemonic.lower()
    return search_instructions(instructions, lambda insn: insn.mnemonic.lower() == wanted)


# ============================================================================
# Cross-references
# ============================================================================

def find_references_to(address: int, xrefs: XRefMap) -> List[SearchResult]:
    return [
        SearchResult(source, -1, f"xref_{ref.ref_type}", f"Reference from 0x{source:X} ({ref.ref_type})")
        for source, refs in xrefs.items()
        for ref in refs if ref.target == address
    ]


def find_references_from(address: int, xrefs: XRefMap) -> List[SearchResult]:
    return [
        SearchResult(ref.target, -1, f"xref_{ref.ref_type}", f"Reference to 0x{ref.target:X} ({ref.ref_type})")
        for ref in xrefs.get(address, ())
    ]
