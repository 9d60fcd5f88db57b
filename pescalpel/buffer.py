"""
Mutable byte buffer with an original snapshot, and the patch ledger.

``HexBuffer`` holds three same-length arrays: the current bytes, the
original bytes captured at load time, and a write-intent mask. Modification
queries compare content against the snapshot; the mask only records that a
write happened.

``PatchLedger`` is the audited write path: every successful ``apply`` leaves
one immutable ``Patch`` record behind.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Tuple

from .errors import PatchRangeError

logger = logging.getLogger(__name__)

BYTES_PER_ROW = 16


# ============================================================================
# Byte Buffer
# ============================================================================

class HexBuffer:
    """Current bytes, original snapshot and per-byte write mask"""

    def __init__(self, data: bytes, file_path: str = ""):
        self._bytes = bytearray(data)
        self._original = bytes(data)
        self._mask = bytearray(len(data))
        self.file_path = file_path or ""

    def __len__(self) -> int:
        return len(self._bytes)

    def __getitem__(self, index):
        return self._bytes[index]

    @property
    def data(self) -> bytes:
        """Snapshot copy of the current bytes"""
        return bytes(self._bytes)

    @property
    def original(self) -> bytes:
        return self._original

    def view(self) -> memoryview:
        """Read-only view of the current bytes (invalidated by the next write)"""
        return memoryview(self._bytes).toreadonly()

    def is_marked(self, offset: int) -> bool:
        """Raw mask value: was this byte written since load / the last reset"""
        if 0 <= offset < len(self._mask):
            return bool(self._mask[offset])
        return False

    # ------------------------------------------------------------------
    # Raw writes: out-of-range input is ignored
    # ------------------------------------------------------------------

    def write_byte(self, offset: int, value: int) -> bool:
        if offset < 0 or offset >= len(self._bytes) or not 0 <= value <= 0xFF:
            return False
        self._bytes[offset] = value
        self._mask[offset] = 1
        return True

    def write_bytes(self, offset: int, values: bytes) -> bool:
        if not values:
            return False
        if offset < 0 or offset + len(values) > len(self._bytes):
            return False
        self._bytes[offset:offset + len(values)] = values
        self._mask[offset:offset + len(values)] = b'\x01' * len(values)
        return True

    def read(self, offset: int, size: int) -> bytes:
        if offset < 0 or size <= 0:
            return b''
        return bytes(self._bytes[offset:offset + size])

    # ------------------------------------------------------------------
    # Modification state
    # ------------------------------------------------------------------

    def is_modified(self, offset: int) -> bool:
        if 0 <= offset < len(self._bytes):
            return self._bytes[offset] != self._original[offset]
        return False

    def get_modified_bytes(self) -> Iterator[Tuple[int, int, int]]:
        """(offset, original, current) for every byte whose content differs"""
        for i, (old, new) in enumerate(zip(self._original, self._bytes)):
            if old != new:
                yield i, old, new

    def get_modified_ranges(self) -> List[Tuple[int, int]]:
        """Maximal runs of differing bytes as inclusive (start, end) pairs"""
        ranges = []
        start = None
        for i, (old, new) in enumerate(zip(self._original, self._bytes)):
            if old != new:
                if start is None:
                    start = i
            elif start is not None:
                ranges.append((start, i - 1))
                start = None
        if start is not None:
            ranges.append((start, len(self._bytes) - 1))
        return ranges

    def get_modified_count(self) -> int:
        return sum(1 for _ in self.get_modified_bytes())

    def has_modifications_in_range(self, start: int, end: int) -> bool:
        for i in range(max(0, start), min(len(self._bytes) - 1, end) + 1):
            if self._bytes[i] != self._original[i]:
                return True
        return False

    def reset_modifications(self):
        """Clear the write mask. Content is left as it is."""
        self._mask[:] = bytes(len(self._mask))

    def revert_to_original(self):
        """Restore every byte from the snapshot and clear the mask"""
        self._bytes[:] = self._original
        self.reset_modifications()

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    def hex_string(self, start: int, end: int) -> str:
        """Space separated hex for the inclusive range [start, end], clamped"""
        start = max(start, 0)
        end = min(end, len(self._bytes) - 1)
        if start > end:
            return ""
        return ' '.join(f"{b:02X}" for b in self._bytes[start:end + 1])

    def ascii_string(self, start: int, end: int) -> str:
        start = max(start, 0)
        end = min(end, len(self._bytes) - 1)
        if start > end:
            return ""
        return ''.join(chr(b) if 32 <= b <= 126 else '.' for b in self._bytes[start:end + 1])

    def line_string(self, offset: int) -> str:
        """Classic 16-byte dump row containing ``offset``"""
        if offset < 0 or offset >= len(self._bytes):
            return ""
        row_start = (offset // BYTES_PER_ROW) * BYTES_PER_ROW
        row_end = min(row_start + BYTES_PER_ROW, len(self._bytes)) - 1
        hex_part = self.hex_string(row_start, row_end).ljust(BYTES_PER_ROW * 3 - 1)
        return f"{row_start:08X}  {hex_part}  |{self.ascii_string(row_start, row_end)}|"


# ============================================================================
# Patch Ledger
# ============================================================================

@dataclass(frozen=True)
class Patch:
    """One applied patch with the bytes it replaced"""
    offset: int
    original_bytes: bytes
    new_bytes: bytes
    description: str = ""

    @property
    def size(self) -> int:
        return len(self.new_bytes)

    @property
    def end(self) -> int:
        return self.offset + len(self.new_bytes)

    def to_dict(self) -> dict:
        return {
            'offset': self.offset,
            'original': self.original_bytes.hex(),
            'new': self.new_bytes.hex(),
            'description': self.description,
        }

    def __repr__(self):
        return f"Patch(0x{self.offset:X}, {self.original_bytes.hex()} -> {self.new_bytes.hex()}, {self.description!r})"


class PatchLedger:
    """Ordered, append-only history of patches applied to one buffer"""

    def __init__(self, buffer: HexBuffer):
        if buffer is None:
            raise TypeError("PatchLedger requires a HexBuffer")
        self.buffer = buffer
        self._patches: List[Patch] = []

    def __len__(self) -> int:
        return len(self._patches)

    def __iter__(self) -> Iterator[Patch]:
        return iter(self._patches)

    @property
    def patches(self) -> Tuple[Patch, ...]:
        return tuple(self._patches)

    def validate(self, offset: int, new_bytes: bytes):
        if not new_bytes:
            raise PatchRangeError(offset, 0, len(self.buffer))
        if offset < 0 or offset + len(new_bytes) > len(self.buffer):
            raise PatchRangeError(offset, len(new_bytes), len(self.buffer))

    def apply(self, offset: int, new_bytes: bytes, description: str = "") -> Patch:
        """
        Write ``new_bytes`` at ``offset`` and record the patch.

        Raises PatchRangeError before touching the buffer when the payload is
        empty or does not fit.
        """
        new_bytes = bytes(new_bytes)
        self.validate(offset, new_bytes)

        original = self.buffer.read(offset, len(new_bytes))
        self.buffer.write_bytes(offset, new_bytes)

        patch = Patch(offset=offset, original_bytes=original,
                      new_bytes=new_bytes, description=description)
        self._patches.append(patch)
        logger.debug("Applied %r", patch)
        return patch

    def clear(self):
        self._patches.clear()

    def flat_patch_list(self) -> Iterator[Tuple[int, int]]:
        """(offset, value) for every byte written, in application order"""
        for patch in self._patches:
            for i, value in enumerate(patch.new_bytes):
                yield patch.offset + i, value

    def replay(self, target: HexBuffer) -> int:
        """Re-apply the history onto another buffer. Returns patches applied."""
        applied = 0
        for patch in self._patches:
            if target.write_bytes(patch.offset, patch.new_bytes):
                applied += 1
        return applied

    def to_text(self) -> str:
        """Human readable byte diff: one ``offset old new`` line per byte"""
        lines = ["# pescalpel patch file", "# Format: offset old new", ""]
        for patch in self._patches:
            if patch.description:
                lines.append(f"# {patch.description}")
            for i, (old, new) in enumerate(zip(patch.original_bytes, patch.new_bytes)):
                lines.append(f"{patch.offset + i:08X} {old:02X} {new:02X}")
        return "\n".join(lines) + "\n"

    def to_dicts(self) -> List[dict]:
        return [p.to_dict() for p in self._patches]
