"""
Address / file offset / instruction index lookups over one decoded stream.

The index is built once per instruction stream in O(n). Exact instruction
starts are dictionary hits; addresses or offsets inside an instruction fall
back to a bisect over the sorted starts. Validity is all-or-nothing: a stale
index answers every lookup with None.
"""

import logging
from bisect import bisect_right
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .instruction import Instruction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheStats:
    entries: int
    is_valid: bool
    range_start: int
    range_end: int          # exclusive

    @property
    def range_size(self) -> int:
        return self.range_end - self.range_start

    def __str__(self):
        if not self.is_valid:
            return "Cache: Invalid"
        return (f"Cache: {self.entries} instructions, Range: 0x{self.range_start:X}-0x{self.range_end:X} "
                f"({self.range_size} bytes)")


class AddressIndex:
    """Bidirectional address <-> offset <-> instruction index mapping"""

    def __init__(self, instructions: Optional[Sequence[Instruction]] = None):
        self._instructions: Tuple[Instruction, ...] = ()
        self._by_address: Dict[int, int] = {}
        self._by_offset: Dict[int, int] = {}
        self._address_keys: List[int] = []
        self._address_order: List[int] = []
        self._offset_keys: List[int] = []
        self._offset_order: List[int] = []
        self._valid = False
        self._range_start = 0
        self._range_end = 0
        if instructions is not None:
            self.build(instructions)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def build(self, instructions: Sequence[Instruction]):
        self._instructions = tuple(instructions)
        self._by_address = {}
        self._by_offset = {}
        for i, insn in enumerate(self._instructions):
            self._by_address.setdefault(insn.address, i)
            self._by_offset.setdefault(insn.file_offset, i)

        # sections are in container order, which need not be address order
        self._address_order = sorted(self._by_address.values(), key=lambda i: self._instructions[i].address)
        self._address_keys = [self._instructions[i].address for i in self._address_order]
        self._offset_order = sorted(self._by_offset.values(), key=lambda i: self._instructions[i].file_offset)
        self._offset_keys = [self._instructions[i].file_offset for i in self._offset_order]

        if not self._instructions:
            self.invalidate()
            return

        self._range_start = min(insn.address for insn in self._instructions)
        self._range_end = max(insn.end_address for insn in self._instructions)
        self._valid = True
        logger.debug("%s", self.stats())

    def invalidate(self):
        self._valid = False
        self._range_start = 0
        self._range_end = 0

    def invalidate_range(self, start: int, end: int) -> bool:
        """
        Invalidate when the address range [start, end) intersects the cached
        span. Returns True if the index went stale.
        """
        if not self._valid:
            return False
        if start < self._range_end and end > self._range_start:
            logger.debug("Address range 0x%X-0x%X overlaps cache, invalidating", start, end)
            self.invalidate()
            return True
        return False

    def clear(self):
        self._instructions = ()
        self._by_address.clear()
        self._by_offset.clear()
        self._address_keys.clear()
        self._address_order.clear()
        self._offset_keys.clear()
        self._offset_order.clear()
        self.invalidate()

    @property
    def is_valid(self) -> bool:
        return self._valid

    def stats(self) -> CacheStats:
        return CacheStats(
            entries=len(self._by_address),
            is_valid=self._valid,
            range_start=self._range_start,
            range_end=self._range_end,
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def address_to_instruction_index(self, address: int) -> Optional[int]:
        if not self._valid:
            return None
        hit = self._by_address.get(address)
        if hit is not None:
            return hit
        pos = bisect_right(self._address_keys, address) - 1
        if pos >= 0:
            i = self._address_order[pos]
            if address < self._instructions[i].end_address:
                return i
        return None

    def offset_to_instruction_index(self, offset: int) -> Optional[int]:
        if not self._valid:
            return None
        hit = self._by_offset.get(offset)
        if hit is not None:
            return hit
        pos = bisect_right(self._offset_keys, offset) - 1
        if pos >= 0:
            i = self._offset_order[pos]
            if offset < self._instructions[i].end_offset:
                return i
        return None

    def address_to_offset(self, address: int) -> Optional[int]:
        i = self.address_to_instruction_index(address)
        if i is None:
            return None
        insn = self._instructions[i]
        return insn.file_offset + (address - insn.address)

    def offset_to_address(self, offset: int) -> Optional[int]:
        i = self.offset_to_instruction_index(offset)
        if i is None:
            return None
        insn = self._instructions[i]
        return insn.address + (offset - insn.file_offset)

    def instruction_at(self, address: int) -> Optional[Instruction]:
        """Instruction starting exactly at ``address``"""
        if not self._valid:
            return None
        i = self._by_address.get(address)
        return self._instructions[i] if i is not None else None

    def instruction_at_offset(self, offset: int) -> Optional[Instruction]:
        if not self._valid:
            return None
        i = self._by_offset.get(offset)
        return self._instructions[i] if i is not None else None

    def instructions_in_range(self, start: int, end: int) -> List[Instruction]:
        """Instructions whose start address lies in [start, end), address ordered"""
        if not self._valid:
            return []
        lo = bisect_right(self._address_keys, start - 1)
        hi = bisect_right(self._address_keys, end - 1)
        return [self._instructions[i] for i in self._address_order[lo:hi]]

    # ------------------------------------------------------------------
    # Batch metadata
    # ------------------------------------------------------------------

    def batch_update_metadata(self, updates: Iterable[Tuple[int, Optional[int], Optional[str]]]) -> int:
        """
        Apply (address, function_address, symbol_name) triples. A None name
        keeps the current one. Returns count applied.
        """
        applied = 0
        for address, function_address, symbol_name in updates:
            insn = self.instruction_at(address)
            if insn is None:
                continue
            insn.meta.function_address = function_address
            if symbol_name is not None:
                insn.meta.symbol_name = symbol_name
            applied += 1
        return applied

    def lazy_load_annotations(self, provider: Callable[[int], Optional[str]]) -> int:
        """Fill empty annotations from ``provider(address)``. Returns count filled."""
        if not self._valid:
            return 0
        filled = 0
        for insn in self._instructions:
            if not insn.meta.annotation:
                annotation = provider(insn.address)
                if annotation:
                    insn.meta.annotation = annotation
                    filled += 1
        return filled
