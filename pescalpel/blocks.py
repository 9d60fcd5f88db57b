"""
Basic blocks and the control-flow graph over an instruction stream.

A block starts at the first instruction of a section, at a jump target, at
a function start, and right after a ret / jmp / jcc. Calls do not end a
block. Edges:

    jmp     -> target
    jcc     -> fall-through, target
    ret     -> (none)
    other   -> fall-through (same section only)
"""

import logging
from bisect import bisect_right, insort
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set

from .instruction import Instruction

logger = logging.getLogger(__name__)


@dataclass
class BasicBlock:
    start: int
    end: int                    # exclusive
    start_index: int
    end_index: int              # inclusive
    successors: List[int] = field(default_factory=list)
    predecessors: List[int] = field(default_factory=list)
    function_address: Optional[int] = None
    is_entry: bool = False

    @property
    def instruction_count(self) -> int:
        return self.end_index - self.start_index + 1

    @property
    def is_exit(self) -> bool:
        return not self.successors

    def __contains__(self, address: int) -> bool:
        return self.start <= address < self.end

    def __str__(self):
        return (f"Block @ 0x{self.start:X}: [{self.start_index}, {self.end_index}] "
                f"({self.instruction_count} instrs)")


class ControlFlowGraph:
    """Blocks keyed by start address, with successor / predecessor edges"""

    def __init__(self):
        self.blocks: Dict[int, BasicBlock] = {}
        self.entry_points: List[int] = []
        self._starts: List[int] = []

    def add_block(self, block: BasicBlock):
        if block.start not in self.blocks:
            insort(self._starts, block.start)
        self.blocks[block.start] = block
        if block.is_entry and block.start not in self.entry_points:
            self.entry_points.append(block.start)

    def add_edge(self, source: int, target: int) -> bool:
        src = self.blocks.get(source)
        dst = self.blocks.get(target)
        if src is None or dst is None or target in src.successors:
            return False
        src.successors.append(target)
        dst.predecessors.append(source)
        return True

    def block_at(self, address: int) -> Optional[BasicBlock]:
        return self.blocks.get(address)

    def block_containing(self, address: int) -> Optional[BasicBlock]:
        pos = bisect_right(self._starts, address) - 1
        if pos < 0:
            return None
        block = self.blocks[self._starts[pos]]
        return block if address in block else None

    def successors(self, block: BasicBlock) -> List[BasicBlock]:
        return [self.blocks[a] for a in block.successors if a in self.blocks]

    def predecessors(self, block: BasicBlock) -> List[BasicBlock]:
        return [self.blocks[a] for a in block.predecessors if a in self.blocks]

    def blocks_of_function(self, function_address: int) -> List[BasicBlock]:
        return [self.blocks[a] for a in self._starts
                if self.blocks[a].function_address == function_address]

    def traverse_dfs(self, start: int) -> Iterator[BasicBlock]:
        """Depth-first, lower successor addresses first"""
        visited: Set[int] = set()
        stack = [start]
        while stack:
            address = stack.pop()
            if address in visited or address not in self.blocks:
                continue
            visited.add(address)
            block = self.blocks[address]
            yield block
            for succ in sorted(block.successors, reverse=True):
                if succ not in visited:
                    stack.append(succ)

    def traverse_bfs(self, start: int) -> Iterator[BasicBlock]:
        visited: Set[int] = set()
        queue = deque([start])
        while queue:
            address = queue.popleft()
            if address in visited or address not in self.blocks:
                continue
            visited.add(address)
            block = self.blocks[address]
            yield block
            for succ in block.successors:
                if succ not in visited:
                    queue.append(succ)

    @property
    def edge_count(self) -> int:
        return sum(len(b.successors) for b in self.blocks.values())

    @property
    def total_instructions(self) -> int:
        return sum(b.instruction_count for b in self.blocks.values())

    def __len__(self):
        return len(self.blocks)

    def __iter__(self) -> Iterator[BasicBlock]:
        return (self.blocks[a] for a in self._starts)

    def __str__(self):
        return f"CFG: {len(self.blocks)} blocks, {self.total_instructions} instructions"


def _ends_block(insn: Instruction) -> bool:
    return insn.is_return or insn.is_jump or insn.is_conditional_jump


def _block_starts(instructions: Sequence[Instruction], extra: Set[int]) -> Set[int]:
    starts = set(extra)
    for i, insn in enumerate(instructions):
        if i == 0 or instructions[i - 1].section_index != insn.section_index:
            starts.add(insn.address)
        if _ends_block(insn) and i + 1 < len(instructions):
            starts.add(instructions[i + 1].address)
        if insn.is_jump or insn.is_conditional_jump:
            target = insn.branch_target
            if target is not None:
                starts.add(target)
    return starts


def build_cfg(instructions: Sequence[Instruction], entry_address: Optional[int] = None,
              function_owners: Optional[Dict[int, int]] = None) -> ControlFlowGraph:
    """
    Split ``instructions`` into basic blocks and connect them.

    ``function_owners`` (instruction address -> function address, as from
    ``function_owner_map``) makes every function start a block start and
    fills ``BasicBlock.function_address``. Targets that are not decoded
    instruction starts are ignored.
    """
    cfg = ControlFlowGraph()
    if not instructions:
        return cfg

    owners = function_owners or {}
    extra = set(owners.values())
    if entry_address is not None:
        extra.add(entry_address)
    starts = _block_starts(instructions, extra)

    # Linear pass: a block runs until the next instruction that is a start
    count = len(instructions)
    first = 0
    for i in range(count):
        if i + 1 < count and instructions[i + 1].address not in starts:
            continue
        head = instructions[first]
        cfg.add_block(BasicBlock(
            start=head.address,
            end=instructions[i].end_address,
            start_index=first,
            end_index=i,
            function_address=owners.get(head.address),
            is_entry=head.address == entry_address,
        ))
        first = i + 1

    for block in list(cfg):
        last = instructions[block.end_index]
        following = None
        if block.end_index + 1 < count:
            nxt = instructions[block.end_index + 1]
            if nxt.section_index == last.section_index:
                following = nxt.address

        if last.is_jump:
            targets = [last.branch_target]
        elif last.is_conditional_jump:
            targets = [following, last.branch_target]
        elif last.is_return:
            targets = []
        else:
            targets = [following]
        for target in targets:
            if target is not None:
                cfg.add_edge(block.start, target)

    logger.debug("Built %d block(s), %d edge(s)", len(cfg), cfg.edge_count)
    return cfg


def annotate_blocks(instructions: Sequence[Instruction], cfg: ControlFlowGraph) -> int:
    """Set ``meta.basic_block_address`` on every instruction covered by a block"""
    annotated = 0
    for block in cfg:
        for i in range(block.start_index, block.end_index + 1):
            instructions[i].meta.basic_block_address = block.start
            annotated += 1
    return annotated
