"""
Function discovery and per-instruction analysis metadata.

Functions are found from three heuristics: the image entry point, x86
prologues, and direct call targets. Ownership is an address-keyed map
(instruction address -> function address), never a back-pointer.
"""

import logging
from bisect import bisect_right
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from .instruction import Instruction, OperandKind

logger = logging.getLogger(__name__)

SOURCE_ENTRY = "entry"
SOURCE_PROLOGUE = "prologue"
SOURCE_CALL = "call"

_FRAME_SETUP = {('rbp', 'rsp'), ('ebp', 'esp')}
_STACK_REGS = {'rsp', 'esp'}


@dataclass
class Function:
    address: int
    name: Optional[str] = None
    source: str = SOURCE_PROLOGUE
    instruction_count: int = 0

    def __str__(self):
        return f"Function @ 0x{self.address:X}: {self.name or 'unnamed'} ({self.instruction_count} instrs, src={self.source})"


def _base_mnemonic(insn: Instruction) -> str:
    return insn.mnemonic.split()[-1].lower() if insn.mnemonic else ""


def _is_padding(insn: Instruction) -> bool:
    return insn.is_nop or _base_mnemonic(insn) == 'int3'


def _is_frame_prologue(first: Instruction, second: Instruction) -> bool:
    """push rbp ; mov rbp, rsp (or the 32-bit spelling)"""
    if _base_mnemonic(first) != 'push' or _base_mnemonic(second) != 'mov':
        return False
    if len(first.operands) != 1 or first.operands[0].kind is not OperandKind.REGISTER:
        return False
    ops = second.operands
    if len(ops) != 2 or any(op.kind is not OperandKind.REGISTER for op in ops):
        return False
    pair = (ops[0].register, ops[1].register)
    return pair in _FRAME_SETUP and first.operands[0].register == pair[0]


def _is_stack_alloc(insn: Instruction) -> bool:
    """sub rsp, imm"""
    ops = insn.operands
    return (_base_mnemonic(insn) == 'sub' and len(ops) == 2
            and ops[0].kind is OperandKind.REGISTER and ops[0].register in _STACK_REGS
            and ops[1].kind is OperandKind.IMMEDIATE)


def _follows_boundary(instructions: Sequence[Instruction], i: int) -> bool:
    """Start of a section, or right after a return / padding run"""
    if i == 0:
        return True
    prev = instructions[i - 1]
    if prev.section_index != instructions[i].section_index:
        return True
    return prev.is_return or _is_padding(prev) or prev.is_jump


def find_functions(instructions: Sequence[Instruction], entry_address: Optional[int] = None) -> List[Function]:
    """Discover function starts. Result is sorted by address."""
    functions: Dict[int, Function] = {}
    if not instructions:
        return []

    starts = {insn.address for insn in instructions}

    # Entry point
    entry = entry_address if entry_address in starts else instructions[0].address
    functions[entry] = Function(address=entry, name="_entry", source=SOURCE_ENTRY)

    # Prologues
    prologues = 0
    for i, insn in enumerate(instructions):
        if insn.address in functions:
            continue
        if i + 1 < len(instructions) and _is_frame_prologue(insn, instructions[i + 1]):
            found = True
        else:
            found = _is_stack_alloc(insn) and _follows_boundary(instructions, i)
        if found:
            functions[insn.address] = Function(address=insn.address, source=SOURCE_PROLOGUE)
            prologues += 1

    # Direct call targets
    calls = 0
    for insn in instructions:
        if not insn.is_call:
            continue
        target = insn.branch_target
        if target is not None and target in starts and target not in functions:
            functions[target] = Function(address=target, source=SOURCE_CALL)
            calls += 1

    result = sorted(functions.values(), key=lambda f: f.address)
    for func in result:
        if func.name is None:
            func.name = f"sub_{func.address:X}"

    counts: Dict[int, int] = defaultdict(int)
    for owner in function_owner_map(instructions, result).values():
        counts[owner] += 1
    for func in result:
        func.instruction_count = counts.get(func.address, 0)

    logger.info("Found %d function(s): entry + %d prologue, %d call target",
                len(result), prologues, calls)
    return result


def function_owner_map(instructions: Sequence[Instruction], functions: Sequence[Function]) -> Dict[int, int]:
    """
    instruction address -> address of the function it belongs to.

    An instruction belongs to the nearest function start at or below it in
    the same section. Instructions ahead of the first start are unowned.
    """
    section_of = {insn.address: insn.section_index for insn in instructions}
    starts_by_section: Dict[int, List[int]] = defaultdict(list)
    for func in functions:
        section = section_of.get(func.address)
        if section is not None:
            starts_by_section[section].append(func.address)
    for starts in starts_by_section.values():
        starts.sort()

    owners: Dict[int, int] = {}
    for insn in instructions:
        starts = starts_by_section.get(insn.section_index)
        if not starts:
            continue
        pos = bisect_right(starts, insn.address) - 1
        if pos >= 0:
            owners[insn.address] = starts[pos]
    return owners


def annotate_rip_targets(instructions: Sequence[Instruction],
                         resolver: Optional[Callable[[int], Optional[str]]] = None) -> int:
    """
    Record the resolved target of RIP-relative memory operands in ``meta``.
    ``resolver(target)`` may label it; the default label is "Data".
    """
    annotated = 0
    for insn in instructions:
        target = insn.rip_target
        if target is None:
            continue
        insn.meta.rip_target = target
        insn.meta.operand_type = (resolver(target) if resolver else None) or "Data"
        annotated += 1
    return annotated
