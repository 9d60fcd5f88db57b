"""
Cross-reference engine.

Builds a source-address keyed multimap of references from a decoded
instruction stream:

    call / jmp / jcc with a direct near-branch operand -> "call" / "jump" / "cond_jump"
    mov r64, imm64 where the immediate looks like an address -> "mov_imm64"
    lea reg, [rip + disp]                                 -> "lea_rip"
    mov to/from [rip + disp]                              -> "mov_rip"

Coverage is heuristic and best effort. String literal references are not
scanned for.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from .config import DEFAULT_CONFIG, ScalpelConfig
from .instruction import FlowClass, Instruction, OperandKind

logger = logging.getLogger(__name__)

XREF_CALL = "call"
XREF_JUMP = "jump"
XREF_COND_JUMP = "cond_jump"
XREF_MOV_IMM64 = "mov_imm64"
XREF_LEA_RIP = "lea_rip"
XREF_MOV_RIP = "mov_rip"

_FLOW_TAGS = {
    FlowClass.CALL: XREF_CALL,
    FlowClass.JUMP: XREF_JUMP,
    FlowClass.COND_JUMP: XREF_COND_JUMP,
}

_MOV_MNEMONICS = {'mov', 'movabs'}

XRefMap = Dict[int, List["CrossReference"]]


@dataclass(frozen=True)
class CrossReference:
    """A source instruction referencing a target address"""
    source: int
    target: int
    ref_type: str
    description: Optional[str] = None

    def __str__(self):
        return f"0x{self.source:X} -> 0x{self.target:X} [{self.ref_type}]"


def is_likely_address(value: int, image_base: int, config: ScalpelConfig = DEFAULT_CONFIG) -> bool:
    """Non-zero, not a small constant, and not beyond image_base + span"""
    if value == 0:
        return False
    if value < config.min_address:
        return False
    if value > image_base + config.address_span:
        return False
    return True


def _add(xrefs: XRefMap, source: int, target: int, ref_type: str, description: Optional[str] = None):
    xrefs.setdefault(source, []).append(CrossReference(source, target, ref_type, description))


# ============================================================================
# Code -> Code
# ============================================================================

def _collect_control_flow(instructions: Iterable[Instruction], xrefs: XRefMap):
    for insn in instructions:
        tag = _FLOW_TAGS.get(insn.flow)
        if tag is None:
            continue
        target = insn.branch_target
        if target is not None:
            _add(xrefs, insn.address, target, tag)


# ============================================================================
# Code -> Data
# ============================================================================

def _collect_data(instructions: Iterable[Instruction], image_base: int,
                  config: ScalpelConfig, xrefs: XRefMap):
    for insn in instructions:
        mnemonic = insn.mnemonic.split()[-1] if insn.mnemonic else ""
        ops = insn.operands

        # MOV r64, imm64
        if (mnemonic in _MOV_MNEMONICS and len(ops) == 2
                and ops[0].kind is OperandKind.REGISTER
                and ops[1].kind is OperandKind.IMMEDIATE
                and insn.immediate_size == 8):
            value = ops[1].value
            if is_likely_address(value, image_base, config):
                _add(xrefs, insn.address, value, XREF_MOV_IMM64)
            continue

        if len(ops) != 2:
            continue

        # LEA reg, [rip + disp]
        if (mnemonic == 'lea' and ops[0].kind is OperandKind.REGISTER
                and ops[1].is_memory and ops[1].rip_relative):
            _add(xrefs, insn.address, insn.rip_target, XREF_LEA_RIP)

        # MOV reg, [rip + disp] / MOV [rip + disp], reg|imm
        elif mnemonic in _MOV_MNEMONICS:
            if ops[1].is_memory and ops[1].rip_relative:
                _add(xrefs, insn.address, insn.rip_target, XREF_MOV_RIP, "read")
            elif ops[0].is_memory and ops[0].rip_relative:
                _add(xrefs, insn.address, insn.rip_target, XREF_MOV_RIP, "write")


# ============================================================================
# Public API
# ============================================================================

def build_xrefs(instructions: Iterable[Instruction], image_base: Optional[int] = None,
                config: ScalpelConfig = DEFAULT_CONFIG) -> XRefMap:
    """Build a fresh reference map keyed by source address"""
    if image_base is None:
        image_base = config.default_image_base
    instructions = list(instructions)

    xrefs: XRefMap = {}
    _collect_control_flow(instructions, xrefs)
    _collect_data(instructions, image_base, config, xrefs)

    logger.debug("Built %d reference(s) from %d source address(es)",
                 sum(len(refs) for refs in xrefs.values()), len(xrefs))
    return xrefs


def get_outgoing_refs(address: int, xrefs: XRefMap) -> List[CrossReference]:
    return list(xrefs.get(address, ()))


def get_incoming_refs(address: int, xrefs: XRefMap) -> List[CrossReference]:
    """Linear scan over every reference list (incoming lookups are rare)"""
    return [ref for refs in xrefs.values() for ref in refs if ref.target == address]
