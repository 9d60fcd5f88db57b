"""
Decode capability.

``Decoder`` is the boundary the instruction stream builder consumes;
``CapstoneDecoder`` is the default implementation on top of capstone.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, List

import capstone
from capstone import x86 as cs_x86

from .instruction import INVALID_DECODE, DecodeResult, FlowClass, Operand, OperandKind

SUPPORTED_BITS = (32, 64)

_UNCONDITIONAL_JUMPS = {'jmp', 'ljmp'}

# counter-driven branches sit in CS_GRP_JUMP but are not Jcc
_COUNTER_BRANCHES = {'loop', 'loope', 'loopne', 'jcxz', 'jecxz', 'jrcxz'}


class Decoder(ABC):
    """Decodes exactly one instruction at the start of ``code``"""

    @abstractmethod
    def decode(self, code: bytes, address: int, bits: int) -> DecodeResult:
        """
        Must return INVALID_DECODE (or any result with valid=False) for
        undecodable bytes instead of raising.
        """


class CapstoneDecoder(Decoder):
    """x86 / x64 decoder backed by capstone in detail mode"""

    def __init__(self):
        self._engines: Dict[int, capstone.Cs] = {}
        self._lock = threading.Lock()

    def _engine(self, bits: int) -> capstone.Cs:
        if bits not in SUPPORTED_BITS:
            raise ValueError(f"Unsupported bit mode: {bits}")
        with self._lock:
            cs = self._engines.get(bits)
            if cs is None:
                mode = capstone.CS_MODE_64 if bits == 64 else capstone.CS_MODE_32
                cs = capstone.Cs(capstone.CS_ARCH_X86, mode)
                cs.detail = True
                self._engines[bits] = cs
            return cs

    def decode(self, code: bytes, address: int, bits: int) -> DecodeResult:
        cs = self._engine(bits)
        try:
            insn = next(cs.disasm(bytes(code), address, 1), None)
        except capstone.CsError:
            return INVALID_DECODE
        if insn is None or insn.size == 0:
            return INVALID_DECODE

        # "bnd jmp", "notrack call" ... classify on the last token
        base_mnemonic = insn.mnemonic.split()[-1] if insn.mnemonic else ""
        flow = self._classify(insn, base_mnemonic)
        operands = self._operands(insn, flow, bits)

        return DecodeResult(
            valid=True,
            length=insn.size,
            mnemonic=insn.mnemonic,
            op_str=insn.op_str,
            flow=flow,
            is_nop=base_mnemonic == 'nop',
            operands=operands,
            immediate_size=self._immediate_size(insn, base_mnemonic),
        )

    @staticmethod
    def _classify(insn, base_mnemonic: str) -> FlowClass:
        if insn.group(capstone.CS_GRP_CALL):
            return FlowClass.CALL
        if insn.group(capstone.CS_GRP_RET) or insn.group(capstone.CS_GRP_IRET):
            return FlowClass.RETURN
        if insn.group(capstone.CS_GRP_JUMP):
            if base_mnemonic in _UNCONDITIONAL_JUMPS:
                return FlowClass.JUMP
            if base_mnemonic in _COUNTER_BRANCHES:
                return FlowClass.NONE
            return FlowClass.COND_JUMP
        return FlowClass.NONE

    @staticmethod
    def _operands(insn, flow: FlowClass, bits: int) -> tuple:
        address_mask = (1 << bits) - 1
        raw_ops = list(insn.operands)
        result: List[Operand] = []
        for op in raw_ops:
            if op.type == cs_x86.X86_OP_REG:
                result.append(Operand(OperandKind.REGISTER, size=op.size,
                                      register=insn.reg_name(op.reg)))
            elif op.type == cs_x86.X86_OP_IMM:
                # capstone already resolves relative branch immediates to the target
                if flow.is_branch and len(raw_ops) == 1:
                    result.append(Operand(OperandKind.NEAR_BRANCH, size=op.size,
                                          value=op.imm & address_mask))
                else:
                    width = op.size * 8 if op.size else 64
                    result.append(Operand(OperandKind.IMMEDIATE, size=op.size,
                                          value=op.imm & ((1 << width) - 1)))
            elif op.type == cs_x86.X86_OP_MEM:
                mem = op.mem
                result.append(Operand(
                    OperandKind.MEMORY,
                    size=op.size,
                    base=insn.reg_name(mem.base) if mem.base else "",
                    index=insn.reg_name(mem.index) if mem.index else "",
                    scale=mem.scale,
                    displacement=mem.disp,
                    rip_relative=mem.base == cs_x86.X86_REG_RIP,
                ))
            else:
                result.append(Operand(OperandKind.OTHER, size=op.size))
        return tuple(result)

    @staticmethod
    def _immediate_size(insn, base_mnemonic: str) -> int:
        try:
            size = insn.encoding.imm_size
        except (AttributeError, capstone.CsError):
            size = 0
        if size:
            return size
        # capstone spells the only imm64 encoding (REX.W B8+r) as movabs
        if base_mnemonic == 'movabs' and any(op.type == cs_x86.X86_OP_IMM for op in insn.operands):
            return 8
        return 0
