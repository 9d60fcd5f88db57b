"""
Self-contained instruction IR.

Decoders translate their native instruction objects into these types once,
at decode time, so nothing downstream depends on a decoder library.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple


class FlowClass(Enum):
    """Control-flow classification of one instruction"""
    NONE = "none"
    CALL = "call"
    JUMP = "jump"               # unconditional
    COND_JUMP = "cond_jump"
    RETURN = "return"

    @property
    def is_branch(self) -> bool:
        return self in (FlowClass.CALL, FlowClass.JUMP, FlowClass.COND_JUMP)


class OperandKind(Enum):
    REGISTER = "register"
    IMMEDIATE = "immediate"
    MEMORY = "memory"
    NEAR_BRANCH = "near_branch"   # direct branch target encoded as an immediate offset
    OTHER = "other"


@dataclass(frozen=True)
class Operand:
    """One decoded operand"""
    kind: OperandKind
    size: int = 0               # bytes
    register: str = ""          # REGISTER
    value: int = 0              # IMMEDIATE value (unsigned) or NEAR_BRANCH target
    base: str = ""              # MEMORY
    index: str = ""
    scale: int = 1
    displacement: int = 0       # signed
    rip_relative: bool = False

    @property
    def is_memory(self) -> bool:
        return self.kind is OperandKind.MEMORY


@dataclass(frozen=True)
class DecodeResult:
    """What a decode capability reports for the bytes at one cursor"""
    valid: bool
    length: int = 0
    mnemonic: str = ""
    op_str: str = ""
    flow: FlowClass = FlowClass.NONE
    is_nop: bool = False
    operands: Tuple[Operand, ...] = ()
    immediate_size: int = 0     # encoded width of the immediate field, 0 if none


INVALID_DECODE = DecodeResult(valid=False)


@dataclass
class InstructionMeta:
    """Analysis fields that may be filled in after the stream is built"""
    function_address: Optional[int] = None
    basic_block_address: Optional[int] = None
    symbol_name: Optional[str] = None
    annotation: Optional[str] = None
    rip_target: Optional[int] = None
    operand_type: Optional[str] = None   # "Data", "String", ... from a resolver


@dataclass(frozen=True)
class Instruction:
    """One decoded instruction. Immutable except for ``meta``."""
    address: int
    file_offset: int
    rva: int
    section_index: int
    section_name: str
    length: int
    raw: bytes                  # copied, never a view of the live buffer
    mnemonic: str
    op_str: str = ""
    flow: FlowClass = FlowClass.NONE
    is_nop: bool = False
    operands: Tuple[Operand, ...] = ()
    immediate_size: int = 0
    meta: InstructionMeta = field(default_factory=InstructionMeta, compare=False, repr=False)

    @property
    def end_address(self) -> int:
        return self.address + self.length

    @property
    def end_offset(self) -> int:
        return self.file_offset + self.length

    @property
    def is_call(self) -> bool:
        return self.flow is FlowClass.CALL

    @property
    def is_jump(self) -> bool:
        return self.flow is FlowClass.JUMP

    @property
    def is_conditional_jump(self) -> bool:
        return self.flow is FlowClass.COND_JUMP

    @property
    def is_return(self) -> bool:
        return self.flow is FlowClass.RETURN

    @property
    def branch_target(self) -> Optional[int]:
        """Target of a direct near branch, None for indirect or non-branch"""
        if not self.flow.is_branch or not self.operands:
            return None
        op = self.operands[0]
        if op.kind is OperandKind.NEAR_BRANCH:
            return op.value
        return None

    def rip_operand(self) -> Optional[Operand]:
        for op in self.operands:
            if op.is_memory and op.rip_relative:
                return op
        return None

    @property
    def rip_target(self) -> Optional[int]:
        """next instruction address + displacement, for RIP-relative memory operands"""
        op = self.rip_operand()
        if op is None:
            return None
        return (self.end_address + op.displacement) & 0xFFFFFFFFFFFFFFFF

    @property
    def text(self) -> str:
        return f"{self.mnemonic} {self.op_str}".rstrip()

    def __str__(self):
        return f"0x{self.address:X}: {self.raw.hex(' ').upper():<24} {self.text}"
