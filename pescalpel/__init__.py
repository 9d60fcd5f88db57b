"""
pescalpel - load, disassemble, patch and cross-reference PE executables.
"""

from .blocks import BasicBlock, ControlFlowGraph, build_cfg
from .buffer import HexBuffer, Patch, PatchLedger
from .config import DEFAULT_CONFIG, DEFAULT_IMAGE_BASE, ScalpelConfig
from .container import ImageInfo, Section, parse_image
from .decoding import CapstoneDecoder, Decoder
from .disassembler import build_instruction_stream
from .encoding import Encoder, KeystoneEncoder
from .engine import CoreEngine
from .errors import (BoundsError, DecodeCancelled, EncodeError, FormatError, NoExecutableSectionError,
                     PatchRangeError, ScalpelError)
from .functions import Function, find_functions
from .index import AddressIndex, CacheStats
from .instruction import DecodeResult, FlowClass, Instruction, Operand, OperandKind
from .search import SearchResult
from .validator import ImageValidation, validate_image
from .xrefs import CrossReference, build_xrefs, is_likely_address

__version__ = "0.1.0"
