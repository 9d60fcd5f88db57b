"""
CoreEngine - load, decode, patch and analyze one image.

    load -> parse headers -> build instruction stream -> build index
         -> (apply_patch -> buffer mutated -> full rebuild -> new index)
         -> (run_analysis -> functions + basic blocks + cross-references)

Every rebuild is computed into locals and committed under a lock in one
step, so readers never see a half-built stream and a failed rebuild leaves
the previous state in place.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .blocks import BasicBlock, ControlFlowGraph, annotate_blocks, build_cfg
from .buffer import HexBuffer, Patch, PatchLedger
from .config import DEFAULT_CONFIG, ScalpelConfig
from .container import ImageInfo, Section, parse_image
from .decoding import CapstoneDecoder, Decoder
from .disassembler import build_instruction_stream
from .encoding import Encoder, KeystoneEncoder
from .functions import Function, annotate_rip_targets, find_functions, function_owner_map
from .index import AddressIndex
from .instruction import Instruction
from .search import SearchResult, find_byte_pattern, search_bytes, search_instructions_by_mnemonic
from .xrefs import CrossReference, XRefMap, build_xrefs, get_incoming_refs, get_outgoing_refs

logger = logging.getLogger(__name__)

NOP = 0x90

# Progress milestones while loading (decode is scaled into DECODE_START..DECODE_END)
PROGRESS_READ = 10
PROGRESS_HEADERS = 20
DECODE_START = 30
DECODE_END = 95


class CoreEngine:
    """Owns the byte buffer, patch ledger, instruction stream and analysis results"""

    def __init__(self, config: ScalpelConfig = DEFAULT_CONFIG,
                 decoder: Optional[Decoder] = None,
                 encoder: Optional[Encoder] = None):
        self.config = config
        self.decoder = decoder or CapstoneDecoder()
        self._encoder = encoder

        self.image: Optional[ImageInfo] = None
        self.buffer = HexBuffer(b'')
        self.ledger = PatchLedger(self.buffer)
        self.index = AddressIndex()
        self._instructions: Tuple[Instruction, ...] = ()

        self.functions: List[Function] = []
        self.cfg: Optional[ControlFlowGraph] = None
        self.xrefs: XRefMap = {}
        self.symbols: Dict[int, str] = {}    # user names, survive rebuilds
        self.analysis_enabled = False       # re-run analysis after every rebuild
        self.disassembly_complete = False

        self.on_progress: Optional[Callable[[int], None]] = None
        self._cancel = threading.Event()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def instructions(self) -> Tuple[Instruction, ...]:
        return self._instructions

    @property
    def sections(self) -> List[Section]:
        return list(self.image.sections) if self.image else []

    @property
    def is_64bit(self) -> bool:
        return bool(self.image and self.image.is_64bit)

    @property
    def bitness(self) -> int:
        return self.image.bitness if self.image else 0

    @property
    def image_base(self) -> int:
        return self.image.image_base if self.image else 0

    @property
    def patches(self) -> Tuple[Patch, ...]:
        return self.ledger.patches

    @property
    def encoder(self) -> Encoder:
        if self._encoder is None:
            self._encoder = KeystoneEncoder()
        return self._encoder

    def _notify(self, percent: int):
        if self.on_progress is not None:
            self.on_progress(percent)

    def cancel(self):
        """Ask a running decode to stop at the next instruction boundary"""
        self._cancel.set()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_file(self, path) -> ImageInfo:
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"Binary not found: {path}")
        return self.load_bytes(path.read_bytes(), str(path))

    def load_bytes(self, data: bytes, file_path: str = "") -> ImageInfo:
        """Parse and decode ``data``. Nothing is committed unless every stage succeeds."""
        started = time.perf_counter()
        self._notify(0)
        data = bytes(data)
        self._notify(PROGRESS_READ)

        image = parse_image(data)
        self._notify(PROGRESS_HEADERS)
        logger.info("Loaded %s: PE%s, %d section(s), image base 0x%X%s",
                    file_path or "<memory>", "32+" if image.is_64bit else "32",
                    len(image.sections), image.image_base,
                    " (section table truncated)" if image.is_truncated else "")

        instructions = self._decode(data, image)
        index = AddressIndex(instructions)
        buffer = HexBuffer(data, file_path)

        with self._lock:
            self.image = image
            self.buffer = buffer
            self.ledger = PatchLedger(buffer)
            self._instructions = tuple(instructions)
            self.index = index
            self.functions = []
            self.cfg = None
            self.xrefs = {}
            self.symbols = {}
            self.disassembly_complete = True

        if self.analysis_enabled:
            self.run_analysis()

        self._notify(100)
        logger.info("Decoded %d instruction(s) in %.1fms",
                    len(instructions), (time.perf_counter() - started) * 1000)
        return image

    def _decode(self, data: bytes, image: ImageInfo) -> List[Instruction]:
        self._cancel.clear()
        span = DECODE_END - DECODE_START
        self._notify(DECODE_START)
        return build_instruction_stream(
            data, image, self.decoder, self.config,
            on_progress=lambda percent: self._notify(DECODE_START + percent * span // 100),
            cancel=self._cancel,
        )

    def rebuild_disassembly(self) -> Tuple[Instruction, ...]:
        """Full re-decode of the current buffer, swapped in atomically"""
        if self.image is None or len(self.buffer) == 0:
            return self._instructions

        instructions = self._decode(self.buffer.data, self.image)
        index = AddressIndex(instructions)
        for address, name in self.symbols.items():
            insn = index.instruction_at(address)
            if insn is not None:
                insn.meta.symbol_name = name
        with self._lock:
            self._instructions = tuple(instructions)
            self.index = index
            if not self.analysis_enabled:
                self.functions = []
                self.cfg = None
                self.xrefs = {}

        if self.analysis_enabled:
            self.run_analysis()
        return self._instructions

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def apply_patch(self, offset: int, new_bytes: bytes, description: str = "") -> Patch:
        """Audited write: record the patch, then rebuild the instruction stream"""
        with self._lock:
            patch = self.ledger.apply(offset, new_bytes, description)
            self._invalidate_offsets(offset, len(patch.new_bytes))
        logger.info("Patched %d byte(s) at 0x%X%s", patch.size, offset,
                    f" ({description})" if description else "")
        self.rebuild_disassembly()
        return patch

    def assemble_patch(self, offset: int, text: str, description: str = "") -> Patch:
        """Assemble ``text`` at the address backing ``offset`` and apply it"""
        origin = self.offset_to_address(offset)
        if origin is None and self.image is not None:
            rva = self.image.offset_to_rva(offset)
            origin = self.image.image_base + rva if rva is not None else 0
        encoded = self.encoder.encode(text, self.bitness or 64, origin or 0)
        return self.apply_patch(offset, encoded, description or text)

    def nop_patch(self, offset: int, count: int, description: str = "") -> Patch:
        return self.apply_patch(offset, bytes([NOP]) * count, description or f"{count} x NOP")

    def write_byte(self, offset: int, value: int) -> bool:
        """Unaudited single-byte write. Out-of-range input is ignored."""
        with self._lock:
            written = self.buffer.write_byte(offset, value)
            if written:
                self._invalidate_offsets(offset, 1)
        return written

    def write_bytes(self, offset: int, values: bytes) -> bool:
        """Unaudited write. Out-of-range input is ignored."""
        with self._lock:
            written = self.buffer.write_bytes(offset, values)
            if written:
                self._invalidate_offsets(offset, len(values))
        return written

    def revert_to_original(self):
        """Restore the load-time bytes, drop the patch history and rebuild"""
        with self._lock:
            self.buffer.revert_to_original()
            self.ledger.clear()
            self.index.invalidate()
        self.rebuild_disassembly()

    def _invalidate_offsets(self, offset: int, size: int):
        """Mark the index stale if the written file range backs decoded code"""
        if self.image is None or size <= 0:
            return
        end = offset + size
        for _, section in self.image.executable_sections():
            lo = max(offset, section.raw_offset)
            hi = min(end, section.raw_end)
            if lo < hi:
                start_va = self.image.image_base + section.virtual_address + (lo - section.raw_offset)
                self.index.invalidate_range(start_va, start_va + (hi - lo))

    def save(self, path):
        Path(path).write_bytes(self.buffer.data)
        logger.info("Wrote %d byte(s) to %s", len(self.buffer), path)

    # ------------------------------------------------------------------
    # Address / offset mapping
    # ------------------------------------------------------------------

    def address_to_offset(self, address: int) -> Optional[int]:
        return self.index.address_to_offset(address)

    def offset_to_address(self, offset: int) -> Optional[int]:
        return self.index.offset_to_address(offset)

    def offset_to_instruction_index(self, offset: int) -> Optional[int]:
        return self.index.offset_to_instruction_index(offset)

    def address_to_instruction_index(self, address: int) -> Optional[int]:
        return self.index.address_to_instruction_index(address)

    def instruction_at(self, address: int) -> Optional[Instruction]:
        return self.index.instruction_at(address)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def run_analysis(self) -> XRefMap:
        """Find functions, build the CFG and cross-references, annotate instructions"""
        self.analysis_enabled = True
        instructions = self._instructions
        if not instructions:
            return self.xrefs

        started = time.perf_counter()
        entry = self.image.entry_point if self.image else None

        logger.info("Step 1/4: Finding functions...")
        functions = find_functions(instructions, entry)
        owners = function_owner_map(instructions, functions)

        logger.info("Step 2/4: Building control-flow graph...")
        cfg = build_cfg(instructions, entry, owners)

        logger.info("Step 3/4: Finding cross-references...")
        image_base = self.config.image_base
        if image_base is None and self.image is not None:
            image_base = self.image.image_base
        xrefs = build_xrefs(instructions, image_base, self.config)

        logger.info("Step 4/4: Annotating instructions...")
        names = {f.address: f.name for f in functions}
        annotate_rip_targets(instructions)
        annotate_blocks(instructions, cfg)

        with self._lock:
            if instructions is not self._instructions:
                # a rebuild raced ahead; its own analysis pass wins
                return self.xrefs
            names.update(self.symbols)
            self.index.batch_update_metadata(
                (address, owners.get(address), names.get(address))
                for address in owners.keys() | names.keys())
            self.functions = functions
            self.cfg = cfg
            self.xrefs = xrefs

        logger.info("Analysis complete in %.1fms: %d function(s), %d block(s), %d reference source(s)",
                    (time.perf_counter() - started) * 1000, len(functions), len(cfg), len(xrefs))
        return xrefs

    def get_outgoing_refs(self, address: int) -> List[CrossReference]:
        return get_outgoing_refs(address, self.xrefs)

    def get_incoming_refs(self, address: int) -> List[CrossReference]:
        return get_incoming_refs(address, self.xrefs)

    def annotate_address(self, address: int, name: str) -> bool:
        """
        Attach a user symbol name to the instruction at ``address``. The name
        is kept in ``symbols`` and re-applied after every rebuild.
        """
        insn = self.index.instruction_at(address)
        if insn is None:
            return False
        with self._lock:
            self.symbols[address] = name
            insn.meta.symbol_name = name
        return True

    def symbol_name(self, address: int) -> Optional[str]:
        if address in self.symbols:
            return self.symbols[address]
        func = self.function_at(address)
        return func.name if func else None

    def block_at(self, address: int) -> Optional[BasicBlock]:
        """Basic block containing ``address`` (after ``run_analysis``)"""
        if self.cfg is None:
            return None
        return self.cfg.block_containing(address)

    def function_at(self, address: int) -> Optional[Function]:
        for func in self.functions:
            if func.address == address:
                return func
        return None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_bytes(self, needle: bytes) -> List[SearchResult]:
        return search_bytes(self.buffer.data, needle)

    def find_byte_pattern(self, pattern: str, description: Optional[str] = None) -> List[SearchResult]:
        return find_byte_pattern(self.buffer.data, pattern, description)

    def search_mnemonic(self, mnemonic: str) -> List[SearchResult]:
        return search_instructions_by_mnemonic(self._instructions, mnemonic)
