"""
Instruction stream builder.

Linear sweep over every executable section, in container order, driving a
``Decoder`` one instruction at a time. Undecodable positions are skipped
``resync_step`` bytes at a time so one bad byte never aborts a section.
"""

import logging
import threading
from typing import Callable, List, Optional

from .config import DEFAULT_CONFIG, ScalpelConfig
from .container import ImageInfo
from .decoding import Decoder
from .errors import DecodeCancelled, FormatError, NoExecutableSectionError
from .instruction import Instruction

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class _ProgressReporter:
    """Turns a byte count into at most ~100/step percentage notifications"""

    def __init__(self, callback: Optional[ProgressCallback], total: int, step: int):
        self.callback = callback
        self.total = total
        self.step = step
        self.last = -1

    def update(self, done: int):
        if self.callback is None:
            return
        percent = (done * 100) // self.total if self.total > 0 else 100
        if percent >= 100 or percent - self.last >= self.step:
            if percent != self.last:
                self.last = percent
                self.callback(percent)


def build_instruction_stream(data: bytes, image: ImageInfo, decoder: Decoder,
                             config: ScalpelConfig = DEFAULT_CONFIG,
                             on_progress: Optional[ProgressCallback] = None,
                             cancel: Optional[threading.Event] = None) -> List[Instruction]:
    """
    Decode all executable sections of ``data`` into one address-ordered list.

    The result depends only on ``data``, ``image`` and ``config``. Progress is
    reported as a percentage of all executable bytes. ``cancel`` is checked
    between instructions only.
    """
    if not image.is_valid:
        raise FormatError("Cannot disassemble an image whose headers did not parse")

    code_sections = image.executable_sections()
    if not code_sections:
        raise NoExecutableSectionError("No executable sections found")

    bits = image.bitness
    spans = []
    for index, section in code_sections:
        start = min(section.raw_offset, len(data))
        end = min(section.raw_end, len(data))
        if end - start < section.raw_size:
            logger.warning("Section '%s' raw data truncated: 0x%X of 0x%X bytes present",
                           section.name, end - start, section.raw_size)
        spans.append((index, section, start, end))

    total_bytes = sum(end - start for _, _, start, end in spans)
    reporter = _ProgressReporter(on_progress, total_bytes, config.progress_step)
    reporter.update(0)

    result: List[Instruction] = []
    bytes_done = 0

    for index, section, start, end in spans:
        code = bytes(data[start:end])
        section_va = image.image_base + section.virtual_address
        pos = 0
        resyncs = 0

        while pos < len(code):
            if cancel is not None and cancel.is_set():
                raise DecodeCancelled(f"Cancelled at 0x{section_va + pos:X}")

            remaining = len(code) - pos
            window = code[pos:pos + config.max_instruction_length]
            decoded = decoder.decode(window, section_va + pos, bits)

            if not decoded.valid or decoded.length <= 0 or decoded.length > remaining:
                pos += config.resync_step
                resyncs += 1
                continue

            result.append(Instruction(
                address=section_va + pos,
                file_offset=start + pos,
                rva=section.virtual_address + pos,
                section_index=index,
                section_name=section.name,
                length=decoded.length,
                raw=code[pos:pos + decoded.length],
                mnemonic=decoded.mnemonic,
                op_str=decoded.op_str,
                flow=decoded.flow,
                is_nop=decoded.is_nop,
                operands=decoded.operands,
                immediate_size=decoded.immediate_size,
            ))
            pos += decoded.length
            reporter.update(bytes_done + pos)

        bytes_done += len(code)
        reporter.update(bytes_done)
        logger.debug("Section '%s': %d bytes decoded, %d resync(s)",
                     section.name, len(code), resyncs)

    return result
