"""
Error taxonomy for image loading, patching and decoding.
"""


class ScalpelError(Exception):
    """Base class for every error raised by pescalpel"""


class FormatError(ScalpelError, ValueError):
    """Missing/incorrect signature or unsupported optional header magic"""


class BoundsError(ScalpelError, IndexError):
    """A header read would run past the end of the buffer"""


class PatchRangeError(BoundsError):
    """Patch offset/length falls outside the buffer (nothing was written)"""

    def __init__(self, offset: int, length: int, buffer_size: int):
        self.offset = offset
        self.length = length
        self.buffer_size = buffer_size
        super().__init__(
            f"Patch of {length} byte(s) at offset 0x{offset:X} exceeds buffer size 0x{buffer_size:X}"
            if offset >= 0 else
            f"Patch offset {offset} is negative"
        )


class NoExecutableSectionError(ScalpelError):
    """The image has no section with the execute characteristic"""


class DecodeCancelled(ScalpelError):
    """Instruction stream build was cancelled between two instructions"""


class EncodeError(ScalpelError, ValueError):
    """The encode capability could not assemble the given text"""
