"""
Explicit configuration values threaded into the analysis components.
"""

from dataclasses import dataclass, replace as _replace
from typing import Optional


# x64 typical base used when the caller does not know the image base
DEFAULT_IMAGE_BASE = 0x140000000


@dataclass(frozen=True)
class ScalpelConfig:
    """Tunables for decoding and the cross-reference heuristics"""
    default_image_base: int = DEFAULT_IMAGE_BASE
    image_base: Optional[int] = None     # overrides the header base for the address heuristic
    address_span: int = 0x100000000     # heuristic upper bound: image_base + span
    min_address: int = 0x1000           # below this an immediate is a small constant
    resync_step: int = 1                # bytes skipped after an undecodable position
    max_instruction_length: int = 15    # x86 architectural limit
    progress_step: int = 1              # minimum % increase between progress notifications

    def __post_init__(self):
        if self.resync_step < 1:
            raise ValueError("resync_step must be at least 1")
        if self.max_instruction_length < 1:
            raise ValueError("max_instruction_length must be at least 1")
        if self.progress_step < 1:
            raise ValueError("progress_step must be at least 1")
        if self.min_address < 0 or self.address_span < 0 or self.default_image_base < 0 \
                or (self.image_base is not None and self.image_base < 0):
            raise ValueError("addresses must be non-negative")

    def replace(self, **changes) -> "ScalpelConfig":
        return _replace(self, **changes)


DEFAULT_CONFIG = ScalpelConfig()
