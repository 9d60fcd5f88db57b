"""
Encode capability: assembly text -> bytes.

Only patch-authoring front ends use this; the patch ledger accepts raw
bytes from any source.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict

from keystone import KS_ARCH_X86, KS_MODE_32, KS_MODE_64, Ks, KsError

from .errors import EncodeError


class Encoder(ABC):

    @abstractmethod
    def encode(self, text: str, bits: int = 64, origin: int = 0) -> bytes:
        """Assemble ``text`` as if placed at ``origin``. Raises EncodeError."""


class KeystoneEncoder(Encoder):
    """x86 / x64 assembler backed by keystone (Intel syntax)"""

    def __init__(self):
        self._engines: Dict[int, Ks] = {}
        self._lock = threading.Lock()

    def encode(self, text: str, bits: int = 64, origin: int = 0) -> bytes:
        if bits not in (32, 64):
            raise EncodeError(f"Unsupported bit mode: {bits}")
        if not text or not text.strip():
            raise EncodeError("Nothing to assemble")

        with self._lock:
            ks = self._engines.get(bits)
            if ks is None:
                ks = Ks(KS_ARCH_X86, KS_MODE_64 if bits == 64 else KS_MODE_32)
                self._engines[bits] = ks
            try:
                encoding, _ = ks.asm(text, origin)
            except KsError as e:
                raise EncodeError(f"Assembly failed: {e}") from e

        if not encoding:
            raise EncodeError(f"Assembly produced no bytes for {text!r}")
        return bytes(encoding)
