"""
Image validation - is this a plain compiler-produced x86/x64 PE that is
reasonable to patch in place?
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set

import pefile

from .container import (IMAGE_FILE_MACHINE_AMD64, IMAGE_FILE_MACHINE_I386, IMAGE_SCN_MEM_EXECUTE,
                        IMAGE_SCN_MEM_WRITE, ImageInfo, parse_image)

logger = logging.getLogger(__name__)


@dataclass
class ImageValidation:
    """Validation results"""
    is_valid: bool = True
    is_64bit: bool = False
    has_code_section: bool = False
    is_likely_vanilla: bool = True
    warnings: List[str] = field(default_factory=list)
    suspicious_sections: List[str] = field(default_factory=list)
    detected_compiler: str = "Unknown"


# Section names every mainstream linker emits
STANDARD_SECTIONS = {
    '.text', '.data', '.rdata', '.bss', '.idata', '.edata', '.rsrc', '.reloc',
    '.pdata', '.xdata', '.tls', '.debug', 'CODE', 'DATA', '.CRT',
    '.gfids', '.00cfg', '.gehcont',
}

# Section name prefix -> what produced the image. Any hit makes it non-vanilla.
SECTION_FAMILIES = {
    'UPX': "packer", '.aspack': "packer", '.adata': "packer", '.nsp': "packer",
    'PELock': "packer", 'PECrypt': "packer", '.themida': "packer", '.winlice': "packer",
    '.vmp': "packer", '.enigma': "packer", 'Obsidium': "packer", '.perplex': "packer",
    '.petite': "packer", '.packed': "packer", '.RLPack': "packer", 'MPRESS': "packer",
    '.symtab': "Go", '.gopclntab': "Go", '.note.go': "Go", 'runtime.': "Go",
    '.rustc': "Rust",
    '.cormeta': ".NET",
    'PACKAGEINFO': "Delphi", 'DVCLAL': "Delphi",
    '_winzip_': "installer", '.ndata': "installer",
}

SIZE_RATIO_LIMIT = 10

_PEFILE_DIRECTORIES = [
    pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR'],
    pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_TLS'],
]


def _load_pefile(data: bytes, result: ImageValidation) -> Optional[pefile.PE]:
    try:
        pe = pefile.PE(data=data, fast_load=True)
        pe.parse_data_directories(directories=_PEFILE_DIRECTORIES)
        return pe
    except pefile.PEFormatError as e:
        logger.debug("pefile rejected image: %s", e)
        result.warnings.append(f"Directory checks skipped: {e}")
        return None


def section_family(name: str) -> Optional[str]:
    """Family of a non-standard section name, or None"""
    if name in STANDARD_SECTIONS:
        return None
    for prefix, family in SECTION_FAMILIES.items():
        if name.startswith(prefix):
            return family
    return None


def detect_compiler(section_names: Set[str], pe: Optional[pefile.PE] = None) -> str:
    """Best guess at the toolchain from the Rich header and section names"""
    if pe is not None and getattr(pe, 'RICH_HEADER', None):
        return "MSVC (Rich header present)"
    families = {section_family(name) for name in section_names}
    if "Go" in families:
        return "Go"
    if "Rust" in families:
        return "Rust"
    if '.CRT' in section_names and '.bss' in section_names:
        return "Likely MinGW/GCC"
    if "Delphi" in families:
        return "Likely Delphi/C++ Builder"
    if {'.text', '.rdata', '.data', '.pdata'} <= section_names:
        return "Likely MSVC"
    return "Unknown (possibly MSVC or MinGW)"


def validate_image(data: bytes, image: Optional[ImageInfo] = None) -> ImageValidation:
    """
    Validate ``data``. ``image`` is the already parsed container; it is parsed
    here when omitted (container errors propagate).
    """
    if image is None:
        image = parse_image(data)
    result = ImageValidation(is_64bit=image.is_64bit)

    # Architecture
    if image.machine not in (IMAGE_FILE_MACHINE_AMD64, IMAGE_FILE_MACHINE_I386):
        result.is_valid = False
        result.warnings.append(f"Unknown machine type: 0x{image.machine:X}")
        return result

    if image.is_truncated:
        result.warnings.append(
            f"Section table truncated: {len(image.sections)} of {image.number_of_sections} section(s) readable")

    section_names = {section.name for section in image.sections}

    # Code section
    if '.text' in section_names or 'CODE' in section_names:
        result.has_code_section = any(s.is_executable for s in image.sections)
    if not result.has_code_section:
        executable = image.executable_sections()
        if executable:
            result.has_code_section = True
            result.warnings.append(f"No .text section, using executable section '{executable[0][1].name}'")
    if not result.has_code_section:
        result.is_valid = False
        result.warnings.append("No executable section found")
        return result

    families = set()
    for name in sorted(section_names):
        family = section_family(name)
        if family is not None:
            families.add(family)
            result.suspicious_sections.append(name)
            result.is_likely_vanilla = False

    pe = _load_pefile(data, result)
    result.detected_compiler = detect_compiler(section_names, pe)

    if "Go" in families:
        result.warnings.append("Go executable detected - complex runtime, patching not recommended")

    if pe is not None:
        if hasattr(pe, 'DIRECTORY_ENTRY_COM_DESCRIPTOR'):
            result.is_likely_vanilla = False
            result.warnings.append(".NET executable detected - managed code, patching not recommended")
        if hasattr(pe, 'DIRECTORY_ENTRY_TLS') and pe.DIRECTORY_ENTRY_TLS.struct.AddressOfCallBacks:
            result.warnings.append("TLS callbacks present - could be anti-debug or unpacking stub")
        pe.close()

    # Section characteristics
    for section in image.sections:
        flags = section.characteristics
        if flags & IMAGE_SCN_MEM_EXECUTE and flags & IMAGE_SCN_MEM_WRITE:
            result.warnings.append(f"Section '{section.name}' is both writable and executable (potential packer)")
            result.is_likely_vanilla = False
        if section.raw_size > 0 and section.virtual_size > section.raw_size * SIZE_RATIO_LIMIT:
            result.warnings.append(f"Section '{section.name}' has unusual size ratio (VirtualSize >> RawSize)")

    return result
