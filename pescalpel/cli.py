"""
pescalpel command line.

Loads one image, prints header / disassembly / reference / function reports
and applies audited byte patches.
"""

import argparse
import logging
import sys
from typing import Optional, Tuple

from .config import DEFAULT_CONFIG
from .engine import CoreEngine
from .errors import ScalpelError
from .search import hex_string_to_bytes, parse_byte_pattern
from .validator import ImageValidation, section_family, validate_image

logger = logging.getLogger(__name__)

SUMMARY_LIMIT = 5
PATCH_CONTEXT = 8


def _int(text: str) -> int:
    """argparse type accepting 0x-prefixed hex or decimal"""
    try:
        return int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}")


def parse_disasm_arg(text: str) -> Tuple[int, int]:
    """'VA:COUNT' -> (va, count). VA is hex, COUNT defaults to 16."""
    parts = text.split(':')
    address = int(parts[0], 16)
    count = int(parts[1], 0) if len(parts) > 1 and parts[1] else 16
    if count <= 0:
        raise ValueError("count must be positive")
    return address, count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pescalpel",
        description="pescalpel - inspect, disassemble and patch PE executables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Header and section summary
  pescalpel input.exe --info

  # Validate before patching
  pescalpel input.exe --validate

  # 20 instructions from a virtual address
  pescalpel input.exe --disasm 0x140001000:20

  # References to and from an address
  pescalpel input.exe --xrefs 0x140001000

  # Wildcard byte search
  pescalpel input.exe --search "48 8B ?? 05"

  # Patch 5 NOPs at file offset 0x400 and write the result
  pescalpel input.exe --patch 0x400 -n 5 -o patched.exe

  # Assemble and patch
  pescalpel input.exe --patch 0x400 -c "xor eax, eax; ret" -o patched.exe
        """
    )

    parser.add_argument("exe", help="Input PE executable")

    parser.add_argument("--info", action="store_true", help="Show header and section summary")
    parser.add_argument("--validate", action="store_true",
                        help="Validate PE and check if suitable for patching")
    parser.add_argument("--disasm", type=str,
                        help="Disassemble COUNT instructions from VA (hex), format: VA:COUNT")
    parser.add_argument("--xrefs", nargs='?', const='', default=None, metavar="VA",
                        help="Reference summary, or references to/from VA (hex)")
    parser.add_argument("--functions", action="store_true", help="List discovered functions")
    parser.add_argument("--search", type=str, metavar="PATTERN",
                        help="Byte pattern search, '??' is a wildcard (e.g., '48 8B ?? 05')")
    parser.add_argument("--mnemonic", type=str, help="List instructions with this mnemonic")

    # Patching
    parser.add_argument("--patch", type=_int, metavar="OFFSET", help="File offset to patch")
    payload_group = parser.add_mutually_exclusive_group()
    payload_group.add_argument("-x", "--hex", help="Hex string payload (e.g., '4831C0C3')")
    payload_group.add_argument("-c", "--code", help="Assembly code string (e.g., 'xor rax, rax; ret')")
    payload_group.add_argument("-n", "--nop", type=int, default=0, help="Patch N NOP bytes (0x90)")
    parser.add_argument("-d", "--description", default="", help="Patch description for the ledger")
    parser.add_argument("-o", "--output", help="Write the patched image to this file")

    # Configuration
    parser.add_argument("--image-base", type=_int, default=None,
                        help="Image base for the address heuristic (default: the header image base)")
    parser.add_argument("--min-address", type=_int, default=DEFAULT_CONFIG.min_address,
                        help="Smallest immediate treated as an address (default: 0x%(default)X)")
    parser.add_argument("--span", type=_int, default=DEFAULT_CONFIG.address_span,
                        help="Address heuristic span above the image base (default: 0x%(default)X)")
    parser.add_argument("--debug", action="store_true",
                        help="Show debug information for troubleshooting")
    return parser


# ============================================================================
# Reports
# ============================================================================

def _print_header(title: str):
    print("=" * 70)
    print(title)
    print("=" * 70)


def _print_sections(engine: CoreEngine):
    image = engine.image
    print("Sections:")
    for section in image.sections:
        print(f"  {section.name:12} RVA: 0x{section.virtual_address:08X}  Size: 0x{section.virtual_size:08X}  "
              f"Raw: 0x{section.raw_offset:06X}+0x{section.raw_size:X}  [{', '.join(section.flags())}]")
    if image.is_truncated:
        print(f"  ... section table truncated ({len(image.sections)} of {image.number_of_sections})")
    print()


def print_info(engine: CoreEngine):
    image = engine.image
    _print_header("IMAGE INFORMATION")
    print(f"File:             {engine.buffer.file_path or '<memory>'} ({len(engine.buffer)} bytes)")
    print(f"Format:           {'PE32+' if image.is_64bit else 'PE32'} (magic 0x{image.magic:X})")
    print(f"Machine:          {image.machine_name} (0x{image.machine:X})")
    print(f"Image Base:       0x{image.image_base:X}")
    print(f"Entry Point:      0x{image.entry_point:X} (RVA 0x{image.entry_point_rva:X})")
    print(f"Size of Image:    0x{image.size_of_image:X}")
    print(f"Alignment:        section 0x{image.section_alignment:X}, file 0x{image.file_alignment:X}")
    print(f"Instructions:     {len(engine.instructions)}")
    print()
    _print_sections(engine)


# (is_valid, is_likely_vanilla) -> verdict line
VERDICTS = {
    (True, True): "✅ VERDICT: Safe to patch in place",
    (True, False): "⚠️  VERDICT: Patchable, but the image is not plain compiler output - proceed with caution",
    (False, True): "❌ VERDICT: Not supported",
    (False, False): "❌ VERDICT: Not supported",
}


def print_validation_report(validation: ImageValidation, engine: CoreEngine):
    """Print PE validation report"""
    _print_header("PE VALIDATION REPORT")
    print(f"Architecture:     {'x64 (AMD64)' if validation.is_64bit else 'x86 (i386)'}")
    print(f"Code section:     {'✅ Yes' if validation.has_code_section else '❌ No'}")
    print(f"Toolchain:        {validation.detected_compiler}")
    print()
    _print_sections(engine)

    if validation.suspicious_sections:
        print("Non-standard sections:")
        for name in validation.suspicious_sections:
            print(f"  {name:12} {section_family(name)}")
        print()

    for warning in validation.warnings:
        print(f"⚠️  {warning}")
    if validation.warnings:
        print()

    print(VERDICTS[(validation.is_valid, validation.is_likely_vanilla)])


def print_disassembly(engine: CoreEngine, address: int, count: int) -> int:
    start = engine.address_to_instruction_index(address)
    if start is None:
        print(f"No decoded instruction at 0x{address:X}")
        return 1
    insn = engine.instructions[start]
    print(f"Disassembly at 0x{insn.address:X} (File: 0x{insn.file_offset:X}, {insn.section_name}):")
    print("-" * 70)
    for insn in engine.instructions[start:start + count]:
        print(_describe(engine, insn))
    return 0


def _describe(engine: CoreEngine, insn) -> str:
    line = str(insn)
    notes = []
    if insn.meta.symbol_name:
        notes.append(insn.meta.symbol_name)
    if insn.meta.rip_target is not None:
        notes.append(f"{insn.meta.operand_type or 'Data'} @ 0x{insn.meta.rip_target:X}")
    incoming = engine.get_incoming_refs(insn.address) if engine.xrefs else []
    if incoming:
        notes.append(f"{len(incoming)} xref(s)")
    if notes:
        line = f"{line:<70} ; {', '.join(notes)}"
    return line


def print_xrefs(engine: CoreEngine, address: Optional[int]):
    if address is not None:
        print(f"References for 0x{address:X}:")
        print("=" * 60)
        outgoing = engine.get_outgoing_refs(address)
        incoming = engine.get_incoming_refs(address)
        print(f"\n[OUTGOING] - {len(outgoing)} references")
        for ref in outgoing:
            print(f"  {ref}" + (f" ({ref.description})" if ref.description else ""))
        print(f"\n[INCOMING] - {len(incoming)} references")
        for ref in incoming:
            print(f"  {ref}" + (f" ({ref.description})" if ref.description else ""))
        return

    by_type = {}
    for refs in engine.xrefs.values():
        for ref in refs:
            by_type.setdefault(ref.ref_type, []).append(ref)

    print("Reference Analysis:")
    print("=" * 60)
    for ref_type in sorted(by_type):
        ref_list = by_type[ref_type]
        print(f"\n[{ref_type.upper()}] - {len(ref_list)} references")
        for ref in ref_list[:SUMMARY_LIMIT]:
            print(f"  {ref}")
        if len(ref_list) > SUMMARY_LIMIT:
            print(f"  ... and {len(ref_list) - SUMMARY_LIMIT} more")
    if not by_type:
        print("  No references found")


def print_functions(engine: CoreEngine):
    print(f"Functions Found: {len(engine.functions)}")
    print("-" * 70)
    for func in engine.functions:
        incoming = len([r for r in engine.get_incoming_refs(func.address) if r.ref_type == "call"])
        blocks = len(engine.cfg.blocks_of_function(func.address)) if engine.cfg else 0
        print(f"  0x{func.address:X}  {func.name:<24} {func.instruction_count:6d} instrs  "
              f"blocks={blocks:<4} src={func.source:<8} callers={incoming}")


def print_search(engine: CoreEngine, pattern: str) -> int:
    results = engine.find_byte_pattern(pattern, "Pattern match")
    if parse_byte_pattern(pattern) is None:
        print(f"Invalid pattern: {pattern}")
        return 1
    print(f"Pattern '{pattern}': {len(results)} match(es)")
    print("-" * 70)
    for result in results:
        address = engine.offset_to_address(result.offset)
        where = f"VA 0x{address:X}" if address is not None else "outside code"
        print(f"  File: 0x{result.offset:06X}  {where:<24} {result.data.hex(' ').upper()}")
    return 0


def print_patch_result(engine: CoreEngine, offset: int):
    print()
    print("Patch ledger:")
    for patch in engine.patches:
        print(f"  {patch!r}")
    print()
    index = engine.offset_to_instruction_index(offset)
    if index is None:
        print(f"File offset 0x{offset:X} is not inside decoded code")
        return
    start = max(0, index - 2)
    print("Instructions after rebuild:")
    print("-" * 70)
    for insn in engine.instructions[start:start + PATCH_CONTEXT]:
        marker = "  <- patched" if engine.buffer.has_modifications_in_range(insn.file_offset, insn.end_offset - 1) else ""
        print(f"{insn}{marker}")


# ============================================================================
# Entry point
# ============================================================================

def _payload(args) -> Optional[Tuple[str, object]]:
    if args.nop and args.nop > 0:
        return "nop", args.nop
    if args.hex:
        return "hex", args.hex
    if args.code:
        return "code", args.code
    return None


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = DEFAULT_CONFIG.replace(
            image_base=args.image_base,
            min_address=args.min_address,
            address_span=args.span,
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 1

    engine = CoreEngine(config)
    try:
        engine.load_file(args.exe)
    except (OSError, ScalpelError) as e:
        print(f"Error loading PE: {e}")
        return 1

    if args.validate:
        validation = validate_image(engine.buffer.data, engine.image)
        print_validation_report(validation, engine)
        return 0 if validation.is_valid else 1

    if args.info:
        print_info(engine)

    if args.xrefs is not None or args.functions or args.disasm:
        engine.run_analysis()

    if args.patch is not None:
        payload = _payload(args)
        if payload is None:
            print("Error: Payload required for --patch (-x, -c, or -n)")
            return 1
        kind, value = payload
        try:
            if kind == "nop":
                print(f"Patching {value} NOP bytes at file offset 0x{args.patch:X}")
                engine.nop_patch(args.patch, value, args.description)
            elif kind == "hex":
                data = hex_string_to_bytes(value)
                if data is None:
                    print(f"Invalid hex payload: {value}")
                    return 1
                engine.apply_patch(args.patch, data, args.description or f"hex {data.hex()}")
            else:
                patch = engine.assemble_patch(args.patch, value, args.description)
                print(f"Assembled: {patch.new_bytes.hex()}")
        except ScalpelError as e:
            print(f"Patch failed: {e}")
            return 1
        print_patch_result(engine, args.patch)

    if args.disasm:
        try:
            address, count = parse_disasm_arg(args.disasm)
        except ValueError:
            print("Invalid disasm format. Use VA:COUNT (e.g., 0x140001000:20)")
            return 1
        status = print_disassembly(engine, address, count)
        if status:
            return status

    if args.xrefs is not None:
        address = None
        if args.xrefs:
            try:
                address = int(args.xrefs, 16)
            except ValueError:
                print(f"Invalid address format: {args.xrefs}")
                return 1
        print_xrefs(engine, address)

    if args.functions:
        print_functions(engine)

    if args.search:
        status = print_search(engine, args.search)
        if status:
            return status

    if args.mnemonic:
        results = engine.search_mnemonic(args.mnemonic)
        print(f"'{args.mnemonic}': {len(results)} instruction(s)")
        for result in results:
            print(f"  0x{result.address:X}  {result.description}")

    if args.output:
        if not engine.patches:
            print("No patches applied, output not written")
        else:
            engine.save(args.output)
            print(f"✅ Successfully wrote patched file: {args.output}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
