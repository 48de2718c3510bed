import argparse
import logging
import os
import pathlib
import sys
from typing import Dict, List, Optional, Tuple

from opl_decoder import Instruction, decode_instructions, disassemble_qcode
from opl_errors import DecompileError
from opl_flow import FlowMap, analyze_control_flow
from opl_handler import InstructionHandler
from opl_header import ProcedureHeader, VariableEntry, VarKind, parse_header, scan_variables
from opl_source import DecompileOptions, SourceGenerator, TraceRecord, VERSION

log = logging.getLogger(__name__)

OB3_MAGIC = b'ORG'
OB3_PROCEDURE = 0x83
PROCEDURE_SUFFIXES = ('.ob3', '.bin')


def unwrap_object_file(data: bytes) -> bytes:
    """Strip an ``ORG`` object-file wrapper, leaving a ``02 80`` long record.

    Anything that is not an object file is returned unchanged.
    """
    if data[:3] != OB3_MAGIC or len(data) < 6 or data[5] != OB3_PROCEDURE:
        return data
    length = (data[3] << 8) | data[4]
    if len(data) < 6 + length:
        raise DecompileError(f'object file is truncated: {len(data) - 6} of {length} bytes')
    return b'\x02\x80' + data[3:5] + data[6:6 + length]


class OPLDecompiler:

    def __init__(self, proc_map: Optional[Dict[str, int]] = None):
        self.handler = InstructionHandler(proc_map=proc_map)
        self.generator = SourceGenerator(self.handler)

    def analyze(self, code, force_labels=()) -> Tuple[ProcedureHeader, Dict[int, VariableEntry],
                                                       FlowMap, List[Instruction]]:
        header = parse_header(code)
        instructions = decode_instructions(code, header.qcode_start, header.qcode_end, self.handler.table)
        var_map = scan_variables(code, header)
        flow = analyze_control_flow(instructions, header.qcode_start, header.qcode_end, force_labels)
        log.debug('%d instructions, %d variables, %d labels',
                  len(instructions), len(var_map), len(flow.label_names()))
        return header, var_map, flow, instructions

    def decompile(self, code, proc_name: Optional[str] = None,
                  options: Optional[DecompileOptions] = None) -> str:
        """Decompile one procedure block to OPL source.

        Raises HeaderError when the metadata block cannot be read; problems
        inside the QCode only ever show up as REM lines.
        """
        if options is None:
            options = DecompileOptions()
        code = bytes(code)
        header, var_map, flow, _ = self.analyze(code, options.force_labels)
        name = proc_name or header.name or 'MAIN'
        return self.generator.generate(header, var_map, flow, code, name, options)


def disassemble_procedure(code) -> str:
    code = bytes(code)
    header = parse_header(code)
    lines = [f'; QCode ${header.qcode_start - header.opl_base:04X}-${header.qcode_end - header.opl_base:04X}'
             f' ({header.qcode_end - header.qcode_start} bytes)']
    listing = disassemble_qcode(code, header.qcode_start, header.qcode_end, header.opl_base)
    if listing:
        lines.append(listing)
    return '\n'.join(lines)


def describe_procedure(code) -> List[str]:
    header = parse_header(bytes(code))
    params = ', '.join(f'P{n}{VarKind.from_type(t).suffix}' for n, t in enumerate(header.param_types, 1))
    return [
        f'  Name: {header.name or "(none)"}',
        f'  Variant: {"LZ" if header.is_lz else "CM/XP"}',
        f'  Variable space: {header.var_space} bytes',
        f'  QCode: {header.qcode_size} bytes at ${header.qcode_start - header.opl_base:04X}',
        f'  Parameters: {params or "(none)"}',
        f'  Globals: {", ".join(g.full_name for g in header.globals) or "(none)"}',
        f'  Externals: {", ".join(e.full_name for e in header.externals) or "(none)"}',
        f'  String fix-ups: {len(header.string_fixups)}',
        f'  Array fix-ups: {len(header.array_fixups)}',
    ]


def _log_trace(record: TraceRecord):
    log.debug('%04X  %-18s %-24s [%s]', record.pc, record.bytes, record.name, record.stack)


def is_opl_procedure(filepath) -> bool:
    filepath = pathlib.Path(filepath)
    if filepath.suffix.lower() in PROCEDURE_SUFFIXES:
        return True
    try:
        with open(filepath, 'rb') as f:
            head = f.read(6)
    except OSError:
        return False
    return head[:3] == OB3_MAGIC or head[:2] == b'\x02\x80' or (
        len(head) >= 2 and head[0] == 0x09 and head[1] in (0x83, 0x09, 0x03))


def decompile_file(input_path, output_path=None, disasm=False, info=False,
                   proc_name=None, options: Optional[DecompileOptions] = None) -> bool:
    try:
        with open(input_path, 'rb') as f:
            data = f.read()
    except OSError as e:
        print(f"Error: Cannot read file: {input_path} ({e})", file=sys.stderr)
        return False

    try:
        code = unwrap_object_file(data)
        if disasm:
            print(disassemble_procedure(code))
            return True
        if info:
            print(f"OPL Procedure Information: {input_path}")
            for line in describe_procedure(code):
                print(line)
            return True
        name = proc_name or pathlib.Path(input_path).stem.upper()
        source = OPLDecompiler().decompile(code, name, options)
    except DecompileError as e:
        print(f"Error: Invalid OPL procedure: {input_path} ({e})", file=sys.stderr)
        return False

    if output_path:
        os.makedirs(os.path.dirname(output_path) or '.', exist_ok=True)
        with open(output_path, 'w', encoding='latin-1', newline='\n') as f:
            f.write(source)
    else:
        print(source, end='')
    return True


def decompile_directory(input_dir, output_dir, recursive=False, options: Optional[DecompileOptions] = None):
    input_path = pathlib.Path(input_dir)
    output_path = pathlib.Path(output_dir)

    if not input_path.is_dir():
        print(f"Error: {input_dir} is not a directory", file=sys.stderr)
        sys.exit(1)

    pattern = '**/*' if recursive else '*'
    files = [f for f in input_path.glob(pattern) if f.is_file() and is_opl_procedure(f)]

    if not files:
        print(f"No OPL procedure files found in {input_dir}", file=sys.stderr)
        return

    ok = 0
    fail = 0
    for filepath in sorted(files):
        rel = filepath.relative_to(input_path)
        out_file = output_path / rel.with_suffix('.opl')
        try:
            if decompile_file(str(filepath), str(out_file), options=options):
                print(f"  OK: {rel}")
                ok += 1
            else:
                print(f"FAIL: {rel}")
                fail += 1
        except Exception as e:
            print(f"FAIL: {rel} ({e})")
            fail += 1

    print(f"\nDone: {ok} succeeded, {fail} failed, {ok + fail} total")


def main():
    parser = argparse.ArgumentParser(description='Psion Organiser II OPL QCode Decompiler')
    parser.add_argument('input', help='Input procedure file or directory')
    parser.add_argument('-o', '--output', help='Output file or directory')
    parser.add_argument('-r', '--recursive', action='store_true', help='Recursively decompile directory')
    parser.add_argument('-i', '--info', action='store_true', help='Show procedure header info')
    parser.add_argument('-d', '--disasm', action='store_true', help='Disassemble only')
    parser.add_argument('--no-sysvars', action='store_true',
                        help='Do not list referenced system addresses')
    parser.add_argument('--no-asm', action='store_true',
                        help='Do not disassemble inline machine code')
    parser.add_argument('--name', help='Procedure name (default: taken from the file)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log analysis details')
    parser.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')
    args = parser.parse_args()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter('%(levelname)s: %(name)s: %(message)s'))
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, handlers=[handler])
    logging.captureWarnings(True)

    options = DecompileOptions(annotate_system_vars=not args.no_sysvars,
                               decompile_inline_assembly=not args.no_asm,
                               trace=_log_trace if args.verbose else None)

    if os.path.isdir(args.input):
        if not args.output:
            print("Error: -o <output_dir> is required for directory mode", file=sys.stderr)
            sys.exit(1)
        decompile_directory(args.input, args.output, recursive=args.recursive, options=options)
        return

    if not decompile_file(args.input, args.output, disasm=args.disasm, info=args.info,
                          proc_name=args.name, options=options):
        sys.exit(1)


if __name__ == '__main__':
    main()
