import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from opl_decoder import Instruction, decode_qcode, hex_bytes
from opl_errors import HandlerError, TruncatedInstruction
from opl_flow import FlowConstruct, FlowKind, FlowMap
from opl_handler import InstructionHandler, describe_failure
from opl_header import ProcedureHeader, VariableEntry, VarKind, VarScope
from opl_opcodes import (
    OP_GOTO, OP_BRANCH_IF_FALSE, OP_RETURN_NOVALUE, OP_LZ_PREFIX,
    PRINT_VALUE_OPS, PRINT_COMMA_OPS, PRINT_NEWLINE_OPS,
    LPRINT_VALUE_OPS, LPRINT_COMMA_OPS, LPRINT_NEWLINE_OPS,
)
from opl_stack import ExpressionStack
from opl_sysvars import format_system_locations

log = logging.getLogger(__name__)

VERSION = '1.0.0'
INDENT = '  '
MAX_DECLARATION_WIDTH = 220


@dataclass
class TraceRecord:
    pc: int
    bytes: str
    name: str
    stack: str


@dataclass
class DecompileOptions:
    annotate_system_vars: bool = True
    decompile_inline_assembly: bool = True
    force_labels: Tuple[int, ...] = ()
    trace: Optional[Callable[[TraceRecord], None]] = None
    tool_name: str = 'oplqdecomp'
    version: str = VERSION


def _wrap_declarations(keyword: str, items: Iterable[str]) -> List[str]:
    lines = []
    current = None
    for item in items:
        if current is None:
            current = f'{INDENT}{keyword} {item}'
        elif len(current) + 1 + len(item) > MAX_DECLARATION_WIDTH:
            lines.append(current)
            current = f'{INDENT}{keyword} {item}'
        else:
            current += ',' + item
    if current is not None:
        lines.append(current)
    return lines


class _Writer:
    """Output buffer plus the indentation, pending ELSE and pending PRINT
    state of one generation pass."""

    def __init__(self):
        self.lines: List[str] = []
        self.indent = 1
        self.pending_else = False
        self.pending_print: Optional[str] = None

    def raw(self, text: str):
        self.lines.append(text)

    def emit(self, text: str):
        self.flush_else()
        for line in text.split('\n'):
            self.lines.append(INDENT * self.indent + line)

    def dedent(self):
        self.indent = max(0, self.indent - 1)

    def flush_else(self):
        if self.pending_else:
            self.pending_else = False
            self.lines.append(INDENT * self.indent + 'ELSE')
            self.indent += 1

    def flush_print(self):
        if self.pending_print is not None:
            text = self.pending_print
            self.pending_print = None
            self.emit(text + ';')

    def add_print_item(self, keyword: str, item: str):
        if self.pending_print is not None and not self.pending_print.startswith(keyword):
            self.flush_print()
        if self.pending_print is None:
            self.pending_print = f'{keyword} {item}'
        elif self.pending_print.rstrip().endswith(','):
            self.pending_print += item
        else:
            self.pending_print += ';' + item

    def add_print_comma(self, keyword: str):
        if self.pending_print is not None and not self.pending_print.startswith(keyword):
            self.flush_print()
        if self.pending_print is None:
            self.pending_print = f'{keyword} '
        self.pending_print += ','

    def end_print(self, keyword: str):
        if self.pending_print is not None and not self.pending_print.startswith(keyword):
            self.flush_print()
        text = self.pending_print if self.pending_print is not None else keyword
        self.pending_print = None
        self.emit(text)


class SourceGenerator:

    def __init__(self, handler: Optional[InstructionHandler] = None):
        self.handler = handler if handler is not None else InstructionHandler()

    def generate(self, header: ProcedureHeader, var_map: Dict[int, VariableEntry], flow: FlowMap,
                 code, proc_name: str, options: Optional[DecompileOptions] = None) -> str:
        """Render one procedure as OPL source text.

        Every problem found in ``code`` becomes a REM line in the output;
        only an instruction cut off by the end of the buffer stops the walk.
        """
        if options is None:
            options = DecompileOptions()
        code = bytes(code)
        out = _Writer()
        self.handler.reset()

        self._write_declarations(out, header, var_map, proc_name, options)

        labels = flow.label_names()
        used: Optional[Set[int]] = set() if options.annotate_system_vars else None
        stack = ExpressionStack()
        loops: List[FlowConstruct] = []
        demoted: Set[FlowConstruct] = set()
        end = header.qcode_end

        pc = header.qcode_start
        try:
            while pc < end:
                self._close_constructs(out, flow.closing(pc), demoted)
                self._open_constructs(out, flow.opening(pc), loops)
                if pc in labels:
                    out.flush_print()
                    out.flush_else()
                    out.raw(f'{labels[pc]}::')

                ins = decode_qcode(code, pc, self.handler.table, end)
                if ins.truncated:
                    raise TruncatedInstruction(pc - header.opl_base, ins.opcode)
                if ins.unknown:
                    name = ins.mnemonic if ins.opcode == OP_LZ_PREFIX else f'{ins.opcode:02X}'
                    out.flush_print()
                    out.emit(f'REM Unknown QCode {name} at ${pc - header.opl_base:04X}')
                    out.emit(f'REM Skipped {"byte" if ins.size == 1 else "bytes"} {hex_bytes(code, pc, ins.size)}')
                    log.debug('unknown QCode %s at %04X', name, pc)
                    pc += ins.size
                    continue

                try:
                    self._statement(out, ins, stack, var_map, flow, labels, loops, demoted,
                                    code, end, used, options)
                except Exception as e:
                    out.flush_else()
                    for line in describe_failure(ins.opcode, pc, str(e), stack, code, ins.size,
                                                 header.opl_base):
                        out.emit(line)
                    log.warning('QCode %02X at %04X: %s', ins.opcode, pc, e)
                    self.handler.reset()

                if options.trace is not None:
                    options.trace(TraceRecord(pc - header.opl_base, hex_bytes(code, pc, ins.size),
                                              f'{ins.mnemonic} {ins.text}'.rstrip(), stack.dump()))
                pc += ins.size
        except TruncatedInstruction as e:
            out.flush_print()
            out.emit(f'REM Truncated QCode {e.opcode_text} at ${e.addr:04X}')
            log.warning('%s', e)
        else:
            self._close_constructs(out, flow.closing(pc), demoted)
            if pc in labels:
                out.flush_print()
                out.flush_else()
                out.raw(f'{labels[pc]}::')
        out.flush_print()
        out.flush_else()

        if used:
            out.raw('')
            out.raw(f'{INDENT}REM System Locations')
            for line in format_system_locations(used):
                out.raw(INDENT + line)
        return '\n'.join(out.lines) + '\n'

    def _write_declarations(self, out: _Writer, header: ProcedureHeader, var_map, proc_name, options):
        params = [f'P{n}{VarKind.from_type(t).suffix}' for n, t in enumerate(header.param_types, 1)]
        out.raw(f'{proc_name}:({", ".join(params)})' if params else f'{proc_name}:')

        stamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
        out.raw(f'{INDENT}REM Decompiled Source - {options.tool_name} {options.version}')
        out.raw(f'{INDENT}REM {stamp}')
        if header.is_lz:
            out.raw(f'{INDENT}REM LZ Variant QCode (Decompilation Incomplete)')
        else:
            out.raw(f'{INDENT}REM CM,XP,LA & LZ code')

        for line in _wrap_declarations('REM EXTERNAL', (e.full_name for e in header.externals)):
            out.raw(line)

        globals_by_name = {v.name: v for v in var_map.values() if v.scope is VarScope.GLOBAL}
        items = []
        for g in header.globals:
            if not g.name:
                continue
            entry = globals_by_name.get(g.full_name)
            items.append(entry.declaration(guess_array_len=False) if entry is not None else g.full_name)
        for line in _wrap_declarations('GLOBAL', items):
            out.raw(line)

        local_vars = sorted((v for v in var_map.values() if v.scope is VarScope.LOCAL), key=lambda v: v.name)
        if local_vars:
            out.raw(f'{INDENT}LOCAL ' + ','.join(v.declaration() for v in local_vars))
        out.raw('')

    def _close_constructs(self, out: _Writer, constructs: List[FlowConstruct], demoted: Set[FlowConstruct]):
        if not constructs:
            return
        out.flush_print()
        for c in constructs:
            if c.kind is FlowKind.ELSE:
                out.dedent()
                out.pending_else = True
            elif c.kind is FlowKind.IF or (c.kind is FlowKind.ELSEIF and c in demoted):
                out.flush_else()
                out.dedent()
                out.emit('ENDIF')

    def _open_constructs(self, out: _Writer, constructs: List[FlowConstruct], loops: List[FlowConstruct]):
        for c in constructs:
            if c.kind is FlowKind.DO:
                out.flush_print()
                out.emit('DO')
                out.indent += 1
                loops.append(c)
            elif c.kind is FlowKind.WHILE:
                out.flush_print()
                loops.append(c)

    def _statement(self, out: _Writer, ins: Instruction, stack: ExpressionStack, var_map, flow: FlowMap,
                   labels: Dict[int, str], loops: List[FlowConstruct], demoted: Set[FlowConstruct],
                   code: bytes, end: int, used, options: DecompileOptions):
        op = ins.opcode

        if op == OP_BRANCH_IF_FALSE:
            out.flush_print()
            self._branch(out, ins, stack, flow, labels, loops, demoted)
            return

        if op == OP_GOTO:
            out.flush_print()
            construct = flow.jumps.get(ins.addr)
            if construct is not None:
                if construct.kind is FlowKind.WHILE and construct.end == ins.addr:
                    out.flush_else()
                    out.dedent()
                    out.emit('ENDWH')
                    if construct in loops:
                        loops.remove(construct)
                return
            if loops and ins.target == loops[-1].continue_addr:
                out.emit('CONTINUE')
                return
            if loops and ins.target == loops[-1].exit:
                out.emit('BREAK')
                return

        if op in OP_RETURN_NOVALUE and ins.end >= end:
            return

        if op in PRINT_VALUE_OPS or op in LPRINT_VALUE_OPS:
            keyword = 'PRINT' if op in PRINT_VALUE_OPS else 'LPRINT'
            text = self._handle(ins, stack, var_map, code, labels, used, options)
            out.add_print_item(keyword, text[len(keyword):].strip())
            self.handler.reset()
            return
        if op in PRINT_COMMA_OPS or op in LPRINT_COMMA_OPS:
            out.add_print_comma('PRINT' if op in PRINT_COMMA_OPS else 'LPRINT')
            return
        if op in PRINT_NEWLINE_OPS or op in LPRINT_NEWLINE_OPS:
            out.end_print('PRINT' if op in PRINT_NEWLINE_OPS else 'LPRINT')
            return

        text = self._handle(ins, stack, var_map, code, labels, used, options)
        if text:
            out.flush_print()
            out.emit(text)
            self.handler.reset()

    def _handle(self, ins: Instruction, stack, var_map, code, labels, used, options) -> Optional[str]:
        return self.handler.handle(ins.opcode, ins.definition, ins.operands, stack, var_map,
                                   ins.addr, ins.size, code, labels, used, options)

    def _branch(self, out: _Writer, ins: Instruction, stack: ExpressionStack, flow: FlowMap,
                labels: Dict[int, str], loops: List[FlowConstruct], demoted: Set[FlowConstruct]):
        cond = stack.pop().text or '0'
        construct = flow.jumps.get(ins.addr)
        if construct is None:
            label = labels.get(ins.target)
            if label is None:
                raise HandlerError(ins.opcode, f'no label for ${ins.target:04X}')
            out.emit(f'IF NOT ({cond}) GOTO {label}::')
        elif construct.kind is FlowKind.DO:
            out.flush_else()
            out.dedent()
            out.emit(f'UNTIL ({cond})')
            if construct in loops:
                loops.remove(construct)
        elif construct.kind is FlowKind.WHILE:
            out.emit(f'WHILE ({cond})')
            out.indent += 1
        elif construct.kind is FlowKind.ELSEIF and out.pending_else:
            out.pending_else = False
            out.emit(f'ELSEIF ({cond})')
            out.indent += 1
        else:
            if construct.kind is FlowKind.ELSEIF:
                demoted.add(construct)
            out.emit(f'IF ({cond})')
            out.indent += 1
