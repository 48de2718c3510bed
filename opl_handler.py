import logging
import re
from typing import Dict, Optional, Set

from opl_decoder import disassemble_inline, hex_bytes
from opl_errors import HandlerError
from opl_opcodes import (
    QCODE_TABLE, QCodeDef, PRECEDENCE, INFIX_OPERATORS, TRAPPABLE,
    OP_GOTO, OP_ONERR, OP_TRAP, OP_PROC, OP_INLINE_CODE, OP_ASSIGN_FLOAT,
    OP_PRINT_SEMICOLON, OP_LZ_ELSEIF, PAGE_POKE_OPS,
    ASSIGN_OPS, PEEK_OPS, USR_OPS, PRINT_COMMA_OPS, PRINT_NEWLINE_OPS,
    LPRINT_COMMA_OPS, LPRINT_NEWLINE_OPS, type_suffix, var_access,
)
from opl_stack import ExpressionStack, StackEntry

log = logging.getLogger(__name__)

ATOM = PRECEDENCE['ATOM']
FUNC = PRECEDENCE['FUNC']

_INT_LITERAL = re.compile(r'-?\d+')
_BARE_NAME = re.compile(r'[A-Z0-9_$]+')
_CALL = re.compile(r'[A-Z0-9_$]+\(.*\)')
_TRAILING_INDEX = re.compile(r'\(.+\)$')
_SAFE_FLOAT = (
    re.compile(r'^M\d+$'),
    re.compile(r'^[a-zA-Z][a-zA-Z0-9_]*$'),
    re.compile(r'\d+\.\d+'),
    re.compile(r'^(SIN|COS|TAN|ATAN|SQR|LN|LOG|EXP|RND|ABS)\('),
)
# float + - * / ** take an implicit FLT on either side
_FLOAT_ARITHMETIC = range(0x3C, 0x41)

ASM_BANNER = ('REM **ASSEMBLER** - The following assembly language will not compile '
              '(in this version).\nREM __asm\n')


def format_address(text: str, used: Optional[Set[int]] = None) -> str:
    """Render an integer literal used as a memory address as ``$HEX`` and
    record it in ``used``. Anything else is returned untouched."""
    if not _INT_LITERAL.fullmatch(text):
        return text
    addr = int(text) & 0xFFFF
    if used is not None:
        used.add(addr)
    return f'${addr:X}'


def _text(entry: StackEntry, default: str = '') -> str:
    return entry.text.strip() or default


def _is_flt_wrapper(text: str) -> bool:
    if not (text.startswith('FLT(') and text.endswith(')')):
        return False
    depth = 1
    for ch in text[4:-1]:
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
            if depth == 0:
                return False
    return True


def _wrap_for_clarity(op_prec: int, operand_prec: int) -> bool:
    # AND, OR and NOT parenthesise anything that is not an atom or a call
    return op_prec <= PRECEDENCE['AND'] and operand_prec < FUNC


class InstructionHandler:
    """Applies the stack effect of one QCode instruction.

    Returns the statement text the instruction completes, or None when it
    only feeds the expression stack.
    """

    def __init__(self, table: Optional[Dict[int, QCodeDef]] = None,
                 proc_map: Optional[Dict[str, int]] = None):
        self.table = table if table is not None else QCODE_TABLE
        self.proc_map = {k.upper(): v for k, v in (proc_map or {}).items()}
        self.trap_next = False

    def reset(self):
        self.trap_next = False

    def handle(self, opcode, definition, operands, stack: ExpressionStack, var_map, pc, size,
               code, label_map, used_system_addresses, options=None) -> Optional[str]:
        d = definition
        desc = d.desc

        access = var_access(opcode)
        if access is not None:
            addr = operands['V']
            entry = var_map.get(addr)
            name = entry.name if entry is not None else f'L{abs(addr):X}'
            if access[1] >= 3:
                name += f'({_text(stack.pop(), "0")})'
            stack.push(StackEntry(name, ATOM))
            return None

        trap = self.trap_next
        if opcode == OP_TRAP:
            self.trap_next = True
            return None

        if opcode == 0x20:
            stack.push(str(operands['B']))
            return None
        if opcode in (0x21, 0x22):
            stack.push(str(operands['I']))
            return None
        if opcode == 0x23:
            stack.push(operands['F'])
            return None
        if opcode == 0x24:
            stack.push('"' + operands['S'].replace('"', '""') + '"')
            return None
        if opcode in (0x06, 0x13):
            stack.push(f'M{operands["W"] // 8}')
            return None

        if 0x1A <= opcode <= 0x1F:
            logical = chr(65 + operands['B'])
            field = _text(stack.pop())
            if len(field) >= 2 and field.startswith('"') and field.endswith('"'):
                field = field[1:-1]
            elif field:
                field = f'({field})'
            stack.push(StackEntry(f'{logical}.{field}', ATOM))
            return None

        if desc == 'ADDR':
            target = _TRAILING_INDEX.sub('()', _text(stack.pop()))
            stack.push(StackEntry(f'ADDR({target})', FUNC))
            return None

        if opcode in PAGE_POKE_OPS:
            addr = (opcode << 8) | operands['B']
            if used_system_addresses is not None:
                used_system_addresses.add(addr)
            return f'POKEB ${addr:04X},{operands["B_1"]}'

        if opcode == OP_PRINT_SEMICOLON:
            return 'PRINT ;'

        if opcode == OP_LZ_ELSEIF:
            return f'ELSEIF ({_text(stack.pop(), "0")}) : REM LZ'

        if desc in ('PRINT', 'LPRINT'):
            if opcode in PRINT_COMMA_OPS or opcode in LPRINT_COMMA_OPS:
                return f'{desc} ,'
            if opcode in PRINT_NEWLINE_OPS or opcode in LPRINT_NEWLINE_OPS:
                return desc
            return f'{desc} {_text(stack.pop())}'

        if desc == 'DROP':
            value = _text(stack.pop())
            if _BARE_NAME.fullmatch(value) and value not in ('GET', 'KEY', 'KEY$'):
                return value + ':'
            return value

        if desc in ('AT', 'BEEP'):
            default = '1' if desc == 'AT' else '100'
            y = _text(stack.pop(), default)
            x = _text(stack.pop(), default)
            return f'{desc} {x},{y}'

        if desc in ('POKEB', 'POKEW'):
            value = _text(stack.pop(), '0')
            addr = format_address(_text(stack.pop(), '0'), used_system_addresses)
            return f'{desc} {addr},{value}'

        if opcode in (0x4F, 0x50):
            return f'{desc} {"OFF" if operands["B"] == 0 else "ON"}'

        if opcode == OP_GOTO:
            return f'GOTO {self._label(opcode, operands["target"], label_map)}::'

        if opcode == OP_ONERR:
            if operands['D'] == 0:
                return 'ONERR OFF'
            return f'ONERR {self._label(opcode, operands["target"], label_map)}::'

        if opcode == OP_PROC:
            stack.push(StackEntry(self._proc_call(operands['proc'], stack), FUNC))
            return None

        if desc == 'USE':
            return ('TRAP ' if trap else '') + f'USE {chr(65 + operands["B"])}'

        if desc in ('CREATE', 'OPEN'):
            spec = _text(stack.pop(), '""')
            line = f'{desc} {spec},{chr(65 + operands["logical"])}'
            fields = []
            for name, field_type in operands['fields']:
                suffix = type_suffix(field_type)
                fields.append(name if name.endswith(suffix) else name + suffix)
            if fields:
                line += ',' + ','.join(fields)
            return ('TRAP ' if trap else '') + line

        if opcode == OP_INLINE_CODE:
            block = operands['code']
            if options is None or options.decompile_inline_assembly:
                listing = disassemble_inline(block)
            else:
                listing = f'REM Inline Assembly ({len(block)} bytes)'
            return ASM_BANNER + listing

        if opcode == 0xCA:
            return f'REM Debug Procedure Name: {operands["S"]}'
        if opcode == 0xCB:
            return f'REM Debug Line: {operands["I"]}, Col: {operands["I_1"]}'

        if opcode in PEEK_OPS:
            addr = format_address(_text(stack.pop(), '0'), used_system_addresses)
            stack.push(StackEntry(f'{desc}({addr})', FUNC))
            return None

        if opcode in USR_OPS:
            ax = _text(stack.pop(), '0')
            addr = format_address(_text(stack.pop(), '0'), used_system_addresses)
            call = f'{desc}({addr},{ax})'
            following = self.table.get(code[pc + size]) if pc + size < len(code) else None
            if following is not None and following.pops.strip():
                stack.push(StackEntry(call, FUNC))
                return None
            return ('TRAP ' if trap else '') + call

        if d.pushes:
            self._expression(opcode, d, stack)
            return None

        if desc in ('EDIT', 'INPUT'):
            target = _text(stack.pop())
            if target.startswith('ADDR(') and target.endswith(')'):
                target = target[5:-1]
            return ('TRAP ' if trap else '') + f'{desc} {target}'

        if opcode in ASSIGN_OPS:
            return self._assign(opcode, stack)

        if desc == 'RETURN':
            if d.pops == '?':
                return f'RETURN {_text(stack.pop())}'
            return 'RETURN'

        args = [_text(e) for e in self._pop_args(opcode, d, stack)]
        line = f'{desc} {",".join(args)}'.rstrip()
        if trap and desc in TRAPPABLE:
            line = 'TRAP ' + line
        return line

    def _label(self, opcode, target, label_map) -> str:
        name = label_map.get(target) if label_map else None
        if name is None:
            raise HandlerError(opcode, f'no label for ${target:04X}')
        return name

    def _proc_call(self, name: str, stack: ExpressionStack) -> str:
        count_entry = stack.pop()
        if count_entry.is_error:
            count = self.proc_map.get(name.upper(), 0)
            log.debug('no argument count on the stack for %s:, assuming %d', name, count)
        elif _INT_LITERAL.fullmatch(count_entry.text.strip()):
            count = int(count_entry.text)
        else:
            raise HandlerError(OP_PROC, f'argument count for {name}: is {count_entry.text!r}')

        args = []
        for _ in range(count):
            type_entry = stack.pop()
            value = stack.pop()
            if not value.is_error:
                args.insert(0, value.text)
            elif not type_entry.is_error:
                args.insert(0, type_entry.text)
            else:
                args.insert(0, '?')
        if args:
            return f'{name}:({", ".join(args)})'
        return f'{name}:'

    def _pop_args(self, opcode, d: QCodeDef, stack: ExpressionStack):
        if d.pops == 'Flist':
            count_text = _text(stack.pop(), '0')
            if not _INT_LITERAL.fullmatch(count_text):
                raise HandlerError(opcode, f'{d.desc} list length is {count_text!r}')
            count = int(count_text)
        else:
            count = d.pop_count
        entries = [stack.pop() for _ in range(count)]
        entries.reverse()
        return entries

    def _expression(self, opcode, d: QCodeDef, stack: ExpressionStack):
        desc = d.desc
        operands = self._pop_args(opcode, d, stack)
        prec = PRECEDENCE.get(desc, FUNC)

        if len(operands) == 1 and desc in ('NOT', '-'):
            op_prec = PRECEDENCE['UNARY_MINUS'] if desc == '-' else prec
            text = _text(operands[0])
            if operands[0].prec < op_prec or _wrap_for_clarity(op_prec, operands[0].prec):
                text = f'({text})'
            if desc == 'NOT':
                stack.push(StackEntry(f'NOT {text}', op_prec))
            else:
                stack.push(StackEntry(f'-{text}', op_prec))
            return

        if len(operands) == 1 and desc == 'INT':
            text = _text(operands[0])
            if _is_flt_wrapper(text):
                text = text[4:-1]
            stack.push(StackEntry(f'INT({text})', FUNC))
            return

        if len(operands) == 2 and desc in INFIX_OPERATORS:
            left, right = (_text(e) for e in operands)
            if opcode in _FLOAT_ARITHMETIC:
                if self._safe_float(left) and _is_flt_wrapper(right):
                    right = right[4:-1]
                elif self._safe_float(right) and _is_flt_wrapper(left):
                    left = left[4:-1]
            if operands[0].prec < prec or _wrap_for_clarity(prec, operands[0].prec):
                left = f'({left})'
            if (operands[1].prec < prec or _wrap_for_clarity(prec, operands[1].prec)
                    or (operands[1].prec == prec and desc in ('-', '/', '**'))):
                right = f'({right})'
            if desc.endswith('%') and len(desc) == 2:
                stack.push(StackEntry(f'{left} {desc[0]} {right}%', prec))
            else:
                stack.push(StackEntry(f'{left} {desc} {right}', prec))
            return

        if operands:
            stack.push(StackEntry(f'{desc}({",".join(_text(e) for e in operands)})', FUNC))
        else:
            stack.push(StackEntry(desc, FUNC))

    @staticmethod
    def _safe_float(text: str) -> bool:
        return any(p.search(text) for p in _SAFE_FLOAT)

    def _assign(self, opcode, stack: ExpressionStack) -> str:
        value = _text(stack.pop(), '0')
        target = _text(stack.pop())
        if opcode == OP_ASSIGN_FLOAT and _is_flt_wrapper(value):
            value = value[4:-1]
        # a literal 0 under a function result is one of its arguments
        if target == '0' and _CALL.fullmatch(value):
            target = _text(stack.pop())
        return f'{target} = {value}'


def describe_failure(opcode: int, pc: int, message: str, stack: ExpressionStack, code, size: int,
                     origin: int = 0):
    """The three comment lines that replace an instruction the handler
    could not translate."""
    return [
        f'REM Error decompiling QCode {opcode & 0xFF:02X} at ${pc - origin:04X}: {message}',
        f'REM Stack: {stack.dump()}',
        f'REM Bytes: {hex_bytes(code, pc, size)}',
    ]
