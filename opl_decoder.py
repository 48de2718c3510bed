import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from opl_opcodes import (
    AddressingMode, OperandKind, CpuOpcode, QCodeDef, HD6303_OPCODES, QCODE_TABLE,
    SWI_NAMES, SWI_DISPLAY_STRING, OP_RTS, OP_LZ_PREFIX, FIXED_OPERANDS, OPERAND_KEYS,
)

log = logging.getLogger(__name__)

FIELD_LIST_END = (0x88, 0xFF)


@dataclass(frozen=True)
class Instruction:
    addr: int
    opcode: int
    mnemonic: str
    size: int
    mode: Optional[AddressingMode] = None
    operands: Dict[str, Any] = field(default_factory=dict)
    text: str = ''
    definition: Any = None
    unknown: bool = False
    truncated: bool = False

    @property
    def end(self) -> int:
        return self.addr + self.size

    @property
    def target(self) -> Optional[int]:
        return self.operands.get('target')


def _signed8(value: int) -> int:
    return value - 256 if value >= 128 else value


def _signed16(value: int) -> int:
    return value - 65536 if value > 32767 else value


def _printable(data) -> str:
    return ''.join(chr(b) if 32 <= b <= 126 else '.' for b in data)


def hex_bytes(buffer, start: int, count: int) -> str:
    return ' '.join(f'{b:02X}' for b in buffer[max(0, start):start + count])


def decode_float(buf) -> str:
    """Render an Organiser BCD float: a header byte holding the sign bit and
    the length, the mantissa bytes least significant first, then a signed
    exponent byte."""
    if len(buf) < 2:
        return '0.0'
    header = buf[0]
    negative = bool(header & 0x80)
    length = header & 0x7F
    if length < 1 or len(buf) < 1 + length:
        return '0.0'
    exponent = _signed8(buf[length])
    digits = ''.join(f'{b:02X}' for b in reversed(buf[1:length]))
    if not digits:
        return '0.0'

    point = 1 + exponent
    if point <= 0:
        res = '0.' + '0' * -point + digits
    elif point >= len(digits):
        res = digits + '0' * (point - len(digits)) + '.0'
    else:
        res = digits[:point] + '.' + digits[point:]
    while res.endswith('0') and not res.endswith('.0'):
        res = res[:-1]
    return ('-' if negative else '') + res


def decode(buffer, pc: int, table: Optional[Dict[int, CpuOpcode]] = None, origin: int = 0) -> Instruction:
    """Decode one HD6303 instruction at ``pc``.

    Never raises: opcodes missing from ``table`` come back as an unknown
    one-byte instruction and operand reads stop at the end of ``buffer``.
    ``origin`` is added to displayed and computed branch addresses.
    """
    if table is None:
        table = HD6303_OPCODES
    if pc < 0 or pc >= len(buffer):
        return Instruction(pc, -1, '???', 1, unknown=True, truncated=True)

    op = buffer[pc]
    entry = table.get(op)
    if entry is None:
        return Instruction(pc, op, '???', 1, text=f'??? (${op:02X})', unknown=True)

    mode = entry.mode
    need = mode.operand_size
    raw = bytes(buffer[pc + 1:pc + 1 + need])
    if len(raw) < need:
        return Instruction(pc, op, entry.mnemonic, 1 + len(raw), mode,
                           {'raw': raw}, entry.mnemonic, entry, truncated=True)

    operands: Dict[str, Any] = {}
    size = 1 + need
    truncated = False
    if mode is AddressingMode.IMPLICIT:
        text = ''
    elif mode is AddressingMode.IMMEDIATE8:
        operands['value'] = raw[0]
        text = f'#${raw[0]:02X}'
    elif mode is AddressingMode.IMMEDIATE16:
        operands['value'] = (raw[0] << 8) | raw[1]
        text = f'#${operands["value"]:04X}'
    elif mode is AddressingMode.DIRECT:
        operands['value'] = raw[0]
        text = f'${raw[0]:02X}'
    elif mode is AddressingMode.EXTENDED:
        operands['value'] = (raw[0] << 8) | raw[1]
        text = f'${operands["value"]:04X}'
    elif mode is AddressingMode.INDEXED:
        operands['offset'] = raw[0]
        text = f'${raw[0]:02X},X'
    elif mode is AddressingMode.RELATIVE:
        rel = _signed8(raw[0])
        operands['offset'] = rel
        operands['target'] = (origin + pc + 2 + rel) & 0xFFFF
        text = f'${operands["target"]:04X} (Rel {rel})'
    elif mode is AddressingMode.SYSCALL:
        swi = raw[0]
        operands['swi'] = swi
        text = SWI_NAMES.get(swi, f'${swi:02X}')
        if swi == SWI_DISPLAY_STRING:
            if pc + 2 < len(buffer):
                length = buffer[pc + 2]
                payload = bytes(buffer[pc + 3:pc + 3 + length])
                size += 1 + len(payload)
                operands['payload'] = payload
                if len(payload) == length:
                    text += f', "{_printable(payload)}"'
                else:
                    text += ', "..." (Truncated)'
                    truncated = True
            else:
                truncated = True
    elif mode is AddressingMode.IMMEDIATE_DIRECT:
        operands['imm'], operands['value'] = raw[0], raw[1]
        text = f'#${raw[0]:02X},${raw[1]:02X}'
    else:
        operands['imm'], operands['offset'] = raw[0], raw[1]
        text = f'#${raw[0]:02X},${raw[1]:02X},X'

    text = f'{entry.mnemonic} {text}' if text else entry.mnemonic
    return Instruction(pc, op, entry.mnemonic, size, mode, operands, text, entry, truncated=truncated)


def inline_code_length(buffer, start: int, end: Optional[int] = None) -> int:
    """Length of an inline machine-code block beginning at ``start``.

    The block ends at the first RTS that no earlier forward branch jumps
    past; without one, it runs to ``end``.
    """
    if end is None:
        end = len(buffer)
    block = bytes(buffer[start:end])
    offset = 0
    furthest = 0
    while offset < len(block):
        ins = decode(block, offset)
        if ins.mode is AddressingMode.RELATIVE and not ins.truncated:
            furthest = max(furthest, offset + 2 + ins.operands['offset'])
        if ins.opcode == OP_RTS and furthest <= offset:
            return offset + 1
        if ins.truncated:
            break
        offset += ins.size
    return len(block)


def _store(operands: Dict[str, Any], key: str, value) -> None:
    if key in operands:
        n = 1
        while f'{key}_{n}' in operands:
            n += 1
        key = f'{key}_{n}'
    operands[key] = value


def _render_qcode(operands: Dict[str, Any]) -> str:
    parts = []
    for key, value in operands.items():
        if key == 'target':
            parts.append(f'-> ${value:04X}')
        elif key == 'code':
            parts.append(f'[{len(value)} bytes]')
        elif key == 'fields':
            parts.append(','.join(name for name, _ in value))
        elif key == 'logical':
            parts.append(chr(65 + value) if value < 26 else str(value))
        elif key in ('S', 'proc'):
            parts.append(f'"{value}"')
        elif key.startswith('V') or key.startswith('W'):
            parts.append(f'${value & 0xFFFF:04X}')
        else:
            parts.append(str(value))
    return ' '.join(parts)


def decode_qcode(buffer, pc: int, table: Optional[Dict[int, QCodeDef]] = None,
                 limit: Optional[int] = None) -> Instruction:
    """Decode one QCode instruction at ``pc``.

    Same contract as :func:`decode`. Operands reaching past ``limit``
    (default: end of buffer) produce a truncated instruction whose size is
    clamped to the bytes that are actually available.
    """
    if table is None:
        table = QCODE_TABLE
    end = len(buffer) if limit is None else min(limit, len(buffer))
    if pc < 0 or pc >= end:
        return Instruction(pc, -1, '???', 1, unknown=True, truncated=True)

    op = buffer[pc]
    if op == OP_LZ_PREFIX:
        if pc + 1 >= end:
            return Instruction(pc, op, 'FE', 1, text='$FE', unknown=True, truncated=True)
        ext = buffer[pc + 1]
        return Instruction(pc, op, f'FE_{ext:02X}', 2, operands={'ext': ext},
                           text=f'$FE ${ext:02X}', unknown=True)
    d = table.get(op)
    if d is None:
        return Instruction(pc, op, '???', 1, text=f'${op:02X}', definition=None, unknown=True)

    operands: Dict[str, Any] = {}
    pos = pc + 1

    def cut():
        return Instruction(pc, op, d.desc, max(1, end - pc), None, operands,
                           _render_qcode(operands), d, truncated=True)

    for kind in d.args:
        key = OPERAND_KEYS.get(kind)
        if kind in FIXED_OPERANDS:
            width, signed = FIXED_OPERANDS[kind]
            if pos + width > end:
                return cut()
            value = buffer[pos] if width == 1 else (buffer[pos] << 8) | buffer[pos + 1]
            if signed:
                value = _signed16(value)
            _store(operands, key, value)
            if kind is OperandKind.DISP and 'target' not in operands:
                operands['target'] = pc + 1 + value
            pos += width
        elif kind is OperandKind.FLOAT:
            if pos >= end:
                return cut()
            length = buffer[pos] & 0x7F
            if pos + 1 + length > end:
                return cut()
            _store(operands, key, decode_float(bytes(buffer[pos:pos + 1 + length])))
            pos += 1 + length
        elif kind in (OperandKind.STRING, OperandKind.PROC):
            if pos >= end or pos + 1 + buffer[pos] > end:
                return cut()
            length = buffer[pos]
            _store(operands, key, bytes(buffer[pos + 1:pos + 1 + length]).decode('latin-1'))
            pos += 1 + length
        elif kind is OperandKind.FIELD_LIST:
            if pos >= end:
                return cut()
            operands['logical'] = buffer[pos]
            fields: List[tuple] = []
            operands['fields'] = fields
            pos += 1
            while True:
                if pos >= end:
                    return cut()
                field_type = buffer[pos]
                pos += 1
                if field_type in FIELD_LIST_END:
                    break
                if pos >= end or pos + 1 + buffer[pos] > end:
                    return cut()
                length = buffer[pos]
                fields.append((bytes(buffer[pos + 1:pos + 1 + length]).decode('latin-1'), field_type))
                pos += 1 + length
        elif kind is OperandKind.CODE:
            length = inline_code_length(buffer, pos, end)
            operands['code'] = bytes(buffer[pos:pos + length])
            pos += length

    return Instruction(pc, op, d.desc, pos - pc, None, operands, _render_qcode(operands), d)


def decode_instructions(buffer, start: int, end: int, table=None) -> List[Instruction]:
    """Decode the QCode window ``[start, end)``; a truncated instruction is
    kept as the last entry."""
    result = []
    pc = start
    while pc < end:
        ins = decode_qcode(buffer, pc, table, end)
        result.append(ins)
        if ins.truncated:
            log.debug('truncated QCode %02X at %04X', ins.opcode & 0xFF, pc)
            break
        pc += ins.size
    return result


def disassemble_inline(code, origin: int = 0) -> str:
    lines = ['REM Inline Assembly (Start)']
    pc = 0
    while pc < len(code):
        ins = decode(code, pc, origin=origin)
        shown = list(code[pc + 1:pc + min(ins.size, 5)])
        line = f'REM {origin + pc:04X}: {code[pc]:02X}'
        if shown:
            line += ' ' + ' '.join(f'{b:02X}' for b in shown)
        if ins.size > 5:
            line += ' ...'
        line += ' ' * max(1, 14 - 3 * min(ins.size, 5)) + ins.text
        lines.append(line)
        pc += ins.size
    lines.append('REM Inline Assembly (End)')
    return '\n'.join(lines)


def disassemble_qcode(buffer, start: int, end: int, origin: int = 0) -> str:
    """Plain listing of a QCode window, one instruction per line."""
    lines = []
    for ins in decode_instructions(buffer, start, end):
        name = ins.mnemonic
        extra = ' (truncated)' if ins.truncated else ''
        lines.append(f'{ins.addr - origin:04X}: {hex_bytes(buffer, ins.addr, min(ins.size, 6)):18s} '
                     f'{name:14s} {ins.text}{extra}'.rstrip())
    return '\n'.join(lines)
