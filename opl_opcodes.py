from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, Tuple


class AddressingMode(Enum):
    IMPLICIT = auto()
    IMMEDIATE8 = auto()
    IMMEDIATE16 = auto()
    DIRECT = auto()
    EXTENDED = auto()
    INDEXED = auto()
    RELATIVE = auto()
    SYSCALL = auto()
    IMMEDIATE_DIRECT = auto()
    IMMEDIATE_INDEXED = auto()

    @property
    def operand_size(self) -> int:
        return _MODE_OPERAND_SIZE[self]


_MODE_OPERAND_SIZE = {
    AddressingMode.IMPLICIT: 0,
    AddressingMode.IMMEDIATE8: 1,
    AddressingMode.IMMEDIATE16: 2,
    AddressingMode.DIRECT: 1,
    AddressingMode.EXTENDED: 2,
    AddressingMode.INDEXED: 1,
    AddressingMode.RELATIVE: 1,
    AddressingMode.SYSCALL: 1,
    AddressingMode.IMMEDIATE_DIRECT: 2,
    AddressingMode.IMMEDIATE_INDEXED: 2,
}


class OperandKind(Enum):
    BYTE = auto()
    WORD = auto()
    INT = auto()
    DISP = auto()
    VAR = auto()
    FLOAT = auto()
    STRING = auto()
    PROC = auto()
    FIELD_LIST = auto()
    CODE = auto()


# operand kinds with a fixed width: (byte count, signed)
FIXED_OPERANDS = {
    OperandKind.BYTE: (1, False),
    OperandKind.WORD: (2, False),
    OperandKind.INT: (2, True),
    OperandKind.DISP: (2, True),
    OperandKind.VAR: (2, True),
}

OPERAND_KEYS = {
    OperandKind.BYTE: 'B',
    OperandKind.WORD: 'W',
    OperandKind.INT: 'I',
    OperandKind.DISP: 'D',
    OperandKind.VAR: 'V',
    OperandKind.FLOAT: 'F',
    OperandKind.STRING: 'S',
    OperandKind.PROC: 'proc',
    OperandKind.CODE: 'code',
}


@dataclass(frozen=True)
class CpuOpcode:
    mnemonic: str
    mode: AddressingMode


@dataclass(frozen=True)
class QCodeDef:
    desc: str
    args: Tuple[OperandKind, ...] = ()
    pops: str = ''
    pushes: str = ''

    @property
    def pop_count(self) -> int:
        return len(self.pops.split()) if self.pops and self.pops != 'Flist' else 0


def _build_cpu_table() -> Dict[int, CpuOpcode]:
    ops: Dict[int, CpuOpcode] = {}

    def add(code, mnemonic, mode):
        ops[code] = CpuOpcode(mnemonic, mode)

    imp = AddressingMode.IMPLICIT
    for code, name in [
        (0x00, 'TRAP'), (0x01, 'NOP'), (0x04, 'LSRD'), (0x05, 'ASLD'), (0x06, 'TAP'),
        (0x07, 'TPA'), (0x08, 'INX'), (0x09, 'DEX'), (0x0A, 'CLV'), (0x0B, 'SEV'),
        (0x0C, 'CLC'), (0x0D, 'SEC'), (0x0E, 'CLI'), (0x0F, 'SEI'), (0x10, 'SBA'),
        (0x11, 'CBA'), (0x16, 'TAB'), (0x17, 'TBA'), (0x18, 'XGDX'), (0x19, 'DAA'),
        (0x1A, 'SLP'), (0x1B, 'ABA'),
        (0x30, 'TSX'), (0x31, 'INS'), (0x32, 'PULA'), (0x33, 'PULB'), (0x34, 'DES'),
        (0x35, 'TXS'), (0x36, 'PSHA'), (0x37, 'PSHB'), (0x38, 'PULX'), (0x39, 'RTS'),
        (0x3A, 'ABX'), (0x3B, 'RTI'), (0x3C, 'PSHX'), (0x3D, 'MUL'), (0x3E, 'WAI'),
    ]:
        add(code, name, imp)
    add(0x3F, 'SWI', AddressingMode.SYSCALL)

    branches = ['BRA', 'BRN', 'BHI', 'BLS', 'BCC', 'BCS', 'BNE', 'BEQ',
                'BVC', 'BVS', 'BPL', 'BMI', 'BGE', 'BLT', 'BGT', 'BLE']
    for i, name in enumerate(branches):
        add(0x20 + i, name, AddressingMode.RELATIVE)
    add(0x8D, 'BSR', AddressingMode.RELATIVE)

    # accumulator A/B single-operand group
    unary = {0x0: 'NEG', 0x3: 'COM', 0x4: 'LSR', 0x6: 'ROR', 0x7: 'ASR',
             0x8: 'ASL', 0x9: 'ROL', 0xA: 'DEC', 0xC: 'INC', 0xD: 'TST', 0xF: 'CLR'}
    for low, name in unary.items():
        add(0x40 + low, name + 'A', imp)
        add(0x50 + low, name + 'B', imp)
    for low, name in unary.items():
        add(0x60 + low, name, AddressingMode.INDEXED)
        add(0x70 + low, name, AddressingMode.EXTENDED)
    add(0x6E, 'JMP', AddressingMode.INDEXED)
    add(0x7E, 'JMP', AddressingMode.EXTENDED)

    for low, name in {0x1: 'AIM', 0x2: 'OIM', 0x5: 'EIM', 0xB: 'TIM'}.items():
        add(0x60 + low, name, AddressingMode.IMMEDIATE_INDEXED)
        add(0x70 + low, name, AddressingMode.IMMEDIATE_DIRECT)

    # two-operand accumulator groups, columns 0x8x-0xBx (A) and 0xCx-0xFx (B)
    modes = [AddressingMode.IMMEDIATE8, AddressingMode.DIRECT,
             AddressingMode.INDEXED, AddressingMode.EXTENDED]
    group_a = {0x0: 'SUBA', 0x1: 'CMPA', 0x2: 'SBCA', 0x3: 'SUBD', 0x4: 'ANDA', 0x5: 'BITA',
               0x6: 'LDAA', 0x7: 'STAA', 0x8: 'EORA', 0x9: 'ADCA', 0xA: 'ORAA', 0xB: 'ADDA',
               0xC: 'CPX', 0xD: 'JSR', 0xE: 'LDS', 0xF: 'STS'}
    group_b = {0x0: 'SUBB', 0x1: 'CMPB', 0x2: 'SBCB', 0x3: 'ADDD', 0x4: 'ANDB', 0x5: 'BITB',
               0x6: 'LDAB', 0x7: 'STAB', 0x8: 'EORB', 0x9: 'ADCB', 0xA: 'ORAB', 0xB: 'ADDB',
               0xC: 'LDD', 0xD: 'STD', 0xE: 'LDX', 0xF: 'STX'}
    wide = {'SUBD', 'CPX', 'LDS', 'ADDD', 'LDD', 'LDX'}
    for base, group in ((0x80, group_a), (0xC0, group_b)):
        for column, mode in enumerate(modes):
            for low, name in group.items():
                code = base + column * 0x10 + low
                if mode is AddressingMode.IMMEDIATE8:
                    # stores and JSR have no immediate form
                    if name in ('STAA', 'STAB', 'STS', 'STD', 'STX', 'JSR'):
                        continue
                    add(code, name, AddressingMode.IMMEDIATE16 if name in wide else mode)
                else:
                    add(code, name, mode)
    return ops


HD6303_OPCODES: Dict[int, CpuOpcode] = _build_cpu_table()

OP_RTS = 0x39
SWI_DISPLAY_STRING = 111

SWI_NAMES: Dict[int, str] = {i: name for i, name in enumerate([
    'al$free', 'al$grab', 'al$grow', 'al$repl', 'al$shnk', 'al$size', 'al$zero',
    'bt$nmdn', 'bt$nmen', 'bt$nof', 'bt$non', 'bt$pprg', 'bt$swof',
    'bz$alrm', 'bz$bell', 'bz$tone',
    'dp$emit', 'dp$prnt', 'dp$rest', 'dp$save', 'dp$stat', 'dp$view', 'dp$wrdy',
    'dv$boot', 'dv$cler', 'dv$lkup', 'dv$load', 'dv$vect',
    'ed$edit', 'ed$epos', 'ed$view',
    'er$lkup', 'er$mess',
    'fl$back', 'fl$bcat', 'fl$bdel', 'fl$bopn', 'fl$bsav', 'fl$catl', 'fl$copy',
    'fl$cret', 'fl$deln', 'fl$eras', 'fl$ffnd', 'fl$find', 'fl$frec', 'fl$next',
    'fl$open', 'fl$pars', 'fl$read', 'fl$rect', 'fl$renm', 'fl$rset', 'fl$setp',
    'fl$size', 'fl$writ',
    'fn$atan', 'fn$cos', 'fn$exp', 'fn$ln', 'fn$log', 'fn$powr', 'fn$rnd',
    'fn$sin', 'fn$sqrt', 'fn$tan',
    'it$gval', 'it$radd', 'it$strt', 'it$tadd',
    'kb$brek', 'kb$flsh', 'kb$getk', 'kb$init', 'kb$stat', 'kb$test', 'kb$uget',
    'lg$newp', 'lg$rled', 'ln$strt',
    'mn$disp',
    'mt$btof', 'mt$fadd', 'mt$fbdc', 'mt$fbex', 'mt$fbgn', 'mt$fbin', 'mt$fdiv',
    'mt$fmul', 'mt$fngt', 'mt$fsub',
    'pk$pkof', 'pk$qadd', 'pk$rbyt', 'pk$read', 'pk$rwrd', 'pk$sadd', 'pk$save',
    'pk$setp', 'pk$skip',
    'rm$runp',
    'tl$addi', 'tl$cpyx', 'tl$deli', 'tl$xxmd',
    'tm$dayv', 'tm$tget', 'tm$updt', 'tm$wait',
    'ut$cpyb', 'ut$ddsp', 'ut$disp', 'ut$entr', 'ut$fill', 'ut$icpb', 'ut$isbf',
    'ut$leav', 'ut$sdiv', 'ut$smul', 'ut$splt', 'ut$udiv', 'ut$umul', 'ut$utob',
    'ut$xcat', 'ut$xtob', 'ut$ysno',
    'ut$cdsp', 'tl$rstr',
])}


PRECEDENCE = {
    'FUNC': 99,
    'ATOM': 100,
    'NOT': 8,
    'UNARY_MINUS': 9,
    '**': 7,
    '*': 6, '/': 6, '*%': 6, '/%': 6,
    '+': 5, '-': 5, '+%': 5, '-%': 5,
    '=': 4, '<': 4, '>': 4, '<=': 4, '>=': 4, '<>': 4, '<%': 4, '>%': 4,
    'AND': 3,
    'OR': 2,
}

INFIX_OPERATORS = frozenset(k for k in PRECEDENCE if k not in ('FUNC', 'ATOM', 'NOT', 'UNARY_MINUS'))


def type_suffix(type_code: int) -> str:
    if type_code in (0, 3):
        return '%'
    if type_code in (1, 4):
        return ''
    if type_code in (2, 5):
        return '$'
    return '?'


QCODE_TABLE: Dict[int, QCodeDef] = {}


def _q(code, desc, args=(), pops='', pushes=''):
    QCODE_TABLE[code] = QCodeDef(desc, tuple(args), pops, pushes)


B = OperandKind.BYTE
W = OperandKind.WORD
I = OperandKind.INT
D = OperandKind.DISP
V = OperandKind.VAR
_TYPES = 'IFS'

# variable access: value, external value, reference, external reference
VAR_GROUPS = {0x00: 'value', 0x07: 'extern', 0x0D: 'ref', 0x14: 'extern_ref'}
for _base in VAR_GROUPS:
    for _i in range(6):
        _t = _TYPES[_i % 3]
        if _i < 3:
            _q(_base + _i, 'VAR', [V], '', _t)
        else:
            _q(_base + _i, 'VAR()', [V], 'I', _t)
_q(0x06, 'CALC_MEMORY', [W], '', 'F')
_q(0x13, 'CALC_MEMORY_REF', [W], '', 'F')
for _i in range(3):
    _q(0x1A + _i, 'FIELD', [B], 'S', _TYPES[_i])
    _q(0x1D + _i, 'FIELD_REF', [B], 'S', _TYPES[_i])

_q(0x20, 'BYTE', [B], '', 'I')
_q(0x21, 'INTEGER', [I], '', 'I')
_q(0x22, 'INTEGER', [I], '', 'I')
_q(0x23, 'FLOAT', [OperandKind.FLOAT], '', 'F')
_q(0x24, 'STRING', [OperandKind.STRING], '', 'S')

for _base, _t, _ops in (
        (0x27, 'I', ['<', '<=', '>', '>=', '<>', '=', '+', '-', '*', '/', '**', '-', 'NOT', 'AND', 'OR']),
        (0x36, 'F', ['<', '<=', '>', '>=', '<>', '=', '+', '-', '*', '/', '**', '-', 'NOT', 'AND', 'OR']),
        (0x45, 'S', ['<', '<=', '>', '>=', '<>', '=', '+'])):
    for _i, _op in enumerate(_ops):
        _unary = _i in (11, 12)
        _result = _t if _op in ('+', '-', '*', '/', '**') else 'I'
        _q(_base + _i, _op, (), _t if _unary else f'{_t} {_t}', _result)

for _code, _desc, _args, _pops in [
        (0x4C, 'AT', (), 'I I'), (0x4D, 'BEEP', (), 'I I'), (0x4E, 'CLS', (), ''),
        (0x4F, 'CURSOR', [B], ''), (0x50, 'ESCAPE', [B], ''), (0x51, 'GOTO', [D], ''),
        (0x52, 'OFF', (), ''), (0x53, 'ONERR', [D], ''), (0x54, 'PAUSE', (), 'I'),
        (0x55, 'POKEB', (), 'I I'), (0x56, 'POKEW', (), 'I I'), (0x57, 'RAISE', (), 'I'),
        (0x58, 'RANDOMIZE', (), 'F'), (0x59, 'STOP', (), ''), (0x5A, 'TRAP', (), ''),
        (0x5B, 'APPEND', (), ''), (0x5C, 'CLOSE', (), ''), (0x5D, 'COPY', (), 'S S'),
        (0x5E, 'CREATE', [OperandKind.FIELD_LIST], 'S'), (0x5F, 'DELETE', (), 'S'),
        (0x60, 'ERASE', (), ''), (0x61, 'FIRST', (), ''), (0x62, 'LAST', (), ''),
        (0x63, 'NEXT', (), ''), (0x64, 'BACK', (), ''),
        (0x65, 'OPEN', [OperandKind.FIELD_LIST], 'S'), (0x66, 'POSITION', (), 'I'),
        (0x67, 'RENAME', (), 'S S'), (0x68, 'UPDATE', (), ''), (0x69, 'USE', [B], ''),
        (0x6A, 'KSTAT', (), 'I'), (0x6B, 'EDIT', (), 'S'),
        (0x6C, 'INPUT', (), 'I'), (0x6D, 'INPUT', (), 'F'), (0x6E, 'INPUT', (), 'S'),
        (0x6F, 'PRINT', (), 'I'), (0x70, 'PRINT', (), 'F'), (0x71, 'PRINT', (), 'S'),
        (0x72, 'PRINT', (), ''), (0x73, 'PRINT', (), ''),
        (0x74, 'LPRINT', (), 'I'), (0x75, 'LPRINT', (), 'F'), (0x76, 'LPRINT', (), 'S'),
        (0x77, 'LPRINT', (), ''), (0x78, 'LPRINT', (), ''),
        (0x79, 'RETURN', (), '?'), (0x7A, 'RETURN', (), ''), (0x7B, 'RETURN', (), ''),
        (0x7C, 'RETURN', (), ''),
        (0x7E, 'BranchIfFalse', [D], 'I'),
        (0x7F, 'ASSIGN', (), 'I I'), (0x80, 'ASSIGN', (), 'F F'), (0x81, 'ASSIGN', (), 'S S'),
        (0x83, 'DROP', (), 'I'), (0x84, 'DROP', (), 'F'), (0x85, 'DROP', (), 'S'),
        (0x89, 'ASM', [OperandKind.CODE], ''),
        (0xCA, 'DEBUG_PROC', [OperandKind.STRING], ''), (0xCB, 'DEBUG_LINE', [I, I], ''),
        (0xD2, 'OFF', (), 'I')]:
    _q(_code, _desc, _args, _pops)

_q(0x7D, 'PROC', [OperandKind.PROC], '', '?')
_q(0x86, 'FLT', (), 'I', 'F')
_q(0x87, 'INT', (), 'F', 'I')

for _code, _desc, _pops, _pushes in [
        (0x8A, 'ADDR', '?', 'I'), (0x8B, 'ASC', 'S', 'I'), (0x8C, 'DAY', '', 'I'),
        (0x8D, 'DISP', 'I S', 'I'), (0x8E, 'ERR', '', 'I'), (0x8F, 'FIND', 'S', 'I'),
        (0x90, 'FREE', '', 'I'), (0x91, 'GET', '', 'I'), (0x92, 'HOUR', '', 'I'),
        (0x93, 'IABS', 'I', 'I'), (0x94, 'INT', 'F', 'I'), (0x95, 'KEY', '', 'I'),
        (0x96, 'LEN', 'S', 'I'), (0x97, 'LOC', 'S S', 'I'), (0x98, 'MENU', 'S', 'I'),
        (0x99, 'MINUTE', '', 'I'), (0x9A, 'MONTH', '', 'I'), (0x9B, 'PEEKB', 'I', 'I'),
        (0x9C, 'PEEKW', 'I', 'I'), (0x9D, 'RECSIZE', '', 'I'), (0x9E, 'SECOND', '', 'I'),
        (0x9F, 'USR', 'I I', 'I'), (0xA0, 'VIEW', 'I S', 'I'), (0xA1, 'YEAR', '', 'I'),
        (0xA2, 'COUNT', '', 'I'), (0xA3, 'EOF', '', 'I'), (0xA4, 'EXIST', 'S', 'I'),
        (0xA5, 'POS', '', 'I'),
        (0xA6, 'ABS', 'F', 'F'), (0xA7, 'ATAN', 'F', 'F'), (0xA8, 'COS', 'F', 'F'),
        (0xA9, 'DEG', 'F', 'F'), (0xAA, 'EXP', 'F', 'F'), (0xAB, 'FLT', 'I', 'F'),
        (0xAC, 'INTF', 'F', 'F'), (0xAD, 'LN', 'F', 'F'), (0xAE, 'LOG', 'F', 'F'),
        (0xAF, 'PI', '', 'F'), (0xB0, 'RAD', 'F', 'F'), (0xB1, 'RND', '', 'F'),
        (0xB2, 'SIN', 'F', 'F'), (0xB3, 'SQR', 'F', 'F'), (0xB4, 'TAN', 'F', 'F'),
        (0xB5, 'VAL', 'S', 'F'), (0xB6, 'SPACE', '', 'F'),
        (0xB7, 'DIR$', 'S', 'S'), (0xB8, 'CHR$', 'I', 'S'), (0xB9, 'DATIM$', '', 'S'),
        (0xBA, 'ERR$', 'I', 'S'), (0xBB, 'FIX$', 'F I I', 'S'), (0xBC, 'GEN$', 'F I', 'S'),
        (0xBD, 'GET$', '', 'S'), (0xBE, 'HEX$', 'I', 'S'), (0xBF, 'KEY$', '', 'S'),
        (0xC0, 'LEFT$', 'S I', 'S'), (0xC1, 'LOWER$', 'S', 'S'), (0xC2, 'MID$', 'S I I', 'S'),
        (0xC3, 'NUM$', 'F I', 'S'), (0xC4, 'RIGHT$', 'S I', 'S'), (0xC5, 'REPT$', 'S I', 'S'),
        (0xC6, 'SCI$', 'F I I', 'S'), (0xC7, 'UPPER$', 'S', 'S'), (0xC8, 'USR$', 'I I', 'S'),
        (0xC9, 'ADDR', '?', 'I'),
        (0xCC, '<%', 'F F', 'F'), (0xCD, '>%', 'F F', 'F'), (0xCE, '+%', 'F F', 'F'),
        (0xCF, '-%', 'F F', 'F'), (0xD0, '*%', 'F F', 'F'), (0xD1, '/%', 'F F', 'F'),
        # LZ extensions
        (0xD6, 'CLOCK', 'I', 'I'), (0xD7, 'DOW', 'I I I', 'I'), (0xD8, 'FINDW', 'S', 'I'),
        (0xD9, 'MENUN', 'I S', 'I'), (0xDA, 'WEEK', 'I I I', 'I'), (0xDB, 'ACOS', 'F', 'F'),
        (0xDC, 'ASIN', 'F', 'F'), (0xDD, 'DAYS', 'I I I', 'F'), (0xDE, 'MAX', 'Flist', 'F'),
        (0xDF, 'MEAN', 'Flist', 'F'), (0xE0, 'MIN', 'Flist', 'F'), (0xE1, 'STD', 'Flist', 'F'),
        (0xE2, 'SUM', 'Flist', 'F'), (0xE3, 'VAR', 'Flist', 'F'), (0xE4, 'DAYNAME$', 'I', 'S'),
        (0xE5, 'DIRW$', 'S', 'S'), (0xE6, 'MONTH$', 'I', 'S')]:
    _q(_code, _desc, (), _pops, _pushes)

# LZ page pokes: the opcode is the high byte of the address
PAGE_POKE_OPS = range(0xF0, 0xF8)
for _code in PAGE_POKE_OPS:
    _q(_code, 'POKEB_PAGE', [B, B])
_q(0xF8, 'PRINT ;')
_q(0xFB, 'ELSEIF', [D], 'I')

del B, W, I, D, V

OP_GOTO = 0x51
OP_ONERR = 0x53
OP_STOP = 0x59
OP_RAISE = 0x57
OP_TRAP = 0x5A
OP_PROC = 0x7D
OP_BRANCH_IF_FALSE = 0x7E
OP_RETURN_VALUE = 0x79
OP_RETURN_NOVALUE = frozenset((0x7A, 0x7B, 0x7C))
OP_INLINE_CODE = 0x89
OP_ASSIGN_FLOAT = 0x80
OP_PRINT_SEMICOLON = 0xF8
OP_LZ_ELSEIF = 0xFB
# two-byte LZ opcodes: 0xFE then an extension byte
OP_LZ_PREFIX = 0xFE

BRANCH_OPS = frozenset((OP_GOTO, OP_ONERR, OP_BRANCH_IF_FALSE))
UNCONDITIONAL_OPS = frozenset((OP_GOTO, OP_STOP, OP_RAISE, OP_RETURN_VALUE)) | OP_RETURN_NOVALUE

PRINT_VALUE_OPS = frozenset((0x6F, 0x70, 0x71))
PRINT_COMMA_OPS = frozenset((0x72,))
PRINT_NEWLINE_OPS = frozenset((0x73,))
LPRINT_VALUE_OPS = frozenset((0x74, 0x75, 0x76))
LPRINT_COMMA_OPS = frozenset((0x77,))
LPRINT_NEWLINE_OPS = frozenset((0x78,))

ASSIGN_OPS = frozenset((0x7F, 0x80, 0x81))
PEEK_OPS = frozenset((0x9B, 0x9C))
USR_OPS = frozenset((0x9F, 0xC8))

# commands that accept a TRAP prefix
TRAPPABLE = frozenset((
    'APPEND', 'BACK', 'CLOSE', 'COPY', 'CREATE', 'DELETE', 'ERASE', 'EDIT', 'FIRST',
    'INPUT', 'LAST', 'NEXT', 'OPEN', 'POSITION', 'RENAME', 'UPDATE', 'USE',
))


def var_access(opcode: int):
    """Return (group, type code) for a variable-access opcode, or None.

    The type code follows the header convention: 0-2 scalar int/float/string,
    3-5 the matching arrays.
    """
    for base, group in VAR_GROUPS.items():
        if base <= opcode < base + 6:
            return group, opcode - base
    return None
