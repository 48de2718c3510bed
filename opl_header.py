import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from opl_decoder import decode_instructions
from opl_errors import HeaderError
from opl_opcodes import type_suffix, var_access

log = logging.getLogger(__name__)

LZ_SIGNATURE = b'\x59\xB2'
LZ_FLAG_OFFSET = 0x14
MAX_NAME_LEN = 32
MAX_STRING_LEN = 255

# element storage: a 2 byte count, then the elements
INT_ARRAY_OVERHEAD = 2
FLOAT_ARRAY_OVERHEAD = 3
FLOAT_SIZE = 8


class VarKind(Enum):
    INT = 0
    FLOAT = 1
    STRING = 2

    @property
    def suffix(self) -> str:
        return type_suffix(self.value)

    @classmethod
    def from_type(cls, type_code: int) -> 'VarKind':
        if type_code in (0, 3):
            return cls.INT
        if type_code in (2, 5):
            return cls.STRING
        return cls.FLOAT


class VarScope(Enum):
    LOCAL = 'local'
    PARAM = 'param'
    EXTERNAL = 'external'
    GLOBAL = 'global'


@dataclass
class Declaration:
    """One entry of the global or external name table."""
    name: str
    type_code: int
    addr: Optional[int] = None

    @property
    def full_name(self) -> str:
        suffix = type_suffix(self.type_code)
        return self.name if self.name.endswith(suffix) else self.name + suffix


@dataclass
class VariableEntry:
    name: str
    kind: VarKind = VarKind.FLOAT
    scope: VarScope = VarScope.LOCAL
    max_len: Optional[int] = None
    array_len: Optional[int] = None
    is_array: bool = False

    def declaration(self, guess_array_len: bool = True) -> str:
        text = self.name
        if not text.endswith(self.kind.suffix):
            text += self.kind.suffix
        array_len = self.array_len if self.array_len and 0 < self.array_len < 32768 else None
        max_len = None
        if self.kind is VarKind.STRING and self.max_len and 0 < self.max_len < 32768:
            max_len = self.max_len
        if array_len and max_len:
            text += f'({array_len},{max_len})'
        elif max_len:
            text += f'({max_len})'
        elif array_len:
            text += f'({array_len})'
        elif self.is_array and guess_array_len:
            text += '(10)'
        return text


@dataclass
class ProcedureHeader:
    name: Optional[str] = None
    var_space: int = 0
    qcode_size: int = 0
    param_types: List[int] = field(default_factory=list)
    globals: List[Declaration] = field(default_factory=list)
    externals: List[Declaration] = field(default_factory=list)
    string_fixups: List[Tuple[int, int]] = field(default_factory=list)
    array_fixups: Dict[int, int] = field(default_factory=dict)
    is_lz: bool = False
    qcode_start: int = 0
    qcode_end: int = 0
    opl_base: int = 0
    total_len: int = 0

    @property
    def param_count(self) -> int:
        return len(self.param_types)

    @property
    def instruction_start(self) -> int:
        # where the QCode sits when the record length fields are right
        return self.opl_base + self.total_len - self.qcode_size


class HeaderReader:

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def read_u8(self) -> int:
        val = self.data[self.pos]
        self.pos += 1
        return val

    def read_u16(self) -> int:
        val = struct.unpack_from('>H', self.data, self.pos)[0]
        self.pos += 2
        return val

    def read_bytes(self, count: int) -> bytes:
        if self.pos + count > len(self.data):
            raise IndexError('read past end of procedure')
        val = bytes(self.data[self.pos:self.pos + count])
        self.pos += count
        return val

    def read_name(self) -> Optional[str]:
        length = self.read_u8()
        if length == 0 or length > MAX_NAME_LEN:
            return None
        return self.read_bytes(length).decode('latin-1')

    def at_end(self) -> bool:
        return self.pos >= len(self.data)

    def parse(self) -> ProcedureHeader:
        data = self.data
        header = ProcedureHeader()
        if len(data) >= 2 and data[0] == 0x09 and data[1] in (0x83, 0x09, 0x03):
            # file records carry a language flag; raw blocks only have the marker
            header.is_lz = len(data) > LZ_FLAG_OFFSET and data[LZ_FLAG_OFFSET] == 0x24
            self.pos = 2
            header.name = self.read_bytes(8).decode('latin-1').strip() or None
            self.read_u8()
            self._read_long_record(header)
        elif len(data) >= 2 and data[0] == 0x02 and data[1] == 0x80:
            self._read_long_record(header)
        else:
            header.opl_base = 0
            header.total_len = len(data)
        log.debug('OPL block at %04X, %d bytes', header.opl_base, header.total_len)

        header.var_space = self.read_u16()
        header.qcode_size = self.read_u16()
        param_count = self.read_u8()
        header.param_types = list(reversed(self.read_bytes(param_count)))

        table_end = self.read_u16() + self.pos
        while self.pos < table_end:
            name = self.read_name()
            if name is None:
                self.pos = table_end
                break
            type_code = self.read_u8()
            header.globals.append(Declaration(name, type_code, self.read_u16()))

        table_end = self.read_u16() + self.pos
        while self.pos < table_end:
            name = self.read_name()
            if name is None:
                self.pos = table_end
                break
            header.externals.append(Declaration(name, self.read_u8()))

        if not self.at_end():
            table_end = self.read_u16() + self.pos
            while self.pos < table_end and not self.at_end():
                addr = self.read_u16()
                header.string_fixups.append((addr, self.read_u8()))

        # the array fix-up table is omitted when the QCode follows directly
        if not self.at_end() and self.pos + 2 <= header.instruction_start:
            table_end = self.read_u16() + self.pos
            while self.pos < table_end and not self.at_end():
                addr = self.read_u16()
                header.array_fixups[addr] = self.read_u16()

        start = self.pos
        size = header.qcode_size
        if data[start:start + 2] == LZ_SIGNATURE:
            log.debug('skipping LZ procedure marker at %04X', start)
            start += 2
            size -= 2
            header.is_lz = True
        header.qcode_start = start
        header.qcode_end = start + max(0, size)
        if header.qcode_end > len(data):
            log.warning('QCode window %04X-%04X runs past the %d byte procedure',
                        start, header.qcode_end, len(data))
        return header

    def _read_long_record(self, header: ProcedureHeader):
        self.read_u8()
        self.read_u8()
        self.read_u16()
        header.total_len = self.read_u16()
        header.opl_base = self.pos


def parse_header(code) -> ProcedureHeader:
    """Read the procedure framing and metadata tables that precede the QCode."""
    try:
        return HeaderReader(bytes(code)).parse()
    except (struct.error, IndexError) as e:
        raise HeaderError(f'procedure header is truncated ({len(code)} bytes): {e}') from e


def _signed(value: int) -> int:
    return value - 65536 if value > 32767 else value


@dataclass
class _Usage:
    order: List[int] = field(default_factory=list)
    kinds: Dict[int, Set[VarKind]] = field(default_factory=dict)
    arrays: Set[int] = field(default_factory=set)
    externs: Set[int] = field(default_factory=set)
    min_counts: Dict[int, int] = field(default_factory=dict)

    def kind_of(self, addr: int) -> VarKind:
        kinds = self.kinds.get(addr, ())
        if VarKind.STRING in kinds:
            return VarKind.STRING
        if VarKind.INT in kinds:
            return VarKind.INT
        return VarKind.FLOAT

    def type_code(self, addr: int) -> int:
        return self.kind_of(addr).value + (3 if addr in self.arrays else 0)


def _scan_usage(code, header: ProcedureHeader) -> _Usage:
    usage = _Usage()
    last_int = None
    for ins in decode_instructions(code, header.qcode_start, header.qcode_end):
        if ins.truncated:
            break
        if ins.unknown:
            last_int = None
            continue
        access = var_access(ins.opcode)
        if access is not None:
            group, type_code = access
            addr = ins.operands['V']
            if addr not in usage.kinds:
                usage.order.append(addr)
                usage.kinds[addr] = set()
            usage.kinds[addr].add(VarKind.from_type(type_code))
            if group in ('extern', 'extern_ref'):
                usage.externs.add(addr)
            if type_code >= 3:
                usage.arrays.add(addr)
                if last_int is not None and last_int > usage.min_counts.get(addr, 0):
                    usage.min_counts[addr] = last_int
        if ins.opcode == 0x20:
            last_int = ins.operands['B']
        elif ins.opcode in (0x21, 0x22):
            last_int = ins.operands['I']
        else:
            last_int = None
    return usage


def _infer_dimensions(entry: VariableEntry, size: int, min_count: int):
    if entry.kind is VarKind.STRING:
        if entry.is_array or entry.array_len or (entry.max_len and size > entry.max_len + 2):
            payload = size - 2
            if payload <= 0:
                return
            if entry.max_len:
                entry.array_len = entry.array_len or payload // (entry.max_len + 1)
            else:
                for max_len in range(MAX_STRING_LEN, 0, -1):
                    count, rest = divmod(payload, max_len + 1)
                    if rest == 0 and count >= min_count:
                        entry.max_len, entry.array_len = max_len, count
                        break
                else:
                    entry.max_len = min(MAX_STRING_LEN, size - 3) if size > 2 else 1
                    entry.array_len = 1
            entry.is_array = True
        elif not entry.max_len:
            entry.max_len = max(1, min(MAX_STRING_LEN, size - 1))
    elif (entry.is_array or entry.array_len) and not entry.array_len:
        if entry.kind is VarKind.INT and size > INT_ARRAY_OVERHEAD:
            entry.array_len = (size - INT_ARRAY_OVERHEAD) // 2
        elif entry.kind is VarKind.FLOAT and size > FLOAT_ARRAY_OVERHEAD:
            entry.array_len = (size - FLOAT_ARRAY_OVERHEAD) // FLOAT_SIZE


def scan_variables(code, header: ProcedureHeader) -> Dict[int, VariableEntry]:
    """Name every variable offset the QCode touches.

    Parameters take the negative offsets nearest zero, globals and externals
    are matched from the header tables and whatever is left becomes a local
    ``L1%``, ``L2``, ``L3$``... String lengths and array sizes come from the
    fix-up tables, else from the gap up to the next variable.
    """
    usage = _scan_usage(code, header)
    var_map: Dict[int, VariableEntry] = {}
    string_fixups = {_signed(addr): length for addr, length in header.string_fixups}
    array_fixups = {_signed(addr): length for addr, length in header.array_fixups.items()}

    addresses = set(usage.order)
    addresses.update(_signed(g.addr) for g in header.globals if g.addr)
    layout = sorted(addresses, reverse=True)

    def slot_size(addr: int) -> int:
        n = layout.index(addr)
        upper = layout[n - 1] if n > 0 else 0
        return abs(upper - addr)

    def fixup(entry: VariableEntry, addr: int):
        if addr in string_fixups:
            entry.max_len = string_fixups[addr]
        if addr in array_fixups:
            entry.array_len = array_fixups[addr]
            entry.is_array = True

    stack_slots = sorted((a for a in usage.order if a < 0), reverse=True)
    for n, type_code in enumerate(header.param_types):
        if n >= len(stack_slots):
            log.debug('parameter P%d is never used', n + 1)
            continue
        var_map[stack_slots[n]] = VariableEntry(
            f'P{n + 1}{type_suffix(type_code)}', VarKind.from_type(type_code), VarScope.PARAM)

    remaining = [a for a in usage.order if a not in var_map]

    def match_slot(type_code: int) -> Optional[int]:
        for addr in remaining:
            if addr in usage.externs and usage.type_code(addr) == type_code:
                return addr
        for addr in remaining:
            if usage.type_code(addr) == type_code:
                return addr
        return None

    for g in header.globals:
        addr = _signed(g.addr)
        if addr in remaining:
            mapped = addr
        elif g.addr == 0:
            mapped = match_slot(g.type_code)
        else:
            mapped = addr
        if mapped is None:
            log.debug('global %s has no matching variable', g.name)
            continue
        if mapped in remaining:
            remaining.remove(mapped)
        entry = VariableEntry(g.full_name, VarKind.from_type(g.type_code), VarScope.GLOBAL,
                              is_array=g.type_code >= 3 or mapped in usage.arrays)
        fixup(entry, mapped)
        if mapped in layout:
            _infer_dimensions(entry, slot_size(mapped), usage.min_counts.get(mapped, 0))
        var_map[mapped] = entry

    for e in header.externals:
        mapped = match_slot(e.type_code)
        if mapped is None:
            log.debug('external %s has no matching variable', e.name)
            continue
        remaining.remove(mapped)
        entry = VariableEntry(e.full_name, VarKind.from_type(e.type_code), VarScope.EXTERNAL,
                              is_array=e.type_code >= 3)
        fixup(entry, mapped)
        var_map[mapped] = entry

    used_names = {v.name for v in var_map.values()}
    counter = 1
    for addr in remaining:
        kind = usage.kind_of(addr)
        name = f'L{counter}{kind.suffix}'
        while name in used_names:
            counter += 1
            name = f'L{counter}{kind.suffix}'
        counter += 1
        used_names.add(name)
        entry = VariableEntry(name, kind, VarScope.LOCAL, is_array=addr in usage.arrays)
        fixup(entry, addr)
        _infer_dimensions(entry, slot_size(addr), usage.min_counts.get(addr, 0))
        var_map[addr] = entry
    return var_map
