import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Iterable, List, Optional, Set

from opl_decoder import Instruction
from opl_opcodes import (
    OP_GOTO, OP_ONERR, OP_BRANCH_IF_FALSE, BRANCH_OPS, UNCONDITIONAL_OPS,
)

log = logging.getLogger(__name__)

# how far before its test a WHILE loop's closing GOTO may jump
WHILE_REACH = 20


class FlowKind(Enum):
    DO = auto()
    WHILE = auto()
    IF = auto()
    ELSEIF = auto()
    ELSE = auto()

    @property
    def is_loop(self) -> bool:
        return self in (FlowKind.DO, FlowKind.WHILE)


@dataclass(frozen=True)
class FlowConstruct:
    kind: FlowKind
    start: int
    end: int
    exit: Optional[int] = None
    cond: Optional[int] = None
    else_addr: Optional[int] = None

    @property
    def continue_addr(self) -> int:
        if self.kind is FlowKind.DO and self.cond is not None:
            return self.cond
        return self.start


@dataclass
class FlowMap:
    starts: Dict[int, List[FlowConstruct]] = field(default_factory=dict)
    targets: Dict[int, List[FlowConstruct]] = field(default_factory=dict)
    jumps: Dict[int, FlowConstruct] = field(default_factory=dict)
    labels: Set[int] = field(default_factory=set)
    structure_labels: Set[int] = field(default_factory=set)
    force_labels: Set[int] = field(default_factory=set)

    def add(self, construct: FlowConstruct, *branches: int) -> None:
        self.starts.setdefault(construct.start, []).append(construct)
        self.targets.setdefault(construct.end, []).append(construct)
        for addr in branches:
            self.jumps[addr] = construct

    def replace(self, old: FlowConstruct, new: FlowConstruct) -> None:
        self.starts[old.start].remove(old)
        self.targets[old.end].remove(old)
        branches = [a for a, c in self.jumps.items() if c is old]
        self.add(new, *branches)

    def mark_structural(self, *addrs: int) -> None:
        for addr in addrs:
            if addr in self.labels:
                self.structure_labels.add(addr)

    def user_labels(self) -> List[int]:
        return sorted((self.labels - self.structure_labels) | self.force_labels)

    def label_names(self) -> Dict[int, str]:
        return {addr: f'Lab{n}' for n, addr in enumerate(self.user_labels(), 1)}

    def opening(self, addr: int) -> List[FlowConstruct]:
        """Constructs starting at ``addr``, outermost first."""
        return list(reversed(self.starts.get(addr, ())))

    def closing(self, addr: int) -> List[FlowConstruct]:
        """Constructs ending at ``addr``, innermost first. An ELSE ending here
        comes after everything nested in the IF body."""
        return sorted(self.targets.get(addr, ()), key=lambda c: (c.kind is FlowKind.ELSE, -c.start))

    def sort(self) -> None:
        for entries in self.starts.values():
            entries.sort(key=lambda c: c.end)
        for entries in self.targets.values():
            entries.sort(key=lambda c: -c.start)


def _is_expression(ins: Instruction) -> bool:
    d = ins.definition
    return d is not None and bool(d.pushes) and ins.opcode not in BRANCH_OPS


def analyze_control_flow(instructions: Iterable[Instruction], start: Optional[int] = None,
                         end: Optional[int] = None, force_labels: Iterable[int] = ()) -> FlowMap:
    """Classify every QCode branch as DO/UNTIL, WHILE/ENDWH or IF/ELSEIF/ELSE.

    ``instructions`` is the decoded QCode; only those inside ``[start, end)``
    take part. Targets that no construct absorbs end up as user labels.
    """
    code = [ins for ins in instructions
            if not ins.unknown and not ins.truncated
            and (start is None or ins.addr >= start) and (end is None or ins.addr < end)]
    flow = FlowMap()
    flow.force_labels.update(force_labels)
    if not code:
        return flow
    if start is None:
        start = code[0].addr
    if end is None:
        end = code[-1].end

    index = {ins.addr: n for n, ins in enumerate(code)}
    ending_at = {ins.end: n for n, ins in enumerate(code)}
    protected: Set[int] = set()

    for ins in code:
        if ins.opcode not in BRANCH_OPS:
            continue
        if ins.opcode == OP_ONERR and ins.operands['D'] == 0:
            continue
        flow.labels.add(ins.target)
        if not start <= ins.target <= end:
            warnings.warn(f'Branch at {ins.addr:04X} leaves the QCode window (target {ins.target & 0xFFFF:04X})')

    # backward conditional branches close DO...UNTIL loops
    for n, ins in enumerate(code):
        if ins.opcode != OP_BRANCH_IF_FALSE or ins.target >= ins.addr:
            continue
        top = ins.target
        # CONTINUE jumps to the start of the UNTIL condition
        k = n
        while k > 0 and code[k - 1].addr >= top and _is_expression(code[k - 1]):
            k -= 1
        cond = code[k].addr
        loop = FlowConstruct(FlowKind.DO, top, ins.addr, exit=ins.end, cond=cond)
        flow.add(loop, ins.addr)
        flow.mark_structural(top, cond, ins.end)
        protected.add(ins.end)
        if cond in flow.labels:
            protected.add(cond)
        log.debug('DO...UNTIL %04X-%04X (continue %04X)', top, ins.addr, cond)

    for ins in code:
        if ins.opcode == OP_GOTO and ins.target <= ins.addr:
            protected.add(ins.target)

    conditionals: List[FlowConstruct] = []
    for ins in code:
        if ins.opcode != OP_BRANCH_IF_FALSE or ins.target <= ins.addr:
            continue
        target = ins.target
        n = ending_at.get(target)
        prev = code[n] if n is not None and code[n].addr > ins.addr else None

        if prev is not None and prev.opcode == OP_GOTO and ins.addr - WHILE_REACH < prev.target <= ins.addr:
            loop = FlowConstruct(FlowKind.WHILE, prev.target, prev.addr, exit=target)
            flow.add(loop, ins.addr, prev.addr)
            flow.mark_structural(prev.target, target)
            protected.update((prev.target, target))
            log.debug('WHILE...ENDWH %04X-%04X', prev.target, prev.addr)
            continue

        construct = None
        if prev is not None and prev.opcode == OP_GOTO and target < prev.target <= end:
            endif = prev.target
            before = code[n - 1] if n > 0 else None
            dead = (before is not None and before.opcode in UNCONDITIONAL_OPS
                    and prev.addr not in flow.labels)
            if dead:
                log.debug('GOTO at %04X follows an unconditional transfer; not an ELSE', prev.addr)
            elif endif not in protected:
                construct = FlowConstruct(FlowKind.IF, ins.addr, endif, else_addr=target)
                flow.add(construct, ins.addr)
                flow.add(FlowConstruct(FlowKind.ELSE, prev.addr, target), prev.addr)
                flow.mark_structural(target, endif)
                log.debug('IF...ELSE...ENDIF %04X else %04X end %04X', ins.addr, target, endif)
        if construct is None:
            construct = FlowConstruct(FlowKind.IF, ins.addr, target)
            flow.add(construct, ins.addr)
            flow.mark_structural(target)
            log.debug('IF...ENDIF %04X-%04X', ins.addr, target)
        conditionals.append(construct)

    _collapse_elseif(flow, code, index, conditionals)
    _force_branch_labels(flow, code)
    flow.sort()
    return flow


def _collapse_elseif(flow: FlowMap, code: List[Instruction], index: Dict[int, int],
                     conditionals: List[FlowConstruct]) -> None:
    # an IF at the head of an ELSE body that shares its ENDIF becomes ELSEIF
    current = {c.start: c for c in conditionals}
    for addr in sorted(current):
        outer = current[addr]
        if outer.else_addr is None or outer.else_addr not in index:
            continue
        n = index[outer.else_addr]
        while n < len(code) and _is_expression(code[n]):
            n += 1
        if n >= len(code) or code[n].opcode != OP_BRANCH_IF_FALSE:
            continue
        inner = current.get(code[n].addr)
        if inner is None or inner.kind is not FlowKind.IF or inner.end != outer.end:
            continue
        if any(_interrupts(flow, code[i].addr, inner.start) for i in range(index[outer.else_addr], n + 1)):
            continue
        merged = FlowConstruct(FlowKind.ELSEIF, inner.start, inner.end, else_addr=inner.else_addr)
        flow.replace(inner, merged)
        current[inner.start] = merged
        log.debug('ELSEIF at %04X', inner.start)


def _interrupts(flow: FlowMap, addr: int, branch: int) -> bool:
    if addr in flow.force_labels:
        return True
    if addr in flow.labels and addr not in flow.structure_labels:
        return True
    return addr != branch and bool(flow.starts.get(addr))


def _force_branch_labels(flow: FlowMap, code: List[Instruction]) -> None:
    loops: List[FlowConstruct] = []
    for ins in code:
        for c in flow.opening(ins.addr):
            if c.kind.is_loop:
                loops.append(c)

        if ins.opcode == OP_GOTO:
            structural = ins.addr in flow.jumps
            if not structural and loops:
                structural = ins.target in (loops[-1].continue_addr, loops[-1].exit)
            if not structural:
                flow.force_labels.add(ins.target)
        elif ins.opcode == OP_ONERR:
            if ins.operands['D'] != 0:
                flow.force_labels.add(ins.target)
        elif ins.opcode == OP_BRANCH_IF_FALSE and ins.addr not in flow.jumps:
            flow.force_labels.add(ins.target)

        construct = flow.jumps.get(ins.addr)
        if construct is not None and construct.kind.is_loop and construct.end == ins.addr \
                and construct in loops:
            loops.remove(construct)
