"""
Control-flow recovery tests
"""

import unittest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from opl_decoder import decode_instructions
from opl_flow import FlowKind, analyze_control_flow
from qcode_builder import QCode


def analyze(q, force_labels=()):
    code = q.build()
    return analyze_control_flow(decode_instructions(code, 0, len(code)), 0, len(code), force_labels)


def if_else(q, cond, then_text, else_label, end_label):
    q.byte(cond).bif(else_label).print_string(then_text).goto(end_label)
    return q


class TestLoops(unittest.TestCase):

    def test_do_until(self):
        q = QCode().mark('top').print_string('X')
        q.mark('cond').var(-2).byte(3).raw(0x2C).mark('until').bif('top').ret()
        flow = analyze(q)
        loop = flow.jumps[q.marks['until']]
        self.assertIs(loop.kind, FlowKind.DO)
        self.assertEqual(loop.start, 0)
        self.assertEqual(loop.end, q.marks['until'])
        self.assertEqual(loop.cond, q.marks['cond'])
        self.assertEqual(loop.continue_addr, q.marks['cond'])
        self.assertEqual(loop.exit, q.marks['until'] + 3)
        self.assertIn(0, flow.structure_labels)
        self.assertEqual(flow.label_names(), {})

    def test_while(self):
        q = QCode().mark('top').var(-2).byte(10).raw(0x27).mark('test').bif('exit')
        q.print_string('X').mark('back').goto('top').mark('exit').ret()
        flow = analyze(q)
        loop = flow.jumps[q.marks['test']]
        self.assertIs(loop.kind, FlowKind.WHILE)
        self.assertIs(flow.jumps[q.marks['back']], loop)
        self.assertEqual(loop.start, 0)
        self.assertEqual(loop.end, q.marks['back'])
        self.assertEqual(loop.exit, q.marks['exit'])
        self.assertEqual(flow.label_names(), {})

    def test_break_is_not_labelled(self):
        q = QCode().mark('top').byte(1).bif('exit')
        q.byte(5).bif('skip').goto('exit').mark('skip').goto('top').mark('exit').ret()
        flow = analyze(q)
        self.assertEqual(flow.label_names(), {})
        self.assertNotIn(q.marks['exit'], flow.force_labels)


class TestConditionals(unittest.TestCase):

    def test_plain_if(self):
        q = QCode().byte(1).mark('test').bif('end').print_string('A').mark('end').ret()
        flow = analyze(q)
        construct = flow.jumps[q.marks['test']]
        self.assertIs(construct.kind, FlowKind.IF)
        self.assertEqual(construct.end, q.marks['end'])
        self.assertIsNone(construct.else_addr)
        self.assertIn(construct, flow.starts[construct.start])
        self.assertIn(construct, flow.targets[construct.end])
        self.assertEqual(flow.label_names(), {})

    def test_if_else(self):
        q = QCode().byte(1).mark('test').bif('else')
        q.print_string('A').mark('jump').goto('end')
        q.mark('else').print_string('B').mark('end').ret()
        flow = analyze(q)
        construct = flow.jumps[q.marks['test']]
        self.assertIs(construct.kind, FlowKind.IF)
        self.assertEqual(construct.end, q.marks['end'])
        self.assertEqual(construct.else_addr, q.marks['else'])
        other = flow.jumps[q.marks['jump']]
        self.assertIs(other.kind, FlowKind.ELSE)
        self.assertEqual((other.start, other.end), (q.marks['jump'], q.marks['else']))
        self.assertEqual(flow.label_names(), {})

    def test_elseif_collapse(self):
        q = QCode()
        if_else(q.mark('first'), 1, 'A', 'e1', 'end')
        q.mark('e1')
        if_else(q, 2, 'B', 'e2', 'end')
        q.mark('e2').print_string('C').mark('end').ret()
        flow = analyze(q)
        second = flow.jumps[q.marks['e1'] + 2]
        self.assertIs(second.kind, FlowKind.ELSEIF)
        self.assertEqual(second.end, q.marks['end'])
        self.assertIs(flow.jumps[2].kind, FlowKind.IF)
        kinds = sorted(c.kind.name for c in flow.targets[q.marks['end']])
        self.assertEqual(kinds, ['ELSEIF', 'IF'])

    def test_labelled_else_body_is_not_collapsed(self):
        q = QCode()
        if_else(q, 1, 'A', 'e1', 'end')
        q.mark('e1')
        if_else(q, 2, 'B', 'e2', 'end')
        q.mark('e2').print_string('C').mark('end').ret()
        flow = analyze(q, force_labels=[q.marks['e1']])
        self.assertIs(flow.jumps[q.marks['e1'] + 2].kind, FlowKind.IF)

    def test_dead_goto_is_not_else(self):
        q = QCode().byte(1).mark('test').bif('x').print_string('A').ret()
        q.mark('dead').goto('y').mark('x').print_string('B').mark('y').ret()
        flow = analyze(q)
        construct = flow.jumps[q.marks['test']]
        self.assertIs(construct.kind, FlowKind.IF)
        self.assertIsNone(construct.else_addr)
        self.assertNotIn(q.marks['dead'], flow.jumps)
        self.assertEqual(flow.label_names(), {q.marks['y']: 'Lab1'})

    def test_closing_order(self):
        q = QCode()
        if_else(q, 1, 'A', 'e1', 'end')
        q.mark('e1').byte(2).bif('end').print_string('B').mark('end').ret()
        flow = analyze(q)
        closing = flow.closing(q.marks['end'])
        self.assertEqual([c.start for c in closing], sorted((c.start for c in closing), reverse=True))


class TestLabels(unittest.TestCase):

    def test_labels_ascend_with_address(self):
        q = QCode().goto('b').goto('a').mark('a').print_string('A').mark('b').print_string('B').ret()
        flow = analyze(q)
        self.assertEqual(flow.label_names(), {q.marks['a']: 'Lab1', q.marks['b']: 'Lab2'})

    def test_forced_labels(self):
        q = QCode().print_string('A').mark('here').print_string('B').ret()
        flow = analyze(q, force_labels=[q.marks['here']])
        self.assertEqual(flow.label_names(), {q.marks['here']: 'Lab1'})

    def test_onerr_label(self):
        q = QCode().raw(0x53, 0, 0).print_string('A').mark('handler').print_string('B').ret()
        q.fixups.append((0, 'handler'))
        flow = analyze(q)
        self.assertEqual(flow.label_names(), {q.marks['handler']: 'Lab1'})

    def test_onerr_off_has_no_label(self):
        q = QCode().raw(0x53, 0, 0).print_string('A').ret()
        code = q.build()
        flow = analyze_control_flow(decode_instructions(code, 0, len(code)), 0, len(code))
        self.assertEqual(flow.label_names(), {})

    def test_target_outside_window_warns(self):
        q = QCode().goto(200).ret()
        with self.assertWarns(UserWarning):
            analyze(q)

    def test_unknown_opcodes_are_ignored(self):
        q = QCode().raw(0xE9).byte(1).mark('test').bif('end').print_string('A').mark('end').ret()
        flow = analyze(q)
        self.assertIs(flow.jumps[q.marks['test']].kind, FlowKind.IF)

    def test_extension_byte_is_not_a_branch(self):
        q = QCode().raw(0xFE, 0x51).print_string('A').ret()
        flow = analyze(q)
        self.assertEqual(flow.labels, set())
        self.assertEqual(flow.jumps, {})


if __name__ == '__main__':
    unittest.main()
