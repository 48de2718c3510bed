"""
Source generation tests: whole procedures through the decompiler
"""

import unittest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from opl_decompiler import OPLDecompiler
from opl_errors import HeaderError
from opl_flow import FlowConstruct, FlowKind
from opl_source import DecompileOptions
from qcode_builder import QCode, body_lines, procedure

LT, GT, EQ, ADD = 0x27, 0x29, 0x2C, 0x2D
ASSIGN_INT = 0x7F


def decompile(q, options=None, **tables):
    body = q.build() if isinstance(q, QCode) else q
    return OPLDecompiler().decompile(procedure(body, **tables), 'TEST', options)


def lines_of(q, **tables):
    return body_lines(decompile(q, **tables))


class TestStructures(unittest.TestCase):

    def test_if(self):
        q = QCode().var(-2).byte(5).raw(GT).bif('end').print_string('HI').mark('end').ret()
        self.assertEqual(lines_of(q), [
            '  IF (L1% > 5)',
            '    PRINT "HI"',
            '  ENDIF',
        ])

    def test_do_until(self):
        q = QCode().mark('top').print_string('X').var(-2).byte(3).raw(EQ).bif('top').ret()
        self.assertEqual(lines_of(q), [
            '  DO',
            '    PRINT "X"',
            '  UNTIL (L1% = 3)',
        ])

    def test_while(self):
        q = QCode().mark('top').var(-2).byte(10).raw(LT).bif('exit')
        q.ref(-2).var(-2).byte(1).raw(ADD, ASSIGN_INT).goto('top').mark('exit').ret()
        self.assertEqual(lines_of(q), [
            '  WHILE (L1% < 10)',
            '    L1% = L1% + 1',
            '  ENDWH',
        ])

    def test_if_else(self):
        q = QCode().byte(1).bif('else').print_string('A').goto('end')
        q.mark('else').print_string('B').mark('end').ret()
        self.assertEqual(lines_of(q), [
            '  IF (1)',
            '    PRINT "A"',
            '  ELSE',
            '    PRINT "B"',
            '  ENDIF',
        ])

    def test_elseif_chain(self):
        q = QCode().byte(1).bif('e1').print_string('A').goto('end')
        q.mark('e1').var(-2).byte(2).raw(EQ).bif('e2').print_string('B').goto('end')
        q.mark('e2').print_string('C').mark('end').ret()
        self.assertEqual(lines_of(q), [
            '  IF (1)',
            '    PRINT "A"',
            '  ELSEIF (L1% = 2)',
            '    PRINT "B"',
            '  ELSE',
            '    PRINT "C"',
            '  ENDIF',
        ])

    def test_endif_before_loop_at_same_address(self):
        q = QCode().byte(1).bif('top').print_string('A')
        q.mark('top').print_string('B').byte(0).bif('top').ret()
        self.assertEqual(lines_of(q), [
            '  IF (1)',
            '    PRINT "A"',
            '  ENDIF',
            '  DO',
            '    PRINT "B"',
            '  UNTIL (0)',
        ])

    def test_continue_in_do(self):
        q = QCode().mark('top').print_string('A').byte(1).bif('cond').goto('cond')
        q.mark('cond').byte(0).bif('top').ret()
        self.assertEqual(lines_of(q), [
            '  DO',
            '    PRINT "A"',
            '    IF (1)',
            '      CONTINUE',
            '    ENDIF',
            '  UNTIL (0)',
        ])

    def test_break_in_while(self):
        q = QCode().mark('top').var(-2).byte(10).raw(LT).bif('exit')
        q.var(-2).byte(5).raw(EQ).bif('next').goto('exit').mark('next').goto('top').mark('exit').ret()
        self.assertEqual(lines_of(q), [
            '  WHILE (L1% < 10)',
            '    IF (L1% = 5)',
            '      BREAK',
            '    ENDIF',
            '  ENDWH',
        ])

    def test_labels(self):
        q = QCode().goto('b').goto('a').mark('a').print_string('A').mark('b').print_string('B').ret()
        self.assertEqual(lines_of(q), [
            '  GOTO Lab2::',
            '  GOTO Lab1::',
            'Lab1::',
            '  PRINT "A"',
            'Lab2::',
            '  PRINT "B"',
        ])


class TestStatements(unittest.TestCase):

    def test_print_merging(self):
        q = QCode().string('A').raw(0x71, 0x72).string('B').raw(0x71).string('C').raw(0x71, 0x73).ret()
        self.assertEqual(lines_of(q), ['  PRINT "A","B";"C"'])

    def test_trailing_print_keeps_semicolon(self):
        q = QCode().string('A').raw(0x71).ret()
        self.assertEqual(lines_of(q), ['  PRINT "A";'])

    def test_value_return_kept(self):
        q = QCode().byte(1).raw(0x79)
        self.assertEqual(lines_of(q), ['  RETURN 1'])

    def test_procedure_result_dropped(self):
        q = QCode().byte(0).proc('FOO').raw(0x84).ret()
        self.assertEqual(lines_of(q), ['  FOO:'])

    def test_system_locations(self):
        q = QCode().int(384).byte(0).raw(0x55).ret()
        lines = decompile(q).split('\n')
        self.assertIn('  POKEB $180,0', lines)
        self.assertEqual(lines[-4:], ['', '  REM System Locations', '  REM $0180 - SCA_LCDCONTROL', ''])

    def test_system_locations_disabled(self):
        q = QCode().int(384).byte(0).raw(0x55).ret()
        source = decompile(q, DecompileOptions(annotate_system_vars=False))
        self.assertIn('POKEB $180,0', source)
        self.assertNotIn('System Locations', source)

    def test_inline_assembly(self):
        q = QCode().raw(0x89, 0x86, 0x41, 0x39).ret()
        self.assertIn('LDAA #$41', decompile(q))
        source = decompile(q, DecompileOptions(decompile_inline_assembly=False))
        self.assertIn('REM Inline Assembly (3 bytes)', source)
        self.assertNotIn('LDAA', source)


class TestDiagnostics(unittest.TestCase):

    def test_unknown_opcode(self):
        q = QCode().raw(0xE9).print_string('A').ret()
        self.assertEqual(lines_of(q), [
            '  REM Unknown QCode E9 at $000B',
            '  REM Skipped byte E9',
            '  PRINT "A"',
        ])

    def test_stack_underflow(self):
        q = QCode().bif('end').print_string('A').mark('end').ret()
        self.assertEqual(lines_of(q)[0], '  IF (BAD_STACK_UNDERFLOW)')

    def test_truncated_instruction(self):
        q = QCode().print_string('A').raw(0x22, 0x00)
        self.assertEqual(lines_of(q), [
            '  PRINT "A"',
            '  REM Truncated QCode 22 at $0010',
        ])

    def test_handler_failure_continues(self):
        q = QCode().string('X').proc('FOO').print_string('B').ret()
        lines = lines_of(q)
        self.assertTrue(lines[0].startswith('  REM Error decompiling QCode 7D at $000E: '))
        self.assertEqual(lines[1], '  REM Stack: (empty)')
        self.assertEqual(lines[2], '  REM Bytes: 7D 03 46 4F 4F')
        self.assertEqual(lines[3], '  PRINT "B"')

    def test_trace_records(self):
        records = []
        q = QCode().print_string('HI').ret()
        decompile(q, DecompileOptions(trace=records.append))
        self.assertEqual(len(records), 4)
        self.assertEqual(records[0].pc, 0x0B)
        self.assertEqual(records[0].bytes, '24 02 48 49')
        self.assertEqual(records[1].stack, '(empty)')

    def test_bad_header(self):
        with self.assertRaises(HeaderError):
            OPLDecompiler().decompile(b'\x00\x01')


class TestDeclarations(unittest.TestCase):

    def test_signature_and_banner(self):
        q = QCode().var(-4, 2).var(-2, 0).raw(0x83, 0x85).ret()
        lines = decompile(q, params=(0, 2)).split('\n')
        self.assertEqual(lines[0], 'TEST:(P1%, P2$)')
        self.assertTrue(lines[1].startswith('  REM Decompiled Source - oplqdecomp '))
        self.assertEqual(lines[3], '  REM CM,XP,LA & LZ code')

    def test_default_name(self):
        source = OPLDecompiler().decompile(procedure(QCode().ret().build()))
        self.assertTrue(source.startswith('MAIN:\n'))

    def test_locals(self):
        q = QCode().var(-2, 0).raw(0x83).var(-11, 1).raw(0x84).var(-20, 2).raw(0x85).ret()
        self.assertIn('  LOCAL L1%,L2,L3$(8)', decompile(q).split('\n'))

    def test_global(self):
        q = QCode().var(-2).raw(0x6F, 0x73).ret()
        source = decompile(q, globals_table=b'\x01G\x00\xFF\xFE')
        self.assertIn('  GLOBAL G%', source.split('\n'))
        self.assertEqual(body_lines(source), ['  PRINT G%'])

    def test_external(self):
        q = QCode().raw(0x09, 0xFF, 0xFC, 0x71, 0x73).ret()
        source = decompile(q, externals_table=b'\x01E\x02')
        self.assertIn('  REM EXTERNAL E$', source.split('\n'))
        self.assertEqual(body_lines(source), ['  PRINT E$'])

    def test_lz_variant(self):
        source = decompile(b'\x59\xB2' + QCode().ret().build())
        self.assertIn('  REM LZ Variant QCode (Decompilation Incomplete)', source.split('\n'))


class TestIndentation(unittest.TestCase):

    def test_unmatched_closings_stay_at_column_zero(self):
        q = QCode().print_string('A').mark('x').byte(1).bif('end').print_string('B').mark('end').ret()
        code = procedure(q.build())
        decompiler = OPLDecompiler()
        header, var_map, flow, _ = decompiler.analyze(code)
        addr = header.qcode_start + q.marks['x']
        for start in range(3):
            flow.targets.setdefault(addr, []).append(FlowConstruct(FlowKind.IF, header.qcode_start + start, addr))
        source = decompiler.generator.generate(header, var_map, flow, code, 'TEST')
        self.assertEqual(body_lines(source), [
            '  PRINT "A"',
            'ENDIF',
            'ENDIF',
            'ENDIF',
            'IF (1)',
            '  PRINT "B"',
            'ENDIF',
        ])


class TestLZOpcodes(unittest.TestCase):

    def test_extended_opcode_skips_both_bytes(self):
        source = decompile(b'\x59\xB2\xFE\x20' + QCode().print_string('A').ret().build())
        self.assertEqual(body_lines(source), [
            '  REM Unknown QCode FE_20 at $000D',
            '  REM Skipped bytes FE 20',
            '  PRINT "A"',
        ])

    def test_page_poke(self):
        lines = decompile(QCode().raw(0xF4, 0x10, 0x05).ret()).split('\n')
        self.assertIn('  POKEB $F410,5', lines)
        self.assertEqual(lines[-4:], ['', '  REM System Locations', '  REM $F410 - Unknown', ''])

    def test_print_semicolon(self):
        q = QCode().print_string('A').raw(0xF8).ret()
        self.assertEqual(lines_of(q), ['  PRINT "A"', '  PRINT ;'])

    def test_elseif(self):
        q = QCode().var(-2).byte(2).raw(EQ, 0xFB, 0x00, 0x00).ret()
        self.assertEqual(lines_of(q), ['  ELSEIF (L1% = 2) : REM LZ'])


if __name__ == '__main__':
    unittest.main()
