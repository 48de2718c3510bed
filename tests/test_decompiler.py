"""
Decompiler facade and file handling tests
"""

import io
import unittest
import sys
import struct
import tempfile
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from opl_decompiler import (
    OPLDecompiler, decompile_directory, decompile_file, describe_procedure,
    disassemble_procedure, is_opl_procedure, unwrap_object_file,
)
from opl_errors import DecompileError
from qcode_builder import QCode, procedure


def object_file(block):
    payload = struct.pack('>H', len(block)) + block
    return b'ORG' + struct.pack('>H', len(payload)) + b'\x83' + payload


def hello_block():
    return procedure(QCode().print_string('HI').ret().build())


class TestObjectFiles(unittest.TestCase):

    def test_unwrap(self):
        block = hello_block()
        record = unwrap_object_file(object_file(block))
        self.assertEqual(record[:2], b'\x02\x80')
        self.assertEqual(record[-len(block):], block)

    def test_plain_block_unchanged(self):
        block = hello_block()
        self.assertIs(unwrap_object_file(block), block)

    def test_truncated_object_file(self):
        with self.assertRaises(DecompileError):
            unwrap_object_file(object_file(hello_block())[:-3])

    def test_decompile_object_file(self):
        source = OPLDecompiler().decompile(unwrap_object_file(object_file(hello_block())), 'PROG')
        self.assertTrue(source.startswith('PROG:\n'))
        self.assertIn('  PRINT "HI"', source.split('\n'))


class TestListings(unittest.TestCase):

    def test_disassemble_procedure(self):
        listing = disassemble_procedure(hello_block()).split('\n')
        self.assertEqual(listing[0], '; QCode $000B-$0012 (7 bytes)')
        self.assertIn('"HI"', listing[1])

    def test_describe_procedure(self):
        lines = describe_procedure(procedure(QCode().ret().build(), params=(1,)))
        self.assertIn('  Parameters: P1', lines)
        self.assertIn('  Variant: CM/XP', lines)
        self.assertIn('  Globals: (none)', lines)


class TestFiles(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_decompile_file(self):
        src = self.root / 'prog.ob3'
        src.write_bytes(object_file(hello_block()))
        out = self.root / 'out' / 'prog.opl'
        self.assertTrue(decompile_file(str(src), str(out)))
        text = out.read_text(encoding='latin-1')
        self.assertTrue(text.startswith('PROG:\n'))

    def test_decompile_file_to_stdout(self):
        src = self.root / 'hello.bin'
        src.write_bytes(hello_block())
        buf = io.StringIO()
        with redirect_stdout(buf):
            self.assertTrue(decompile_file(str(src), proc_name='GREET'))
        self.assertTrue(buf.getvalue().startswith('GREET:\n'))

    def test_missing_file(self):
        with redirect_stderr(io.StringIO()) as err:
            self.assertFalse(decompile_file(str(self.root / 'missing.ob3')))
        self.assertIn('Cannot read file', err.getvalue())

    def test_invalid_procedure(self):
        src = self.root / 'bad.ob3'
        src.write_bytes(b'\x00')
        with redirect_stderr(io.StringIO()) as err:
            self.assertFalse(decompile_file(str(src)))
        self.assertIn('Invalid OPL procedure', err.getvalue())

    def test_is_opl_procedure(self):
        text = self.root / 'notes.txt'
        text.write_bytes(b'hello')
        record = self.root / 'dump'
        record.write_bytes(b'\x02\x80' + hello_block())
        self.assertFalse(is_opl_procedure(text))
        self.assertTrue(is_opl_procedure(record))
        self.assertTrue(is_opl_procedure(self.root / 'any.OB3'))

    def test_decompile_directory(self):
        src = self.root / 'src'
        src.mkdir()
        (src / 'one.ob3').write_bytes(object_file(hello_block()))
        (src / 'two.ob3').write_bytes(object_file(hello_block()))
        (src / 'readme.txt').write_bytes(b'not a procedure')
        out = self.root / 'out'
        buf = io.StringIO()
        with redirect_stdout(buf):
            decompile_directory(str(src), str(out))
        self.assertIn('Done: 2 succeeded, 0 failed, 2 total', buf.getvalue())
        self.assertTrue((out / 'one.opl').exists())
        self.assertTrue((out / 'two.opl').read_text(encoding='latin-1').startswith('TWO:\n'))


if __name__ == '__main__':
    unittest.main()
