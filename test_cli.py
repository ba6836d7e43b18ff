"""
Tests for the command-line front end: the disassembler, exit codes, the
assemble-only mode and the interactive monitor.
"""

import contextlib
import io
import os
import tempfile
import unittest
from unittest import mock

import pytest

from asm import assemble
from cli import disasm_one, main, build_parser, Y86Monitor
from system import Y86System, StepMode
from y86 import MEM_MAX

ADD_PROGRAM = """\
    irmovq $2, %rax
    irmovq $3, %rbx
    addq %rbx, %rax
    halt
"""


class TestDisassembler(unittest.TestCase):

    def dis(self, source: str) -> str:
        return disasm_one(assemble(source), 0)[0]

    def test_round_trips_common_forms(self):
        for src in ("halt", "nop", "ret",
                    "rrmovq %rsp, %rbp", "cmovne %rax, %rdx",
                    "addq %rbx, %rax", "xorq %r8, %r9",
                    "pushq %rbp", "popq %r14"):
            self.assertEqual(self.dis(src), src)

    def test_constants_print_in_hex(self):
        self.assertEqual(self.dis("irmovq $16, %rax"), "irmovq $0x10, %rax")
        self.assertEqual(self.dis("rmmovq %rcx, 8(%rsp)"), "rmmovq %rcx, 0x8(%rsp)")
        self.assertEqual(self.dis("mrmovq 0(%rdi), %rsi"), "mrmovq 0x0(%rdi), %rsi")
        self.assertEqual(self.dis("jge 0x40"), "jge 0x40")
        self.assertEqual(self.dis("jmp 0x40"), "jmp 0x40")
        self.assertEqual(self.dis("call 0x100"), "call 0x100")

    def test_lengths(self):
        self.assertEqual(disasm_one(assemble("irmovq $1, %rax"), 0)[1], 10)
        self.assertEqual(disasm_one(assemble("call 0x10"), 0)[1], 9)
        self.assertEqual(disasm_one(assemble("addq %rax, %rax"), 0)[1], 2)

    def test_bad_bytes(self):
        self.assertEqual(disasm_one(bytes([0xE0]), 0), (".byte 0xe0", 1))
        self.assertEqual(disasm_one(bytes([0x30, 0xF0]), 0), ("<out of bounds>", 1))


class TestParser(unittest.TestCase):

    def test_defaults(self):
        args = build_parser().parse_args(["prog.yo"])
        self.assertIs(args.step_mode, StepMode.NONE)
        self.assertEqual(args.mem_size, MEM_MAX)
        self.assertIsNone(args.max_steps)
        self.assertFalse(args.monitor)

    def test_step_mode_flags(self):
        p = build_parser()
        self.assertIs(p.parse_args(["x", "-c"]).step_mode, StepMode.CYCLE)
        self.assertIs(p.parse_args(["x", "-s"]).step_mode, StepMode.STAGE)
        self.assertIs(p.parse_args(["x", "--debug"]).step_mode, StepMode.DEBUG)

    def test_step_modes_are_exclusive(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["x", "-c", "-s"])


@pytest.mark.cli
class TestMain(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def write(self, name: str, text: str) -> str:
        path = os.path.join(self.tmp.name, name)
        with open(path, "w") as f:
            f.write(text)
        return path

    def run_main(self, *argv) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            rc = main(list(argv))
        return rc, out.getvalue(), err.getvalue()

    def test_halting_program(self):
        rc, out, _ = self.run_main(self.write("add.ys", ADD_PROGRAM))
        self.assertEqual(rc, 0)
        self.assertIn("%rax: 0x0000000000000005", out)
        self.assertIn("STAT: HLT", out)

    def test_fault_exits_one(self):
        path = self.write("bad.yo", "0x000: 10e0 |\n")
        rc, out, err = self.run_main(path)
        self.assertEqual(rc, 1)
        self.assertIn("STAT: ERR", out)
        self.assertIn("Error:", err)

    def test_max_steps_exits_two(self):
        rc, out, _ = self.run_main(self.write("loop.ys", "loop: jmp loop\n"),
                                   "--max-steps", "5")
        self.assertEqual(rc, 2)
        self.assertIn("Cycle Count: 5", out)
        self.assertIn("STAT: AOK", out)

    def test_missing_file(self):
        rc, _, err = self.run_main(os.path.join(self.tmp.name, "nope.yo"))
        self.assertEqual(rc, 1)
        self.assertIn("Error:", err)

    def test_bad_source(self):
        rc, _, err = self.run_main(self.write("bad.ys", "frob %rax\n"))
        self.assertEqual(rc, 1)
        self.assertIn("Line 1", err)

    def test_memory_too_small(self):
        rc, _, _ = self.run_main(self.write("add.ys", ADD_PROGRAM), "--mem-size", "4")
        self.assertEqual(rc, 1)

    def test_assemble_then_run(self):
        src = self.write("add.ys", ADD_PROGRAM)
        obj = os.path.join(self.tmp.name, "add.yo")
        rc, out, _ = self.run_main(src, "--assemble", obj)
        self.assertEqual(rc, 0)
        self.assertIn("add.yo", out)
        with open(obj) as f:
            self.assertIn("0x014: 6030", f.read())
        rc, out, _ = self.run_main(obj)
        self.assertEqual(rc, 0)
        self.assertIn("%rax: 0x0000000000000005", out)

    def test_cycle_mode_prints_each_cycle(self):
        rc, out, _ = self.run_main(self.write("add.ys", ADD_PROGRAM), "-c")
        self.assertEqual(rc, 0)
        # four cycle reports plus the final dump
        self.assertEqual(out.count("Cycle Count:"), 5)

    def test_debug_mode_waits_for_enter(self):
        with mock.patch("builtins.input", return_value="") as fake_input:
            rc, out, _ = self.run_main(self.write("add.ys", ADD_PROGRAM), "-d")
        self.assertEqual(rc, 0)
        self.assertEqual(fake_input.call_count, 3)

    def test_debug_mode_survives_closed_stdin(self):
        with mock.patch("builtins.input", side_effect=EOFError):
            rc, _, _ = self.run_main(self.write("add.ys", ADD_PROGRAM), "-d")
        self.assertEqual(rc, 0)


class TestMonitor(unittest.TestCase):

    def session(self, commands: str, source: str = ADD_PROGRAM) -> tuple[Y86System, str]:
        system = Y86System(reporter=lambda text: None)
        system.load_binary(0, assemble(source))
        out = io.StringIO()
        mon = Y86Monitor(system, stdin=io.StringIO(commands), stdout=out)
        mon.cmdloop(intro="")
        return system, out.getvalue()

    def test_step_and_run(self):
        system, out = self.session("step\nrun\nquit\n")
        self.assertIn("0x0000: irmovq $0x2, %rax", out)
        self.assertIn("CPU halted after 3 cycles.", out)
        self.assertTrue(system.halted)

    def test_breakpoint_stops_run(self):
        system, out = self.session("bp 0x14\nrun\nregs\nrun\nq\n")
        self.assertIn("Breakpoint set at 0x0014", out)
        self.assertIn("Breakpoint hit at 0x0014", out)
        self.assertIn("%rbx  = 0x0000000000000003", out)
        self.assertIn("CPU halted after 2 cycles.", out)
        self.assertEqual(system.cpu.regs[0], 5)

    def test_step_after_halt(self):
        _, out = self.session("run\nstep\nstatus\n")
        self.assertIn("CPU is stopped (STAT: HLT).", out)
        self.assertIn("STAT: HLT", out)

    def test_fault_is_reported(self):
        system, out = self.session("run\nstatus\nquit\n", source="nop\n.quad 0xe0")
        self.assertIn("Fault after 1 cycles", out)
        self.assertIn("STAT: ERR", out)
        self.assertIsNotNone(system.cpu.error)

    def test_inspection_commands(self):
        _, out = self.session("disasm 0 4\ndump 0 16\nflags\nstate\nbogus\n")
        self.assertIn("=> 0x0000: irmovq $0x2, %rax", out)
        self.assertIn("   0x0014: addq %rbx, %rax", out)
        self.assertIn("0x0000: 30 f0 02 00", out)
        self.assertIn("SF: 0\tZF: 0\tOF: 0", out)
        self.assertIn("Cycle Count: 0", out)
        self.assertIn("Unknown command: 'bogus'", out)

    def test_reset_reruns_program(self):
        system, out = self.session("run\nreset\nrun\n")
        self.assertIn("CPU reset.", out)
        self.assertEqual(out.count("CPU halted after 4 cycles."), 2)
        self.assertEqual(system.cpu.cycle_count, 4)


if __name__ == "__main__":
    unittest.main()
