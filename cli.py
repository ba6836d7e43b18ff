#!/usr/bin/env python3
"""
Y86-64 Simulator CLI
=====================
Command-line front end for the Y86-64 instruction-cycle emulator.

Provides:
  - Loading ``.yo`` object files (``.ys`` sources are assembled first)
  - Run to completion, or trace per cycle / per stage / with a pause
  - Assembling a ``.ys`` source into a ``.yo`` listing
  - An interactive monitor with step / breakpoint / inspection commands

Usage:
  python cli.py PROGRAM.yo [-c | -s | -d] [--mem-size BYTES] [--max-steps N]
  python cli.py PROGRAM.ys --assemble PROGRAM.yo
  python cli.py PROGRAM.yo --monitor

Exit status: 0 when the program halts, 1 on a fault or bad input,
2 when --max-steps runs out first.
"""

from __future__ import annotations
import argparse
import cmd
import logging
import shlex
import sys
from typing import Optional

from y86 import (
    Y86Error, InvalidEncoding, AddressOutOfBounds, Opcode, REG_NAMES,
    RNONE, MEM_MAX, decode_instruction, u64,
)
from asm import assemble_listing, AsmError
from system import Y86System, StepMode

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Disassembler (basic, enough for debugging)
# ---------------------------------------------------------------------------

COND_SUFFIX = {0: "", 1: "le", 2: "l", 3: "e", 4: "ne", 5: "ge", 6: "g"}
OP_NAMES = {0: "addq", 1: "subq", 2: "andq", 3: "xorq"}


def _reg(r: int) -> str:
    return REG_NAMES[r] if r != RNONE and r < len(REG_NAMES) else f"%r?{r:x}"


def disasm_one(mem: bytearray | bytes, addr: int) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, byte_count)."""
    try:
        ins = decode_instruction(mem, addr)
    except InvalidEncoding as e:
        return f".byte {e.byte:#04x}", 1
    except AddressOutOfBounds:
        return "<out of bounds>", 1

    op = ins.icode
    if op == Opcode.HALT:
        text = "halt"
    elif op == Opcode.NOP:
        text = "nop"
    elif op == Opcode.CMOV:
        name = "rrmovq" if ins.ifun == 0 else "cmov" + COND_SUFFIX[ins.ifun]
        text = f"{name} {_reg(ins.ra)}, {_reg(ins.rb)}"
    elif op == Opcode.IRMOV:
        text = f"irmovq ${ins.valc:#x}, {_reg(ins.rb)}"
    elif op == Opcode.RMMOV:
        text = f"rmmovq {_reg(ins.ra)}, {ins.valc:#x}({_reg(ins.rb)})"
    elif op == Opcode.MRMOV:
        text = f"mrmovq {ins.valc:#x}({_reg(ins.rb)}), {_reg(ins.ra)}"
    elif op == Opcode.OPQ:
        text = f"{OP_NAMES[ins.ifun]} {_reg(ins.ra)}, {_reg(ins.rb)}"
    elif op == Opcode.JXX:
        name = "jmp" if ins.ifun == 0 else "j" + COND_SUFFIX[ins.ifun]
        text = f"{name} {u64(ins.valc):#x}"
    elif op == Opcode.CALL:
        text = f"call {u64(ins.valc):#x}"
    elif op == Opcode.RET:
        text = "ret"
    elif op == Opcode.PUSH:
        text = f"pushq {_reg(ins.ra)}"
    else:
        text = f"popq {_reg(ins.ra)}"
    return text, ins.length

# ---------------------------------------------------------------------------
#  Interactive monitor
# ---------------------------------------------------------------------------

class Y86Monitor(cmd.Cmd):
    """Interactive monitor for the Y86-64 simulator."""

    intro = "Y86-64 monitor.  Type 'help' for commands, 'quit' to exit.\n"
    prompt = "Y86> "

    def __init__(self, system: Y86System, stdin=None, stdout=None):
        super().__init__(stdin=stdin, stdout=stdout)
        if stdin is not None:
            self.use_rawinput = False
        self.sys = system
        self.breakpoints: set[int] = set()

    def _print(self, text: str = ""):
        self.stdout.write(text + "\n")

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (hex with 0x prefix, decimal, register name, or 'pc')."""
        s = s.strip().lower()
        if s in REG_NAMES:
            return self.sys.cpu.regs[REG_NAMES.index(s)]
        if s == "pc":
            return self.sys.cpu.pc
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        try:
            count = self._parse_int(arg) if arg.strip() else 1
        except ValueError:
            self._print(f"Bad count: {arg!r}")
            return
        cpu = self.sys.cpu
        for _ in range(count):
            if not cpu.running:
                self._print(f"CPU is stopped ({cpu.status}).")
                break
            addr_before = cpu.pc
            text, _ = disasm_one(cpu.mem, addr_before)
            try:
                self.sys.step()
            except Y86Error as e:
                self._print(f"  {u64(addr_before):#06x}: {text}  FAULT: {e}")
                break
            self._print(f"  {addr_before:#06x}: {text}")

    def do_run(self, arg):
        """Run until halt/fault/breakpoint: run [max_steps]"""
        try:
            max_steps = self._parse_int(arg) if arg.strip() else None
        except ValueError:
            self._print(f"Bad step count: {arg!r}")
            return
        cpu = self.sys.cpu
        total = 0
        try:
            while cpu.running and (max_steps is None or total < max_steps):
                if total and cpu.pc in self.breakpoints:
                    self._print(f"Breakpoint hit at {cpu.pc:#06x}")
                    return
                total += self.sys.step()
        except Y86Error as e:
            self._print(f"Fault after {total} cycles: {e}")
            return
        if cpu.halted:
            self._print(f"CPU halted after {total} cycles.")
        elif cpu.running:
            self._print(f"Stopped after {total} steps.")

    def do_continue(self, arg):
        """Alias for 'run'."""
        self.do_run(arg)
    do_c = do_continue

    def do_reset(self, arg):
        """Reset registers, flags, status and PC (memory is kept)."""
        self.sys.cpu.reset()
        self._print("CPU reset.")

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                self._print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._print(f"  {a:#06x}")
            else:
                self._print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._print(f"Breakpoint set at {addr:#06x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._print(f"Breakpoint at {addr:#06x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show all registers."""
        cpu = self.sys.cpu
        for name, val in zip(REG_NAMES, cpu.regs):
            self._print(f"  {name:<5s} = 0x{u64(val):016x}  ({val})")
        self._print(f"  PC    = {u64(cpu.pc):#06x}   Cycles: {cpu.cycle_count}")

    def do_flags(self, arg):
        """Show condition flags."""
        self._print(f"  {self.sys.cpu.flags}")

    def do_status(self, arg):
        """Show machine status."""
        cpu = self.sys.cpu
        self._print(f"  {cpu.status}")
        if cpu.error is not None:
            self._print(f"  {cpu.error}")

    def do_state(self, arg):
        """Show the full state dump."""
        self._print(self.sys.dump_state())

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [length]"""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: dump <address> [length]")
            return
        addr = self._parse_addr(parts[0])
        length = self._parse_int(parts[1]) if len(parts) > 1 else 64
        mem = self.sys.cpu.mem
        end = min(addr + length, len(mem))
        for row in range(addr, end, 16):
            chunk = mem[row:min(row + 16, end)]
            self._print(f"  {row:#06x}: {' '.join(f'{b:02x}' for b in chunk)}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]"""
        parts = shlex.split(arg)
        cpu = self.sys.cpu
        addr = self._parse_addr(parts[0]) if parts else cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 8
        for _ in range(count):
            if not 0 <= addr < cpu.mem_size:
                break
            text, size = disasm_one(cpu.mem, addr)
            marker = "=>" if addr == cpu.pc else "  "
            self._print(f"{marker} {addr:#06x}: {text}")
            addr += size

    # -- Exit --

    def do_quit(self, arg):
        """Exit the monitor."""
        return True
    do_q = do_quit

    def do_EOF(self, arg):
        self._print()
        return True

    def default(self, line):
        self._print(f"Unknown command: {line!r}.  Type 'help' for a list.")

    def emptyline(self):
        pass

# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

def _wait_for_enter():
    try:
        input("-- press Enter to continue --")
    except EOFError:
        # stdin closed: keep running without pausing
        print()


def _configure_logging(level: str):
    logging.basicConfig(level=getattr(logging, level.upper()),
                        format="%(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Y86-64 instruction-level simulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py prog.yo\n"
               "  python cli.py prog.yo -c\n"
               "  python cli.py prog.ys --assemble prog.yo\n"
               "  python cli.py prog.yo --monitor\n"
    )
    parser.add_argument("file", help="Object file (.yo) or assembly source (.ys)")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-c", "--cycle", dest="step_mode", action="store_const",
                      const=StepMode.CYCLE, help="Print the machine state after every cycle")
    mode.add_argument("-s", "--stage", dest="step_mode", action="store_const",
                      const=StepMode.STAGE, help="Print the cycle scratch after every stage")
    mode.add_argument("-d", "--debug", dest="step_mode", action="store_const",
                      const=StepMode.DEBUG, help="Print state and pause after every cycle")
    parser.set_defaults(step_mode=StepMode.NONE)
    parser.add_argument("--mem-size", type=int, default=MEM_MAX, metavar="BYTES",
                        help=f"Memory size in bytes (default: {MEM_MAX})")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N",
                        help="Stop after N cycles even if the program has not halted")
    parser.add_argument("--assemble", type=str, default=None, metavar="OUT",
                        help="Assemble FILE (.ys) into the .yo listing OUT and exit")
    parser.add_argument("--monitor", action="store_true",
                        help="Load FILE and enter the interactive monitor")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Shorthand for --log-level debug")
    parser.add_argument("--log-level", default="warning",
                        choices=["debug", "info", "warning", "error"],
                        help="Logging level (default: warning)")
    return parser


def _read_object(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    if path.endswith(".ys"):
        text = assemble_listing(text)
    return text


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging("debug" if args.verbose else args.log_level)

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        try:
            with open(args.file, "r", encoding="utf-8") as f:
                listing = assemble_listing(f.read())
            with open(args.assemble, "w", encoding="utf-8") as f:
                f.write(listing)
        except (OSError, AsmError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"{args.file} -> {args.assemble}")
        return 0

    gate = _wait_for_enter if args.step_mode is StepMode.DEBUG else None
    try:
        system = Y86System(mem_size=args.mem_size, step_mode=args.step_mode, gate=gate)
        system.load_object(_read_object(args.file))
    except (OSError, ValueError, AsmError, Y86Error) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    log.info("loaded %s, step mode %s", args.file, args.step_mode.name)

    if args.monitor:
        Y86Monitor(system).cmdloop()
        return 0

    try:
        system.run(args.max_steps)
    except Y86Error as e:
        print(system.dump_state())
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(system.dump_state())
    return 0 if system.halted else 2


if __name__ == "__main__":
    sys.exit(main())
