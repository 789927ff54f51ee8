#!/usr/bin/env python3
"""
LC-3 Emulator / Monitor CLI
============================
Command-line front end for the LC-3 system emulator.

Provides:
  - Loading one or more big-endian program images
  - Running the program on the host terminal (raw, unechoed input)
  - Instruction tracing
  - An interactive debug monitor (step / breakpoints / inspection)
  - Disassembly

Usage:
  python cli.py [--trace] [--max-steps N] [--dump] IMAGE [IMAGE ...]
  python cli.py --monitor IMAGE [IMAGE ...]

Exit status: 0 after HALT, 1 on usage / load / console errors,
2 when interrupted, 127 on an unsupported opcode or trap vector.
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import signal
import sys
from typing import Optional

from lc3 import (Opcode, Trap, HaltError, FatalError, MASK16, PC_START,
                 FL_NEG, FL_ZRO, FL_POS, R_COND, R_PC, s16, u16, sign_extend)
from devices import BufferConsole, ConsoleError, TerminalConsole
from system import LC3System, ImageError

EXIT_OK          = 0
EXIT_ERROR       = 1
EXIT_INTERRUPTED = 2
EXIT_FATAL       = 127

USAGE = "usage: lc3 [image-file1] ..."

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

TRAP_NAMES = {t.value: t.name for t in Trap}


def _nzp(bits: int) -> str:
    return (("n" if bits & FL_NEG else "") +
            ("z" if bits & FL_ZRO else "") +
            ("p" if bits & FL_POS else ""))


def disasm_one(word: int, addr: int) -> str:
    """Disassemble the instruction *word* stored at *addr*."""
    op = Opcode((word >> 12) & 0xF)
    dr = (word >> 9) & 0x7
    sr1 = (word >> 6) & 0x7
    next_pc = u16(addr + 1)

    def pc_target(bits: int) -> str:
        return f"x{u16(next_pc + sign_extend(word, bits)):04X}"

    if op in (Opcode.ADD, Opcode.AND):
        if word & 0x20:
            return f"{op.name} R{dr}, R{sr1}, #{s16(sign_extend(word & 0x1F, 5))}"
        return f"{op.name} R{dr}, R{sr1}, R{word & 0x7}"

    elif op is Opcode.NOT:
        return f"NOT R{dr}, R{sr1}"

    elif op is Opcode.BR:
        if dr == 0:
            return "NOP"
        return f"BR{_nzp(dr)} {pc_target(9)}"

    elif op is Opcode.JMP:
        return "RET" if sr1 == 7 else f"JMP R{sr1}"

    elif op is Opcode.JSR:
        if word & 0x800:
            return f"JSR {pc_target(11)}"
        return f"JSRR R{sr1}"

    elif op in (Opcode.LD, Opcode.LDI, Opcode.LEA, Opcode.ST, Opcode.STI):
        return f"{op.name} R{dr}, {pc_target(9)}"

    elif op in (Opcode.LDR, Opcode.STR):
        return f"{op.name} R{dr}, R{sr1}, #{s16(sign_extend(word & 0x3F, 6))}"

    elif op is Opcode.TRAP:
        vec = word & 0xFF
        return TRAP_NAMES.get(vec, f"TRAP x{vec:02X}")

    return op.name   # RTI, RES


def _needs_input(system: LC3System) -> bool:
    """True if the next instruction is GETC/IN and a buffered console is empty."""
    console = system.console
    if not isinstance(console, BufferConsole) or console.has_rx_data:
        return False
    word = system.peek(system.cpu.pc)
    return (word >> 12) == Opcode.TRAP and (word & 0xFF) in (Trap.GETC, Trap.IN)

# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class LC3CLI(cmd.Cmd):
    """Interactive monitor for the LC-3 system."""

    intro = (
        "\n"
        "LC-3 Monitor.  Type 'help' for commands, 'quit' to exit.\n"
    )
    prompt = "LC3> "

    def __init__(self, system: LC3System):
        super().__init__()
        self.sys = system
        self.breakpoints: set[int] = set()

        # Echo program output to the host terminal in real time
        if isinstance(self.sys.console, BufferConsole):
            self.sys.console.on_tx = self._console_tx_handler

    def _console_tx_handler(self, data: bytes):
        text = "".join(chr(b) if 0x20 <= b < 0x7F or b in (10, 13, 9) else "."
                       for b in data)
        print(text, end="", flush=True)

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address: x3000, 0x3000, decimal, or a register name."""
        s = s.strip().lower()
        if s.startswith("r") and s[1:].isdigit():
            n = int(s[1:])
            if n > 7:
                raise ValueError(f"no register R{n}")
            return self.sys.cpu.regs[n]
        if s == "pc":
            return self.sys.cpu.pc
        if s.startswith("x"):
            return int(s[1:], 16) & MASK16
        return int(s, 0) & MASK16

    def _parse_int(self, s: str) -> int:
        s = s.strip().lower()
        if s.startswith("x"):
            return int(s[1:], 16)
        if s.startswith("#"):
            return int(s[1:], 10)
        return int(s, 0)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            print(f"  Error: {e}")

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load an image file: load <file>
        The origin comes from the image's first word."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: load <file>")
            return
        try:
            origin, count = self.sys.load_image_file(parts[0])
        except ImageError as e:
            print(f"Error: failed to load image {parts[0]}: {e}")
            return
        print(f"Loaded {count} words from '{parts[0]}' at x{origin:04X}")

    # -- Boot --

    def do_boot(self, arg):
        """Reset registers and set PC: boot [address]
        Address defaults to x3000."""
        addr = self._parse_addr(arg) if arg.strip() else PC_START
        self.sys.boot(addr)
        print(f"System booted. PC=x{addr:04X}")

    do_reset = do_boot

    # -- Execution --

    def _step_one(self) -> bool:
        """Execute one instruction with disassembly. False when stopped."""
        cpu = self.sys.cpu
        if _needs_input(self.sys):
            print("Waiting for input.  Use 'send <text>' first.")
            return False
        addr = cpu.pc
        try:
            word = self.sys.step()
        except HaltError:
            print("CPU is halted.")
            return False
        except FatalError as e:
            print(f"\nFatal: {e}")
            return False
        except ConsoleError as e:
            print(f"\nConsole error: {e}")
            return False
        print(f"  x{addr:04X}: x{word:04X}  {disasm_one(word, addr)}")
        if cpu.halted:
            print("CPU halted.")
            return False
        return True

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            if not self._step_one():
                break

    do_s = do_step

    def do_run(self, arg):
        """Run until halt/fault/breakpoint: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 10_000_000
        cpu = self.sys.cpu
        total = 0
        while total < max_steps:
            if not cpu.running:
                print(f"\nCPU {cpu.state.name.lower()} after {total} instructions.")
                return
            if total and cpu.pc in self.breakpoints:
                print(f"\nBreakpoint hit at x{cpu.pc:04X}")
                return
            if _needs_input(self.sys):
                print(f"\nWaiting for input after {total} instructions.")
                print("  Use 'send <text>' to provide input, then 'run' to continue.")
                return
            try:
                self.sys.step()
            except (FatalError, ConsoleError) as e:
                print(f"\nFatal: {e}")
                return
            total += 1
        print(f"\nStopped after {total} instructions.")

    do_continue = do_run
    do_c = do_run

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>  (no argument lists them)"""
        if not arg.strip():
            if self.breakpoints:
                print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    print(f"  x{a:04X}")
            else:
                print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        print(f"Breakpoint set at x{addr:04X}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        print(f"Breakpoint at x{addr:04X} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show CPU registers."""
        print(self.sys.cpu.dump_regs())
        print(f"  Instructions: {self.sys.cpu.instr_count}")

    def do_setreg(self, arg):
        """Set register: setreg <r0-r7|pc|cond> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = u16(self._parse_int(parts[1]))
        cpu = self.sys.cpu
        if reg_s == "pc":
            cpu.regs[R_PC] = val
        elif reg_s == "cond":
            if val not in (FL_NEG, FL_ZRO, FL_POS):
                print("COND must be 1 (P), 2 (Z) or 4 (N).")
                return
            cpu.regs[R_COND] = val
        elif reg_s.startswith("r") and reg_s[1:].isdigit() and int(reg_s[1:]) < 8:
            cpu.regs[int(reg_s[1:])] = val
        else:
            print("Unknown register.")
            return
        print(f"  {reg_s.upper()} = x{val:04X}")

    def do_dump(self, arg):
        """Dump memory words: dump <address> [count]
        Count defaults to 64 words.  Device registers are shown without
        polling them."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64

        for row in range(0, count, 8):
            words = [self.sys.peek(addr + row + i)
                     for i in range(min(8, count - row))]
            hex_str = " ".join(f"{w:04x}" for w in words)
            text = "".join(chr(w & 0xFF) if 0x20 <= (w & 0xFF) < 0x7F else "."
                           for w in words)
            print(f"  x{u16(addr + row):04X}: {hex_str:<39s}  |{text}|")

    def do_setmem(self, arg):
        """Set memory words: setmem <address> <word> [word] ..."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setmem <addr> <word...>")
            return
        addr = self._parse_addr(parts[0])
        words = [self._parse_int(tok) for tok in parts[1:]]
        self.sys.cpu.load_words(addr, words)
        print(f"  Wrote {len(words)} words at x{addr:04X}")

    def do_dis(self, arg):
        """Disassemble: dis [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            word = self.sys.peek(addr)
            marker = ">>>" if addr == self.sys.cpu.pc else "   "
            print(f"  {marker} x{addr:04X}: x{word:04X}  {disasm_one(word, addr)}")
            addr = u16(addr + 1)

    do_disasm = do_dis

    def do_status(self, arg):
        """Show full system status (CPU + devices)."""
        print(self.sys.dump_state())

    # -- Console input --

    def do_send(self, arg):
        """Send text to the keyboard buffer: send <text>
        A newline is appended.  The program sees it as typed input."""
        console = self.sys.console
        if not isinstance(console, BufferConsole):
            print("Console input comes from the terminal.")
            return
        if not arg:
            print("Usage: send <text>")
            return
        console.inject_input(arg + "\n")
        print(f"  Sent {len(arg) + 1} bytes.")

    # -- Misc --

    def do_quit(self, arg):
        """Exit the monitor."""
        print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        print()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass

# ---------------------------------------------------------------------------
#  Console mode: raw terminal
# ---------------------------------------------------------------------------

def _install_signal_handlers():
    """Make SIGINT and SIGTERM unwind through the raw-mode context."""
    def _shutdown(sig, frame):
        raise KeyboardInterrupt
    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)


def run_console(system: LC3System, trace: bool = False,
                max_steps: Optional[int] = None) -> int:
    """Run the booted system on its console. Returns a process exit status.

    The console is held in raw mode for the whole run and restored on
    every exit path, including faults and interrupts.
    """
    cpu = system.cpu
    steps = 0
    try:
        with system.console.raw_mode():
            while cpu.running:
                if max_steps is not None and steps >= max_steps:
                    print(f"\n[stopped after {steps} instructions]",
                          file=sys.stderr)
                    break
                if trace:
                    addr = cpu.pc
                    word = system.peek(addr)
                    print(f"[trace] x{addr:04X}: x{word:04X}  "
                          f"{disasm_one(word, addr)}", file=sys.stderr)
                cpu.step()
                steps += 1
    except FatalError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return EXIT_FATAL
    except ConsoleError as e:
        print(f"\nERROR: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    return EXIT_OK

# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="lc3",
        description="LC-3 Emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py 2048.obj\n"
               "  python cli.py --trace --max-steps 200 rogue.obj\n"
               "  python cli.py --monitor os.obj program.obj\n"
    )
    parser.add_argument("images", nargs="*", metavar="IMAGE",
                        help="LC-3 image file (big-endian, origin first); "
                             "loaded in order")
    parser.add_argument("--trace", action="store_true",
                        help="Print each instruction to stderr before it runs")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N",
                        help="Stop after N instructions (default: no limit)")
    parser.add_argument("--monitor", action="store_true",
                        help="Enter the debug monitor instead of running")
    parser.add_argument("--dump", action="store_true",
                        help="Print the machine state to stderr on exit")
    args = parser.parse_args(argv)

    if not args.images:
        print(USAGE, file=sys.stderr)
        return EXIT_ERROR

    console = BufferConsole() if args.monitor else TerminalConsole()
    system = LC3System(console)

    for path in args.images:
        try:
            system.load_image_file(path)
        except ImageError as e:
            print(f"ERROR: failed to load image {path}: {e}", file=sys.stderr)
            return EXIT_ERROR

    system.boot()

    if args.monitor:
        cli = LC3CLI(system)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return EXIT_OK

    _install_signal_handlers()
    status = run_console(system, trace=args.trace, max_steps=args.max_steps)
    if args.dump:
        print(system.dump_state(), file=sys.stderr)
    return status


if __name__ == "__main__":
    sys.exit(main())
