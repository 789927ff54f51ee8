#!/usr/bin/env python3
"""
Tests for the LC-3 command-line front end: disassembler, console runner,
debug monitor and the argument-handling entry point.
"""
import contextlib
import io
import os
import signal
import subprocess
import sys
import tempfile
import unittest
from unittest import mock

import cli
from cli import (disasm_one, run_console, main, LC3CLI, EXIT_OK, EXIT_ERROR,
                 EXIT_INTERRUPTED, EXIT_FATAL, USAGE)
from devices import BufferConsole
from lc3 import Trap, PC_START, HALT_MESSAGE, State
from system import LC3System
from test_lc3 import (image, add_imm, and_reg, not_, br, jmp, jsr, jsrr, ld,
                      ldi, ldr, lea, st, sti, str_, trap, HALT, BR_N, BR_Z,
                      BR_P)

RES = 0xD000
BR_ALWAYS = BR_N | BR_Z | BR_P
CLI_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "cli.py")


def booted(words, input_data: bytes = b"") -> LC3System:
    sys_emu = LC3System(BufferConsole(input_data))
    sys_emu.load_image(image(PC_START, words))
    sys_emu.boot()
    return sys_emu


# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

class TestDisassembler(unittest.TestCase):

    def check(self, word, expected, addr=PC_START):
        self.assertEqual(disasm_one(word, addr), expected)

    def test_operate(self):
        self.check(add_imm(1, 2, -3), "ADD R1, R2, #-3")
        self.check(add_imm(0, 0, 15), "ADD R0, R0, #15")
        self.check(and_reg(3, 4, 5), "AND R3, R4, R5")
        self.check(not_(1, 2), "NOT R1, R2")

    def test_branches(self):
        self.check(br(BR_N | BR_Z, 4), "BRnz x3005")
        self.check(br(BR_ALWAYS, -1), "BRnzp x3000")
        self.check(br(BR_P, -0x100), "BRp x2F01")
        self.check(br(0, 5), "NOP")

    def test_branch_target_wraps(self):
        self.check(br(BR_Z, 1), "BRz x0001", addr=0xFFFF)

    def test_jumps(self):
        self.check(jmp(7), "RET")
        self.check(jmp(3), "JMP R3")
        self.check(jsr(-1), "JSR x3000")
        self.check(jsr(0x3FF), "JSR x3400")
        self.check(jsrr(2), "JSRR R2")

    def test_memory(self):
        self.check(ld(1, -2), "LD R1, x2FFF")
        self.check(ldi(2, 3), "LDI R2, x3004")
        self.check(lea(0, 2), "LEA R0, x3003")
        self.check(st(4, 0), "ST R4, x3001")
        self.check(sti(5, 255), "STI R5, x3100")
        self.check(ldr(1, 2, -1), "LDR R1, R2, #-1")
        self.check(str_(0, 6, 31), "STR R0, R6, #31")

    def test_traps(self):
        self.check(HALT, "HALT")
        self.check(trap(Trap.GETC), "GETC")
        self.check(trap(Trap.PUTSP), "PUTSP")
        self.check(trap(0xFF), "TRAP xFF")

    def test_reserved(self):
        self.check(0x8000, "RTI")
        self.check(RES, "RES")


# ---------------------------------------------------------------------------
#  Console runner
# ---------------------------------------------------------------------------

class TestRunConsole(unittest.TestCase):

    def run_console(self, sys_emu, **kwargs):
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            status = run_console(sys_emu, **kwargs)
        return status, err.getvalue()

    def test_halt(self):
        sys_emu = booted([trap(Trap.OUT), HALT])
        sys_emu.cpu.regs[0] = ord("x")
        status, err = self.run_console(sys_emu)
        self.assertEqual(status, EXIT_OK)
        self.assertEqual(sys_emu.get_tx_output(), b"x" + HALT_MESSAGE)
        self.assertEqual(err, "")

    def test_fatal_fault(self):
        sys_emu = booted([RES])
        status, err = self.run_console(sys_emu)
        self.assertEqual(status, EXIT_FATAL)
        self.assertIn("ERROR:", err)
        self.assertIs(sys_emu.cpu.state, State.FATAL)

    def test_unknown_trap(self):
        status, err = self.run_console(booted([trap(0x26)]))
        self.assertEqual(status, EXIT_FATAL)
        self.assertIn("x26", err)

    def test_input_exhausted(self):
        status, err = self.run_console(booted([trap(Trap.GETC), HALT]))
        self.assertEqual(status, EXIT_ERROR)
        self.assertIn("console input exhausted", err)

    def test_input_available(self):
        sys_emu = booted([trap(Trap.GETC), trap(Trap.OUT), HALT], b"y")
        status, _ = self.run_console(sys_emu)
        self.assertEqual(status, EXIT_OK)
        self.assertEqual(sys_emu.get_tx_output(), b"y" + HALT_MESSAGE)

    def test_max_steps(self):
        sys_emu = booted([br(BR_ALWAYS, -1)])
        status, err = self.run_console(sys_emu, max_steps=3)
        self.assertEqual(status, EXIT_OK)
        self.assertEqual(sys_emu.cpu.instr_count, 3)
        self.assertIn("[stopped after 3 instructions]", err)

    def test_trace(self):
        sys_emu = booted([add_imm(1, 1, 2), HALT])
        status, err = self.run_console(sys_emu, trace=True)
        self.assertEqual(status, EXIT_OK)
        self.assertEqual(err.splitlines(), [
            "[trace] x3000: x1262  ADD R1, R1, #2",
            "[trace] x3001: xF025  HALT",
        ])

    def test_interrupt(self):
        sys_emu = booted([trap(Trap.OUT), HALT])

        def interrupt(data):
            raise KeyboardInterrupt

        sys_emu.console.on_tx = interrupt
        status, err = self.run_console(sys_emu)
        self.assertEqual(status, EXIT_INTERRUPTED)
        self.assertIn("Interrupted", err)


# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class TestMonitor(unittest.TestCase):

    def setUp(self):
        self.sys = booted([
            add_imm(1, 1, 1),       # x3000
            add_imm(1, 1, 1),       # x3001
            add_imm(1, 1, 1),       # x3002
            HALT,                   # x3003
        ])
        self.mon = LC3CLI(self.sys)

    def cmd(self, line):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            stop = self.mon.onecmd(line)
        self.last_stop = stop
        return out.getvalue()

    def test_step(self):
        out = self.cmd("step")
        self.assertIn("x3000: x1261  ADD R1, R1, #1", out)
        self.assertEqual(self.sys.cpu.pc, 0x3001)
        self.cmd("s 2")
        self.assertEqual(self.sys.cpu.regs[1], 3)

    def test_step_to_halt(self):
        out = self.cmd("step 10")
        self.assertIn("HALT", out)
        self.assertIn("CPU halted.", out)
        self.assertIn("CPU is halted.", self.cmd("step"))

    def test_breakpoint(self):
        self.assertIn("Breakpoint set at x3002", self.cmd("bp x3002"))
        out = self.cmd("run")
        self.assertIn("Breakpoint hit at x3002", out)
        self.assertEqual(self.sys.cpu.regs[1], 2)
        out = self.cmd("continue")
        self.assertIn("CPU halted after 2 instructions.", out)
        self.assertIn("HALT", out)   # program output echoed

    def test_breakpoint_list_and_delete(self):
        self.cmd("bp 0x3001")
        self.cmd("bp x3003")
        out = self.cmd("bp")
        self.assertIn("x3001", out)
        self.assertIn("x3003", out)
        self.cmd("bpd x3001")
        self.assertEqual(self.mon.breakpoints, {0x3003})
        self.cmd("bpd all")
        self.assertIn("No breakpoints set.", self.cmd("bp"))

    def test_run_limit(self):
        self.assertIn("Stopped after 2 instructions.", self.cmd("run 2"))

    def test_regs_and_setreg(self):
        self.assertIn("R2 = x00FF", self.cmd("setreg r2 xFF"))
        self.assertEqual(self.sys.cpu.regs[2], 0x00FF)
        self.cmd("setreg pc x3002")
        self.assertEqual(self.sys.cpu.pc, 0x3002)
        self.assertIn("COND must be", self.cmd("setreg cond 3"))
        self.assertIn("Unknown register.", self.cmd("setreg r9 1"))
        out = self.cmd("regs")
        self.assertIn("R2 = x00FF", out)
        self.assertIn("PC = x3002", out)

    def test_setmem_and_dump(self):
        self.cmd("setmem x4000 x0048 x0069")
        self.assertEqual(self.sys.cpu.mem[0x4000:0x4002], [0x48, 0x69])
        out = self.cmd("dump x4000 2")
        self.assertIn("x4000: 0048 0069", out)
        self.assertIn("|Hi|", out)

    def test_dump_does_not_poll_keyboard(self):
        self.sys.console.inject_input("k")
        self.cmd("dump xFE00 4")
        self.assertTrue(self.sys.console.has_rx_data)

    def test_disassemble(self):
        out = self.cmd("dis x3002 2")
        self.assertIn("x3002: x1261  ADD R1, R1, #1", out)
        self.assertIn("x3003: xF025  HALT", out)
        self.assertIn(">>> x3000", self.cmd("disasm"))

    def test_waits_for_input(self):
        sys_emu = booted([trap(Trap.GETC), HALT])
        self.mon = LC3CLI(sys_emu)
        self.assertIn("Waiting for input", self.cmd("run"))
        self.assertIs(sys_emu.cpu.state, State.RUNNING)
        self.assertIn("Sent 2 bytes.", self.cmd("send a"))
        self.cmd("run")
        self.assertTrue(sys_emu.cpu.halted)
        self.assertEqual(sys_emu.cpu.regs[0], ord("a"))

    def test_fatal(self):
        sys_emu = booted([RES])
        self.mon = LC3CLI(sys_emu)
        self.assertIn("Fatal:", self.cmd("step"))
        self.assertIs(sys_emu.cpu.state, State.FATAL)

    def test_boot(self):
        self.cmd("run")
        self.assertIn("PC=x3000", self.cmd("boot"))
        self.assertTrue(self.sys.cpu.running)
        self.assertEqual(self.sys.cpu.regs[1], 0)
        self.cmd("reset x3002")
        self.assertEqual(self.sys.cpu.pc, 0x3002)

    def test_load(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "data.obj")
            with open(path, "wb") as f:
                f.write(image(0x5000, [7, 8]))
            self.assertIn("Loaded 2 words", self.cmd(f"load {path}"))
            self.assertEqual(self.sys.cpu.mem[0x5001], 8)
            out = self.cmd(f"load {os.path.join(tmp, 'missing.obj')}")
            self.assertIn("failed to load image", out)

    def test_status(self):
        self.assertIn("=== Devices ===", self.cmd("status"))

    def test_register_operands(self):
        self.sys.cpu.regs[2] = 0x3002
        self.assertIn("Breakpoint set at x3002", self.cmd("bp r2"))
        self.assertIn("Error: no register R9", self.cmd("bp r9"))
        self.assertEqual(self.mon.breakpoints, {0x3002})
        self.assertIn("Error:", self.cmd("dump zz"))
        self.assertIsNone(self.last_stop)

    def test_misc(self):
        self.assertIn("Unknown command: 'frob'", self.cmd("frob 1"))
        self.assertEqual(self.cmd(""), "")
        self.cmd("quit")
        self.assertTrue(self.last_stop)
        self.cmd("EOF")
        self.assertTrue(self.last_stop)


# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

class TestMain(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.console = BufferConsole()
        patches = [
            mock.patch.object(cli, "_install_signal_handlers"),
            mock.patch.object(cli, "TerminalConsole",
                              return_value=self.console),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def tearDown(self):
        self._tmp.cleanup()

    def write_image(self, name, data):
        path = os.path.join(self.tmp, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def main(self, *argv):
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            status = main(list(argv))
        return status, err.getvalue()

    def test_no_images(self):
        status, err = self.main()
        self.assertEqual(status, EXIT_ERROR)
        self.assertEqual(err.strip(), USAGE)

    def test_missing_image(self):
        path = os.path.join(self.tmp, "missing.obj")
        status, err = self.main(path)
        self.assertEqual(status, EXIT_ERROR)
        self.assertIn(f"ERROR: failed to load image {path}:", err)

    def test_oversized_image(self):
        path = self.write_image("big.obj", image(0xFFFF, [1, 2]))
        status, err = self.main(path)
        self.assertEqual(status, EXIT_ERROR)
        self.assertIn("failed to load image", err)

    def test_halt(self):
        status, _ = self.main(self.write_image("h.obj", image(PC_START, [HALT])))
        self.assertEqual(status, EXIT_OK)
        self.assertEqual(self.console.drain_tx(), HALT_MESSAGE)
        cli._install_signal_handlers.assert_called_once_with()

    def test_images_loaded_in_order(self):
        prog = self.write_image("prog.obj", image(PC_START, [
            lea(0, 0x0F),           # x3000 R0 = x3010
            trap(Trap.PUTS),
            HALT,
        ]))
        data = self.write_image("data.obj", image(0x3010, [ord("o"), ord("k"), 0]))
        status, _ = self.main(prog, data)
        self.assertEqual(status, EXIT_OK)
        self.assertEqual(self.console.drain_tx(), b"ok" + HALT_MESSAGE)

    def test_fatal(self):
        status, err = self.main(self.write_image("r.obj", image(PC_START, [RES])))
        self.assertEqual(status, EXIT_FATAL)
        self.assertIn("ERROR:", err)

    def test_options(self):
        path = self.write_image("loop.obj", image(PC_START, [br(BR_ALWAYS, -1)]))
        status, err = self.main("--trace", "--max-steps", "2", "--dump", path)
        self.assertEqual(status, EXIT_OK)
        self.assertEqual(err.count("[trace] x3000: x0FFF  BRnzp x3000"), 2)
        self.assertIn("[stopped after 2 instructions]", err)
        self.assertIn("=== Registers ===", err)

    def test_monitor(self):
        path = self.write_image("h.obj", image(PC_START, [HALT]))
        with mock.patch.object(LC3CLI, "cmdloop") as loop:
            status, _ = self.main("--monitor", path)
        self.assertEqual(status, EXIT_OK)
        loop.assert_called_once_with()
        cli.TerminalConsole.assert_not_called()
        cli._install_signal_handlers.assert_not_called()


# ---------------------------------------------------------------------------
#  Signals (real process)
# ---------------------------------------------------------------------------

@unittest.skipUnless(os.name == "posix", "needs POSIX signals")
class TestSignals(unittest.TestCase):

    def run_until_blocked(self, sig):
        """Start the CLI on a program that blocks in GETC, then send *sig*."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "wait.obj")
            with open(path, "wb") as f:
                # OUT writes a NUL (R0 is 0 at boot) so the run loop is live
                f.write(image(PC_START, [trap(Trap.OUT), trap(Trap.GETC), HALT]))
            proc = subprocess.Popen([sys.executable, CLI_PATH, path],
                                    stdin=subprocess.PIPE,
                                    stdout=subprocess.PIPE,
                                    stderr=subprocess.PIPE)
            try:
                self.assertEqual(proc.stdout.read(1), b"\x00")
                proc.send_signal(sig)
                status = proc.wait(timeout=10)
                err = proc.stderr.read()
            finally:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
                for stream in (proc.stdin, proc.stdout, proc.stderr):
                    stream.close()
        return status, err

    def test_sigterm_exits_interrupted(self):
        status, err = self.run_until_blocked(signal.SIGTERM)
        self.assertEqual(status, EXIT_INTERRUPTED)
        self.assertIn(b"Interrupted.", err)

    def test_sigint_exits_interrupted(self):
        status, err = self.run_until_blocked(signal.SIGINT)
        self.assertEqual(status, EXIT_INTERRUPTED)
        self.assertIn(b"Interrupted.", err)


if __name__ == "__main__":
    unittest.main()
