"""
LC-3 System Emulator
=====================
Wires together:
  - the LC3 CPU core (lc3.py), which owns the device bus and keyboard
  - the console back-end (devices.py)
  - the program image loader

An LC-3 image file is a sequence of big-endian 16-bit words.  The first
word is the origin; every following word is stored at consecutive
addresses starting there.  Several images may be loaded before boot.
"""

from __future__ import annotations
import struct
from typing import Optional

from lc3 import LC3, MEM_SIZE, MASK16, PC_START
from devices import Console, BufferConsole, MR_KBSR, MR_KBDR


class ImageError(Exception):
    """A program image could not be read or does not fit in memory."""
    pass


class LC3System:
    """Complete LC-3 machine: CPU + memory + keyboard + console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console if console is not None else BufferConsole()
        self.cpu = LC3(self.console)

        # Device bus and keyboard live on the CPU
        self.bus = self.cpu.bus
        self.keyboard = self.cpu.keyboard

        self.images: list[tuple[int, int]] = []   # (origin, word count)

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_image(self, data: bytes | bytearray) -> tuple[int, int]:
        """Load an image held in memory. Returns (origin, word count).

        Nothing is written when the image would run past xFFFF.
        """
        if len(data) < 2:
            raise ImageError("image is missing its origin word")
        # A trailing odd byte is not a whole word and is dropped
        count = len(data) // 2
        words = struct.unpack(f">{count}H", bytes(data[:count * 2]))
        origin, payload = words[0], words[1:]
        if origin + len(payload) > MEM_SIZE:
            raise ImageError(
                f"image of {len(payload)} words at x{origin:04X} "
                f"exceeds the address space")
        self.cpu.load_words(origin, payload)
        self.images.append((origin, len(payload)))
        return origin, len(payload)

    def load_image_file(self, path: str) -> tuple[int, int]:
        """Load an image file. Returns (origin, word count)."""
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise ImageError(e.strerror or str(e)) from e
        return self.load_image(data)

    # -----------------------------------------------------------------
    #  Boot / run
    # -----------------------------------------------------------------

    def boot(self, entry: int = PC_START):
        """Reset registers and state and start at *entry* (default x3000)."""
        self.cpu._reset_state()
        self.cpu.pc = entry

    def step(self) -> int:
        return self.cpu.step()

    def run(self, max_steps: Optional[int] = None) -> int:
        return self.cpu.run(max_steps)

    def read_word(self, addr: int) -> int:
        """Read a word as the CPU would, device side effects included."""
        return self.cpu.mem_read(addr)

    def peek(self, addr: int) -> int:
        """Read the stored word with no device side effects."""
        addr &= MASK16
        if addr == MR_KBSR:
            return self.keyboard.status
        if addr == MR_KBDR:
            return self.keyboard.data
        return self.cpu.mem[addr]

    def get_tx_output(self) -> bytes:
        """Output produced so far (buffered consoles only)."""
        if isinstance(self.console, BufferConsole):
            return self.console.drain_tx()
        return b""

    def dump_state(self) -> str:
        """Full CPU + device state dump."""
        cpu = self.cpu
        lines = ["=== Registers ===", cpu.dump_regs(),
                 f"  Instructions: {cpu.instr_count}"]
        if cpu.fault is not None:
            lines.append(f"  Fault: {cpu.fault}")
        lines.append("")
        lines.append("=== Devices ===")
        lines.append(f"  Keyboard: KBSR=x{self.keyboard.status:04X} "
                     f"KBDR=x{self.keyboard.data:04X}")
        lines.append(f"  Console: {type(self.console).__name__}")
        if self.images:
            lines.append("")
            lines.append("=== Images ===")
            for origin, count in self.images:
                end = origin + max(count, 1) - 1
                lines.append(f"  x{origin:04X}-x{end:04X} ({count} words)")
        return "\n".join(lines)
