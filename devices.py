"""
LC-3 Console / Device Layer
============================
Host console back-ends and the memory-mapped keyboard.

Memory map (LC-3 device register page):

  xFE00  KBSR  keyboard status  (bit 15: a key is ready)
  xFE02  KBDR  keyboard data    (low 8 bits: last key read)

Reads of KBSR poll the console without blocking; the CPU reaches
these registers through the device bus it owns (lc3.py).
"""

from __future__ import annotations
import contextlib
import os
from collections import deque
from typing import Iterator, Optional

# ---------------------------------------------------------------------------
#  Device register addresses
# ---------------------------------------------------------------------------

MR_KBSR = 0xFE00
MR_KBDR = 0xFE02

KBSR_READY = 1 << 15


class ConsoleError(Exception):
    """A blocking console read could not produce a byte."""
    pass

# ---------------------------------------------------------------------------
#  Console back-ends
# ---------------------------------------------------------------------------

class Console:
    """Abstract byte console used by the TRAP routines and the keyboard."""

    def read_byte(self) -> int:
        """Block until one byte of input is available and return it."""
        raise NotImplementedError

    def key_ready(self) -> bool:
        """Non-blocking: True if read_byte() would return immediately."""
        return False

    def write_byte(self, value: int):
        self.write(bytes([value & 0xFF]))

    def write(self, data: bytes):
        raise NotImplementedError

    def flush(self):
        pass

    @contextlib.contextmanager
    def raw_mode(self) -> Iterator['Console']:
        """Hold the console in unbuffered, no-echo mode for the block."""
        yield self


class BufferConsole(Console):
    """In-memory console: scripted input, captured output."""

    def __init__(self, input_data: bytes | str = b""):
        self.rx_buffer: deque[int] = deque()   # bytes waiting for the CPU
        self.tx_buffer = bytearray()           # bytes the CPU has written
        self.on_tx = None                      # called with each written chunk
        self.inject_input(input_data)

    def inject_input(self, data: bytes | str):
        """Push bytes into the input buffer (as if typed)."""
        if isinstance(data, str):
            data = data.encode("ascii", errors="replace")
        for b in data:
            self.rx_buffer.append(b & 0xFF)

    @property
    def has_rx_data(self) -> bool:
        return len(self.rx_buffer) > 0

    def key_ready(self) -> bool:
        return self.has_rx_data

    def read_byte(self) -> int:
        if not self.rx_buffer:
            raise ConsoleError("console input exhausted")
        return self.rx_buffer.popleft()

    def write(self, data: bytes):
        self.tx_buffer += data
        if self.on_tx:
            self.on_tx(data)

    def drain_tx(self) -> bytes:
        """Return all written bytes and clear the buffer."""
        out = bytes(self.tx_buffer)
        self.tx_buffer.clear()
        return out


class TerminalConsole(Console):
    """Console wired to host file descriptors (stdin/stdout by default)."""

    def __init__(self, in_fd: int = 0, out_fd: int = 1):
        self.in_fd = in_fd
        self.out_fd = out_fd

    def key_ready(self) -> bool:
        import select
        try:
            readable, _, _ = select.select([self.in_fd], [], [], 0)
        except (OSError, ValueError):
            return False
        return bool(readable)

    def read_byte(self) -> int:
        try:
            ch = os.read(self.in_fd, 1)
        except OSError as e:
            raise ConsoleError(f"console read failed: {e}") from e
        if not ch:
            raise ConsoleError("end of console input")
        return ch[0]

    def write(self, data: bytes):
        view = memoryview(data)
        while view:
            n = os.write(self.out_fd, view)
            view = view[n:]

    @contextlib.contextmanager
    def raw_mode(self) -> Iterator['TerminalConsole']:
        """Disable line buffering and echo while the block runs.

        The original terminal settings are restored on every exit path.
        Not a TTY (pipe, file): nothing to configure.
        """
        if not os.isatty(self.in_fd):
            yield self
            return

        import termios
        fd = self.in_fd
        old_settings = termios.tcgetattr(fd)
        new_settings = termios.tcgetattr(fd)
        new_settings[3] &= ~(termios.ICANON | termios.ECHO)   # lflag
        termios.tcsetattr(fd, termios.TCSANOW, new_settings)
        try:
            yield self
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)

# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Memory-mapped peripheral occupying a fixed set of word addresses."""

    def __init__(self, name: str, registers: tuple[int, ...]):
        self.name = name
        self.registers = registers

    def read(self, addr: int) -> int:
        return 0

    def write(self, addr: int, value: int):
        pass

# ---------------------------------------------------------------------------
#  Keyboard
# ---------------------------------------------------------------------------

class Keyboard(Device):
    """KBSR/KBDR pair backed by a Console."""

    def __init__(self, console: Console):
        super().__init__("Keyboard", (MR_KBSR, MR_KBDR))
        self.console = console
        self.status: int = 0
        self.data: int = 0

    def poll(self):
        """Latch a pending key into KBDR, or clear KBSR if there is none."""
        if self.console.key_ready():
            try:
                self.data = self.console.read_byte() & 0xFF
            except ConsoleError:
                self.status = 0
                return
            self.status = KBSR_READY
        else:
            self.status = 0

    def read(self, addr: int) -> int:
        if addr == MR_KBSR:
            self.poll()
            return self.status
        if addr == MR_KBDR:
            return self.data
        return 0

    def write(self, addr: int, value: int):
        if addr == MR_KBSR:
            self.status = value & 0xFFFF
        elif addr == MR_KBDR:
            self.data = value & 0xFFFF

# ---------------------------------------------------------------------------
#  Device bus
# ---------------------------------------------------------------------------

class DeviceBus:
    """Routes memory-mapped register accesses to registered devices."""

    def __init__(self):
        self.devices: list[Device] = []
        self._by_addr: dict[int, Device] = {}

    def register(self, device: Device):
        self.devices.append(device)
        for addr in device.registers:
            self._by_addr[addr] = device

    def find_device(self, addr: int) -> Optional[Device]:
        return self._by_addr.get(addr)

    def claims(self, addr: int) -> bool:
        return addr in self._by_addr

    def read(self, addr: int) -> int:
        dev = self._by_addr.get(addr)
        if dev:
            return dev.read(addr)
        return 0

    def write(self, addr: int, value: int):
        dev = self._by_addr.get(addr)
        if dev:
            dev.write(addr, value)
