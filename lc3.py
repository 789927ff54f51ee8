"""
LC-3 Machine-Code Emulator
===========================
A step emulator for the LC-3 16-bit teaching architecture.

Every instruction is decoded from the raw word in memory.  The fetch/decode/
execute loop mirrors the hardware: read the word at PC, bump PC, switch on
the top nibble, then pull operand fields out of the remaining 12 bits.
Control transfers are always relative to the already-incremented PC.

Character I/O goes through a console object (see devices.py); the TRAP
routines call into it the way the LC-3 operating system would drive the
keyboard and display.  The same console backs the memory-mapped
keyboard at xFE00/xFE02, so a bare LC3 polls input just like a full system.
"""

from __future__ import annotations
from enum import IntEnum
from typing import Optional

from devices import Console, BufferConsole, ConsoleError, DeviceBus, Keyboard

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE = 1 << 16
MASK16   = 0xFFFF
SIGN16   = 0x8000

# Register file slots
R_R0    = 0
R_R1    = 1
R_R2    = 2
R_R3    = 3
R_R4    = 4
R_R5    = 5
R_R6    = 6
R_R7    = 7
R_PC    = 8
R_COND  = 9
R_COUNT = 10

# Condition flags (exactly one is set in COND)
FL_POS = 1 << 0  # P
FL_ZRO = 1 << 1  # Z
FL_NEG = 1 << 2  # N

# Default load address / entry point for user programs
PC_START = 0x3000

HALT_MESSAGE = b"HALT"
IN_PROMPT    = b"Enter a character: "


class Opcode(IntEnum):
    BR   = 0x0   # branch
    ADD  = 0x1   # add
    LD   = 0x2   # load
    ST   = 0x3   # store
    JSR  = 0x4   # jump register
    AND  = 0x5   # bitwise and
    LDR  = 0x6   # load register
    STR  = 0x7   # store register
    RTI  = 0x8   # return from interrupt (unsupported)
    NOT  = 0x9   # bitwise not
    LDI  = 0xA   # load indirect
    STI  = 0xB   # store indirect
    JMP  = 0xC   # jump
    RES  = 0xD   # reserved (unsupported)
    LEA  = 0xE   # load effective address
    TRAP = 0xF   # execute trap


class Trap(IntEnum):
    GETC  = 0x20  # get character from keyboard, not echoed
    OUT   = 0x21  # output a character
    PUTS  = 0x22  # output a word string
    IN    = 0x23  # get character from keyboard, echoed
    PUTSP = 0x24  # output a byte string
    HALT  = 0x25  # halt the program


class State(IntEnum):
    RUNNING = 0
    HALTED  = 1
    FATAL   = 2

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & MASK16

def s16(v: int) -> int:
    """Interpret a 16-bit value as signed."""
    v = u16(v)
    return v - (1 << 16) if v & SIGN16 else v

def sign_extend(val: int, bits: int) -> int:
    """Sign-extend a *bits*-wide field to 16 bits."""
    val &= (1 << bits) - 1
    if val & (1 << (bits - 1)):
        val |= (MASK16 << bits) & MASK16
    return val

def flag_for(val: int) -> int:
    """Condition flag describing a 16-bit register value."""
    val = u16(val)
    if val == 0:
        return FL_ZRO
    if val & SIGN16:
        return FL_NEG
    return FL_POS

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class LC3Error(Exception):
    """Base for emulator-generated faults."""
    pass

class HaltError(LC3Error):
    pass

class FatalError(LC3Error):
    """The program cannot continue; the CPU is left in the FATAL state."""

    def __init__(self, pc: int, message: str = ""):
        self.pc = pc
        super().__init__(message or f"Fatal fault @ x{pc:04X}")

class IllegalOpcodeError(FatalError):
    def __init__(self, pc: int, opcode: Opcode):
        self.opcode = opcode
        super().__init__(pc, f"Unsupported opcode {opcode.name} @ x{pc:04X}")

class UnknownTrapError(FatalError):
    def __init__(self, pc: int, vector: int):
        self.vector = vector
        super().__init__(pc, f"Unknown trap vector x{vector:02X} @ x{pc:04X}")

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class LC3:
    """LC-3 emulator: register file, memory and the fetch/execute engine."""

    def __init__(self, console: Optional[Console] = None):
        self.console: Console = console if console is not None else BufferConsole()

        # 65536 x 16-bit words
        self.mem: list[int] = [0] * MEM_SIZE

        # R0-R7, PC, COND
        self.regs: list[int] = [0] * R_COUNT
        self.regs[R_COND] = FL_ZRO

        # State
        self.state: State = State.RUNNING
        self.fault: Optional[Exception] = None   # FatalError or ConsoleError
        self.instr_count: int = 0

        # Memory-mapped keyboard, fed by the same console as the traps
        self.bus = DeviceBus()
        self.keyboard = Keyboard(self.console)
        self.bus.register(self.keyboard)

        self._exec = {
            Opcode.BR:   self._exec_br,
            Opcode.ADD:  self._exec_add,
            Opcode.LD:   self._exec_ld,
            Opcode.ST:   self._exec_st,
            Opcode.JSR:  self._exec_jsr,
            Opcode.AND:  self._exec_and,
            Opcode.LDR:  self._exec_ldr,
            Opcode.STR:  self._exec_str,
            Opcode.RTI:  self._exec_unsupported,
            Opcode.NOT:  self._exec_not,
            Opcode.LDI:  self._exec_ldi,
            Opcode.STI:  self._exec_sti,
            Opcode.JMP:  self._exec_jmp,
            Opcode.RES:  self._exec_unsupported,
            Opcode.LEA:  self._exec_lea,
            Opcode.TRAP: self._exec_trap,
        }
        self._traps = {
            Trap.GETC:  self._trap_getc,
            Trap.OUT:   self._trap_out,
            Trap.PUTS:  self._trap_puts,
            Trap.IN:    self._trap_in,
            Trap.PUTSP: self._trap_putsp,
            Trap.HALT:  self._trap_halt,
        }

    # -- Property shortcuts --

    @property
    def pc(self) -> int:
        return self.regs[R_PC]

    @pc.setter
    def pc(self, value: int):
        self.regs[R_PC] = u16(value)

    @property
    def cond(self) -> int:
        return self.regs[R_COND]

    @cond.setter
    def cond(self, value: int):
        self.regs[R_COND] = value

    @property
    def running(self) -> bool:
        return self.state is State.RUNNING

    @property
    def halted(self) -> bool:
        return self.state is State.HALTED

    # -- Memory access --

    def mem_read(self, addr: int) -> int:
        addr &= MASK16
        if self.bus.claims(addr):
            return self.bus.read(addr)
        return self.mem[addr]

    def mem_write(self, addr: int, val: int):
        addr &= MASK16
        if self.bus.claims(addr):
            self.bus.write(addr, val & MASK16)
            return
        self.mem[addr] = val & MASK16

    def load_words(self, addr: int, words):
        """Store *words* at consecutive addresses, wrapping at xFFFF."""
        for i, w in enumerate(words):
            self.mem[(addr + i) & MASK16] = w & MASK16

    # -- Flags --

    def update_flags(self, r: int):
        self.regs[R_COND] = flag_for(self.regs[r])

    # -- Fetch --

    def fetch(self) -> int:
        """Fetch the word at PC and advance PC."""
        instr = self.mem_read(self.pc)
        self.pc = self.pc + 1
        return instr

    # =====================================================================
    #  STEP: the core decode/execute loop
    # =====================================================================

    def step(self) -> int:
        """Execute one instruction. Returns the instruction word."""
        if self.state is State.HALTED:
            raise HaltError("CPU is halted")
        if self.state is State.FATAL:
            raise self.fault

        instr = self.fetch()
        self._exec[Opcode(instr >> 12)](instr)
        self.instr_count += 1
        return instr

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until HALT, a fatal fault or max_steps. Returns steps executed."""
        steps = 0
        while self.state is State.RUNNING:
            if max_steps is not None and steps >= max_steps:
                break
            self.step()
            steps += 1
        return steps

    def _fail(self, err: FatalError):
        self.state = State.FATAL
        self.fault = err
        raise err

    # =====================================================================
    #  Opcode executors
    # =====================================================================

    def _operand2(self, instr: int) -> int:
        """Second ALU operand: imm5 when bit 5 is set, else SR2."""
        if instr & 0x20:
            return sign_extend(instr & 0x1F, 5)
        return self.regs[instr & 0x7]

    def _exec_add(self, instr: int):
        dr = (instr >> 9) & 0x7
        sr1 = (instr >> 6) & 0x7
        self.regs[dr] = u16(self.regs[sr1] + self._operand2(instr))
        self.update_flags(dr)

    def _exec_and(self, instr: int):
        dr = (instr >> 9) & 0x7
        sr1 = (instr >> 6) & 0x7
        self.regs[dr] = self.regs[sr1] & self._operand2(instr)
        self.update_flags(dr)

    def _exec_not(self, instr: int):
        dr = (instr >> 9) & 0x7
        sr1 = (instr >> 6) & 0x7
        self.regs[dr] = u16(~self.regs[sr1])
        self.update_flags(dr)

    def _exec_br(self, instr: int):
        nzp = (instr >> 9) & 0x7
        if nzp & self.regs[R_COND]:
            self.pc = self.pc + sign_extend(instr & 0x1FF, 9)

    def _exec_jmp(self, instr: int):
        # Also RET when BaseR is R7
        self.pc = self.regs[(instr >> 6) & 0x7]

    def _exec_jsr(self, instr: int):
        target = self.regs[(instr >> 6) & 0x7]
        self.regs[R_R7] = self.pc
        if instr & 0x800:       # JSR
            self.pc = self.pc + sign_extend(instr & 0x7FF, 11)
        else:                   # JSRR
            self.pc = target

    def _exec_ld(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.regs[dr] = self.mem_read(self.pc + sign_extend(instr & 0x1FF, 9))
        self.update_flags(dr)

    def _exec_ldi(self, instr: int):
        dr = (instr >> 9) & 0x7
        ptr = self.mem_read(self.pc + sign_extend(instr & 0x1FF, 9))
        self.regs[dr] = self.mem_read(ptr)
        self.update_flags(dr)

    def _exec_ldr(self, instr: int):
        dr = (instr >> 9) & 0x7
        base = self.regs[(instr >> 6) & 0x7]
        self.regs[dr] = self.mem_read(base + sign_extend(instr & 0x3F, 6))
        self.update_flags(dr)

    def _exec_lea(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.regs[dr] = u16(self.pc + sign_extend(instr & 0x1FF, 9))
        self.update_flags(dr)

    def _exec_st(self, instr: int):
        sr = (instr >> 9) & 0x7
        self.mem_write(self.pc + sign_extend(instr & 0x1FF, 9), self.regs[sr])

    def _exec_sti(self, instr: int):
        sr = (instr >> 9) & 0x7
        ptr = self.mem_read(self.pc + sign_extend(instr & 0x1FF, 9))
        self.mem_write(ptr, self.regs[sr])

    def _exec_str(self, instr: int):
        sr = (instr >> 9) & 0x7
        base = self.regs[(instr >> 6) & 0x7]
        self.mem_write(base + sign_extend(instr & 0x3F, 6), self.regs[sr])

    def _exec_unsupported(self, instr: int):
        self._fail(IllegalOpcodeError(u16(self.pc - 1), Opcode(instr >> 12)))

    # =====================================================================
    #  TRAP routines
    # =====================================================================

    def _exec_trap(self, instr: int):
        self.regs[R_R7] = self.pc
        vector = instr & 0xFF
        try:
            trap = Trap(vector)
        except ValueError:
            self._fail(UnknownTrapError(u16(self.pc - 1), vector))
        self._traps[trap]()

    def _read_console(self) -> int:
        try:
            return self.console.read_byte() & 0xFF
        except ConsoleError as e:
            self.state = State.FATAL
            self.fault = e
            raise

    def _write_console(self, data: bytes):
        self.console.write(data)
        self.console.flush()

    def _string_words(self, addr: int):
        """Yield raw memory words from *addr* up to (not including) a zero word."""
        for _ in range(MEM_SIZE):
            word = self.mem[addr]
            if word == 0:
                return
            yield word
            addr = (addr + 1) & MASK16

    def _trap_getc(self):
        self.regs[R_R0] = self._read_console()
        self.update_flags(R_R0)

    def _trap_out(self):
        self._write_console(bytes([self.regs[R_R0] & 0xFF]))

    def _trap_puts(self):
        out = bytes(w & 0xFF for w in self._string_words(self.regs[R_R0]))
        self._write_console(out)

    def _trap_in(self):
        self._write_console(IN_PROMPT)
        ch = self._read_console()
        self._write_console(bytes([ch]))
        self.regs[R_R0] = ch
        self.update_flags(R_R0)

    def _trap_putsp(self):
        out = bytearray()
        for word in self._string_words(self.regs[R_R0]):
            out.append(word & 0xFF)
            hi = word >> 8
            if hi:
                out.append(hi)
        self._write_console(bytes(out))

    def _trap_halt(self):
        self._write_console(HALT_MESSAGE)
        self.state = State.HALTED

    # -- Reset helper --

    def _reset_state(self):
        self.regs = [0] * R_COUNT
        self.regs[R_COND] = FL_ZRO
        self.state = State.RUNNING
        self.fault = None
        self.instr_count = 0
        # Note: memory is NOT cleared, images are loaded before boot

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for i in range(8):
            lines.append(f"  R{i} = x{self.regs[i]:04X}  ({s16(self.regs[i]):6d})")
        c = self.regs[R_COND]
        nzp = ("n" if c & FL_NEG else "-") + \
              ("z" if c & FL_ZRO else "-") + \
              ("p" if c & FL_POS else "-")
        lines.append(f"  PC = x{self.pc:04X}  COND = {nzp}  "
                     f"State = {self.state.name}")
        return "\n".join(lines)
