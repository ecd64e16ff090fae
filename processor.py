"""Processor (Datapath + ControlUnit) and CLI wrapper.

Provides the LC-3 fetch-decode-execute loop, the memory-mapped keyboard,
trap routines, logging initialization and the command line runner.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from array import array
from typing import Any, Callable

from config import ConfigError, load_config
from console import EOF, BaseConsole, TerminalConsole
from image import ImageError, read_image, read_image_bytes
from isa import MEM_CELLS, WORD_MASK, CondFlag, OpCode, TrapVector, mnemonic, sign_extend

LOGFILE = "processor.log"

EXIT_OK = 0
EXIT_LOAD_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130
EXIT_ILLEGAL_TRAP = 134  # status of an aborted process


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stderr
    (stdout is the simulated terminal).
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if debug and console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


class IllegalTrapError(RuntimeError):
    """Raised when a TRAP instruction carries a vector with no routine."""

    pass


class Datapath:
    """Datapath (memory + registers + memory-mapped keyboard) for the VM."""

    memory: array
    R: list[int]
    PC: int
    COND: int
    running: bool

    console: BaseConsole
    kbsr: int
    kbdr: int

    def __init__(
        self,
        console: BaseConsole,
        pc_start: int = 0x3000,
        kbsr: int = 0xFE00,
        kbdr: int = 0xFE02,
    ) -> None:
        """Initialize zeroed memory and registers, PC at `pc_start`, COND=ZRO."""
        self.console = console
        self.memory = array("H", [0]) * MEM_CELLS
        self.R = [0] * 8
        self.PC = pc_start & WORD_MASK
        self.COND = int(CondFlag.ZRO)
        self.running = True
        self.kbsr = kbsr
        self.kbdr = kbdr

    def mem_read(self, address: int) -> int:
        """Read a word. Reading KBSR polls the console without blocking."""
        address &= WORD_MASK
        if address == self.kbsr:
            if self.console.key_available():
                ch = self.console.read_char()
                self.memory[self.kbsr] = 1 << 15
                self.memory[self.kbdr] = (EOF if ch is None else ch) & WORD_MASK
            else:
                self.memory[self.kbsr] = 0
        return self.memory[address]

    def mem_write(self, address: int, value: int) -> None:
        """Store a word. The keyboard registers are not protected."""
        self.memory[address & WORD_MASK] = value & WORD_MASK

    def set_cc(self, r: int) -> None:
        """Set COND from the sign of register `r`."""
        value = self.R[r]
        if value == 0:
            self.COND = int(CondFlag.ZRO)
        elif value >> 15:
            self.COND = int(CondFlag.NEG)
        else:
            self.COND = int(CondFlag.POS)

    def load_words(self, origin: int, words: list[int]) -> int:
        """Copy `words` into memory from `origin`; drop what does not fit."""
        origin &= WORD_MASK
        count = min(len(words), MEM_CELLS - origin)
        self.memory[origin : origin + count] = array("H", words[:count])
        return count


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC loop for the Datapath."""

    dp: Datapath
    ops: list[Callable[[int], None]]
    traps: dict[int, Callable[[], None]]

    def __init__(
        self,
        dp: Datapath,
        trace: bool = False,
        cancel: threading.Event | None = None,
        tick_limit: int = 0,
        halt_message: str = "HALT",
        in_prompt: str = "Enter a character: ",
        lenient_log: bool = False,
    ) -> None:
        """Create a ControlUnit bound to `dp`."""
        self.dp = dp
        self.trace = trace
        self.cancel = cancel if cancel is not None else threading.Event()
        self.tick_limit = tick_limit
        self.halt_message = halt_message
        self.in_prompt = in_prompt
        self.lenient_log = lenient_log
        self.tick = 0
        self.state = "stopped"
        self._log_steps = False

        # RTI and RES keep the bad-opcode handler
        self.ops = [self._op_bad] * 16
        self.ops[OpCode.BR] = self._op_br
        self.ops[OpCode.ADD] = self._op_add
        self.ops[OpCode.LD] = self._op_ld
        self.ops[OpCode.ST] = self._op_st
        self.ops[OpCode.JSR] = self._op_jsr
        self.ops[OpCode.AND] = self._op_and
        self.ops[OpCode.LDR] = self._op_ldr
        self.ops[OpCode.STR] = self._op_str
        self.ops[OpCode.NOT] = self._op_not
        self.ops[OpCode.LDI] = self._op_ldi
        self.ops[OpCode.STI] = self._op_sti
        self.ops[OpCode.JMP] = self._op_jmp
        self.ops[OpCode.LEA] = self._op_lea
        self.ops[OpCode.TRAP] = self._op_trap

        self.traps = {
            TrapVector.GETC: self._trap_getc,
            TrapVector.OUT: self._trap_out,
            TrapVector.PUTS: self._trap_puts,
            TrapVector.IN: self._trap_in,
            TrapVector.PUTSP: self._trap_putsp,
            TrapVector.HALT: self._trap_halt,
        }

    # --- logging helpers ---
    def _log_step(self, pc: int, instr: int) -> None:
        dp = self.dp
        regs = " ".join(f"R{i}: x{v:04X}" for i, v in enumerate(dp.R))
        logging.debug(
            "TICK: %5d PC: x%04X INSTR: %04X %-18s %s COND: %s",
            self.tick,
            pc,
            instr,
            mnemonic(instr),
            regs,
            CondFlag(dp.COND).name,
        )

    def _log_registers(self) -> None:
        dp = self.dp
        logging.debug("Registers after %d tick(s), state=%s:", self.tick, self.state)
        for i, v in enumerate(dp.R):
            logging.debug("  R%d = x%04X (%d)", i, v, v)
        logging.debug("  PC = x%04X  COND = %s", dp.PC, CondFlag(dp.COND).name)

    # --- loop ---
    def step(self) -> None:
        """Fetch, advance PC, decode and execute one instruction."""
        dp = self.dp
        pc_before = dp.PC
        instr = dp.mem_read(dp.PC)
        dp.PC = (dp.PC + 1) & WORD_MASK
        op = instr >> 12

        if self.trace:
            dp.console.write(f"PC: 0x{pc_before:04X} Instr: 0x{instr:04X} Op: 0x{op:X}\n")
        if self._log_steps:
            self._log_step(pc_before, instr)

        self.ops[op](instr)
        self.tick += 1

    def run(self) -> tuple[int, str]:
        """Execute until HALT, an illegal opcode, cancellation or the tick limit.

        Returns (ticks, state). IllegalTrapError propagates to the caller.
        """
        dp = self.dp
        root = logging.getLogger()
        self._log_steps = root.isEnabledFor(logging.DEBUG) and not self.lenient_log
        logging.debug("ControlUnit: run from x%04X (trace=%s, tick_limit=%d)", dp.PC, self.trace, self.tick_limit)

        while dp.running:
            if self.cancel.is_set():
                self.state = "cancelled"
                logging.debug("Cancellation requested -> stop at x%04X", dp.PC)
                break
            if self.tick_limit and self.tick >= self.tick_limit:
                self.state = "tick_limit"
                logging.debug("Tick limit %d reached", self.tick_limit)
                break
            self.step()

        if root.isEnabledFor(logging.DEBUG):
            self._log_registers()
        return self.tick, self.state

    # --- instruction handlers ---
    def _op_bad(self, instr: int) -> None:
        dp = self.dp
        pc = (dp.PC - 1) & WORD_MASK
        msg = f"Illegal/Unimplemented opcode at PC=0x{pc:04X} instr=0x{instr:04X}"
        print(msg, file=sys.stderr)
        logging.debug(msg)
        dp.running = False
        self.state = "illegal_opcode"

    def _op_add(self, instr: int) -> None:
        dp = self.dp
        dr = (instr >> 9) & 0x7
        sr1 = (instr >> 6) & 0x7
        if (instr >> 5) & 0x1:
            operand = sign_extend(instr, 5)
        else:
            operand = dp.R[instr & 0x7]
        dp.R[dr] = (dp.R[sr1] + operand) & WORD_MASK
        dp.set_cc(dr)

    def _op_and(self, instr: int) -> None:
        dp = self.dp
        dr = (instr >> 9) & 0x7
        sr1 = (instr >> 6) & 0x7
        if (instr >> 5) & 0x1:
            operand = sign_extend(instr, 5)
        else:
            operand = dp.R[instr & 0x7]
        dp.R[dr] = dp.R[sr1] & operand
        dp.set_cc(dr)

    def _op_not(self, instr: int) -> None:
        dp = self.dp
        dr = (instr >> 9) & 0x7
        sr = (instr >> 6) & 0x7
        dp.R[dr] = ~dp.R[sr] & WORD_MASK
        dp.set_cc(dr)

    def _op_br(self, instr: int) -> None:
        dp = self.dp
        cond = (instr >> 9) & 0x7
        if cond & dp.COND:
            dp.PC = (dp.PC + sign_extend(instr, 9)) & WORD_MASK

    def _op_jmp(self, instr: int) -> None:
        dp = self.dp
        dp.PC = dp.R[(instr >> 6) & 0x7]

    def _op_jsr(self, instr: int) -> None:
        dp = self.dp
        dp.R[7] = dp.PC
        if (instr >> 11) & 0x1:
            dp.PC = (dp.PC + sign_extend(instr, 11)) & WORD_MASK  # JSR
        else:
            dp.PC = dp.R[(instr >> 6) & 0x7]  # JSRR

    def _pc_relative(self, instr: int) -> int:
        return (self.dp.PC + sign_extend(instr, 9)) & WORD_MASK

    def _base_offset(self, instr: int) -> int:
        return (self.dp.R[(instr >> 6) & 0x7] + sign_extend(instr, 6)) & WORD_MASK

    def _op_ld(self, instr: int) -> None:
        dp = self.dp
        dr = (instr >> 9) & 0x7
        dp.R[dr] = dp.mem_read(self._pc_relative(instr))
        dp.set_cc(dr)

    def _op_ldi(self, instr: int) -> None:
        dp = self.dp
        dr = (instr >> 9) & 0x7
        dp.R[dr] = dp.mem_read(dp.mem_read(self._pc_relative(instr)))
        dp.set_cc(dr)

    def _op_ldr(self, instr: int) -> None:
        dp = self.dp
        dr = (instr >> 9) & 0x7
        dp.R[dr] = dp.mem_read(self._base_offset(instr))
        dp.set_cc(dr)

    def _op_lea(self, instr: int) -> None:
        dp = self.dp
        dr = (instr >> 9) & 0x7
        dp.R[dr] = self._pc_relative(instr)
        dp.set_cc(dr)

    def _op_st(self, instr: int) -> None:
        dp = self.dp
        dp.mem_write(self._pc_relative(instr), dp.R[(instr >> 9) & 0x7])

    def _op_sti(self, instr: int) -> None:
        dp = self.dp
        dp.mem_write(dp.mem_read(self._pc_relative(instr)), dp.R[(instr >> 9) & 0x7])

    def _op_str(self, instr: int) -> None:
        dp = self.dp
        dp.mem_write(self._base_offset(instr), dp.R[(instr >> 9) & 0x7])

    def _op_trap(self, instr: int) -> None:
        dp = self.dp
        dp.R[7] = dp.PC
        vector = instr & 0xFF
        routine = self.traps.get(vector)
        if routine is None:
            err = f"Illegal trap vector x{vector:02X} at PC=0x{(dp.PC - 1) & WORD_MASK:04X}"
            logging.debug(err)
            raise IllegalTrapError(err)
        routine()

    # --- trap routines ---
    def _trap_getc(self) -> None:
        dp = self.dp
        ch = dp.console.read_char()
        if ch is None:
            return
        dp.R[0] = ch & WORD_MASK
        dp.set_cc(0)

    def _trap_out(self) -> None:
        dp = self.dp
        dp.console.write_bytes(bytes([dp.R[0] & 0xFF]))
        dp.console.flush()

    def _string_words(self) -> list[int]:
        """Words from memory[R0] up to (not including) the zero terminator."""
        dp = self.dp
        words: list[int] = []
        addr = dp.R[0]
        for _ in range(MEM_CELLS):
            word = dp.memory[addr]
            if not word:
                break
            words.append(word)
            addr = (addr + 1) & WORD_MASK
        return words

    def _trap_puts(self) -> None:
        dp = self.dp
        dp.console.write_bytes(bytes(word & 0xFF for word in self._string_words()))
        dp.console.flush()

    def _trap_in(self) -> None:
        dp = self.dp
        dp.console.write(self.in_prompt)
        dp.console.flush()
        ch = dp.console.read_char()
        if ch is None:
            return
        if ch != EOF:
            dp.console.write_bytes(bytes([ch & 0xFF]))
        dp.console.flush()
        dp.R[0] = ch & WORD_MASK
        dp.set_cc(0)

    def _trap_putsp(self) -> None:
        dp = self.dp
        out = bytearray()
        for word in self._string_words():
            out.append(word & 0xFF)
            high = word >> 8
            if high:
                out.append(high)
        dp.console.write_bytes(bytes(out))
        dp.console.flush()

    def _trap_halt(self) -> None:
        dp = self.dp
        if self.halt_message:
            dp.console.write(self.halt_message + "\n")
        dp.console.flush()
        dp.running = False
        self.state = "halted"
        logging.debug("HALT encountered")


# ---------- Public API ----------
def make_machine(
    config: dict[str, Any] | None,
    console: BaseConsole,
    trace: bool = False,
    cancel: threading.Event | None = None,
) -> ControlUnit:
    """Build a Datapath + ControlUnit pair from a (raw or loaded) config."""
    cfg = load_config(config)
    dp = Datapath(console, pc_start=cfg["pc_start"], kbsr=cfg["kbsr"], kbdr=cfg["kbdr"])
    return ControlUnit(
        dp,
        trace=trace,
        cancel=cancel,
        tick_limit=cfg["tick_limit"],
        halt_message=cfg["halt_message"],
        in_prompt=cfg["in_prompt"],
        lenient_log=cfg["lenient_log"],
    )


def run_bytes(
    images: list[bytes],
    config: dict[str, Any] | None,
    console: BaseConsole,
    trace: bool = False,
) -> tuple[int, str, Datapath]:
    """Load image blobs in order, run the VM and return (ticks, state, datapath)."""
    cu = make_machine(config, console, trace=trace)
    for blob in images:
        read_image_bytes(cu.dp, blob)
    ticks, state = cu.run()
    return ticks, state, cu.dp


# ---------- CLI ----------
def main(argv: list[str] | None = None, console: BaseConsole | None = None) -> int:
    """Command line entry point. Returns the process exit status."""
    ap = argparse.ArgumentParser(
        prog="lc3-vm",
        description="LC-3 VM runner. Loads one or more image files (later images overlay "
        "earlier ones) and executes from pc_start until HALT.",
    )
    ap.add_argument("images", nargs="+", help="image file(s): big-endian words, origin first")
    ap.add_argument(
        "--trace",
        action="store_true",
        help="print PC, instruction and opcode (hex) for every executed instruction",
    )
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--debug", action="store_true", help="enable debug logging to logfile (per-step state).")
    ap.add_argument("--logfile", default=LOGFILE, help="path to processor log")
    ap.add_argument("--console", action="store_true", help="also echo logs to stderr (only when --debug)")
    args = ap.parse_args(argv)

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e, file=sys.stderr)
        return EXIT_USAGE

    cancel = threading.Event()
    if console is None:
        console = TerminalConsole(cancel=cancel)
    cu = make_machine(cfg, console, trace=args.trace, cancel=cancel)

    for path in args.images:
        try:
            read_image(cu.dp, path)
        except ImageError as e:
            print(e)
            logging.debug("CLI: %s", e)
            return EXIT_LOAD_FAILED

    def _on_sigint(signum: int, frame: Any) -> None:
        cancel.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        with console.raw_mode():
            ticks, state = cu.run()
    except IllegalTrapError as e:
        print(e, file=sys.stderr)
        return EXIT_ILLEGAL_TRAP
    finally:
        signal.signal(signal.SIGINT, previous)

    logging.debug("CLI: finished after %d tick(s), state=%s", ticks, state)
    if state == "cancelled":
        console.write("\n")
        console.flush()
        return EXIT_CANCELLED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
