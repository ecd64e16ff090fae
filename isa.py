"""ISA: LC-3 instruction encodings and helpers."""

from enum import IntEnum, IntFlag

MEM_CELLS = 1 << 16
WORD_MASK = 0xFFFF


class OpCode(IntEnum):
    """Keeps opcodes from all operations (bits 15..12 of a word)."""

    BR = 0b0000  # branch
    ADD = 0b0001  # add
    LD = 0b0010  # load
    ST = 0b0011  # store
    JSR = 0b0100  # jump register / subroutine
    AND = 0b0101  # bitwise and
    LDR = 0b0110  # load base + offset
    STR = 0b0111  # store base + offset
    RTI = 0b1000  # unused
    NOT = 0b1001  # bitwise not
    LDI = 0b1010  # load indirect
    STI = 0b1011  # store indirect
    JMP = 0b1100  # jump (RET when base is R7)
    RES = 0b1101  # reserved
    LEA = 0b1110  # load effective address
    TRAP = 0b1111  # system call


class TrapVector(IntEnum):
    """Trap vectors carried in the low byte of a TRAP word."""

    GETC = 0x20  # read char, no echo
    OUT = 0x21  # write char
    PUTS = 0x22  # write word string
    IN = 0x23  # prompt, read char, echo
    PUTSP = 0x24  # write byte string
    HALT = 0x25


class CondFlag(IntFlag):
    """Condition register bits. Exactly one is set at any time."""

    POS = 1 << 0
    ZRO = 1 << 1
    NEG = 1 << 2


def sign_extend(value: int, bit_count: int) -> int:
    """Widen a `bit_count`-bit two's-complement field to 16 bits."""
    value &= (1 << bit_count) - 1
    if (value >> (bit_count - 1)) & 1:
        value |= WORD_MASK << bit_count
    return value & WORD_MASK


def byte_swap16(value: int) -> int:
    """Exchange the high and low bytes of a 16-bit word."""
    return ((value << 8) | (value >> 8)) & WORD_MASK


def opcode_of(instr: int) -> int:
    return (instr >> 12) & 0xF


def to_signed(value: int) -> int:
    """Interpret a 16-bit word as a signed integer."""
    value &= WORD_MASK
    return value - MEM_CELLS if value & 0x8000 else value


# --- disassembly ---
def _reg(instr: int, shift: int) -> str:
    return f"R{(instr >> shift) & 0x7}"


def _imm(instr: int, bits: int) -> str:
    return f"#{to_signed(sign_extend(instr, bits))}"


def mnemonic(instr: int) -> str:  # noqa: C901
    """Render one instruction word as LC-3 assembly text."""
    instr &= WORD_MASK
    op = OpCode(opcode_of(instr))

    if op in (OpCode.ADD, OpCode.AND):
        third = _imm(instr, 5) if (instr >> 5) & 1 else _reg(instr, 0)
        return f"{op.name} {_reg(instr, 9)}, {_reg(instr, 6)}, {third}"
    if op == OpCode.NOT:
        return f"NOT {_reg(instr, 9)}, {_reg(instr, 6)}"
    if op == OpCode.BR:
        cond = (instr >> 9) & 0x7
        if cond == 0:
            return "NOP"
        letters = "".join(ch for ch, bit in (("n", 4), ("z", 2), ("p", 1)) if cond & bit)
        return f"BR{letters} {_imm(instr, 9)}"
    if op == OpCode.JMP:
        base = (instr >> 6) & 0x7
        return "RET" if base == 7 else f"JMP R{base}"
    if op == OpCode.JSR:
        if (instr >> 11) & 1:
            return f"JSR {_imm(instr, 11)}"
        return f"JSRR {_reg(instr, 6)}"
    if op in (OpCode.LD, OpCode.LDI, OpCode.LEA, OpCode.ST, OpCode.STI):
        return f"{op.name} {_reg(instr, 9)}, {_imm(instr, 9)}"
    if op in (OpCode.LDR, OpCode.STR):
        return f"{op.name} {_reg(instr, 9)}, {_reg(instr, 6)}, {_imm(instr, 6)}"
    if op == OpCode.TRAP:
        vector = instr & 0xFF
        try:
            return TrapVector(vector).name
        except ValueError:
            return f"TRAP x{vector:02X}"
    if op == OpCode.RTI:
        return "RTI"
    return f"RES x{instr & 0x0FFF:03X}"


def listing(origin: int, words: list[int]) -> str:
    """Produce a listing, one `xADDR - WORD - MNEMONIC` line per word."""
    lines: list[str] = []
    for i, word in enumerate(words):
        addr = (origin + i) & WORD_MASK
        lines.append(f"x{addr:04X} - {word & WORD_MASK:04X} - {mnemonic(word)}")
    return "\n".join(lines)
