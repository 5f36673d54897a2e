"""ISA: machine constants, instruction encodings and helpers."""

from __future__ import annotations

from enum import IntEnum
from typing import NamedTuple

MEMORY_SIZE = 0x1000
LOAD_OFFSET = 0x200
ROM_MAX_SIZE = MEMORY_SIZE - LOAD_OFFSET

NUM_REGS = 16
FLAG_REG = 0xF
STACK_SIZE = 16

FB_WIDTH = 64
FB_HEIGHT = 32
FB_SIZE = FB_WIDTH * FB_HEIGHT
PIXEL_ON = 0xFF
PIXEL_OFF = 0x00

DELAY_TICK_MS = 16

# Every instruction is one big-endian 16-bit word.
INSTR_SIZE = 2


class OpFamily(IntEnum):
    """Top nibble of an instruction."""

    SYS = 0x0  # CLS / RET
    JP = 0x1
    CALL = 0x2
    SE_IMM = 0x3
    SNE_IMM = 0x4
    SE_REG = 0x5
    LD_IMM = 0x6
    ADD_IMM = 0x7
    ALU = 0x8  # 8xyN group
    SNE_REG = 0x9
    LD_I = 0xA
    JP_V0 = 0xB
    RND = 0xC
    DRW = 0xD
    SKP = 0xE
    MISC = 0xF  # Fx07 / Fx15


class AluOp(IntEnum):
    """Sub-opcode (low nibble) of the 8xyN group."""

    LD = 0x0
    OR = 0x1
    AND = 0x2
    XOR = 0x3
    ADD = 0x4
    SUB = 0x5
    SHR = 0x6
    SUBN = 0x7
    SHL = 0xE


CLS_WORD = 0x00E0
RET_WORD = 0x00EE
MISC_LD_VX_DT = 0x07
MISC_LD_DT_VX = 0x15


class Instruction(NamedTuple):
    """Decoded instruction fields."""

    raw: int
    family: OpFamily
    x: int
    y: int
    n: int
    kk: int
    nnn: int


def decode(word: int) -> Instruction:
    """Split a 16-bit word into its addressing fields."""
    word &= 0xFFFF
    return Instruction(
        raw=word,
        family=OpFamily((word & 0xF000) >> 12),
        x=(word & 0x0F00) >> 8,
        y=(word & 0x00F0) >> 4,
        n=word & 0x000F,
        kk=word & 0x00FF,
        nnn=word & 0x0FFF,
    )


def decode_instr(blob: bytes, offset: int) -> Instruction:
    """Decode instruction from bytes at offset.

    Raises EOFError if not enough bytes.
    """
    b = blob[offset : offset + INSTR_SIZE]
    if len(b) < INSTR_SIZE:
        err = "End of program"
        raise EOFError(err)
    return decode((b[0] << 8) | b[1])


def encode_instr(
    family: OpFamily,
    x: int = 0,
    y: int = 0,
    n: int = 0,
    kk: int | None = None,
    nnn: int | None = None,
) -> bytes:
    """Encode instruction fields into 2 big-endian bytes.

    `nnn` wins over `kk`, which wins over the x/y/n nibbles.
    """
    word = (int(family) & 0xF) << 12
    if nnn is not None:
        word |= nnn & 0x0FFF
    elif kk is not None:
        word |= ((x & 0xF) << 8) | (kk & 0xFF)
    else:
        word |= ((x & 0xF) << 8) | ((y & 0xF) << 4) | (n & 0xF)
    return word.to_bytes(INSTR_SIZE, "big")


def _alu_mnemonic(ins: Instruction) -> str | None:
    try:
        op = AluOp(ins.n)
    except ValueError:
        return None
    if op == AluOp.SHR or op == AluOp.SHL:
        return f"{op.name} V{ins.x:X}"
    return f"{op.name} V{ins.x:X}, V{ins.y:X}"


def mnemonic(ins: Instruction) -> str:
    """Get operation mnemonic. Unsupported words render as `DW 0xNNNN`."""
    fam = ins.family
    text: str | None = None
    if ins.raw == CLS_WORD:
        text = "CLS"
    elif ins.raw == RET_WORD:
        text = "RET"
    elif fam == OpFamily.JP:
        text = f"JP 0x{ins.nnn:03X}"
    elif fam == OpFamily.CALL:
        text = f"CALL 0x{ins.nnn:03X}"
    elif fam == OpFamily.SE_IMM:
        text = f"SE V{ins.x:X}, 0x{ins.kk:02X}"
    elif fam == OpFamily.SNE_IMM:
        text = f"SNE V{ins.x:X}, 0x{ins.kk:02X}"
    elif fam == OpFamily.LD_IMM:
        text = f"LD V{ins.x:X}, 0x{ins.kk:02X}"
    elif fam == OpFamily.ADD_IMM:
        text = f"ADD V{ins.x:X}, 0x{ins.kk:02X}"
    elif fam == OpFamily.ALU:
        text = _alu_mnemonic(ins)
    elif fam == OpFamily.LD_I:
        text = f"LD I, 0x{ins.nnn:03X}"
    elif fam == OpFamily.RND:
        text = f"RND V{ins.x:X}, 0x{ins.kk:02X}"
    elif fam == OpFamily.DRW:
        text = f"DRW V{ins.x:X}, V{ins.y:X}, {ins.n}"
    elif fam == OpFamily.MISC and ins.kk == MISC_LD_VX_DT:
        text = f"LD V{ins.x:X}, DT"
    elif fam == OpFamily.MISC and ins.kk == MISC_LD_DT_VX:
        text = f"LD DT, V{ins.x:X}"
    if text is None:
        text = f"DW 0x{ins.raw:04X}"
    return text


def disassemble(code_bytes: bytes, base: int = LOAD_OFFSET) -> str:
    """Render a listing, one `ADDR - HEX - MNEMONIC` line per word.

    A trailing odd byte is dumped as hex.
    """
    lines: list[str] = []
    pc = 0
    code_len = len(code_bytes)
    while pc < code_len:
        try:
            ins = decode_instr(code_bytes, pc)
        except EOFError:
            rest = code_bytes[pc:].hex().upper()
            lines.append(f"0x{base + pc:03X} - {rest} - <incomplete>")
            break
        hexbytes = code_bytes[pc : pc + INSTR_SIZE].hex().upper()
        lines.append(f"0x{base + pc:03X} - {hexbytes} - {mnemonic(ins)}")
        pc += INSTR_SIZE
    return "\n".join(lines)
