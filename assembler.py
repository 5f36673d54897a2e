"""Module: assemble mnemonic source into a program image.

This module contains:
- tokenize(line) -> list of tokens
- parse(source) -> list of Statement records
- Assembler class that resolves labels and emits the image bytes
- assemble(source) convenience wrapper

Labels resolve to absolute addresses, counting from LOAD_OFFSET.
"""

from __future__ import annotations

import re
from typing import Callable, NamedTuple

from isa import (
    CLS_WORD,
    INSTR_SIZE,
    LOAD_OFFSET,
    MISC_LD_DT_VX,
    MISC_LD_VX_DT,
    RET_WORD,
    ROM_MAX_SIZE,
    AluOp,
    OpFamily,
    encode_instr,
)

TOKEN_RE = re.compile(
    r"""
    \s*                 # skip leading whitespace
    (;.*|               # comment until end-of-line
     ,|                 # operand separator
     [^\s,;]+)          # anything else: label, mnemonic, operand
    """,
    re.VERBOSE,
)
LABEL_RE = re.compile(r"^[A-Za-z_.][A-Za-z0-9_.]*:$")
REG_RE = re.compile(r"^[Vv]([0-9A-Fa-f])$")


class AsmError(SyntaxError):
    """Raised for malformed source; carries the 1-based source line."""

    def __init__(self, msg: str, line_no: int) -> None:
        super().__init__(f"line {line_no}: {msg}")
        self.line_no = line_no


class Statement(NamedTuple):
    line_no: int
    label: str | None
    op: str | None
    operands: list[str]


def tokenize(line: str) -> list[str]:
    """Split one source line into tokens (comments and commas dropped)."""
    tokens: list[str] = []
    for m in TOKEN_RE.finditer(line):
        tok = m.group(1)
        if tok is None or tok == "," or tok.startswith(";"):
            continue
        tokens.append(tok)
    return tokens


def parse(source: str) -> list[Statement]:
    """Parse source text into statements. Blank/comment-only lines are skipped."""
    stmts: list[Statement] = []
    for line_no, line in enumerate(source.splitlines(), start=1):
        toks = tokenize(line)
        if not toks:
            continue
        label = None
        if LABEL_RE.match(toks[0]):
            label = toks[0][:-1]
            toks = toks[1:]
        op = toks[0].upper() if toks else None
        stmts.append(Statement(line_no, label, op, toks[1:]))
    return stmts


def parse_number(tok: str) -> int:
    """Parse decimal, 0x/$ hex or 0b binary literals. Raises ValueError."""
    if tok.startswith("$"):
        return int(tok[1:], 16)
    try:
        return int(tok, 0)
    except ValueError:
        # int(..., 0) rejects leading zeros such as "010"
        return int(tok, 10)


class Assembler:
    """Two-pass assembler: collect label addresses, then emit bytes."""

    def __init__(self, stmts: list[Statement]):
        """Create an Assembler for already parsed statements."""
        self.stmts = stmts
        self.labels: dict[str, int] = {}
        self.code = bytearray()
        self._emitters: dict[str, Callable[[Statement], bytes]] = {
            "CLS": self._emit_fixed(CLS_WORD),
            "RET": self._emit_fixed(RET_WORD),
            "JP": self._emit_addr(OpFamily.JP),
            "CALL": self._emit_addr(OpFamily.CALL),
            "SE": self._emit_reg_imm(OpFamily.SE_IMM),
            "SNE": self._emit_reg_imm(OpFamily.SNE_IMM),
            "RND": self._emit_reg_imm(OpFamily.RND),
            "LD": self._emit_ld,
            "ADD": self._emit_add,
            "OR": self._emit_alu(AluOp.OR),
            "AND": self._emit_alu(AluOp.AND),
            "XOR": self._emit_alu(AluOp.XOR),
            "SUB": self._emit_alu(AluOp.SUB),
            "SUBN": self._emit_alu(AluOp.SUBN),
            "SHR": self._emit_shift(AluOp.SHR),
            "SHL": self._emit_shift(AluOp.SHL),
            "DRW": self._emit_drw,
            "DB": self._emit_db,
            "DW": self._emit_dw,
        }

    # --- operand helpers ---
    def _reg(self, st: Statement, tok: str) -> int:
        m = REG_RE.match(tok)
        if not m:
            raise AsmError(f"expected register V0..VF, got {tok!r}", st.line_no)
        return int(m.group(1), 16)

    def _value(self, st: Statement, tok: str, limit: int) -> int:
        if tok in self.labels:
            v = self.labels[tok]
        else:
            try:
                v = parse_number(tok)
            except ValueError as e:
                raise AsmError(f"bad number or unknown label {tok!r}", st.line_no) from e
        if not 0 <= v <= limit:
            raise AsmError(f"value {tok!r} out of range 0..{limit:#x}", st.line_no)
        return v

    def _arity(self, st: Statement, *counts: int) -> None:
        if len(st.operands) not in counts:
            want = " or ".join(str(c) for c in counts)
            raise AsmError(f"{st.op} expects {want} operand(s), got {len(st.operands)}", st.line_no)

    def _is_reg(self, tok: str) -> bool:
        return REG_RE.match(tok) is not None

    # --- emitters ---
    def _emit_fixed(self, word: int) -> Callable[[Statement], bytes]:
        def emit(st: Statement) -> bytes:
            self._arity(st, 0)
            return word.to_bytes(INSTR_SIZE, "big")

        return emit

    def _emit_addr(self, family: OpFamily) -> Callable[[Statement], bytes]:
        def emit(st: Statement) -> bytes:
            self._arity(st, 1)
            return encode_instr(family, nnn=self._value(st, st.operands[0], 0xFFF))

        return emit

    def _emit_reg_imm(self, family: OpFamily) -> Callable[[Statement], bytes]:
        def emit(st: Statement) -> bytes:
            self._arity(st, 2)
            x = self._reg(st, st.operands[0])
            return encode_instr(family, x=x, kk=self._value(st, st.operands[1], 0xFF))

        return emit

    def _emit_alu(self, op: AluOp) -> Callable[[Statement], bytes]:
        def emit(st: Statement) -> bytes:
            self._arity(st, 2)
            x = self._reg(st, st.operands[0])
            y = self._reg(st, st.operands[1])
            return encode_instr(OpFamily.ALU, x=x, y=y, n=int(op))

        return emit

    def _emit_shift(self, op: AluOp) -> Callable[[Statement], bytes]:
        def emit(st: Statement) -> bytes:
            self._arity(st, 1, 2)
            x = self._reg(st, st.operands[0])
            y = self._reg(st, st.operands[1]) if len(st.operands) == 2 else 0
            return encode_instr(OpFamily.ALU, x=x, y=y, n=int(op))

        return emit

    def _emit_ld(self, st: Statement) -> bytes:
        self._arity(st, 2)
        dst, src = st.operands
        if dst.upper() == "I":
            return encode_instr(OpFamily.LD_I, nnn=self._value(st, src, 0xFFF))
        if dst.upper() == "DT":
            return encode_instr(OpFamily.MISC, x=self._reg(st, src), kk=MISC_LD_DT_VX)
        x = self._reg(st, dst)
        if src.upper() == "DT":
            return encode_instr(OpFamily.MISC, x=x, kk=MISC_LD_VX_DT)
        if self._is_reg(src):
            return encode_instr(OpFamily.ALU, x=x, y=self._reg(st, src), n=int(AluOp.LD))
        return encode_instr(OpFamily.LD_IMM, x=x, kk=self._value(st, src, 0xFF))

    def _emit_add(self, st: Statement) -> bytes:
        self._arity(st, 2)
        x = self._reg(st, st.operands[0])
        src = st.operands[1]
        if self._is_reg(src):
            return encode_instr(OpFamily.ALU, x=x, y=self._reg(st, src), n=int(AluOp.ADD))
        return encode_instr(OpFamily.ADD_IMM, x=x, kk=self._value(st, src, 0xFF))

    def _emit_drw(self, st: Statement) -> bytes:
        self._arity(st, 3)
        x = self._reg(st, st.operands[0])
        y = self._reg(st, st.operands[1])
        n = self._value(st, st.operands[2], 0xF)
        return encode_instr(OpFamily.DRW, x=x, y=y, n=n)

    def _emit_db(self, st: Statement) -> bytes:
        if not st.operands:
            raise AsmError("DB expects at least one byte", st.line_no)
        return bytes(self._value(st, tok, 0xFF) for tok in st.operands)

    def _emit_dw(self, st: Statement) -> bytes:
        if not st.operands:
            raise AsmError("DW expects at least one word", st.line_no)
        out = bytearray()
        for tok in st.operands:
            out += self._value(st, tok, 0xFFFF).to_bytes(2, "big")
        return bytes(out)

    # --- passes ---
    def _size_of(self, st: Statement) -> int:
        if st.op is None:
            return 0
        if st.op == "DB":
            return len(st.operands)
        if st.op == "DW":
            return 2 * len(st.operands)
        return INSTR_SIZE

    def _collect_labels(self) -> None:
        addr = LOAD_OFFSET
        for st in self.stmts:
            if st.label is not None:
                if st.label in self.labels:
                    raise AsmError(f"duplicate label {st.label!r}", st.line_no)
                self.labels[st.label] = addr
            addr += self._size_of(st)

    def assemble(self) -> bytes:
        """Run both passes and return the program image."""
        self._collect_labels()
        for st in self.stmts:
            if st.op is None:
                continue
            emitter = self._emitters.get(st.op)
            if emitter is None:
                raise AsmError(f"unknown mnemonic {st.op!r}", st.line_no)
            self.code += emitter(st)
        if len(self.code) > ROM_MAX_SIZE:
            err = f"program is {len(self.code)} bytes, max is {ROM_MAX_SIZE}"
            raise AsmError(err, self.stmts[-1].line_no)
        return bytes(self.code)


def assemble(source: str) -> bytes:
    """Assemble source text into a program image."""
    return Assembler(parse(source)).assemble()
