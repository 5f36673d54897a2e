"""Processor (Datapath + ControlUnit).

Datapath owns the machine state: memory, V registers, I, PC, the delay
timer, the return-address stack and the framebuffer. ControlUnit implements
the FETCH-DECODE-EXEC step on top of it and a small batch driver used for
headless runs.
"""

from __future__ import annotations

import logging
import random
import sys
import time
from typing import Any, Callable

from config import load_config
from isa import (
    CLS_WORD,
    DELAY_TICK_MS,
    FB_HEIGHT,
    FB_SIZE,
    FB_WIDTH,
    FLAG_REG,
    INSTR_SIZE,
    LOAD_OFFSET,
    MEMORY_SIZE,
    MISC_LD_DT_VX,
    MISC_LD_VX_DT,
    NUM_REGS,
    PIXEL_OFF,
    PIXEL_ON,
    RET_WORD,
    ROM_MAX_SIZE,
    STACK_SIZE,
    AluOp,
    Instruction,
    OpFamily,
    decode,
    mnemonic,
)

LOGFILE = "processor.log"


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level, otherwise WARNING so unknown-opcode and
    truncation diagnostics still reach the file. If console=True also echo
    logs to stdout.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.WARNING
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-7s %(message)s"

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if console:
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)7s %(message)s"))
        root.addHandler(ch)


class MachineFault(RuntimeError):
    """Fatal condition caused by a malformed program."""

    pass


class MemoryFault(MachineFault):
    """Raised on memory access outside the 4 KiB address space."""

    pass


class StackOverflowFault(MachineFault):
    """Raised by CALL when the return stack is full."""

    pass


class StackUnderflowFault(MachineFault):
    """Raised by RET when the return stack is empty."""

    pass


class Datapath:
    """Datapath (memory + registers + stack + framebuffer + timer) for the VM."""

    memory: bytearray
    V: bytearray
    I: int  # noqa: E741
    PC: int
    DT: int
    stack: list[int]

    tick: int
    tick_limit: int
    pause_tick: int | None
    lenient_log: bool

    clock: Callable[[], int]
    rng: random.Random
    delay_tick_ns: int
    last_tick: int

    def __init__(
        self,
        delay_tick_ms: int = DELAY_TICK_MS,
        tick_limit: int = 100000,
        pause_tick: int | None = None,
        lenient_log: bool = False,
        clock: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize a zeroed machine with PC at the load offset.

        `clock` returns monotonic nanoseconds (time.monotonic_ns by default).
        """
        self.memory = bytearray(MEMORY_SIZE)
        self.V = bytearray(NUM_REGS)
        self.I = 0
        self.PC = LOAD_OFFSET
        self.DT = 0
        self.stack = []
        self._framebuffer = bytearray(FB_SIZE)

        self.tick = 0
        self.tick_limit = int(tick_limit)
        self.pause_tick = pause_tick
        self.lenient_log = bool(lenient_log)

        self.clock = clock if clock is not None else time.monotonic_ns
        self.rng = rng if rng is not None else random.Random()
        self.delay_tick_ns = int(delay_tick_ms) * 1_000_000
        self.last_tick = self.clock()

    @property
    def framebuffer(self) -> memoryview:
        """Read-only row-major view of the 64x32 pixel cells (0x00 / 0xFF)."""
        return memoryview(self._framebuffer).toreadonly()

    def load_program(self, data: bytes) -> int:
        """Copy `data` to the load offset; oversized images are truncated.

        Returns the number of bytes copied.
        """
        data = bytes(data)
        if len(data) > ROM_MAX_SIZE:
            logging.warning("Program size %d exceeds max size %d; truncated", len(data), ROM_MAX_SIZE)
        num = min(len(data), ROM_MAX_SIZE)
        self.memory[LOAD_OFFSET : LOAD_OFFSET + num] = data[:num]
        logging.debug("Datapath: loaded %d bytes at 0x%03X", num, LOAD_OFFSET)
        return num

    # checked memory access
    def _check_addr(self, addr: int) -> None:
        if not 0 <= addr < MEMORY_SIZE:
            err = f"memory access out of range: {addr:#x}"
            raise MemoryFault(err)

    def read_byte(self, addr: int) -> int:
        """Read one byte. Raises MemoryFault outside 0..0xFFF."""
        self._check_addr(addr)
        return self.memory[addr]

    def write_byte(self, addr: int, value: int) -> None:
        """Write one byte. Raises MemoryFault outside 0..0xFFF."""
        self._check_addr(addr)
        self.memory[addr] = value & 0xFF

    def fetch(self, pc: int) -> int:
        """Read the big-endian instruction word at `pc`."""
        return (self.read_byte(pc) << 8) | self.read_byte(pc + 1)

    # --- call-stack helpers (return-address stack) ---
    def push_return(self, addr: int) -> None:
        """Push a return address. Raises StackOverflowFault when full."""
        if len(self.stack) >= STACK_SIZE:
            err = f"stack overflow at PC {self.PC:#05x} (depth {len(self.stack)})"
            raise StackOverflowFault(err)
        self.stack.append(addr & 0xFFFF)

    def pop_return(self) -> int:
        """Pop a return address. Raises StackUnderflowFault when empty."""
        if not self.stack:
            err = f"stack underflow at PC {self.PC:#05x}"
            raise StackUnderflowFault(err)
        return self.stack.pop()

    # --- framebuffer helpers ---
    def clear_framebuffer(self) -> None:
        self._framebuffer[:] = bytes([PIXEL_OFF]) * FB_SIZE

    def toggle_pixel(self, x: int, y: int) -> bool:
        """XOR the cell at (x, y), wrapping both axes.

        Returns True when an on pixel was turned off.
        """
        offset = (y % FB_HEIGHT) * FB_WIDTH + (x % FB_WIDTH)
        old = self._framebuffer[offset]
        self._framebuffer[offset] = old ^ PIXEL_ON
        return old == PIXEL_ON

    def lit_pixels(self) -> list[tuple[int, int]]:
        """Return (x, y) for every on cell, in row-major order."""
        return [(i % FB_WIDTH, i // FB_WIDTH) for i, px in enumerate(self._framebuffer) if px]

    def dump_framebuffer(self) -> str:
        rows = []
        for y in range(FB_HEIGHT):
            row = self._framebuffer[y * FB_WIDTH : (y + 1) * FB_WIDTH]
            rows.append("".join("#" if px else "." for px in row))
        return "\n".join(rows)

    # --- delay timer ---
    def tick_timer(self) -> bool:
        """Decrement DT once if it is running and a full period has elapsed."""
        if self.DT == 0:
            return False
        now = self.clock()
        if now - self.last_tick < self.delay_tick_ns:
            return False
        self.DT -= 1
        self.last_tick = now
        return True


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC step for the Datapath."""

    dp: Datapath

    def __init__(self, dp: Datapath) -> None:
        """Create a ControlUnit bound to `dp`."""
        self.dp = dp
        self._handlers: dict[OpFamily, Callable[[Instruction], int | None]] = {
            OpFamily.SYS: self._op_sys,
            OpFamily.JP: self._op_jp,
            OpFamily.CALL: self._op_call,
            OpFamily.SE_IMM: self._op_se_imm,
            OpFamily.SNE_IMM: self._op_sne_imm,
            OpFamily.SE_REG: self._op_unknown,
            OpFamily.LD_IMM: self._op_ld_imm,
            OpFamily.ADD_IMM: self._op_add_imm,
            OpFamily.ALU: self._op_alu,
            OpFamily.SNE_REG: self._op_unknown,
            OpFamily.LD_I: self._op_ld_i,
            OpFamily.JP_V0: self._op_unknown,
            OpFamily.RND: self._op_rnd,
            OpFamily.DRW: self._op_drw,
            OpFamily.SKP: self._op_unknown,
            OpFamily.MISC: self._op_misc,
        }
        missing = set(OpFamily) - set(self._handlers)
        if missing:
            err = f"no handler for opcode families: {sorted(missing)}"
            raise RuntimeError(err)

    def _warn_unknown(self, ins: Instruction) -> None:
        logging.warning("Unknown instruction 0x%04X at 0x%03X", ins.raw, self.dp.PC)

    def _log_step(self, ins: Instruction) -> None:
        # skip verbose per-step logs in lenient mode to reduce log size
        dp = self.dp
        if dp.lenient_log or not logging.getLogger().isEnabledFor(logging.DEBUG):
            return
        regs = " ".join(f"{v:02X}" for v in dp.V)
        logging.debug(
            "TICK: %5d PC: 0x%03X INSTR: %04X %-18s V: %s I: 0x%03X DT: %3d SP: %2d",
            dp.tick,
            dp.PC,
            ins.raw,
            mnemonic(ins),
            regs,
            dp.I,
            dp.DT,
            len(dp.stack),
        )

    def step(self) -> Instruction:
        """Advance the machine by exactly one instruction.

        Returns the executed instruction. MachineFault subclasses propagate
        with PC still on the faulting instruction; the delay timer has already
        been serviced for that step.
        """
        dp = self.dp
        if dp.tick_timer():
            logging.debug("[tick %d] DT -> %d", dp.tick, dp.DT)

        ins = decode(dp.fetch(dp.PC))
        self._log_step(ins)

        next_pc = self._handlers[ins.family](ins)
        if next_pc is None:
            next_pc = dp.PC + INSTR_SIZE
        dp.PC = next_pc & 0xFFFF
        dp.tick += 1
        return ins

    def run(self) -> tuple[int, str]:
        """Step the datapath until tick limit, pause tick or a jump to self."""
        dp = self.dp
        state = "stopped"
        while dp.tick < dp.tick_limit:
            if dp.pause_tick is not None and dp.tick == dp.pause_tick:
                logging.debug("[tick %d] pause reached at PC 0x%03X", dp.tick, dp.PC)
                state = "paused"
                break
            pc = dp.PC
            ins = self.step()
            if ins.family == OpFamily.JP and ins.nnn == pc:
                logging.debug("[tick %d] jump to self at 0x%03X -> halt", dp.tick, pc)
                state = "halted"
                break
        return dp.tick, state

    # --- instruction handlers: return explicit next PC or None ---
    def _op_unknown(self, ins: Instruction) -> int | None:
        self._warn_unknown(ins)
        return None

    def _op_sys(self, ins: Instruction) -> int | None:
        if ins.raw == CLS_WORD:
            self.dp.clear_framebuffer()
            return None
        if ins.raw == RET_WORD:
            return self.dp.pop_return()
        self._warn_unknown(ins)
        return None

    def _op_jp(self, ins: Instruction) -> int | None:
        return ins.nnn

    def _op_call(self, ins: Instruction) -> int | None:
        self.dp.push_return(self.dp.PC + INSTR_SIZE)
        return ins.nnn

    def _op_se_imm(self, ins: Instruction) -> int | None:
        if self.dp.V[ins.x] == ins.kk:
            return self.dp.PC + INSTR_SIZE * 2
        return None

    def _op_sne_imm(self, ins: Instruction) -> int | None:
        if self.dp.V[ins.x] != ins.kk:
            return self.dp.PC + INSTR_SIZE * 2
        return None

    def _op_ld_imm(self, ins: Instruction) -> int | None:
        self.dp.V[ins.x] = ins.kk
        return None

    def _op_add_imm(self, ins: Instruction) -> int | None:
        # no carry flag for 7xkk
        self.dp.V[ins.x] = (self.dp.V[ins.x] + ins.kk) & 0xFF
        return None

    def _op_alu(self, ins: Instruction) -> int | None:  # noqa: C901
        """8xyN group. VF is written before Vx, so Vx wins when x == F."""
        dp = self.dp
        vx = dp.V[ins.x]
        vy = dp.V[ins.y]
        op = ins.n
        flag: int | None = None

        if op == AluOp.LD:
            res = vy
        elif op == AluOp.OR:
            res = vx | vy
        elif op == AluOp.AND:
            res = vx & vy
        elif op == AluOp.XOR:
            res = vx ^ vy
        elif op == AluOp.ADD:
            total = vx + vy
            flag = 1 if total > 0xFF else 0
            res = total & 0xFF
        elif op == AluOp.SUB:
            flag = 1 if vx > vy else 0
            res = (vx - vy) & 0xFF
        elif op == AluOp.SHR:
            flag = vx & 1
            res = vx >> 1
        elif op == AluOp.SUBN:
            flag = 1 if vy > vx else 0
            res = (vy - vx) & 0xFF
        elif op == AluOp.SHL:
            flag = (vx >> 7) & 1
            res = (vx << 1) & 0xFF
        else:
            self._warn_unknown(ins)
            return None

        if flag is not None:
            dp.V[FLAG_REG] = flag
        dp.V[ins.x] = res
        return None

    def _op_ld_i(self, ins: Instruction) -> int | None:
        self.dp.I = ins.nnn
        return None

    def _op_rnd(self, ins: Instruction) -> int | None:
        self.dp.V[ins.x] = self.dp.rng.getrandbits(8) & ins.kk
        return None

    def _op_drw(self, ins: Instruction) -> int | None:
        """XOR an 8xN sprite from memory[I] at (Vx, Vy), wrapping at the edges.

        VF ends up 1 if any lit pixel was turned off by this draw.
        """
        dp = self.dp
        x0 = dp.V[ins.x]
        y0 = dp.V[ins.y]
        # read every row first so a bad I faults before anything is drawn
        rows = [dp.read_byte(dp.I + i) for i in range(ins.n)]

        dp.V[FLAG_REG] = 0
        for i, sprite in enumerate(rows):
            for j in range(7, -1, -1):
                if not (sprite >> j) & 1:
                    continue
                if dp.toggle_pixel(x0 + 7 - j, y0 + i):
                    dp.V[FLAG_REG] = 1
        return None

    def _op_misc(self, ins: Instruction) -> int | None:
        dp = self.dp
        if ins.kk == MISC_LD_VX_DT:
            dp.V[ins.x] = dp.DT
        elif ins.kk == MISC_LD_DT_VX:
            dp.DT = dp.V[ins.x]
        else:
            self._warn_unknown(ins)
        return None

    def _dump_state_to_file(self, path: str) -> None:
        dp = self.dp
        with open(path, "w", encoding="utf-8") as f:
            f.write("=== STATE DUMP ===\n")
            f.write(f"tick: {dp.tick}  PC: 0x{dp.PC:03X}  I: 0x{dp.I:03X}  DT: {dp.DT}\n")
            for r in range(NUM_REGS):
                f.write(f"V{r:X}: 0x{dp.V[r]:02X} ({dp.V[r]})\n")
            f.write("stack: " + " ".join(f"0x{a:03X}" for a in dp.stack) + "\n")
            f.write("\n=== FRAMEBUFFER ===\n")
            f.write(dp.dump_framebuffer())
            f.write("\n=== END DUMP ===\n")


# ---------- Public API ----------
def run_bytes(
    code_bytes: bytes,
    config: dict[str, Any] | str | None = None,
    clock: Callable[[], int] | None = None,
) -> tuple[Datapath, int, str]:
    """Load `code_bytes`, run until stop condition and return (datapath, ticks, state)."""
    cfg = load_config(config)

    dp = Datapath(
        delay_tick_ms=cfg["delay_tick_ms"],
        tick_limit=cfg["tick_limit"],
        pause_tick=cfg["pause_tick"],
        lenient_log=cfg["lenient_log"],
        clock=clock,
        rng=random.Random(cfg["rng_seed"]),
    )
    dp.load_program(code_bytes)
    cu = ControlUnit(dp)
    ticks, state = cu.run()

    if cfg["dump_file"]:
        try:
            cu._dump_state_to_file(cfg["dump_file"])
        except OSError as e:
            logging.warning("Failed to write state dump %s: %s", cfg["dump_file"], e)

    return dp, ticks, state
