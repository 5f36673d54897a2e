"""Golden-test runner for the asm -> VM pipeline.

This test loads golden YAML records, assembles the source, runs the machine
with a frozen clock and compares the final machine state (registers, stack,
memory, framebuffer, log) against the expectations in the golden files.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import pytest
import yaml

import processor
from assembler import assemble
from isa import disassemble
from processor import MachineFault


def _frozen_clock() -> int:
    return 0


GOLDEN_DIR = Path(__file__).resolve().parent.parent / "golden"


def _raw_code_lines(text: str) -> list[str]:
    """Lines of the `code:` block as written in the file, minus block indent."""
    lines = text.splitlines()
    start = next(i for i, ln in enumerate(lines) if ln.strip().startswith("code:")) + 1
    out: list[str] = []
    for ln in lines[start:]:
        if ln.strip() and not ln.startswith("    "):
            break
        out.append(ln[4:])
    return out


def test_golden_files_parse_and_assemble() -> None:
    """Every golden record is valid YAML and keeps its whole asm block."""
    files = sorted(GOLDEN_DIR.glob("*.yaml"))
    assert files
    for p in files:
        text = p.read_text(encoding="utf-8")
        data = yaml.safe_load(text)
        assert isinstance(data, dict), p.name
        code = data["source"]["code"]
        assert code.rstrip().splitlines() == "\n".join(_raw_code_lines(text)).rstrip().splitlines(), p.name
        assert assemble(code), p.name


@pytest.mark.golden_test("golden/*.yaml")
def test_assembler_and_vm(golden: Any) -> None:  # noqa: C901
    """Run one golden record: assemble, run and compare outputs."""
    assert "__yaml_load_error__" not in golden, golden.get("__yaml_load_error__")

    src_spec = golden.get("source")
    assert src_spec, "golden record has no source"
    lang = src_spec.get("language", "asm")
    assert lang == "asm", f"unsupported source language in golden: {lang}"

    code_bytes = assemble(src_spec.get("code", ""))
    cfg = golden.get("config") or {}
    expect = golden.get("expect") or golden.get("out") or {}

    # helper to produce long mismatch messages
    def _mismatch(msg_title: str, got_text: str, expected_text: str) -> str:
        return f"{msg_title}\n--- got ---\n{got_text}\n--- expected ---\n{expected_text}"

    # 1) code bytes / listing
    if "out_code" in expect:
        expected_code = expect["out_code"]
        assert isinstance(expected_code, (bytes, bytearray)), "golden.out_code must be binary"
        assert bytes(expected_code) == code_bytes, "machine code bytes mismatch"

    if "out_code_hex" in expect:
        exp_code_hex = expect["out_code_hex"].strip()
        got = disassemble(code_bytes).strip()
        if got != exp_code_hex:
            raise AssertionError(_mismatch("code hex mismatch", got, exp_code_hex))

    with tempfile.TemporaryDirectory() as tmp:
        proc_log_path = os.path.join(tmp, "processor.log")
        processor.init_logging(logfile=proc_log_path, debug=True, console=False)

        dp = processor.Datapath(
            delay_tick_ms=cfg.get("delay_tick_ms", 16),
            tick_limit=cfg.get("tick_limit", 100000),
            pause_tick=cfg.get("pause_tick"),
            lenient_log=cfg.get("lenient_log", False),
            clock=_frozen_clock,
        )
        dp.load_program(code_bytes)
        cu = processor.ControlUnit(dp)

        fault: str | None = None
        ticks: int = 0
        state: str = "faulted"
        try:
            ticks, state = cu.run()
        except MachineFault as e:
            fault = type(e).__name__
            ticks = dp.tick
            logging.error("fault: %s", e)

        root = logging.getLogger()
        for h in list(root.handlers):
            h.flush()
            h.close()
            root.removeHandler(h)

        proc_log_text = Path(proc_log_path).read_text(encoding="utf-8")

    # 2) fault
    assert fault == expect.get("fault"), f"fault mismatch: got {fault} expected {expect.get('fault')}"

    # 3) ticks/state
    if "ticks" in expect:
        exp_ticks = int(expect["ticks"])
        assert ticks == exp_ticks, f"ticks mismatch: got {ticks} expected {exp_ticks}"
    if "state" in expect:
        assert state == expect["state"], f"state mismatch: got {state} expected {expect['state']}"

    # 4) registers
    if "pc" in expect:
        assert dp.PC == int(expect["pc"]), f"PC mismatch: got {dp.PC:#05x} expected {int(expect['pc']):#05x}"
    if "index" in expect:
        assert dp.I == int(expect["index"]), f"I mismatch: got {dp.I:#05x}"
    if "delay_timer" in expect:
        assert dp.DT == int(expect["delay_timer"]), f"DT mismatch: got {dp.DT}"
    for name, value in (expect.get("registers") or {}).items():
        reg = int(str(name)[1:], 16)
        assert dp.V[reg] == int(value), f"{name} mismatch: got {dp.V[reg]:#04x} expected {int(value):#04x}"
    if "stack" in expect:
        assert dp.stack == [int(a) for a in expect["stack"]], f"stack mismatch: got {dp.stack}"
    if "stack_depth" in expect:
        assert len(dp.stack) == int(expect["stack_depth"]), f"stack depth mismatch: got {len(dp.stack)}"

    # 5) memory
    for k, v in (expect.get("memory") or {}).items():
        addr = int(k)
        assert dp.memory[addr] == int(v), f"memory[{addr:#05x}] mismatch: got {dp.memory[addr]:#04x}"

    # 6) framebuffer
    if "lit_pixels" in expect:
        exp_px = [tuple(p) for p in expect["lit_pixels"]]
        got_px = dp.lit_pixels()
        if got_px != exp_px:
            raise AssertionError(_mismatch("framebuffer mismatch", str(got_px), str(exp_px)))

    # 7) processor log
    for needle in expect.get("log_contains") or []:
        if needle not in proc_log_text:
            raise AssertionError(_mismatch("processor.log mismatch", proc_log_text[:4000], needle))
    for needle in expect.get("log_excludes") or []:
        assert needle not in proc_log_text, f"unexpected log text: {needle}"
