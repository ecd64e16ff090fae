"""Golden-test runner for the LC-3 VM.

Each golden YAML record carries an image (origin first, then words), the
scripted keyboard input and the expected observable results: stdout,
ticks, final state, registers, COND, PC, memory cells and optionally the
encoded image and its disassembly listing.
"""

from __future__ import annotations

import logging
from typing import Any

import pytest
from console import ScriptedConsole
from image import encode_image, read_image_bytes
from isa import CondFlag, listing
from processor import make_machine


def _mismatch(msg_title: str, got_text: str, expected_text: str) -> str:
    return f"{msg_title}\n--- got ---\n{got_text}\n--- expected ---\n{expected_text}"


@pytest.mark.golden_test("golden/*.yaml")
def test_vm_golden(golden: Any, capsys: Any, caplog: Any) -> None:  # noqa: C901
    """Run one golden record and compare every expectation it declares."""
    caplog.set_level(logging.DEBUG)

    if "__yaml_load_error__" in golden:
        pytest.fail(f"{golden['__name__']}: {golden['__yaml_load_error__']}")

    in_image = golden.get("in_image")
    if not in_image:
        pytest.skip("No in_image provided in golden record")
    origin, words = int(in_image[0]), [int(w) for w in in_image[1:]]
    blob = encode_image(origin, words)

    console = ScriptedConsole(golden.get("in_stdin", ""), key_delay=golden.get("in_key_delay", 0))
    cu = make_machine(golden.get("config"), console, trace=bool(golden.get("trace", False)))
    read_image_bytes(cu.dp, blob)

    with console.raw_mode():
        ticks, state = cu.run()
    assert console.restore_count == 1

    out = console.getvalue()
    err = capsys.readouterr().err
    dp = cu.dp
    expect = golden.get("expect") or {}

    # 1) image bytes and listing
    if "out_image" in expect:
        assert isinstance(expect["out_image"], (bytes, bytearray)), "golden.out_image must be binary"
        assert bytes(expect["out_image"]) == blob, "image bytes mismatch"

    if "out_code_hex" in expect:
        exp_code_hex = expect["out_code_hex"].strip()
        got = listing(origin, words).strip()
        if got != exp_code_hex:
            raise AssertionError(_mismatch("code hex mismatch", got, exp_code_hex))

    # 2) stdout / stderr
    if "out_stdout" in expect:
        if out != expect["out_stdout"]:
            raise AssertionError(_mismatch("stdout mismatch", out, expect["out_stdout"]))

    if "out_stderr_contains" in expect:
        assert expect["out_stderr_contains"] in err, f"stderr mismatch: {err!r}"

    # 3) ticks/state
    if "ticks" in expect:
        assert ticks == int(expect["ticks"]), f"ticks mismatch: got {ticks} expected {expect['ticks']}"

    if "state" in expect:
        assert state == expect["state"], f"state mismatch: got {state} expected {expect['state']}"

    # 4) machine state
    for name, value in (expect.get("registers") or {}).items():
        idx = int(str(name).lstrip("Rr"))
        assert dp.R[idx] == int(value), f"{name} mismatch: got x{dp.R[idx]:04X} expected x{int(value):04X}"

    if "cond" in expect:
        got_cond = CondFlag(dp.COND).name
        assert got_cond == expect["cond"], f"COND mismatch: got {got_cond} expected {expect['cond']}"

    if "pc" in expect:
        assert dp.PC == int(expect["pc"]), f"PC mismatch: got x{dp.PC:04X} expected x{int(expect['pc']):04X}"

    for addr, value in (expect.get("memory") or {}).items():
        actual = dp.memory[int(addr)]
        assert actual == int(value), f"memory[x{int(addr):04X}] mismatch: got x{actual:04X} expected x{int(value):04X}"
