"""Tests for the command line runner."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from console import ScriptedConsole
from image import write_image
from processor import EXIT_CANCELLED, EXIT_ILLEGAL_TRAP, EXIT_LOAD_FAILED, EXIT_OK, EXIT_USAGE, main

ADD_TEN_AND_HALT = [0x5020, 0x102A, 0xF025]


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    root = logging.getLogger()
    for h in list(root.handlers):
        if isinstance(h, logging.FileHandler):
            h.close()
            root.removeHandler(h)
    root.setLevel(logging.WARNING)


@pytest.fixture
def prog(tmp_path: Path) -> Path:
    p = tmp_path / "prog.obj"
    write_image(p, 0x3000, ADD_TEN_AND_HALT)
    return p


def _argv(tmp_path: Path, *args: Any) -> list[str]:
    return [*map(str, args), "--logfile", str(tmp_path / "processor.log")]


def test_missing_arguments_exit_2(capsys: Any) -> None:
    with pytest.raises(SystemExit) as exc:
        main([], console=ScriptedConsole())
    assert exc.value.code == EXIT_USAGE
    assert "images" in capsys.readouterr().err


def test_clean_halt(tmp_path: Path, prog: Path) -> None:
    console = ScriptedConsole()
    assert main(_argv(tmp_path, prog), console=console) == EXIT_OK
    assert console.getvalue() == "HALT\n"
    assert console.restore_count == 1


def test_trace_flag(tmp_path: Path, prog: Path) -> None:
    console = ScriptedConsole()
    assert main(_argv(tmp_path, prog, "--trace"), console=console) == EXIT_OK
    lines = console.getvalue().splitlines()
    assert lines[0] == "PC: 0x3000 Instr: 0x5020 Op: 0x5"
    assert lines[2] == "PC: 0x3002 Instr: 0xF025 Op: 0xF"
    assert lines[3] == "HALT"


def test_unreadable_image_exit_1(tmp_path: Path, capsys: Any) -> None:
    console = ScriptedConsole()
    missing = tmp_path / "missing.obj"
    assert main(_argv(tmp_path, missing), console=console) == EXIT_LOAD_FAILED
    assert f"failed to load image: {missing}" in capsys.readouterr().out
    assert console.restore_count == 0
    assert console.getvalue() == ""


def test_later_images_overlay_earlier_ones(tmp_path: Path, prog: Path) -> None:
    patch = tmp_path / "patch.obj"
    write_image(patch, 0x3001, [0x1025, 0xF021])  # ADD R0,R0,#5 / OUT
    extra = tmp_path / "extra.obj"
    write_image(extra, 0x3003, [0xF025])
    console = ScriptedConsole()
    assert main(_argv(tmp_path, prog, patch, extra), console=console) == EXIT_OK
    assert console.getvalue() == "\x05HALT\n"


def test_bad_config_exit_2(tmp_path: Path, prog: Path, capsys: Any) -> None:
    cfg = tmp_path / "vm.yaml"
    cfg.write_text("kbsr: 0x1FFFF\n", encoding="utf-8")
    assert main(_argv(tmp_path, prog, "--config", cfg), console=ScriptedConsole()) == EXIT_USAGE
    assert "Bad config" in capsys.readouterr().err


def test_config_file_changes_start_address(tmp_path: Path) -> None:
    p = tmp_path / "low.obj"
    write_image(p, 0x0200, ADD_TEN_AND_HALT)
    cfg = tmp_path / "vm.yaml"
    cfg.write_text("pc_start: 0x0200\nhalt_message: Done\n", encoding="utf-8")
    console = ScriptedConsole()
    assert main(_argv(tmp_path, p, "--config", cfg), console=console) == EXIT_OK
    assert console.getvalue() == "Done\n"


def test_illegal_opcode_exits_cleanly(tmp_path: Path, capsys: Any) -> None:
    p = tmp_path / "rti.obj"
    write_image(p, 0x3000, [0x8000])
    console = ScriptedConsole()
    assert main(_argv(tmp_path, p), console=console) == EXIT_OK
    assert "PC=0x3000 instr=0x8000" in capsys.readouterr().err
    assert console.restore_count == 1


def test_illegal_trap_aborts_after_restoring_console(tmp_path: Path, capsys: Any) -> None:
    p = tmp_path / "trap.obj"
    write_image(p, 0x3000, [0xF0FF])
    console = ScriptedConsole()
    assert main(_argv(tmp_path, p), console=console) == EXIT_ILLEGAL_TRAP
    assert "Illegal trap vector xFF" in capsys.readouterr().err
    assert console.restore_count == 1


class _InterruptingConsole(ScriptedConsole):
    """Delivers SIGINT while the program waits in GETC."""

    def read_char(self) -> int | None:
        signal.raise_signal(signal.SIGINT)
        return None


def test_sigint_cancels_and_restores(tmp_path: Path) -> None:
    p = tmp_path / "getc.obj"
    write_image(p, 0x3000, [0xF020, 0xF025])
    console = _InterruptingConsole()
    before = signal.getsignal(signal.SIGINT)
    assert main(_argv(tmp_path, p), console=console) == EXIT_CANCELLED
    assert console.restore_count == 1
    assert console.getvalue() == "\n"
    assert signal.getsignal(signal.SIGINT) is before


def test_debug_logfile(tmp_path: Path, prog: Path) -> None:
    log = tmp_path / "processor.log"
    assert main([str(prog), "--debug", "--logfile", str(log)], console=ScriptedConsole()) == EXIT_OK
    for h in logging.getLogger().handlers:
        h.flush()
    text = log.read_text(encoding="utf-8")
    assert "ADD R0, R0, #10" in text
    assert "HALT encountered" in text
    assert "R0 = x000A (10)" in text
