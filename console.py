"""Console drivers used by the VM for keyboard input and character output.

`TerminalConsole` talks to the real terminal: it switches stdin into
unbuffered, unechoed mode for the lifetime of a run and polls it with
select(). `ScriptedConsole` serves a fixed input string and collects the
output; tests and golden runs use it.
"""

from __future__ import annotations

import logging
import os
import select
import sys
import termios
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, BinaryIO, TextIO

# blocking reads wake up this often to look at the cancellation event
POLL_SLICE = 0.1

EOF = -1


class BaseConsole(ABC):
    """Interface shared by console drivers.

    Output is raw bytes: the VM emits the low byte of a word as-is. Text
    (prompts, halt notice, trace lines) goes through `write`, which encodes
    it as UTF-8.
    """

    def acquire_raw_mode(self) -> None:
        pass

    def restore_mode(self) -> None:
        pass

    @contextmanager
    def raw_mode(self) -> Iterator[BaseConsole]:
        """Hold raw mode for the duration of the block; always restore."""
        self.acquire_raw_mode()
        try:
            yield self
        finally:
            self.restore_mode()

    @abstractmethod
    def key_available(self) -> bool: ...

    @abstractmethod
    def read_char(self) -> int | None: ...

    @abstractmethod
    def write_bytes(self, data: bytes) -> None: ...

    def write(self, text: str) -> None:
        self.write_bytes(text.encode("utf-8"))

    def flush(self) -> None:
        pass


class TerminalConsole(BaseConsole):
    """Console backed by the process's stdin and binary stdout."""

    def __init__(
        self,
        stdin: TextIO | BinaryIO | None = None,
        stdout: BinaryIO | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.cancel = cancel
        self.fd = self.stdin.fileno()
        self._saved_attrs: list[Any] | None = None

    def acquire_raw_mode(self) -> None:
        """Clear ICANON and ECHO on stdin if it is a terminal."""
        if self._saved_attrs is not None or not os.isatty(self.fd):
            return
        self._saved_attrs = termios.tcgetattr(self.fd)
        new_attrs = termios.tcgetattr(self.fd)
        new_attrs[3] &= ~(termios.ICANON | termios.ECHO)
        termios.tcsetattr(self.fd, termios.TCSANOW, new_attrs)
        logging.debug("TerminalConsole: raw mode acquired on fd %d", self.fd)

    def restore_mode(self) -> None:
        """Put the saved terminal attributes back. Safe to call twice."""
        if self._saved_attrs is None:
            return
        attrs, self._saved_attrs = self._saved_attrs, None
        termios.tcsetattr(self.fd, termios.TCSANOW, attrs)
        logging.debug("TerminalConsole: terminal mode restored on fd %d", self.fd)

    def _ready(self, timeout: float) -> bool:
        readable, _, _ = select.select([self.fd], [], [], timeout)
        return bool(readable)

    def key_available(self) -> bool:
        return self._ready(0)

    def read_char(self) -> int | None:
        """Block until one byte arrives.

        Returns the byte value, EOF (-1) at end of input, or None when the
        cancellation event fires while waiting.
        """
        while not self._ready(POLL_SLICE):
            if self.cancel is not None and self.cancel.is_set():
                return None
        data = os.read(self.fd, 1)
        if not data:
            return EOF
        return data[0]

    def write_bytes(self, data: bytes) -> None:
        self.stdout.write(data)

    def flush(self) -> None:
        self.stdout.flush()


class ScriptedConsole(BaseConsole):
    """Deterministic console: input comes from a string, output is collected.

    `key_delay` makes the first N availability polls report no key even
    when input is pending.
    """

    def __init__(self, stdin: str = "", key_delay: int = 0) -> None:
        self.input_buffer: list[int] = [ord(ch) for ch in stdin]
        self.key_delay = int(key_delay)
        self.output = bytearray()
        self.polls = 0
        self.raw = False
        self.restore_count = 0

    def acquire_raw_mode(self) -> None:
        self.raw = True

    def restore_mode(self) -> None:
        if self.raw:
            self.raw = False
            self.restore_count += 1

    def key_available(self) -> bool:
        self.polls += 1
        if self.key_delay > 0:
            self.key_delay -= 1
            return False
        return bool(self.input_buffer)

    def read_char(self) -> int | None:
        if not self.input_buffer:
            return EOF
        return self.input_buffer.pop(0)

    def write_bytes(self, data: bytes) -> None:
        self.output += data

    def getbytes(self) -> bytes:
        return bytes(self.output)

    def getvalue(self) -> str:
        """Output decoded one byte per character."""
        return self.output.decode("latin-1")
