"""Image files: big-endian 16-bit words, origin address first."""

from __future__ import annotations

import logging
import struct
import sys
from array import array
from pathlib import Path
from typing import Protocol

from isa import MEM_CELLS


class ImageError(ValueError):
    """Raised when an image file is missing, unreadable or malformed."""

    pass


class _Loadable(Protocol):
    def load_words(self, origin: int, words: list[int]) -> int: ...


def decode_image(blob: bytes) -> tuple[int, list[int]]:
    """Split an image blob into (origin, words) in host order.

    Words that would run past the end of the address space are dropped;
    a trailing odd byte is ignored.
    """
    if len(blob) < 2:
        err = f"image too short: {len(blob)} byte(s), need at least an origin word"
        raise ImageError(err)
    (origin,) = struct.unpack(">H", blob[:2])

    max_read = MEM_CELLS - origin
    body = blob[2:]
    body = body[: min(len(body) // 2, max_read) * 2]
    words = array("H")
    words.frombytes(body)
    if sys.byteorder == "little":
        words.byteswap()
    if (len(blob) - 2) // 2 > max_read:
        logging.debug("image truncated: %d word(s) dropped past xFFFF", (len(blob) - 2) // 2 - max_read)
    return origin, words.tolist()


def read_image_bytes(dp: _Loadable, blob: bytes) -> int:
    """Load an image blob into `dp` memory. Returns the number of words loaded."""
    origin, words = decode_image(blob)
    count = dp.load_words(origin, words)
    logging.debug("image: loaded %d word(s) at x%04X", count, origin)
    return count


def read_image(dp: _Loadable, path: str | Path) -> int:
    """Load the image file at `path` into `dp` memory."""
    p = Path(path)
    try:
        blob = p.read_bytes()
    except OSError as e:
        err = f"failed to load image: {path}"
        raise ImageError(err) from e
    return read_image_bytes(dp, blob)


def encode_image(origin: int, words: list[int]) -> bytes:
    """Build an image blob (origin word followed by `words`, big-endian)."""
    return struct.pack(f">{len(words) + 1}H", origin & 0xFFFF, *(w & 0xFFFF for w in words))


def write_image(path: str | Path, origin: int, words: list[int]) -> None:
    with open(path, "wb") as f:
        f.write(encode_image(origin, words))
