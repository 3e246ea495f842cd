"""NAR (Nix Archive) serialization — the canonical listing of a file tree.

Unlike tar, a NAR carries no timestamps, owners or permission modes (only
the executable bit), and directory entries are sorted. The same tree
therefore always produces the same byte stream, which is what lets a
declared hash bind to unpacked file content rather than to whatever
archive happened to carry it.

Every value is written as uint64_le(length) + bytes + zero padding to an
8-byte boundary:

    str("nix-archive-1")
    str("(") str("type")
      str("regular") [str("executable") str("")] str("contents") str(<data>)
    | str("symlink") str("target") str(<target>)
    | str("directory") { str("entry") str("(") str("name") str(<n>) str("node") <recurse> str(")") }
    str(")")
"""

import hashlib
import os
import struct
from pathlib import Path
from typing import Callable

_CHUNK = 1 << 16


def _pad8(n: int) -> bytes:
    return b"\0" * ((8 - n % 8) % 8)


def _str(s: str | bytes) -> bytes:
    if isinstance(s, str):
        s = s.encode()
    return struct.pack("<Q", len(s)) + s + _pad8(len(s))


def dump(path: str | Path, write: Callable[[bytes], object]) -> None:
    """Stream the NAR serialization of ``path`` into ``write``."""
    write(_str("nix-archive-1"))
    _dump_entry(Path(path), write)


def _dump_entry(path: Path, write: Callable[[bytes], object]) -> None:
    write(_str("("))
    write(_str("type"))

    if path.is_symlink():
        write(_str("symlink"))
        write(_str("target"))
        write(_str(os.readlink(path)))

    elif path.is_file():
        write(_str("regular"))
        if os.access(path, os.X_OK):
            write(_str("executable"))
            write(_str(""))
        write(_str("contents"))
        size = path.stat().st_size
        write(struct.pack("<Q", size))
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                write(chunk)
        write(_pad8(size))

    elif path.is_dir():
        write(_str("directory"))
        for name in sorted(os.listdir(path)):
            write(_str("entry"))
            write(_str("("))
            write(_str("name"))
            write(_str(name))
            write(_str("node"))
            _dump_entry(path / name, write)
            write(_str(")"))
    else:
        raise ValueError(f"unsupported file type: {path}")

    write(_str(")"))


def nar_serialize(path: str | Path) -> bytes:
    """Serialize a filesystem path to NAR bytes."""
    parts: list[bytes] = []
    dump(path, parts.append)
    return b"".join(parts)


def nar_hash(path: str | Path) -> bytes:
    """SHA-256 of the NAR serialization, computed without buffering it."""
    h = hashlib.sha256()
    dump(path, h.update)
    return h.digest()
