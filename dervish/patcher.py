"""In-place fixups of build output: interpreter lines and library load paths.

Binaries and scripts built or downloaded elsewhere point at interpreters
and shared libraries by paths that only made sense where they were built.
The Patcher rewrites those references to point at this build's inputs.

Rules are a closed set of frozen dataclasses dispatched by Patcher.apply:

    ShebangRule(subdir="utils")        # like patchShebangs utils
    LoadPathRule()                     # like autoPatchelfHook on $out

Every operation is idempotent: a reference that already points into the
search path is left alone, so re-running a rule is a no-op.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from dervish.errors import PatchError

logger = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"

DEFAULT_LIB_DIRS = (
    "/lib", "/lib64", "/usr/lib", "/usr/lib64",
    "/lib/x86_64-linux-gnu", "/usr/lib/x86_64-linux-gnu",
    "/lib/aarch64-linux-gnu", "/usr/lib/aarch64-linux-gnu",
)


@dataclass(frozen=True)
class ShebangRule:
    """Rewrite ``#!`` lines of scripts under ``<target>/<subdir>``."""

    subdir: str = "."
    target: str = "source"
    strict: bool = False


@dataclass(frozen=True)
class LoadPathRule:
    """Point ELF files under ``<target>/<subdir>`` at the input libraries."""

    subdir: str = "."
    target: str = "out"
    extra_paths: tuple[str, ...] = ()
    strict: bool = False


PatchRule = ShebangRule | LoadPathRule


def _walk_files(root: Path):
    if root.is_file() and not root.is_symlink():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            p = Path(dirpath) / name
            if not p.is_symlink() and p.is_file():
                yield p


def _is_under(path: str, dirs: list[str]) -> bool:
    return any(path == d or path.startswith(d.rstrip("/") + "/") for d in dirs)


def _writable(path: Path):
    """Make path writable for the duration of a rewrite; returns the old mode."""
    mode = path.stat().st_mode
    if not mode & 0o200:
        path.chmod(mode | 0o200)
    return mode


class Patcher:
    def __init__(self, patchelf: str = "patchelf",
                 default_lib_dirs: tuple[str, ...] = DEFAULT_LIB_DIRS):
        self.patchelf = patchelf
        self.default_lib_dirs = default_lib_dirs

    def apply(self, rule: PatchRule, roots: dict[str, Path],
              bin_dirs: list[str], lib_dirs: list[str]) -> list[Path]:
        """Run one rule; returns the files it changed."""
        if rule.target not in roots:
            raise PatchError(f"unknown patch target {rule.target!r}")
        root = roots[rule.target] / rule.subdir
        if not root.exists():
            if rule.strict:
                raise PatchError(f"patch root {root} does not exist")
            logger.info("nothing to patch: %s does not exist", root)
            return []
        if isinstance(rule, ShebangRule):
            return self.patch_interpreters(root, bin_dirs, strict=rule.strict)
        if isinstance(rule, LoadPathRule):
            return self.patch_binary_load_paths(
                root, list(lib_dirs) + list(rule.extra_paths), strict=rule.strict,
            )
        raise PatchError(f"unsupported patch rule: {rule!r}")

    # --- interpreter lines ---

    def patch_interpreters(self, root: str | Path, search_path: list[str],
                           strict: bool = False) -> list[Path]:
        """Point ``#!`` lines of scripts under root at interpreters in search_path.

        ``#!/usr/bin/env prog args`` and ``#!/some/dir/prog args`` both
        become ``#!<dir in search_path>/prog args``.
        """
        search = [d for d in search_path if d]
        changed = []
        for path in _walk_files(Path(root)):
            with open(path, "rb") as f:
                first = f.readline()
            if not first.startswith(b"#!"):
                continue
            try:
                line = first[2:].decode().strip()
            except UnicodeDecodeError:
                continue
            new_line = self._resolve_shebang(path, line, search, strict)
            if new_line is None:
                continue
            data = path.read_bytes()
            mode = _writable(path)
            path.write_bytes(b"#!" + new_line.encode() + b"\n" + data[len(first):])
            path.chmod(mode)
            logger.debug("%s: interpreter %r -> %r", path, line, new_line)
            changed.append(path)
        return changed

    def _resolve_shebang(self, path: Path, line: str, search: list[str],
                         strict: bool) -> str | None:
        parts = line.split()
        if not parts:
            return None
        interpreter, args = parts[0], parts[1:]
        if _is_under(interpreter, search):
            return None  # already patched
        if os.path.basename(interpreter) == "env" and args and not args[0].startswith("-"):
            program, args = args[0], args[1:]
        else:
            program = os.path.basename(interpreter)
        resolved = shutil.which(program, path=os.pathsep.join(search)) if search else None
        if resolved is None:
            msg = f"{path}: interpreter {program!r} not found in build inputs"
            if strict:
                raise PatchError(msg)
            logger.info(msg)
            return None
        return " ".join([resolved] + args)

    # --- ELF load paths ---

    def _run_patchelf(self, *args: str) -> str:
        try:
            proc = subprocess.run(
                [self.patchelf, *args], capture_output=True, text=True,
            )
        except FileNotFoundError:
            raise PatchError(f"{self.patchelf} not found; needed to patch ELF files") from None
        if proc.returncode != 0:
            raise PatchError(
                f"{self.patchelf} {' '.join(args)} failed "
                f"(exit {proc.returncode}): {proc.stderr.strip()}"
            )
        return proc.stdout.strip()

    def _find_lib(self, lib: str, dirs) -> str | None:
        for d in dirs:
            if os.path.exists(os.path.join(d, lib)):
                return d
        return None

    def patch_binary_load_paths(self, root: str | Path, search_paths: list[str],
                                strict: bool = False) -> list[Path]:
        """Set the rpath of ELF files under root whose libraries need search_paths.

        Libraries found in the default system directories need nothing.
        For the rest, the rpath becomes the ordered list of search_paths
        entries that provide them.
        """
        changed = []
        for path in _walk_files(Path(root)):
            with open(path, "rb") as f:
                if f.read(4) != ELF_MAGIC:
                    continue
            needed = [n for n in self._run_patchelf("--print-needed", str(path)).splitlines() if n]
            rpath: list[str] = []
            missing = []
            for lib in needed:
                if self._find_lib(lib, self.default_lib_dirs):
                    continue
                d = self._find_lib(lib, search_paths)
                if d is None:
                    missing.append(lib)
                elif d not in rpath:
                    rpath.append(d)
            if missing:
                msg = f"{path}: libraries not found: {', '.join(missing)}"
                if strict:
                    raise PatchError(msg)
                logger.warning(msg)
            if not rpath:
                continue
            new_rpath = ":".join(rpath)
            if self._run_patchelf("--print-rpath", str(path)) == new_rpath:
                continue
            mode = _writable(path)
            self._run_patchelf("--set-rpath", new_rpath, str(path))
            path.chmod(mode)
            logger.debug("%s: rpath -> %s", path, new_rpath)
            changed.append(path)
        return changed


def rewrite_references(root: str | Path, old: str, new: str) -> list[Path]:
    """Replace every occurrence of old with new in files and symlinks under root.

    The two strings must have the same length so binaries stay valid.
    """
    if len(old) != len(new):
        raise ValueError("rewrite_references needs same-length strings")
    old_b, new_b = old.encode(), new.encode()
    root = Path(root)
    changed = []
    candidates = [root] if not root.is_dir() or root.is_symlink() else [root] + [
        Path(dirpath) / name
        for dirpath, dirnames, filenames in os.walk(root)
        for name in dirnames + filenames
    ]
    for path in candidates:
        if path.is_symlink():
            target = os.readlink(path)
            if old in target:
                path.unlink()
                os.symlink(target.replace(old, new), path)
                changed.append(path)
        elif path.is_file():
            data = path.read_bytes()
            if old_b in data:
                mode = _writable(path)
                path.write_bytes(data.replace(old_b, new_b))
                path.chmod(mode)
                changed.append(path)
    return changed
