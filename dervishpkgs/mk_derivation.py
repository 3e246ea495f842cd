"""Python equivalent of stdenv.mkDerivation.

Turns the familiar mkDerivation attributes into a Derivation with the
standard phase list:

    unpack → patch → configure → build → install [→ patch $out]

Any phase given as a string runs as a shell script; phases left as None
use the builder's defaults (unpack ``src``, patch shebangs, ./configure
if present, make if there is a Makefile, copy the tree to $out).

Usage::

    pkg = mk_derivation(
        pname="pmdk", version="1.11.1",
        src=fetch_from_github(owner="pmem", repo="pmdk", rev="1.11.1", hash=...),
        patch_shebangs=["utils"],
        env={"EXTRA_CFLAGS": "-Wno-error"},
        install="make install prefix=$out",
    )
"""

import re
import shlex
from typing import Iterable, Mapping

from dervish.derivation import Derivation, Phase, PhaseSpec
from dervish.errors import DeclarationError
from dervish.patcher import LoadPathRule, ShebangRule

_NOT_IDENT = re.compile(r"[^A-Za-z0-9_]")


def _input_name(ref, taken: set[str]) -> str:
    base = getattr(ref, "name", None) or getattr(ref, "store_name", "input")
    base = _NOT_IDENT.sub("_", base) or "input"
    if base[0].isdigit():
        base = "_" + base
    name, n = base, 1
    while name in taken:
        n += 1
        name = f"{base}_{n}"
    taken.add(name)
    return name


def mk_derivation(
    *,
    pname: str | None = None,
    version: str | None = None,
    name: str | None = None,
    src=None,
    native_inputs: Iterable = (),
    inputs: Mapping | None = None,
    env: Mapping | None = None,
    unpack: str | None = None,
    patch: str | None = None,
    patch_shebangs: Iterable[str] | bool | None = None,
    auto_patchelf: bool = False,
    configure: str | None = None,
    build: str | None = None,
    install: str | None = None,
    dont_configure: bool = False,
    dont_build: bool = False,
    parallel: bool = False,
    system: str = "x86_64-linux",
) -> Derivation:
    """Create a derivation using the stdenv mkDerivation pattern.

    Args:
        pname, version: name becomes "pname-version" (or just pname).
        name: Direct derivation name. Mutually exclusive with pname.
        src: Source (FetchSpec or Derivation), exposed as $src.
        native_inputs: Build-time dependencies; their bin/ goes on PATH,
            each is exposed under a name derived from its own.
        inputs: Extra inputs by explicit name.
        env: Additional environment; values may be references.
        patch_shebangs: Subdirectories whose scripts get patched
            (True for the whole source tree).
        auto_patchelf: Fix ELF load paths in $out after install.
        parallel: Let the default build use $NIX_BUILD_CORES jobs.
    """
    if name is not None and pname is not None:
        raise DeclarationError("give either name or pname, not both")
    if name is not None:
        drv_name = name
    elif pname is not None:
        drv_name = f"{pname}-{version}" if version else pname
    else:
        raise DeclarationError("either name or pname is required")

    drv_inputs: list[tuple] = []
    taken = {"src"}
    if src is not None:
        drv_inputs.append(("src", src))
    for key, ref in (inputs or {}).items():
        taken.add(key)
        drv_inputs.append((key, ref))
    for ref in native_inputs:
        drv_inputs.append((_input_name(ref, taken), ref))

    drv_env = dict(env or {})
    if pname is not None:
        drv_env.setdefault("pname", pname)
        drv_env.setdefault("version", version or "")
    if parallel:
        drv_env["enableParallelBuilding"] = "1"

    phases = [PhaseSpec(Phase.UNPACK, unpack)]
    if patch is not None:
        phases.append(PhaseSpec(Phase.PATCH, patch))
    elif patch_shebangs:
        dirs = ["."] if patch_shebangs is True else list(patch_shebangs)
        phases.append(PhaseSpec(Phase.PATCH, tuple(ShebangRule(subdir=d) for d in dirs)))
    else:
        phases.append(PhaseSpec(Phase.PATCH))
    if not dont_configure:
        phases.append(PhaseSpec(Phase.CONFIGURE, configure))
    if not dont_build:
        phases.append(PhaseSpec(Phase.BUILD, build))
    phases.append(PhaseSpec(Phase.INSTALL, install))
    if auto_patchelf:
        phases.append(PhaseSpec(Phase.PATCH, LoadPathRule(target="out")))

    return Derivation(name=drv_name, inputs=tuple(drv_inputs), phases=tuple(phases),
                      env=drv_env, system=system)


def host_tool(program: str, name: str | None = None) -> Derivation:
    """Expose a program from the build host as $out/bin/<program>.

    The program is looked up on the build PATH when the derivation is
    built, so declaring it never depends on the host.
    """
    prog = shlex.quote(program)
    script = (
        f"p=$(command -v {prog}) || {{ echo {prog}: not found on the build host >&2; exit 1; }}\n"
        f'mkdir -p "$out/bin"\n'
        f'ln -s "$p" "$out/bin/"{prog}\n'
    )
    return Derivation(
        name=name or f"host-{_NOT_IDENT.sub('-', program)}",
        phases=(PhaseSpec(Phase.INSTALL, script),),
    )
