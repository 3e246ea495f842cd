"""z3 — the Z3 SMT solver, from the upstream release binaries.

Source (shell.nix)::

    z3 = pkgs.stdenv.mkDerivation {
      name = "z3";
      src = pkgs.fetchurl {
        url = "https://github.com/Z3Prover/z3/releases/download/z3-${version}/${filename}.zip";
        sha256 = "sha256-8DZXTV4gKckgT/81A8/mjd9B+m/euzm+7ZnhvzVbf+4=";
      };
      nativeBuildInputs = [ stdenv.cc.cc.lib autoPatchelfHook unzip ];
      dontConfigure = true;
      dontBuild = true;
      installPhase = ''
        here=$(pwd)
        cd $TMPDIR
        mv $here $out
      '';
    };

The hash pins the zip's bytes, so the unpack phase does the unzipping.
autoPatchelfHook becomes a load-path rule over $out; libstdc++ comes from
the host's default library directories.
"""

from dervish.derivation import Derivation
from dervishpkgs.fetchurl import fetchurl
from dervishpkgs.mk_derivation import mk_derivation

VERSION = "4.12.5"
ARCH = "x64"
FILENAME = f"z3-{VERSION}-{ARCH}-glibc-2.35"
URL = f"https://github.com/Z3Prover/z3/releases/download/z3-{VERSION}/{FILENAME}.zip"
HASH = "sha256-8DZXTV4gKckgT/81A8/mjd9B+m/euzm+7ZnhvzVbf+4="

INSTALL = """\
here=$(pwd)
cd "$TMPDIR"
mv "$here" "$out"
"""


def make_z3(src=None) -> Derivation:
    """Z3 4.12.5. ``src`` overrides the release zip (tests use a local one)."""
    return mk_derivation(
        name="z3",
        src=src or fetchurl(URL, HASH),
        dont_configure=True,
        dont_build=True,
        install=INSTALL,
        auto_patchelf=True,
    )
