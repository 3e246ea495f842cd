"""pmdk — the Persistent Memory Development Kit, built from source.

Source (shell.nix)::

    pmdk = pkgs.stdenv.mkDerivation rec {
      pname = "pmdk";
      version = "1.11.1";
      src = pkgs.fetchFromGitHub {
        owner = "pmem"; repo = "pmdk"; rev = version;
        hash = "sha256-8bnyLtgkKfgIjJkfY/ZS1I9aCYcrz0nrdY7m/TUVWAk=";
      };
      nativeBuildInputs = [ autoconf pkg-config gnum4 pandoc ];
      buildInputs = [ libndctl ];
      enableParallelBuilding = true;
      patchPhase = "patchShebangs utils";
      NIX_CFLAGS_COMPILE = "-Wno-error";
      installPhase = "make install prefix=$out";
    };

Build tools come from the host. ndctl support and the pandoc-generated
man pages are switched off (NDCTL_ENABLE=n, DOC=n) so the build needs
nothing beyond a C toolchain, make, pkg-config and m4.
"""

from dervish.derivation import Derivation
from dervishpkgs.fetchurl import fetch_from_github
from dervishpkgs.mk_derivation import host_tool, mk_derivation

VERSION = "1.11.1"
HASH = "sha256-8bnyLtgkKfgIjJkfY/ZS1I9aCYcrz0nrdY7m/TUVWAk="


def make_pmdk(src=None, native_inputs=None) -> Derivation:
    """pmdk 1.11.1.

    Args:
        src: Overrides the GitHub tarball.
        native_inputs: Overrides the host build tools.
    """
    if native_inputs is None:
        native_inputs = [host_tool("pkg-config"), host_tool("m4")]
    return mk_derivation(
        pname="pmdk",
        version=VERSION,
        src=src or fetch_from_github(owner="pmem", repo="pmdk", rev=VERSION, hash=HASH),
        native_inputs=native_inputs,
        patch_shebangs=["utils"],
        env={
            "EXTRA_CFLAGS": "-Wno-error",
            "NDCTL_ENABLE": "n",
            "DOC": "n",
        },
        parallel=True,
        install="make install prefix=$out",
    )
