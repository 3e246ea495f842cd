"""The Verus development shell.

Everything needed to build and run Verus on the pmem storage crates:
a pinned Z3 for the verifier, pmdk for the persistent-memory bindings,
and optionally Singular for the integer-arithmetic prover.

    dervish run -f dervishpkgs/verus.py -- cargo verus verify

Declaration files evaluate to a ``default`` attribute; this one is the
shell of a VerusPkgs set.
"""

from functools import cached_property

from dervishpkgs.mk_derivation import host_tool
from dervishpkgs.package_set import PackageSet
from dervishpkgs.pkgs.pmdk import make_pmdk
from dervishpkgs.pkgs.z3 import make_z3
from dervishpkgs.shell import Shell, mk_shell


class VerusPkgs(PackageSet):
    def __init__(self, singular: bool = False):
        self.with_singular = singular

    @cached_property
    def z3(self):
        return make_z3()

    @cached_property
    def pmdk(self):
        return make_pmdk()

    @cached_property
    def singular(self):
        return host_tool("Singular") if self.with_singular else None

    @cached_property
    def shell(self) -> Shell:
        return self.call(self._shell)

    @staticmethod
    def _shell(z3, pmdk, singular) -> Shell:
        variables = {"RUSTC_BOOTSTRAP": "1"}
        binaries = {"pmdk": pmdk}
        if singular is not None:
            binaries["singular"] = singular
            variables["VERUS_SINGULAR_PATH"] = "${singular}/bin/Singular"
        return mk_shell(
            variables=variables,
            binaries=binaries,
            libraries=[pmdk],
            passthrough={"VERUS_Z3_PATH": (z3, "bin/z3")},
        )


pkgs = VerusPkgs()
default = pkgs.shell
