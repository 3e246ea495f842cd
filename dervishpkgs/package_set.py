"""Lazy package set with auto-injection.

Python replacement for Nix's callPackage pattern. Define packages as
@cached_property methods on a PackageSet subclass; dependencies are
resolved by parameter name via inspect.signature.

    class MyPkgs(PackageSet):
        @cached_property
        def z3(self):
            return make_z3()

        @cached_property
        def shell(self):
            return self.call(lambda z3, pmdk: mk_shell(binaries=[pmdk], ...))

Each package is declared at most once (@cached_property), so every
attribute access returns the same Derivation value.
"""

import inspect
from functools import cached_property

from dervish.derivation import Derivation
from dervish.errors import UnresolvedInput


class PackageSet:
    """Base class for a lazily-evaluated package set.

    Subclass this and define packages as @cached_property methods.
    Use self.call(fn) to auto-inject dependencies by parameter name.
    """

    def call(self, fn, **overrides):
        """Resolve fn's parameters from this package set and call it.

        Like Nix's callPackage: inspects the function signature and
        looks up each parameter name as an attribute on self. Keyword
        overrides win, and parameters with defaults may be missing.

            self.call(lambda z3, pmdk: mk_shell(...))
            # equivalent to: fn(z3=self.z3, pmdk=self.pmdk)
        """
        sig = inspect.signature(fn)
        kwargs = {}
        for name, param in sig.parameters.items():
            if name == "self":
                continue
            if name in overrides:
                kwargs[name] = overrides[name]
            elif hasattr(self, name):
                kwargs[name] = getattr(self, name)
            elif param.default is inspect.Parameter.empty:
                raise UnresolvedInput(getattr(fn, "__qualname__", repr(fn)), name)
        return fn(**kwargs)

    def derivations(self) -> dict[str, Derivation]:
        """Every attribute of this set that is a Derivation, by name."""
        found = {}
        for name in dir(type(self)):
            if name.startswith("_"):
                continue
            if isinstance(inspect.getattr_static(type(self), name), cached_property):
                value = getattr(self, name)
                if isinstance(value, Derivation):
                    found[name] = value
        return found
