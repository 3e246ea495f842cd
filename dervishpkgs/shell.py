"""Python equivalent of mkShell: an environment to run tools in.

    shell = mk_shell(
        variables={"RUSTC_BOOTSTRAP": "1"},
        binaries=[pmdk],
        libraries=[pmdk],
        passthrough={"VERUS_Z3_PATH": (z3, "bin/z3")},
    )

Binaries and libraries given as a mapping are also named, so variables
can refer to them as templates (``"${singular}/bin/Singular"``).
"""

from dataclasses import dataclass
from typing import Iterable, Mapping

from dervish.derivation import Derivation
from dervish.environment import EnvironmentSpec, PathRole, Role
from dervish.graph import DerivationGraph


def _roles(items, role: Role) -> list[PathRole]:
    if isinstance(items, Mapping):
        return [PathRole(ref, role, name=name) for name, ref in items.items()]
    return [PathRole(ref, role) for ref in items]


@dataclass(frozen=True)
class Shell:
    spec: EnvironmentSpec

    @property
    def roots(self) -> list[Derivation]:
        return [r for r in self.spec.references() if isinstance(r, Derivation)]

    def graph(self) -> DerivationGraph:
        return DerivationGraph.from_roots(self.roots)


def mk_shell(variables: Mapping[str, str] | None = None,
             binaries: Iterable | Mapping = (),
             libraries: Iterable | Mapping = (),
             passthrough: Mapping | None = None) -> Shell:
    roles = _roles(binaries, Role.BINARY_SEARCH_PATH)
    roles += _roles(libraries, Role.LIBRARY_SEARCH_PATH)
    for name, value in (passthrough or {}).items():
        ref, subpath = value if isinstance(value, tuple) else (value, "")
        roles.append(PathRole(ref, Role.OPAQUE_PASSTHROUGH, name=name, subpath=subpath))
    return Shell(EnvironmentSpec(variables=dict(variables or {}), path_roles=tuple(roles)))
