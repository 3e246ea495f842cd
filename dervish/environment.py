"""Compose realized store entries into one launch environment.

    spec = EnvironmentSpec(
        variables={"VERUS_Z3_PATH": "${z3}/bin/z3", "RUSTC_BOOTSTRAP": "1"},
        path_roles=[
            PathRole(z3, Role.BINARY_SEARCH_PATH, name="z3"),
            PathRole(pmdk, Role.BINARY_SEARCH_PATH),
            PathRole(pmdk, Role.LIBRARY_SEARCH_PATH),
        ],
    )
    env = compose(spec, realized)
    sys.exit(invoke(env, ["cargo", "build"]))

Composition is two passes: path roles are resolved to store paths first,
then variable templates are rendered against the named roles. Search
paths keep declaration order, so the first role providing a program wins.
"""

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from string import Template
from typing import Mapping

from dervish.errors import DeclarationError, TemplateError, UnresolvedInput

logger = logging.getLogger(__name__)


class Role(str, Enum):
    BINARY_SEARCH_PATH = "binary-search-path"
    LIBRARY_SEARCH_PATH = "library-search-path"
    OPAQUE_PASSTHROUGH = "opaque-passthrough"


@dataclass(frozen=True)
class PathRole:
    """How one realized entry takes part in the environment.

    ``name`` makes the resolved path available to variable templates as
    ``${name}``; passthrough roles also export it as a variable and so
    require one.
    """

    ref: object  # Derivation or FetchSpec
    role: Role
    name: str | None = None
    subpath: str = ""

    def __post_init__(self):
        object.__setattr__(self, "role", Role(self.role))
        if self.role is Role.OPAQUE_PASSTHROUGH and not self.name:
            raise DeclarationError(f"passthrough role for {self.ref.id} needs a name")


@dataclass(frozen=True)
class EnvironmentSpec:
    variables: Mapping[str, str] = field(default_factory=dict)
    path_roles: tuple[PathRole, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "variables", dict(self.variables))
        object.__setattr__(self, "path_roles", tuple(self.path_roles))

    def references(self) -> list:
        refs: dict[str, object] = {}
        for pr in self.path_roles:
            refs.setdefault(pr.ref.id, pr.ref)
        return list(refs.values())


@dataclass(frozen=True)
class Environment:
    variables: dict[str, str]
    search_path: tuple[str, ...] = ()
    library_path: tuple[str, ...] = ()

    def merged(self, ambient: Mapping[str, str] | None = None) -> dict[str, str]:
        """The composed variables over the ambient environment.

        Search paths are prepended to the ambient PATH and LD_LIBRARY_PATH
        rather than replacing them.
        """
        env = dict(os.environ if ambient is None else ambient)
        for var, dirs in (("PATH", self.search_path), ("LD_LIBRARY_PATH", self.library_path)):
            if dirs:
                parts = list(dirs)
                if env.get(var):
                    parts.append(env[var])
                env[var] = os.pathsep.join(parts)
        env.update(self.variables)
        return env

    def which(self, program: str) -> str | None:
        if not self.search_path:
            return None
        return shutil.which(program, path=os.pathsep.join(self.search_path))

    def to_shell(self) -> str:
        lines = []
        for var, dirs in (("PATH", self.search_path), ("LD_LIBRARY_PATH", self.library_path)):
            if dirs:
                joined = shlex.quote(os.pathsep.join(dirs))
                lines.append(f'export {var}={joined}"${{{var}:+:${var}}}"')
        for key in sorted(self.variables):
            lines.append(f"export {key}={shlex.quote(self.variables[key])}")
        return "\n".join(lines) + "\n"


def _entry_path(ref, realized: Mapping) -> Path:
    try:
        entry = realized[ref.id]
    except KeyError:
        raise UnresolvedInput("environment", getattr(ref, "name", None) or ref.id, ref.id) from None
    return Path(getattr(entry, "path", entry))


def _dir_or_self(path: Path, sub: str) -> str:
    return str(path / sub) if (path / sub).is_dir() else str(path)


def compose(spec: EnvironmentSpec, realized: Mapping) -> Environment:
    """Merge realized entries into an Environment.

    ``realized`` maps store ids to StoreEntry (or plain paths), as returned
    by Builder.realize plus any fetched entries.
    """
    names: dict[str, str] = {}
    variables: dict[str, str] = {}
    search: list[str] = []
    libs: list[str] = []

    for pr in spec.path_roles:
        path = _entry_path(pr.ref, realized)
        if pr.subpath:
            path = path / pr.subpath
        if pr.role is Role.BINARY_SEARCH_PATH:
            d = str(path) if pr.subpath else _dir_or_self(path, "bin")
            if d not in search:
                search.append(d)
        elif pr.role is Role.LIBRARY_SEARCH_PATH:
            d = str(path) if pr.subpath else _dir_or_self(path, "lib")
            if d not in libs:
                libs.append(d)
        else:
            variables[pr.name] = str(path)
        if pr.name:
            names.setdefault(pr.name, str(_entry_path(pr.ref, realized)))

    for key, value in spec.variables.items():
        try:
            variables[key] = Template(value).substitute(names)
        except KeyError as e:
            raise TemplateError(f"variable {key}: unknown name ${{{e.args[0]}}} in {value!r}") from None
        except ValueError as e:
            raise TemplateError(f"variable {key}: {e}") from None

    return Environment(variables, tuple(search), tuple(libs))


def invoke(env: Environment, argv: list[str], ambient: Mapping[str, str] | None = None) -> int:
    """Run argv verbatim in env; returns the child's exit status."""
    merged = env.merged(ambient)
    logger.debug("invoking %s", shlex.join(argv))
    try:
        proc = subprocess.run(argv, env=merged)
    except FileNotFoundError:
        logger.error("%s: command not found", argv[0])
        return 127
    except PermissionError:
        logger.error("%s: permission denied", argv[0])
        return 126
    if proc.returncode < 0:
        return 128 - proc.returncode
    return proc.returncode
