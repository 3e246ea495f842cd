"""Derivations: immutable, content-hashed descriptions of one build step.

A derivation's id is computed from its canonical text, an ATerm-style
rendering of everything that can influence the output:

    Derive(
        "pmdk-1.11.1",                                   # name
        "x86_64-linux",                                  # system
        [("src","fetch","<id>"), ("z3","drv","<id>")],   # inputs, declared order
        [("unpack","","default",""),                     # phases, declared order
         ("patch","","rules","[{...}]"),                 #   (name, optional, kind, body)
         ("install","","script","make install")],
        [("EXTRA_CFLAGS","str","-Wno-error")]            # env, sorted by key
    )

Inputs and phases keep their declared order because order changes the
build. Env is a mapping, so it is sorted and its declaration order never
changes the id. References are written as the referenced entry's id, so a
derivation's id changes whenever anything in its closure changes.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Mapping, Union

from dervish.errors import DeclarationError
from dervish.fetcher import FetchSpec
from dervish.patcher import LoadPathRule, PatchRule, ShebangRule
from dervish.store_path import check_name, make_derivation_id

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
RESERVED_ENV = frozenset({"out", "PATH", "HOME", "TMPDIR", "DERVISH_BUILD_TOP", "NIX_BUILD_CORES"})


class Phase(str, Enum):
    UNPACK = "unpack"
    PATCH = "patch"
    CONFIGURE = "configure"
    BUILD = "build"
    INSTALL = "install"


Action = Union[str, PatchRule, tuple, None]


@dataclass(frozen=True)
class PhaseSpec:
    """One stage of a build.

    ``action`` is a shell script, a patch rule or tuple of rules (PATCH
    only), or None for the phase's default behaviour.
    """

    name: Phase
    action: Action = None
    optional: bool = False

    def __post_init__(self):
        object.__setattr__(self, "name", Phase(self.name))
        action = self.action
        if isinstance(action, list):
            action = tuple(action)
            object.__setattr__(self, "action", action)
        rules = action if isinstance(action, tuple) else (action,)
        if any(isinstance(r, (ShebangRule, LoadPathRule)) for r in rules):
            if self.name is not Phase.PATCH:
                raise DeclarationError(f"patch rules are only valid in the patch phase, not {self.name.value}")
            if not all(isinstance(r, (ShebangRule, LoadPathRule)) for r in rules):
                raise DeclarationError(f"patch phase mixes rules and non-rules: {action!r}")
        elif action is not None and not isinstance(action, str):
            raise DeclarationError(f"unsupported phase action: {action!r}")

    @property
    def rules(self) -> tuple[PatchRule, ...]:
        if isinstance(self.action, (ShebangRule, LoadPathRule)):
            return (self.action,)
        if isinstance(self.action, tuple):
            return self.action
        return ()

    def canonical(self) -> tuple[str, str, str, str]:
        optional = "1" if self.optional else ""
        if self.action is None:
            return (self.name.value, optional, "default", "")
        if isinstance(self.action, str):
            return (self.name.value, optional, "script", self.action)
        body = json.dumps([_rule_json(r) for r in self.rules], sort_keys=True, separators=(",", ":"))
        return (self.name.value, optional, "rules", body)


def _rule_json(rule: PatchRule) -> dict:
    if isinstance(rule, ShebangRule):
        return {"rule": "shebang", "subdir": rule.subdir, "target": rule.target,
                "strict": rule.strict}
    return {"rule": "loadpath", "subdir": rule.subdir, "target": rule.target,
            "extra_paths": list(rule.extra_paths), "strict": rule.strict}


Reference = Union["Derivation", FetchSpec]


def is_reference(value) -> bool:
    return isinstance(value, (Derivation, FetchSpec))


@dataclass(frozen=True, eq=False)
class Derivation:
    """One build step. Equality and hashing go by id."""

    name: str
    inputs: tuple[tuple[str, Reference], ...] = ()
    phases: tuple[PhaseSpec, ...] = ()
    env: Mapping[str, Union[str, Reference]] = field(default_factory=dict)
    system: str = "x86_64-linux"

    def __post_init__(self):
        try:
            check_name(self.name)
        except ValueError as e:
            raise DeclarationError(str(e)) from None

        inputs = tuple((n, ref) for n, ref in (
            self.inputs.items() if isinstance(self.inputs, Mapping) else self.inputs
        ))
        seen = set()
        for input_name, ref in inputs:
            if not _ENV_NAME_RE.match(input_name) or input_name in RESERVED_ENV:
                raise DeclarationError(f"{self.name}: invalid input name {input_name!r}")
            if input_name in seen:
                raise DeclarationError(f"{self.name}: duplicate input name {input_name!r}")
            if not is_reference(ref):
                raise DeclarationError(
                    f"{self.name}: input {input_name!r} is not a derivation or fetch: {ref!r}"
                )
            seen.add(input_name)

        env = dict(self.env)
        for key, value in env.items():
            if not _ENV_NAME_RE.match(key) or key in RESERVED_ENV:
                raise DeclarationError(f"{self.name}: invalid env variable name {key!r}")
            if key in seen:
                raise DeclarationError(f"{self.name}: env variable {key!r} shadows an input")
            if not isinstance(value, str) and not is_reference(value):
                raise DeclarationError(f"{self.name}: env {key!r} must be a string or reference")

        object.__setattr__(self, "inputs", inputs)
        object.__setattr__(self, "phases", tuple(self.phases))
        object.__setattr__(self, "env", env)

    def __eq__(self, other):
        if not isinstance(other, Derivation):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"Derivation({self.id!r})"

    @cached_property
    def id(self) -> str:
        return make_derivation_id(self.name, self.canonical_text())

    def canonical_text(self) -> str:
        """The text the id is computed from. See the module docstring."""
        return self._canonical

    @cached_property
    def _canonical(self) -> str:
        try:
            inputs = [
                (n, "drv" if isinstance(ref, Derivation) else "fetch", ref.id)
                for n, ref in self.inputs
            ]
            env = []
            for key in sorted(self.env):
                value = self.env[key]
                if is_reference(value):
                    env.append((key, "ref", value.id))
                else:
                    env.append((key, "str", value))
        except ValueError as e:
            raise DeclarationError(f"{self.name}: {e}") from None
        return "".join([
            "Derive(",
            _quote(self.name), ",",
            _quote(self.system), ",",
            _tuple_list(inputs), ",",
            _tuple_list([p.canonical() for p in self.phases]), ",",
            _tuple_list(env),
            ")",
        ])

    def references(self) -> list[Reference]:
        """Every referenced derivation or fetch, inputs first, without duplicates."""
        refs: dict[str, Reference] = {}
        for _, ref in self.inputs:
            refs.setdefault(ref.id, ref)
        for key in sorted(self.env):
            value = self.env[key]
            if is_reference(value):
                refs.setdefault(value.id, value)
        return list(refs.values())

    def input_derivations(self) -> list["Derivation"]:
        return [r for r in self.references() if isinstance(r, Derivation)]

    def input_fetches(self) -> list[FetchSpec]:
        return [r for r in self.references() if isinstance(r, FetchSpec)]

    def input(self, name: str) -> Reference | None:
        for n, ref in self.inputs:
            if n == name:
                return ref
        return None


# --- ATerm text ---

def _escape(s: str) -> str:
    return s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")


def _quote(s: str) -> str:
    return f'"{_escape(s)}"'


def _tuple_list(items) -> str:
    return "[" + ",".join("(" + ",".join(_quote(x) for x in item) + ")" for item in items) + "]"


class _Parser:
    def __init__(self, s: str):
        self.s = s
        self.pos = 0

    def peek(self) -> str:
        if self.pos >= len(self.s):
            raise ValueError("unexpected end of input")
        return self.s[self.pos]

    def expect(self, ch: str) -> None:
        if self.peek() != ch:
            raise ValueError(f"expected {ch!r} at pos {self.pos}, got {self.s[self.pos]!r}")
        self.pos += 1

    def expect_str(self, s: str) -> None:
        end = self.pos + len(s)
        if self.s[self.pos:end] != s:
            raise ValueError(f"expected {s!r} at pos {self.pos}")
        self.pos = end

    def parse_string(self) -> str:
        self.expect('"')
        parts: list[str] = []
        while self.peek() != '"':
            ch = self.s[self.pos]
            if ch == '\\':
                self.pos += 1
                ch = {"n": "\n", "r": "\r", "t": "\t"}.get(self.peek(), self.peek())
            parts.append(ch)
            self.pos += 1
        self.expect('"')
        return "".join(parts)

    def parse_tuple_list(self) -> list[list[str]]:
        self.expect('[')
        items: list[list[str]] = []
        while self.peek() != ']':
            if items:
                self.expect(',')
            self.expect('(')
            item = [self.parse_string()]
            while self.peek() == ',':
                self.pos += 1
                item.append(self.parse_string())
            self.expect(')')
            items.append(item)
        self.expect(']')
        return items


def parse(text: str) -> dict:
    """Read canonical derivation text back into plain data (for display)."""
    p = _Parser(text)
    p.expect_str("Derive(")
    name = p.parse_string()
    p.expect(',')
    system = p.parse_string()
    p.expect(',')
    inputs = p.parse_tuple_list()
    p.expect(',')
    phases = p.parse_tuple_list()
    p.expect(',')
    env = p.parse_tuple_list()
    p.expect(')')
    if p.pos != len(text):
        raise ValueError(f"trailing data at pos {p.pos}")
    return {
        "name": name,
        "system": system,
        "inputs": [{"name": n, "kind": k, "id": i} for n, k, i in inputs],
        "phases": [
            {"name": n, "optional": bool(o), "kind": k,
             "action": json.loads(b) if k == "rules" else b}
            for n, o, k, b in phases
        ],
        "env": {k: ({"ref": v} if kind == "ref" else v) for k, kind, v in env},
    }
