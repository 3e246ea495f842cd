"""The derivation graph: every derivation a realization may need, acyclic.

Derivations are immutable and can only reference derivations that already
exist, so a cycle cannot be expressed with plain values. The graph still
checks on the way in: a derivation is accepted only once all of its input
derivations are in the graph (an early one is rejected as a cycle,
ForwardReference), which keeps topological order equal to a valid build
order by construction.
"""

import logging
from collections import deque
from typing import Iterable

from dervish.derivation import Derivation, PhaseSpec
from dervish.errors import CycleDetected, ForwardReference, IntegrityError, UnresolvedInput
from dervish.fetcher import FetchSpec

logger = logging.getLogger(__name__)


class DerivationGraph:
    def __init__(self, derivations: Iterable[Derivation] = ()):
        self._nodes: dict[str, Derivation] = {}  # insertion order = declaration order
        self._fetches: dict[str, FetchSpec] = {}
        for d in derivations:
            self.add(d)

    def __contains__(self, item) -> bool:
        key = item.id if isinstance(item, Derivation) else item
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __getitem__(self, drv_id: str) -> Derivation:
        return self._nodes[drv_id]

    def __iter__(self):
        return iter(self._nodes.values())

    def add(self, drv: Derivation) -> Derivation:
        """Add drv after checking that everything it references resolves."""
        drv_id = drv.id  # DeclarationError for a malformed reference
        existing = self._nodes.get(drv_id)
        if existing is not None:
            if existing.canonical_text() != drv.canonical_text():
                raise IntegrityError(f"id collision: {drv.id} names two different declarations")
            return existing

        for ref in drv.input_derivations():
            if ref.id not in self._nodes:
                raise ForwardReference(drv_id, self._input_name(drv, ref), ref.id)
        for ref in drv.input_fetches():
            self._fetches.setdefault(ref.id, ref)

        self._nodes[drv_id] = drv
        logger.debug("declared %s", drv_id)
        return drv

    @staticmethod
    def _input_name(drv: Derivation, ref) -> str:
        for n, r in drv.inputs:
            if r is ref or r == ref:
                return n
        for k, v in drv.env.items():
            if v is ref:
                return k
        return ref.name

    def build(self, name: str, inputs=(), phases: Iterable[PhaseSpec] = (),
              env=None, **kwargs) -> Derivation:
        """Declare a derivation and add it in one step."""
        return self.add(Derivation(name=name, inputs=inputs, phases=tuple(phases),
                                   env=env or {}, **kwargs))

    @classmethod
    def from_roots(cls, roots: Iterable[Derivation]) -> "DerivationGraph":
        """The graph of the transitive closure of roots, dependencies first."""
        graph = cls()
        for root in roots:
            graph._add_closure(root, [])
        return graph

    def _add_closure(self, drv: Derivation, stack: list[Derivation]) -> None:
        if drv.id in self._nodes:
            return
        if drv in stack:
            cycle = [d.id for d in stack[stack.index(drv):]] + [drv.id]
            raise CycleDetected(cycle)
        stack.append(drv)
        for dep in drv.input_derivations():
            self._add_closure(dep, stack)
        stack.pop()
        self.add(drv)

    def fetches(self) -> list[FetchSpec]:
        return list(self._fetches.values())

    def topological_order(self, ids: Iterable[str] | None = None) -> list[Derivation]:
        """Derivations with every input ahead of its dependents.

        Kahn's algorithm over the closure of ``ids`` (default: all), ties
        broken by declaration order.
        """
        wanted = self.closure(ids) if ids is not None else set(self._nodes)
        order_key = {drv_id: i for i, drv_id in enumerate(self._nodes)}
        indeg = {i: 0 for i in wanted}
        children: dict[str, list[str]] = {i: [] for i in wanted}
        for drv_id in wanted:
            for dep in self._nodes[drv_id].input_derivations():
                indeg[drv_id] += 1
                children[dep.id].append(drv_id)

        queue = deque(sorted((i for i, d in indeg.items() if d == 0), key=order_key.get))
        result = []
        while queue:
            drv_id = queue.popleft()
            result.append(self._nodes[drv_id])
            for child in sorted(children[drv_id], key=order_key.get):
                indeg[child] -= 1
                if indeg[child] == 0:
                    queue.append(child)

        if len(result) != len(wanted):
            stuck = sorted(i for i, d in indeg.items() if d > 0)
            raise CycleDetected(stuck)
        return result

    def dependencies(self, drv_id: str) -> set[str]:
        """Transitive input derivations of drv_id."""
        seen: set[str] = set()
        todo = [drv_id]
        while todo:
            for dep in self._nodes[todo.pop()].input_derivations():
                if dep.id not in seen:
                    seen.add(dep.id)
                    todo.append(dep.id)
        return seen

    def dependents(self, drv_id: str) -> set[str]:
        """Every derivation in the graph that transitively depends on drv_id."""
        return {i for i in self._nodes if drv_id in self.dependencies(i)}

    def closure(self, ids: Iterable[str]) -> set[str]:
        result: set[str] = set()
        for drv_id in ids:
            if drv_id not in self._nodes:
                raise UnresolvedInput("closure", drv_id)
            result.add(drv_id)
            result |= self.dependencies(drv_id)
        return result
