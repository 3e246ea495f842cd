"""Build a package or a shell into the store.

This is the Python equivalent of nix-build / nix-shell: it collects the
closure of the target, realizes it with a Builder, and returns the
output path (or, for a shell, the composed Environment).
"""

from contextlib import nullcontext

from dervish.builder import Builder
from dervish.config import Settings
from dervish.derivation import Derivation
from dervish.environment import Environment
from dervish.graph import DerivationGraph
from dervish.store import Store
from dervishpkgs.shell import Shell


def _store(store: Store | None, settings: Settings):
    if store is not None:
        return nullcontext(store)
    return Store(settings.store_root)


def realize(pkg: Derivation, store: Store | None = None,
            settings: Settings | None = None) -> str:
    """Realize pkg and everything it needs. Returns the output path.

    If store is provided, uses it. Otherwise opens the configured one.
    """
    settings = settings or Settings()
    with _store(store, settings) as s:
        graph = DerivationGraph.from_roots([pkg])
        realized = Builder(s, settings=settings).realize(graph, [pkg])
        return str(realized[pkg.id].path)


def realize_shell(shell: Shell, store: Store | None = None,
                  settings: Settings | None = None) -> Environment:
    """Realize everything shell refers to and compose its environment."""
    settings = settings or Settings()
    with _store(store, settings) as s:
        return Builder(s, settings=settings).realize_environment(shell.spec)
