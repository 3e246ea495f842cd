#!/usr/bin/env python3
"""dervish — build derivations into a content-addressed store and run tools
in environments composed from them."""

import argparse
import json
import logging
import runpy
import shlex
import sys
from pathlib import Path

from dervish import base32, derivation, nar
from dervish.builder import Builder
from dervish.config import Settings
from dervish.derivation import Derivation
from dervish.environment import EnvironmentSpec, invoke
from dervish.errors import (
    DeclarationError,
    DervishError,
    FetchError,
    HashMismatch,
    IntegrityError,
)
from dervish.fetcher import ArchiveKind, UrlTransport, prefetch
from dervish.graph import DerivationGraph
from dervish.hash import sha256, to_sri
from dervish.store import Store

logger = logging.getLogger("dervish")

EXIT_BUILD_FAILED = 100
EXIT_HASH_MISMATCH = 102
EXIT_FETCH_FAILED = 103
EXIT_DECLARATION = 104
EXIT_INTERRUPTED = 130


def exit_code_for(error: DervishError) -> int:
    if isinstance(error, HashMismatch):
        return EXIT_HASH_MISMATCH
    if isinstance(error, FetchError):
        return EXIT_FETCH_FAILED
    if isinstance(error, (DeclarationError, IntegrityError)):
        return EXIT_DECLARATION
    return EXIT_BUILD_FAILED


def _print_hash(digest: bytes, args) -> None:
    if args.sri:
        print(to_sri(digest))
    elif args.base32:
        print(f"sha256:{base32.encode(digest)}")
    else:
        print(f"sha256:{digest.hex()}")


# --- declaration files ---

def load_declarations(path: str) -> dict:
    """Run a Python declaration file and return its globals."""
    try:
        return runpy.run_path(path, run_name="__dervish__")
    except DervishError:
        raise
    except (OSError, SyntaxError) as e:
        raise DeclarationError(f"cannot load {path}: {e}") from e


def select(namespace: dict, attr: str | None, path: str):
    """Look up a possibly dotted attribute (``pkgs.z3``) in a declaration file.

    Without attr, ``default`` is used, then ``shell``.
    """
    if attr is None:
        for candidate in ("default", "shell"):
            if candidate in namespace:
                return namespace[candidate]
        raise DeclarationError(f"{path} defines neither 'default' nor 'shell'")
    head, *rest = attr.split(".")
    if head not in namespace:
        raise DeclarationError(f"{path} has no attribute {head!r}")
    obj = namespace[head]
    for part in rest:
        if not hasattr(obj, part):
            raise DeclarationError(f"{path}: {attr!r} does not resolve at {part!r}")
        obj = getattr(obj, part)
    return obj


def _as_environment_spec(obj, what: str) -> EnvironmentSpec:
    spec = obj if isinstance(obj, EnvironmentSpec) else getattr(obj, "spec", None)
    if not isinstance(spec, EnvironmentSpec):
        raise DeclarationError(f"{what} is not a shell or environment spec")
    return spec


def _as_derivations(obj, what: str) -> list[Derivation]:
    if isinstance(obj, Derivation):
        return [obj]
    if isinstance(obj, EnvironmentSpec) or isinstance(getattr(obj, "spec", None), EnvironmentSpec):
        spec = _as_environment_spec(obj, what)
        return [r for r in spec.references() if isinstance(r, Derivation)]
    raise DeclarationError(f"{what} is not a derivation or shell")


# --- commands ---

def cmd_hash_path(args, settings):
    _print_hash(nar.nar_hash(args.path), args)


def cmd_hash_file(args, settings):
    with open(args.path, "rb") as f:
        _print_hash(sha256(f.read()), args)


def cmd_prefetch(args, settings):
    kind = ArchiveKind(args.unpack) if args.unpack else ArchiveKind.NONE
    print(prefetch(args.url, kind, UrlTransport(settings.fetch_timeout)))


def cmd_drv_show(args, settings):
    path = Path(args.drv)
    if path.exists():
        text = path.read_text()
    else:
        with Store(settings.store_root) as store:
            text = store.derivation_text(args.drv)
        if text is None:
            print(f"error: no such derivation: {args.drv}", file=sys.stderr)
            return 1
    json.dump(derivation.parse(text), sys.stdout, indent=2)
    print()


def cmd_path_info(args, settings):
    with Store(settings.store_root) as store:
        entry = store.lookup(args.id)
        if entry is None:
            print(f"error: {args.id} is not valid", file=sys.stderr)
            return 1
        print(f"path: {entry.path}")
        print(f"status: {entry.status.value}")
        print(f"nar-hash: {to_sri(nar.nar_hash(entry.path))}")
        print(f"references: {' '.join(store.references(args.id))}")
        print(f"referrers: {' '.join(store.referrers(args.id))}")
        print(f"root: {'yes' if args.id in store.roots() else 'no'}")


def cmd_build(args, settings):
    namespace = load_declarations(args.file)
    attrs = args.attrs or [None]
    targets: list[Derivation] = []
    for attr in attrs:
        targets.extend(_as_derivations(select(namespace, attr, args.file), attr or args.file))
    graph = DerivationGraph.from_roots(targets)
    with Store(settings.store_root) as store:
        realized = Builder(store, settings=settings).realize(graph, targets)
        for drv in targets:
            if not args.no_root:
                store.add_root(drv.id)
            print(realized[drv.id].path)


def _environment(args, settings, store: Store):
    namespace = load_declarations(args.file)
    spec = _as_environment_spec(select(namespace, args.attr, args.file), args.attr or args.file)
    return Builder(store, settings=settings).realize_environment(spec)


def cmd_env(args, settings):
    with Store(settings.store_root) as store:
        env = _environment(args, settings, store)
    sys.stdout.write(env.to_shell())


def cmd_run(args, settings):
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("error: no command given", file=sys.stderr)
        return 2
    with Store(settings.store_root) as store:
        env = _environment(args, settings, store)
    logger.info("running %s", shlex.join(command))
    return invoke(env, command)


def cmd_gc(args, settings):
    with Store(settings.store_root) as store:
        removed = store.collect_garbage()
    for store_id in removed:
        print(f"deleted {store_id}")
    print(f"{len(removed)} store entries deleted")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dervish", description=__doc__.splitlines()[0])
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    parser.add_argument("--store", help="Store root (default: $DERVISH_STORE_ROOT)")
    parser.add_argument("-j", "--max-jobs", type=int, help="Parallel builds")
    sub = parser.add_subparsers(dest="command_name")

    # hash-path
    p = sub.add_parser("hash-path", help="Hash a path in NAR format")
    p.add_argument("path")
    p.add_argument("--base32", action="store_true")
    p.add_argument("--sri", action="store_true")
    p.set_defaults(func=cmd_hash_path)

    # hash-file
    p = sub.add_parser("hash-file", help="Hash a file (flat, not NAR)")
    p.add_argument("path")
    p.add_argument("--base32", action="store_true")
    p.add_argument("--sri", action="store_true")
    p.set_defaults(func=cmd_hash_file)

    # prefetch
    p = sub.add_parser("prefetch", help="Download a URL and print the hash to declare")
    p.add_argument("url")
    p.add_argument("--unpack", choices=[ArchiveKind.ZIP.value, ArchiveKind.TARBALL.value],
                   help="Hash the unpacked tree instead of the bytes")
    p.set_defaults(func=cmd_prefetch)

    # drv-show
    p = sub.add_parser("drv-show", help="Show a registered derivation as JSON")
    p.add_argument("drv", help="A .drv file or a store id")
    p.set_defaults(func=cmd_drv_show)

    # path-info
    p = sub.add_parser("path-info", help="Show a store entry")
    p.add_argument("id")
    p.set_defaults(func=cmd_path_info)

    # build
    p = sub.add_parser("build", help="Realize derivations from a declaration file")
    p.add_argument("-f", "--file", required=True)
    p.add_argument("attrs", nargs="*", help="Attributes to build (default: default or shell)")
    p.add_argument("--no-root", action="store_true", help="Do not register the outputs as GC roots")
    p.add_argument("-k", "--keep-going", action="store_true")
    p.set_defaults(func=cmd_build)

    # env
    p = sub.add_parser("env", help="Print the composed environment as shell exports")
    p.add_argument("-f", "--file", required=True)
    p.add_argument("--attr")
    p.set_defaults(func=cmd_env)

    # run
    p = sub.add_parser("run", help="Run a command in the composed environment")
    p.add_argument("-f", "--file", required=True)
    p.add_argument("--attr")
    p.add_argument("command", nargs=argparse.REMAINDER)
    p.set_defaults(func=cmd_run)

    # gc
    p = sub.add_parser("gc", help="Delete unreferenced store entries")
    p.set_defaults(func=cmd_gc)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command_name:
        parser.print_help()
        return 1

    overrides = {}
    if args.store:
        overrides["store_root"] = Path(args.store)
    if args.max_jobs:
        overrides["max_jobs"] = args.max_jobs
    if getattr(args, "keep_going", False):
        overrides["keep_going"] = True
    settings = Settings(**overrides)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        return args.func(args, settings) or 0
    except DervishError as e:
        print(f"error: {e}", file=sys.stderr)
        return exit_code_for(e)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
