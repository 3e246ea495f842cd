"""Realize a derivation graph into the store.

For each derivation, in dependency order and in parallel where the graph
allows:

  1. cache check: a valid store entry under the derivation's id is reused
  2. claim the id (waiting out a concurrent build of the same id)
  3. fetch FetchSpec inputs, collect realized input derivations
  4. run the phases in declared order in a fresh scratch directory,
     with $out pointing at the store's staging path
  5. rewrite staging-path references to the final path and commit

Any failure discards the staging output (Store.abort). An interrupt stops
scheduling; builds already running stop at the next phase boundary and
are never committed. Derivations that depend on a failed one are never
attempted; the first root cause is raised once, however many derivations
depend on it.
"""

import logging
import os
import shutil
import stat
import subprocess
import tempfile
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Iterable

from dervish.config import Settings
from dervish.derivation import Derivation, Phase, PhaseSpec, is_reference
from dervish.environment import Environment, EnvironmentSpec, compose
from dervish.errors import (
    BuildFailed,
    Cancelled,
    DependencyFailed,
    FetchError,
    PatchError,
)
from dervish.fetcher import ArchiveKind, Fetcher, UrlTransport, archive_kind_for, unpack_archive
from dervish.graph import DerivationGraph
from dervish.patcher import Patcher, ShebangRule, rewrite_references
from dervish.store import BuildHandle, Store, StoreEntry

logger = logging.getLogger(__name__)

LOG_TAIL_LINES = 25
POLL_INTERVAL = 0.1  # seconds between interrupt checks while builds run

Runner = Callable[[list[str], Path, dict[str, str], Path], int]


def run_script(argv: list[str], cwd: Path, env: dict[str, str], log_path: Path) -> int:
    """Run argv in cwd with exactly env; stdout and stderr go to log_path."""
    with open(log_path, "ab") as log:
        proc = subprocess.run(
            argv, cwd=cwd, env=env,
            stdin=subprocess.DEVNULL, stdout=log, stderr=subprocess.STDOUT,
        )
    return proc.returncode


def _log_tail(log_path: Path, start: int = 0) -> str:
    if not log_path.exists():
        return ""
    with open(log_path, "rb") as f:
        f.seek(start)
        lines = f.read().decode(errors="replace").splitlines()
    return "\n".join(lines[-LOG_TAIL_LINES:])


def _make_writable(root: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(root):
        for name in [dirpath] + [os.path.join(dirpath, n) for n in dirnames + filenames]:
            if not os.path.islink(name):
                mode = os.stat(name).st_mode
                os.chmod(name, mode | stat.S_IWUSR)


class _BuildContext:
    """Everything one derivation's phases need."""

    def __init__(self, drv: Derivation, handle: BuildHandle, work: Path,
                 ref_paths: dict[str, Path], cancel: threading.Event):
        self.drv = drv
        self.handle = handle
        self.work = work
        self.source = work / "source"
        self.out = handle.staging_path
        self.log_path = work / "build.log"
        self.ref_paths = ref_paths
        self.cancel = cancel
        paths = [ref_paths[r.id] for r in drv.references()]
        self.bin_dirs = [str(p / "bin") for p in paths if (p / "bin").is_dir()]
        self.lib_dirs = [str(p / "lib") for p in paths if (p / "lib").is_dir()]

    @property
    def cwd(self) -> Path:
        return self.source if self.source.is_dir() else self.work


class Builder:
    def __init__(self, store: Store, fetcher: Fetcher | None = None,
                 patcher: Patcher | None = None, settings: Settings | None = None,
                 runner: Runner = run_script):
        self.settings = settings or Settings()
        self.store = store
        self.fetcher = fetcher or Fetcher(store, UrlTransport(self.settings.fetch_timeout))
        self.patcher = patcher or Patcher(self.settings.patchelf)
        self.runner = runner

    # --- scheduling ---

    def realize(self, graph: DerivationGraph,
                targets: Iterable[Derivation | str] | None = None) -> dict[str, StoreEntry]:
        """Realize targets (default: the whole graph) and everything they need.

        Returns a mapping of derivation id to committed store entry.
        """
        target_ids = None if targets is None else [
            t.id if isinstance(t, Derivation) else t for t in targets
        ]
        order = graph.topological_order(target_ids)
        pending = {d.id: d for d in order}
        deps = {d.id: {x.id for x in d.input_derivations()} for d in order}
        realized: dict[str, StoreEntry] = {}
        failed: dict[str, str] = {}  # id → id of the root-cause failure
        root_cause: Exception | None = None
        running: dict[Future, str] = {}
        cancel = threading.Event()

        logger.info("realizing %d derivations", len(order))
        pool = ThreadPoolExecutor(max_workers=self.settings.max_jobs,
                                  thread_name_prefix="dervish-build")
        try:
            while pending or running:
                for drv_id in list(pending):
                    bad = next((d for d in sorted(deps[drv_id]) if d in failed), None)
                    if bad is not None:
                        pending.pop(drv_id)
                        failed[drv_id] = failed[bad]
                        logger.info("%s", DependencyFailed(drv_id, failed[bad]))

                if root_cause is None or self.settings.keep_going:
                    for drv_id in [i for i in pending if deps[i] <= realized.keys()]:
                        drv = pending.pop(drv_id)
                        inputs = {d: realized[d] for d in deps[drv_id]}
                        running[pool.submit(self._realize_one, drv, inputs, cancel)] = drv_id

                if not running:
                    break

                done, _ = wait(running, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for fut in done:
                    drv_id = running.pop(fut)
                    try:
                        realized[drv_id] = fut.result()
                    except Exception as e:
                        failed[drv_id] = drv_id
                        logger.error("%s", e)
                        if root_cause is None:
                            root_cause = e
        except BaseException:
            cancel.set()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

        if root_cause is not None:
            raise root_cause
        return realized

    def realize_environment(self, spec: EnvironmentSpec) -> Environment:
        """Realize everything spec references and compose the result."""
        refs = spec.references()
        roots = [r for r in refs if isinstance(r, Derivation)]
        realized: dict[str, StoreEntry] = dict(
            self.realize(DerivationGraph.from_roots(roots), roots) if roots else {}
        )
        for ref in refs:
            if not isinstance(ref, Derivation):
                realized[ref.id] = self.fetcher.fetch(ref)
        return compose(spec, realized)

    # --- one derivation ---

    def _realize_one(self, drv: Derivation, inputs: dict[str, StoreEntry],
                     cancel: threading.Event) -> StoreEntry:
        if cancel.is_set():
            raise Cancelled(drv.id)
        claimed = self.store.claim(drv.id)
        if isinstance(claimed, StoreEntry):
            logger.debug("cache hit: %s", drv.id)
            return claimed

        handle = claimed
        if self.settings.build_dir is not None:
            self.settings.build_dir.mkdir(parents=True, exist_ok=True)
        work = Path(tempfile.mkdtemp(prefix=f"dervish-build-{drv.name}-",
                                     dir=self.settings.build_dir))
        succeeded = False
        try:
            self.store.register_derivation(drv.id, drv.canonical_text())
            entry = self._build(drv, handle, inputs, work, cancel)
            succeeded = True
            return entry
        except BaseException:
            self.store.abort(handle)
            raise
        finally:
            if succeeded or not self.settings.keep_failed:
                shutil.rmtree(work, ignore_errors=True)
            else:
                logger.warning("keeping build directory of %s: %s", drv.id, work)

    def _build(self, drv: Derivation, handle: BuildHandle, inputs: dict[str, StoreEntry],
               work: Path, cancel: threading.Event) -> StoreEntry:
        logger.info("building %s", drv.id)
        ref_paths = {drv_id: entry.path for drv_id, entry in inputs.items()}
        for spec in drv.input_fetches():
            try:
                ref_paths[spec.id] = self.fetcher.fetch(spec).path
            except FetchError as e:
                e.needed_by = drv.id
                e.phase = Phase.UNPACK
                raise

        ctx = _BuildContext(drv, handle, work, ref_paths, cancel)
        env = self._environment(ctx)

        for phase in drv.phases:
            if cancel.is_set():
                raise Cancelled(drv.id)
            logger.info("%s: %s phase", drv.name, phase.name.value)
            try:
                self._run_phase(ctx, phase, env)
            except BuildFailed as e:
                if not phase.optional:
                    raise
                logger.warning("optional %s phase of %s failed: %s",
                               phase.name.value, drv.id, e.cause)
            except (OSError, ValueError, PatchError) as e:
                if not phase.optional:
                    raise BuildFailed(drv.id, phase.name, str(e)) from e
                logger.warning("optional %s phase of %s failed: %s", phase.name.value, drv.id, e)

        if not os.path.lexists(ctx.out):
            raise BuildFailed(drv.id, Phase.INSTALL, "no output was produced at $out")

        final = self.store.path_of(drv.id)
        rewrite_references(ctx.out, str(ctx.out), str(final))
        if cancel.is_set():
            raise Cancelled(drv.id)
        return self.store.commit(handle, references=list(ref_paths))

    def _environment(self, ctx: _BuildContext) -> dict[str, str]:
        tmp = ctx.work / "tmp"
        tmp.mkdir()
        env = {
            "PATH": os.pathsep.join(ctx.bin_dirs + [self.settings.build_path]),
            "HOME": "/homeless-shelter",
            "TMPDIR": str(tmp),
            "DERVISH_BUILD_TOP": str(ctx.work),
            "NIX_BUILD_CORES": str(self.settings.cores or os.cpu_count() or 1),
            "out": str(ctx.out),
        }
        for name, ref in ctx.drv.inputs:
            env[name] = str(ctx.ref_paths[ref.id])
        for key, value in ctx.drv.env.items():
            env[key] = str(ctx.ref_paths[value.id]) if is_reference(value) else value
        return env

    # --- phases ---

    def _run_phase(self, ctx: _BuildContext, phase: PhaseSpec, env: dict[str, str]) -> None:
        if isinstance(phase.action, str):
            self._run_script(ctx, phase, phase.action, env)
        elif phase.name is Phase.UNPACK:
            self._default_unpack(ctx)
        elif phase.name is Phase.PATCH:
            rules = phase.rules or (ShebangRule(),)
            roots = {"source": ctx.source, "out": ctx.out}
            lib_dirs = ctx.lib_dirs + [str(ctx.out / "lib")]
            for rule in rules:
                self.patcher.apply(rule, roots, ctx.bin_dirs, lib_dirs)
        elif phase.name is Phase.CONFIGURE:
            if os.access(ctx.cwd / "configure", os.X_OK):
                self._run_script(ctx, phase, './configure --prefix="$out"', env)
        elif phase.name is Phase.BUILD:
            if any((ctx.cwd / m).exists() for m in ("GNUmakefile", "makefile", "Makefile")):
                self._run_script(
                    ctx, phase, 'make ${enableParallelBuilding:+-j"$NIX_BUILD_CORES"}', env,
                )
        elif phase.name is Phase.INSTALL:
            shutil.copytree(ctx.cwd, ctx.out, symlinks=True)

    def _run_script(self, ctx: _BuildContext, phase: PhaseSpec, script: str,
                    env: dict[str, str]) -> None:
        start = ctx.log_path.stat().st_size if ctx.log_path.exists() else 0
        argv = [self.settings.shell, "-e", "-c", script]
        try:
            status = self.runner(argv, ctx.cwd, env, ctx.log_path)
        except OSError as e:
            raise BuildFailed(ctx.drv.id, phase.name, f"cannot run {argv[0]}: {e}") from e
        output = _log_tail(ctx.log_path, start)
        if output:
            logger.debug("%s %s output:\n%s", ctx.drv.name, phase.name.value, output)
        if status != 0:
            cause = f"script exited with status {status}"
            if output:
                cause += "\n" + output
            raise BuildFailed(ctx.drv.id, phase.name, cause)

    def _default_unpack(self, ctx: _BuildContext) -> None:
        """Stage the ``src`` input as the source directory."""
        src = ctx.drv.input("src")
        if src is None:
            ctx.source.mkdir()
            return
        path = ctx.ref_paths[src.id]
        if path.is_dir():
            shutil.copytree(path, ctx.source, symlinks=True)
        else:
            url = getattr(src, "url", "")
            kind = archive_kind_for(url or path.name)
            if kind is ArchiveKind.NONE:
                kind = archive_kind_for(path.name)
            if kind is ArchiveKind.NONE:
                ctx.source.mkdir()
                shutil.copy2(path, ctx.source / path.name.split("-", 1)[1])
            else:
                unpack_archive(path, kind, ctx.source, strip_root=True)
        _make_writable(ctx.source)
