"""Tests for realizing derivation graphs."""

import _thread
import io
import os
import shutil
import tarfile
import threading

import pytest

from dervish.builder import Builder, run_script
from dervish.config import Settings
from dervish.derivation import Derivation, Phase, PhaseSpec
from dervish.errors import BuildFailed, HashMismatch
from dervish.fetcher import ArchiveKind, Fetcher, FetchSpec, unpack_archive
from dervish.graph import DerivationGraph
from dervish.hash import sha256, to_sri
from dervish.nar import nar_hash
from dervish.store import Store


class CountingRunner:
    """Runs scripts for real and records which derivations ran them."""

    def __init__(self, interrupt_in=None):
        self.calls = []
        self.interrupt_in = interrupt_in
        self.lock = threading.Lock()

    def __call__(self, argv, cwd, env, log_path):
        with self.lock:
            self.calls.append(env["out"].rsplit("-", 1)[-1])
        status = run_script(argv, cwd, env, log_path)
        if self.interrupt_in and env["out"].endswith("-" + self.interrupt_in):
            raise KeyboardInterrupt
        return status

    def ran(self, name):
        return self.calls.count(name)


class FakeTransport:
    def __init__(self, responses):
        self.responses = responses

    def fetch(self, url):
        return self.responses[url]


@pytest.fixture
def settings(tmp_path):
    return Settings(store_root=tmp_path / "root", build_dir=tmp_path / "build", max_jobs=2)


@pytest.fixture
def store(settings):
    with Store(settings.store_root) as s:
        yield s


def _drv(name, script, phase=Phase.INSTALL, **kwargs):
    return Derivation(name, phases=(PhaseSpec(phase, script),), **kwargs)


def _realize(store, settings, roots, runner=run_script, transport=None):
    builder = Builder(store, settings=settings, runner=runner,
                      fetcher=Fetcher(store, transport) if transport else None)
    return builder.realize(DerivationGraph.from_roots(roots))


def test_realize_single(store, settings):
    hello = _drv("hello", "echo hello > $out")
    realized = _realize(store, settings, [hello])
    assert realized[hello.id].path.read_text() == "hello\n"
    assert store.lookup(hello.id) == realized[hello.id]
    assert store.derivation_text(hello.id) == hello.canonical_text()


def test_second_realize_does_no_work(store, settings):
    a = _drv("a", "echo a > $out")
    b = _drv("b", 'cat "$a" > $out; echo b >> $out', inputs={"a": a})
    first = _realize(store, settings, [b])

    runner = CountingRunner()
    second = _realize(store, settings, [b], runner)
    assert runner.calls == []
    assert second == first
    assert second[b.id].path.read_text() == "a\nb\n"


def test_env_reference_substituted(store, settings):
    tool = _drv("tool", "echo tool > $out")
    user = _drv("user", 'cat "$TOOL" > $out', env={"TOOL": tool, "MODE": "x"})
    realized = _realize(store, settings, [user])
    assert realized[user.id].path.read_text() == "tool\n"
    assert store.references(user.id) == [tool.id]


def test_build_environment(store, settings):
    dep = _drv("dep", 'mkdir -p $out/bin; printf "#!/bin/sh\\necho from-dep\\n" > $out/bin/dep-tool; '
                      "chmod +x $out/bin/dep-tool")
    inspect = _drv("inspect", 'mkdir $out; dep-tool > $out/tool; echo "$HOME" > $out/home; '
                              'echo "$NIX_BUILD_CORES" > $out/cores; test -d "$TMPDIR"',
                   inputs={"dep": dep})
    out = _realize(store, settings, [inspect])[inspect.id].path
    assert (out / "tool").read_text() == "from-dep\n"
    assert (out / "home").read_text() == "/homeless-shelter\n"
    assert (out / "cores").read_text() == "1\n"


def test_zero_cores_means_every_cpu(store, settings):
    settings = settings.model_copy(update={"cores": 0})
    pkg = _drv("cores", 'echo "$NIX_BUILD_CORES" > $out')
    out = _realize(store, settings, [pkg])[pkg.id].path
    assert out.read_text() == f"{os.cpu_count() or 1}\n"


@pytest.mark.skipif(shutil.which("make") is None, reason="make not installed")
def test_parallel_make_with_zero_cores(store, settings):
    settings = settings.model_copy(update={"cores": 0})
    pkg = Derivation("parallel", env={"enableParallelBuilding": "1"}, phases=(
        PhaseSpec(Phase.UNPACK),
        PhaseSpec(Phase.CONFIGURE, "printf 'all:\\n\\techo built > result\\n' > Makefile"),
        PhaseSpec(Phase.BUILD),
        PhaseSpec(Phase.INSTALL, "cp result $out"),
    ))
    assert _realize(store, settings, [pkg])[pkg.id].path.read_text() == "built\n"


def test_staging_path_rewritten_to_final(store, settings):
    pkg = _drv("selfref", 'mkdir $out; echo "$out" > $out/self; ln -s "$out/self" $out/link')
    out = _realize(store, settings, [pkg])[pkg.id].path
    assert (out / "self").read_text() == f"{out}\n"
    assert (out / "link").resolve() == (out / "self").resolve()


def test_failure_short_circuits_dependents(store, settings):
    """A's build phase fails, B (which needs A) is never attempted."""
    a = _drv("a", "echo boom >&2; exit 3", phase=Phase.BUILD)
    b = _drv("b", 'cat "$a" > $out', inputs={"a": a})
    runner = CountingRunner()

    with pytest.raises(BuildFailed) as info:
        _realize(store, settings, [b], runner)

    err = info.value
    assert err.drv_id == a.id
    assert err.phase is Phase.BUILD
    assert "status 3" in err.cause and "boom" in err.cause
    assert runner.ran("b") == 0
    assert store.lookup(a.id) is None
    assert store.lookup(b.id) is None
    assert store.valid_ids() == []


def test_keep_going_builds_independent_nodes(store, settings):
    settings = settings.model_copy(update={"keep_going": True, "max_jobs": 1})
    bad = _drv("bad", "exit 1")
    good = _drv("good", "echo ok > $out")
    with pytest.raises(BuildFailed):
        _realize(store, settings, [bad, good])
    assert store.lookup(good.id) is not None


def test_optional_phase_failure_is_tolerated(store, settings):
    pkg = Derivation("opt", phases=(
        PhaseSpec(Phase.BUILD, "exit 1", optional=True),
        PhaseSpec(Phase.INSTALL, "echo done > $out"),
    ))
    assert _realize(store, settings, [pkg])[pkg.id].path.read_text() == "done\n"


def test_no_output_fails_install(store, settings):
    pkg = _drv("nothing", "true")
    with pytest.raises(BuildFailed) as info:
        _realize(store, settings, [pkg])
    assert info.value.phase is Phase.INSTALL


def test_failed_build_leaves_no_scratch(store, settings):
    pkg = _drv("broken", "exit 1")
    with pytest.raises(BuildFailed):
        _realize(store, settings, [pkg])
    assert list(settings.build_dir.iterdir()) == []


def test_keep_failed_keeps_scratch_only(store, settings):
    settings = settings.model_copy(update={"keep_failed": True})
    pkg = _drv("broken", "echo partial > $out; exit 1")
    with pytest.raises(BuildFailed):
        _realize(store, settings, [pkg])
    kept = list(settings.build_dir.iterdir())
    assert len(kept) == 1 and (kept[0] / "build.log").exists()
    assert store.lookup(pkg.id) is None
    assert not store.path_of(pkg.id).exists()


def test_concurrent_realize_builds_shared_dependency_once(store, settings, tmp_path):
    counter = tmp_path / "counter"
    shared = _drv("shared", f"echo x >> {counter}; sleep 0.3; echo shared > $out")
    left = _drv("left", 'cat "$shared" > $out', inputs={"shared": shared})
    right = _drv("right", 'cat "$shared" > $out', inputs={"shared": shared})

    results, errors = {}, []

    def worker(root):
        try:
            results[root.name] = _realize(store, settings, [root])
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(r,)) for r in (left, right)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert errors == []
    assert counter.read_text() == "x\n"
    assert results["left"][shared.id] == results["right"][shared.id]


def test_interrupted_install_rebuilds_cleanly(store, settings):
    settings = settings.model_copy(update={"max_jobs": 1})
    sibling = _drv("sibling", "echo sibling > $out")
    victim = _drv("victim", "echo partial > $out")

    with pytest.raises(KeyboardInterrupt):
        _realize(store, settings, [sibling, victim], CountingRunner(interrupt_in="victim"))
    assert store.lookup(victim.id) is None
    assert not store.path_of(victim.id).exists()
    assert store.lookup(sibling.id) is not None

    runner = CountingRunner()
    realized = _realize(store, settings, [sibling, victim], runner)
    assert runner.calls == ["victim"]
    assert realized[victim.id].path.read_text() == "partial\n"


def test_interrupt_during_last_phase_commits_nothing(store, settings):
    """Ctrl-C while the install script runs: the finished output is discarded."""
    victim = _drv("victim", "sleep 0.5; echo done > $out")
    timer = threading.Timer(0.2, _thread.interrupt_main)
    timer.start()
    try:
        with pytest.raises(KeyboardInterrupt):
            _realize(store, settings, [victim])
    finally:
        timer.cancel()
    assert store.lookup(victim.id) is None
    assert not store.path_of(victim.id).exists()

    realized = _realize(store, settings, [victim])
    assert realized[victim.id].path.read_text() == "done\n"


def _tarball():
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data, mode in (("pkg/README", b"hi\n", 0o644),
                                 ("pkg/configure", b"#!/bin/sh\necho configured > configured\n", 0o755)):
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def test_default_phases_from_fetched_source(store, settings, tmp_path):
    data = _tarball()
    expected = to_sri(nar_hash(unpack_archive(data, ArchiveKind.TARBALL, tmp_path / "expected")))
    url = "https://example.org/pkg.tar.gz"
    src = FetchSpec(url, expected, ArchiveKind.TARBALL)
    pkg = Derivation("pkg", inputs={"src": src}, phases=(
        PhaseSpec(Phase.UNPACK),
        PhaseSpec(Phase.PATCH),
        PhaseSpec(Phase.CONFIGURE),
        PhaseSpec(Phase.BUILD),
        PhaseSpec(Phase.INSTALL),
    ))
    realized = _realize(store, settings, [pkg], transport=FakeTransport({url: data}))
    out = realized[pkg.id].path
    assert (out / "README").read_text() == "hi\n"
    assert (out / "configured").read_text() == "configured\n"
    assert store.lookup(src.id) is not None
    assert store.references(pkg.id) == [src.id]


def test_hash_mismatch_fails_realize(store, settings):
    url = "https://example.org/hello.txt"
    src = FetchSpec(url, to_sri(sha256(b"hello")))
    pkg = Derivation("pkg", inputs={"src": src}, phases=(PhaseSpec(Phase.INSTALL, 'cp "$src" $out'),))
    with pytest.raises(HashMismatch) as info:
        _realize(store, settings, [pkg], transport=FakeTransport({url: b"evil"}))
    assert info.value.drv_id == src.id
    assert info.value.needed_by == pkg.id
    assert info.value.phase is Phase.UNPACK
    assert f"needed by {pkg.id} in phase unpack" in str(info.value)
    assert store.valid_ids() == []


def test_realize_environment(store, settings):
    from dervish.environment import EnvironmentSpec, PathRole, Role

    tool = _drv("tool", 'mkdir -p $out/bin; printf "#!/bin/sh\\n" > $out/bin/tool; chmod +x $out/bin/tool')
    spec = EnvironmentSpec({"TOOL_HOME": "${tool}"}, [PathRole(tool, Role.BINARY_SEARCH_PATH, name="tool")])
    env = Builder(store, settings=settings).realize_environment(spec)
    assert env.which("tool") == str(store.path_of(tool.id) / "bin" / "tool")
    assert env.variables["TOOL_HOME"] == str(store.path_of(tool.id))
