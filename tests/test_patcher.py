"""Tests for interpreter and load-path patching."""

import os
from pathlib import Path

import pytest

from dervish.errors import PatchError
from dervish.patcher import LoadPathRule, Patcher, ShebangRule, rewrite_references

FAKE_PATCHELF = """\
#!/bin/sh
state={state}
case "$1" in
  --print-needed) cat "$state/$(basename "$2").needed" ;;
  --print-rpath) cat "$state/$(basename "$2").rpath" 2>/dev/null || true ;;
  --set-rpath) printf '%s\\n' "$2" > "$state/$(basename "$3").rpath"
               echo "$3" >> "$state/set-calls" ;;
  *) exit 1 ;;
esac
"""


def _exe(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    path.chmod(0o755)
    return path


@pytest.fixture
def bin_dir(tmp_path):
    d = tmp_path / "inputs" / "bin"
    for prog in ("python3", "bash", "perl"):
        _exe(d / prog, "#!/bin/sh\n")
    return d


@pytest.fixture
def fake_patchelf(tmp_path):
    state = tmp_path / "patchelf-state"
    state.mkdir()
    script = _exe(tmp_path / "tools" / "patchelf", FAKE_PATCHELF.format(state=state))
    return str(script), state


def test_shebang_rewritten(tmp_path, bin_dir):
    root = tmp_path / "src"
    env_script = _exe(root / "utils" / "gen.py", "#!/usr/bin/env python3\nprint(1)\n")
    direct = _exe(root / "utils" / "run.sh", "#!/bin/bash -e\necho hi\n")
    plain = root / "README"
    plain.write_text("no shebang\n")

    changed = Patcher().patch_interpreters(root, [str(bin_dir)])

    assert sorted(changed) == sorted([env_script, direct])
    assert env_script.read_text() == f"#!{bin_dir}/python3\nprint(1)\n"
    assert direct.read_text() == f"#!{bin_dir}/bash -e\necho hi\n"
    assert os.access(direct, os.X_OK)
    assert plain.read_text() == "no shebang\n"


def test_shebang_patching_is_idempotent(tmp_path, bin_dir):
    root = tmp_path / "src"
    script = _exe(root / "x.pl", "#!/usr/bin/perl -w\n1;\n")
    patcher = Patcher()
    assert patcher.patch_interpreters(root, [str(bin_dir)]) == [script]
    once = script.read_bytes()
    assert patcher.patch_interpreters(root, [str(bin_dir)]) == []
    assert patcher.patch_interpreters(root, [str(bin_dir)]) == []
    assert script.read_bytes() == once


def test_missing_interpreter(tmp_path, bin_dir):
    root = tmp_path / "src"
    script = _exe(root / "x", "#!/usr/bin/env ruby\n")
    assert Patcher().patch_interpreters(root, [str(bin_dir)]) == []
    assert script.read_text() == "#!/usr/bin/env ruby\n"
    with pytest.raises(PatchError, match="ruby"):
        Patcher().patch_interpreters(root, [str(bin_dir)], strict=True)


def test_read_only_script_patched_and_mode_kept(tmp_path, bin_dir):
    root = tmp_path / "src"
    script = _exe(root / "x", "#!/bin/bash\n")
    script.chmod(0o555)
    Patcher().patch_interpreters(root, [str(bin_dir)])
    assert script.read_text().startswith(f"#!{bin_dir}/bash")
    assert script.stat().st_mode & 0o777 == 0o555


def test_load_paths_set_once(tmp_path, fake_patchelf):
    patchelf, state = fake_patchelf
    lib_a = tmp_path / "deps" / "a" / "lib"
    lib_b = tmp_path / "deps" / "b" / "lib"
    for d, name in ((lib_a, "libfoo.so.1"), (lib_b, "libbar.so.2")):
        d.mkdir(parents=True)
        (d / name).write_bytes(b"\x7fELF")
    out = tmp_path / "out"
    binary = _exe(out / "bin" / "tool", "")
    binary.write_bytes(b"\x7fELF\x02\x01\x01")
    _exe(out / "bin" / "script", "#!/bin/sh\n")
    (state / "tool.needed").write_text("libbar.so.2\nlibc.so.6\nlibfoo.so.1\n")

    patcher = Patcher(patchelf, default_lib_dirs=(str(tmp_path / "system"),))
    search = [str(lib_a), str(lib_b)]
    assert patcher.patch_binary_load_paths(out, search) == [binary]
    assert (state / "tool.rpath").read_text().strip() == f"{lib_b}:{lib_a}"

    # Second and third runs find the rpath already right.
    assert patcher.patch_binary_load_paths(out, search) == []
    assert patcher.patch_binary_load_paths(out, search) == []
    assert (state / "set-calls").read_text().splitlines() == [str(binary)]


def test_missing_library_strict(tmp_path, fake_patchelf):
    patchelf, state = fake_patchelf
    out = tmp_path / "out"
    binary = out / "tool"
    out.mkdir()
    binary.write_bytes(b"\x7fELF")
    (state / "tool.needed").write_text("libmissing.so\n")
    patcher = Patcher(patchelf, default_lib_dirs=())
    assert patcher.patch_binary_load_paths(out, []) == []
    with pytest.raises(PatchError, match="libmissing.so"):
        patcher.patch_binary_load_paths(out, [], strict=True)


def test_patchelf_missing(tmp_path):
    out = tmp_path / "out"
    out.mkdir()
    (out / "tool").write_bytes(b"\x7fELF")
    with pytest.raises(PatchError, match="not found"):
        Patcher(str(tmp_path / "no-patchelf")).patch_binary_load_paths(out, [])


def test_apply_dispatches_rules(tmp_path, bin_dir):
    source = tmp_path / "source"
    script = _exe(source / "utils" / "x.sh", "#!/bin/bash\n")
    outside = _exe(source / "other" / "y.sh", "#!/bin/bash\n")
    patcher = Patcher()
    roots = {"source": source, "out": tmp_path / "out"}

    assert patcher.apply(ShebangRule("utils"), roots, [str(bin_dir)], []) == [script]
    assert outside.read_text() == "#!/bin/bash\n"
    # $out does not exist yet: nothing to do unless strict.
    assert patcher.apply(LoadPathRule(), roots, [], []) == []
    with pytest.raises(PatchError):
        patcher.apply(LoadPathRule(strict=True), roots, [], [])
    with pytest.raises(PatchError, match="unknown patch target"):
        patcher.apply(ShebangRule(target="elsewhere"), roots, [], [])


def test_rewrite_references(tmp_path):
    old, new = "/store/aaaa-pkg", "/store/bbbb-pkg"
    root = tmp_path / "out"
    (root / "bin").mkdir(parents=True)
    data = root / "bin" / "tool"
    data.write_bytes(b"\x7fELF..." + old.encode() + b"/lib\0")
    data.chmod(0o555)
    (root / "link").symlink_to(f"{old}/bin/tool")
    untouched = root / "README"
    untouched.write_text("nothing here")

    changed = rewrite_references(root, old, new)

    assert sorted(changed) == sorted([data, root / "link"])
    assert data.read_bytes() == b"\x7fELF..." + new.encode() + b"/lib\0"
    assert data.stat().st_mode & 0o777 == 0o555
    assert os.readlink(root / "link") == f"{new}/bin/tool"


def test_rewrite_references_needs_equal_length(tmp_path):
    with pytest.raises(ValueError):
        rewrite_references(tmp_path, "short", "longer")
