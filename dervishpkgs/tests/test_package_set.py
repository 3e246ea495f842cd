"""Tests for PackageSet auto-injection."""

from functools import cached_property

import pytest

from dervish.errors import UnresolvedInput
from dervishpkgs.mk_derivation import mk_derivation
from dervishpkgs.package_set import PackageSet


class ToyPkgs(PackageSet):
    def __init__(self):
        self.built = []

    @cached_property
    def a(self):
        self.built.append("a")
        return mk_derivation(name="a", install="mkdir $out")

    @cached_property
    def b(self):
        self.built.append("b")
        return self.call(lambda a: mk_derivation(name="b", inputs={"a": a}, install="mkdir $out"))

    @cached_property
    def not_a_package(self):
        return "just a string"


def test_call_injects_by_name():
    pkgs = ToyPkgs()
    assert pkgs.b.input("a") is pkgs.a


def test_each_package_declared_once():
    pkgs = ToyPkgs()
    pkgs.b
    pkgs.b
    pkgs.a
    assert pkgs.built == ["b", "a"]


def test_overrides_win():
    pkgs = ToyPkgs()
    other = mk_derivation(name="other", install="mkdir $out")
    assert pkgs.call(lambda a: a, a=other) is other


def test_defaults_fill_missing():
    pkgs = ToyPkgs()
    assert pkgs.call(lambda a, extra=None: (a, extra)) == (pkgs.a, None)


def test_missing_dependency():
    with pytest.raises(UnresolvedInput, match="missing"):
        ToyPkgs().call(lambda missing: missing)


def test_derivations_lists_only_derivations():
    found = ToyPkgs().derivations()
    assert sorted(found) == ["a", "b"]
