"""Source fetchers. Python equivalents of nixpkgs fetchurl, fetchzip,
builtins.fetchTarball and fetchFromGitHub.

Each returns a FetchSpec, which a derivation takes as an input:

    src = fetchurl(
        url="https://github.com/Z3Prover/z3/releases/download/z3-4.12.5/z3-4.12.5-x64-glibc-2.35.zip",
        hash="sha256-8DZXTV4gKckgT/81A8/mjd9B+m/euzm+7ZnhvzVbf+4=",
    )

fetchurl pins the downloaded bytes (a flat hash). fetchzip, fetch_tarball
and fetch_from_github pin the unpacked tree (a NAR hash), so they stay
valid when a forge regenerates its archives.

Hashes may be SRI (``sha256-<base64>``), ``sha256:<hex|nix32>`` or bare
hex/nix32, as they appear in existing Nix expressions.
"""

from dervish.errors import DeclarationError
from dervish.fetcher import ArchiveKind, FetchSpec
from dervish.hash import parse_hash


def _spec(url: str, hash: str, **kwargs) -> FetchSpec:
    try:
        parse_hash(hash)
    except ValueError as e:
        raise DeclarationError(f"bad hash for {url}: {e}") from None
    spec = FetchSpec(url=url, expected_hash=hash, **kwargs)
    try:
        spec.id
    except ValueError as e:
        raise DeclarationError(f"bad fetch name for {url}: {e}") from None
    return spec


def fetchurl(url: str, hash: str, name: str | None = None,
             executable: bool = False) -> FetchSpec:
    """Fetch a single file, verified by the sha256 of its bytes.

    The store name defaults to the URL's last path component.
    """
    return _spec(url, hash, name=name, executable=executable)


def fetchzip(url: str, hash: str, name: str = "source", strip_root: bool = True) -> FetchSpec:
    """Fetch and unpack a zip archive, verified by the NAR hash of its tree."""
    return _spec(url, hash, archive_kind=ArchiveKind.ZIP, name=name, strip_root=strip_root)


def fetch_tarball(url: str, hash: str, name: str = "source",
                  strip_root: bool = True) -> FetchSpec:
    """Like builtins.fetchTarball: unpack, strip the top directory, NAR-hash."""
    return _spec(url, hash, archive_kind=ArchiveKind.TARBALL, name=name, strip_root=strip_root)


def fetch_from_github(owner: str, repo: str, rev: str, hash: str,
                      name: str = "source") -> FetchSpec:
    """A GitHub archive of ``rev`` (tag, branch or commit)."""
    url = f"https://github.com/{owner}/{repo}/archive/{rev}.tar.gz"
    return fetch_tarball(url, hash, name=name)
