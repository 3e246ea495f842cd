"""Fixed-output fetches: download, verify against the declared hash, store.

A FetchSpec is keyed in the store by its expected hash (see
store_path.make_fixed_output_id), so a second fetch of the same spec is a
cache hit and never touches the network.

Two hashing modes, matching what the hash is meant to bind to:

  - ArchiveKind.NONE: sha256 of the downloaded bytes; stored as one file.
  - ZIP / TARBALL: the archive is unpacked first and the NAR hash of the
    unpacked tree is compared, so the declaration pins file content rather
    than archive bytes (recompressing a tarball keeps its hash).

Transport is pluggable: anything with ``fetch(url) -> bytes``.
"""

import http.client
import io
import logging
import os
import re
import shutil
import stat
import tarfile
import tempfile
import urllib.parse
import urllib.request
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from dervish.errors import DervishError, FetchFailed, HashMismatch
from dervish.hash import parse_hash, sha256, to_sri
from dervish.nar import nar_hash
from dervish.store import Store, StoreEntry
from dervish.store_path import make_fixed_output_id

logger = logging.getLogger(__name__)

_TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz")
_BAD_NAME_CHARS = re.compile(r"[^A-Za-z0-9+\-._?=]")


class ArchiveKind(str, Enum):
    NONE = "none"
    ZIP = "zip"
    TARBALL = "tarball"


def archive_kind_for(filename: str) -> ArchiveKind:
    """Guess the archive kind from a file name or URL."""
    lower = filename.lower()
    if lower.endswith(".zip"):
        return ArchiveKind.ZIP
    if lower.endswith(_TAR_SUFFIXES):
        return ArchiveKind.TARBALL
    return ArchiveKind.NONE


def _name_from_url(url: str) -> str:
    base = urllib.parse.unquote(urllib.parse.urlparse(url).path.rstrip("/").rsplit("/", 1)[-1])
    base = _BAD_NAME_CHARS.sub("-", base).lstrip(".")
    return base or "source"


@dataclass(frozen=True)
class FetchSpec:
    """A source to fetch: where from, and what its content must hash to."""

    url: str
    expected_hash: str
    archive_kind: ArchiveKind = ArchiveKind.NONE
    name: str | None = None
    strip_root: bool = True
    executable: bool = False

    @property
    def digest(self) -> bytes:
        return parse_hash(self.expected_hash)

    @property
    def recursive(self) -> bool:
        return self.archive_kind is not ArchiveKind.NONE

    @property
    def store_name(self) -> str:
        if self.name:
            return self.name
        return "source" if self.recursive else _name_from_url(self.url)

    @property
    def id(self) -> str:
        return make_fixed_output_id(
            self.store_name, self.digest,
            recursive=self.recursive, executable=self.executable,
        )


class Transport(Protocol):
    def fetch(self, url: str) -> bytes: ...


class UrlTransport:
    """urllib-based transport; handles http(s), ftp and file URLs."""

    def __init__(self, timeout: float = 60.0):
        self.timeout = timeout

    def fetch(self, url: str) -> bytes:
        req = urllib.request.Request(url, headers={"User-Agent": "dervish"})
        with urllib.request.urlopen(req, timeout=self.timeout) as resp:
            return resp.read()


# --- archives ---

def _extract_zip(buf: io.BufferedIOBase, dest: Path) -> None:
    with zipfile.ZipFile(buf) as zf:
        for info in zf.infolist():
            mode = info.external_attr >> 16
            if stat.S_ISLNK(mode):
                target = zf.read(info).decode()
                link = dest / info.filename
                link.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(target, link)
                continue
            extracted = Path(zf.extract(info, dest))
            # zipfile drops Unix modes; the executable bit matters for the hash.
            if mode & 0o777 and not info.is_dir():
                extracted.chmod(mode & 0o777)


def unpack_archive(source: bytes | str | Path, kind: ArchiveKind, dest: str | Path,
                   strip_root: bool = True) -> Path:
    """Unpack a zip or tar archive into dest, which must not exist yet.

    With strip_root, an archive holding a single top-level directory is
    unpacked as that directory's contents.
    """
    dest = Path(dest)
    if kind is ArchiveKind.NONE:
        raise ValueError("unpack_archive needs an archive kind")
    tmp = Path(tempfile.mkdtemp(prefix=f".{dest.name}-unpack-", dir=dest.parent))
    try:
        with (io.BytesIO(source) if isinstance(source, bytes) else open(source, "rb")) as buf:
            if kind is ArchiveKind.ZIP:
                _extract_zip(buf, tmp)
            else:
                with tarfile.open(fileobj=buf, mode="r:*") as tf:
                    tf.extractall(tmp, filter="data")

        entries = list(tmp.iterdir())
        if strip_root and len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
            os.rename(entries[0], dest)
            tmp.rmdir()
        else:
            os.rename(tmp, dest)
    except (zipfile.BadZipFile, tarfile.TarError) as e:
        shutil.rmtree(tmp, ignore_errors=True)
        raise ValueError(f"cannot unpack {kind.value} archive: {e}") from e
    except BaseException:
        shutil.rmtree(tmp, ignore_errors=True)
        raise
    return dest


# --- fetching ---

_TRANSPORT_ERRORS = (OSError, ValueError, http.client.HTTPException)


class Fetcher:
    def __init__(self, store: Store, transport: Transport | None = None):
        self.store = store
        self.transport = transport or UrlTransport()

    def fetch(self, spec: FetchSpec) -> StoreEntry:
        """Realize spec in the store, downloading only on a cache miss."""
        claimed = self.store.claim(spec.id)
        if isinstance(claimed, StoreEntry):
            logger.debug("fetch cache hit: %s", spec.id)
            return claimed

        handle = claimed
        try:
            data = self._download(spec)
            self._admit(spec, data, handle.staging_path)
        except BaseException:
            self.store.abort(handle)
            raise
        return self.store.commit(handle)

    def _download(self, spec: FetchSpec) -> bytes:
        logger.info("fetching %s", spec.url)
        try:
            return self.transport.fetch(spec.url)
        except DervishError as e:
            if getattr(e, "drv_id", None) is None:
                e.drv_id = spec.id
            raise
        except _TRANSPORT_ERRORS as e:
            raise FetchFailed(spec.url, e, drv_id=spec.id) from e

    def _admit(self, spec: FetchSpec, data: bytes, out: Path) -> None:
        """Verify data against spec and write the verified content to out."""
        expected = spec.digest
        if spec.archive_kind is ArchiveKind.NONE:
            actual = sha256(data)
            if actual != expected:
                raise HashMismatch(to_sri(expected), to_sri(actual), spec.url, drv_id=spec.id)
            out.write_bytes(data)
            out.chmod(0o555 if spec.executable else 0o444)
            return

        try:
            unpack_archive(data, spec.archive_kind, out, spec.strip_root)
        except ValueError as e:
            raise FetchFailed(spec.url, e, drv_id=spec.id) from e
        actual = nar_hash(out)
        if actual != expected:
            raise HashMismatch(to_sri(expected), to_sri(actual), spec.url, drv_id=spec.id)


def prefetch(url: str, archive_kind: ArchiveKind = ArchiveKind.NONE,
             transport: Transport | None = None, strip_root: bool = True) -> str:
    """Download url and return the SRI hash to declare for it."""
    data = (transport or UrlTransport()).fetch(url)
    if archive_kind is ArchiveKind.NONE:
        return to_sri(sha256(data))
    with tempfile.TemporaryDirectory(prefix="dervish-prefetch-") as d:
        out = unpack_archive(data, archive_kind, Path(d) / "source", strip_root)
        return to_sri(nar_hash(out))
