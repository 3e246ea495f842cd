"""Content-addressed, immutable store of realized outputs.

Layout under the store root:

    store/<id>              committed output (file or directory)
    store/<staging-id>      output of a build in progress
    drvs/<id>.drv           registered derivation text
    locks/<id>.lock         per-id build lock (flock)
    db.sqlite               side index: id → status, references, roots

The index is the source of truth: an output is visible only once its row
says ``valid``, and a valid entry is trusted on later runs after a mere
existence check. All mutation goes through begin_build / commit / abort,
which gives one writer per id and any number of readers of committed
entries.
"""

import errno
import fcntl
import logging
import os
import shutil
import sqlite3
import stat
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from dervish.errors import AlreadyBuilding, AlreadyValid, IntegrityError, StoreError
from dervish.store_path import make_staging_id, split_id

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS entries (
    id       TEXT PRIMARY KEY,
    status   TEXT NOT NULL,
    updated  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS refs (
    referrer  TEXT NOT NULL,
    reference TEXT NOT NULL,
    PRIMARY KEY (referrer, reference)
);
CREATE TABLE IF NOT EXISTS roots (
    id TEXT PRIMARY KEY
);
"""


class EntryStatus(str, Enum):
    BUILDING = "building"
    VALID = "valid"
    FAILED = "failed"


@dataclass(frozen=True)
class StoreEntry:
    id: str
    path: Path
    status: EntryStatus = EntryStatus.VALID

    def __str__(self) -> str:
        return str(self.path)


@dataclass(eq=False)
class BuildHandle:
    """Exclusive right to produce the output for one id.

    Write the output at ``staging_path``, then pass the handle to
    Store.commit or Store.abort exactly once.
    """

    id: str
    staging_path: Path
    _lock_fd: int
    status: EntryStatus = EntryStatus.BUILDING

    @property
    def closed(self) -> bool:
        return self.status is not EntryStatus.BUILDING


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _remove(path: Path) -> None:
    """Delete a file or tree, including read-only committed content."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        for dirpath, _dirnames, _filenames in os.walk(path):
            os.chmod(dirpath, stat.S_IRWXU)
        shutil.rmtree(path)


def _make_read_only(path: Path) -> None:
    """Strip write permission from every regular file under path."""
    paths = [path] if path.is_symlink() or not path.is_dir() else [
        Path(dirpath) / name
        for dirpath, _dirnames, filenames in os.walk(path)
        for name in filenames
    ]
    for p in paths:
        if p.is_symlink():
            continue
        mode = p.stat().st_mode
        p.chmod(mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))


class Store:
    """A store rooted at a directory. Use as a context manager, or close()."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()
        self.store_dir = self.root / "store"
        self.drv_dir = self.root / "drvs"
        self.lock_dir = self.root / "locks"
        for d in (self.store_dir, self.drv_dir, self.lock_dir):
            d.mkdir(parents=True, exist_ok=True)

        self._mutex = threading.RLock()
        self._cond = threading.Condition(self._mutex)
        self._in_flight: dict[str, BuildHandle] = {}
        self._conn: sqlite3.Connection | None = sqlite3.connect(
            str(self.root / "db.sqlite"), check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()
        self._purge_stale()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        """Abort builds still in flight and close the index."""
        for handle in list(self._in_flight.values()):
            self.abort(handle)
        with self._mutex:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # --- index helpers (caller holds self._mutex) ---

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError(f"store at {self.root} is closed")
        return self._conn

    def _status(self, store_id: str) -> EntryStatus | None:
        row = self._db().execute(
            "SELECT status FROM entries WHERE id = ?", (store_id,),
        ).fetchone()
        return EntryStatus(row[0]) if row else None

    def _set_status(self, store_id: str, status: EntryStatus) -> None:
        with self._db() as conn:
            conn.execute(
                "INSERT INTO entries (id, status, updated) VALUES (?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET status = excluded.status, "
                "updated = excluded.updated",
                (store_id, status.value, _now()),
            )

    def _lookup_locked(self, store_id: str) -> StoreEntry | None:
        if self._status(store_id) is not EntryStatus.VALID:
            return None
        path = self.path_of(store_id)
        if not os.path.lexists(path):
            logger.warning("index lists %s as valid but %s is missing", store_id, path)
            return None
        return StoreEntry(store_id, path, EntryStatus.VALID)

    # --- locks ---

    def _lock_path(self, store_id: str) -> Path:
        return self.lock_dir / f"{store_id}.lock"

    def _try_lock(self, store_id: str) -> int | None:
        fd = os.open(self._lock_path(store_id), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            if e.errno in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                return None
            raise
        return fd

    @staticmethod
    def _unlock(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)

    def _purge_stale(self) -> None:
        """Drop ``building`` rows left behind by a process that died."""
        with self._mutex:
            rows = self._db().execute(
                "SELECT id FROM entries WHERE status = ?", (EntryStatus.BUILDING.value,),
            ).fetchall()
            for (store_id,) in rows:
                fd = self._try_lock(store_id)
                if fd is None:
                    continue  # another process is still building it
                try:
                    logger.warning("purging stale build of %s", store_id)
                    _remove(self.store_dir / make_staging_id(store_id))
                    _remove(self.path_of(store_id))
                    with self._db() as conn:
                        conn.execute("DELETE FROM entries WHERE id = ?", (store_id,))
                finally:
                    self._unlock(fd)

    # --- public API ---

    def path_of(self, store_id: str) -> Path:
        return self.store_dir / store_id

    def lookup(self, store_id: str) -> StoreEntry | None:
        """The committed entry for store_id, or None."""
        with self._mutex:
            return self._lookup_locked(store_id)

    def begin_build(self, store_id: str) -> BuildHandle:
        """Take the exclusive build handle for store_id.

        Raises AlreadyBuilding if a build of the same id is in flight in this
        or another process, and AlreadyValid if the id is already committed.
        """
        split_id(store_id)
        with self._mutex:
            if store_id in self._in_flight:
                raise AlreadyBuilding(store_id)
            entry = self._lookup_locked(store_id)
            if entry is not None:
                raise AlreadyValid(entry)
            fd = self._try_lock(store_id)
            if fd is None:
                raise AlreadyBuilding(store_id)
            try:
                # Another process may have committed before we got the lock.
                entry = self._lookup_locked(store_id)
                if entry is not None:
                    raise AlreadyValid(entry)
                staging = self.store_dir / make_staging_id(store_id)
                _remove(staging)
                _remove(self.path_of(store_id))
                self._set_status(store_id, EntryStatus.BUILDING)
            except BaseException:
                self._unlock(fd)
                raise
            handle = BuildHandle(store_id, staging, fd)
            self._in_flight[store_id] = handle
        logger.debug("building %s", store_id)
        return handle

    def commit(self, handle: BuildHandle, path: str | Path | None = None,
               references: list[str] | tuple[str, ...] = ()) -> StoreEntry:
        """Publish the output of handle under its id.

        ``path`` defaults to the handle's staging path. The output is moved
        into place with a rename, so the final path never shows a partial
        result.
        """
        self._check_open_handle(handle)
        src = Path(path) if path is not None else handle.staging_path
        if not os.path.lexists(src):
            self.abort(handle)
            raise StoreError(f"nothing to commit for {handle.id}: {src} does not exist")
        if src != handle.staging_path:
            shutil.move(str(src), handle.staging_path)

        final = self.path_of(handle.id)
        _make_read_only(handle.staging_path)
        os.rename(handle.staging_path, final)

        with self._mutex:
            self._set_status(handle.id, EntryStatus.VALID)
            with self._db() as conn:
                conn.executemany(
                    "INSERT OR IGNORE INTO refs (referrer, reference) VALUES (?, ?)",
                    [(handle.id, r) for r in sorted(set(references)) if r != handle.id],
                )
            self._release_locked(handle, EntryStatus.VALID)
        logger.info("committed %s", handle.id)
        return StoreEntry(handle.id, final, EntryStatus.VALID)

    def abort(self, handle: BuildHandle) -> None:
        """Discard a build; nothing is left under its id."""
        if handle.closed:
            return
        _remove(handle.staging_path)
        with self._mutex:
            if self._conn is not None:
                with self._conn as conn:
                    conn.execute(
                        "DELETE FROM entries WHERE id = ? AND status = ?",
                        (handle.id, EntryStatus.BUILDING.value),
                    )
            self._release_locked(handle, EntryStatus.FAILED)
        logger.debug("aborted %s", handle.id)

    def _check_open_handle(self, handle: BuildHandle) -> None:
        if handle.closed or self._in_flight.get(handle.id) is not handle:
            raise StoreError(f"build handle for {handle.id} is not active")

    def _release_locked(self, handle: BuildHandle, status: EntryStatus) -> None:
        handle.status = status
        self._in_flight.pop(handle.id, None)
        self._unlock(handle._lock_fd)
        self._cond.notify_all()

    def wait(self, store_id: str) -> None:
        """Block until no build of store_id is in flight."""
        with self._cond:
            while store_id in self._in_flight:
                self._cond.wait()
        # A build in another process holds the file lock until it is done.
        fd = os.open(self._lock_path(store_id), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def claim(self, store_id: str) -> StoreEntry | BuildHandle:
        """The committed entry for store_id, or a handle to build it.

        Waits out concurrent builds of the same id and re-checks the store
        afterwards instead of building twice.
        """
        while True:
            entry = self.lookup(store_id)
            if entry is not None:
                return entry
            try:
                return self.begin_build(store_id)
            except AlreadyValid as e:
                return e.entry
            except AlreadyBuilding:
                logger.info("waiting for concurrent build of %s", store_id)
                self.wait(store_id)

    # --- derivation files ---

    def register_derivation(self, store_id: str, text: str) -> Path:
        """Record the declaration text of store_id under drvs/."""
        path = self.drv_dir / f"{store_id}.drv"
        if path.exists():
            existing = path.read_text()
            if existing != text:
                raise IntegrityError(
                    f"{store_id}: registered declaration differs from the new one"
                )
            return path
        tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}")
        tmp.write_text(text)
        os.replace(tmp, path)
        return path

    def derivation_text(self, store_id: str) -> str | None:
        path = self.drv_dir / f"{store_id}.drv"
        return path.read_text() if path.exists() else None

    # --- references and garbage collection ---

    def references(self, store_id: str) -> list[str]:
        with self._mutex:
            rows = self._db().execute(
                "SELECT reference FROM refs WHERE referrer = ? ORDER BY reference",
                (store_id,),
            ).fetchall()
        return [r for (r,) in rows]

    def referrers(self, store_id: str) -> list[str]:
        with self._mutex:
            rows = self._db().execute(
                "SELECT r.referrer FROM refs r JOIN entries e ON e.id = r.referrer "
                "WHERE r.reference = ? AND e.status = ? ORDER BY r.referrer",
                (store_id, EntryStatus.VALID.value),
            ).fetchall()
        return [r for (r,) in rows]

    def add_root(self, store_id: str) -> None:
        with self._mutex:
            with self._db() as conn:
                conn.execute("INSERT OR IGNORE INTO roots (id) VALUES (?)", (store_id,))

    def remove_root(self, store_id: str) -> None:
        with self._mutex:
            with self._db() as conn:
                conn.execute("DELETE FROM roots WHERE id = ?", (store_id,))

    def roots(self) -> list[str]:
        with self._mutex:
            rows = self._db().execute("SELECT id FROM roots ORDER BY id").fetchall()
        return [r for (r,) in rows]

    def refcount(self, store_id: str) -> int:
        """Number of roots plus valid entries that reference store_id."""
        with self._mutex:
            (n_roots,) = self._db().execute(
                "SELECT COUNT(*) FROM roots WHERE id = ?", (store_id,),
            ).fetchone()
        return n_roots + len(self.referrers(store_id))

    def valid_ids(self) -> list[str]:
        with self._mutex:
            rows = self._db().execute(
                "SELECT id FROM entries WHERE status = ? ORDER BY id",
                (EntryStatus.VALID.value,),
            ).fetchall()
        return [r for (r,) in rows]

    def collect_garbage(self) -> list[str]:
        """Delete valid entries whose reference count is zero.

        Deleting an entry drops the counts of what it referenced, so this
        repeats until nothing more is freed. Returns the deleted ids.
        """
        removed: list[str] = []
        while True:
            with self._mutex:
                if self._in_flight:
                    raise StoreError("cannot collect garbage while builds are in progress")
                dead = [
                    r for (r,) in self._db().execute(
                        "SELECT e.id FROM entries e WHERE e.status = ? "
                        "AND e.id NOT IN (SELECT id FROM roots) "
                        "AND NOT EXISTS (SELECT 1 FROM refs r JOIN entries e2 "
                        "  ON e2.id = r.referrer "
                        "  WHERE r.reference = e.id AND e2.status = ?) "
                        "ORDER BY e.id",
                        (EntryStatus.VALID.value, EntryStatus.VALID.value),
                    ).fetchall()
                ]
                if not dead:
                    return removed
                for store_id in dead:
                    logger.info("deleting %s", store_id)
                    _remove(self.path_of(store_id))
                    drv = self.drv_dir / f"{store_id}.drv"
                    if drv.exists():
                        drv.unlink()
                    with self._db() as conn:
                        conn.execute("DELETE FROM entries WHERE id = ?", (store_id,))
                        conn.execute("DELETE FROM refs WHERE referrer = ?", (store_id,))
                removed.extend(dead)
