"""Store id computation.

A store id is ``<hash>-<name>``, where ``<hash>`` is 32 characters of
base32 encoding 160 bits. It is computed by:

  1. building a fingerprint "<type>:sha256:<hex(inner_hash)>:dervish:<name>"
  2. SHA-256 hashing the fingerprint
  3. XOR-folding the 32-byte digest down to 20 bytes
  4. base32 encoding the result

The store directory is deliberately not part of the fingerprint: an id
is a pure function of what was declared, so two stores at different
locations agree on every id.

The <type> prefix separates the kinds of entries:
  "fixed:<mode>"  — fetched content, keyed only by its expected hash
  "output:out"    — derivation outputs (inner hash = sha256 of the
                    canonical derivation text)
  "staging"       — in-progress build output for an id
"""

import re

from dervish.base32 import encode as b32encode
from dervish.hash import compress_hash, sha256

HASH_BYTES = 20
HASH_CHARS = 32
NAMESPACE = "dervish"

_NAME_RE = re.compile(r"^[A-Za-z0-9+\-._?=]+$")


def check_name(name: str) -> str:
    """Validate a store name; returns it unchanged."""
    if not name or len(name) > 211:
        raise ValueError(f"invalid store name {name!r}: length must be 1..211")
    if name.startswith("."):
        raise ValueError(f"invalid store name {name!r}: must not start with '.'")
    if not _NAME_RE.match(name):
        raise ValueError(f"invalid store name {name!r}: illegal character")
    return name


def make_store_id(type_prefix: str, inner_hash: bytes, name: str) -> str:
    """Core id computation. Most callers use the typed helpers below."""
    fingerprint = f"{type_prefix}:sha256:{inner_hash.hex()}:{NAMESPACE}:{name}"
    compressed = compress_hash(sha256(fingerprint.encode()), HASH_BYTES)
    return f"{b32encode(compressed)}-{check_name(name)}"


def make_fixed_output_id(name: str, content_hash: bytes, recursive: bool = False,
                         executable: bool = False) -> str:
    """Id for fetched content.

    Depends on the expected hash, the hashing mode and the name, not on
    the URL, so moving a source to a mirror keeps its id. A flat hash
    does not cover the executable bit, so it gets its own mode.
    """
    if recursive:
        mode = "r"
    else:
        mode = "flat-x" if executable else "flat"
    return make_store_id(f"fixed:{mode}", content_hash, name)


def make_derivation_id(name: str, canonical_text: str) -> str:
    """Id for a derivation output, from its canonical declaration text."""
    return make_store_id("output:out", sha256(canonical_text.encode()), name)


def make_staging_id(store_id: str) -> str:
    """Same-length sibling id used while ``store_id`` is being built.

    Keeping the length equal lets references to the staging path be
    rewritten in place, even inside binaries, before the output is
    renamed onto its final id.
    """
    _, name = split_id(store_id)
    return make_store_id("staging", sha256(store_id.encode()), name)


def split_id(store_id: str) -> tuple[str, str]:
    """``"<hash>-<name>"`` → ``(hash, name)``."""
    hash_part, sep, name = store_id.partition("-")
    if not sep or len(hash_part) != HASH_CHARS:
        raise ValueError(f"malformed store id: {store_id!r}")
    return hash_part, name
