"""Hash utilities: digests, XOR folding, and parsing of declared hashes.

Declared hashes show up in several spellings in the wild. All of these
name the same SHA-256 digest:

    sha256-LPJNul+wow4m6DsqxbninhsWHlwfp0JecwQzYpOLmCQ=   (SRI)
    sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824
    094qif9n4cq4fdg459qzbhg1c6wywawwaaivx0k0x8xhbyx4vwic      (nix32)

parse_hash() accepts any of them and returns the raw 32 bytes.
"""

import base64
import binascii
import hashlib

from dervish import base32

SHA256_SIZE = 32


def compress_hash(hash_bytes: bytes, size: int) -> bytes:
    """XOR-fold a hash to the given size.

    Every input byte contributes to the output; bytes beyond ``size`` wrap
    around onto the earlier positions:

        result[0]  = hash[0]  ^ hash[20]
        ...
        result[11] = hash[11] ^ hash[31]
        result[12] = hash[12]
        ...
    """
    result = bytearray(size)
    for i, b in enumerate(hash_bytes):
        result[i % size] ^= b
    return bytes(result)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def to_sri(digest: bytes) -> str:
    """``sha256-<base64>``, the form used in error messages."""
    return "sha256-" + base64.b64encode(digest).decode()


def parse_hash(text: str) -> bytes:
    """Parse a declared SHA-256 hash in SRI, prefixed, hex or nix32 form."""
    s = text.strip()
    if s.startswith("sha256-"):
        try:
            digest = base64.b64decode(s[len("sha256-"):], validate=True)
        except binascii.Error as e:
            raise ValueError(f"invalid SRI hash {text!r}: {e}") from None
        return _check_size(digest, text)
    if s.startswith("sha256:"):
        s = s[len("sha256:"):]
    elif ":" in s or "-" in s:
        algo = s.replace("-", ":").split(":", 1)[0]
        raise ValueError(f"unsupported hash algorithm {algo!r} in {text!r}")

    if len(s) == SHA256_SIZE * 2:
        try:
            return bytes.fromhex(s)
        except ValueError:
            raise ValueError(f"invalid hex hash {text!r}") from None
    if len(s) == base32.encoded_length(SHA256_SIZE):
        return _check_size(base32.decode(s), text)
    raise ValueError(f"hash {text!r} has unexpected length {len(s)}")


def _check_size(digest: bytes, text: str) -> bytes:
    if len(digest) != SHA256_SIZE:
        raise ValueError(f"hash {text!r} is {len(digest)} bytes, expected {SHA256_SIZE}")
    return digest
