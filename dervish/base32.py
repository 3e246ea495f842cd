"""Nix-flavoured base32, used for store ids and nix32 hash strings.

Two differences from RFC 4648:

1. Alphabet: "0123456789abcdfghijklmnpqrsvwxyz" — 32 chars,
   omitting e, o, t, u.

2. Bit order: 5-bit groups are taken from the *last* position down to
   the first, so the output reads reversed compared to RFC 4648.

Output length: ceil(n*8/5) characters for n input bytes.
  20 bytes (store id hash)  → 32 chars
  32 bytes (SHA-256 digest) → 52 chars
"""

CHARS = "0123456789abcdfghijklmnpqrsvwxyz"
_DECODE_MAP = {c: i for i, c in enumerate(CHARS)}


def encoded_length(n: int) -> int:
    """Number of base32 characters for n bytes."""
    return (n * 8 + 4) // 5


def encode(data: bytes) -> str:
    """Encode bytes to base32.

    Walks bit positions from the highest group down to 0; a group may
    straddle two input bytes.
    """
    n = len(data)
    result = []
    for i in range(encoded_length(n) - 1, -1, -1):
        b = i * 5
        j, k = divmod(b, 8)
        c = data[j] >> k
        if j + 1 < n:
            c |= data[j + 1] << (8 - k)
        result.append(CHARS[c & 0x1F])
    return "".join(result)


def decode(s: str) -> bytes:
    """Decode a base32 string back to bytes."""
    out_len = len(s) * 5 // 8
    result = bytearray(out_len)
    for i, ch in enumerate(reversed(s)):
        digit = _DECODE_MAP.get(ch)
        if digit is None:
            raise ValueError(f"invalid nix base32 character: {ch!r}")
        j, k = divmod(i * 5, 8)
        result[j] |= (digit << k) & 0xFF
        carry = digit >> (8 - k)
        if carry:
            if j + 1 >= out_len:
                raise ValueError(f"invalid nix base32 string: {s!r}")
            result[j + 1] |= carry
    return bytes(result)
