"""Content addresses for stages and trees.

A stage address looks like ``<hash>-<name>``, where <hash> is 32 characters
of base32 encoding 160 bits. It is computed by:
  1. Building a fingerprint: "<kind>:sha256:<hex(inner)>:<name>"
  2. SHA-256 hashing the fingerprint
  3. XOR-folding the 32-byte digest down to 20 bytes
  4. Base32 encoding the result (digits + lowercase, minus e/o/t/u)

Folding instead of truncating keeps every input byte in play.
"""

import hashlib

ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"
ID_BYTES = 20


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def fold(digest: bytes, size: int = ID_BYTES) -> bytes:
    """XOR bytes past ``size`` back onto the front of the digest."""
    out = bytearray(size)
    for i, b in enumerate(digest):
        out[i % size] ^= b
    return bytes(out)


def b32(data: bytes) -> str:
    """Encode bytes as base32, last 5-bit group first."""
    n = len(data)
    width = (n * 8 + 4) // 5
    chars = []
    for pos in range(width - 1, -1, -1):
        bit = pos * 5
        byte, shift = divmod(bit, 8)
        v = data[byte] >> shift
        if byte + 1 < n:
            v |= data[byte + 1] << (8 - shift)
        chars.append(ALPHABET[v & 0x1F])
    return "".join(chars)


def make_id(kind: str, inner: bytes, name: str) -> str:
    """Address of a named object whose content hashes to ``inner``."""
    fingerprint = f"{kind}:sha256:{inner.hex()}:{name}"
    return f"{b32(fold(sha256(fingerprint.encode())))}-{name}"


def combine(*parts: str) -> bytes:
    """Hash an ordered sequence of strings, length-prefixed so that
    ("ab", "c") and ("a", "bc") never collide."""
    h = hashlib.sha256()
    for p in parts:
        raw = p.encode()
        h.update(len(raw).to_bytes(8, "little"))
        h.update(raw)
    return h.digest()
