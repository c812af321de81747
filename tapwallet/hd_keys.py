"""
Key material for the signer.

The signer never generates or stores keys: it asks a :class:`KeyProvider`
for the pair at a derivation path, uses it, and lets it go out of scope.
:class:`HDKeyProvider` is a BIP-32 provider backed by a seed, for callers
that already hold one (and for tests).
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import List, Protocol, runtime_checkable

from coincurve import PrivateKey, PublicKey

# secp256k1 curve order
CURVE_ORDER = int(
    "FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16
)
HARDENED = 0x80000000


@dataclass(frozen=True)
class KeyPair:
    """secp256k1 key pair: 32-byte secret, 33-byte compressed public key."""
    private_key: bytes
    public_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key.hex()}, private_key=<redacted>)"

    @classmethod
    def from_private_key(cls, secret: bytes) -> "KeyPair":
        sk = PrivateKey(secret)
        return cls(private_key=sk.secret,
                   public_key=sk.public_key.format(compressed=True))


@runtime_checkable
class KeyProvider(Protocol):
    """Deterministic function of (seed, path) -> key pair."""

    def derive_key(self, path: str) -> KeyPair:
        ...


def parse_derivation_path(path: str) -> List[int]:
    """
    ``"m/86'/0'/0'/0/0"`` -> ``[0x80000056, 0x80000000, 0x80000000, 0, 0]``.

    Hardened segments may be written with ``'`` or ``h``.
    """
    parts = path.strip().split("/")
    if parts[0] != "m":
        raise ValueError(f"derivation path must start with 'm': {path!r}")
    indices: List[int] = []
    for part in parts[1:]:
        hardened = part.endswith(("'", "h", "H"))
        digits = part[:-1] if hardened else part
        if not digits.isdigit():
            raise ValueError(f"bad derivation path segment {part!r} in {path!r}")
        index = int(digits)
        if index >= HARDENED:
            raise ValueError(f"derivation index {index} out of range in {path!r}")
        indices.append(index | HARDENED if hardened else index)
    return indices


def format_derivation_path(indices: List[int]) -> str:
    segments = ["m"]
    for i in indices:
        segments.append(f"{i - HARDENED}'" if i >= HARDENED else str(i))
    return "/".join(segments)


class HDKeyProvider:
    """BIP-32 private derivation from a seed."""

    def __init__(self, seed: bytes) -> None:
        if not 16 <= len(seed) <= 64:
            raise ValueError(f"BIP-32 seed must be 16..64 bytes, got {len(seed)}")
        digest = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        self._master_key = digest[:32]
        self._master_chain_code = digest[32:]
        # raises on the (negligible) invalid master key
        PrivateKey(self._master_key)

    def __repr__(self) -> str:
        return "HDKeyProvider(<seed redacted>)"

    def derive_key(self, path: str) -> KeyPair:
        key, chain_code = self._master_key, self._master_chain_code
        for index in parse_derivation_path(path):
            key, chain_code = self._ckd_priv(key, chain_code, index)
        return KeyPair.from_private_key(key)

    @staticmethod
    def _ckd_priv(key: bytes, chain_code: bytes, index: int):
        """BIP-32 CKDpriv: ((k_par, c_par), i) -> (k_i, c_i)."""
        if index >= HARDENED:
            data = b"\x00" + key + index.to_bytes(4, "big")
        else:
            data = PublicKey.from_secret(key).format(compressed=True)
            data += index.to_bytes(4, "big")
        digest = hmac.new(chain_code, data, hashlib.sha512).digest()
        il = int.from_bytes(digest[:32], "big")
        child = (il + int.from_bytes(key, "big")) % CURVE_ORDER
        if il >= CURVE_ORDER or child == 0:
            # BIP-32: proceed with the next index; never happens in practice
            raise ValueError(f"invalid child key at index {index}")
        return child.to_bytes(32, "big"), digest[32:]
