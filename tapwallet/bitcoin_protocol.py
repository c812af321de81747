"""
Bitcoin transaction primitives and the BIP-341 key-path signature hash.

Reference: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import List


def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def read_exact(s: BytesIO, n: int) -> bytes:
    """Read exactly *n* bytes or raise ``ValueError`` on truncated input."""
    data = s.read(n)
    if len(data) != n:
        raise ValueError(f"unexpected end of data: wanted {n} bytes, got {len(data)}")
    return data


def read_compact_size(s: BytesIO) -> int:
    """Decode one CompactSize integer from *s*."""
    b0 = read_exact(s, 1)[0]
    if b0 < 0xfd:
        return b0
    elif b0 == 0xfd:
        return struct.unpack("<H", read_exact(s, 2))[0]
    elif b0 == 0xfe:
        return struct.unpack("<I", read_exact(s, 4))[0]
    return struct.unpack("<Q", read_exact(s, 8))[0]


def read_var_bytes(s: BytesIO) -> bytes:
    """CompactSize length prefix followed by that many bytes."""
    return read_exact(s, read_compact_size(s))


def var_bytes(data: bytes) -> bytes:
    return compact_size(len(data)) + data


def tagged_hash(tag: str, msg: bytes) -> bytes:
    """BIP-340 tagged hash: SHA-256(SHA-256(tag) || SHA-256(tag) || msg)"""
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + msg).digest()


def sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


# ============================================================
# TRANSACTION CODEC
# ============================================================

@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + var_bytes(self.script_pubkey)

    @classmethod
    def read(cls, s: BytesIO) -> "TxOut":
        value = struct.unpack("<q", read_exact(s, 8))[0]
        return cls(value=value, script_pubkey=read_var_bytes(s))

    @classmethod
    def parse(cls, raw: bytes) -> "TxOut":
        s = BytesIO(raw)
        out = cls.read(s)
        if s.read(1):
            raise ValueError("trailing bytes after transaction output")
        return out


@dataclass
class TxIn:
    """Transaction input.  ``txid`` is kept in internal (little-endian) order."""
    txid: bytes
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: List[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> bytes:
        return self.txid + struct.pack("<I", self.vout)

    @property
    def prev_txid_hex(self) -> str:
        """Previous txid in the usual (byte-reversed) display order."""
        return self.txid[::-1].hex()


@dataclass
class Transaction:
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    @classmethod
    def parse(cls, raw: bytes, *, allow_witness: bool = True) -> "Transaction":
        """Parse a legacy or segwit (BIP-144) serialized transaction.

        With ``allow_witness=False`` a zero input count is read literally,
        as BIP-174 requires for the unsigned transaction of a PSBT.
        """
        s = BytesIO(raw)
        tx = cls()
        tx.version = struct.unpack("<I", read_exact(s, 4))[0]

        n_in = read_compact_size(s)
        segwit = False
        if n_in == 0 and allow_witness:
            flag = read_exact(s, 1)[0]
            if flag != 0x01:
                raise ValueError(f"unknown segwit flag 0x{flag:02x}")
            segwit = True
            n_in = read_compact_size(s)

        for _ in range(n_in):
            txid = read_exact(s, 32)
            vout = struct.unpack("<I", read_exact(s, 4))[0]
            script_sig = read_var_bytes(s)
            sequence = struct.unpack("<I", read_exact(s, 4))[0]
            tx.inputs.append(TxIn(txid, vout, script_sig, sequence))

        n_out = read_compact_size(s)
        for _ in range(n_out):
            tx.outputs.append(TxOut.read(s))

        if segwit:
            for inp in tx.inputs:
                n_items = read_compact_size(s)
                inp.witness = [read_var_bytes(s) for _ in range(n_items)]

        tx.locktime = struct.unpack("<I", read_exact(s, 4))[0]
        if s.read(1):
            raise ValueError("trailing bytes after transaction")
        return tx

    def serialize(self, *, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness
        raw = struct.pack("<I", self.version)
        if segwit:
            raw += b"\x00\x01"
        raw += compact_size(len(self.inputs))
        for inp in self.inputs:
            raw += inp.outpoint
            raw += var_bytes(inp.script_sig)
            raw += struct.pack("<I", inp.sequence)
        raw += compact_size(len(self.outputs))
        for out in self.outputs:
            raw += out.serialize()
        if segwit:
            for inp in self.inputs:
                raw += compact_size(len(inp.witness))
                for item in inp.witness:
                    raw += var_bytes(item)
        raw += struct.pack("<I", self.locktime)
        return raw

    @property
    def txid(self) -> str:
        """Display-order txid (witness data excluded)."""
        return sha256d(self.serialize(include_witness=False))[::-1].hex()

    def hex(self) -> str:
        return self.serialize().hex()


# ============================================================
# BIP-341 SIGHASH
# ============================================================

class BIP341Sighash:
    """BIP-341 Taproot signature hash calculator (key-path spends)."""

    SIGHASH_DEFAULT = 0x00
    SIGHASH_ALL = 0x01
    SIGHASH_NONE = 0x02
    SIGHASH_SINGLE = 0x03
    SIGHASH_ANYONECANPAY = 0x80

    VALID_TYPES = (0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83)

    def __init__(self, tx: Transaction, prevouts: List[TxOut], input_index: int):
        if len(prevouts) != len(tx.inputs):
            raise ValueError(
                f"prevout count ({len(prevouts)}) != input count ({len(tx.inputs)})"
            )
        if not 0 <= input_index < len(tx.inputs):
            raise ValueError(f"input index {input_index} out of range")
        self.tx = tx
        self.prevouts = prevouts
        self.input_index = input_index

    def compute(self, hash_type: int = SIGHASH_DEFAULT) -> bytes:
        """
        Compute the BIP-341 signature hash for a key-path spend
        (no annex, ext_flag = 0).

        Returns:
            32-byte TapSighash digest
        """
        if hash_type not in self.VALID_TYPES:
            raise ValueError(f"invalid Taproot sighash type 0x{hash_type:02x}")

        anyone_can_pay = bool(hash_type & self.SIGHASH_ANYONECANPAY)
        base_type = hash_type & 0x03

        msg = bytearray()
        msg += b'\x00'                      # epoch
        msg += bytes([hash_type])
        msg += struct.pack("<I", self.tx.version)
        msg += struct.pack("<I", self.tx.locktime)

        if not anyone_can_pay:
            msg += self._sha_prevouts()
            msg += self._sha_amounts()
            msg += self._sha_scriptpubkeys()
            msg += self._sha_sequences()

        if base_type not in (self.SIGHASH_NONE, self.SIGHASH_SINGLE):
            msg += self._sha_outputs()

        msg += b'\x00'                      # spend_type: key path, no annex

        if anyone_can_pay:
            inp = self.tx.inputs[self.input_index]
            prevout = self.prevouts[self.input_index]
            msg += inp.outpoint
            msg += struct.pack("<q", prevout.value)
            msg += var_bytes(prevout.script_pubkey)
            msg += struct.pack("<I", inp.sequence)
        else:
            msg += struct.pack("<I", self.input_index)

        if base_type == self.SIGHASH_SINGLE:
            if self.input_index >= len(self.tx.outputs):
                raise ValueError("SIGHASH_SINGLE without a matching output")
            msg += hashlib.sha256(
                self.tx.outputs[self.input_index].serialize()
            ).digest()

        return tagged_hash("TapSighash", bytes(msg))

    # === Helper methods for hashing transaction data ===

    def _sha_prevouts(self) -> bytes:
        """SHA-256 of all input outpoints."""
        return hashlib.sha256(
            b''.join(inp.outpoint for inp in self.tx.inputs)
        ).digest()

    def _sha_amounts(self) -> bytes:
        """SHA-256 of all spent amounts."""
        return hashlib.sha256(
            b''.join(struct.pack("<q", p.value) for p in self.prevouts)
        ).digest()

    def _sha_scriptpubkeys(self) -> bytes:
        """SHA-256 of all spent scriptPubKeys."""
        return hashlib.sha256(
            b''.join(var_bytes(p.script_pubkey) for p in self.prevouts)
        ).digest()

    def _sha_sequences(self) -> bytes:
        """SHA-256 of all input sequence numbers."""
        return hashlib.sha256(
            b''.join(struct.pack("<I", inp.sequence) for inp in self.tx.inputs)
        ).digest()

    def _sha_outputs(self) -> bytes:
        """SHA-256 of all outputs."""
        return hashlib.sha256(
            b''.join(out.serialize() for out in self.tx.outputs)
        ).digest()
