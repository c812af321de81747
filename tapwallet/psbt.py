"""
BIP-174 (version 0) binary PSBT codec with the BIP-371 Taproot fields.

Only the records the Taproot key-path signer needs are decoded into typed
attributes; every other record is preserved byte-for-byte in ``unknown``
so that a parse -> serialize cycle never drops data another wallet put
there.
"""

from __future__ import annotations

import copy
import struct
from base64 import b64decode, b64encode
from dataclasses import dataclass, field
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from tapwallet.bitcoin_protocol import (
    Transaction,
    TxOut,
    compact_size,
    read_compact_size,
    read_exact,
    read_var_bytes,
    var_bytes,
)
from tapwallet.errors import InvalidProposal, MissingCommittedValue
from tapwallet.log import get_logger

log = get_logger("psbt")

PSBT_MAGIC = b"psbt\xff"

# BIP-174 key types: global
PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_VERSION = 0xFB

# BIP-174 / BIP-371 key types: per-input
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_BIP32_DERIVATION = 0x16
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18

# BIP-371 key types: per-output
PSBT_OUT_TAP_INTERNAL_KEY = 0x05
PSBT_OUT_TAP_BIP32_DERIVATION = 0x07


def _kv(key: bytes, value: bytes) -> bytes:
    """Encode one BIP-174 key-value pair: <key-len><key><value-len><value>."""
    return var_bytes(key) + var_bytes(value)


def _read_map(s: BytesIO, where: str) -> List[Tuple[bytes, bytes]]:
    """Read key-value pairs up to the 0x00 separator."""
    pairs: List[Tuple[bytes, bytes]] = []
    seen = set()
    while True:
        key = read_var_bytes(s)
        if not key:
            return pairs
        value = read_var_bytes(s)
        if key in seen:
            raise InvalidProposal(
                f"duplicate key 0x{key.hex()}", operation="parse_psbt", field=where,
            )
        seen.add(key)
        pairs.append((key, value))


def _expect_len(data: bytes, sizes: Tuple[int, ...], where: str) -> bytes:
    if len(data) not in sizes:
        raise InvalidProposal(
            f"expected {' or '.join(map(str, sizes))} bytes, got {len(data)}",
            operation="parse_psbt", field=where,
        )
    return data


# ============================================================
# TAPROOT DERIVATION RECORD
# ============================================================

@dataclass
class TapDerivation:
    """PSBT_{IN,OUT}_TAP_BIP32_DERIVATION: x-only key -> origin."""
    pubkey: bytes
    fingerprint: bytes
    path: List[int]
    leaf_hashes: List[bytes] = field(default_factory=list)

    @classmethod
    def parse(cls, pubkey: bytes, value: bytes) -> "TapDerivation":
        s = BytesIO(value)
        n_hashes = read_compact_size(s)
        leaf_hashes = [read_exact(s, 32) for _ in range(n_hashes)]
        fingerprint = read_exact(s, 4)
        rest = s.read()
        if len(rest) % 4:
            raise ValueError("derivation path is not a multiple of 4 bytes")
        path = [struct.unpack_from("<I", rest, i)[0] for i in range(0, len(rest), 4)]
        return cls(pubkey=pubkey, fingerprint=fingerprint, path=path,
                   leaf_hashes=leaf_hashes)

    def serialize_value(self) -> bytes:
        out = compact_size(len(self.leaf_hashes)) + b"".join(self.leaf_hashes)
        out += self.fingerprint
        out += b"".join(struct.pack("<I", i) for i in self.path)
        return out


# ============================================================
# PER-INPUT / PER-OUTPUT MAPS
# ============================================================

@dataclass
class PsbtInput:
    non_witness_utxo: Optional[Transaction] = None
    witness_utxo: Optional[TxOut] = None
    sighash_type: Optional[int] = None
    final_script_sig: Optional[bytes] = None
    final_script_witness: Optional[List[bytes]] = None
    tap_key_sig: Optional[bytes] = None
    tap_bip32_derivations: List[TapDerivation] = field(default_factory=list)
    tap_internal_key: Optional[bytes] = None
    tap_merkle_root: Optional[bytes] = None
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_pairs(cls, pairs: List[Tuple[bytes, bytes]], where: str) -> "PsbtInput":
        inp = cls()
        for key, val in pairs:
            key_type = key[0]
            single = len(key) == 1
            if key_type == PSBT_IN_NON_WITNESS_UTXO and single:
                inp.non_witness_utxo = Transaction.parse(val)
            elif key_type == PSBT_IN_WITNESS_UTXO and single:
                inp.witness_utxo = TxOut.parse(val)
            elif key_type == PSBT_IN_SIGHASH_TYPE and single:
                inp.sighash_type = struct.unpack(
                    "<I", _expect_len(val, (4,), f"{where}.sighash_type"))[0]
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG and single:
                inp.final_script_sig = val
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and single:
                s = BytesIO(val)
                inp.final_script_witness = [
                    read_var_bytes(s) for _ in range(read_compact_size(s))
                ]
            elif key_type == PSBT_IN_TAP_KEY_SIG and single:
                inp.tap_key_sig = _expect_len(val, (64, 65), f"{where}.tap_key_sig")
            elif key_type == PSBT_IN_TAP_BIP32_DERIVATION and len(key) == 33:
                inp.tap_bip32_derivations.append(TapDerivation.parse(key[1:], val))
            elif key_type == PSBT_IN_TAP_INTERNAL_KEY and single:
                inp.tap_internal_key = _expect_len(
                    val, (32,), f"{where}.tap_internal_key")
            elif key_type == PSBT_IN_TAP_MERKLE_ROOT and single:
                inp.tap_merkle_root = _expect_len(
                    val, (32,), f"{where}.tap_merkle_root")
            else:
                inp.unknown[key] = val
        return inp

    def serialize(self) -> bytes:
        buf = b""
        if self.non_witness_utxo is not None:
            buf += _kv(bytes([PSBT_IN_NON_WITNESS_UTXO]),
                       self.non_witness_utxo.serialize())
        if self.witness_utxo is not None:
            buf += _kv(bytes([PSBT_IN_WITNESS_UTXO]), self.witness_utxo.serialize())
        if self.sighash_type is not None:
            buf += _kv(bytes([PSBT_IN_SIGHASH_TYPE]),
                       struct.pack("<I", self.sighash_type))
        if self.final_script_sig is not None:
            buf += _kv(bytes([PSBT_IN_FINAL_SCRIPTSIG]), self.final_script_sig)
        if self.final_script_witness is not None:
            stack = compact_size(len(self.final_script_witness))
            stack += b"".join(var_bytes(item) for item in self.final_script_witness)
            buf += _kv(bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), stack)
        if self.tap_key_sig is not None:
            buf += _kv(bytes([PSBT_IN_TAP_KEY_SIG]), self.tap_key_sig)
        for der in self.tap_bip32_derivations:
            buf += _kv(bytes([PSBT_IN_TAP_BIP32_DERIVATION]) + der.pubkey,
                       der.serialize_value())
        if self.tap_internal_key is not None:
            buf += _kv(bytes([PSBT_IN_TAP_INTERNAL_KEY]), self.tap_internal_key)
        if self.tap_merkle_root is not None:
            buf += _kv(bytes([PSBT_IN_TAP_MERKLE_ROOT]), self.tap_merkle_root)
        for key, val in self.unknown.items():
            buf += _kv(key, val)
        return buf + b"\x00"


@dataclass
class PsbtOutput:
    tap_internal_key: Optional[bytes] = None
    tap_bip32_derivations: List[TapDerivation] = field(default_factory=list)
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_pairs(cls, pairs: List[Tuple[bytes, bytes]], where: str) -> "PsbtOutput":
        out = cls()
        for key, val in pairs:
            key_type = key[0]
            if key_type == PSBT_OUT_TAP_INTERNAL_KEY and len(key) == 1:
                out.tap_internal_key = _expect_len(
                    val, (32,), f"{where}.tap_internal_key")
            elif key_type == PSBT_OUT_TAP_BIP32_DERIVATION and len(key) == 33:
                out.tap_bip32_derivations.append(TapDerivation.parse(key[1:], val))
            else:
                out.unknown[key] = val
        return out

    def serialize(self) -> bytes:
        buf = b""
        if self.tap_internal_key is not None:
            buf += _kv(bytes([PSBT_OUT_TAP_INTERNAL_KEY]), self.tap_internal_key)
        for der in self.tap_bip32_derivations:
            buf += _kv(bytes([PSBT_OUT_TAP_BIP32_DERIVATION]) + der.pubkey,
                       der.serialize_value())
        for key, val in self.unknown.items():
            buf += _kv(key, val)
        return buf + b"\x00"


# ============================================================
# PSBT
# ============================================================

@dataclass
class Psbt:
    """Unsigned transaction + per-input / per-output signing metadata."""
    tx: Transaction
    inputs: List[PsbtInput] = field(default_factory=list)
    outputs: List[PsbtOutput] = field(default_factory=list)
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    @classmethod
    def from_tx(cls, tx: Transaction) -> "Psbt":
        """Empty PSBT (creator role) for an unsigned transaction."""
        return cls(
            tx=tx,
            inputs=[PsbtInput() for _ in tx.inputs],
            outputs=[PsbtOutput() for _ in tx.outputs],
        )

    # ---- parsing ------------------------------------------------------
    @classmethod
    def parse(cls, data: bytes) -> "Psbt":
        """Parse a BIP-174 binary PSBT.  Raises ``InvalidProposal``."""
        if data[:5] != PSBT_MAGIC:
            raise InvalidProposal("not a PSBT (bad magic)", operation="parse_psbt")
        try:
            return cls._parse_maps(BytesIO(data[5:]))
        except InvalidProposal:
            raise
        except (ValueError, struct.error) as exc:
            raise InvalidProposal(str(exc), operation="parse_psbt") from exc

    @classmethod
    def _parse_maps(cls, s: BytesIO) -> "Psbt":
        tx: Optional[Transaction] = None
        unknown: Dict[bytes, bytes] = {}
        for key, val in _read_map(s, "global"):
            if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                tx = Transaction.parse(val, allow_witness=False)
            else:
                if key == bytes([PSBT_GLOBAL_VERSION]) and val != b"\x00" * 4:
                    raise InvalidProposal(
                        f"unsupported PSBT version {val.hex()}",
                        operation="parse_psbt", field="global.version",
                    )
                unknown[key] = val
        if tx is None:
            raise InvalidProposal("missing unsigned transaction",
                                  operation="parse_psbt", field="global.unsigned_tx")
        for idx, txin in enumerate(tx.inputs):
            if txin.script_sig or txin.witness:
                raise InvalidProposal(
                    "unsigned transaction input is not empty",
                    operation="parse_psbt", field=f"inputs[{idx}]",
                )

        psbt = cls(tx=tx, unknown=unknown)
        for idx in range(len(tx.inputs)):
            where = f"inputs[{idx}]"
            psbt.inputs.append(PsbtInput.from_pairs(_read_map(s, where), where))
        for idx in range(len(tx.outputs)):
            where = f"outputs[{idx}]"
            psbt.outputs.append(PsbtOutput.from_pairs(_read_map(s, where), where))
        if s.read(1):
            raise InvalidProposal("trailing bytes after PSBT", operation="parse_psbt")
        return psbt

    @classmethod
    def from_hex(cls, psbt_hex: str) -> "Psbt":
        try:
            data = bytes.fromhex(psbt_hex.strip())
        except ValueError as exc:
            raise InvalidProposal("PSBT is not valid hex",
                                  operation="parse_psbt") from exc
        return cls.parse(data)

    @classmethod
    def from_base64(cls, b64: str) -> "Psbt":
        try:
            data = b64decode(b64, validate=True)
        except ValueError as exc:
            raise InvalidProposal("PSBT is not valid base64",
                                  operation="parse_psbt") from exc
        return cls.parse(data)

    # ---- serialisation ------------------------------------------------
    def serialize(self) -> bytes:
        buf = PSBT_MAGIC
        buf += _kv(bytes([PSBT_GLOBAL_UNSIGNED_TX]),
                   self.tx.serialize(include_witness=False))
        for key, val in self.unknown.items():
            buf += _kv(key, val)
        buf += b"\x00"
        for inp in self.inputs:
            buf += inp.serialize()
        for out in self.outputs:
            buf += out.serialize()
        return buf

    def to_hex(self) -> str:
        return self.serialize().hex()

    def to_base64(self) -> str:
        return b64encode(self.serialize()).decode()

    # ---- queries ------------------------------------------------------
    def committed_prevout(self, index: int) -> TxOut:
        """
        Previous output spent by input *index*: ``witness_utxo`` first,
        then the referenced output of ``non_witness_utxo``.

        Raises ``MissingCommittedValue`` when neither is present.
        """
        inp = self.inputs[index]
        if inp.witness_utxo is not None:
            return inp.witness_utxo
        if inp.non_witness_utxo is not None:
            txin = self.tx.inputs[index]
            prev = inp.non_witness_utxo
            if prev.txid != txin.prev_txid_hex:
                raise InvalidProposal(
                    "non_witness_utxo does not match the spent txid",
                    operation="committed_prevout",
                    field=f"inputs[{index}].non_witness_utxo",
                )
            if txin.vout >= len(prev.outputs):
                raise InvalidProposal(
                    f"vout {txin.vout} out of range",
                    operation="committed_prevout",
                    field=f"inputs[{index}].non_witness_utxo",
                )
            return prev.outputs[txin.vout]
        raise MissingCommittedValue(
            "no witness_utxo or non_witness_utxo",
            operation="committed_prevout", field=f"inputs[{index}]",
        )

    # ---- finaliser / extractor ----------------------------------------
    def finalize_taproot_input(self, index: int) -> None:
        """
        BIP-174 finalizer for a Taproot key-path spend: the witness is the
        single key signature; every other signing field is dropped.
        """
        inp = self.inputs[index]
        if inp.tap_key_sig is None:
            raise InvalidProposal("input has no Taproot key signature",
                                  operation="finalize", field=f"inputs[{index}]")
        inp.final_script_witness = [inp.tap_key_sig]
        inp.final_script_sig = None
        inp.tap_key_sig = None
        inp.sighash_type = None
        inp.tap_internal_key = None
        inp.tap_merkle_root = None
        inp.tap_bip32_derivations = []

    def extract_transaction(self) -> Transaction:
        """Network transaction with the final scriptSig / witness attached."""
        tx = copy.deepcopy(self.tx)
        for idx, (txin, inp) in enumerate(zip(tx.inputs, self.inputs)):
            if inp.final_script_witness is None and inp.final_script_sig is None:
                raise InvalidProposal("input is not finalized",
                                      operation="extract", field=f"inputs[{idx}]")
            txin.script_sig = inp.final_script_sig or b""
            txin.witness = list(inp.final_script_witness or [])
        log.debug("extracted tx %s (%d inputs)", tx.txid, len(tx.inputs))
        return tx
