"""
Taproot (BIP-86 / BIP-341) preview and signing engines
=======================================================
- PreviewEngine: decodes an unsigned PSBT into a human-reviewable list of
  inputs and outputs.  Never touches private key material.
- SigningEngine: derives the account key, applies the BIP-341 tweak, signs
  the single key-path input with BIP-340 Schnorr, finalizes and extracts
  the network transaction.

Current limitation:
    Exactly one input per PSBT.  Any other input count is rejected before
    a key is derived.  Lifting this needs per-input key resolution and a
    fresh look at the tweak-per-input and fee review story.

Dependencies:
    pip install coincurve bip_utils base58
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple, Union

import base58
from bip_utils import Bech32ChecksumError, SegwitBech32Decoder, SegwitBech32Encoder
from coincurve import PrivateKey as _Secp256k1PrivateKey
from coincurve import PublicKey as _Secp256k1PublicKey
from coincurve import PublicKeyXOnly as _Secp256k1PubKeyXOnly

from tapwallet.bitcoin_protocol import BIP341Sighash, tagged_hash
from tapwallet.errors import (
    InvalidProposal,
    InvalidTweak,
    MissingSpendingKey,
    UnsupportedInputCount,
)
from tapwallet.hd_keys import CURVE_ORDER, KeyPair, KeyProvider
from tapwallet.log import get_logger
from tapwallet.psbt import Psbt, PsbtInput, TapDerivation

log = get_logger("signer")

# Address index inside the account; multi-index support is not offered.
ADDRESS_INDEX = 0


# ============================================================
# NETWORKS
# ============================================================

@dataclass(frozen=True)
class Network:
    name: str
    hrp: str
    p2pkh_version: int
    p2sh_version: int
    derivation_prefix: str


NETWORKS: Dict[str, Network] = {
    "bitcoin": Network("bitcoin", "bc", 0x00, 0x05, "m/86'/0'/0'/0"),
    "testnet": Network("testnet", "tb", 0x6F, 0xC4, "m/86'/1'/0'/0"),
    "signet":  Network("signet", "tb", 0x6F, 0xC4, "m/86'/1'/0'/0"),
    "regtest": Network("regtest", "bcrt", 0x6F, 0xC4, "m/86'/1'/0'/0"),
}


def get_network(network: Union[str, Network]) -> Network:
    if isinstance(network, Network):
        return network
    try:
        return NETWORKS[network]
    except KeyError:
        raise ValueError(
            f"unknown network {network!r}; expected one of {sorted(NETWORKS)}"
        ) from None


# ============================================================
# TAPROOT KEY TWEAK (BIP-341)
# ============================================================

def xonly(pubkey: bytes) -> bytes:
    """32-byte x-only key from a 32-byte x-only or 33-byte SEC1 key."""
    if len(pubkey) == 32:
        return pubkey
    if len(pubkey) == 33:
        return pubkey[1:]
    raise ValueError(
        f"Unexpected pubkey length {len(pubkey)}: "
        f"expected 32 (x-only) or 33 (compressed)"
    )


def tap_tweak_hash(internal_key: bytes, merkle_root: Optional[bytes] = None) -> bytes:
    """TaggedHash("TapTweak", P.x || merkle_root); key-only when no root."""
    return tagged_hash("TapTweak", xonly(internal_key) + (merkle_root or b""))


def _tweak_scalar(internal_key: bytes, merkle_root: Optional[bytes]) -> bytes:
    tweak = tap_tweak_hash(internal_key, merkle_root)
    if int.from_bytes(tweak, "big") >= CURVE_ORDER:
        log.critical("TapTweak hash exceeds the curve order")
        raise InvalidTweak("tweak hash >= curve order", operation="tweak")
    return tweak


def tweak_public_key(internal_key: bytes, merkle_root: Optional[bytes] = None) -> bytes:
    """Q = lift_x(P) + t*G; returns the 32-byte x-only output key."""
    try:
        point = _Secp256k1PublicKey(b"\x02" + xonly(internal_key))
    except ValueError as exc:
        raise ValueError(f"invalid x-only public key {internal_key.hex()}") from exc
    tweak = _tweak_scalar(internal_key, merkle_root)
    try:
        tweaked = point.add(tweak)
    except ValueError as exc:
        log.critical("Taproot output key is the point at infinity")
        raise InvalidTweak("tweaked public key is invalid",
                           operation="tweak") from exc
    return tweaked.format(compressed=True)[1:]


def tweak_private_key(key_pair: KeyPair, merkle_root: Optional[bytes] = None) -> bytes:
    """
    BIP-341 private key tweak.

    Negates the secret when the public key has an odd Y coordinate, then
    adds TapTweak(P.x || merkle_root) mod n.  Raises ``InvalidTweak`` when
    the secret or the result falls outside [1, n-1].
    """
    secret = int.from_bytes(key_pair.private_key, "big")
    if not 0 < secret < CURVE_ORDER:
        log.critical("private scalar out of range before tweak")
        raise InvalidTweak("private key out of range", operation="tweak")

    pubkey = key_pair.public_key
    if len(pubkey) != 33:
        pubkey = _Secp256k1PrivateKey(key_pair.private_key).public_key.format(
            compressed=True)
    if pubkey[0] == 0x03:
        secret = CURVE_ORDER - secret

    tweak = int.from_bytes(_tweak_scalar(pubkey, merkle_root), "big")
    tweaked = (secret + tweak) % CURVE_ORDER
    if tweaked == 0:
        log.critical("tweaked private key is zero")
        raise InvalidTweak("tweaked private key is zero", operation="tweak")
    return tweaked.to_bytes(32, "big")


# ============================================================
# ADDRESSES
# ============================================================

def taproot_address(
    internal_key: bytes,
    network: Union[str, Network] = "bitcoin",
    merkle_root: Optional[bytes] = None,
) -> str:
    """Bech32m P2TR address paying to the tweaked *internal_key*."""
    net = get_network(network)
    return SegwitBech32Encoder.Encode(net.hrp, 1, tweak_public_key(internal_key, merkle_root))


def script_to_address(script: bytes, network: Union[str, Network] = "bitcoin") -> Optional[str]:
    """Address for a standard output script, ``None`` for anything else."""
    net = get_network(network)

    # P2PKH: OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG
    if (len(script) == 25 and script[:3] == b"\x76\xa9\x14"
            and script[23:] == b"\x88\xac"):
        return base58.b58encode_check(bytes([net.p2pkh_version]) + script[3:23]).decode()

    # P2SH: OP_HASH160 <20> OP_EQUAL
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22] == 0x87:
        return base58.b58encode_check(bytes([net.p2sh_version]) + script[2:22]).decode()

    # Segwit: OP_n <2..40 byte program>
    if 4 <= len(script) <= 42 and script[1] == len(script) - 2:
        op = script[0]
        if op == 0x00:
            version = 0
        elif 0x51 <= op <= 0x60:
            version = op - 0x50
        else:
            return None
        # bech32 for v0, bech32m (BIP-350) for v1+
        return SegwitBech32Encoder.Encode(net.hrp, version, script[2:])

    return None


def address_to_script(address: str, network: Union[str, Network] = "bitcoin") -> bytes:
    """Decode a segwit or base58 address of *network* to its scriptPubKey."""
    net = get_network(network)
    if address.lower().startswith(net.hrp + "1"):
        try:
            ver, prog = SegwitBech32Decoder.Decode(net.hrp, address.lower())
        except (ValueError, Bech32ChecksumError) as exc:
            raise ValueError(f"Invalid segwit address: {address}") from exc
        op = 0x00 if ver == 0 else 0x50 + ver
        return bytes([op, len(prog)]) + bytes(prog)

    try:
        payload = base58.b58decode_check(address)
    except ValueError as exc:
        raise ValueError(f"Invalid address: {address}") from exc
    if len(payload) != 21:
        raise ValueError(f"Invalid base58 address length: {address}")
    if payload[0] == net.p2pkh_version:
        return b"\x76\xa9\x14" + payload[1:] + b"\x88\xac"
    if payload[0] == net.p2sh_version:
        return b"\xa9\x14" + payload[1:] + b"\x87"
    raise ValueError(f"Address {address} is not for network {net.name}")


@dataclass(frozen=True)
class Address:
    """The wallet's Taproot receive address and where it came from."""
    address: str
    derivation_path: str
    index: int
    public_key: str


# ============================================================
# PREVIEW
# ============================================================

class AddressSource(Enum):
    """Which link of the resolution chain produced an address."""
    INTERNAL_KEY = "internal_key"
    DERIVATION = "derivation"
    DESTINATION = "destination"
    UNRESOLVED = "unresolved"


UNRESOLVED_ADDRESS = "unknown"


@dataclass(frozen=True)
class PreviewEntry:
    amount: int
    address: Optional[str]
    source: AddressSource

    @property
    def resolved(self) -> bool:
        return self.source is not AddressSource.UNRESOLVED

    def to_dict(self) -> Dict[str, object]:
        return {
            "amount": self.amount,
            "address": self.address if self.resolved else UNRESOLVED_ADDRESS,
        }


@dataclass(frozen=True)
class Preview:
    inputs: Tuple[PreviewEntry, ...]
    outputs: Tuple[PreviewEntry, ...]

    def to_dict(self) -> Dict[str, List[Dict[str, object]]]:
        return {
            "inputs": [e.to_dict() for e in self.inputs],
            "outputs": [e.to_dict() for e in self.outputs],
        }


ProposalLike = Union[str, bytes, Psbt]


def load_proposal(proposal: ProposalLike) -> Psbt:
    """
    Accept a ``Psbt`` (copied, never mutated), raw bytes, a hex string or
    a base64 string.
    """
    if isinstance(proposal, Psbt):
        return copy.deepcopy(proposal)
    if isinstance(proposal, bytes):
        return Psbt.parse(proposal)
    text = proposal.strip()
    if text.startswith("cHNidP8"):          # base64("psbt\xff")
        return Psbt.from_base64(text)
    return Psbt.from_hex(text)


def require_single_input(psbt: Psbt, operation: str) -> None:
    n_inputs = len(psbt.tx.inputs)
    if n_inputs != 1:
        raise UnsupportedInputCount(
            f"exactly one input is supported, got {n_inputs}",
            operation=operation, field="inputs",
        )


def _first_derivation_key(derivations: List[TapDerivation]) -> Optional[bytes]:
    return derivations[0].pubkey if derivations else None


def _input_key_chain(inp: PsbtInput) -> Iterator[Tuple[AddressSource, Optional[bytes]]]:
    """Spending key candidates, in order of preference."""
    yield AddressSource.INTERNAL_KEY, inp.tap_internal_key
    yield AddressSource.DERIVATION, _first_derivation_key(inp.tap_bip32_derivations)


class PreviewEngine:
    """Read-only projection of a PSBT for review before authorization."""

    def __init__(self, network: Union[str, Network] = "bitcoin") -> None:
        self.network = get_network(network)

    def preview(self, proposal: ProposalLike) -> Preview:
        psbt = load_proposal(proposal)
        require_single_input(psbt, "preview")

        inputs = [self._preview_input(psbt, idx) for idx in range(len(psbt.inputs))]
        outputs = [
            self._preview_output(txout.value, txout.script_pubkey, psbt_out)
            for txout, psbt_out in zip(psbt.tx.outputs, psbt.outputs)
        ]
        return Preview(inputs=tuple(inputs), outputs=tuple(outputs))

    def _preview_input(self, psbt: Psbt, index: int) -> PreviewEntry:
        inp = psbt.inputs[index]
        where = f"inputs[{index}]"
        resolved = next(
            ((src, key) for src, key in _input_key_chain(inp) if key is not None),
            None,
        )
        if resolved is None:
            raise MissingSpendingKey(
                "no tap_internal_key or tap_bip32_derivation",
                operation="preview", field=where,
            )
        source, pubkey = resolved
        try:
            address = taproot_address(pubkey, self.network, inp.tap_merkle_root)
        except ValueError as exc:
            raise InvalidProposal(str(exc), operation="preview", field=where) from exc

        prevout = psbt.committed_prevout(index)
        return PreviewEntry(amount=prevout.value, address=address, source=source)

    def _preview_output(self, amount: int, script: bytes, psbt_out) -> PreviewEntry:
        pubkey = _first_derivation_key(psbt_out.tap_bip32_derivations)
        if pubkey is not None:
            try:
                return PreviewEntry(amount, taproot_address(pubkey, self.network),
                                    AddressSource.DERIVATION)
            except ValueError:
                log.warning("output derivation key is not a valid x-only key")
        destination = script_to_address(script, self.network)
        if destination is not None:
            return PreviewEntry(amount, destination, AddressSource.DESTINATION)
        return PreviewEntry(amount, None, AddressSource.UNRESOLVED)


# ============================================================
# SIGNING
# ============================================================

class SigningEngine:
    """
    Signs the single Taproot key-path input of a PSBT with the wallet's
    BIP-86 account key.

    The key pair is fetched from the ``KeyProvider`` on every call and is
    never stored on the engine.
    """

    def __init__(
        self,
        key_provider: KeyProvider,
        network: Union[str, Network] = "bitcoin",
    ) -> None:
        self.key_provider = key_provider
        self.network = get_network(network)

    @property
    def derivation_path(self) -> str:
        return f"{self.network.derivation_prefix}/{ADDRESS_INDEX}"

    def derive_address(self) -> Address:
        """Taproot receive address for index 0 of the account."""
        path = self.derivation_path
        key_pair = self.key_provider.derive_key(path)
        return Address(
            address=taproot_address(key_pair.public_key, self.network),
            derivation_path=path,
            index=ADDRESS_INDEX,
            public_key=key_pair.public_key.hex(),
        )

    def sign(self, proposal: ProposalLike) -> str:
        """
        Sign, finalize and extract.

        Returns:
            Hex of the fully signed network transaction.

        Raises:
            UnsupportedInputCount, MissingCommittedValue, InvalidProposal
            before any key is derived; InvalidTweak if the tweak fails.
        """
        psbt = load_proposal(proposal)
        require_single_input(psbt, "sign")

        index = 0
        inp = psbt.inputs[index]
        prevout = psbt.committed_prevout(index)
        hash_type = (BIP341Sighash.SIGHASH_DEFAULT if inp.sighash_type is None
                     else inp.sighash_type)
        if hash_type not in (BIP341Sighash.SIGHASH_DEFAULT, BIP341Sighash.SIGHASH_ALL):
            raise InvalidProposal(
                f"only SIGHASH_DEFAULT (0x00) and SIGHASH_ALL (0x01) are "
                f"supported, got 0x{hash_type:02x}",
                operation="sign", field=f"inputs[{index}].sighash_type",
            )
        if prevout.script_pubkey[:2] != b"\x51\x20" or len(prevout.script_pubkey) != 34:
            raise InvalidProposal(
                "spent output is not a P2TR output",
                operation="sign", field=f"inputs[{index}].witness_utxo",
            )

        key_pair = self.key_provider.derive_key(self.derivation_path)
        signer = _Secp256k1PrivateKey(
            tweak_private_key(key_pair, inp.tap_merkle_root))
        output_key = signer.public_key.format(compressed=True)[1:]
        if prevout.script_pubkey[2:] != output_key:
            raise InvalidProposal(
                "derived key does not control the spent output",
                operation="sign", field=f"inputs[{index}].witness_utxo",
            )

        sighash = BIP341Sighash(psbt.tx, [prevout], index).compute(hash_type)
        signature = signer.sign_schnorr(sighash)
        # Immediate self-check against the on-chain output key
        if not _Secp256k1PubKeyXOnly(output_key).verify(signature, sighash):
            raise RuntimeError(
                f"Schnorr self-verification failed on input {index}"
            )
        if hash_type != BIP341Sighash.SIGHASH_DEFAULT:
            signature += bytes([hash_type])

        inp.tap_key_sig = signature
        psbt.finalize_taproot_input(index)
        tx = psbt.extract_transaction()

        log.info("Signed and finalized %d input(s), txid=%s, hash_type=0x%02x",
                 len(tx.inputs), tx.txid, hash_type)
        return tx.hex()
