# Copyright (c) 2026 Emiliano G Solazzi
# 
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# 
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
# 
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
# 
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import pytest
from coincurve import PrivateKey, PublicKeyXOnly

from conftest import build_proposal
from tapwallet import signer as signer_module
from tapwallet.bitcoin_protocol import BIP341Sighash, Transaction, TxOut
from tapwallet.errors import (
    InvalidProposal,
    InvalidTweak,
    MissingCommittedValue,
    MissingSpendingKey,
    UnsupportedInputCount,
)
from tapwallet.hd_keys import HDKeyProvider, KeyPair
from tapwallet.signer import *

BIP86_INTERNAL_KEY = "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115"
BIP86_OUTPUT_KEY = "a60869f0dbcf1dc659c9cecbaf8050135ea9e8cdc487053f1dc6880949dc684c"
BIP86_ADDRESS = "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"


class CountingProvider:
    """Wraps a provider and counts derivations."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def derive_key(self, path):
        self.calls += 1
        return self.inner.derive_key(path)


class TestBIP86Vectors:
    """BIP-86 first receive address of the 'abandon ... about' mnemonic."""

    def test_internal_key(self, provider):
        """m/86'/0'/0'/0/0 internal key matches the BIP-86 vector."""
        kp = provider.derive_key("m/86'/0'/0'/0/0")
        assert xonly(kp.public_key).hex() == BIP86_INTERNAL_KEY

    def test_output_key(self, provider):
        """Key-only tweak gives the BIP-86 output key."""
        kp = provider.derive_key("m/86'/0'/0'/0/0")
        assert tweak_public_key(kp.public_key).hex() == BIP86_OUTPUT_KEY

    def test_derive_address_mainnet(self, provider):
        """derive_address() returns the BIP-86 vector address and path."""
        addr = SigningEngine(provider, "bitcoin").derive_address()
        assert addr.address == BIP86_ADDRESS
        assert addr.derivation_path == "m/86'/0'/0'/0/0"
        assert addr.index == 0
        assert addr.public_key[2:] == BIP86_INTERNAL_KEY

    @pytest.mark.parametrize("network,prefix,hrp", [
        ("testnet", "m/86'/1'/0'/0/0", "tb1p"),
        ("signet", "m/86'/1'/0'/0/0", "tb1p"),
        ("regtest", "m/86'/1'/0'/0/0", "bcrt1p"),
    ])
    def test_test_networks_use_coin_type_one(self, provider, network, prefix, hrp):
        """Non-mainnet networks derive under coin type 1 with their own HRP."""
        addr = SigningEngine(provider, network).derive_address()
        assert addr.derivation_path == prefix
        assert addr.address.startswith(hrp)

    def test_derive_address_is_stable(self, provider):
        """Repeated calls return the same address."""
        engine = SigningEngine(provider, "bitcoin")
        assert engine.derive_address() == engine.derive_address()

    def test_unknown_network(self, provider):
        """An unknown network name is rejected."""
        with pytest.raises(ValueError, match="unknown network"):
            SigningEngine(provider, "litecoin")


class TestTweak:
    """BIP-341 key tweak."""

    @pytest.mark.parametrize("fill", [1, 2, 3, 4, 5, 6, 7, 8])
    def test_private_and_public_tweak_agree(self, fill):
        """tweak(d)*G == tweak(P) for keys of either Y parity."""
        kp = KeyPair.from_private_key(bytes([fill]) * 32)
        tweaked = PrivateKey(tweak_private_key(kp))
        assert tweaked.public_key.format()[1:] == tweak_public_key(kp.public_key)

    def test_tweak_is_deterministic(self, provider):
        """Same key pair, same tweaked key."""
        kp = provider.derive_key("m/86'/0'/0'/0/0")
        assert tweak_private_key(kp) == tweak_private_key(kp)

    def test_merkle_root_changes_output_key(self, provider):
        """A script tree root commits into the output key."""
        kp = provider.derive_key("m/86'/0'/0'/0/0")
        root = b"\x11" * 32
        assert tweak_public_key(kp.public_key, root) != tweak_public_key(kp.public_key)
        tweaked = PrivateKey(tweak_private_key(kp, root))
        assert tweaked.public_key.format()[1:] == tweak_public_key(kp.public_key, root)

    def test_tweak_hash_out_of_range(self, monkeypatch, provider):
        """A TapTweak hash >= n raises InvalidTweak."""
        monkeypatch.setattr(signer_module, "tap_tweak_hash", lambda *a: b"\xff" * 32)
        kp = provider.derive_key("m/86'/0'/0'/0/0")
        with pytest.raises(InvalidTweak, match="curve order"):
            tweak_private_key(kp)

    def test_xonly_rejects_bad_length(self):
        """Only 32- and 33-byte keys are accepted."""
        with pytest.raises(ValueError, match="Unexpected pubkey length"):
            xonly(b"\x02" * 31)


class TestAddresses:
    """Output script <-> address conversion."""

    @pytest.mark.parametrize("address,script_hex", [
        ("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2",
         "76a9147680adec8eabcabac676be9e83854ade0bd22cdb88ac"),
        ("3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy",
         "a914b472a266d0bd89c13706a4132ccfb16f7c3b9fcb87"),
        ("bc1qw508d6qejxtdg4c5r3zarvary0c5xw7kv8f3t4",
         "0014751e76e8199196d454941c45d1b3a323f1433bd6"),
        (BIP86_ADDRESS, "5120" + BIP86_OUTPUT_KEY),
    ])
    def test_mainnet_vectors(self, address, script_hex):
        """Known mainnet addresses map to their scriptPubKeys and back."""
        assert address_to_script(address, "bitcoin").hex() == script_hex
        assert script_to_address(bytes.fromhex(script_hex), "bitcoin") == address

    def test_bip350_taproot_vector(self):
        """Witness v1 programs use the bech32m checksum."""
        address = "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0"
        script = address_to_script(address, "bitcoin")
        assert script[:2] == b"\x51\x20"
        assert script_to_address(script, "bitcoin") == address

    def test_taproot_with_bech32_checksum_rejected(self):
        """A v1 address carrying a plain bech32 checksum is invalid."""
        with pytest.raises(ValueError, match="Invalid segwit address"):
            address_to_script(
                "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqr9a0ap", "bitcoin")

    def test_nonstandard_script(self):
        """OP_RETURN has no address."""
        assert script_to_address(bytes.fromhex("6a0568656c6c6f")) is None

    def test_wrong_network(self):
        """A mainnet base58 address does not decode on testnet."""
        with pytest.raises(ValueError, match="not for network"):
            address_to_script("1BvBMSEYstWetqTFn5Au4m4GFg7xJaNVN2", "testnet")


class TestPreview:
    """PreviewEngine.preview()."""

    def test_single_input_example(self, provider):
        """50 000 sat in, 49 000 sat out, both resolved to addresses."""
        psbt = build_proposal(provider)
        preview = PreviewEngine("bitcoin").preview(psbt)
        assert preview.to_dict() == {
            "inputs": [{"amount": 50_000, "address": BIP86_ADDRESS}],
            "outputs": [{"amount": 49_000, "address": BIP86_ADDRESS}],
        }
        assert preview.inputs[0].source is AddressSource.INTERNAL_KEY
        assert preview.outputs[0].source is AddressSource.DESTINATION

    def test_input_address_matches_derive_address(self, provider):
        """The previewed input address is the wallet's own address."""
        engine = SigningEngine(provider, "testnet")
        preview = PreviewEngine("testnet").preview(build_proposal(provider, "testnet"))
        assert preview.inputs[0].address == engine.derive_address().address

    def test_input_falls_back_to_derivation_record(self, provider):
        """Without tap_internal_key the first derivation record names the key."""
        psbt = build_proposal(provider, internal_key=False)
        kp = provider.derive_key("m/86'/0'/0'/0/0")
        psbt.inputs[0].tap_bip32_derivations.append(
            signer_module.TapDerivation(xonly(kp.public_key), b"\x73\xc5\xda\x0a", []))
        preview = PreviewEngine().preview(psbt)
        assert preview.inputs[0].address == BIP86_ADDRESS
        assert preview.inputs[0].source is AddressSource.DERIVATION

    def test_input_without_key(self, provider):
        """No internal key and no derivation record -> MissingSpendingKey."""
        psbt = build_proposal(provider, internal_key=False)
        with pytest.raises(MissingSpendingKey, match="inputs\\[0\\]"):
            PreviewEngine().preview(psbt)

    def test_input_without_committed_value(self, provider):
        """No UTXO record on the input -> MissingCommittedValue."""
        psbt = build_proposal(provider)
        psbt.inputs[0].witness_utxo = None
        with pytest.raises(MissingCommittedValue):
            PreviewEngine().preview(psbt)

    def test_output_derivation_record_wins(self, provider):
        """A change output with a derivation record previews to that key's address."""
        psbt = build_proposal(provider, out_script=bytes.fromhex("6a00"))
        kp = provider.derive_key("m/86'/0'/0'/0/0")
        psbt.outputs[0].tap_bip32_derivations.append(
            signer_module.TapDerivation(xonly(kp.public_key), b"\x00" * 4, []))
        preview = PreviewEngine().preview(psbt)
        assert preview.outputs[0].address == BIP86_ADDRESS
        assert preview.outputs[0].source is AddressSource.DERIVATION

    def test_unresolved_output(self, provider):
        """A non-standard output is reported with the 'unknown' placeholder."""
        psbt = build_proposal(provider, out_script=bytes.fromhex("6a0568656c6c6f"))
        preview = PreviewEngine().preview(psbt)
        assert not preview.outputs[0].resolved
        assert preview.to_dict()["outputs"] == [{"amount": 49_000, "address": "unknown"}]

    def test_merkle_root_honoured(self, provider):
        """Input address commits to tap_merkle_root when present."""
        psbt = build_proposal(provider, merkle_root=b"\x22" * 32)
        preview = PreviewEngine().preview(psbt)
        assert preview.inputs[0].address != BIP86_ADDRESS
        assert preview.inputs[0].address == script_to_address(
            psbt.inputs[0].witness_utxo.script_pubkey)

    @pytest.mark.parametrize("fmt", ["psbt", "bytes", "hex", "base64"])
    def test_accepted_encodings(self, provider, fmt):
        """Psbt objects, raw bytes, hex and base64 all preview the same."""
        psbt = build_proposal(provider)
        proposal = {
            "psbt": psbt,
            "bytes": psbt.serialize(),
            "hex": psbt.to_hex(),
            "base64": psbt.to_base64(),
        }[fmt]
        assert PreviewEngine().preview(proposal).inputs[0].amount == 50_000

    def test_garbage_proposal(self):
        """Text that is neither a hex nor base64 PSBT -> InvalidProposal."""
        with pytest.raises(InvalidProposal):
            PreviewEngine().preview("definitely not a psbt")


class TestInputCount:
    """Both engines refuse anything but one input, before key derivation."""

    @pytest.mark.parametrize("n_inputs", [0, 2])
    def test_preview_rejects(self, provider, n_inputs):
        """Preview rejects 0 and 2 inputs."""
        psbt = build_proposal(provider, n_inputs=n_inputs)
        with pytest.raises(UnsupportedInputCount, match=f"got {n_inputs}"):
            PreviewEngine().preview(psbt)

    @pytest.mark.parametrize("n_inputs", [0, 2])
    def test_sign_rejects_before_derivation(self, provider, n_inputs):
        """Sign rejects 0 and 2 inputs without touching the key provider."""
        psbt = build_proposal(provider, n_inputs=n_inputs)
        counting = CountingProvider(provider)
        with pytest.raises(UnsupportedInputCount):
            SigningEngine(counting).sign(psbt)
        assert counting.calls == 0

    def test_missing_value_rejected_before_derivation(self, provider):
        """An input without a UTXO record fails before the key is derived."""
        psbt = build_proposal(provider)
        psbt.inputs[0].witness_utxo = None
        counting = CountingProvider(provider)
        with pytest.raises(MissingCommittedValue):
            SigningEngine(counting).sign(psbt)
        assert counting.calls == 0


class TestSigning:
    """SigningEngine.sign()."""

    def _verify(self, tx_hex: str, prevout: TxOut, hash_type: int = 0x00) -> bytes:
        tx = Transaction.parse(bytes.fromhex(tx_hex))
        witness = tx.inputs[0].witness
        assert len(witness) == 1
        sig = witness[0]
        sighash = BIP341Sighash(tx, [prevout], 0).compute(hash_type)
        assert PublicKeyXOnly(prevout.script_pubkey[2:]).verify(sig[:64], sighash)
        return sig

    def test_sign_default_sighash(self, provider):
        """Signature verifies against the committed output key."""
        psbt = build_proposal(provider)
        tx_hex = SigningEngine(provider).sign(psbt)
        sig = self._verify(tx_hex, psbt.inputs[0].witness_utxo)
        assert len(sig) == 64

    def test_sign_sighash_all(self, provider):
        """SIGHASH_ALL appends the hash type byte to the signature."""
        psbt = build_proposal(provider, sighash_type=BIP341Sighash.SIGHASH_ALL)
        tx_hex = SigningEngine(provider).sign(psbt)
        sig = self._verify(tx_hex, psbt.inputs[0].witness_utxo, BIP341Sighash.SIGHASH_ALL)
        assert len(sig) == 65 and sig[64] == 0x01

    @pytest.mark.parametrize("hash_type", [0x02, 0x03, 0x81])
    def test_other_sighash_types_rejected(self, provider, hash_type):
        """Only DEFAULT and ALL are signed."""
        psbt = build_proposal(provider, sighash_type=hash_type)
        with pytest.raises(InvalidProposal, match="SIGHASH_DEFAULT"):
            SigningEngine(provider).sign(psbt)

    def test_txid_unchanged_by_signing(self, provider):
        """Witness data does not alter the txid."""
        psbt = build_proposal(provider)
        signed = Transaction.parse(bytes.fromhex(SigningEngine(provider).sign(psbt)))
        assert signed.txid == psbt.tx.txid
        assert signed.outputs[0].value == 49_000

    def test_proposal_not_mutated(self, provider):
        """The caller's Psbt object keeps its signing fields."""
        psbt = build_proposal(provider)
        SigningEngine(provider).sign(psbt)
        assert psbt.inputs[0].tap_key_sig is None
        assert psbt.inputs[0].final_script_witness is None
        assert psbt.inputs[0].tap_internal_key is not None

    def test_sign_base64(self, provider):
        """A base64 proposal signs to a valid transaction."""
        psbt = build_proposal(provider)
        tx_hex = SigningEngine(provider).sign(psbt.to_base64())
        self._verify(tx_hex, psbt.inputs[0].witness_utxo)

    def test_sign_with_merkle_root(self, provider):
        """tap_merkle_root on the input is applied to the signing tweak."""
        psbt = build_proposal(provider, merkle_root=b"\x33" * 32)
        tx_hex = SigningEngine(provider).sign(psbt)
        self._verify(tx_hex, psbt.inputs[0].witness_utxo)

    def test_foreign_output_rejected(self, provider):
        """A prevout paying someone else's key is refused."""
        other = HDKeyProvider(bytes(range(32)))
        psbt = build_proposal(other)
        with pytest.raises(InvalidProposal, match="does not control"):
            SigningEngine(provider).sign(psbt)

    def test_non_taproot_prevout_rejected(self, provider):
        """A P2WPKH prevout is not signed."""
        psbt = build_proposal(provider)
        psbt.inputs[0].witness_utxo = TxOut(
            50_000, bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6"))
        with pytest.raises(InvalidProposal, match="not a P2TR"):
            SigningEngine(provider).sign(psbt)

    def test_testnet_signing(self, provider):
        """Testnet engine signs an input owned by the coin-type-1 key."""
        psbt = build_proposal(provider, "testnet")
        tx_hex = SigningEngine(provider, "testnet").sign(psbt)
        self._verify(tx_hex, psbt.inputs[0].witness_utxo)