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
import hashlib
from typing import List, Optional

import pytest
from bech32 import CHARSET, bech32_create_checksum, convertbits
from coincurve import PrivateKey

from tapwallet.bitcoin_protocol import Transaction, TxIn, TxOut
from tapwallet.hd_keys import HDKeyProvider
from tapwallet.psbt import Psbt
from tapwallet.signer import get_network, tweak_public_key, xonly

# BIP-39 seed of "abandon abandon ... about" (empty passphrase)
BIP86_SEED = bytes.fromhex(
    "5eb00bbddcf069084889a8ab9155568165f5c453ccb85e70811aaed6f6da5fc1"
    "9a5ac40b389cd370d086206dec8aa6c43daea6690f20ad3d8d48b2d2ce9e38e4"
)

INVOICE_NODE_KEY = bytes.fromhex("e126f68f7eafcc8b74f54d269fe206be715000f94dac067d1c04a8ca3b2db734")
PAYMENT_HASH = bytes.fromhex("0001020304050607080900010203040506070809000102030405060708090102")


def _int_words(value: int, n_words: int) -> List[int]:
    return [(value >> (5 * (n_words - 1 - i))) & 31 for i in range(n_words)]


def _tagged(tag: str, words: List[int]) -> List[int]:
    return [CHARSET.find(tag), len(words) // 32, len(words) % 32] + list(words)


def build_invoice(
    *,
    amount: str = "10u",
    currency: str = "bc",
    timestamp: int = 1_700_000_000,
    payment_hash: Optional[bytes] = PAYMENT_HASH,
    description: Optional[str] = "coffee",
    expiry: Optional[int] = None,
    payee: Optional[bytes] = None,
    node_key: bytes = INVOICE_NODE_KEY,
) -> str:
    """Encode and sign a BOLT-11 invoice (test helper)."""
    hrp = f"ln{currency}{amount}"
    words = _int_words(timestamp, 7)
    if payment_hash is not None:
        words += _tagged("p", convertbits(payment_hash, 8, 5, True))
    if description is not None:
        words += _tagged("d", convertbits(description.encode(), 8, 5, True))
    if expiry is not None:
        words += _tagged("x", _int_words(expiry, 2))
    if payee is not None:
        words += _tagged("n", convertbits(payee, 8, 5, True))

    signed = hrp.encode() + bytes(convertbits(words, 5, 8, True))
    signature = PrivateKey(node_key).sign_recoverable(hashlib.sha256(signed).digest(), hasher=None)
    words += convertbits(signature, 8, 5, True)
    checksum = bech32_create_checksum(hrp, words)
    return hrp + "1" + "".join(CHARSET[w] for w in words + checksum)


def invoice_node_pubkey() -> str:
    return PrivateKey(INVOICE_NODE_KEY).public_key.format(compressed=True).hex()


def build_proposal(
    provider: HDKeyProvider,
    network: str = "bitcoin",
    *,
    value: int = 50_000,
    out_value: int = 49_000,
    n_inputs: int = 1,
    out_script: Optional[bytes] = None,
    sighash_type: Optional[int] = None,
    merkle_root: Optional[bytes] = None,
    internal_key: bool = True,
) -> Psbt:
    """Unsigned PSBT spending the account's own P2TR output (test helper)."""
    key_pair = provider.derive_key(f"{get_network(network).derivation_prefix}/0")
    script = b"\x51\x20" + tweak_public_key(key_pair.public_key, merkle_root)
    tx = Transaction(
        inputs=[TxIn(txid=bytes([i + 1]) * 32, vout=i) for i in range(n_inputs)],
        outputs=[TxOut(out_value, out_script if out_script is not None else script)],
    )
    psbt = Psbt.from_tx(tx)
    for inp in psbt.inputs:
        inp.witness_utxo = TxOut(value, script)
        inp.sighash_type = sighash_type
        inp.tap_merkle_root = merkle_root
        if internal_key:
            inp.tap_internal_key = xonly(key_pair.public_key)
    return psbt


@pytest.fixture
def provider() -> HDKeyProvider:
    return HDKeyProvider(BIP86_SEED)
