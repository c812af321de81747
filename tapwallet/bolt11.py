"""
BOLT-11 payment request decoder.

Lightning invoices are bech32 strings (BIP-173 checksum, not bech32m) that
routinely run past the 90 characters segwit addresses are capped at, so the
string is split here.  Only the charset, the checksum test and the bit
regrouping come from the ``bech32`` package.

Reference: https://github.com/lightning/bolts/blob/master/11-payment-encoding.md
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from bech32 import CHARSET, bech32_verify_checksum, convertbits
from coincurve import PublicKey

# msat per unit of each amount multiplier (1 BTC = 10^11 msat)
_MSAT_PER_UNIT = {
    "": 10**11,
    "m": 10**8,
    "u": 10**5,
    "n": 10**2,
}

_HRP_RE = re.compile(r"^ln([a-z]+?)(?:(\d+)([munp]?))?$")

_SIGNATURE_WORDS = 104
_TIMESTAMP_WORDS = 7

# tagged field types (bech32 value of the tag character)
TAG_PAYMENT_HASH = 1         # p
TAG_PAYMENT_SECRET = 16      # s
TAG_DESCRIPTION = 13         # d
TAG_DESCRIPTION_HASH = 23    # h
TAG_EXPIRY = 6               # x
TAG_MIN_FINAL_CLTV = 24      # c
TAG_PAYEE = 19               # n


class InvalidPaymentRequest(ValueError):
    """The string is not a well-formed BOLT-11 payment request."""


@dataclass
class PaymentRequest:
    payment_request: str
    currency: str
    timestamp: int
    amount_msat: Optional[int] = None
    payment_hash: Optional[str] = None
    payment_secret: Optional[str] = None
    description: Optional[str] = None
    description_hash: Optional[str] = None
    expiry: int = 3600
    min_final_cltv_expiry: int = 18
    payee: Optional[str] = None
    unknown_tags: Dict[int, List[int]] = field(default_factory=dict)

    @property
    def millisatoshis(self) -> Optional[int]:
        return self.amount_msat

    @property
    def satoshis(self) -> Optional[int]:
        """Whole-satoshi amount, ``None`` for zero-amount or sub-sat invoices."""
        if self.amount_msat is None or self.amount_msat % 1000:
            return None
        return self.amount_msat // 1000


def _words_to_int(words: List[int]) -> int:
    value = 0
    for w in words:
        value = (value << 5) | w
    return value


def _words_to_bytes(words: List[int], tag: str) -> bytes:
    data = convertbits(words, 5, 8, False)
    if data is None:
        raise InvalidPaymentRequest(f"bad padding in field {tag!r}")
    return bytes(data)


def _parse_amount(amount: Optional[str], multiplier: str) -> Optional[int]:
    if amount is None:
        return None
    if amount.startswith("0"):
        raise InvalidPaymentRequest("amount has leading zeros")
    value = int(amount)
    if multiplier == "p":
        if value % 10:
            raise InvalidPaymentRequest("pico-BTC amount is not a whole msat")
        return value // 10
    return value * _MSAT_PER_UNIT[multiplier]


def decode(payment_request: str) -> PaymentRequest:
    """Decode and signature-check a BOLT-11 payment request."""
    bech = payment_request.strip()
    if bech.lower().startswith("lightning:"):
        bech = bech[len("lightning:"):]
    if bech.lower() != bech and bech.upper() != bech:
        raise InvalidPaymentRequest("mixed-case payment request")
    bech = bech.lower()

    pos = bech.rfind("1")
    if pos < 1 or pos + 7 > len(bech):
        raise InvalidPaymentRequest("missing separator")
    hrp, data_part = bech[:pos], bech[pos + 1:]
    if not all(c in CHARSET for c in data_part):
        raise InvalidPaymentRequest("invalid bech32 character")
    data = [CHARSET.find(c) for c in data_part]
    if not bech32_verify_checksum(hrp, data):
        raise InvalidPaymentRequest("invalid checksum")

    match = _HRP_RE.match(hrp)
    if match is None:
        raise InvalidPaymentRequest(f"invalid prefix {hrp!r}")
    currency, amount, multiplier = match.group(1), match.group(2), match.group(3) or ""

    words = data[:-6]
    if len(words) < _TIMESTAMP_WORDS + _SIGNATURE_WORDS:
        raise InvalidPaymentRequest("payment request too short")
    sig_words = words[-_SIGNATURE_WORDS:]
    body = words[:-_SIGNATURE_WORDS]

    req = PaymentRequest(
        payment_request=payment_request.strip(),
        currency=currency,
        timestamp=_words_to_int(body[:_TIMESTAMP_WORDS]),
        amount_msat=_parse_amount(amount, multiplier),
    )

    pos = _TIMESTAMP_WORDS
    while pos < len(body):
        if pos + 3 > len(body):
            raise InvalidPaymentRequest("truncated tagged field")
        tag = body[pos]
        length = body[pos + 1] * 32 + body[pos + 2]
        value = body[pos + 3:pos + 3 + length]
        if len(value) != length:
            raise InvalidPaymentRequest("truncated tagged field")
        pos += 3 + length
        _apply_tag(req, tag, value)

    signature = _words_to_bytes(sig_words, "signature")
    if signature[64] > 3:
        raise InvalidPaymentRequest("invalid recovery id")
    signed = hrp.encode() + bytes(convertbits(body, 5, 8, True))
    try:
        recovered = PublicKey.from_signature_and_message(signature, signed)
    except ValueError as exc:
        raise InvalidPaymentRequest("signature does not recover a public key") from exc
    if req.payee is None:
        req.payee = recovered.format(compressed=True).hex()
    elif req.payee != recovered.format(compressed=True).hex():
        raise InvalidPaymentRequest("signature does not match payee")
    return req


def _apply_tag(req: PaymentRequest, tag: int, value: List[int]) -> None:
    # Fields with an unexpected length are skipped, as BOLT-11 readers must.
    if tag == TAG_PAYMENT_HASH:
        if len(value) == 52 and req.payment_hash is None:
            req.payment_hash = _words_to_bytes(value, "p").hex()
    elif tag == TAG_PAYMENT_SECRET:
        if len(value) == 52 and req.payment_secret is None:
            req.payment_secret = _words_to_bytes(value, "s").hex()
    elif tag == TAG_DESCRIPTION_HASH:
        if len(value) == 52:
            req.description_hash = _words_to_bytes(value, "h").hex()
    elif tag == TAG_PAYEE:
        if len(value) == 53:
            req.payee = _words_to_bytes(value, "n").hex()
    elif tag == TAG_DESCRIPTION:
        try:
            req.description = _words_to_bytes(value, "d").decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidPaymentRequest("description is not UTF-8") from exc
    elif tag == TAG_EXPIRY:
        req.expiry = _words_to_int(value)
    elif tag == TAG_MIN_FINAL_CLTV:
        req.min_final_cltv_expiry = _words_to_int(value)
    else:
        req.unknown_tags[tag] = value
