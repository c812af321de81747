"""
Error taxonomy shared by the signing engines and the payment connectors.

Each class derives from the builtin exception that callers would already
expect for the same condition (``ValueError`` for bad input,
``RuntimeError`` for remote or invariant failures), so a plain
``except ValueError`` keeps working.

Every error names the operation (and, where it applies, the field) that
failed.
"""

from __future__ import annotations

from typing import Optional


class _WalletError(Exception):
    """Mixin carrying ``operation`` / ``field`` context."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.field = field
        prefix = operation or ""
        if field:
            prefix = f"{prefix}.{field}" if prefix else field
        super().__init__(f"{prefix}: {message}" if prefix else message)


# ============================================================
# SIGNING / PREVIEW
# ============================================================

class InvalidProposal(_WalletError, ValueError):
    """Malformed or unsupported PSBT."""


class UnsupportedInputCount(InvalidProposal):
    """The proposal does not have exactly one input."""


class MissingCommittedValue(InvalidProposal):
    """The input does not commit to its previous output (no UTXO record)."""


class MissingSpendingKey(_WalletError, ValueError):
    """Neither an internal key nor a derivation record names the input key."""


class InvalidTweak(_WalletError, RuntimeError):
    """The Taproot tweak produced an invalid scalar.

    Unreachable for correctly derived keys; treat as a bug.
    """


# ============================================================
# CONNECTORS
# ============================================================

class MissingPaymentHash(_WalletError, ValueError):
    """No payment hash in the remote response nor in the payment request."""


class InvalidAmountFormat(_WalletError, ValueError):
    """An amount could not be parsed into whole units."""


class InvalidCustomRecord(_WalletError, ValueError):
    """A keysend custom record type is not a TLV number."""


class TransportFailure(_WalletError, RuntimeError):
    """Network or protocol level failure reported by a remote peer."""


class ConnectorNotImplemented(_WalletError, NotImplementedError):
    """The connector does not support the requested capability."""
