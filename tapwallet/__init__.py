"""Taproot PSBT signing and Lightning payment connectors."""

from tapwallet.commando import CommandoConfig, CommandoConnector
from tapwallet.connector import (
    ConnectorKind,
    ConnectorResponse,
    create_connector,
    invoke,
    open_connector,
)
from tapwallet.errors import (
    ConnectorNotImplemented,
    InvalidAmountFormat,
    InvalidCustomRecord,
    InvalidProposal,
    InvalidTweak,
    MissingCommittedValue,
    MissingPaymentHash,
    MissingSpendingKey,
    TransportFailure,
    UnsupportedInputCount,
)
from tapwallet.hd_keys import HDKeyProvider, KeyPair, KeyProvider
from tapwallet.log import setup_logging
from tapwallet.nwc import NWCConfig, NWCConnector
from tapwallet.psbt import Psbt
from tapwallet.signer import Address, Preview, PreviewEngine, SigningEngine

__version__ = "0.1.0"

__all__ = [
    "Address",
    "CommandoConfig",
    "CommandoConnector",
    "ConnectorKind",
    "ConnectorNotImplemented",
    "ConnectorResponse",
    "HDKeyProvider",
    "InvalidAmountFormat",
    "InvalidCustomRecord",
    "InvalidProposal",
    "InvalidTweak",
    "KeyPair",
    "KeyProvider",
    "MissingCommittedValue",
    "MissingPaymentHash",
    "MissingSpendingKey",
    "NWCConfig",
    "NWCConnector",
    "Preview",
    "PreviewEngine",
    "Psbt",
    "SigningEngine",
    "TransportFailure",
    "UnsupportedInputCount",
    "create_connector",
    "invoke",
    "open_connector",
    "setup_logging",
]
