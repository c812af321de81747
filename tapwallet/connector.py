"""
Payment connector contract.

A connector adapts one remote wallet/node protocol to a common set of
async operations returning ``ConnectorResponse`` objects.  Connectors do
not share a base class: each one satisfies the :class:`Connector`
protocol structurally and is selected explicitly by :class:`ConnectorKind`.

Amounts cross this boundary in whole satoshis.  Adapters convert from the
millisatoshi values their protocols speak, through :func:`parse_msat`.
"""

from __future__ import annotations

import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    FrozenSet,
    Generic,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    Union,
    runtime_checkable,
)

from tapwallet.errors import (
    ConnectorNotImplemented,
    InvalidAmountFormat,
    InvalidCustomRecord,
    TransportFailure,
)
from tapwallet.log import get_logger

log = get_logger("connector")

T = TypeVar("T")


class ConnectorKind(Enum):
    COMMANDO = "commando"
    NWC = "nwc"


# Every operation a connector may offer.
METHODS: FrozenSet[str] = frozenset({
    "get_info",
    "get_balance",
    "get_invoices",
    "get_transactions",
    "make_invoice",
    "send_payment",
    "keysend",
    "check_payment",
    "sign_message",
    "connect_peer",
})


# ============================================================
# RESPONSE SHAPES
# ============================================================

@dataclass(frozen=True)
class ConnectorResponse(Generic[T]):
    data: T


@dataclass(frozen=True)
class NodeInfo:
    alias: str
    pubkey: str
    color: Optional[str] = None
    network: Optional[str] = None
    block_height: Optional[int] = None
    methods: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Balance:
    balance: int
    currency: str = "BTC"


@dataclass(frozen=True)
class ConnectorTransaction:
    id: str
    memo: Optional[str]
    preimage: Optional[str]
    payment_hash: Optional[str]
    settled: bool
    settle_date: Optional[int]      # unix milliseconds
    total_amount: int               # satoshis
    type: str                       # "received" | "sent"


@dataclass(frozen=True)
class InvoiceList:
    invoices: List[ConnectorTransaction] = field(default_factory=list)


@dataclass(frozen=True)
class TransactionList:
    transactions: List[ConnectorTransaction] = field(default_factory=list)


@dataclass(frozen=True)
class MakeInvoiceResult:
    payment_request: str
    r_hash: str


@dataclass(frozen=True)
class Route:
    total_amt: int
    total_fees: int


@dataclass(frozen=True)
class SendPaymentResult:
    preimage: str
    payment_hash: str
    route: Route


@dataclass(frozen=True)
class CheckPaymentResult:
    paid: bool
    preimage: Optional[str] = None


@dataclass(frozen=True)
class SignMessageResult:
    message: str
    signature: str


# ============================================================
# CONTRACT
# ============================================================

@runtime_checkable
class Connector(Protocol):
    """Capability contract every backend adapter satisfies.

    Operations missing from ``supported_methods`` raise
    ``ConnectorNotImplemented``.
    """

    kind: ConnectorKind

    @property
    def supported_methods(self) -> FrozenSet[str]:
        ...

    async def init(self) -> None:
        ...

    async def unload(self) -> None:
        ...

    async def get_info(self) -> ConnectorResponse[NodeInfo]:
        ...

    async def get_balance(self) -> ConnectorResponse[Balance]:
        ...

    async def make_invoice(
        self, amount: Union[int, str], memo: str,
    ) -> ConnectorResponse[MakeInvoiceResult]:
        ...

    async def send_payment(self, payment_request: str) -> ConnectorResponse[SendPaymentResult]:
        ...

    async def keysend(
        self, pubkey: str, amount: int, custom_records: Mapping[str, str],
    ) -> ConnectorResponse[SendPaymentResult]:
        ...

    async def check_payment(self, payment_hash: str) -> ConnectorResponse[CheckPaymentResult]:
        ...

    async def sign_message(self, message: str) -> ConnectorResponse[SignMessageResult]:
        ...

    async def connect_peer(self, pubkey: str, host: str) -> ConnectorResponse[bool]:
        ...


def supports(connector: Connector, method: str) -> bool:
    return method in METHODS and method in connector.supported_methods


async def invoke(connector: Connector, method: str, **kwargs: Any) -> ConnectorResponse:
    """Call *method* after checking the connector's capability set."""
    if not supports(connector, method):
        raise ConnectorNotImplemented(
            f"not supported by the {connector.kind.value} connector",
            operation=method,
        )
    return await getattr(connector, method)(**kwargs)


@asynccontextmanager
async def open_connector(connector: Connector) -> AsyncIterator[Connector]:
    """``init()`` the transport and always ``unload()`` it, even on error."""
    try:
        await connector.init()
        yield connector
    finally:
        await connector.unload()


def create_connector(
    kind: Union[ConnectorKind, str],
    config: Union[Mapping[str, Any], Any],
) -> Connector:
    """Build the connector for *kind* from a config object or a plain dict."""
    kind = ConnectorKind(kind)
    if kind is ConnectorKind.COMMANDO:
        from tapwallet.commando import CommandoConfig, CommandoConnector
        if isinstance(config, Mapping):
            config = CommandoConfig.from_dict(config)
        return CommandoConnector(config)
    if kind is ConnectorKind.NWC:
        from tapwallet.nwc import NWCConfig, NWCConnector
        if isinstance(config, Mapping):
            config = NWCConfig.from_dict(config)
        return NWCConnector(config)
    raise ValueError(f"unknown connector kind {kind!r}")  # pragma: no cover


# ============================================================
# AMOUNTS
# ============================================================

_MSAT_RE = re.compile(r"^(\d+)(msat)?$")


def parse_msat(value: Any, *, operation: str, field: str) -> int:
    """
    Millisatoshi value from an int or a ``"1234"`` / ``"1234msat"`` string.

    Raises ``InvalidAmountFormat`` for anything else.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        if value < 0:
            raise InvalidAmountFormat(f"negative amount {value}",
                                      operation=operation, field=field)
        return value
    if isinstance(value, str):
        match = _MSAT_RE.match(value.strip())
        if match:
            return int(match.group(1))
    raise InvalidAmountFormat(f"cannot parse {value!r} as millisatoshis",
                              operation=operation, field=field)


def msat_to_sat(msat: int) -> int:
    """Whole satoshis; sub-satoshi remainders are dropped."""
    return msat // 1000


def parse_sat_amount(value: Any, *, operation: str, field: str = "amount") -> int:
    """Satoshi amount from an int or a decimal-digit string."""
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise InvalidAmountFormat(f"cannot parse {value!r} as satoshis",
                              operation=operation, field=field)


def require_fields(payload: Mapping[str, Any], names: List[str], *, operation: str) -> Dict[str, Any]:
    """Pick *names* out of a remote response, failing on a missing field."""
    missing = [n for n in names if n not in payload]
    if missing:
        raise TransportFailure(f"response is missing {', '.join(missing)}",
                               operation=operation)
    return {n: payload[n] for n in names}


def hex_custom_records(
    records: Mapping[str, str], *, operation: str,
) -> List[Tuple[int, str]]:
    """``(tlv type, hex of UTF-8 value)`` pairs for keysend custom records."""
    pairs = []
    for key, value in records.items():
        if not str(key).isdecimal():
            raise InvalidCustomRecord(f"record type {key!r} is not numeric",
                                      operation=operation, field="custom_records")
        pairs.append((int(key), value.encode("utf-8").hex()))
    return pairs
