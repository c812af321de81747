"""
Core Lightning connector over Commando.

Every operation is one JSON-RPC call sent through :class:`LnSocket` to the
node's commando plugin, authorised by the configured rune.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional, Protocol, Union

from tapwallet.connector import (
    METHODS,
    Balance,
    CheckPaymentResult,
    ConnectorKind,
    ConnectorResponse,
    ConnectorTransaction,
    InvoiceList,
    MakeInvoiceResult,
    NodeInfo,
    Route,
    SendPaymentResult,
    SignMessageResult,
    TransactionList,
    hex_custom_records,
    msat_to_sat,
    parse_msat,
    parse_sat_amount,
    require_fields,
)
from tapwallet.errors import ConnectorNotImplemented, TransportFailure
from tapwallet.lnsocket import LnSocket
from tapwallet.log import get_logger

log = get_logger("commando")


@dataclass(frozen=True)
class CommandoConfig:
    host: str
    pubkey: str
    rune: str
    port: int = 9735
    private_key: Optional[str] = None

    def __post_init__(self) -> None:
        if len(self.pubkey) != 66:
            raise ValueError(f"node pubkey must be 33 bytes hex, got {self.pubkey!r}")
        bytes.fromhex(self.pubkey)
        if self.private_key is not None:
            bytes.fromhex(self.private_key)

    def __repr__(self) -> str:
        return (f"CommandoConfig(host={self.host!r}, port={self.port}, "
                f"pubkey={self.pubkey!r}, rune=<redacted>)")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "CommandoConfig":
        """Accepts snake_case or camelCase keys (``privateKey``)."""
        return cls(
            host=d["host"],
            port=int(d.get("port", 9735)),
            pubkey=d["pubkey"],
            rune=d["rune"],
            private_key=d.get("private_key", d.get("privateKey")),
        )


class CommandoTransport(Protocol):
    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def commando(self, method: str, params: Dict[str, Any], rune: str) -> Any:
        ...


def _default_transport(config: CommandoConfig) -> CommandoTransport:
    return LnSocket(
        config.host,
        config.port,
        bytes.fromhex(config.pubkey),
        bytes.fromhex(config.private_key) if config.private_key else None,
    )


class CommandoConnector:
    kind = ConnectorKind.COMMANDO
    _SUPPORTED: FrozenSet[str] = METHODS - {"get_transactions"}

    def __init__(
        self,
        config: CommandoConfig,
        transport: Optional[CommandoTransport] = None,
    ) -> None:
        self.config = config
        self._transport = transport or _default_transport(config)

    def __repr__(self) -> str:
        return f"CommandoConnector({self.config.host}:{self.config.port})"

    @property
    def supported_methods(self) -> FrozenSet[str]:
        return self._SUPPORTED

    async def init(self) -> None:
        try:
            await self._transport.connect()
        except TransportFailure:
            raise
        except (OSError, EOFError) as exc:
            raise TransportFailure(f"cannot reach node: {exc}", operation="init") from exc

    async def unload(self) -> None:
        await self._transport.disconnect()

    async def _call(self, method: str, params: Dict[str, Any]) -> Any:
        log.debug("calling %s", method)
        try:
            return await self._transport.commando(method, params, self.config.rune)
        except TransportFailure:
            raise
        except (OSError, EOFError) as exc:
            raise TransportFailure(str(exc) or type(exc).__name__,
                                   operation=method) from exc

    # ---- node -------------------------------------------------------------
    async def get_info(self) -> ConnectorResponse[NodeInfo]:
        resp = await self._call("getinfo", {})
        fields = require_fields(resp, ["id", "alias"], operation="getinfo")
        return ConnectorResponse(NodeInfo(
            alias=fields["alias"],
            pubkey=fields["id"],
            color=resp.get("color"),
            network=resp.get("network"),
            block_height=resp.get("blockheight"),
            methods=self.supported_methods,
        ))

    async def get_balance(self) -> ConnectorResponse[Balance]:
        resp = await self._call("listfunds", {})
        total = 0
        for channel in resp.get("channels", []):
            if "channel_sat" in channel:
                total += parse_sat_amount(channel["channel_sat"],
                                          operation="listfunds", field="channel_sat")
            else:
                total += msat_to_sat(parse_msat(channel.get("our_amount_msat"),
                                                operation="listfunds",
                                                field="our_amount_msat"))
        return ConnectorResponse(Balance(balance=total))

    async def connect_peer(self, pubkey: str, host: str) -> ConnectorResponse[bool]:
        await self._call("connect", {"id": pubkey, "host": host})
        return ConnectorResponse(True)

    async def sign_message(self, message: str) -> ConnectorResponse[SignMessageResult]:
        resp = await self._call("signmessage", {"message": message})
        fields = require_fields(resp, ["zbase"], operation="signmessage")
        return ConnectorResponse(SignMessageResult(message=message,
                                                   signature=fields["zbase"]))

    # ---- invoices ---------------------------------------------------------
    async def get_invoices(self) -> ConnectorResponse[InvoiceList]:
        resp = await self._call("listinvoices", {})
        return ConnectorResponse(InvoiceList(
            invoices=[self._to_transaction(inv) for inv in resp.get("invoices", [])]
        ))

    @staticmethod
    def _to_transaction(inv: Mapping[str, Any]) -> ConnectorTransaction:
        received = inv.get("amount_received_msat")
        paid_at = inv.get("paid_at")
        return ConnectorTransaction(
            id=str(inv.get("label", "")),
            memo=inv.get("description"),
            preimage=inv.get("payment_preimage"),
            payment_hash=inv.get("payment_hash"),
            settled=inv.get("status") == "paid",
            settle_date=paid_at * 1000 if paid_at else None,
            total_amount=msat_to_sat(parse_msat(received, operation="listinvoices",
                                                field="amount_received_msat"))
            if received is not None else 0,
            type="received",
        )

    async def make_invoice(
        self, amount: Union[int, str], memo: str,
    ) -> ConnectorResponse[MakeInvoiceResult]:
        sats = parse_sat_amount(amount, operation="make_invoice")
        resp = await self._call("invoice", {
            "amount_msat": sats * 1000,
            "label": str(uuid.uuid4()),
            "description": memo,
        })
        fields = require_fields(resp, ["bolt11", "payment_hash"], operation="invoice")
        return ConnectorResponse(MakeInvoiceResult(payment_request=fields["bolt11"],
                                                   r_hash=fields["payment_hash"]))

    async def check_payment(self, payment_hash: str) -> ConnectorResponse[CheckPaymentResult]:
        resp = await self._call("listinvoices", {"payment_hash": payment_hash})
        invoices = resp.get("invoices", [])
        if len(invoices) != 1:
            return ConnectorResponse(CheckPaymentResult(paid=False))
        invoice = invoices[0]
        paid = invoice.get("status") == "paid"
        return ConnectorResponse(CheckPaymentResult(
            paid=paid,
            preimage=invoice.get("payment_preimage") if paid else None,
        ))

    # ---- payments ---------------------------------------------------------
    async def send_payment(self, payment_request: str) -> ConnectorResponse[SendPaymentResult]:
        resp = await self._call("pay", {"bolt11": payment_request})
        return ConnectorResponse(self._to_payment(resp, "pay"))

    async def keysend(
        self, pubkey: str, amount: int, custom_records: Mapping[str, str],
    ) -> ConnectorResponse[SendPaymentResult]:
        sats = parse_sat_amount(amount, operation="keysend")
        resp = await self._call("keysend", {
            "destination": pubkey,
            "msatoshi": sats * 1000,
            "extratlvs": {
                str(tlv_type): value
                for tlv_type, value in hex_custom_records(custom_records, operation="keysend")
            },
        })
        return ConnectorResponse(self._to_payment(resp, "keysend"))

    @staticmethod
    def _to_payment(resp: Mapping[str, Any], method: str) -> SendPaymentResult:
        fields = require_fields(
            resp,
            ["payment_preimage", "payment_hash", "amount_msat", "amount_sent_msat"],
            operation=method,
        )
        amount = parse_msat(fields["amount_msat"], operation=method, field="amount_msat")
        sent = parse_msat(fields["amount_sent_msat"], operation=method,
                          field="amount_sent_msat")
        return SendPaymentResult(
            preimage=fields["payment_preimage"],
            payment_hash=fields["payment_hash"],
            route=Route(total_amt=msat_to_sat(amount),
                        total_fees=msat_to_sat(sent - amount)),
        )

    async def get_transactions(self) -> ConnectorResponse[TransactionList]:
        raise ConnectorNotImplemented("not supported by the commando connector",
                                      operation="get_transactions")
