"""
Nostr Wallet Connect (NIP-47) connector.

Amounts travel as millisatoshis on the wire and as whole satoshis across
the connector boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Dict, FrozenSet, Mapping, Optional, Protocol, Union

from websockets.exceptions import WebSocketException

from tapwallet import bolt11
from tapwallet.connector import (
    Balance,
    CheckPaymentResult,
    ConnectorKind,
    ConnectorResponse,
    ConnectorTransaction,
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
from tapwallet.errors import ConnectorNotImplemented, MissingPaymentHash, TransportFailure
from tapwallet.log import get_logger
from tapwallet.nostr import NWCClient, NWCConnection

log = get_logger("nwc")

TRANSACTION_PAGE_SIZE = 50


@dataclass(frozen=True)
class NWCConfig:
    nostr_wallet_connect_url: str

    def __repr__(self) -> str:
        return "NWCConfig(nostr_wallet_connect_url=<redacted>)"

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "NWCConfig":
        url = d.get("nostr_wallet_connect_url", d.get("nostrWalletConnectUrl"))
        if not url:
            raise ValueError("nostr_wallet_connect_url is required")
        return cls(nostr_wallet_connect_url=url)


class NWCTransport(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        ...


class NWCConnector:
    kind = ConnectorKind.NWC
    _SUPPORTED: FrozenSet[str] = frozenset({
        "get_info",
        "get_balance",
        "get_transactions",
        "make_invoice",
        "send_payment",
        "keysend",
        "check_payment",
        "sign_message",
    })

    def __init__(self, config: NWCConfig, client: Optional[NWCTransport] = None) -> None:
        self.config = config
        if client is None:
            client = NWCClient(NWCConnection.parse(config.nostr_wallet_connect_url))
        self._client = client

    def __repr__(self) -> str:
        return "NWCConnector()"

    @property
    def supported_methods(self) -> FrozenSet[str]:
        return self._SUPPORTED

    async def init(self) -> None:
        try:
            await self._client.connect()
        except (OSError, WebSocketException) as exc:
            raise TransportFailure(f"cannot reach relay: {exc}", operation="init") from exc

    async def unload(self) -> None:
        await self._client.close()

    async def _request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._client.request(method, params)
        except TransportFailure:
            raise
        except (OSError, ValueError, WebSocketException) as exc:
            raise TransportFailure(str(exc) or type(exc).__name__,
                                   operation=method) from exc

    # ---- wallet -----------------------------------------------------------
    async def get_info(self) -> ConnectorResponse[NodeInfo]:
        result = await self._request("get_info", {})
        return ConnectorResponse(NodeInfo(
            alias=result.get("alias", ""),
            pubkey=result.get("pubkey", ""),
            color=result.get("color"),
            network=result.get("network"),
            block_height=result.get("block_height"),
            methods=self.supported_methods,
        ))

    async def get_balance(self) -> ConnectorResponse[Balance]:
        result = await self._request("get_balance", {})
        fields = require_fields(result, ["balance"], operation="get_balance")
        msat = parse_msat(fields["balance"], operation="get_balance", field="balance")
        return ConnectorResponse(Balance(balance=msat_to_sat(msat)))

    async def get_transactions(self) -> ConnectorResponse[TransactionList]:
        result = await self._request("list_transactions", {
            "limit": TRANSACTION_PAGE_SIZE,
            "unpaid": False,
        })
        transactions = []
        for index, tx in enumerate(result.get("transactions", [])):
            settled_at = tx.get("settled_at")
            transactions.append(ConnectorTransaction(
                id=str(index),
                memo=tx.get("description"),
                preimage=tx.get("preimage"),
                payment_hash=tx.get("payment_hash"),
                settled=True,
                settle_date=settled_at * 1000 if settled_at else None,
                total_amount=msat_to_sat(parse_msat(tx.get("amount", 0),
                                                    operation="list_transactions",
                                                    field="amount")),
                type="received" if tx.get("type") == "incoming" else "sent",
            ))
        return ConnectorResponse(TransactionList(transactions=transactions))

    async def sign_message(self, message: str) -> ConnectorResponse[SignMessageResult]:
        result = await self._request("sign_message", {"message": message})
        fields = require_fields(result, ["signature"], operation="sign_message")
        return ConnectorResponse(SignMessageResult(
            message=result.get("message", message),
            signature=fields["signature"],
        ))

    async def connect_peer(self, pubkey: str, host: str) -> ConnectorResponse[bool]:
        raise ConnectorNotImplemented("not supported by the nwc connector",
                                      operation="connect_peer")

    # ---- invoices ---------------------------------------------------------
    async def make_invoice(
        self, amount: Union[int, str], memo: str,
    ) -> ConnectorResponse[MakeInvoiceResult]:
        sats = parse_sat_amount(amount, operation="make_invoice")
        result = await self._request("make_invoice", {
            "amount": sats * 1000,
            "description": memo,
        })
        fields = require_fields(result, ["invoice"], operation="make_invoice")
        payment_hash = result.get("payment_hash")
        if not payment_hash:
            payment_hash = bolt11.decode(fields["invoice"]).payment_hash
        if not payment_hash:
            raise MissingPaymentHash("invoice carries no payment hash",
                                     operation="make_invoice", field="payment_hash")
        return ConnectorResponse(MakeInvoiceResult(payment_request=fields["invoice"],
                                                   r_hash=payment_hash))

    async def check_payment(self, payment_hash: str) -> ConnectorResponse[CheckPaymentResult]:
        try:
            result = await self._request("lookup_invoice", {"payment_hash": payment_hash})
        except Exception as exc:
            log.warning("lookup_invoice %s failed, reporting unpaid: %s", payment_hash, exc)
            return ConnectorResponse(CheckPaymentResult(paid=False))
        return ConnectorResponse(CheckPaymentResult(
            paid=bool(result.get("settled_at")),
            preimage=result.get("preimage"),
        ))

    # ---- payments ---------------------------------------------------------
    async def send_payment(self, payment_request: str) -> ConnectorResponse[SendPaymentResult]:
        invoice = bolt11.decode(payment_request)
        if not invoice.payment_hash:
            raise MissingPaymentHash("invoice carries no payment hash",
                                     operation="send_payment", field="payment_hash")
        amount = msat_to_sat(invoice.amount_msat) if invoice.amount_msat is not None else 0

        result = await self._request("pay_invoice", {"invoice": payment_request})
        fields = require_fields(result, ["preimage"], operation="pay_invoice")
        return ConnectorResponse(SendPaymentResult(
            preimage=fields["preimage"],
            payment_hash=invoice.payment_hash,
            route=Route(total_amt=amount, total_fees=self._fees(result, "pay_invoice")),
        ))

    async def keysend(
        self, pubkey: str, amount: int, custom_records: Mapping[str, str],
    ) -> ConnectorResponse[SendPaymentResult]:
        sats = parse_sat_amount(amount, operation="keysend")
        tlv_records = [
            {"type": tlv_type, "value": value}
            for tlv_type, value in hex_custom_records(custom_records, operation="keysend")
        ]

        result = await self._request("pay_keysend", {
            "amount": sats * 1000,
            "pubkey": pubkey,
            "tlv_records": tlv_records,
        })
        fields = require_fields(result, ["preimage"], operation="pay_keysend")
        preimage = fields["preimage"]
        return ConnectorResponse(SendPaymentResult(
            preimage=preimage,
            payment_hash=sha256(bytes.fromhex(preimage)).hexdigest(),
            route=Route(total_amt=sats, total_fees=self._fees(result, "pay_keysend")),
        ))

    @staticmethod
    def _fees(result: Mapping[str, Any], method: str) -> int:
        if result.get("fees_paid") is None:
            return 0
        return msat_to_sat(parse_msat(result["fees_paid"], operation=method,
                                      field="fees_paid"))
