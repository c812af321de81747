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
import asyncio
import logging
from hashlib import sha256

import pytest

from conftest import PAYMENT_HASH, build_invoice
from tapwallet.bolt11 import InvalidPaymentRequest, decode
from tapwallet.connector import invoke, open_connector
from tapwallet.errors import (
    ConnectorNotImplemented,
    InvalidAmountFormat,
    InvalidCustomRecord,
    MissingPaymentHash,
    TransportFailure,
)
from tapwallet.nostr import NWCClient, NWCConnection
from tapwallet.nwc import NWCConfig, NWCConnector

from test_nostr import NWC_URL, FakeRelay, balance_handler

CONFIG = NWCConfig(nostr_wallet_connect_url=NWC_URL)
PREIMAGE = "0123456789abcdef" * 4


class FakeClient:
    """Stands in for NWCClient; answers NIP-47 methods from a table."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []
        self.connected = False

    async def connect(self):
        self.connected = True

    async def close(self):
        self.connected = False

    async def request(self, method, params):
        self.calls.append((method, params))
        resp = self.responses[method]
        if isinstance(resp, Exception):
            raise resp
        return resp


def _connector(**responses):
    client = FakeClient(responses)
    return NWCConnector(CONFIG, client), client


def run(coro):
    return asyncio.run(coro)


class TestWallet:
    """get_info / get_balance / list_transactions / sign_message."""

    def test_get_info(self):
        """get_info result maps onto NodeInfo."""
        conn, _ = _connector(get_info={
            "alias": "alby", "color": "#ffdd00", "pubkey": "02" + "aa" * 32,
            "network": "mainnet", "block_height": 840_000, "methods": ["pay_invoice"],
        })
        info = run(conn.get_info()).data
        assert (info.alias, info.network, info.block_height) == ("alby", "mainnet", 840_000)
        assert "connect_peer" not in info.methods

    def test_get_balance_msat_to_sat(self):
        """Wallet balance in msat is reported in whole sats."""
        conn, client = _connector(get_balance={"balance": 123_456_789})
        assert run(conn.get_balance()).data.balance == 123_456
        assert client.calls == [("get_balance", {})]

    def test_get_balance_bad_amount(self):
        """A non-numeric balance raises InvalidAmountFormat."""
        conn, _ = _connector(get_balance={"balance": "many"})
        with pytest.raises(InvalidAmountFormat, match="get_balance.balance"):
            run(conn.get_balance())

    def test_get_transactions(self):
        """list_transactions is paged at 50 settled entries."""
        conn, client = _connector(list_transactions={"transactions": [
            {"type": "incoming", "description": "tea", "preimage": "aa" * 32,
             "payment_hash": "bb" * 32, "amount": 21_000, "settled_at": 1_700_000_000},
            {"type": "outgoing", "amount": 5_500, "settled_at": None},
        ]})
        first, second = run(conn.get_transactions()).data.transactions
        assert client.calls == [("list_transactions", {"limit": 50, "unpaid": False})]
        assert (first.id, first.type, first.total_amount) == ("0", "received", 21)
        assert first.settle_date == 1_700_000_000_000
        assert first.memo == "tea" and first.settled
        assert (second.id, second.type, second.total_amount) == ("1", "sent", 5)
        assert second.settle_date is None

    def test_sign_message(self):
        """sign_message passes the signature through."""
        conn, client = _connector(sign_message={"message": "hi", "signature": "ff00"})
        result = run(conn.sign_message("hi")).data
        assert (result.message, result.signature) == ("hi", "ff00")
        assert client.calls == [("sign_message", {"message": "hi"})]


class TestMakeInvoice:
    """make_invoice."""

    def test_payment_hash_from_result(self):
        """A payment_hash in the result is used as given."""
        invoice = build_invoice()
        conn, client = _connector(make_invoice={"invoice": invoice,
                                                "payment_hash": PAYMENT_HASH.hex()})
        result = run(conn.make_invoice(1000, "coffee")).data
        assert client.calls == [("make_invoice", {"amount": 1_000_000, "description": "coffee"})]
        assert result.r_hash == PAYMENT_HASH.hex()
        assert result.r_hash == decode(result.payment_request).payment_hash

    def test_payment_hash_decoded_from_invoice(self):
        """Without payment_hash the invoice is decoded locally."""
        conn, _ = _connector(make_invoice={"invoice": build_invoice()})
        result = run(conn.make_invoice("1000", "coffee")).data
        assert len(result.r_hash) == 64
        assert result.r_hash == PAYMENT_HASH.hex()

    def test_no_payment_hash_anywhere(self):
        """Neither result nor invoice carry a hash -> MissingPaymentHash."""
        conn, _ = _connector(make_invoice={"invoice": build_invoice(payment_hash=None)})
        with pytest.raises(MissingPaymentHash, match="make_invoice.payment_hash"):
            run(conn.make_invoice(1000, "coffee"))

    def test_bad_amount(self):
        """Amounts are validated before the request."""
        conn, client = _connector()
        with pytest.raises(InvalidAmountFormat):
            run(conn.make_invoice("1k", "coffee"))
        assert client.calls == []


class TestPayments:
    """pay_invoice / pay_keysend."""

    def test_send_payment(self):
        """Hash and amount come from the decoded invoice, fees from fees_paid."""
        invoice = build_invoice()
        conn, client = _connector(pay_invoice={"preimage": PREIMAGE, "fees_paid": 3_999})
        result = run(conn.send_payment(invoice)).data
        assert client.calls == [("pay_invoice", {"invoice": invoice})]
        assert result.preimage == PREIMAGE
        assert result.payment_hash == PAYMENT_HASH.hex()
        assert (result.route.total_amt, result.route.total_fees) == (1_000, 3)

    def test_send_payment_without_fees(self):
        """Missing fees_paid means zero fees."""
        conn, _ = _connector(pay_invoice={"preimage": PREIMAGE})
        route = run(conn.send_payment(build_invoice(amount="250n"))).data.route
        assert (route.total_amt, route.total_fees) == (25, 0)

    def test_send_payment_missing_hash(self):
        """Invoices without a payment hash are refused before dispatch."""
        conn, client = _connector()
        with pytest.raises(MissingPaymentHash):
            run(conn.send_payment(build_invoice(payment_hash=None)))
        assert client.calls == []

    def test_send_payment_invalid_invoice(self):
        """An undecodable invoice is refused before dispatch."""
        conn, client = _connector()
        with pytest.raises(InvalidPaymentRequest):
            run(conn.send_payment("lnbc1notaninvoice"))
        assert client.calls == []

    def test_keysend(self):
        """TLV values are hex; the payment hash is SHA256 of the preimage bytes."""
        conn, client = _connector(pay_keysend={"preimage": PREIMAGE, "fees_paid": 1_000})
        result = run(conn.keysend("02" + "cc" * 32, 5_000, {"7629169": "hello"})).data
        method, params = client.calls[0]
        assert method == "pay_keysend"
        assert params == {
            "amount": 5_000_000,
            "pubkey": "02" + "cc" * 32,
            "tlv_records": [{"type": 7629169, "value": "68656c6c6f"}],
        }
        assert result.payment_hash == sha256(bytes.fromhex(PREIMAGE)).hexdigest()
        assert (result.route.total_amt, result.route.total_fees) == (5_000, 1)

    def test_keysend_non_numeric_record_type(self):
        """TLV record types must be integers."""
        conn, client = _connector()
        with pytest.raises(InvalidCustomRecord,
                           match="keysend.custom_records: record type .podcast. is not numeric"):
            run(conn.keysend("02" + "cc" * 32, 1, {"podcast": "x"}))
        assert client.calls == []


class TestCheckPayment:
    """lookup_invoice with degradation on failure."""

    def test_settled(self):
        """settled_at set -> paid, with preimage."""
        conn, client = _connector(lookup_invoice={"settled_at": 1_700_000_000,
                                                  "preimage": PREIMAGE})
        result = run(conn.check_payment("11" * 32)).data
        assert result.paid and result.preimage == PREIMAGE
        assert client.calls == [("lookup_invoice", {"payment_hash": "11" * 32})]

    def test_unsettled(self):
        """settled_at missing -> not paid."""
        conn, _ = _connector(lookup_invoice={"settled_at": None})
        assert run(conn.check_payment("11" * 32)).data.paid is False

    @pytest.mark.parametrize("error", [
        TransportFailure("NOT_FOUND: no such invoice", operation="lookup_invoice"),
        ConnectionResetError("reset"),
        KeyError("surprise"),
    ])
    def test_failure_degrades(self, caplog, error):
        """Any failure reports unpaid and logs a warning."""
        conn, _ = _connector(lookup_invoice=error)
        with caplog.at_level(logging.WARNING, logger="tapwallet.nwc"):
            result = run(conn.check_payment("11" * 32)).data
        assert result.paid is False and result.preimage is None
        assert "reporting unpaid" in caplog.text


class TestTransport:
    """Capabilities and failure propagation."""

    def test_connect_peer_not_supported(self):
        """connect_peer raises ConnectorNotImplemented, directly or via invoke."""
        conn, _ = _connector()
        with pytest.raises(ConnectorNotImplemented, match="connect_peer"):
            run(conn.connect_peer("02" + "cc" * 32, "host"))
        with pytest.raises(ConnectorNotImplemented):
            run(invoke(conn, "connect_peer", pubkey="02", host="h"))

    def test_get_invoices_not_supported(self):
        """get_invoices is outside the NWC capability set."""
        conn, _ = _connector()
        with pytest.raises(ConnectorNotImplemented):
            run(invoke(conn, "get_invoices"))

    def test_socket_error_wrapped(self):
        """OSError from the client surfaces as TransportFailure."""
        conn, _ = _connector(get_balance=OSError("network unreachable"))
        with pytest.raises(TransportFailure, match="get_balance: network unreachable"):
            run(conn.get_balance())

    def test_missing_url(self):
        """from_dict requires the connection URL."""
        with pytest.raises(ValueError, match="required"):
            NWCConfig.from_dict({})

    def test_end_to_end_over_relay(self):
        """NWCConnector -> NWCClient -> fake relay and back."""
        async def main():
            relay = FakeRelay(balance_handler)
            client = NWCClient(NWCConnection.parse(NWC_URL), connect=relay.connect)
            async with open_connector(NWCConnector(CONFIG, client)) as conn:
                balance = await conn.get_balance()
            return balance, relay

        balance, relay = run(main())
        assert balance.data.balance == 21
        assert relay.closed
