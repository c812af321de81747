"""
Nostr Wallet Connect transport.

- connection URI parsing (NIP-47)
- NIP-04 payload encryption (ECDH x-coordinate + AES-256-CBC)
- NIP-01 event ids and BIP-340 signatures
- :class:`NWCClient`: request/response over a single relay websocket
"""

from __future__ import annotations

import asyncio
import json
import secrets
import time
from base64 import b64decode, b64encode
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import WebSocketException

from tapwallet.errors import TransportFailure
from tapwallet.log import get_logger

log = get_logger("nostr")

NWC_SCHEMES = ("nostr+walletconnect", "nostrwalletconnect")

KIND_NWC_REQUEST = 23194
KIND_NWC_RESPONSE = 23195


def _is_hex32(value: Optional[str]) -> bool:
    if not value or len(value) != 64:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


# ============================================================
# CONNECTION URI
# ============================================================

@dataclass(frozen=True)
class NWCConnection:
    wallet_pubkey: str
    relay_url: str
    secret: str
    lud16: Optional[str] = None

    def __repr__(self) -> str:
        return (f"NWCConnection(wallet_pubkey={self.wallet_pubkey!r}, "
                f"relay_url={self.relay_url!r}, secret=<redacted>)")

    @classmethod
    def parse(cls, uri: str) -> "NWCConnection":
        """
        ``nostr+walletconnect://<pubkey>?relay=<url>&secret=<hex>[&lud16=...]``

        Raises ``ValueError`` when the pubkey, relay or secret is missing.
        """
        parts = urlsplit(uri.strip())
        if parts.scheme not in NWC_SCHEMES:
            raise ValueError(f"not a wallet connect URI: scheme {parts.scheme!r}")
        pubkey = (parts.netloc or parts.path).strip("/").lower()
        query = parse_qs(parts.query)
        relay = query.get("relay", [None])[0]
        secret = query.get("secret", [None])[0]
        if not _is_hex32(pubkey):
            raise ValueError("wallet connect URI has no valid wallet pubkey")
        if not relay:
            raise ValueError("wallet connect URI has no relay")
        if not _is_hex32(secret):
            raise ValueError("wallet connect URI has no valid secret")
        return cls(wallet_pubkey=pubkey, relay_url=relay, secret=secret.lower(),
                   lud16=query.get("lud16", [None])[0])

    @property
    def client_pubkey(self) -> str:
        return xonly_pubkey(bytes.fromhex(self.secret)).hex()


def xonly_pubkey(secret: bytes) -> bytes:
    return PrivateKey(secret).public_key.format(compressed=True)[1:]


# ============================================================
# NIP-04
# ============================================================

def nip04_shared_secret(secret: bytes, pubkey_xonly: str) -> bytes:
    """Raw x-coordinate of secret * P (not hashed, unlike ECDH defaults)."""
    point = PublicKey(b"\x02" + bytes.fromhex(pubkey_xonly)).multiply(secret)
    return point.format(compressed=True)[1:]


def nip04_encrypt(plaintext: str, shared_secret: bytes, iv: Optional[bytes] = None) -> str:
    iv = iv or get_random_bytes(16)
    cipher = AES.new(shared_secret, AES.MODE_CBC, iv)
    ciphertext = cipher.encrypt(pad(plaintext.encode("utf-8"), AES.block_size))
    return f"{b64encode(ciphertext).decode()}?iv={b64encode(iv).decode()}"


def nip04_decrypt(content: str, shared_secret: bytes) -> str:
    body, sep, iv = content.partition("?iv=")
    if not sep:
        raise ValueError("NIP-04 content has no iv")
    cipher = AES.new(shared_secret, AES.MODE_CBC, b64decode(iv))
    return unpad(cipher.decrypt(b64decode(body)), AES.block_size).decode("utf-8")


# ============================================================
# NIP-01 EVENTS
# ============================================================

def event_id(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    serialized = json.dumps([0, pubkey, created_at, kind, tags, content],
                            separators=(",", ":"), ensure_ascii=False)
    return sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(
    secret: bytes,
    kind: int,
    tags: List[List[str]],
    content: str,
    created_at: Optional[int] = None,
) -> Dict[str, Any]:
    pubkey = xonly_pubkey(secret).hex()
    created_at = int(time.time()) if created_at is None else created_at
    eid = event_id(pubkey, created_at, kind, tags, content)
    return {
        "id": eid,
        "pubkey": pubkey,
        "created_at": created_at,
        "kind": kind,
        "tags": tags,
        "content": content,
        "sig": PrivateKey(secret).sign_schnorr(bytes.fromhex(eid)).hex(),
    }


def verify_event(event: Dict[str, Any]) -> bool:
    try:
        eid = event_id(event["pubkey"], event["created_at"], event["kind"],
                       event["tags"], event["content"])
        if eid != event["id"]:
            return False
        return PublicKeyXOnly(bytes.fromhex(event["pubkey"])).verify(
            bytes.fromhex(event["sig"]), bytes.fromhex(eid))
    except (KeyError, TypeError, ValueError):
        return False


# ============================================================
# RELAY CLIENT
# ============================================================

class NWCClient:
    """
    Sends NIP-47 requests to one wallet service through its relay.

    Requests are serialized: each one subscribes for the response that
    references it, publishes the request event and waits for the reply.
    """

    def __init__(
        self,
        connection: NWCConnection,
        connect: Callable[[str], Awaitable[Any]] = ws_connect,
    ) -> None:
        self.connection = connection
        self._connect = connect
        self._secret = bytes.fromhex(connection.secret)
        self._shared = nip04_shared_secret(self._secret, connection.wallet_pubkey)
        self._ws = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"NWCClient({self.connection.relay_url})"

    async def connect(self) -> None:
        if self._ws is None:
            self._ws = await self._connect(self.connection.relay_url)
            log.info("Connected to relay %s", self.connection.relay_url)

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            log.info("Disconnected from relay %s", self.connection.relay_url)

    async def _send(self, message: List[Any]) -> None:
        await self._ws.send(json.dumps(message))

    async def request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Run one NIP-47 method and return its ``result`` object."""
        async with self._lock:
            await self.connect()
            wallet = self.connection.wallet_pubkey
            content = nip04_encrypt(json.dumps({"method": method, "params": params}),
                                    self._shared)
            request = sign_event(self._secret, KIND_NWC_REQUEST, [["p", wallet]], content)
            sub_id = secrets.token_hex(8)

            await self._send(["REQ", sub_id, {
                "kinds": [KIND_NWC_RESPONSE],
                "authors": [wallet],
                "#e": [request["id"]],
            }])
            try:
                await self._send(["EVENT", request])
                log.debug("%s published as %s", method, request["id"])
                reply = await self._await_reply(sub_id, request["id"], method)
            finally:
                await self._close_subscription(sub_id)

        response = json.loads(nip04_decrypt(reply["content"], self._shared))
        error = response.get("error")
        if error:
            if isinstance(error, dict):
                raise TransportFailure(f"{error.get('code')}: {error.get('message')}",
                                       operation=method)
            raise TransportFailure(str(error), operation=method)
        return response.get("result") or {}

    async def _close_subscription(self, sub_id: str) -> None:
        if self._ws is None:
            return
        try:
            await self._send(["CLOSE", sub_id])
        except (OSError, WebSocketException) as exc:
            log.debug("could not close subscription %s: %s", sub_id, exc)

    async def _await_reply(self, sub_id: str, request_id: str, method: str) -> Dict[str, Any]:
        wallet = self.connection.wallet_pubkey
        while True:
            message = json.loads(await self._ws.recv())
            if not isinstance(message, list) or not message:
                continue
            label = message[0]
            if label == "OK" and len(message) >= 3 and message[1] == request_id:
                if not message[2]:
                    reason = message[3] if len(message) > 3 else ""
                    raise TransportFailure(f"relay rejected request: {reason}",
                                           operation=method)
            elif label == "NOTICE":
                raise TransportFailure(f"relay notice: {message[1:]}", operation=method)
            elif label == "CLOSED" and len(message) >= 2 and message[1] == sub_id:
                raise TransportFailure(f"relay closed subscription: {message[2:]}",
                                       operation=method)
            elif label == "EVENT" and len(message) >= 3 and message[1] == sub_id:
                event = message[2]
                if (event.get("kind") == KIND_NWC_RESPONSE
                        and event.get("pubkey") == wallet
                        and ["e", request_id] in [t[:2] for t in event.get("tags", [])]
                        and verify_event(event)):
                    return event
                log.warning("ignoring unexpected event %s", event.get("id"))
