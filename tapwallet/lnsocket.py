"""
Lightning peer transport for Commando RPC.

- BOLT-8 Noise_XK_secp256k1_ChaChaPoly_SHA256 handshake (acts one to
  three) as the initiator, then length-prefixed ChaCha20-Poly1305 framing
  with key rotation every 1000 nonces.
- BOLT-1 ``init`` / ``ping`` / ``pong`` handling.
- Core Lightning "commando" messages: a JSON request tagged with a 64-bit
  id, answered by one or more reply chunks for that id.

Reference: https://github.com/lightning/bolts/blob/master/08-transport.md
"""

from __future__ import annotations

import asyncio
import json
import secrets
import struct
from hashlib import sha256
from typing import Any, Dict, Optional, Tuple

from Crypto.Cipher import ChaCha20_Poly1305
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import HKDF
from coincurve import PrivateKey, PublicKey

from tapwallet.errors import TransportFailure
from tapwallet.log import get_logger

log = get_logger("lnsocket")

PROTOCOL_NAME = b"Noise_XK_secp256k1_ChaChaPoly_SHA256"
PROLOGUE = b"lightning"

ACT_ONE_SIZE = 50
ACT_TWO_SIZE = 50
ACT_THREE_SIZE = 66
MAC_SIZE = 16
LENGTH_HEADER_SIZE = 2 + MAC_SIZE
KEY_ROTATION_INTERVAL = 1000
MAX_MESSAGE_SIZE = 65535

# BOLT-1 message types
MSG_WARNING = 1
MSG_INIT = 16
MSG_ERROR = 17
MSG_PING = 18
MSG_PONG = 19

# Core Lightning commando message types
MSG_COMMANDO_CMD = 0x4C4F
MSG_COMMANDO_REPLY_CONTINUES = 0x594B
MSG_COMMANDO_REPLY_TERM = 0x594D

# Optional (odd) feature bits we advertise in init:
# option_data_loss_protect, var_onion_optin, option_static_remotekey,
# payment_secret.
_INIT_FEATURE_BITS = (1, 9, 13, 15)


def _hkdf(salt: bytes, ikm: bytes) -> Tuple[bytes, bytes]:
    """BOLT-8 HKDF: two 32-byte keys, empty info."""
    k1, k2 = HKDF(ikm, 32, salt, SHA256, num_keys=2)
    return k1, k2


def _ecdh(private_key: bytes, public_key: bytes) -> bytes:
    """SHA-256 of the compressed shared point (libsecp256k1 default)."""
    return PrivateKey(private_key).ecdh(public_key)


def _nonce(n: int) -> bytes:
    return b"\x00" * 4 + struct.pack("<Q", n)


def _encrypt_with_ad(key: bytes, n: int, ad: bytes, plaintext: bytes) -> bytes:
    cipher = ChaCha20_Poly1305.new(key=key, nonce=_nonce(n))
    cipher.update(ad)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return ciphertext + tag


def _decrypt_with_ad(key: bytes, n: int, ad: bytes, data: bytes) -> bytes:
    cipher = ChaCha20_Poly1305.new(key=key, nonce=_nonce(n))
    cipher.update(ad)
    return cipher.decrypt_and_verify(data[:-MAC_SIZE], data[-MAC_SIZE:])


def _init_payload() -> bytes:
    features = 0
    for bit in _INIT_FEATURE_BITS:
        features |= 1 << bit
    flen = (features.bit_length() + 7) // 8
    return struct.pack(">HH", 0, flen) + features.to_bytes(flen, "big")


# ============================================================
# BOLT-8 HANDSHAKE + CIPHER STATE
# ============================================================

class NoiseCipher:
    """Post-handshake transport encryption with key rotation."""

    def __init__(self, sk: bytes, rk: bytes, ck: bytes) -> None:
        self.sk, self.rk = sk, rk
        self.sn = self.rn = 0
        self.sck = self.rck = ck

    def _send(self, plaintext: bytes) -> bytes:
        out = _encrypt_with_ad(self.sk, self.sn, b"", plaintext)
        self.sn += 1
        if self.sn == KEY_ROTATION_INTERVAL:
            self.sck, self.sk = _hkdf(self.sck, self.sk)
            self.sn = 0
        return out

    def _recv(self, data: bytes) -> bytes:
        out = _decrypt_with_ad(self.rk, self.rn, b"", data)
        self.rn += 1
        if self.rn == KEY_ROTATION_INTERVAL:
            self.rck, self.rk = _hkdf(self.rck, self.rk)
            self.rn = 0
        return out

    def encrypt(self, message: bytes) -> bytes:
        if len(message) > MAX_MESSAGE_SIZE:
            raise ValueError(f"message too large: {len(message)} bytes")
        return self._send(struct.pack(">H", len(message))) + self._send(message)

    def decrypt_length(self, header: bytes) -> int:
        return struct.unpack(">H", self._recv(header))[0]

    def decrypt_body(self, body: bytes) -> bytes:
        return self._recv(body)


class NoiseHandshake:
    """Initiator side of the BOLT-8 Noise_XK handshake."""

    def __init__(
        self,
        local_static: bytes,
        remote_static_pub: bytes,
        ephemeral: Optional[bytes] = None,
    ) -> None:
        self._ls = PrivateKey(local_static)
        self._e = PrivateKey(ephemeral) if ephemeral else PrivateKey()
        self._rs = PublicKey(remote_static_pub).format(compressed=True)
        self._re: Optional[bytes] = None
        self._temp_k2: Optional[bytes] = None

        h = sha256(PROTOCOL_NAME).digest()
        self.ck = h
        self.h = sha256(sha256(h + PROLOGUE).digest() + self._rs).digest()

    def _mix_hash(self, data: bytes) -> None:
        self.h = sha256(self.h + data).digest()

    def act_one(self) -> bytes:
        e_pub = self._e.public_key.format(compressed=True)
        self._mix_hash(e_pub)
        self.ck, temp_k1 = _hkdf(self.ck, _ecdh(self._e.secret, self._rs))
        c = _encrypt_with_ad(temp_k1, 0, self.h, b"")
        self._mix_hash(c)
        return b"\x00" + e_pub + c

    def act_two(self, data: bytes) -> None:
        if len(data) != ACT_TWO_SIZE:
            raise TransportFailure(f"act two is {len(data)} bytes", operation="handshake")
        if data[0] != 0:
            raise TransportFailure(f"unknown handshake version {data[0]}",
                                   operation="handshake")
        re, c = data[1:34], data[34:]
        try:
            PublicKey(re)
        except ValueError as exc:
            raise TransportFailure("bad ephemeral key in act two",
                                   operation="handshake") from exc
        self._mix_hash(re)
        self.ck, temp_k2 = _hkdf(self.ck, _ecdh(self._e.secret, re))
        try:
            _decrypt_with_ad(temp_k2, 0, self.h, c)
        except ValueError as exc:
            raise TransportFailure("act two MAC check failed",
                                   operation="handshake") from exc
        self._mix_hash(c)
        self._re, self._temp_k2 = re, temp_k2

    def act_three(self) -> Tuple[bytes, NoiseCipher]:
        if self._re is None or self._temp_k2 is None:
            raise RuntimeError("act_three() before act_two()")
        c = _encrypt_with_ad(self._temp_k2, 1, self.h,
                             self._ls.public_key.format(compressed=True))
        self._mix_hash(c)
        self.ck, temp_k3 = _hkdf(self.ck, _ecdh(self._ls.secret, self._re))
        t = _encrypt_with_ad(temp_k3, 0, self.h, b"")
        sk, rk = _hkdf(self.ck, b"")
        return b"\x00" + c + t, NoiseCipher(sk, rk, self.ck)


# ============================================================
# SOCKET
# ============================================================

class LnSocket:
    """
    Encrypted, authenticated session with one Lightning node.

    One commando request is in flight at a time; concurrent callers queue
    on an ``asyncio.Lock``.
    """

    def __init__(
        self,
        host: str,
        port: int,
        remote_pubkey: bytes,
        local_private_key: Optional[bytes] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.remote_pubkey = remote_pubkey
        self._local_key = local_private_key or PrivateKey().secret
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._cipher: Optional[NoiseCipher] = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"LnSocket({self.remote_pubkey.hex()}@{self.host}:{self.port})"

    @property
    def connected(self) -> bool:
        return self._cipher is not None

    async def connect(self) -> None:
        """Handshake and exchange ``init``; a failed attempt leaves the socket closed."""
        if self.connected:
            return
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        try:
            handshake = NoiseHandshake(self._local_key, self.remote_pubkey)

            self._writer.write(handshake.act_one())
            await self._writer.drain()
            handshake.act_two(await self._reader.readexactly(ACT_TWO_SIZE))
            act_three, self._cipher = handshake.act_three()
            self._writer.write(act_three)
            await self._writer.drain()

            await self.send_message(MSG_INIT, _init_payload())
            msg_type, _ = await self._read_app_message()
            if msg_type != MSG_INIT:
                raise TransportFailure(f"expected init, got message type {msg_type}",
                                       operation="connect")
        except BaseException:
            await self.disconnect()
            raise
        log.info("Connected to %s:%d", self.host, self.port)

    async def disconnect(self) -> None:
        writer, self._writer, self._reader, self._cipher = self._writer, None, None, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as exc:
            log.debug("error while closing %s: %s", self, exc)
        log.info("Disconnected from %s:%d", self.host, self.port)

    # ---- framing ------------------------------------------------------
    async def send_message(self, msg_type: int, payload: bytes) -> None:
        if self._cipher is None or self._writer is None:
            raise TransportFailure("not connected", operation="send")
        self._writer.write(self._cipher.encrypt(struct.pack(">H", msg_type) + payload))
        await self._writer.drain()

    async def read_message(self) -> Tuple[int, bytes]:
        if self._cipher is None or self._reader is None:
            raise TransportFailure("not connected", operation="read")
        try:
            length = self._cipher.decrypt_length(
                await self._reader.readexactly(LENGTH_HEADER_SIZE))
            body = self._cipher.decrypt_body(
                await self._reader.readexactly(length + MAC_SIZE))
        except ValueError as exc:
            raise TransportFailure("MAC check failed", operation="read") from exc
        if len(body) < 2:
            raise TransportFailure("message shorter than its type", operation="read")
        return struct.unpack(">H", body[:2])[0], body[2:]

    async def _read_app_message(self) -> Tuple[int, bytes]:
        """Next message that is not link-level chatter (ping, warning)."""
        while True:
            msg_type, payload = await self.read_message()
            if msg_type == MSG_PING:
                await self._answer_ping(payload)
            elif msg_type == MSG_WARNING:
                log.warning("peer warning: %s", _error_text(payload))
            elif msg_type == MSG_ERROR:
                raise TransportFailure(f"peer error: {_error_text(payload)}",
                                       operation="read")
            elif msg_type == MSG_PONG:
                continue
            else:
                return msg_type, payload

    async def _answer_ping(self, payload: bytes) -> None:
        if len(payload) < 2:
            raise TransportFailure("ping shorter than num_pong_bytes", operation="read")
        num_pong_bytes = struct.unpack(">H", payload[:2])[0]
        if num_pong_bytes < 65532:
            await self.send_message(
                MSG_PONG, struct.pack(">H", num_pong_bytes) + b"\x00" * num_pong_bytes)

    # ---- commando -----------------------------------------------------
    async def commando(self, method: str, params: Dict[str, Any], rune: str) -> Any:
        """
        Run one RPC through the node's commando plugin and return its
        ``result``.  A JSON-RPC ``error`` raises ``TransportFailure``.
        """
        async with self._lock:
            req_id = secrets.token_bytes(8)
            request = json.dumps({"method": method, "params": params, "rune": rune})
            await self.send_message(MSG_COMMANDO_CMD, req_id + request.encode())
            log.debug("commando %s sent (id=%s)", method, req_id.hex())

            chunks = []
            while True:
                msg_type, payload = await self._read_app_message()
                if msg_type not in (MSG_COMMANDO_REPLY_CONTINUES, MSG_COMMANDO_REPLY_TERM):
                    if msg_type % 2 == 0:
                        raise TransportFailure(
                            f"unknown even message type {msg_type}", operation=method)
                    continue
                if payload[:8] != req_id:
                    continue
                chunks.append(payload[8:])
                if msg_type == MSG_COMMANDO_REPLY_TERM:
                    break

        return parse_commando_reply(b"".join(chunks), method)


def parse_commando_reply(raw: bytes, method: str) -> Any:
    try:
        reply = json.loads(raw)
    except ValueError as exc:
        raise TransportFailure("reply is not JSON", operation=method) from exc
    if isinstance(reply, dict) and reply.get("error") is not None:
        error = reply["error"]
        if isinstance(error, dict):
            raise TransportFailure(
                f"{error.get('code')}: {error.get('message')}", operation=method)
        raise TransportFailure(str(error), operation=method)
    if isinstance(reply, dict) and "result" in reply:
        return reply["result"]
    return reply


def _error_text(payload: bytes) -> str:
    """channel_id(32) || u16 len || data"""
    if len(payload) < 34:
        return payload.hex()
    length = struct.unpack(">H", payload[32:34])[0]
    return payload[34:34 + length].decode("utf-8", errors="replace")
