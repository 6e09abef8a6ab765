"""L402 tokens as held by a client, and their binary serialization."""

from __future__ import annotations

import io
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from .caveat import PREIMAGE_KEY, Caveat, add_first_party_caveats
from .identifier import HASH_SIZE
from .macaroon import Macaroon

PREIMAGE_SIZE = 32

# An empty preimage marks a token whose payment is still in flight.
ZERO_PREIMAGE = bytes(PREIMAGE_SIZE)
ZERO_HASH = bytes(HASH_SIZE)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_unix_nano(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return (moment - _EPOCH) // _MICROSECOND * 1000


def _from_unix_nano(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1000)


@dataclass
class Token:
    """A client's L402: the base macaroon and the state of its payment.

    Amounts are in millisatoshis; ``amount_paid`` excludes routing fees.
    """

    payment_hash: bytes = ZERO_HASH
    preimage: bytes = ZERO_PREIMAGE
    amount_paid: int = 0
    routing_fee_paid: int = 0
    time_created: datetime = field(default_factory=_now)
    base_mac: Optional[Macaroon] = None

    def base_macaroon(self) -> Macaroon:
        """A copy of the macaroon as baked by the authentication server."""
        if self.base_mac is None:
            raise ValueError("token has no base macaroon")
        return self.base_mac.clone()

    def paid_macaroon(self) -> Macaroon:
        """The base macaroon with the preimage added as a caveat."""
        mac = self.base_macaroon()
        add_first_party_caveats(mac, Caveat(PREIMAGE_KEY, self.preimage.hex()))
        return mac

    def is_valid(self) -> bool:
        # Tokens carry no expiry yet, so every token is valid.
        return True

    def is_pending(self) -> bool:
        """Whether the payment is still in flight (no preimage yet)."""
        return bytes(self.preimage) == ZERO_PREIMAGE


def token_from_challenge(base_mac: bytes, payment_hash: bytes) -> Token:
    """Build a pending token from a challenge's macaroon and payment hash."""
    try:
        mac = Macaroon.from_bytes(base_mac)
    except ValueError as exc:
        raise ValueError(f"unable to unmarshal macaroon: {exc}") from exc

    payment_hash = bytes(payment_hash)
    if len(payment_hash) != HASH_SIZE:
        raise ValueError(
            f"invalid hash length of {len(payment_hash)}, want {HASH_SIZE}"
        )
    return Token(
        payment_hash=payment_hash,
        preimage=ZERO_PREIMAGE,
        time_created=_now(),
        base_mac=mac,
    )


def serialize_token(token: Token) -> bytes:
    if token.base_mac is None:
        raise ValueError("token has no base macaroon")
    if len(token.payment_hash) != HASH_SIZE:
        raise ValueError(f"payment hash must be {HASH_SIZE} bytes")
    if len(token.preimage) != PREIMAGE_SIZE:
        raise ValueError(f"preimage must be {PREIMAGE_SIZE} bytes")

    mac_bytes = token.base_mac.to_bytes()
    try:
        return b"".join((
            struct.pack(">I", len(mac_bytes)),
            mac_bytes,
            bytes(token.payment_hash),
            bytes(token.preimage),
            struct.pack(">QQq", token.amount_paid, token.routing_fee_paid,
                        _to_unix_nano(token.time_created)),
        ))
    except struct.error as exc:
        raise ValueError(f"unable to serialize token: {exc}") from exc


def _read_exact(stream: io.BytesIO, size: int) -> bytes:
    chunk = stream.read(size)
    if len(chunk) != size:
        raise ValueError("unexpected end of token data")
    return chunk


def deserialize_token(data: bytes) -> Token:
    stream = io.BytesIO(bytes(data))
    (mac_len,) = struct.unpack(">I", _read_exact(stream, 4))
    mac_bytes = _read_exact(stream, mac_len)
    payment_hash = _read_exact(stream, HASH_SIZE)

    token = token_from_challenge(mac_bytes, payment_hash)
    token.preimage = _read_exact(stream, PREIMAGE_SIZE)
    amount_paid, routing_fee_paid, nanos = struct.unpack(
        ">QQq", _read_exact(stream, 24)
    )
    token.amount_paid = amount_paid
    token.routing_fee_paid = routing_fee_paid
    token.time_created = _from_unix_nano(nanos)
    return token