"""Client-side handling of L402 payment challenges on RPC calls.

The interceptor attaches a stored L402 to outgoing calls. When the server
answers with a "payment required" status, it reads the challenge from the
response trailers, pays the invoice through a Lightning client and repeats
the call with the paid token.

The Lightning client passed in is expected to offer:

* ``network``: the invoice network prefix it operates on (``"bc"``, ``"tb"``,
  ``"bcrt"``, ``"sb"``);
* ``pay_invoice(invoice, max_fee, timeout)`` returning a ``PaymentResult``
  and raising on failure (``TimeoutError`` when ``timeout`` passes);
* ``track_payment(payment_hash, timeout)`` returning an iterable of
  ``PaymentStatus`` updates, raising on failure.

An invoker is called as ``invoker(method, request, *, credentials, trailers,
timeout)`` and a streamer as ``streamer(method, *, credentials, trailers)``.
``credentials`` is a ``MacaroonCredential`` or None, ``trailers`` a dict the
call fills with the response's trailing metadata. Both raise ``StatusError``
for RPC failures.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Iterable, Optional

from .identifier import HASH_SIZE
from .macaroon import MacaroonCredential
from .store import MANUAL_RETRY_HINT, NoTokenError, Store
from .token import ZERO_PREIMAGE, Token, token_from_challenge

log = logging.getLogger(__name__)


class StatusCode(IntEnum):
    """RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


# The status a server answers with when a payment is required.
GRPC_ERR_CODE = StatusCode.INTERNAL
# Sent for the same condition by a short-lived server release; kept for
# completeness only.
GRPC_ERR_CODE_NEW = StatusCode.UNKNOWN
GRPC_ERR_MESSAGE = "payment required"

AUTH_HEADER = "WWW-Authenticate"

DEFAULT_MAX_COST_SATS = 1000
DEFAULT_MAX_ROUTING_FEE_SATS = 10

# Seconds a payment, or the tracking of one, may take.
PAYMENT_TIMEOUT = 60.0

_AUTH_HEADER_REGEX = re.compile(
    r'(LSAT|L402) macaroon="(.*?)", invoice="(.*?)"'
)


class StatusError(Exception):
    """An RPC call failed with a status code and message."""

    def __init__(self, code: StatusCode, message: str) -> None:
        super().__init__(f"rpc error: code = {code.name} desc = {message}")
        self.code = code
        self.message = message


class PaymentState(Enum):
    """States a tracked payment can be in."""

    UNKNOWN = 0
    IN_FLIGHT = 1
    SUCCEEDED = 2
    FAILED = 3
    INITIATED = 4


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a completed payment; amounts are in satoshis."""

    preimage: bytes
    paid_amt: int = 0
    paid_fee: int = 0


@dataclass(frozen=True)
class PaymentStatus:
    """An update on a tracked payment; amounts are in millisatoshis."""

    state: PaymentState
    preimage: bytes = ZERO_PREIMAGE
    value: int = 0
    fee: int = 0


@dataclass(frozen=True)
class Invoice:
    """The parts of a BOLT11 payment request the interceptor needs."""

    network: str
    amount_msat: Optional[int]
    payment_hash: bytes
    timestamp: int
    description: Optional[str] = None
    expiry: Optional[int] = None


class _PaymentFailedTerminally(Exception):
    """The tracked payment failed for good and will never succeed."""


# --- BOLT11 decoding -------------------------------------------------------

_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_CHARSET_MAP = {c: i for i, c in enumerate(_CHARSET)}
_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_HRP_REGEX = re.compile(r"ln([a-z]+)(?:([0-9]+)([munp]?))?")
_MSAT_PER_BTC = 100_000_000_000
_MULTIPLIER_MSAT = {"m": 100_000_000, "u": 100_000, "n": 100}

_SIGNATURE_WORDS = 104
_TIMESTAMP_WORDS = 7
_TAG_PAYMENT_HASH = 1
_TAG_DESCRIPTION = 13
_TAG_EXPIRY = 6


def _polymod(values: Iterable[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ value
        for bit, gen in enumerate(_GENERATOR):
            if (top >> bit) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _words_to_int(words: Iterable[int]) -> int:
    value = 0
    for word in words:
        value = (value << 5) | word
    return value


def _words_to_bytes(words: Iterable[int]) -> bytes:
    out = bytearray()
    acc = 0
    bits = 0
    for word in words:
        acc = (acc << 5) | word
        bits += 5
        if bits >= 8:
            bits -= 8
            out.append((acc >> bits) & 0xFF)
    return bytes(out)


def _parse_amount(digits: Optional[str], multiplier: str) -> Optional[int]:
    if digits is None:
        return None
    value = int(digits)
    if not multiplier:
        return value * _MSAT_PER_BTC
    if multiplier == "p":
        if value % 10:
            raise ValueError("pico amount must be a multiple of 10")
        return value // 10
    return value * _MULTIPLIER_MSAT[multiplier]


def decode_invoice(invoice: str) -> Invoice:
    """Decode a BOLT11 payment request. The signature is not verified."""
    if invoice.lower() != invoice and invoice.upper() != invoice:
        raise ValueError("invoice uses mixed case")
    invoice = invoice.lower()

    sep = invoice.rfind("1")
    if sep < 1 or sep + 7 > len(invoice):
        raise ValueError("invalid invoice separator position")
    hrp, data_part = invoice[:sep], invoice[sep + 1:]
    try:
        words = [_CHARSET_MAP[c] for c in data_part]
    except KeyError as exc:
        raise ValueError(f"invalid character in invoice: {exc}") from exc
    if _polymod(_hrp_expand(hrp) + words) != 1:
        raise ValueError("invalid invoice checksum")
    words = words[:-6]

    match = _HRP_REGEX.fullmatch(hrp)
    if match is None:
        raise ValueError(f"invalid invoice prefix: {hrp!r}")
    network = match.group(1)
    amount_msat = _parse_amount(match.group(2), match.group(3) or "")

    if len(words) < _TIMESTAMP_WORDS + _SIGNATURE_WORDS:
        raise ValueError("invoice too short")
    timestamp = _words_to_int(words[:_TIMESTAMP_WORDS])
    tagged = words[_TIMESTAMP_WORDS:-_SIGNATURE_WORDS]

    payment_hash: Optional[bytes] = None
    description: Optional[str] = None
    expiry: Optional[int] = None
    pos = 0
    while pos < len(tagged):
        if pos + 3 > len(tagged):
            raise ValueError("truncated tagged field in invoice")
        tag = tagged[pos]
        length = tagged[pos + 1] * 32 + tagged[pos + 2]
        body = tagged[pos + 3:pos + 3 + length]
        if len(body) != length:
            raise ValueError("truncated tagged field in invoice")
        pos += 3 + length

        if tag == _TAG_PAYMENT_HASH:
            # Fields of the wrong length are skipped, as readers must.
            if length == 52 and payment_hash is None:
                payment_hash = _words_to_bytes(body)[:HASH_SIZE]
        elif tag == _TAG_DESCRIPTION and description is None:
            description = _words_to_bytes(body).decode("utf-8")
        elif tag == _TAG_EXPIRY and expiry is None:
            expiry = _words_to_int(body)

    if payment_hash is None:
        raise ValueError("invoice is missing a payment hash")
    return Invoice(network, amount_msat, payment_hash, timestamp,
                   description, expiry)


# --- interception ----------------------------------------------------------

def is_payment_required(err: Optional[BaseException]) -> bool:
    """Whether ``err`` is the server's status signalling a required payment."""
    if not isinstance(err, StatusError):
        return False
    return (GRPC_ERR_MESSAGE in err.message.lower()
            and err.code in (GRPC_ERR_CODE, GRPC_ERR_CODE_NEW))


def _trailer_values(trailers: dict, name: str) -> list[str]:
    wanted = name.lower()
    values: list[str] = []
    for key, value in trailers.items():
        if key.lower() == wanted:
            values.extend([value] if isinstance(value, str) else value)
    return values


@dataclass
class _InterceptContext:
    token: Optional[Token]
    credentials: Optional[MacaroonCredential] = None
    trailers: dict = field(default_factory=dict)


class ClientInterceptor:
    """Pays for L402 tokens automatically when a call demands one.

    ``max_cost`` and ``max_fee`` are in satoshis; ``call_timeout`` is the
    number of seconds each unary call may take.
    """

    def __init__(self, lnd: Any, store: Store, call_timeout: float,
                 max_cost: int = DEFAULT_MAX_COST_SATS,
                 max_fee: int = DEFAULT_MAX_ROUTING_FEE_SATS,
                 allow_insecure: bool = False) -> None:
        self._lnd = lnd
        self._store = store
        self._call_timeout = call_timeout
        self._max_cost = max_cost
        self._max_fee = max_fee
        self._allow_insecure = allow_insecure
        # Serializes calls so a token is never paid for twice.
        self._lock = threading.Lock()

    def unary_interceptor(self, method: str, request: Any,
                          invoker: Callable[..., Any]) -> Any:
        """Run a unary call, paying for a token and retrying if required."""
        with self._lock:
            ctx = self._new_intercept_context()
            try:
                return invoker(method, request,
                               credentials=ctx.credentials,
                               trailers=ctx.trailers,
                               timeout=self._call_timeout)
            except StatusError as exc:
                if not is_payment_required(exc):
                    raise

            self._handle_payment(ctx)
            return invoker(method, request,
                           credentials=ctx.credentials,
                           trailers=ctx.trailers,
                           timeout=self._call_timeout)

    def stream_interceptor(self, method: str,
                           streamer: Callable[..., Any]) -> Any:
        """Open a stream, paying for a token and retrying if required."""
        with self._lock:
            ctx = self._new_intercept_context()
            try:
                return streamer(method, credentials=ctx.credentials,
                                trailers=ctx.trailers)
            except StatusError as exc:
                if not is_payment_required(exc):
                    raise

            self._handle_payment(ctx)
            return streamer(method, credentials=ctx.credentials,
                            trailers=ctx.trailers)

    def _new_intercept_context(self) -> _InterceptContext:
        try:
            token: Optional[Token] = self._store.current_token()
        except NoTokenError:
            token = None
        except Exception as exc:
            log.error("Failed to get token from store: %s", exc)
            raise RuntimeError(
                f"getting token from store failed: {exc}"
            ) from exc

        ctx = _InterceptContext(token=token)
        # A pending token is never sent; it is resumed only once the server
        # tells us a payment is required.
        if token is not None and not token.is_pending():
            self._add_credentials_or_raise(ctx)
        return ctx

    def _handle_payment(self, ctx: _InterceptContext) -> None:
        if ctx.token is not None and ctx.token.is_pending():
            log.info("Payment of L402 token is required, resuming/tracking "
                     "previous payment from pending L402 token")
            try:
                self._track_payment(ctx.token)
            except _PaymentFailedTerminally:
                ctx.token = None
                try:
                    self._store.remove_pending_token()
                except Exception as exc:
                    raise RuntimeError(
                        "error removing pending token, cannot retry "
                        f"payment: {exc}"
                    ) from exc
                log.info("Retrying payment of L402 token invoice")
                ctx.token = self._pay_l402_token(ctx.trailers)
        elif ctx.token is None:
            log.info("Payment of L402 token is required, paying invoice")
            ctx.token = self._pay_l402_token(ctx.trailers)
        else:
            log.debug("Found valid L402 token to add to request")

        self._add_credentials_or_raise(ctx)

    def _add_credentials_or_raise(self, ctx: _InterceptContext) -> None:
        try:
            self._add_credentials(ctx)
        except Exception as exc:
            log.error("Adding macaroon to request failed: %s", exc)
            raise RuntimeError(f"adding macaroon failed: {exc}") from exc

    def _add_credentials(self, ctx: _InterceptContext) -> None:
        if ctx.token is None:
            raise ValueError("cannot add nil token to context")
        ctx.credentials = MacaroonCredential(
            ctx.token.paid_macaroon(), self._allow_insecure
        )

    def _pay_l402_token(self, trailers: dict) -> Token:
        auth_headers = _trailer_values(trailers, AUTH_HEADER)
        if not auth_headers:
            raise ValueError("auth header not found in response")

        match = next(
            (m for m in map(_AUTH_HEADER_REGEX.search, auth_headers)
             if m is not None),
            None,
        )
        if match is None:
            raise ValueError(f"invalid auth header format: {auth_headers[0]}")

        mac_base64, invoice_str = match.group(2), match.group(3)
        try:
            mac_bytes = base64.b64decode(mac_base64, validate=True)
        except binascii.Error as exc:
            raise ValueError(
                f"base64 decode of macaroon failed: {exc}"
            ) from exc
        try:
            invoice = decode_invoice(invoice_str)
            if invoice.network != self._lnd.network:
                raise ValueError("invoice not for current active network "
                                 f"'{self._lnd.network}'")
        except ValueError as exc:
            raise ValueError(f"unable to decode invoice: {exc}") from exc

        max_cost_msat = self._max_cost * 1000
        if invoice.amount_msat is not None and \
                invoice.amount_msat > max_cost_msat:
            raise ValueError(
                "cannot pay for L402 automatically, cost of "
                f"{invoice.amount_msat} msat exceeds configured max cost of "
                f"{max_cost_msat} msat"
            )

        # Store the pending token first so an interrupted payment can be
        # resumed later.
        try:
            token = token_from_challenge(mac_bytes, invoice.payment_hash)
        except ValueError as exc:
            raise ValueError(f"unable to create token: {exc}") from exc
        try:
            self._store.store_token(token)
        except Exception as exc:
            raise RuntimeError(
                f"unable to store pending token: {exc}"
            ) from exc

        try:
            result = self._lnd.pay_invoice(
                invoice_str, self._max_fee, PAYMENT_TIMEOUT
            )
        except TimeoutError as exc:
            raise RuntimeError(
                "payment timed out. try again to track payment. "
                f"{MANUAL_RETRY_HINT}"
            ) from exc

        token.preimage = bytes(result.preimage)
        token.amount_paid = result.paid_amt * 1000
        token.routing_fee_paid = result.paid_fee * 1000
        self._store.store_token(token)
        return token

    def _track_payment(self, token: Token) -> None:
        deadline = time.monotonic() + PAYMENT_TIMEOUT
        try:
            updates = iter(self._lnd.track_payment(
                token.payment_hash, PAYMENT_TIMEOUT
            ))
        except Exception as exc:
            log.error("Could not call TrackPayment on lnd: %s", exc)
            raise RuntimeError(
                f"track payment call to lnd failed: {exc}"
            ) from exc

        timed_out = f"payment tracking timed out. {MANUAL_RETRY_HINT}"
        while True:
            try:
                status = next(updates)
            except (StopIteration, TimeoutError):
                raise RuntimeError(timed_out) from None
            except Exception as exc:
                raise RuntimeError(
                    f"payment tracking failed: {exc}. {MANUAL_RETRY_HINT}"
                ) from exc

            if status.state is PaymentState.SUCCEEDED:
                token.preimage = bytes(status.preimage)
                token.amount_paid = status.value
                token.routing_fee_paid = status.fee
                self._store.store_token(token)
                return
            if status.state is PaymentState.FAILED:
                raise _PaymentFailedTerminally()
            if status.state is not PaymentState.IN_FLIGHT:
                raise RuntimeError(
                    f"payment tracking failed with state "
                    f"{status.state.name}. {MANUAL_RETRY_HINT}"
                )
            if time.monotonic() > deadline:
                raise RuntimeError(timed_out)