import base64
from typing import Optional

import pytest

from aperture.l402.caveat import has_caveat
from aperture.l402.client_interceptor import (
    DEFAULT_MAX_COST_SATS,
    DEFAULT_MAX_ROUTING_FEE_SATS,
    GRPC_ERR_CODE,
    GRPC_ERR_MESSAGE,
    ClientInterceptor,
    PaymentResult,
    PaymentState,
    PaymentStatus,
    StatusCode,
    StatusError,
    decode_invoice,
    is_payment_required,
)
from aperture.l402.macaroon import Macaroon
from aperture.l402.store import NoTokenError, Store
from aperture.l402.token import ZERO_PREIMAGE, Token

TEST_TIMEOUT = 5.0

INVOICE = (
    "lntb5u1p0pskpmpp5jzw9xvdast2g5lm5tswq6n64t2epe3f4xav43dyd"
    "239qr8h3yllqdqqcqzpgsp5m8sfjqgugthk66q3tr4gsqr5rh740jrq9x4l0"
    "kvj5e77nmwqvpnq9qy9qsq72afzu7sfuppzqg3q2pn49hlh66rv7w60h2rua"
    "hx857g94s066yzxcjn4yccqc79779sd232v9ewluvu0tmusvht6r99rld8xs"
    "k287cpyac79r"
)

PAID_PREIMAGE = bytes([1, 2, 3, 4, 5]) + bytes(27)


def make_mac() -> Macaroon:
    return Macaroon(b"aabbccddeeff00112233445566778899", b"AA==", "LSAT")


TEST_MAC = make_mac()
TEST_MAC_HEX = TEST_MAC.to_bytes().hex()


def payment_required() -> StatusError:
    return StatusError(GRPC_ERR_CODE, GRPC_ERR_MESSAGE)


def make_auth_headers(add_l402: bool) -> list:
    mac_b64 = base64.b64encode(TEST_MAC.to_bytes()).decode()
    value = f'macaroon="{mac_b64}", invoice="{INVOICE}"'
    headers = ["LSAT " + value]
    if add_l402:
        headers.append("L402 " + value)
    return headers


class MockStore(Store):
    def __init__(self, token: Optional[Token] = None) -> None:
        self.token = token

    def current_token(self) -> Token:
        if self.token is None:
            raise NoTokenError()
        return self.token

    def all_tokens(self) -> dict:
        return {"foo": self.token}

    def store_token(self, token: Token) -> None:
        self.token = token

    def remove_pending_token(self) -> None:
        self.token = None


class MockLnd:
    def __init__(self, network: str = "tb") -> None:
        self.network = network
        self.pay_results = []
        self.track_updates = []
        self.pay_calls = []
        self.track_calls = []

    def pay_invoice(self, invoice, max_fee, timeout):
        self.pay_calls.append((invoice, max_fee, timeout))
        result = self.pay_results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    def track_payment(self, payment_hash, timeout):
        self.track_calls.append(payment_hash)
        updates = self.track_updates.pop(0)

        def generate():
            for update in updates:
                if isinstance(update, BaseException):
                    raise update
                yield update

        return generate()


class Backend:
    def __init__(self, errors=(), auth=()) -> None:
        self.errors = list(errors)
        self.auth = list(auth)
        self.calls = 0
        self.metadata = []

    def _call(self, credentials, trailers):
        self.calls += 1
        self.metadata.append(
            credentials.request_metadata() if credentials else None
        )
        if self.auth:
            trailers["www-authenticate"] = list(self.auth)
        err = self.errors.pop(0) if self.errors else None
        if err is not None:
            raise err

    def invoke(self, method, request, *, credentials, trailers, timeout):
        self._call(credentials, trailers)
        return "reply"

    def stream(self, method, *, credentials, trailers):
        self._call(credentials, trailers)
        return "stream"


def intercept(interceptor, kind, backend):
    if kind == "unary":
        return interceptor.unary_interceptor("/svc/Method", None,
                                             backend.invoke)
    return interceptor.stream_interceptor("/svc/Method", backend.stream)


def assert_paid_metadata(metadata):
    assert set(metadata) == {"macaroon"}
    assert len(metadata["macaroon"]) > len(TEST_MAC_HEX)
    mac = Macaroon.from_bytes(bytes.fromhex(metadata["macaroon"]))
    assert has_caveat(mac, "preimage") == PAID_PREIMAGE.hex()


KINDS = ["unary", "stream"]
HEADERS = [False, True]


@pytest.mark.parametrize("kind", KINDS)
@pytest.mark.parametrize("add_l402", HEADERS)
def test_no_auth_required_happy_path(kind, add_l402):
    store = MockStore()
    lnd = MockLnd()
    backend = Backend()
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    result = intercept(interceptor, kind, backend)

    assert result == ("reply" if kind == "unary" else "stream")
    assert backend.calls == 1
    assert backend.metadata == [None]
    assert lnd.pay_calls == []
    with pytest.raises(NoTokenError):
        store.current_token()


@pytest.mark.parametrize("kind", KINDS)
@pytest.mark.parametrize("add_l402", HEADERS)
def test_auth_required_no_token_yet(kind, add_l402):
    store = MockStore()
    lnd = MockLnd()
    lnd.pay_results.append(PaymentResult(PAID_PREIMAGE, 123, 345))
    backend = Backend([payment_required()], make_auth_headers(add_l402))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    intercept(interceptor, kind, backend)

    assert backend.calls == 2
    assert backend.metadata[0] is None
    assert_paid_metadata(backend.metadata[1])
    token = store.current_token()
    assert token.preimage == PAID_PREIMAGE
    assert token.amount_paid == 123000
    assert token.routing_fee_paid == 345000
    assert lnd.pay_calls[0][:2] == (INVOICE, DEFAULT_MAX_ROUTING_FEE_SATS)
    assert lnd.track_calls == []


@pytest.mark.parametrize("kind", KINDS)
@pytest.mark.parametrize("add_l402", HEADERS)
def test_auth_required_has_token(kind, add_l402):
    store = MockStore(Token(preimage=PAID_PREIMAGE, base_mac=TEST_MAC))
    lnd = MockLnd()
    backend = Backend()
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    intercept(interceptor, kind, backend)

    assert backend.calls == 1
    assert_paid_metadata(backend.metadata[0])
    assert store.current_token().preimage == PAID_PREIMAGE
    assert lnd.pay_calls == []


@pytest.mark.parametrize("kind", KINDS)
@pytest.mark.parametrize("add_l402", HEADERS)
def test_auth_required_has_pending_token(kind, add_l402):
    store = MockStore(Token(preimage=ZERO_PREIMAGE, base_mac=TEST_MAC))
    lnd = MockLnd()
    lnd.track_updates.append([
        PaymentStatus(PaymentState.SUCCEEDED, preimage=PAID_PREIMAGE),
    ])
    backend = Backend([payment_required()], make_auth_headers(add_l402))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    intercept(interceptor, kind, backend)

    assert backend.calls == 2
    assert backend.metadata[0] is None
    assert_paid_metadata(backend.metadata[1])
    assert store.current_token().preimage == PAID_PREIMAGE
    assert lnd.pay_calls == []
    assert len(lnd.track_calls) == 1


@pytest.mark.parametrize("kind", KINDS)
@pytest.mark.parametrize("add_l402", HEADERS)
def test_auth_required_pending_but_expired_token(kind, add_l402):
    store = MockStore(Token(preimage=ZERO_PREIMAGE, base_mac=TEST_MAC))
    lnd = MockLnd()
    lnd.track_updates.append([PaymentStatus(PaymentState.FAILED)])
    lnd.pay_results.append(PaymentResult(PAID_PREIMAGE, 123, 345))
    backend = Backend([payment_required()], make_auth_headers(add_l402))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    intercept(interceptor, kind, backend)

    assert backend.calls == 2
    assert_paid_metadata(backend.metadata[1])
    assert store.current_token().preimage == PAID_PREIMAGE
    assert len(lnd.track_calls) == 1
    assert len(lnd.pay_calls) == 1


@pytest.mark.parametrize("kind", KINDS)
@pytest.mark.parametrize("add_l402", HEADERS)
def test_auth_required_cost_limit(kind, add_l402):
    store = MockStore()
    lnd = MockLnd()
    backend = Backend([payment_required()], make_auth_headers(add_l402))
    interceptor = ClientInterceptor(
        lnd, store, TEST_TIMEOUT, 100, DEFAULT_MAX_ROUTING_FEE_SATS, False
    )

    with pytest.raises(ValueError) as excinfo:
        intercept(interceptor, kind, backend)

    assert ("cannot pay for L402 automatically, cost of 500000 msat "
            "exceeds configured max cost of 100000 msat") in str(excinfo.value)
    assert backend.calls == 1
    assert lnd.pay_calls == []
    with pytest.raises(NoTokenError):
        store.current_token()


def test_missing_auth_header():
    store = MockStore()
    lnd = MockLnd()
    backend = Backend([payment_required()])
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(ValueError) as excinfo:
        intercept(interceptor, "unary", backend)
    assert "auth header not found in response" in str(excinfo.value)
    assert backend.calls == 1
    assert lnd.pay_calls == []
    assert store.token is None


def test_invalid_auth_header_format():
    store = MockStore()
    lnd = MockLnd()
    backend = Backend([payment_required()], ["Basic realm=x"])
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(ValueError) as excinfo:
        intercept(interceptor, "unary", backend)
    assert "invalid auth header format: Basic realm=x" in str(excinfo.value)
    assert backend.calls == 1
    assert lnd.pay_calls == []
    assert store.token is None


def test_wrong_network_rejected():
    store = MockStore()
    lnd = MockLnd("bc")
    backend = Backend([payment_required()], make_auth_headers(True))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)
    with pytest.raises(ValueError) as excinfo:
        intercept(interceptor, "unary", backend)
    assert "invoice not for current active network 'bc'" in str(excinfo.value)
    assert backend.calls == 1
    assert lnd.pay_calls == []
    assert store.token is None


def test_other_status_errors_propagate():
    err = StatusError(StatusCode.NOT_FOUND, "no such thing")
    backend = Backend([err])
    interceptor = ClientInterceptor(MockLnd(), MockStore(), TEST_TIMEOUT)
    with pytest.raises(StatusError) as excinfo:
        intercept(interceptor, "stream", backend)
    assert excinfo.value.code is StatusCode.NOT_FOUND
    assert backend.calls == 1


def test_payment_timeout_keeps_pending_token():
    store = MockStore()
    lnd = MockLnd()
    lnd.pay_results.append(TimeoutError())
    backend = Backend([payment_required()], make_auth_headers(False))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    with pytest.raises(RuntimeError, match="payment timed out"):
        intercept(interceptor, "unary", backend)
    assert store.current_token().is_pending()
    assert backend.calls == 1


def test_tracking_in_flight_then_succeeded():
    store = MockStore(Token(preimage=ZERO_PREIMAGE, base_mac=TEST_MAC))
    lnd = MockLnd()
    lnd.track_updates.append([
        PaymentStatus(PaymentState.IN_FLIGHT),
        PaymentStatus(PaymentState.SUCCEEDED, preimage=PAID_PREIMAGE,
                      value=500000, fee=1000),
    ])
    backend = Backend([payment_required()], make_auth_headers(True))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    intercept(interceptor, "unary", backend)

    token = store.current_token()
    assert token.preimage == PAID_PREIMAGE
    assert token.amount_paid == 500000
    assert token.routing_fee_paid == 1000


def test_tracking_unknown_state_fails():
    store = MockStore(Token(preimage=ZERO_PREIMAGE, base_mac=TEST_MAC))
    lnd = MockLnd()
    lnd.track_updates.append([PaymentStatus(PaymentState.UNKNOWN)])
    backend = Backend([payment_required()], make_auth_headers(True))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    with pytest.raises(RuntimeError,
                       match="payment tracking failed with state UNKNOWN"):
        intercept(interceptor, "unary", backend)
    assert store.current_token().is_pending()


def test_tracking_error_fails():
    store = MockStore(Token(preimage=ZERO_PREIMAGE, base_mac=TEST_MAC))
    lnd = MockLnd()
    lnd.track_updates.append([OSError("connection lost")])
    backend = Backend([payment_required()], make_auth_headers(True))
    interceptor = ClientInterceptor(lnd, store, TEST_TIMEOUT)

    with pytest.raises(RuntimeError) as excinfo:
        intercept(interceptor, "unary", backend)
    assert "payment tracking failed: connection lost" in str(excinfo.value)
    assert store.current_token().is_pending()
    assert len(lnd.track_calls) == 1
    assert lnd.pay_calls == []
    assert backend.calls == 1


def test_decode_invoice_fields():
    invoice = decode_invoice(INVOICE)
    assert invoice.network == "tb"
    assert invoice.amount_msat == 500000
    assert len(invoice.payment_hash) == 32


def test_decode_invoice_uppercase_equals_lowercase():
    assert decode_invoice(INVOICE.upper()) == decode_invoice(INVOICE)


def test_decode_invoice_bad_checksum():
    tampered = INVOICE[:-1] + ("q" if INVOICE[-1] != "q" else "p")
    with pytest.raises(ValueError, match="checksum"):
        decode_invoice(tampered)


@pytest.mark.parametrize("err, expected", [
    (StatusError(StatusCode.INTERNAL, "payment required"), True),
    (StatusError(StatusCode.UNKNOWN, "payment required"), True),
    (StatusError(StatusCode.INTERNAL, "Payment Required: pay up"), True),
    (StatusError(StatusCode.NOT_FOUND, "payment required"), False),
    (StatusError(StatusCode.INTERNAL, "something else"), False),
    (ValueError("payment required"), False),
    (None, False),
])
def test_is_payment_required(err, expected):
    assert is_payment_required(err) is expected


def test_default_max_cost_allows_invoice():
    store = MockStore()
    lnd = MockLnd()
    lnd.pay_results.append(PaymentResult(PAID_PREIMAGE, 500, 1))
    backend = Backend([payment_required()], make_auth_headers(False))
    interceptor = ClientInterceptor(
        lnd, store, TEST_TIMEOUT, DEFAULT_MAX_COST_SATS
    )
    assert intercept(interceptor, "unary", backend) == "reply"
    assert store.current_token().amount_paid == 500000