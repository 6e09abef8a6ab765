import struct

import pytest

from aperture.l402.header import set_header
from aperture.l402.identifier import Identifier, TokenID, encode_identifier
from aperture.l402.macaroon import Macaroon
from aperture.l402.server_interceptor import (
    KEY_TOKEN_ID,
    Context,
    ContextKey,
    ServerInterceptor,
    add_to_context,
    from_context,
    token_id_from_metadata,
)

ROOT_KEY = b"aabbccddeeff00112233445566778899"
TOKEN_ID = TokenID(bytes(range(32)))
PAYMENT_HASH = bytes([7]) * 32
PREIMAGE = bytes([1, 2, 3, 4, 5]) + bytes(27)


def make_mac(identifier=None):
    if identifier is None:
        identifier = encode_identifier(Identifier(0, PAYMENT_HASH, TOKEN_ID))
    return Macaroon(ROOT_KEY, identifier, "L402")


def auth_metadata(mac):
    headers = {}
    set_header(headers, mac, PREIMAGE)
    return {"authorization": headers["Authorization"]}


class FakeStream:
    def __init__(self, context):
        self.context = context
        self.name = "fake-stream"


def test_token_id_from_metadata():
    assert token_id_from_metadata(auth_metadata(make_mac())) == TOKEN_ID


def test_token_id_from_metadata_without_metadata():
    with pytest.raises(ValueError, match="context contains no metadata"):
        token_id_from_metadata(None)


def test_token_id_from_metadata_without_auth():
    with pytest.raises(ValueError, match="auth header extraction failed"):
        token_id_from_metadata({"other": ["value"]})


def test_token_id_from_metadata_unknown_version():
    identifier = struct.pack(">H", 1) + PAYMENT_HASH + bytes(TOKEN_ID)
    with pytest.raises(ValueError, match="token ID decoding failed"):
        token_id_from_metadata(auth_metadata(make_mac(identifier)))


def test_context_values_are_scoped():
    base = Context(metadata={"a": ["b"]})
    key = ContextKey("k")
    derived = add_to_context(base, key, "v")
    assert from_context(derived, key) == "v"
    assert from_context(base, key) is None
    assert derived.metadata == base.metadata
    shadowed = derived.with_value(key, "w")
    assert shadowed.value(key) == "w"
    assert derived.value(key) == "v"


def test_context_key_is_not_a_string():
    ctx = Context().with_value(KEY_TOKEN_ID, TOKEN_ID)
    assert ctx.value("tokenid") is None
    assert ctx.value(ContextKey("tokenid")) == TOKEN_ID


def test_unary_interceptor_attaches_token_id():
    seen = {}

    def handler(ctx, request):
        seen["token"] = from_context(ctx, KEY_TOKEN_ID)
        return request * 2

    ctx = Context(metadata=auth_metadata(make_mac()))
    result = ServerInterceptor().unary_interceptor(ctx, 21, handler)
    assert result == 42
    assert seen["token"] == TOKEN_ID


def test_unary_interceptor_passes_through_without_token():
    ctx = Context(metadata={})
    seen = {}

    def handler(received, request):
        seen["ctx"] = received
        return request

    assert ServerInterceptor().unary_interceptor(ctx, "req", handler) == "req"
    assert seen["ctx"] is ctx
    assert seen["ctx"].value(KEY_TOKEN_ID) is None


def test_stream_interceptor_wraps_stream():
    stream = FakeStream(Context(metadata=auth_metadata(make_mac())))
    seen = {}

    def handler(srv, received):
        seen["stream"] = received
        return srv

    assert ServerInterceptor().stream_interceptor("srv", stream, handler) == "srv"
    wrapped = seen["stream"]
    assert wrapped.context.value(KEY_TOKEN_ID) == TOKEN_ID
    assert wrapped.name == stream.name
    assert stream.context.value(KEY_TOKEN_ID) is None


def test_stream_interceptor_passes_through_without_token():
    stream = FakeStream(Context())
    seen = {}

    def handler(srv, received):
        seen["stream"] = received

    ServerInterceptor().stream_interceptor(None, stream, handler)
    assert seen["stream"] is stream