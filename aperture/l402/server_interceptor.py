"""Server-side extraction of the L402 token ID from incoming call metadata.

A call's context carries the incoming metadata (a mapping of lower-case key
to a value or list of values) and a set of request-scoped values. The
interceptors look for an L402 in the ``authorization`` metadata and, when one
is found, attach its token ID under ``KEY_TOKEN_ID`` before calling the
handler. Calls without a usable L402 are passed through untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from .header import HEADER_AUTHORIZATION, AuthHeaderError, from_header
from .identifier import TokenID, decode_identifier

log = logging.getLogger(__name__)

Metadata = Mapping[str, Union[str, list]]


@dataclass(frozen=True)
class ContextKey:
    """Key for L402 values in a context; never equal to a plain string."""

    name: str


KEY_TOKEN_ID = ContextKey("tokenid")


@dataclass(frozen=True)
class Context:
    """An immutable request context: incoming metadata plus scoped values."""

    metadata: Optional[Metadata] = None
    _values: Mapping[Any, Any] = field(default_factory=dict, repr=False)

    def with_value(self, key: Any, value: Any) -> "Context":
        """A new context that also holds ``value`` under ``key``."""
        return Context(self.metadata, {**self._values, key: value})

    def value(self, key: Any) -> Any:
        """The value stored under ``key``, or None."""
        return self._values.get(key)


def from_context(ctx: Context, key: ContextKey) -> Any:
    return ctx.value(key)


def add_to_context(ctx: Context, key: ContextKey, value: Any) -> Context:
    return ctx.with_value(key, value)


def _metadata_values(metadata: Metadata, name: str) -> list[str]:
    wanted = name.lower()
    values: list[str] = []
    for key, value in metadata.items():
        if key.lower() == wanted:
            values.extend([value] if isinstance(value, str) else value)
    return values


def token_id_from_metadata(metadata: Optional[Metadata]) -> TokenID:
    """Decode the token ID of the L402 sent in the call's metadata."""
    if metadata is None:
        raise ValueError("context contains no metadata")

    auth_values = _metadata_values(metadata, HEADER_AUTHORIZATION)
    log.debug("Auth header present in request: %s", auth_values)
    try:
        mac, _ = from_header({HEADER_AUTHORIZATION: auth_values})
    except AuthHeaderError as exc:
        raise ValueError(f"auth header extraction failed: {exc}") from exc

    try:
        identifier = decode_identifier(mac.identifier)
    except ValueError as exc:
        raise ValueError(f"token ID decoding failed: {exc}") from exc

    token_id = TokenID(identifier.token_id)
    log.debug("Decoded client/token ID %s from auth header", token_id)
    return token_id


class _WrappedStream:
    """A server stream whose context is replaced; everything else delegates."""

    def __init__(self, inner: Any, context: Context) -> None:
        self._inner = inner
        self.context = context

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


class ServerInterceptor:
    """Attaches the caller's L402 token ID to the context of each call."""

    def unary_interceptor(self, ctx: Context, request: Any,
                          handler: Callable[[Context, Any], Any]) -> Any:
        try:
            token_id = token_id_from_metadata(ctx.metadata)
        except ValueError as exc:
            log.debug("No token extracted, error was: %s", exc)
            return handler(ctx, request)
        return handler(ctx.with_value(KEY_TOKEN_ID, token_id), request)

    def stream_interceptor(self, srv: Any, stream: Any,
                           handler: Callable[[Any, Any], Any]) -> Any:
        """Intercept a stream; ``stream.context`` must be a ``Context``."""
        ctx = stream.context
        try:
            token_id = token_id_from_metadata(ctx.metadata)
        except ValueError as exc:
            log.debug("No token extracted, error was: %s", exc)
            return handler(srv, stream)
        wrapped = _WrappedStream(stream, ctx.with_value(KEY_TOKEN_ID, token_id))
        return handler(srv, wrapped)