"""The identifier embedded in an L402 macaroon."""

from __future__ import annotations

import io
import re
import struct
from dataclasses import dataclass

LATEST_VERSION = 0
SECRET_SIZE = 32
TOKEN_ID_SIZE = 32
HASH_SIZE = 32

_HEX_ID = re.compile(r"[0-9a-fA-F]*")


class UnknownVersionError(ValueError):
    """An identifier carries a version this code does not know."""

    def __init__(self, version: int) -> None:
        super().__init__(f"unknown L402 version: {version}")
        self.version = version


class TokenID(bytes):
    """The 32-byte identifier of an L402 token; prints as hex."""

    def __new__(cls, raw: bytes = bytes(TOKEN_ID_SIZE)) -> "TokenID":
        raw = bytes(raw)
        if len(raw) != TOKEN_ID_SIZE:
            raise ValueError(
                f"token id must be {TOKEN_ID_SIZE} bytes, got {len(raw)}"
            )
        return super().__new__(cls, raw)

    @classmethod
    def from_string(cls, s: str) -> "TokenID":
        want = TOKEN_ID_SIZE * 2
        if len(s) != want:
            raise ValueError(
                f"invalid id string length of {len(s)}, want {want}"
            )
        if not _HEX_ID.fullmatch(s):
            raise ValueError(f"invalid hex in token id: {s!r}")
        return cls(bytes.fromhex(s))

    def __str__(self) -> str:
        return self.hex()

    def __repr__(self) -> str:
        return f"TokenID('{self.hex()}')"


@dataclass(frozen=True)
class Identifier:
    """Static details of an L402: version, payment hash and token ID."""

    version: int
    payment_hash: bytes
    token_id: TokenID

    def __post_init__(self) -> None:
        if len(self.payment_hash) != HASH_SIZE:
            raise ValueError(f"payment hash must be {HASH_SIZE} bytes")
        object.__setattr__(self, "payment_hash", bytes(self.payment_hash))
        if not isinstance(self.token_id, TokenID):
            object.__setattr__(self, "token_id", TokenID(self.token_id))


def encode_identifier(identifier: Identifier) -> bytes:
    version = identifier.version
    if not 0 <= version <= 0xFFFF:
        raise ValueError(f"version {version} does not fit in 16 bits")
    if version != 0:
        raise UnknownVersionError(version)
    return (struct.pack(">H", version) + identifier.payment_hash
            + bytes(identifier.token_id))


def _read_chunk(stream: io.BytesIO, size: int) -> bytes:
    # A short read is zero-padded; only an exhausted stream is an error.
    chunk = stream.read(size)
    if not chunk:
        raise ValueError("unexpected end of identifier data")
    return chunk.ljust(size, b"\x00")


def decode_identifier(data: bytes) -> Identifier:
    stream = io.BytesIO(bytes(data))
    header = stream.read(2)
    if len(header) != 2:
        raise ValueError("identifier too short to hold a version")
    (version,) = struct.unpack(">H", header)
    if version != 0:
        raise UnknownVersionError(version)

    payment_hash = _read_chunk(stream, HASH_SIZE)
    token_id = TokenID(_read_chunk(stream, TOKEN_ID_SIZE))
    return Identifier(version, payment_hash, token_id)