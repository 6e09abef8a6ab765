"""Macaroon bearer credentials with first-party caveats."""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Union

BytesLike = Union[bytes, bytearray, memoryview, str, None]

SIGNATURE_SIZE = 32

_KEY_GENERATOR = b"macaroons-key-generator"
_BINARY_VERSION = 2

_FIELD_EOS = 0
_FIELD_LOCATION = 1
_FIELD_IDENTIFIER = 2
_FIELD_VID = 4
_FIELD_SIGNATURE = 6


def _as_bytes(value: BytesLike) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


def _derive_key(root_key: bytes) -> bytes:
    return hmac.new(_KEY_GENERATOR, root_key, hashlib.sha256).digest()


def _keyed_hash(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha256).digest()


def _uvarint(value: int) -> bytes:
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _field(field_type: int, data: bytes) -> bytes:
    return _uvarint(field_type) + _uvarint(len(data)) + data


class _Reader:
    """Sequential reader over the binary macaroon encoding."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def read_byte(self) -> int:
        if self._pos >= len(self._data):
            raise ValueError("unexpected end of macaroon data")
        value = self._data[self._pos]
        self._pos += 1
        return value

    def read_uvarint(self) -> int:
        result = 0
        shift = 0
        while True:
            byte = self.read_byte()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift > 63:
                raise ValueError("macaroon varint overflows 64 bits")

    def read(self, size: int) -> bytes:
        if size > self.remaining:
            raise ValueError("unexpected end of macaroon data")
        chunk = self._data[self._pos:self._pos + size]
        self._pos += size
        return chunk


def _read_section(reader: _Reader) -> dict[int, bytes]:
    fields: dict[int, bytes] = {}
    last_type = _FIELD_EOS
    while True:
        field_type = reader.read_uvarint()
        if field_type == _FIELD_EOS:
            return fields
        if field_type <= last_type:
            raise ValueError("macaroon fields out of order")
        length = reader.read_uvarint()
        fields[field_type] = reader.read(length)
        last_type = field_type


@dataclass(frozen=True)
class _CaveatRecord:
    caveat_id: bytes
    verification_id: bytes = b""
    location: str = ""


class Macaroon:
    """A macaroon whose signature chains HMAC-SHA256 over its caveats."""

    def __init__(self, root_key: BytesLike, identifier: BytesLike,
                 location: str = "") -> None:
        self._identifier = _as_bytes(identifier)
        self._location = location
        self._caveats: list[_CaveatRecord] = []
        self._signature = _keyed_hash(
            _derive_key(_as_bytes(root_key)), self._identifier
        )

    @classmethod
    def _assemble(cls, identifier: bytes, location: str,
                  caveats: list[_CaveatRecord],
                  signature: bytes) -> "Macaroon":
        mac = cls.__new__(cls)
        mac._identifier = identifier
        mac._location = location
        mac._caveats = list(caveats)
        mac._signature = signature
        return mac

    @property
    def identifier(self) -> bytes:
        return self._identifier

    @property
    def location(self) -> str:
        return self._location

    @property
    def signature(self) -> bytes:
        return self._signature

    @property
    def caveats(self) -> tuple[bytes, ...]:
        """The identifiers of all caveats, in the order they were added."""
        return tuple(c.caveat_id for c in self._caveats)

    def add_first_party_caveat(self, caveat_id: BytesLike) -> None:
        """Append a first-party caveat and extend the signature chain."""
        raw = _as_bytes(caveat_id)
        self._caveats.append(_CaveatRecord(raw))
        self._signature = _keyed_hash(self._signature, raw)

    def clone(self) -> "Macaroon":
        return self._assemble(
            self._identifier, self._location, self._caveats, self._signature
        )

    def verify(self, root_key: BytesLike) -> bool:
        """Return whether the signature was produced from ``root_key``."""
        signature = _keyed_hash(
            _derive_key(_as_bytes(root_key)), self._identifier
        )
        for caveat in self._caveats:
            if caveat.verification_id:
                raise ValueError("third-party caveats cannot be verified")
            signature = _keyed_hash(signature, caveat.caveat_id)
        return hmac.compare_digest(signature, self._signature)

    def to_bytes(self) -> bytes:
        out = bytearray([_BINARY_VERSION])
        if self._location:
            out += _field(_FIELD_LOCATION, self._location.encode("utf-8"))
        out += _field(_FIELD_IDENTIFIER, self._identifier)
        out.append(_FIELD_EOS)
        for caveat in self._caveats:
            if caveat.location:
                out += _field(_FIELD_LOCATION, caveat.location.encode("utf-8"))
            out += _field(_FIELD_IDENTIFIER, caveat.caveat_id)
            if caveat.verification_id:
                out += _field(_FIELD_VID, caveat.verification_id)
            out.append(_FIELD_EOS)
        out.append(_FIELD_EOS)
        out += _field(_FIELD_SIGNATURE, self._signature)
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Macaroon":
        reader = _Reader(bytes(data))
        if reader.read_byte() != _BINARY_VERSION:
            raise ValueError("unsupported macaroon encoding version")

        header = _read_section(reader)
        if not set(header) <= {_FIELD_LOCATION, _FIELD_IDENTIFIER}:
            raise ValueError("unexpected field in macaroon header")
        if _FIELD_IDENTIFIER not in header:
            raise ValueError("macaroon identifier missing")
        location = header.get(_FIELD_LOCATION, b"").decode("utf-8")

        caveats: list[_CaveatRecord] = []
        while True:
            section = _read_section(reader)
            if not section:
                break
            if not set(section) <= {_FIELD_LOCATION, _FIELD_IDENTIFIER,
                                    _FIELD_VID}:
                raise ValueError("unexpected field in caveat")
            if _FIELD_IDENTIFIER not in section:
                raise ValueError("caveat identifier missing")
            caveats.append(_CaveatRecord(
                caveat_id=section[_FIELD_IDENTIFIER],
                verification_id=section.get(_FIELD_VID, b""),
                location=section.get(_FIELD_LOCATION, b"").decode("utf-8"),
            ))

        if reader.read_uvarint() != _FIELD_SIGNATURE:
            raise ValueError("macaroon signature missing")
        if reader.read_uvarint() != SIGNATURE_SIZE:
            raise ValueError("macaroon signature has wrong length")
        signature = reader.read(SIGNATURE_SIZE)
        if reader.remaining:
            raise ValueError("unexpected trailing data after macaroon")

        return cls._assemble(header[_FIELD_IDENTIFIER], location, caveats,
                             signature)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Macaroon):
            return NotImplemented
        return (self._identifier == other._identifier
                and self._location == other._location
                and self._caveats == other._caveats
                and self._signature == other._signature)

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (f"Macaroon(identifier={self._identifier!r}, "
                f"location={self._location!r}, caveats={len(self._caveats)})")


class MacaroonCredential:
    """Per-call credential carrying a copy of a macaroon as metadata."""

    def __init__(self, macaroon: Macaroon, allow_insecure: bool = False) -> None:
        self.macaroon = macaroon.clone()
        # Only set for connections tunnelled through tor to an onion service.
        self.allow_insecure = allow_insecure

    def require_transport_security(self) -> bool:
        return not self.allow_insecure

    def request_metadata(self) -> dict[str, str]:
        return {"macaroon": self.macaroon.to_bytes().hex()}