"""Reading and writing L402 credentials in HTTP headers.

Headers are a mutable mapping from field name to a value or a list of
values; field names are matched without regard to case.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import MutableMapping, Union

from .caveat import PREIMAGE_KEY, has_caveat
from .macaroon import Macaroon

log = logging.getLogger(__name__)

HEADER_AUTHORIZATION = "Authorization"
HEADER_MACAROON_MD = "Grpc-Metadata-Macaroon"
HEADER_MACAROON = "Macaroon"

_AUTH_REGEX = re.compile(r"(LSAT|L402) (.*?):([a-f0-9]{64})")
_AUTH_FORMAT_LEGACY = "LSAT {}:{}"
_AUTH_FORMAT = "L402 {}:{}"

_HEX = re.compile(r"(?:[0-9a-fA-F]{2})*")
_PREIMAGE_HEX = re.compile(r"[0-9a-fA-F]{64}")

Headers = MutableMapping[str, Union[str, list]]


class AuthHeaderError(ValueError):
    """Headers carry no usable L402 credentials."""


def _values(headers: Headers, name: str) -> list[str]:
    wanted = name.lower()
    values: list[str] = []
    for key, value in headers.items():
        if key.lower() == wanted:
            values.extend([value] if isinstance(value, str) else value)
    return values


def _first(headers: Headers, name: str) -> str:
    values = _values(headers, name)
    return values[0] if values else ""


def _unmarshal(mac_bytes: bytes) -> Macaroon:
    try:
        return Macaroon.from_bytes(mac_bytes)
    except ValueError as exc:
        raise AuthHeaderError(f"unable to unmarshal macaroon: {exc}") from exc


def _parse_preimage(text: str) -> bytes:
    if not _PREIMAGE_HEX.fullmatch(text):
        raise AuthHeaderError(f"hex decode of preimage failed: {text!r}")
    return bytes.fromhex(text)


def from_header(headers: Headers) -> tuple[Macaroon, bytes]:
    """Extract the macaroon and preimage from request headers.

    ``Authorization: L402 <macBase64>:<preimageHex>`` (or ``LSAT``) carries
    both; ``Grpc-Metadata-Macaroon`` and ``Macaroon`` carry a hex macaroon
    whose preimage caveat supplies the preimage.
    """
    if _first(headers, HEADER_AUTHORIZATION):
        values = _values(headers, HEADER_AUTHORIZATION)
        for value in values:
            log.debug("Trying to authorize with header value [%s].", value)
        # Only the last Authorization value decides.
        match = _AUTH_REGEX.search(values[-1])
        if match is None:
            raise AuthHeaderError(
                f"invalid auth header format: {values[-1]}"
            )

        mac_base64, preimage_hex = match.group(2), match.group(3)
        try:
            mac_bytes = base64.b64decode(mac_base64, validate=True)
        except binascii.Error as exc:
            raise AuthHeaderError(
                f"base64 decode of macaroon failed: {exc}"
            ) from exc
        return _unmarshal(mac_bytes), _parse_preimage(preimage_hex)

    if _first(headers, HEADER_MACAROON_MD):
        auth_header = _first(headers, HEADER_MACAROON_MD)
    elif _first(headers, HEADER_MACAROON):
        auth_header = _first(headers, HEADER_MACAROON)
    else:
        raise AuthHeaderError("no auth header provided")

    if not _HEX.fullmatch(auth_header):
        raise AuthHeaderError("hex decode of macaroon failed")
    mac = _unmarshal(bytes.fromhex(auth_header))

    preimage_hex = has_caveat(mac, PREIMAGE_KEY)
    if preimage_hex is None:
        raise AuthHeaderError("preimage caveat not found")
    return mac, _parse_preimage(preimage_hex)


def set_header(headers: Headers, mac: Macaroon, preimage: bytes) -> None:
    """Set the Authorization header to the macaroon and preimage.

    The legacy ``LSAT`` value comes first, followed by the ``L402`` one.
    """
    mac_str = base64.b64encode(mac.to_bytes()).decode("ascii")
    preimage_str = bytes(preimage).hex()

    for key in [k for k in headers if k.lower() == "authorization"]:
        del headers[key]
    headers[HEADER_AUTHORIZATION] = [
        _AUTH_FORMAT_LEGACY.format(mac_str, preimage_str),
        _AUTH_FORMAT.format(mac_str, preimage_str),
    ]