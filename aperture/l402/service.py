"""Services, tiers and the caveats that describe access to them."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Callable

from .caveat import Caveat

COND_SERVICES = "services"
COND_CAPABILITIES_SUFFIX = "_capabilities"
COND_TIMEOUT_SUFFIX = "_valid_until"

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


class NoServicesError(ValueError):
    """A services caveat holds no services."""

    def __init__(self, message: str = "no services found") -> None:
        super().__init__(message)


class InvalidServiceError(ValueError):
    """A service entry is not of the form ``name:tier``."""

    def __init__(self, detail: str = "") -> None:
        message = 'service must be of the form "name:tier"'
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ServiceTier(IntEnum):
    """Tiers of an L402-enabled service."""

    BASE = 0


@dataclass(frozen=True)
class Service:
    """An L402-enabled service; price is in satoshis."""

    name: str
    tier: int = ServiceTier.BASE
    price: int = 0


def _parse_int(text: str) -> int:
    """Parse a signed decimal 64-bit integer strictly."""
    if not _INT_PATTERN.fullmatch(text):
        raise ValueError(f"invalid integer syntax: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def encode_services_caveat_value(*services: Service) -> str:
    if not services:
        raise NoServicesError()
    for service in services:
        if not service.name:
            raise ValueError("missing service name")
    return ",".join(f"{s.name}:{int(s.tier) & 0xFF}" for s in services)


def decode_services_caveat_value(s: str) -> list[Service]:
    if not s:
        raise NoServicesError()

    services = []
    for raw in s.split(","):
        parts = raw.split(":")
        if len(parts) != 2:
            raise InvalidServiceError()
        name, tier_str = parts
        if not name:
            raise InvalidServiceError("empty name")
        try:
            tier = _parse_int(tier_str)
        except ValueError as exc:
            raise InvalidServiceError(str(exc)) from exc
        services.append(Service(name=name, tier=tier & 0xFF))
    return services


def new_services_caveat(*services: Service) -> Caveat:
    return Caveat(COND_SERVICES, encode_services_caveat_value(*services))


def new_capabilities_caveat(service_name: str, capabilities: str) -> Caveat:
    return Caveat(service_name + COND_CAPABILITIES_SUFFIX, capabilities)


def new_timeout_caveat(service_name: str, num_seconds: int,
                       now: Callable[[], datetime]) -> Caveat:
    """A caveat valid until ``num_seconds`` after ``now()``, as a Unix time."""
    expiry = now() + timedelta(seconds=num_seconds)
    return Caveat(
        service_name + COND_TIMEOUT_SUFFIX,
        str(math.floor(expiry.timestamp())),
    )