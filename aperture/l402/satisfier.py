"""Satisfiers for the services, capabilities and timeout caveats."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

from .caveat import Caveat, Satisfier
from .service import (
    COND_CAPABILITIES_SUFFIX,
    COND_SERVICES,
    COND_TIMEOUT_SUFFIX,
    _parse_int,
    decode_services_caveat_value,
)


def new_services_satisfier(target_service: str) -> Satisfier:
    """Authorize access when ``target_service`` is among the allowed ones."""

    def satisfy_previous(previous: Caveat, current: Caveat) -> None:
        allowed = {s.name for s in decode_services_caveat_value(previous.value)}
        for service in decode_services_caveat_value(current.value):
            if service.name not in allowed:
                raise ValueError(
                    f"service {service.name} not previously allowed"
                )

    def satisfy_final(caveat: Caveat) -> None:
        services = decode_services_caveat_value(caveat.value)
        if not any(s.name == target_service for s in services):
            raise ValueError(f"target service {target_service} not authorized")

    return Satisfier(COND_SERVICES, satisfy_previous, satisfy_final)


def new_capabilities_satisfier(service: str,
                               target_capability: str) -> Satisfier:
    """Authorize access when the service grants ``target_capability``."""

    def satisfy_previous(previous: Caveat, current: Caveat) -> None:
        allowed = set(previous.value.split(","))
        for capability in current.value.split(","):
            if capability not in allowed:
                raise ValueError(
                    f"capability {capability} not previously allowed"
                )

    def satisfy_final(caveat: Caveat) -> None:
        if target_capability not in caveat.value.split(","):
            raise ValueError(
                f"target capability {target_capability} not authorized"
            )

    return Satisfier(
        service + COND_CAPABILITIES_SUFFIX, satisfy_previous, satisfy_final
    )


def new_timeout_satisfier(service: str,
                          now: Callable[[], datetime]) -> Satisfier:
    """Reject expired L402s and chains whose expiries grow more lenient."""
    condition = service + COND_TIMEOUT_SUFFIX

    def satisfy_previous(previous: Caveat, current: Caveat) -> None:
        try:
            previous_value = _parse_int(previous.value)
        except ValueError as exc:
            raise ValueError(
                f"error parsing previous caveat value: {exc}"
            ) from exc
        try:
            current_value = _parse_int(current.value)
        except ValueError as exc:
            raise ValueError(f"error parsing caveat value: {exc}") from exc

        if previous_value < current_value:
            raise ValueError(
                f"{condition} caveat violates increasing restrictiveness"
            )

    def satisfy_final(caveat: Caveat) -> None:
        try:
            expiration = _parse_int(caveat.value)
        except ValueError as exc:
            raise ValueError(
                f"caveat value not a valid integer: {exc}"
            ) from exc

        if now().timestamp() < expiration:
            return
        raise ValueError("not authorized to access service. L402 has expired")

    return Satisfier(condition, satisfy_previous, satisfy_final)