"""Caveats that restrict an L402 and the logic that checks them."""

from __future__ import annotations

from dataclasses import dataclass
from itertools import pairwise
from typing import Callable, Optional

from .macaroon import Macaroon

PREIMAGE_KEY = "preimage"


class InvalidCaveatError(ValueError):
    """A caveat string is not of the form ``condition=value``."""

    def __init__(self, message: str = 'caveat must be of the form '
                                      '"condition=value"') -> None:
        super().__init__(message)


@dataclass(frozen=True)
class Caveat:
    """A predicate identified by its condition and satisfied by its value."""

    condition: str
    value: str

    def __str__(self) -> str:
        return encode_caveat(self)


@dataclass(frozen=True)
class Satisfier:
    """Checks caveats of one condition; the callables raise when unsatisfied.

    ``satisfy_previous`` makes sure each caveat is at least as strict as the
    one before it; ``satisfy_final`` decides on the last one. A check left as
    None is not applied.
    """

    condition: str
    satisfy_previous: Optional[Callable[[Caveat, Caveat], None]] = None
    satisfy_final: Optional[Callable[[Caveat], None]] = None


def encode_caveat(caveat: Caveat) -> str:
    return f"{caveat.condition}={caveat.value}"


def decode_caveat(s: str) -> Caveat:
    condition, sep, value = s.partition("=")
    if not sep:
        raise InvalidCaveatError()
    return Caveat(condition, value)


def add_first_party_caveats(mac: Macaroon, *caveats: Caveat) -> None:
    for caveat in caveats:
        mac.add_first_party_caveat(encode_caveat(caveat).encode("utf-8"))


def has_caveat(mac: Macaroon, cond: str) -> Optional[str]:
    """Return the value of the last caveat with ``cond``, or None."""
    value: Optional[str] = None
    for raw in mac.caveats:
        try:
            caveat = decode_caveat(raw.decode("utf-8", errors="replace"))
        except InvalidCaveatError:
            continue
        if caveat.condition == cond:
            value = caveat.value
    return value


def verify_caveats(caveats: list[Caveat], *satisfiers: Satisfier) -> None:
    """Check every caveat that has a satisfier, raising on the first failure.

    The caveats must be in the order they appear in the L402, so that each
    chain of equal conditions is checked from first to last.
    """
    by_condition = {s.condition: s for s in satisfiers}
    relevant: dict[str, list[Caveat]] = {}
    for caveat in caveats:
        if caveat.condition in by_condition:
            relevant.setdefault(caveat.condition, []).append(caveat)

    for condition, chain in relevant.items():
        satisfier = by_condition[condition]
        if satisfier.satisfy_previous is not None:
            for previous, current in pairwise(chain):
                satisfier.satisfy_previous(previous, current)
        if satisfier.satisfy_final is not None:
            satisfier.satisfy_final(chain[-1])