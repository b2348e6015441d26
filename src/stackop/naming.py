"""Naming authority for stable and disambiguated resource names.

The stable name is the one a human chose in the spec and the one reused when
a healthy foreign resource already answers to it. A disambiguated name is
issued when the stack must create its own copy next to something it may not
touch:

    {stable}-{token}        e.g. cache-lp-dev-m1x9k2a

The token is derived from the creation time (base36 milliseconds) plus a
per-process sequence, so two issuances in the same millisecond still differ.
If the collaborator reports the derived name as taken, a counter is appended
(-2, -3, ...) up to MAX_NAME_ATTEMPTS, after which issuance fails.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .config import MAX_NAME_ATTEMPTS
from .resources import ResourceKind

logger = logging.getLogger(__name__)

NameTakenCheck = Callable[[ResourceKind, str], Awaitable[bool | None]]

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class NameCollisionError(Exception):
    """Raised when no free disambiguated name is found within the bound."""

    pass


@dataclass(frozen=True)
class NamePair:
    """Stable and disambiguated names for one resource."""

    stable_name: str
    disambiguated_name: str


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


class NamingAuthority:
    """Issues disambiguated names, serialized across concurrent resolutions.

    Args:
        max_lengths: Maximum name length per kind; the stable part is
            truncated so the full name fits.
        name_taken: Async check against the target collaborator. Returns
            True if taken, False if free, None if it cannot tell. None counts
            as taken.
        max_attempts: Bound on counter suffixes before giving up.
        clock: Wall clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        max_lengths: dict[ResourceKind, int] | None = None,
        name_taken: NameTakenCheck | None = None,
        max_attempts: int = MAX_NAME_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_lengths = max_lengths or {}
        self._name_taken = name_taken
        self._max_attempts = max_attempts
        self._clock = clock
        self._sequence = itertools.count()
        self._issued: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def issued(self) -> frozenset[str]:
        """Every name issued by this process so far."""
        return frozenset(self._issued)

    async def resolve_name(self, kind: ResourceKind, stable_name: str) -> NamePair:
        """Derive a fresh disambiguated name for stable_name.

        Raises:
            NameCollisionError: If every candidate within the bound is taken.
        """
        async with self._lock:
            token = self._token()
            for attempt in range(1, self._max_attempts + 1):
                suffix = token if attempt == 1 else f"{token}-{attempt}"
                candidate = self._fit(kind, stable_name, suffix)

                if candidate in self._issued:
                    continue
                if await self._is_taken(kind, candidate):
                    logger.info(
                        "Disambiguated name already taken",
                        extra={"kind": kind.value, "name": candidate, "attempt": attempt},
                    )
                    continue

                self._issued.add(candidate)
                logger.debug(
                    "Issued disambiguated name",
                    extra={"kind": kind.value, "stable_name": stable_name, "name": candidate},
                )
                return NamePair(stable_name=stable_name, disambiguated_name=candidate)

        raise NameCollisionError(
            f"No free name for {kind.value} '{stable_name}' after {self._max_attempts} attempts"
        )

    def _token(self) -> str:
        millis = int(self._clock() * 1000)
        return _to_base36(millis) + _to_base36(next(self._sequence))

    def _fit(self, kind: ResourceKind, stable_name: str, suffix: str) -> str:
        max_length = self._max_lengths.get(kind)
        if max_length is None:
            return f"{stable_name}-{suffix}"
        room = max_length - len(suffix) - 1
        if room < 1:
            raise NameCollisionError(
                f"Maximum length {max_length} for {kind.value} leaves no room for '{stable_name}'"
            )
        return f"{stable_name[:room].rstrip('-')}-{suffix}"

    async def _is_taken(self, kind: ResourceKind, name: str) -> bool:
        if self._name_taken is None:
            return False
        try:
            taken = await self._name_taken(kind, name)
        except Exception as e:
            logger.warning(
                "Name availability check failed, treating as taken",
                extra={"kind": kind.value, "name": name, "error": str(e)},
            )
            return True
        return taken is not False
