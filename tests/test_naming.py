"""Tests for the naming authority."""

from __future__ import annotations

import asyncio

import pytest

from stackop.naming import NameCollisionError, NamingAuthority
from stackop.resources import MAX_NAME_LENGTHS, ResourceKind


def frozen_clock() -> float:
    return 0.0


class TestNamingAuthority:
    """Tests for NamingAuthority.resolve_name()."""

    @pytest.mark.asyncio
    async def test_disambiguated_name_keeps_stable_prefix(self) -> None:
        authority = NamingAuthority(clock=lambda: 1_700_000_000.0)

        pair = await authority.resolve_name(ResourceKind.CACHE, "redis-demo")

        assert pair.stable_name == "redis-demo"
        assert pair.disambiguated_name.startswith("redis-demo-")
        assert pair.disambiguated_name != "redis-demo"
        assert pair.disambiguated_name in authority.issued

    @pytest.mark.asyncio
    async def test_same_millisecond_still_unique(self) -> None:
        authority = NamingAuthority(clock=frozen_clock)

        first = await authority.resolve_name(ResourceKind.NETWORK, "vnet-demo")
        second = await authority.resolve_name(ResourceKind.NETWORK, "vnet-demo")

        assert first.disambiguated_name == "vnet-demo-00"
        assert second.disambiguated_name == "vnet-demo-01"

    @pytest.mark.asyncio
    async def test_concurrent_resolutions_never_collide(self) -> None:
        authority = NamingAuthority(clock=frozen_clock)

        pairs = await asyncio.gather(
            *(authority.resolve_name(ResourceKind.CACHE, "redis-demo") for _ in range(20))
        )

        names = [p.disambiguated_name for p in pairs]
        assert len(set(names)) == 20

    @pytest.mark.asyncio
    async def test_long_stable_name_is_truncated_to_fit(self) -> None:
        """The stable part is shortened so the full name respects the kind limit."""
        authority = NamingAuthority(max_lengths=MAX_NAME_LENGTHS, clock=frozen_clock)
        stable = "release-" + "x" * 45

        pair = await authority.resolve_name(ResourceKind.RELEASE, stable)

        assert len(pair.disambiguated_name) <= MAX_NAME_LENGTHS[ResourceKind.RELEASE]
        assert pair.disambiguated_name.endswith("-00")
        assert "--" not in pair.disambiguated_name

    @pytest.mark.asyncio
    async def test_no_room_for_stable_name(self) -> None:
        authority = NamingAuthority(max_lengths={ResourceKind.CACHE: 3}, clock=frozen_clock)

        with pytest.raises(NameCollisionError, match="leaves no room"):
            await authority.resolve_name(ResourceKind.CACHE, "redis")

    @pytest.mark.asyncio
    async def test_taken_name_gets_counter_suffix(self) -> None:
        checked: list[str] = []

        async def name_taken(kind: ResourceKind, name: str) -> bool:
            checked.append(name)
            return name == "vnet-demo-00"

        authority = NamingAuthority(name_taken=name_taken, clock=frozen_clock)

        pair = await authority.resolve_name(ResourceKind.NETWORK, "vnet-demo")

        assert pair.disambiguated_name == "vnet-demo-00-2"
        assert checked == ["vnet-demo-00", "vnet-demo-00-2"]

    @pytest.mark.asyncio
    async def test_bounded_attempts(self) -> None:
        async def always_taken(kind: ResourceKind, name: str) -> bool:
            return True

        authority = NamingAuthority(name_taken=always_taken, max_attempts=3, clock=frozen_clock)

        with pytest.raises(NameCollisionError, match="after 3 attempts"):
            await authority.resolve_name(ResourceKind.NETWORK, "vnet-demo")

    @pytest.mark.asyncio
    async def test_unanswered_check_counts_as_taken(self) -> None:
        """Neither an error nor None from the collaborator frees a name."""
        answers: list[bool | None] = [None, False]

        async def name_taken(kind: ResourceKind, name: str) -> bool | None:
            if not answers:
                raise ConnectionError("unreachable")
            return answers.pop(0)

        authority = NamingAuthority(name_taken=name_taken, clock=frozen_clock)

        pair = await authority.resolve_name(ResourceKind.NETWORK, "vnet-demo")

        assert pair.disambiguated_name == "vnet-demo-00-2"

    @pytest.mark.asyncio
    async def test_check_errors_exhaust_attempts(self) -> None:
        async def broken(kind: ResourceKind, name: str) -> bool:
            raise ConnectionError("unreachable")

        authority = NamingAuthority(name_taken=broken, max_attempts=2, clock=frozen_clock)

        with pytest.raises(NameCollisionError):
            await authority.resolve_name(ResourceKind.NETWORK, "vnet-demo")
