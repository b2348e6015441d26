"""State probe: existence, health and ownership of stack resources.

The probe never mutates anything and never raises for query failures. A
failed query yields an indeterminate snapshot, which the resolver always
turns into Skip. Absence is only reported when a collaborator positively
says the resource is not there.
"""

from __future__ import annotations

import logging

from .drivers import ObservedResource, ResourceDriver
from .resources import ResourceKind, ResourceSnapshot

logger = logging.getLogger(__name__)


class StateProbe:
    """Dispatches inspections to the driver registered for each kind."""

    def __init__(self, drivers: dict[ResourceKind, ResourceDriver]) -> None:
        self._drivers = drivers

    def driver_for(self, kind: ResourceKind) -> ResourceDriver:
        driver = self._drivers.get(kind)
        if driver is None:
            raise KeyError(f"No driver registered for kind '{kind.value}'")
        return driver

    async def inspect(self, kind: ResourceKind, stable_name: str) -> ResourceSnapshot:
        """Observe the resource behind stable_name.

        A resource this stack created earlier (possibly under a disambiguated
        name) takes precedence over whatever answers to the stable name.
        """
        driver = self._drivers.get(kind)
        if driver is None:
            return ResourceSnapshot.indeterminate(f"no driver for kind '{kind.value}'")

        try:
            observed = await driver.find_managed(stable_name)
            if observed is None:
                observed = await driver.describe(stable_name)
        except Exception as e:
            # SECURITY: Fail-closed - an unanswered query is never "absent"
            logger.warning(
                "State probe failed, reporting indeterminate",
                extra={
                    "kind": kind.value,
                    "stable_name": stable_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return ResourceSnapshot.indeterminate(f"{type(e).__name__}: {e}")

        return self._to_snapshot(observed)

    async def inspect_name(self, kind: ResourceKind, name: str) -> ResourceSnapshot:
        """Observe a resource by its exact name, without ownership lookup."""
        driver = self._drivers.get(kind)
        if driver is None:
            return ResourceSnapshot.indeterminate(f"no driver for kind '{kind.value}'")
        try:
            observed = await driver.describe(name)
        except Exception as e:
            logger.warning(
                "State probe failed, reporting indeterminate",
                extra={"kind": kind.value, "name": name, "error": str(e)},
            )
            return ResourceSnapshot.indeterminate(f"{type(e).__name__}: {e}")
        return self._to_snapshot(observed)

    @staticmethod
    def _to_snapshot(observed: ObservedResource | None) -> ResourceSnapshot:
        if observed is None:
            return ResourceSnapshot.absent()
        return ResourceSnapshot.present(
            observed.name,
            healthy=observed.healthy,
            managed_by_us=observed.managed_by_us,
            details=observed.details,
        )
