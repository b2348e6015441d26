"""Helm release driver for the ingress controller and release kinds.

Releases are installed with `helm upgrade --install` and never with
`--wait`: the provisioning waiter polls readiness itself, so a slow rollout
is a bounded wait with progress instead of one opaque blocking command.

Ownership lives in Helm storage labels (`--labels`, Helm 3.13+) and is read
back with `helm list --selector`.

Stuck releases (pending-install, pending-upgrade, pending-rollback, failed)
block every further install. reset() removes them so the next attempt starts
from a clean state.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Awaitable, Callable
from subprocess import CompletedProcess
from typing import Any

import yaml

from .commands import CommandError, run_command_async
from .config import DEFAULT_HELM_TIMEOUT_SECONDS
from .drivers import MANAGED_BY_LABEL, STABLE_NAME_LABEL, ObservedResource
from .kubernetes_platform import KubernetesSession, is_retryable_kube_error, workload_readiness
from .models import ChartConfig, ResourceDefinition
from .resources import HELM_KINDS, MAX_NAME_LENGTHS, ResourceKind
from .waiter import Readiness, ReadinessState

logger = logging.getLogger(__name__)

STUCK_STATES = frozenset({"pending-install", "pending-upgrade", "pending-rollback", "failed"})

Runner = Callable[..., Awaitable[CompletedProcess[str]]]


class HelmCommandError(CommandError):
    """A helm invocation failed. Carries the return code and retryability."""

    pass


class HelmClient:
    """Thin async wrapper around the helm CLI."""

    def __init__(
        self,
        kube_context: str | None = None,
        timeout_seconds: int = DEFAULT_HELM_TIMEOUT_SECONDS,
        runner: Runner = run_command_async,
    ) -> None:
        self.kube_context = kube_context
        self._timeout_seconds = timeout_seconds
        self._runner = runner

    def command(self, *args: str) -> list[str]:
        cmd = ["helm", *args]
        if self.kube_context:
            cmd.extend(["--kube-context", self.kube_context])
        return cmd

    async def _run(self, *args: str) -> CompletedProcess[str]:
        cmd = self.command(*args)
        logger.info("helm> %s", " ".join(cmd))
        try:
            return await self._runner(cmd, timeout=self._timeout_seconds)
        except CommandError as e:
            raise HelmCommandError(str(e), returncode=e.returncode, retryable=e.retryable) from e

    async def list_releases(
        self, *, name: str | None = None, selector: str | None = None
    ) -> list[dict[str, Any]]:
        """Releases in every namespace and every state, optionally filtered."""
        args = ["list", "--all-namespaces", "--all", "--output", "json"]
        if name is not None:
            args.extend(["--filter", f"^{re.escape(name)}$"])
        if selector is not None:
            args.extend(["--selector", selector])

        result = await self._run(*args)
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise HelmCommandError(f"Unparseable helm list output: {e}", retryable=True) from e
        return data if isinstance(data, list) else []

    async def upgrade_install(
        self,
        release: str,
        chart: ChartConfig,
        labels: dict[str, str],
    ) -> None:
        chart_ref = chart.chart
        repo_args: list[str] = []
        if chart.repository is not None:
            if chart.repository.startswith("oci://"):
                chart_ref = f"{chart.repository.rstrip('/')}/{chart.chart}"
            else:
                repo_args = ["--repo", chart.repository]

        with tempfile.NamedTemporaryFile(
            "w", suffix=".yaml", prefix=f"{release}-", delete=False
        ) as values_file:
            yaml.safe_dump(chart.values, values_file, default_flow_style=False)
        try:
            args = [
                "upgrade",
                "--install",
                release,
                chart_ref,
                *repo_args,
                "--namespace",
                chart.namespace,
                "--create-namespace",
                "--labels",
                ",".join(f"{k}={v}" for k, v in sorted(labels.items())),
                "--values",
                values_file.name,
                "--timeout",
                f"{self._timeout_seconds}s",
            ]
            if chart.version:
                args.extend(["--version", chart.version])
            await self._run(*args)
        finally:
            os.unlink(values_file.name)

    async def uninstall(self, release: str, namespace: str, *, no_hooks: bool = False) -> None:
        args = ["uninstall", release, "--namespace", namespace]
        if no_hooks:
            args.append("--no-hooks")
        await self._run(*args)


class HelmReleaseDriver:
    """ResourceDriver for one Helm-backed kind.

    Release names are unique per namespace, not per cluster. Lookups by name
    search all namespaces and prefer the namespace the release was last
    applied to in this process.
    """

    def __init__(
        self,
        kind: ResourceKind,
        helm: HelmClient,
        session: KubernetesSession,
        stack_id: str,
    ) -> None:
        if kind not in HELM_KINDS:
            raise ValueError(f"{kind.value} is not a Helm-backed kind")
        self.kind = kind
        self.max_name_length = MAX_NAME_LENGTHS[kind]
        self._helm = helm
        self._session = session
        self._stack_id = stack_id
        self._namespaces: dict[str, str] = {}

    def _owner_selector(self, stable_name: str | None = None) -> str:
        selector = f"{MANAGED_BY_LABEL}={self._stack_id}"
        if stable_name is not None:
            selector += f",{STABLE_NAME_LABEL}={stable_name}"
        return selector

    async def _lookup(self, name: str) -> dict[str, Any] | None:
        releases = await self._helm.list_releases(name=name)
        if not releases:
            return None
        known = self._namespaces.get(name)
        for release in releases:
            if release.get("namespace") == known:
                return release
        release = releases[0]
        self._namespaces[name] = release.get("namespace", "default")
        return release

    async def _observe(self, release: dict[str, Any], managed_by_us: bool) -> ObservedResource:
        name = release["name"]
        namespace = release.get("namespace", "default")
        status = release.get("status")
        healthy = False
        if status == "deployed":
            readiness = await workload_readiness(self._session, namespace, name)
            healthy = readiness.state == ReadinessState.READY
        return ObservedResource(
            name=name,
            healthy=healthy,
            managed_by_us=managed_by_us,
            details={
                "namespace": namespace,
                "status": status,
                "revision": release.get("revision"),
            },
        )

    async def describe(self, name: str) -> ObservedResource | None:
        release = await self._lookup(name)
        if release is None:
            return None
        owned = await self._helm.list_releases(name=name, selector=self._owner_selector())
        managed_by_us = any(r.get("namespace") == release.get("namespace") for r in owned)
        return await self._observe(release, managed_by_us)

    async def find_managed(self, stable_name: str) -> ObservedResource | None:
        releases = await self._helm.list_releases(selector=self._owner_selector(stable_name))
        found = [await self._observe(r, True) for r in releases]
        if not found:
            return None
        healthy = [o for o in found if o.healthy]
        chosen = (healthy or found)[0]
        self._namespaces[chosen.name] = chosen.details["namespace"]
        return chosen

    async def apply(self, name: str, definition: ResourceDefinition) -> None:
        if definition.chart is None:
            raise ValueError(f"{definition.name}: chart is required for {self.kind.value}")

        release = await self._lookup(name)
        if release is not None and release.get("status") in STUCK_STATES:
            logger.warning(
                "Helm release is stuck, cleaning up before install",
                extra={"release": name, "status": release.get("status")},
            )
            await self.reset(name)

        self._namespaces[name] = definition.chart.namespace
        await self._helm.upgrade_install(
            name,
            definition.chart,
            labels={
                MANAGED_BY_LABEL: self._stack_id,
                STABLE_NAME_LABEL: definition.stable_name,
            },
        )

    async def readiness(self, name: str) -> Readiness:
        release = await self._lookup(name)
        if release is None:
            return Readiness.pending(f"release {name} not listed yet")

        status = release.get("status")
        match status:
            case "deployed":
                return await workload_readiness(
                    self._session, release.get("namespace", "default"), name
                )
            case "failed":
                return Readiness.failed(f"release {name} failed", permanent=False)
            case _:
                return Readiness.pending(f"release {name} is {status}")

    async def reset(self, name: str) -> None:
        release = await self._lookup(name)
        if release is None or release.get("status") not in STUCK_STATES:
            return
        namespace = release.get("namespace", "default")
        logger.warning(
            "Uninstalling stuck Helm release",
            extra={"release": name, "namespace": namespace, "status": release.get("status")},
        )
        await self._helm.uninstall(name, namespace, no_hooks=True)

    async def delete(self, name: str) -> None:
        release = await self._lookup(name)
        if release is None:
            logger.info("Helm release not found, skipping uninstall", extra={"release": name})
            return
        await self._helm.uninstall(name, release.get("namespace", "default"))
        logger.info("Helm release uninstalled", extra={"release": name})

    async def discover(self, pattern: str) -> list[ObservedResource]:
        compiled = re.compile(pattern)
        releases = [r for r in await self._helm.list_releases() if compiled.match(r["name"])]
        if not releases:
            return []
        owned = {
            (r["name"], r.get("namespace"))
            for r in await self._helm.list_releases(selector=self._owner_selector())
        }
        return [
            ObservedResource(
                name=r["name"],
                healthy=r.get("status") == "deployed",
                managed_by_us=(r["name"], r.get("namespace")) in owned,
                details={"namespace": r.get("namespace"), "status": r.get("status")},
            )
            for r in releases
        ]

    def is_retryable(self, error: Exception) -> bool:
        if isinstance(error, CommandError):
            return error.retryable
        return is_retryable_kube_error(error)

    def guidance(self, name: str) -> list[str]:
        namespace = self._namespaces.get(name, "<namespace>")
        context = f" --kube-context {self._helm.kube_context}" if self._helm.kube_context else ""
        return [f"helm uninstall {name} --namespace {namespace}{context}"]
